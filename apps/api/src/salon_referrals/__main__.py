"""Command line utilities for replaying Square webhooks through the referral pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from loguru import logger

from salon_referrals.core.logging import configure_logging
from salon_referrals.core.settings import settings
from salon_referrals.observability.tracing import configure_tracing
from salon_referrals.tasks.referral_events import process_square_event

SERVICE_NAME = "salon-referrals"


def _load_payloads(path: Path) -> list[dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return [data]
    raise ValueError(f"{path} does not contain a webhook object or a list of them")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="salon_referrals", description="Referral reward pipeline utilities.")
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Process stored webhook JSON in this process.")
    replay.add_argument("path", type=Path, help="File holding one webhook body or a JSON list of bodies.")

    enqueue = sub.add_parser("enqueue", help="Queue stored webhook JSON on the Celery referral queue.")
    enqueue.add_argument("path", type=Path, help="File holding one webhook body or a JSON list of bodies.")

    return parser


async def _replay(path: Path) -> None:
    for payload in _load_payloads(path):
        summary = await process_square_event(payload)
        logger.info("Webhook replayed", summary=summary)


def _enqueue(path: Path) -> None:
    from salon_referrals.celery_tasks.referrals import process_square_event_task  # noqa: WPS433

    for payload in _load_payloads(path):
        result = process_square_event_task.delay(payload)
        logger.info("Webhook queued", task_id=result.id, event_id=payload.get("event_id"))


def main(argv: list[str] | None = None) -> None:
    configure_logging(service_name=SERVICE_NAME, environment=settings.environment, version=settings.version)
    configure_tracing(service_name=SERVICE_NAME, service_version=settings.version, environment=settings.environment)

    args = _build_parser().parse_args(argv)
    if args.command == "replay":
        asyncio.run(_replay(args.path))
    elif args.command == "enqueue":
        _enqueue(args.path)
    else:  # pragma: no cover - argparse guards this.
        raise ValueError(f"Unsupported command {args.command}")


if __name__ == "__main__":
    main()
