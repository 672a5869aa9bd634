"""Stage trail recorder for gift card pipeline runs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salon_referrals.db.session import async_session
from salon_referrals.models import GiftCardRun, GiftCardRunStatus
from salon_referrals.observability.referrals import get_referral_store

MAX_ERROR_LENGTH = 500

SessionFactory = Callable[[], AsyncSession]


def truncate_error(error: BaseException | str | None) -> str:
    message = str(error) if error is not None else ""
    message = message.strip() or "unknown error"
    if len(message) > MAX_ERROR_LENGTH:
        return f"{message[:MAX_ERROR_LENGTH]}…"
    return message


def _trigger_from_correlation(correlation_id: str) -> str:
    return correlation_id.split(":", 1)[0] or "unknown"


class GiftCardRunTracker:
    """Best-effort writer for ``giftcard_runs``.

    Each call opens its own session so a failing pipeline transaction never
    loses its trail. Any failure, including a raw driver connection error, is
    logged, counted and reported as ``False``; it never reaches the pipeline.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory or async_session

    async def ensure_run(
        self,
        correlation_id: str,
        *,
        trigger_type: str,
        square_event_id: str | None = None,
        square_event_type: str | None = None,
        resource_id: str | None = None,
        stage: str | None = None,
        payload: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Create the run, or mark an existing one as resumed by a redelivery."""

        try:
            async with self._session_factory() as session:
                run = await self._get(session, correlation_id)
                if run is None:
                    session.add(
                        GiftCardRun(
                            correlation_id=correlation_id,
                            trigger_type=trigger_type,
                            square_event_id=square_event_id,
                            square_event_type=square_event_type,
                            resource_id=resource_id,
                            stage=stage,
                            status=GiftCardRunStatus.RUNNING,
                            attempts=1,
                            payload=dict(payload) if payload is not None else None,
                            context=dict(context) if context else None,
                        )
                    )
                else:
                    run.attempts = (run.attempts or 0) + 1
                    run.resumed_at = datetime.now(timezone.utc)
                    run.status = GiftCardRunStatus.RUNNING
                    if stage:
                        run.stage = stage
                    if context:
                        run.context = {**(run.context or {}), **context}
                await session.commit()
        except Exception as exc:
            logger.exception("Failed to record gift card run", correlation_id=correlation_id, error=str(exc))
            get_referral_store().record_recorder_failure("ensure_run")
            return False
        return True

    async def update_stage(
        self,
        correlation_id: str,
        *,
        stage: str,
        status: GiftCardRunStatus = GiftCardRunStatus.RUNNING,
        payload: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
        error: BaseException | str | None = None,
        increment_attempts: bool = False,
        clear_error: bool = False,
    ) -> bool:
        """Move the run to ``stage``; the run is created if it does not exist yet.

        ``completed`` always clears the stored error and ``error`` always
        stores a non-empty message.
        """

        try:
            async with self._session_factory() as session:
                run = await self._get(session, correlation_id)
                if run is None:
                    run = GiftCardRun(
                        correlation_id=correlation_id,
                        trigger_type=_trigger_from_correlation(correlation_id),
                        attempts=0,
                    )
                    session.add(run)

                run.stage = stage
                run.status = status
                if increment_attempts:
                    run.attempts = (run.attempts or 0) + 1
                if payload is not None:
                    run.payload = dict(payload)
                if context:
                    run.context = {**(run.context or {}), **context}

                if status is GiftCardRunStatus.ERROR:
                    run.last_error = truncate_error(error)
                elif status is GiftCardRunStatus.COMPLETED or clear_error:
                    run.last_error = None
                elif error is not None:
                    run.last_error = truncate_error(error)
                await session.commit()
        except Exception as exc:
            logger.exception(
                "Failed to update gift card run stage",
                correlation_id=correlation_id,
                stage=stage,
                error=str(exc),
            )
            get_referral_store().record_recorder_failure("update_stage")
            return False
        return True

    async def mark_error(
        self,
        correlation_id: str,
        error: BaseException | str | None,
        *,
        stage: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        return await self.update_stage(
            correlation_id,
            stage=stage or "error",
            status=GiftCardRunStatus.ERROR,
            error=error,
            context=context,
        )

    async def get_run(self, correlation_id: str) -> GiftCardRun | None:
        try:
            async with self._session_factory() as session:
                return await self._get(session, correlation_id)
        except Exception as exc:
            logger.exception("Failed to load gift card run", correlation_id=correlation_id, error=str(exc))
            get_referral_store().record_recorder_failure("get_run")
            return None

    @staticmethod
    async def _get(session: AsyncSession, correlation_id: str) -> GiftCardRun | None:
        result = await session.execute(select(GiftCardRun).where(GiftCardRun.correlation_id == correlation_id))
        return result.scalar_one_or_none()


__all__ = ["GiftCardRunTracker", "MAX_ERROR_LENGTH", "truncate_error"]
