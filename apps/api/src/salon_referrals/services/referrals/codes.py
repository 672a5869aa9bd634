"""Personal referral code generation."""

from __future__ import annotations

import re
import secrets
from typing import Awaitable, Callable

from loguru import logger

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
_DIGITS = re.compile(r"\d+")

NAME_PART_LENGTH = 10
ID_PART_LENGTH = 4
FALLBACK_NAME_LENGTH = 6
FALLBACK_ATTEMPTS = 5

CodeExists = Callable[[str], Awaitable[bool]]


def _name_part(name: str | None) -> str:
    first_word = (name or "").strip().split(" ")[0]
    cleaned = _NON_ALNUM.sub("", first_word).upper()[:NAME_PART_LENGTH]
    return cleaned or "CUST"


def _id_part(customer_id: str | None) -> str:
    raw = (customer_id or "").strip()
    digits = "".join(_DIGITS.findall(raw))
    if digits:
        return digits[-ID_PART_LENGTH:].rjust(ID_PART_LENGTH, "0")
    cleaned = _NON_ALNUM.sub("", raw).upper()
    if cleaned:
        return cleaned[-ID_PART_LENGTH:].rjust(ID_PART_LENGTH, "0")
    return "0" * ID_PART_LENGTH


def generate_personal_code(name: str | None, customer_id: str | None) -> str:
    """Return the deterministic base code, e.g. ``("Umi Tan", "C1234") -> "UMI1234"``."""

    return f"{_name_part(name)}{_id_part(customer_id)}"


def code_variant(base_code: str, attempt: int) -> str:
    if attempt <= 0:
        return base_code
    return f"{base_code[:-2]}{attempt:02d}"


def fallback_code(name: str | None) -> str:
    return f"{_name_part(name)[:FALLBACK_NAME_LENGTH]}{secrets.randbelow(9000) + 1000}"


async def generate_unique_personal_code(
    name: str | None,
    customer_id: str | None,
    exists: CodeExists,
    *,
    max_attempts: int = 10,
) -> str:
    """Find a code that ``exists`` reports as free.

    The deterministic base code is tried first, then ``max_attempts - 1``
    suffix-perturbed variants, then a handful of randomized fallbacks. The last
    fallback is returned without a check so the loop always terminates; the
    unique index on the stored code remains the final arbiter.
    """

    base_code = generate_personal_code(name, customer_id)
    for attempt in range(max(max_attempts, 1)):
        candidate = code_variant(base_code, attempt)
        if not await exists(candidate):
            return candidate

    candidate = fallback_code(name)
    for _ in range(FALLBACK_ATTEMPTS - 1):
        if not await exists(candidate):
            return candidate
        candidate = fallback_code(name)

    logger.warning("Personal code fallback exhausted", customer_id=customer_id, code=candidate)
    return candidate


def build_referral_url(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/ref/{code}"


__all__ = [
    "build_referral_url",
    "code_variant",
    "fallback_code",
    "generate_personal_code",
    "generate_unique_personal_code",
]
