# app/providers/fallback.py
from __future__ import annotations

import logging
from typing import Callable, Sequence, TypeVar

from app.providers.base import ProviderResult

logger = logging.getLogger("escrow.rail")

C = TypeVar("C")


def first_accepted(
    candidates: Sequence[C],
    attempt: Callable[[C], ProviderResult],
    *,
    label: str = "rail",
) -> ProviderResult:
    """
    Try each candidate in order. Move to the next one only when the result
    says the rail refused before acting (auth or throttling); any other
    outcome, success or failure, is final.
    """
    if not candidates:
        return ProviderResult(status="FAILED", error="RAIL_NOT_CONFIGURED")

    result: ProviderResult | None = None
    for index, candidate in enumerate(candidates):
        result = attempt(candidate)
        if not result.falls_through:
            return result
        logger.warning(
            "%s candidate=%s refused http_status=%s, trying next",
            label,
            index,
            result.http_status,
        )
    return result
