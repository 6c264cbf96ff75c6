# app/providers/factory.py
from __future__ import annotations

from typing import Any, Dict

from settings import settings

_RAIL_CACHE: Dict[str, Any] = {}


def get_rail():
    """
    Process-wide payment rail for the configured RAIL_MODE.
    Cached so the provider's token cache survives between calls.
    """
    key = (settings.RAIL_MODE or "mock").strip().lower()

    if key in _RAIL_CACHE:
        return _RAIL_CACHE[key]

    if key == "campay":
        from app.providers.campay import CampayProvider
        rail = CampayProvider()
    else:
        from app.providers.mock import MockRail
        rail = MockRail(default_status="SUCCESSFUL")

    _RAIL_CACHE[key] = rail
    return rail


def reset_rail_cache() -> None:
    _RAIL_CACHE.clear()
