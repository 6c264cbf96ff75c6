from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from db import get_conn
from settings import settings

logger = logging.getLogger("escrow.http")

DEFAULTS: dict[str, str] = {
    "maintenance_mode": "false",
    "payments_blocked": "false",
    "payouts_blocked": "false",
}

KNOWN_KEYS = frozenset(DEFAULTS)


def load_platform_settings() -> dict[str, str]:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT key, value FROM app.platform_settings")
            rows = cur.fetchall()

    values = dict(DEFAULTS)
    for key, value in rows:
        values[key] = value
    return values


class SettingsCache:
    """
    Process-local timed cache over the platform_settings table.

    Read errors propagate; the request guard decides to fail open.
    """

    def __init__(
        self,
        loader: Callable[[], dict[str, str]],
        *,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._values: Optional[dict[str, str]] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get_all(self) -> dict[str, str]:
        with self._lock:
            if self._values is not None and self._clock() < self._expires_at:
                return dict(self._values)

        values = self._loader()

        with self._lock:
            self._values = dict(values)
            self._expires_at = self._clock() + self._ttl
        return dict(values)

    def flag(self, key: str) -> bool:
        return str(self.get_all().get(key, "false")).strip().lower() == "true"

    def invalidate(self) -> None:
        with self._lock:
            self._values = None
            self._expires_at = 0.0


_cache = SettingsCache(load_platform_settings, ttl_seconds=settings.PLATFORM_SETTINGS_TTL_S)


def get_settings_cache() -> SettingsCache:
    return _cache


def set_setting(key: str, value: bool, *, cache: Optional[SettingsCache] = None) -> None:
    if key not in KNOWN_KEYS:
        raise ValueError(f"Unknown platform setting: {key}")

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO app.platform_settings (key, value, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                """,
                (key, "true" if value else "false"),
            )

    (cache or _cache).invalidate()
    logger.info("platform setting changed key=%s value=%s", key, bool(value))
