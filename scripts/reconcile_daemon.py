# scripts/reconcile_daemon.py
from __future__ import annotations

import logging
import os
import time

from dotenv import load_dotenv

load_dotenv()

from app.settlement.reconcile import run_reconcile  # noqa: E402


logger = logging.getLogger("escrow.settlement.daemon")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(1, value)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    interval = _int_env("RECONCILE_INTERVAL_SECONDS", 300)
    stale_minutes = _int_env("RECONCILE_STALE_MINUTES", 5)
    logger.info("Reconcile daemon starting; interval=%ss stale_minutes=%s", interval, stale_minutes)

    while True:
        try:
            result = run_reconcile(stale_minutes=stale_minutes)
        except KeyboardInterrupt:
            logger.info("Reconcile daemon exiting")
            raise
        except Exception:
            logger.exception("Reconcile daemon failed")
            raise

        summary = result.get("summary") or {}
        logger.info(
            "Reconcile report | transferred_checked=%s completed=%s errors=%s needs_attention=%s",
            summary.get("transferred_checked"),
            summary.get("completed"),
            summary.get("errors"),
            summary.get("needs_attention"),
        )
        time.sleep(interval)


if __name__ == "__main__":
    main()
