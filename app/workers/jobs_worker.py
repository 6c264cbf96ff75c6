# app/workers/jobs_worker.py
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from app.jobs import escalation
from settings import settings

logger = logging.getLogger("escrow.jobs")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def run_once(now: Optional[datetime] = None) -> dict[str, int]:
    # Every send is claimed first, so any number of workers may run this.
    result = escalation.run_once(now or _now())
    logger.info("jobs run reminders=%s escalations=%s", result["reminders"], result["escalations"])
    return result


def run_forever(*, poll_seconds: Optional[int] = None) -> None:
    interval = max(1, int(poll_seconds or settings.JOBS_INTERVAL_SECONDS))
    logger.info("jobs worker started interval=%ss", interval)
    while True:
        run_once()
        time.sleep(interval)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    run_forever()
