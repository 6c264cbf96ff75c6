# scripts/jobs_runner.py
from __future__ import annotations

import argparse
import logging
import os

from dotenv import load_dotenv

load_dotenv()

from app.workers import jobs_worker  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Payment reminders and dispute escalations.")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if args.once:
        jobs_worker.run_once()
        return

    raw = os.getenv("JOBS_INTERVAL_SECONDS")
    jobs_worker.run_forever(poll_seconds=int(raw) if raw and raw.isdigit() else None)


if __name__ == "__main__":
    main()
