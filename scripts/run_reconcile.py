# scripts/run_reconcile.py
from __future__ import annotations

import argparse

from dotenv import load_dotenv

load_dotenv()

from app.settlement.reconcile import run_reconcile  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run settlement reconciliation once.")
    parser.add_argument("--stale-minutes", type=int, default=5)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    result = run_reconcile(stale_minutes=args.stale_minutes, limit=args.limit)
    summary = result["summary"]

    print(
        "counts:",
        f"transferred_checked={summary['transferred_checked']}",
        f"completed={summary['completed']}",
        f"errors={summary['errors']}",
        f"needs_attention={summary['needs_attention']}",
    )
    for item in result["needs_attention"]:
        print(
            "attention:",
            f"attempt_id={item['attempt_id']}",
            f"status={item['status']}",
            f"invoice={item['invoice_number']}",
            f"amount={item['amount']}",
        )


if __name__ == "__main__":
    main()
