from __future__ import annotations

import pytest

from app.escrow.errors import GatewayFailure
from app.settlement import engine
from app.settlement.reconcile import run_reconcile


def test_reconcile_completes_transferred_attempts(escrow):
    ledger = escrow.ledger
    deal = ledger.paid_invoice()
    ledger.fail_next_payout_insert = True
    engine.settle_invoice_by_code(deal.invoice["invoice_number"], "ABCD2345")

    report = run_reconcile(stale_minutes=0)

    assert report["summary"] == {"transferred_checked": 1, "completed": 1, "errors": 0, "needs_attention": 0}
    attempt = next(iter(ledger.attempts.values()))
    assert attempt["status"] == "SETTLED"
    assert ledger.invoices[str(deal.invoice["id"])]["status"] == "completed"
    assert len(escrow.rail.withdrawals) == 1

    # nothing left to do on the next pass
    assert run_reconcile(stale_minutes=0)["summary"]["transferred_checked"] == 0


def test_reconcile_reports_attempts_needing_an_operator(escrow):
    ledger, rail = escrow.ledger, escrow.rail
    refused = ledger.paid_invoice()
    unknown = ledger.paid_invoice(code="WXYZ6789")

    rail.withdraw_outcome = "failed"
    with pytest.raises(GatewayFailure):
        engine.settle_invoice_by_code(refused.invoice["invoice_number"], "ABCD2345")
    rail.withdraw_outcome = "unknown"
    with pytest.raises(GatewayFailure):
        engine.settle_invoice_by_code(unknown.invoice["invoice_number"], "WXYZ6789")

    report = run_reconcile(stale_minutes=0)

    assert report["completed"] == []
    statuses = sorted(a["status"] for a in report["needs_attention"])
    assert statuses == ["TRANSFER_FAILED", "TRANSFER_UNKNOWN"]
    assert len(rail.withdrawals) == 2


def test_recent_attempts_are_left_alone(escrow):
    ledger = escrow.ledger
    deal = ledger.paid_invoice()
    ledger.fail_next_payout_insert = True
    engine.settle_invoice_by_code(deal.invoice["invoice_number"], "ABCD2345")

    report = run_reconcile(stale_minutes=5)
    assert report["summary"]["transferred_checked"] == 0
    assert next(iter(ledger.attempts.values()))["status"] == "TRANSFERRED"


def test_reconcile_collects_unexpected_errors(escrow, monkeypatch):
    ledger = escrow.ledger
    deal = ledger.paid_invoice()
    ledger.fail_next_payout_insert = True
    engine.settle_invoice_by_code(deal.invoice["invoice_number"], "ABCD2345")
    ledger.fail_next_payout_insert = True

    report = run_reconcile(stale_minutes=0)

    assert report["summary"]["errors"] == 1
    assert report["errors"][0]["error"] == "RuntimeError"
    assert next(iter(ledger.attempts.values()))["status"] == "TRANSFERRED"
