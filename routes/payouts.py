# routes/payouts.py
from __future__ import annotations

import html
import logging
from typing import Callable

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

from app.confirmation.service import inspect_link, inspect_milestone_link
from app.escrow.errors import EscrowError
from app.settlement import engine
from schemas import ReleaseFundsIn, ReleaseOut
from settings import settings

logger = logging.getLogger("escrow.settlement")
router = APIRouter(prefix="/api", tags=["payouts"])

_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8"/>
    <title>{title}</title>
    <style>
      body {{ font-family: sans-serif; display: flex; justify-content: center; align-items: center; min-height: 100vh; margin: 0; background: #f9fafb; }}
      .card {{ background: white; border: 1px solid #e5e7eb; border-radius: 8px; padding: 40px; max-width: 480px; width: 100%; text-align: center; }}
      .warning {{ background: #fff7ed; border: 1px solid #fed7aa; color: #9a3412; padding: 16px; border-radius: 6px; margin: 20px 0; }}
      .btn-confirm {{ background: #15803d; color: white; border: none; padding: 14px 30px; border-radius: 6px; font-size: 16px; font-weight: bold; cursor: pointer; width: 100%; }}
      .muted {{ color: #6b7280; font-size: 13px; }}
    </style>
  </head>
  <body><div class="card">{body}</div></body>
</html>"""


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(_PAGE.format(title=html.escape(title), body=body), status_code=status_code)


def _message_page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return _page(title, f"<h2>{html.escape(title)}</h2><p>{html.escape(message)}</p>", status_code)


def _confirm_page(title: str, lines: list[str], action: str, button: str) -> HTMLResponse:
    body = f"<h2>{html.escape(title)}</h2>"
    body += "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    body += (
        '<div class="warning"><strong>This action cannot be undone.</strong><br/>'
        "Only confirm if you have received your order and are fully satisfied with it.</div>"
        f'<form method="POST" action="{html.escape(action, quote=True)}">'
        f'<button type="submit" class="btn-confirm">{html.escape(button)}</button></form>'
        '<p class="muted">If you have not received your order, do NOT click the button above. '
        "Contact the seller to resolve the issue first.</p>"
    )
    return _page(title, body)


def _html_errors(fn: Callable[[], HTMLResponse]) -> HTMLResponse:
    try:
        return fn()
    except EscrowError as exc:
        return _message_page("Unable to continue", exc.message, exc.status_code)


def _amount(value, currency) -> str:
    return f"{int(value):,} {currency or settings.CURRENCY}"


# ==========================================================
# Code-based release (seller submits the buyer's code)
# ==========================================================

@router.post("/release-funds", response_model=ReleaseOut)
def release_funds(body: ReleaseFundsIn):
    outcome = engine.settle_invoice_by_code(body.invoice_number, body.code)
    message = (
        "Funds released successfully."
        if outcome.settled
        else "Funds sent. Your payout record will update shortly."
    )
    return {"ok": True, "message": message, "settlement": outcome.to_dict()}


# ==========================================================
# E-mailed release link (buyer)
# ==========================================================

@router.get("/verify-payout/{token}/{invoice_id}", response_class=HTMLResponse)
def verify_payout_page(token: str, invoice_id: str):
    def render() -> HTMLResponse:
        invoice = inspect_link(token, invoice_id)
        return _confirm_page(
            "Release Funds to Seller?",
            [
                f"Invoice: {invoice['invoice_number']} ({invoice.get('name') or ''})",
                f"Amount: {_amount(invoice['amount'], invoice.get('currency'))}",
                "You are about to release the escrowed funds to the seller.",
            ],
            f"/api/verify-payout/{token}/{invoice_id}",
            "Yes, Release Funds to Seller",
        )

    return _html_errors(render)


@router.post("/verify-payout/{token}/{invoice_id}", response_class=HTMLResponse)
def verify_payout(token: str, invoice_id: str):
    def run() -> HTMLResponse:
        outcome = engine.settle_invoice_by_link(token, invoice_id)
        return _message_page(
            "Funds Released",
            f"{_amount(outcome.recipient_amount, None)} has been sent to the seller. Thank you for confirming.",
        )

    return _html_errors(run)


# ==========================================================
# Milestone release link (buyer)
# ==========================================================

@router.get("/release-milestone/{token}", response_class=HTMLResponse)
def release_milestone_page(token: str):
    def render() -> HTMLResponse:
        milestone = inspect_milestone_link(token)
        return _confirm_page(
            "Release Milestone Payment?",
            [
                f"Milestone {milestone['milestone_number']}: {milestone['label']}",
                f"Amount: {_amount(milestone['amount'], None)}",
            ],
            f"/api/release-milestone/{token}",
            "Yes, Release This Milestone",
        )

    return _html_errors(render)


@router.post("/release-milestone/{token}", response_class=HTMLResponse)
def release_milestone(token: str):
    def run() -> HTMLResponse:
        outcome = engine.settle_milestone(token)
        remaining = outcome.remaining_milestones
        tail = (
            "All milestones are now paid. The invoice is complete."
            if not remaining
            else f"{remaining} milestone(s) remaining on this invoice."
        )
        return _message_page(
            "Milestone Payment Released",
            f"{_amount(outcome.recipient_amount, None)} has been sent to the seller. {tail}",
        )

    return _html_errors(run)
