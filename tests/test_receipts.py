from datetime import datetime, timezone

from services.receipts import render_receipt_pdf


def test_receipt_is_a_pdf():
    pdf = render_receipt_pdf(
        invoice_number="INV-0001",
        invoice_name="Logo design",
        currency="XAF",
        gross=50000,
        recipient_amount=49000,
        fee=1000,
        recipient_label="Sent to seller",
        reference="R-1",
        issued_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    assert pdf.startswith(b"%PDF")
    assert len(pdf) > 500


def test_receipt_with_milestones_and_no_reference():
    pdf = render_receipt_pdf(
        invoice_number="INV-0002",
        invoice_name="Website",
        currency="XAF",
        gross=30000,
        recipient_amount=29400,
        fee=600,
        recipient_label="Sent to seller",
        milestones=[
            {"milestone_number": 1, "label": "Design", "amount": 10000, "status": "released"},
            {"milestone_number": 2, "label": "Build", "amount": 20000, "status": "pending"},
        ],
    )
    assert pdf.startswith(b"%PDF")
