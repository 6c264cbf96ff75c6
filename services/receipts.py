from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO
from typing import Optional, Sequence

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from settings import settings

NAVY = colors.HexColor("#0F1F3D")


def _money(amount: int, currency: str) -> str:
    return f"{int(amount):,} {currency}"


def render_receipt_pdf(
    *,
    invoice_number: str,
    invoice_name: str,
    currency: str,
    gross: int,
    recipient_amount: int,
    fee: int,
    recipient_label: str,
    reference: Optional[str] = None,
    milestones: Optional[Sequence[dict]] = None,
    issued_at: Optional[datetime] = None,
) -> bytes:
    """
    One-page receipt for a buyer payment or a settlement.
    `recipient_label` names who received `recipient_amount` ("Seller", "Buyer refund", ...).
    """
    issued_at = issued_at or datetime.now(timezone.utc)
    styles = getSampleStyleSheet()

    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        title=f"Receipt {invoice_number}",
        author=settings.SMTP_FROM_NAME,
    )

    story = [
        Paragraph(f"{settings.SMTP_FROM_NAME} payment receipt", styles["Title"]),
        Paragraph(f"Receipt No: {invoice_number}", styles["Normal"]),
        Paragraph(f"Issued: {issued_at.strftime('%d %B %Y %H:%M UTC')}", styles["Normal"]),
        Spacer(1, 12),
        Paragraph(invoice_name or "Invoice", styles["Heading2"]),
    ]

    rows = [
        ["Item", "Amount"],
        ["Invoice amount", _money(gross, currency)],
        ["Platform fee", _money(fee, currency)],
        [recipient_label, _money(recipient_amount, currency)],
    ]
    if reference:
        rows.append(["Reference", reference])

    table = Table(rows, colWidths=[260, 200])
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), NAVY),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("ALIGN", (1, 1), (1, -1), "RIGHT"),
            ]
        )
    )
    story.append(table)

    if milestones:
        story.append(Spacer(1, 12))
        story.append(Paragraph("Milestones", styles["Heading3"]))
        ms_rows = [["#", "Label", "Amount", "Status"]]
        for m in milestones:
            ms_rows.append(
                [
                    str(m.get("milestone_number")),
                    m.get("label") or "",
                    _money(m.get("amount") or 0, currency),
                    m.get("status") or "",
                ]
            )
        ms_table = Table(ms_rows, colWidths=[30, 220, 120, 90])
        ms_table.setStyle(TableStyle([("GRID", (0, 0), (-1, -1), 0.25, colors.grey)]))
        story.append(ms_table)

    story.append(Spacer(1, 18))
    story.append(Paragraph("Funds are held in escrow until release is confirmed.", styles["Italic"]))

    doc.build(story)
    return buf.getvalue()
