from __future__ import annotations

from datetime import date
from io import BytesIO
from typing import Iterable

from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from app.services.aging import AGING_BUCKETS, bucket_label

PAGE_WIDTH, PAGE_HEIGHT = landscape(A4)
LEFT = 12 * mm
BOTTOM = 15 * mm
ROW_HEIGHT = 5 * mm
COLUMN_X = [LEFT, LEFT + 32 * mm, LEFT + 92 * mm, LEFT + 112 * mm]
BUCKET_START = LEFT + 140 * mm
BUCKET_WIDTH = 21 * mm


def _money(pence: int) -> str:
    return f"£{pence / 100:,.2f}"


def _draw_header(pdf: canvas.Canvas, clinic_name: str, as_of: date) -> float:
    y = PAGE_HEIGHT - 15 * mm
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawString(LEFT, y, clinic_name)
    pdf.drawRightString(PAGE_WIDTH - LEFT, y, "Accounts receivable aging")
    y -= 6 * mm
    pdf.setFont("Helvetica", 9)
    pdf.drawString(LEFT, y, f"As of {as_of.isoformat()}")
    y -= 8 * mm
    return _draw_column_titles(pdf, y)


def _draw_column_titles(pdf: canvas.Canvas, y: float) -> float:
    pdf.setFont("Helvetica-Bold", 8)
    for x, title in zip(COLUMN_X, ["Account", "Patient", "Days", "Balance"]):
        pdf.drawString(x, y, title)
    for index, bucket in enumerate(AGING_BUCKETS):
        pdf.drawRightString(BUCKET_START + BUCKET_WIDTH * (index + 1), y, bucket_label(bucket))
    pdf.line(LEFT, y - 1.5 * mm, PAGE_WIDTH - LEFT, y - 1.5 * mm)
    return y - ROW_HEIGHT


def _draw_row(pdf: canvas.Canvas, y: float, cells: list[str], buckets: dict[str, int], bold: bool = False) -> None:
    pdf.setFont("Helvetica-Bold" if bold else "Helvetica", 8)
    for x, text in zip(COLUMN_X, cells):
        pdf.drawString(x, y, text[:34])
    for index, bucket in enumerate(AGING_BUCKETS):
        pdf.drawRightString(BUCKET_START + BUCKET_WIDTH * (index + 1), y, _money(buckets[bucket]))


def build_aging_report_pdf(
    *,
    clinic_name: str,
    as_of: date,
    rows: Iterable[dict],
    totals: dict,
) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=landscape(A4))
    y = _draw_header(pdf, clinic_name, as_of)
    for row in rows:
        if y < BOTTOM + ROW_HEIGHT * 2:
            pdf.showPage()
            y = _draw_column_titles(pdf, PAGE_HEIGHT - 15 * mm)
        _draw_row(
            pdf,
            y,
            [
                row["account_number"],
                row["patient_name"],
                str(row["days_overdue"]),
                _money(row["balance_pence"]),
            ],
            row["buckets"],
        )
        y -= ROW_HEIGHT
    pdf.line(LEFT, y + 3 * mm, PAGE_WIDTH - LEFT, y + 3 * mm)
    _draw_row(pdf, y - 1 * mm, ["Total", "", "", _money(totals["balance_pence"])], totals["buckets"], bold=True)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
