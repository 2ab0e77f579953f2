"""
Invoice PDF rendering for finalized billing breakdowns.

The layout is computed first as plain strings (`build_invoice_layout`) and
then drawn with fpdf2, so formatting can be checked without parsing a PDF.
Line items are printed unrounded while the summary lines use two decimals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Union

from fpdf import FPDF

from backend.billing import Breakdown
from backend.config import Settings, get_settings

MARGIN = 20
TOP_MARGIN = 20
BOTTOM_MARGIN = 20
COL_QTY = MARGIN + 70
COL_UNIT = MARGIN + 100
COL_LABEL = MARGIN + 120
COL_RIGHT = MARGIN + 170
DESCRIPTION_WIDTH = 170
DISCOUNT_RGB = (34, 197, 94)


@dataclass(frozen=True)
class InvoiceItem:
    item: str
    qty: str
    unit: str
    total: str


@dataclass(frozen=True)
class SummaryLine:
    label: str
    value: str
    bold: bool = False
    highlight: bool = False


@dataclass
class InvoiceLayout:
    company_name: str
    invoice_label: str
    date_label: str
    title: str
    description: Optional[str]
    footer: str
    items: List[InvoiceItem] = field(default_factory=list)
    summary: List[SummaryLine] = field(default_factory=list)


def invoice_number_label(invoice_no: int) -> str:
    return f"{invoice_no:04d}"


def invoice_filename(invoice_no: int) -> str:
    return f"Invoice_{invoice_number_label(invoice_no)}.pdf"


def _plain(value: float) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return str(value)


def _format_date(billing_date: Union[str, date, datetime]) -> str:
    if isinstance(billing_date, str):
        billing_date = datetime.fromisoformat(billing_date)
    return f"{billing_date.month}/{billing_date.day}/{billing_date.year}"


def build_invoice_layout(
    title: Optional[str],
    description: Optional[str],
    invoice_no: int,
    billing_date: Union[str, date, datetime],
    breakdown: Breakdown,
    final_amount: Optional[float] = None,
    *,
    settings: Optional[Settings] = None,
) -> InvoiceLayout:
    settings = settings or get_settings()
    prefix = settings.invoice_currency_prefix
    subtotal = breakdown.total
    final_total = final_amount if final_amount and final_amount > 0 else subtotal
    tax = subtotal * settings.invoice_tax_rate

    items = [
        InvoiceItem(
            item="Printing",
            qty=str(breakdown.shirt_count),
            unit=f"{prefix}{_plain(breakdown.print_fee)}",
            total=f"{prefix}{_plain(breakdown.print_fee * breakdown.shirt_count)}",
        ),
        InvoiceItem(
            item="Revision Fee",
            qty="-",
            unit=f"{prefix}{_plain(breakdown.revision_fee)}",
            total=f"{prefix}{_plain(breakdown.revision_fee)}",
        ),
        InvoiceItem(
            item="Designer Fee",
            qty="-",
            unit=f"{prefix}{_plain(breakdown.designer_fee)}",
            total=f"{prefix}{_plain(breakdown.designer_fee)}",
        ),
    ]

    tax_percent = _plain(round(settings.invoice_tax_rate * 100, 4))
    summary = [
        SummaryLine("Subtotal:", f"{prefix}{_plain(subtotal)}"),
        SummaryLine(f"Tax/VAT ({tax_percent}%):", f"{prefix}{tax:.2f}"),
        SummaryLine("Total:", f"{prefix}{subtotal:.2f}"),
    ]
    if final_total < subtotal:
        summary.append(
            SummaryLine(
                "Client Discount:",
                f"-{prefix}{subtotal - final_total:.2f}",
                highlight=True,
            )
        )
    summary.append(
        SummaryLine("Final Negotiated Price:", f"{prefix}{final_total:.2f}", bold=True)
    )

    return InvoiceLayout(
        company_name=settings.invoice_company_name,
        invoice_label=f"Invoice No. #{invoice_number_label(invoice_no)}",
        date_label=f"Date: {_format_date(billing_date)}",
        title=title or "Custom Design",
        description=description or None,
        footer=settings.invoice_footer,
        items=items,
        summary=summary,
    )


def _latin1(text: str) -> str:
    # Core PDF fonts only cover Latin-1.
    return text.encode("latin-1", "replace").decode("latin-1")


def _text_right(pdf: FPDF, x: float, y: float, text: str) -> None:
    text = _latin1(text)
    pdf.text(x - pdf.get_string_width(text), y, text)


def _advance(pdf: FPDF, y: float, step: float) -> float:
    """Move down one line, starting a new page past the bottom margin."""
    y += step
    if y > pdf.h - BOTTOM_MARGIN:
        pdf.add_page()
        y = TOP_MARGIN
    return y


def build_invoice_pdf(layout: InvoiceLayout) -> FPDF:
    pdf = FPDF(unit="mm", format="A4")
    pdf.add_page()
    y = TOP_MARGIN

    pdf.set_font("helvetica", "B", 18)
    pdf.text(MARGIN, y, _latin1(layout.company_name))
    y += 10

    pdf.set_font("helvetica", "", 12)
    pdf.text(MARGIN, y, layout.invoice_label)
    y += 6
    pdf.text(MARGIN, y, layout.date_label)
    y += 10

    pdf.set_font("helvetica", "B", 12)
    pdf.text(MARGIN, y, _latin1(layout.title))
    pdf.set_font("helvetica", "", 12)
    if layout.description:
        lines = pdf.multi_cell(
            DESCRIPTION_WIDTH,
            6,
            _latin1(layout.description),
            dry_run=True,
            output="LINES",
        )
        for line in lines:
            y = _advance(pdf, y, 6)
            pdf.text(MARGIN, y, line)
    y = _advance(pdf, y, 16)

    pdf.set_font("helvetica", "B", 12)
    pdf.text(MARGIN, y, "Item")
    pdf.text(COL_QTY, y, "Qty")
    pdf.text(COL_UNIT, y, "Unit Price")
    pdf.text(MARGIN + 150, y, "Total")

    pdf.set_font("helvetica", "", 12)
    step = 8
    for item in layout.items:
        y = _advance(pdf, y, step)
        pdf.text(MARGIN, y, item.item)
        pdf.text(COL_QTY, y, item.qty)
        pdf.text(COL_UNIT, y, _latin1(item.unit))
        _text_right(pdf, COL_RIGHT, y, item.total)
        step = 7

    step = 12
    for line in layout.summary:
        y = _advance(pdf, y, step)
        step = 7
        pdf.set_font("helvetica", "B" if line.bold else "", 12)
        if line.highlight:
            pdf.set_text_color(*DISCOUNT_RGB)
        pdf.text(COL_LABEL, y, line.label)
        _text_right(pdf, COL_RIGHT, y, line.value)
        if line.highlight:
            pdf.set_text_color(0, 0, 0)

    y = _advance(pdf, y, 20)
    pdf.set_font("helvetica", "I", 11)
    pdf.text(MARGIN, y, _latin1(layout.footer))
    return pdf


def draw_invoice(layout: InvoiceLayout) -> bytes:
    return bytes(build_invoice_pdf(layout).output())


def render_invoice(
    title: Optional[str],
    description: Optional[str],
    invoice_no: int,
    billing_date: Union[str, date, datetime],
    breakdown: Breakdown,
    final_amount: Optional[float] = None,
    *,
    settings: Optional[Settings] = None,
) -> bytes:
    """Render a client-facing invoice PDF and return its bytes."""
    layout = build_invoice_layout(
        title,
        description,
        invoice_no,
        billing_date,
        breakdown,
        final_amount,
        settings=settings,
    )
    return draw_invoice(layout)
