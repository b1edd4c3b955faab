from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from io import BytesIO
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas

from pricing_engine import ZERO, to_money
from wizard_validation import parse_datetime


@dataclass(frozen=True)
class AgreementPdfLineItem:
    description: str
    qty: int
    amount: Decimal


@dataclass(frozen=True)
class AgreementPdfTotals:
    subtotal: Decimal
    discount: Decimal
    taxable_amount: Decimal
    vat: Decimal
    total: Decimal
    security_deposit: Decimal = ZERO
    advance_paid: Decimal = ZERO

    @property
    def balance_due(self) -> Decimal:
        return max(ZERO, self.total - self.advance_paid)


@dataclass(frozen=True)
class AgreementPdfArtifact:
    agreement_no: str
    agreement_date: date
    customer_name: str
    customer_id: str
    vehicle_label: str
    pickup_label: str
    dropoff_label: str
    mileage_label: str
    line_items: Tuple[AgreementPdfLineItem, ...]
    totals: AgreementPdfTotals
    signer_name: str = ""
    signed_at: Optional[datetime] = None
    notes: Tuple[str, ...] = ()


def format_aed(amount: Decimal) -> str:
    value = to_money(amount)
    sign = "-" if value < 0 else ""
    return f"{sign}AED {abs(value):,.2f}"


ROW_H = 0.27 * inch
TOTALS_BOX_W = 2.6 * inch
TOTALS_BOX_H = 1.95 * inch


def make_agreement_pdf_bytes(artifact: AgreementPdfArtifact) -> bytes:
    """
    Render a submitted rental agreement.

    Page 1 carries the header, customer and rental blocks and the start of the charges table. The
    table continues on extra pages as needed; the totals box and signature block always land on
    the last page.
    """
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    # Uncompressed so tests can find page markers in the bytes.
    c.setPageCompression(0)
    w, h = A4

    margin = 0.6 * inch
    x0 = margin
    y_top = h - margin
    pad = 0.15 * inch

    header_h = 1.1 * inch
    _rect(c, x0, y_top - header_h, w - 2 * margin, header_h)
    c.setFont("Helvetica-Bold", 13)
    c.drawString(x0 + pad, y_top - 0.42 * inch, "Vehicle Rental Agreement")
    c.setFont("Helvetica", 9)
    c.drawString(x0 + pad, y_top - 0.66 * inch, f"Agreement No: {artifact.agreement_no}")
    c.drawString(x0 + pad, y_top - 0.86 * inch, f"Date: {artifact.agreement_date.isoformat()}")
    c.setFont("Helvetica-Bold", 11)
    c.drawRightString(w - margin - pad, y_top - 0.42 * inch, f"Total: {format_aed(artifact.totals.total)}")

    y = y_top - header_h - 0.2 * inch
    block_h = 1.35 * inch
    left_w = 3.0 * inch
    right_x = x0 + left_w + 0.15 * inch
    right_w = (w - 2 * margin) - left_w - 0.15 * inch
    _rect(c, x0, y - block_h, left_w, block_h)
    _rect(c, right_x, y - block_h, right_w, block_h)

    c.setFont("Helvetica-Bold", 9)
    c.drawString(x0 + pad, y - 0.25 * inch, "CUSTOMER")
    c.drawString(right_x + pad, y - 0.25 * inch, "RENTAL")
    c.setFont("Helvetica-Bold", 9)
    _draw_truncated(c, x0 + pad, y - 0.52 * inch, artifact.customer_name or "-", max_width=left_w - 2 * pad)
    c.setFont("Helvetica", 8)
    _draw_truncated(c, x0 + pad, y - 0.72 * inch, f"Customer ID: {artifact.customer_id or '-'}", max_width=left_w - 2 * pad)

    rental_rows = (
        ("Vehicle", artifact.vehicle_label),
        ("Pickup", artifact.pickup_label),
        ("Drop-off", artifact.dropoff_label),
        ("Mileage", artifact.mileage_label),
    )
    row_y = y - 0.52 * inch
    for label, value in rental_rows:
        c.setFont("Helvetica-Bold", 8)
        c.drawString(right_x + pad, row_y, label)
        c.setFont("Helvetica", 8)
        _draw_truncated(c, right_x + pad + 0.8 * inch, row_y, value or "-", max_width=right_w - 0.8 * inch - 2 * pad)
        row_y -= 0.2 * inch

    y = y - block_h - 0.25 * inch
    footer_y = margin + 0.3 * inch
    signature_h = 0.9 * inch
    reserved_bottom_y = footer_y + signature_h + 0.25 * inch

    remaining: List[AgreementPdfLineItem] = list(artifact.line_items)
    first_page = True
    while True:
        if first_page:
            table_top_y = y
        else:
            table_top_y = y_top - 0.45 * inch
            c.setFont("Helvetica-Bold", 10)
            c.drawString(x0, y_top - 0.2 * inch, "CHARGES (CONTINUED)")

        table_h = max(1.5 * inch, table_top_y - reserved_bottom_y)
        capacity_with_totals = _row_capacity(table_h, include_totals=True)
        if len(remaining) <= capacity_with_totals:
            _render_charges_page(c, artifact, remaining, x0=x0, margin=margin, pad=pad, page_w=w, top_y=table_top_y, table_h=table_h, include_totals=True)
            break
        capacity = max(1, _row_capacity(table_h, include_totals=False))
        _render_charges_page(
            c, artifact, remaining[:capacity], x0=x0, margin=margin, pad=pad, page_w=w, top_y=table_top_y, table_h=table_h, include_totals=False
        )
        remaining = remaining[capacity:]
        c.showPage()
        first_page = False

    _render_signature_block(c, artifact, x0=x0, y=footer_y + 0.15 * inch, width=w - 2 * margin, height=signature_h)

    c.setFont("Helvetica", 7)
    c.setFillColor(colors.grey)
    note_y = footer_y - 0.15 * inch
    for n in artifact.notes[:3]:
        _draw_truncated(c, x0, note_y, f"Note: {n}", max_width=w - 2 * margin)
        note_y -= 0.11 * inch
    c.setFillColor(colors.black)

    c.showPage()
    c.save()
    return buf.getvalue()


def _row_capacity(table_h: float, *, include_totals: bool) -> int:
    usable = table_h - 0.55 * inch - 0.2 * inch
    if include_totals:
        usable -= TOTALS_BOX_H + 0.15 * inch + ROW_H
    if usable < 0:
        return 0
    return int(usable // ROW_H) + 1


def _render_charges_page(
    c: canvas.Canvas,
    artifact: AgreementPdfArtifact,
    rows: Sequence[AgreementPdfLineItem],
    *,
    x0: float,
    margin: float,
    pad: float,
    page_w: float,
    top_y: float,
    table_h: float,
    include_totals: bool,
) -> None:
    table_w = page_w - 2 * margin
    bottom_y = top_y - table_h
    _rect(c, x0, bottom_y, table_w, table_h)

    c.setFont("Helvetica-Bold", 9)
    c.drawString(x0 + pad, top_y - 0.25 * inch, "DESCRIPTION")
    c.drawRightString(page_w - margin - 1.5 * inch, top_y - 0.25 * inch, "QTY")
    c.drawRightString(page_w - margin - pad, top_y - 0.25 * inch, "AMOUNT")
    c.line(x0, top_y - 0.35 * inch, page_w - margin, top_y - 0.35 * inch)

    c.setFont("Helvetica", 9)
    desc_max_w = table_w - 1.9 * inch
    row_y = top_y - 0.55 * inch
    for li in rows:
        _draw_truncated(c, x0 + pad, row_y, li.description, max_width=desc_max_w)
        c.drawRightString(page_w - margin - 1.5 * inch, row_y, str(max(1, int(li.qty))))
        c.drawRightString(page_w - margin - pad, row_y, format_aed(li.amount))
        row_y -= ROW_H

    if not include_totals:
        return

    t = artifact.totals
    tx = page_w - margin - TOTALS_BOX_W
    box_bottom = bottom_y + 0.15 * inch
    _rect(c, tx, box_bottom, TOTALS_BOX_W, TOTALS_BOX_H)
    step = 0.19 * inch
    cursor = box_bottom + TOTALS_BOX_H - 0.28 * inch
    c.setFont("Helvetica", 9)
    for label, amount in (
        ("Subtotal", t.subtotal),
        ("Discount", -abs(to_money(t.discount))),
        ("Taxable Amount", t.taxable_amount),
        ("VAT (5%)", t.vat),
    ):
        _totals_row(c, tx, cursor, label, amount, TOTALS_BOX_W)
        cursor -= step
    c.setFont("Helvetica-Bold", 10)
    _totals_row(c, tx, cursor - 0.03 * inch, "Total", t.total, TOTALS_BOX_W)
    cursor -= step + 0.1 * inch
    c.setFont("Helvetica", 9)
    _totals_row(c, tx, cursor, "Advance Paid", t.advance_paid, TOTALS_BOX_W)
    cursor -= step
    _totals_row(c, tx, cursor, "Balance Due", t.balance_due, TOTALS_BOX_W)
    cursor -= step
    _totals_row(c, tx, cursor, "Security Deposit", t.security_deposit, TOTALS_BOX_W)


def _render_signature_block(c: canvas.Canvas, artifact: AgreementPdfArtifact, *, x0: float, y: float, width: float, height: float) -> None:
    _rect(c, x0, y, width, height)
    pad = 0.15 * inch
    c.setFont("Helvetica-Bold", 9)
    c.drawString(x0 + pad, y + height - 0.25 * inch, "CUSTOMER SIGNATURE")
    c.setFont("Helvetica", 9)
    _draw_truncated(c, x0 + pad, y + height - 0.5 * inch, f"Signed by: {artifact.signer_name or '-'}", max_width=width / 2)
    if artifact.signed_at is not None:
        c.drawString(x0 + pad, y + height - 0.7 * inch, f"Signed at: {artifact.signed_at.strftime('%Y-%m-%d %H:%M')}")
    c.line(x0 + width / 2, y + 0.3 * inch, x0 + width - pad, y + 0.3 * inch)


def _rect(c: canvas.Canvas, x: float, y: float, w: float, h: float) -> None:
    c.rect(x, y, w, h, stroke=1, fill=0)


def _totals_row(c: canvas.Canvas, x: float, y: float, label: str, amount: Decimal, box_w: float) -> None:
    """
    Label on the left, amount right-aligned; the label is truncated so it never runs into the amount.
    """
    left_pad = 0.12 * inch
    right_pad = 0.12 * inch
    amount_txt = format_aed(amount)
    label_max = box_w - left_pad - right_pad - c.stringWidth(amount_txt) - 0.1 * inch
    _draw_truncated(c, x + left_pad, y, label, max_width=max(0.0, label_max))
    c.drawRightString(x + box_w - right_pad, y, amount_txt)


def _draw_truncated(c: canvas.Canvas, x: float, y: float, text: str, *, max_width: float) -> None:
    t = (text or "").strip()
    if not t or max_width <= 0:
        return
    if c.stringWidth(t) <= max_width:
        c.drawString(x, y, t)
        return
    # ASCII ellipsis; the built-in Type1 fonts don't reliably carry the unicode one.
    ell = "..."
    lo, hi, best = 0, len(t), ""
    while lo <= hi:
        mid = (lo + hi) // 2
        cand = t[:mid].rstrip() + ell
        if c.stringWidth(cand) <= max_width:
            best = cand
            lo = mid + 1
        else:
            hi = mid - 1
    if best:
        c.drawString(x, y, best)


def _fmt_when(value: object) -> str:
    dt = parse_datetime(value)
    return dt.strftime("%Y-%m-%d %H:%M") if dt is not None else "-"


def artifact_from_wizard_data(
    data: Mapping[str, Any],
    *,
    agreement_no: str,
    agreement_date: date,
    customer_name: str = "",
    vehicle_label: str = "",
    signed_at: Optional[datetime] = None,
) -> AgreementPdfArtifact:
    """
    Build the PDF artifact from agreement wizard data. Amounts come from the stored step-3 breakdown.
    """
    step1 = data.get("step1") or {}
    step3 = data.get("step3") or {}
    step4 = data.get("step4") or {}
    step5 = data.get("step5") or {}
    step7 = data.get("step7") or {}
    breakdown = step3.get("pricing_breakdown") or {}

    items: List[AgreementPdfLineItem] = []
    for key, label in (("base_rate", "Rental charges"), ("insurance", f"Insurance ({step3.get('insurance_package') or 'basic'})"), ("maintenance", "Maintenance")):
        amount = to_money(breakdown.get(key))
        if amount > 0:
            items.append(AgreementPdfLineItem(label, 1, amount))
    for addon in step4.get("selected_addons") or []:
        if not isinstance(addon, Mapping):
            continue
        qty = int(addon.get("quantity") or 1)
        total = addon.get("total")
        amount = to_money(total) if total not in (None, "") else to_money(addon.get("unit_price")) * qty
        items.append(AgreementPdfLineItem(str(addon.get("name") or "Add-on"), qty, to_money(amount)))

    advance = step5.get("advance_payment") or {}
    deposit = step5.get("security_deposit") or {}
    totals = AgreementPdfTotals(
        subtotal=to_money(breakdown.get("subtotal")),
        discount=to_money(breakdown.get("discount")),
        taxable_amount=to_money(breakdown.get("taxable_amount")),
        vat=to_money(breakdown.get("vat")),
        total=to_money(breakdown.get("total")),
        security_deposit=to_money(deposit.get("amount")),
        advance_paid=to_money(advance.get("amount")) if advance.get("status") == "completed" else ZERO,
    )

    mileage = step1.get("mileage_package") or "-"
    if mileage == "limited":
        mileage = f"limited, {step1.get('included_km') or 0} km incl., {step1.get('excess_km_rate') or 0}/km excess"

    notes: List[str] = []
    if step3.get("discount_reason"):
        notes.append(f"Discount: {step3['discount_reason']}")
    if step1.get("special_instructions"):
        notes.append(str(step1["special_instructions"]))

    signature = step7.get("customer_signature") or {}
    return AgreementPdfArtifact(
        agreement_no=agreement_no,
        agreement_date=agreement_date,
        customer_name=customer_name or str(signature.get("signer_name") or ""),
        customer_id=str(step1.get("customer_id") or ""),
        vehicle_label=vehicle_label or str(step1.get("vehicle_id") or ""),
        pickup_label=f"{_fmt_when(step1.get('pickup_at'))} @ {step1.get('pickup_location_id') or '-'}",
        dropoff_label=f"{_fmt_when(step1.get('dropoff_at'))} @ {step1.get('dropoff_location_id') or '-'}",
        mileage_label=str(mileage),
        line_items=tuple(items),
        totals=totals,
        signer_name=str(signature.get("signer_name") or ""),
        signed_at=signed_at,
        notes=tuple(notes),
    )
