"""Single-page A4 invoice renderer.

The invoice is laid out as HTML with every block pinned to a fixed spot on an
A4 page and converted with WeasyPrint. If WeasyPrint cannot produce the
document, a plain Helvetica page with the same positions is written instead;
that page only renders Latin (cp1252) characters.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.models.billing import Invoice
from app.services.common import minor_unit, round_currency

logger = logging.getLogger(__name__)

PAGE_WIDTH = 595
PAGE_HEIGHT = 842
MARGIN = 50
MAX_TABLE_ROWS = 22

_CURRENCY_PREFIX = {"JPY": "¥", "USD": "$", "EUR": "€", "GBP": "£"}

_INVOICE_CSS = """
@page { size: A4; margin: 0; }
body { font-family: Helvetica, Arial, sans-serif; font-size: 10pt; color: #222; margin: 0; }
.block { position: absolute; }
.title { left: 50pt; top: 30pt; font-size: 22pt; font-weight: bold; }
.number { left: 380pt; top: 34pt; width: 165pt; }
.number strong { display: block; }
.rule { position: absolute; left: 50pt; width: 495pt; border-top: 0.5pt solid #444; }
.org { left: 50pt; top: 90pt; width: 300pt; }
.org .name { font-size: 12pt; font-weight: bold; }
.bill-to { left: 50pt; top: 155pt; width: 300pt; }
.bill-to h2, .notes h2 { font-size: 11pt; margin: 0 0 4pt 0; }
.dates { left: 380pt; top: 155pt; width: 165pt; }
.dates td { padding: 0 6pt 2pt 0; }
.items { left: 50pt; top: 245pt; width: 495pt; height: 380pt; overflow: hidden; }
.items table { width: 100%; border-collapse: collapse; }
.items th { text-align: left; border-bottom: 0.5pt solid #444; padding-bottom: 4pt; }
.items td { padding: 3pt 0; }
.items .num { text-align: right; }
.totals { left: 330pt; top: 640pt; width: 215pt; }
.totals td { padding: 2pt 0; }
.totals .num { text-align: right; }
.totals .grand td { font-size: 12pt; font-weight: bold; border-top: 0.5pt solid #444; }
.notes { left: 50pt; top: 725pt; width: 495pt; height: 60pt; overflow: hidden; }
"""


@dataclass
class _Text:
    x: int
    y: int
    text: str
    size: int = 10
    bold: bool = False


def format_money(value: Decimal | None, currency: str | None) -> str:
    code = (currency or "JPY").upper()
    amount = round_currency(value or 0, code)
    if minor_unit(code) == Decimal("1"):
        body = f"{amount:,.0f}"
    else:
        body = f"{amount:,.2f}"
    prefix = _CURRENCY_PREFIX.get(code)
    return f"{prefix}{body}" if prefix else f"{body} {code}"


def _format_date(value: datetime | None) -> str:
    if not value:
        return "N/A"
    return value.strftime("%Y-%m-%d")


def download_filename(invoice: Invoice) -> str:
    raw = (invoice.invoice_number or str(invoice.id)).strip()
    safe = re.sub(r"[^A-Za-z0-9._-]+", "-", raw).strip("-") or str(invoice.id)
    return f"invoice-{safe}.pdf"


def _pdf_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def _esc(value) -> str:
    return html.escape(str(value or ""))


def _tax_label(invoice: Invoice) -> str:
    return f"Tax ({Decimal(str(invoice.tax_rate or 0)) * 100:.0f}%)"


def render_invoice_html(invoice: Invoice) -> str:
    currency = invoice.currency
    organization = invoice.organization
    customer = invoice.customer

    org_rows = []
    if organization is not None:
        org_rows.append(f'<div class="name">{_esc(organization.name)}</div>')
        for value in (organization.address, organization.email):
            if value:
                org_rows.append(f"<div>{_esc(value)}</div>")

    bill_rows = []
    if customer is not None:
        for value in (customer.name, customer.address, customer.email, customer.phone):
            if value:
                bill_rows.append(f"<div>{_esc(value)}</div>")

    date_rows = [
        ("Issue Date", _format_date(invoice.issue_date)),
        ("Due Date", _format_date(invoice.due_date)),
    ]
    if invoice.paid_at:
        date_rows.append(("Paid", _format_date(invoice.paid_at)))
    date_html = "".join(
        f"<tr><td><strong>{label}:</strong></td><td>{value}</td></tr>"
        for label, value in date_rows
    )

    lines = list(invoice.lines or [])
    item_rows = []
    for item in lines[:MAX_TABLE_ROWS]:
        quantity = Decimal(str(item.quantity or 0)).normalize()
        item_rows.append(
            "<tr>"
            f"<td>{_esc(item.description)}</td>"
            f'<td class="num">{quantity:f}</td>'
            f'<td class="num">{_esc(format_money(item.unit_price, currency))}</td>'
            f'<td class="num">{_esc(format_money(item.amount, currency))}</td>'
            "</tr>"
        )
    if len(lines) > MAX_TABLE_ROWS:
        item_rows.append(
            f'<tr><td colspan="4">... {len(lines) - MAX_TABLE_ROWS} more items</td></tr>'
        )

    org_html = "".join(org_rows)
    bill_html = "".join(bill_rows)
    items_html = "".join(item_rows)
    notes = ""
    if invoice.notes:
        notes = (
            '<div class="block notes"><h2>Notes</h2>'
            f"<div>{_esc(invoice.notes)}</div></div>"
        )

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Invoice {_esc(invoice.invoice_number)}</title>
<style>{_INVOICE_CSS}</style>
</head>
<body>
<div class="block title">INVOICE</div>
<div class="block number">
<strong>Invoice No: {_esc(invoice.invoice_number)}</strong>
<div>Status: {_esc(invoice.status.value.upper())}</div>
</div>
<div class="rule" style="top: 75pt"></div>
<div class="block org">{org_html}</div>
<div class="block bill-to"><h2>Bill To</h2>{bill_html}</div>
<div class="block dates"><table>{date_html}</table></div>
<div class="block items"><table>
<thead><tr><th>Description</th><th class="num">Qty</th>\
<th class="num">Unit Price</th><th class="num">Amount</th></tr></thead>
<tbody>{items_html}</tbody>
</table></div>
<div class="block totals"><table>
<tr><td>Subtotal:</td><td class="num">{_esc(format_money(invoice.subtotal, currency))}</td></tr>
<tr><td>{_tax_label(invoice)}:</td>\
<td class="num">{_esc(format_money(invoice.tax_amount, currency))}</td></tr>
<tr class="grand"><td>Total:</td>\
<td class="num">{_esc(format_money(invoice.total, currency))}</td></tr>
</table></div>
{notes}
</body>
</html>
"""


def _layout(invoice: Invoice) -> tuple[list[_Text], list[tuple[int, int, int, int]]]:
    currency = invoice.currency
    organization = invoice.organization
    customer = invoice.customer
    texts: list[_Text] = [
        _Text(MARGIN, 790, "INVOICE", size=22, bold=True),
        _Text(380, 796, f"Invoice No: {invoice.invoice_number}", bold=True),
        _Text(380, 780, f"Status: {invoice.status.value.upper()}"),
    ]
    rules: list[tuple[int, int, int, int]] = [(MARGIN, 765, PAGE_WIDTH - MARGIN, 765)]

    # organization block
    y = 745
    if organization is not None:
        texts.append(_Text(MARGIN, y, organization.name or "", size=12, bold=True))
        for value in (organization.address, organization.email):
            if value:
                y -= 14
                texts.append(_Text(MARGIN, y, value))

    # bill-to block
    texts.append(_Text(MARGIN, 680, "Bill To", size=11, bold=True))
    y = 664
    if customer is not None:
        for value in (customer.name, customer.address, customer.email, customer.phone):
            if value:
                texts.append(_Text(MARGIN, y, value))
                y -= 14

    # dated fields
    texts.extend(
        [
            _Text(380, 680, "Issue Date:", bold=True),
            _Text(470, 680, _format_date(invoice.issue_date)),
            _Text(380, 664, "Due Date:", bold=True),
            _Text(470, 664, _format_date(invoice.due_date)),
        ]
    )
    if invoice.paid_at:
        texts.append(_Text(380, 648, "Paid:", bold=True))
        texts.append(_Text(470, 648, _format_date(invoice.paid_at)))

    # line item table
    header_y = 590
    texts.extend(
        [
            _Text(MARGIN, header_y, "Description", bold=True),
            _Text(300, header_y, "Qty", bold=True),
            _Text(360, header_y, "Unit Price", bold=True),
            _Text(470, header_y, "Amount", bold=True),
        ]
    )
    rules.append((MARGIN, header_y - 6, PAGE_WIDTH - MARGIN, header_y - 6))
    y = header_y - 22
    lines = list(invoice.lines or [])
    for item in lines[:MAX_TABLE_ROWS]:
        quantity = Decimal(str(item.quantity or 0)).normalize()
        texts.extend(
            [
                _Text(MARGIN, y, str(item.description)[:45]),
                _Text(300, y, f"{quantity:f}"),
                _Text(360, y, format_money(item.unit_price, currency)),
                _Text(470, y, format_money(item.amount, currency)),
            ]
        )
        y -= 16
    if len(lines) > MAX_TABLE_ROWS:
        texts.append(_Text(MARGIN, y, f"... {len(lines) - MAX_TABLE_ROWS} more items"))
    rules.append((MARGIN, 210, PAGE_WIDTH - MARGIN, 210))

    # totals block
    texts.extend(
        [
            _Text(360, 190, "Subtotal:"),
            _Text(470, 190, format_money(invoice.subtotal, currency)),
            _Text(360, 174, f"{_tax_label(invoice)}:"),
            _Text(470, 174, format_money(invoice.tax_amount, currency)),
            _Text(360, 154, "Total:", size=12, bold=True),
            _Text(470, 154, format_money(invoice.total, currency), size=12, bold=True),
        ]
    )

    if invoice.notes:
        texts.append(_Text(MARGIN, 110, "Notes", bold=True))
        texts.append(_Text(MARGIN, 94, invoice.notes[:95]))
    return texts, rules


def _build_pdf(texts: list[_Text], rules: list[tuple[int, int, int, int]]) -> bytes:
    ops = ["0.5 w"]
    for x1, y1, x2, y2 in rules:
        ops.append(f"{x1} {y1} m {x2} {y2} l S")
    ops.append("BT")
    for item in texts:
        font = "/F2" if item.bold else "/F1"
        ops.append(f"{font} {item.size} Tf")
        ops.append(f"1 0 0 1 {item.x} {item.y} Tm ({_pdf_escape(item.text)}) Tj")
    ops.append("ET")
    content = "\n".join(ops).encode("cp1252", errors="replace")

    objects: list[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 {PAGE_WIDTH} {PAGE_HEIGHT}] "
            "/Resources << /Font << /F1 5 0 R /F2 6 0 R >> >> /Contents 4 0 R >>"
        ).encode("ascii"),
        b"<< /Length " + str(len(content)).encode("ascii") + b" >>\nstream\n"
        + content
        + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica /Encoding /WinAnsiEncoding >>",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica-Bold /Encoding /WinAnsiEncoding >>",
    ]

    pdf = bytearray(b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n")
    offsets = []
    for index, obj in enumerate(objects, 1):
        offsets.append(len(pdf))
        pdf.extend(f"{index} 0 obj\n".encode("ascii"))
        pdf.extend(obj)
        pdf.extend(b"\nendobj\n")
    xref_start = len(pdf)
    pdf.extend(f"xref\n0 {len(objects) + 1}\n".encode("ascii"))
    pdf.extend(b"0000000000 65535 f \n")
    for offset in offsets:
        pdf.extend(f"{offset:010d} 00000 n \n".encode("ascii"))
    pdf.extend(
        (
            f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n"
            f"startxref\n{xref_start}\n%%EOF\n"
        ).encode("ascii")
    )
    return bytes(pdf)




def _write_pdf(html_content: str) -> bytes:
    from weasyprint import HTML

    return HTML(string=html_content).write_pdf()


def render_invoice_pdf(invoice: Invoice) -> bytes:
    try:
        return _write_pdf(render_invoice_html(invoice))
    except Exception as exc:
        logger.warning(
            "WeasyPrint export failed for invoice %s; writing plain PDF: %s",
            invoice.id,
            exc,
        )
    texts, rules = _layout(invoice)
    return _build_pdf(texts, rules)
