"""
Estimate and invoice PDFs.

Usage:
    from pdf_generator import estimate_pdf, invoice_pdf
    pdf_bytes = estimate_pdf(estimate, settings)
    pdf_bytes = invoice_pdf(invoice, settings, paid_stamp=True)

``estimate``/``invoice`` are the dicts the API returns for a single document
(header fields, customer and project columns, and ``line_items``).
"""

import io
import logging
from datetime import datetime

from reportlab.lib.colors import Color, HexColor
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

log = logging.getLogger(__name__)

BLACK = HexColor('#000000')
WHITE = HexColor('#FFFFFF')
GRAY = HexColor('#555555')
HEADER_FILL = Color(0.94, 0.94, 0.94)
ALT_ROW = Color(0.97, 0.97, 0.97)
STAMP_RED = Color(0.85, 0.1, 0.1, alpha=0.55)

PAGE_W, PAGE_H = letter
MARGIN_L = 48
MARGIN_R = 48
MARGIN_T = 48
MARGIN_B = 60
CONTENT_W = PAGE_W - MARGIN_L - MARGIN_R

COL_DESC = MARGIN_L + 4
COL_QTY = MARGIN_L + 330
COL_RATE = MARGIN_L + 420
COL_AMOUNT = PAGE_W - MARGIN_R - 4
DESC_WIDTH = 315


def money(value, symbol='$'):
    return f'{symbol}{float(value or 0):,.2f}'


def fmt_date(value):
    if not value:
        return ''
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').strftime('%m/%d/%Y')
    except ValueError:
        return str(value)


def _draw_company(c, settings, title, number):
    y = PAGE_H - MARGIN_T
    c.setFillColor(BLACK)
    c.setFont('Helvetica-Bold', 18)
    c.drawString(MARGIN_L, y - 16, settings.get('company_name') or '')
    c.setFont('Helvetica', 9)
    c.setFillColor(GRAY)
    rx = PAGE_W - MARGIN_R
    c.drawRightString(rx, y - 8, settings.get('company_address') or '')
    c.drawRightString(rx, y - 20, f"{settings.get('company_phone') or ''}  |  {settings.get('company_email') or ''}")
    c.drawRightString(rx, y - 32, settings.get('company_website') or '')

    y -= 70
    c.setFillColor(BLACK)
    c.setFont('Helvetica-Bold', 20)
    c.drawString(MARGIN_L, y, f'{title} {number or ""}'.strip())
    return y - 20


def _draw_parties(c, y, doc, meta_lines):
    c.setFont('Helvetica-Bold', 9)
    c.drawString(MARGIN_L, y, 'CUSTOMER')
    c.drawString(MARGIN_L + 300, y, 'DETAILS')
    c.setFont('Helvetica', 9)
    state_zip = ' '.join(filter(None, [doc.get('state'), doc.get('zip_code')]))
    customer_lines = [
        doc.get('company_name') or '',
        doc.get('contact_name') or '',
        doc.get('address') or '',
        ', '.join(filter(None, [doc.get('city'), state_zip])),
        doc.get('phone') or '',
        doc.get('email') or '',
    ]
    ly = y - 13
    for line in [l for l in customer_lines if l]:
        c.drawString(MARGIN_L, ly, line[:60])
        ly -= 12
    my = y - 13
    for label, value in meta_lines:
        c.drawString(MARGIN_L + 300, my, f'{label}: {value}')
        my -= 12
    y = min(ly, my) - 8
    if doc.get('project_name'):
        c.setFont('Helvetica-Bold', 9)
        c.drawString(MARGIN_L, y, f"Project: {doc['project_name']}")
        y -= 18
    return y


def _draw_table_header(c, y):
    row_h = 18
    c.setFillColor(HEADER_FILL)
    c.rect(MARGIN_L, y - row_h, CONTENT_W, row_h, fill=1, stroke=0)
    c.setFillColor(BLACK)
    c.setFont('Helvetica-Bold', 9)
    c.drawString(COL_DESC, y - 13, 'DESCRIPTION')
    c.drawRightString(COL_QTY + 40, y - 13, 'QTY')
    c.drawRightString(COL_RATE + 50, y - 13, 'RATE')
    c.drawRightString(COL_AMOUNT, y - 13, 'AMOUNT')
    return y - row_h


def _draw_line_items(c, y, items, symbol, redraw_page):
    for idx, item in enumerate(items):
        lines = simpleSplit(item.get('item_description') or '', 'Helvetica', 9, DESC_WIDTH) or ['']
        row_h = 6 + 11 * len(lines)
        if y - row_h < MARGIN_B + 90:
            c.showPage()
            y = redraw_page()
        if idx % 2 == 1:
            c.setFillColor(ALT_ROW)
            c.rect(MARGIN_L, y - row_h, CONTENT_W, row_h, fill=1, stroke=0)
        c.setFillColor(BLACK)
        c.setFont('Helvetica', 9)
        ty = y - 12
        for line in lines:
            c.drawString(COL_DESC, ty, line)
            ty -= 11
        qty = float(item.get('quantity') or 0)
        rate = float(item.get('unit_rate') or 0)
        c.drawRightString(COL_QTY + 40, y - 12, f'{qty:g}')
        c.drawRightString(COL_RATE + 50, y - 12, money(rate, symbol))
        c.drawRightString(COL_AMOUNT, y - 12, money(item.get('line_total', qty * rate), symbol))
        y -= row_h
    return y


def _draw_totals(c, y, doc, symbol, extra=()):
    y -= 10
    c.setStrokeColor(GRAY)
    c.line(MARGIN_L + 300, y, PAGE_W - MARGIN_R, y)
    rows = [
        ('Subtotal', money(doc.get('subtotal'), symbol)),
        (f"Tax ({float(doc.get('tax_rate') or 0) * 100:.2f}%)", money(doc.get('tax_amount'), symbol)),
        ('Total', money(doc.get('total_amount'), symbol)),
    ] + list(extra)
    for label, value in rows:
        y -= 14
        c.setFont('Helvetica-Bold' if label in ('Total', 'Balance Due') else 'Helvetica', 10)
        c.drawRightString(COL_RATE + 50, y, f'{label}:')
        c.drawRightString(COL_AMOUNT, y, value)
    return y - 10


def _draw_notes(c, y, heading, text):
    if not text:
        return y
    c.setFont('Helvetica-Bold', 9)
    c.drawString(MARGIN_L, y - 10, heading)
    c.setFont('Helvetica', 8)
    y -= 22
    for line in simpleSplit(text, 'Helvetica', 8, CONTENT_W):
        if y < MARGIN_B:
            c.showPage()
            y = PAGE_H - MARGIN_T
            c.setFont('Helvetica', 8)
        c.drawString(MARGIN_L, y, line)
        y -= 10
    return y - 6


def _draw_footer(c, text):
    if text:
        c.setFont('Helvetica-Oblique', 8)
        c.setFillColor(GRAY)
        c.drawCentredString(PAGE_W / 2, MARGIN_B - 24, text)
        c.setFillColor(BLACK)


def _draw_paid_stamp(c):
    c.saveState()
    c.translate(PAGE_W / 2, PAGE_H / 2)
    c.rotate(30)
    c.setStrokeColor(STAMP_RED)
    c.setFillColor(STAMP_RED)
    c.setLineWidth(5)
    c.roundRect(-150, -45, 300, 90, 12, fill=0, stroke=1)
    c.setFont('Helvetica-Bold', 72)
    c.drawCentredString(0, -25, 'PAID')
    c.restoreState()


def estimate_pdf(estimate, settings):
    symbol = settings.get('currency_symbol') or '$'
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setTitle(f"Estimate {estimate.get('estimate_number', '')}")

    def new_page():
        y = _draw_company(c, settings, 'ESTIMATE', estimate.get('estimate_number'))
        return _draw_table_header(c, y)

    y = _draw_company(c, settings, 'ESTIMATE', estimate.get('estimate_number'))
    y = _draw_parties(c, y, estimate, [
        ('Date', fmt_date(estimate.get('estimate_date'))),
        ('Valid Until', fmt_date(estimate.get('valid_until_date'))),
        ('Status', estimate.get('status') or 'Draft'),
    ])
    y = _draw_table_header(c, y)
    y = _draw_line_items(c, y, estimate.get('line_items') or [], symbol, new_page)
    y = _draw_totals(c, y, estimate, symbol)
    y = _draw_notes(c, y, 'EXCLUSIONS', estimate.get('exclusions'))
    _draw_notes(c, y, 'NOTES', estimate.get('notes_text'))
    _draw_footer(c, settings.get('invoice_footer'))
    c.save()
    return buf.getvalue()


def invoice_pdf(invoice, settings, paid_stamp=False):
    symbol = settings.get('currency_symbol') or '$'
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setTitle(f"Invoice {invoice.get('invoice_number', '')}")

    def new_page():
        if paid_stamp:
            _draw_paid_stamp(c)
        y = _draw_company(c, settings, 'INVOICE', invoice.get('invoice_number'))
        return _draw_table_header(c, y)

    if paid_stamp:
        _draw_paid_stamp(c)
    y = _draw_company(c, settings, 'INVOICE', invoice.get('invoice_number'))
    y = _draw_parties(c, y, invoice, [
        ('Invoice Date', fmt_date(invoice.get('invoice_date'))),
        ('Due Date', fmt_date(invoice.get('due_date'))),
        ('Status', invoice.get('status') or ''),
    ])
    y = _draw_table_header(c, y)
    y = _draw_line_items(c, y, invoice.get('line_items') or [], symbol, new_page)
    paid = float(invoice.get('paid_amount') or 0)
    balance = float(invoice.get('total_amount') or 0) - paid
    y = _draw_totals(c, y, invoice, symbol, extra=[
        ('Paid', money(paid, symbol)),
        ('Balance Due', money(max(balance, 0), symbol)),
    ])
    _draw_notes(c, y, 'NOTES', invoice.get('notes'))
    _draw_footer(c, settings.get('invoice_footer'))
    c.save()
    log.debug('Rendered invoice %s (%s)', invoice.get('invoice_number'), 'paid' if paid_stamp else 'open')
    return buf.getvalue()
