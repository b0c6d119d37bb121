import io

import pdfplumber
import pytest

import pdf_generator
from settings_helper import DEFAULT_SETTINGS

SETTINGS = dict(DEFAULT_SETTINGS, company_name='Omega Design Studio', currency_symbol='$')


def pdf_text(data):
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        return '\n'.join(page.extract_text() or '' for page in pdf.pages), len(pdf.pages)


@pytest.fixture
def invoice():
    return {
        'invoice_number': 'INV-1150', 'invoice_date': '2025-03-01', 'due_date': '2025-03-31',
        'status': 'Paid', 'company_name': 'Acme Holdings', 'contact_name': 'Jane Smith',
        'city': 'Spokane', 'state': 'WA', 'zip_code': '99201', 'project_name': 'Garage Addition',
        'subtotal': 1000.0, 'tax_rate': 0.1, 'tax_amount': 100.0, 'total_amount': 1100.0,
        'paid_amount': 1100.0, 'notes': 'Thank you.',
        'line_items': [{'item_description': 'Design', 'quantity': 10, 'unit_rate': 100, 'line_total': 1000}],
    }


def test_money_and_dates():
    assert pdf_generator.money(1234.5) == '$1,234.50'
    assert pdf_generator.money(None, '€') == '€0.00'
    assert pdf_generator.fmt_date('2025-03-01') == '03/01/2025'
    assert pdf_generator.fmt_date('') == ''


def test_invoice_pdf_contents(invoice):
    text, _ = pdf_text(pdf_generator.invoice_pdf(invoice, SETTINGS))
    assert 'INVOICE INV-1150' in text
    assert 'Omega Design Studio' in text
    assert 'Spokane, WA 99201' in text
    assert '$1,100.00' in text


def stamp_text(data):
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        return ''.join(c['text'] for c in pdf.pages[0].chars if c['size'] > 60)


def test_paid_stamp(invoice):
    assert stamp_text(pdf_generator.invoice_pdf(invoice, SETTINGS, paid_stamp=True)) == 'PAID'
    assert stamp_text(pdf_generator.invoice_pdf(invoice, SETTINGS)) == ''


def test_estimate_pdf(invoice):
    estimate = dict(invoice, estimate_number='EST-1150', estimate_date='2025-03-01', valid_until_date='2025-03-31',
                    status='Draft', exclusions='Permit fees are not included.', notes_text='Two revisions.')
    text, _ = pdf_text(pdf_generator.estimate_pdf(estimate, SETTINGS))
    assert 'ESTIMATE EST-1150' in text
    assert 'EXCLUSIONS' in text
    assert 'Permit fees are not included.' in text
    assert 'Two revisions.' in text


def test_long_estimate_spans_pages(invoice):
    items = [{'item_description': f'Sheet {n} drafting', 'quantity': 1, 'unit_rate': 10, 'line_total': 10}
             for n in range(80)]
    text, pages = pdf_text(pdf_generator.estimate_pdf(dict(invoice, estimate_number='EST-1151', line_items=items),
                                                      SETTINGS))
    assert pages > 1
    assert 'Sheet 79 drafting' in text
