"""Money and numbering rules shared by estimates, invoices, payments,
pay terms and contracts.
"""

import re
from datetime import date, datetime, timedelta

from database import now_stamp

ESTIMATE_PREFIX = 'EST'
INVOICE_PREFIX = 'INV'
CONTRACT_PREFIX = 'CON'
FIRST_ESTIMATE_NUMBER = 1150
FIRST_INVOICE_NUMBER = 1150
FIRST_CONTRACT_NUMBER = 1

PAID_TOLERANCE = 0.01

AGING_BUCKETS = ('Current', '1-30', '31-60', '61-90', 'Over 90')

STANDARD_PAY_TERMS = {
    '100_at_acceptance': [
        {'term_type': 'Due Now', 'term_name': 'Due Now', 'percentage': 100.0,
         'description': '100% of estimate total due at acceptance',
         'due_description': 'Due upon acceptance'},
    ],
    '75_25_split': [
        {'term_type': 'Due Now', 'term_name': 'Due Now', 'percentage': 75.0,
         'description': '75% of estimate total due at acceptance',
         'due_description': 'Due upon acceptance'},
        {'term_type': 'Permit Submittal', 'term_name': 'Due prior to permit submittal', 'percentage': 25.0,
         'description': '25% of estimate total (remaining balance) due prior to permit submittal or submittal to engineer',
         'due_description': 'Due prior to permit submittal'},
    ],
}


def round_money(value):
    return round(float(value or 0), 2)


# ─── Document Numbers ────────────────────────────────────────────

def format_number(prefix, n):
    return f'{prefix}-{n:04d}'


def next_number(conn, table, column, prefix, floor):
    """Highest existing ``PREFIX-NNNN`` plus one, never below ``floor``."""
    pattern = re.compile(rf'^{prefix}-(\d+)$')
    highest = None
    for r in conn.execute(f'SELECT {column} FROM {table}').fetchall():
        m = pattern.match(r[0] or '')
        if m:
            n = int(m.group(1))
            highest = n if highest is None else max(highest, n)
    n = floor if highest is None else max(highest + 1, floor)
    return format_number(prefix, n)


def next_estimate_number(conn):
    return next_number(conn, 'estimates', 'estimate_number', ESTIMATE_PREFIX, FIRST_ESTIMATE_NUMBER)


def next_invoice_number(conn):
    return next_number(conn, 'invoices', 'invoice_number', INVOICE_PREFIX, FIRST_INVOICE_NUMBER)


def next_contract_number(conn):
    return next_number(conn, 'contracts', 'contract_number', CONTRACT_PREFIX, FIRST_CONTRACT_NUMBER)


# ─── Notes and Line Items ────────────────────────────────────────

def combine_notes(exclusions, notes):
    exclusions = (exclusions or '').strip()
    notes = (notes or '').strip()
    if exclusions and notes:
        return f'{exclusions}\n\n{notes}'
    return exclusions or notes


def split_notes(text):
    """Inverse of combine_notes: exclusions before the first blank line, notes after."""
    text = (text or '').strip()
    if not text:
        return {'exclusions': '', 'notes': ''}
    parts = re.split(r'\r?\n\s*\r?\n', text, maxsplit=1)
    if len(parts) == 1:
        return {'exclusions': parts[0].strip(), 'notes': ''}
    return {'exclusions': parts[0].strip(), 'notes': parts[1].strip()}


def describe_line_item(description, notes=None):
    description = (description or '').strip()
    notes = (notes or '').strip()
    if description and notes:
        return f'{description}: {notes}'
    return description or notes


def normalize_line_items(items):
    """Turn posted line items into rows ready for insert, in sort order.

    Accepts ``item_description``/``description``, ``notes``, ``quantity``,
    ``unit_rate``/``rate`` and an optional ``line_item_master_id``.
    Raises ValueError on a non-numeric quantity or rate.
    """
    rows = []
    for idx, item in enumerate(items or []):
        description = describe_line_item(item.get('item_description') or item.get('description'),
                                         item.get('notes'))
        quantity = float(item.get('quantity') if item.get('quantity') not in (None, '') else 1)
        rate = item.get('unit_rate', item.get('rate'))
        unit_rate = float(rate if rate not in (None, '') else 0)
        rows.append({
            'line_item_master_id': item.get('line_item_master_id') or None,
            'pay_term_id': item.get('pay_term_id') or None,
            'item_description': description,
            'quantity': quantity,
            'unit_rate': unit_rate,
            'line_total': round_money(quantity * unit_rate),
            'sort_order': int(item.get('sort_order', idx + 1) or idx + 1),
        })
    rows.sort(key=lambda r: r['sort_order'])
    return rows


def compute_totals(items, tax_rate):
    subtotal = round_money(sum(i['quantity'] * i['unit_rate'] for i in items))
    tax_rate = float(tax_rate or 0)
    tax_amount = round_money(subtotal * tax_rate)
    return {
        'subtotal': subtotal,
        'tax_rate': tax_rate,
        'tax_amount': tax_amount,
        'total_amount': round_money(subtotal + tax_amount),
    }


# ─── Payments ────────────────────────────────────────────────────

def payment_status(total, paid, current_status=None):
    balance = round_money(total) - round_money(paid)
    if paid and balance <= PAID_TOLERANCE:
        return 'Paid'
    if paid and paid > 0:
        return 'Partial'
    if current_status in ('Draft', 'Cancelled'):
        return current_status
    return 'Sent'


def refresh_invoice_payments(conn, invoice_id):
    """Recompute paid_amount and status of an invoice from its payments."""
    inv = conn.execute('SELECT total_amount, status FROM invoices WHERE id = ?', (invoice_id,)).fetchone()
    if not inv:
        return None
    paid = round_money(conn.execute(
        'SELECT COALESCE(SUM(amount), 0) FROM payments WHERE invoice_id = ?', (invoice_id,)
    ).fetchone()[0])
    status = payment_status(inv['total_amount'], paid, inv['status'])
    conn.execute(
        'UPDATE invoices SET paid_amount = ?, status = ?, modified_at = ? WHERE id = ?',
        (paid, status, now_stamp(), invoice_id)
    )
    return {'paid_amount': paid, 'status': status,
            'balance_due': round_money((inv['total_amount'] or 0) - paid)}


def balance_due(invoice):
    return round_money((invoice['total_amount'] or 0) - (invoice['paid_amount'] or 0))


# ─── Pay Terms ───────────────────────────────────────────────────

def pay_term_amount(term, estimate_total):
    if term['percentage'] not in (None, ''):
        return round_money(float(estimate_total or 0) * float(term['percentage']) / 100)
    return round_money(term['fixed_amount'])


def standard_pay_terms(schedule):
    if schedule not in STANDARD_PAY_TERMS:
        raise ValueError(f'Unknown pay term schedule: {schedule}')
    return [dict(t, sort_order=i + 1) for i, t in enumerate(STANDARD_PAY_TERMS[schedule])]


def pay_terms_text(terms, estimate_total):
    lines = []
    for t in terms:
        amount = pay_term_amount(t, estimate_total)
        label = t['term_name'] or t['term_type']
        if t['percentage'] not in (None, ''):
            lines.append(f"{label}: {float(t['percentage']):g}% (${amount:,.2f})")
        else:
            lines.append(f'{label}: ${amount:,.2f}')
    return '\n'.join(lines)


# ─── Projects ────────────────────────────────────────────────────

def reorder_priorities(conn, project_id, priority):
    """Make room for ``priority`` by pushing every other project at or below it down one."""
    priority = int(priority or 0)
    if priority <= 0:
        return 0
    taken = conn.execute(
        'SELECT COUNT(*) FROM projects WHERE priority = ? AND id != ?', (priority, project_id or 0)
    ).fetchone()[0]
    if not taken:
        return 0
    return conn.execute(
        'UPDATE projects SET priority = priority + 1 WHERE priority >= ? AND id != ?',
        (priority, project_id or 0)
    ).rowcount


# ─── Dates and Aging ─────────────────────────────────────────────

def to_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except ValueError:
        return None


def add_days(start, days):
    start = to_date(start) or date.today()
    return (start + timedelta(days=int(days))).isoformat()


def days_overdue(due_date, today=None):
    due = to_date(due_date)
    if due is None:
        return 0
    today = today or date.today()
    return max((today - due).days, 0)


def aging_bucket(days):
    if days <= 0:
        return 'Current'
    if days <= 30:
        return '1-30'
    if days <= 60:
        return '31-60'
    if days <= 90:
        return '61-90'
    return 'Over 90'
