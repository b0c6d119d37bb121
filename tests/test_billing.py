from datetime import date

import pytest

import billing
import database


class TestNumbers:
    def test_first_numbers(self, db):
        conn = database.get_db()
        assert billing.next_estimate_number(conn) == 'EST-1150'
        assert billing.next_invoice_number(conn) == 'INV-1150'
        assert billing.next_contract_number(conn) == 'CON-0001'
        conn.close()

    def test_continues_from_highest(self, db):
        conn = database.get_db()
        project = conn.insert("INSERT INTO projects (customer_id, project_name) VALUES (?, ?)",
                              (conn.insert("INSERT INTO customers (company_name) VALUES ('A')"), 'P'))
        for number in ('EST-1200', 'EST-1163', 'legacy-9999'):
            conn.execute('INSERT INTO estimates (project_id, estimate_number) VALUES (?, ?)', (project, number))
        conn.commit()
        assert billing.next_estimate_number(conn) == 'EST-1201'
        conn.close()

    def test_never_below_floor(self, db):
        conn = database.get_db()
        project = conn.insert("INSERT INTO projects (customer_id, project_name) VALUES (?, ?)",
                              (conn.insert("INSERT INTO customers (company_name) VALUES ('A')"), 'P'))
        conn.execute("INSERT INTO invoices (project_id, invoice_number) VALUES (?, 'INV-0007')", (project,))
        conn.commit()
        assert billing.next_invoice_number(conn) == 'INV-1150'
        conn.close()


class TestNotes:
    def test_combine_and_split(self):
        text = billing.combine_notes('No permits.', 'Call before visiting.')
        assert text == 'No permits.\n\nCall before visiting.'
        assert billing.split_notes(text) == {'exclusions': 'No permits.', 'notes': 'Call before visiting.'}

    def test_only_exclusions(self):
        assert billing.split_notes('No permits.') == {'exclusions': 'No permits.', 'notes': ''}
        assert billing.split_notes(None) == {'exclusions': '', 'notes': ''}


class TestLineItems:
    def test_normalize(self):
        rows = billing.normalize_line_items([
            {'description': 'Site Visit', 'quantity': '', 'rate': '150'},
            {'item_description': 'Design', 'notes': 'first floor', 'quantity': 2.5, 'unit_rate': 75},
        ])
        assert rows[0]['item_description'] == 'Site Visit'
        assert rows[0]['quantity'] == 1.0
        assert rows[0]['line_total'] == 150.0
        assert rows[1]['item_description'] == 'Design: first floor'
        assert rows[1]['line_total'] == 187.5
        assert [r['sort_order'] for r in rows] == [1, 2]

    def test_bad_number(self):
        with pytest.raises(ValueError):
            billing.normalize_line_items([{'item_description': 'x', 'quantity': 'lots'}])

    def test_totals(self):
        items = billing.normalize_line_items([{'item_description': 'Design', 'quantity': 2, 'unit_rate': 100}])
        assert billing.compute_totals(items, 0.1) == {
            'subtotal': 200.0, 'tax_rate': 0.1, 'tax_amount': 20.0, 'total_amount': 220.0,
        }

    def test_totals_without_tax(self):
        assert billing.compute_totals([], None)['total_amount'] == 0.0


class TestPaymentStatus:
    @pytest.mark.parametrize('total, paid, current, expected', [
        (100, 0, 'Draft', 'Draft'),
        (100, 0, 'Cancelled', 'Cancelled'),
        (100, 0, 'Partial', 'Sent'),
        (100, 40, 'Sent', 'Partial'),
        (100, 100, 'Partial', 'Paid'),
    ])
    def test_status(self, total, paid, current, expected):
        assert billing.payment_status(total, paid, current) == expected

    def test_balance_due(self):
        assert billing.balance_due({'total_amount': 250.5, 'paid_amount': None}) == 250.5


class TestPayTerms:
    def test_percentage_of_estimate(self):
        assert billing.pay_term_amount({'percentage': 75, 'fixed_amount': None}, 1000) == 750.0

    def test_fixed_amount(self):
        assert billing.pay_term_amount({'percentage': None, 'fixed_amount': 320.5}, 1000) == 320.5

    def test_standard_schedules(self):
        terms = billing.standard_pay_terms('75_25_split')
        assert [t['percentage'] for t in terms] == [75.0, 25.0]
        assert [t['sort_order'] for t in terms] == [1, 2]
        assert sum(t['percentage'] for t in billing.standard_pay_terms('100_at_acceptance')) == 100.0

    def test_unknown_schedule(self):
        with pytest.raises(ValueError):
            billing.standard_pay_terms('50_50')

    def test_terms_text(self):
        terms = [{'term_name': 'Due Now', 'term_type': 'Due Now', 'percentage': 75, 'fixed_amount': None},
                 {'term_name': 'Final', 'term_type': 'Milestone', 'percentage': None, 'fixed_amount': 250}]
        assert billing.pay_terms_text(terms, 1000) == 'Due Now: 75% ($750.00)\nFinal: $250.00'


class TestDates:
    def test_add_days(self):
        assert billing.add_days('2025-01-31', 30) == '2025-03-02'

    def test_days_overdue(self):
        today = date(2025, 3, 1)
        assert billing.days_overdue('2025-02-01', today) == 28
        assert billing.days_overdue('2025-04-01', today) == 0
        assert billing.days_overdue(None, today) == 0

    @pytest.mark.parametrize('days, bucket', [
        (0, 'Current'), (1, '1-30'), (30, '1-30'), (31, '31-60'), (61, '61-90'), (91, 'Over 90'),
    ])
    def test_aging_bucket(self, days, bucket):
        assert billing.aging_bucket(days) == bucket

    def test_to_date_rejects_garbage(self):
        assert billing.to_date('soon') is None


class TestPriorities:
    def _project(self, conn, customer, name, priority):
        return conn.insert('INSERT INTO projects (customer_id, project_name, priority) VALUES (?,?,?)',
                           (customer, name, priority))

    def test_shifts_only_when_taken(self, db):
        conn = database.get_db()
        customer = conn.insert("INSERT INTO customers (company_name) VALUES ('A')")
        a = self._project(conn, customer, 'A', 1)
        b = self._project(conn, customer, 'B', 3)
        assert billing.reorder_priorities(conn, None, 2) == 0
        assert billing.reorder_priorities(conn, None, 1) == 2
        rows = {r['id']: r['priority'] for r in conn.execute('SELECT id, priority FROM projects').fetchall()}
        conn.close()
        assert rows == {a: 2, b: 4}

    def test_zero_means_unprioritized(self, db):
        conn = database.get_db()
        assert billing.reorder_priorities(conn, None, 0) == 0
        conn.close()
