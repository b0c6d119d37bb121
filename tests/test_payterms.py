import pytest


@pytest.fixture
def estimate(make_estimate):
    return make_estimate()


def create_standard(client, project_id, schedule='75_25_split', **extra):
    return client.post('/api/payterms/create-standard', json=dict(project_id=project_id, schedule=schedule, **extra))


class TestStandardTerms:
    def test_split_against_estimate(self, auth_client, estimate):
        resp = create_standard(auth_client, estimate['project_id'])
        assert resp.status_code == 201
        terms = resp.get_json()
        assert [t['percentage'] for t in terms] == [75.0, 25.0]
        assert [t['amount'] for t in terms] == [750.0, 250.0]
        assert all(t['estimate_id'] == estimate['id'] for t in terms)
        assert all(t['status'] == 'Pending' for t in terms)

    def test_only_once_per_project(self, auth_client, estimate):
        create_standard(auth_client, estimate['project_id'])
        resp = create_standard(auth_client, estimate['project_id'], '100_at_acceptance')
        assert resp.status_code == 400

    def test_unknown_schedule(self, auth_client, estimate):
        assert create_standard(auth_client, estimate['project_id'], 'weekly').status_code == 400

    def test_without_estimate_uses_project_total(self, auth_client, make_project):
        project = make_project(total_amount=2000)
        terms = create_standard(auth_client, project['id'], '100_at_acceptance').get_json()
        assert terms[0]['estimate_id'] is None
        assert terms[0]['amount'] == 2000.0

    def test_lookups(self, auth_client, estimate):
        terms = create_standard(auth_client, estimate['project_id']).get_json()
        assert len(auth_client.get(f"/api/payterms/project/{estimate['project_id']}").get_json()) == 2
        assert len(auth_client.get(f"/api/payterms/estimate/{estimate['id']}").get_json()) == 2
        assert len(auth_client.get('/api/payterms').get_json()) == 2
        assert auth_client.get(f"/api/payterms/{terms[0]['id']}").get_json()['term_name'] == 'Due Now'
        assert auth_client.get('/api/payterms/999').status_code == 404


class TestCustomTerms:
    def test_create_multiple(self, auth_client, estimate):
        resp = auth_client.post('/api/payterms/create-multiple', json={
            'project_id': estimate['project_id'],
            'terms': [{'term_name': 'Draft plans', 'amount': 400},
                      {'term_name': 'Final plans', 'fixed_amount': 600, 'due_description': 'On delivery'}],
        })
        assert resp.status_code == 201
        terms = resp.get_json()
        assert [t['amount'] for t in terms] == [400.0, 600.0]
        assert [t['term_type'] for t in terms] == ['Milestone', 'Milestone']
        assert terms[0]['sort_order'] < terms[1]['sort_order']

    def test_create_multiple_rejects_bad_amount(self, auth_client, estimate):
        resp = auth_client.post('/api/payterms/create-multiple', json={
            'project_id': estimate['project_id'], 'terms': [{'term_name': 'x', 'amount': 'lots'}],
        })
        assert resp.status_code == 400
        assert auth_client.get(f"/api/payterms/project/{estimate['project_id']}").get_json() == []

    def test_single_term_needs_amount(self, auth_client, estimate):
        resp = auth_client.post('/api/payterms', json={
            'project_id': estimate['project_id'], 'term_type': 'Custom', 'term_name': 'Deposit',
        })
        assert resp.status_code == 400

    def test_single_term_and_update(self, auth_client, estimate):
        resp = auth_client.post('/api/payterms', json={
            'project_id': estimate['project_id'], 'estimate_id': estimate['id'],
            'term_type': 'Custom', 'term_name': 'Deposit', 'percentage': 10,
        })
        assert resp.status_code == 201
        term = resp.get_json()
        assert term['amount'] == 100.0
        updated = auth_client.put(f"/api/payterms/{term['id']}", json={'percentage': '', 'fixed_amount': 125}).get_json()
        assert updated['amount'] == 125.0

    def test_mark_paid(self, auth_client, estimate):
        term = create_standard(auth_client, estimate['project_id']).get_json()[0]
        body = auth_client.post(f"/api/payterms/{term['id']}/mark-paid", json={'payment_date': '2025-02-01'}).get_json()
        assert body['status'] == 'Paid'
        assert body['due_date'] == '2025-02-01'


class TestInvoicingTerms:
    def test_invoice_from_terms(self, auth_client, estimate):
        terms = create_standard(auth_client, estimate['project_id']).get_json()
        resp = auth_client.post('/api/invoices', json={'pay_term_ids': [terms[0]['id']]})
        assert resp.status_code == 201
        invoice = resp.get_json()
        assert invoice['project_id'] == estimate['project_id']
        assert invoice['estimate_id'] == estimate['id']
        assert invoice['total_amount'] == 750.0
        assert invoice['line_items'][0]['pay_term_id'] == terms[0]['id']
        assert auth_client.get(f"/api/payterms/{terms[0]['id']}").get_json()['status'] == 'Invoiced'

    def test_term_cannot_be_invoiced_twice(self, auth_client, estimate):
        term = create_standard(auth_client, estimate['project_id']).get_json()[0]
        auth_client.post('/api/invoices', json={'pay_term_ids': [term['id']]})
        resp = auth_client.post('/api/invoices', json={'pay_term_ids': [term['id']]})
        assert resp.status_code == 400
        assert 'already invoiced' in resp.get_json()['error']

    def test_invoiced_term_cannot_be_deleted(self, auth_client, estimate):
        term = create_standard(auth_client, estimate['project_id']).get_json()[0]
        auth_client.post('/api/invoices', json={'pay_term_ids': [term['id']]})
        assert auth_client.delete(f"/api/payterms/{term['id']}").status_code == 400

    def test_deleting_invoice_releases_terms(self, auth_client, estimate):
        term = create_standard(auth_client, estimate['project_id']).get_json()[0]
        invoice = auth_client.post('/api/invoices', json={'pay_term_ids': [term['id']]}).get_json()
        assert auth_client.delete(f"/api/invoices/{invoice['id']}").status_code == 200
        assert auth_client.get(f"/api/payterms/{term['id']}").get_json()['status'] == 'Pending'
        assert auth_client.delete(f"/api/payterms/{term['id']}").status_code == 200

    def test_terms_from_another_project(self, auth_client, estimate, make_project):
        term = create_standard(auth_client, estimate['project_id']).get_json()[0]
        other = make_project()
        resp = auth_client.post('/api/invoices', json={'project_id': other['id'], 'pay_term_ids': [term['id']]})
        assert resp.status_code == 400
