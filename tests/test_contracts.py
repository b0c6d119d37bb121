import pytest


@pytest.fixture
def contract(auth_client, make_estimate):
    estimate = make_estimate()
    auth_client.post('/api/payterms/create-standard',
                     json={'project_id': estimate['project_id'], 'schedule': '75_25_split'})
    resp = auth_client.post('/api/contracts', json={'project_id': estimate['project_id']})
    assert resp.status_code == 201
    return resp.get_json()


@pytest.fixture
def sent_contract(auth_client, contract, smtp):
    resp = auth_client.post(f"/api/contracts/{contract['id']}/send-to-customer")
    assert resp.status_code == 200
    token = resp.get_json()['signing_url'].split('token=')[1]
    return dict(contract, token=token)


def sign(client, contract_id, token, **overrides):
    payload = {'token': token, 'client_signature': 'Jane Smith', 'client_signature_date': '2025-03-01'}
    payload.update(overrides)
    return client.post(f'/api/public/contracts/{contract_id}/signature', json=payload,
                       headers={'X-Forwarded-For': '203.0.113.9, 10.0.0.1'})


class TestContracts:
    def test_defaults(self, contract):
        assert contract['contract_number'] == 'CON-0001'
        assert contract['contract_type'] == 'Design Contract'
        assert contract['status'] == 'Draft'
        assert contract['contract_amount'] == 1000.0
        assert contract['pay_terms'] == 'Due Now: 75% ($750.00)\nDue prior to permit submittal: 25% ($250.00)'
        assert 'signing_token' not in contract

    def test_requires_existing_project(self, auth_client):
        assert auth_client.post('/api/contracts', json={}).status_code == 400
        assert auth_client.post('/api/contracts', json={'project_id': 999}).status_code == 404

    def test_update_and_list(self, auth_client, contract):
        resp = auth_client.put(f"/api/contracts/{contract['id']}", json={'contract_amount': 1200, 'status': 'Signed'})
        body = resp.get_json()
        assert body['contract_amount'] == 1200
        assert body['status'] == 'Draft'
        assert [c['id'] for c in auth_client.get('/api/contracts').get_json()] == [contract['id']]
        assert auth_client.get(f"/api/projects/{contract['project_id']}/contracts").get_json()[0]['id'] == contract['id']

    def test_update_amount_must_be_number(self, auth_client, contract):
        url = f"/api/contracts/{contract['id']}"
        assert auth_client.put(url, json={'contract_amount': 'lots'}).status_code == 400
        assert auth_client.put(url, json={'contract_amount': -5}).status_code == 400
        body = auth_client.put(url, json={'contract_amount': '1500.50'}).get_json()
        assert body['contract_amount'] == 1500.5

    def test_full_html(self, auth_client, contract):
        resp = auth_client.get(f"/api/contracts/{contract['id']}/full-html")
        assert resp.status_code == 200
        assert resp.mimetype == 'text/html'
        assert b'CON-0001' in resp.data
        assert b'Acme Holdings' in resp.data
        assert b'$1,000.00' in resp.data

    def test_delete_draft(self, auth_client, contract):
        assert auth_client.delete(f"/api/contracts/{contract['id']}").status_code == 204
        assert auth_client.get(f"/api/contracts/{contract['id']}").status_code == 404


class TestSigning:
    def test_send_emails_link(self, auth_client, sent_contract, smtp):
        assert len(sent_contract['token']) > 20
        assert smtp.outbox[0]['To'] == 'jane@acme.example'
        assert auth_client.get(f"/api/contracts/{sent_contract['id']}").get_json()['status'] == 'Sent'

    def test_resend_keeps_token(self, auth_client, sent_contract):
        resp = auth_client.post(f"/api/contracts/{sent_contract['id']}/send-to-customer")
        assert resp.get_json()['signing_url'].endswith(sent_contract['token'])

    def test_send_without_email(self, auth_client, make_customer, make_project, smtp):
        project = make_project(make_customer(email='')['id'])
        contract = auth_client.post('/api/contracts', json={'project_id': project['id']}).get_json()
        assert auth_client.post(f"/api/contracts/{contract['id']}/send-to-customer").status_code == 400

    def test_public_page(self, app, sent_contract):
        public = app.test_client()
        resp = public.get(f"/contract-signing/{sent_contract['id']}?token={sent_contract['token']}")
        assert resp.status_code == 200
        assert b'CON-0001' in resp.data
        assert public.get(f"/contract-signing/{sent_contract['id']}?token=wrong").status_code == 404
        assert public.get(f"/contract-signing/{sent_contract['id']}").status_code == 404

    def test_unsent_contract_has_no_public_page(self, app, contract):
        assert app.test_client().get(f"/contract-signing/{contract['id']}?token=x").status_code == 404

    def test_sign(self, app, auth_client, sent_contract, smtp):
        public = app.test_client()
        resp = sign(public, sent_contract['id'], sent_contract['token'])
        assert resp.status_code == 200
        signed = resp.get_json()['contract']
        assert signed['status'] == 'Signed'
        assert signed['client_signature'] == 'Jane Smith'
        assert signed['signature_ip_address'] == '203.0.113.9'
        assert signed['signed_date']
        assert smtp.outbox[-1]['To'] == 'contact@yourcompany.com'

    def test_sign_requires_fields(self, app, sent_contract):
        resp = sign(app.test_client(), sent_contract['id'], sent_contract['token'], client_signature='')
        assert resp.status_code == 400
        resp = sign(app.test_client(), sent_contract['id'], sent_contract['token'], client_signature_date='someday')
        assert resp.status_code == 400

    def test_sign_with_wrong_token(self, app, sent_contract):
        assert sign(app.test_client(), sent_contract['id'], 'forged').status_code == 404

    def test_sign_twice(self, app, sent_contract):
        public = app.test_client()
        sign(public, sent_contract['id'], sent_contract['token'])
        resp = sign(public, sent_contract['id'], sent_contract['token'])
        assert resp.status_code == 400

    def test_signed_contract_is_locked(self, app, auth_client, sent_contract):
        sign(app.test_client(), sent_contract['id'], sent_contract['token'])
        cid = sent_contract['id']
        assert auth_client.put(f'/api/contracts/{cid}', json={'contract_amount': 1}).status_code == 400
        assert auth_client.delete(f'/api/contracts/{cid}').status_code == 400
        assert auth_client.post(f'/api/contracts/{cid}/send-to-customer').status_code == 400
