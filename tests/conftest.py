import smtplib

import pytest

import database
import settings_helper
import app as app_module


class FakeSMTP:
    """Stands in for smtplib.SMTP; records what would have been sent."""

    outbox = []
    fail_login = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b'Username and Password not accepted')

    def send_message(self, msg):
        FakeSMTP.outbox.append(msg)


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setenv('DB_TYPE', 'sqlite')
    monkeypatch.delenv('DATABASE_URL', raising=False)
    for var in ('ADMIN_USERNAME', 'ADMIN_PASSWORD', 'ADMIN_EMAIL'):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(database, 'DB_PATH', str(tmp_path / 'test.db'))
    database.init_db()
    settings_helper.clear_cache()
    yield database
    settings_helper.clear_cache()


@pytest.fixture
def app(db, tmp_path):
    app_module.app.config.update(TESTING=True, UPLOAD_DIR=str(tmp_path / 'uploads'))
    return app_module.app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    resp = client.post('/api/auth/login', json={'username': 'admin', 'password': 'admin'})
    assert resp.status_code == 200
    return client


@pytest.fixture
def user_client(app, auth_client):
    auth_client.post('/api/auth/users', json={
        'username': 'staff', 'email': 'staff@example.com', 'password': 'secret1',
        'first_name': 'Sam', 'last_name': 'Staff', 'role': 'user',
    })
    other = app.test_client()
    resp = other.post('/api/auth/login', json={'username': 'staff', 'password': 'secret1'})
    assert resp.status_code == 200
    return other


@pytest.fixture
def smtp(monkeypatch):
    monkeypatch.setenv('EMAIL_USER', 'office@example.com')
    monkeypatch.setenv('EMAIL_APP_PASSWORD', 'app-password')
    monkeypatch.delenv('EMAIL_FROM', raising=False)
    FakeSMTP.outbox = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr(smtplib, 'SMTP', FakeSMTP)
    return FakeSMTP


@pytest.fixture
def no_email(monkeypatch):
    monkeypatch.delenv('EMAIL_USER', raising=False)
    monkeypatch.delenv('EMAIL_APP_PASSWORD', raising=False)


# ─── Record factories ────────────────────────────────────────────

@pytest.fixture
def make_customer(auth_client):
    def make(**overrides):
        payload = {'company_name': 'Acme Holdings', 'contact_name': 'Jane Smith',
                   'email': 'jane@acme.example', 'phone': '(555) 201-3344'}
        payload.update(overrides)
        resp = auth_client.post('/api/customers', json=payload)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()
    return make


@pytest.fixture
def make_project(auth_client, make_customer):
    def make(customer_id=None, **overrides):
        if customer_id is None:
            customer_id = make_customer()['id']
        payload = {'customer_id': customer_id, 'project_name': 'Garage Addition', 'total_amount': 5000}
        payload.update(overrides)
        resp = auth_client.post('/api/projects', json=payload)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()
    return make


@pytest.fixture
def make_estimate(auth_client, make_project):
    def make(project_id=None, items=None, tax_rate=0, **overrides):
        if project_id is None:
            project_id = make_project()['id']
        payload = {
            'project_id': project_id,
            'tax_rate': tax_rate,
            'line_items': items or [{'item_description': 'Design', 'quantity': 10, 'unit_rate': 100}],
        }
        payload.update(overrides)
        resp = auth_client.post('/api/estimates', json=payload)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()
    return make


@pytest.fixture
def make_invoice(auth_client, make_project):
    def make(project_id=None, items=None, **overrides):
        if project_id is None:
            project_id = make_project()['id']
        payload = {
            'project_id': project_id,
            'line_items': items or [{'item_description': 'Design', 'quantity': 1, 'unit_rate': 1000}],
        }
        payload.update(overrides)
        resp = auth_client.post('/api/invoices', json=payload)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()
    return make
