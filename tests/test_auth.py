import database


def test_health(client):
    assert client.get('/health').get_json()['status'] == 'ok'
    resp = client.get('/api/health')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['status'] == 'healthy'
    assert body['database']['missing_tables'] == []


def test_health_reports_database_error(client, monkeypatch):
    def broken(self, sql, params=()):
        raise database.DatabaseError('server closed the connection')
    monkeypatch.setattr(database.Connection, 'execute', broken)
    resp = client.get('/api/health')
    assert resp.status_code == 503
    assert resp.get_json()['status'] == 'unhealthy'


def test_security_headers(client):
    resp = client.get('/health')
    assert resp.headers['X-Content-Type-Options'] == 'nosniff'
    assert resp.headers['X-Frame-Options'] == 'DENY'
    assert 'Content-Security-Policy' in resp.headers


def test_api_requires_login(client):
    resp = client.get('/api/customers')
    assert resp.status_code == 401
    assert resp.get_json() == {'error': 'Not authenticated'}


def test_unknown_api_route_is_json(auth_client):
    resp = auth_client.get('/api/nothing-here')
    assert resp.status_code == 404
    assert resp.get_json() == {'error': 'Not found'}


def test_index_redirects_to_login(client):
    resp = client.get('/')
    assert resp.status_code == 302
    assert '/login' in resp.headers['Location']


def test_form_login(client):
    resp = client.post('/login', data={'username': 'admin', 'password': 'admin'})
    assert resp.status_code == 302
    assert client.get('/').status_code == 200


def test_form_login_failure(client):
    resp = client.post('/login', data={'username': 'admin', 'password': 'nope'})
    assert b'Invalid username or password' in resp.data


class TestApiLogin:
    def test_missing_fields(self, client):
        assert client.post('/api/auth/login', json={'username': 'admin'}).status_code == 400

    def test_wrong_password(self, client):
        resp = client.post('/api/auth/login', json={'username': 'admin', 'password': 'wrong'})
        assert resp.status_code == 401
        assert resp.get_json()['error'] == 'Invalid username or password'

    def test_success(self, client):
        resp = client.post('/api/auth/login', json={'username': 'admin', 'password': 'admin'})
        assert resp.status_code == 200
        user = resp.get_json()['user']
        assert user['role'] == 'admin'
        assert 'password_hash' not in user
        me = client.get('/api/auth/me').get_json()
        assert me['username'] == 'admin'
        assert me['last_login']

    def test_logout(self, auth_client):
        assert auth_client.post('/api/auth/logout').status_code == 200
        assert auth_client.get('/api/auth/me').status_code == 401


class TestSignup:
    payload = {'username': 'jane_s', 'email': 'Jane@Acme.example', 'password': 'secret1',
               'first_name': 'Jane', 'last_name': 'Smith'}

    def test_creates_user_and_session(self, client):
        resp = client.post('/api/auth/signup', json=self.payload)
        assert resp.status_code == 201
        assert resp.get_json()['user']['role'] == 'user'
        assert client.get('/api/auth/me').get_json()['email'] == 'jane@acme.example'

    def test_all_fields_required(self, client):
        resp = client.post('/api/auth/signup', json=dict(self.payload, email=''))
        assert resp.status_code == 400
        assert resp.get_json()['details'] == ['All fields are required']

    def test_numeric_field(self, client):
        resp = client.post('/api/auth/signup', json=dict(self.payload, first_name=42))
        assert resp.status_code == 400
        assert resp.get_json()['details'] == ['All fields must be text']

    def test_duplicates(self, client):
        client.post('/api/auth/signup', json=self.payload)
        resp = client.post('/api/auth/signup', json=dict(self.payload, email='other@acme.example'))
        assert resp.get_json()['error'] == 'Username already exists'
        resp = client.post('/api/auth/signup', json=dict(self.payload, username='jane2'))
        assert resp.get_json()['error'] == 'Email already registered'


class TestChangePassword:
    def test_change(self, auth_client, client):
        resp = auth_client.post('/api/auth/change-password',
                                json={'current_password': 'admin', 'new_password': 'better-pass'})
        assert resp.status_code == 200
        auth_client.post('/api/auth/logout')
        assert client.post('/api/auth/login', json={'username': 'admin', 'password': 'better-pass'}).status_code == 200

    def test_wrong_current(self, auth_client):
        resp = auth_client.post('/api/auth/change-password',
                                json={'current_password': 'nope', 'new_password': 'better-pass'})
        assert resp.status_code == 401

    def test_too_short(self, auth_client):
        resp = auth_client.post('/api/auth/change-password',
                                json={'current_password': 'admin', 'new_password': 'abc'})
        assert resp.status_code == 400


class TestUserAdmin:
    def test_list_is_admin_only(self, auth_client, user_client):
        assert user_client.get('/api/auth/users').status_code == 403
        users = auth_client.get('/api/auth/users').get_json()
        assert {u['username'] for u in users} == {'admin', 'staff'}

    def test_deactivate_user(self, auth_client, user_client):
        staff = next(u for u in auth_client.get('/api/auth/users').get_json() if u['username'] == 'staff')
        resp = auth_client.put(f"/api/auth/users/{staff['id']}", json={'is_active': False})
        assert resp.get_json()['is_active'] == 0
        assert user_client.post('/api/auth/logout').status_code == 200
        resp = user_client.post('/api/auth/login', json={'username': 'staff', 'password': 'secret1'})
        assert resp.status_code == 401

    def test_cannot_demote_self(self, auth_client):
        me = auth_client.get('/api/auth/me').get_json()
        resp = auth_client.put(f"/api/auth/users/{me['id']}", json={'role': 'user'})
        assert resp.status_code == 400

    def test_unknown_user(self, auth_client):
        assert auth_client.put('/api/auth/users/999', json={'role': 'user'}).status_code == 404
