from flask import Flask, render_template, request, jsonify, send_file, send_from_directory, session, redirect, url_for, Response
from functools import wraps
import io
import json
import logging
import os
import secrets
import socket
import sqlite3
import time
from datetime import date, datetime, timedelta
from dotenv import load_dotenv
load_dotenv()
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

from database import init_db, get_db, close_connections, check_health, now_stamp, DatabaseError
from logging_config import setup_logging
import billing
import data_import
import mailer
import pdf_generator
import settings_helper
from validators import validate_customer, validate_project, validate_signup, validate_password, sanitize_payload, is_valid_email

log = logging.getLogger(__name__)

app = Flask(__name__)
app.json.sort_keys = False
app.config['MAX_CONTENT_LENGTH'] = data_import.MAX_UPLOAD_BYTES
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['UPLOAD_DIR'] = os.environ.get('UPLOAD_DIR', os.path.join(os.path.dirname(os.path.abspath(__file__)), 'uploads'))
app.secret_key = os.environ.get('SECRET_KEY', 'backoffice-secret-key-change-in-prod')
app.teardown_appcontext(close_connections)

STARTED_AT = time.time()

SIGNATURE_EXTENSIONS = {'.png': 'image/png', '.jpg': 'image/jpeg', '.jpeg': 'image/jpeg', '.gif': 'image/gif'}
MAX_SIGNATURE_BYTES = 2 * 1024 * 1024

CUSTOMER_FIELDS = ('company_name', 'contact_name', 'email', 'email2', 'phone', 'phone2',
                   'address', 'city', 'state', 'zip_code', 'notes')
PROJECT_FIELDS = ('customer_id', 'project_name', 'project_description', 'project_type', 'project_address',
                  'project_city', 'project_state', 'project_zip', 'project_contact_name',
                  'project_contact_phone', 'project_contact_email', 'start_date', 'end_date',
                  'actual_completion_date', 'status', 'priority', 'total_amount', 'notes')
CONTRACT_FIELDS = ('contract_type', 'contract_amount', 'start_date', 'estimated_completion_date',
                   'pay_terms', 'terms_text', 'estimate_id')
PAY_TERM_FIELDS = ('term_type', 'term_name', 'description', 'percentage', 'fixed_amount',
                   'due_date', 'due_description', 'status', 'sort_order', 'estimate_id')
LINE_ITEM_FIELDS = ('item_code', 'item_name', 'item_description', 'category', 'unit_of_measure', 'standard_rate')
OPEN_INVOICE_FILTER = "status NOT IN ('Paid', 'Cancelled')"

# ─── Auth Helpers ────────────────────────────────────────────────

def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            return redirect(url_for('login'))
        return f(*args, **kwargs)
    return decorated

def api_login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Not authenticated'}), 401
        return f(*args, **kwargs)
    return decorated

def api_role_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if 'user_id' not in session:
                return jsonify({'error': 'Not authenticated'}), 401
            if session.get('role') not in roles:
                return jsonify({'error': 'Access denied'}), 403
            return f(*args, **kwargs)
        return decorated
    return decorator

@app.context_processor
def inject_user():
    if 'user_id' in session:
        return {
            'current_user': {
                'id': session['user_id'],
                'username': session.get('username', ''),
                'display_name': session.get('display_name', ''),
                'role': session.get('role', 'user'),
            }
        }
    return {'current_user': None}

def _start_session(user):
    session.clear()
    session.permanent = True
    session['user_id'] = user['id']
    session['username'] = user['username']
    session['display_name'] = f"{user['first_name'] or ''} {user['last_name'] or ''}".strip() or user['username']
    session['role'] = user['role']

def _public_user(user):
    u = dict(user)
    u.pop('password_hash', None)
    return u

def _authenticate(conn, username, password):
    user = conn.execute('SELECT * FROM users WHERE username = ? AND is_active = 1', (username,)).fetchone()
    if user and check_password_hash(user['password_hash'], password):
        conn.execute('UPDATE users SET last_login = ? WHERE id = ?', (now_stamp(), user['id']))
        conn.commit()
        return user
    return None

# ─── Request Plumbing ────────────────────────────────────────────

def _json():
    return request.get_json(silent=True) or {}

def _validation_error(errors):
    return jsonify({'error': 'Validation failed', 'details': errors}), 400

def _today():
    return date.today().isoformat()

def _client_ip():
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or ''

def _base_url():
    return (os.environ.get('BASE_URL') or request.host_url).rstrip('/')

@app.after_request
def security_headers(response):
    response.headers['Content-Security-Policy'] = (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; frame-ancestors 'none'"
    )
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    return response

@app.errorhandler(404)
def not_found(e):
    if request.path.startswith('/api/'):
        return jsonify({'error': 'Not found'}), 404
    return 'Not found', 404

@app.errorhandler(413)
def too_large(e):
    return jsonify({'error': 'File too large'}), 413

@app.errorhandler(sqlite3.Error)
@app.errorhandler(DatabaseError)
def database_error(e):
    log.exception('Database error on %s %s', request.method, request.path)
    return jsonify({'error': 'Database error'}), 500

@app.errorhandler(500)
def server_error(e):
    log.error('Unhandled error on %s %s: %s', request.method, request.path, e)
    return jsonify({'error': 'Internal server error'}), 500

@app.template_filter('money')
def money_filter(value):
    symbol = settings_helper.get_setting('currency_symbol', '$')
    return f'{symbol}{float(value or 0):,.2f}'

@app.template_filter('long_date')
def long_date_filter(value):
    d = billing.to_date(value)
    return d.strftime('%B %d, %Y').replace(' 0', ' ') if d else 'TBD'

@app.template_filter('short_date')
def short_date_filter(value):
    return pdf_generator.fmt_date(value)

# ─── Pages ───────────────────────────────────────────────────────

@app.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        username = request.form.get('username', '').strip()
        password = request.form.get('password', '')
        conn = get_db()
        user = _authenticate(conn, username, password)
        conn.close()
        if user:
            _start_session(user)
            return redirect(url_for('index'))
        return render_template('login.html', error='Invalid username or password')
    return render_template('login.html')

@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('login'))

@app.route('/')
@login_required
def index():
    return render_template('index.html')

@app.route('/uploads/signatures/<path:filename>')
def signature_image(filename):
    return send_from_directory(os.path.join(app.config['UPLOAD_DIR'], 'signatures'), filename)

# ─── Health ──────────────────────────────────────────────────────

@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'timestamp': datetime.now().isoformat(timespec='seconds')})

@app.route('/api/health')
def api_health():
    db = check_health()
    healthy = db['connected'] and not db['missing_tables']
    return jsonify({
        'status': 'healthy' if healthy else 'unhealthy',
        'database': db,
        'uptime_seconds': round(time.time() - STARTED_AT, 1),
        'timestamp': datetime.now().isoformat(timespec='seconds'),
    }), 200 if healthy else 503

# ─── Auth API ────────────────────────────────────────────────────

@app.route('/api/auth/login', methods=['POST'])
def api_login():
    data = _json()
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')
    if not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400
    conn = get_db()
    user = _authenticate(conn, username, password)
    conn.close()
    if not user:
        log.info('Failed login for %r from %s', username, _client_ip())
        return jsonify({'error': 'Invalid username or password'}), 401
    _start_session(user)
    return jsonify({'message': 'Login successful', 'user': _public_user(user)})

@app.route('/api/auth/signup', methods=['POST'])
def api_signup():
    data = _json()
    errors = validate_signup(data)
    if errors:
        return _validation_error(errors)
    username = data['username'].strip()
    email = data['email'].strip().lower()
    conn = get_db()
    if conn.execute('SELECT id FROM users WHERE username = ?', (username,)).fetchone():
        conn.close()
        return jsonify({'error': 'Username already exists'}), 400
    if conn.execute('SELECT id FROM users WHERE LOWER(email) = ?', (email,)).fetchone():
        conn.close()
        return jsonify({'error': 'Email already registered'}), 400
    uid = conn.insert(
        'INSERT INTO users (username, email, password_hash, first_name, last_name, role) VALUES (?,?,?,?,?,?)',
        (username, email, generate_password_hash(data['password']),
         data['first_name'].strip(), data['last_name'].strip(), 'user')
    )
    conn.commit()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (uid,)).fetchone()
    conn.close()
    _start_session(user)
    log.info('New account %r', username)
    return jsonify({'message': 'Account created', 'user': _public_user(user)}), 201

@app.route('/api/auth/logout', methods=['POST'])
def api_logout():
    session.clear()
    return jsonify({'message': 'Logged out'})

@app.route('/api/auth/me')
@api_login_required
def api_me():
    conn = get_db()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (session['user_id'],)).fetchone()
    conn.close()
    if not user:
        session.clear()
        return jsonify({'error': 'Not authenticated'}), 401
    return jsonify(_public_user(user))

@app.route('/api/auth/change-password', methods=['POST'])
@api_login_required
def api_change_password():
    data = _json()
    current = str(data.get('current_password') or '')
    new = str(data.get('new_password') or '')
    if not current or not new:
        return jsonify({'error': 'Current and new password are required'}), 400
    errors = validate_password(new)
    if errors:
        return jsonify({'error': errors[0]}), 400
    conn = get_db()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (session['user_id'],)).fetchone()
    if not user or not check_password_hash(user['password_hash'], current):
        conn.close()
        return jsonify({'error': 'Current password is incorrect'}), 401
    conn.execute('UPDATE users SET password_hash = ? WHERE id = ?', (generate_password_hash(new), user['id']))
    conn.commit()
    conn.close()
    return jsonify({'message': 'Password changed'})

@app.route('/api/auth/users')
@api_role_required('admin')
def api_users():
    conn = get_db()
    rows = conn.execute('SELECT * FROM users ORDER BY username').fetchall()
    conn.close()
    return jsonify([_public_user(r) for r in rows])

@app.route('/api/auth/users', methods=['POST'])
@api_role_required('admin')
def api_create_user():
    data = _json()
    errors = validate_signup(data)
    role = data.get('role', 'user')
    if role not in ('admin', 'user'):
        errors.append('Role must be admin or user')
    if errors:
        return _validation_error(errors)
    conn = get_db()
    if conn.execute('SELECT id FROM users WHERE username = ? OR LOWER(email) = ?',
                    (data['username'].strip(), data['email'].strip().lower())).fetchone():
        conn.close()
        return jsonify({'error': 'Username or email already exists'}), 400
    uid = conn.insert(
        'INSERT INTO users (username, email, password_hash, first_name, last_name, role) VALUES (?,?,?,?,?,?)',
        (data['username'].strip(), data['email'].strip().lower(), generate_password_hash(data['password']),
         data['first_name'].strip(), data['last_name'].strip(), role)
    )
    conn.commit()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (uid,)).fetchone()
    conn.close()
    return jsonify(_public_user(user)), 201

@app.route('/api/auth/users/<int:uid>', methods=['PUT'])
@api_role_required('admin')
def api_update_user(uid):
    data = _json()
    conn = get_db()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (uid,)).fetchone()
    if not user:
        conn.close()
        return jsonify({'error': 'User not found'}), 404
    if uid == session['user_id'] and (data.get('is_active') in (0, False) or data.get('role', 'admin') != 'admin'):
        conn.close()
        return jsonify({'error': 'You cannot deactivate or demote your own account'}), 400
    fields, values = [], []
    for f in ('email', 'first_name', 'last_name', 'role', 'is_active'):
        if f in data:
            if f == 'role' and data[f] not in ('admin', 'user'):
                conn.close()
                return jsonify({'error': 'Role must be admin or user'}), 400
            if f == 'email' and not is_valid_email(data[f] or ''):
                conn.close()
                return jsonify({'error': 'Please enter a valid email address'}), 400
            fields.append(f'{f} = ?')
            values.append(int(bool(data[f])) if f == 'is_active' else data[f])
    if data.get('password'):
        errors = validate_password(data['password'])
        if errors:
            conn.close()
            return jsonify({'error': errors[0]}), 400
        fields.append('password_hash = ?')
        values.append(generate_password_hash(data['password']))
    if fields:
        values.append(uid)
        conn.execute(f'UPDATE users SET {", ".join(fields)} WHERE id = ?', values)
        conn.commit()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (uid,)).fetchone()
    conn.close()
    return jsonify(_public_user(user))

# ─── Dashboard ───────────────────────────────────────────────────

@app.route('/api/dashboard')
@api_login_required
def api_dashboard():
    conn = get_db()
    today = _today()
    month_start = date.today().replace(day=1).isoformat()
    customers = conn.execute('SELECT COUNT(*) FROM customers').fetchone()[0]
    active_projects = conn.execute(
        "SELECT COUNT(*) FROM projects WHERE status NOT IN ('Completed', 'Cancelled')"
    ).fetchone()[0]
    open_estimates = conn.execute(
        "SELECT COUNT(*) FROM estimates WHERE status IN ('Draft', 'Sent')"
    ).fetchone()[0]
    open_invoices = conn.execute(
        'SELECT total_amount, paid_amount, due_date FROM invoices WHERE ' + OPEN_INVOICE_FILTER
    ).fetchall()
    payments_month = conn.execute(
        'SELECT COALESCE(SUM(amount), 0) FROM payments WHERE payment_date >= ?', (month_start,)
    ).fetchone()[0]
    recent = conn.execute(
        '''SELECT TOP 5 i.id, i.invoice_number, i.status, i.total_amount, i.paid_amount, i.due_date, c.company_name
           FROM invoices i JOIN projects p ON p.id = i.project_id JOIN customers c ON c.id = p.customer_id
           ORDER BY i.id DESC'''
    ).fetchall()
    priorities = conn.execute(
        '''SELECT p.id, p.project_name, p.priority, p.status, c.company_name FROM projects p
           JOIN customers c ON c.id = p.customer_id
           WHERE p.priority > 0 ORDER BY p.priority'''
    ).fetchall()
    conn.close()
    outstanding = sum(billing.balance_due(i) for i in open_invoices)
    overdue = [i for i in open_invoices if (i['due_date'] or '9999') < today and billing.balance_due(i) > billing.PAID_TOLERANCE]
    return jsonify({
        'customers': customers,
        'active_projects': active_projects,
        'open_estimates': open_estimates,
        'outstanding_balance': round(outstanding, 2),
        'overdue_invoices': len(overdue),
        'overdue_balance': round(sum(billing.balance_due(i) for i in overdue), 2),
        'payments_this_month': round(payments_month or 0, 2),
        'recent_invoices': [dict(r) for r in recent],
        'priority_projects': [dict(r) for r in priorities],
    })

# ─── Customers ───────────────────────────────────────────────────

@app.route('/api/customers')
@api_login_required
def api_customers():
    conn = get_db()
    search = request.args.get('search', '').strip()
    sql = '''SELECT c.*, (SELECT COUNT(*) FROM projects p WHERE p.customer_id = c.id) AS project_count
             FROM customers c'''
    params = ()
    if search:
        like = f'%{search}%'
        sql += (' WHERE LOWER(c.company_name) LIKE LOWER(?) OR LOWER(c.contact_name) LIKE LOWER(?)'
                ' OR LOWER(c.email) LIKE LOWER(?)')
        params = (like, like, like)
    rows = conn.execute(sql + ' ORDER BY c.company_name', params).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

@app.route('/api/customers/<int:cid>')
@api_login_required
def api_customer(cid):
    conn = get_db()
    customer = conn.execute('SELECT * FROM customers WHERE id = ?', (cid,)).fetchone()
    if not customer:
        conn.close()
        return jsonify({'error': 'Customer not found'}), 404
    projects = conn.execute(
        'SELECT * FROM projects WHERE customer_id = ? ORDER BY created_at DESC', (cid,)
    ).fetchall()
    conn.close()
    result = dict(customer)
    result['projects'] = [dict(p) for p in projects]
    return jsonify(result)

@app.route('/api/customers', methods=['POST'])
@api_login_required
def api_create_customer():
    data = sanitize_payload(_json(), CUSTOMER_FIELDS)
    errors = validate_customer(data)
    if errors:
        return _validation_error(errors)
    conn = get_db()
    cid = conn.insert(
        f'INSERT INTO customers ({", ".join(data)}) VALUES ({", ".join("?" for _ in data)})',
        list(data.values())
    )
    conn.commit()
    customer = conn.execute('SELECT * FROM customers WHERE id = ?', (cid,)).fetchone()
    conn.close()
    return jsonify(dict(customer)), 201

@app.route('/api/customers/<int:cid>', methods=['PUT'])
@api_login_required
def api_update_customer(cid):
    data = sanitize_payload(_json(), CUSTOMER_FIELDS)
    conn = get_db()
    existing = conn.execute('SELECT * FROM customers WHERE id = ?', (cid,)).fetchone()
    if not existing:
        conn.close()
        return jsonify({'error': 'Customer not found'}), 404
    errors = validate_customer({**dict(existing), **data})
    if errors:
        conn.close()
        return _validation_error(errors)
    if data:
        fields = [f'{f} = ?' for f in data] + ['modified_at = ?']
        conn.execute(f'UPDATE customers SET {", ".join(fields)} WHERE id = ?',
                     list(data.values()) + [now_stamp(), cid])
        conn.commit()
    customer = conn.execute('SELECT * FROM customers WHERE id = ?', (cid,)).fetchone()
    conn.close()
    return jsonify(dict(customer))

@app.route('/api/customers/<int:cid>', methods=['DELETE'])
@api_login_required
def api_delete_customer(cid):
    conn = get_db()
    if not conn.execute('SELECT id FROM customers WHERE id = ?', (cid,)).fetchone():
        conn.close()
        return jsonify({'error': 'Customer not found'}), 404
    projects = conn.execute('SELECT COUNT(*) FROM projects WHERE customer_id = ?', (cid,)).fetchone()[0]
    if projects:
        conn.close()
        return jsonify({'error': f'Cannot delete customer with {projects} project(s). Delete the projects first.'}), 400
    conn.execute('DELETE FROM customers WHERE id = ?', (cid,))
    conn.commit()
    conn.close()
    return jsonify({'message': 'Customer deleted'})

# ─── Projects ────────────────────────────────────────────────────

PROJECT_SELECT = '''SELECT p.*, c.company_name, c.contact_name, c.email AS customer_email, c.phone AS customer_phone
                    FROM projects p JOIN customers c ON c.id = p.customer_id'''

def _project_payload(raw):
    data = sanitize_payload(raw, PROJECT_FIELDS)
    for f in ('start_date', 'end_date', 'actual_completion_date'):
        if f in data and not data[f]:
            data[f] = None
    return data

def _coerce_project(data):
    if 'priority' in data:
        data['priority'] = int(data['priority'] or 0)
    if 'total_amount' in data:
        data['total_amount'] = float(data['total_amount'] or 0)
    return data

@app.route('/api/projects')
@api_login_required
def api_projects():
    conn = get_db()
    clauses, params = [], []
    if request.args.get('customer_id'):
        clauses.append('p.customer_id = ?')
        params.append(request.args['customer_id'])
    if request.args.get('status'):
        clauses.append('p.status = ?')
        params.append(request.args['status'])
    sql = PROJECT_SELECT + (' WHERE ' + ' AND '.join(clauses) if clauses else '')
    sql += ' ORDER BY CASE WHEN p.priority > 0 THEN 0 ELSE 1 END, p.priority, p.project_name'
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

@app.route('/api/projects/<int:pid>')
@api_login_required
def api_project(pid):
    conn = get_db()
    project = conn.execute(PROJECT_SELECT + ' WHERE p.id = ?', (pid,)).fetchone()
    conn.close()
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    return jsonify(dict(project))

@app.route('/api/projects', methods=['POST'])
@api_login_required
def api_create_project():
    data = _project_payload(_json())
    errors = validate_project(data)
    if errors:
        return _validation_error(errors)
    conn = get_db()
    if not conn.execute('SELECT id FROM customers WHERE id = ?', (data['customer_id'],)).fetchone():
        conn.close()
        return jsonify({'error': 'Customer not found'}), 400
    _coerce_project(data)
    data['status'] = data.get('status') or 'Planning'
    data['priority'] = data.get('priority', 0)
    billing.reorder_priorities(conn, None, data['priority'])
    pid = conn.insert(
        f'INSERT INTO projects ({", ".join(data)}) VALUES ({", ".join("?" for _ in data)})',
        list(data.values())
    )
    conn.commit()
    project = conn.execute(PROJECT_SELECT + ' WHERE p.id = ?', (pid,)).fetchone()
    conn.close()
    return jsonify(dict(project)), 201

@app.route('/api/projects/<int:pid>', methods=['PUT'])
@api_login_required
def api_update_project(pid):
    data = _project_payload(_json())
    conn = get_db()
    existing = conn.execute('SELECT * FROM projects WHERE id = ?', (pid,)).fetchone()
    if not existing:
        conn.close()
        return jsonify({'error': 'Project not found'}), 404
    errors = validate_project({**dict(existing), **data})
    if errors:
        conn.close()
        return _validation_error(errors)
    _coerce_project(data)
    if 'customer_id' in data and not conn.execute('SELECT id FROM customers WHERE id = ?', (data['customer_id'],)).fetchone():
        conn.close()
        return jsonify({'error': 'Customer not found'}), 400
    if 'priority' in data and data['priority'] != existing['priority']:
        billing.reorder_priorities(conn, pid, data['priority'])
    if data:
        fields = [f'{f} = ?' for f in data] + ['modified_at = ?']
        conn.execute(f'UPDATE projects SET {", ".join(fields)} WHERE id = ?',
                     list(data.values()) + [now_stamp(), pid])
    conn.commit()
    project = conn.execute(PROJECT_SELECT + ' WHERE p.id = ?', (pid,)).fetchone()
    conn.close()
    return jsonify(dict(project))

@app.route('/api/projects/<int:pid>', methods=['DELETE'])
@api_login_required
def api_delete_project(pid):
    conn = get_db()
    if not conn.execute('SELECT id FROM projects WHERE id = ?', (pid,)).fetchone():
        conn.close()
        return jsonify({'error': 'Project not found'}), 404
    blockers = []
    for table, label in (('estimates', 'estimate'), ('invoices', 'invoice'), ('contracts', 'contract')):
        n = conn.execute(f'SELECT COUNT(*) FROM {table} WHERE project_id = ?', (pid,)).fetchone()[0]
        if n:
            blockers.append(f'{n} {label}(s)')
    if blockers:
        conn.close()
        return jsonify({'error': f'Cannot delete project with {", ".join(blockers)}'}), 400
    conn.execute('DELETE FROM pay_terms WHERE project_id = ?', (pid,))
    conn.execute('DELETE FROM projects WHERE id = ?', (pid,))
    conn.commit()
    conn.close()
    return jsonify({'message': 'Project deleted'})

@app.route('/api/projects/<int:pid>/estimates')
@api_login_required
def api_project_estimates(pid):
    conn = get_db()
    rows = conn.execute('SELECT * FROM estimates WHERE project_id = ? ORDER BY estimate_date DESC, id DESC', (pid,)).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

@app.route('/api/projects/<int:pid>/invoices')
@api_login_required
def api_project_invoices(pid):
    conn = get_db()
    rows = conn.execute('SELECT * FROM invoices WHERE project_id = ? ORDER BY invoice_date DESC, id DESC', (pid,)).fetchall()
    conn.close()
    return jsonify([dict(r, balance_due=billing.balance_due(r)) for r in rows])

@app.route('/api/projects/<int:pid>/contracts')
@api_login_required
def api_project_contracts(pid):
    conn = get_db()
    rows = conn.execute('SELECT * FROM contracts WHERE project_id = ? ORDER BY id DESC', (pid,)).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

# ─── Estimates ───────────────────────────────────────────────────

ESTIMATE_SELECT = '''SELECT e.*, p.project_name, p.project_description, p.customer_id,
                            c.company_name, c.contact_name, c.email, c.phone, c.address, c.city, c.state, c.zip_code
                     FROM estimates e JOIN projects p ON p.id = e.project_id JOIN customers c ON c.id = p.customer_id'''

def _load_estimate(conn, eid):
    row = conn.execute(ESTIMATE_SELECT + ' WHERE e.id = ?', (eid,)).fetchone()
    if not row:
        return None
    estimate = dict(row)
    items = conn.execute(
        'SELECT * FROM estimate_line_items WHERE estimate_id = ? ORDER BY sort_order, id', (eid,)
    ).fetchall()
    estimate['line_items'] = [dict(i) for i in items]
    parts = billing.split_notes(estimate['notes'])
    estimate['exclusions'] = parts['exclusions']
    estimate['notes_text'] = parts['notes']
    return estimate

def _insert_line_items(conn, table, parent_column, parent_id, items):
    for item in items:
        if table == 'estimate_line_items':
            conn.execute(
                '''INSERT INTO estimate_line_items (estimate_id, line_item_master_id, item_description, quantity, unit_rate, line_total, sort_order)
                   VALUES (?,?,?,?,?,?,?)''',
                (parent_id, item.get('line_item_master_id'), item['item_description'], item['quantity'],
                 item['unit_rate'], item['line_total'], item['sort_order'])
            )
        else:
            conn.execute(
                '''INSERT INTO invoice_line_items (invoice_id, pay_term_id, item_description, quantity, unit_rate, line_total, sort_order)
                   VALUES (?,?,?,?,?,?,?)''',
                (parent_id, item.get('pay_term_id'), item['item_description'], item['quantity'],
                 item['unit_rate'], item['line_total'], item['sort_order'])
            )

@app.route('/api/estimates')
@api_login_required
def api_estimates():
    conn = get_db()
    clauses, params = [], []
    for arg, col in (('project_id', 'e.project_id'), ('status', 'e.status')):
        if request.args.get(arg):
            clauses.append(f'{col} = ?')
            params.append(request.args[arg])
    sql = ESTIMATE_SELECT + (' WHERE ' + ' AND '.join(clauses) if clauses else '') + ' ORDER BY e.id DESC'
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

@app.route('/api/estimates/<int:eid>')
@api_login_required
def api_estimate(eid):
    conn = get_db()
    estimate = _load_estimate(conn, eid)
    conn.close()
    if not estimate:
        return jsonify({'error': 'Estimate not found'}), 404
    return jsonify(estimate)

@app.route('/api/estimates', methods=['POST'])
@api_login_required
def api_create_estimate():
    data = _json()
    if not data.get('project_id'):
        return jsonify({'error': 'Project is required'}), 400
    settings = settings_helper.get_settings()
    try:
        items = billing.normalize_line_items(data.get('line_items'))
        tax_rate = float(data['tax_rate']) if data.get('tax_rate') not in (None, '') else settings['tax_rate']
    except (TypeError, ValueError):
        return jsonify({'error': 'Quantities, rates and tax rate must be numbers'}), 400
    totals = billing.compute_totals(items, tax_rate)
    exclusions = data['exclusions'] if 'exclusions' in data else settings['default_exclusions']
    notes = billing.combine_notes(exclusions, data.get('notes'))

    conn = get_db()
    if not conn.execute('SELECT id FROM projects WHERE id = ?', (data['project_id'],)).fetchone():
        conn.close()
        return jsonify({'error': 'Project not found'}), 400
    number = billing.next_estimate_number(conn)
    estimate_date = data.get('estimate_date') or _today()
    eid = conn.insert(
        '''INSERT INTO estimates (project_id, estimate_number, estimate_date, valid_until_date, status,
           subtotal, tax_rate, tax_amount, total_amount, notes) VALUES (?,?,?,?,?,?,?,?,?,?)''',
        (data['project_id'], number, estimate_date,
         data.get('valid_until_date') or billing.add_days(estimate_date, 30),
         data.get('status') or 'Draft', totals['subtotal'], totals['tax_rate'],
         totals['tax_amount'], totals['total_amount'], notes)
    )
    _insert_line_items(conn, 'estimate_line_items', 'estimate_id', eid, items)
    conn.commit()
    estimate = _load_estimate(conn, eid)
    conn.close()
    log.info('Created estimate %s for project %s', number, data['project_id'])
    return jsonify(estimate), 201

@app.route('/api/estimates/<int:eid>', methods=['PUT'])
@api_login_required
def api_update_estimate(eid):
    data = _json()
    conn = get_db()
    existing = conn.execute('SELECT * FROM estimates WHERE id = ?', (eid,)).fetchone()
    if not existing:
        conn.close()
        return jsonify({'error': 'Estimate not found'}), 404
    try:
        tax_rate = float(data['tax_rate']) if data.get('tax_rate') not in (None, '') else existing['tax_rate']
        if 'line_items' in data:
            items = billing.normalize_line_items(data['line_items'])
        else:
            items = [dict(r) for r in conn.execute(
                'SELECT * FROM estimate_line_items WHERE estimate_id = ? ORDER BY sort_order, id', (eid,)
            ).fetchall()]
    except (TypeError, ValueError):
        conn.close()
        return jsonify({'error': 'Quantities, rates and tax rate must be numbers'}), 400
    totals = billing.compute_totals(items, tax_rate)

    notes = existing['notes']
    if 'exclusions' in data or 'notes' in data:
        parts = billing.split_notes(existing['notes'])
        notes = billing.combine_notes(data.get('exclusions', parts['exclusions']), data.get('notes', parts['notes']))

    conn.execute(
        '''UPDATE estimates SET estimate_date = ?, valid_until_date = ?, status = ?, subtotal = ?, tax_rate = ?,
           tax_amount = ?, total_amount = ?, notes = ?, modified_at = ? WHERE id = ?''',
        (data.get('estimate_date', existing['estimate_date']),
         data.get('valid_until_date', existing['valid_until_date']),
         data.get('status') or existing['status'], totals['subtotal'], totals['tax_rate'],
         totals['tax_amount'], totals['total_amount'], notes, now_stamp(), eid)
    )
    if 'line_items' in data:
        conn.execute('DELETE FROM estimate_line_items WHERE estimate_id = ?', (eid,))
        _insert_line_items(conn, 'estimate_line_items', 'estimate_id', eid, items)
    conn.commit()
    estimate = _load_estimate(conn, eid)
    conn.close()
    return jsonify(estimate)

@app.route('/api/estimates/<int:eid>', methods=['DELETE'])
@api_login_required
def api_delete_estimate(eid):
    conn = get_db()
    if not conn.execute('SELECT id FROM estimates WHERE id = ?', (eid,)).fetchone():
        conn.close()
        return jsonify({'error': 'Estimate not found'}), 404
    invoices = conn.execute('SELECT COUNT(*) FROM invoices WHERE estimate_id = ?', (eid,)).fetchone()[0]
    if invoices:
        conn.close()
        return jsonify({'error': 'Cannot delete an estimate that has invoices'}), 400
    conn.execute('UPDATE pay_terms SET estimate_id = NULL WHERE estimate_id = ?', (eid,))
    conn.execute('UPDATE contracts SET estimate_id = NULL WHERE estimate_id = ?', (eid,))
    conn.execute('DELETE FROM estimate_line_items WHERE estimate_id = ?', (eid,))
    conn.execute('DELETE FROM estimates WHERE id = ?', (eid,))
    conn.commit()
    conn.close()
    return jsonify({'message': 'Estimate deleted'})

@app.route('/api/estimates/<int:eid>/convert-to-invoice', methods=['POST'])
@api_login_required
def api_convert_estimate(eid):
    conn = get_db()
    estimate = _load_estimate(conn, eid)
    if not estimate:
        conn.close()
        return jsonify({'error': 'Estimate not found'}), 404
    if not estimate['line_items']:
        conn.close()
        return jsonify({'error': 'Estimate has no line items'}), 400
    settings = settings_helper.get_settings()
    number = billing.next_invoice_number(conn)
    invoice_date = _today()
    iid = conn.insert(
        '''INSERT INTO invoices (project_id, estimate_id, invoice_number, invoice_date, due_date, status,
           subtotal, tax_rate, tax_amount, total_amount, paid_amount, notes) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)''',
        (estimate['project_id'], eid, number, invoice_date,
         billing.add_days(invoice_date, settings['payment_terms'] or 30), 'Draft',
         estimate['subtotal'], estimate['tax_rate'], estimate['tax_amount'], estimate['total_amount'], 0,
         f"Converted from estimate {estimate['estimate_number']}")
    )
    _insert_line_items(conn, 'invoice_line_items', 'invoice_id', iid, estimate['line_items'])
    conn.execute("UPDATE estimates SET status = 'Approved', modified_at = ? WHERE id = ?", (now_stamp(), eid))
    conn.commit()
    invoice = _load_invoice(conn, iid)
    conn.close()
    log.info('Converted estimate %s to invoice %s', estimate['estimate_number'], number)
    return jsonify({'message': 'Estimate converted to invoice', 'invoice': invoice}), 201

@app.route('/api/estimates/<int:eid>/pdf')
@api_login_required
def api_estimate_pdf(eid):
    conn = get_db()
    estimate = _load_estimate(conn, eid)
    conn.close()
    if not estimate:
        return jsonify({'error': 'Estimate not found'}), 404
    pdf = pdf_generator.estimate_pdf(estimate, settings_helper.get_settings())
    return send_file(io.BytesIO(pdf), mimetype='application/pdf',
                     as_attachment=bool(request.args.get('download')),
                     download_name=f"{estimate['estimate_number']}.pdf")

@app.route('/api/estimates/<int:eid>/preview')
@api_login_required
def api_estimate_preview(eid):
    conn = get_db()
    estimate = _load_estimate(conn, eid)
    conn.close()
    if not estimate:
        return jsonify({'error': 'Estimate not found'}), 404
    return render_template('estimate_preview.html', estimate=estimate, settings=settings_helper.get_settings())

@app.route('/api/estimates/line-items')
@api_login_required
def api_estimate_catalog():
    conn = get_db()
    rows = conn.execute(
        'SELECT * FROM line_items_master WHERE is_active = 1 ORDER BY category, item_name'
    ).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

# ─── Line Item Catalog ───────────────────────────────────────────

@app.route('/api/lineitems')
@api_login_required
def api_line_items():
    conn = get_db()
    rows = conn.execute(
        'SELECT * FROM line_items_master WHERE is_active = 1 ORDER BY category, item_name'
    ).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

@app.route('/api/lineitems', methods=['POST'])
@api_login_required
def api_create_line_item():
    data = sanitize_payload(_json(), LINE_ITEM_FIELDS)
    if not data.get('item_name') or not data.get('item_description'):
        return jsonify({'error': 'Name and description are required'}), 400
    code = data.get('item_code') or data_import.default_item_code(data['item_name'])
    try:
        rate = float(data['standard_rate']) if data.get('standard_rate') not in (None, '') \
            else settings_helper.get_setting('hourly_rate', 75.0)
    except (TypeError, ValueError):
        return jsonify({'error': 'Rate must be a number'}), 400
    conn = get_db()
    if conn.execute('SELECT id FROM line_items_master WHERE item_code = ?', (code,)).fetchone():
        conn.close()
        return jsonify({'error': f'Item code {code} already exists'}), 400
    lid = conn.insert(
        '''INSERT INTO line_items_master (item_code, item_name, item_description, category, unit_of_measure, standard_rate)
           VALUES (?,?,?,?,?,?)''',
        (code, data['item_name'], data['item_description'], data.get('category') or 'Custom',
         data.get('unit_of_measure') or 'hrs', rate)
    )
    conn.commit()
    item = conn.execute('SELECT * FROM line_items_master WHERE id = ?', (lid,)).fetchone()
    conn.close()
    return jsonify(dict(item)), 201

@app.route('/api/lineitems/<int:lid>', methods=['PUT'])
@api_login_required
def api_update_line_item(lid):
    data = sanitize_payload(_json(), LINE_ITEM_FIELDS)
    conn = get_db()
    if not conn.execute('SELECT id FROM line_items_master WHERE id = ?', (lid,)).fetchone():
        conn.close()
        return jsonify({'error': 'Line item not found'}), 404
    if 'item_code' in data and conn.execute(
            'SELECT id FROM line_items_master WHERE item_code = ? AND id != ?', (data['item_code'], lid)).fetchone():
        conn.close()
        return jsonify({'error': f"Item code {data['item_code']} already exists"}), 400
    if data:
        conn.execute(f'UPDATE line_items_master SET {", ".join(f"{f} = ?" for f in data)} WHERE id = ?',
                     list(data.values()) + [lid])
        conn.commit()
    item = conn.execute('SELECT * FROM line_items_master WHERE id = ?', (lid,)).fetchone()
    conn.close()
    return jsonify(dict(item))

@app.route('/api/lineitems/<int:lid>', methods=['DELETE'])
@api_login_required
def api_delete_line_item(lid):
    conn = get_db()
    updated = conn.execute('UPDATE line_items_master SET is_active = 0 WHERE id = ?', (lid,)).rowcount
    conn.commit()
    conn.close()
    if not updated:
        return jsonify({'error': 'Line item not found'}), 404
    return jsonify({'message': 'Line item deactivated'})

# ─── Invoices ────────────────────────────────────────────────────

INVOICE_SELECT = '''SELECT i.*, p.project_name, p.customer_id, e.estimate_number,
                           c.company_name, c.contact_name, c.email, c.phone, c.address, c.city, c.state, c.zip_code
                    FROM invoices i JOIN projects p ON p.id = i.project_id JOIN customers c ON c.id = p.customer_id
                    LEFT JOIN estimates e ON e.id = i.estimate_id'''

def _load_invoice(conn, iid):
    row = conn.execute(INVOICE_SELECT + ' WHERE i.id = ?', (iid,)).fetchone()
    if not row:
        return None
    invoice = dict(row)
    invoice['balance_due'] = billing.balance_due(row)
    invoice['line_items'] = [dict(r) for r in conn.execute(
        'SELECT * FROM invoice_line_items WHERE invoice_id = ? ORDER BY sort_order, id', (iid,)
    ).fetchall()]
    invoice['payments'] = [dict(r) for r in conn.execute(
        'SELECT * FROM payments WHERE invoice_id = ? ORDER BY payment_date, id', (iid,)
    ).fetchall()]
    return invoice

def _pay_term_base(conn, term, project_id):
    if term['estimate_id']:
        est = conn.execute('SELECT total_amount FROM estimates WHERE id = ?', (term['estimate_id'],)).fetchone()
        if est:
            return est['total_amount']
    project = conn.execute('SELECT total_amount FROM projects WHERE id = ?', (project_id,)).fetchone()
    return project['total_amount'] if project else 0

@app.route('/api/invoices')
@api_login_required
def api_invoices():
    conn = get_db()
    clauses, params = [], []
    for arg, col in (('project_id', 'i.project_id'), ('status', 'i.status'), ('estimate_id', 'i.estimate_id')):
        if request.args.get(arg):
            clauses.append(f'{col} = ?')
            params.append(request.args[arg])
    sql = INVOICE_SELECT + (' WHERE ' + ' AND '.join(clauses) if clauses else '') + ' ORDER BY i.id DESC'
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return jsonify([dict(r, balance_due=billing.balance_due(r)) for r in rows])

@app.route('/api/invoices/<int:iid>')
@api_login_required
def api_invoice(iid):
    conn = get_db()
    invoice = _load_invoice(conn, iid)
    conn.close()
    if not invoice:
        return jsonify({'error': 'Invoice not found'}), 404
    return jsonify(invoice)

@app.route('/api/invoices', methods=['POST'])
@api_login_required
def api_create_invoice():
    data = _json()
    conn = get_db()
    project_id = data.get('project_id')
    estimate_id = data.get('estimate_id') or None
    try:
        term_ids = [int(t) for t in data.get('pay_term_ids') or []]
        if term_ids:
            terms = []
            for tid in term_ids:
                term = conn.execute('SELECT * FROM pay_terms WHERE id = ?', (tid,)).fetchone()
                if not term:
                    conn.close()
                    return jsonify({'error': f'Pay term {tid} not found'}), 400
                if term['status'] in ('Invoiced', 'Paid'):
                    conn.close()
                    return jsonify({'error': f"Pay term {term['term_name']} is already {term['status'].lower()}"}), 400
                terms.append(term)
            project_id = project_id or terms[0]['project_id']
            if any(t['project_id'] != int(project_id) for t in terms):
                conn.close()
                return jsonify({'error': 'All pay terms must belong to the invoice project'}), 400
            estimate_id = estimate_id or terms[0]['estimate_id']
            raw_items = [{
                'item_description': t['term_name'],
                'notes': t['description'],
                'quantity': 1,
                'unit_rate': billing.pay_term_amount(t, _pay_term_base(conn, t, project_id)),
                'pay_term_id': t['id'],
            } for t in terms]
        else:
            raw_items = data.get('line_items') or []
        items = billing.normalize_line_items(raw_items)
        tax_rate = float(data.get('tax_rate') or 0)
    except (TypeError, ValueError):
        conn.close()
        return jsonify({'error': 'Pay term ids, quantities, rates and tax rate must be numbers'}), 400

    if not project_id:
        conn.close()
        return jsonify({'error': 'Project is required'}), 400
    if not items:
        conn.close()
        return jsonify({'error': 'At least one line item or pay term is required'}), 400
    if not conn.execute('SELECT id FROM projects WHERE id = ?', (project_id,)).fetchone():
        conn.close()
        return jsonify({'error': 'Project not found'}), 400

    totals = billing.compute_totals(items, tax_rate)
    invoice_date = data.get('invoice_date') or _today()
    due_date = data.get('due_date') or billing.add_days(invoice_date, settings_helper.get_setting('payment_terms', 30))
    number = data.get('invoice_number') or billing.next_invoice_number(conn)
    if conn.execute('SELECT id FROM invoices WHERE invoice_number = ?', (number,)).fetchone():
        conn.close()
        return jsonify({'error': f'Invoice number {number} already exists'}), 400
    iid = conn.insert(
        '''INSERT INTO invoices (project_id, estimate_id, invoice_number, invoice_date, due_date, status,
           subtotal, tax_rate, tax_amount, total_amount, paid_amount, notes) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)''',
        (project_id, estimate_id, number, invoice_date, due_date, data.get('status') or 'Sent',
         totals['subtotal'], totals['tax_rate'], totals['tax_amount'], totals['total_amount'], 0,
         data.get('notes', ''))
    )
    _insert_line_items(conn, 'invoice_line_items', 'invoice_id', iid, items)
    for tid in term_ids:
        conn.execute("UPDATE pay_terms SET status = 'Invoiced', modified_at = ? WHERE id = ?", (now_stamp(), tid))
    conn.commit()
    invoice = _load_invoice(conn, iid)
    conn.close()
    log.info('Created invoice %s (%s)', number, 'pay terms' if term_ids else 'line items')
    return jsonify(invoice), 201

@app.route('/api/invoices/<int:iid>', methods=['PUT'])
@api_login_required
def api_update_invoice(iid):
    data = _json()
    conn = get_db()
    existing = conn.execute('SELECT * FROM invoices WHERE id = ?', (iid,)).fetchone()
    if not existing:
        conn.close()
        return jsonify({'error': 'Invoice not found'}), 404
    if not data.get('line_items'):
        conn.close()
        return jsonify({'error': 'At least one line item is required'}), 400
    try:
        items = billing.normalize_line_items(data['line_items'])
        if data.get('tax_rate') not in (None, ''):
            tax_rate = float(data['tax_rate'])
        elif existing['tax_rate'] is not None:
            tax_rate = existing['tax_rate']
        else:
            tax_rate = settings_helper.get_setting('tax_rate', 0.0875)
    except (TypeError, ValueError):
        conn.close()
        return jsonify({'error': 'Quantities, rates and tax rate must be numbers'}), 400
    totals = billing.compute_totals(items, tax_rate)
    if totals['total_amount'] + billing.PAID_TOLERANCE < (existing['paid_amount'] or 0):
        conn.close()
        return jsonify({'error': 'Invoice total cannot be less than the amount already paid'}), 400
    conn.execute(
        '''UPDATE invoices SET invoice_date = ?, due_date = ?, status = ?, subtotal = ?, tax_rate = ?,
           tax_amount = ?, total_amount = ?, notes = ?, modified_at = ? WHERE id = ?''',
        (data.get('invoice_date', existing['invoice_date']), data.get('due_date', existing['due_date']),
         data.get('status') or existing['status'], totals['subtotal'], totals['tax_rate'],
         totals['tax_amount'], totals['total_amount'], data.get('notes', existing['notes']), now_stamp(), iid)
    )
    conn.execute('DELETE FROM invoice_line_items WHERE invoice_id = ?', (iid,))
    _insert_line_items(conn, 'invoice_line_items', 'invoice_id', iid, items)
    billing.refresh_invoice_payments(conn, iid)
    conn.commit()
    invoice = _load_invoice(conn, iid)
    conn.close()
    return jsonify(invoice)

@app.route('/api/invoices/<int:iid>', methods=['DELETE'])
@api_login_required
def api_delete_invoice(iid):
    conn = get_db()
    if not conn.execute('SELECT id FROM invoices WHERE id = ?', (iid,)).fetchone():
        conn.close()
        return jsonify({'error': 'Invoice not found'}), 404
    payments = conn.execute('SELECT COUNT(*) FROM payments WHERE invoice_id = ?', (iid,)).fetchone()[0]
    if payments:
        conn.close()
        return jsonify({'error': 'Cannot delete an invoice that has payments'}), 400
    conn.execute(
        '''UPDATE pay_terms SET status = 'Pending', modified_at = ?
           WHERE id IN (SELECT pay_term_id FROM invoice_line_items WHERE invoice_id = ? AND pay_term_id IS NOT NULL)''',
        (now_stamp(), iid)
    )
    conn.execute('DELETE FROM invoice_line_items WHERE invoice_id = ?', (iid,))
    conn.execute('DELETE FROM invoices WHERE id = ?', (iid,))
    conn.commit()
    conn.close()
    return jsonify({'message': 'Invoice deleted'})

def _record_payment(conn, invoice, data):
    """Validate and insert a payment against ``invoice``. Returns (payment_id, error)."""
    try:
        amount = round(float(data.get('amount') or 0), 2)
    except (TypeError, ValueError):
        return None, 'Amount must be a number'
    if amount <= 0:
        return None, 'Payment amount must be greater than zero'
    balance = billing.balance_due(invoice)
    if amount > balance + billing.PAID_TOLERANCE:
        return None, f'Payment amount exceeds balance due of ${balance:,.2f}'
    pid = conn.insert(
        '''INSERT INTO payments (invoice_id, payment_date, amount, payment_method, reference_number, notes)
           VALUES (?,?,?,?,?,?)''',
        (invoice['id'], data.get('payment_date') or _today(), amount,
         data.get('payment_method') or 'Check', data.get('reference_number', ''), data.get('notes', ''))
    )
    billing.refresh_invoice_payments(conn, invoice['id'])
    return pid, None

@app.route('/api/invoices/<int:iid>/payments', methods=['POST'])
@api_login_required
def api_invoice_payment(iid):
    conn = get_db()
    invoice = conn.execute('SELECT * FROM invoices WHERE id = ?', (iid,)).fetchone()
    if not invoice:
        conn.close()
        return jsonify({'error': 'Invoice not found'}), 404
    _, error = _record_payment(conn, invoice, _json())
    if error:
        conn.close()
        return jsonify({'error': error}), 400
    conn.commit()
    result = _load_invoice(conn, iid)
    conn.close()
    return jsonify(result), 201

def _open_invoices(conn):
    rows = conn.execute(
        INVOICE_SELECT + ' WHERE i.' + OPEN_INVOICE_FILTER + ' ORDER BY i.due_date'
    ).fetchall()
    return [dict(r, balance_due=billing.balance_due(r)) for r in rows
            if billing.balance_due(r) > billing.PAID_TOLERANCE]

@app.route('/api/invoices/reports/overdue')
@api_login_required
def api_invoices_overdue():
    conn = get_db()
    invoices = _open_invoices(conn)
    conn.close()
    today = date.today()
    overdue = []
    for inv in invoices:
        days = billing.days_overdue(inv['due_date'], today)
        if days > 0:
            inv['days_overdue'] = days
            overdue.append(inv)
    overdue.sort(key=lambda i: i['days_overdue'], reverse=True)
    return jsonify({
        'invoices': overdue,
        'count': len(overdue),
        'total_overdue': round(sum(i['balance_due'] for i in overdue), 2),
    })

@app.route('/api/invoices/reports/aging')
@api_login_required
def api_invoices_aging():
    conn = get_db()
    invoices = _open_invoices(conn)
    conn.close()
    today = date.today()
    totals = {b: 0.0 for b in billing.AGING_BUCKETS}
    customers = {}
    for inv in invoices:
        bucket = billing.aging_bucket(billing.days_overdue(inv['due_date'], today))
        totals[bucket] += inv['balance_due']
        entry = customers.setdefault(inv['customer_id'], {
            'customer_id': inv['customer_id'], 'company_name': inv['company_name'],
            'buckets': {b: 0.0 for b in billing.AGING_BUCKETS}, 'total': 0.0,
        })
        entry['buckets'][bucket] += inv['balance_due']
        entry['total'] += inv['balance_due']
    for entry in customers.values():
        entry['buckets'] = {b: round(v, 2) for b, v in entry['buckets'].items()}
        entry['total'] = round(entry['total'], 2)
    return jsonify({
        'buckets': {b: round(v, 2) for b, v in totals.items()},
        'customers': sorted(customers.values(), key=lambda c: c['total'], reverse=True),
        'total_outstanding': round(sum(totals.values()), 2),
    })

@app.route('/api/invoices/reports/summary')
@api_login_required
def api_invoices_summary():
    conn = get_db()
    clauses, params = [], []
    if request.args.get('start_date'):
        clauses.append('invoice_date >= ?')
        params.append(request.args['start_date'])
    if request.args.get('end_date'):
        clauses.append('invoice_date <= ?')
        params.append(request.args['end_date'])
    where = ' WHERE ' + ' AND '.join(clauses) if clauses else ''
    rows = conn.execute(
        f'SELECT status, COUNT(*) AS count, COALESCE(SUM(total_amount), 0) AS total, '
        f'COALESCE(SUM(paid_amount), 0) AS paid FROM invoices{where} GROUP BY status',
        params
    ).fetchall()
    conn.close()
    by_status = {r['status']: {'count': r['count'], 'total': round(r['total'], 2), 'paid': round(r['paid'], 2)}
                 for r in rows}
    total_invoiced = sum(s['total'] for s in by_status.values())
    total_paid = sum(s['paid'] for s in by_status.values())
    return jsonify({
        'start_date': request.args.get('start_date'),
        'end_date': request.args.get('end_date'),
        'invoice_count': sum(s['count'] for s in by_status.values()),
        'total_invoiced': round(total_invoiced, 2),
        'total_paid': round(total_paid, 2),
        'total_outstanding': round(total_invoiced - total_paid, 2),
        'by_status': by_status,
    })

@app.route('/api/invoices/reports/trends')
@api_login_required
def api_invoices_trends():
    try:
        year = int(request.args.get('year') or date.today().year)
    except ValueError:
        return jsonify({'error': 'Year must be a number'}), 400
    start, end = f'{year}-01-01', f'{year + 1}-01-01'
    conn = get_db()
    invoices = conn.execute(
        'SELECT invoice_date, total_amount FROM invoices WHERE invoice_date >= ? AND invoice_date < ?', (start, end)
    ).fetchall()
    payments = conn.execute(
        'SELECT payment_date, amount FROM payments WHERE payment_date >= ? AND payment_date < ?', (start, end)
    ).fetchall()
    conn.close()
    months = [{'month': m, 'invoice_count': 0, 'invoiced': 0.0, 'collected': 0.0} for m in range(1, 13)]
    for inv in invoices:
        m = months[int(inv['invoice_date'][5:7]) - 1]
        m['invoice_count'] += 1
        m['invoiced'] += inv['total_amount'] or 0
    for pay in payments:
        months[int(pay['payment_date'][5:7]) - 1]['collected'] += pay['amount'] or 0
    for m in months:
        m['invoiced'] = round(m['invoiced'], 2)
        m['collected'] = round(m['collected'], 2)
    return jsonify({'year': year, 'months': months})

@app.route('/api/invoices/test-email')
@api_login_required
def api_test_email():
    result = mailer.test_email_config()
    return jsonify(result), 200 if result['success'] else 500

@app.route('/api/invoices/<int:iid>/send', methods=['POST'])
@api_login_required
def api_send_invoice(iid):
    conn = get_db()
    invoice = _load_invoice(conn, iid)
    if not invoice:
        conn.close()
        return jsonify({'error': 'Invoice not found'}), 404
    to = str(_json().get('to') or invoice['email'] or '').strip()
    if not to:
        conn.close()
        return jsonify({'error': 'Customer has no email address'}), 400
    settings = settings_helper.get_settings()
    html = render_template('emails/invoice.html', invoice=invoice, settings=settings)
    pdf = pdf_generator.invoice_pdf(invoice, settings)
    result = mailer.send_email(
        to, f"Invoice {invoice['invoice_number']} from {settings['company_name']}", html,
        attachments=[(f"{invoice['invoice_number']}.pdf", pdf, 'application/pdf')]
    )
    if not result['success']:
        conn.close()
        return jsonify({'error': result['error']}), 500
    status = 'Sent' if invoice['status'] == 'Draft' else invoice['status']
    conn.execute('UPDATE invoices SET status = ?, sent_date = ?, modified_at = ? WHERE id = ?',
                 (status, now_stamp(), now_stamp(), iid))
    conn.commit()
    conn.close()
    return jsonify({'message': f'Invoice sent to {to}', 'message_id': result['message_id'], 'status': status})

@app.route('/api/invoices/<int:iid>/pdf')
@api_login_required
def api_invoice_pdf(iid):
    conn = get_db()
    invoice = _load_invoice(conn, iid)
    conn.close()
    if not invoice:
        return jsonify({'error': 'Invoice not found'}), 404
    pdf = pdf_generator.invoice_pdf(invoice, settings_helper.get_settings(),
                                    paid_stamp=invoice['status'] == 'Paid')
    return send_file(io.BytesIO(pdf), mimetype='application/pdf',
                     as_attachment=bool(request.args.get('download')),
                     download_name=f"{invoice['invoice_number']}.pdf")

@app.route('/api/invoices/<int:iid>/send-paid-email', methods=['POST'])
@api_login_required
def api_send_paid_invoice(iid):
    conn = get_db()
    invoice = _load_invoice(conn, iid)
    conn.close()
    if not invoice:
        return jsonify({'error': 'Invoice not found'}), 404
    if invoice['status'] != 'Paid':
        return jsonify({'error': 'Invoice is not paid'}), 400
    to = str(_json().get('to') or invoice['email'] or '').strip()
    if not to:
        return jsonify({'error': 'Customer has no email address'}), 400
    settings = settings_helper.get_settings()
    html = render_template('emails/invoice_paid.html', invoice=invoice, settings=settings)
    pdf = pdf_generator.invoice_pdf(invoice, settings, paid_stamp=True)
    result = mailer.send_email(
        to, f"Paid Invoice {invoice['invoice_number']} - Thank you", html,
        attachments=[(f"{invoice['invoice_number']}-PAID.pdf", pdf, 'application/pdf')]
    )
    if not result['success']:
        return jsonify({'error': result['error']}), 500
    return jsonify({'message': f'Paid invoice sent to {to}', 'message_id': result['message_id']})

# ─── Payments ────────────────────────────────────────────────────

PAYMENT_SELECT = '''SELECT pm.*, i.invoice_number, i.total_amount AS invoice_total, i.status AS invoice_status,
                           p.id AS project_id, p.project_name, c.id AS customer_id, c.company_name
                    FROM payments pm JOIN invoices i ON i.id = pm.invoice_id
                    JOIN projects p ON p.id = i.project_id JOIN customers c ON c.id = p.customer_id'''

@app.route('/api/payments')
@api_login_required
def api_payments():
    conn = get_db()
    clauses, params = [], []
    if request.args.get('invoice_id'):
        clauses.append('pm.invoice_id = ?')
        params.append(request.args['invoice_id'])
    if request.args.get('start_date'):
        clauses.append('pm.payment_date >= ?')
        params.append(request.args['start_date'])
    if request.args.get('end_date'):
        clauses.append('pm.payment_date <= ?')
        params.append(request.args['end_date'])
    sql = PAYMENT_SELECT + (' WHERE ' + ' AND '.join(clauses) if clauses else '')
    rows = conn.execute(sql + ' ORDER BY pm.payment_date DESC, pm.id DESC', params).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

@app.route('/api/payments/<int:pid>')
@api_login_required
def api_payment(pid):
    conn = get_db()
    payment = conn.execute(PAYMENT_SELECT + ' WHERE pm.id = ?', (pid,)).fetchone()
    conn.close()
    if not payment:
        return jsonify({'error': 'Payment not found'}), 404
    return jsonify(dict(payment))

@app.route('/api/payments/invoice/<int:iid>')
@api_login_required
def api_invoice_payments(iid):
    conn = get_db()
    rows = conn.execute(PAYMENT_SELECT + ' WHERE pm.invoice_id = ? ORDER BY pm.payment_date, pm.id', (iid,)).fetchall()
    conn.close()
    return jsonify([dict(r) for r in rows])

@app.route('/api/payments', methods=['POST'])
@api_login_required
def api_create_payment():
    data = _json()
    if not data.get('invoice_id') or data.get('amount') in (None, '') or not data.get('payment_date'):
        return jsonify({'error': 'Invoice, amount and payment date are required'}), 400
    conn = get_db()
    invoice = conn.execute('SELECT * FROM invoices WHERE id = ?', (data['invoice_id'],)).fetchone()
    if not invoice:
        conn.close()
        return jsonify({'error': 'Invoice not found'}), 404
    pid, error = _record_payment(conn, invoice, data)
    if error:
        conn.close()
        return jsonify({'error': error}), 400
    conn.commit()
    payment = conn.execute(PAYMENT_SELECT + ' WHERE pm.id = ?', (pid,)).fetchone()
    conn.close()
    log.info('Recorded payment of %s on invoice %s', payment['amount'], payment['invoice_number'])
    return jsonify(dict(payment)), 201

@app.route('/api/payments/<int:pid>', methods=['PUT'])
@api_login_required
def api_update_payment(pid):
    data = _json()
    conn = get_db()
    payment = conn.execute('SELECT * FROM payments WHERE id = ?', (pid,)).fetchone()
    if not payment:
        conn.close()
        return jsonify({'error': 'Payment not found'}), 404
    invoice = conn.execute('SELECT * FROM invoices WHERE id = ?', (payment['invoice_id'],)).fetchone()
    try:
        amount = round(float(data.get('amount', payment['amount'])), 2)
    except (TypeError, ValueError):
        conn.close()
        return jsonify({'error': 'Amount must be a number'}), 400
    if amount <= 0:
        conn.close()
        return jsonify({'error': 'Payment amount must be greater than zero'}), 400
    available = billing.balance_due(invoice) + payment['amount']
    if amount > available + billing.PAID_TOLERANCE:
        conn.close()
        return jsonify({'error': f'Payment amount exceeds balance due of ${available:,.2f}'}), 400
    conn.execute(
        '''UPDATE payments SET amount = ?, payment_date = ?, payment_method = ?, reference_number = ?, notes = ?
           WHERE id = ?''',
        (amount, data.get('payment_date') or payment['payment_date'],
         data.get('payment_method') or payment['payment_method'],
         data.get('reference_number', payment['reference_number']), data.get('notes', payment['notes']), pid)
    )
    billing.refresh_invoice_payments(conn, payment['invoice_id'])
    conn.commit()
    updated = conn.execute(PAYMENT_SELECT + ' WHERE pm.id = ?', (pid,)).fetchone()
    conn.close()
    return jsonify(dict(updated))

@app.route('/api/payments/<int:pid>', methods=['DELETE'])
@api_login_required
def api_delete_payment(pid):
    conn = get_db()
    payment = conn.execute('SELECT * FROM payments WHERE id = ?', (pid,)).fetchone()
    if not payment:
        conn.close()
        return jsonify({'error': 'Payment not found'}), 404
    conn.execute('DELETE FROM payments WHERE id = ?', (pid,))
    result = billing.refresh_invoice_payments(conn, payment['invoice_id'])
    conn.commit()
    conn.close()
    return jsonify({'message': 'Payment deleted', 'invoice': result})

@app.route('/api/payments/reports/summary')
@api_login_required
def api_payments_summary():
    conn = get_db()
    clauses, params = [], []
    if request.args.get('start_date'):
        clauses.append('payment_date >= ?')
        params.append(request.args['start_date'])
    if request.args.get('end_date'):
        clauses.append('payment_date <= ?')
        params.append(request.args['end_date'])
    where = ' WHERE ' + ' AND '.join(clauses) if clauses else ''
    totals = conn.execute(
        f'''SELECT COUNT(*) AS payment_count, COALESCE(SUM(amount), 0) AS total_amount,
            COALESCE(AVG(amount), 0) AS average_amount, COALESCE(MIN(amount), 0) AS min_amount,
            COALESCE(MAX(amount), 0) AS max_amount FROM payments{where}''',
        params
    ).fetchone()
    methods = conn.execute(
        f'''SELECT payment_method, COUNT(*) AS count, COALESCE(SUM(amount), 0) AS total
            FROM payments{where} GROUP BY payment_method ORDER BY total DESC''',
        params
    ).fetchall()
    conn.close()
    summary = {k: (round(v, 2) if isinstance(v, float) else v) for k, v in dict(totals).items()}
    summary['by_method'] = [dict(m, total=round(m['total'], 2)) for m in methods]
    return jsonify(summary)

@app.route('/api/payments/reports/top-customers')
@api_login_required
def api_payments_top_customers():
    try:
        limit = max(int(request.args.get('limit', 10)), 1)
    except ValueError:
        return jsonify({'error': 'Limit must be a number'}), 400
    conn = get_db()
    rows = conn.execute(
        f'''SELECT TOP {limit} c.id AS customer_id, c.company_name, COUNT(pm.id) AS payment_count,
            SUM(pm.amount) AS total_paid
            FROM payments pm JOIN invoices i ON i.id = pm.invoice_id
            JOIN projects p ON p.id = i.project_id JOIN customers c ON c.id = p.customer_id
            GROUP BY c.id, c.company_name ORDER BY total_paid DESC'''
    ).fetchall()
    conn.close()
    return jsonify([dict(r, total_paid=round(r['total_paid'] or 0, 2)) for r in rows])

# ─── Pay Terms ───────────────────────────────────────────────────

PAY_TERM_SELECT = '''SELECT pt.*, p.project_name, p.total_amount AS project_total,
                            e.estimate_number, e.total_amount AS estimate_total
                     FROM pay_terms pt JOIN projects p ON p.id = pt.project_id
                     LEFT JOIN estimates e ON e.id = pt.estimate_id'''

def _pay_term_dict(row):
    term = dict(row)
    base = row['estimate_total'] if row['estimate_total'] is not None else row['project_total']
    term['amount'] = billing.pay_term_amount(row, base)
    return term

def _pay_terms(conn, where, params):
    rows = conn.execute(PAY_TERM_SELECT + f' WHERE {where} ORDER BY pt.project_id, pt.sort_order, pt.id', params).fetchall()
    return [_pay_term_dict(r) for r in rows]

def _insert_pay_term(conn, project_id, estimate_id, term):
    return conn.insert(
        '''INSERT INTO pay_terms (project_id, estimate_id, term_type, term_name, description, percentage,
           fixed_amount, due_date, due_description, status, sort_order) VALUES (?,?,?,?,?,?,?,?,?,?,?)''',
        (project_id, estimate_id, term['term_type'], term['term_name'], term.get('description', ''),
         term.get('percentage'), term.get('fixed_amount'), term.get('due_date') or None,
         term.get('due_description', ''), term.get('status') or 'Pending', term.get('sort_order', 0))
    )

def _resolve_estimate(conn, project_id, estimate_id):
    """Estimate id to price terms against: the given one, else the project's latest."""
    if estimate_id:
        row = conn.execute('SELECT id FROM estimates WHERE id = ? AND project_id = ?', (estimate_id, project_id)).fetchone()
        return row['id'] if row else None
    row = conn.execute(
        'SELECT TOP 1 id FROM estimates WHERE project_id = ? ORDER BY id DESC', (project_id,)
    ).fetchone()
    return row['id'] if row else None

@app.route('/api/payterms')
@api_login_required
def api_pay_terms():
    conn = get_db()
    terms = _pay_terms(conn, '1 = 1', ())
    conn.close()
    return jsonify(terms)

@app.route('/api/payterms/project/<int:pid>')
@api_login_required
def api_project_pay_terms(pid):
    conn = get_db()
    terms = _pay_terms(conn, 'pt.project_id = ?', (pid,))
    conn.close()
    return jsonify(terms)

@app.route('/api/projects/<int:pid>/payterms')
@api_login_required
def api_project_pay_terms_nested(pid):
    return api_project_pay_terms(pid)

@app.route('/api/payterms/estimate/<int:eid>')
@api_login_required
def api_estimate_pay_terms(eid):
    conn = get_db()
    terms = _pay_terms(conn, 'pt.estimate_id = ?', (eid,))
    conn.close()
    return jsonify(terms)

@app.route('/api/payterms/<int:tid>')
@api_login_required
def api_pay_term(tid):
    conn = get_db()
    terms = _pay_terms(conn, 'pt.id = ?', (tid,))
    conn.close()
    if not terms:
        return jsonify({'error': 'Pay term not found'}), 404
    return jsonify(terms[0])

@app.route('/api/payterms/create-standard', methods=['POST'])
@api_login_required
def api_create_standard_pay_terms():
    data = _json()
    project_id = data.get('project_id')
    schedule = data.get('schedule') or data.get('term_type')
    if not project_id or not schedule:
        return jsonify({'error': 'Project and schedule are required'}), 400
    try:
        terms = billing.standard_pay_terms(schedule)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    conn = get_db()
    if not conn.execute('SELECT id FROM projects WHERE id = ?', (project_id,)).fetchone():
        conn.close()
        return jsonify({'error': 'Project not found'}), 404
    existing = conn.execute("SELECT COUNT(*) FROM pay_terms WHERE project_id = ? AND status != 'Cancelled'",
                            (project_id,)).fetchone()[0]
    if existing:
        conn.close()
        return jsonify({'error': 'Project already has pay terms'}), 400
    estimate_id = _resolve_estimate(conn, project_id, data.get('estimate_id'))
    for term in terms:
        _insert_pay_term(conn, project_id, estimate_id, term)
    conn.commit()
    created = _pay_terms(conn, 'pt.project_id = ?', (project_id,))
    conn.close()
    return jsonify(created), 201

@app.route('/api/payterms/create-multiple', methods=['POST'])
@api_login_required
def api_create_multiple_pay_terms():
    data = _json()
    project_id = data.get('project_id')
    milestones = data.get('terms') or []
    if not project_id or not milestones:
        return jsonify({'error': 'Project and at least one term are required'}), 400
    conn = get_db()
    if not conn.execute('SELECT id FROM projects WHERE id = ?', (project_id,)).fetchone():
        conn.close()
        return jsonify({'error': 'Project not found'}), 404
    estimate_id = _resolve_estimate(conn, project_id, data.get('estimate_id'))
    start = conn.execute('SELECT COALESCE(MAX(sort_order), 0) FROM pay_terms WHERE project_id = ?',
                         (project_id,)).fetchone()[0]
    ids = []
    for idx, m in enumerate(milestones, start=1):
        try:
            amount = float(m.get('fixed_amount', m.get('amount')))
        except (TypeError, ValueError):
            conn.rollback()
            conn.close()
            return jsonify({'error': f'Term {idx} needs a numeric amount'}), 400
        if not str(m.get('term_name') or '').strip():
            conn.rollback()
            conn.close()
            return jsonify({'error': f'Term {idx} needs a name'}), 400
        ids.append(_insert_pay_term(conn, project_id, estimate_id, {
            'term_type': 'Milestone', 'term_name': str(m['term_name']).strip(),
            'description': m.get('description', ''), 'fixed_amount': amount,
            'due_date': m.get('due_date'), 'due_description': m.get('due_description', ''),
            'sort_order': start + idx,
        }))
    conn.commit()
    created = [_pay_terms(conn, 'pt.id = ?', (i,))[0] for i in ids]
    conn.close()
    return jsonify(created), 201

@app.route('/api/payterms', methods=['POST'])
@api_login_required
def api_create_pay_term():
    data = sanitize_payload(_json(), PAY_TERM_FIELDS + ('project_id',))
    if not data.get('project_id') or not data.get('term_type') or not data.get('term_name'):
        return jsonify({'error': 'Project, term type and term name are required'}), 400
    try:
        for f in ('percentage', 'fixed_amount'):
            data[f] = float(data[f]) if data.get(f) not in (None, '') else None
    except (TypeError, ValueError):
        return jsonify({'error': 'Percentage and amount must be numbers'}), 400
    if data['percentage'] is None and data['fixed_amount'] is None:
        return jsonify({'error': 'Either a percentage or a fixed amount is required'}), 400
    conn = get_db()
    if not conn.execute('SELECT id FROM projects WHERE id = ?', (data['project_id'],)).fetchone():
        conn.close()
        return jsonify({'error': 'Project not found'}), 404
    tid = _insert_pay_term(conn, data['project_id'], data.get('estimate_id') or None, data)
    conn.commit()
    term = _pay_terms(conn, 'pt.id = ?', (tid,))[0]
    conn.close()
    return jsonify(term), 201

@app.route('/api/payterms/<int:tid>', methods=['PUT'])
@api_login_required
def api_update_pay_term(tid):
    data = sanitize_payload(_json(), PAY_TERM_FIELDS)
    conn = get_db()
    if not conn.execute('SELECT id FROM pay_terms WHERE id = ?', (tid,)).fetchone():
        conn.close()
        return jsonify({'error': 'Pay term not found'}), 404
    try:
        for f in ('percentage', 'fixed_amount'):
            if f in data:
                data[f] = float(data[f]) if data[f] not in (None, '') else None
    except (TypeError, ValueError):
        conn.close()
        return jsonify({'error': 'Percentage and amount must be numbers'}), 400
    if data:
        fields = [f'{f} = ?' for f in data] + ['modified_at = ?']
        conn.execute(f'UPDATE pay_terms SET {", ".join(fields)} WHERE id = ?',
                     list(data.values()) + [now_stamp(), tid])
        conn.commit()
    term = _pay_terms(conn, 'pt.id = ?', (tid,))[0]
    conn.close()
    return jsonify(term)

@app.route('/api/payterms/<int:tid>', methods=['DELETE'])
@api_login_required
def api_delete_pay_term(tid):
    conn = get_db()
    if not conn.execute('SELECT id FROM pay_terms WHERE id = ?', (tid,)).fetchone():
        conn.close()
        return jsonify({'error': 'Pay term not found'}), 404
    if conn.execute('SELECT COUNT(*) FROM invoice_line_items WHERE pay_term_id = ?', (tid,)).fetchone()[0]:
        conn.close()
        return jsonify({'error': 'Cannot delete a pay term that has been invoiced'}), 400
    conn.execute('DELETE FROM pay_terms WHERE id = ?', (tid,))
    conn.commit()
    conn.close()
    return jsonify({'message': 'Pay term deleted'})

@app.route('/api/payterms/<int:tid>/mark-paid', methods=['POST'])
@api_login_required
def api_mark_pay_term_paid(tid):
    data = _json()
    conn = get_db()
    if not conn.execute('SELECT id FROM pay_terms WHERE id = ?', (tid,)).fetchone():
        conn.close()
        return jsonify({'error': 'Pay term not found'}), 404
    conn.execute("UPDATE pay_terms SET status = 'Paid', due_date = ?, modified_at = ? WHERE id = ?",
                 (data.get('payment_date') or _today(), now_stamp(), tid))
    conn.commit()
    term = _pay_terms(conn, 'pt.id = ?', (tid,))[0]
    conn.close()
    return jsonify(term)

# ─── Contracts ───────────────────────────────────────────────────

CONTRACT_SELECT = '''SELECT ct.*, p.project_name, p.project_description, p.customer_id,
                            c.company_name, c.contact_name, c.email, c.phone, e.estimate_number
                     FROM contracts ct JOIN projects p ON p.id = ct.project_id
                     JOIN customers c ON c.id = p.customer_id LEFT JOIN estimates e ON e.id = ct.estimate_id'''

def _load_contract(conn, cid):
    row = conn.execute(CONTRACT_SELECT + ' WHERE ct.id = ?', (cid,)).fetchone()
    return dict(row) if row else None

def _public_contract(contract):
    c = dict(contract)
    c.pop('signing_token', None)
    return c

def _contract_html(contract):
    return render_template('contract.html', contract=contract, settings=settings_helper.get_settings(),
                           today=date.today())

@app.route('/api/contracts')
@api_login_required
def api_contracts():
    conn = get_db()
    rows = conn.execute(CONTRACT_SELECT + ' ORDER BY ct.id DESC').fetchall()
    conn.close()
    return jsonify([_public_contract(r) for r in rows])

@app.route('/api/contracts/<int:cid>')
@api_login_required
def api_contract(cid):
    conn = get_db()
    contract = _load_contract(conn, cid)
    conn.close()
    if not contract:
        return jsonify({'error': 'Contract not found'}), 404
    return jsonify(_public_contract(contract))

@app.route('/api/contracts', methods=['POST'])
@api_login_required
def api_create_contract():
    data = _json()
    project_id = data.get('project_id')
    if not project_id:
        return jsonify({'error': 'Project is required'}), 400
    conn = get_db()
    project = conn.execute('SELECT * FROM projects WHERE id = ?', (project_id,)).fetchone()
    if not project:
        conn.close()
        return jsonify({'error': 'Project not found'}), 404
    estimate_id = _resolve_estimate(conn, project_id, data.get('estimate_id'))
    if data.get('estimate_id') and not estimate_id:
        conn.close()
        return jsonify({'error': 'Estimate does not belong to this project'}), 400
    estimate = conn.execute('SELECT * FROM estimates WHERE id = ?', (estimate_id,)).fetchone() if estimate_id else None
    base_total = estimate['total_amount'] if estimate else project['total_amount']
    try:
        amount = float(data['contract_amount']) if data.get('contract_amount') not in (None, '') else (base_total or 0)
    except (TypeError, ValueError):
        conn.close()
        return jsonify({'error': 'Contract amount must be a number'}), 400
    pay_terms = data.get('pay_terms')
    if pay_terms is None:
        terms = conn.execute(
            "SELECT * FROM pay_terms WHERE project_id = ? AND status != 'Cancelled' ORDER BY sort_order, id", (project_id,)
        ).fetchall()
        pay_terms = billing.pay_terms_text(terms, base_total)
    number = billing.next_contract_number(conn)
    cid = conn.insert(
        '''INSERT INTO contracts (project_id, estimate_id, contract_number, contract_type, status, contract_amount,
           start_date, estimated_completion_date, pay_terms, terms_text) VALUES (?,?,?,?,?,?,?,?,?,?)''',
        (project_id, estimate_id, number, data.get('contract_type') or 'Design Contract', 'Draft', amount,
         data.get('start_date') or project['start_date'],
         data.get('estimated_completion_date') or project['end_date'],
         pay_terms, data.get('terms_text', ''))
    )
    conn.commit()
    contract = _load_contract(conn, cid)
    conn.close()
    log.info('Created contract %s for project %s', number, project_id)
    return jsonify(_public_contract(contract)), 201

@app.route('/api/contracts/<int:cid>', methods=['PUT'])
@api_login_required
def api_update_contract(cid):
    data = {k: v for k, v in _json().items() if k in CONTRACT_FIELDS}
    if 'contract_amount' in data:
        try:
            data['contract_amount'] = round(float(data['contract_amount'] or 0), 2)
        except (TypeError, ValueError):
            return jsonify({'error': 'Contract amount must be a number'}), 400
        if data['contract_amount'] < 0:
            return jsonify({'error': 'Contract amount cannot be negative'}), 400
    conn = get_db()
    contract = conn.execute('SELECT status FROM contracts WHERE id = ?', (cid,)).fetchone()
    if not contract:
        conn.close()
        return jsonify({'error': 'Contract not found'}), 404
    if contract['status'] == 'Signed':
        conn.close()
        return jsonify({'error': 'A signed contract cannot be changed'}), 400
    if data:
        fields = [f'{f} = ?' for f in data] + ['modified_at = ?']
        conn.execute(f'UPDATE contracts SET {", ".join(fields)} WHERE id = ?',
                     list(data.values()) + [now_stamp(), cid])
        conn.commit()
    updated = _load_contract(conn, cid)
    conn.close()
    return jsonify(_public_contract(updated))

@app.route('/api/contracts/<int:cid>', methods=['DELETE'])
@api_login_required
def api_delete_contract(cid):
    conn = get_db()
    contract = conn.execute('SELECT status FROM contracts WHERE id = ?', (cid,)).fetchone()
    if not contract:
        conn.close()
        return jsonify({'error': 'Contract not found'}), 404
    if contract['status'] == 'Signed':
        conn.close()
        return jsonify({'error': 'Cannot delete a signed contract'}), 400
    conn.execute('DELETE FROM contracts WHERE id = ?', (cid,))
    conn.commit()
    conn.close()
    return '', 204

@app.route('/api/contracts/<int:cid>/full-html')
@api_login_required
def api_contract_html(cid):
    conn = get_db()
    contract = _load_contract(conn, cid)
    conn.close()
    if not contract:
        return jsonify({'error': 'Contract not found'}), 404
    return Response(_contract_html(contract), mimetype='text/html')

@app.route('/api/contracts/<int:cid>/send-to-customer', methods=['POST'])
@api_login_required
def api_send_contract(cid):
    conn = get_db()
    contract = _load_contract(conn, cid)
    if not contract:
        conn.close()
        return jsonify({'error': 'Contract not found'}), 404
    if contract['status'] == 'Signed':
        conn.close()
        return jsonify({'error': 'Contract is already signed'}), 400
    to = str(_json().get('to') or contract['email'] or '').strip()
    if not to:
        conn.close()
        return jsonify({'error': 'Customer has no email address'}), 400
    token = contract['signing_token'] or secrets.token_urlsafe(24)
    signing_url = f"{_base_url()}/contract-signing/{cid}?token={token}"
    settings = settings_helper.get_settings()
    html = render_template('emails/contract_request.html', contract=contract, signing_url=signing_url, settings=settings)
    result = mailer.send_email(to, f"Please review and sign contract {contract['contract_number']}", html)
    if not result['success']:
        conn.close()
        return jsonify({'error': result['error']}), 500
    conn.execute("UPDATE contracts SET signing_token = ?, status = 'Sent', sent_date = ?, modified_at = ? WHERE id = ?",
                 (token, now_stamp(), now_stamp(), cid))
    conn.commit()
    conn.close()
    return jsonify({'message': f'Contract sent to {to}', 'signing_url': signing_url, 'message_id': result['message_id']})

# ─── Public Contract Signing ─────────────────────────────────────

def _contract_for_token(conn, cid, token):
    contract = _load_contract(conn, cid)
    if not contract or not contract['signing_token'] or not token:
        return None
    if not secrets.compare_digest(contract['signing_token'], token):
        return None
    return contract

@app.route('/contract-signing/<int:cid>')
def contract_signing_page(cid):
    conn = get_db()
    contract = _contract_for_token(conn, cid, request.args.get('token', ''))
    conn.close()
    if not contract:
        return render_template('contract_signing.html', contract=None, error='This signing link is invalid or has expired.'), 404
    return render_template('contract_signing.html', contract=contract, contract_html=_contract_html(contract),
                           token=request.args.get('token', ''), today=_today(), error=None)

@app.route('/api/public/contracts/<int:cid>/signature', methods=['POST'])
def api_contract_signature(cid):
    data = _json()
    signature = str(data.get('client_signature') or '').strip()
    signature_date = str(data.get('client_signature_date') or '').strip()
    if not signature or not signature_date:
        return jsonify({'error': 'Signature and date are required'}), 400
    if billing.to_date(signature_date) is None:
        return jsonify({'error': 'Signature date is not a valid date'}), 400
    conn = get_db()
    contract = _contract_for_token(conn, cid, data.get('token', ''))
    if not contract:
        conn.close()
        return jsonify({'error': 'Contract not found'}), 404
    if contract['status'] == 'Signed':
        conn.close()
        return jsonify({'error': 'Contract has already been signed'}), 400
    ip = _client_ip()
    conn.execute(
        '''UPDATE contracts SET status = 'Signed', signed_date = ?, client_signature = ?, client_signature_date = ?,
           signature_ip_address = ?, modified_at = ? WHERE id = ?''',
        (now_stamp(), signature, signature_date, ip, now_stamp(), cid)
    )
    conn.commit()
    contract = _load_contract(conn, cid)
    conn.close()
    log.info('Contract %s signed by %r from %s', contract['contract_number'], signature, ip)

    settings = settings_helper.get_settings()
    if settings.get('email_notifications') and settings.get('company_email'):
        html = render_template('emails/contract_signed.html', contract=contract, settings=settings)
        result = mailer.send_email(settings['company_email'], f"Contract {contract['contract_number']} signed", html)
        if not result['success']:
            log.warning('Signed-contract notification failed: %s', result['error'])
    return jsonify({'message': 'Contract signed successfully', 'contract': _public_contract(contract)})

# ─── Settings ────────────────────────────────────────────────────

@app.route('/api/settings')
@api_login_required
def api_settings():
    return jsonify(settings_helper.get_settings(force=True))

@app.route('/api/settings', methods=['PUT'])
@api_login_required
def api_update_settings():
    data = _json()
    if not data:
        return jsonify({'error': 'No settings provided'}), 400
    errors = []
    for key in settings_helper.NUMERIC_KEYS:
        if key in data:
            try:
                if float(data[key]) < 0:
                    errors.append(f'{key} cannot be negative')
            except (TypeError, ValueError):
                errors.append(f'{key} must be a number')
    if data.get('company_email') and not is_valid_email(data['company_email']):
        errors.append('company_email is not a valid email address')
    if errors:
        return _validation_error(errors)
    settings_helper.update_settings(data)
    return jsonify({'message': 'Settings updated successfully', 'settings': settings_helper.get_settings()})

@app.route('/api/settings/reset', methods=['POST'])
@api_role_required('admin')
def api_reset_settings():
    settings_helper.reset_settings()
    return jsonify({'message': 'Settings reset to defaults', 'settings': settings_helper.get_settings()})

@app.route('/api/settings/export')
@api_login_required
def api_export_settings():
    payload = settings_helper.export_settings()
    filename = f"settings-{date.today().isoformat()}.json"
    return Response(json.dumps(payload, indent=2), mimetype='application/json',
                    headers={'Content-Disposition': f'attachment; filename="{filename}"'})

@app.route('/api/settings/signature-upload', methods=['POST'])
@api_login_required
def api_upload_signature():
    file = request.files.get('signature')
    if not file or not file.filename:
        return jsonify({'error': 'No file uploaded'}), 400
    ext = os.path.splitext(file.filename)[1].lower()
    if ext not in SIGNATURE_EXTENSIONS or not (file.mimetype or '').startswith('image/'):
        return jsonify({'error': 'Only PNG, JPEG or GIF images are allowed'}), 400
    content = file.read()
    if len(content) > MAX_SIGNATURE_BYTES:
        return jsonify({'error': 'Signature image must be 2MB or smaller'}), 400
    sig_dir = os.path.join(app.config['UPLOAD_DIR'], 'signatures')
    os.makedirs(sig_dir, exist_ok=True)
    filename = secure_filename(f"signature_{datetime.now().strftime('%Y%m%d%H%M%S')}{ext}")
    with open(os.path.join(sig_dir, filename), 'wb') as f:
        f.write(content)
    _remove_signature_file()
    url = f'/uploads/signatures/{filename}'
    settings_helper.update_settings({'signature_image_url': url})
    return jsonify({'message': 'Signature uploaded', 'signature_image_url': url})

def _remove_signature_file():
    current = settings_helper.get_settings(force=True).get('signature_image_url') or ''
    if current.startswith('/uploads/signatures/'):
        path = os.path.join(app.config['UPLOAD_DIR'], 'signatures', os.path.basename(current))
        if os.path.exists(path):
            os.remove(path)

@app.route('/api/settings/signature-remove', methods=['DELETE'])
@api_login_required
def api_remove_signature():
    _remove_signature_file()
    settings_helper.update_settings({'signature_image_url': ''})
    return jsonify({'message': 'Signature removed'})

# ─── Import ──────────────────────────────────────────────────────

def _import_dir():
    path = os.path.join(app.config['UPLOAD_DIR'], 'imports')
    os.makedirs(path, exist_ok=True)
    return path

def _import_path(filename):
    name = secure_filename(filename or '')
    path = os.path.join(_import_dir(), name)
    if not name or not os.path.exists(path):
        return None
    return path

@app.route('/api/import/upload', methods=['POST'])
@api_login_required
def api_import_upload():
    file = request.files.get('file')
    if not file or not file.filename:
        return jsonify({'error': 'No file uploaded'}), 400
    if not data_import.allowed_file(file.filename):
        return jsonify({'error': 'Only .xlsx, .xls and .csv files are allowed'}), 400
    filename = secure_filename(f"{datetime.now().strftime('%Y%m%d%H%M%S%f')}_{file.filename}")
    path = os.path.join(_import_dir(), filename)
    file.save(path)
    try:
        preview = data_import.preview_file(path, request.form.get('sheet_name') or None)
    except data_import.ImportFileError as e:
        os.remove(path)
        return jsonify({'error': str(e)}), 400
    return jsonify({'filename': filename, 'original_name': file.filename, **preview})

def _run_import(import_type, data):
    if not data.get('filename') or not data.get('mapping'):
        return {'error': 'Filename and field mapping are required'}, 400
    path = _import_path(data['filename'])
    if not path:
        return {'error': 'Uploaded file not found. Upload it again.'}, 404
    try:
        _, rows = data_import.read_rows(path, data.get('sheet_name') or None)
        conn = get_db()
        results = data_import.run_import(conn, import_type, rows, data['mapping'], data.get('start_row') or 2)
        conn.close()
    except data_import.ImportFileError as e:
        return {'error': str(e)}, 400
    return {'message': 'Import complete', 'results': results}, 200

@app.route('/api/import/customers', methods=['POST'])
@api_login_required
def api_import_customers():
    body, status = _run_import('customers', _json())
    return jsonify(body), status

@app.route('/api/import/projects', methods=['POST'])
@api_login_required
def api_import_projects():
    body, status = _run_import('projects', _json())
    return jsonify(body), status

@app.route('/api/import/line-items', methods=['POST'])
@api_login_required
def api_import_line_items():
    body, status = _run_import('line-items', _json())
    return jsonify(body), status

@app.route('/api/import/bulk-import', methods=['POST'])
@api_login_required
def api_bulk_import():
    jobs = _json().get('imports') or []
    if not jobs:
        return jsonify({'error': 'No imports specified'}), 400
    order = list(data_import.IMPORTERS)
    jobs = sorted(jobs, key=lambda j: order.index(j.get('type')) if j.get('type') in order else len(order))
    results = []
    for job in jobs:
        body, status = _run_import(job.get('type'), job)
        results.append({'type': job.get('type'), 'status': status, **body})
    return jsonify({'message': 'Bulk import complete', 'imports': results})

@app.route('/api/import/templates')
@api_login_required
def api_import_templates():
    return jsonify(data_import.template_metadata())

@app.route('/api/import/templates/<import_type>/download')
@api_login_required
def api_import_template_download(import_type):
    try:
        content = data_import.build_template_workbook(import_type)
    except data_import.ImportFileError as e:
        return jsonify({'error': str(e)}), 404
    return send_file(io.BytesIO(content), as_attachment=True,
                     download_name=f'{import_type}-template.xlsx',
                     mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet')

@app.route('/api/import/cleanup', methods=['DELETE'])
@api_login_required
def api_import_cleanup():
    removed = data_import.cleanup_uploads(_import_dir())
    return jsonify({'message': f'Removed {removed} old file(s)', 'removed': removed})

# ─── Startup ────────────────────────────────────────────────────

def get_local_ip():
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(('8.8.8.8', 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return '127.0.0.1'

if __name__ == '__main__':
    setup_logging()
    init_db()
    port = int(os.environ.get('PORT', 5001))
    local_ip = get_local_ip()
    print(f'\n  Design Office Back-Office')
    print(f'  ────────────────────────────────')
    print(f'  Local:   http://localhost:{port}')
    print(f'  Network: http://{local_ip}:{port}')
    print(f'  Database: {check_health()["dialect"]}')
    print(f'  ────────────────────────────────')
    print(f'  Default login: admin / admin')
    print(f'  ────────────────────────────────\n')
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', '0').lower() in ('1', 'true', 'yes'))
