import logging
import os
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime

from flask import g, has_app_context
from werkzeug.security import generate_password_hash

log = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.environ.get('SQLITE_PATH', os.path.join(BASE_DIR, 'data', 'backoffice.db'))

SQLITE = 'sqlite'
POSTGRES = 'postgresql'

_pg_pool = None

REQUIRED_TABLES = (
    'users', 'customers', 'projects', 'estimates', 'estimate_line_items',
    'line_items_master', 'invoices', 'invoice_line_items', 'payments',
    'pay_terms', 'contracts', 'settings',
)

PROJECT_ADDED_COLUMNS = (
    'project_city', 'project_state', 'project_zip', 'project_contact_name',
    'project_contact_phone', 'project_contact_email', 'actual_completion_date',
)


class DatabaseError(Exception):
    """Raised when the configured database cannot be reached or used."""


def get_dialect():
    db_type = (os.environ.get('DB_TYPE') or '').strip().lower()
    if db_type in ('postgres', 'postgresql', 'pg'):
        return POSTGRES
    if db_type == SQLITE:
        return SQLITE
    if os.environ.get('DATABASE_URL', '').startswith(('postgres://', 'postgresql://')):
        return POSTGRES
    return SQLITE


# ─── SQL Rewriting ───────────────────────────────────────────────

_QUOTED = re.compile(r"('(?:[^']|'')*')")
_TOP = re.compile(r'^(\s*SELECT\s+(?:DISTINCT\s+)?)TOP\s*\(?\s*(\d+)\s*\)?\s+', re.IGNORECASE)
_BRACKETED = re.compile(r'\[(\w+)\]')
_GETDATE = re.compile(r'\bGETDATE\(\)', re.IGNORECASE)
_NEWID = re.compile(r'\bNEWID\(\)', re.IGNORECASE)
_ISNULL = re.compile(r'\bISNULL\(', re.IGNORECASE)
_LEN = re.compile(r'\bLEN\(', re.IGNORECASE)


def _rewrite_segment(segment, dialect, bind_params):
    segment = _BRACKETED.sub(r'\1', segment)
    segment = _GETDATE.sub('CURRENT_TIMESTAMP', segment)
    if dialect == POSTGRES:
        segment = _NEWID.sub('gen_random_uuid()', segment)
    else:
        segment = _NEWID.sub('lower(hex(randomblob(16)))', segment)
    segment = _ISNULL.sub('COALESCE(', segment)
    segment = _LEN.sub('LENGTH(', segment)
    if dialect == POSTGRES:
        if bind_params:
            segment = segment.replace('%', '%%')
        segment = segment.replace('?', '%s')
    return segment


def adapt_sql(sql, dialect=None, bind_params=True):
    """Rewrite a query written with SQL Server habits and ``?`` placeholders
    so it runs on the target dialect.

    Quoted string literals are left alone. ``TOP N`` is only understood on
    the outermost SELECT, where it becomes a trailing ``LIMIT N``.
    """
    dialect = dialect or get_dialect()
    limit = None
    match = _TOP.match(sql)
    if match:
        limit = match.group(2)
        sql = match.group(1) + sql[match.end():]

    parts = _QUOTED.split(sql)
    out = []
    for i, part in enumerate(parts):
        if i % 2:
            if dialect == POSTGRES and bind_params:
                part = part.replace('%', '%%')
            out.append(part)
        else:
            out.append(_rewrite_segment(part, dialect, bind_params))
    sql = ''.join(out)

    if limit is not None:
        body = sql.rstrip()
        trailing = ''
        if body.endswith(';'):
            body, trailing = body[:-1].rstrip(), ';'
        sql = f'{body} LIMIT {limit}{trailing}'
    return sql


# ─── Connections ─────────────────────────────────────────────────

class Connection:
    """One database connection with the sqlite3 calling style
    (``conn.execute(sql, params).fetchall()``) on either dialect."""

    def __init__(self, raw, dialect):
        self.raw = raw
        self.dialect = dialect
        self.closed = False

    def execute(self, sql, params=()):
        params = tuple(params or ())
        if self.dialect == SQLITE:
            return self.raw.execute(adapt_sql(sql, SQLITE), params)
        import psycopg2
        from psycopg2.extras import DictCursor
        cur = self.raw.cursor(cursor_factory=DictCursor)
        try:
            if params:
                cur.execute(adapt_sql(sql, POSTGRES), params)
            else:
                cur.execute(adapt_sql(sql, POSTGRES, bind_params=False))
        except psycopg2.Error as e:
            raise DatabaseError(str(e)) from e
        return cur

    def insert(self, sql, params=()):
        """Run an INSERT and return the new row's ``id``."""
        if self.dialect == SQLITE:
            return self.execute(sql, params).lastrowid
        cur = self.execute(sql.rstrip().rstrip(';') + ' RETURNING id', params)
        return cur.fetchone()[0]

    def executescript(self, script):
        if self.dialect == SQLITE:
            self.raw.executescript(script)
        else:
            cur = self.raw.cursor()
            cur.execute(script)

    @contextmanager
    def savepoint(self, name):
        """Undo only the statements in the block when one of them fails.

        PostgreSQL aborts the whole transaction on an error; rolling back to
        the savepoint lets the caller carry on with the next row.
        """
        self.execute(f'SAVEPOINT {name}')
        try:
            yield self
        except (sqlite3.Error, DatabaseError):
            self.execute(f'ROLLBACK TO SAVEPOINT {name}')
            self.execute(f'RELEASE SAVEPOINT {name}')
            raise
        self.execute(f'RELEASE SAVEPOINT {name}')

    def commit(self):
        self.raw.commit()

    def rollback(self):
        self.raw.rollback()

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self.dialect == SQLITE:
            self.raw.close()
        else:
            self.raw.rollback()
            _get_pg_pool().putconn(self.raw)


def _get_pg_pool():
    global _pg_pool
    if _pg_pool is None:
        import psycopg2
        from psycopg2 import pool
        dsn = os.environ.get('DATABASE_URL')
        if not dsn:
            dsn = 'host={} port={} dbname={} user={} password={}'.format(
                os.environ.get('PG_HOST', 'localhost'),
                os.environ.get('PG_PORT', '5432'),
                os.environ.get('PG_DATABASE', 'backoffice'),
                os.environ.get('PG_USER', 'postgres'),
                os.environ.get('PG_PASSWORD', ''),
            )
        try:
            _pg_pool = pool.ThreadedConnectionPool(
                int(os.environ.get('PG_POOL_MIN', 1)),
                int(os.environ.get('PG_POOL_MAX', 10)),
                dsn,
            )
        except psycopg2.Error as e:
            raise DatabaseError(f'Could not connect to PostgreSQL: {e}') from e
        log.info('PostgreSQL connection pool ready')
    return _pg_pool


def get_db():
    dialect = get_dialect()
    if dialect == SQLITE:
        raw = sqlite3.connect(DB_PATH)
        raw.row_factory = sqlite3.Row
        raw.execute("PRAGMA journal_mode=WAL")
        raw.execute("PRAGMA foreign_keys=ON")
    else:
        raw = _get_pg_pool().getconn()
    conn = Connection(raw, dialect)
    if has_app_context():
        g.setdefault('_db_connections', []).append(conn)
    return conn


def close_connections(exc=None):
    """Teardown hook: close whatever a request left open."""
    for conn in g.pop('_db_connections', []):
        if exc is not None and not conn.closed:
            conn.rollback()
        conn.close()


def now_stamp():
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


# ─── Schema ──────────────────────────────────────────────────────

DDL_FRAGMENTS = {
    SQLITE: {
        'pk': 'INTEGER PRIMARY KEY AUTOINCREMENT',
        'money': 'REAL',
        'now': "(datetime('now','localtime'))",
    },
    POSTGRES: {
        'pk': 'SERIAL PRIMARY KEY',
        'money': 'DOUBLE PRECISION',
        'now': "(to_char(now(), 'YYYY-MM-DD HH24:MI:SS'))",
    },
}

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS users (
        id {pk},
        username TEXT NOT NULL UNIQUE,
        email TEXT UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT DEFAULT '',
        last_name TEXT DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        is_active INTEGER NOT NULL DEFAULT 1,
        last_login TEXT,
        created_at TEXT NOT NULL DEFAULT {now}
    );

    CREATE TABLE IF NOT EXISTS customers (
        id {pk},
        company_name TEXT NOT NULL,
        contact_name TEXT DEFAULT '',
        email TEXT DEFAULT '',
        email2 TEXT DEFAULT '',
        phone TEXT DEFAULT '',
        phone2 TEXT DEFAULT '',
        address TEXT DEFAULT '',
        city TEXT DEFAULT '',
        state TEXT DEFAULT '',
        zip_code TEXT DEFAULT '',
        notes TEXT DEFAULT '',
        created_at TEXT NOT NULL DEFAULT {now},
        modified_at TEXT
    );

    CREATE TABLE IF NOT EXISTS projects (
        id {pk},
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        project_name TEXT NOT NULL,
        project_description TEXT DEFAULT '',
        project_type TEXT DEFAULT '',
        project_address TEXT DEFAULT '',
        project_city TEXT DEFAULT '',
        project_state TEXT DEFAULT '',
        project_zip TEXT DEFAULT '',
        project_contact_name TEXT DEFAULT '',
        project_contact_phone TEXT DEFAULT '',
        project_contact_email TEXT DEFAULT '',
        start_date TEXT,
        end_date TEXT,
        actual_completion_date TEXT,
        status TEXT NOT NULL DEFAULT 'Planning',
        priority INTEGER NOT NULL DEFAULT 0,
        total_amount {money} DEFAULT 0,
        notes TEXT DEFAULT '',
        created_at TEXT NOT NULL DEFAULT {now},
        modified_at TEXT
    );

    CREATE TABLE IF NOT EXISTS estimates (
        id {pk},
        project_id INTEGER NOT NULL REFERENCES projects(id),
        estimate_number TEXT NOT NULL UNIQUE,
        estimate_date TEXT,
        valid_until_date TEXT,
        status TEXT NOT NULL DEFAULT 'Draft',
        subtotal {money} DEFAULT 0,
        tax_rate {money} DEFAULT 0,
        tax_amount {money} DEFAULT 0,
        total_amount {money} DEFAULT 0,
        notes TEXT DEFAULT '',
        created_at TEXT NOT NULL DEFAULT {now},
        modified_at TEXT
    );

    CREATE TABLE IF NOT EXISTS line_items_master (
        id {pk},
        item_code TEXT NOT NULL UNIQUE,
        item_name TEXT NOT NULL,
        item_description TEXT DEFAULT '',
        category TEXT DEFAULT 'Custom',
        unit_of_measure TEXT DEFAULT 'hrs',
        standard_rate {money} DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT {now}
    );

    CREATE TABLE IF NOT EXISTS estimate_line_items (
        id {pk},
        estimate_id INTEGER NOT NULL REFERENCES estimates(id) ON DELETE CASCADE,
        line_item_master_id INTEGER REFERENCES line_items_master(id),
        item_description TEXT DEFAULT '',
        quantity {money} DEFAULT 1,
        unit_rate {money} DEFAULT 0,
        line_total {money} DEFAULT 0,
        sort_order INTEGER DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS invoices (
        id {pk},
        project_id INTEGER NOT NULL REFERENCES projects(id),
        estimate_id INTEGER REFERENCES estimates(id),
        invoice_number TEXT NOT NULL UNIQUE,
        invoice_date TEXT,
        due_date TEXT,
        status TEXT NOT NULL DEFAULT 'Draft',
        subtotal {money} DEFAULT 0,
        tax_rate {money} DEFAULT 0,
        tax_amount {money} DEFAULT 0,
        total_amount {money} DEFAULT 0,
        paid_amount {money} DEFAULT 0,
        notes TEXT DEFAULT '',
        sent_date TEXT,
        created_at TEXT NOT NULL DEFAULT {now},
        modified_at TEXT
    );

    CREATE TABLE IF NOT EXISTS pay_terms (
        id {pk},
        project_id INTEGER NOT NULL REFERENCES projects(id),
        estimate_id INTEGER REFERENCES estimates(id),
        term_type TEXT NOT NULL,
        term_name TEXT NOT NULL,
        description TEXT DEFAULT '',
        percentage {money},
        fixed_amount {money},
        due_date TEXT,
        due_description TEXT DEFAULT '',
        status TEXT NOT NULL DEFAULT 'Pending',
        sort_order INTEGER DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT {now},
        modified_at TEXT
    );

    CREATE TABLE IF NOT EXISTS invoice_line_items (
        id {pk},
        invoice_id INTEGER NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
        pay_term_id INTEGER REFERENCES pay_terms(id),
        item_description TEXT DEFAULT '',
        quantity {money} DEFAULT 1,
        unit_rate {money} DEFAULT 0,
        line_total {money} DEFAULT 0,
        sort_order INTEGER DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS payments (
        id {pk},
        invoice_id INTEGER NOT NULL REFERENCES invoices(id),
        payment_date TEXT NOT NULL,
        amount {money} NOT NULL,
        payment_method TEXT DEFAULT 'Check',
        reference_number TEXT DEFAULT '',
        notes TEXT DEFAULT '',
        created_at TEXT NOT NULL DEFAULT {now}
    );

    CREATE TABLE IF NOT EXISTS contracts (
        id {pk},
        project_id INTEGER NOT NULL REFERENCES projects(id),
        estimate_id INTEGER REFERENCES estimates(id),
        contract_number TEXT NOT NULL UNIQUE,
        contract_type TEXT NOT NULL DEFAULT 'Design Contract',
        status TEXT NOT NULL DEFAULT 'Draft',
        contract_amount {money} DEFAULT 0,
        start_date TEXT,
        estimated_completion_date TEXT,
        pay_terms TEXT DEFAULT '',
        terms_text TEXT DEFAULT '',
        signing_token TEXT,
        sent_date TEXT,
        signed_date TEXT,
        client_signature TEXT,
        client_signature_date TEXT,
        signature_ip_address TEXT,
        created_at TEXT NOT NULL DEFAULT {now},
        modified_at TEXT
    );

    CREATE TABLE IF NOT EXISTS settings (
        id {pk},
        setting_key TEXT NOT NULL UNIQUE,
        setting_value TEXT,
        updated_at TEXT NOT NULL DEFAULT {now}
    );

    CREATE INDEX IF NOT EXISTS idx_projects_customer ON projects(customer_id);
    CREATE INDEX IF NOT EXISTS idx_estimates_project ON estimates(project_id);
    CREATE INDEX IF NOT EXISTS idx_estimate_items_estimate ON estimate_line_items(estimate_id);
    CREATE INDEX IF NOT EXISTS idx_invoices_project ON invoices(project_id);
    CREATE INDEX IF NOT EXISTS idx_invoices_estimate ON invoices(estimate_id);
    CREATE INDEX IF NOT EXISTS idx_invoice_items_invoice ON invoice_line_items(invoice_id);
    CREATE INDEX IF NOT EXISTS idx_payments_invoice ON payments(invoice_id);
    CREATE INDEX IF NOT EXISTS idx_pay_terms_project ON pay_terms(project_id);
    CREATE INDEX IF NOT EXISTS idx_contracts_project ON contracts(project_id);
'''

DEFAULT_LINE_ITEMS = [
    ('DESIGN', 'Design', 'Architectural design and drafting of plan set', 'Design', 'hrs', 75.00),
    ('SITE_VISIT', 'Site Visit', 'Site visit and existing conditions measurement', 'Design', 'each', 150.00),
    ('PERMIT_COORDINATION', 'Permit Coordination', 'Permit application preparation and submittal coordination', 'Permitting', 'hrs', 75.00),
    ('ENGINEERING_COORDINATION', 'Engineering Coordination', 'Coordination with structural and/or civil engineer', 'Engineering', 'hrs', 75.00),
    ('REVISIONS', 'Revisions', 'Plan revisions beyond the included revision rounds', 'Design', 'hrs', 75.00),
]


def init_db():
    dialect = get_dialect()
    if dialect == SQLITE:
        os.makedirs(os.path.dirname(os.path.abspath(DB_PATH)), exist_ok=True)
    conn = get_db()
    conn.executescript(SCHEMA.format(**DDL_FRAGMENTS[dialect]))

    # Migration: project location, contact and completion columns
    project_cols = table_columns(conn, 'projects')
    for col in PROJECT_ADDED_COLUMNS:
        if col not in project_cols:
            typedef = 'TEXT' if col == 'actual_completion_date' else "TEXT DEFAULT ''"
            conn.execute(f'ALTER TABLE projects ADD COLUMN {col} {typedef}')
    conn.commit()

    from settings_helper import DEFAULT_SETTINGS
    existing = {r['setting_key'] for r in conn.execute('SELECT setting_key FROM settings').fetchall()}
    for key, value in DEFAULT_SETTINGS.items():
        if key not in existing:
            conn.execute('INSERT INTO settings (setting_key, setting_value) VALUES (?, ?)', (key, value))

    if conn.execute('SELECT COUNT(*) FROM line_items_master').fetchone()[0] == 0:
        for code, name, desc, category, unit, rate in DEFAULT_LINE_ITEMS:
            conn.execute(
                '''INSERT INTO line_items_master (item_code, item_name, item_description, category, unit_of_measure, standard_rate)
                   VALUES (?,?,?,?,?,?)''',
                (code, name, desc, category, unit, rate)
            )

    if conn.execute('SELECT COUNT(*) FROM users').fetchone()[0] == 0:
        username = os.environ.get('ADMIN_USERNAME', 'admin')
        conn.execute(
            '''INSERT INTO users (username, email, password_hash, first_name, last_name, role)
               VALUES (?,?,?,?,?,?)''',
            (username, os.environ.get('ADMIN_EMAIL', 'admin@example.com'),
             generate_password_hash(os.environ.get('ADMIN_PASSWORD', 'admin')),
             'System', 'Administrator', 'admin')
        )
        log.info('Created default administrator %r', username)

    conn.commit()
    conn.close()


def table_columns(conn, table):
    if conn.dialect == SQLITE:
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    rows = conn.execute(
        'SELECT column_name FROM information_schema.columns WHERE table_name = ?', (table,)
    ).fetchall()
    return {r[0] for r in rows}


def list_tables(conn):
    if conn.dialect == SQLITE:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    else:
        rows = conn.execute(
            "SELECT table_name AS name FROM information_schema.tables WHERE table_schema = 'public'"
        ).fetchall()
    return {r['name'] for r in rows}


def check_health():
    """Connectivity plus required-table check, shared by /api/health and
    scripts/health_check.py."""
    result = {'dialect': get_dialect(), 'connected': False, 'missing_tables': []}
    try:
        conn = get_db()
    except (sqlite3.Error, DatabaseError) as e:
        result['error'] = str(e)
        return result
    try:
        conn.execute('SELECT 1').fetchone()
        result['connected'] = True
        tables = list_tables(conn)
        result['missing_tables'] = [t for t in REQUIRED_TABLES if t not in tables]
    except (sqlite3.Error, DatabaseError) as e:
        result['error'] = str(e)
    finally:
        conn.close()
    return result
