import logging
import time

from database import get_db, now_stamp

log = logging.getLogger(__name__)

CACHE_SECONDS = 5 * 60

DEFAULT_EXCLUSIONS = (
    'Permit fees, printing, third party stamped engineering, if required, anything not '
    'specifically included in this estimate, unforeseen circumstances. We are not responsible '
    'for unpermittable projects, no refunds will be given once the work is complete. '
    'Coordinating with structural engineer and/or civil engineer is included, customer pays '
    'any necessary third party vendors directly.'
)

DEFAULT_SETTINGS = {
    'company_name': 'Your Company Name',
    'company_address': 'Your Company Address',
    'company_phone': '(555) 123-4567',
    'company_email': 'contact@yourcompany.com',
    'company_website': 'www.yourcompany.com',
    'company_license': '',
    'team_member_full_name': '',
    'team_member_title': 'President',
    'tax_rate': '0.0875',
    'payment_terms': '30',
    'hourly_rate': '75.00',
    'invoice_footer': 'Thank you for your business!',
    'contract_footer': 'This contract is legally binding.',
    'default_exclusions': DEFAULT_EXCLUSIONS,
    'currency_symbol': '$',
    'date_format': 'MM/dd/yyyy',
    'email_notifications': 'true',
    'auto_backup': 'true',
    'show_logo': 'true',
    'require_project_approval': 'false',
    'signature_image_url': '',
}

NUMERIC_KEYS = ('tax_rate', 'payment_terms', 'hourly_rate')
BOOLEAN_KEYS = ('email_notifications', 'auto_backup', 'show_logo', 'require_project_approval')

_cache = {'settings': None, 'loaded_at': 0.0}


def coerce_value(key, raw):
    if raw is None:
        return None
    if key in NUMERIC_KEYS:
        try:
            return float(raw)
        except (TypeError, ValueError):
            return float(DEFAULT_SETTINGS[key])
    if key in BOOLEAN_KEYS:
        return str(raw).strip().lower() == 'true'
    return raw


def serialize_value(value):
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    return str(value)


def load_settings(conn):
    rows = conn.execute('SELECT setting_key, setting_value FROM settings ORDER BY setting_key').fetchall()
    settings = {k: coerce_value(k, v) for k, v in DEFAULT_SETTINGS.items()}
    for r in rows:
        settings[r['setting_key']] = coerce_value(r['setting_key'], r['setting_value'])
    return settings


def get_settings(force=False):
    """Typed settings dict, cached for CACHE_SECONDS."""
    if not force and _cache['settings'] is not None and time.time() - _cache['loaded_at'] < CACHE_SECONDS:
        return dict(_cache['settings'])
    conn = get_db()
    settings = load_settings(conn)
    conn.close()
    _cache['settings'] = settings
    _cache['loaded_at'] = time.time()
    return dict(settings)


def get_setting(key, default=None):
    value = get_settings().get(key)
    return default if value is None else value


def clear_cache():
    _cache['settings'] = None
    _cache['loaded_at'] = 0.0


def upsert_setting(conn, key, value):
    stamp = now_stamp()
    updated = conn.execute(
        'UPDATE settings SET setting_value = ?, updated_at = ? WHERE setting_key = ?',
        (serialize_value(value), stamp, key)
    ).rowcount
    if not updated:
        conn.execute(
            'INSERT INTO settings (setting_key, setting_value, updated_at) VALUES (?, ?, ?)',
            (key, serialize_value(value), stamp)
        )


def update_settings(values):
    conn = get_db()
    for key, value in values.items():
        upsert_setting(conn, key, value)
    conn.commit()
    conn.close()
    clear_cache()
    log.info('Updated settings: %s', ', '.join(sorted(values)))


def reset_settings():
    conn = get_db()
    conn.execute('DELETE FROM settings')
    for key, value in DEFAULT_SETTINGS.items():
        conn.execute('INSERT INTO settings (setting_key, setting_value) VALUES (?, ?)', (key, value))
    conn.commit()
    conn.close()
    clear_cache()
    log.info('Settings reset to defaults')


def export_settings():
    from datetime import datetime
    return {
        'settings': get_settings(force=True),
        'exported_at': datetime.now().isoformat(timespec='seconds'),
        'version': '1.0',
    }
