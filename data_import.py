"""Spreadsheet import for customers, projects and catalog line items.

Files (.xlsx or .csv) are uploaded first and previewed; the browser then
posts a column mapping ({field: column_index}) and the first data row, and
each row is validated, de-duplicated against the database and inserted.
"""

import csv
import io
import logging
import os
import re
import sqlite3
import time
from datetime import date, datetime, timedelta

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font, PatternFill

from database import DatabaseError
from validators import validate_customer

log = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = ('.xlsx', '.xls', '.csv')
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
PREVIEW_ROWS = 10
UPLOAD_MAX_AGE_SECONDS = 60 * 60
EXCEL_EPOCH_OFFSET = 25569  # days between 1899-12-30 and 1970-01-01

TEMPLATES = {
    'customers': {
        'name': 'Customers',
        'description': 'Import customer companies and contacts',
        'fields': {
            'company_name': {'required': True, 'description': 'Company/Business Name'},
            'contact_name': {'required': False, 'description': 'Primary Contact Person'},
            'phone': {'required': False, 'description': 'Phone Number'},
            'email': {'required': False, 'description': 'Email Address'},
            'address': {'required': False, 'description': 'Street Address'},
            'city': {'required': False, 'description': 'City'},
            'state': {'required': False, 'description': 'State/Province'},
            'zip_code': {'required': False, 'description': 'ZIP/Postal Code'},
        },
        'sample': [
            ['Acme Holdings LLC', 'Jane Smith', '(555) 201-3344', 'jane@acme.example', '12 Main St', 'Spokane', 'WA', '99201'],
            ['Riverbend Homes', 'Tom Lee', '(555) 909-1200', 'tom@riverbend.example', '400 River Rd', 'Tacoma', 'WA', '98402'],
        ],
    },
    'projects': {
        'name': 'Projects',
        'description': 'Import projects for existing customers',
        'fields': {
            'customer_name': {'required': True, 'description': 'Customer Company Name (must already exist)'},
            'project_name': {'required': True, 'description': 'Project Name'},
            'project_description': {'required': False, 'description': 'Project Description'},
            'project_address': {'required': False, 'description': 'Project Address'},
            'start_date': {'required': False, 'description': 'Start Date (MM/DD/YYYY)'},
            'end_date': {'required': False, 'description': 'Estimated Completion Date (MM/DD/YYYY)'},
            'status': {'required': False, 'description': 'Status (Planning, In Progress, Completed, On Hold)'},
            'total_amount': {'required': False, 'description': 'Total Contract Amount'},
        },
        'sample': [
            ['Acme Holdings LLC', 'Garage Addition', 'Two car detached garage', '12 Main St', '03/01/2025', '05/15/2025', 'Planning', '8500'],
            ['Riverbend Homes', 'Kitchen Remodel', 'Wall removal and new layout', '400 River Rd', '04/10/2025', '06/30/2025', 'Planning', '4200'],
        ],
    },
    'line-items': {
        'name': 'Line Items',
        'description': 'Import reusable line items for estimates',
        'fields': {
            'item_code': {'required': False, 'description': 'Unique Item Code'},
            'item_name': {'required': True, 'description': 'Item Name'},
            'item_description': {'required': False, 'description': 'Item Description'},
            'category': {'required': False, 'description': 'Category (Design, Permits, Construction, etc.)'},
            'unit_of_measure': {'required': False, 'description': 'Unit of Measure (sq ft, hrs, each, etc.)'},
            'standard_rate': {'required': False, 'description': 'Standard Rate/Price'},
        },
        'sample': [
            ['DECK_DESIGN', 'Deck Design', 'Deck framing plan and details', 'Design', 'hrs', '75'],
            ['SURVEY', 'Site Survey', 'Existing conditions survey', 'Design', 'each', '250'],
        ],
    },
}


class ImportFileError(Exception):
    pass


# ---------------------------------------------------------------------------
# Reading files
# ---------------------------------------------------------------------------

def allowed_file(filename):
    return os.path.splitext(filename or '')[1].lower() in ALLOWED_EXTENSIONS


def read_rows(path, sheet_name=None):
    """Return (sheet_names, rows) for a spreadsheet or CSV file.

    Rows are lists of raw cell values; trailing empty rows are dropped.
    """
    ext = os.path.splitext(path)[1].lower()
    if ext == '.csv':
        with open(path, 'rb') as f:
            content = f.read()
        # Strip BOM if present
        text = content.decode('utf-8-sig', errors='replace')
        rows = [row for row in csv.reader(io.StringIO(text))]
        sheets = ['CSV']
    elif ext == '.xlsx':
        try:
            wb = load_workbook(path, read_only=True, data_only=True)
        except (OSError, ValueError, KeyError) as e:
            raise ImportFileError(f'Could not read workbook: {e}') from e
        sheets = wb.sheetnames
        if sheet_name and sheet_name not in sheets:
            wb.close()
            raise ImportFileError(f'Sheet not found: {sheet_name}')
        ws = wb[sheet_name] if sheet_name else wb[sheets[0]]
        rows = [list(r) for r in ws.iter_rows(values_only=True)]
        wb.close()
    elif ext == '.xls':
        raise ImportFileError('Legacy .xls workbooks are not supported. Save the file as .xlsx and upload again.')
    else:
        raise ImportFileError(f'Unsupported file type: {ext}')

    while rows and all(_is_blank(v) for v in rows[-1]):
        rows.pop()
    return sheets, rows


def preview_file(path, sheet_name=None):
    sheets, rows = read_rows(path, sheet_name)
    headers = [_cell_text(v) for v in rows[0]] if rows else []
    return {
        'sheets': sheets,
        'headers': headers,
        'rows': [[_cell_text(v) for v in r] for r in rows[1:PREVIEW_ROWS + 1]],
        'total_rows': max(len(rows) - 1, 0),
    }


def cleanup_uploads(upload_dir, max_age=UPLOAD_MAX_AGE_SECONDS, now=None):
    """Delete uploaded import files older than ``max_age`` seconds."""
    if not os.path.isdir(upload_dir):
        return 0
    now = now or time.time()
    removed = 0
    for name in os.listdir(upload_dir):
        path = os.path.join(upload_dir, name)
        if os.path.isfile(path) and now - os.path.getmtime(path) > max_age:
            os.remove(path)
            removed += 1
    if removed:
        log.info('Removed %d stale import file(s)', removed)
    return removed


# ---------------------------------------------------------------------------
# Cell parsing
# ---------------------------------------------------------------------------

def _is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def _cell_text(value):
    if value is None:
        return ''
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d')
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def raw_value(row, index):
    try:
        index = int(index)
    except (TypeError, ValueError):
        return ''
    if index < 0 or index >= len(row) or row[index] is None:
        return ''
    return row[index]


def column_value(row, index):
    return _cell_text(raw_value(row, index))


def excel_serial_to_date(serial):
    """Excel stores dates as days since 1899-12-30."""
    seconds = (float(serial) - EXCEL_EPOCH_OFFSET) * 86400
    return (datetime(1970, 1, 1) + timedelta(seconds=seconds)).date()


def _parse_date(val):
    """Convert an Excel serial, MM/DD/YYYY or ISO value to YYYY-MM-DD ('' if unknown)."""
    if isinstance(val, datetime):
        return val.strftime('%Y-%m-%d')
    if isinstance(val, date):
        return val.isoformat()
    if isinstance(val, (int, float)):
        return excel_serial_to_date(val).isoformat()
    val = (val or '').strip()
    if not val:
        return ''
    if re.match(r'^\d{4}-\d{2}-\d{2}', val):
        return val[:10]
    if re.match(r'^\d+(\.\d+)?$', val):
        return excel_serial_to_date(val).isoformat()
    m = re.match(r'^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$', val)
    if m:
        year = int(m.group(3))
        if year < 100:
            year += 2000
        return f'{year}-{int(m.group(1)):02d}-{int(m.group(2)):02d}'
    return ''


def _parse_money(val):
    """Convert '$1,234.56' or '1234.56' to float."""
    if val in (None, ''):
        return 0.0
    cleaned = re.sub(r'[^0-9.\-]', '', str(val))
    try:
        return round(float(cleaned), 2)
    except ValueError:
        return 0.0


def _data_rows(rows, start_row):
    """Yield (sheet_row_number, row) from 1-based ``start_row`` (default: row 2)."""
    start = max(int(start_row or 2), 1)
    for number, row in enumerate(rows[start - 1:], start=start):
        if all(_is_blank(v) for v in row):
            continue
        yield number, row


def _new_results():
    return {'imported': 0, 'skipped': 0, 'errors': []}


# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------

def import_customers(conn, rows, mapping, start_row=2):
    results = _new_results()
    for number, row in _data_rows(rows, start_row):
        record = {field: column_value(row, mapping.get(field)) for field in TEMPLATES['customers']['fields']}
        if not record['company_name']:
            results['skipped'] += 1
            continue
        errors = validate_customer(record)
        if errors:
            results['errors'].append({'row': number, 'error': '; '.join(errors)})
            continue
        exists = conn.execute(
            'SELECT id FROM customers WHERE LOWER(company_name) = LOWER(?)', (record['company_name'],)
        ).fetchone()
        if exists:
            results['skipped'] += 1
            continue
        try:
            with conn.savepoint('import_row'):
                conn.execute(
                    '''INSERT INTO customers (company_name, contact_name, phone, email, address, city, state, zip_code)
                       VALUES (?,?,?,?,?,?,?,?)''',
                    (record['company_name'], record['contact_name'], record['phone'], record['email'],
                     record['address'], record['city'], record['state'], record['zip_code'])
                )
            results['imported'] += 1
        except (sqlite3.Error, DatabaseError) as e:
            log.warning('Customer import row %d failed: %s', number, e)
            results['errors'].append({'row': number, 'error': str(e)})
    conn.commit()
    return results


def import_projects(conn, rows, mapping, start_row=2):
    results = _new_results()
    for number, row in _data_rows(rows, start_row):
        project_name = column_value(row, mapping.get('project_name'))
        customer_name = column_value(row, mapping.get('customer_name'))
        if not project_name or not customer_name:
            results['skipped'] += 1
            continue
        customer = conn.execute(
            'SELECT id FROM customers WHERE LOWER(company_name) = LOWER(?)', (customer_name,)
        ).fetchone()
        if not customer:
            results['errors'].append({'row': number, 'error': f'Customer "{customer_name}" not found'})
            continue
        exists = conn.execute(
            'SELECT id FROM projects WHERE customer_id = ? AND LOWER(project_name) = LOWER(?)',
            (customer['id'], project_name)
        ).fetchone()
        if exists:
            results['skipped'] += 1
            continue
        start_date = _parse_date(raw_value(row, mapping.get('start_date')))
        end_date = _parse_date(raw_value(row, mapping.get('end_date')))
        if start_date and end_date and end_date <= start_date:
            results['errors'].append({'row': number, 'error': 'End date must be after start date'})
            continue
        try:
            with conn.savepoint('import_row'):
                conn.execute(
                    '''INSERT INTO projects (customer_id, project_name, project_description, project_address,
                       start_date, end_date, status, total_amount) VALUES (?,?,?,?,?,?,?,?)''',
                    (customer['id'], project_name,
                     column_value(row, mapping.get('project_description')),
                     column_value(row, mapping.get('project_address')),
                     start_date or None, end_date or None,
                     column_value(row, mapping.get('status')) or 'Planning',
                     _parse_money(column_value(row, mapping.get('total_amount'))))
                )
            results['imported'] += 1
        except (sqlite3.Error, DatabaseError) as e:
            log.warning('Project import row %d failed: %s', number, e)
            results['errors'].append({'row': number, 'error': str(e)})
    conn.commit()
    return results


def default_item_code(name):
    return re.sub(r'\s+', '_', (name or '').strip()).upper()


def import_line_items(conn, rows, mapping, start_row=2):
    results = _new_results()
    for number, row in _data_rows(rows, start_row):
        name = column_value(row, mapping.get('item_name'))
        if not name:
            results['skipped'] += 1
            continue
        code = column_value(row, mapping.get('item_code')) or default_item_code(name)
        exists = conn.execute('SELECT id FROM line_items_master WHERE item_code = ?', (code,)).fetchone()
        if exists:
            results['skipped'] += 1
            continue
        try:
            with conn.savepoint('import_row'):
                conn.execute(
                    '''INSERT INTO line_items_master (item_code, item_name, item_description, category, unit_of_measure, standard_rate)
                       VALUES (?,?,?,?,?,?)''',
                    (code, name,
                     column_value(row, mapping.get('item_description')) or name,
                     column_value(row, mapping.get('category')) or 'Custom',
                     column_value(row, mapping.get('unit_of_measure')) or 'hrs',
                     _parse_money(column_value(row, mapping.get('standard_rate'))))
                )
            results['imported'] += 1
        except (sqlite3.Error, DatabaseError) as e:
            log.warning('Line item import row %d failed: %s', number, e)
            results['errors'].append({'row': number, 'error': str(e)})
    conn.commit()
    return results


IMPORTERS = {
    'customers': import_customers,
    'projects': import_projects,
    'line-items': import_line_items,
}


def run_import(conn, import_type, rows, mapping, start_row=2):
    if import_type not in IMPORTERS:
        raise ImportFileError(f'Unknown import type: {import_type}')
    results = IMPORTERS[import_type](conn, rows, mapping or {}, start_row)
    log.info('Import %s: %d imported, %d skipped, %d errors', import_type,
             results['imported'], results['skipped'], len(results['errors']))
    return results


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def template_metadata():
    return {k: {'name': t['name'], 'description': t['description'], 'fields': t['fields']}
            for k, t in TEMPLATES.items()}


def build_template_workbook(import_type):
    """Sample .xlsx for an import type, returned as bytes."""
    if import_type not in TEMPLATES:
        raise ImportFileError(f'Unknown import type: {import_type}')
    template = TEMPLATES[import_type]
    wb = Workbook()
    ws = wb.active
    ws.title = template['name']

    header_font = Font(bold=True, color='FFFFFF')
    header_fill = PatternFill('solid', fgColor='2F5597')
    headers = [f.replace('_', ' ').title() + (' *' if meta['required'] else '')
               for f, meta in template['fields'].items()]
    ws.append(headers)
    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal='center')
    for sample in template['sample']:
        ws.append(sample)
    for idx, header in enumerate(headers, start=1):
        ws.column_dimensions[ws.cell(row=1, column=idx).column_letter].width = max(len(header) + 4, 16)

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
