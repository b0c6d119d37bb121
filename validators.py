"""Input validation for customer, project and account forms.

Each validate_* function returns a list of human readable problems;
an empty list means the payload is acceptable.
"""

import re
from datetime import datetime

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_RE = re.compile(r'^[\d\s\-\(\)\+\.]{10,}$')
ZIP_RE = re.compile(r'^\d{5}(-\d{4})?$')
USERNAME_RE = re.compile(r'^[a-zA-Z0-9_]+$')
TAG_RE = re.compile(r'<[^>]*>')

MIN_PASSWORD_LENGTH = 6
MIN_USERNAME_LENGTH = 3


def _text(value):
    """Strip a scalar form value; JSON numbers arrive as int or float."""
    if value is None:
        return ''
    return str(value).strip()


def is_valid_email(value):
    return bool(EMAIL_RE.match(_text(value)))


def is_valid_phone(value):
    return bool(PHONE_RE.match(_text(value)))


def is_valid_zip(value):
    return bool(ZIP_RE.match(_text(value)))


def parse_date(value):
    """Parse an ISO date (YYYY-MM-DD, optionally with a time part). None if blank or bad."""
    if not value:
        return None
    text = str(value).strip()[:10]
    try:
        return datetime.strptime(text, '%Y-%m-%d').date()
    except ValueError:
        return None


def sanitize_input(value):
    if not isinstance(value, str):
        return value
    return TAG_RE.sub('', value).strip()


def sanitize_payload(data, fields):
    return {f: sanitize_input(data.get(f)) for f in fields if f in data}


def validate_customer(data):
    errors = []
    if not _text(data.get('company_name')):
        errors.append('Company name is required')
    for field, label in (('email', 'Email'), ('email2', 'Secondary email')):
        value = _text(data.get(field))
        if value and not is_valid_email(value):
            errors.append(f'{label} is not a valid email address')
    for field, label in (('phone', 'Phone'), ('phone2', 'Secondary phone')):
        value = _text(data.get(field))
        if value and not is_valid_phone(value):
            errors.append(f'{label} is not a valid phone number')
    zip_code = _text(data.get('zip_code'))
    if zip_code and not is_valid_zip(zip_code):
        errors.append('ZIP code must be 12345 or 12345-6789')
    return errors


def validate_project(data, require_customer=True):
    errors = []
    if not _text(data.get('project_name')):
        errors.append('Project name is required')
    if require_customer and not data.get('customer_id'):
        errors.append('Customer is required')

    start = end = None
    if data.get('start_date'):
        start = parse_date(data['start_date'])
        if start is None:
            errors.append('Start date is not a valid date')
    if data.get('end_date'):
        end = parse_date(data['end_date'])
        if end is None:
            errors.append('End date is not a valid date')
    if start and end and end <= start:
        errors.append('End date must be after start date')
    if data.get('actual_completion_date') and parse_date(data['actual_completion_date']) is None:
        errors.append('Actual completion date is not a valid date')

    contact_email = _text(data.get('project_contact_email'))
    if contact_email and not is_valid_email(contact_email):
        errors.append('Project contact email is not a valid email address')
    contact_phone = _text(data.get('project_contact_phone'))
    if contact_phone and not is_valid_phone(contact_phone):
        errors.append('Project contact phone is not a valid phone number')
    project_zip = _text(data.get('project_zip'))
    if project_zip and not is_valid_zip(project_zip):
        errors.append('Project ZIP code must be 12345 or 12345-6789')

    if data.get('total_amount') not in (None, ''):
        try:
            if float(data['total_amount']) < 0:
                errors.append('Amount cannot be negative')
        except (TypeError, ValueError):
            errors.append('Amount must be a number')

    if data.get('priority') not in (None, ''):
        try:
            if int(data['priority']) < 0:
                errors.append('Priority cannot be negative')
        except (TypeError, ValueError):
            errors.append('Priority must be a whole number')
    return errors


def validate_password(password):
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return [f'Password must be at least {MIN_PASSWORD_LENGTH} characters']
    return []


def validate_signup(data):
    errors = []
    required = ('username', 'email', 'password', 'first_name', 'last_name')
    if any(not _text(data.get(f)) for f in required):
        return ['All fields are required']
    if any(not isinstance(data[f], str) for f in required):
        return ['All fields must be text']
    username = data['username'].strip()
    if len(username) < MIN_USERNAME_LENGTH:
        errors.append(f'Username must be at least {MIN_USERNAME_LENGTH} characters')
    if not USERNAME_RE.match(username):
        errors.append('Username may only contain letters, numbers and underscores')
    if not is_valid_email(data['email']):
        errors.append('Please enter a valid email address')
    errors.extend(validate_password(data['password']))
    return errors
