from datetime import date

from validators import (
    is_valid_email, is_valid_phone, is_valid_zip, parse_date, sanitize_input, sanitize_payload,
    validate_customer, validate_password, validate_project, validate_signup,
)


def test_email():
    assert is_valid_email('jane@acme.example')
    assert not is_valid_email('jane@acme')
    assert not is_valid_email('jane @acme.com')


def test_phone_and_zip():
    assert is_valid_phone('(555) 201-3344')
    assert not is_valid_phone('555-1234')
    assert is_valid_zip('99201')
    assert is_valid_zip('99201-1234')
    assert not is_valid_zip('9920')


def test_parse_date():
    assert parse_date('2025-03-01') == date(2025, 3, 1)
    assert parse_date('03/01/2025') is None


def test_sanitize_strips_tags():
    assert sanitize_input('  <b>Acme</b> ') == 'Acme'
    assert sanitize_input(12) == 12
    assert sanitize_payload({'a': '<i>x</i>', 'b': 'y', 'c': 'z'}, ('a', 'b')) == {'a': 'x', 'b': 'y'}


def test_customer_rules():
    assert validate_customer({'company_name': 'Acme'}) == []
    errors = validate_customer({'company_name': ' ', 'email': 'bad', 'zip_code': '1'})
    assert 'Company name is required' in errors
    assert 'Email is not a valid email address' in errors
    assert 'ZIP code must be 12345 or 12345-6789' in errors


def test_project_rules():
    assert validate_project({'project_name': 'Deck', 'customer_id': 1}) == []
    errors = validate_project({'project_name': '', 'start_date': '2025-05-01', 'end_date': '2025-04-01',
                               'total_amount': 'lots', 'priority': -1})
    assert 'Project name is required' in errors
    assert 'Customer is required' in errors
    assert 'End date must be after start date' in errors
    assert 'Amount must be a number' in errors
    assert 'Priority cannot be negative' in errors


def test_same_day_end_is_rejected():
    errors = validate_project({'project_name': 'Deck', 'customer_id': 1,
                               'start_date': '2025-05-01', 'end_date': '2025-05-01'})
    assert errors == ['End date must be after start date']


def test_project_without_customer_check():
    assert validate_project({'project_name': 'Deck'}, require_customer=False) == []


def test_password():
    assert validate_password('secret') == []
    assert validate_password('short') == ['Password must be at least 6 characters']


def test_signup():
    good = {'username': 'jane_s', 'email': 'jane@acme.example', 'password': 'secret1',
            'first_name': 'Jane', 'last_name': 'Smith'}
    assert validate_signup(good) == []
    assert validate_signup(dict(good, last_name='')) == ['All fields are required']
    assert 'Username may only contain letters, numbers and underscores' in validate_signup(dict(good, username='jane s'))
    assert validate_signup(dict(good, username=12345)) == ['All fields must be text']


def test_numbers_from_json():
    assert validate_customer({'company_name': 'Acme', 'phone': 5551234567}) == []
    assert validate_customer({'company_name': 404}) == []
    assert validate_customer({'company_name': 'Acme', 'zip_code': 1}) == ['ZIP code must be 12345 or 12345-6789']
    assert validate_project({'project_name': 7, 'customer_id': 1}) == []
    assert validate_password(123456) == ['Password must be at least 6 characters']
