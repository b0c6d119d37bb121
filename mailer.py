"""Outgoing email over SMTP (Gmail app-password style by default)."""

import logging
import os
import smtplib
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

log = logging.getLogger(__name__)


class EmailError(Exception):
    pass


def email_config():
    user = os.environ.get('EMAIL_USER', '')
    return {
        'host': os.environ.get('EMAIL_HOST', 'smtp.gmail.com'),
        'port': int(os.environ.get('EMAIL_PORT', 587) or 587),
        'user': user,
        'password': os.environ.get('EMAIL_APP_PASSWORD', ''),
        'from_email': os.environ.get('EMAIL_FROM', '') or user,
    }


def _require_config():
    cfg = email_config()
    if not cfg['user'] or not cfg['password']:
        raise EmailError('Email configuration missing. Set EMAIL_USER and EMAIL_APP_PASSWORD.')
    return cfg


def _friendly_error(e):
    if isinstance(e, smtplib.SMTPAuthenticationError):
        return 'Email authentication failed. Check EMAIL_USER and EMAIL_APP_PASSWORD (use an app password, not the account password).'
    if isinstance(e, smtplib.SMTPRecipientsRefused):
        return 'The recipient address was rejected by the mail server.'
    return f'Email failed: {e}'


def build_message(to, subject, html, from_email, attachments=None, text=None):
    msg = MIMEMultipart('mixed')
    msg['From'] = from_email
    msg['To'] = ', '.join(to) if isinstance(to, (list, tuple)) else to
    msg['Subject'] = subject
    msg['Message-ID'] = make_msgid()

    body = MIMEMultipart('alternative')
    if text:
        body.attach(MIMEText(text, 'plain'))
    body.attach(MIMEText(html, 'html'))
    msg.attach(body)

    for filename, content, mimetype in attachments or []:
        maintype, subtype = mimetype.split('/', 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(content)
        encoders.encode_base64(part)
        part.add_header('Content-Disposition', f'attachment; filename="{filename}"')
        msg.attach(part)
    return msg


def send_email(to, subject, html, attachments=None, text=None):
    """Send an HTML email.

    Args:
        to: address or list of addresses.
        subject: subject line.
        html: HTML body.
        attachments: optional list of (filename, bytes, mimetype) tuples.
        text: optional plain-text alternative.

    Returns:
        {'success': True, 'message_id': ...} or {'success': False, 'error': ...}
    """
    try:
        cfg = _require_config()
    except EmailError as e:
        log.warning('Email not sent to %s: %s', to, e)
        return {'success': False, 'error': str(e)}

    msg = build_message(to, subject, html, cfg['from_email'], attachments, text)
    try:
        with smtplib.SMTP(cfg['host'], cfg['port'], timeout=30) as server:
            server.starttls()
            server.login(cfg['user'], cfg['password'])
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        log.error('Email to %s failed: %s', to, e)
        return {'success': False, 'error': _friendly_error(e)}

    log.info('Sent "%s" to %s', subject, msg['To'])
    return {'success': True, 'message_id': msg['Message-ID']}


def test_email_config():
    """Log in to the SMTP server without sending anything."""
    try:
        cfg = _require_config()
    except EmailError as e:
        return {'success': False, 'error': str(e)}
    try:
        with smtplib.SMTP(cfg['host'], cfg['port'], timeout=30) as server:
            server.starttls()
            server.login(cfg['user'], cfg['password'])
    except (smtplib.SMTPException, OSError) as e:
        log.error('SMTP check failed: %s', e)
        return {'success': False, 'error': _friendly_error(e)}
    return {'success': True, 'message': f"Email configuration verified for {cfg['user']}"}
