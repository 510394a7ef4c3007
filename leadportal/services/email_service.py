"""
SMTP email service.

Renders a Jinja2 HTML template and sends it over SMTP. Two entry points:

- send_email: fire-and-forget in a background thread. Failures are logged.
  Used for admin notifications.
- send_email_sync: blocks until the SMTP server accepts the message and
  raises on failure. Used for customer-facing messages whose delivery is
  recorded on the lead (quote, invoice, reminder, completion).

Usage:
    from leadportal.services.email_service import send_email

    send_email(
        to="admin@example.ae",
        subject="New lead",
        template="emails/admin_notification.html",
        context={"headline": "New lead received"},
    )
"""

import logging
import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from flask import current_app, render_template

logger = logging.getLogger(__name__)


def _build_message(app, to, subject, template, context, reply_to):
    from_name = app.config.get("MAIL_FROM_NAME", "UBD Business Setup")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME", "")

    html_body = render_template(template, **(context or {}))

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to if isinstance(to, str) else ", ".join(to)
    msg["Message-ID"] = make_msgid()

    if reply_to:
        msg["Reply-To"] = reply_to

    msg.attach(MIMEText(html_body, "html"))
    return msg


def _deliver(app, msg):
    """Send over SMTP. Returns False when SMTP credentials are not configured.

    Raises:
        smtplib.SMTPException, OSError: On connection or delivery failure.
    """
    host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    port = app.config.get("MAIL_SMTP_PORT", 587)
    username = app.config.get("MAIL_USERNAME")
    password = app.config.get("MAIL_PASSWORD")

    if not username or not password:
        logger.warning("Email not sent — MAIL_USERNAME or MAIL_PASSWORD not configured.")
        return False

    with smtplib.SMTP(host, port, timeout=30) as server:
        server.ehlo()
        server.starttls()
        server.ehlo()
        server.login(username, password)
        server.send_message(msg)
    logger.info(f"Email sent to {msg['To']} — {msg['Subject']}")
    return True


def _send_in_background(app, msg):
    with app.app_context():
        try:
            _deliver(app, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {msg['To']}: {e}")


def send_email(to, subject, template, context=None, reply_to=None):
    """
    Send a templated HTML email without blocking the request.

    Args:
        to:        Recipient email address (str or list).
        subject:   Email subject line.
        template:  Path to Jinja2 HTML template (relative to templates/).
        context:   Dict of variables to pass to the template.
        reply_to:  Optional reply-to address.
    """
    app = current_app._get_current_object()
    msg = _build_message(app, to, subject, template, context, reply_to)

    thread = threading.Thread(target=_send_in_background, args=(app, msg))
    thread.daemon = True
    thread.start()


def send_email_sync(to, subject, template, context=None, reply_to=None):
    """
    Same as send_email but blocks until sent.

    Returns:
        The Message-ID of the sent email, or None if SMTP is not configured.

    Raises:
        smtplib.SMTPException, OSError: If the SMTP server rejects or is unreachable.
    """
    app = current_app._get_current_object()
    msg = _build_message(app, to, subject, template, context, reply_to)

    if not _deliver(app, msg):
        return None
    return msg["Message-ID"]
