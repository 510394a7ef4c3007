"""Notification collaborator — customer and admin messages.

The workflow service only calls the methods below and records what they
return. EmailNotifier delivers over SMTP via email_service; tests swap in
a recording fake with the same methods.

Customer messages are sent synchronously and raise DeliveryError when they
could not be sent. For payment confirmation and completion emails the
workflow service logs that error and moves on. Admin notifications go out
in a background thread.
"""

import logging
import smtplib
from collections import namedtuple
from datetime import datetime, timezone

from leadportal.errors import DeliveryError
from leadportal.services.email_service import send_email, send_email_sync
from leadportal.services.quote_tokens import QuoteTokenSigner
from leadportal.workflow.tracks import TrackView

logger = logging.getLogger(__name__)

Delivery = namedtuple("Delivery", ["sent_at", "reference"])
CompletionResult = namedtuple("CompletionResult", ["sent_at", "review_requested"])


class EmailNotifier:

    def __init__(self, base_url, brand_name, signer, admin_to=None):
        self.base_url = base_url.rstrip("/")
        self.brand_name = brand_name
        self.signer = signer
        self.admin_to = admin_to

    @classmethod
    def from_config(cls, config):
        return cls(
            base_url=config["APP_BASE_URL"],
            brand_name=config.get("BRAND_NAME", "UBD Business Setup"),
            signer=QuoteTokenSigner.from_config(config),
            admin_to=config.get("ADMIN_NOTIFY_TO"),
        )

    def quote_url(self, lead, track, quote_sent_at):
        token = self.signer.dumps(lead.id, track.name, quote_sent_at)
        return f"{self.base_url}/quote/decide?token={token}"

    def _send(self, lead, subject, template, context, what):
        if not lead.email:
            raise DeliveryError(f"Lead has no email address; cannot send {what}.")
        context = dict(context, lead=lead, brand_name=self.brand_name)
        try:
            message_id = send_email_sync(
                to=lead.email, subject=subject, template=template, context=context
            )
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send {what} for lead {lead.id}: {e}")
            raise DeliveryError(f"Failed to send {what} email. Please try again.") from e
        if message_id is None:
            raise DeliveryError("Email service is not configured.")
        return Delivery(sent_at=datetime.now(timezone.utc), reference=message_id)

    def send_quote_message(self, lead, track, quote_sent_at):
        view = TrackView(lead, track)
        return self._send(
            lead,
            subject=f"Your {track.label.lower()} setup quote from {self.brand_name}",
            template="emails/quote.html",
            context={
                "track_label": track.label,
                "amount_aed": view.quoted_amount,
                "decision_url": self.quote_url(lead, track, quote_sent_at),
            },
            what="quote",
        )

    def send_invoice_message(self, lead, track, payment_link, invoice_number, version, amount_aed):
        if version > 1:
            subject = f"Revised Invoice R{version}: {invoice_number}"
        else:
            subject = f"Invoice {invoice_number}"
        return self._send(
            lead,
            subject=subject,
            template="emails/invoice.html",
            context={
                "track_label": track.label,
                "invoice_number": invoice_number,
                "version": version,
                "amount_aed": amount_aed,
                "payment_link": payment_link,
            },
            what="invoice",
        )

    def send_reminder_message(self, lead, track, reminder_number):
        view = TrackView(lead, track)
        return self._send(
            lead,
            subject=f"Payment reminder: {view.invoice_number}",
            template="emails/payment_reminder.html",
            context={
                "track_label": track.label,
                "invoice_number": view.invoice_number,
                "amount_aed": view.invoice_amount,
                "payment_link": view.invoice_payment_link,
                "reminder_number": reminder_number,
            },
            what="payment reminder",
        )

    def send_payment_confirmation(self, lead, track):
        view = TrackView(lead, track)
        if view.invoice_number:
            subject = f"Payment received: {view.invoice_number}"
        else:
            subject = "Payment received"
        return self._send(
            lead,
            subject=subject,
            template="emails/payment_confirmation.html",
            context={
                "track_label": track.label,
                "invoice_number": view.invoice_number,
                "amount_aed": view.invoice_amount,
            },
            what="payment confirmation",
        )

    def send_completion_message(self, lead, track):
        # A review is requested only once per lead, on its first completion.
        review_requested = lead.google_review_requested_at is None
        delivery = self._send(
            lead,
            subject=f"Your {track.label.lower()} setup is complete",
            template="emails/completion.html",
            context={
                "track_label": track.label,
                "request_review": review_requested,
            },
            what="completion",
        )
        return CompletionResult(sent_at=delivery.sent_at, review_requested=review_requested)

    def notify_admin(self, lead, headline, lines=None):
        if not self.admin_to:
            logger.warning("Admin notification skipped — ADMIN_NOTIFY_TO not configured.")
            return
        send_email(
            to=self.admin_to,
            subject=f"{headline}: {lead.full_name}",
            template="emails/admin_notification.html",
            context={
                "lead": lead,
                "brand_name": self.brand_name,
                "headline": headline,
                "lines": lines or [],
                "lead_url": f"{self.base_url}/admin/leads/{lead.id}",
            },
        )
