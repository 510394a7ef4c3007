"""Workflow service — guarded transitions on a lead's company and bank tracks.

Every operation follows the same shape: load the lead, check the
preconditions its current fields impose, send the primary message if the
operation has one, write the field changes, append one activity row.
The stage itself is never written; leadportal.workflow.engine derives it.

Persistence and notification are injected (LeadStore, EmailNotifier or a
fake), so the service never reaches for app config or a global session.
Functions flush but do NOT commit — the caller commits.

Error policy:
- ValidationError: bad input (amount, payment link, decision wording).
- ConflictError: the lead's state blocks the operation (payment lock,
  terminal stage, quote already sent, ...).
- DeliveryError: the primary message failed; nothing was recorded.
- Admin notifications, the payment confirmation and the completion email
  are best-effort: failures are logged and never undo a recorded transition.
"""

import logging
from collections import namedtuple
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from urllib.parse import urlparse

import bleach

from leadportal.errors import ConflictError, ValidationError
from leadportal.workflow import decisions
from leadportal.workflow.engine import (
    PRE_QUOTE_STAGES,
    derive_stage,
    is_in_flight,
    is_invoice_outdated,
)
from leadportal.workflow.tracks import (
    BANK_TRACK,
    COMPANY_TRACK,
    TRACKS,
    TrackView,
    get_track,
    other_track,
)

logger = logging.getLogger(__name__)

Reminder = namedtuple("Reminder", ["sent_at", "count"])
DecisionResult = namedtuple("DecisionResult", ["lead", "decision", "already_decided"])


def _sanitize(text):
    """Strip all HTML tags from user input. Empty strings become None."""
    if text is None:
        return None
    cleaned = bleach.clean(str(text), tags=[], strip=True).strip()
    return cleaned or None


def _utcnow():
    return datetime.now(timezone.utc)


def parse_amount(value, field="Quoted amount"):
    """Parse a positive whole AED amount.

    Raises:
        ValidationError: If the value is not a positive whole number.
    """
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"{field} is required.")
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number.")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be greater than zero.")
    if amount != amount.to_integral_value():
        raise ValidationError(f"{field} must be a whole number of AED.")
    return int(amount)


def validate_payment_link(link):
    """Return the stripped link if it is a well-formed HTTPS URL.

    Raises:
        ValidationError: If it is missing, malformed or not HTTPS.
    """
    link = (link or "").strip()
    if not link:
        raise ValidationError("Payment link is required.")
    parsed = urlparse(link)
    if not parsed.scheme or not parsed.netloc or " " in link:
        raise ValidationError("Invalid payment link URL format.")
    if parsed.scheme != "https":
        raise ValidationError("Payment link must use HTTPS.")
    return link


def build_invoice_number(prefix, track, lead_id, sent_on, version):
    """e.g. UBD-C-20250314-9F2A-R1"""
    suffix = lead_id.replace("-", "")[-4:].upper()
    return f"{prefix}-{track.invoice_code}-{sent_on:%Y%m%d}-{suffix}-R{version}"


class WorkflowService:

    def __init__(self, store, notifier, invoice_prefix="UBD", clock=None):
        self.store = store
        self.notifier = notifier
        self.invoice_prefix = invoice_prefix
        self.clock = clock or _utcnow

    # ─── Helpers ───────────────────────────────────────────

    @staticmethod
    def resolve_track(name):
        try:
            return get_track(name)
        except KeyError:
            raise ValidationError(
                f"Invalid track '{name}'. Must be one of: {', '.join(TRACKS)}"
            )

    def _load(self, lead_id, track_name):
        track = self.resolve_track(track_name)
        lead = self.store.get(lead_id)
        return lead, TrackView(lead, track)

    def _update(self, view, **values):
        return self.store.update(view.lead.id, view.columns(**values))

    def _log(self, lead, action, message):
        self.store.append_activity(lead.id, action, message)
        logger.info(f"Lead {lead.id}: {message}")

    def _notify_admin(self, lead, headline, lines=None):
        try:
            self.notifier.notify_admin(lead, headline, lines)
        except Exception:
            logger.exception(f"Admin notification '{headline}' failed for lead {lead.id}")

    @staticmethod
    def _require_not_paid(view, action):
        if view.payment_received_at is not None:
            raise ConflictError(
                f"Payment already received for the {view.track.label.lower()} track; "
                f"cannot {action}."
            )

    @staticmethod
    def _require_open(view, action):
        label = view.track.label.lower()
        if view.completed_at is not None:
            raise ConflictError(f"The {label} track is already completed; cannot {action}.")
        if view.declined_at is not None:
            raise ConflictError(f"The {label} track is declined; cannot {action}.")

    @staticmethod
    def _require_quote_sent(view):
        if view.quote_sent_at is None:
            raise ConflictError(
                f"The {view.track.label.lower()} quote has not been sent."
            )

    def next_invoice_version(self, lead, track):
        view = TrackView(lead, track)
        latest = self.store.latest_revision(lead.id, track.name)
        last = max(latest.version if latest else 0, view.invoice_version or 0)
        return last + 1

    # ─── Agent contact & feasibility ───────────────────────

    def mark_agent_contacted(self, lead_id):
        lead = self.store.get(lead_id)
        if lead.agent_contacted_at is not None:
            return lead
        lead = self.store.update(lead.id, {"agent_contacted_at": self.clock()})
        self._log(lead, "agent_contacted", "Agent contacted via WhatsApp")
        return lead

    def set_feasibility(self, lead_id, track_name, feasible, quoted_amount=None):
        """Record the feasibility decision and quoted amount for a track.

        Feasibility is lead-level, so changing it also guards the other
        track: it may not move while that track is open past its quote.
        Not feasible clears the quoted amount of every track still before
        its quote; tracks that are completed or declined keep theirs.

        Args:
            lead_id: Lead UUID string.
            track_name: "company" or "bank".
            feasible: True, False, or None (not yet determined).
            quoted_amount: Required and > 0 when feasible is True.

        Returns:
            The updated Lead.

        Raises:
            ValidationError: If feasible is not a tri-state or the amount is invalid.
            ConflictError: If the quote was already sent or payment received,
                on this track or (when feasibility changes) the other one.
        """
        lead, view = self._load(lead_id, track_name)
        if feasible is not None and not isinstance(feasible, bool):
            raise ValidationError("Feasible must be true, false or null.")

        self._require_not_paid(view, "change feasibility")
        self._require_open(view, "change feasibility")
        if view.quote_sent_at is not None:
            raise ConflictError(
                "Quote already sent. Reset the quote workflow before changing "
                "feasibility, or edit the quoted amount instead."
            )

        other = other_track(view.track)
        if feasible != lead.feasible and is_in_flight(lead, other):
            raise ConflictError(
                f"The {other.label.lower()} track is already in progress; cannot change "
                f"the lead's feasibility. Decline the {view.track.label.lower()} track instead."
            )

        amount_column = view.track.columns.quoted_amount
        if feasible is True:
            amount = parse_amount(quoted_amount)
            changes = {"feasible": True, amount_column: amount}
            message = f"{view.track.label} marked feasible, quoted AED {amount:,}"
        elif feasible is False:
            changes = {"feasible": False, amount_column: None}
            if derive_stage(lead, other) in PRE_QUOTE_STAGES:
                changes[other.columns.quoted_amount] = None
            message = "Lead marked not feasible"
        else:
            amount = parse_amount(quoted_amount) if quoted_amount not in (None, "") else None
            changes = {"feasible": None, amount_column: amount}
            message = "Feasibility set back to undetermined"

        lead = self.store.update(lead.id, changes)
        self._log(lead, "feasibility_set", message)
        return lead

    def set_quoted_amount(self, lead_id, track_name, quoted_amount):
        """Change a track's quoted amount, also after the quote or invoice went out.

        An unpaid invoice for the old amount then shows as outdated until a
        revised invoice is sent. Setting the current amount again is a no-op.

        Raises:
            ValidationError: If the amount is not a positive whole number.
            ConflictError: If the lead is not feasible, or the track is paid,
                completed or declined.
        """
        lead, view = self._load(lead_id, track_name)
        self._require_not_paid(view, "change the quoted amount")
        self._require_open(view, "change the quoted amount")
        if lead.feasible is not True:
            raise ConflictError("Mark the lead feasible before setting the quoted amount.")
        amount = parse_amount(quoted_amount)

        previous = view.quoted_amount
        if amount == previous:
            return lead
        lead = self._update(view, quoted_amount=amount)

        label = view.track.label
        if previous is None:
            message = f"{label} quoted amount set to AED {amount:,}"
        else:
            message = f"{label} quoted amount changed from AED {previous:,} to AED {amount:,}"
        if is_invoice_outdated(lead, view.track):
            message = f"{message}; invoice {view.invoice_number} is outdated"
        self._log(lead, "quoted_amount_changed", message)
        return lead

    # ─── Quote ─────────────────────────────────────────────

    def send_quote(self, lead_id, track_name):
        """Send the quote for a track and record the send.

        A quote is sent once; sending again requires a workflow reset.

        Raises:
            ConflictError: If the track is not ready for a quote.
            DeliveryError: If the quote message could not be sent.
        """
        lead, view = self._load(lead_id, track_name)
        self._require_not_paid(view, "send a quote")
        self._require_open(view, "send a quote")
        if view.invoice_sent_at is not None:
            raise ConflictError(
                "Invoice already sent. Reset the quote workflow before sending a new quote."
            )
        if view.quote_sent_at is not None:
            raise ConflictError(
                "Quote already sent. Reset the quote workflow before sending it again."
            )
        if lead.feasible is not True:
            raise ConflictError("Mark the lead feasible before sending a quote.")
        if view.quoted_amount is None:
            raise ConflictError("Set the quoted amount before sending a quote.")

        # The customer link carries this send time.
        sent_at = self.clock()
        self.notifier.send_quote_message(lead, view.track, sent_at)

        values = decisions.cleared_fields()
        values["quote_sent_at"] = sent_at
        lead = self._update(view, **values)
        self._log(lead, "email_sent", f"{view.track.label} quote email sent")
        return lead

    def mark_quote_whatsapp_sent(self, lead_id, track_name):
        lead, view = self._load(lead_id, track_name)
        self._require_not_paid(view, "record a WhatsApp quote")
        self._require_open(view, "record a WhatsApp quote")
        if view.quoted_amount is None:
            raise ConflictError("Set the quoted amount before sending a quote.")

        lead = self._update(view, quote_whatsapp_sent_at=self.clock())
        self._log(lead, "quote_whatsapp_sent", f"{view.track.label} quote sent via WhatsApp")
        return lead

    def record_quote_view(self, lead_id, track_name):
        """Record the first time the customer opens the quote link.

        Returns:
            (lead, already_viewed)
        """
        lead, view = self._load(lead_id, track_name)
        self._require_quote_sent(view)
        if view.quote_viewed_at is not None:
            return lead, True
        self._require_not_paid(view, "record a quote view")

        lead = self._update(view, quote_viewed_at=self.clock())
        self._log(lead, "quote_viewed", f"Customer viewed the {view.track.label.lower()} quote")
        self._notify_admin(lead, f"{view.track.label} quote viewed")
        return lead, False

    # ─── Decisions ─────────────────────────────────────────

    def record_customer_decision(self, lead_id, track_name, decision, reason=None):
        """Apply the customer's response to a sent quote.

        A final answer (approved or declined) is never overwritten by a
        later customer response; the existing one is reported back instead.
        Asking questions twice is also a no-op.

        Returns:
            DecisionResult(lead, decision, already_decided)

        Raises:
            ValidationError: If the decision is not proceed, decline or questions.
            ConflictError: If the quote was not sent or the track is locked.
        """
        outcome = decisions.parse_outcome(decision)
        if outcome is None:
            raise ValidationError("Decision must be one of: proceed, decline, questions")

        lead, view = self._load(lead_id, track_name)
        self._require_quote_sent(view)
        self._require_not_paid(view, "record a decision")
        self._require_open(view, "record a decision")

        current = decisions.derive_decision(lead, view.track)
        if current in (decisions.APPROVED, decisions.DECLINED):
            return DecisionResult(lead, current, True)
        if current == decisions.HAS_QUESTIONS and outcome == decisions.HAS_QUESTIONS:
            return DecisionResult(lead, current, True)

        reason = _sanitize(reason)
        lead = self._update(view, **decisions.outcome_fields(outcome, self.clock(), reason))

        label = view.track.label.lower()
        if outcome == decisions.APPROVED:
            action, message = "quote_approved", f"Customer approved the {label} quote"
        elif outcome == decisions.DECLINED:
            action, message = "quote_declined", f"Customer declined the {label} quote"
        else:
            action, message = "quote_questions", f"Customer has questions about the {label} quote"
        if reason:
            message = f"{message}: {reason}"
        self._log(lead, action, message)
        self._notify_admin(lead, message, [reason] if reason else None)
        return DecisionResult(lead, outcome, False)

    def override_decision(self, lead_id, track_name, decision, reason=None):
        """Force a decision outcome on behalf of the customer.

        Works from any decision state, including before the quote was sent.
        Re-applying the current outcome with the same reason leaves the
        fields untouched; every call is still logged.

        Raises:
            ValidationError: If the decision is not accept, decline or questions.
            ConflictError: If payment was already received for the track.
        """
        outcome = decisions.parse_outcome(decision)
        if outcome is None:
            raise ValidationError("Decision must be one of: accept, decline, questions")

        lead, view = self._load(lead_id, track_name)
        self._require_not_paid(view, "override the quote decision")

        reason = _sanitize(reason)
        if not decisions.matches_outcome(lead, view.track, outcome, reason):
            lead = self._update(view, **decisions.outcome_fields(outcome, self.clock(), reason))

        prefix = "Quote" if view.track is COMPANY_TRACK else "Bank quote"
        message = f"{prefix} decision overridden by admin: {decision.strip().lower()}"
        if reason:
            message = f"{message} ({reason})"
        self._log(lead, "admin_override_decision", message)
        return lead

    # ─── Resets ────────────────────────────────────────────

    def reset_quote_workflow(self, lead_id, reason=None):
        return self._reset(lead_id, COMPANY_TRACK, reason)

    def reset_bank_workflow(self, lead_id, reason=None):
        return self._reset(lead_id, BANK_TRACK, reason)

    def _reset(self, lead_id, track, reason):
        """Rewind a track to before its quote was sent.

        Keeps feasibility, the quoted amount, the decline marker, the
        invoice version counter and the invoice revision ledger.
        """
        lead, view = self._load(lead_id, track.name)
        self._require_not_paid(view, "reset the workflow")
        if view.completed_at is not None:
            raise ConflictError(
                f"The {track.label.lower()} track is already completed; cannot reset the workflow."
            )

        values = decisions.cleared_fields()
        values.update(
            quote_sent_at=None,
            quote_whatsapp_sent_at=None,
            invoice_number=None,
            invoice_amount=None,
            invoice_sent_at=None,
            invoice_payment_link=None,
            reminder_sent_at=None,
            reminder_count=0,
        )
        lead = self._update(view, **values)

        message = f"{track.label} quote workflow reset"
        reason = _sanitize(reason)
        if reason:
            message = f"{message}: {reason}"
        self._log(lead, track.reset_action, message)
        return lead

    # ─── Decline / reopen ──────────────────────────────────

    def decline(self, lead_id, track_name, reason=None, stage=None):
        """Mark a track declined (terminal until reopened).

        The company track may still be declined while work is in progress
        after payment; the bank track is locked once paid.
        """
        lead, view = self._load(lead_id, track_name)
        track = view.track
        if view.declined_at is not None:
            raise ConflictError(f"The {track.label.lower()} track is already declined.")
        if view.completed_at is not None:
            raise ConflictError(f"The {track.label.lower()} track is already completed; cannot decline.")
        if not track.allow_decline_after_payment:
            self._require_not_paid(view, "decline")

        reason = _sanitize(reason)
        stage = _sanitize(stage) or derive_stage(lead, track).status
        lead = self._update(view, declined_at=self.clock(), decline_reason=reason, decline_stage=stage)

        subject = "Lead" if track is COMPANY_TRACK else "Bank track"
        message = f"{subject} marked as declined: {reason or 'No reason given'} (Stage: {stage})"
        self._log(lead, track.decline_action, message)
        return lead

    def reopen(self, lead_id, track_name):
        lead, view = self._load(lead_id, track_name)
        if view.declined_at is None:
            raise ConflictError(f"The {view.track.label.lower()} track is not declined.")

        lead = self._update(view, declined_at=None, decline_reason=None, decline_stage=None)
        self._log(lead, "lead_reopened", f"{view.track.label} track reopened")
        return lead

    # ─── Invoices ──────────────────────────────────────────

    def send_invoice(self, lead_id, track_name, payment_link):
        """Send the invoice (or a revised invoice) for an approved quote.

        Returns:
            The InvoiceRevision appended to the ledger.

        Raises:
            ValidationError: If the payment link is not a valid HTTPS URL.
            ConflictError: If the quote is not approved or payment was received.
            DeliveryError: If the invoice message could not be sent.
        """
        lead, view = self._load(lead_id, track_name)
        track = view.track
        if view.payment_received_at is not None:
            raise ConflictError("Cannot send invoice after payment is received.")
        self._require_open(view, "send an invoice")
        if not decisions.is_approved(view):
            raise ConflictError("Quote must be approved before sending an invoice.")
        if view.quoted_amount is None:
            raise ConflictError("Set the quoted amount before sending an invoice.")
        payment_link = validate_payment_link(payment_link)

        version = self.next_invoice_version(lead, track)
        invoice_number = build_invoice_number(
            self.invoice_prefix, track, lead.id, self.clock(), version
        )
        delivery = self.notifier.send_invoice_message(
            lead, track, payment_link, invoice_number, version, view.quoted_amount
        )
        return self.record_invoice_sent(
            lead.id,
            track.name,
            view.quoted_amount,
            invoice_number,
            payment_link=payment_link,
            sent_at=delivery.sent_at,
        )

    def record_invoice_sent(self, lead_id, track_name, amount, invoice_number,
                            payment_link=None, sent_at=None):
        """Append the next revision to the track's invoice ledger.

        The first revision of a track is version 1; each later call appends
        version + 1. Prior revisions are never touched.

        Raises:
            ValidationError: If the amount or invoice number is invalid.
            ConflictError: If payment was already received for the track.
        """
        lead, view = self._load(lead_id, track_name)
        track = view.track
        if view.payment_received_at is not None:
            raise ConflictError("Cannot revise the invoice after payment is received.")
        amount = parse_amount(amount, field="Invoice amount")
        invoice_number = (invoice_number or "").strip()
        if not invoice_number:
            raise ValidationError("Invoice number is required.")
        sent_at = sent_at or self.clock()

        version = self.next_invoice_version(lead, track)
        revision = self.store.append_invoice_revision(
            lead.id,
            track.name,
            version=version,
            invoice_number=invoice_number,
            amount_aed=amount,
            sent_at=sent_at,
            payment_link=payment_link,
        )
        lead = self._update(
            view,
            invoice_sent_at=sent_at,
            invoice_amount=amount,
            invoice_number=invoice_number,
            invoice_version=version,
            invoice_payment_link=payment_link,
        )

        label = track.label.lower()
        if version > 1:
            message = f"Revised {label} invoice {invoice_number} (v{version}) sent"
        else:
            message = f"{track.label} invoice {invoice_number} sent"
        if payment_link:
            message = f"{message} with payment link"
        self._log(lead, "invoice_sent", message)
        return revision

    # ─── Reminders ─────────────────────────────────────────

    def send_reminder(self, lead_id, track_name):
        """Send a payment reminder and bump the track's reminder counter.

        Repeat sends are always allowed; the counter only moves when the
        reminder was actually delivered.

        Returns:
            Reminder(sent_at, count)

        Raises:
            ConflictError: If no invoice is outstanding for the track.
            DeliveryError: If the reminder could not be sent.
        """
        lead, view = self._load(lead_id, track_name)
        track = view.track
        if view.payment_received_at is not None:
            raise ConflictError(
                "Payment already received; reminders are only sent before payment."
            )
        self._require_open(view, "send a payment reminder")
        if view.invoice_sent_at is None:
            raise ConflictError("Send the invoice before sending payment reminders.")

        count = view.reminder_total + 1
        delivery = self.notifier.send_reminder_message(lead, track, count)
        lead = self._update(view, reminder_sent_at=delivery.sent_at, reminder_count=count)

        prefix = "Payment" if track is COMPANY_TRACK else "Bank payment"
        self._log(lead, "payment_reminder_sent", f"{prefix} reminder email sent (reminder #{count})")
        self._notify_admin(lead, f"{prefix} reminder #{count} sent")
        return Reminder(sent_at=delivery.sent_at, count=count)

    # ─── Payment & completion ──────────────────────────────

    def record_payment(self, lead_id, track_name, received_at=None):
        """Record payment for an invoiced track, then confirm it to the customer.

        The confirmation email is best-effort, like the completion email.
        """
        lead, view = self._load(lead_id, track_name)
        if view.payment_received_at is not None:
            raise ConflictError("Payment already recorded for this track.")
        self._require_open(view, "record a payment")
        if view.invoice_sent_at is None:
            raise ConflictError(
                "Send the invoice to the customer before marking payment received."
            )

        lead = self._update(view, payment_received_at=received_at or self.clock())
        self._log(lead, "payment_received", f"Payment received for the {view.track.label.lower()} track")

        try:
            self.notifier.send_payment_confirmation(lead, view.track)
        except Exception:
            logger.exception(f"Payment confirmation email failed for lead {lead.id} ({view.track.name})")
            return lead
        self._log(lead, "email_sent", f"{view.track.label} payment confirmation email sent")
        return lead

    def mark_completed(self, lead_id, track_name):
        """Mark a paid track completed, then send the completion email.

        The completion email is best-effort: when it fails the track stays
        completed and the failure is only logged.

        Returns:
            (lead, review_requested)
        """
        lead, view = self._load(lead_id, track_name)
        track = view.track
        self._require_open(view, "mark it completed")
        if view.payment_received_at is None:
            raise ConflictError("Payment must be received before marking the track completed.")

        lead = self._update(view, completed_at=self.clock())
        self._log(lead, "track_completed", f"{track.label} track marked completed")

        review_requested = False
        try:
            result = self.notifier.send_completion_message(lead, track)
        except Exception:
            logger.exception(f"Completion email failed for lead {lead.id} ({track.name})")
            return lead, review_requested

        if result.review_requested and lead.google_review_requested_at is None:
            lead = self.store.update(lead.id, {"google_review_requested_at": result.sent_at})
            review_requested = True
        return lead, review_requested
