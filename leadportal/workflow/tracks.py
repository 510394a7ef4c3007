"""Track definitions — the company and bank field sets of a lead.

Both tracks walk the same stages over structurally identical columns. A
TrackFields instance maps each logical field to its column name on Lead,
so the engine, decision tracker, resets and invoice ledger are written once
and parameterised by track.

Agent contact and feasibility are lead-level and shared by both tracks.
"""

from dataclasses import dataclass, fields

COMPANY = "company"
BANK = "bank"
TRACKS = (COMPANY, BANK)


@dataclass(frozen=True)
class TrackFields:
    quoted_amount: str
    quote_sent_at: str
    quote_whatsapp_sent_at: str
    quote_viewed_at: str
    proceed_confirmed_at: str
    quote_approved_at: str
    approved: str
    quote_declined_at: str
    quote_decline_reason: str
    quote_questions_at: str
    quote_questions_reason: str
    invoice_number: str
    invoice_version: str
    invoice_amount: str
    invoice_sent_at: str
    invoice_payment_link: str
    payment_received_at: str
    reminder_sent_at: str
    reminder_count: str
    completed_at: str
    declined_at: str
    decline_reason: str
    decline_stage: str


@dataclass(frozen=True)
class Track:
    name: str
    label: str
    invoice_code: str  # letter embedded in invoice numbers
    decline_action: str  # activity action written on decline
    reset_action: str  # activity action written on workflow reset
    allow_decline_after_payment: bool
    columns: TrackFields


COMPANY_TRACK = Track(
    name=COMPANY,
    label="Company",
    invoice_code="C",
    decline_action="lead_declined",
    reset_action="quote_reset",
    allow_decline_after_payment=True,
    columns=TrackFields(
        quoted_amount="quoted_amount_aed",
        quote_sent_at="company_quote_sent_at",
        quote_whatsapp_sent_at="quote_whatsapp_sent_at",
        quote_viewed_at="quote_viewed_at",
        proceed_confirmed_at="proceed_confirmed_at",
        quote_approved_at="quote_approved_at",
        approved="approved",
        quote_declined_at="quote_declined_at",
        quote_decline_reason="quote_decline_reason",
        quote_questions_at="quote_questions_at",
        quote_questions_reason="quote_questions_reason",
        invoice_number="company_invoice_number",
        invoice_version="company_invoice_version",
        invoice_amount="company_invoice_amount_aed",
        invoice_sent_at="company_invoice_sent_at",
        invoice_payment_link="company_invoice_payment_link",
        payment_received_at="payment_received_at",
        reminder_sent_at="payment_reminder_sent_at",
        reminder_count="payment_reminder_count",
        completed_at="company_completed_at",
        declined_at="declined_at",
        decline_reason="decline_reason",
        decline_stage="decline_stage",
    ),
)

BANK_TRACK = Track(
    name=BANK,
    label="Bank",
    invoice_code="B",
    decline_action="bank_declined",
    reset_action="bank_reset",
    allow_decline_after_payment=False,
    columns=TrackFields(
        quoted_amount="bank_quoted_amount_aed",
        quote_sent_at="bank_quote_sent_at",
        quote_whatsapp_sent_at="bank_quote_whatsapp_sent_at",
        quote_viewed_at="bank_quote_viewed_at",
        proceed_confirmed_at="bank_proceed_confirmed_at",
        quote_approved_at="bank_quote_approved_at",
        approved="bank_approved",
        quote_declined_at="bank_quote_declined_at",
        quote_decline_reason="bank_quote_decline_reason",
        quote_questions_at="bank_quote_questions_at",
        quote_questions_reason="bank_quote_questions_reason",
        invoice_number="bank_invoice_number",
        invoice_version="bank_invoice_version",
        invoice_amount="bank_invoice_amount_aed",
        invoice_sent_at="bank_invoice_sent_at",
        invoice_payment_link="bank_invoice_payment_link",
        payment_received_at="bank_payment_received_at",
        reminder_sent_at="bank_payment_reminder_sent_at",
        reminder_count="bank_payment_reminder_count",
        completed_at="bank_completed_at",
        declined_at="bank_declined_at",
        decline_reason="bank_decline_reason",
        decline_stage="bank_decline_stage",
    ),
)

_BY_NAME = {COMPANY: COMPANY_TRACK, BANK: BANK_TRACK}

LOGICAL_FIELDS = tuple(f.name for f in fields(TrackFields))


def get_track(name):
    """Look up a Track by name ("company" or "bank").

    Raises:
        KeyError: If the name is not a known track.
    """
    return _BY_NAME[name]


def other_track(track):
    return BANK_TRACK if track is COMPANY_TRACK else COMPANY_TRACK


class TrackView:
    """Read access to one track of a lead through logical field names.

    ``TrackView(lead, COMPANY_TRACK).quote_sent_at`` reads
    ``lead.company_quote_sent_at``. Works on any object exposing the Lead
    columns as attributes, persisted or not.
    """

    def __init__(self, lead, track):
        self.lead = lead
        self.track = track

    def __getattr__(self, name):
        if name not in LOGICAL_FIELDS:
            raise AttributeError(name)
        return getattr(self.lead, getattr(self.track.columns, name))

    @property
    def reminder_total(self):
        return self.reminder_count or 0

    def columns(self, **values):
        """Translate logical field values into a {column: value} update dict."""
        return {getattr(self.track.columns, k): v for k, v in values.items()}


def effective_track(lead):
    """The single active track of a lead: bank leads run the bank track, everything else the company track."""
    return BANK if lead.setup_type == BANK else COMPANY
