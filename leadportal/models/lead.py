"""Lead model.

One row per prospective customer submission. Holds two parallel workflow
field sets (company formation and bank account setup). The workflow stage
of each track is never stored; it is derived from these fields by
leadportal.workflow.engine.
"""

import uuid

from leadportal.extensions import db
from leadportal.workflow.notes import LeadNotes, decode_notes, encode_notes


class Lead(db.Model):
    __tablename__ = "leads"

    SETUP_TYPES = ["mainland", "freezone", "offshore", "bank", "not_sure"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    reference_code = db.Column(db.String(40), unique=True, nullable=True)

    # --- Contact ---
    full_name = db.Column(db.String(255), nullable=False)
    whatsapp = db.Column(db.String(20), nullable=False)  # E.164
    email = db.Column(db.String(255), nullable=True)
    nationality = db.Column(db.String(100), nullable=True)
    residence_country = db.Column(db.String(100), nullable=True)

    # --- Classification ---
    setup_type = db.Column(
        db.String(20), nullable=False, default="mainland", index=True
    )  # mainland | freezone | offshore | bank | not_sure
    service_required = db.Column(db.String(255), nullable=True)  # as submitted
    activity = db.Column(db.String(255), nullable=True)
    shareholders_count = db.Column(db.Integer, nullable=True)
    visa_count = db.Column(db.Integer, nullable=True)
    service_details = db.Column(db.JSON, nullable=True)  # bank prescreen answers

    # --- Notes (structured) ---
    customer_notes = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)
    bank_details = db.Column(db.JSON, nullable=True)  # {label: value}, ordered

    # --- Shared workflow fields ---
    agent_contacted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    feasible = db.Column(db.Boolean, nullable=True)  # None = not yet determined
    google_review_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Company track ---
    quoted_amount_aed = db.Column(db.Integer, nullable=True)
    company_quote_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    quote_whatsapp_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    quote_viewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    proceed_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    quote_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved = db.Column(db.Boolean, nullable=True)
    quote_declined_at = db.Column(db.DateTime(timezone=True), nullable=True)
    quote_decline_reason = db.Column(db.Text, nullable=True)
    quote_questions_at = db.Column(db.DateTime(timezone=True), nullable=True)
    quote_questions_reason = db.Column(db.Text, nullable=True)
    company_invoice_number = db.Column(db.String(64), nullable=True)
    company_invoice_version = db.Column(db.Integer, nullable=True)
    company_invoice_amount_aed = db.Column(db.Integer, nullable=True)
    company_invoice_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    company_invoice_payment_link = db.Column(db.String(500), nullable=True)
    payment_received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_reminder_count = db.Column(
        db.Integer, nullable=False, default=0, server_default="0"
    )
    company_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    declined_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decline_reason = db.Column(db.Text, nullable=True)
    decline_stage = db.Column(db.String(100), nullable=True)

    # --- Bank track ---
    bank_quoted_amount_aed = db.Column(db.Integer, nullable=True)
    bank_quote_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_quote_whatsapp_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_quote_viewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_proceed_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_quote_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_approved = db.Column(db.Boolean, nullable=True)
    bank_quote_declined_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_quote_decline_reason = db.Column(db.Text, nullable=True)
    bank_quote_questions_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_quote_questions_reason = db.Column(db.Text, nullable=True)
    bank_invoice_number = db.Column(db.String(64), nullable=True)
    bank_invoice_version = db.Column(db.Integer, nullable=True)
    bank_invoice_amount_aed = db.Column(db.Integer, nullable=True)
    bank_invoice_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_invoice_payment_link = db.Column(db.String(500), nullable=True)
    bank_payment_received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_payment_reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_payment_reminder_count = db.Column(
        db.Integer, nullable=False, default=0, server_default="0"
    )
    bank_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_declined_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bank_decline_reason = db.Column(db.Text, nullable=True)
    bank_decline_stage = db.Column(db.String(100), nullable=True)

    # Bumped on every UPDATE; a stale write raises StaleDataError.
    row_version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": row_version}

    @property
    def structured_notes(self):
        return LeadNotes(
            customer=self.customer_notes,
            admin=self.admin_notes,
            bank_details=self.bank_details,
            reference=self.reference_code,
        )

    @property
    def notes(self):
        """The combined legacy notes blob, rebuilt from the structured fields."""
        return encode_notes(self.structured_notes)

    @notes.setter
    def notes(self, blob):
        decoded = decode_notes(blob)
        self.customer_notes = decoded.customer
        self.admin_notes = decoded.admin
        self.bank_details = decoded.bank_details
        if decoded.reference and not self.reference_code:
            self.reference_code = decoded.reference

    def __repr__(self):
        return f"<Lead {self.reference_code or self.id} ({self.setup_type})>"
