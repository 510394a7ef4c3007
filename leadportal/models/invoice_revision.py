"""InvoiceRevision model — immutable snapshot of one invoice send.

One ledger per (lead, track). Version 1 is the original invoice; each
revised invoice appends the next version. Rows are never updated, and a
quote reset leaves them in place.
"""

import uuid

from leadportal.extensions import db


class InvoiceRevision(db.Model):
    __tablename__ = "invoice_revisions"
    __table_args__ = (
        db.UniqueConstraint(
            "lead_id", "track", "version", name="uq_invoice_revisions_lead_track_version"
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    lead_id = db.Column(
        db.String(36),
        db.ForeignKey("leads.id"),
        nullable=False,
        index=True,
    )
    track = db.Column(db.String(20), nullable=False)  # company | bank
    version = db.Column(db.Integer, nullable=False)
    invoice_number = db.Column(db.String(64), nullable=False)
    amount_aed = db.Column(db.Integer, nullable=False)
    payment_link = db.Column(db.String(500), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    lead = db.relationship("Lead", backref=db.backref("invoice_revisions", lazy="dynamic"))

    def __repr__(self):
        return f"<InvoiceRevision {self.invoice_number} v{self.version} ({self.track})>"
