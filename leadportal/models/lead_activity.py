"""LeadActivity model — append-only audit trail for a lead.

Every state-changing workflow operation writes one row. Rows are never
updated or deleted. Displayed as a timeline on the lead detail page.
"""

import uuid

from leadportal.extensions import db


class LeadActivity(db.Model):
    __tablename__ = "lead_activities"

    ACTIONS = [
        "lead_created",
        "lead_updated",
        "agent_contacted",
        "feasibility_set",
        "quoted_amount_changed",
        "email_sent",
        "quote_whatsapp_sent",
        "quote_viewed",
        "quote_approved",
        "quote_declined",
        "quote_questions",
        "admin_override_decision",
        "quote_reset",
        "bank_reset",
        "invoice_sent",
        "payment_reminder_sent",
        "payment_received",
        "track_completed",
        "lead_declined",
        "bank_declined",
        "lead_reopened",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    lead_id = db.Column(
        db.String(36),
        db.ForeignKey("leads.id"),
        nullable=False,
        index=True,
    )
    action = db.Column(db.String(50), nullable=False)
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    lead = db.relationship("Lead", backref=db.backref("activities", lazy="dynamic", order_by="LeadActivity.created_at.desc()"))

    def __repr__(self):
        return f"<LeadActivity {self.action} on {self.lead_id}>"
