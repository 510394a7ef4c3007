"""Lead store — persistence collaborator for the workflow service.

Wraps the SQLAlchemy session. Functions flush but do NOT commit — the
caller (a blueprint, once per request) commits.
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from leadportal.errors import ConflictError, NotFoundError
from leadportal.extensions import db
from leadportal.models.invoice_revision import InvoiceRevision
from leadportal.models.lead import Lead
from leadportal.models.lead_activity import LeadActivity

logger = logging.getLogger(__name__)


class LeadStore:

    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    def get(self, lead_id):
        """Load a lead by id.

        Raises:
            NotFoundError: If no lead has that id.
        """
        lead = self.session.get(Lead, lead_id) if lead_id else None
        if lead is None:
            raise NotFoundError(f"Lead {lead_id} not found.")
        return lead

    def update(self, lead_id, changes):
        """Apply a partial field update to a lead and flush it.

        Args:
            lead_id: Lead UUID string.
            changes: Dict of column name -> new value.

        Returns:
            The updated Lead.

        Raises:
            NotFoundError: If the lead does not exist.
            ConflictError: If another request updated the lead first.
        """
        lead = self.get(lead_id)
        for column, value in changes.items():
            if column not in Lead.__table__.columns:
                raise KeyError(f"Lead has no column '{column}'")
            setattr(lead, column, value)
        try:
            self.session.flush()
        except StaleDataError as e:
            self.session.rollback()
            raise ConflictError(
                "Lead was modified by another request. Reload and try again."
            ) from e
        return lead

    def append_activity(self, lead_id, action, message):
        activity = LeadActivity(lead_id=lead_id, action=action, message=message)
        self.session.add(activity)
        self.session.flush()
        return activity

    def append_invoice_revision(self, lead_id, track, version, invoice_number,
                                amount_aed, sent_at, payment_link=None):
        """Append one immutable revision to a track's invoice ledger.

        Raises:
            ConflictError: If the version already exists (double submission).
        """
        revision = InvoiceRevision(
            lead_id=lead_id,
            track=track,
            version=version,
            invoice_number=invoice_number,
            amount_aed=amount_aed,
            payment_link=payment_link,
            sent_at=sent_at,
        )
        self.session.add(revision)
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise ConflictError(
                f"Invoice version {version} was already recorded for this lead."
            ) from e
        return revision

    def latest_revision(self, lead_id, track):
        return (
            InvoiceRevision.query
            .filter_by(lead_id=lead_id, track=track)
            .order_by(InvoiceRevision.version.desc())
            .first()
        )

    def list_revisions(self, lead_id, track=None):
        """Invoice revisions of a lead, newest version first."""
        query = InvoiceRevision.query.filter_by(lead_id=lead_id)
        if track:
            query = query.filter_by(track=track)
        return query.order_by(
            InvoiceRevision.track, InvoiceRevision.version.desc()
        ).all()

    def list_activities(self, lead_id, limit=None):
        query = (
            LeadActivity.query
            .filter_by(lead_id=lead_id)
            .order_by(LeadActivity.created_at.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()
