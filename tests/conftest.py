"""Shared test fixtures for the lead portal test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, rate limits off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- notifier: recording stand-in for EmailNotifier
- workflow: WorkflowService wired to the test session and the fake notifier
- make_lead: factory for persisted leads
- walk: drives a lead forward through the workflow to a named step
- mail: patches SMTP sends for HTTP tests
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from leadportal import create_app
from leadportal.errors import DeliveryError
from leadportal.extensions import db as _db
from leadportal.models.lead import Lead
from leadportal.services.lead_store import LeadStore
from leadportal.services.notification_service import CompletionResult, Delivery
from leadportal.services.workflow_service import WorkflowService

PAYMENT_LINK = "https://pay.example.ae/checkout/abc123"

WALK_STEPS = ["contacted", "feasible", "quoted", "approved", "invoiced", "paid", "completed"]


class FakeNotifier:
    """Records every message instead of sending it.

    Add a kind ("quote", "invoice", "reminder", "payment_confirmation",
    "completion", "admin") to ``fail`` to make that message raise.
    """

    def __init__(self):
        self.sent = []
        self.admin = []
        self.fail = set()

    def _deliver(self, kind, lead, **details):
        if kind in self.fail:
            raise DeliveryError(f"{kind} delivery failed")
        self.sent.append((kind, lead.id, details))
        return Delivery(
            sent_at=datetime.now(timezone.utc),
            reference=f"<{kind}-{len(self.sent)}@test.local>",
        )

    def kinds(self):
        return [kind for kind, _, _ in self.sent]

    def send_quote_message(self, lead, track, quote_sent_at):
        return self._deliver("quote", lead, track=track.name, quote_sent_at=quote_sent_at)

    def send_invoice_message(self, lead, track, payment_link, invoice_number, version, amount_aed):
        return self._deliver(
            "invoice",
            lead,
            track=track.name,
            payment_link=payment_link,
            invoice_number=invoice_number,
            version=version,
            amount_aed=amount_aed,
        )

    def send_reminder_message(self, lead, track, reminder_number):
        return self._deliver("reminder", lead, track=track.name, reminder_number=reminder_number)

    def send_payment_confirmation(self, lead, track):
        return self._deliver("payment_confirmation", lead, track=track.name)

    def send_completion_message(self, lead, track):
        if "completion" in self.fail:
            raise RuntimeError("SMTP connection refused")
        delivery = self._deliver("completion", lead, track=track.name)
        return CompletionResult(
            sent_at=delivery.sent_at,
            review_requested=lead.google_review_requested_at is None,
        )

    def notify_admin(self, lead, headline, lines=None):
        if "admin" in self.fail:
            raise RuntimeError("SMTP connection refused")
        self.admin.append(headline)


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def workflow(db_session, notifier):
    return WorkflowService(LeadStore(db_session), notifier, invoice_prefix="UBD")


@pytest.fixture
def make_lead(db_session):
    """Factory: persist a lead with sensible contact defaults."""

    def _make(**fields):
        values = {
            "full_name": "Aisha Khan",
            "whatsapp": "+971501234567",
            "email": "aisha@example.com",
            "setup_type": "mainland",
            "reference_code": None,
        }
        values.update(fields)
        lead = Lead(**values)
        db_session.add(lead)
        db_session.commit()
        return lead

    return _make


@pytest.fixture
def walk(db_session, workflow):
    """Drive a lead through the workflow up to and including ``to``.

    Steps: contacted, feasible, quoted, approved, invoiced, paid, completed.
    """

    def _walk(lead, to, track="company", amount=15000):
        lead_id = lead.id
        for step in WALK_STEPS[: WALK_STEPS.index(to) + 1]:
            if step == "contacted":
                workflow.mark_agent_contacted(lead_id)
            elif step == "feasible":
                workflow.set_feasibility(lead_id, track, True, amount)
            elif step == "quoted":
                workflow.send_quote(lead_id, track)
            elif step == "approved":
                workflow.record_customer_decision(lead_id, track, "proceed")
            elif step == "invoiced":
                workflow.send_invoice(lead_id, track, PAYMENT_LINK)
            elif step == "paid":
                workflow.record_payment(lead_id, track)
            elif step == "completed":
                workflow.mark_completed(lead_id, track)
        db_session.commit()
        return db_session.get(Lead, lead_id)

    return _walk


@pytest.fixture
def mail():
    """Patch SMTP delivery used by EmailNotifier.

    Yields a dict with the ``sync`` (customer messages) and ``background``
    (admin notifications) mocks.
    """
    with patch(
        "leadportal.services.notification_service.send_email_sync",
        return_value="<msg-1@test.local>",
    ) as sync, patch(
        "leadportal.services.notification_service.send_email"
    ) as background:
        yield {"sync": sync, "background": background}
