"""Tests for the decision tracker.

Covers:
- Decision state derivation and outcome wording
- Customer quote views and decisions (proceed / decline / questions)
- Repeated customer responses leave the first final answer in place
- Admin override from any state, idempotent and always logged
- Payment lock on every decision transition
"""

from datetime import datetime, timezone

import pytest

from leadportal.errors import ConflictError, NotFoundError, ValidationError
from leadportal.models.lead import Lead
from leadportal.models.lead_activity import LeadActivity
from leadportal.workflow import decisions
from leadportal.workflow.engine import derive_stage, CUSTOMER_HAS_QUESTIONS, QUOTE_DECLINED

NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)


def _activities(lead_id, action):
    return LeadActivity.query.filter_by(lead_id=lead_id, action=action).all()


# ═══════════════════════════════════════════════════════════════
# Decision state derivation
# ═══════════════════════════════════════════════════════════════


class TestDeriveDecision:

    @pytest.mark.parametrize("fields,expected", [
        ({}, decisions.WAITING),
        ({"quote_viewed_at": NOW}, decisions.VIEWED),
        ({"quote_viewed_at": NOW, "quote_declined_at": NOW}, decisions.DECLINED),
        ({"approved": False}, decisions.DECLINED),
        ({"quote_questions_at": NOW}, decisions.HAS_QUESTIONS),
        ({"proceed_confirmed_at": NOW}, decisions.APPROVED),
        ({"quote_approved_at": NOW}, decisions.APPROVED),
        ({"approved": True}, decisions.APPROVED),
        ({"approved": True, "quote_declined_at": NOW}, decisions.APPROVED),
    ])
    def test_company(self, fields, expected):
        assert decisions.derive_decision(Lead(**fields), "company") == expected

    def test_bank_uses_bank_fields(self):
        lead = Lead(approved=True, bank_quote_questions_at=NOW)
        assert decisions.derive_decision(lead, "company") == decisions.APPROVED
        assert decisions.derive_decision(lead, "bank") == decisions.HAS_QUESTIONS

    @pytest.mark.parametrize("value,expected", [
        ("accept", decisions.APPROVED),
        ("Proceed", decisions.APPROVED),
        (" decline ", decisions.DECLINED),
        ("questions", decisions.HAS_QUESTIONS),
        ("maybe", None),
        ("", None),
        (None, None),
        (True, None),
    ])
    def test_parse_outcome(self, value, expected):
        assert decisions.parse_outcome(value) == expected

    @pytest.mark.parametrize("outcome", decisions.OUTCOMES)
    def test_outcome_fields_leave_exactly_one_outcome(self, outcome):
        values = decisions.outcome_fields(outcome, NOW, reason="why")
        lead = Lead(**values)
        assert decisions.derive_decision(lead, "company") == outcome

    def test_outcome_fields_reject_waiting(self):
        with pytest.raises(ValueError):
            decisions.outcome_fields(decisions.WAITING, NOW)


# ═══════════════════════════════════════════════════════════════
# Customer quote view
# ═══════════════════════════════════════════════════════════════


class TestQuoteView:

    def test_view_before_quote_sent_rejected(self, workflow, make_lead):
        lead = make_lead()
        with pytest.raises(ConflictError, match="has not been sent"):
            workflow.record_quote_view(lead.id, "company")

    def test_first_view_recorded_once(self, workflow, walk, make_lead, notifier):
        lead = walk(make_lead(), "quoted")

        lead, already = workflow.record_quote_view(lead.id, "company")
        assert already is False
        first_view = lead.quote_viewed_at
        assert first_view is not None
        assert decisions.derive_decision(lead, "company") == decisions.VIEWED

        lead, already = workflow.record_quote_view(lead.id, "company")
        assert already is True
        assert lead.quote_viewed_at == first_view
        assert len(_activities(lead.id, "quote_viewed")) == 1
        assert notifier.admin == ["Company quote viewed"]


# ═══════════════════════════════════════════════════════════════
# Customer decisions
# ═══════════════════════════════════════════════════════════════


class TestCustomerDecision:

    def test_decision_requires_sent_quote(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "feasible")
        with pytest.raises(ConflictError):
            workflow.record_customer_decision(lead.id, "company", "proceed")

    def test_invalid_decision(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")
        with pytest.raises(ValidationError, match="proceed, decline, questions"):
            workflow.record_customer_decision(lead.id, "company", "later")

    def test_proceed_sets_every_approval_signal(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")

        result = workflow.record_customer_decision(lead.id, "company", "proceed")

        assert result.decision == decisions.APPROVED
        assert result.already_decided is False
        lead = result.lead
        assert lead.approved is True
        assert lead.proceed_confirmed_at is not None
        assert lead.quote_approved_at is not None
        assert len(_activities(lead.id, "quote_approved")) == 1

    def test_decline_with_reason(self, workflow, walk, make_lead, notifier):
        lead = walk(make_lead(), "quoted")

        result = workflow.record_customer_decision(
            lead.id, "company", "decline", reason="<b>Too expensive</b>"
        )

        lead = result.lead
        assert lead.approved is False
        assert lead.quote_declined_at is not None
        assert lead.quote_decline_reason == "Too expensive"
        assert derive_stage(lead, "company") is QUOTE_DECLINED
        activity = _activities(lead.id, "quote_declined")[0]
        assert activity.message == "Customer declined the company quote: Too expensive"
        assert notifier.admin[-1] == activity.message

    def test_questions_then_proceed(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")

        workflow.record_customer_decision(lead.id, "company", "questions", "Is VAT included?")
        lead = workflow.store.get(lead.id)
        assert derive_stage(lead, "company") is CUSTOMER_HAS_QUESTIONS
        assert lead.quote_questions_reason == "Is VAT included?"

        result = workflow.record_customer_decision(lead.id, "company", "proceed")
        assert result.decision == decisions.APPROVED
        assert result.already_decided is False

    def test_repeated_questions_are_ignored(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")
        workflow.record_customer_decision(lead.id, "company", "questions", "First")

        result = workflow.record_customer_decision(lead.id, "company", "questions", "Second")

        assert result.already_decided is True
        assert result.lead.quote_questions_reason == "First"
        assert len(_activities(lead.id, "quote_questions")) == 1

    @pytest.mark.parametrize("first,second", [
        ("proceed", "decline"),
        ("decline", "proceed"),
        ("proceed", "questions"),
    ])
    def test_final_answer_is_kept(self, workflow, walk, make_lead, first, second):
        lead = walk(make_lead(), "quoted")
        first_result = workflow.record_customer_decision(lead.id, "company", first)

        result = workflow.record_customer_decision(lead.id, "company", second)

        assert result.already_decided is True
        assert result.decision == first_result.decision

    def test_admin_notification_failure_does_not_block(self, workflow, walk, make_lead, notifier):
        lead = walk(make_lead(), "quoted")
        notifier.fail.add("admin")

        result = workflow.record_customer_decision(lead.id, "company", "proceed")

        assert result.lead.approved is True
        assert len(_activities(lead.id, "quote_approved")) == 1

    def test_bank_track_decision(self, workflow, walk, make_lead):
        lead = walk(make_lead(setup_type="bank"), "quoted", track="bank", amount=3500)

        result = workflow.record_customer_decision(lead.id, "bank", "proceed")

        assert result.lead.bank_approved is True
        assert result.lead.approved is None


# ═══════════════════════════════════════════════════════════════
# Admin override
# ═══════════════════════════════════════════════════════════════


class TestOverrideDecision:

    def test_decline_without_quote_sent(self, workflow, make_lead):
        lead = make_lead()

        lead = workflow.override_decision(lead.id, "company", "decline", reason="pricing")

        assert lead.quote_declined_at is not None
        assert lead.quote_decline_reason == "pricing"
        assert lead.approved is False
        activities = _activities(lead.id, "admin_override_decision")
        assert len(activities) == 1
        assert activities[0].message == "Quote decision overridden by admin: decline (pricing)"

    def test_accept_clears_questions(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")
        workflow.record_customer_decision(lead.id, "company", "questions", "Timeline?")

        lead = workflow.override_decision(lead.id, "company", "accept")

        assert lead.approved is True
        assert lead.quote_questions_at is None
        assert lead.quote_questions_reason is None
        assert decisions.derive_decision(lead, "company") == decisions.APPROVED

    def test_questions_replaces_approval(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "approved")

        lead = workflow.override_decision(lead.id, "company", "questions", "Needs a call")

        assert lead.approved is None
        assert lead.proceed_confirmed_at is None
        assert lead.quote_approved_at is None
        assert derive_stage(lead, "company") is CUSTOMER_HAS_QUESTIONS

    def test_override_is_idempotent_but_logged(self, workflow, make_lead):
        lead = make_lead()
        lead = workflow.override_decision(lead.id, "company", "accept")
        approved_at = lead.quote_approved_at

        lead = workflow.override_decision(lead.id, "company", "accept")

        assert lead.quote_approved_at == approved_at
        assert len(_activities(lead.id, "admin_override_decision")) == 2

    def test_bank_override_message(self, workflow, make_lead):
        lead = make_lead(setup_type="bank")

        lead = workflow.override_decision(lead.id, "bank", "accept", reason="Confirmed by phone")

        assert lead.bank_approved is True
        message = _activities(lead.id, "admin_override_decision")[0].message
        assert message == "Bank quote decision overridden by admin: accept (Confirmed by phone)"

    def test_override_blocked_after_payment(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "paid")
        with pytest.raises(ConflictError, match="Payment already received"):
            workflow.override_decision(lead.id, "company", "decline")

    def test_invalid_decision(self, workflow, make_lead):
        lead = make_lead()
        with pytest.raises(ValidationError):
            workflow.override_decision(lead.id, "company", "proceed-later")

    def test_invalid_track(self, workflow, make_lead):
        lead = make_lead()
        with pytest.raises(ValidationError, match="Invalid track"):
            workflow.override_decision(lead.id, "freezone", "accept")

    def test_unknown_lead(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.override_decision("does-not-exist", "company", "accept")
