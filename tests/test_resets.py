"""Tests for workflow resets, decline and reopen.

Covers:
- Quote / bank reset clears the sent quote, decision, invoice and reminders
- Reset keeps feasibility, quoted amount, invoice version and ledger
- Reset is blocked after payment or completion
- Decline records reason and stage; reopen clears them
- Company track may be declined after payment, bank track may not
- Feasibility and quote sending guards
- Lead-level feasibility changes guard the other track
"""

import pytest

from leadportal.errors import ConflictError, DeliveryError, ValidationError
from leadportal.models.invoice_revision import InvoiceRevision
from leadportal.models.lead_activity import LeadActivity
from leadportal.workflow.engine import (
    COMPLETED,
    DECLINED,
    NOT_FEASIBLE,
    READY_TO_SEND_QUOTE,
    WORK_IN_PROGRESS,
    derive_stage,
)


def _activity(lead_id, action):
    return LeadActivity.query.filter_by(lead_id=lead_id, action=action).one_or_none()


# ═══════════════════════════════════════════════════════════════
# Feasibility & quote guards
# ═══════════════════════════════════════════════════════════════


class TestFeasibility:

    def test_feasible_requires_amount(self, workflow, make_lead):
        lead = make_lead()
        with pytest.raises(ValidationError, match="Quoted amount is required"):
            workflow.set_feasibility(lead.id, "company", True, None)

    @pytest.mark.parametrize("amount", [0, -100, "abc", "12.5"])
    def test_invalid_amounts(self, workflow, make_lead, amount):
        lead = make_lead()
        with pytest.raises(ValidationError):
            workflow.set_feasibility(lead.id, "company", True, amount)

    def test_amount_accepts_formatted_string(self, workflow, make_lead):
        lead = make_lead()
        lead = workflow.set_feasibility(lead.id, "company", True, "15,000")
        assert lead.quoted_amount_aed == 15000
        assert derive_stage(lead, "company") is READY_TO_SEND_QUOTE

    def test_feasible_must_be_boolean(self, workflow, make_lead):
        lead = make_lead()
        with pytest.raises(ValidationError):
            workflow.set_feasibility(lead.id, "company", "yes", 15000)

    def test_not_feasible_clears_both_amounts(self, workflow, make_lead):
        lead = make_lead(quoted_amount_aed=15000, bank_quoted_amount_aed=3500)

        lead = workflow.set_feasibility(lead.id, "company", False)

        assert lead.feasible is False
        assert lead.quoted_amount_aed is None
        assert lead.bank_quoted_amount_aed is None
        assert derive_stage(lead, "company") is NOT_FEASIBLE
        assert derive_stage(lead, "bank") is NOT_FEASIBLE

    def test_amount_locked_once_quote_sent(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")
        with pytest.raises(ConflictError, match="Quote already sent"):
            workflow.set_feasibility(lead.id, "company", True, 18000)

    def test_agent_contact_is_idempotent(self, workflow, make_lead):
        lead = make_lead()
        first = workflow.mark_agent_contacted(lead.id).agent_contacted_at
        lead = workflow.mark_agent_contacted(lead.id)
        assert lead.agent_contacted_at == first
        assert LeadActivity.query.filter_by(lead_id=lead.id, action="agent_contacted").count() == 1


class TestFeasibilityAcrossTracks:

    def test_bank_not_feasible_blocked_while_company_paid(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "paid")

        with pytest.raises(ConflictError, match="company track is already in progress"):
            workflow.set_feasibility(lead.id, "bank", False)

        assert lead.feasible is True
        assert lead.quoted_amount_aed == 15000
        assert derive_stage(lead, "company") is WORK_IN_PROGRESS

    def test_company_not_feasible_blocked_while_bank_paid(self, workflow, walk, make_lead):
        lead = walk(make_lead(setup_type="bank"), "paid", track="bank", amount=4000)

        with pytest.raises(ConflictError, match="bank track is already in progress"):
            workflow.set_feasibility(lead.id, "company", False)

        assert lead.feasible is True
        assert lead.bank_quoted_amount_aed == 4000
        assert derive_stage(lead, "bank") is WORK_IN_PROGRESS

    def test_undetermined_blocked_while_other_quote_pending(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")
        with pytest.raises(ConflictError, match="company track is already in progress"):
            workflow.set_feasibility(lead.id, "bank", None)

    def test_bank_amount_allowed_while_company_paid(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "paid")

        lead = workflow.set_feasibility(lead.id, "bank", True, 3500)

        assert lead.bank_quoted_amount_aed == 3500
        assert lead.quoted_amount_aed == 15000
        assert derive_stage(lead, "company") is WORK_IN_PROGRESS

    def test_completed_company_keeps_its_amount(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "completed")

        lead = workflow.set_feasibility(lead.id, "bank", False)

        assert lead.feasible is False
        assert lead.quoted_amount_aed == 15000
        assert derive_stage(lead, "company") is COMPLETED
        assert derive_stage(lead, "bank") is NOT_FEASIBLE

    def test_declined_company_keeps_its_amount(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")
        workflow.decline(lead.id, "company", reason="Went elsewhere")

        lead = workflow.set_feasibility(lead.id, "bank", False)

        assert lead.quoted_amount_aed == 15000
        assert derive_stage(lead, "company") is DECLINED

    def test_bank_not_feasible_clears_unquoted_company_amount(self, workflow, make_lead):
        lead = make_lead(quoted_amount_aed=15000, bank_quoted_amount_aed=3500)

        lead = workflow.set_feasibility(lead.id, "bank", False)

        assert lead.quoted_amount_aed is None
        assert lead.bank_quoted_amount_aed is None
        assert derive_stage(lead, "company") is NOT_FEASIBLE


class TestSendQuote:

    def test_requires_feasible(self, workflow, make_lead):
        lead = make_lead(quoted_amount_aed=15000)
        with pytest.raises(ConflictError, match="feasible"):
            workflow.send_quote(lead.id, "company")

    def test_sent_once(self, workflow, walk, make_lead, notifier):
        lead = walk(make_lead(), "quoted")
        assert notifier.kinds() == ["quote"]
        with pytest.raises(ConflictError, match="Quote already sent"):
            workflow.send_quote(lead.id, "company")

    def test_delivery_failure_records_nothing(self, workflow, walk, make_lead, notifier):
        lead = walk(make_lead(), "feasible")
        notifier.fail.add("quote")

        with pytest.raises(DeliveryError):
            workflow.send_quote(lead.id, "company")

        assert lead.company_quote_sent_at is None
        assert derive_stage(lead, "company") is READY_TO_SEND_QUOTE

    def test_whatsapp_quote_recorded(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "feasible")
        lead = workflow.mark_quote_whatsapp_sent(lead.id, "company")
        assert lead.quote_whatsapp_sent_at is not None
        # WhatsApp delivery alone does not start the decision wait.
        assert derive_stage(lead, "company") is READY_TO_SEND_QUOTE


# ═══════════════════════════════════════════════════════════════
# Resets
# ═══════════════════════════════════════════════════════════════


class TestResetQuoteWorkflow:

    def test_reset_after_invoice(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "invoiced")
        workflow.send_reminder(lead.id, "company")

        lead = workflow.reset_quote_workflow(lead.id, reason="Price change")

        assert lead.company_quote_sent_at is None
        assert lead.quote_viewed_at is None
        assert lead.approved is None
        assert lead.proceed_confirmed_at is None
        assert lead.quote_approved_at is None
        assert lead.company_invoice_sent_at is None
        assert lead.company_invoice_number is None
        assert lead.company_invoice_amount_aed is None
        assert lead.company_invoice_payment_link is None
        assert lead.payment_reminder_sent_at is None
        assert lead.payment_reminder_count == 0

        assert lead.feasible is True
        assert lead.quoted_amount_aed == 15000
        assert lead.company_invoice_version == 1
        assert InvoiceRevision.query.filter_by(lead_id=lead.id).count() == 1
        assert derive_stage(lead, "company") is READY_TO_SEND_QUOTE

        activity = _activity(lead.id, "quote_reset")
        assert activity.message == "Company quote workflow reset: Price change"

    def test_reset_clears_questions_and_decline(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")
        workflow.record_customer_decision(lead.id, "company", "decline", "Too slow")

        lead = workflow.reset_quote_workflow(lead.id)

        assert lead.quote_declined_at is None
        assert lead.quote_decline_reason is None
        assert lead.quote_questions_at is None
        assert _activity(lead.id, "quote_reset").message == "Company quote workflow reset"

    def test_quote_can_be_resent_after_reset(self, workflow, walk, make_lead, notifier):
        lead = walk(make_lead(), "quoted")
        workflow.reset_quote_workflow(lead.id)

        lead = workflow.send_quote(lead.id, "company")

        assert lead.company_quote_sent_at is not None
        assert notifier.kinds() == ["quote", "quote"]

    def test_reset_blocked_after_payment(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "paid")
        with pytest.raises(ConflictError, match="Payment already received"):
            workflow.reset_quote_workflow(lead.id)

    def test_reset_keeps_decline_marker(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")
        workflow.decline(lead.id, "company", reason="Went elsewhere")

        lead = workflow.reset_quote_workflow(lead.id)

        assert lead.declined_at is not None
        assert derive_stage(lead, "company") is DECLINED

    def test_bank_reset_leaves_company_alone(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "approved")
        workflow.set_feasibility(lead.id, "bank", True, 3500)
        workflow.send_quote(lead.id, "bank")

        lead = workflow.reset_bank_workflow(lead.id, reason="Wrong bank")

        assert lead.bank_quote_sent_at is None
        assert lead.bank_quoted_amount_aed == 3500
        assert lead.company_quote_sent_at is not None
        assert lead.approved is True
        activity = _activity(lead.id, "bank_reset")
        assert activity.message == "Bank quote workflow reset: Wrong bank"


# ═══════════════════════════════════════════════════════════════
# Decline / reopen
# ═══════════════════════════════════════════════════════════════


class TestDecline:

    def test_decline_records_reason_and_stage(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "quoted")

        lead = workflow.decline(lead.id, "company", reason="No budget")

        assert lead.declined_at is not None
        assert lead.decline_reason == "No budget"
        assert lead.decline_stage == "Awaiting Customer Decision"
        assert derive_stage(lead, "company") is DECLINED
        activity = _activity(lead.id, "lead_declined")
        assert activity.message == (
            "Lead marked as declined: No budget (Stage: Awaiting Customer Decision)"
        )

    def test_decline_without_reason(self, workflow, make_lead):
        lead = make_lead()
        lead = workflow.decline(lead.id, "company", stage="Intake call")
        assert _activity(lead.id, "lead_declined").message == (
            "Lead marked as declined: No reason given (Stage: Intake call)"
        )

    def test_decline_twice_rejected(self, workflow, make_lead):
        lead = make_lead()
        workflow.decline(lead.id, "company")
        with pytest.raises(ConflictError, match="already declined"):
            workflow.decline(lead.id, "company")

    def test_declined_track_blocks_transitions(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "feasible")
        workflow.decline(lead.id, "company")
        with pytest.raises(ConflictError, match="declined"):
            workflow.send_quote(lead.id, "company")

    def test_company_decline_allowed_after_payment(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "paid")
        assert derive_stage(lead, "company") is WORK_IN_PROGRESS

        lead = workflow.decline(lead.id, "company", reason="Refund requested")

        assert derive_stage(lead, "company") is DECLINED
        assert lead.decline_stage == "Work In Progress"

    def test_bank_decline_blocked_after_payment(self, workflow, walk, make_lead):
        lead = walk(make_lead(setup_type="bank"), "paid", track="bank", amount=3500)
        with pytest.raises(ConflictError, match="Payment already received"):
            workflow.decline(lead.id, "bank")

    def test_bank_decline_message(self, workflow, make_lead):
        lead = make_lead(setup_type="bank")
        lead = workflow.decline(lead.id, "bank", reason="Account refused")
        assert lead.bank_declined_at is not None
        assert lead.declined_at is None
        message = _activity(lead.id, "bank_declined").message
        assert message.startswith("Bank track marked as declined: Account refused")

    def test_completed_track_cannot_be_declined(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "completed")
        with pytest.raises(ConflictError, match="completed"):
            workflow.decline(lead.id, "company")


class TestReopen:

    def test_reopen_restores_derived_stage(self, workflow, walk, make_lead):
        lead = walk(make_lead(), "feasible")
        workflow.decline(lead.id, "company", reason="Silent")

        lead = workflow.reopen(lead.id, "company")

        assert lead.declined_at is None
        assert lead.decline_reason is None
        assert lead.decline_stage is None
        assert derive_stage(lead, "company") is READY_TO_SEND_QUOTE
        assert _activity(lead.id, "lead_reopened") is not None

    def test_reopen_requires_decline(self, workflow, make_lead):
        lead = make_lead()
        with pytest.raises(ConflictError, match="not declined"):
            workflow.reopen(lead.id, "company")
