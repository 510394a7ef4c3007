"""Workflow engine — derives the stage of a lead track from its fields.

No stage is ever stored. ``PRECEDENCE`` is an ordered table of
(stage, predicate) rows checked top-down; the first matching row wins and
the last row always matches, so every field combination maps to exactly
one stage.

Everything here is pure: no database, no clock, no config.
"""

from collections import namedtuple
from dataclasses import dataclass

from leadportal.workflow.decisions import (
    derive_decision,
    has_questions,
    is_approved,
    is_quote_declined,
)
from leadportal.workflow.tracks import Track, TrackView, get_track


@dataclass(frozen=True)
class Stage:
    key: str
    status: str
    next_action: str
    terminal: bool = False


COMPLETED = Stage("completed", "Completed", "No further action", terminal=True)
DECLINED = Stage(
    "declined", "Declined", "Reopen the lead if the customer returns", terminal=True
)
WORK_IN_PROGRESS = Stage(
    "work_in_progress", "Work In Progress", "Complete the setup and mark it completed"
)
AWAITING_PAYMENT = Stage(
    "awaiting_payment", "Awaiting Payment", "Send payment reminder / follow up"
)
APPROVED_AWAITING_INVOICE = Stage(
    "approved_awaiting_invoice", "Approved, Awaiting Invoice", "Generate & send invoice"
)
CUSTOMER_HAS_QUESTIONS = Stage(
    "has_questions", "Customer Has Questions", "Contact customer to answer questions"
)
QUOTE_DECLINED = Stage(
    "quote_declined", "Quote Declined", "Reset the quote or decline the lead"
)
AWAITING_DECISION = Stage(
    "awaiting_decision", "Awaiting Customer Decision", "Wait for customer decision"
)
READY_TO_SEND_QUOTE = Stage("ready_to_send_quote", "Ready To Send Quote", "Send quote")
NOT_FEASIBLE = Stage(
    "not_feasible", "Closed (Not Feasible)", "No further action", terminal=True
)
FEASIBILITY_IN_PROGRESS = Stage(
    "feasibility_in_progress",
    "Feasibility & Quote In Progress",
    "Determine feasibility and quote amount",
)
NEW = Stage("new", "New / Awaiting Agent Contact", "Contact agent via WhatsApp")


PRECEDENCE = (
    (COMPLETED, lambda v: v.completed_at is not None),
    (DECLINED, lambda v: v.declined_at is not None),
    (WORK_IN_PROGRESS, lambda v: v.payment_received_at is not None),
    (AWAITING_PAYMENT, lambda v: v.invoice_sent_at is not None),
    (APPROVED_AWAITING_INVOICE, is_approved),
    (CUSTOMER_HAS_QUESTIONS, has_questions),
    (QUOTE_DECLINED, is_quote_declined),
    (AWAITING_DECISION, lambda v: v.quote_sent_at is not None),
    (
        READY_TO_SEND_QUOTE,
        lambda v: v.lead.feasible is True and v.quoted_amount is not None,
    ),
    (NOT_FEASIBLE, lambda v: v.lead.feasible is False),
    (FEASIBILITY_IN_PROGRESS, lambda v: v.lead.agent_contacted_at is not None),
    (NEW, lambda v: True),
)

STAGES = tuple(stage for stage, _ in PRECEDENCE)
STAGES_BY_KEY = {stage.key: stage for stage in STAGES}

# The only rows that read the lead-level agent contact and feasibility
# fields. A track past these stages no longer depends on them.
PRE_QUOTE_STAGES = (READY_TO_SEND_QUOTE, NOT_FEASIBLE, FEASIBILITY_IN_PROGRESS, NEW)

FOLLOW_UP_FEASIBILITY = "Follow up agent (Feasibility)"
FOLLOW_UP_COMPLETION = "Follow up agent (Completion)"


TrackStatus = namedtuple(
    "TrackStatus",
    [
        "track",
        "stage",
        "status",
        "next_action",
        "terminal",
        "decision",
        "reminder_count",
        "reminder_sent_at",
        "invoice_outdated",
        "overdue",
    ],
)


def _resolve(track):
    return track if isinstance(track, Track) else get_track(track)


def derive_stage(lead, track):
    """Return the Stage the given track of ``lead`` is in."""
    view = TrackView(lead, _resolve(track))
    for stage, matches in PRECEDENCE:
        if matches(view):
            return stage
    raise AssertionError("precedence table has no catch-all row")


def derive_status(lead, track):
    """Human-readable status label, e.g. "Ready To Send Quote"."""
    return derive_stage(lead, track).status


def derive_next_action(lead, track):
    """Recommended next admin action for the current stage."""
    return derive_stage(lead, track).next_action


def is_invoice_outdated(lead, track):
    """True when the sent, unpaid invoice no longer matches the quoted amount."""
    view = TrackView(lead, _resolve(track))
    if view.invoice_sent_at is None or view.payment_received_at is not None:
        return False
    if view.invoice_amount is None:
        return False
    return view.invoice_amount != view.quoted_amount


def is_in_flight(lead, track):
    """True when the track is open and past the pre-quote stages."""
    stage = derive_stage(lead, track)
    return not stage.terminal and stage not in PRE_QUOTE_STAGES


def describe(lead, track, sla=None):
    """Stage plus the sub-state details the admin UI shows next to it.

    With an ``Sla`` from leadportal.workflow.sla, an overdue agent turns the
    next action into a follow-up.
    """
    track = _resolve(track)
    view = TrackView(lead, track)
    stage = derive_stage(lead, track)

    next_action, overdue = stage.next_action, False
    if sla is not None:
        if stage is FEASIBILITY_IN_PROGRESS and sla.response_overdue:
            next_action, overdue = FOLLOW_UP_FEASIBILITY, True
        elif stage is WORK_IN_PROGRESS and sla.completion_overdue:
            next_action, overdue = FOLLOW_UP_COMPLETION, True

    return TrackStatus(
        track=track.name,
        stage=stage.key,
        status=stage.status,
        next_action=next_action,
        terminal=stage.terminal,
        decision=derive_decision(lead, track),
        reminder_count=view.reminder_total,
        reminder_sent_at=view.reminder_sent_at,
        invoice_outdated=is_invoice_outdated(lead, track),
        overdue=overdue,
    )
