"""Decision tracker — the customer's response to a sent quote.

States: waiting, viewed, approved, declined, has_questions. Approval has
three independent signals (proceed confirmation, quote approval timestamp,
approved flag) that are OR'd: whichever channel fired first is enough.

This module only reads fields and builds field updates. Guards (payment
lock, quote sent) and persistence live in the workflow service.
"""

from leadportal.workflow.tracks import TrackView, get_track

WAITING = "waiting"
VIEWED = "viewed"
APPROVED = "approved"
DECLINED = "declined"
HAS_QUESTIONS = "has_questions"

DECISIONS = (WAITING, VIEWED, APPROVED, DECLINED, HAS_QUESTIONS)

# Outcomes a customer or an admin can force.
OUTCOMES = (APPROVED, DECLINED, HAS_QUESTIONS)

_ALIASES = {
    "accept": APPROVED,
    "approve": APPROVED,
    "approved": APPROVED,
    "proceed": APPROVED,
    "decline": DECLINED,
    "declined": DECLINED,
    "questions": HAS_QUESTIONS,
    "has_questions": HAS_QUESTIONS,
}

_DECISION_FIELDS = (
    "proceed_confirmed_at",
    "quote_approved_at",
    "approved",
    "quote_declined_at",
    "quote_decline_reason",
    "quote_questions_at",
    "quote_questions_reason",
)


def _view(lead, track):
    if isinstance(track, str):
        track = get_track(track)
    return TrackView(lead, track)


def parse_outcome(value):
    """Map request wording (accept/proceed/decline/questions) to an outcome, or None."""
    if not isinstance(value, str):
        return None
    return _ALIASES.get(value.strip().lower())


def is_approved(view):
    return bool(
        view.proceed_confirmed_at is not None
        or view.quote_approved_at is not None
        or view.approved is True
    )


def has_questions(view):
    return view.quote_questions_at is not None


def is_quote_declined(view):
    return view.quote_declined_at is not None or view.approved is False


def derive_decision(lead, track):
    """Current decision state of a track. Approval wins over every other signal."""
    view = _view(lead, track)
    if is_approved(view):
        return APPROVED
    if has_questions(view):
        return HAS_QUESTIONS
    if is_quote_declined(view):
        return DECLINED
    if view.quote_viewed_at is not None:
        return VIEWED
    return WAITING


def outcome_fields(outcome, now, reason=None):
    """Logical field values that put a track into ``outcome``.

    Fields belonging to the other outcomes are cleared so exactly one
    decision signal remains. The quote view timestamp is left alone.
    """
    cleared = {name: None for name in _DECISION_FIELDS}
    if outcome == APPROVED:
        cleared.update(approved=True, proceed_confirmed_at=now, quote_approved_at=now)
    elif outcome == DECLINED:
        cleared.update(approved=False, quote_declined_at=now, quote_decline_reason=reason)
    elif outcome == HAS_QUESTIONS:
        cleared.update(quote_questions_at=now, quote_questions_reason=reason)
    else:
        raise ValueError(f"Unknown decision outcome '{outcome}'")
    return cleared


def cleared_fields():
    """Logical field values that wipe every decision signal, views included."""
    values = {name: None for name in _DECISION_FIELDS}
    values["quote_viewed_at"] = None
    return values


def matches_outcome(lead, track, outcome, reason=None):
    """True if the track already sits in ``outcome`` with the same reason."""
    view = _view(lead, track)
    if derive_decision(lead, view.track) != outcome:
        return False
    if outcome == DECLINED:
        return view.quote_decline_reason == reason
    if outcome == HAS_QUESTIONS:
        return view.quote_questions_reason == reason
    return True
