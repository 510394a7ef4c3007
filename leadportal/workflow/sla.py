"""Agent turnaround timers read from a lead's activity timeline.

Two clocks run per track:

- response: agent contacted -> first feasibility decision. Overdue once
  RESPONSE_OVERDUE_HOURS pass with feasibility still undetermined.
- completion: first feasibility decision -> track completed. Overdue once
  COMPLETION_OVERDUE_HOURS pass on a feasible, open track.

Pure like the engine: the caller passes the activities and the time.
Naive datetimes (SQLite) are taken as UTC.
"""

from collections import namedtuple
from datetime import timedelta, timezone

from leadportal.workflow.tracks import Track, TrackView, get_track

RESPONSE_OVERDUE_HOURS = 48
COMPLETION_OVERDUE_HOURS = 336

FEASIBILITY_ACTION = "feasibility_set"

Sla = namedtuple(
    "Sla",
    [
        "sent_to_agent_at",
        "responded_at",
        "completed_at",
        "response_hours",
        "completion_hours",
        "response_elapsed_hours",
        "completion_elapsed_hours",
        "response_overdue",
        "completion_overdue",
    ],
)


def _aware(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _hours(start, end):
    return max(0, round((end - start) / timedelta(hours=1)))


def compute_sla(lead, activities, now, track="company"):
    """Compute the response and completion timers for one track of a lead.

    Args:
        lead: Lead (or any object with the Lead columns).
        activities: The lead's LeadActivity rows, in any order.
        now: Current time.
        track: Track or track name.

    Returns:
        Sla
    """
    track = track if isinstance(track, Track) else get_track(track)
    view = TrackView(lead, track)
    now = _aware(now)

    sent_to_agent_at = _aware(lead.agent_contacted_at)
    responded_at = min(
        (
            _aware(a.created_at)
            for a in activities
            if a.action == FEASIBILITY_ACTION and a.created_at is not None
        ),
        default=None,
    )
    completed_at = _aware(view.completed_at)

    response_hours = response_elapsed = None
    response_overdue = False
    if sent_to_agent_at is not None:
        if responded_at is not None:
            response_hours = _hours(sent_to_agent_at, responded_at)
        elif lead.feasible is None:
            response_elapsed = _hours(sent_to_agent_at, now)
            response_overdue = now - sent_to_agent_at > timedelta(hours=RESPONSE_OVERDUE_HOURS)

    completion_hours = completion_elapsed = None
    completion_overdue = False
    if responded_at is not None and lead.feasible is True:
        if completed_at is not None:
            completion_hours = _hours(responded_at, completed_at)
        elif view.declined_at is None:
            completion_elapsed = _hours(responded_at, now)
            completion_overdue = now - responded_at > timedelta(hours=COMPLETION_OVERDUE_HOURS)

    return Sla(
        sent_to_agent_at=sent_to_agent_at,
        responded_at=responded_at,
        completed_at=completed_at,
        response_hours=response_hours,
        completion_hours=completion_hours,
        response_elapsed_hours=response_elapsed,
        completion_elapsed_hours=completion_elapsed,
        response_overdue=response_overdue,
        completion_overdue=completion_overdue,
    )
