"""Quote blueprint — /api/quote/*

Customer-facing endpoints behind the link in the quote email. The signed
token in the link is the only credential: it names the lead, the track and
the quote it was sent with. Links from before a quote reset are refused.

Route Map:
  GET  /api/quote/details?token=  — Quote amount and current decision
  POST /api/quote/view            — Record that the customer opened the quote
  POST /api/quote/decide          — proceed / decline / questions
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from leadportal.blueprints.leads import build_workflow_service
from leadportal.errors import ConflictError
from leadportal.extensions import db, limiter
from leadportal.services.lead_store import LeadStore
from leadportal.services.quote_tokens import QuoteTokenSigner, quote_stamp
from leadportal.workflow.decisions import derive_decision
from leadportal.workflow.tracks import TrackView, get_track

quote_bp = Blueprint("quote", __name__, url_prefix="/api/quote")

logger = logging.getLogger(__name__)


def _current_quote():
    """Resolve the request's token to the lead and track view it is for.

    Raises:
        ValidationError: If the token is missing or invalid.
        ConflictError: If the quote behind the token was reset or replaced.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    token = request.args.get("token") or data.get("token")
    link = QuoteTokenSigner.from_config(current_app.config).loads(token)

    lead = LeadStore(db.session).get(link.lead_id)
    view = TrackView(lead, get_track(link.track))
    if view.quote_sent_at is None or quote_stamp(view.quote_sent_at) != link.quote:
        logger.info(f"Lead {lead.id}: stale {link.track} quote link refused")
        raise ConflictError("This quote is no longer available. Please contact us.")
    return lead, view, data


@quote_bp.route("/details", methods=["GET"])
def details():
    lead, view, _ = _current_quote()
    track = view.track
    return jsonify(
        ok=True,
        full_name=lead.full_name,
        reference_code=lead.reference_code,
        track=track.name,
        track_label=track.label,
        quoted_amount_aed=view.quoted_amount,
        quote_sent_at=view.quote_sent_at.isoformat(),
        decision=derive_decision(lead, track),
    )


@quote_bp.route("/view", methods=["POST"])
@limiter.limit("60 per hour")
def view():
    lead, track_view, _ = _current_quote()
    _, already_viewed = build_workflow_service().record_quote_view(lead.id, track_view.track.name)
    db.session.commit()
    return jsonify(ok=True, already_viewed=already_viewed)


@quote_bp.route("/decide", methods=["POST"])
@limiter.limit("20 per hour")
def decide():
    lead, track_view, data = _current_quote()
    track = track_view.track.name
    result = build_workflow_service().record_customer_decision(
        lead.id, track, data.get("decision"), data.get("reason")
    )
    db.session.commit()
    if result.already_decided:
        logger.info(f"Lead {lead.id}: repeated {track} quote decision ignored ({result.decision})")
    return jsonify(
        ok=True,
        decision=result.decision,
        already_decided=result.already_decided,
    )
