"""Leads blueprint — /api/leads/*

Admin JSON API over leads and their company/bank workflow tracks. Every
action route runs one workflow operation and commits once, so a request
is one atomic transition. Workflow errors are rendered by the app-level
LeadWorkflowError handler.

Route Map:
  GET   /api/leads                          — List leads with derived stage (?stage=, ?setup_type=)
  GET   /api/leads/summary                  — Lead counts per stage
  POST  /api/leads                          — Create lead (admin entry)
  GET   /api/leads/<id>                     — Lead detail + both tracks
  PATCH /api/leads/<id>                     — Edit contact / notes fields
  GET   /api/leads/<id>/activities          — Activity timeline
  GET   /api/leads/<id>/invoices            — Invoice revision ledger (?track=)
  POST  /api/leads/<id>/agent-contacted     — Mark agent contacted
  POST  /api/leads/<id>/feasibility         — Set feasibility + quoted amount
  POST  /api/leads/<id>/quoted-amount       — Change quoted amount (marks an unpaid invoice outdated)
  POST  /api/leads/<id>/quote/send          — Send quote email
  POST  /api/leads/<id>/quote/whatsapp-sent — Record quote sent via WhatsApp
  POST  /api/leads/<id>/override-decision   — Force accept / decline / questions
  POST  /api/leads/<id>/reset-quote         — Reset company quote workflow
  POST  /api/leads/<id>/reset-bank          — Reset bank quote workflow
  POST  /api/leads/<id>/invoice/send        — Send (revised) invoice
  POST  /api/leads/<id>/reminders           — Send payment reminder
  POST  /api/leads/<id>/payment             — Record payment received
  POST  /api/leads/<id>/complete            — Mark track completed
  POST  /api/leads/<id>/decline             — Decline track
  POST  /api/leads/<id>/reopen              — Reopen declined track
"""

from collections import Counter
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from leadportal.errors import ValidationError
from leadportal.extensions import db
from leadportal.models.lead import Lead
from leadportal.services import lead_service
from leadportal.services.lead_store import LeadStore
from leadportal.services.notification_service import EmailNotifier
from leadportal.services.workflow_service import WorkflowService
from leadportal.workflow.engine import STAGES, STAGES_BY_KEY, describe
from leadportal.workflow.sla import compute_sla
from leadportal.workflow.tracks import (
    LOGICAL_FIELDS,
    TRACKS,
    TrackView,
    effective_track,
    get_track,
)

leads_bp = Blueprint("leads", __name__, url_prefix="/api/leads")


def build_workflow_service():
    """WorkflowService wired to the request's session and the app's mail settings."""
    config = current_app.config
    return WorkflowService(
        LeadStore(db.session),
        EmailNotifier.from_config(config),
        invoice_prefix=config.get("INVOICE_NUMBER_PREFIX", "UBD"),
    )


def _iso(value):
    return value.isoformat() if value is not None else None


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _now():
    return datetime.now(timezone.utc)


def _sla_dict(sla):
    return {
        "sent_to_agent_at": _iso(sla.sent_to_agent_at),
        "responded_at": _iso(sla.responded_at),
        "response_hours": sla.response_hours,
        "response_elapsed_hours": sla.response_elapsed_hours,
        "response_overdue": sla.response_overdue,
        "completion_hours": sla.completion_hours,
        "completion_elapsed_hours": sla.completion_elapsed_hours,
        "completion_overdue": sla.completion_overdue,
    }


def _track_dict(lead, track_name, activities, now):
    track = get_track(track_name)
    view = TrackView(lead, track)
    sla = compute_sla(lead, activities, now, track)
    status = describe(lead, track, sla)
    fields = {}
    for name in LOGICAL_FIELDS:
        value = getattr(view, name)
        fields[name] = _iso(value) if hasattr(value, "isoformat") else value
    return {
        "stage": status.stage,
        "status": status.status,
        "next_action": status.next_action,
        "terminal": status.terminal,
        "decision": status.decision,
        "reminder_count": status.reminder_count,
        "reminder_sent_at": _iso(status.reminder_sent_at),
        "invoice_outdated": status.invoice_outdated,
        "overdue": status.overdue,
        "sla": _sla_dict(sla),
        "fields": fields,
    }


def _lead_dict(lead):
    activities = lead.activities.all()
    now = _now()
    return {
        "id": lead.id,
        "reference_code": lead.reference_code,
        "full_name": lead.full_name,
        "whatsapp": lead.whatsapp,
        "email": lead.email,
        "nationality": lead.nationality,
        "residence_country": lead.residence_country,
        "setup_type": lead.setup_type,
        "service_required": lead.service_required,
        "activity": lead.activity,
        "shareholders_count": lead.shareholders_count,
        "visa_count": lead.visa_count,
        "service_details": lead.service_details,
        "customer_notes": lead.customer_notes,
        "admin_notes": lead.admin_notes,
        "bank_details": lead.bank_details,
        "agent_contacted_at": _iso(lead.agent_contacted_at),
        "feasible": lead.feasible,
        "google_review_requested_at": _iso(lead.google_review_requested_at),
        "effective_track": effective_track(lead),
        "tracks": {name: _track_dict(lead, name, activities, now) for name in TRACKS},
        "created_at": _iso(lead.created_at),
        "updated_at": _iso(lead.updated_at),
    }


def _summary_dict(lead, now):
    track = effective_track(lead)
    sla = compute_sla(lead, lead.activities.all(), now, track)
    status = describe(lead, track, sla)
    return {
        "id": lead.id,
        "reference_code": lead.reference_code,
        "full_name": lead.full_name,
        "setup_type": lead.setup_type,
        "track": track,
        "stage": status.stage,
        "status": status.status,
        "next_action": status.next_action,
        "overdue": status.overdue,
        "created_at": _iso(lead.created_at),
    }


def _track_arg(lead_id, data):
    """Track named in the body or query string, else the lead's active track."""
    track = data.get("track") or request.args.get("track")
    if track:
        return track
    return effective_track(LeadStore(db.session).get(lead_id))


def _ok(lead, status=200, **extra):
    return jsonify(ok=True, lead=_lead_dict(lead), **extra), status


# ─── Listing & detail ────────────────────────────────────────────

@leads_bp.route("", methods=["GET"])
def list_leads():
    stage = request.args.get("stage")
    if stage and stage not in STAGES_BY_KEY:
        raise ValidationError(
            f"Invalid stage '{stage}'. Must be one of: {', '.join(STAGES_BY_KEY)}"
        )
    setup_type = request.args.get("setup_type")

    query = Lead.query.order_by(Lead.created_at.desc())
    if setup_type:
        query = query.filter_by(setup_type=setup_type)

    now = _now()
    leads = [_summary_dict(lead, now) for lead in query.all()]
    if stage:
        leads = [item for item in leads if item["stage"] == stage]
    return jsonify(leads=leads, count=len(leads))


@leads_bp.route("/summary", methods=["GET"])
def summary():
    counts = Counter(
        describe(lead, effective_track(lead)).stage for lead in Lead.query.all()
    )
    return jsonify(
        stages=[
            {"stage": s.key, "status": s.status, "count": counts.get(s.key, 0)}
            for s in STAGES
        ],
        total=sum(counts.values()),
    )


@leads_bp.route("", methods=["POST"])
def create_lead():
    lead = lead_service.create_lead(
        _json_body(),
        reference_prefix=current_app.config.get("LEAD_REFERENCE_PREFIX", "UBD"),
    )
    db.session.commit()
    return _ok(lead, 201)


@leads_bp.route("/<lead_id>", methods=["GET"])
def lead_detail(lead_id):
    return _ok(LeadStore(db.session).get(lead_id))


@leads_bp.route("/<lead_id>", methods=["PATCH"])
def update_lead(lead_id):
    lead = LeadStore(db.session).get(lead_id)
    changed = lead_service.update_lead_details(lead, _json_body())
    db.session.commit()
    return _ok(lead, changed=changed)


@leads_bp.route("/<lead_id>/activities", methods=["GET"])
def lead_activities(lead_id):
    store = LeadStore(db.session)
    store.get(lead_id)
    limit = request.args.get("limit", type=int)
    return jsonify(activities=[
        {
            "id": a.id,
            "action": a.action,
            "message": a.message,
            "created_at": _iso(a.created_at),
        }
        for a in store.list_activities(lead_id, limit=limit)
    ])


@leads_bp.route("/<lead_id>/invoices", methods=["GET"])
def lead_invoices(lead_id):
    store = LeadStore(db.session)
    lead = store.get(lead_id)
    track = request.args.get("track")
    if track:
        WorkflowService.resolve_track(track)
    return jsonify(
        invoices=[
            {
                "id": r.id,
                "track": r.track,
                "version": r.version,
                "invoice_number": r.invoice_number,
                "amount_aed": r.amount_aed,
                "payment_link": r.payment_link,
                "sent_at": _iso(r.sent_at),
            }
            for r in store.list_revisions(lead.id, track)
        ],
        outdated={name: describe(lead, name).invoice_outdated for name in TRACKS},
    )


# ─── Workflow actions ────────────────────────────────────────────

@leads_bp.route("/<lead_id>/agent-contacted", methods=["POST"])
def agent_contacted(lead_id):
    lead = build_workflow_service().mark_agent_contacted(lead_id)
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/feasibility", methods=["POST"])
def feasibility(lead_id):
    data = _json_body()
    if "feasible" not in data:
        raise ValidationError("Feasible is required (true, false or null).")
    lead = build_workflow_service().set_feasibility(
        lead_id,
        _track_arg(lead_id, data),
        data["feasible"],
        data.get("quoted_amount_aed"),
    )
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/quoted-amount", methods=["POST"])
def quoted_amount(lead_id):
    data = _json_body()
    lead = build_workflow_service().set_quoted_amount(
        lead_id, _track_arg(lead_id, data), data.get("quoted_amount_aed")
    )
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/quote/send", methods=["POST"])
def send_quote(lead_id):
    data = _json_body()
    lead = build_workflow_service().send_quote(lead_id, _track_arg(lead_id, data))
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/quote/whatsapp-sent", methods=["POST"])
def quote_whatsapp_sent(lead_id):
    data = _json_body()
    lead = build_workflow_service().mark_quote_whatsapp_sent(lead_id, _track_arg(lead_id, data))
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/override-decision", methods=["POST"])
def override_decision(lead_id):
    data = _json_body()
    lead = build_workflow_service().override_decision(
        lead_id,
        _track_arg(lead_id, data),
        data.get("decision"),
        data.get("reason"),
    )
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/reset-quote", methods=["POST"])
def reset_quote(lead_id):
    data = _json_body()
    lead = build_workflow_service().reset_quote_workflow(lead_id, data.get("reason"))
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/reset-bank", methods=["POST"])
def reset_bank(lead_id):
    data = _json_body()
    lead = build_workflow_service().reset_bank_workflow(lead_id, data.get("reason"))
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/invoice/send", methods=["POST"])
def send_invoice(lead_id):
    data = _json_body()
    revision = build_workflow_service().send_invoice(
        lead_id, _track_arg(lead_id, data), data.get("payment_link")
    )
    db.session.commit()
    return _ok(
        revision.lead,
        invoice={
            "version": revision.version,
            "invoice_number": revision.invoice_number,
            "amount_aed": revision.amount_aed,
            "sent_at": _iso(revision.sent_at),
            "revised": revision.version > 1,
        },
    )


@leads_bp.route("/<lead_id>/reminders", methods=["POST"])
def send_reminder(lead_id):
    data = _json_body()
    service = build_workflow_service()
    reminder = service.send_reminder(lead_id, _track_arg(lead_id, data))
    db.session.commit()
    return _ok(
        service.store.get(lead_id),
        reminder={"sent_at": _iso(reminder.sent_at), "count": reminder.count},
    )


@leads_bp.route("/<lead_id>/payment", methods=["POST"])
def record_payment(lead_id):
    data = _json_body()
    lead = build_workflow_service().record_payment(lead_id, _track_arg(lead_id, data))
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/complete", methods=["POST"])
def complete(lead_id):
    data = _json_body()
    lead, review_requested = build_workflow_service().mark_completed(
        lead_id, _track_arg(lead_id, data)
    )
    db.session.commit()
    return _ok(lead, review_requested=review_requested)


@leads_bp.route("/<lead_id>/decline", methods=["POST"])
def decline(lead_id):
    data = _json_body()
    lead = build_workflow_service().decline(
        lead_id,
        _track_arg(lead_id, data),
        reason=data.get("reason"),
        stage=data.get("stage"),
    )
    db.session.commit()
    return _ok(lead)


@leads_bp.route("/<lead_id>/reopen", methods=["POST"])
def reopen(lead_id):
    data = _json_body()
    lead = build_workflow_service().reopen(lead_id, _track_arg(lead_id, data))
    db.session.commit()
    return _ok(lead)
