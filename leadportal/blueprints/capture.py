"""Capture blueprint — /api/public/*

Public endpoint the marketing site's enquiry form posts to. Accepts JSON
or a plain form POST and creates a lead in the "new" stage.

Route Map:
  POST /api/public/leads  — Create a lead from a form submission
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from leadportal.extensions import db, limiter
from leadportal.services import lead_service
from leadportal.services.notification_service import EmailNotifier

capture_bp = Blueprint("capture", __name__, url_prefix="/api/public")

logger = logging.getLogger(__name__)

# Camel-case names used by the website form, mapped to lead fields.
FORM_ALIASES = {
    "fullName": "full_name",
    "serviceRequired": "service_required",
    "setupType": "setup_type",
    "residenceCountry": "residence_country",
    "shareholdersCount": "shareholders_count",
    "visaCount": "visa_count",
    "companyJurisdiction": "company_jurisdiction",
    "companyStatus": "company_status",
    "monthlyTurnover": "monthly_turnover",
    "existingUaeBankAccount": "existing_uae_bank_account",
}


@capture_bp.route("/leads", methods=["POST"])
@limiter.limit("10 per hour")
def capture_lead():
    """
    Accept an enquiry form submission.

    Required fields: full_name, whatsapp, service_required (or setup_type)
    Optional fields: email, nationality, residence_country, activity,
    shareholders_count, visa_count, notes, bank prescreen answers

    Returns: { ok: true, id, reference_code } or { ok: false, error: "..." }
    """
    if request.is_json:
        data = request.get_json(silent=True) or {}
    else:
        data = request.form.to_dict()

    if not data or not isinstance(data, dict):
        return jsonify(ok=False, error="Invalid request."), 400

    data = {FORM_ALIASES.get(key, key): value for key, value in data.items()}

    config = current_app.config
    lead = lead_service.create_lead(
        data,
        reference_prefix=config.get("LEAD_REFERENCE_PREFIX", "UBD"),
        notifier=EmailNotifier.from_config(config),
    )
    db.session.commit()

    logger.info(f"Public capture: lead {lead.reference_code} ({lead.setup_type})")
    return jsonify(ok=True, id=lead.id, reference_code=lead.reference_code), 201
