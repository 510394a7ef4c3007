"""Lead service — creating leads from form submissions and editing details.

Handles the parts of a lead that sit outside the workflow tracks: contact
fields, setup type, prescreen answers and notes. Free text is sanitized
with bleach.clean() to strip HTML tags.

Functions flush but do NOT commit — the caller commits.
"""

import logging
import re
import secrets
from datetime import datetime, timezone

import bleach

from leadportal.errors import ValidationError
from leadportal.extensions import db
from leadportal.models.lead import Lead
from leadportal.models.lead_activity import LeadActivity

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")

# Older forms and imports used these values.
LEGACY_SETUP_TYPES = {
    "company": "mainland",
    "existing-company": "bank",
    "existing_company": "bank",
    "free-zone": "freezone",
    "free_zone": "freezone",
    "free zone": "freezone",
    "not-sure": "not_sure",
    "not sure": "not_sure",
    "bank account": "bank",
    "mainland company setup": "mainland",
    "free zone company setup": "freezone",
    "offshore company setup": "offshore",
    "bank account setup": "bank",
    "general enquiry": "not_sure",
}

# Prescreen questions asked of bank leads, in display order.
BANK_PRESCREEN_FIELDS = [
    ("company_jurisdiction", "Company Jurisdiction"),
    ("company_status", "Company Status"),
    ("monthly_turnover", "Monthly Turnover"),
    ("existing_uae_bank_account", "Existing UAE Bank Account"),
]

EDITABLE_TEXT_FIELDS = [
    "full_name",
    "nationality",
    "residence_country",
    "activity",
    "customer_notes",
    "admin_notes",
]


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return None
    cleaned = bleach.clean(str(text), tags=[], strip=True).strip()
    return cleaned or None


def normalize_setup_type(value):
    """Map a submitted service/setup type onto one of Lead.SETUP_TYPES.

    Combined "X + bank account" submissions are no longer offered; they
    are recorded as the company setup X.

    Raises:
        ValidationError: If the value cannot be mapped.
    """
    raw = (value or "").strip().lower()
    if not raw:
        raise ValidationError("Setup type is required.")
    if "+" in raw:
        raw = raw.split("+", 1)[0].strip()
    raw = LEGACY_SETUP_TYPES.get(raw, raw)
    if raw not in Lead.SETUP_TYPES:
        raise ValidationError(
            f"Invalid setup type '{value}'. Must be one of: {', '.join(Lead.SETUP_TYPES)}"
        )
    return raw


def normalize_whatsapp(value):
    """Normalize a phone number to E.164 (+9715...)."""
    number = re.sub(r"[\s\-().]", "", value or "")
    if number.startswith("00"):
        number = "+" + number[2:]
    if not E164_RE.match(number):
        raise ValidationError(
            "WhatsApp number must be in international format, e.g. +971501234567."
        )
    return number


def _parse_count(value, label):
    if value in (None, ""):
        return None
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a whole number.")
    if count < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return count


def _parse_email(value):
    email = (value or "").strip().lower()
    if not email:
        return None
    if not EMAIL_RE.match(email):
        raise ValidationError("A valid email is required.")
    return email


def generate_reference_code(prefix="UBD", now=None):
    """Human-readable lead reference, e.g. UBD-20250314-0930-4821."""
    now = now or datetime.now(timezone.utc)
    for _ in range(5):
        code = f"{prefix}-{now:%Y%m%d}-{now:%H%M}-{secrets.randbelow(10000):04d}"
        if not Lead.query.filter_by(reference_code=code).first():
            return code
    raise RuntimeError("Could not generate a unique lead reference code.")


def create_lead(data, reference_prefix="UBD", notifier=None):
    """Create a lead from a form submission.

    Args:
        data: Submitted fields (full_name, whatsapp, setup_type or
            service_required, optional email, notes, counts, prescreen answers).
        reference_prefix: Prefix of the generated reference code.
        notifier: Optional notifier; the admin is told about the new lead.

    Returns:
        The created Lead.

    Raises:
        ValidationError: If a required field is missing or malformed.
    """
    full_name = _sanitize(data.get("full_name"))
    if not full_name:
        raise ValidationError("Full name is required.")
    if len(full_name) > 255:
        raise ValidationError("Full name is too long.")

    whatsapp = normalize_whatsapp(data.get("whatsapp"))
    email = _parse_email(data.get("email"))
    service_required = _sanitize(data.get("service_required"))
    setup_type = normalize_setup_type(data.get("setup_type") or service_required)

    lead = Lead(
        reference_code=generate_reference_code(reference_prefix),
        full_name=full_name,
        whatsapp=whatsapp,
        email=email,
        nationality=_sanitize(data.get("nationality")),
        residence_country=_sanitize(data.get("residence_country")),
        setup_type=setup_type,
        service_required=service_required,
        activity=_sanitize(data.get("activity")),
        shareholders_count=_parse_count(data.get("shareholders_count"), "Shareholders count"),
        visa_count=_parse_count(data.get("visa_count"), "Visa count"),
        customer_notes=_sanitize(data.get("notes")),
    )

    if setup_type == "bank":
        answers = {
            key: _sanitize(data.get(key))
            for key, _ in BANK_PRESCREEN_FIELDS
            if _sanitize(data.get(key))
        }
        lead.service_details = answers or None
        lead.bank_details = {
            label: answers[key] for key, label in BANK_PRESCREEN_FIELDS if key in answers
        } or None

    db.session.add(lead)
    db.session.flush()

    db.session.add(LeadActivity(
        lead_id=lead.id,
        action="lead_created",
        message=f"Lead created ({setup_type}), reference {lead.reference_code}",
    ))
    db.session.flush()
    logger.info(f"Lead {lead.id} created: {lead.reference_code} ({setup_type})")

    if notifier is not None:
        try:
            notifier.notify_admin(lead, "New lead received", [
                f"Reference: {lead.reference_code}",
                f"Setup type: {setup_type}",
                f"WhatsApp: {whatsapp}",
            ])
        except Exception:
            logger.exception(f"New lead notification failed for lead {lead.id}")

    return lead


def update_lead_details(lead, data):
    """Edit contact, classification and notes fields of a lead.

    A legacy combined ``notes`` blob is split into the structured notes
    fields. Workflow fields are not editable here.

    Returns:
        List of changed field names (empty if nothing changed).

    Raises:
        ValidationError: If a submitted value is malformed.
    """
    changes = {}

    for field in EDITABLE_TEXT_FIELDS:
        if field in data:
            changes[field] = _sanitize(data[field])
    if "full_name" in changes and not changes["full_name"]:
        raise ValidationError("Full name is required.")

    if "whatsapp" in data:
        changes["whatsapp"] = normalize_whatsapp(data["whatsapp"])
    if "email" in data:
        changes["email"] = _parse_email(data["email"])
    if "setup_type" in data:
        changes["setup_type"] = normalize_setup_type(data["setup_type"])
    if "shareholders_count" in data:
        changes["shareholders_count"] = _parse_count(data["shareholders_count"], "Shareholders count")
    if "visa_count" in data:
        changes["visa_count"] = _parse_count(data["visa_count"], "Visa count")
    if "bank_details" in data:
        details = data["bank_details"] or {}
        if not isinstance(details, dict):
            raise ValidationError("Bank details must be an object of label: value pairs.")
        changes["bank_details"] = {
            _sanitize(k): _sanitize(v) or "" for k, v in details.items() if _sanitize(k)
        } or None

    changed = [field for field, value in changes.items() if getattr(lead, field) != value]
    for field in changed:
        setattr(lead, field, changes[field])

    if "notes" in data:
        before = lead.structured_notes
        lead.notes = _sanitize(data["notes"])
        if lead.structured_notes != before:
            changed.append("notes")

    if changed:
        db.session.add(LeadActivity(
            lead_id=lead.id,
            action="lead_updated",
            message=f"Lead details updated: {', '.join(changed)}",
        ))
    db.session.flush()
    return changed
