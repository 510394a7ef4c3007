"""Legacy combined notes blob <-> structured notes.

Older records keep customer notes, admin notes, bank account details and
the lead reference in one text field, in this order, separated by blank
lines and marker headings:

    <customer text>

    --- Admin Notes ---
    <admin text>

    Bank Account Details:
    Label: value
    Label: value

    Lead Reference: UBD-20250101-0930-1234

Any section may be missing. Leads now store the four parts in their own
columns; this module turns one form into the other.

An empty string or empty dict is the same as a missing section: it encodes
to nothing and decodes as None. A blank column and a null column are one
value on a lead, so decode(encode(x)) == x holds once x uses None for
empty parts.
"""

from dataclasses import dataclass

ADMIN_MARKER = "--- Admin Notes ---\n"
BANK_MARKER = "Bank Account Details:\n"
REFERENCE_MARKER = "Lead Reference: "

SECTION_SEPARATOR = "\n\n"


@dataclass
class LeadNotes:
    customer: str = None
    admin: str = None
    bank_details: dict = None
    reference: str = None


def _split_last(text, marker):
    """Split ``text`` at the last section starting with ``marker``.

    Returns (head, section_body); section_body is None when absent.
    """
    idx = text.rfind(SECTION_SEPARATOR + marker)
    if idx >= 0:
        return text[:idx], text[idx + len(SECTION_SEPARATOR) + len(marker):]
    if text.startswith(marker):
        return "", text[len(marker):]
    return text, None


def _parse_detail_lines(body):
    details = {}
    for line in body.splitlines():
        if not line.strip():
            continue
        label, sep, value = line.partition(":")
        if not sep:
            details[line.strip()] = ""
            continue
        details[label.strip()] = value.strip()
    return details


def encode_notes(notes):
    """Build the combined blob. Empty parts are left out; returns None when all are."""
    parts = []
    if notes.customer:
        parts.append(notes.customer)
    if notes.admin:
        parts.append(ADMIN_MARKER + notes.admin)
    if notes.bank_details:
        lines = [f"{label}: {value}" for label, value in notes.bank_details.items()]
        parts.append(BANK_MARKER + "\n".join(lines))
    if notes.reference:
        parts.append(REFERENCE_MARKER + notes.reference)
    if not parts:
        return None
    return SECTION_SEPARATOR.join(parts)


def decode_notes(blob):
    """Split a combined blob back into LeadNotes.

    Tolerates any missing section. Missing and empty sections come back as None.
    """
    if not blob:
        return LeadNotes()

    rest, reference = _split_last(blob, REFERENCE_MARKER)
    rest, bank_body = _split_last(rest, BANK_MARKER)
    rest, admin = _split_last(rest, ADMIN_MARKER)

    bank_details = _parse_detail_lines(bank_body) if bank_body else None
    if reference is not None:
        reference = reference.strip()

    return LeadNotes(
        customer=rest or None,
        admin=admin or None,
        bank_details=bank_details or None,
        reference=reference or None,
    )
