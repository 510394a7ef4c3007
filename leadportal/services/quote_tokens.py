"""Signed tokens for customer quote links.

The quote email carries a link with a token naming the lead, the track and
the moment that quote was sent. The customer-facing endpoints accept
nothing else, so the token is the only credential a customer needs to view
or decide on a quote. A reset and resend gives the track a new send time,
which retires every link minted for the earlier quote.
"""

from collections import namedtuple
from datetime import datetime, timedelta, timezone

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from leadportal.errors import ValidationError
from leadportal.workflow.tracks import TRACKS

SALT = "quote-decision"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

QuoteLink = namedtuple("QuoteLink", ["lead_id", "track", "quote"])


def quote_stamp(sent_at):
    """Microseconds since the epoch for a quote send time. Naive values are UTC."""
    if sent_at is None:
        return None
    if sent_at.tzinfo is None:
        sent_at = sent_at.replace(tzinfo=timezone.utc)
    return (sent_at - EPOCH) // timedelta(microseconds=1)


class QuoteTokenSigner:

    def __init__(self, secret_key, max_age_days=30):
        self._serializer = URLSafeTimedSerializer(secret_key, salt=SALT)
        self.max_age = max_age_days * 24 * 60 * 60

    @classmethod
    def from_config(cls, config):
        return cls(config["SECRET_KEY"], config.get("QUOTE_TOKEN_MAX_AGE_DAYS", 30))

    def dumps(self, lead_id, track, quote_sent_at):
        return self._serializer.dumps(
            {"lead_id": lead_id, "track": track, "quote": quote_stamp(quote_sent_at)}
        )

    def loads(self, token):
        """Verify a token and return QuoteLink(lead_id, track, quote).

        Raises:
            ValidationError: If the token is missing, tampered with or expired.
        """
        if not token:
            raise ValidationError("Missing quote token.")
        try:
            payload = self._serializer.loads(token, max_age=self.max_age)
        except SignatureExpired:
            raise ValidationError("This quote link has expired. Please contact us for a new one.")
        except BadSignature:
            raise ValidationError("Invalid quote link.")

        if not isinstance(payload, dict):
            raise ValidationError("Invalid quote link.")
        lead_id = payload.get("lead_id")
        track = payload.get("track")
        quote = payload.get("quote")
        if not lead_id or track not in TRACKS or not isinstance(quote, int):
            raise ValidationError("Invalid quote link.")
        return QuoteLink(lead_id, track, quote)
