# Import all models here so Alembic can discover them.

from leadportal.models.lead import Lead  # noqa: F401
from leadportal.models.lead_activity import LeadActivity  # noqa: F401
from leadportal.models.invoice_revision import InvoiceRevision  # noqa: F401
