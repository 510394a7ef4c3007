"""Lead workflow error taxonomy.

Every error carries the HTTP status it maps to. The app factory registers a
single handler that renders them as ``{"ok": false, "error": "..."}``.
"""


class LeadWorkflowError(ValueError):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(LeadWorkflowError):
    """The caller supplied an invalid input for a transition."""

    status_code = 400


class ConflictError(LeadWorkflowError):
    """The lead's current state blocks the requested transition."""

    status_code = 409


class NotFoundError(LeadWorkflowError):
    status_code = 404


class DeliveryError(LeadWorkflowError):
    """The primary message of an operation (quote, invoice, reminder) was not delivered."""

    status_code = 502
