# services/errors.py
"""
Error taxonomy for the billing engine.

Every error is scoped to the single service / period / agent being processed;
callers decide whether to surface it. Materialization conflicts on the natural
key are not errors at all and never reach this module.
"""


class BillingError(Exception):
    """Base class; carries the HTTP status the blueprint maps it to."""

    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"error": self.message, "code": self.code}
        if self.details:
            out["details"] = self.details
        return out


class NotFound(BillingError, LookupError):
    status_code = 404
    code = "not_found"


class Forbidden(BillingError, PermissionError):
    status_code = 403
    code = "forbidden"


class InvalidCadence(BillingError, ValueError):
    code = "invalid_cadence"


class InvalidRange(BillingError, ValueError):
    code = "invalid_range"


class PeriodConflict(BillingError):
    """Manual period creation collides with an existing period."""
    status_code = 409
    code = "period_conflict"


class PeriodLocked(BillingError):
    """Period has invoices or incomes attached and cannot be removed."""
    status_code = 409
    code = "period_locked"
