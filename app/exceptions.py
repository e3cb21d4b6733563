"""Error taxonomy for the scheduling core.

Services raise these; the handlers in ``app.core.handlers`` turn them into the
response envelope. Each class carries its HTTP status and a stable code.
"""
from typing import Any, Dict, Optional


class ConsultCoreError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class ValidationFailed(ConsultCoreError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class Unauthenticated(ConsultCoreError):
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = "Could not validate credentials"


class Forbidden(ConsultCoreError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access denied"


class NotFound(ConsultCoreError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"

    def __init__(self, resource: str = "Resource", resource_id: Optional[str] = None, message: Optional[str] = None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message or f"{resource} not found", {"resource": resource, "id": resource_id})


class DoctorNotFound(NotFound):
    code = "DOCTOR_NOT_FOUND"

    def __init__(self, doctor_id: Optional[str] = None):
        super().__init__("Doctor", doctor_id)


class Conflict(ConsultCoreError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflict with current state"


class SlotTaken(Conflict):
    code = "SLOT_TAKEN"
    default_message = "The selected time slot is no longer available"


class DuplicateKey(Conflict):
    code = "DUPLICATE_KEY"
    default_message = "A record with the same unique value already exists"


class StaleRevision(Conflict):
    code = "STALE_REVISION"
    default_message = "The record was modified concurrently; reload and retry"


class IllegalTransition(Conflict):
    code = "ILLEGAL_TRANSITION"

    def __init__(self, from_state: str, to_state: str, resource: str = "appointment", message: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message or f"Cannot move {resource} from '{from_state}' to '{to_state}'",
            {"resource": resource, "from": from_state, "to": to_state},
        )


class OutOfWindow(Conflict):
    code = "OUT_OF_WINDOW"
    default_message = "The operation is outside its allowed time window"


class Locked(ConsultCoreError):
    status_code = 423
    code = "LOCKED"
    default_message = "Resource is locked"


class DoctorUnavailable(Locked):
    code = "DOCTOR_UNAVAILABLE"
    default_message = "Doctor is not available"


class PaymentRequired(Locked):
    code = "PAYMENT_REQUIRED"
    default_message = "Payment must be completed first"


class AccountLocked(Locked):
    code = "ACCOUNT_LOCKED"
    default_message = "Account is temporarily locked"


class UpstreamError(ConsultCoreError):
    status_code = 502
    code = "UPSTREAM_ERROR"
    default_message = "An external collaborator failed"


class FatalInvariantViolation(ConsultCoreError):
    status_code = 500
    code = "INVARIANT_VIOLATION"
    default_message = "Data integrity check failed"
