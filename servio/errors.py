"""
Error taxonomy shared by the payment ledger, booking state machine,
webhook processor and refund coordinator.

Every error carries an HTTP status and a stable ``kind`` so route handlers
never have to translate them by hand; see ``servio.main`` for the handler.
"""
from typing import Any, Dict, Optional


class ServiceError(Exception):
    status_code = 500
    kind = "internal"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"status": "error", "error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    status_code = 400
    kind = "validation_error"


class NothingToRefund(ValidationError):
    kind = "nothing_to_refund"


class SignatureInvalid(ServiceError):
    status_code = 400
    kind = "signature_invalid"


class Unauthorized(ServiceError):
    status_code = 401
    kind = "unauthorized"


class Forbidden(ServiceError):
    status_code = 403
    kind = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    kind = "not_found"


class Conflict(ServiceError):
    status_code = 409
    kind = "conflict"


class InvalidTransition(ServiceError):
    status_code = 409
    kind = "invalid_transition"


class GatewayError(ServiceError):
    status_code = 502
    kind = "gateway_error"
