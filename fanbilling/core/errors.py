from __future__ import annotations

from typing import Any, Optional


class BillingError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_body(self) -> dict:
        body: dict = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class Unauthorized(BillingError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(BillingError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(BillingError):
    status_code = 404
    default_message = "Not found"


class ValidationError(BillingError):
    status_code = 400
    default_message = "Invalid request"


class InvalidSignature(BillingError):
    status_code = 400
    default_message = "Invalid webhook signature"


class Conflict(BillingError):
    status_code = 409
    default_message = "Conflict"


class NotConfigured(BillingError):
    status_code = 501
    default_message = "Not configured"


class GatewayError(BillingError):
    """Payment processor call failed. The client only ever sees the generic message."""

    status_code = 500
    default_message = "Payment processor error"


class InternalError(BillingError):
    status_code = 500
