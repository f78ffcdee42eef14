"""Error taxonomy for entitlement operations.

Every error carries the HTTP status, a human-readable message and a stable
machine code. main.py renders them as ``{"error", "code", "details"}``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EntitlementError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        error: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(error)
        self.error = error
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class AuthenticationError(EntitlementError):
    status_code = 401
    code = "UNAUTHENTICATED"


class PermissionDeniedError(EntitlementError):
    status_code = 403
    code = "PERMISSION_DENIED"


class ValidationError(EntitlementError):
    status_code = 400
    code = "INVALID_ARGUMENT"


class NotFoundError(EntitlementError):
    status_code = 404
    code = "NOT_FOUND"


class ConfigurationError(EntitlementError):
    status_code = 500
    code = "SERVER_MISCONFIGURED"


class InternalError(EntitlementError):
    status_code = 500
    code = "INTERNAL_ERROR"


class TransientExternalError(EntitlementError):
    """Transport/auth/parse failure talking to Apple or Google.

    Raised inside validators only; ``validate()`` converts it to an invalid
    result before it reaches a caller.
    """

    status_code = 502
    code = "EXTERNAL_VALIDATION_FAILED"


class PropagationError(EntitlementError):
    """Claims mirror write failed after the durable write succeeded."""

    status_code = 500
    code = "CLAIMS_PROPAGATION_FAILED"
