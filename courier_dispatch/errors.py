"""
Order lifecycle error taxonomy. Each error carries the HTTP status the API renders it with.
"""
from typing import Any

from fastapi import status


class OrderError(Exception):
    """Base class for every outcome the engine reports to its caller."""

    code = "order_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class InvalidTransition(OrderError):
    """Requested state is not reachable from the current one. Caller must re-fetch."""

    code = "invalid_transition"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, current: str, requested: str, allowed: list[str]):
        self.current = current
        self.requested = requested
        self.allowed = allowed
        super().__init__(
            f"Cannot move order from '{current}' to '{requested}'",
            {"current_status": current, "requested_status": requested, "allowed_transitions": allowed},
        )


class Conflict(OrderError):
    """Lost a race on a conditional update (or the order is already claimed/paid)."""

    code = "conflict"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, current: str | None = None, allowed: list[str] | None = None):
        details: dict[str, Any] = {}
        if current is not None:
            details["current_status"] = current
            details["allowed_transitions"] = allowed or []
        super().__init__(message, details)


class NotFound(OrderError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} '{identifier}' not found")


class Forbidden(OrderError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class NotVerified(OrderError):
    code = "not_verified"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, driver_id: str):
        super().__init__(f"Driver '{driver_id}' has not completed identity verification")


class ProofRequired(OrderError):
    code = "proof_required"
    status_code = status.HTTP_412_PRECONDITION_FAILED

    def __init__(self, kind: str, current: str):
        super().__init__(
            f"A {kind} proof must be recorded before this transition",
            {"proof": kind, "current_status": current},
        )


class ProofOutOfOrder(OrderError):
    """Proof offered while the order is not at the step it documents."""

    code = "proof_out_of_order"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, kind: str, current: str, required: str, allowed: list[str]):
        super().__init__(
            f"A {kind} proof can only be recorded while the order is '{required}'",
            {"proof": kind, "current_status": current, "required_status": required, "allowed_transitions": allowed},
        )


class AuthenticationFailed(OrderError):
    code = "authentication_failed"
    status_code = status.HTTP_401_UNAUTHORIZED


class PermanentEventError(OrderError):
    """Malformed provider event. Acknowledged to stop retries, logged for manual remediation."""

    code = "permanent_event_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class UpstreamUnavailable(OrderError):
    """External payment or lookup call failed; order state was left untouched."""

    code = "upstream_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class NoDriverAvailable(OrderError):
    code = "no_driver_available"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self):
        super().__init__("No active, verified driver is available")
