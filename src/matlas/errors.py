"""Error taxonomy shared by every component.

Errors carry a ``kind`` so the reporter and CLI can render a uniform,
actionable message regardless of which layer raised them. Remote admin
API failures are classified once, in :func:`classify_api_error`, and
then propagate unchanged (services only add context).
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Internal error kinds surfaced to users."""

    VALIDATION = "ValidationError"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    UNAUTHORIZED = "Unauthorized"
    TRANSIENT = "Transient"
    UNAVAILABLE = "Unavailable"
    CONSISTENCY = "ConsistencyError"
    EXECUTION = "ExecutionError"
    CANCELLED = "Cancelled"
    UNSUPPORTED = "Unsupported"
    API = "AtlasAPIError"


# User-facing hints keyed by kind
ERROR_HINTS: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "fix the manifest and re-run 'matlas infra validate'",
    ErrorKind.NOT_FOUND: "check the project id and resource names",
    ErrorKind.CONFLICT: "the resource already exists; re-run plan to refresh live state",
    ErrorKind.UNAUTHORIZED: "check credentials (API_PUB_KEY / API_PRIV_KEY) and API key roles",
    ErrorKind.TRANSIENT: "the admin API is busy; retry later",
    ErrorKind.UNAVAILABLE: "declare the referenced resource or create it first",
    ErrorKind.CONSISTENCY: "live state violates an invariant; inspect it with 'matlas infra show'",
    ErrorKind.EXECUTION: "inspect the failed operation and re-run apply",
    ErrorKind.CANCELLED: "check connectivity or raise --timeout",
    ErrorKind.UNSUPPORTED: "this resource kind is plan-only",
}


class MatlasError(Exception):
    """Base class for all matlas errors."""

    kind: ErrorKind = ErrorKind.EXECUTION

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def hint(self) -> str:
        return ERROR_HINTS.get(self.kind, "")

    def to_dict(self) -> dict[str, Any]:
        """Render the error for machine-readable reports."""
        data: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data


class ValidationError(MatlasError):
    """User input rejected before any network call."""

    kind = ErrorKind.VALIDATION


class NotFoundError(MatlasError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(MatlasError):
    kind = ErrorKind.CONFLICT


class UnauthorizedError(MatlasError):
    kind = ErrorKind.UNAUTHORIZED


class TransientError(MatlasError):
    """Rate limit or server-side hiccup; retried by the client."""

    kind = ErrorKind.TRANSIENT


class UnavailableError(MatlasError):
    """A dependency is missing at plan time."""

    kind = ErrorKind.UNAVAILABLE


class ConsistencyError(MatlasError):
    """Remote or desired state violates an invariant."""

    kind = ErrorKind.CONSISTENCY


class ExecutionError(MatlasError):
    """An operation failed after all retries."""

    kind = ErrorKind.EXECUTION


class CancelledError(MatlasError):
    """The surrounding context was cancelled or timed out."""

    kind = ErrorKind.CANCELLED


class UnsupportedError(MatlasError):
    kind = ErrorKind.UNSUPPORTED


class AtlasAPIError(MatlasError):
    """Untyped admin API failure.

    Raised for responses whose error code does not map onto one of the
    typed kinds. The typed subclasses below keep the HTTP details too.
    """

    kind = ErrorKind.API

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        error_code: str = "",
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status = status
        self.error_code = error_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        if self.error_code:
            data["errorCode"] = self.error_code
        return data


class AggregateError(MatlasError):
    """Collects several errors raised by independent parts of one task."""

    def __init__(self, message: str, errors: dict[str, BaseException]) -> None:
        details = "; ".join(f"{key}: {err}" for key, err in sorted(errors.items()))
        super().__init__(f"{message}: {details}" if details else message)
        self.errors = errors

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = {key: str(err) for key, err in sorted(self.errors.items())}
        return data


class DiscoveryError(AggregateError):
    """Some discovery parts failed; the others still produced results."""


class DatabaseEnumerationError(AggregateError):
    """Some clusters could not be enumerated; keyed by cluster name."""


class PlanError(MatlasError):
    """Raised when the planner finds problems and refuses to emit a plan."""

    def __init__(self, errors: list[MatlasError]) -> None:
        lines = "\n  - ".join(str(e) for e in errors)
        super().__init__(f"Plan rejected with {len(errors)} error(s):\n  - {lines}")
        self.errors = errors
        # Surface the first error's kind so hints stay meaningful
        if errors:
            self.kind = errors[0].kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": f"plan rejected with {len(self.errors)} error(s)",
            "errors": [e.to_dict() for e in self.errors],
        }


NOT_FOUND_CODES = frozenset(
    {
        "NOT_FOUND",
        "RESOURCE_NOT_FOUND",
        "CLUSTER_NOT_FOUND",
        "DATABASE_USER_NOT_FOUND",
        "NETWORK_ACCESS_NOT_FOUND",
        "PROJECT_NOT_FOUND",
        "GROUP_NOT_FOUND",
        "USER_NOT_FOUND",
        "ALERT_CONFIG_NOT_FOUND",
        "CLOUD_PROVIDER_CONTAINER_NOT_FOUND",
        "PEER_NOT_FOUND",
        "INDEX_NOT_FOUND",
        "PRIVATE_ENDPOINT_SERVICE_NOT_FOUND",
    }
)
CONFLICT_CODES = frozenset({"CONFLICT", "DUPLICATE_CLUSTER_NAME", "USER_ALREADY_EXISTS"})
UNAUTHORIZED_CODES = frozenset({"UNAUTHORIZED", "FORBIDDEN", "USER_UNAUTHORIZED"})
TRANSIENT_CODES = frozenset({"TOO_MANY_REQUESTS", "INTERNAL", "UNEXPECTED_ERROR", "RATE_LIMITED"})


def classify_api_error(
    status: int,
    error_code: str | None,
    detail: str,
    cause: BaseException | None = None,
) -> MatlasError:
    """Map an admin API failure onto the error taxonomy.

    Error codes win over HTTP status; the status is only consulted when the
    response carried no recognised code.

    Args:
        status: HTTP status code (0 when no response was received).
        error_code: The ``errorCode`` field of the error body, if any.
        detail: Human-readable detail from the body.
        cause: Underlying exception, preserved for diagnostics.

    Returns:
        A typed error instance (never raised here).
    """
    code = (error_code or "").upper()
    message = f"{code or status}: {detail}" if detail else (code or f"HTTP {status}")

    if code in NOT_FOUND_CODES or code.endswith("_NOT_FOUND"):
        return NotFoundError(message, cause=cause)
    if code in CONFLICT_CODES or code.startswith("DUPLICATE_") or code.endswith("_ALREADY_EXISTS"):
        return ConflictError(message, cause=cause)
    if code in UNAUTHORIZED_CODES:
        return UnauthorizedError(message, cause=cause)
    if code in TRANSIENT_CODES:
        return TransientError(message, cause=cause)

    if not code:
        if status == 404:
            return NotFoundError(message, cause=cause)
        if status == 409:
            return ConflictError(message, cause=cause)
        if status in (401, 403):
            return UnauthorizedError(message, cause=cause)
        if status == 429 or status >= 500:
            return TransientError(message, cause=cause)

    return AtlasAPIError(message, status=status, error_code=code, cause=cause)


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, NotFoundError)
