from __future__ import annotations

"""
Error hierarchy for zkmeasure services.

Two families live here:

API errors
    ``ApiError`` and subclasses, raised at the HTTP boundary and serialized as
    RFC 7807 "problem+json" by ``zkmeasure.middleware.errors``. Each carries
    ``status_code``, a stable ``code``, a human ``message`` and optional
    ``details``.

Pipeline errors
    ``PipelineError`` and subclasses, raised inside a measurement's background
    run. They never reach a client: the orchestrator logs them with the full
    cause chain and moves the measurement to ``Failed``.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


DEFAULT_ERROR_DOCS_BASE = "about:blank"


@dataclass
class ApiError(Exception):
    message: str
    status_code: int = 400
    code: str = "bad_request"
    details: Optional[Mapping[str, Any]] = None
    type_uri_base: str = DEFAULT_ERROR_DOCS_BASE

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def type_uri(self) -> str:
        if self.type_uri_base == "about:blank":
            return self.type_uri_base
        return f"{self.type_uri_base}#{self.code}"

    def title(self) -> str:
        return {
            "bad_request": "Bad Request",
            "not_found": "Not Found",
            "payload_too_large": "Payload Too Large",
            "server_error": "Internal Server Error",
        }.get(self.code, self.message or "Error")

    def to_problem(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "type": self.type_uri(),
            "title": self.title(),
            "status": self.status_code,
            "code": self.code,
            "detail": self.message,
        }
        if self.details:
            body["details"] = dict(self.details)
        return body


class BadRequest(ApiError):
    """Malformed request; rejected before any measurement record exists."""

    def __init__(self, message: str = "Bad request", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message=message, status_code=400, code="bad_request", details=details)


class NotFound(ApiError):
    def __init__(self, what: str = "Resource", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message=f"{what} not found", status_code=404, code="not_found", details=details)


class PayloadTooLarge(ApiError):
    def __init__(self, limit: int):
        super().__init__(
            message=f"Payload exceeds {limit} bytes",
            status_code=413,
            code="payload_too_large",
            details={"limit": limit},
        )


class ServerError(ApiError):
    def __init__(self, message: str = "Internal server error", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="server_error", details=details)


# ------------------------------ Pipeline errors ------------------------------ #


class PipelineError(Exception):
    """Base class for failures inside a measurement's pipeline run."""

    stage = "pipeline"

    def __init__(self, message: str, *, measurement_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.measurement_id = measurement_id

    def describe(self) -> str:
        """One-line description including the underlying cause, for logs and the DB."""
        cause = self.__cause__
        if cause is None:
            return f"{self.stage}: {self.message}"
        return f"{self.stage}: {self.message} ({type(cause).__name__}: {cause})"


class StorageError(PipelineError):
    stage = "storage"


class WitnessError(PipelineError):
    """Inputs do not satisfy the circuit, or the compiled circuit is unusable."""

    stage = "witness"


class ProvingError(PipelineError):
    stage = "prove"


class AttestationError(PipelineError):
    """Session, submission, event-stream, timeout or inclusion-query failure."""

    stage = "attest"


__all__ = [
    "ApiError",
    "BadRequest",
    "NotFound",
    "PayloadTooLarge",
    "ServerError",
    "PipelineError",
    "StorageError",
    "WitnessError",
    "ProvingError",
    "AttestationError",
]
