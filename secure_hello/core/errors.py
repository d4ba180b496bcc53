"""Application-level exception types.

Every error carries the HTTP status it should surface as, so the global
error handler can render it without a lookup table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability."""

    hint: str
    path: str
    limit: int
    actual_value: int
    errno: int
    port: int


@dataclass
class AppError(Exception):
    """Base error for application failures.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status the error maps to.
        details: Optional structured details for logs.
    """

    message: str
    status_code: int = 500
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


@dataclass
class ValidationIssue:
    """A single failed validation rule."""

    field: str
    message: str
    value: Any = None

    def as_dict(self) -> dict[str, Any]:
        return {"field": self.field, "message": self.message, "value": self.value}


@dataclass
class ValidationAppError(AppError):
    """Raised when a request body cannot be parsed."""

    status_code: int = 400


@dataclass
class RequestValidationAppError(AppError):
    """Raised when request input fails one or more validation rules."""

    status_code: int = 400
    issues: list[ValidationIssue] = field(default_factory=list)


@dataclass
class PayloadTooLargeError(AppError):
    """Raised when a request body exceeds the parser limit."""

    status_code: int = 413


@dataclass
class CertificateError(AppError):
    """Raised when TLS key or certificate material cannot be used."""


@dataclass
class ListenerError(AppError):
    """Raised when a listener cannot bind its address."""
