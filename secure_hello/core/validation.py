"""Request input validation and sanitisation helpers.

Routes opt in through dependencies; nothing here runs for the built-in
routes. Validation is pydantic's, errors are collected per field and
rendered as::

    {"status": 400, "error": "Validation Error",
     "details": [{"field": ..., "message": ..., "value": ...}]}

Usage:
    @router.post("/contact")
    def contact(payload: EmailPayload = Depends(validate_body(EmailPayload))):
        ...
"""

from __future__ import annotations

import html
from typing import Annotated, Any, Callable, TypeVar

from fastapi import Path, Request
from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    EmailStr,
    ValidationError,
    create_model,
)

from secure_hello.core.errors import RequestValidationAppError, ValidationIssue

ModelT = TypeVar("ModelT", bound=BaseModel)


def sanitize_text(value: Any) -> Any:
    """Trim surrounding whitespace and HTML-escape a string value.

    Non-string values are returned unchanged.
    """

    if not isinstance(value, str):
        return value
    return html.escape(value.strip(), quote=True)


def _require_content(value: str) -> str:
    if not value:
        raise ValueError("value is required")
    return value


SanitizedStr = Annotated[str, BeforeValidator(sanitize_text)]
RequiredText = Annotated[str, BeforeValidator(sanitize_text), AfterValidator(_require_content)]
PositiveId = Annotated[int, Path(ge=1, description="ID must be a positive integer")]


def _lower(value: str) -> str:
    return value.lower()


class EmailPayload(BaseModel):
    """Body carrying a single e-mail address, normalised to lower case."""

    email: Annotated[EmailStr, AfterValidator(_lower)]


def required_text(field: str) -> type[BaseModel]:
    """Build a model requiring one non-empty, sanitised string field."""

    return create_model(f"Required_{field}", **{field: (RequiredText, ...)})


def issues_from_pydantic(error: ValidationError) -> list[ValidationIssue]:
    """Flatten a pydantic ValidationError into field-level issues."""

    issues = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "body"
        issues.append(
            ValidationIssue(
                field=location,
                message=item.get("msg", "Invalid value"),
                value=item.get("input"),
            )
        )
    return issues


def validate_payload(model: type[ModelT], payload: Any) -> ModelT:
    """Validate ``payload`` against ``model``.

    Raises:
        RequestValidationAppError: With one issue per failed rule.
    """

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationAppError(
            message="Request validation failed",
            issues=issues_from_pydantic(exc),
        ) from exc


def validate_body(model: type[ModelT]) -> Callable[[Request], ModelT]:
    """FastAPI dependency validating the parsed request body.

    Relies on the body-parsing stage having stored ``request.state.parsed_body``;
    a request without a JSON or form body validates as an empty object.
    """

    def dependency(request: Request) -> ModelT:
        payload = getattr(request.state, "parsed_body", None)
        return validate_payload(model, payload if payload is not None else {})

    return dependency


def validate_query(model: type[ModelT]) -> Callable[[Request], ModelT]:
    """FastAPI dependency validating query parameters.

    Repeated parameters keep their last value; declare fields as
    SanitizedStr to have them trimmed and escaped.
    """

    def dependency(request: Request) -> ModelT:
        return validate_payload(model, dict(request.query_params))

    return dependency
