from typing import Any, Dict

from pydantic import ValidationError as PydanticValidationError


class MarketplaceError(Exception):
    """Base error with a stable code and the HTTP status it maps to."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.code.replace("_", " ").lower()

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class Unauthenticated(MarketplaceError):
    code = "UNAUTHENTICATED"
    status_code = 401


class Unauthorized(MarketplaceError):
    """Identity resolved but lacks the required role."""

    code = "UNAUTHORIZED"
    status_code = 403


class Forbidden(MarketplaceError):
    """Identity resolved but does not own / participate in the target."""

    code = "FORBIDDEN"
    status_code = 403


class ValidationError(MarketplaceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class GeoFormatError(ValidationError):
    code = "GEO_FORMAT_ERROR"


class InvalidAction(MarketplaceError):
    code = "INVALID_ACTION"
    status_code = 400


class NotFound(MarketplaceError):
    code = "NOT_FOUND"
    status_code = 404


class Conflict(MarketplaceError):
    code = "CONFLICT"
    status_code = 409


class UpstreamCollaboratorFailure(MarketplaceError):
    code = "UPSTREAM_FAILURE"
    status_code = 503


def from_pydantic(exc) -> ValidationError:
    """Collapse a pydantic (or FastAPI request) validation error into ours, keeping the first readable reason."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if not errors:
        return ValidationError(str(exc))
    first = errors[0]
    ctx = first.get("ctx") or {}
    reason = ctx.get("error")
    if reason is not None:
        return ValidationError(str(reason))
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg") or "invalid value"
    return ValidationError(f"{loc}: {msg}" if loc else msg)


def validate_model(model, data: Any):
    """`model.model_validate(data)`, reporting failures as our ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise from_pydantic(e)
