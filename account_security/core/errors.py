from __future__ import annotations

from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException


class SecurityError(Exception):
    """Base class for errors the account-security core surfaces to callers."""

    code = "security_error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


# Validation errors: rejected before any state mutation or attempt counting.


class ValidationError(SecurityError):
    code = "validation_error"
    status_code = 422
    default_message = "Validation failed"


class TotpError(ValidationError):
    code = "totp_error"
    default_message = "TOTP operation failed"


class InvalidSecretFormat(TotpError):
    code = "invalid_secret_format"
    default_message = "Invalid TOTP secret format"


class InvalidCodeFormat(ValidationError):
    code = "invalid_code_format"
    default_message = "Invalid code format"


class InvalidBackupCodeFormat(ValidationError):
    code = "invalid_backup_code_format"
    default_message = "Invalid backup code format"


class InvalidSessionData(ValidationError):
    code = "invalid_session_data"
    default_message = "Invalid session data"


# Not-found errors.


class NotFoundError(SecurityError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class MfaNotFound(NotFoundError):
    code = "mfa_not_found"
    default_message = "MFA not found for user"


class SessionNotFound(NotFoundError):
    code = "session_not_found"
    default_message = "Session not found"


# State conflicts.


class StateConflictError(SecurityError):
    code = "conflict"
    status_code = 409
    default_message = "Conflict"


class MfaAlreadyExists(StateConflictError):
    code = "mfa_already_exists"
    default_message = "MFA already exists for this user"


class MfaNotEnabled(StateConflictError):
    code = "mfa_not_enabled"
    status_code = 403
    default_message = "MFA is not enabled"


class BackupCodeAlreadyUsed(StateConflictError):
    code = "backup_code_already_used"
    default_message = "Backup code already used"


class SessionAlreadyTerminated(StateConflictError):
    code = "session_terminated"
    default_message = "Session already terminated"


class SessionLimitExceeded(StateConflictError):
    code = "session_limit_exceeded"
    status_code = 403
    default_message = "Session limit exceeded"


def _default_code(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        422: "unprocessable_entity",
        429: "rate_limited",
    }
    return mapping.get(status_code, "http_error")


def _default_message(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _normalize_details(details: Any) -> dict:
    if details is None:
        return {}
    if isinstance(details, dict):
        return details
    if isinstance(details, list):
        return {"errors": details}
    return {"detail": str(details)}


def _build_response(
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    payload = {
        "code": code,
        "message": message,
        "data": None,
        "details": _normalize_details(details),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    return _build_response(exc.status_code, exc.code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        return _build_response(exc.status_code, _default_code(exc.status_code), detail, {"detail": detail})
    return _build_response(
        exc.status_code,
        _default_code(exc.status_code),
        _default_message(exc.status_code),
        detail,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        first = errors[0] or {}
        loc = first.get("loc") or []
        msg = first.get("msg") or "Validation failed"
        # Drop the request section (body/query/path/header) from the location
        loc_parts = [str(part) for part in loc if part not in {"body", "query", "path", "header"}]
        message = f"{'.'.join(loc_parts)}: {msg}" if loc_parts else str(msg)
    return _build_response(
        status_code=422,
        code="validation_error",
        message=message,
        details={"errors": errors},
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = _build_response(
        status_code=429,
        code="rate_limited",
        message=_default_message(429),
        details=getattr(exc, "detail", None),
    )
    headers = getattr(exc, "headers", None)
    if isinstance(headers, dict):
        response.headers.update(headers)
    return response


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return _build_response(
        status_code=500,
        code="internal_server_error",
        message="Internal server error",
        details={},
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(SecurityError, security_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
