"""
Error taxonomy and the single HTTP error boundary.

Repositories raise ValidationError / DuplicateError / CastError, services add
the business-level kinds, and ``error_response`` turns anything that escapes a
route into the ``{success: false, error: {...}}`` envelope.
"""
import logging
import re
import traceback
from typing import Any, Dict, List, Optional

import jwt
from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from logger import get_logger, log_event, redact

log = get_logger("errors")


class AppError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        errors: Optional[List[Dict[str, Any]]] = None,
        field: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.default_message
        self.errors = errors
        self.field = field
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class CastError(AppError):
    status_code = 400
    default_message = "Invalid identifier"


class DuplicateError(AppError):
    status_code = 409
    default_message = "Duplicate value"

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"{field[:1].upper()}{field[1:]} already exists", field=field)


class ConflictError(AppError):
    status_code = 409
    default_message = "Resource already exists"


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Authentication failed"


class PermissionDeniedError(AppError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


UPLOAD_MESSAGES = {
    "LIMIT_FILE_SIZE": "File too large",
    "LIMIT_FILE_COUNT": "Too many files uploaded",
    "LIMIT_UNEXPECTED_FILE": "Unexpected file field",
}


class UploadError(AppError):
    status_code = 400
    default_message = "Upload rejected"

    def __init__(self, code: str):
        self.code = code
        super().__init__(UPLOAD_MESSAGES.get(code, self.default_message))


STORE_ERRORS = (ValidationError, DuplicateError, CastError)

_INDEX_NAME = re.compile(r"index: (?:[\w.$]+\.)?(\w+?)_-?1")


def duplicate_key_field(error: DuplicateKeyError) -> Optional[str]:
    """Best effort extraction of the offending field from a driver error."""
    details = error.details or {}
    for key in ("keyPattern", "keyValue"):
        if details.get(key):
            return next(iter(details[key]))
    match = _INDEX_NAME.search(str(error))
    if match:
        return match.group(1)
    return None


def field_errors(error: PydanticValidationError) -> List[Dict[str, Any]]:
    result = []
    for item in error.errors():
        loc = [str(p) for p in item.get("loc", ()) if p != "body"]
        result.append(
            {
                "field": ".".join(loc) or None,
                "message": item.get("msg"),
                "value": _safe_value(item.get("input")),
            }
        )
    return result


def _safe_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _token_reason(error: jwt.PyJWTError) -> str:
    if isinstance(error, jwt.ExpiredSignatureError):
        return "Token has expired"
    if isinstance(error, jwt.ImmatureSignatureError):
        return "Token not active yet"
    return "Invalid token"


def classify(exc: Exception) -> Dict[str, Any]:
    """Map an exception to ``{statusCode, message, errors?, field?}``.

    Branches are evaluated in a fixed order: document store errors, token
    errors, request validation, uploads, malformed bodies, rate limiting and
    finally whatever status the exception already carries.
    """
    if isinstance(exc, STORE_ERRORS):
        return {"statusCode": exc.status_code, "message": exc.message, "errors": exc.errors, "field": exc.field}
    if isinstance(exc, DuplicateKeyError):
        field = duplicate_key_field(exc) or "value"
        dup = DuplicateError(field)
        return {"statusCode": dup.status_code, "message": dup.message, "field": field}
    if isinstance(exc, PydanticValidationError):
        return {"statusCode": 400, "message": "Validation failed", "errors": field_errors(exc)}
    if isinstance(exc, InvalidId):
        return {"statusCode": 400, "message": f"Invalid id: {exc}"}

    if isinstance(exc, jwt.PyJWTError):
        return {"statusCode": 401, "message": f"Authentication failed: {_token_reason(exc)}"}

    if isinstance(exc, RequestValidationError):
        raw = exc.errors()
        if any(e.get("type") == "json_invalid" for e in raw):
            return {"statusCode": 400, "message": "Invalid JSON in request body"}
        errors = []
        for item in raw:
            loc = [str(p) for p in item.get("loc", ())]
            errors.append(
                {
                    "field": ".".join(loc[1:]) or None,
                    "message": item.get("msg"),
                    "value": _safe_value(item.get("input")),
                    "location": loc[0] if loc else None,
                }
            )
        return {"statusCode": 400, "message": "Validation failed", "errors": errors}

    if isinstance(exc, UploadError):
        return {"statusCode": 400, "message": exc.message}

    if isinstance(exc, RateLimitExceeded) or getattr(exc, "status_code", None) == 429:
        return {"statusCode": 429, "message": "Too many requests, please try again later"}

    if isinstance(exc, AppError):
        return {"statusCode": exc.status_code, "message": exc.message, "errors": exc.errors, "field": exc.field}
    if isinstance(exc, StarletteHTTPException):
        return {"statusCode": exc.status_code, "message": str(exc.detail)}
    return {"statusCode": 500, "message": str(exc) or "Internal Server Error"}


def _request_body(exc: Exception) -> Any:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        return redact(body)
    return None


def error_response(request: Request, exc: Exception) -> JSONResponse:
    error = classify(exc)
    status = error["statusCode"]
    user = getattr(request.state, "user", None)
    context = {
        "method": request.method,
        "path": request.url.path,
        "user_id": user.get("id") if user else "anonymous",
        "ip": request.client.host if request.client else None,
        "status": status,
        "error": str(exc),
        "request_body": _request_body(exc),
    }
    if status >= 500:
        log_event(log, logging.ERROR, "Server Error", stack="".join(traceback.format_exception(exc)), **context)
    else:
        log_event(log, logging.WARNING, "Client Error", **context)

    body: Dict[str, Any] = {"message": error["message"], "statusCode": status}
    if error.get("errors"):
        body["errors"] = error["errors"]
    if error.get("field"):
        body["field"] = error["field"]

    if config.is_production():
        if status >= 500:
            body["message"] = "Internal Server Error"
    elif exc.__traceback__ is not None:
        body["stack"] = "".join(traceback.format_exception(exc))

    headers = getattr(exc, "headers", None) if isinstance(exc, StarletteHTTPException) else None
    return JSONResponse(status_code=status, content={"success": False, "error": body}, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    # Handlers keyed on Exception run outside the routing layer, so the
    # expected kinds are registered individually.
    handled = (AppError, DuplicateKeyError, PydanticValidationError, InvalidId, jwt.PyJWTError)
    for exc_class in handled + (StarletteHTTPException, RequestValidationError, RateLimitExceeded, Exception):
        app.add_exception_handler(exc_class, error_response)
