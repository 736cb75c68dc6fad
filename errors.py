"""
Error types and the JSON error envelope.

Every failure leaves the API as

    {"success": false, "message": ..., "error": {"code": ..., "message": ...},
     "timestamp": ..., "path": ..., "method": ...}
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from bson.errors import InvalidId
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import settings

logger = structlog.get_logger(__name__)


class AppError(HTTPException):
    status = 500
    default_code = "INTERNAL_SERVER_ERROR"
    default_message = "Internal Server Error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        field: Optional[str] = None,
        fields: Optional[List[str]] = None,
        details: Optional[List[Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.field = field
        self.fields = fields
        self.details = details
        super().__init__(status_code=self.status, detail=self.message, headers=headers)


class BadRequest(AppError):
    status = 400
    default_code = "BAD_REQUEST"
    default_message = "Bad Request"


class Unauthorized(AppError):
    status = 401
    default_code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class Forbidden(AppError):
    status = 403
    default_code = "FORBIDDEN"
    default_message = "Forbidden"


class NotFound(AppError):
    status = 404
    default_code = "NOT_FOUND"
    default_message = "Not Found"


class Conflict(AppError):
    status = 409
    default_code = "CONFLICT"
    default_message = "Conflict"


class TooManyRequests(AppError):
    status = 429
    default_code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests, please try again later"


DUPLICATE_MESSAGES = {
    "email": "An account with this email already exists",
    "sku": "A product with this SKU already exists",
    "order_number": "Order number already exists",
    "user_id": "A cart already exists for this user",
    "product_id": "You have already reviewed this product",
}

HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
}


def error_response(
    request: Request,
    status_code: int,
    message: str,
    code: str,
    exc: Optional[Exception] = None,
    headers: Optional[Dict[str, str]] = None,
    **extra: Any,
) -> JSONResponse:
    error: Dict[str, Any] = {"message": message, "code": code}
    error.update({k: v for k, v in extra.items() if v is not None})
    if exc is not None and not settings.IS_PRODUCTION:
        error["original_error"] = {"name": type(exc).__name__, "message": str(exc)}

    headers = dict(headers or {})
    if status_code == 401:
        headers.setdefault("WWW-Authenticate", 'Bearer realm="API"')

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": request.url.path,
            "method": request.method,
        },
        headers=headers or None,
    )


def _duplicate_field(exc: DuplicateKeyError) -> str:
    details = exc.details or {}
    key_value = details.get("keyValue") or {}
    if key_value:
        return next(iter(key_value))
    key_pattern = details.get("keyPattern") or {}
    if key_pattern:
        return next(iter(key_pattern))
    message = str(exc)
    for field in DUPLICATE_MESSAGES:
        if field in message:
            return field
    return "unknown"


async def app_error_handler(request: Request, exc: AppError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log("app_error", code=exc.code, status=exc.status_code, path=request.url.path, message=exc.message)
    return error_response(
        request,
        exc.status_code,
        exc.message,
        exc.code,
        headers=exc.headers,
        field=exc.field,
        fields=exc.fields,
        details=exc.details,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = f"Route {request.url.path} not found"
    else:
        message = str(exc.detail)
    code = HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
    return error_response(request, exc.status_code, message, code, headers=getattr(exc, "headers", None))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(loc) or "body", "message": err.get("msg", "Invalid value")})
    message = ", ".join(f"{d['field']}: {d['message']}" for d in details) or "Validation failed"
    logger.info("validation_error", path=request.url.path, fields=[d["field"] for d in details])
    return error_response(
        request,
        400,
        message,
        "VALIDATION_ERROR",
        fields=[d["field"] for d in details],
        details=details,
    )


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    field = _duplicate_field(exc)
    message = DUPLICATE_MESSAGES.get(field, f"{field} already exists")
    logger.info("duplicate_key", field=field, path=request.url.path)
    return error_response(request, 409, message, "DUPLICATE_FIELD", field=field)


async def invalid_id_handler(request: Request, exc: InvalidId):
    return error_response(request, 404, "Resource not found", "RESOURCE_NOT_FOUND", exc=exc)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    return error_response(request, 500, "Server Error", "INTERNAL_SERVER_ERROR", exc=exc)


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(InvalidId, invalid_id_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
