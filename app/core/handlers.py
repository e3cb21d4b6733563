"""Response envelope, request middleware and exception handlers.

Every response body has the shape::

    {"success", "statusCode", "message", "data", "timestamp", "metadata": {"requestId", ...}}
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from ..config import get_settings
from ..crud import CRUDError
from ..exceptions import ConsultCoreError
from .logging import bind_request_context, clear_request_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def envelope(
    request: Request,
    data: Any = None,
    message: str = "OK",
    status_code: int = status.HTTP_200_OK,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    meta = {"requestId": _request_id(request)}
    meta.update(metadata or {})
    return {
        "success": status_code < 400,
        "statusCode": status_code,
        "message": message,
        "data": jsonable_encoder(data),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "metadata": meta,
    }


def respond(
    request: Request,
    data: Any = None,
    message: str = "OK",
    status_code: int = status.HTTP_200_OK,
    metadata: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(request, data, message, status_code, metadata))


def error_response(request: Request, status_code: int, message: str, code: str, details: Any = None) -> JSONResponse:
    return respond(request, data=None, message=message, status_code=status_code,
                   metadata={"error": {"code": code, "details": jsonable_encoder(details or {})}})


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, binds it to the log context and echoes it back."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        clear_request_context()
        bind_request_context(request_id=request_id, path=request.url.path, method=request.method)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Rejects requests whose declared body exceeds ``MAX_REQUEST_BYTES``."""

    async def dispatch(self, request: Request, call_next):
        limit = get_settings().max_request_bytes
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            logger.warning(f"Rejected {request.method} {request.url.path}: body of {declared} bytes exceeds {limit}")
            return error_response(request, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                                  "Request body too large", "PAYLOAD_TOO_LARGE", {"limit": limit})
        return await call_next(request)


async def consult_core_error_handler(request: Request, exc: ConsultCoreError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return error_response(request, exc.status_code, exc.message, exc.code, exc.details)


async def crud_error_handler(request: Request, exc: CRUDError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error", "DATABASE_ERROR")


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(request, exc.status_code, str(exc.detail), "HTTP_ERROR")


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return error_response(request, status.HTTP_400_BAD_REQUEST, "Validation failed", "VALIDATION_ERROR",
                          {"errors": errors})


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return error_response(request, status.HTTP_429_TOO_MANY_REQUESTS, "Too many requests", "RATE_LIMITED",
                          {"limit": str(exc.detail)})


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", "INTERNAL_ERROR")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ConsultCoreError, consult_core_error_handler)
    app.add_exception_handler(CRUDError, crud_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
