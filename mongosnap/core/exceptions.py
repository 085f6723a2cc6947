"""
Exception types and the global handlers that render them as ``{"message": ...}``.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


class UsageLimitExceeded(HTTPException):
    """429 raised when a daily or monthly usage window is exhausted."""

    def __init__(self, message: str, limit_type: str, usage: Dict[str, Any]):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"message": message, "limitType": limit_type, "usage": usage},
        )
        self.limit_type = limit_type
        self.usage = usage


class ConnectionTestError(Exception):
    """A MongoDB URI could not be reached; ``details`` holds a user facing hint."""

    def __init__(self, message: str = "Failed to connect to MongoDB", details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class TokenRotationError(Exception):
    """Refresh token rotation refused. ``reason`` is one of not_found, expired, reuse, revoked, invalid."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class QueryExecutionError(Exception):
    """A shell-style query could not be parsed or was rejected before execution."""


class ForbiddenOperationError(QueryExecutionError):
    """The query uses an operation that is never allowed against user databases."""


def _body_from_detail(detail: Any) -> Dict[str, Any]:
    if isinstance(detail, dict):
        body = dict(detail)
        body.setdefault("message", "HTTP error")
        return body
    return {"message": detail or "HTTP error"}


def register_exception_handlers(app: FastAPI) -> None:
    log = logging.getLogger("mongosnap.errors")

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_body_from_detail(exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=422, content={"message": "Validation error", "errors": errors})

    @app.exception_handler(Exception)
    async def _generic_handler(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})
