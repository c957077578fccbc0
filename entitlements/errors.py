"""
Entitlement error hierarchy and HTTP error envelopes.

Denials (limit reached, insufficient tokens, offline consume) are ordinary
results and never raised. The exceptions here cover:
- programmer errors: UnknownFeatureError
- missing authentication context: UnauthenticatedError
- a consume that lost every conditional-update race: ConsumeConflictError
- transport failures seen by the client: RequestTimeoutError, NetworkError
- non-2xx answers seen by the client: ApiError

Every non-2xx response produced by the API carries at least ``{"message": ...}``.
"""

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from entitlements.models.snapshot import Feature

logger = structlog.get_logger(__name__)


class EntitlementError(Exception):
    """Base exception for entitlement failures."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class UnknownFeatureError(EntitlementError):
    """Raised for a feature key outside the Feature enum."""

    code = "unknown_feature"
    status_code = 400

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(
            f"Unknown feature '{feature}'",
            details={"validFeatures": [f.value for f in Feature]},
        )


class UnauthenticatedError(EntitlementError):
    """Raised when an operation needs a signed-in user and there is none."""

    code = "unauthenticated"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ConsumeConflictError(EntitlementError):
    """Raised when a counter or balance kept changing under a consume."""

    code = "consume_conflict"
    status_code = 409

    def __init__(self, user_id: str, key: str):
        self.user_id = user_id
        self.key = key
        super().__init__(f"Concurrent updates to '{key}', try again")


class ClientRequestError(EntitlementError):
    """Base for failures of a client-side HTTP call."""

    code = "request_failed"
    retryable = False


class RequestTimeoutError(ClientRequestError):
    """The call exceeded its timeout; the server may or may not have acted."""

    code = "timeout"
    retryable = True

    def __init__(self, path: str, timeout_seconds: float):
        self.path = path
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Request to {path} timed out after {timeout_seconds:g}s")


class NetworkError(ClientRequestError):
    """The call never reached the server (DNS, refused connection, reset)."""

    code = "network_error"
    retryable = True

    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Request to {path} failed: {cause}")


class ApiError(ClientRequestError):
    """The server answered with a non-2xx status."""

    code = "api_error"

    def __init__(self, status_code: int, message: str, body: dict[str, Any] | None = None):
        self.status_code = status_code
        self.body = body or {}
        self.retryable = status_code >= 500
        super().__init__(message)


def _http_exception_body(exc: HTTPException) -> dict[str, Any]:
    if isinstance(exc.detail, dict):
        body = dict(exc.detail)
        body.setdefault("message", "Request failed")
        return body
    return {"message": str(exc.detail), "code": f"http_{exc.status_code}"}


async def _handle_http_exception(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_http_exception_body(exc),
        headers=getattr(exc, "headers", None),
    )


async def _handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "message": "Invalid request",
            "code": "validation_error",
            "details": {"errors": exc.errors()},
        },
    )


async def _handle_entitlement_error(request: Request, exc: EntitlementError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("entitlement_error", code=exc.code, error=exc.message, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that render every error as ``{message, code, ...}``."""
    app.add_exception_handler(HTTPException, _handle_http_exception)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(EntitlementError, _handle_entitlement_error)
