from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from authkernel.api.schemas import AuthResponse
from authkernel.logging import get_logger
from authkernel.service.errors import ServiceError
from authkernel.storage.errors import StorageError

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal error"
INVALID_REQUEST_MESSAGE = "Invalid request"
INVALID_ACTION_MESSAGE = "Invalid action"

# Stable error codes mapped to the fixed messages callers see. Raw error
# text never leaves the process; it is logged instead.
_CODE_TO_MESSAGE = {
    "invalid_credentials": "Invalid credentials",
    "user_not_found": "User not found",
    "duplicate_email": "Email already registered",
    "token_expired": "Token expired",
    "token_invalid": "Token invalid",
    "validation_error": INVALID_REQUEST_MESSAGE,
    "store_unavailable": "Service temporarily unavailable",
    "signing_unavailable": "Service temporarily unavailable",
}


def message_for_code(error_code: Optional[str]) -> str:
    return _CODE_TO_MESSAGE.get(error_code or "", INTERNAL_ERROR_MESSAGE)


def failure(message: str) -> AuthResponse:
    return AuthResponse(success=False, message=message)


def error_response(action: Optional[str], exc: BaseException) -> AuthResponse:
    """Log ``exc`` and translate it to a failure envelope.

    Client mistakes log at warning, retryable outages at error, and
    anything unrecognised with its traceback.
    """
    if isinstance(exc, (ServiceError, StorageError)):
        error_code = exc.error_code
        message = message_for_code(error_code)
        if exc.retryable:
            log_fn = logger.error
        elif message == INTERNAL_ERROR_MESSAGE:
            log_fn = logger.exception
        else:
            log_fn = logger.warning
        log_fn(
            "action_failed",
            action=action,
            error_code=error_code,
            retryable=exc.retryable,
            error=exc.message,
            detail=exc.detail,
        )
        return failure(message)

    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        action=action,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return failure(INTERNAL_ERROR_MESSAGE)


def register_exception_handlers(app: FastAPI) -> None:
    """Answer anything escaping a route with the failure envelope."""

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500, content=failure(INTERNAL_ERROR_MESSAGE).to_dict()
        )
