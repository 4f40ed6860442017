from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from authkernel.api.error_handling import (
    INVALID_ACTION_MESSAGE,
    INVALID_REQUEST_MESSAGE,
    error_response,
    failure,
)
from authkernel.api.schemas import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
    RegisterRequest,
    RequestAction,
    ResetPasswordRequest,
    VerifyTokenRequest,
)
from authkernel.logging import get_correlation_id, get_logger, set_correlation_id
from authkernel.service.auth import Authenticator

logger = get_logger(__name__)

Handler = Callable[[Authenticator, Any, Optional[float]], Awaitable[AuthResponse]]


async def _login(auth: Authenticator, body: LoginRequest, timeout: Optional[float]) -> AuthResponse:
    token = await auth.login(body.email, body.password, timeout=timeout)
    return AuthResponse(success=True, message="Logged in successfully", token=token)


async def _logout(auth: Authenticator, body: LogoutRequest, timeout: Optional[float]) -> AuthResponse:
    await auth.logout(body.token, timeout=timeout)
    return AuthResponse(success=True, message="Logged out successfully")


async def _register(
    auth: Authenticator, body: RegisterRequest, timeout: Optional[float]
) -> AuthResponse:
    await auth.register(body.email, body.password, timeout=timeout)
    return AuthResponse(success=True, message="Registered successfully")


async def _refresh_token(
    auth: Authenticator, body: RefreshTokenRequest, timeout: Optional[float]
) -> AuthResponse:
    token = await auth.refresh_token(body.token, timeout=timeout)
    return AuthResponse(success=True, message="Token refreshed successfully", token=token)


async def _verify_token(
    auth: Authenticator, body: VerifyTokenRequest, timeout: Optional[float]
) -> AuthResponse:
    valid = await auth.verify_token(body.token, timeout=timeout)
    return AuthResponse(success=True, message="Token is valid" if valid else "Token is invalid")


async def _reset_password(
    auth: Authenticator, body: ResetPasswordRequest, timeout: Optional[float]
) -> AuthResponse:
    await auth.reset_password(body.email, body.new_password, timeout=timeout)
    return AuthResponse(success=True, message="Password reset successfully")


_HANDLERS: Dict[RequestAction, Tuple[Type[BaseModel], Handler]] = {
    RequestAction.LOGIN: (LoginRequest, _login),
    RequestAction.LOGOUT: (LogoutRequest, _logout),
    RequestAction.REGISTER: (RegisterRequest, _register),
    RequestAction.REFRESH_TOKEN: (RefreshTokenRequest, _refresh_token),
    RequestAction.VERIFY_TOKEN: (VerifyTokenRequest, _verify_token),
    RequestAction.RESET_PASSWORD: (ResetPasswordRequest, _reset_password),
}


async def handle_request(
    event: Any,
    authenticator: Authenticator,
    *,
    timeout: Optional[float] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Dispatch one action envelope and return the response envelope.

    Never raises: every failure becomes ``{"success": False, "message": ...}``
    with one of the fixed messages.
    """
    if correlation_id is not None or get_correlation_id() is None:
        set_correlation_id(correlation_id)

    if not isinstance(event, dict):
        logger.warning("request_rejected", reason="body_not_object", body_type=type(event).__name__)
        return failure(INVALID_REQUEST_MESSAGE).to_dict()

    action = RequestAction.from_str(event.get("action"))
    if action is None:
        raw = event.get("action")
        logger.info("unknown_action", action=raw if isinstance(raw, str) else None)
        return failure(INVALID_ACTION_MESSAGE).to_dict()

    request_model, handler = _HANDLERS[action]
    try:
        body = request_model.model_validate(event)
    except PydanticValidationError as exc:
        logger.warning(
            "request_rejected",
            action=action.value,
            reason="field_validation",
            fields=[".".join(str(p) for p in err["loc"]) for err in exc.errors()],
        )
        return failure(INVALID_REQUEST_MESSAGE).to_dict()

    try:
        response = await handler(authenticator, body, timeout)
    except Exception as exc:
        return error_response(action.value, exc).to_dict()
    logger.info("action_completed", action=action.value)
    return response.to_dict()
