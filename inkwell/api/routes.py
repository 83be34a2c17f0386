from __future__ import annotations

from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Path

from inkwell.api.schemas import (
    AccountResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MessageResponse,
    PasswordResetConfirm,
    RegisterRequest,
    ResetTokenResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    VerifyOtpRequest,
)
from inkwell.logging import get_logger
from inkwell.service.auth import AuthContext
from inkwell.service.calls import run_with_deadline
from inkwell.service.registration import RegistrationRequest
from inkwell.service.runtime import get_runtime
from inkwell.storage.models import ROLE_ADMIN

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _bounded(coro: Awaitable[T], operation: str) -> T:
    runtime = get_runtime()
    return await run_with_deadline(
        coro, runtime.settings.request_timeout_seconds, operation=operation
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired access token", status_code=401)
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    runtime = get_runtime()
    if not runtime.auth.role_allows(principal.role, ROLE_ADMIN):
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account. The first account ever registered becomes admin.

    Raises:
        400: Missing fields, bad email, unreachable email, or weak password
        403: If self-service signup is disabled
        409: If the username or email is taken
        503/504: If the email verifier or store is unavailable
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup is disabled", status_code=403)
    account = await _bounded(
        runtime.registration.register(
            RegistrationRequest(
                username=body.username,
                email=body.email,
                password=body.password,
                display_name=body.display_name,
            )
        ),
        "register",
    )
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with a username or email and a password.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    result = await _bounded(runtime.auth.login(body.login, body.password), "login")
    return Envelope(status="ok", data=LoginResponse.from_result(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await _bounded(runtime.auth.refresh(body.refresh_token), "refresh")
    return Envelope(status="ok", data=TokenPairResponse.from_tokens(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    """Revoke every session of the authenticated account."""
    runtime = get_runtime()
    removed = await _bounded(runtime.auth.logout(principal.user_id), "logout")
    return Envelope(status="ok", data=LogoutResponse(sessions_revoked=removed))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await _bounded(runtime.password_reset.send_reset_otp(body.email), "send_reset_otp")
    return Envelope(status="ok", data=MessageResponse(message="OTP sent"))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest):
    runtime = get_runtime()
    authorization = await _bounded(
        runtime.password_reset.verify_otp(body.email, body.otp), "verify_otp"
    )
    return Envelope(
        status="ok",
        data=ResetTokenResponse(
            reset_token=authorization.reset_token,
            expires_at=authorization.expires_at,
        ),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await _bounded(
        runtime.password_reset.reset_password(
            body.email, body.reset_token, body.new_password
        ),
        "reset_password",
    )
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = await _bounded(runtime.auth.get_account(principal.user_id), "get_account")
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/admin/users/{user_id}/promote", response_model=Envelope, tags=["admin"])
async def promote_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await _bounded(runtime.auth.promote_user(user_id), "promote_user")
    logger.info("admin_promoted_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/admin/users/{user_id}/demote", response_model=Envelope, tags=["admin"])
async def demote_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await _bounded(runtime.auth.demote_user(user_id), "demote_user")
    logger.info("admin_demoted_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=AccountResponse.from_account(account))
