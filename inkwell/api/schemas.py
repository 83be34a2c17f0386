from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from inkwell.service.auth import LoginResult
from inkwell.service.tokens import IssuedTokens
from inkwell.storage.models import Account

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "dependency_error",
    "timeout",
})

# Request bodies only bound lengths; content rules live in the services so
# that the error messages stay the same for library and HTTP callers.
_MAX_FIELD = 254
_MAX_PASSWORD = 1024
_MAX_TOKEN = 4096


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response wrapper for every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    username: str = Field(default="", max_length=_MAX_FIELD)
    email: str = Field(default="", max_length=_MAX_FIELD)
    password: str = Field(default="", max_length=_MAX_PASSWORD)
    display_name: str = Field(
        default="",
        max_length=_MAX_FIELD,
        validation_alias=AliasChoices("display_name", "name"),
    )


class LoginRequest(BaseModel):
    login: str = Field(
        default="",
        max_length=_MAX_FIELD,
        validation_alias=AliasChoices("login", "username", "email"),
    )
    password: str = Field(default="", max_length=_MAX_PASSWORD)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(default="", max_length=_MAX_TOKEN)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(default="", max_length=_MAX_FIELD)


class VerifyOtpRequest(BaseModel):
    email: str = Field(default="", max_length=_MAX_FIELD)
    otp: str = Field(default="", max_length=32)


class PasswordResetConfirm(BaseModel):
    email: str = Field(default="", max_length=_MAX_FIELD)
    reset_token: str = Field(default="", max_length=_MAX_TOKEN)
    new_password: str = Field(default="", max_length=_MAX_PASSWORD)


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    display_name: str
    role: str
    is_verified: bool
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls.model_validate(account)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_tokens(cls, tokens: IssuedTokens) -> "TokenPairResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            access_expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        )


class LoginResponse(BaseModel):
    user: AccountResponse
    tokens: TokenPairResponse

    @classmethod
    def from_result(cls, result: LoginResult) -> "LoginResponse":
        return cls(
            user=AccountResponse.from_account(result.account),
            tokens=TokenPairResponse.from_tokens(result.tokens),
        )


class LogoutResponse(BaseModel):
    sessions_revoked: int


class MessageResponse(BaseModel):
    message: str


class ResetTokenResponse(BaseModel):
    reset_token: str
    expires_at: datetime
