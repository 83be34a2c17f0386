from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Optional

ROLE_ADMIN = "admin"
ROLE_USER = "user"


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    username: str
    email: str
    display_name: str
    password_hash: str = ""
    role: str = ROLE_USER
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        display_name: str,
        password_hash: str,
        *,
        role: str = ROLE_USER,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            display_name=display_name,
            password_hash=password_hash,
            role=role,
            is_verified=False,
        )

    def scrubbed(self) -> "Account":
        """Copy of the account safe to hand back to callers."""
        return replace(self, password_hash="")


@dataclass
class SessionRecord:
    """One issued refresh token, keyed by the token's SHA-256 digest."""

    refresh_token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls, user_id: str, refresh_token_hash: str, expires_at: datetime
    ) -> "SessionRecord":
        return cls(
            refresh_token_hash=refresh_token_hash,
            user_id=user_id,
            created_at=utcnow(),
            expires_at=expires_at,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class ResetChallenge:
    """Outstanding password-reset OTP for one email address."""

    email: str
    otp_hash: str
    expires_at: datetime
    attempt_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, otp_hash: str, ttl_minutes: int) -> "ResetChallenge":
        now = utcnow()
        return cls(
            email=email,
            otp_hash=otp_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            attempt_count=0,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class ResetGrant:
    """Single-use authorization to set a new password, minted by a verified OTP."""

    token_hash: str
    email: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at
