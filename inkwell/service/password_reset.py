from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from inkwell.config import Settings
from inkwell.logging import get_logger
from inkwell.service.auth import AuthStore
from inkwell.service.calls import bounded
from inkwell.service.email import EmailDeliveryError, EmailService, redact_email
from inkwell.service.errors import (
    AuthenticationError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from inkwell.service.passwords import (
    PASSWORD_POLICY_MESSAGE,
    CredentialHasher,
    generate_otp,
    is_strong_password,
    normalize_email,
)
from inkwell.service.tokens import token_digest
from inkwell.storage.models import ResetChallenge, ResetGrant, utcnow

logger = get_logger(__name__)

OTP_EXHAUSTED_MESSAGE = "too many invalid attempts — OTP expired"


class ResetChallengeStore(Protocol):
    def store_reset_request(self, challenge: ResetChallenge) -> None: ...

    def get_reset_request(self, email: str) -> Optional[ResetChallenge]: ...

    def delete_reset_request(self, email: str) -> bool: ...

    def increment_attempt_count(self, email: str) -> Optional[int]: ...

    def store_reset_grant(self, grant: ResetGrant) -> None: ...

    def consume_reset_grant(self, token_hash: str) -> Optional[ResetGrant]: ...

    def purge_expired_reset_requests(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class ResetAuthorization:
    """Handed back by a successful OTP check; spent by ``reset_password``."""

    reset_token: str
    expires_at: datetime


class PasswordResetService:
    """OTP password reset.

    A challenge moves from issued to exactly one of: verified (a reset grant
    is minted), expired, or exhausted after too many wrong codes. Any of the
    three removes the challenge. Setting the new password spends the grant
    and revokes every session of the account.
    """

    def __init__(
        self,
        accounts: AuthStore,
        challenges: ResetChallengeStore,
        hasher: CredentialHasher,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.accounts = accounts
        self.challenges = challenges
        self.hasher = hasher
        self.email = email
        self.settings = settings

    async def _call(self, func, *args, dependency: str = "reset_store", **kwargs):
        return await bounded(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            dependency=dependency,
            **kwargs,
        )

    async def _hash(self, plaintext: str) -> str:
        return await bounded(
            self.hasher.hash,
            plaintext,
            timeout=self.settings.hash_timeout_seconds,
            dependency="hasher",
        )

    async def send_reset_otp(self, email: str) -> None:
        email = normalize_email(email or "")
        if not email or not await self._call(
            self.accounts.exists_by_email, email, dependency="account_store"
        ):
            raise ValidationError("email not registered", detail={"field": "email"})

        otp = generate_otp(self.settings.otp_length)
        try:
            await bounded(
                self.email.send_otp,
                email,
                otp,
                timeout=self.settings.email_send_timeout_seconds,
                dependency="email",
            )
        except EmailDeliveryError as exc:
            raise DependencyError(
                "failed to send OTP email", detail={"dependency": "email"}
            ) from exc

        otp_hash = await self._hash(otp)
        await self._call(
            self.challenges.store_reset_request,
            ResetChallenge.new(email, otp_hash, self.settings.otp_ttl_minutes),
        )
        logger.info("reset_otp_issued", to=redact_email(email))

    async def verify_otp(self, email: str, otp: str) -> ResetAuthorization:
        email = normalize_email(email or "")
        challenge = await self._call(self.challenges.get_reset_request, email)
        if not challenge:
            raise NotFoundError("no reset request found")
        if challenge.is_expired():
            await self._call(self.challenges.delete_reset_request, email)
            raise ValidationError("OTP expired")
        max_attempts = self.settings.otp_max_attempts
        if challenge.attempt_count >= max_attempts:
            await self._call(self.challenges.delete_reset_request, email)
            raise ValidationError(OTP_EXHAUSTED_MESSAGE)

        matched = await bounded(
            self.hasher.verify,
            challenge.otp_hash,
            (otp or "").strip(),
            timeout=self.settings.hash_timeout_seconds,
            dependency="hasher",
        )
        if not matched:
            attempts = await self._call(self.challenges.increment_attempt_count, email)
            logger.info(
                "reset_otp_mismatch", to=redact_email(email), attempts=attempts
            )
            if attempts is not None and attempts >= max_attempts:
                await self._call(self.challenges.delete_reset_request, email)
                logger.warning("reset_otp_exhausted", to=redact_email(email))
                raise ValidationError(OTP_EXHAUSTED_MESSAGE)
            raise ValidationError("invalid OTP")

        # Only the caller that removes the challenge may mint a grant
        if not await self._call(self.challenges.delete_reset_request, email):
            raise NotFoundError("no reset request found")

        reset_token = secrets.token_urlsafe(32)
        now = utcnow()
        grant = ResetGrant(
            token_hash=token_digest(reset_token),
            email=email,
            expires_at=now + timedelta(minutes=self.settings.reset_token_ttl_minutes),
            created_at=now,
        )
        await self._call(self.challenges.store_reset_grant, grant)
        logger.info("reset_otp_verified", to=redact_email(email))
        return ResetAuthorization(reset_token=reset_token, expires_at=grant.expires_at)

    async def reset_password(self, email: str, reset_token: str, new_password: str) -> None:
        """Set a new password using the token returned by ``verify_otp``.

        The password policy is checked before the token is touched, so a weak
        password leaves the token usable. The token is then consumed in one
        atomic step and only afterwards compared against ``email``: a token
        presented with the wrong email is spent, and the caller must request
        a new OTP.
        """
        email = normalize_email(email or "")
        reset_token = (reset_token or "").strip()
        new_password = new_password or ""
        if not email or not reset_token or not new_password.strip():
            raise ValidationError("all fields are required")
        if not is_strong_password(new_password):
            raise ValidationError(PASSWORD_POLICY_MESSAGE, detail={"field": "password"})

        grant = await self._call(
            self.challenges.consume_reset_grant, token_digest(reset_token)
        )
        if not grant or grant.is_expired() or grant.email != email:
            logger.warning("reset_token_rejected", to=redact_email(email))
            raise AuthenticationError("invalid or expired reset token")

        password_hash = await self._hash(new_password)
        account = await self._call(
            self.accounts.update_password_by_email,
            email,
            password_hash,
            dependency="account_store",
        )
        if not account:
            raise NotFoundError("user not found")
        revoked = await self._call(
            self.accounts.delete_tokens_by_user_id, account.id, dependency="session_store"
        )
        logger.info("password_reset_completed", user_id=account.id, sessions_revoked=revoked)

    async def purge_expired(self) -> int:
        purged = await self._call(self.challenges.purge_expired_reset_requests)
        if purged:
            logger.info("expired_reset_requests_purged", count=purged)
        return purged
