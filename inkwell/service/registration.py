from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass

from inkwell.config import Settings
from inkwell.logging import get_logger, sanitize_error_message
from inkwell.service.auth import AccountStore
from inkwell.service.calls import bounded
from inkwell.service.email_verifier import EmailVerificationError, EmailVerifier
from inkwell.service.errors import (
    ConflictError,
    DependencyError,
    DependencyTimeoutError,
    ValidationError,
)
from inkwell.service.passwords import (
    PASSWORD_POLICY_MESSAGE,
    CredentialHasher,
    is_strong_password,
    is_valid_email,
    normalize_email,
)
from inkwell.storage.errors import ConstraintViolation
from inkwell.storage.models import ROLE_ADMIN, ROLE_USER, Account

logger = get_logger(__name__)

_CONFLICT_MESSAGES = {
    "username": "username already taken",
    "email": "email already taken",
}


@dataclass
class RegistrationRequest:
    username: str
    email: str
    password: str
    display_name: str


def _email_fingerprint(email: str) -> str:
    return hashlib.sha256(email.encode("utf-8")).hexdigest()[:12]


class RegistrationService:
    """Validates and admits new accounts.

    The first account ever admitted becomes the administrator. Concurrent
    first registrations are settled by the store's admin-bootstrap claim, so
    at most one of them wins the role.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: CredentialHasher,
        verifier: EmailVerifier,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.verifier = verifier
        self.settings = settings

    async def register(self, candidate: RegistrationRequest) -> Account:
        username = (candidate.username or "").strip()
        display_name = (candidate.display_name or "").strip()
        password = candidate.password or ""
        raw_email = candidate.email or ""
        if not username or not raw_email.strip() or not password.strip() or not display_name:
            raise ValidationError("all fields are required")

        email = normalize_email(raw_email)
        if not is_valid_email(email):
            raise ValidationError("invalid email format", detail={"field": "email"})

        await self._check_reachable(email)

        if not is_strong_password(password):
            raise ValidationError(PASSWORD_POLICY_MESSAGE, detail={"field": "password"})

        if await self._store_call(self.store.exists_by_username, username):
            raise ConflictError(_CONFLICT_MESSAGES["username"], detail={"field": "username"})
        if await self._store_call(self.store.exists_by_email, email):
            raise ConflictError(_CONFLICT_MESSAGES["email"], detail={"field": "email"})

        role = ROLE_ADMIN if await self._store_call(self.store.count_users) == 0 else ROLE_USER
        password_hash = await bounded(
            self.hasher.hash,
            password,
            timeout=self.settings.hash_timeout_seconds,
            dependency="hasher",
        )
        account = await self._create(username, email, display_name, password_hash, role)
        logger.info(
            "user_registered",
            user_id=account.id,
            role=account.role,
            email_hash=_email_fingerprint(email),
        )
        return account.scrubbed()

    async def _check_reachable(self, email: str) -> None:
        try:
            reachable = await asyncio.wait_for(
                self.verifier.is_reachable(email),
                self.settings.email_verify_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "dependency_timeout",
                dependency="email_verifier",
                timeout=self.settings.email_verify_timeout_seconds,
            )
            raise DependencyTimeoutError(
                "email verification timed out", detail={"dependency": "email_verifier"}
            ) from exc
        except EmailVerificationError as exc:
            raise DependencyError(
                f"failed to verify email: {sanitize_error_message(str(exc))}",
                detail={"dependency": "email_verifier"},
            ) from exc
        if not reachable:
            raise ValidationError("email is unreachable", detail={"field": "email"})

    async def _create(
        self,
        username: str,
        email: str,
        display_name: str,
        password_hash: str,
        role: str,
    ) -> Account:
        try:
            return await self._store_call(
                self.store.create_user,
                username,
                email,
                display_name,
                password_hash,
                role=role,
            )
        except ConstraintViolation as exc:
            if exc.field == "admin_bootstrap":
                logger.info("admin_bootstrap_lost", username=username)
                return await self._create(
                    username, email, display_name, password_hash, ROLE_USER
                )
            message = _CONFLICT_MESSAGES.get(exc.field or "")
            if message:
                raise ConflictError(message, detail={"field": exc.field}) from exc
            raise

    async def _store_call(self, func, *args, **kwargs):
        return await bounded(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            dependency="account_store",
            **kwargs,
        )
