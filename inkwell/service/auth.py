from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from inkwell.config import Settings
from inkwell.logging import get_logger
from inkwell.service.calls import bounded
from inkwell.service.errors import AuthenticationError, NotFoundError
from inkwell.service.passwords import CredentialHasher
from inkwell.service.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    IssuedTokens,
    TokenError,
    TokenSigner,
    token_digest,
)
from inkwell.storage.models import ROLE_ADMIN, ROLE_USER, Account, SessionRecord

logger = get_logger(__name__)


class AccountStore(Protocol):
    def exists_by_username(self, username: str) -> bool: ...

    def exists_by_email(self, email: str) -> bool: ...

    def count_users(self) -> int: ...

    def create_user(
        self,
        username: str,
        email: str,
        display_name: str,
        password_hash: str,
        *,
        role: str = ROLE_USER,
    ) -> Account: ...

    def get_user_by_login(self, login: str) -> Optional[Account]: ...

    def get_user(self, user_id: str) -> Optional[Account]: ...

    def update_password_by_email(
        self, email: str, password_hash: str
    ) -> Optional[Account]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[Account]: ...


class SessionStore(Protocol):
    def store_token(self, record: SessionRecord) -> None: ...

    def find_by_refresh_token(self, refresh_token_hash: str) -> Optional[SessionRecord]: ...

    def delete_by_refresh_token(self, refresh_token_hash: str) -> bool: ...

    def delete_tokens_by_user_id(self, user_id: str) -> int: ...

    def replace_session(self, old_hash: str, new_record: SessionRecord) -> bool: ...

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


class AuthStore(AccountStore, SessionStore, Protocol):
    """Account and session storage behind one backend."""


@dataclass
class AuthContext:
    user_id: str
    username: str
    role: str


@dataclass
class LoginResult:
    account: Account
    tokens: IssuedTokens


class AuthService:
    """Login, refresh-token rotation, revocation, and role changes."""

    def __init__(
        self,
        store: AuthStore,
        signer: TokenSigner,
        hasher: CredentialHasher,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.signer = signer
        self.hasher = hasher
        self.settings = settings
        self.logger = logger

    async def _store_call(self, func, *args, **kwargs):
        return await bounded(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            dependency="session_store",
            **kwargs,
        )

    async def _verify(self, digest: Optional[str], password: str) -> bool:
        if digest is None:
            return await bounded(
                self.hasher.verify_decoy,
                password,
                timeout=self.settings.hash_timeout_seconds,
                dependency="hasher",
            )
        return await bounded(
            self.hasher.verify,
            digest,
            password,
            timeout=self.settings.hash_timeout_seconds,
            dependency="hasher",
        )

    async def login(self, login: str, password: str) -> LoginResult:
        """Authenticate by username or email and open a new session."""
        identifier = (login or "").strip()
        password = password or ""
        account = (
            await self._store_call(self.store.get_user_by_login, identifier)
            if identifier
            else None
        )
        if not await self._verify(account.password_hash if account else None, password):
            self.logger.info("login_failed", known_account=account is not None)
            raise AuthenticationError("invalid credentials")

        tokens = self.signer.issue(account.id, account.username, account.role)
        await self._store_call(
            self.store.store_token,
            SessionRecord.new(
                account.id,
                token_digest(tokens.refresh_token),
                tokens.refresh_expires_at,
            ),
        )
        self.logger.info("login_succeeded", user_id=account.id, role=account.role)
        return LoginResult(account=account.scrubbed(), tokens=tokens)

    async def refresh(self, refresh_token: str) -> IssuedTokens:
        """Exchange a live refresh token for a new pair, retiring the old one."""
        try:
            claims = self.signer.validate(refresh_token or "", expected_type=REFRESH_TOKEN)
        except TokenError as exc:
            raise AuthenticationError("invalid or expired refresh token") from exc

        old_hash = token_digest(refresh_token)
        record = await self._store_call(self.store.find_by_refresh_token, old_hash)
        if not record or record.user_id != claims.subject_id:
            self.logger.warning("refresh_token_unrecognized", user_id=claims.subject_id)
            raise AuthenticationError("refresh token not recognized")
        if record.is_expired():
            await self._store_call(self.store.delete_by_refresh_token, old_hash)
            self.logger.info("refresh_token_expired", user_id=record.user_id)
            raise AuthenticationError("refresh token expired")

        account = await self._store_call(self.store.get_user, claims.subject_id)
        if not account:
            raise NotFoundError("user not found")

        tokens = self.signer.issue(account.id, account.username, account.role)
        new_record = SessionRecord.new(
            account.id, token_digest(tokens.refresh_token), tokens.refresh_expires_at
        )
        if not await self._store_call(self.store.replace_session, old_hash, new_record):
            # Another caller rotated this token first
            self.logger.warning("refresh_token_replayed", user_id=account.id)
            raise AuthenticationError("refresh token not recognized")
        self.logger.info("refresh_token_rotated", user_id=account.id)
        return tokens

    async def logout(self, user_id: str) -> int:
        """Revoke every session the account holds."""
        removed = await self._store_call(self.store.delete_tokens_by_user_id, user_id)
        self.logger.info("sessions_revoked", user_id=user_id, count=removed)
        return removed

    async def get_account(self, user_id: str) -> Account:
        account = await self._store_call(self.store.get_user, user_id)
        if not account:
            raise NotFoundError("user not found")
        return account.scrubbed()

    async def promote_user(self, user_id: str) -> Account:
        return await self._set_role(user_id, ROLE_ADMIN)

    async def demote_user(self, user_id: str) -> Account:
        return await self._set_role(user_id, ROLE_USER)

    async def _set_role(self, user_id: str, role: str) -> Account:
        """Change the stored role and revoke sessions minted under the old one."""
        account = await self._store_call(self.store.update_user_role, user_id, role)
        if not account:
            raise NotFoundError("user not found")
        revoked = await self._store_call(self.store.delete_tokens_by_user_id, user_id)
        self.logger.info(
            "user_role_updated_sessions_revoked",
            user_id=user_id,
            new_role=role,
            revoked=revoked,
        )
        return account.scrubbed()

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        try:
            claims = self.signer.validate(token, expected_type=ACCESS_TOKEN)
        except TokenError:
            return None
        account = await self._store_call(self.store.get_user, claims.subject_id)
        if not account:
            return None
        if claims.role != account.role:
            self.logger.info("access_token_role_stale", user_id=account.id)
            return None
        if required_role and not self.role_allows(account.role, required_role):
            return None
        return AuthContext(user_id=account.id, username=account.username, role=account.role)

    async def purge_expired_sessions(self) -> int:
        purged = await self._store_call(self.store.purge_expired_sessions)
        if purged:
            self.logger.info("expired_sessions_purged", count=purged)
        return purged

    def role_allows(self, role: str, required: str) -> bool:
        if role == required:
            return True
        if role == ROLE_ADMIN and required in {ROLE_ADMIN, ROLE_USER}:
            return True
        return False

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
