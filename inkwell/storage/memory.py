from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from inkwell.logging import get_logger
from inkwell.storage.errors import ConstraintViolation
from inkwell.storage.models import (
    ROLE_ADMIN,
    Account,
    ResetChallenge,
    ResetGrant,
    SessionRecord,
    utcnow,
)


class MemoryStore:
    """In-process account, session, and reset-challenge store.

    State lives in dictionaries guarded by a single re-entrant lock and is
    written through to ``<fs_root>/state/memory_store.json`` after every
    mutation so a restarted dev server keeps its accounts.
    """

    def __init__(self, fs_root: str = "/tmp/inkwell") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.reset_requests: Dict[str, ResetChallenge] = {}
        self.reset_grants: Dict[str, ResetGrant] = {}
        # Owner of the one-time admin bootstrap claim
        self.admin_bootstrap_user_id: Optional[str] = None
        # RLock so nested helpers can re-acquire within one operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # accounts
    def exists_by_username(self, username: str) -> bool:
        with self._data_lock:
            return any(a.username == username for a in self.accounts.values())

    def exists_by_email(self, email: str) -> bool:
        with self._data_lock:
            return any(a.email == email for a in self.accounts.values())

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.accounts)

    def create_user(
        self,
        username: str,
        email: str,
        display_name: str,
        password_hash: str,
        *,
        role: str = "user",
    ) -> Account:
        with self._data_lock:
            if self.exists_by_username(username):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if self.exists_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if role == ROLE_ADMIN and self.admin_bootstrap_user_id is not None:
                raise ConstraintViolation(
                    "admin already bootstrapped", {"field": "admin_bootstrap"}
                )
            account = Account.new(
                username, email, display_name, password_hash, role=role
            )
            if role == ROLE_ADMIN:
                self.admin_bootstrap_user_id = account.id
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_user_by_login(self, login: str) -> Optional[Account]:
        lowered = login.strip().lower()
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.accounts.values()
                    if a.username == login or a.email == lowered
                ),
                None,
            )

    def get_user(self, user_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(user_id)

    def update_password_by_email(
        self, email: str, password_hash: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == email), None
            )
            if not account:
                return None
            account.password_hash = password_hash
            self._persist_state()
            return account

    def update_user_role(self, user_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(user_id)
            if not account:
                return None
            account.role = role
            self._persist_state()
            return account

    # sessions
    def store_token(self, record: SessionRecord) -> None:
        with self._data_lock:
            if record.user_id not in self.accounts:
                raise ConstraintViolation(
                    "session user missing", {"user_id": record.user_id}
                )
            self.sessions[record.refresh_token_hash] = record
            self._persist_state()

    def find_by_refresh_token(self, refresh_token_hash: str) -> Optional[SessionRecord]:
        with self._data_lock:
            return self.sessions.get(refresh_token_hash)

    def delete_by_refresh_token(self, refresh_token_hash: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(refresh_token_hash, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_tokens_by_user_id(self, user_id: str) -> int:
        with self._data_lock:
            stale = [h for h, rec in self.sessions.items() if rec.user_id == user_id]
            for token_hash in stale:
                self.sessions.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    def replace_session(self, old_hash: str, new_record: SessionRecord) -> bool:
        """Retire ``old_hash`` and store ``new_record`` as one step.

        Returns False, storing nothing, when ``old_hash`` was already retired.
        """
        with self._data_lock:
            if self.sessions.pop(old_hash, None) is None:
                return False
            self.sessions[new_record.refresh_token_hash] = new_record
            self._persist_state()
            return True

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [h for h, rec in self.sessions.items() if rec.is_expired(now)]
            for token_hash in stale:
                self.sessions.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # password reset
    def store_reset_request(self, challenge: ResetChallenge) -> None:
        with self._data_lock:
            self.reset_requests[challenge.email] = challenge
            self._persist_state()

    def get_reset_request(self, email: str) -> Optional[ResetChallenge]:
        with self._data_lock:
            return self.reset_requests.get(email)

    def delete_reset_request(self, email: str) -> bool:
        with self._data_lock:
            removed = self.reset_requests.pop(email, None)
            if removed:
                self._persist_state()
            return removed is not None

    def increment_attempt_count(self, email: str) -> Optional[int]:
        with self._data_lock:
            challenge = self.reset_requests.get(email)
            if not challenge:
                return None
            challenge.attempt_count += 1
            self._persist_state()
            return challenge.attempt_count

    def store_reset_grant(self, grant: ResetGrant) -> None:
        with self._data_lock:
            self.reset_grants[grant.token_hash] = grant
            self._persist_state()

    def consume_reset_grant(self, token_hash: str) -> Optional[ResetGrant]:
        with self._data_lock:
            grant = self.reset_grants.pop(token_hash, None)
            if grant:
                self._persist_state()
            return grant

    def purge_expired_reset_requests(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale_requests = [
                email for email, ch in self.reset_requests.items() if ch.is_expired(now)
            ]
            stale_grants = [
                h for h, grant in self.reset_grants.items() if grant.is_expired(now)
            ]
            for email in stale_requests:
                self.reset_requests.pop(email, None)
            for token_hash in stale_grants:
                self.reset_grants.pop(token_hash, None)
            if stale_requests or stale_grants:
                self._persist_state()
            return len(stale_requests) + len(stale_grants)

    # persistence
    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "admin_bootstrap_user_id": self.admin_bootstrap_user_id,
                "accounts": [self._serialize_account(a) for a in self.accounts.values()],
                "sessions": [self._serialize_session(s) for s in self.sessions.values()],
                "reset_requests": [
                    self._serialize_reset_request(r)
                    for r in self.reset_requests.values()
                ],
                "reset_grants": [
                    self._serialize_reset_grant(g) for g in self.reset_grants.values()
                ],
            }
            path = self._state_path()
            try:
                path.write_text(json.dumps(state, indent=2))
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning(
                "memory_store_state_corrupt", path=str(path), error=str(exc)
            )
            return False
        self.admin_bootstrap_user_id = data.get("admin_bootstrap_user_id")
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["refresh_token_hash"]: self._deserialize_session(s)
            for s in data.get("sessions", [])
        }
        self.reset_requests = {
            r["email"]: self._deserialize_reset_request(r)
            for r in data.get("reset_requests", [])
        }
        self.reset_grants = {
            g["token_hash"]: self._deserialize_reset_grant(g)
            for g in data.get("reset_grants", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "display_name": account.display_name,
            "password_hash": account.password_hash,
            "role": account.role,
            "is_verified": account.is_verified,
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            display_name=data.get("display_name", ""),
            password_hash=data.get("password_hash", ""),
            role=data.get("role", "user"),
            is_verified=data.get("is_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, record: SessionRecord) -> dict:
        return {
            "refresh_token_hash": record.refresh_token_hash,
            "user_id": record.user_id,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
        }

    def _deserialize_session(self, data: dict) -> SessionRecord:
        return SessionRecord(
            refresh_token_hash=data["refresh_token_hash"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_reset_request(self, challenge: ResetChallenge) -> dict:
        return {
            "email": challenge.email,
            "otp_hash": challenge.otp_hash,
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "attempt_count": challenge.attempt_count,
            "created_at": self._serialize_datetime(challenge.created_at),
        }

    def _deserialize_reset_request(self, data: dict) -> ResetChallenge:
        return ResetChallenge(
            email=data["email"],
            otp_hash=data["otp_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempt_count=int(data.get("attempt_count", 0)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_reset_grant(self, grant: ResetGrant) -> dict:
        return {
            "token_hash": grant.token_hash,
            "email": grant.email,
            "expires_at": self._serialize_datetime(grant.expires_at),
            "created_at": self._serialize_datetime(grant.created_at),
        }

    def _deserialize_reset_grant(self, data: dict) -> ResetGrant:
        return ResetGrant(
            token_hash=data["token_hash"],
            email=data["email"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
