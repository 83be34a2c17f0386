from __future__ import annotations

import re
import secrets
import unicodedata

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from inkwell.config import Settings
from inkwell.logging import get_logger

logger = get_logger(__name__)

PASSWORD_POLICY_MESSAGE = (
    "password must be at least 8 chars, with upper, lower, number, and special char"
)
MIN_PASSWORD_LENGTH = 8

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


class CredentialHasher:
    """Argon2id hash/verify shared by passwords and OTP codes."""

    algorithm = "argon2id"

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Compared against when an account lookup misses, so a failed login
        # costs one verify regardless of whether the identifier exists
        self._decoy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, digest: str, plaintext: str) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_hash_unreadable", algorithm=self.algorithm)
            return False

    def verify_decoy(self, plaintext: str) -> bool:
        self.verify(self._decoy_hash, plaintext)
        return False


def normalize_email(value: str) -> str:
    """NFKC-normalize, trim, and lower-case an email address."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned).strip().lower()


def is_valid_email(value: str) -> bool:
    if not value or len(value) > 254 or len(value) < 3:
        return False
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return False
    if not _EMAIL_LOCAL_PART.match(local):
        return False
    if local.startswith(".") or local.endswith(".") or ".." in local:
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels)


def is_strong_password(value: str) -> bool:
    """At least 8 characters with upper-case, lower-case, digit, and special."""
    if len(value) < MIN_PASSWORD_LENGTH:
        return False
    has_upper = any(c.isupper() for c in value)
    has_lower = any(c.islower() for c in value)
    has_digit = any(c.isdigit() for c in value)
    has_special = any(not c.isalnum() and not c.isspace() for c in value)
    return has_upper and has_lower and has_digit and has_special


def generate_otp(length: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))
