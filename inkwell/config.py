from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from inkwell.logging import get_logger

logger = get_logger(__name__)


class EmailVerifierProvider(str, Enum):
    """Reachability providers consulted before an account is admitted."""

    NONE = "none"
    EMAILLISTVERIFY = "emaillistverify"
    MAILBOXLAYER = "mailboxlayer"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/inkwell", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/inkwell", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("inkwell", "JWT_ISSUER")
    jwt_audience: str = env_field("inkwell-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    jwt_clock_skew_seconds: int = env_field(30, "JWT_CLOCK_SKEW_SECONDS", ge=0)

    # Credential hashing (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost_kib: int = env_field(65536, "ARGON2_MEMORY_COST_KIB", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # Password reset
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", gt=0)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1)
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES", gt=0)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Inkwell", "EMAIL_FROM_NAME")

    # Email reachability
    email_verifier_provider: EmailVerifierProvider = env_field(
        EmailVerifierProvider.NONE,
        "EMAIL_VERIFIER_PROVIDER",
        description="none, emaillistverify, or mailboxlayer",
    )
    email_verifier_api_key: str | None = env_field(None, "EMAIL_VERIFIER_API_KEY")

    # Dependency deadlines (seconds)
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    hash_timeout_seconds: float = env_field(10.0, "HASH_TIMEOUT_SECONDS", gt=0)
    email_send_timeout_seconds: float = env_field(
        15.0, "EMAIL_SEND_TIMEOUT_SECONDS", gt=0
    )
    email_verify_timeout_seconds: float = env_field(
        20.0, "EMAIL_VERIFY_TIMEOUT_SECONDS", gt=0
    )
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS", gt=0)

    session_purge_interval_seconds: int = env_field(
        900, "SESSION_PURGE_INTERVAL_SECONDS", ge=0
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url", "email_verifier_api_key", "smtp_host", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("email_verifier_provider", mode="before")
    @classmethod
    def _validate_verifier_provider(cls, value: Any) -> EmailVerifierProvider:
        if isinstance(value, str):
            value = value.strip().lower() or EmailVerifierProvider.NONE.value
        return EmailVerifierProvider(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/inkwell"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
