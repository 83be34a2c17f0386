from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from inkwell.config import get_settings, reset_settings_cache
from inkwell.logging import get_logger
from inkwell.service.auth import AuthService
from inkwell.service.email import EmailService
from inkwell.service.email_verifier import EmailVerifier
from inkwell.service.password_reset import PasswordResetService
from inkwell.service.passwords import CredentialHasher
from inkwell.service.registration import RegistrationService
from inkwell.service.tokens import TokenSigner
from inkwell.storage.memory import MemoryStore
from inkwell.storage.postgres import PostgresStore
from inkwell.storage.redis_cache import RedisResetStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.reset_cache: Optional[RedisResetStore] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisResetStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                self.reset_cache = cache
            except Exception as exc:
                redis_error = exc
                self.reset_cache = None

        if self.settings.redis_url and not self.reset_cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured for reset challenges but unreachable; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_unreachable",
                message=(
                    f"Running without Redis under {fallback_mode}; "
                    "reset challenges are kept in the primary store."
                ),
                mode=fallback_mode,
            )

        self.hasher = CredentialHasher.from_settings(self.settings)
        self.signer = TokenSigner.from_settings(self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.email_verifier = EmailVerifier.from_settings(self.settings)

        self.registration = RegistrationService(
            self.store, self.hasher, self.email_verifier, self.settings
        )
        self.auth = AuthService(self.store, self.signer, self.hasher, self.settings)
        self.password_reset = PasswordResetService(
            self.store,
            self.reset_cache or self.store,
            self.hasher,
            self.email,
            self.settings,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.reset_cache is not None,
            smtp_configured=self.email.is_configured,
            verifier_provider=self.settings.email_verifier_provider.value,
        )

    def close(self) -> None:
        if self.reset_cache is not None:
            self.reset_cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path once the
    runtime exists, the locked re-check stops two threads building it at once.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
