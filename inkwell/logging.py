from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request correlation ID, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose values are masked before rendering
_PII_KEYS = frozenset(
    {"password", "secret", "token", "otp", "api_key", "authorization", "email"}
)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and addresses; digests (``*_hash``) pass through."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered.endswith("_hash") or not isinstance(value, str):
            continue
        if any(marker in lowered for marker in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Every entry carries level, ISO timestamp and correlation id, and passes
    through PII masking. Production renders JSON lines; ``dev_mode`` or
    ``json_output=False`` switches to the coloured console renderer.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not reach an API client inside an error message
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+"),
    re.compile(r"(?i)[a-z]:\\[^\s]+"),
    re.compile(
        r"(?i)(password|secret|token|key|credential|api.?key|access_key)\s*[:=]\s*[^\s&]+"
    ),
    re.compile(r"(?i)(secret|access_key)=[^\s&]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

_MAX_CLIENT_ERROR_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip paths, credentials (query-string API keys included) and stack
    traces from a dependency error before it is returned to a client."""
    if not error or not isinstance(error, str):
        return "an error occurred"

    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_CLIENT_ERROR_LENGTH:
        result = result[: _MAX_CLIENT_ERROR_LENGTH - 3] + "..."
    return result
