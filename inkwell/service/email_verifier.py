from __future__ import annotations

from typing import Any, Optional

import httpx

from inkwell.config import EmailVerifierProvider, Settings
from inkwell.logging import get_logger
from inkwell.service.email import redact_email

logger = get_logger(__name__)

EMAILLISTVERIFY_URL = "https://apps.emaillistverify.com/api/verifyEmail"
MAILBOXLAYER_URL = "https://apilayer.net/api/check"

_ACCEPTED_RESULTS = {"deliverable", "risky"}


class EmailVerificationError(Exception):
    """The reachability provider could not be consulted."""


class EmailVerifier:
    """Ask a third-party provider whether an address can receive mail.

    ``transport`` lets tests substitute an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        provider: EmailVerifierProvider = EmailVerifierProvider.NONE,
        *,
        api_key: Optional[str] = None,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if provider != EmailVerifierProvider.NONE and not api_key:
            raise ValueError(f"{provider.value} requires EMAIL_VERIFIER_API_KEY")
        self.provider = provider
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailVerifier":
        return cls(
            settings.email_verifier_provider,
            api_key=settings.email_verifier_api_key,
            timeout=settings.email_verify_timeout_seconds,
        )

    async def is_reachable(self, email: str) -> bool:
        if self.provider == EmailVerifierProvider.NONE:
            return True
        if self.provider == EmailVerifierProvider.EMAILLISTVERIFY:
            response = await self._get(
                EMAILLISTVERIFY_URL, {"secret": self.api_key, "email": email}
            )
            reachable = self._parse_emaillistverify(response)
        else:
            response = await self._get(
                MAILBOXLAYER_URL,
                {
                    "access_key": self.api_key,
                    "email": email,
                    "smtp": "1",
                    "format": "1",
                },
            )
            reachable = self._parse_mailboxlayer(response)
        logger.info(
            "email_reachability_checked",
            provider=self.provider.value,
            to=redact_email(email),
            reachable=reachable,
        )
        return reachable

    async def _get(self, url: str, params: dict[str, Any]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "email_verifier_bad_status",
                provider=self.provider.value,
                status=exc.response.status_code,
            )
            raise EmailVerificationError(
                f"{self.provider.value} returned status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "email_verifier_request_failed",
                provider=self.provider.value,
                error_type=type(exc).__name__,
            )
            raise EmailVerificationError(
                f"{self.provider.value} request failed: {exc}"
            ) from exc

    def _parse_emaillistverify(self, response: httpx.Response) -> bool:
        body = response.text.strip()
        if not body:
            raise EmailVerificationError("emaillistverify returned an empty response")
        # The API answers either with a JSON object or a bare status word
        if not body.startswith("{"):
            return body == "ok"
        try:
            result = response.json()
        except ValueError as exc:
            raise EmailVerificationError(
                "emaillistverify returned malformed JSON"
            ) from exc
        return (
            result.get("status") == "ok"
            and result.get("result") in _ACCEPTED_RESULTS
            and bool(result.get("mx_record"))
            and not result.get("disposable", False)
        )

    def _parse_mailboxlayer(self, response: httpx.Response) -> bool:
        try:
            result = response.json()
        except ValueError as exc:
            raise EmailVerificationError("mailboxlayer returned malformed JSON") from exc
        if not isinstance(result, dict):
            raise EmailVerificationError("mailboxlayer returned an unexpected payload")
        return bool(result.get("mx_found")) and bool(result.get("smtp_check"))
