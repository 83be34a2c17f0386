from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from inkwell.config import Settings
from inkwell.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


class TokenError(Exception):
    """Token failed signature, shape, audience, expiry, or type checks."""


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    username: str
    role: str
    token_type: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def token_digest(token: str) -> str:
    """SHA-256 hex digest used to key stored refresh tokens and reset grants."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenSigner:
    """HS256 JWT issue/validate for access and refresh tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_minutes: int = 15,
        refresh_ttl_minutes: int = 7 * 24 * 60,
        clock_skew_seconds: int = 30,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=refresh_ttl_minutes)
        self._clock_skew_leeway = timedelta(seconds=clock_skew_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSigner":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
            clock_skew_seconds=settings.jwt_clock_skew_seconds,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(self, subject_id: str, username: str, role: str) -> IssuedTokens:
        now = self._now()
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        access_token = self._encode_jwt(
            self._payload(subject_id, username, role, ACCESS_TOKEN, now, access_exp)
        )
        refresh_token = self._encode_jwt(
            self._payload(subject_id, username, role, REFRESH_TOKEN, now, refresh_exp)
        )
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=datetime.fromtimestamp(int(access_exp.timestamp()), timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(int(refresh_exp.timestamp()), timezone.utc),
        )

    def validate(self, token: str, *, expected_type: Optional[str] = None) -> TokenClaims:
        payload = self._decode_jwt(token)
        if payload is None:
            raise TokenError("invalid token")
        if expected_type and payload.get("token_type") != expected_type:
            raise TokenError("unexpected token type")
        subject_id = payload.get("sub")
        if not isinstance(subject_id, str) or not subject_id:
            raise TokenError("invalid token payload")
        return TokenClaims(
            subject_id=subject_id,
            username=str(payload.get("username", "")),
            role=str(payload.get("role", "")),
            token_type=str(payload.get("token_type", "")),
            jti=str(payload.get("jti", "")),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), timezone.utc),
        )

    def _payload(
        self,
        subject_id: str,
        username: str,
        role: str,
        token_type: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> dict[str, Any]:
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "username": username,
            "role": role,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
