from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from inkwell.logging import get_logger
from inkwell.storage.errors import StorageUnavailable
from inkwell.storage.models import ResetChallenge, ResetGrant, utcnow

logger = get_logger(__name__)


class RedisResetStore:
    """Reset challenges and grants kept in Redis with native key expiry.

    Uses a synchronous client; callers run it in worker threads. Challenges
    are hashes under ``reset:challenge:<email>`` and grants are JSON strings
    under ``reset:grant:<token hash>``.
    """

    # Increment only a live challenge; a missing key must not be recreated
    _INCREMENT_SCRIPT = """
    if redis.call('EXISTS', KEYS[1]) == 0 then
        return nil
    end
    return redis.call('HINCRBY', KEYS[1], 'attempt_count', 1)
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    @staticmethod
    def _challenge_key(email: str) -> str:
        return f"reset:challenge:{email}"

    @staticmethod
    def _grant_key(token_hash: str) -> str:
        return f"reset:grant:{token_hash}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        return max(int((expires_at - utcnow()).total_seconds()), 1)

    def _call(self, op: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_unavailable", op=op, error=str(exc))
            raise StorageUnavailable(str(exc), backend="redis") from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._call("ping", self.client.ping)

    def close(self) -> None:
        self.client.close()

    def store_reset_request(self, challenge: ResetChallenge) -> None:
        key = self._challenge_key(challenge.email)
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.hset(
            key,
            mapping={
                "email": challenge.email,
                "otp_hash": challenge.otp_hash,
                "expires_at": challenge.expires_at.isoformat(),
                "attempt_count": challenge.attempt_count,
                "created_at": challenge.created_at.isoformat(),
            },
        )
        # Outlive expires_at so an expired challenge is reported as expired
        pipe.expire(key, self._ttl_seconds(challenge.expires_at) + 60)
        self._call("store_reset_request", pipe.execute)

    def get_reset_request(self, email: str) -> Optional[ResetChallenge]:
        data = self._call("get_reset_request", self.client.hgetall, self._challenge_key(email))
        if not data:
            return None
        return ResetChallenge(
            email=data.get("email", email),
            otp_hash=data["otp_hash"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            attempt_count=int(data.get("attempt_count", 0)),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    def delete_reset_request(self, email: str) -> bool:
        removed = self._call(
            "delete_reset_request", self.client.delete, self._challenge_key(email)
        )
        return bool(removed)

    def increment_attempt_count(self, email: str) -> Optional[int]:
        result = self._call(
            "increment_attempt_count",
            self._increment,
            keys=[self._challenge_key(email)],
        )
        if result is None:
            return None
        return int(result)

    def store_reset_grant(self, grant: ResetGrant) -> None:
        payload = json.dumps(
            {
                "token_hash": grant.token_hash,
                "email": grant.email,
                "expires_at": grant.expires_at.isoformat(),
                "created_at": grant.created_at.isoformat(),
            }
        )
        self._call(
            "store_reset_grant",
            self.client.set,
            self._grant_key(grant.token_hash),
            payload,
            ex=self._ttl_seconds(grant.expires_at),
        )

    def consume_reset_grant(self, token_hash: str) -> Optional[ResetGrant]:
        raw = self._call(
            "consume_reset_grant", self.client.getdel, self._grant_key(token_hash)
        )
        if not raw:
            return None
        data = json.loads(raw)
        return ResetGrant(
            token_hash=data["token_hash"],
            email=data["email"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    def purge_expired_reset_requests(self, now: Optional[datetime] = None) -> int:
        # Key TTLs already evict expired entries
        return 0
