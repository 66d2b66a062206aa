"""Per-caller confirmation accuracy, used to tune confirmation strictness."""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Protocol

import redis

from stockcount.redis_client import get_redis_client

logger = logging.getLogger(__name__)

MAX_RECENT_MISTAKES = 10


@dataclass
class CallerAccuracy:
    """How often a caller's commands were confirmed as heard."""

    correct: int = 0
    total: int = 0
    recent_mistakes: list[str] = field(default_factory=list)

    @property
    def error_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return 1.0 - self.correct / self.total

    def most_common_mistake(self) -> str | None:
        """Return the most frequent recent mistake category, if any."""
        if not self.recent_mistakes:
            return None
        return Counter(self.recent_mistakes).most_common(1)[0][0]

    def record(self, confirmed: bool, mistake_category: str | None = None) -> None:
        """Count one confirmation outcome."""
        self.total += 1
        if confirmed:
            self.correct += 1
        elif mistake_category:
            self.recent_mistakes.append(mistake_category)
            if len(self.recent_mistakes) > MAX_RECENT_MISTAKES:
                del self.recent_mistakes[: len(self.recent_mistakes) - MAX_RECENT_MISTAKES]

    def to_dict(self) -> dict[str, Any]:
        return {
            "correct": self.correct,
            "total": self.total,
            "recent_mistakes": list(self.recent_mistakes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CallerAccuracy":
        return cls(
            correct=int(data.get("correct", 0)),
            total=int(data.get("total", 0)),
            recent_mistakes=[str(m) for m in data.get("recent_mistakes", [])],
        )


class CallerAccuracyStore(Protocol):
    """Protocol for caller accuracy storage."""

    def get(self, user_id: str) -> CallerAccuracy:
        """Return the caller's accuracy (zeroed if never recorded)."""
        ...

    def record_outcome(
        self, user_id: str, confirmed: bool, mistake_category: str | None = None
    ) -> CallerAccuracy:
        """Record a confirm/reject outcome and return the updated accuracy."""
        ...


class InMemoryCallerAccuracyStore:
    """Process-local caller accuracy storage."""

    def __init__(self) -> None:
        self._accuracy: dict[str, CallerAccuracy] = {}

    def get(self, user_id: str) -> CallerAccuracy:
        stored = self._accuracy.get(user_id)
        if stored is None:
            return CallerAccuracy()
        return CallerAccuracy.from_dict(stored.to_dict())

    def record_outcome(
        self, user_id: str, confirmed: bool, mistake_category: str | None = None
    ) -> CallerAccuracy:
        accuracy = self._accuracy.setdefault(user_id, CallerAccuracy())
        accuracy.record(confirmed, mistake_category)
        return CallerAccuracy.from_dict(accuracy.to_dict())

    def clear(self, user_id: str) -> None:
        self._accuracy.pop(user_id, None)


class RedisCallerAccuracyStore:
    """Redis-backed caller accuracy storage.

    This implementation provides:
    - Accuracy that survives process restarts and is shared between workers
    - Automatic expiration via Redis TTL
    - Fallback to in-memory if Redis unavailable
    """

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        default_ttl_seconds: int = 30 * 24 * 3600,
        key_prefix: str = "caller_accuracy:",
    ) -> None:
        """Initialize the store.

        Args:
            redis_client: Redis client instance (None to use in-memory fallback)
            default_ttl_seconds: TTL refreshed on every update (default: 30 days)
            key_prefix: Prefix for Redis keys
        """
        self.redis = redis_client
        self.default_ttl_seconds = default_ttl_seconds
        self.key_prefix = key_prefix

        if self.redis is None:
            logger.warning("Redis not available, using in-memory fallback for caller accuracy")
            self._fallback: InMemoryCallerAccuracyStore | None = InMemoryCallerAccuracyStore()
        else:
            logger.info("Using Redis-backed caller accuracy storage")
            self._fallback = None

    def _make_redis_key(self, user_id: str) -> str:
        return f"{self.key_prefix}{user_id}"

    def get(self, user_id: str) -> CallerAccuracy:
        if self._fallback is not None:
            return self._fallback.get(user_id)

        try:
            raw = self.redis.get(self._make_redis_key(user_id))
        except redis.RedisError as e:
            logger.error("Redis error getting caller accuracy: %s", e)
            return CallerAccuracy()

        if raw is None:
            return CallerAccuracy()
        try:
            return CallerAccuracy.from_dict(json.loads(raw))
        except (TypeError, ValueError) as e:
            logger.error("Corrupt caller accuracy for %s: %s", user_id[:8], e)
            return CallerAccuracy()

    def record_outcome(
        self, user_id: str, confirmed: bool, mistake_category: str | None = None
    ) -> CallerAccuracy:
        if self._fallback is not None:
            return self._fallback.record_outcome(user_id, confirmed, mistake_category)

        accuracy = self.get(user_id)
        accuracy.record(confirmed, mistake_category)
        try:
            self.redis.setex(
                self._make_redis_key(user_id),
                self.default_ttl_seconds,
                json.dumps(accuracy.to_dict()),
            )
            logger.debug(
                "Recorded outcome for %s: confirmed=%s, total=%d",
                user_id[:8],
                confirmed,
                accuracy.total,
            )
        except redis.RedisError as e:
            logger.error("Redis error recording caller accuracy: %s", e)
        return accuracy


def get_caller_accuracy_store() -> CallerAccuracyStore:
    """Get a caller accuracy store, Redis-backed when Redis is reachable."""
    return RedisCallerAccuracyStore(redis_client=get_redis_client())
