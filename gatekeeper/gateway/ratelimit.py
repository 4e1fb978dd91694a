"""
Gatekeeper - Request Rate Limiting

Fixed-window request counters keyed by client IP or authenticated user.

Two limiter instances are configured: one keyed by IP for anonymous
traffic (default 100/min) and one keyed by user id for authenticated
traffic (default 200/min). Requests without an identity fall back to the
IP limiter.

Counters live in a RateLimitStore whose awaitable ``hit`` is atomic per key:
- MemoryRateLimitStore: process-local, guarded by an asyncio lock. Limits
  are only enforced per replica.
- RedisRateLimitStore: one Lua script per hit on the asyncio client, shared
  by all replicas.

Windows expire lazily from timestamps; nothing runs in the background.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple
import asyncio
import logging
import math
import time

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from gatekeeper.auth.errors import PersistenceError, RateLimitExceeded


logger = logging.getLogger("gatekeeper.gateway")


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of one counted request.

    Attributes:
        limit: Window capacity
        remaining: Requests left in the window, never negative
        reset: Seconds until the window resets
    """
    allowed: bool
    limit: int
    remaining: int
    reset: int
    key: str

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


class RateLimitStore(Protocol):
    async def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        """Count one request; return (count in window, window start)."""
        ...


class MemoryRateLimitStore:
    """In-process bucket map. Safe across tasks on one loop, not across processes."""

    # Expired buckets are swept once the map grows past this many keys,
    # at most once per window
    MAX_KEYS = 10_000

    def __init__(self):
        self._buckets: Dict[str, Tuple[float, int]] = {}
        self._lock = asyncio.Lock()
        self._last_prune = float("-inf")

    async def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or now - bucket[0] >= window_seconds:
                bucket = (now, 0)
            start, count = bucket[0], bucket[1] + 1
            self._buckets[key] = (start, count)

            if len(self._buckets) > self.MAX_KEYS and now - self._last_prune >= window_seconds:
                self._prune(window_seconds, now)
            return count, start

    def _prune(self, window_seconds: int, now: float) -> None:
        self._last_prune = now
        expired = [k for k, (start, _) in self._buckets.items() if now - start >= window_seconds]
        for k in expired:
            del self._buckets[k]

    def __len__(self) -> int:
        return len(self._buckets)


class RedisRateLimitStore:
    """Shared counter store for multi-replica deployments."""

    # INCR then arm the TTL on the first hit of a window; atomic as one script
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, client: aioredis.Redis, prefix: str = "gatekeeper:ratelimit:"):
        self.client = client
        self.prefix = prefix
        self._script = client.register_script(self._FIXED_WINDOW_SCRIPT)

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 5.0) -> "RedisRateLimitStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        window_ms = int(window_seconds * 1000)
        try:
            count, ttl_ms = await self._script(keys=[self.prefix + key], args=[window_ms])
        except RedisError as e:
            raise PersistenceError(f"Rate limit store unavailable: {e.__class__.__name__}") from e
        elapsed = (window_ms - int(ttl_ms)) / 1000.0
        return int(count), now - elapsed

    async def aclose(self) -> None:
        await self.client.aclose()


def create_rate_limit_store(url: str) -> RateLimitStore:
    """memory:// for a process-local store, redis:// or rediss:// for a shared one."""
    if url.startswith("memory://"):
        return MemoryRateLimitStore()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisRateLimitStore.from_url(url)
    raise ValueError(f"Unsupported rate limit storage URL: {url}")


class FixedWindowRateLimiter:
    """
    Usage:
        limiter = FixedWindowRateLimiter(MemoryRateLimitStore(), capacity=100, window_seconds=60, name="ip")
        decision = await limiter.enforce("203.0.113.7")   # raises RateLimitExceeded when over budget
    """

    def __init__(
        self,
        store: RateLimitStore,
        capacity: int,
        window_seconds: int = 60,
        name: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        if capacity < 1 or window_seconds < 1:
            raise ValueError("capacity and window_seconds must be positive")
        self.store = store
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.name = name
        self.clock = clock

    async def check(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` and report whether it is within budget."""
        now = self.clock()
        count, window_start = await self.store.hit(f"{self.name}:{key}", self.window_seconds, now)
        reset = max(0, math.ceil(window_start + self.window_seconds - now))
        return RateLimitDecision(
            allowed=count <= self.capacity,
            limit=self.capacity,
            remaining=max(0, self.capacity - count),
            reset=reset,
            key=key,
        )

    async def enforce(self, key: str) -> RateLimitDecision:
        """
        Raises:
            RateLimitExceeded: Carries the decision for response headers
        """
        decision = await self.check(key)
        if not decision.allowed:
            logger.warning("ratelimit.rejected limiter=%s key=%s reset=%d", self.name, key, decision.reset)
            raise RateLimitExceeded(decision)
        return decision


class RateLimiters:
    """The IP limiter and the user limiter, sharing one counter store."""

    def __init__(self, ip: FixedWindowRateLimiter, user: FixedWindowRateLimiter):
        self.ip = ip
        self.user = user

    async def aclose(self) -> None:
        """Release connections held by the counter stores."""
        for store in {id(self.ip.store): self.ip.store, id(self.user.store): self.user.store}.values():
            close = getattr(store, "aclose", None)
            if close is not None:
                await close()

    @classmethod
    def from_settings(cls, settings, store: Optional[RateLimitStore] = None) -> "RateLimiters":
        if store is None:
            store = create_rate_limit_store(settings.RATE_LIMIT_STORAGE_URL)
        window = settings.RATE_LIMIT_WINDOW_SECONDS
        return cls(
            ip=FixedWindowRateLimiter(store, settings.RATE_LIMIT_PER_IP, window, name="ip"),
            user=FixedWindowRateLimiter(store, settings.RATE_LIMIT_PER_USER, window, name="user"),
        )

    def select(self, user_id: Optional[str], ip_address: str) -> Tuple[FixedWindowRateLimiter, str]:
        """User limiter when an identity is known, else the IP limiter."""
        if user_id:
            return self.user, user_id
        return self.ip, ip_address

    async def enforce(self, user_id: Optional[str], ip_address: str) -> RateLimitDecision:
        limiter, key = self.select(user_id, ip_address)
        return await limiter.enforce(key)
