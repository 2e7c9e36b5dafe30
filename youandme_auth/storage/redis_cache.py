from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis wrapper for hot auth state.

    Holds session validation entries keyed by access-token ``jti``, failed
    attempt counters and lockouts, single-use two-factor and email
    confirmation tokens, and rate-limit buckets. The session registry stays
    authoritative; every entry here is either short-lived or evicted on
    revocation.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Record a failure and trip the lockout in one step; the counter window
    # starts at the first failure.
    _FAILED_ATTEMPT_SCRIPT = """
local locked_ttl = redis.call('TTL', KEYS[1])
if locked_ttl > 0 then
  return {1, -1, locked_ttl}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
  redis.call('DEL', KEYS[2])
  return {1, attempts, tonumber(ARGV[3])}
end

return {0, attempts, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _hashed(key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # session validation entries

    async def cache_token_session(
        self, token_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        if ttl_seconds <= 0:
            return
        await self.client.set(
            f"auth:token:{token_id}", json.dumps(payload), ex=ttl_seconds
        )

    async def get_token_session(self, token_id: str) -> Optional[Dict[str, Any]]:
        return self._loads(await self.client.get(f"auth:token:{token_id}"))

    async def evict_token_sessions(self, token_ids: Iterable[str]) -> int:
        keys = [f"auth:token:{token_id}" for token_id in token_ids if token_id]
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    # failed attempts and lockouts

    async def lockout_remaining(self, scope: str, subject: str) -> int:
        """Seconds left on a lockout, 0 when the subject is not locked."""
        ttl = await self.client.ttl(f"{scope}:lockout:{self._hashed(subject)}")
        return max(0, int(ttl or 0))

    async def record_failed_attempt(
        self,
        scope: str,
        subject: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> Tuple[bool, int, int]:
        """Atomically count a failure; returns (locked, attempts, lockout_seconds_left)."""
        digest = self._hashed(subject)
        result = await self.client.eval(
            self._FAILED_ATTEMPT_SCRIPT,
            2,
            f"{scope}:lockout:{digest}",
            f"{scope}:attempts:{digest}",
            max_attempts,
            window_seconds,
            lockout_seconds,
        )
        return bool(int(result[0])), int(result[1]), int(result[2])

    async def clear_failed_attempts(self, scope: str, subject: str) -> None:
        await self.client.delete(f"{scope}:attempts:{self._hashed(subject)}")

    async def clear_lockout(self, scope: str, subject: str) -> None:
        digest = self._hashed(subject)
        await self.client.delete(f"{scope}:attempts:{digest}", f"{scope}:lockout:{digest}")

    # single-use tokens

    async def store_single_use(
        self, namespace: str, token: str, value: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"{namespace}:{self._hashed(token)}", json.dumps(value), ex=ttl_seconds
        )

    async def peek_single_use(
        self, namespace: str, token: str
    ) -> Optional[Dict[str, Any]]:
        return self._loads(await self.client.get(f"{namespace}:{self._hashed(token)}"))

    async def pop_single_use(self, namespace: str, token: str) -> Optional[Dict[str, Any]]:
        """Read and delete in one command so only one caller can redeem a token."""
        return self._loads(
            await self.client.getdel(f"{namespace}:{self._hashed(token)}")
        )

    @staticmethod
    def _loads(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return None

    # rate limits

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket check; the key is hashed to avoid delimiter collisions."""

        safe_key = f"rate:{self._hashed(key)}"
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self.client.eval(
            self._TOKEN_BUCKET_SCRIPT,
            1,
            safe_key,
            time.time(),
            refill_rate,
            limit,
            max(1, cost),
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool


class _SyncClientAdapter:
    """Exposes a sync Redis client through awaitable methods.

    Only the commands RedisCache issues are adapted.
    """

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync.getdel(key)

    async def delete(self, *keys: str) -> int:
        return self._sync.delete(*keys)

    async def ttl(self, key: str) -> int:
        return self._sync.ttl(key)

    async def eval(self, script: str, numkeys: int, *args: Any) -> Any:
        return self._sync.eval(script, numkeys, *args)

    def close(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """RedisCache over a synchronous client, for the test suite.

    pytest runs each coroutine test in a fresh event loop; a sync client never
    binds to one, so the same cache survives across tests.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self.client.close()
