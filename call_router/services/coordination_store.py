"""
Coordination Store
Shared Redis state for counters, rotation pointers, locks and idempotency markers
"""

import time
from functools import wraps
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from call_router.core.config import settings
from call_router.core.exceptions import CoordinationError
from call_router.core.logging import get_logger

logger = get_logger(__name__)

# Global Redis pool
_redis_pool: Optional[redis.ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get Redis client with connection pooling and bounded timeouts"""
    global _redis_pool, _redis_client

    if _redis_client is None:
        _redis_pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_connect_timeout,
            decode_responses=True
        )
        _redis_client = redis.Redis(connection_pool=_redis_pool)

    return _redis_client


async def close_redis():
    """Close Redis connection"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None


class CoordinationKeys:
    """
    Builds every coordination key.

    All keys start with the tenant segment; group-level state adds the group
    and the strategy that owns it.
    """

    TENANT = "tenant:{tenant_id}"
    GROUP = TENANT + ":group:{group_id}"

    LOAD_BALANCED_AGENT = GROUP + ":load_balanced:agent:{agent_id}"
    ROUND_ROBIN_CURRENT = GROUP + ":round_robin:current"
    ROUND_ROBIN_AGENTS = GROUP + ":round_robin:agents"
    PRIORITY_ROTATION = GROUP + ":priority:level_{priority}:rotation"
    GROUP_STRATEGY_LOCK = GROUP + ":strategy_lock"
    GROUP_UPDATE_LOCK = GROUP + ":update_lock"

    ROUTING_LOCK = TENANT + ":routing:lock:{session_token}"
    IDEMPOTENCY = TENANT + ":webhook:idempotent:{event_type}:{session_token}:{event_id}"
    SESSION_STATE = TENANT + ":session:{session_token}:state"
    SESSION_HISTORY = TENANT + ":session:{session_token}:history"
    AGENT_ACTIVE_CALLS = TENANT + ":agent:{agent_id}:active_calls"
    EVENTS = TENANT + ":events"

    @staticmethod
    def _build(template: str, **parts: Any) -> str:
        values = {}
        for name, value in parts.items():
            text = str(value).strip() if value is not None else ""
            if not text:
                raise ValueError(f"Coordination key segment '{name}' must not be empty")
            values[name] = text
        return template.format(**values)

    @classmethod
    def group_prefix(cls, tenant_id: int, group_id: int) -> str:
        return cls._build(cls.GROUP, tenant_id=tenant_id, group_id=group_id) + ":"

    @classmethod
    def load_balanced_agent(cls, tenant_id: int, group_id: int, agent_id: int) -> str:
        return cls._build(cls.LOAD_BALANCED_AGENT, tenant_id=tenant_id, group_id=group_id, agent_id=agent_id)

    @classmethod
    def round_robin_current(cls, tenant_id: int, group_id: int) -> str:
        return cls._build(cls.ROUND_ROBIN_CURRENT, tenant_id=tenant_id, group_id=group_id)

    @classmethod
    def round_robin_agents(cls, tenant_id: int, group_id: int) -> str:
        return cls._build(cls.ROUND_ROBIN_AGENTS, tenant_id=tenant_id, group_id=group_id)

    @classmethod
    def priority_rotation(cls, tenant_id: int, group_id: int, priority: int) -> str:
        return cls._build(cls.PRIORITY_ROTATION, tenant_id=tenant_id, group_id=group_id, priority=priority)

    @classmethod
    def group_strategy_lock(cls, tenant_id: int, group_id: int) -> str:
        return cls._build(cls.GROUP_STRATEGY_LOCK, tenant_id=tenant_id, group_id=group_id)

    @classmethod
    def group_update_lock(cls, tenant_id: int, group_id: int) -> str:
        return cls._build(cls.GROUP_UPDATE_LOCK, tenant_id=tenant_id, group_id=group_id)

    @classmethod
    def routing_lock(cls, tenant_id: int, session_token: str) -> str:
        return cls._build(cls.ROUTING_LOCK, tenant_id=tenant_id, session_token=session_token)

    @classmethod
    def idempotency(cls, tenant_id: int, event_type: str, session_token: str, event_id: str) -> str:
        return cls._build(
            cls.IDEMPOTENCY,
            tenant_id=tenant_id,
            event_type=event_type,
            session_token=session_token,
            event_id=event_id
        )

    @classmethod
    def session_state(cls, tenant_id: int, session_token: str) -> str:
        return cls._build(cls.SESSION_STATE, tenant_id=tenant_id, session_token=session_token)

    @classmethod
    def session_history(cls, tenant_id: int, session_token: str) -> str:
        return cls._build(cls.SESSION_HISTORY, tenant_id=tenant_id, session_token=session_token)

    @classmethod
    def agent_active_calls(cls, tenant_id: int, agent_id: int) -> str:
        return cls._build(cls.AGENT_ACTIVE_CALLS, tenant_id=tenant_id, agent_id=agent_id)

    @classmethod
    def events(cls, tenant_id: int) -> str:
        return cls._build(cls.EVENTS, tenant_id=tenant_id)


# Deletes the key only while it still holds the caller's value
COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""

# Adds a member only while the set holds fewer than ARGV[2] members (negative means no limit)
BOUNDED_SET_ADD = """
if redis.call('sismember', KEYS[1], ARGV[1]) == 1 then
    redis.call('expire', KEYS[1], ARGV[3])
    return 1
end
local limit = tonumber(ARGV[2])
if limit >= 0 and redis.call('scard', KEYS[1]) >= limit then
    return 0
end
redis.call('sadd', KEYS[1], ARGV[1])
redis.call('expire', KEYS[1], ARGV[3])
return 1
"""


def _coordinated(func):
    """Turn Redis failures into retryable CoordinationError"""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisError as e:
            logger.error(f"Coordination store {func.__name__} failed: {e}")
            raise CoordinationError(
                f"Coordination store unavailable: {e}",
                operation=func.__name__
            ) from e

    return wrapper


class CoordinationStore:
    """
    Typed atomic operations over Redis.

    Business code never talks to the Redis client directly; every mutation of
    shared state goes through one of these primitives or through a lock.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self._redis = client

    async def _client(self) -> redis.Redis:
        if self._redis is not None:
            return self._redis
        return await get_redis()

    @staticmethod
    def now() -> float:
        return time.time()

    # Strings

    @_coordinated
    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        client = await self._client()
        return bool(await client.set(key, value, nx=True, ex=ttl))

    @_coordinated
    async def set_if_present(self, key: str, value: str, ttl: int) -> bool:
        client = await self._client()
        return bool(await client.set(key, value, xx=True, ex=ttl))

    @_coordinated
    async def get(self, key: str) -> Optional[str]:
        client = await self._client()
        return await client.get(key)

    @_coordinated
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        client = await self._client()
        await client.set(key, value, ex=ttl)

    @_coordinated
    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = await self._client()
        return await client.delete(*keys)

    @_coordinated
    async def delete_if_equals(self, key: str, expected: str) -> bool:
        client = await self._client()
        return bool(await client.eval(COMPARE_AND_DELETE, 1, key, expected))

    @_coordinated
    async def delete_prefix(self, prefix: str) -> int:
        client = await self._client()
        deleted = 0
        batch: List[str] = []
        async for key in client.scan_iter(match=f"{prefix}*", count=200):
            batch.append(key)
            if len(batch) >= 200:
                deleted += await client.delete(*batch)
                batch = []
        if batch:
            deleted += await client.delete(*batch)
        return deleted

    @_coordinated
    async def increment(self, key: str, ttl: Optional[int] = None) -> int:
        client = await self._client()
        pipe = client.pipeline()
        pipe.incr(key)
        if ttl:
            pipe.expire(key, ttl)
        results = await pipe.execute()
        return int(results[0])

    @_coordinated
    async def ttl(self, key: str) -> int:
        client = await self._client()
        return await client.ttl(key)

    # Timestamp logs (sorted sets scored by epoch seconds)

    @_coordinated
    async def record_timestamp(self, key: str, member: str, timestamp: float, ttl: int) -> None:
        client = await self._client()
        pipe = client.pipeline()
        pipe.zadd(key, {member: timestamp})
        pipe.expire(key, ttl)
        await pipe.execute()

    @_coordinated
    async def prune_before(self, key: str, cutoff: float) -> int:
        client = await self._client()
        return await client.zremrangebyscore(key, "-inf", f"({cutoff}")

    @_coordinated
    async def count_since(self, key: str, since: float) -> int:
        client = await self._client()
        return await client.zcount(key, since, "+inf")

    # Hashes and lists

    @_coordinated
    async def hash_get_all(self, key: str) -> Dict[str, str]:
        client = await self._client()
        return await client.hgetall(key)

    @_coordinated
    async def list_range(self, key: str) -> List[str]:
        client = await self._client()
        return await client.lrange(key, 0, -1)

    @_coordinated
    async def save_session(
        self,
        state_key: str,
        state: Dict[str, str],
        history_key: str,
        history_entry: str,
        ttl: int
    ) -> None:
        """Write session fields and append one history entry in a single transaction"""
        client = await self._client()
        pipe = client.pipeline(transaction=True)
        pipe.hset(state_key, mapping=state)
        pipe.expire(state_key, ttl)
        pipe.rpush(history_key, history_entry)
        pipe.expire(history_key, ttl)
        await pipe.execute()

    @_coordinated
    async def update_session(self, state_key: str, state: Dict[str, str], history_key: str, ttl: int) -> None:
        """Write session fields and refresh the TTL of both session keys without adding history"""
        client = await self._client()
        pipe = client.pipeline(transaction=True)
        pipe.hset(state_key, mapping=state)
        pipe.expire(state_key, ttl)
        pipe.expire(history_key, ttl)
        await pipe.execute()

    # Sets

    @_coordinated
    async def set_add(self, key: str, member: str, ttl: int) -> None:
        client = await self._client()
        pipe = client.pipeline()
        pipe.sadd(key, member)
        pipe.expire(key, ttl)
        await pipe.execute()

    @_coordinated
    async def set_add_bounded(self, key: str, member: str, limit: Optional[int], ttl: int) -> bool:
        """Add member unless the set is already full; re-adding an existing member always succeeds"""
        client = await self._client()
        bound = -1 if limit is None else limit
        return bool(await client.eval(BOUNDED_SET_ADD, 1, key, member, bound, ttl))

    @_coordinated
    async def set_remove(self, key: str, member: str) -> int:
        client = await self._client()
        return await client.srem(key, member)

    @_coordinated
    async def set_size(self, key: str) -> int:
        client = await self._client()
        return await client.scard(key)

    # Pub/Sub and health

    @_coordinated
    async def publish(self, channel: str, message: str) -> int:
        client = await self._client()
        return await client.publish(channel, message)

    @_coordinated
    async def ping(self) -> bool:
        client = await self._client()
        return bool(await client.ping())


# Singleton instance
_coordination_store: Optional[CoordinationStore] = None


def get_coordination_store() -> CoordinationStore:
    """Get the CoordinationStore singleton instance"""
    global _coordination_store
    if _coordination_store is None:
        _coordination_store = CoordinationStore()
    return _coordination_store
