"""
Redis-клиент для очередей, аренд и ключей идемпотентности.

Назначение:
- Единая точка подключения к Redis
- Используется транспортом streams, push-леджером, блокировками и воркерами
"""

from __future__ import annotations

import redis

from offchain_agent.common.config import get_settings

_client: redis.Redis | None = None


def redis_client() -> redis.Redis:
    """
    Singleton Redis client.
    """
    global _client
    if _client is None:
        _client = redis.Redis.from_url(get_settings().redis_url, decode_responses=True)
    return _client


# =============================================================================
# ОПЕРАЦИИ "ТОЛЬКО ВЛАДЕЛЕЦ" (атомарно, Lua)
# =============================================================================
_COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_COMPARE_AND_PEXPIRE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
end
return 0
"""


def compare_and_delete(r, key: str, owner: str) -> bool:
    """DEL ключа, только если в нём всё ещё значение владельца."""
    return bool(r.register_script(_COMPARE_AND_DELETE)(keys=[key], args=[owner]))


def compare_and_pexpire(r, key: str, owner: str, ttl_ms: int) -> bool:
    """Продление TTL, только если ключ всё ещё принадлежит владельцу."""
    return bool(r.register_script(_COMPARE_AND_PEXPIRE)(keys=[key], args=[owner, int(ttl_ms)]))
