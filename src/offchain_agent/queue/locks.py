"""
Короткие распределённые блокировки по ключу.

Назначение:
- сериализовать назначение версии снапшота для одной реплики
  между параллельными запусками бэкапа

Реализация:
- Redis SET NX PX с токеном владельца; снятие только своим токеном (Lua, атомарно)
- в inline-режиме - threading.Lock на ключ (один процесс)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import ErrCode, TransientError
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.utils import wait_or_cancelled

from .redis import compare_and_delete, redis_client

log = get_project_logger()

_LOCAL_LOCKS: dict[str, threading.Lock] = {}
_LOCAL_GUARD = threading.Lock()

_POLL_SEC = 0.05


def _local_lock(key: str) -> threading.Lock:
    with _LOCAL_GUARD:
        lock = _LOCAL_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _LOCAL_LOCKS[key] = lock
        return lock


def _acquire_redis(key: str, token: str, ttl_ms: int) -> bool:
    return bool(redis_client().set(key, token, nx=True, px=ttl_ms))


def _release_redis(key: str, token: str) -> None:
    compare_and_delete(redis_client(), key, token)


@contextmanager
def key_lock(
    key: str,
    *,
    ttl_sec: int,
    wait_sec: float,
    cancel: threading.Event | None = None,
) -> Iterator[None]:
    """
    Эксклюзивная секция по ключу.
    Не дождались за wait_sec (или отмена) -> TransientError(conflict).
    """
    lock_key = f"lock:{key}"
    deadline = time.monotonic() + max(0.0, wait_sec)

    if (get_settings().queue_mode or "").strip().lower() == "inline":
        lock = _local_lock(lock_key)
        while not lock.acquire(timeout=_POLL_SEC):
            if time.monotonic() >= deadline or (cancel is not None and cancel.is_set()):
                raise TransientError(ErrCode.CONFLICT, "Блокировка занята", details={"key": key})
        try:
            yield
        finally:
            lock.release()
        return

    token = uuid4().hex
    ttl_ms = max(1000, int(ttl_sec * 1000))
    while not _acquire_redis(lock_key, token, ttl_ms):
        if time.monotonic() >= deadline or wait_or_cancelled(cancel, _POLL_SEC):
            raise TransientError(ErrCode.CONFLICT, "Блокировка занята", details={"key": key})
    try:
        yield
    finally:
        try:
            _release_redis(lock_key, token)
        except Exception as e:
            log.warning(
                "key_lock_release_failed",
                extra={"payload": {"key": key, "error": str(e)[:200]}},
            )
