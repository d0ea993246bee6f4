"""
Идемпотентность (дедупликация) побочных эффектов.

Зачем нужно:
- очередь доставляет at-least-once: один и тот же job_id приходит повторно
- воркер может упасть между публикацией под-задачи и ack
- важно не дублировать fan-out и записи

Реализация:
- хранение ключей в Redis с TTL (SET NX)
- в inline-режиме - локальный словарь процесса
- ключ формируется как "idem:<scope>:<entity_id>:<idempotency_key>"
"""

from __future__ import annotations

import threading
import time

from offchain_agent.common.config import get_settings

from .redis import redis_client

_LOCAL_IDEM_KEYS: dict[str, float] = {}
_LOCAL_LOCK = threading.Lock()

# TTL по умолчанию (сек) для идемпотентных ключей
DEFAULT_TTL_SEC = 60 * 60 * 24 * 7  # 7 суток: дольше максимального окна редоставки


def _key(scope: str, entity_id: str, idem_key: str) -> str:
    return f"idem:{scope}:{entity_id}:{idem_key}"


def _inline() -> bool:
    return (get_settings().queue_mode or "").strip().lower() == "inline"


def check_and_set(
    scope: str, entity_id: str, idem_key: str, ttl_sec: int = DEFAULT_TTL_SEC
) -> bool:
    """
    Возвращает True, если ключ НОВЫЙ (т.е. можно выполнять побочный эффект),
    и False, если ключ уже был (дедуп).

    Использует SET NX.
    """
    key = _key(scope, entity_id, idem_key)
    if _inline():
        now = time.monotonic()
        with _LOCAL_LOCK:
            expires = _LOCAL_IDEM_KEYS.get(key, 0.0)
            if expires > now:
                return False
            _LOCAL_IDEM_KEYS[key] = now + max(1, int(ttl_sec))
            if len(_LOCAL_IDEM_KEYS) > 20_000:
                for k, exp in list(_LOCAL_IDEM_KEYS.items()):
                    if exp <= now:
                        _LOCAL_IDEM_KEYS.pop(k, None)
        return True

    r = redis_client()
    ok = r.set(name=key, value="1", nx=True, ex=ttl_sec)
    return bool(ok)


def forget(scope: str, entity_id: str, idem_key: str) -> None:
    """
    Снять ключ: побочный эффект не состоялся и должен быть повторён.
    """
    key = _key(scope, entity_id, idem_key)
    if _inline():
        with _LOCAL_LOCK:
            _LOCAL_IDEM_KEYS.pop(key, None)
        return
    redis_client().delete(key)
