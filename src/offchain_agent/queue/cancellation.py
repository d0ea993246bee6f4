"""
Запросы на отмену заданий и запусков.

Зачем нужно:
- отмена конкретного задания пайплайна / запуска бэкапа по job_id (через API)
- остановка процесса (SIGTERM) - это НЕ отмена: сообщение уходит на повторную доставку

Реализация:
- ключ "cancel:<job_id>" в Redis с TTL
- в inline-режиме - локальный словарь процесса
"""

from __future__ import annotations

import threading
import time

from offchain_agent.common.config import get_settings
from offchain_agent.common.logging import get_project_logger

from .redis import redis_client

log = get_project_logger()

_LOCAL_REQUESTS: dict[str, float] = {}
_LOCAL_LOCK = threading.Lock()

DEFAULT_TTL_SEC = 60 * 60 * 24


def _key(job_id: str) -> str:
    return f"cancel:{job_id}"


def _inline() -> bool:
    return (get_settings().queue_mode or "").strip().lower() == "inline"


def request_cancel(job_id: str, ttl_sec: int = DEFAULT_TTL_SEC) -> None:
    key = _key(job_id)
    if _inline():
        with _LOCAL_LOCK:
            _LOCAL_REQUESTS[key] = time.monotonic() + max(1, int(ttl_sec))
    else:
        redis_client().set(name=key, value="1", ex=ttl_sec)
    log.info("job_cancel_requested", extra={"payload": {"job_id": job_id}})


def is_cancel_requested(job_id: str) -> bool:
    key = _key(job_id)
    if _inline():
        with _LOCAL_LOCK:
            return _LOCAL_REQUESTS.get(key, 0.0) > time.monotonic()
    return redis_client().get(key) is not None


def reset_local() -> None:
    with _LOCAL_LOCK:
        _LOCAL_REQUESTS.clear()
