"""
Выбор транспорта очереди по QUEUE_MODE.
"""

from __future__ import annotations

import threading

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import FatalError
from offchain_agent.domain.enums import QueueMode

from .base import QueueClient

_client: QueueClient | None = None
_guard = threading.Lock()


def build_queue_client() -> QueueClient:
    s = get_settings()
    raw = (s.queue_mode or "").strip().lower()
    try:
        mode = QueueMode(raw)
    except ValueError as e:
        raise FatalError("Неизвестный QUEUE_MODE", details={"queue_mode": raw}) from e

    if mode == QueueMode.inline:
        from .memory import MemoryQueueClient

        return MemoryQueueClient(
            visibility_timeout_sec=float(s.queue_visibility_timeout_sec),
            max_attempts=s.queue_max_attempts,
        )
    if mode == QueueMode.push:
        from .push import PushQueueClient

        return PushQueueClient()

    from .streams import StreamsQueueClient

    return StreamsQueueClient()


def get_queue_client() -> QueueClient:
    """Клиент очереди процесса (singleton)."""
    global _client
    with _guard:
        if _client is None:
            _client = build_queue_client()
        return _client


def set_queue_client(client: QueueClient | None) -> None:
    """Подменить клиент (тесты, inline-стенд). None = пересоздать при следующем вызове."""
    global _client
    with _guard:
        _client = client
