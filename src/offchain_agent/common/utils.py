"""
Общие утилиты проекта.

Правила:
- сюда кладём только реально общие функции
- без бизнес-логики
"""

from __future__ import annotations

import hashlib
import threading
import time

_ANY_EVENT_POLL_SEC = 0.05


def sha256_hex(data: bytes) -> str:
    """
    SHA256 канонических байт - ключ идемпотентности артефактов.
    """
    return hashlib.sha256(data).hexdigest()


def stable_bucket(key: str, buckets: int) -> int:
    """Стабильное (между процессами) распределение ключа по корзинам."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") % max(1, buckets)


class AnyEvent:
    """
    Несколько threading.Event как одно: установлен, если установлен любой.
    Нужен там, где пауза должна прерываться и отменой задания, и остановкой процесса.
    """

    def __init__(self, *events: threading.Event | None) -> None:
        self.events = [e for e in events if e is not None]

    def is_set(self) -> bool:
        return any(e.is_set() for e in self.events)

    def wait(self, timeout: float) -> bool:
        deadline = time.monotonic() + max(0.0, timeout)
        sleeper = self.events[0] if self.events else threading.Event()
        while not self.is_set():
            left = deadline - time.monotonic()
            if left <= 0:
                return False
            sleeper.wait(min(left, _ANY_EVENT_POLL_SEC))
        return True


def wait_or_cancelled(cancel: threading.Event | AnyEvent | None, timeout_sec: float) -> bool:
    """
    Пауза, прерываемая сигналом отмены.
    Возвращает True, если отмена пришла во время ожидания.
    """
    if timeout_sec <= 0:
        return bool(cancel and cancel.is_set())
    if cancel is None:
        threading.Event().wait(timeout_sec)
        return False
    return cancel.wait(timeout_sec)
