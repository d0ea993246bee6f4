"""
Retry/DLQ утилиты.

Назначение:
- экспоненциальный backoff с full jitter для транспортных и стадийных ретраев
- ограниченное число попыток, после - поднимаем последнюю ошибку
- (как и раньше) DLQ как отдельная очередь <queue>:dlq

Важно:
- это синхронная реализация (подходит для наших воркеров)
- паузы прерываются сигналом отмены (threading.Event)
"""

from __future__ import annotations

import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from offchain_agent.common.errors import ErrCode, PermanentError, TransientError
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.utils import AnyEvent, wait_or_cancelled

log = get_project_logger()

T = TypeVar("T")


def dlq_name(queue_name: str) -> str:
    return f"{queue_name}:dlq"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_ms: int = 200
    max_ms: int = 5000

    @classmethod
    def from_ms(cls, attempts: int, base_ms: int, max_ms: int) -> RetryPolicy:
        return cls(attempts=max(1, int(attempts)), base_ms=max(0, int(base_ms)), max_ms=max(0, int(max_ms)))


def backoff_delay_sec(attempt: int, *, base_ms: int, max_ms: int, rng: random.Random | None = None) -> float:
    """
    Full jitter: uniform(0, min(max, base * 2^(attempt-1))).
    attempt считается с 1.
    """
    ceiling = min(float(max_ms), float(base_ms) * (2 ** max(0, attempt - 1)))
    if ceiling <= 0:
        return 0.0
    r = rng or random
    return r.uniform(0, ceiling) / 1000.0


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    op: str,
    cancel: threading.Event | AnyEvent | None = None,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> tuple[T, int]:
    """
    Вызвать fn с ретраями.

    Возвращает (результат, число_попыток).
    - PermanentError не повторяется
    - исключения вне retry_on не повторяются
    - после исчерпания попыток поднимается последняя ошибка
    - отмена во время паузы -> TransientError(code=cancelled)
    """
    last_error: BaseException | None = None
    for attempt in range(1, policy.attempts + 1):
        if cancel is not None and cancel.is_set():
            raise TransientError(ErrCode.CANCELLED, "Операция отменена", details={"op": op})
        try:
            return fn(), attempt
        except PermanentError:
            raise
        except retry_on as e:
            last_error = e
            log.warning(
                f"{op}_retry",
                extra={"payload": {"attempt": attempt, "max_attempts": policy.attempts, "error": str(e)[:300]}},
            )
            if on_retry is not None:
                on_retry(attempt, e)
            if attempt >= policy.attempts:
                break
            delay = backoff_delay_sec(attempt, base_ms=policy.base_ms, max_ms=policy.max_ms)
            if wait_or_cancelled(cancel, delay):
                raise TransientError(ErrCode.CANCELLED, "Операция отменена", details={"op": op}) from e

    assert last_error is not None
    raise last_error
