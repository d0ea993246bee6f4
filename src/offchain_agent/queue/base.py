"""
Контракт клиента очереди.

Назначение:
- одна и та же точка входа для push / pull / inline транспорта
- единый контракт обработчика: режим не меняет семантику

Контракт обработчика handler(envelope) -> None:
- вернулся без ошибки      -> ack / commit offset
- TransientError (и прочие) -> повторная доставка с attempt + 1
- PermanentError           -> dead-letter + ack
- FatalError               -> пробрасывается из consume (уровень процесса)
- ShutdownRequested        -> сообщение не подтверждается (release), доставится заново
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from offchain_agent.common.errors import FatalError, PermanentError, ShutdownRequested, error_kind
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.metrics import record_queue_task
from offchain_agent.contracts.envelope import JobEnvelope

log = get_project_logger()

Handler = Callable[[JobEnvelope], None]


@dataclass(frozen=True)
class PublishAck:
    queue: str
    job_id: str
    message_id: str
    attempt: int = 0


@dataclass(frozen=True)
class QueueDepthSample:
    queue_name: str
    depth: int
    oldest_message_age: float  # секунды; 0.0 если очередь пуста
    sampled_at: datetime


class QueueClient(Protocol):
    """
    Клиент очереди (at-least-once).
    """

    mode: str

    def publish(self, queue: str, envelope: JobEnvelope, *, delay_sec: int = 0) -> PublishAck:
        """Поставить конверт в очередь. PublishError после транспортных ретраев."""
        ...

    def consume(self, queue: str, handler: Handler, *, cancel: threading.Event) -> None:
        """Обрабатывать сообщения до сигнала отмены. ConsumeError после ретраев."""
        ...

    def depth(self, queue: str) -> QueueDepthSample:
        """Глубина очереди и возраст самого старого сообщения."""
        ...


# =============================================================================
# РЕЗУЛЬТАТ ОБРАБОТКИ ОДНОГО СООБЩЕНИЯ
# =============================================================================
@dataclass(frozen=True)
class Disposition:
    action: str  # ack|retry|dead_letter|release
    error: str | None = None
    error_code: str | None = None


def run_handler(
    queue: str, envelope: JobEnvelope, handler: Handler, *, max_attempts: int
) -> Disposition:
    """
    Выполнить обработчик и решить, что делать с сообщением.
    Общая часть для всех транспортов.
    """
    try:
        handler(envelope)
    except FatalError:
        record_queue_task(queue=queue, result="fatal")
        raise
    except ShutdownRequested:
        record_queue_task(queue=queue, result="released")
        log.info(
            "queue_task_released",
            extra={"payload": {"queue": queue, "job_id": envelope.job_id, "attempt": envelope.attempt}},
        )
        return Disposition(action="release")
    except PermanentError as e:
        record_queue_task(queue=queue, result="dead_letter")
        log.warning(
            "queue_task_permanent_error",
            extra={"payload": {"queue": queue, "job_id": envelope.job_id, "code": e.code, "error": str(e)[:300]}},
        )
        return Disposition(action="dead_letter", error=str(e)[:500], error_code=e.code)
    except Exception as e:
        code = getattr(e, "code", None) or error_kind(e)
        if envelope.attempt + 1 >= max_attempts:
            record_queue_task(queue=queue, result="dead_letter")
            log.error(
                "queue_task_attempts_exhausted",
                extra={
                    "payload": {
                        "queue": queue,
                        "job_id": envelope.job_id,
                        "attempt": envelope.attempt,
                        "max_attempts": max_attempts,
                        "error": str(e)[:300],
                    }
                },
            )
            return Disposition(action="dead_letter", error=str(e)[:500], error_code=str(code))
        record_queue_task(queue=queue, result="retry")
        log.warning(
            "queue_task_retry",
            extra={
                "payload": {
                    "queue": queue,
                    "job_id": envelope.job_id,
                    "attempt": envelope.attempt,
                    "error": str(e)[:300],
                }
            },
        )
        return Disposition(action="retry", error=str(e)[:500], error_code=str(code))

    record_queue_task(queue=queue, result="ok")
    return Disposition(action="ack")
