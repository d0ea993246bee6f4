"""
In-process транспорт очереди (QUEUE_MODE=inline).

Назначение:
- dev-режим без Redis и брокера
- тесты: та же семантика visibility timeout, что и у pull-режима

Семантика:
- receive() скрывает сообщение на visibility_timeout
- не подтверждённое вовремя сообщение снова видно, attempt + 1, job_id тот же
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.metrics import record_publish
from offchain_agent.common.time import utc_now
from offchain_agent.contracts.envelope import JobEnvelope, decode, encode, redelivery

from .base import Handler, PublishAck, QueueDepthSample, run_handler
from .retry import backoff_delay_sec, dlq_name

log = get_project_logger()


@dataclass
class InMemoryMessage:
    message_id: str
    body: bytes
    visible_at: float
    published_at: float


@dataclass
class _InFlight:
    message: InMemoryMessage
    deadline: float
    consumer: str


class MemoryQueueClient:
    mode = "inline"

    def __init__(
        self,
        *,
        visibility_timeout_sec: float = 30.0,
        max_attempts: int = 5,
        poll_sec: float = 0.05,
        redelivery_base_ms: int = 0,
        redelivery_max_ms: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.visibility_timeout_sec = visibility_timeout_sec
        self.max_attempts = max_attempts
        self.poll_sec = poll_sec
        self.redelivery_base_ms = redelivery_base_ms
        self.redelivery_max_ms = redelivery_max_ms
        self._clock = clock
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._ready: dict[str, deque[InMemoryMessage]] = {}
        self._inflight: dict[str, dict[str, _InFlight]] = {}
        self.dead_letters: dict[str, list[dict]] = {}

    # -------------------------------------------------------------------------
    # Публикация
    # -------------------------------------------------------------------------
    def publish(self, queue: str, envelope: JobEnvelope, *, delay_sec: int = 0) -> PublishAck:
        now = self._clock()
        msg = InMemoryMessage(
            message_id=str(next(self._ids)),
            body=encode(envelope),
            visible_at=now + max(0, delay_sec),
            published_at=now,
        )
        with self._lock:
            self._ready.setdefault(queue, deque()).append(msg)
        record_publish(queue=queue, ok=True)
        return PublishAck(queue=queue, job_id=envelope.job_id, message_id=msg.message_id, attempt=envelope.attempt)

    # -------------------------------------------------------------------------
    # Низкоуровневые receive/ack (используются consume и тестами)
    # -------------------------------------------------------------------------
    def _reclaim_expired(self, queue: str, now: float) -> None:
        inflight = self._inflight.setdefault(queue, {})
        for msg_id, item in list(inflight.items()):
            if item.deadline > now:
                continue
            inflight.pop(msg_id)
            copy = redelivery(decode(item.message.body))
            self._ready.setdefault(queue, deque()).append(
                InMemoryMessage(
                    message_id=str(next(self._ids)),
                    body=encode(copy),
                    visible_at=now,
                    published_at=item.message.published_at,
                )
            )
            log.info(
                "queue_visibility_timeout_redelivery",
                extra={"payload": {"queue": queue, "job_id": copy.job_id, "attempt": copy.attempt}},
            )

    def receive(self, queue: str, *, consumer: str = "inline") -> tuple[str, JobEnvelope] | None:
        now = self._clock()
        with self._lock:
            self._reclaim_expired(queue, now)
            ready = self._ready.setdefault(queue, deque())
            for _ in range(len(ready)):
                msg = ready.popleft()
                if msg.visible_at > now:
                    ready.append(msg)
                    continue
                self._inflight.setdefault(queue, {})[msg.message_id] = _InFlight(
                    message=msg, deadline=now + self.visibility_timeout_sec, consumer=consumer
                )
                return msg.message_id, decode(msg.body)
        return None

    def ack(self, queue: str, message_id: str) -> bool:
        with self._lock:
            return self._inflight.setdefault(queue, {}).pop(message_id, None) is not None

    def release(self, queue: str, message_id: str) -> bool:
        """Вернуть сообщение в начало очереди без подтверждения (attempt не растёт)."""
        with self._lock:
            item = self._inflight.setdefault(queue, {}).pop(message_id, None)
            if item is None:
                return False
            item.message.visible_at = self._clock()
            self._ready.setdefault(queue, deque()).appendleft(item.message)
            return True

    def _dead_letter(self, queue: str, envelope: JobEnvelope, error: str | None, code: str | None) -> None:
        with self._lock:
            self.dead_letters.setdefault(dlq_name(queue), []).append(
                {"job_id": envelope.job_id, "attempt": envelope.attempt, "error": error, "error_code": code}
            )

    # -------------------------------------------------------------------------
    # Потребление
    # -------------------------------------------------------------------------
    def process_one(self, queue: str, handler: Handler, *, consumer: str = "inline") -> bool:
        """
        Обработать одно сообщение (если есть). True - что-то было обработано;
        сообщение, возвращённое в очередь при остановке, обработанным не считается.
        """
        item = self.receive(queue, consumer=consumer)
        if item is None:
            return False
        message_id, envelope = item
        disposition = run_handler(queue, envelope, handler, max_attempts=self.max_attempts)
        if disposition.action == "release":
            self.release(queue, message_id)
            return False
        if disposition.action == "retry":
            delay = backoff_delay_sec(
                envelope.attempt + 1, base_ms=self.redelivery_base_ms, max_ms=self.redelivery_max_ms
            )
            self.publish(queue, redelivery(envelope), delay_sec=int(delay))
        elif disposition.action == "dead_letter":
            self._dead_letter(queue, envelope, disposition.error, disposition.error_code)
        self.ack(queue, message_id)
        return True

    def drain(self, queue: str, handler: Handler, *, max_messages: int = 10_000) -> int:
        """Обработать всё доступное сейчас (inline-пайплайн, тесты)."""
        processed = 0
        while processed < max_messages and self.process_one(queue, handler):
            processed += 1
        return processed

    def consume(self, queue: str, handler: Handler, *, cancel: threading.Event) -> None:
        log.info("queue_consume_started", extra={"payload": {"queue": queue, "mode": self.mode}})
        while not cancel.is_set():
            if not self.process_one(queue, handler):
                cancel.wait(self.poll_sec)
        log.info("queue_consume_stopped", extra={"payload": {"queue": queue, "mode": self.mode}})

    # -------------------------------------------------------------------------
    # Интроспекция
    # -------------------------------------------------------------------------
    def depth(self, queue: str) -> QueueDepthSample:
        now = self._clock()
        with self._lock:
            ready = list(self._ready.get(queue, ()))
            inflight = [i.message for i in self._inflight.get(queue, {}).values()]
        messages = ready + inflight
        oldest = min((m.published_at for m in messages), default=now)
        return QueueDepthSample(
            queue_name=queue,
            depth=len(messages),
            oldest_message_age=max(0.0, now - oldest),
            sampled_at=utc_now(),
        )
