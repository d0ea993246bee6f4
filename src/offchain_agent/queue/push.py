"""
Push-транспорт очереди (QUEUE_MODE=push).

Модель:
- publish: HTTP-публикация в брокер (QStash-совместимый API),
  брокер сам вызывает наш callback POST /v1/push/{queue}
- доставка подписана JWT (см. common/security.verify_push_signature)
- ответ 2xx = ack; не-2xx = брокер доставит повторно
- повторная доставка с attempt + 1 делается явно: переопубликация с задержкой и ack текущей

Учёт в Redis:
- inflight:<queue> - ZSET job_id -> время первой постановки (мс), для depth/age
- <queue>:dlq     - LIST с конвертами, ушедшими в dead-letter
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import redis
import requests

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import (
    ErrCode,
    FatalError,
    PermanentError,
    PublishError,
    TransientError,
    UnauthorizedError,
)
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.metrics import record_publish, record_queue_task
from offchain_agent.common.security import verify_push_signature
from offchain_agent.common.time import utc_ms, utc_now
from offchain_agent.contracts.envelope import JobEnvelope, decode, encode, redelivery

from .base import Handler, PublishAck, QueueDepthSample, run_handler
from .redis import redis_client
from .retry import RetryPolicy, backoff_delay_sec, call_with_retry, dlq_name

log = get_project_logger()


def inflight_name(queue: str) -> str:
    return f"inflight:{queue}"


@dataclass(frozen=True)
class DeliveryResult:
    """Итог обработки одной push-доставки."""

    status_code: int
    action: str  # ack|retry|dead_letter|release|rejected|unavailable
    job_id: str | None = None
    error: str | None = None


class PushQueueClient:
    mode = "push"

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        redis_factory: Callable[[], Any] = redis_client,
    ) -> None:
        s = get_settings()
        if not s.push_broker_token:
            raise FatalError("PUSH_BROKER_TOKEN не задан для QUEUE_MODE=push")
        self.broker_url = s.push_broker_url.rstrip("/")
        self.token = s.push_broker_token
        self.callback_base_url = s.push_callback_base_url.rstrip("/")
        self.signing_key = s.push_signing_key
        self.signing_issuer = s.push_signing_issuer
        self.timeout_sec = max(1, int(s.push_timeout_sec))
        self.max_attempts = max(1, int(s.queue_max_attempts))
        self.redelivery_delay_ms = max(0, int(s.queue_redelivery_delay_sec) * 1000)
        self.policy = RetryPolicy.from_ms(s.queue_retries, s.queue_retry_backoff_ms, s.queue_retry_backoff_max_ms)
        self._session = session or requests.Session()
        self._redis_factory = redis_factory
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()

    @property
    def redis(self):
        return self._redis_factory()

    def callback_url(self, queue: str) -> str:
        return f"{self.callback_base_url}/v1/push/{quote(queue, safe='')}"

    # -------------------------------------------------------------------------
    # Публикация
    # -------------------------------------------------------------------------
    def _post(self, envelope: JobEnvelope, queue: str, delay_sec: int) -> str:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Deduplication-Id": f"{envelope.job_id}:{envelope.attempt}",
        }
        if delay_sec > 0:
            headers["Upstash-Delay"] = f"{int(delay_sec)}s"
        url = f"{self.broker_url}/publish/{self.callback_url(queue)}"
        try:
            resp = self._session.post(url, data=encode(envelope), headers=headers, timeout=self.timeout_sec)
        except requests.RequestException as e:
            raise TransientError(ErrCode.PUBLISH_ERROR, "Брокер недоступен", details={"error": str(e)[:200]}) from e
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(
                ErrCode.PUBLISH_ERROR, "Брокер вернул ошибку", details={"status": resp.status_code}
            )
        if resp.status_code >= 400:
            raise PublishError(details={"status": resp.status_code, "body": resp.text[:300]})
        try:
            data = resp.json()
        except ValueError:
            data = {}
        return str((data or {}).get("messageId") or "")

    def publish(self, queue: str, envelope: JobEnvelope, *, delay_sec: int = 0) -> PublishAck:
        try:
            message_id, _ = call_with_retry(
                lambda: self._post(envelope, queue, delay_sec), policy=self.policy, op="queue_publish"
            )
        except (TransientError, PublishError) as e:
            record_publish(queue=queue, ok=False)
            if isinstance(e, PublishError):
                raise
            raise PublishError(details={"queue": queue, "job_id": envelope.job_id, **(e.details or {})}) from e

        # nx: повторная постановка не "омолаживает" задачу
        try:
            self.redis.zadd(inflight_name(queue), {envelope.job_id: utc_ms()}, nx=True)
        except redis.RedisError as e:
            log.warning("push_ledger_write_failed", extra={"payload": {"queue": queue, "error": str(e)[:200]}})

        record_publish(queue=queue, ok=True)
        log.info(
            "queue_published",
            extra={
                "payload": {
                    "queue": queue,
                    "job_id": envelope.job_id,
                    "job_type": envelope.job_type.value,
                    "attempt": envelope.attempt,
                    "delay_sec": delay_sec,
                    "mode": self.mode,
                }
            },
        )
        return PublishAck(queue=queue, job_id=envelope.job_id, message_id=message_id, attempt=envelope.attempt)

    # -------------------------------------------------------------------------
    # Доставка (вызывается HTTP-роутером callback)
    # -------------------------------------------------------------------------
    def register(self, queue: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[queue] = handler

    def handler_for(self, queue: str) -> Handler | None:
        with self._lock:
            return self._handlers.get(queue)

    def _settle(self, queue: str, job_id: str) -> None:
        try:
            self.redis.zrem(inflight_name(queue), job_id)
        except redis.RedisError as e:
            log.warning("push_ledger_write_failed", extra={"payload": {"queue": queue, "error": str(e)[:200]}})

    def _dead_letter(self, queue: str, body: str, *, error: str | None, code: str | None) -> None:
        self.redis.lpush(dlq_name(queue), body)
        log.warning(
            "task_moved_to_dlq",
            extra={"payload": {"queue": queue, "dlq": dlq_name(queue), "code": code, "error": (error or "")[:300]}},
        )

    def deliver(self, queue: str, body: bytes, signature: str | None) -> DeliveryResult:
        """
        Обработать одну push-доставку.

        Коды ответа:
        - 401: подпись невалидна (брокер не должен считать это доставкой)
        - 503: обработчик очереди не зарегистрирован или процесс останавливается (брокер повторит)
        - 500: не удалось переопубликовать ретрай (брокер повторит сам)
        - 200: ack / retry поставлен / dead-letter
        """
        try:
            verify_push_signature(body, signature, key=self.signing_key, issuer=self.signing_issuer)
        except UnauthorizedError as e:
            log.warning("push_signature_rejected", extra={"payload": {"queue": queue, "error": str(e)[:200]}})
            return DeliveryResult(status_code=401, action="rejected", error=e.message)

        handler = self.handler_for(queue)
        if handler is None:
            return DeliveryResult(status_code=503, action="unavailable", error="handler_not_registered")

        raw = body.decode("utf-8", errors="replace")
        try:
            envelope = decode(body)
        except PermanentError as e:
            record_queue_task(queue=queue, result="dead_letter")
            self._dead_letter(queue, raw, error=str(e), code=e.code)
            return DeliveryResult(status_code=200, action="dead_letter", error=e.code)

        disposition = run_handler(queue, envelope, handler, max_attempts=self.max_attempts)
        if disposition.action == "release":
            return DeliveryResult(status_code=503, action="release", job_id=envelope.job_id)
        if disposition.action == "retry":
            delay = backoff_delay_sec(envelope.attempt + 1, base_ms=1000, max_ms=self.redelivery_delay_ms)
            try:
                self.publish(queue, redelivery(envelope), delay_sec=math.ceil(delay))
            except PublishError as e:
                log.error(
                    "push_redelivery_publish_failed",
                    extra={"payload": {"queue": queue, "job_id": envelope.job_id, "error": str(e)[:200]}},
                )
                return DeliveryResult(status_code=500, action="retry", job_id=envelope.job_id, error=e.code)
            return DeliveryResult(status_code=200, action="retry", job_id=envelope.job_id, error=disposition.error)

        if disposition.action == "dead_letter":
            self._dead_letter(queue, raw, error=disposition.error, code=disposition.error_code)
            self._settle(queue, envelope.job_id)
            return DeliveryResult(
                status_code=200, action="dead_letter", job_id=envelope.job_id, error=disposition.error_code
            )

        self._settle(queue, envelope.job_id)
        return DeliveryResult(status_code=200, action="ack", job_id=envelope.job_id)

    def consume(self, queue: str, handler: Handler, *, cancel: threading.Event) -> None:
        """
        В push-режиме брокер сам приносит сообщения: регистрируем обработчик
        и держим его до сигнала отмены.
        """
        self.register(queue, handler)
        log.info("queue_consume_started", extra={"payload": {"queue": queue, "mode": self.mode}})
        cancel.wait()
        with self._lock:
            self._handlers.pop(queue, None)
        log.info("queue_consume_stopped", extra={"payload": {"queue": queue, "mode": self.mode}})

    # -------------------------------------------------------------------------
    # Интроспекция
    # -------------------------------------------------------------------------
    def depth(self, queue: str) -> QueueDepthSample:
        r = self.redis
        depth = int(r.zcard(inflight_name(queue)))
        oldest = r.zrange(inflight_name(queue), 0, 0, withscores=True)
        age = 0.0
        if oldest:
            age = max(0.0, (utc_ms() - float(oldest[0][1])) / 1000.0)
        return QueueDepthSample(queue_name=queue, depth=depth, oldest_message_age=age, sampled_at=utc_now())
