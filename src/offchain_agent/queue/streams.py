"""
Pull-транспорт очереди на Redis Streams (QUEUE_MODE=streams).

Устройство:
- логическая очередь = N партиций-стримов "<queue>:p<i>"
- consumer group "g:<queue>" на каждой партиции
- владение партициями - через таблицу аренд (leases.py)
- commit offset = XACK + XDEL (в стриме остаются только непрочитанные и pending)
- visibility timeout: pending дольше QUEUE_VISIBILITY_TIMEOUT_SEC забирается XAUTOCLAIM,
  attempt = attempt из конверта + (times_delivered - 1)
- отложенная повторная доставка: ZSET "<queue>:delayed" (score = due_ms)
- DLQ: стрим "<queue>:dlq"
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from typing import Any, TypeVar

import redis

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import ConsumeError, ErrCode, PermanentError, PublishError, TransientError
from offchain_agent.common.ids import default_worker_id
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.metrics import QUEUE_PARTITIONS_OWNED, record_publish, record_queue_task
from offchain_agent.common.time import utc_ms, utc_now
from offchain_agent.common.utils import stable_bucket
from offchain_agent.contracts.envelope import JobEnvelope, decode, encode, redelivery

from .base import Handler, PublishAck, QueueDepthSample, run_handler
from .leases import PartitionLeaseTable
from .redis import redis_client
from .retry import RetryPolicy, backoff_delay_sec, call_with_retry, dlq_name

log = get_project_logger()

T = TypeVar("T")

_TRANSPORT_ERRORS = (redis.ConnectionError, redis.TimeoutError)


def stream_name(queue: str, partition: int) -> str:
    return f"{queue}:p{partition}"


def group_name(queue: str) -> str:
    return f"g:{queue}"


def delayed_name(queue: str) -> str:
    return f"{queue}:delayed"


def _id_ms(message_id: str) -> int:
    try:
        return int(str(message_id).split("-", 1)[0])
    except ValueError:
        return 0


class StreamsQueueClient:
    mode = "streams"

    def __init__(
        self,
        *,
        redis_factory: Callable[[], Any] = redis_client,
        worker_id: str | None = None,
    ) -> None:
        s = get_settings()
        self._redis_factory = redis_factory
        self.worker_id = worker_id or s.worker_id or default_worker_id()
        self.partitions = max(1, int(s.queue_partitions))
        self.visibility_timeout_ms = max(1000, int(s.queue_visibility_timeout_sec) * 1000)
        self.block_ms = max(100, int(s.queue_block_ms))
        self.batch_size = max(1, int(s.queue_batch_size))
        self.lease_ttl_ms = max(1000, int(s.queue_lease_ttl_sec) * 1000)
        self.max_attempts = max(1, int(s.queue_max_attempts))
        self.redelivery_delay_ms = max(0, int(s.queue_redelivery_delay_sec) * 1000)
        self.policy = RetryPolicy.from_ms(s.queue_retries, s.queue_retry_backoff_ms, s.queue_retry_backoff_max_ms)
        self._groups_ready: set[str] = set()

    @property
    def redis(self):
        return self._redis_factory()

    def _call(self, fn: Callable[[], T], *, op: str, cancel: threading.Event | None = None) -> T:
        value, _ = call_with_retry(fn, policy=self.policy, op=op, cancel=cancel, retry_on=_TRANSPORT_ERRORS)
        return value

    def partition_for(self, job_id: str) -> int:
        return stable_bucket(job_id, self.partitions)

    # -------------------------------------------------------------------------
    # Публикация
    # -------------------------------------------------------------------------
    def publish(self, queue: str, envelope: JobEnvelope, *, delay_sec: int = 0) -> PublishAck:
        body = encode(envelope).decode("utf-8")
        try:
            if delay_sec > 0:
                due_ms = utc_ms() + delay_sec * 1000
                self._call(lambda: self.redis.zadd(delayed_name(queue), {body: due_ms}), op="queue_publish")
                message_id = f"delayed:{due_ms}"
            else:
                stream = stream_name(queue, self.partition_for(envelope.job_id))
                fields = {"env": body, "job_id": envelope.job_id, "attempt": str(envelope.attempt)}
                message_id = self._call(lambda: self.redis.xadd(stream, fields), op="queue_publish")
        except _TRANSPORT_ERRORS as e:
            record_publish(queue=queue, ok=False)
            raise PublishError(details={"queue": queue, "job_id": envelope.job_id, "error": str(e)[:200]}) from e

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
                }
            },
        )
        return PublishAck(queue=queue, job_id=envelope.job_id, message_id=str(message_id), attempt=envelope.attempt)

    def promote_delayed(self, queue: str) -> int:
        """
        Перенести созревшие отложенные сообщения в стримы.
        ZREM делает перенос единственным даже при нескольких воркерах.
        """
        r = self.redis
        due = r.zrangebyscore(delayed_name(queue), 0, utc_ms(), start=0, num=self.batch_size)
        moved = 0
        for body in due:
            if not r.zrem(delayed_name(queue), body):
                continue
            try:
                envelope = decode(body)
            except PermanentError as e:
                self._dead_letter_raw(queue, body, error=str(e), code=e.code)
                continue
            stream = stream_name(queue, self.partition_for(envelope.job_id))
            r.xadd(stream, {"env": body, "job_id": envelope.job_id, "attempt": str(envelope.attempt)})
            moved += 1
        return moved

    # -------------------------------------------------------------------------
    # Потребление
    # -------------------------------------------------------------------------
    def _ensure_group(self, stream: str, group: str) -> None:
        if stream in self._groups_ready:
            return
        try:
            self.redis.xgroup_create(stream, group, id="0", mkstream=True)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups_ready.add(stream)

    def _commit(self, stream: str, group: str, message_id: str) -> None:
        r = self.redis
        r.xack(stream, group, message_id)
        r.xdel(stream, message_id)

    def _dead_letter_raw(self, queue: str, body: str, *, error: str | None, code: str | None) -> None:
        self.redis.xadd(dlq_name(queue), {"env": body, "error": (error or "")[:500], "error_code": code or ""})
        log.warning("task_moved_to_dlq", extra={"payload": {"queue": queue, "dlq": dlq_name(queue), "code": code}})

    def _times_delivered(self, stream: str, group: str, message_id: str) -> int:
        rows = self.redis.xpending_range(stream, group, min=message_id, max=message_id, count=1)
        if not rows:
            return 1
        return max(1, int(rows[0].get("times_delivered", 1)))

    def _process(
        self,
        queue: str,
        stream: str,
        message_id: str,
        fields: dict,
        handler: Handler,
        *,
        times_delivered: int = 1,
    ) -> None:
        group = group_name(queue)
        body = (fields or {}).get("env") or ""
        try:
            envelope = decode(body)
        except PermanentError as e:
            record_queue_task(queue=queue, result="dead_letter")
            self._dead_letter_raw(queue, body, error=str(e), code=e.code)
            self._commit(stream, group, message_id)
            return

        if times_delivered > 1:
            envelope = redelivery(envelope, times=times_delivered - 1)

        disposition = run_handler(queue, envelope, handler, max_attempts=self.max_attempts)
        if disposition.action == "release":
            # без commit: запись остаётся в PEL и после visibility timeout уйдёт живому воркеру
            return
        if disposition.action == "retry":
            delay = backoff_delay_sec(envelope.attempt + 1, base_ms=1000, max_ms=self.redelivery_delay_ms)
            self.publish(queue, redelivery(envelope), delay_sec=math.ceil(delay))
        elif disposition.action == "dead_letter":
            self._dead_letter_raw(
                queue, encode(envelope).decode("utf-8"), error=disposition.error, code=disposition.error_code
            )
        self._commit(stream, group, message_id)

    def _reclaim_stale(self, queue: str, stream: str, handler: Handler) -> int:
        group = group_name(queue)
        resp = self.redis.xautoclaim(
            stream,
            group,
            self.worker_id,
            min_idle_time=self.visibility_timeout_ms,
            start_id="0-0",
            count=self.batch_size,
        )
        # redis>=7: [next_id, messages, deleted_ids]; redis 6.2: [next_id, messages]
        messages = resp[1] if resp and len(resp) > 1 else []
        for message_id, fields in messages:
            if not fields:
                # запись удалена из стрима, но осталась в PEL
                self.redis.xack(stream, group, message_id)
                continue
            times = self._times_delivered(stream, group, message_id)
            log.info(
                "queue_visibility_timeout_redelivery",
                extra={
                    "payload": {"queue": queue, "stream": stream, "message_id": message_id, "times_delivered": times}
                },
            )
            self._process(queue, stream, message_id, fields, handler, times_delivered=times)
        return len(messages)

    def poll_once(self, queue: str, handler: Handler, leases: PartitionLeaseTable) -> int:
        """
        Один цикл: аренды -> отложенные -> зависшие pending -> новые сообщения.
        """
        owned = sorted(leases.refresh())
        QUEUE_PARTITIONS_OWNED.labels(queue=queue).set(len(owned))
        self.promote_delayed(queue)
        if not owned:
            return 0

        group = group_name(queue)
        streams = {stream_name(queue, p): ">" for p in owned}
        for stream in streams:
            self._ensure_group(stream, group)

        processed = 0
        for stream in streams:
            processed += self._reclaim_stale(queue, stream, handler)

        resp = self.redis.xreadgroup(group, self.worker_id, streams, count=self.batch_size, block=self.block_ms)
        for stream, entries in resp or []:
            for message_id, fields in entries:
                self._process(queue, stream, message_id, fields, handler)
                processed += 1
        return processed

    def consume(self, queue: str, handler: Handler, *, cancel: threading.Event) -> None:
        leases = PartitionLeaseTable(
            redis=self.redis,
            queue=queue,
            partitions=self.partitions,
            worker_id=self.worker_id,
            ttl_ms=self.lease_ttl_ms,
        )
        log.info(
            "queue_consume_started",
            extra={"payload": {"queue": queue, "mode": self.mode, "worker_id": self.worker_id}},
        )
        try:
            while not cancel.is_set():
                try:
                    processed = self._call(
                        lambda: self.poll_once(queue, handler, leases), op="queue_poll", cancel=cancel
                    )
                except _TRANSPORT_ERRORS as e:
                    raise ConsumeError(details={"queue": queue, "error": str(e)[:200]}) from e
                except TransientError as e:
                    if e.code != ErrCode.CANCELLED:
                        raise
                    break
                if not processed and not leases.owned:
                    cancel.wait(self.block_ms / 1000.0)
        finally:
            leases.release_all()
            QUEUE_PARTITIONS_OWNED.labels(queue=queue).set(0)
            log.info("queue_consume_stopped", extra={"payload": {"queue": queue, "worker_id": self.worker_id}})

    # -------------------------------------------------------------------------
    # Интроспекция
    # -------------------------------------------------------------------------
    def depth(self, queue: str) -> QueueDepthSample:
        r = self.redis
        now_ms = utc_ms()
        depth = 0
        oldest_ms: int | None = None
        for p in range(self.partitions):
            stream = stream_name(queue, p)
            depth += int(r.xlen(stream))
            head = r.xrange(stream, min="-", max="+", count=1)
            if head:
                ts = _id_ms(head[0][0])
                oldest_ms = ts if oldest_ms is None else min(oldest_ms, ts)
        depth += int(r.zcard(delayed_name(queue)))
        age = 0.0 if oldest_ms is None else max(0.0, (now_ms - oldest_ms) / 1000.0)
        return QueueDepthSample(queue_name=queue, depth=depth, oldest_message_age=age, sampled_at=utc_now())
