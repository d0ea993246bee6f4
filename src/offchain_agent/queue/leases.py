"""
Таблица владения партициями (consumer group, pull-режим).

Назначение:
- каждая партиция лога принадлежит ровно одному воркеру в момент времени
- владение - это аренда с истечением (lease), а не общий синглтон
- истёкшая аренда автоматически переходит к любому живому воркеру

Ключи Redis:
- lease:<queue>:<partition> = <worker_id>, PX = lease_ttl
- members:<queue>           = ZSET worker_id -> последний heartbeat (мс)
"""

from __future__ import annotations

from dataclasses import dataclass, field

from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.time import utc_ms

from .redis import compare_and_delete, compare_and_pexpire

log = get_project_logger()


def lease_key(queue: str, partition: int) -> str:
    return f"lease:{queue}:{partition}"


def members_key(queue: str) -> str:
    return f"members:{queue}"


@dataclass
class PartitionLeaseTable:
    """
    Аренды партиций одной очереди для одного воркера.

    redis: клиент redis-py (decode_responses=True)
    """

    redis: object
    queue: str
    partitions: int
    worker_id: str
    ttl_ms: int
    owned: set[int] = field(default_factory=set)

    def _try_acquire(self, partition: int) -> bool:
        return bool(self.redis.set(lease_key(self.queue, partition), self.worker_id, nx=True, px=self.ttl_ms))

    def _renew(self, partition: int) -> bool:
        return compare_and_pexpire(self.redis, lease_key(self.queue, partition), self.worker_id, self.ttl_ms)

    def _release(self, partition: int) -> None:
        compare_and_delete(self.redis, lease_key(self.queue, partition), self.worker_id)

    def _heartbeat(self) -> int:
        """
        Отметиться в членстве группы и вернуть число живых воркеров.
        Воркер без свежего heartbeat (дольше ttl) из членства выпадает.
        """
        key = members_key(self.queue)
        now_ms = utc_ms()
        self.redis.zadd(key, {self.worker_id: now_ms})
        self.redis.zremrangebyscore(key, 0, now_ms - self.ttl_ms)
        return max(1, int(self.redis.zcard(key)))

    def _fair_share(self, members: int) -> int:
        """
        Сколько партиций держать: не больше справедливой доли среди живых воркеров,
        чтобы новый воркер тоже получил партиции.
        """
        return max(1, -(-self.partitions // max(1, members)))

    def refresh(self) -> set[int]:
        """
        Продлить свои аренды, отдать излишек сверх доли, забрать свободные/истёкшие.
        Возвращает актуальный набор партиций воркера.
        """
        lost = {p for p in self.owned if not self._renew(p)}
        if lost:
            log.warning(
                "partition_leases_lost",
                extra={"payload": {"queue": self.queue, "worker_id": self.worker_id, "partitions": sorted(lost)}},
            )
        self.owned -= lost

        share = self._fair_share(self._heartbeat())

        surplus = sorted(self.owned, reverse=True)[: max(0, len(self.owned) - share)]
        for p in surplus:
            self._release(p)
            self.owned.discard(p)
        if surplus:
            log.info(
                "partition_leases_rebalanced",
                extra={"payload": {"queue": self.queue, "worker_id": self.worker_id, "released": surplus}},
            )

        gained: list[int] = []
        for p in range(self.partitions):
            if len(self.owned) >= share:
                break
            if p in self.owned:
                continue
            if self._try_acquire(p):
                self.owned.add(p)
                gained.append(p)
        if gained:
            log.info(
                "partition_leases_acquired",
                extra={"payload": {"queue": self.queue, "worker_id": self.worker_id, "partitions": gained}},
            )
        return set(self.owned)

    def release_all(self) -> None:
        for p in sorted(self.owned):
            try:
                self._release(p)
            except Exception as e:
                log.warning(
                    "partition_lease_release_failed",
                    extra={"payload": {"queue": self.queue, "partition": p, "error": str(e)[:200]}},
                )
        self.owned.clear()
        try:
            self.redis.zrem(members_key(self.queue), self.worker_id)
        except Exception as e:
            log.warning(
                "partition_member_leave_failed",
                extra={"payload": {"queue": self.queue, "error": str(e)[:200]}},
            )

    def holders(self) -> dict[int, str | None]:
        return {p: self.redis.get(lease_key(self.queue, p)) for p in range(self.partitions)}
