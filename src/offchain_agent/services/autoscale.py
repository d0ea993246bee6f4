"""
Автоскейлинг пулов воркеров по глубине очереди.

Цикл:
- раз в AUTOSCALE_INTERVAL_SEC снимаем depth() каждой наблюдаемой очереди
- decide() - чистая функция с гистерезисом
- цель (одно целое число) отдаём WorkerPoolManager

Правила decide():
- вверх: depth > high_water или возраст старейшего > staleness;
  цель = max(current + 1, ceil(depth / per_worker_depth)), без cooldown
- вниз на 1: depth < low_water держится AUTOSCALE_LOW_WINDOW_SEC
  и с последнего снижения прошло AUTOSCALE_COOLDOWN_SEC
- всегда в пределах [floor, ceiling]
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Protocol

import requests

from offchain_agent.common.config import get_settings, parse_csv
from offchain_agent.common.errors import ErrCode, FatalError, TransientError
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.metrics import record_autoscale_decision, record_depth_sample
from offchain_agent.queue.base import QueueClient, QueueDepthSample
from offchain_agent.queue.redis import redis_client

log = get_project_logger()


# =============================================================================
# ПОЛИТИКА И СОСТОЯНИЕ
# =============================================================================
@dataclass(frozen=True)
class ScalePolicy:
    high_water: int = 100
    low_water: int = 10
    staleness_sec: float = 300.0
    per_worker_depth: int = 50
    low_window_sec: float = 300.0
    cooldown_sec: float = 600.0
    floor: int = 1
    ceiling: int = 20

    @classmethod
    def from_settings(cls) -> ScalePolicy:
        s = get_settings()
        policy = cls(
            high_water=s.autoscale_high_water,
            low_water=s.autoscale_low_water,
            staleness_sec=float(s.autoscale_staleness_sec),
            per_worker_depth=max(1, s.autoscale_per_worker_depth),
            low_window_sec=float(s.autoscale_low_window_sec),
            cooldown_sec=float(s.autoscale_cooldown_sec),
            floor=max(0, s.autoscale_floor),
            ceiling=s.autoscale_ceiling,
        )
        if policy.ceiling < policy.floor:
            raise FatalError("AUTOSCALE_CEILING меньше AUTOSCALE_FLOOR")
        if policy.low_water > policy.high_water:
            raise FatalError("AUTOSCALE_LOW_WATER больше AUTOSCALE_HIGH_WATER")
        return policy

    def clamp(self, target: int) -> int:
        return max(self.floor, min(self.ceiling, target))


@dataclass(frozen=True)
class ScaleState:
    low_since: float | None = None
    last_scale_down_at: float | None = None


@dataclass(frozen=True)
class Decision:
    target: int
    action: str  # up|down|hold
    reason: str


def decide(
    sample: QueueDepthSample,
    current: int,
    state: ScaleState,
    now: float,
    policy: ScalePolicy,
) -> tuple[Decision, ScaleState]:
    depth = max(0, int(sample.depth))
    age = max(0.0, float(sample.oldest_message_age))

    if depth > policy.high_water or age > policy.staleness_sec:
        wanted = max(current + 1, math.ceil(depth / policy.per_worker_depth))
        target = policy.clamp(wanted)
        reason = "depth_above_high_water" if depth > policy.high_water else "oldest_message_stale"
        new_state = replace(state, low_since=None)
        action = "up" if target > current else "hold"
        return Decision(target=target, action=action, reason=reason), new_state

    if depth < policy.low_water:
        low_since = state.low_since if state.low_since is not None else now
        sustained = now - low_since >= policy.low_window_sec
        cooled = state.last_scale_down_at is None or now - state.last_scale_down_at >= policy.cooldown_sec
        if sustained and cooled and current > policy.floor:
            target = policy.clamp(current - 1)
            return (
                Decision(target=target, action="down", reason="depth_below_low_water"),
                ScaleState(low_since=now, last_scale_down_at=now),
            )
        return (
            Decision(target=policy.clamp(current), action="hold", reason="low_water_pending"),
            replace(state, low_since=low_since),
        )

    return Decision(target=policy.clamp(current), action="hold", reason="within_band"), replace(state, low_since=None)


# =============================================================================
# УПРАВЛЕНИЕ ПУЛОМ ВОРКЕРОВ
# =============================================================================
class WorkerPoolManager(Protocol):
    def set_target(self, queue: str, target: int) -> None: ...


class LogWorkerPool:
    def set_target(self, queue: str, target: int) -> None:
        log.info("autoscale_target", extra={"payload": {"queue": queue, "target": target}})


class RedisWorkerPool:
    def set_target(self, queue: str, target: int) -> None:
        redis_client().set(f"autoscale:target:{queue}", int(target))


class HttpWorkerPool:
    def __init__(self, url: str | None = None, *, timeout_sec: int = 10) -> None:
        self.url = url or get_settings().autoscale_pool_url
        if not self.url:
            raise FatalError("AUTOSCALE_POOL_URL не задан для AUTOSCALE_POOL_MODE=http")
        self.timeout_sec = timeout_sec

    def set_target(self, queue: str, target: int) -> None:
        try:
            resp = requests.post(self.url, json={"queue": queue, "target": int(target)}, timeout=self.timeout_sec)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TransientError(ErrCode.UNKNOWN, "Пул воркеров недоступен", {"err": str(e)[:200]}) from e


def build_pool_manager() -> WorkerPoolManager:
    mode = (get_settings().autoscale_pool_mode or "log").strip().lower()
    if mode == "http":
        return HttpWorkerPool()
    if mode == "redis":
        return RedisWorkerPool()
    return LogWorkerPool()


# =============================================================================
# КОНТРОЛЛЕР
# =============================================================================
class AutoscaleController:
    def __init__(
        self,
        *,
        client: QueueClient,
        pool: WorkerPoolManager,
        policy: ScalePolicy | None = None,
        queues: list[str] | None = None,
        interval_sec: float | None = None,
        clock=time.monotonic,
    ) -> None:
        s = get_settings()
        self.client = client
        self.pool = pool
        self.policy = policy or ScalePolicy.from_settings()
        self.queues = queues or parse_csv(s.autoscale_queues)
        self.interval_sec = float(interval_sec if interval_sec is not None else s.autoscale_interval_sec)
        self._clock = clock
        self.current: dict[str, int] = {q: self.policy.floor for q in self.queues}
        self.states: dict[str, ScaleState] = {q: ScaleState() for q in self.queues}

    def tick(self) -> dict[str, Decision]:
        """Один опрос всех очередей."""
        now = self._clock()
        out: dict[str, Decision] = {}
        for queue in self.queues:
            try:
                sample = self.client.depth(queue)
            except Exception as e:
                log.warning("autoscale_depth_failed", extra={"payload": {"queue": queue, "error": str(e)[:200]}})
                continue
            record_depth_sample(queue=queue, depth=sample.depth, oldest_age_sec=sample.oldest_message_age)

            decision, self.states[queue] = decide(sample, self.current[queue], self.states[queue], now, self.policy)
            out[queue] = decision
            if decision.target != self.current[queue]:
                try:
                    self.pool.set_target(queue, decision.target)
                except TransientError as e:
                    log.warning("autoscale_emit_failed", extra={"payload": {"queue": queue, "error": str(e)[:200]}})
                    continue
                log.info(
                    "autoscale_decision",
                    extra={
                        "payload": {
                            "queue": queue,
                            "depth": sample.depth,
                            "oldest_age_sec": round(sample.oldest_message_age, 3),
                            "from": self.current[queue],
                            "to": decision.target,
                            "reason": decision.reason,
                        }
                    },
                )
                self.current[queue] = decision.target
            record_autoscale_decision(queue=queue, action=decision.action, target=self.current[queue])
        return out

    def run(self, cancel: threading.Event) -> None:
        log.info(
            "autoscale_started",
            extra={"payload": {"queues": self.queues, "interval_sec": self.interval_sec}},
        )
        while not cancel.is_set():
            self.tick()
            cancel.wait(self.interval_sec)
        log.info("autoscale_stopped")
