"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Общие счётчики и гистограммы для очередей, пайплайна, бэкапов и автоскейла
- Используется API Gateway и воркерами
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

# Общее количество HTTP-запросов
REQUESTS_TOTAL = Counter(
    "agent_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "agent_http_request_latency_ms",
    "Задержка HTTP запроса (мс)",
    ["service", "route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

# Задержки по стадиям пайплайна
PIPELINE_STAGE_LATENCY_MS = Histogram(
    "agent_pipeline_stage_latency_ms",
    "Задержка выполнения стадий пайплайна (мс)",
    ["service", "stage"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 120000),
)

PIPELINE_JOBS_TOTAL = Counter(
    "agent_pipeline_jobs_total",
    "Завершённые медиа-задачи",
    ["result"],  # completed|partial|failed
)

# Обработка задач очередей
QUEUE_TASKS_TOTAL = Counter(
    "agent_queue_tasks_total",
    "Количество обработанных задач очереди",
    ["queue", "result"],  # ok|retry|dead_letter|fatal
)

QUEUE_PUBLISH_TOTAL = Counter(
    "agent_queue_publish_total",
    "Публикации в очередь",
    ["queue", "result"],  # ok|failed
)

QUEUE_DEPTH = Gauge(
    "agent_queue_depth",
    "Текущая глубина очередей",
    ["queue"],
)

QUEUE_OLDEST_AGE_SEC = Gauge(
    "agent_queue_oldest_message_age_sec",
    "Возраст самого старого сообщения в очереди (сек)",
    ["queue"],
)

QUEUE_PARTITIONS_OWNED = Gauge(
    "agent_queue_partitions_owned",
    "Количество партиций, арендованных воркером",
    ["queue"],
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "agent_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)

RECONCILER_WRITES_TOTAL = Counter(
    "agent_reconciler_writes_total",
    "Записи reconciler",
    ["target", "result"],  # target=artifact|embedding, result=written|duplicate
)

BACKUP_RUNS_TOTAL = Counter(
    "agent_backup_runs_total",
    "Запуски бэкапа реплик",
    ["status"],  # succeeded|partial|failed
)

BACKUP_REPLICAS_TOTAL = Counter(
    "agent_backup_replicas_total",
    "Результаты снапшотов по репликам",
    ["result"],  # succeeded|failed|unreached|skipped
)

AUTOSCALE_TARGET_WORKERS = Gauge(
    "agent_autoscale_target_workers",
    "Целевое количество воркеров",
    ["queue"],
)

AUTOSCALE_DECISIONS_TOTAL = Counter(
    "agent_autoscale_decisions_total",
    "Решения автоскейлера",
    ["queue", "action"],  # up|down|hold
)


@contextmanager
def track_stage_latency(service: str, stage: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        PIPELINE_STAGE_LATENCY_MS.labels(service=service, stage=stage).observe(elapsed_ms)


def record_queue_task(*, queue: str, result: str) -> None:
    QUEUE_TASKS_TOTAL.labels(queue=queue, result=result).inc()


def record_publish(*, queue: str, ok: bool) -> None:
    QUEUE_PUBLISH_TOTAL.labels(queue=queue, result="ok" if ok else "failed").inc()


def record_depth_sample(*, queue: str, depth: int, oldest_age_sec: float) -> None:
    QUEUE_DEPTH.labels(queue=queue).set(max(0, depth))
    QUEUE_OLDEST_AGE_SEC.labels(queue=queue).set(max(0.0, oldest_age_sec))


def record_reconcile(*, target: str, duplicate: bool) -> None:
    RECONCILER_WRITES_TOTAL.labels(target=target, result="duplicate" if duplicate else "written").inc()


def record_pipeline_job(*, result: str) -> None:
    PIPELINE_JOBS_TOTAL.labels(result=result).inc()


def record_backup_run(*, status: str, succeeded: int, failed: int, unreached: int, skipped: int) -> None:
    BACKUP_RUNS_TOTAL.labels(status=status).inc()
    BACKUP_REPLICAS_TOTAL.labels(result="succeeded").inc(max(0, succeeded))
    BACKUP_REPLICAS_TOTAL.labels(result="failed").inc(max(0, failed))
    BACKUP_REPLICAS_TOTAL.labels(result="unreached").inc(max(0, unreached))
    BACKUP_REPLICAS_TOTAL.labels(result="skipped").inc(max(0, skipped))


def record_autoscale_decision(*, queue: str, action: str, target: int) -> None:
    AUTOSCALE_DECISIONS_TOTAL.labels(queue=queue, action=action).inc()
    AUTOSCALE_TARGET_WORKERS.labels(queue=queue).set(target)


def refresh_queue_metrics() -> None:
    try:
        from offchain_agent.common.config import get_settings, parse_csv
        from offchain_agent.queue.factory import get_queue_client

        client = get_queue_client()
        for queue in parse_csv(get_settings().autoscale_queues):
            sample = client.depth(queue)
            record_depth_sample(queue=queue, depth=sample.depth, oldest_age_sec=sample.oldest_message_age)
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(
            service="api-gateway",
            route=route,
            method=method,
            status=status_code,
        ).inc()
        HTTP_REQUEST_LATENCY_MS.labels(
            service="api-gateway",
            route=route,
            method=method,
        ).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        refresh_queue_metrics()
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
