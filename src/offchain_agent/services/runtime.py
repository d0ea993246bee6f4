"""
Сборка обработчиков очередей и запуск потребителей.

Назначение:
- одна точка, где очередь связывается со своим оркестратором
- используется воркерами (pull) и api_gateway (push / inline)

Событие shutdown - остановка процесса, а не отмена заданий:
недоделанные сообщения не подтверждаются и доставляются заново.
Отмена конкретного задания - queue/cancellation.request_cancel(job_id).
"""

from __future__ import annotations

import threading

from offchain_agent.common.errors import FatalError
from offchain_agent.common.logging import get_project_logger
from offchain_agent.connectors.replicas import HttpReplicaClient, HttpReplicaRegistry
from offchain_agent.queue.base import Handler
from offchain_agent.queue.dispatcher import Q_BACKUP, Q_EMBED, Q_MEDIA
from offchain_agent.queue.factory import get_queue_client

from .backup_service import BackupOrchestrator
from .media_pipeline import MediaPipeline

log = get_project_logger()


def build_handlers(queues: list[str], shutdown: threading.Event) -> dict[str, Handler]:
    handlers: dict[str, Handler] = {}
    pipeline: MediaPipeline | None = None
    for queue in queues:
        if queue in (Q_MEDIA, Q_EMBED):
            pipeline = pipeline or MediaPipeline(shutdown=shutdown)
            handlers[queue] = pipeline.handle
        elif queue == Q_BACKUP:
            orchestrator = BackupOrchestrator(
                registry=HttpReplicaRegistry(),
                client=HttpReplicaClient(),
                shutdown=shutdown,
            )
            handlers[queue] = orchestrator.handle
        else:
            raise FatalError("Неизвестная очередь", details={"queue": queue})
    return handlers


def _consume(queue: str, handler: Handler, shutdown: threading.Event) -> None:
    try:
        get_queue_client().consume(queue, handler, cancel=shutdown)
    except FatalError as e:
        log.critical("queue_consumer_fatal", extra={"payload": {"queue": queue, "error": str(e)[:300]}})
        shutdown.set()
        raise


def start_consumers(queues: list[str], shutdown: threading.Event) -> list[threading.Thread]:
    """
    Поднять по потоку-потребителю на очередь. Останов - shutdown.set().
    """
    threads: list[threading.Thread] = []
    for queue, handler in build_handlers(queues, shutdown).items():
        t = threading.Thread(target=_consume, args=(queue, handler, shutdown), name=f"consumer-{queue}", daemon=True)
        t.start()
        threads.append(t)
    log.info("queue_consumers_started", extra={"payload": {"queues": queues}})
    return threads


def run_consumers(queues: list[str], shutdown: threading.Event) -> None:
    """Блокирующий запуск потребителей до сигнала остановки (воркеры)."""
    threads = start_consumers(queues, shutdown)
    try:
        while not shutdown.is_set() and any(t.is_alive() for t in threads):
            shutdown.wait(1.0)
    finally:
        shutdown.set()
        for t in threads:
            t.join(timeout=30)
