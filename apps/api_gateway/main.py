"""
API Gateway (FastAPI).

Функции:
- /health
- /metrics
- триггеры: медиа-задачи и запуск бэкапа (202, асинхронное завершение)
- состояние задачи и запрос отмены по job_id
- /v1/push/{queue} - callback push-брокера
- глубина очередей

Архитектурно:
- QUEUE_MODE=streams: шлюз только публикует, обрабатывают worker_media / worker_backup
- QUEUE_MODE=push|inline: потребители поднимаются в процессе шлюза на startup
"""

from __future__ import annotations

import threading
from typing import Any

from fastapi import FastAPI

from apps.api_gateway.routers.backups import router as backups_router
from apps.api_gateway.routers.jobs import router as jobs_router
from apps.api_gateway.routers.media import router as media_router
from apps.api_gateway.routers.queues import router as queues_router
from offchain_agent.common.config import get_settings
from offchain_agent.common.logging import get_project_logger, setup_logging
from offchain_agent.common.metrics import setup_metrics_endpoint
from offchain_agent.domain.enums import QueueMode
from offchain_agent.queue.dispatcher import Q_BACKUP, Q_EMBED, Q_MEDIA
from offchain_agent.services.runtime import start_consumers
from offchain_agent.storage.db import create_all

log = get_project_logger()

IN_PROCESS_MODES = {QueueMode.push.value, QueueMode.inline.value}


def _is_dev_env(app_env: str | None) -> bool:
    return (app_env or "").strip().lower() in {"dev", "local", "test"}


def _create_app() -> FastAPI:
    app = FastAPI(title="Offchain Orchestrator Agent", version="0.1.0")
    settings = get_settings()
    stopping = threading.Event()

    setup_metrics_endpoint(app)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "queue_mode": settings.queue_mode}

    @app.on_event("startup")
    def startup() -> None:
        # Автосоздание таблиц в dev (чтобы проект стартовал без ручных миграций)
        if _is_dev_env(settings.app_env):
            create_all()
            log.info("db_ready")

        queue_mode = (settings.queue_mode or "").strip().lower()
        if queue_mode not in IN_PROCESS_MODES:
            return
        stopping.clear()
        start_consumers([Q_MEDIA, Q_EMBED, Q_BACKUP], stopping)

    @app.on_event("shutdown")
    def shutdown() -> None:
        stopping.set()

    app.include_router(media_router, prefix="/v1")
    app.include_router(backups_router, prefix="/v1")
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(queues_router, prefix="/v1")

    return app


setup_logging()

app = _create_app()


def run() -> None:
    """Запуск шлюза через uvicorn (API_HOST / API_PORT)."""
    import uvicorn

    s = get_settings()
    uvicorn.run(app, host=s.api_host, port=s.api_port, log_config=None)


if __name__ == "__main__":
    run()
