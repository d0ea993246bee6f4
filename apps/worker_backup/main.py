"""
Worker Backup.

Алгоритм:
- читаем q:backup (триггер: API или внешний планировщик)
- снапшоты реплик параллельно, с бюджетом на запуск
- по итогам: группировка ошибок, алерт, retention старых снапшотов

SIGTERM / SIGINT: запуск прерывается без ack, при повторной доставке
уже сохранённые за сегодня реплики пропускаются.
"""

from __future__ import annotations

import signal
import threading

from prometheus_client import start_http_server

from offchain_agent.common.config import get_settings
from offchain_agent.common.logging import get_project_logger, setup_logging
from offchain_agent.queue.dispatcher import Q_BACKUP
from offchain_agent.services.runtime import run_consumers

log = get_project_logger()


def main() -> None:
    setup_logging()
    settings = get_settings()
    shutdown = threading.Event()

    def _stop(signum, _frame) -> None:
        log.info("worker_backup_stopping", extra={"payload": {"signal": signum}})
        shutdown.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    if settings.metrics_port > 0:
        start_http_server(settings.metrics_port)

    log.info(
        "worker_backup_started",
        extra={
            "payload": {
                "queue": Q_BACKUP,
                "parallelism": settings.backup_parallelism,
                "run_budget_sec": settings.backup_run_budget_sec,
            }
        },
    )
    run_consumers([Q_BACKUP], shutdown)
    log.info("worker_backup_stopped")


if __name__ == "__main__":
    main()
