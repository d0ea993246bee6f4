"""
Worker Media.

Алгоритм:
- арендуем партиции q:media и q:embed (QUEUE_MODE=streams)
- q:media: fetch -> extract -> fan-out задач эмбеддинга по модальностям
- q:embed: инференс модальности, последний завершившийся делает fan-in
- ack / retry / dead-letter решает клиент очереди по исходу обработчика

SIGTERM / SIGINT: прерываем текущее сообщение на границе стадии без ack
(оно будет доставлено заново, задание не помечается failed) и выходим.
"""

from __future__ import annotations

import signal
import threading

from prometheus_client import start_http_server

from offchain_agent.common.config import get_settings
from offchain_agent.common.logging import get_project_logger, setup_logging
from offchain_agent.queue.dispatcher import Q_EMBED, Q_MEDIA
from offchain_agent.services.runtime import run_consumers

log = get_project_logger()


def main() -> None:
    setup_logging()
    settings = get_settings()
    shutdown = threading.Event()

    def _stop(signum, _frame) -> None:
        log.info("worker_media_stopping", extra={"payload": {"signal": signum}})
        shutdown.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    if settings.metrics_port > 0:
        start_http_server(settings.metrics_port)

    log.info(
        "worker_media_started",
        extra={"payload": {"queues": [Q_MEDIA, Q_EMBED], "mode": settings.queue_mode}},
    )
    run_consumers([Q_MEDIA, Q_EMBED], shutdown)
    log.info("worker_media_stopped")


if __name__ == "__main__":
    main()
