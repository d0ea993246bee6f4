"""
Worker Autoscale.

Назначение:
- раз в AUTOSCALE_INTERVAL_SEC снимать глубину наблюдаемых очередей
- отдавать целевое число воркеров пулу (AUTOSCALE_POOL_MODE=http|redis|log)
"""

from __future__ import annotations

import signal
import threading

from prometheus_client import start_http_server

from offchain_agent.common.config import get_settings
from offchain_agent.common.logging import get_project_logger, setup_logging
from offchain_agent.queue.factory import get_queue_client
from offchain_agent.services.autoscale import AutoscaleController, build_pool_manager

log = get_project_logger()


def main() -> None:
    setup_logging()
    settings = get_settings()
    cancel = threading.Event()

    def _stop(signum, _frame) -> None:
        log.info("worker_autoscale_stopping", extra={"payload": {"signal": signum}})
        cancel.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    if settings.metrics_port > 0:
        start_http_server(settings.metrics_port)

    controller = AutoscaleController(client=get_queue_client(), pool=build_pool_manager())
    controller.run(cancel)


if __name__ == "__main__":
    main()
