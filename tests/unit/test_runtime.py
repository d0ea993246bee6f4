from __future__ import annotations

import threading

import pytest

from offchain_agent.common.errors import FatalError
from offchain_agent.queue.dispatcher import Q_BACKUP, Q_EMBED, Q_MEDIA
from offchain_agent.services.runtime import build_handlers


def test_media_queues_share_one_pipeline(settings) -> None:
    handlers = build_handlers([Q_MEDIA, Q_EMBED, Q_BACKUP], threading.Event())

    assert set(handlers) == {Q_MEDIA, Q_EMBED, Q_BACKUP}
    assert handlers[Q_MEDIA].__self__ is handlers[Q_EMBED].__self__
    assert handlers[Q_BACKUP].__self__ is not handlers[Q_MEDIA].__self__


def test_process_stop_is_not_job_cancel(settings) -> None:
    stop = threading.Event()
    handlers = build_handlers([Q_MEDIA, Q_BACKUP], stop)

    for queue in (Q_MEDIA, Q_BACKUP):
        service = handlers[queue].__self__
        assert service.shutdown is stop
        assert service.cancel is not stop

    stop.set()
    assert not handlers[Q_MEDIA].__self__.cancel.is_set()


def test_unknown_queue_is_fatal(settings) -> None:
    with pytest.raises(FatalError):
        build_handlers(["q:unknown"], threading.Event())
