from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from offchain_agent.common.errors import ErrCode, ShutdownRequested, TransientError
from offchain_agent.common.time import utc_now
from offchain_agent.connectors.base import Replica
from offchain_agent.domain.enums import ReplicaKind
from offchain_agent.queue import cancellation
from offchain_agent.queue.dispatcher import Q_BACKUP, enqueue_backup
from offchain_agent.queue.factory import get_queue_client
from offchain_agent.services.backup_service import BackupOrchestrator
from offchain_agent.storage import blob
from offchain_agent.storage.db import db_session
from offchain_agent.storage.models import Snapshot
from offchain_agent.storage.repositories import SnapshotRepository
from offchain_agent.storage.retention import apply_retention
from tests.fakes import ScriptedReplicaClient, StaticRegistry

DATE = "2026-01-15"

REPLICAS = [
    Replica("r1", ReplicaKind.user),
    Replica("r2", ReplicaKind.user),
    Replica("r3", ReplicaKind.subnet_orchestrator),
]


def _versions(replica_id: str) -> list[int]:
    with db_session() as s:
        return [snap.version for snap in SnapshotRepository(s).list_for_replica(replica_id)]


def _orchestrator(client: ScriptedReplicaClient, **kwargs) -> BackupOrchestrator:
    return BackupOrchestrator(registry=StaticRegistry(REPLICAS), client=client, parallelism=3, **kwargs)


def test_one_replica_timeout_does_not_block_others() -> None:
    client = ScriptedReplicaClient({"r2": "timeout"})
    report = _orchestrator(client, run_budget_sec=30).run_backup("bkp-1", date_str=DATE)

    assert report.status == "partial"
    assert sorted(report.successes) == ["r1", "r3"]
    [failure] = report.failures
    assert failure.unit == "r2"
    assert failure.error_kind == "transient"
    assert failure.error.startswith("timeout:")
    assert report.notes["failure_groups"] == {failure.error: 1}

    assert _versions("r1") == [1]
    assert _versions("r2") == []
    assert _versions("r3") == [1]
    with db_session() as s:
        [snap] = SnapshotRepository(s).list_for_replica("r1")
        assert blob.get_bytes(blob.uri_to_key(snap.storage_uri)) == b"snapshot-of-r1"
        assert snap.run_id == "bkp-1"


def test_resume_skips_replicas_done_today() -> None:
    client = ScriptedReplicaClient({"r2": "timeout"})
    orch = _orchestrator(client, run_budget_sec=30)
    orch.run_backup("bkp-1", date_str=DATE)

    client.behaviour.clear()
    client.calls.clear()
    report = orch.run_backup("bkp-2", date_str=DATE)

    assert report.status == "succeeded"
    assert report.successes == ["r2"]
    assert report.notes["skipped"] == 2
    assert client.calls == ["r2"]

    # без resume снимаются все, версии растут
    report = orch.run_backup("bkp-3", date_str=DATE, resume=False)
    assert sorted(report.successes) == ["r1", "r2", "r3"]
    assert _versions("r1") == [1, 2]


def test_run_budget_marks_slow_replicas_unreached() -> None:
    client = ScriptedReplicaClient({"r2": "slow:1.5"})
    report = _orchestrator(client, run_budget_sec=0.5).run_backup("bkp-1", date_str=DATE)

    assert report.unreached_units == ["r2"]
    assert sorted(report.successes) == ["r1", "r3"]
    assert report.status == "partial"
    assert report.notes["failure_groups"] == {"time_budget_exceeded": 1}


def test_limit_and_kinds_filter() -> None:
    client = ScriptedReplicaClient()
    report = _orchestrator(client, run_budget_sec=30).run_backup(
        "bkp-1", kinds=[ReplicaKind.user], limit=1, date_str=DATE
    )
    assert report.successes == ["r1"]
    assert client.calls == ["r1"]


def test_versions_stay_monotonic_under_concurrent_runs() -> None:
    client = ScriptedReplicaClient()
    orch = _orchestrator(client, run_budget_sec=30)
    replica = REPLICAS[0]
    errors: list[Exception] = []
    barrier = threading.Barrier(5)

    def worker(i: int) -> None:
        barrier.wait()
        try:
            orch.backup_replica(replica, run_id=f"bkp-{i}", date_str=DATE, cancel=threading.Event())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert _versions("r1") == [1, 2, 3, 4, 5]


def test_backup_handler_consumes_queue_message() -> None:
    client = ScriptedReplicaClient({"r3": "timeout"})
    orch = _orchestrator(client, run_budget_sec=30)
    enqueue_backup(kinds=["user", "subnet_orchestrator"])

    q = get_queue_client()
    assert q.drain(Q_BACKUP, orch.handle) == 1
    # частичный отказ не повод повторять весь запуск
    assert q.depth(Q_BACKUP).depth == 0
    assert not q.dead_letters
    assert _versions("r1") == [1]
    assert _versions("r3") == []


def test_retention_keeps_latest_version(settings) -> None:
    settings.backup_retention_days = 30
    old = utc_now() - timedelta(days=60)
    with db_session() as s:
        for version in (1, 2, 3):
            uri = blob.put_bytes(blob.snapshot_key("r9", version), b"x")
            s.add(
                Snapshot(
                    replica_id="r9",
                    replica_kind=ReplicaKind.user,
                    version=version,
                    storage_uri=uri,
                    content_hash="h",
                    run_id="old",
                    taken_at=old,
                )
            )

    with db_session() as s:
        assert apply_retention(s) == 2

    assert _versions("r9") == [3]
    assert not blob.exists(blob.snapshot_key("r9", 1))
    assert blob.exists(blob.snapshot_key("r9", 3))


# =============================================================================
# ОТМЕНА И ОСТАНОВКА
# =============================================================================
def _after(sec: float, fn) -> threading.Timer:
    timer = threading.Timer(sec, fn)
    timer.start()
    return timer


def test_cancel_mid_run_marks_unreached_replicas_cancelled() -> None:
    cancel = threading.Event()
    client = ScriptedReplicaClient({"r2": "slow:1.5"})
    orch = _orchestrator(client, run_budget_sec=30, cancel=cancel)
    _after(0.3, cancel.set)
    report = orch.run_backup("bkp-1", date_str=DATE)

    assert sorted(report.successes) == ["r1", "r3"]
    assert report.unreached_units == ["r2"]
    [unit] = [u for u in report.units if u.unit == "r2"]
    assert unit.error == "cancelled"
    assert report.notes["failure_groups"] == {"cancelled": 1}
    assert report.status == "partial"


def test_cancel_request_by_run_id_stops_run() -> None:
    client = ScriptedReplicaClient({"r2": "slow:1.5"})
    orch = _orchestrator(client, run_budget_sec=30)
    _after(0.3, lambda: cancellation.request_cancel("bkp-7"))
    report = orch.run_backup("bkp-7", date_str=DATE)

    assert report.unreached_units == ["r2"]
    assert report.notes["failure_groups"] == {"cancelled": 1}


def test_shutdown_mid_run_raises_without_report() -> None:
    shutdown = threading.Event()
    client = ScriptedReplicaClient({"r2": "slow:1.5"})
    orch = _orchestrator(client, run_budget_sec=30, shutdown=shutdown)
    _after(0.3, shutdown.set)

    with pytest.raises(ShutdownRequested):
        orch.run_backup("bkp-1", date_str=DATE)
    assert _versions("r1") == [1]
    assert _versions("r2") == []


def test_shutdown_leaves_backup_message_for_redelivery() -> None:
    shutdown = threading.Event()
    client = ScriptedReplicaClient({"r2": "slow:1.5"})
    orch = BackupOrchestrator(
        registry=StaticRegistry(REPLICAS), client=client, parallelism=3, run_budget_sec=30, shutdown=shutdown
    )
    enqueue_backup()
    q = get_queue_client()
    _after(0.3, shutdown.set)

    assert q.process_one(Q_BACKUP, orch.handle) is False
    assert q.depth(Q_BACKUP).depth == 1
    assert not q.dead_letters

    # следующий процесс: resume снимает только то, что не успели
    shutdown.clear()
    client.behaviour.clear()
    client.calls.clear()
    assert q.drain(Q_BACKUP, orch.handle) == 1
    assert client.calls == ["r2"]
    assert _versions("r1") == [1]
    assert _versions("r2") == [1]
    assert q.depth(Q_BACKUP).depth == 0


# =============================================================================
# ПОРЯДОК ЗАПИСИ СНАПШОТА
# =============================================================================
def test_losing_version_writer_does_not_touch_winner_blob(monkeypatch) -> None:
    key = blob.snapshot_key("r1", 1)
    with db_session() as s:
        s.add(
            Snapshot(
                replica_id="r1",
                replica_kind=ReplicaKind.user,
                version=1,
                storage_uri=blob.put_bytes(key, b"winner"),
                content_hash="h",
                run_id="bkp-winner",
            )
        )
    # проигравший прочитал last_version до коммита победителя
    monkeypatch.setattr(SnapshotRepository, "latest_version", lambda self, replica_id: 0)
    orch = _orchestrator(ScriptedReplicaClient(), run_budget_sec=30)

    with pytest.raises(TransientError) as exc:
        orch.backup_replica(REPLICAS[0], run_id="bkp-loser", date_str=DATE, cancel=threading.Event())
    assert exc.value.code == ErrCode.CONFLICT
    assert blob.get_bytes(key) == b"winner"
    assert _versions("r1") == [1]


def test_blob_write_failure_leaves_no_snapshot_row(monkeypatch) -> None:
    def broken_put(key: str, data: bytes) -> str:
        raise OSError("disk full")

    monkeypatch.setattr(blob, "put_bytes", broken_put)
    orch = _orchestrator(ScriptedReplicaClient(), run_budget_sec=30)

    with pytest.raises(TransientError) as exc:
        orch.backup_replica(REPLICAS[0], run_id="bkp-1", date_str=DATE, cancel=threading.Event())
    assert exc.value.code == ErrCode.PERSIST_ERROR
    assert _versions("r1") == []
