"""
Оркестратор бэкапа реплик.

Поток:
1) реестр -> список реплик по типам (user / subnet_orchestrator / platform_orchestrator)
2) пропуск реплик, уже сохранённых за сегодня (backup_done:<kind>:<date>)
3) пул потоков BACKUP_PARALLELISM: снапшот -> версия (под блокировкой) -> blob -> строка
4) бюджет времени запуска: не успевшие реплики -> unreached
   отмена запуска (cancel / запрос по run_id) -> unreached с причиной cancelled
   остановка процесса -> ShutdownRequested, запуск будет доставлен заново (resume)
5) отчёт OutcomeReport, группировка ошибок, алерт в чат, ретеншн

Изоляция:
- отказ одной реплики не прерывает остальные
- версии реплики: last + 1 под per-replica блокировкой + уникальное ограничение в БД
"""

from __future__ import annotations

import re
import threading
import time
from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

import requests
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import (
    AppError,
    ErrCode,
    FatalError,
    PermanentError,
    ShutdownRequested,
    TransientError,
    error_kind,
)
from offchain_agent.common.ids import new_run_id
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.metrics import record_backup_run
from offchain_agent.common.time import utc_date_str
from offchain_agent.common.utils import sha256_hex
from offchain_agent.connectors.base import Replica, ReplicaClient, ReplicaRegistry
from offchain_agent.contracts.envelope import JobEnvelope
from offchain_agent.domain.enums import JobType, ReplicaKind
from offchain_agent.domain.outcome import OutcomeReport
from offchain_agent.queue import cancellation
from offchain_agent.queue.locks import key_lock
from offchain_agent.queue.redis import redis_client
from offchain_agent.queue.retry import RetryPolicy, call_with_retry
from offchain_agent.storage import blob
from offchain_agent.storage.db import db_session
from offchain_agent.storage.models import Snapshot
from offchain_agent.storage.repositories import SnapshotRepository
from offchain_agent.storage.retention import apply_retention

log = get_project_logger()

ALERT_CHUNK_CHARS = 10_000
_CANCEL_POLL_SEC = 0.2


# =============================================================================
# ПРОГРЕСС ЗА ДЕНЬ (возобновление)
# =============================================================================
def done_key(kind: ReplicaKind, date_str: str) -> str:
    return f"backup_done:{kind.value}:{date_str}"


class BackupProgress:
    """
    Реплики, уже сохранённые за дату. Redis LIST; в inline-режиме - память процесса.
    """

    _local: dict[str, set[str]] = defaultdict(set)
    _local_lock = threading.Lock()

    def __init__(self, *, ttl_sec: int = 60 * 60 * 48) -> None:
        self.inline = (get_settings().queue_mode or "").strip().lower() == "inline"
        self.ttl_sec = ttl_sec

    def done(self, kind: ReplicaKind, date_str: str) -> set[str]:
        key = done_key(kind, date_str)
        if self.inline:
            with self._local_lock:
                return set(self._local[key])
        return set(redis_client().lrange(key, 0, -1))

    def mark(self, replica: Replica, date_str: str) -> None:
        key = done_key(replica.kind, date_str)
        if self.inline:
            with self._local_lock:
                self._local[key].add(replica.replica_id)
            return
        r = redis_client()
        r.rpush(key, replica.replica_id)
        r.expire(key, self.ttl_sec)

    @classmethod
    def reset_local(cls) -> None:
        with cls._local_lock:
            cls._local.clear()


# =============================================================================
# ГРУППИРОВКА ОШИБОК И АЛЕРТ
# =============================================================================
def normalize_error(message: str, replica_id: str) -> str:
    cleaned = message.replace(replica_id, "") if replica_id else message
    cleaned = re.sub(r"[a-z0-9\-]+-cai", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or message


def group_failures(report: OutcomeReport) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = defaultdict(list)
    for unit in report.failures:
        groups[normalize_error(unit.error or "", unit.unit)].append(unit.unit)
    for unit in report.units:
        if unit.status == "unreached":
            groups[unit.error or "time_budget_exceeded"].append(unit.unit)
    return dict(groups)


def format_alert(report: OutcomeReport, groups: dict[str, list[str]]) -> str:
    if not groups:
        return f"Backup {report.run_id}: all replicas have fresh snapshots ({len(report.successes)} saved)."
    lines = [
        f"Backup {report.run_id}: status={report.status}, saved={len(report.successes)}, "
        f"failed={len(report.failures)}, unreached={len(report.unreached_units)}"
    ]
    for reason, units in sorted(groups.items(), key=lambda kv: -len(kv[1])):
        lines.append(f"- [{len(units)}] {reason}: {', '.join(units)}")
    return "\n".join(lines)


def chunk_text(text: str, limit: int = ALERT_CHUNK_CHARS) -> list[str]:
    """Разбить сообщение по строкам на куски не длиннее limit."""
    chunks: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks


def send_alert(text: str, *, webhook_url: str, timeout_sec: int = 10) -> int:
    """Отправить сообщение в чат-вебхук. Возвращает число отправленных кусков."""
    sent = 0
    for chunk in chunk_text(text):
        try:
            resp = requests.post(webhook_url, json={"text": chunk}, timeout=timeout_sec)
            resp.raise_for_status()
            sent += 1
        except requests.RequestException as e:
            log.warning("backup_alert_send_failed", extra={"payload": {"error": str(e)[:200]}})
    return sent


# =============================================================================
# ОРКЕСТРАТОР
# =============================================================================
@dataclass(frozen=True)
class SnapshotResult:
    replica_id: str
    version: int
    storage_uri: str
    attempts: int


class BackupOrchestrator:
    def __init__(
        self,
        *,
        registry: ReplicaRegistry,
        client: ReplicaClient,
        progress: BackupProgress | None = None,
        cancel: threading.Event | None = None,
        shutdown: threading.Event | None = None,
        parallelism: int | None = None,
        run_budget_sec: float | None = None,
    ) -> None:
        s = get_settings()
        self.registry = registry
        self.client = client
        self.progress = progress or BackupProgress()
        # cancel - отмена запусков этого оркестратора; shutdown - остановка процесса
        self.cancel = cancel or threading.Event()
        self.shutdown = shutdown or threading.Event()
        self.parallelism = max(1, int(parallelism or s.backup_parallelism))
        self.run_budget_sec = float(run_budget_sec if run_budget_sec is not None else s.backup_run_budget_sec)
        self.snapshot_timeout_sec = float(s.backup_snapshot_timeout_sec)
        self.lock_ttl_sec = int(s.backup_lock_ttl_sec)
        self.progress_log_every = max(1, int(s.backup_progress_log_every))
        self.alert_webhook_url = s.backup_alert_webhook_url
        self.policy = RetryPolicy.from_ms(s.backup_snapshot_retries + 1, 500, 10_000)

    # -------------------------------------------------------------------------
    # Одна реплика
    # -------------------------------------------------------------------------
    def backup_replica(
        self, replica: Replica, *, run_id: str, date_str: str, cancel: threading.Event
    ) -> SnapshotResult:
        data, attempts = call_with_retry(
            lambda: self.client.request_snapshot(replica, timeout_sec=self.snapshot_timeout_sec),
            policy=self.policy,
            op="backup_snapshot",
            cancel=cancel,
        )
        if cancel.is_set():
            raise TransientError(ErrCode.CANCELLED, "Запуск отменён", {"replica_id": replica.replica_id})

        with key_lock(
            f"snapshot:{replica.replica_id}",
            ttl_sec=self.lock_ttl_sec,
            wait_sec=self.snapshot_timeout_sec,
            cancel=cancel,
        ):
            try:
                with db_session() as session:
                    repo = SnapshotRepository(session)
                    version = repo.latest_version(replica.replica_id) + 1
                    key = blob.snapshot_key(replica.replica_id, version)
                    repo.add(
                        Snapshot(
                            replica_id=replica.replica_id,
                            replica_kind=replica.kind,
                            version=version,
                            storage_uri=blob.to_uri(key),
                            content_hash=sha256_hex(data),
                            run_id=run_id,
                        )
                    )
                    # байты пишет только тот, чья строка прошла уникальность (replica_id, version)
                    session.flush()
                    uri = blob.put_bytes(key, data)
            except IntegrityError as e:
                raise TransientError(
                    ErrCode.CONFLICT, "Версия снапшота уже занята", {"replica_id": replica.replica_id}
                ) from e
            except (SQLAlchemyError, OSError) as e:
                raise TransientError(
                    ErrCode.PERSIST_ERROR, "Не удалось сохранить снапшот", {"err": str(e)[:200]}
                ) from e

        self.progress.mark(replica, date_str)
        return SnapshotResult(replica_id=replica.replica_id, version=version, storage_uri=uri, attempts=attempts)

    # -------------------------------------------------------------------------
    # Запуск
    # -------------------------------------------------------------------------
    def _collect(
        self, kinds: list[ReplicaKind], date_str: str, *, resume: bool, report: OutcomeReport
    ) -> list[Replica]:
        replicas: list[Replica] = []
        skipped = 0
        for kind in kinds:
            done = self.progress.done(kind, date_str) if resume else set()
            for replica in self.registry.list_replicas(kind):
                if replica.replica_id in done:
                    skipped += 1
                    continue
                replicas.append(replica)
        report.notes["skipped"] = skipped
        return replicas

    def run_backup(
        self,
        run_id: str | None = None,
        *,
        kinds: list[ReplicaKind] | None = None,
        limit: int | None = None,
        resume: bool = True,
        date_str: str | None = None,
    ) -> OutcomeReport:
        run_id = run_id or new_run_id()
        date_str = date_str or utc_date_str()
        kinds = kinds or list(ReplicaKind)
        report = OutcomeReport(run_id=run_id, kind="backup", notes={"date": date_str})
        started = time.monotonic()

        try:
            replicas = self._collect(kinds, date_str, resume=resume, report=report)
        except (TransientError, PermanentError) as e:
            report.notes["registry_error"] = str(e)[:300]
            log.error("backup_registry_failed", extra={"payload": {"run_id": run_id, "error": str(e)[:300]}})
            record_backup_run(status="failed", succeeded=0, failed=0, unreached=0, skipped=0)
            raise

        if limit is not None:
            replicas = replicas[: max(0, int(limit))]
        report.notes["planned"] = len(replicas)
        log.info(
            "backup_run_started",
            extra={"payload": {"run_id": run_id, "replicas": len(replicas), "parallelism": self.parallelism}},
        )

        run_cancel = threading.Event()
        watcher = threading.Thread(target=self._propagate_cancel, args=(run_cancel, run_id), daemon=True)
        watcher.start()

        executor = ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="backup")
        futures: dict[Future, Replica] = {
            executor.submit(
                self.backup_replica, replica, run_id=run_id, date_str=date_str, cancel=run_cancel
            ): replica
            for replica in replicas
        }
        pending = set(futures)
        finished = 0
        try:
            while pending:
                remaining = self.run_budget_sec - (time.monotonic() - started)
                if remaining <= 0 or run_cancel.is_set():
                    break
                done, pending = wait(pending, timeout=min(remaining, _CANCEL_POLL_SEC), return_when=FIRST_COMPLETED)
                for fut in done:
                    self._record(report, futures[fut], fut)
                    finished += 1
                    if finished % self.progress_log_every == 0:
                        log.info(
                            "backup_run_progress",
                            extra={"payload": {"run_id": run_id, "finished": finished, "total": len(replicas)}},
                        )
        finally:
            interrupted = run_cancel.is_set()
            run_cancel.set()
            if self.shutdown.is_set():
                reason = ErrCode.SHUTDOWN
            elif interrupted:
                reason = ErrCode.CANCELLED
            else:
                reason = "time_budget_exceeded"
            for fut in pending:
                fut.cancel()
                report.unreached(futures[fut].replica_id, reason=reason)
            executor.shutdown(wait=False, cancel_futures=True)

        if reason == ErrCode.SHUTDOWN and report.unreached_units:
            # без отчёта и алерта: сообщение вернётся в очередь, resume пропустит сохранённые реплики
            log.warning(
                "backup_run_interrupted",
                extra={"payload": {"run_id": run_id, "saved": len(report.successes), "left": len(pending)}},
            )
            raise ShutdownRequested({"run_id": run_id})

        self._finish(report)
        return report

    def _propagate_cancel(self, run_cancel: threading.Event, run_id: str) -> None:
        while not run_cancel.is_set():
            if (
                self.cancel.is_set()
                or self.shutdown.is_set()
                or cancellation.is_cancel_requested(run_id)
            ):
                run_cancel.set()
                return
            run_cancel.wait(_CANCEL_POLL_SEC)

    def _record(self, report: OutcomeReport, replica: Replica, fut: Future) -> None:
        try:
            result: SnapshotResult = fut.result()
        except FatalError:
            raise
        except Exception as e:
            attempts = self.policy.attempts if isinstance(e, TransientError) else 1
            code = e.code if isinstance(e, AppError) else type(e).__name__
            report.failed(
                replica.replica_id,
                error_kind=error_kind(e),
                error=f"{code}: {getattr(e, 'message', str(e))}",
                attempts=attempts,
            )
            log.warning(
                "backup_replica_failed",
                extra={
                    "payload": {"replica_id": replica.replica_id, "kind": replica.kind.value, "error": str(e)[:300]}
                },
            )
            return
        report.succeeded(replica.replica_id, attempts=result.attempts)

    def _finish(self, report: OutcomeReport) -> None:
        groups = group_failures(report)
        report.notes["failure_groups"] = {reason: len(units) for reason, units in groups.items()}

        try:
            with db_session() as session:
                report.notes["pruned"] = apply_retention(session)
        except SQLAlchemyError as e:
            log.warning("backup_retention_failed", extra={"payload": {"error": str(e)[:200]}})

        record_backup_run(
            status=report.status,
            succeeded=len(report.successes),
            failed=len(report.failures),
            unreached=len(report.unreached_units),
            skipped=int(report.notes.get("skipped", 0)),
        )
        log.info("backup_run_finished", extra={"payload": report.to_dict()})

        if self.alert_webhook_url:
            send_alert(format_alert(report, groups), webhook_url=self.alert_webhook_url)

    # -------------------------------------------------------------------------
    # Точка входа очереди
    # -------------------------------------------------------------------------
    def handle(self, envelope: JobEnvelope) -> None:
        if envelope.job_type != JobType.backup:
            raise PermanentError(ErrCode.VALIDATION, "Тип задачи не backup", {"job_type": envelope.job_type.value})
        raw_kinds = envelope.param("kinds") or []
        try:
            kinds = [ReplicaKind(k) for k in raw_kinds] or None
        except ValueError as e:
            raise PermanentError(ErrCode.VALIDATION, "Неизвестный тип реплики", {"kinds": raw_kinds}) from e
        limit = envelope.param("limit")
        self.run_backup(envelope.job_id, kinds=kinds, limit=int(limit) if limit is not None else None)
