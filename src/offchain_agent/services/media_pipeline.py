"""
Оркестратор медиа-пайплайна.

Стадии:
received → fetching → extracting → embedding → persisting → completed
failed(reason) - из любой незавершённой стадии.

Устройство:
- состояние задания живёт в БД (pipeline_jobs), переходы - условными UPDATE
- extracting: dHash кадров -> подпись источника и список почти-дубликатов (notes отчёта)
- fan-out: по под-задаче generate_embedding на модальность (q:embed) + строка modality_tasks
- fan-in: под-задача закрывает свою строку ровно один раз; тот, кто закрыл последнюю,
  забирает родителя переходом embedding -> persisting и пишет эмбеддинги
- повторная доставка любого сообщения безопасна: все записи идут через reconciler
- отмена задания (cancel / запрос по job_id) -> failed(cancelled);
  остановка процесса (shutdown) -> ShutdownRequested, сообщение доставится заново
- последняя попытка сообщения не оставляет задание в незавершённой стадии
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import IntegrityError

from offchain_agent.common.config import get_settings, parse_csv
from offchain_agent.common.errors import (
    AppError,
    ErrCode,
    FatalError,
    PermanentError,
    PublishError,
    ShutdownRequested,
    TransientError,
    UnsupportedMediaError,
    error_kind,
)
from offchain_agent.common.logging import get_pipeline_logger
from offchain_agent.common.metrics import record_pipeline_job, track_stage_latency
from offchain_agent.common.utils import AnyEvent
from offchain_agent.contracts.envelope import JobEnvelope
from offchain_agent.domain.enums import ArtifactKind, JobStage, JobType, Modality, TaskStatus
from offchain_agent.domain.outcome import OutcomeReport
from offchain_agent.domain.state_machine import JobState, is_terminal
from offchain_agent.processing.extract import ExtractedMedia, MediaExtractor, frame_from_bytes, frame_to_bytes
from offchain_agent.processing.features import FeatureExtractor, ModalityInput, build_feature_extractor
from offchain_agent.processing.fetch import SourceFetcher
from offchain_agent.processing.signature import VideoSignature
from offchain_agent.queue import cancellation, idempotency
from offchain_agent.queue.retry import RetryPolicy, call_with_retry
from offchain_agent.storage import blob
from offchain_agent.storage.db import db_session
from offchain_agent.storage.models import ModalityTask, PipelineJob
from offchain_agent.storage.repositories import ModalityTaskRepository, PipelineJobRepository

from .duplicates import find_near_duplicates
from .reconciler import ArtifactRecord, EmbeddingRecord, persist_artifact, record_signature, upsert_embedding

log = get_pipeline_logger()

SERVICE = "media_pipeline"

# под-задача: (родительский конверт, source_id, модальность, payload_ref) -> конверт под-задачи
PublishSubJob = Callable[..., JobEnvelope]


def _default_publish(*, parent: JobEnvelope, source_id: str, modality: Modality, payload_ref: str) -> JobEnvelope:
    from offchain_agent.queue.dispatcher import enqueue_embedding

    return enqueue_embedding(parent=parent, source_id=source_id, modality=modality, payload_ref=payload_ref)


def _describe(e: BaseException) -> str:
    return f"{type(e).__name__}: {e}"[:500]


class MediaPipeline:
    def __init__(
        self,
        *,
        fetcher: SourceFetcher | None = None,
        extractor: MediaExtractor | None = None,
        features: FeatureExtractor | dict[Modality, FeatureExtractor] | None = None,
        publish: PublishSubJob | None = None,
        cancel: threading.Event | None = None,
        shutdown: threading.Event | None = None,
        modalities: list[Modality] | None = None,
    ) -> None:
        s = get_settings()
        self.fetcher = fetcher or SourceFetcher()
        self.extractor = extractor or MediaExtractor()
        self._features = features or build_feature_extractor()
        self.publish = publish or _default_publish
        # cancel - отмена заданий этого пайплайна; shutdown - остановка процесса
        self.cancel = cancel or threading.Event()
        self.shutdown = shutdown or threading.Event()
        self._interrupt = AnyEvent(self.cancel, self.shutdown)
        self.max_attempts = max(1, int(s.queue_max_attempts))
        self.modalities = modalities or [Modality(m) for m in parse_csv(s.pipeline_modalities)]
        self.fetch_policy = RetryPolicy.from_ms(
            s.pipeline_fetch_retries, s.pipeline_retry_backoff_ms, s.pipeline_retry_backoff_max_ms
        )
        self.modality_policy = RetryPolicy.from_ms(
            s.pipeline_modality_retries, s.pipeline_retry_backoff_ms, s.pipeline_retry_backoff_max_ms
        )

    def features_for(self, modality: Modality) -> FeatureExtractor:
        if isinstance(self._features, dict):
            return self._features[modality]
        return self._features

    # =========================================================================
    # ТОЧКА ВХОДА ОЧЕРЕДИ
    # =========================================================================
    def handle(self, envelope: JobEnvelope) -> None:
        try:
            if envelope.job_type == JobType.extract_media:
                self.handle_extract(envelope)
            elif envelope.job_type == JobType.generate_embedding:
                self.handle_embedding(envelope)
            else:
                raise PermanentError(
                    ErrCode.VALIDATION, "Тип задачи не для медиа-пайплайна", {"job_type": envelope.job_type}
                )
        except (ShutdownRequested, FatalError):
            raise
        except Exception as e:
            # сообщение уйдёт в dead-letter: закрываем задание здесь, иначе оно зависнет
            if isinstance(e, PermanentError) or envelope.attempt + 1 >= self.max_attempts:
                self._give_up(envelope, e)
            raise

    def _give_up(self, envelope: JobEnvelope, error: Exception) -> None:
        """
        Последняя попытка сообщения.
        Под-задача закрывает свою модальность как failed и пробует fan-in,
        родительская задача переводит задание в failed.
        """
        try:
            if envelope.job_type == JobType.generate_embedding:
                parent_id = str(envelope.param("parent_job_id") or "")
                modality = Modality(envelope.param("modality"))
                source_id = str(envelope.param("source_id") or "")
                self._settle_failed(parent_id, source_id, modality, error, attempts=envelope.attempt + 1)
                try:
                    self.try_finalize(parent_id)
                except (TransientError, PermanentError) as e:
                    self._fail_unfinished(parent_id, e)
            elif envelope.job_type == JobType.extract_media:
                self._fail_unfinished(envelope.job_id, error)
        except Exception as e:
            log.error(
                "pipeline_give_up_failed",
                extra={"payload": {"job_id": envelope.job_id, "error": _describe(e)}},
            )

    # =========================================================================
    # РОДИТЕЛЬСКАЯ ЗАДАЧА (extract_media)
    # =========================================================================
    def handle_extract(self, envelope: JobEnvelope) -> None:
        job_id = envelope.job_id
        source_id = str(envelope.param("source_id") or job_id)
        self._ensure_job(envelope, source_id)
        log.info(
            "pipeline_job_received",
            extra={"payload": {"job_id": job_id, "source_id": source_id, "attempt": envelope.attempt}},
        )

        for _ in range(len(JobStage)):
            job = self._load(job_id)
            stage = job["stage"]
            if is_terminal(stage):
                log.info("pipeline_job_already_finished", extra={"payload": {"job_id": job_id, "stage": stage.value}})
                return
            if self._stop_requested(job_id, stage):
                return

            if stage == JobStage.received:
                self._advance(job_id, stage, JobStage.fetching, attempt=envelope.attempt)
            elif stage in (JobStage.fetching, JobStage.extracting):
                if not self._fetch_and_extract(envelope, source_id, stage):
                    return
            elif stage == JobStage.embedding:
                self._fan_out(envelope, source_id, job["context"])
                self.try_finalize(job_id)
                return
            else:
                self.try_finalize(job_id)
                return

    def _ensure_job(self, envelope: JobEnvelope, source_id: str) -> None:
        try:
            with db_session() as session:
                repo = PipelineJobRepository(session)
                if repo.get(envelope.job_id) is None:
                    repo.add(
                        PipelineJob(
                            job_id=envelope.job_id,
                            source_id=source_id,
                            payload_ref=envelope.payload_ref,
                            trace_id=envelope.trace_id,
                            stage=JobStage.received,
                            attempt=envelope.attempt,
                            partial=False,
                            context={},
                        )
                    )
        except IntegrityError:
            # параллельная доставка того же job_id уже создала запись
            pass

    def _load(self, job_id: str) -> dict[str, Any]:
        with db_session() as session:
            job = PipelineJobRepository(session).get(job_id)
            if job is None:
                raise TransientError(ErrCode.NOT_FOUND, "Задание пайплайна не найдено", {"job_id": job_id})
            return {
                "stage": job.stage,
                "source_id": job.source_id,
                "trace_id": job.trace_id,
                "payload_ref": job.payload_ref,
                "context": dict(job.context or {}),
            }

    def _advance(self, job_id: str, current: JobStage, target: JobStage, *, attempt: int | None = None) -> bool:
        JobState(stage=current).advance(target)
        with db_session() as session:
            moved = PipelineJobRepository(session).transition(job_id, expected=current, target=target, attempt=attempt)
        if moved:
            log.info(
                "pipeline_stage_changed",
                extra={"payload": {"job_id": job_id, "from": current.value, "to": target.value}},
            )
        return moved

    def _fail(self, job_id: str, current: JobStage, reason: str, report: OutcomeReport) -> None:
        JobState(stage=current).fail(reason)
        report.notes.update({"stage": current.value, "failure_reason": reason})
        with db_session() as session:
            moved = PipelineJobRepository(session).fail(job_id, reason=reason, report=report.to_dict())
        if moved:
            record_pipeline_job(result="failed")
            log.error(
                "pipeline_job_failed",
                extra={"payload": {"job_id": job_id, "stage": current.value, "reason": reason}},
            )

    def _stop_requested(self, job_id: str, stage: JobStage) -> bool:
        """
        Проверка на границе стадии.
        Остановка процесса -> ShutdownRequested (задание остаётся в своей стадии).
        Отмена задания -> failed(cancelled), True.
        """
        if self.shutdown.is_set():
            raise ShutdownRequested({"job_id": job_id, "stage": stage.value})
        if not (self.cancel.is_set() or cancellation.is_cancel_requested(job_id)):
            return False
        report = OutcomeReport(run_id=job_id, kind="pipeline")
        report.failed(f"{job_id}/{stage.value}", error_kind="cancelled", error="cancelled")
        self._fail(job_id, stage, ErrCode.CANCELLED, report)
        return True

    def _fail_unfinished(self, job_id: str, error: BaseException) -> None:
        with db_session() as session:
            job = PipelineJobRepository(session).get(job_id)
            stage = job.stage if job is not None else None
        if stage is None or is_terminal(stage):
            return
        report = OutcomeReport(run_id=job_id, kind="pipeline")
        report.failed(f"{job_id}/{stage.value}", error_kind=error_kind(error), error=_describe(error))
        reason = error.code if isinstance(error, AppError) else ErrCode.UNKNOWN
        self._fail(job_id, stage, reason, report)

    # -------------------------------------------------------------------------
    # fetching / extracting
    # -------------------------------------------------------------------------
    def _fetch_and_extract(self, envelope: JobEnvelope, source_id: str, stage: JobStage) -> bool:
        """
        Возвращает False, если задание ушло в failed.
        """
        job_id = envelope.job_id
        report = OutcomeReport(run_id=job_id, kind="pipeline")

        try:
            with track_stage_latency(SERVICE, "fetching"):
                data, attempts = call_with_retry(
                    lambda: self.fetcher.fetch(envelope.payload_ref),
                    policy=self.fetch_policy,
                    op="pipeline_fetch",
                    cancel=self._interrupt,
                )
        except TransientError as e:
            if e.code == ErrCode.CANCELLED and self._stop_requested(job_id, stage):
                return False
            report.failed(
                f"{source_id}/fetch", error_kind="transient", error=_describe(e), attempts=self.fetch_policy.attempts
            )
            self._fail(job_id, stage, ErrCode.FETCH_ERROR, report)
            return False
        except PermanentError as e:
            report.failed(f"{source_id}/fetch", error_kind="permanent", error=_describe(e))
            self._fail(job_id, stage, ErrCode.FETCH_ERROR, report)
            return False

        if stage == JobStage.fetching:
            self._advance(job_id, JobStage.fetching, JobStage.extracting)
            stage = JobStage.extracting
        if self._stop_requested(job_id, stage):
            return False

        try:
            with track_stage_latency(SERVICE, "extracting"):
                media = self.extractor.extract(data)
        except UnsupportedMediaError as e:
            report.failed(f"{source_id}/extract", error_kind="permanent", error=_describe(e))
            self._fail(job_id, stage, ErrCode.UNSUPPORTED_MEDIA, report)
            return False

        context = self._persist_extracted(source_id, data, media)
        context["fetch_attempts"] = attempts
        self._create_tasks(job_id, self._modalities_for(envelope))
        with db_session() as session:
            job = PipelineJobRepository(session).get(job_id)
            if job is not None and job.stage == JobStage.extracting:
                job.context = context
        self._advance(job_id, JobStage.extracting, JobStage.embedding)
        return True

    def _persist_extracted(self, source_id: str, data: bytes, media: ExtractedMedia) -> dict[str, Any]:
        source_kind = ArtifactKind.video if media.metadata.get("has_video") else ArtifactKind.audio
        source = persist_artifact(ArtifactRecord.for_bytes(source_id, source_kind, data), data)

        frame_uris: list[str] = []
        for frame in media.frames:
            raw = frame_to_bytes(frame)
            res = persist_artifact(ArtifactRecord.for_bytes(source_id, ArtifactKind.frame, raw), raw)
            frame_uris.append(str(res.storage_uri))

        audio_uris: list[str] = []
        if media.audio_pcm:
            res = persist_artifact(
                ArtifactRecord.for_bytes(source_id, ArtifactKind.audio, media.audio_pcm), media.audio_pcm
            )
            audio_uris.append(str(res.storage_uri))

        signature_hex, near = self._signature(source_id, media)

        log.info(
            "pipeline_artifacts_persisted",
            extra={"payload": {"source_id": source_id, "frames": len(frame_uris), "audio": bool(audio_uris)}},
        )
        return {
            "source_uri": source.storage_uri,
            "inputs": {
                Modality.video.value: frame_uris,
                Modality.audio.value: audio_uris,
                Modality.metadata.value: media.metadata,
            },
            "sample_rate": media.sample_rate,
            "signature": signature_hex,
            "near_duplicates": near,
        }

    def _signature(self, source_id: str, media: ExtractedMedia) -> tuple[list[str], list[dict[str, Any]]]:
        """
        dHash кадров: артефакт signature, строка подписи и почти-дубликаты среди других источников.
        """
        if not media.frames:
            return [], []
        signature = VideoSignature.from_frames(media.frames)
        raw = signature.to_bytes()
        persist_artifact(ArtifactRecord.for_bytes(source_id, ArtifactKind.signature, raw), raw)
        record_signature(source_id, signature)
        near = [d.to_dict() for d in find_near_duplicates(signature, exclude_source_id=source_id)]
        if near:
            log.info(
                "pipeline_near_duplicates_found",
                extra={"payload": {"source_id": source_id, "matches": near[:5]}},
            )
        return signature.to_hex(), near

    def _modalities_for(self, envelope: JobEnvelope) -> list[Modality]:
        raw = envelope.param("modalities") or []
        try:
            requested = [Modality(m) for m in raw]
        except ValueError as e:
            raise PermanentError(ErrCode.VALIDATION, "Неизвестная модальность", {"modalities": raw}) from e
        return requested or self.modalities

    def _create_tasks(self, job_id: str, modalities: list[Modality]) -> None:
        for modality in modalities:
            try:
                with db_session() as session:
                    repo = ModalityTaskRepository(session)
                    if repo.get(job_id, modality) is None:
                        repo.add(ModalityTask(job_id=job_id, modality=modality, status=TaskStatus.pending, attempts=0))
            except IntegrityError:
                continue

    # -------------------------------------------------------------------------
    # embedding: fan-out
    # -------------------------------------------------------------------------
    def _fan_out(self, envelope: JobEnvelope, source_id: str, context: dict[str, Any]) -> None:
        job_id = envelope.job_id
        with db_session() as session:
            tasks = ModalityTaskRepository(session).list_for_job(job_id)
            pending = [t.modality for t in tasks if t.status == TaskStatus.pending]

        payload_ref = str(context.get("source_uri") or envelope.payload_ref)
        for modality in pending:
            fresh = idempotency.check_and_set("fanout", job_id, modality.value)
            if not fresh and envelope.attempt == 0:
                continue
            # повторная доставка родителя: под-задача могла потеряться (падение между ключом
            # и публикацией, dead-letter), публикуем её заново под тем же job_id
            try:
                sub = self.publish(parent=envelope, source_id=source_id, modality=modality, payload_ref=payload_ref)
            except PublishError as e:
                idempotency.forget("fanout", job_id, modality.value)
                raise TransientError(ErrCode.PUBLISH_ERROR, "Не удалось опубликовать под-задачу", e.details) from e
            log.info(
                "pipeline_fanout_published",
                extra={"payload": {"job_id": job_id, "modality": modality.value, "sub_job_id": sub.job_id}},
            )

    # =========================================================================
    # ПОД-ЗАДАЧА (generate_embedding)
    # =========================================================================
    def handle_embedding(self, envelope: JobEnvelope) -> None:
        parent_id = envelope.param("parent_job_id")
        raw_modality = envelope.param("modality")
        if not parent_id or not raw_modality:
            raise PermanentError(ErrCode.VALIDATION, "В под-задаче нет parent_job_id/modality")
        try:
            modality = Modality(raw_modality)
        except ValueError as e:
            raise PermanentError(ErrCode.VALIDATION, "Неизвестная модальность", {"modality": raw_modality}) from e

        with db_session() as session:
            job = PipelineJobRepository(session).get(parent_id)
            if job is None:
                raise PermanentError(ErrCode.NOT_FOUND, "Родительское задание не найдено", {"job_id": parent_id})
            stage = job.stage
            source_id = job.source_id
            context = dict(job.context or {})
            task = ModalityTaskRepository(session).get(parent_id, modality)
            task_status = task.status if task is not None else None

        if is_terminal(stage):
            return
        if self._stop_requested(parent_id, stage):
            return
        if task_status == TaskStatus.pending:
            self._run_modality(parent_id, source_id, modality, context)
        self.try_finalize(parent_id)

    def _modality_input(self, modality: Modality, context: dict[str, Any]) -> ModalityInput:
        inputs = context.get("inputs") or {}
        item = ModalityInput(modality=modality, sample_rate=int(context.get("sample_rate") or 16000))
        if modality == Modality.video:
            item.frames = [frame_from_bytes(self._read_blob(uri)) for uri in inputs.get(modality.value) or []]
        elif modality == Modality.audio:
            item.audio_pcm = b"".join(self._read_blob(uri) for uri in inputs.get(modality.value) or [])
        else:
            item.metadata = dict(inputs.get(modality.value) or {})
        if item.is_empty():
            raise PermanentError(ErrCode.INFERENCE_ERROR, "Нет входа для модальности", {"modality": modality.value})
        return item

    def _read_blob(self, uri: str) -> bytes:
        try:
            return blob.get_bytes(blob.uri_to_key(uri))
        except FileNotFoundError as e:
            raise TransientError(ErrCode.STORAGE_ERROR, "Входной артефакт не найден", {"uri": uri}) from e

    def _run_modality(self, job_id: str, source_id: str, modality: Modality, context: dict[str, Any]) -> None:
        extractor = self.features_for(modality)
        attempts_seen = 0

        def _count(attempt: int, _err: BaseException) -> None:
            nonlocal attempts_seen
            attempts_seen = attempt

        # загрузка входа - часть бюджета модальности: её отказ закрывает модальность, а не задание
        try:
            with track_stage_latency(SERVICE, f"embedding_{modality.value}"):
                vector, attempts = call_with_retry(
                    lambda: extractor.embed(self._modality_input(modality, context)),
                    policy=self.modality_policy,
                    op="pipeline_embed",
                    cancel=self._interrupt,
                    on_retry=_count,
                )
        except TransientError as e:
            if e.code == ErrCode.CANCELLED and self._stop_requested(job_id, JobStage.embedding):
                return
            self._settle_failed(job_id, source_id, modality, e, attempts=max(attempts_seen, 1))
            return
        except PermanentError as e:
            self._settle_failed(job_id, source_id, modality, e, attempts=attempts_seen + 1)
            return
        except FatalError:
            raise
        except Exception as e:
            # неклассифицированная ошибка провайдера считается временной и уже исчерпала бюджет
            self._settle_failed(job_id, source_id, modality, e, attempts=attempts_seen + 1)
            return

        with db_session() as session:
            won = ModalityTaskRepository(session).settle(
                job_id,
                modality,
                status=TaskStatus.done,
                attempts=attempts,
                vector=list(vector),
                model_version=extractor.model_version,
            )
        log.info(
            "pipeline_modality_done",
            extra={"payload": {"job_id": job_id, "modality": modality.value, "attempts": attempts, "settled": won}},
        )

    def _settle_failed(
        self, job_id: str, source_id: str, modality: Modality, e: BaseException, *, attempts: int
    ) -> None:
        kind = error_kind(e)
        with db_session() as session:
            won = ModalityTaskRepository(session).settle(
                job_id,
                modality,
                status=TaskStatus.failed,
                attempts=attempts,
                error_kind=kind,
                error=_describe(e),
            )
        log.warning(
            "pipeline_modality_failed",
            extra={
                "payload": {
                    "job_id": job_id,
                    "source_id": source_id,
                    "modality": modality.value,
                    "error_kind": kind,
                    "code": e.code if isinstance(e, AppError) else None,
                    "settled": won,
                }
            },
        )

    # =========================================================================
    # FAN-IN: persisting -> completed
    # =========================================================================
    def try_finalize(self, job_id: str) -> bool:
        """
        Завершить задание, если все модальности закрыты.
        True - задание завершено этим вызовом.
        """
        with db_session() as session:
            job = PipelineJobRepository(session).get(job_id)
            if job is None or is_terminal(job.stage):
                return False
            stage = job.stage
            pending = ModalityTaskRepository(session).pending_count(job_id)

        if pending:
            return False
        if stage == JobStage.embedding and not self._advance(job_id, JobStage.embedding, JobStage.persisting):
            return False
        if stage not in (JobStage.embedding, JobStage.persisting):
            return False
        return self._persist_and_complete(job_id)

    def _persist_and_complete(self, job_id: str) -> bool:
        with db_session() as session:
            job = PipelineJobRepository(session).get(job_id)
            if job is None or job.stage != JobStage.persisting:
                return False
            source_id = job.source_id
            near = list((job.context or {}).get("near_duplicates") or [])
            tasks = [
                {
                    "modality": t.modality,
                    "status": t.status,
                    "attempts": t.attempts,
                    "vector": list(t.vector or []),
                    "model_version": t.model_version,
                    "error_kind": t.error_kind,
                    "error": t.error,
                }
                for t in ModalityTaskRepository(session).list_for_job(job_id)
            ]

        report = OutcomeReport(run_id=job_id, kind="pipeline")
        try:
            with track_stage_latency(SERVICE, "persisting"):
                for t in tasks:
                    unit = f"{source_id}/{t['modality'].value}"
                    if t["status"] != TaskStatus.done:
                        report.failed(
                            unit,
                            error_kind=t["error_kind"] or "transient",
                            error=t["error"] or "",
                            attempts=t["attempts"],
                        )
                        continue
                    upsert_embedding(
                        EmbeddingRecord(
                            source_id=source_id,
                            modality=t["modality"],
                            vector=t["vector"],
                            model_version=t["model_version"] or "",
                        )
                    )
                    raw = json.dumps(t["vector"]).encode("utf-8")
                    persist_artifact(ArtifactRecord.for_bytes(source_id, ArtifactKind.embedding, raw), raw)
                    report.succeeded(unit, attempts=max(1, t["attempts"]))
        except (TransientError, PermanentError) as e:
            log.error(
                "pipeline_persist_failed",
                extra={"payload": {"job_id": job_id, "error": str(e)[:300]}},
            )
            raise TransientError(ErrCode.PERSIST_ERROR, "Не удалось сохранить эмбеддинги", {"job_id": job_id}) from e

        partial = bool(report.failures)
        report.notes["partial"] = partial
        if near:
            report.notes["near_duplicates"] = near
        with db_session() as session:
            repo = PipelineJobRepository(session)
            completed = repo.transition(job_id, expected=JobStage.persisting, target=JobStage.completed)
            if completed:
                repo.save_report(job_id, report=report.to_dict(), partial=partial)
        if completed:
            record_pipeline_job(result="partial" if partial else "completed")
            log.info(
                "pipeline_job_completed",
                extra={"payload": {"job_id": job_id, "source_id": source_id, "report": report.to_dict()}},
            )
        return completed
