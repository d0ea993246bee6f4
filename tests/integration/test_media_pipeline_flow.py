from __future__ import annotations

import threading

import numpy as np

from offchain_agent.common.errors import ErrCode, PermanentError, TransientError, UnsupportedMediaError
from offchain_agent.domain.enums import ArtifactKind, JobStage, Modality, TaskStatus
from offchain_agent.processing.extract import ExtractedMedia
from offchain_agent.processing.features import MockFeatureExtractor, ModalityInput
from offchain_agent.queue import cancellation
from offchain_agent.queue.dispatcher import Q_EMBED, Q_MEDIA, enqueue_embedding, enqueue_extract_media
from offchain_agent.queue.factory import get_queue_client, set_queue_client
from offchain_agent.queue.memory import MemoryQueueClient
from offchain_agent.queue.retry import dlq_name
from offchain_agent.services import reconciler
from offchain_agent.services.duplicates import find_near_duplicates, load_signature
from offchain_agent.services.media_pipeline import MediaPipeline
from offchain_agent.storage import blob
from offchain_agent.storage.db import db_session
from offchain_agent.storage.repositories import (
    EmbeddingRepository,
    MediaArtifactRepository,
    ModalityTaskRepository,
    PipelineJobRepository,
)
from offchain_agent.storage.vector_index import MemoryVectorIndex, set_vector_index


class FailingFeatures:
    def __init__(self, error: Exception) -> None:
        self.model_version = "v1"
        self.error = error
        self.calls = 0

    def embed(self, item: ModalityInput) -> list[float]:
        self.calls += 1
        raise self.error


class BrokenExtractor:
    def extract(self, data: bytes):
        raise UnsupportedMediaError(details={"err": "moov atom not found"})


def _job(job_id: str) -> dict:
    with db_session() as s:
        job = PipelineJobRepository(s).get(job_id)
        return {
            "stage": job.stage,
            "partial": job.partial,
            "failure_reason": job.failure_reason,
            "report": job.report,
            "context": dict(job.context or {}),
        }


def _counts(source_id: str) -> dict:
    with db_session() as s:
        artifacts = MediaArtifactRepository(s).list_for_source(source_id)
        embeddings = EmbeddingRepository(s).list_for_source(source_id)
        return {
            "artifacts": sorted((a.artifact_kind.value, a.content_hash) for a in artifacts),
            "embeddings": sorted((e.modality.value, e.model_version) for e in embeddings),
        }


def _run_all(pipeline: MediaPipeline) -> None:
    q = get_queue_client()
    while q.drain(Q_MEDIA, pipeline.handle) + q.drain(Q_EMBED, pipeline.handle):
        pass


# =============================================================================
# СЦЕНАРИИ
# =============================================================================
def test_job_completes_partially_when_audio_fails_permanently(fake_extractor, media_file) -> None:
    index = MemoryVectorIndex()
    set_vector_index(index)
    mock = MockFeatureExtractor()
    audio = FailingFeatures(PermanentError(ErrCode.INFERENCE_ERROR, "audio codec not supported by model"))
    pipeline = MediaPipeline(
        extractor=fake_extractor,
        features={Modality.video: mock, Modality.audio: audio, Modality.metadata: mock},
    )

    env = enqueue_extract_media(source_id="src-1", payload_ref=media_file)
    q = get_queue_client()
    assert q.drain(Q_MEDIA, pipeline.handle) == 1
    assert q.depth(Q_EMBED).depth == 3
    assert _job(env.job_id)["stage"] == JobStage.embedding
    q.drain(Q_EMBED, pipeline.handle)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    assert job["partial"] is True
    report = job["report"]
    assert report["status"] == "partial"
    assert sorted(report["successes"]) == ["src-1/metadata", "src-1/video"]
    [failure] = report["failures"]
    assert failure["unit"] == "src-1/audio"
    assert failure["error_kind"] == "permanent"
    assert "audio codec not supported" in failure["error"]
    assert audio.calls == 1

    counts = _counts("src-1")
    assert counts["embeddings"] == [("metadata", "v1"), ("video", "v1")]
    assert index.writes == 2
    kinds = [k for k, _ in counts["artifacts"]]
    assert kinds.count(ArtifactKind.frame.value) == 2
    assert kinds.count(ArtifactKind.embedding.value) == 2
    assert not q.dead_letters


def test_transient_modality_failure_exhausts_retries_and_is_reported(fake_extractor, media_file, settings) -> None:
    settings.pipeline_modality_retries = 3
    audio = FailingFeatures(TransientError(ErrCode.TIMEOUT, "inference timeout"))
    mock = MockFeatureExtractor()
    pipeline = MediaPipeline(
        extractor=fake_extractor,
        features={Modality.video: mock, Modality.audio: audio, Modality.metadata: mock},
    )
    env = enqueue_extract_media(source_id="src-2", payload_ref=media_file)
    _run_all(pipeline)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    [failure] = job["report"]["failures"]
    assert failure["error_kind"] == "transient"
    assert failure["attempts"] == 3
    assert audio.calls == 3


def test_requested_modalities_limit_fan_out(fake_extractor, media_file) -> None:
    pipeline = MediaPipeline(extractor=fake_extractor)
    env = enqueue_extract_media(source_id="src-3", payload_ref=media_file, modalities=["audio"])
    _run_all(pipeline)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    assert job["partial"] is False
    assert job["report"]["successes"] == ["src-3/audio"]


def test_unsupported_media_fails_job_without_fan_out(media_file) -> None:
    pipeline = MediaPipeline(extractor=BrokenExtractor())
    env = enqueue_extract_media(source_id="src-4", payload_ref=media_file)
    _run_all(pipeline)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.failed
    assert job["failure_reason"] == "unsupported_media"
    assert job["report"]["failures"][0]["error_kind"] == "permanent"
    assert get_queue_client().depth(Q_EMBED).depth == 0


def test_missing_source_fails_with_fetch_error(fake_extractor, tmp_path) -> None:
    pipeline = MediaPipeline(extractor=fake_extractor)
    env = enqueue_extract_media(source_id="src-5", payload_ref=f"file://{tmp_path / 'nope.mp4'}")
    _run_all(pipeline)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.failed
    assert job["failure_reason"] == "fetch_error"
    assert fake_extractor.calls == 0


def test_cancel_fails_job_with_cancelled_reason(fake_extractor, media_file) -> None:
    cancel = threading.Event()
    cancel.set()
    pipeline = MediaPipeline(extractor=fake_extractor, cancel=cancel)
    env = enqueue_extract_media(source_id="src-6", payload_ref=media_file)
    get_queue_client().drain(Q_MEDIA, pipeline.handle)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.failed
    assert job["failure_reason"] == "cancelled"


# =============================================================================
# ПОВТОРНАЯ ДОСТАВКА
# =============================================================================
def test_redelivery_of_every_message_changes_nothing(fake_extractor, media_file) -> None:
    index = MemoryVectorIndex()
    set_vector_index(index)
    published = []

    def publish(**kwargs):
        sub = enqueue_embedding(**kwargs)
        published.append(sub)
        return sub

    pipeline = MediaPipeline(extractor=fake_extractor, publish=publish)
    env = enqueue_extract_media(source_id="src-7", payload_ref=media_file)
    _run_all(pipeline)
    before = _counts("src-7")
    report = _job(env.job_id)["report"]

    # каждое сообщение доставлено ещё раз
    pipeline.handle(env)
    for sub in published:
        pipeline.handle(sub)

    assert _counts("src-7") == before
    assert _job(env.job_id)["report"] == report
    assert index.writes == 3
    assert len(published) == 3
    assert get_queue_client().depth(Q_EMBED).depth == 0


def test_visibility_timeout_redelivery_yields_one_artifact_set(fake_extractor, media_file) -> None:
    clock = {"now": 100.0}
    q = MemoryQueueClient(visibility_timeout_sec=30, clock=lambda: clock["now"])
    set_queue_client(q)
    index = MemoryVectorIndex()
    set_vector_index(index)
    pipeline = MediaPipeline(extractor=fake_extractor)

    env = enqueue_extract_media(source_id="src-8", payload_ref=media_file)
    _, copy_a = q.receive(Q_MEDIA, consumer="worker-a")

    # worker-a завис дольше visibility timeout, сообщение забирает worker-b
    clock["now"] += 31
    assert q.process_one(Q_MEDIA, pipeline.handle, consumer="worker-b") is True
    # worker-a очнулся и доделал свою копию
    pipeline.handle(copy_a)

    assert q.depth(Q_EMBED).depth == 3
    q.drain(Q_EMBED, pipeline.handle)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    counts = _counts("src-8")
    assert len(counts["artifacts"]) == len(set(counts["artifacts"]))
    assert len(counts["embeddings"]) == 3
    assert index.writes == 3


def test_two_workers_on_same_message_concurrently(fake_extractor, media_file) -> None:
    index = MemoryVectorIndex()
    set_vector_index(index)
    pipeline = MediaPipeline(extractor=fake_extractor)
    env = enqueue_extract_media(source_id="src-9", payload_ref=media_file)
    get_queue_client().receive(Q_MEDIA)

    barrier = threading.Barrier(2)
    errors: list[Exception] = []

    def worker() -> None:
        barrier.wait()
        try:
            pipeline.handle(env)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    # упавшая копия будет доставлена повторно
    for _ in errors:
        pipeline.handle(env)
    _run_all(pipeline)

    assert _job(env.job_id)["stage"] == JobStage.completed
    counts = _counts("src-9")
    assert len(counts["artifacts"]) == len(set(counts["artifacts"]))
    assert len(counts["embeddings"]) == 3
    assert index.writes == 3
    with db_session() as s:
        tasks = ModalityTaskRepository(s).list_for_job(env.job_id)
        assert sorted(t.modality.value for t in tasks) == ["audio", "metadata", "video"]
        assert all(t.status == TaskStatus.done for t in tasks)


def test_cancel_request_by_job_id_fails_job(fake_extractor, media_file) -> None:
    pipeline = MediaPipeline(extractor=fake_extractor)
    env = enqueue_extract_media(source_id="src-10", payload_ref=media_file)
    cancellation.request_cancel(env.job_id)
    _run_all(pipeline)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.failed
    assert job["failure_reason"] == "cancelled"
    assert job["report"]["failures"][0]["error_kind"] == "cancelled"
    assert fake_extractor.calls == 0


def test_cancel_request_between_fan_out_and_sub_jobs(fake_extractor, media_file) -> None:
    features = MockFeatureExtractor()
    pipeline = MediaPipeline(extractor=fake_extractor, features=features)
    env = enqueue_extract_media(source_id="src-11", payload_ref=media_file)
    q = get_queue_client()
    q.drain(Q_MEDIA, pipeline.handle)
    assert _job(env.job_id)["stage"] == JobStage.embedding

    cancellation.request_cancel(env.job_id)
    assert q.drain(Q_EMBED, pipeline.handle) == 3

    job = _job(env.job_id)
    assert job["stage"] == JobStage.failed
    assert job["failure_reason"] == "cancelled"
    assert _counts("src-11")["embeddings"] == []
    assert not q.dead_letters


# =============================================================================
# ОСТАНОВКА ПРОЦЕССА
# =============================================================================
class ShutdownOnFirstFetch:
    """Источник, во время первого чтения которого процесс получает SIGTERM."""

    def __init__(self, shutdown: threading.Event) -> None:
        self.shutdown = shutdown
        self.calls = 0

    def fetch(self, payload_ref: str) -> bytes:
        self.calls += 1
        if self.calls == 1:
            self.shutdown.set()
        return b"media-bytes-for-" + payload_ref.encode()


def test_shutdown_mid_fetch_releases_message_without_failing_job(fake_extractor, media_file) -> None:
    shutdown = threading.Event()
    fetcher = ShutdownOnFirstFetch(shutdown)
    pipeline = MediaPipeline(fetcher=fetcher, extractor=fake_extractor, shutdown=shutdown)
    env = enqueue_extract_media(source_id="src-12", payload_ref=media_file)
    q = get_queue_client()

    assert q.process_one(Q_MEDIA, pipeline.handle) is False
    job = _job(env.job_id)
    assert job["stage"] not in (JobStage.failed, JobStage.completed)
    assert job["failure_reason"] is None
    assert q.depth(Q_MEDIA).depth == 1
    assert not q.dead_letters
    assert fake_extractor.calls == 0

    # новый процесс подхватывает то же сообщение
    shutdown.clear()
    _run_all(pipeline)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    assert job["partial"] is False
    assert fetcher.calls == 2
    assert len(_counts("src-12")["embeddings"]) == 3


def test_shutdown_before_sub_job_keeps_parent_in_embedding(fake_extractor, media_file) -> None:
    shutdown = threading.Event()
    pipeline = MediaPipeline(extractor=fake_extractor, shutdown=shutdown)
    env = enqueue_extract_media(source_id="src-13", payload_ref=media_file)
    q = get_queue_client()
    q.drain(Q_MEDIA, pipeline.handle)

    shutdown.set()
    assert q.process_one(Q_EMBED, pipeline.handle) is False
    assert _job(env.job_id)["stage"] == JobStage.embedding
    assert q.depth(Q_EMBED).depth == 3

    shutdown.clear()
    _run_all(pipeline)
    assert _job(env.job_id)["stage"] == JobStage.completed


# =============================================================================
# СБОИ ВНЕ БЮДЖЕТА РЕТРАЕВ МОДАЛЬНОСТИ
# =============================================================================
class CrashingAudioPipeline(MediaPipeline):
    """Под-задача audio падает на каждой доставке до того, как модальность закрыта."""

    def _run_modality(self, job_id, source_id, modality, context) -> None:
        if modality == Modality.audio:
            raise RuntimeError("worker crashed while loading audio input")
        super()._run_modality(job_id, source_id, modality, context)


def test_dead_lettered_sub_job_still_lets_parent_complete(fake_extractor, media_file, settings) -> None:
    settings.queue_max_attempts = 3
    set_queue_client(None)
    pipeline = CrashingAudioPipeline(extractor=fake_extractor)
    env = enqueue_extract_media(source_id="src-14", payload_ref=media_file)
    _run_all(pipeline)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    assert job["partial"] is True
    assert sorted(job["report"]["successes"]) == ["src-14/metadata", "src-14/video"]
    [failure] = job["report"]["failures"]
    assert failure["unit"] == "src-14/audio"
    assert failure["attempts"] == 3
    assert "worker crashed" in failure["error"]

    q = get_queue_client()
    [dead] = q.dead_letters[dlq_name(Q_EMBED)]
    assert dead["attempt"] == 2
    assert dlq_name(Q_MEDIA) not in q.dead_letters


def test_missing_modality_input_fails_only_that_modality(fake_extractor, media_file) -> None:
    pipeline = MediaPipeline(extractor=fake_extractor)
    env = enqueue_extract_media(source_id="src-15", payload_ref=media_file)
    q = get_queue_client()
    q.drain(Q_MEDIA, pipeline.handle)

    # промежуточный артефакт audio пропал до запуска под-задачи
    [audio_uri] = _job(env.job_id)["context"]["inputs"]["audio"]
    blob.delete(blob.uri_to_key(audio_uri))
    _run_all(pipeline)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    assert job["partial"] is True
    [failure] = job["report"]["failures"]
    assert failure["unit"] == "src-15/audio"
    assert failure["error_kind"] == "transient"
    assert not q.dead_letters


# =============================================================================
# СБОЙ МЕЖДУ ОТМЕТКОЙ FAN-OUT И ПУБЛИКАЦИЕЙ
# =============================================================================
def test_parent_redelivery_republishes_lost_sub_job(fake_extractor, media_file) -> None:
    index = MemoryVectorIndex()
    set_vector_index(index)
    crashed: list[str] = []

    def publish(**kwargs):
        # процесс упал после отметки fan-out для audio, но до публикации
        if kwargs["modality"] == Modality.audio and not crashed:
            crashed.append(kwargs["parent"].job_id)
            raise RuntimeError("worker killed before publish")
        return enqueue_embedding(**kwargs)

    pipeline = MediaPipeline(extractor=fake_extractor, publish=publish)
    env = enqueue_extract_media(source_id="src-16", payload_ref=media_file)
    _run_all(pipeline)

    assert crashed == [env.job_id]
    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    assert job["partial"] is False
    assert sorted(e for e, _ in _counts("src-16")["embeddings"]) == ["audio", "metadata", "video"]
    assert index.writes == 3
    assert not get_queue_client().dead_letters


# =============================================================================
# СБОЙ ЗАПИСИ И ПОВТОРНАЯ ДОСТАВКА
# =============================================================================
def test_persist_failure_then_redelivery_completes_with_one_embedding_set(
    fake_extractor, media_file, monkeypatch
) -> None:
    index = MemoryVectorIndex()
    set_vector_index(index)
    calls = {"n": 0}

    def flaky_upsert(record, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise TransientError(ErrCode.STORAGE_ERROR, "vector index unavailable")
        return reconciler.upsert_embedding(record, **kwargs)

    monkeypatch.setattr("offchain_agent.services.media_pipeline.upsert_embedding", flaky_upsert)
    pipeline = MediaPipeline(extractor=fake_extractor)
    env = enqueue_extract_media(source_id="src-17", payload_ref=media_file)
    q = get_queue_client()
    q.drain(Q_MEDIA, pipeline.handle)
    for _ in range(3):
        assert q.process_one(Q_EMBED, pipeline.handle) is True

    # последняя под-задача забрала родителя, но запись упала: задание ждёт повтора
    assert _job(env.job_id)["stage"] == JobStage.persisting
    assert len(_counts("src-17")["embeddings"]) == 1
    assert q.depth(Q_EMBED).depth == 1

    q.drain(Q_EMBED, pipeline.handle)

    job = _job(env.job_id)
    assert job["stage"] == JobStage.completed
    assert job["partial"] is False
    assert sorted(e for e, _ in _counts("src-17")["embeddings"]) == ["audio", "metadata", "video"]
    assert index.writes == 3
    assert not q.dead_letters


# =============================================================================
# ПОЧТИ-ДУБЛИКАТЫ
# =============================================================================
class GradientExtractor:
    """Кадры-градиенты: b"rising" в байтах - яркость растёт вправо, иначе падает."""

    def extract(self, data: bytes) -> ExtractedMedia:
        row = np.arange(90, dtype=np.int16) * 2
        row = row if b"rising" in data else 255 - row
        gray = np.tile(row - sum(data) % 5, (80, 1)).clip(0, 255)
        frame = np.stack([gray] * 3, axis=-1).astype(np.uint8)
        return ExtractedMedia(
            frames=[frame, frame],
            audio_pcm=b"",
            sample_rate=16000,
            metadata={"duration_sec": 2.0, "has_video": True, "has_audio": False},
        )


def test_reencoded_clip_is_reported_as_near_duplicate(tmp_path) -> None:
    pipeline = MediaPipeline(extractor=GradientExtractor())
    refs = {}
    for name, content in (("a", b"falling-original"), ("b", b"falling-reencoded!"), ("c", b"rising")):
        path = tmp_path / f"{name}.mp4"
        path.write_bytes(content)
        refs[name] = f"file://{path}"

    jobs = {}
    for name in ("a", "b", "c"):
        env = enqueue_extract_media(source_id=f"dup-{name}", payload_ref=refs[name], modalities=["video", "metadata"])
        _run_all(pipeline)
        jobs[name] = _job(env.job_id)

    assert all(j["stage"] == JobStage.completed for j in jobs.values())
    assert "near_duplicates" not in jobs["a"]["report"]["notes"]
    assert jobs["b"]["report"]["notes"]["near_duplicates"] == [{"source_id": "dup-a", "distance": 0}]
    assert "near_duplicates" not in jobs["c"]["report"]["notes"]

    matches = find_near_duplicates(load_signature("dup-a"), exclude_source_id="dup-a")
    assert [m.source_id for m in matches] == ["dup-b"]
    kinds = [k for k, _ in _counts("dup-a")["artifacts"]]
    assert kinds.count(ArtifactKind.signature.value) == 1
