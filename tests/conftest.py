from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from offchain_agent.common.config import get_settings
from offchain_agent.domain.enums import Modality
from offchain_agent.processing.extract import ExtractedMedia
from offchain_agent.queue import cancellation, idempotency
from offchain_agent.queue.factory import set_queue_client
from offchain_agent.services.backup_service import BackupProgress
from offchain_agent.storage.db import create_all, reset_engine
from offchain_agent.storage.vector_index import set_vector_index


@pytest.fixture(autouse=True)
def settings(tmp_path: Path):
    """
    Изолированный стенд на тест: inline-очередь, sqlite-файл, STORAGE_DIR во временной папке.
    """
    s = get_settings()
    snapshot = {name: getattr(s, name) for name in type(s).model_fields}

    s.app_env = "test"
    s.queue_mode = "inline"
    s.database_dsn = f"sqlite:///{tmp_path / 'agent.db'}"
    s.storage_dir = str(tmp_path / "objects")
    s.service_api_keys = ""
    s.inference_provider = "mock"
    s.vector_index_provider = "memory"
    s.pipeline_modalities = "video,audio,metadata"
    s.pipeline_fetch_retries = 2
    s.pipeline_modality_retries = 2
    s.pipeline_retry_backoff_ms = 0
    s.pipeline_retry_backoff_max_ms = 0
    s.backup_snapshot_retries = 0
    s.backup_alert_webhook_url = None
    s.queue_retry_backoff_ms = 0
    s.queue_retry_backoff_max_ms = 0

    reset_engine()
    create_all()
    set_queue_client(None)
    set_vector_index(None)
    BackupProgress.reset_local()
    idempotency._LOCAL_IDEM_KEYS.clear()
    cancellation.reset_local()
    try:
        yield s
    finally:
        reset_engine()
        set_queue_client(None)
        set_vector_index(None)
        for name, value in snapshot.items():
            setattr(s, name, value)


class FakeExtractor:
    """Декодер без PyAV: кадры и PCM выводятся из байтов источника."""

    def __init__(self, *, frames: int = 2, with_audio: bool = True) -> None:
        self.frames = frames
        self.with_audio = with_audio
        self.calls = 0

    def extract(self, data: bytes) -> ExtractedMedia:
        self.calls += 1
        seed = sum(data) % 251
        frames = [np.full((4, 4, 3), (seed + i) % 256, dtype=np.uint8) for i in range(self.frames)]
        return ExtractedMedia(
            frames=frames,
            audio_pcm=(bytes([seed]) * 64) if self.with_audio else b"",
            sample_rate=16000,
            metadata={"duration_sec": 2.0, "has_video": bool(frames), "has_audio": self.with_audio},
        )


@pytest.fixture()
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture()
def media_file(tmp_path: Path) -> str:
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42-fake-media-bytes")
    return f"file://{path}"


ALL_MODALITIES = [Modality.video, Modality.audio, Modality.metadata]
