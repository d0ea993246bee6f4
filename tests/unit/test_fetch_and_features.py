from __future__ import annotations

import numpy as np
import pytest
import requests

from offchain_agent.common.errors import PermanentError, TransientError
from offchain_agent.domain.enums import Modality
from offchain_agent.processing.extract import frame_from_bytes, frame_to_bytes
from offchain_agent.processing.features import MockFeatureExtractor, ModalityInput
from offchain_agent.processing.fetch import SourceFetcher
from offchain_agent.storage import blob
from tests.fakes import FakeResponse, FakeSession


def test_fetch_file_and_blob(tmp_path) -> None:
    path = tmp_path / "a.bin"
    path.write_bytes(b"abc")
    fetcher = SourceFetcher()
    assert fetcher.fetch(f"file://{path}") == b"abc"

    uri = blob.put_bytes("inbox/a.bin", b"xyz")
    assert fetcher.fetch(uri) == b"xyz"


def test_fetch_error_classification(tmp_path) -> None:
    fetcher = SourceFetcher()
    with pytest.raises(TransientError):
        fetcher.fetch(f"file://{tmp_path / 'missing.bin'}")
    with pytest.raises(PermanentError):
        fetcher.fetch("ftp://host/file")


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (FakeResponse(503), TransientError),
        (FakeResponse(429), TransientError),
        (FakeResponse(403), PermanentError),
        (requests.ConnectionError("reset"), TransientError),
    ],
)
def test_fetch_http_error_classification(result, expected) -> None:
    fetcher = SourceFetcher(session=FakeSession(result))
    with pytest.raises(expected):
        fetcher.fetch("https://cdn.local/a.mp4")


def test_frame_bytes_keep_shape_and_dtype() -> None:
    frame = np.arange(48, dtype=np.uint8).reshape(4, 4, 3)
    restored = frame_from_bytes(frame_to_bytes(frame))
    assert restored.dtype == np.uint8
    assert np.array_equal(restored, frame)


def test_mock_features_are_deterministic_and_normalised() -> None:
    fx = MockFeatureExtractor(model_version="v-test")
    item = ModalityInput(modality=Modality.audio, audio_pcm=b"\x01\x02" * 32)
    v1 = fx.embed(item)
    v2 = fx.embed(item)
    assert v1 == v2
    assert abs(float(np.linalg.norm(v1)) - 1.0) < 1e-3
    assert fx.embed(ModalityInput(modality=Modality.audio, audio_pcm=b"\x03" * 64)) != v1


def test_mock_features_reject_empty_input() -> None:
    with pytest.raises(PermanentError):
        MockFeatureExtractor().embed(ModalityInput(modality=Modality.video))


def test_fetch_http_returns_body() -> None:
    session = FakeSession(FakeResponse(200, content=b"media"))
    fetcher = SourceFetcher(timeout_s=7, session=session)
    assert fetcher.fetch("https://cdn.local/a.mp4") == b"media"
    assert session.calls[0]["method"] == "GET"
    assert session.calls[0]["timeout"] == 7
