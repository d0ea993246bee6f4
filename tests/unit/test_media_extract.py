from __future__ import annotations

from fractions import Fraction

import av
import numpy as np
import pytest

from offchain_agent.common.errors import UnsupportedMediaError
from offchain_agent.processing.extract import AUDIO_SAMPLE_RATE, MediaExtractor


def _video_bytes(path, *, seconds: int = 2, fps: int = 10) -> bytes:
    container = av.open(str(path), mode="w")
    stream = container.add_stream("mpeg4", rate=fps)
    stream.width = 64
    stream.height = 48
    stream.pix_fmt = "yuv420p"
    for i in range(seconds * fps):
        img = np.full((48, 64, 3), i * 10 % 255, dtype=np.uint8)
        frame = av.VideoFrame.from_ndarray(img, format="rgb24")
        frame.pts = i
        frame.time_base = Fraction(1, fps)
        for packet in stream.encode(frame):
            container.mux(packet)
    for packet in stream.encode(None):
        container.mux(packet)
    container.close()
    return path.read_bytes()


def _audio_bytes(path, *, seconds: int = 1, rate: int = 8000) -> bytes:
    container = av.open(str(path), mode="w", format="wav")
    stream = container.add_stream("pcm_s16le", rate=rate)
    stream.codec_context.layout = "mono"
    chunk = 800
    t = np.arange(seconds * rate)
    tone = (np.sin(2 * np.pi * 440 * t / rate) * 8000).astype(np.int16)
    for start in range(0, len(tone), chunk):
        frame = av.AudioFrame.from_ndarray(tone[start : start + chunk].reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = rate
        frame.pts = start
        frame.time_base = Fraction(1, rate)
        for packet in stream.encode(frame):
            container.mux(packet)
    for packet in stream.encode(None):
        container.mux(packet)
    container.close()
    return path.read_bytes()


def test_video_frames_are_sampled_and_capped(tmp_path, settings) -> None:
    data = _video_bytes(tmp_path / "clip.mp4")

    sampled = MediaExtractor(sample_sec=0.5, max_frames=100).extract(data)
    capped = MediaExtractor(sample_sec=0.1, max_frames=3).extract(data)

    assert 2 <= len(sampled.frames) <= 5
    assert sampled.frames[0].shape == (48, 64, 3)
    assert sampled.frames[0].dtype == np.uint8
    assert len(capped.frames) == 3
    assert sampled.metadata["has_video"] is True
    assert sampled.metadata["width"] == 64
    assert sampled.metadata["frames_sampled"] == len(sampled.frames)
    assert not sampled.has_audio


def test_audio_is_resampled_to_mono_16k(tmp_path, settings) -> None:
    data = _audio_bytes(tmp_path / "tone.wav")

    media = MediaExtractor().extract(data)

    samples = len(media.audio_pcm) // 2
    assert media.sample_rate == AUDIO_SAMPLE_RATE
    assert abs(samples - AUDIO_SAMPLE_RATE) < AUDIO_SAMPLE_RATE // 10
    assert media.frames == []
    assert media.metadata["has_audio"] is True
    assert media.metadata["audio_samples"] == samples


@pytest.mark.parametrize("data", [b"", b"definitely not a media container" * 20])
def test_garbage_is_unsupported_media(data, settings) -> None:
    with pytest.raises(UnsupportedMediaError):
        MediaExtractor().extract(data)
