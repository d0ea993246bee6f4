"""
Извлечение кадров и аудио из медиа-контейнера (PyAV).

Что делает:
- декодирует видео-дорожку, берёт кадр раз в PIPELINE_FRAME_SAMPLE_SEC (не больше PIPELINE_MAX_FRAMES)
- декодирует аудио в PCM16 / mono / 16 kHz
- собирает метаданные контейнера

Ошибки:
- битый / неподдерживаемый источник -> UnsupportedMediaError (без повторов)
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Any

import av  # PyAV (ffmpeg bindings)
import numpy as np

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import UnsupportedMediaError

AUDIO_SAMPLE_RATE = 16000


@dataclass
class ExtractedMedia:
    frames: list[np.ndarray] = field(default_factory=list)  # RGB, (h, w, 3) uint8
    audio_pcm: bytes = b""  # s16le mono
    sample_rate: int = AUDIO_SAMPLE_RATE
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_pcm)


def frame_to_bytes(frame: np.ndarray) -> bytes:
    """Каноничные байты кадра (.npy: dtype + shape + данные)."""
    buf = io.BytesIO()
    np.save(buf, np.ascontiguousarray(frame), allow_pickle=False)
    return buf.getvalue()


def frame_from_bytes(data: bytes) -> np.ndarray:
    return np.load(io.BytesIO(data), allow_pickle=False)


class MediaExtractor:
    def __init__(self, *, sample_sec: float | None = None, max_frames: int | None = None) -> None:
        s = get_settings()
        self.sample_sec = max(0.01, float(sample_sec if sample_sec is not None else s.pipeline_frame_sample_sec))
        self.max_frames = max(0, int(max_frames if max_frames is not None else s.pipeline_max_frames))

    def extract(self, data: bytes) -> ExtractedMedia:
        try:
            container = av.open(io.BytesIO(data))
        except (av.error.FFmpegError, ValueError) as e:
            raise UnsupportedMediaError(details={"err": str(e)[:200]}) from e

        try:
            return self._decode(container)
        except av.error.FFmpegError as e:
            raise UnsupportedMediaError(details={"err": str(e)[:200]}) from e
        finally:
            container.close()

    def _decode(self, container: Any) -> ExtractedMedia:
        video = next((s for s in container.streams if s.type == "video"), None)
        audio = next((s for s in container.streams if s.type == "audio"), None)
        if video is None and audio is None:
            raise UnsupportedMediaError("В источнике нет ни видео, ни аудио")

        out = ExtractedMedia(metadata=self._metadata(container, video, audio))
        resampler = (
            av.audio.resampler.AudioResampler(format="s16", layout="mono", rate=AUDIO_SAMPLE_RATE)
            if audio is not None
            else None
        )
        pcm: list[bytes] = []
        next_sample_t = 0.0

        streams = [s for s in (video, audio) if s is not None]
        for packet in container.demux(*streams):
            for frame in packet.decode():
                if isinstance(frame, av.VideoFrame):
                    if len(out.frames) >= self.max_frames:
                        continue
                    t = float(frame.time) if frame.time is not None else next_sample_t
                    if t + 1e-6 < next_sample_t:
                        continue
                    out.frames.append(frame.to_ndarray(format="rgb24"))
                    next_sample_t = t + self.sample_sec
                elif isinstance(frame, av.AudioFrame) and resampler is not None:
                    for chunk in resampler.resample(frame):
                        pcm.append(_pcm_bytes(chunk))

        if resampler is not None:
            for chunk in resampler.resample(None):
                pcm.append(_pcm_bytes(chunk))
        out.audio_pcm = b"".join(pcm)

        if video is not None and not out.frames and not out.audio_pcm:
            raise UnsupportedMediaError("Не удалось декодировать ни одного кадра")
        out.metadata["frames_sampled"] = len(out.frames)
        out.metadata["audio_samples"] = len(out.audio_pcm) // 2
        return out

    def _metadata(self, container: Any, video: Any, audio: Any) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "format": getattr(container.format, "name", None),
            "duration_sec": (float(container.duration) / av.time_base) if container.duration else None,
            "has_video": video is not None,
            "has_audio": audio is not None,
        }
        if video is not None:
            ctx = video.codec_context
            meta.update(
                {
                    "video_codec": ctx.name,
                    "width": ctx.width,
                    "height": ctx.height,
                    "fps": float(video.average_rate) if video.average_rate else None,
                }
            )
        if audio is not None:
            ctx = audio.codec_context
            meta.update(
                {
                    "audio_codec": ctx.name,
                    "audio_rate": ctx.sample_rate,
                    "channels": getattr(ctx.layout, "nb_channels", None),
                }
            )
        return meta


def _pcm_bytes(frame: Any) -> bytes:
    # s16 packed mono -> shape (1, samples)
    arr = frame.to_ndarray()
    return np.asarray(arr, dtype=np.int16).reshape(-1).tobytes()
