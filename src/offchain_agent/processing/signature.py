"""
Перцептивная подпись видео (dHash по кадрам).

Назначение:
- поиск почти-дубликатов: перекодированное / пережатое видео даёт близкие хэши
- подпись = 64-битный dHash для нескольких равномерно выбранных кадров

dHash кадра:
- яркость (ITU-R BT.601), сжатие до 9x8
- бит = 1, если пиксель ярче правого соседа; 8 строк x 8 сравнений = 64 бита

Расстояние между подписями - минимум Хэмминга по парам кадров на одинаковых позициях.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

import numpy as np

HASH_ROWS = 8
HASH_COLS = 9
SIGNATURE_FRAMES = 5


def _luma(frame: np.ndarray) -> np.ndarray:
    arr = np.asarray(frame, dtype=np.float64)
    if arr.ndim == 2:
        return arr
    return arr[..., 0] * 0.299 + arr[..., 1] * 0.587 + arr[..., 2] * 0.114


def _shrink(gray: np.ndarray, rows: int, cols: int) -> np.ndarray:
    h, w = gray.shape
    if h >= rows and w >= cols:
        # усреднение по блокам
        r = np.linspace(0, h, rows + 1).astype(int)
        c = np.linspace(0, w, cols + 1).astype(int)
        return np.array(
            [[gray[r[i] : r[i + 1], c[j] : c[j + 1]].mean() for j in range(cols)] for i in range(rows)]
        )
    ri = np.minimum((np.arange(rows) * h) // rows, h - 1)
    ci = np.minimum((np.arange(cols) * w) // cols, w - 1)
    return gray[np.ix_(ri, ci)]


def frame_dhash(frame: np.ndarray) -> int:
    small = _shrink(_luma(frame), HASH_ROWS, HASH_COLS)
    bits = (small[:, :-1] > small[:, 1:]).flatten()
    value = 0
    for pos, bit in enumerate(bits):
        if bit:
            value |= 1 << pos
    return value


def hamming(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def pick_frames(frames: list[np.ndarray], count: int = SIGNATURE_FRAMES) -> list[np.ndarray]:
    """Равномерная выборка count кадров (все, если их меньше)."""
    if len(frames) <= count:
        return list(frames)
    idx = np.linspace(0, len(frames) - 1, count).round().astype(int)
    return [frames[i] for i in idx]


@dataclass(frozen=True)
class VideoSignature:
    frame_hashes: tuple[int, ...] = field(default_factory=tuple)

    @classmethod
    def from_frames(cls, frames: list[np.ndarray], count: int = SIGNATURE_FRAMES) -> VideoSignature:
        return cls(frame_hashes=tuple(frame_dhash(f) for f in pick_frames(frames, count)))

    @classmethod
    def from_hex(cls, values: list[str]) -> VideoSignature:
        return cls(frame_hashes=tuple(int(v, 16) for v in values))

    def to_hex(self) -> list[str]:
        return [f"{h:016x}" for h in self.frame_hashes]

    def to_bytes(self) -> bytes:
        return struct.pack(f">{len(self.frame_hashes)}Q", *self.frame_hashes)

    def distance(self, other: VideoSignature) -> int | None:
        """
        Минимальное расстояние Хэмминга по парам кадров.
        None - сравнивать нечего (у одной из подписей нет кадров).
        """
        pairs = list(zip(self.frame_hashes, other.frame_hashes))
        if not pairs:
            return None
        return min(hamming(a, b) for a, b in pairs)

    def is_similar(self, other: VideoSignature, threshold: int) -> bool:
        d = self.distance(other)
        return d is not None and d <= threshold
