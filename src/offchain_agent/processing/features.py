"""
Извлечение признаков (эмбеддингов) по модальностям.

Провайдеры (INFERENCE_PROVIDER):
- http - внешний ML-сервис: POST {INFERENCE_BASE_URL}/v1/embed/{modality}
- mock - детерминированный вектор из хеша входа (dev/тесты)

Вход модальности:
- video    - кадры (RGB ndarray)
- audio    - PCM16 mono 16 kHz
- metadata - словарь метаданных контейнера
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np
import requests

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import ErrCode, FatalError, PermanentError, TransientError
from offchain_agent.domain.enums import Modality

from .extract import AUDIO_SAMPLE_RATE, frame_to_bytes

MOCK_DIM = 16


@dataclass
class ModalityInput:
    modality: Modality
    frames: list[np.ndarray] = field(default_factory=list)
    audio_pcm: bytes = b""
    sample_rate: int = AUDIO_SAMPLE_RATE
    metadata: dict[str, Any] = field(default_factory=dict)

    def canonical_bytes(self) -> bytes:
        if self.modality == Modality.video:
            return b"".join(frame_to_bytes(f) for f in self.frames)
        if self.modality == Modality.audio:
            return self.audio_pcm
        return json.dumps(self.metadata, sort_keys=True, default=str).encode("utf-8")

    def is_empty(self) -> bool:
        if self.modality == Modality.video:
            return not self.frames
        if self.modality == Modality.audio:
            return not self.audio_pcm
        return not self.metadata


class FeatureExtractor(Protocol):
    model_version: str

    def embed(self, item: ModalityInput) -> list[float]: ...


# =============================================================================
# MOCK
# =============================================================================
class MockFeatureExtractor:
    def __init__(self, model_version: str | None = None) -> None:
        self.model_version = model_version or get_settings().inference_model_version

    def embed(self, item: ModalityInput) -> list[float]:
        if item.is_empty():
            raise PermanentError(ErrCode.INFERENCE_ERROR, "Пустой вход модальности", {"modality": item.modality.value})
        seed = hashlib.sha256(item.modality.value.encode() + b":" + item.canonical_bytes()).digest()
        rng = np.random.default_rng(int.from_bytes(seed[:8], "big"))
        vec = rng.standard_normal(MOCK_DIM)
        norm = float(np.linalg.norm(vec)) or 1.0
        return [round(float(x) / norm, 6) for x in vec]


# =============================================================================
# HTTP
# =============================================================================
@dataclass
class HttpFeatureExtractorConfig:
    base_url: str
    token: str | None = None
    timeout_s: int = 120
    model_version: str = "v1"


class HttpFeatureExtractor:
    """Клиент ML-сервиса инференса."""

    def __init__(self, cfg: HttpFeatureExtractorConfig | None = None, *, session: requests.Session | None = None):
        if cfg is None:
            s = get_settings()
            if not s.inference_base_url:
                raise FatalError("INFERENCE_BASE_URL не задан")
            cfg = HttpFeatureExtractorConfig(
                base_url=s.inference_base_url,
                token=s.inference_auth_token,
                timeout_s=s.inference_timeout_sec,
                model_version=s.inference_model_version,
            )
        self.cfg = cfg
        self.model_version = cfg.model_version
        self._session = session or requests.Session()

    def _payload(self, item: ModalityInput) -> dict[str, Any]:
        payload: dict[str, Any] = {"modality": item.modality.value, "model_version": self.model_version}
        if item.modality == Modality.video:
            payload["frames"] = [base64.b64encode(frame_to_bytes(f)).decode("ascii") for f in item.frames]
            payload["frame_format"] = "npy"
        elif item.modality == Modality.audio:
            payload["audio"] = base64.b64encode(item.audio_pcm).decode("ascii")
            payload["audio_format"] = "s16le"
            payload["sample_rate"] = item.sample_rate
        else:
            payload["metadata"] = item.metadata
        return payload

    def embed(self, item: ModalityInput) -> list[float]:
        if item.is_empty():
            raise PermanentError(ErrCode.INFERENCE_ERROR, "Пустой вход модальности", {"modality": item.modality.value})

        url = f"{self.cfg.base_url.rstrip('/')}/v1/embed/{item.modality.value}"
        headers = {"Content-Type": "application/json"}
        if self.cfg.token:
            headers["Authorization"] = f"Bearer {self.cfg.token}"

        try:
            resp = self._session.post(url, json=self._payload(item), headers=headers, timeout=self.cfg.timeout_s)
        except requests.RequestException as e:
            raise TransientError(
                ErrCode.INFERENCE_ERROR, "Ошибка HTTP при вызове инференса", {"err": str(e)[:200]}
            ) from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(ErrCode.INFERENCE_ERROR, "Инференс временно недоступен", {"status": resp.status_code})
        if resp.status_code >= 400:
            raise PermanentError(
                ErrCode.INFERENCE_ERROR,
                "Инференс отклонил вход",
                {"status": resp.status_code, "text_head": resp.text[:300]},
            )

        try:
            vector = [float(x) for x in resp.json()["embedding"]]
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentError(
                ErrCode.INFERENCE_ERROR, "Инференс вернул невалидный ответ", {"text_head": resp.text[:300]}
            ) from e
        if not vector:
            raise PermanentError(ErrCode.INFERENCE_ERROR, "Инференс вернул пустой вектор")
        return vector


def build_feature_extractor() -> FeatureExtractor:
    provider = (get_settings().inference_provider or "http").strip().lower()
    if provider == "mock":
        return MockFeatureExtractor()
    return HttpFeatureExtractor()
