"""
Граница векторного индекса.

Назначение:
- upsert по детерминированному id: повторная запись того же вектора - no-op
- http: REST-сервис индекса (PUT /vectors/{id}, Bearer)
- memory: словарь процесса (inline-режим, тесты)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import requests

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import ErrCode, FatalError, PermanentError, TransientError
from offchain_agent.common.logging import get_project_logger

log = get_project_logger()


def vector_id(source_id: str, modality: str, model_version: str) -> str:
    return f"{source_id}:{modality}:{model_version}"


class VectorIndex(Protocol):
    def upsert(self, vid: str, vector: list[float], metadata: dict[str, Any]) -> None: ...

    def get(self, vid: str) -> list[float] | None: ...


# =============================================================================
# HTTP
# =============================================================================
@dataclass
class HttpVectorIndexConfig:
    url: str
    token: str | None = None
    timeout_s: int = 15


class HttpVectorIndex:
    def __init__(self, cfg: HttpVectorIndexConfig | None = None, *, session: requests.Session | None = None) -> None:
        if cfg is None:
            s = get_settings()
            if not s.vector_index_url:
                raise FatalError("VECTOR_INDEX_URL не задан для VECTOR_INDEX_PROVIDER=http")
            cfg = HttpVectorIndexConfig(
                url=s.vector_index_url, token=s.vector_index_token, timeout_s=s.vector_index_timeout_sec
            )
        self.cfg = cfg
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.cfg.token:
            headers["Authorization"] = f"Bearer {self.cfg.token}"
        return headers

    def _url(self, vid: str) -> str:
        return f"{self.cfg.url.rstrip('/')}/vectors/{quote(vid, safe='')}"

    def upsert(self, vid: str, vector: list[float], metadata: dict[str, Any]) -> None:
        try:
            resp = self._session.put(
                self._url(vid),
                json={"id": vid, "vector": vector, "metadata": metadata},
                headers=self._headers(),
                timeout=self.cfg.timeout_s,
            )
        except requests.RequestException as e:
            raise TransientError(ErrCode.PERSIST_ERROR, "Векторный индекс недоступен", {"err": str(e)[:200]}) from e
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(ErrCode.PERSIST_ERROR, "Векторный индекс вернул ошибку", {"status": resp.status_code})
        if resp.status_code >= 400:
            raise PermanentError(
                ErrCode.PERSIST_ERROR,
                "Векторный индекс отклонил запись",
                {"status": resp.status_code, "text_head": resp.text[:300]},
            )

    def get(self, vid: str) -> list[float] | None:
        try:
            resp = self._session.get(self._url(vid), headers=self._headers(), timeout=self.cfg.timeout_s)
        except requests.RequestException as e:
            raise TransientError(ErrCode.PERSIST_ERROR, "Векторный индекс недоступен", {"err": str(e)[:200]}) from e
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise TransientError(ErrCode.PERSIST_ERROR, "Векторный индекс вернул ошибку", {"status": resp.status_code})
        return list((resp.json() or {}).get("vector") or [])


# =============================================================================
# MEMORY
# =============================================================================
class MemoryVectorIndex:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.vectors: dict[str, list[float]] = {}
        self.metadata: dict[str, dict[str, Any]] = {}
        self.writes = 0

    def upsert(self, vid: str, vector: list[float], metadata: dict[str, Any]) -> None:
        with self._lock:
            self.vectors[vid] = list(vector)
            self.metadata[vid] = dict(metadata)
            self.writes += 1

    def get(self, vid: str) -> list[float] | None:
        with self._lock:
            v = self.vectors.get(vid)
            return list(v) if v is not None else None


# =============================================================================
# ВЫБОР РЕАЛИЗАЦИИ
# =============================================================================
_index: VectorIndex | None = None
_guard = threading.Lock()


def get_vector_index() -> VectorIndex:
    global _index
    with _guard:
        if _index is None:
            provider = (get_settings().vector_index_provider or "http").strip().lower()
            _index = MemoryVectorIndex() if provider == "memory" else HttpVectorIndex()
            log.info("vector_index_ready", extra={"payload": {"provider": provider}})
        return _index


def set_vector_index(index: VectorIndex | None) -> None:
    global _index
    with _guard:
        _index = index
