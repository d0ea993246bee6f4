"""
Получение исходного медиа по payload_ref.

Поддерживаемые схемы:
- file://<path>   - локальный файл (dev)
- blob://<key>    - объектное хранилище (STORAGE_DIR)
- http(s)://...   - внешний источник (requests, таймаут PIPELINE_FETCH_TIMEOUT_SEC)

Классификация ошибок:
- не найдено / сеть / 5xx / 429 - TransientError (повторяем)
- неизвестная схема / прочие 4xx - PermanentError
"""

from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import ErrCode, PermanentError, TransientError
from offchain_agent.storage import blob

_RETRYABLE_HTTP = {404, 408, 425, 429}


class SourceFetcher:
    def __init__(self, *, timeout_s: int | None = None, session: requests.Session | None = None) -> None:
        self.timeout_s = timeout_s or get_settings().pipeline_fetch_timeout_sec
        self._session = session or requests.Session()

    def fetch(self, payload_ref: str) -> bytes:
        ref = (payload_ref or "").strip()
        if ref.startswith("file://"):
            return self._fetch_file(ref)
        if ref.startswith(blob.BLOB_SCHEME):
            return self._fetch_blob(ref)
        if ref.startswith(("http://", "https://")):
            return self._fetch_http(ref)
        raise PermanentError(ErrCode.VALIDATION, "Неподдерживаемая схема payload_ref", {"payload_ref": ref[:200]})

    def _fetch_file(self, ref: str) -> bytes:
        path = Path(unquote(urlparse(ref).path))
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise TransientError(ErrCode.FETCH_ERROR, "Источник не найден", {"path": str(path)}) from e
        except OSError as e:
            raise TransientError(ErrCode.FETCH_ERROR, "Ошибка чтения источника", {"err": str(e)[:200]}) from e

    def _fetch_blob(self, ref: str) -> bytes:
        try:
            key = blob.uri_to_key(ref)
            return blob.get_bytes(key)
        except ValueError as e:
            raise PermanentError(ErrCode.VALIDATION, "Некорректный blob-ключ", {"payload_ref": ref[:200]}) from e
        except FileNotFoundError as e:
            raise TransientError(ErrCode.FETCH_ERROR, "Объект не найден", {"payload_ref": ref[:200]}) from e

    def _fetch_http(self, ref: str) -> bytes:
        try:
            resp = self._session.get(ref, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise TransientError(
                ErrCode.FETCH_ERROR, "Ошибка HTTP при загрузке источника", {"err": str(e)[:200]}
            ) from e
        if resp.status_code >= 500 or resp.status_code in _RETRYABLE_HTTP:
            raise TransientError(ErrCode.FETCH_ERROR, "Источник временно недоступен", {"status": resp.status_code})
        if resp.status_code >= 400:
            raise PermanentError(ErrCode.FETCH_ERROR, "Источник отклонил запрос", {"status": resp.status_code})
        return resp.content
