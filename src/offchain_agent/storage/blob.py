"""
Объектное хранилище (локальная ФС, STORAGE_DIR).

Назначение:
- (storage_uri, bytes): put/get/exists/delete
- детерминированные ключи: повторная запись того же содержимого идемпотентна
"""

from __future__ import annotations

import os
from pathlib import Path
from uuid import uuid4

from offchain_agent.common.config import get_settings

BLOB_SCHEME = "blob://"


def _base_dir() -> Path:
    return Path(get_settings().storage_dir).resolve()


def _key_to_path(key: str) -> Path:
    # защита от path traversal
    key = key.lstrip("/")
    if not key or ".." in key.split("/"):
        raise ValueError("invalid key")
    return _base_dir() / key


# =============================================================================
# КЛЮЧИ
# =============================================================================
def artifact_key(source_id: str, kind: str, content_hash: str) -> str:
    return f"artifacts/{source_id}/{kind}/{content_hash}.bin"


def snapshot_key(replica_id: str, version: int) -> str:
    return f"snapshots/{replica_id}/{version:012d}.bin"


def to_uri(key: str) -> str:
    return f"{BLOB_SCHEME}{key}"


def uri_to_key(uri: str) -> str:
    if not uri.startswith(BLOB_SCHEME):
        raise ValueError("not a blob uri")
    return uri[len(BLOB_SCHEME) :]


# =============================================================================
# ОПЕРАЦИИ
# =============================================================================
def put_bytes(key: str, data: bytes) -> str:
    """Сохранить bytes (атомарно, через временный файл) и вернуть storage_uri."""
    p = _key_to_path(key)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(f".{p.name}.{uuid4().hex}.tmp")
    tmp.write_bytes(data)
    os.replace(tmp, p)
    return to_uri(key)


def get_bytes(key: str) -> bytes:
    return _key_to_path(key).read_bytes()


def exists(key: str) -> bool:
    return _key_to_path(key).exists()


def delete(key: str) -> None:
    p = _key_to_path(key)
    try:
        p.unlink()
    except FileNotFoundError:
        pass
