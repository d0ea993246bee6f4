"""
Сверка результатов с долговременными хранилищами.

Назначение:
- идемпотентная запись медиа-артефактов (blob + строка) по (source_id, kind, content_hash)
- идемпотентная запись эмбеддингов (векторный индекс + строка) по (source_id, modality, model_version)
- идемпотентная запись перцептивной подписи по source_id

Семантика:
- check-then-write: запись уже есть -> duplicate, ничего не пишем
- гонка на уникальном ограничении (IntegrityError) -> тоже duplicate
- blob-ключ и id вектора детерминированы, поэтому повторная запись безопасна
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from offchain_agent.common.errors import ErrCode, TransientError
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.metrics import record_reconcile
from offchain_agent.common.utils import sha256_hex
from offchain_agent.domain.enums import ArtifactKind, Modality
from offchain_agent.storage import blob
from offchain_agent.storage.db import db_session
from offchain_agent.processing.signature import VideoSignature
from offchain_agent.storage.models import Embedding, MediaArtifact, MediaSignature
from offchain_agent.storage.repositories import EmbeddingRepository, MediaArtifactRepository, MediaSignatureRepository
from offchain_agent.storage.vector_index import VectorIndex, get_vector_index, vector_id

log = get_project_logger()


@dataclass(frozen=True)
class ArtifactRecord:
    source_id: str
    artifact_kind: ArtifactKind
    content_hash: str = ""

    @classmethod
    def for_bytes(cls, source_id: str, kind: ArtifactKind, data: bytes) -> ArtifactRecord:
        return cls(source_id=source_id, artifact_kind=kind, content_hash=sha256_hex(data))


@dataclass(frozen=True)
class EmbeddingRecord:
    source_id: str
    modality: Modality
    vector: list[float]
    model_version: str


@dataclass(frozen=True)
class ReconcileResult:
    written: bool
    duplicate: bool
    storage_uri: str | None = None


def persist_artifact(record: ArtifactRecord, data: bytes) -> ReconcileResult:
    """
    Записать артефакт ровно один раз.
    content_hash считается по байтам, если не передан.
    """
    content_hash = record.content_hash or sha256_hex(data)
    kind = record.artifact_kind
    try:
        with db_session() as session:
            repo = MediaArtifactRepository(session)
            existing = repo.find(source_id=record.source_id, kind=kind, content_hash=content_hash)
            if existing is not None:
                record_reconcile(target="artifact", duplicate=True)
                return ReconcileResult(written=False, duplicate=True, storage_uri=existing.storage_uri)

            uri = blob.put_bytes(blob.artifact_key(record.source_id, kind.value, content_hash), data)
            repo.add(
                MediaArtifact(
                    source_id=record.source_id,
                    artifact_kind=kind,
                    storage_uri=uri,
                    content_hash=content_hash,
                )
            )
    except IntegrityError:
        record_reconcile(target="artifact", duplicate=True)
        log.info(
            "reconcile_artifact_race",
            extra={"payload": {"source_id": record.source_id, "kind": kind.value, "content_hash": content_hash}},
        )
        return ReconcileResult(
            written=False,
            duplicate=True,
            storage_uri=blob.to_uri(blob.artifact_key(record.source_id, kind.value, content_hash)),
        )
    except (SQLAlchemyError, OSError) as e:
        raise TransientError(ErrCode.PERSIST_ERROR, "Не удалось записать артефакт", {"err": str(e)[:300]}) from e

    record_reconcile(target="artifact", duplicate=False)
    return ReconcileResult(written=True, duplicate=False, storage_uri=uri)


def upsert_embedding(record: EmbeddingRecord, *, index: VectorIndex | None = None) -> ReconcileResult:
    """
    Записать эмбеддинг ровно один раз: сначала индекс (upsert по id), затем строка.
    """
    vid = vector_id(record.source_id, record.modality.value, record.model_version)
    try:
        with db_session() as session:
            repo = EmbeddingRepository(session)
            existing = repo.find(
                source_id=record.source_id, modality=record.modality, model_version=record.model_version
            )
            if existing is not None:
                record_reconcile(target="embedding", duplicate=True)
                return ReconcileResult(written=False, duplicate=True, storage_uri=existing.vector_id)

            (index or get_vector_index()).upsert(
                vid,
                list(record.vector),
                {
                    "source_id": record.source_id,
                    "modality": record.modality.value,
                    "model_version": record.model_version,
                },
            )
            repo.add(
                Embedding(
                    source_id=record.source_id,
                    modality=record.modality,
                    model_version=record.model_version,
                    vector=list(record.vector),
                    vector_id=vid,
                )
            )
    except IntegrityError:
        record_reconcile(target="embedding", duplicate=True)
        log.info(
            "reconcile_embedding_race",
            extra={"payload": {"source_id": record.source_id, "modality": record.modality.value}},
        )
        return ReconcileResult(written=False, duplicate=True, storage_uri=vid)
    except SQLAlchemyError as e:
        raise TransientError(ErrCode.PERSIST_ERROR, "Не удалось записать эмбеддинг", {"err": str(e)[:300]}) from e

    record_reconcile(target="embedding", duplicate=False)
    return ReconcileResult(written=True, duplicate=False, storage_uri=vid)


def record_signature(source_id: str, signature: VideoSignature) -> ReconcileResult:
    """
    Подпись источника пишется один раз; повторная доставка оставляет первую.
    """
    try:
        with db_session() as session:
            repo = MediaSignatureRepository(session)
            if repo.get(source_id) is not None:
                record_reconcile(target="signature", duplicate=True)
                return ReconcileResult(written=False, duplicate=True)
            repo.add(MediaSignature(source_id=source_id, frame_hashes=signature.to_hex()))
    except IntegrityError:
        record_reconcile(target="signature", duplicate=True)
        return ReconcileResult(written=False, duplicate=True)
    except SQLAlchemyError as e:
        raise TransientError(ErrCode.PERSIST_ERROR, "Не удалось записать подпись", {"err": str(e)[:300]}) from e

    record_reconcile(target="signature", duplicate=False)
    return ReconcileResult(written=True, duplicate=False)
