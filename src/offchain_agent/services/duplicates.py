"""
Поиск почти-дубликатов по перцептивной подписи.

Полный просмотр media_signatures пачками (keyset по source_id):
для каждой подписи - минимальное расстояние Хэмминга по парам кадров.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import ErrCode, TransientError
from offchain_agent.processing.signature import VideoSignature
from offchain_agent.storage.db import db_session
from offchain_agent.storage.repositories import MediaSignatureRepository

SCAN_BATCH = 500


@dataclass(frozen=True)
class NearDuplicate:
    source_id: str
    distance: int

    def to_dict(self) -> dict:
        return {"source_id": self.source_id, "distance": self.distance}


def load_signature(source_id: str) -> VideoSignature | None:
    with db_session() as session:
        row = MediaSignatureRepository(session).get(source_id)
        return VideoSignature.from_hex(list(row.frame_hashes)) if row is not None else None


def find_near_duplicates(
    signature: VideoSignature,
    *,
    threshold: int | None = None,
    exclude_source_id: str | None = None,
    limit: int = 20,
) -> list[NearDuplicate]:
    """
    Источники с подписью не дальше threshold, ближайшие первыми.
    """
    if not signature.frame_hashes:
        return []
    threshold = int(threshold if threshold is not None else get_settings().pipeline_dhash_threshold)

    found: list[NearDuplicate] = []
    cursor = ""
    try:
        while True:
            with db_session() as session:
                page = [
                    (row.source_id, list(row.frame_hashes))
                    for row in MediaSignatureRepository(session).page_after(cursor, limit=SCAN_BATCH)
                ]
            if not page:
                break
            for source_id, hashes in page:
                if source_id == exclude_source_id:
                    continue
                distance = signature.distance(VideoSignature.from_hex(hashes))
                if distance is not None and distance <= threshold:
                    found.append(NearDuplicate(source_id=source_id, distance=distance))
            cursor = page[-1][0]
    except SQLAlchemyError as e:
        raise TransientError(ErrCode.DB_ERROR, "Не удалось прочитать подписи", {"err": str(e)[:300]}) from e

    found.sort(key=lambda d: (d.distance, d.source_id))
    return found[: max(0, limit)]
