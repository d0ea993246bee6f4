"""
Логика ретеншна снапшотов.

Назначение:
- удаление снапшотов старше BACKUP_RETENTION_DAYS (blob + строка)
- последняя версия каждой реплики сохраняется всегда
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from offchain_agent.common.config import get_settings
from offchain_agent.common.time import utc_now

from . import blob
from .repositories import SnapshotRepository


def apply_retention(session: Session, *, now: datetime | None = None, batch: int = 1000) -> int:
    """
    Применение политики хранения. Возвращает число удалённых снапшотов.
    """
    days = get_settings().backup_retention_days
    if days <= 0:
        return 0
    cutoff = (now or utc_now()) - timedelta(days=days)

    repo = SnapshotRepository(session)
    expired = repo.list_expired(cutoff=cutoff, limit=batch)
    for snap in expired:
        try:
            blob.delete(blob.uri_to_key(snap.storage_uri))
        except ValueError:
            pass
    return repo.delete_ids([s.id for s in expired])
