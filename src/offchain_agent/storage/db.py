"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- Ленивое создание engine (DSN читается при первом обращении)
- Контекстный менеджер для сессий
- Единая точка доступа к БД для всех сервисов
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from offchain_agent.common.config import get_settings

# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None
_guard = threading.Lock()


def _build_engine(dsn: str) -> Engine:
    if dsn.startswith("sqlite") and ":memory:" in dsn:
        # один in-memory экземпляр на процесс (тесты, inline-стенд)
        return create_engine(dsn, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if dsn.startswith("sqlite"):
        return create_engine(dsn, connect_args={"check_same_thread": False})
    return create_engine(dsn, pool_pre_ping=True)


def get_engine() -> Engine:
    global _engine, _session_factory
    with _guard:
        if _engine is None:
            _engine = _build_engine(get_settings().database_dsn)
            _session_factory = sessionmaker(bind=_engine, autocommit=False, autoflush=False)
        return _engine


def reset_engine() -> None:
    """Сбросить engine (после смены DATABASE_DSN в тестах)."""
    global _engine, _session_factory
    with _guard:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _session_factory = None


def create_all() -> None:
    """Создать схему без Alembic (sqlite/inline)."""
    from .models import Base

    Base.metadata.create_all(get_engine())


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def db_session() -> Iterator[Session]:
    """
    Контекстный менеджер для работы с БД.

    Использование:
        with db_session() as session:
            session.add(...)
    """
    get_engine()
    assert _session_factory is not None
    session: Session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
