"""
Утилиты времени.

Назначение:
- единый формат времени (ISO UTC)
- миллисекунды для id сообщений Redis Streams
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """
    Текущее время в UTC в ISO формате.
    """
    return utc_now().isoformat()


def utc_ms() -> int:
    """
    Текущее время в UTC в миллисекундах (int).
    """
    return int(utc_now().timestamp() * 1000)


def utc_date_str(dt: datetime | None = None) -> str:
    """YYYY-MM-DD (ключ дневного прогресса бэкапа)."""
    return (dt or utc_now()).strftime("%Y-%m-%d")


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt
