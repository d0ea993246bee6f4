"""
Базовые интерфейсы коннекторов (интеграции с внешними системами).

Назначение:
- стандартизировать адаптеры к платформе реплик (реестр + снапшоты)
- отделить "как подключаемся" от "что делаем дальше в оркестраторе"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from offchain_agent.domain.enums import ReplicaKind


@dataclass(frozen=True)
class Replica:
    """
    Реплика платформы, для которой снимается снапшот.
    """

    replica_id: str
    kind: ReplicaKind


class ReplicaRegistry(Protocol):
    """
    Контракт реестра реплик.
    """

    def list_replicas(self, kind: ReplicaKind) -> list[Replica]:
        """Все реплики указанного типа."""
        ...


class ReplicaClient(Protocol):
    """
    Контракт получения снапшота реплики.
    """

    def request_snapshot(self, replica: Replica, *, timeout_sec: float) -> bytes:
        """Снять снапшот и вернуть его байты. TransientError - сеть/таймаут."""
        ...
