"""
Машина состояний медиа-задачи.

Назначение:
- централизованное управление переходами стадий
- предсказуемое поведение при ошибках (failed - поглощающее состояние)
- основа для ретраев и DLQ

Порядок:
received → fetching → extracting → embedding → persisting → completed
failed(reason) достижим из любой незавершённой стадии.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from offchain_agent.common.errors import InvalidTransition

from .enums import JobStage


# =============================================================================
# ПОРЯДОК СТАДИЙ
# =============================================================================
_ORDER: tuple[JobStage, ...] = (
    JobStage.received,
    JobStage.fetching,
    JobStage.extracting,
    JobStage.embedding,
    JobStage.persisting,
    JobStage.completed,
)

TERMINAL_STAGES = frozenset({JobStage.completed, JobStage.failed})


def next_stage_after(current: JobStage) -> JobStage | None:
    """
    Возвращает следующую стадию пайплайна.
    """
    if current not in _ORDER:
        return None
    idx = _ORDER.index(current)
    return _ORDER[idx + 1] if idx + 1 < len(_ORDER) else None


def is_terminal(stage: JobStage) -> bool:
    return stage in TERMINAL_STAGES


# =============================================================================
# СОСТОЯНИЕ ЗАДАЧИ
# =============================================================================
@dataclass
class JobState:
    stage: JobStage = JobStage.received
    failure_reason: str | None = None
    history: list[str] = field(default_factory=list)

    def advance(self, target: JobStage) -> JobState:
        """
        Переход на следующую стадию (строго по порядку).
        Повторный переход в текущую стадию - no-op (повторная доставка).
        """
        if target == self.stage and not is_terminal(self.stage):
            return self
        if is_terminal(self.stage) or target == JobStage.failed:
            raise InvalidTransition(self.stage.value, target.value)
        if next_stage_after(self.stage) != target:
            raise InvalidTransition(self.stage.value, target.value)
        self.history.append(f"{self.stage.value}->{target.value}")
        self.stage = target
        return self

    def fail(self, reason: str) -> JobState:
        if is_terminal(self.stage):
            raise InvalidTransition(self.stage.value, JobStage.failed.value)
        self.history.append(f"{self.stage.value}->failed({reason})")
        self.stage = JobStage.failed
        self.failure_reason = reason
        return self
