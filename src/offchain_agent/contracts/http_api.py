"""
HTTP API контракты (Pydantic-модели).

Назначение:
- валидация входа/выхода на уровне FastAPI
- стабильные структуры для клиентов
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from offchain_agent.domain.enums import Modality, ReplicaKind

from .versions import HTTP_API_VERSION


# =============================================================================
# ЗАПРОСЫ
# =============================================================================
class MediaJobRequest(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    source_id: str = Field(min_length=1, max_length=128)
    payload_ref: str = Field(min_length=1, max_length=1024)

    # пусто = PIPELINE_MODALITIES
    modalities: list[Modality] = Field(default_factory=list)

    @field_validator("payload_ref")
    @classmethod
    def _check_scheme(cls, v: str) -> str:
        if not v.startswith(("file://", "blob://", "http://", "https://")):
            raise ValueError("payload_ref: ожидается file://, blob:// или http(s)://")
        return v


class BackupRunRequest(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    kinds: list[ReplicaKind] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=1)


# =============================================================================
# ОТВЕТЫ
# =============================================================================
class JobAcceptedResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    job_id: str
    trace_id: str
    queue: str
    status: str = "accepted"


class QueueDepthResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    queue: str
    depth: int
    oldest_message_age_sec: float
    sampled_at: str


class PushDeliveryResponse(BaseModel):
    action: str
    job_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class ModalityStatus(BaseModel):
    modality: Modality
    status: str
    attempts: int
    error_kind: str | None = None


class JobStatusResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    job_id: str
    source_id: str
    stage: str
    partial: bool
    failure_reason: str | None = None
    modalities: list[ModalityStatus] = Field(default_factory=list)

    # отчёт есть только у задач в терминальной стадии
    report_status: str | None = None
    successes: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)
    unreached: list[str] = Field(default_factory=list)
    near_duplicates: list[dict[str, Any]] = Field(default_factory=list)


class CancelAcceptedResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    job_id: str
    status: str = "cancel_requested"


class NearDuplicateItem(BaseModel):
    source_id: str
    distance: int


class NearDuplicatesResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    source_id: str
    threshold: int
    matches: list[NearDuplicateItem] = Field(default_factory=list)
