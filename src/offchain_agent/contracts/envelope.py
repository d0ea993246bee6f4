"""
Конверт задачи очереди и его кодек.

Правила:
- на проводе - непрозрачные байты (UTF-8 JSON с отсортированными ключами)
- поле codec_version обязательно: старый потребитель отклоняет новую версию,
  а не разбирает её неправильно
- конверт неизменяем; повторная доставка = тот же job_id, attempt + 1
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from offchain_agent.common.errors import EnvelopeDecodeError, UnsupportedCodecVersion
from offchain_agent.common.ids import new_job_id, new_trace_id
from offchain_agent.common.time import parse_iso, utc_now
from offchain_agent.domain.enums import JobType

from .versions import ENVELOPE_CODEC_VERSION, SUPPORTED_CODEC_VERSIONS

_REQUIRED = ("job_id", "job_type", "payload_ref", "attempt", "enqueued_at", "trace_id")


@dataclass(frozen=True)
class JobEnvelope:
    job_id: str
    job_type: JobType
    payload_ref: str
    attempt: int = 0
    enqueued_at: datetime = field(default_factory=utc_now)
    trace_id: str = field(default_factory=new_trace_id)
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        job_type: JobType,
        payload_ref: str,
        *,
        params: dict[str, Any] | None = None,
        trace_id: str | None = None,
        job_id: str | None = None,
    ) -> JobEnvelope:
        return cls(
            job_id=job_id or new_job_id(),
            job_type=job_type,
            payload_ref=payload_ref,
            attempt=0,
            enqueued_at=utc_now(),
            trace_id=trace_id or new_trace_id(),
            params=dict(params or {}),
        )

    def param(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)


def redelivery(envelope: JobEnvelope, *, times: int = 1) -> JobEnvelope:
    """
    Копия для повторной доставки: job_id/trace_id сохраняются, attempt растёт.
    """
    return replace(envelope, attempt=envelope.attempt + max(1, times))


# =============================================================================
# КОДЕК
# =============================================================================
def to_dict(envelope: JobEnvelope) -> dict[str, Any]:
    return {
        "codec_version": ENVELOPE_CODEC_VERSION,
        "job_id": envelope.job_id,
        "job_type": envelope.job_type.value,
        "payload_ref": envelope.payload_ref,
        "attempt": int(envelope.attempt),
        "enqueued_at": envelope.enqueued_at.isoformat(),
        "trace_id": envelope.trace_id,
        "params": envelope.params,
    }


def encode(envelope: JobEnvelope) -> bytes:
    try:
        return json.dumps(to_dict(envelope), ensure_ascii=False, sort_keys=True).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EnvelopeDecodeError("params конверта не сериализуются в JSON", {"error": str(e)[:200]}) from e


def _as_uuid(value: Any, name: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (ValueError, TypeError, AttributeError) as e:
        raise EnvelopeDecodeError(f"Поле {name} не UUID", {"field": name}) from e


def from_dict(data: Any) -> JobEnvelope:
    if not isinstance(data, dict):
        raise EnvelopeDecodeError("Конверт должен быть JSON-объектом")

    version = data.get("codec_version")
    if isinstance(version, bool) or not isinstance(version, int) or version not in SUPPORTED_CODEC_VERSIONS:
        raise UnsupportedCodecVersion(version)

    missing = [k for k in _REQUIRED if k not in data]
    if missing:
        raise EnvelopeDecodeError("В конверте нет обязательных полей", {"missing": missing})

    try:
        job_type = JobType(data["job_type"])
    except ValueError as e:
        raise EnvelopeDecodeError("Неизвестный job_type", {"job_type": str(data["job_type"])[:64]}) from e

    attempt = data["attempt"]
    if isinstance(attempt, bool) or not isinstance(attempt, int) or attempt < 0:
        raise EnvelopeDecodeError("attempt должен быть неотрицательным целым", {"attempt": attempt})

    payload_ref = data["payload_ref"]
    if not isinstance(payload_ref, str) or not payload_ref:
        raise EnvelopeDecodeError("payload_ref должен быть непустой строкой")

    try:
        enqueued_at = parse_iso(str(data["enqueued_at"]))
    except ValueError as e:
        raise EnvelopeDecodeError("enqueued_at не ISO-время") from e

    params = data.get("params") or {}
    if not isinstance(params, dict):
        raise EnvelopeDecodeError("params должен быть объектом")

    return JobEnvelope(
        job_id=_as_uuid(data["job_id"], "job_id"),
        job_type=job_type,
        payload_ref=payload_ref,
        attempt=attempt,
        enqueued_at=enqueued_at,
        trace_id=_as_uuid(data["trace_id"], "trace_id"),
        params=params,
    )


def decode(raw: bytes | str) -> JobEnvelope:
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EnvelopeDecodeError("Тело сообщения не JSON", {"error": str(e)[:200]}) from e
    return from_dict(data)
