from __future__ import annotations

import json

import pytest

from offchain_agent.common.errors import EnvelopeDecodeError, UnsupportedCodecVersion
from offchain_agent.contracts.envelope import JobEnvelope, decode, encode, redelivery, to_dict
from offchain_agent.domain.enums import JobType


def _envelope() -> JobEnvelope:
    return JobEnvelope.new(JobType.extract_media, "file:///tmp/a.mp4", params={"source_id": "src-1"})


def test_decode_returns_equal_envelope() -> None:
    env = _envelope()
    assert decode(encode(env)) == env


def test_encode_is_deterministic_json_with_codec_version() -> None:
    env = _envelope()
    raw = encode(env)
    assert raw == encode(env)
    data = json.loads(raw)
    assert data["codec_version"] == 1
    assert list(data) == sorted(data)


def test_redelivery_keeps_ids_and_bumps_attempt() -> None:
    env = _envelope()
    again = redelivery(env)
    assert again.job_id == env.job_id
    assert again.trace_id == env.trace_id
    assert again.attempt == env.attempt + 1


def test_decode_rejects_unknown_codec_version() -> None:
    data = to_dict(_envelope())
    data["codec_version"] = 99
    with pytest.raises(UnsupportedCodecVersion):
        decode(json.dumps(data))


@pytest.mark.parametrize("field", ["job_id", "trace_id", "payload_ref", "attempt"])
def test_decode_rejects_missing_fields(field: str) -> None:
    data = to_dict(_envelope())
    data.pop(field)
    with pytest.raises(EnvelopeDecodeError):
        decode(json.dumps(data))


def test_decode_rejects_garbage() -> None:
    with pytest.raises(EnvelopeDecodeError):
        decode(b"\xff not json")
    with pytest.raises(EnvelopeDecodeError):
        decode(b"[1, 2]")


def test_decode_rejects_negative_attempt_and_bad_uuid() -> None:
    data = to_dict(_envelope())
    data["attempt"] = -1
    with pytest.raises(EnvelopeDecodeError):
        decode(json.dumps(data))

    data = to_dict(_envelope())
    data["job_id"] = "not-a-uuid"
    with pytest.raises(EnvelopeDecodeError):
        decode(json.dumps(data))
