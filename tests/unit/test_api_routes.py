from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from offchain_agent.queue.dispatcher import Q_BACKUP, Q_MEDIA
from offchain_agent.queue.factory import get_queue_client


@pytest.fixture()
def client(settings) -> TestClient:
    from apps.api_gateway.main import app

    # без `with`: startup-потребители не поднимаются, очередь проверяем напрямую
    return TestClient(app)


def test_health(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_submit_media_job_is_accepted_and_enqueued(client) -> None:
    resp = client.post(
        "/v1/media/jobs",
        json={"source_id": "src-1", "payload_ref": "file:///data/a.mp4", "modalities": ["audio"]},
    )
    assert resp.status_code == 202
    body = resp.json()
    assert body["queue"] == Q_MEDIA
    assert body["status"] == "accepted"

    _, env = get_queue_client().receive(Q_MEDIA)
    assert env.job_id == body["job_id"]
    assert env.param("modalities") == ["audio"]


def test_submit_media_job_rejects_unknown_scheme(client) -> None:
    resp = client.post("/v1/media/jobs", json={"source_id": "s", "payload_ref": "ftp://x"})
    assert resp.status_code == 422


def test_requires_api_key_when_configured(client, settings) -> None:
    settings.service_api_keys = "svc-1"
    resp = client.post("/v1/backups/run", json={})
    assert resp.status_code == 401
    resp = client.post("/v1/backups/run", json={"kinds": ["user"]}, headers={"X-API-Key": "svc-1"})
    assert resp.status_code == 202
    assert resp.json()["queue"] == Q_BACKUP


def test_queue_depth(client) -> None:
    client.post("/v1/media/jobs", json={"source_id": "s", "payload_ref": "file:///a.mp4"})
    resp = client.get(f"/v1/queues/{Q_MEDIA}/depth")
    assert resp.status_code == 200
    assert resp.json()["depth"] == 1


def test_push_endpoint_is_disabled_outside_push_mode(client) -> None:
    resp = client.post(f"/v1/push/{Q_MEDIA}", content=b"{}")
    assert resp.status_code == 404


def test_push_endpoint_delivers_signed_body(client, settings) -> None:
    from offchain_agent.common.security import sign_push_body
    from offchain_agent.contracts.envelope import JobEnvelope, encode
    from offchain_agent.domain.enums import JobType
    from offchain_agent.queue.factory import set_queue_client
    from offchain_agent.queue.push import PushQueueClient
    from tests.fakes import FakeRedis, FakeSession

    settings.push_broker_token = "broker-token"
    settings.push_signing_key = "sk"
    redis = FakeRedis()
    push = PushQueueClient(session=FakeSession(), redis_factory=lambda: redis)
    seen: list[str] = []
    push.register(Q_MEDIA, lambda env: seen.append(env.job_id))
    set_queue_client(push)

    env = JobEnvelope.new(JobType.extract_media, "file:///a.mp4", params={"source_id": "s"})
    body = encode(env)
    resp = client.post(
        f"/v1/push/{Q_MEDIA}",
        content=body,
        headers={"Upstash-Signature": sign_push_body(body, key="sk", issuer=settings.push_signing_issuer)},
    )
    assert resp.status_code == 200
    assert resp.json()["action"] == "ack"
    assert seen == [env.job_id]

    resp = client.post(f"/v1/push/{Q_MEDIA}", content=body, headers={"Upstash-Signature": "garbage"})
    assert resp.status_code == 401


def test_job_status_reads_stored_report(client) -> None:
    from offchain_agent.domain.enums import JobStage
    from offchain_agent.domain.outcome import OutcomeReport
    from offchain_agent.storage.db import db_session
    from offchain_agent.storage.models import PipelineJob

    report = OutcomeReport(run_id="job-1", kind="pipeline")
    report.succeeded("video")
    report.succeeded("metadata", attempts=2)
    report.failed("audio", error_kind="permanent", error="no audio track")
    with db_session() as session:
        session.add(
            PipelineJob(
                job_id="job-1",
                source_id="src-1",
                payload_ref="file:///a.mp4",
                trace_id="trace-1",
                stage=JobStage.completed,
                partial=True,
                report=report.to_dict(),
                context={},
            )
        )

    resp = client.get("/v1/jobs/job-1")
    assert resp.status_code == 200
    body = resp.json()
    assert body["stage"] == "completed"
    assert body["partial"] is True
    assert body["report_status"] == "partial"
    assert sorted(body["successes"]) == ["metadata", "video"]
    assert body["failures"] == {"audio": "permanent"}


def test_job_status_unknown_job_is_404(client) -> None:
    resp = client.get("/v1/jobs/missing")
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "not_found"


def test_cancel_job_registers_request(client) -> None:
    from offchain_agent.queue import cancellation

    resp = client.post("/v1/jobs/job-9/cancel")
    assert resp.status_code == 202
    assert resp.json()["status"] == "cancel_requested"
    assert cancellation.is_cancel_requested("job-9")
    assert not cancellation.is_cancel_requested("job-10")


def test_near_duplicates_by_source(client) -> None:
    from offchain_agent.storage.db import db_session
    from offchain_agent.storage.models import MediaSignature

    with db_session() as session:
        session.add(MediaSignature(source_id="src-1", frame_hashes=["00000000000000ff", "ffffffffffffffff"]))
        session.add(MediaSignature(source_id="src-2", frame_hashes=["00000000000000fe"]))
        session.add(MediaSignature(source_id="src-3", frame_hashes=["0f0f0f0f0f0f0f0f"]))

    resp = client.get("/v1/media/src-1/duplicates")
    assert resp.status_code == 200
    body = resp.json()
    assert body["matches"] == [{"source_id": "src-2", "distance": 1}]

    resp = client.get("/v1/media/src-1/duplicates", params={"threshold": 64})
    assert [m["source_id"] for m in resp.json()["matches"]] == ["src-2", "src-3"]

    assert client.get("/v1/media/unknown/duplicates").status_code == 404
