from __future__ import annotations

from offchain_agent.domain.outcome import OutcomeReport
from offchain_agent.services.backup_service import (
    chunk_text,
    format_alert,
    group_failures,
    normalize_error,
    send_alert,
)


def test_normalize_strips_replica_ids() -> None:
    assert normalize_error("timeout: replica abc12-cai did not answer", "r-1") == "timeout: replica did not answer"
    assert normalize_error("r-7 returned 500", "r-7") == "returned 500"


def test_group_failures_merges_same_reason() -> None:
    report = OutcomeReport(run_id="bkp-1", kind="backup")
    report.succeeded("r-0")
    report.failed("r-1", error_kind="transient", error="timeout: node xyz-cai slow")
    report.failed("r-2", error_kind="transient", error="timeout: node qwe-cai slow")
    report.failed("r-3", error_kind="permanent", error="validation: empty snapshot")
    report.unreached("r-4")

    groups = group_failures(report)
    assert groups["timeout: node slow"] == ["r-1", "r-2"]
    assert groups["validation: empty snapshot"] == ["r-3"]
    assert groups["time_budget_exceeded"] == ["r-4"]

    text = format_alert(report, groups)
    assert "status=partial" in text
    assert text.index("timeout: node slow") < text.index("validation: empty snapshot")


def test_all_fresh_alert() -> None:
    report = OutcomeReport(run_id="bkp-1", kind="backup")
    report.succeeded("r-0")
    assert "all replicas have fresh snapshots" in format_alert(report, {})


def test_chunk_text_respects_limit() -> None:
    text = "\n".join(f"- line {i} " + "x" * 40 for i in range(1000))
    chunks = chunk_text(text, limit=1000)
    assert all(len(c) <= 1000 for c in chunks)
    assert "".join(chunks) == text

    long_line = "y" * 2500
    assert [len(c) for c in chunk_text(long_line, limit=1000)] == [1000, 1000, 500]


def test_send_alert_posts_every_chunk(monkeypatch) -> None:
    sent: list[str] = []

    class _Resp:
        def raise_for_status(self) -> None:
            return None

    def fake_post(url, json, timeout):
        sent.append(json["text"])
        return _Resp()

    monkeypatch.setattr("offchain_agent.services.backup_service.requests.post", fake_post)
    text = "a" * 25_000
    assert send_alert(text, webhook_url="https://chat.local/hook") == 3
    assert "".join(sent) == text
