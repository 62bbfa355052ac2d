"""Audit recorder tests: sanitizing, status inference, bounded retry with injected sleep, never raising."""
import json
import math
from datetime import date
from pathlib import Path

from rxmatch.audit import (
    AuditEventType,
    AuditRecorder,
    JsonlAuditStore,
    infer_status,
    sanitize_payload,
)
from rxmatch.schemas import AuditContext

from conftest import InMemoryAuditStore, make_parsed


def test_record_success(recorder: AuditRecorder, audit_store: InMemoryAuditStore, sleeps: list[float]) -> None:
    result = recorder.record(
        AuditEventType.PACKAGE_SELECTED,
        {"rxcui": "314076", "ndc_codes": ["68180-513-01"], "confidence_score": 0.97},
        AuditContext(run_id="run-1", user_id="u1", processing_time_ms=12.5),
    )
    assert result.success is True
    assert result.record_id == "rec-1"
    record = audit_store.records[0]
    assert record["event_type"] == "package_selected"
    assert record["status"] == "approved"
    assert record["run_id"] == "run-1"
    assert record["user_id"] == "u1"
    assert record["rxcui"] == "314076"
    assert record["ndc_codes"] == ["68180-513-01"]
    assert record["processing_time_ms"] == 12.5
    assert sleeps == []


def test_retry_with_linear_backoff(sleeps: list[float]) -> None:
    store = InMemoryAuditStore(fail_times=2)
    recorder = AuditRecorder(store, retry_attempts=3, retry_delay=0.5, sleep=sleeps.append)
    result = recorder.record(AuditEventType.RXNORM_LOOKUP, {"drug_name": "lisinopril"})
    assert result.success is True
    assert store.attempts == 3
    assert sleeps == [0.5, 1.0]


def test_final_failure_returns_result_without_raising(sleeps: list[float]) -> None:
    store = InMemoryAuditStore(fail_times=99)
    recorder = AuditRecorder(store, retry_attempts=3, retry_delay=1.0, sleep=sleeps.append)
    result = recorder.record(AuditEventType.API_ERROR, {"error": "boom"})
    assert result.success is False
    assert result.record_id is None
    assert "store unavailable" in result.error
    assert store.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_unknown_event_type_returns_failure(audit_store: InMemoryAuditStore) -> None:
    recorder = AuditRecorder(audit_store)
    result = recorder.record("custom_event", {"x": 1})
    assert result.success is False
    assert "custom_event" in result.error
    assert audit_store.attempts == 0
    assert audit_store.records == []


def test_event_type_accepted_as_string(recorder: AuditRecorder, audit_store: InMemoryAuditStore) -> None:
    assert recorder.record("rxnorm_lookup", {"drug_name": "lisinopril"}).success is True
    assert audit_store.records[0]["event_type"] == "rxnorm_lookup"


def test_status_inference() -> None:
    assert infer_status(AuditEventType.PARSING_ERROR, {"confidence_score": 0.99}) == "rejected"
    assert infer_status(AuditEventType.API_ERROR, {}) == "rejected"
    assert infer_status(AuditEventType.PACKAGE_SELECTED, {"confidence_score": 0.7}) == "pending"
    assert infer_status(AuditEventType.PACKAGE_SELECTED, {"confidence_score": 0.8}) == "approved"
    assert infer_status(AuditEventType.EXPORT_ACTION, {}) == "approved"
    assert infer_status(AuditEventType.PRESCRIPTION_PARSED, {"confidence_score": 0.95}) == "pending"


def test_sanitize_drops_unserializable_values() -> None:
    payload = {
        "ok": 1,
        "nan": math.nan,
        "inf": math.inf,
        "when": date(2026, 1, 2),
        "fn": print,
        "nested": {"obj": object(), "items": [1, math.nan, "x"]},
        "event": AuditEventType.API_ERROR,
        "model": make_parsed(),
    }
    clean = sanitize_payload(payload)
    assert clean["ok"] == 1
    assert "nan" not in clean
    assert "inf" not in clean
    assert "fn" not in clean
    assert clean["when"] == "2026-01-02"
    assert clean["nested"] == {"items": [1, "x"]}
    assert clean["event"] == "api_error"
    assert clean["model"]["drug_name"] == "Lisinopril"
    json.dumps(clean, allow_nan=False)


def test_update_status(recorder: AuditRecorder, audit_store: InMemoryAuditStore) -> None:
    result = recorder.update_status("rec-9", "approved")
    assert result.success is True
    assert audit_store.status_updates == [("rec-9", "approved")]


def test_jsonl_store_appends_lines(tmp_path: Path) -> None:
    path = tmp_path / "audit.jsonl"
    recorder = AuditRecorder(JsonlAuditStore(path), sleep=lambda _: None)
    first = recorder.record(AuditEventType.PRESCRIPTION_SUBMITTED, {"text_length": 40}, AuditContext(run_id="r"))
    recorder.update_status(first.record_id, "approved")
    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert len(lines) == 2
    assert lines[0]["id"] == first.record_id
    assert lines[0]["event_type"] == "prescription_submitted"
    assert lines[0]["payload"] == {"text_length": 40}
    assert "timestamp" in lines[0]
    assert lines[1]["event_type"] == "status_update"
    assert lines[1]["record_id"] == first.record_id
    assert lines[1]["status"] == "approved"


def test_jsonl_store_unwritable_path_fails_quietly(tmp_path: Path, sleeps: list[float]) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    recorder = AuditRecorder(JsonlAuditStore(blocker / "audit.jsonl"), retry_attempts=2, sleep=sleeps.append)
    result = recorder.record(AuditEventType.API_ERROR, {"error": "x"})
    assert result.success is False
    assert sleeps == [1.0]
