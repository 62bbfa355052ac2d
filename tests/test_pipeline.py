"""End-to-end pipeline tests with a scripted oracle and fake registries: no network."""
import json
from pathlib import Path

import pytest
import requests

from rxmatch.audit import AuditRecorder
from rxmatch.cache import LRUCache, MemoryCache, TieredCache
from rxmatch.errors import InterpretationError
from rxmatch.fda import CatalogClient
from rxmatch.interpret import InterpretationClient
from rxmatch.pipeline import RxMatchPipeline, build_pipeline
from rxmatch.run import run
from rxmatch.rxnorm import StandardizationClient
from rxmatch.schemas import AuditContext, PipelineResult, ReviewRequest

from conftest import FakeResponse, FakeSession, InMemoryAuditStore, ScriptedOracle

RX_TEXT = "Lisinopril 10mg tablets, take one by mouth daily, dispense 90"

PRODUCTS = [{
    "product_ndc": "68180-513",
    "generic_name": "LISINOPRIL",
    "labeler_name": "Lupin Pharmaceuticals, Inc.",
    "dosage_form": "TABLET",
    "route": ["ORAL"],
    "active_ingredients": [{"name": "LISINOPRIL", "strength": "10 mg/1"}],
    "packaging": [
        {"package_ndc": "68180-513-30", "description": "30 TABLET in 1 BOTTLE"},
        {"package_ndc": "68180-513-01", "description": "90 TABLET in 1 BOTTLE"},
        {"package_ndc": "68180-513-03", "description": "1000 TABLET in 1 BOTTLE"},
    ],
}]


def _reply(**overrides) -> str:
    payload = {
        "drug_name": "Lisinopril",
        "strength": "10mg",
        "form": "tablet",
        "quantity": 90,
        "quantity_unit": "tablet",
        "sig": "Take 1 tablet by mouth daily",
        "days_supply": 30,
        "confidence": 0.97,
    }
    payload.update(overrides)
    return json.dumps(payload)


def _registry_routes(**overrides):
    routes = {
        "/approximateTerm.json": FakeResponse({"approximateGroup": {"candidate": [
            {"rxcui": "314076", "name": "lisinopril 10 MG Oral Tablet", "score": "10"},
        ]}}),
        "/rxcui/314076/properties.json": FakeResponse({"properties": {
            "rxcui": "314076", "name": "lisinopril 10 MG Oral Tablet", "tty": "SCD",
        }}),
        "ndc.json": FakeResponse({"results": PRODUCTS}),
    }
    routes.update(overrides)
    return routes


class ListReviewQueue:
    def __init__(self, broken: bool = False):
        self.requests: list[ReviewRequest] = []
        self.broken = broken

    def submit(self, request: ReviewRequest) -> str:
        if self.broken:
            raise RuntimeError("review service down")
        self.requests.append(request)
        return f"review-{len(self.requests)}"


def _pipeline(cache, recorder, oracle, session, queue=None) -> RxMatchPipeline:
    return RxMatchPipeline(
        InterpretationClient(cache, recorder, oracle=oracle),
        StandardizationClient(cache, recorder, session=session),
        CatalogClient(cache, recorder, session=session),
        queue or ListReviewQueue(),
        recorder,
    )


def test_happy_path_auto_approved(cache, recorder, audit_store: InMemoryAuditStore) -> None:
    pipeline = _pipeline(cache, recorder, ScriptedOracle(_reply()), FakeSession(_registry_routes()))
    result = pipeline.process(RX_TEXT, AuditContext(run_id="run-1"))
    assert result.status == "approved"
    assert result.run_id == "run-1"
    assert result.validation.decision == "auto_approve"
    assert result.identifier.rxcui == "314076"
    assert [(s.package.ndc, s.quantity) for s in result.selection.selected_packages] == [("68180-513-01", 1)]
    assert result.selection.cost_efficiency == "optimal"
    assert result.recommendations[0].ndc == "68180-513-01"
    assert result.review_request is None
    assert audit_store.events() == [
        "prescription_submitted",
        "prescription_parsed",
        "rxnorm_lookup",
        "fda_ndc_search",
        "validation_completed",
        "package_selected",
    ]
    selected = audit_store.records[-1]
    assert selected["status"] == "approved"
    assert selected["ndc_codes"] == ["68180-513-01"]
    assert selected["rxcui"] == "314076"
    assert all(r["run_id"] == "run-1" for r in audit_store.records)
    PipelineResult.model_validate(result.model_dump())


def test_low_confidence_goes_to_review(cache, recorder, audit_store: InMemoryAuditStore) -> None:
    queue = ListReviewQueue()
    pipeline = _pipeline(cache, recorder, ScriptedOracle(_reply(confidence=0.6)), FakeSession(_registry_routes()), queue)
    result = pipeline.process(RX_TEXT)
    assert result.status == "pending_review"
    assert result.selection is None
    assert result.review_id == "review-1"
    assert queue.requests[0].calculation_id == result.run_id
    assert queue.requests[0].priority == "high"
    assert "review_queued" in audit_store.events()
    assert "package_selected" not in audit_store.events()


def test_critical_check_goes_to_review_despite_confidence(cache, recorder) -> None:
    oracle = ScriptedOracle(_reply(days_supply=400, confidence=0.99))
    result = _pipeline(cache, recorder, oracle, FakeSession(_registry_routes())).process(RX_TEXT)
    assert result.status == "pending_review"
    assert result.validation.requires_manual_review is True


def test_zero_days_supply_goes_to_review(cache, recorder) -> None:
    queue = ListReviewQueue()
    oracle = ScriptedOracle(_reply(days_supply=0, confidence=0.99))
    result = _pipeline(cache, recorder, oracle, FakeSession(_registry_routes()), queue).process(RX_TEXT)
    assert result.status == "pending_review"
    assert result.parsed.days_supply == 0
    assert len(oracle.calls) == 1
    assert queue.requests[0].priority == "high"
    days_check = next(c for c in result.validation.reasonableness_checks if c.check_name == "days_supply")
    assert days_check.severity == "critical"


def test_warnings_still_select(cache, recorder, audit_store: InMemoryAuditStore) -> None:
    oracle = ScriptedOracle(_reply(days_supply=75))
    result = _pipeline(cache, recorder, oracle, FakeSession(_registry_routes())).process(RX_TEXT)
    assert result.status == "approved"
    assert result.validation.decision == "approve_with_warning"
    assert any("longer than typical" in w for w in result.warnings)
    assert "validation_warning" in audit_store.events()


def test_registry_down_falls_back_to_name_search(cache, recorder) -> None:
    routes = _registry_routes(**{"/approximateTerm.json": requests.ConnectionError("unreachable")})
    session = FakeSession(routes)
    result = _pipeline(cache, recorder, ScriptedOracle(_reply()), session).process(RX_TEXT)
    assert result.identifier is None
    assert result.status == "approved"
    catalog_queries = [params["search"] for url, params in session.calls if url.endswith("ndc.json")]
    assert catalog_queries == ['generic_name:"Lisinopril" OR brand_name:"Lisinopril"']


def test_catalog_down_is_no_packages(cache, recorder) -> None:
    routes = _registry_routes(**{"ndc.json": requests.ConnectionError("unreachable")})
    result = _pipeline(cache, recorder, ScriptedOracle(_reply()), FakeSession(routes)).process(RX_TEXT)
    assert result.status == "no_packages"
    assert result.packages == []
    assert any("catalog unavailable" in w for w in result.warnings)


def test_empty_catalog_is_no_packages(cache, recorder) -> None:
    routes = _registry_routes(**{"ndc.json": FakeResponse({"results": []})})
    result = _pipeline(cache, recorder, ScriptedOracle(_reply()), FakeSession(routes)).process(RX_TEXT)
    assert result.status == "no_packages"
    assert "No packages found" in result.message


def test_unusable_packages_cannot_fulfill(cache, recorder) -> None:
    product = PRODUCTS[0] | {"packaging": [{"package_ndc": "1-1-1", "description": "0 TABLET in 1 BOTTLE"}]}
    routes = _registry_routes(**{"ndc.json": FakeResponse({"results": [product]})})
    result = _pipeline(cache, recorder, ScriptedOracle(_reply()), FakeSession(routes)).process(RX_TEXT)
    assert result.status == "cannot_fulfill"
    assert result.message.startswith("Cannot fulfill prescription")
    assert result.selection is None


def test_interpretation_error_propagates(cache, recorder, audit_store: InMemoryAuditStore) -> None:
    oracle = ScriptedOracle(json.dumps({"refused": True, "refusal_reason": "not a prescription"}))
    with pytest.raises(InterpretationError):
        _pipeline(cache, recorder, oracle, FakeSession(_registry_routes())).process("what's the weather")
    assert audit_store.events() == ["prescription_submitted", "parsing_error"]


def test_unexpected_stage_failure_is_audited(cache, recorder, audit_store: InMemoryAuditStore) -> None:
    pipeline = _pipeline(
        cache, recorder, ScriptedOracle(_reply(confidence=0.5)), FakeSession(_registry_routes()),
        ListReviewQueue(broken=True),
    )
    with pytest.raises(RuntimeError):
        pipeline.process(RX_TEXT)
    error = audit_store.records[-1]
    assert error["event_type"] == "api_error"
    assert error["payload"] == {"stage": "review", "error": "review service down"}


def test_failing_audit_store_does_not_change_outcome(cache, sleeps: list[float]) -> None:
    recorder = AuditRecorder(InMemoryAuditStore(fail_times=10_000), sleep=sleeps.append)
    result = _pipeline(cache, recorder, ScriptedOracle(_reply()), FakeSession(_registry_routes())).process(RX_TEXT)
    assert result.status == "approved"
    assert sleeps


def test_build_pipeline_writes_audit_and_review_files(tmp_path: Path) -> None:
    pipeline = build_pipeline(
        out_dir=tmp_path,
        cache=TieredCache(MemoryCache(), l1=LRUCache()),
        oracle=ScriptedOracle(_reply(confidence=0.5)),
        session=FakeSession(_registry_routes()),
    )
    result = pipeline.process(RX_TEXT)
    assert result.status == "pending_review"
    audit_lines = (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(audit_lines[0])["event_type"] == "prescription_submitted"
    queue_lines = (tmp_path / "review_queue.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(queue_lines[0])["id"] == result.review_id


def test_cli_demo_run(tmp_path: Path, capsys) -> None:
    rx = tmp_path / "rx.txt"
    rx.write_text("lisinipril 10mg 1 po qd #90", encoding="utf-8")
    out = tmp_path / "outputs"
    assert run(str(rx), str(out), demo=True) == 0
    run_dirs = list(out.iterdir())
    assert len(run_dirs) == 1
    written = {p.name for p in run_dirs[0].iterdir()}
    assert {"parsed.json", "validation.json", "selection.json", "audit.jsonl"} <= written
    selection = json.loads((run_dirs[0] / "selection.json").read_text(encoding="utf-8"))
    assert selection["total_units"] == 90
    printed = capsys.readouterr().out
    assert "Status: approved" in printed
