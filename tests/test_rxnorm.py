"""Standardization client tests against a fake RxNav session."""
import requests

from rxmatch.rxnorm import StandardizationClient, search_term, standardize_cache_key

from conftest import FakeResponse, FakeSession, InMemoryAuditStore

CANDIDATES = FakeResponse({"approximateGroup": {"candidate": [
    {"rxcui": "29046", "name": "lisinopril", "score": "8.5"},
    {"rxcui": "314076", "name": "lisinopril 10 MG Oral Tablet", "score": "10.2"},
    {"rxcui": "314076", "name": "lisinopril 10 MG Oral Tablet", "score": "9.0"},
]}})


def _session(**extra) -> FakeSession:
    routes = {
        "/approximateTerm.json": CANDIDATES,
        "/rxcui/314076/properties.json": FakeResponse({"properties": {
            "rxcui": "314076", "name": "lisinopril 10 MG Oral Tablet", "tty": "SCD",
        }}),
        "/rxcui/29046/properties.json": FakeResponse({"properties": {
            "rxcui": "29046", "name": "lisinopril", "tty": "IN",
        }}),
        "/rxcui/314076/ndcs.json": FakeResponse({"ndcGroup": {"ndcList": {"ndc": ["68180051301"]}}}),
    }
    routes.update(extra)
    return FakeSession(routes)


def test_standardize_picks_best_prescribable_candidate(cache, recorder, audit_store: InMemoryAuditStore) -> None:
    session = _session()
    client = StandardizationClient(cache, recorder, session=session)
    identifier = client.standardize("Lisinopril", "10mg", "tablet")
    assert identifier is not None
    assert identifier.rxcui == "314076"
    assert identifier.tty == "SCD"
    url, params = session.calls[0]
    assert params == {"term": "Lisinopril 10mg tablet", "maxEntries": 10}
    assert audit_store.events() == ["rxnorm_lookup"]
    assert audit_store.records[0]["rxcui"] == "314076"


def test_standardize_skips_non_prescribable_terms(cache, recorder) -> None:
    session = _session(**{
        "/approximateTerm.json": FakeResponse({"approximateGroup": {"candidate": [
            {"rxcui": "29046", "name": "lisinopril", "score": "10"},
        ]}}),
    })
    assert StandardizationClient(cache, recorder, session=session).standardize("Lisinopril") is None


def test_standardize_is_cached(cache, recorder, audit_store: InMemoryAuditStore) -> None:
    session = _session()
    client = StandardizationClient(cache, recorder, session=session)
    first = client.standardize("Lisinopril", "10mg", "tablet")
    calls = len(session.calls)
    second = client.standardize("LISINOPRIL", "10MG", "Tablet")
    assert second == first
    assert len(session.calls) == calls
    assert cache.get("standardize:lisinopril:10mg:tablet")["rxcui"] == "314076"
    assert audit_store.records[1]["payload"]["cached"] is True


def test_registry_unreachable_returns_none(cache, recorder, audit_store: InMemoryAuditStore) -> None:
    session = FakeSession({"/approximateTerm.json": requests.ConnectionError("no route to host")})
    client = StandardizationClient(cache, recorder, session=session)
    assert client.standardize("Lisinopril", "10mg") is None
    assert audit_store.events() == ["api_error"]
    assert audit_store.records[0]["payload"]["api_name"] == "rxnorm"


def test_http_error_and_bad_json_return_none(cache, recorder) -> None:
    client = StandardizationClient(cache, recorder, session=FakeSession({
        "/approximateTerm.json": FakeResponse({}, status_code=503),
    }))
    assert client.standardize("Lisinopril") is None
    client = StandardizationClient(cache, recorder, session=FakeSession({
        "/approximateTerm.json": FakeResponse(["not", "an", "object"]),
    }))
    assert client.standardize("Lisinopril") is None


def test_misses_are_not_cached(cache, recorder) -> None:
    session = FakeSession({"/approximateTerm.json": FakeResponse({"approximateGroup": {}})})
    client = StandardizationClient(cache, recorder, session=session)
    assert client.standardize("Unobtainium") is None
    assert cache.get(standardize_cache_key("Unobtainium")) is None


def test_find_candidates_sorted_and_deduped(cache, recorder) -> None:
    client = StandardizationClient(cache, recorder, session=_session())
    candidates = client.find_candidates("lisinopril")
    assert [c["rxcui"] for c in candidates] == ["314076", "29046"]
    assert candidates[0]["score"] == 10.2


def test_get_ndcs(cache, recorder) -> None:
    client = StandardizationClient(cache, recorder, session=_session())
    assert client.get_ndcs("314076") == ["68180051301"]


def test_search_term_and_key() -> None:
    assert search_term("Lisinopril", None, " tablet ") == "Lisinopril tablet"
    assert standardize_cache_key("Lisinopril", "10mg", "Tablet") == "standardize:lisinopril:10mg:tablet"
    assert standardize_cache_key("Lisinopril") == "standardize:lisinopril::"
