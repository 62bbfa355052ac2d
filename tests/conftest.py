"""In-memory fakes for the external collaborators: no network, no Redis, no real sleeps."""
from typing import Any, Callable

import pytest
import requests

from rxmatch.audit import AuditRecorder
from rxmatch.cache import LRUCache, MemoryCache, TieredCache
from rxmatch.errors import AuditPersistenceError
from rxmatch.schemas import CandidatePackage, ParsedPrescription


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryAuditStore:
    def __init__(self, fail_times: int = 0):
        self.records: list[dict[str, Any]] = []
        self.status_updates: list[tuple[str, str]] = []
        self.fail_times = fail_times
        self.attempts = 0

    def create(self, record: dict[str, Any]) -> str:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise AuditPersistenceError("store unavailable")
        record_id = f"rec-{len(self.records) + 1}"
        self.records.append({"id": record_id, **record})
        return record_id

    def update_status(self, record_id: str, status: str) -> None:
        self.status_updates.append((record_id, status))

    def events(self) -> list[str]:
        return [r["event_type"] for r in self.records]


class FakeResponse:
    def __init__(self, data: Any, status_code: int = 200):
        self._data = data
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        return self._data


class FakeSession:
    """Routes GETs by URL suffix. A route is a FakeResponse, an exception, or a callable(params)."""

    def __init__(self, routes: dict[str, Any] | None = None):
        self.routes = routes or {}
        self.calls: list[tuple[str, dict[str, Any] | None]] = []

    def get(self, url: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> FakeResponse:
        self.calls.append((url, params))
        for suffix, route in self.routes.items():
            if url.endswith(suffix):
                if isinstance(route, Exception):
                    raise route
                if callable(route):
                    return route(params or {})
                return route
        return FakeResponse({}, status_code=404)


class ScriptedOracle:
    """Returns (or raises) the scripted replies in order."""

    def __init__(self, *replies: Any):
        self.replies = list(replies)
        self.calls: list[tuple[str, str]] = []

    def __call__(self, system: str, user: str) -> str:
        self.calls.append((system, user))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def recorder(audit_store: InMemoryAuditStore, sleeps: list[float]) -> AuditRecorder:
    return AuditRecorder(audit_store, retry_attempts=3, retry_delay=1.0, sleep=sleeps.append)


@pytest.fixture
def cache() -> TieredCache:
    return TieredCache(MemoryCache(), l1=LRUCache(max_size=100, ttl=300))


def make_package(size: float, unit: str = "TABLET", ndc: str | None = None, **kwargs: Any) -> CandidatePackage:
    size_label = int(size) if float(size).is_integer() else size
    fields = {
        "ndc": ndc or f"00000-0000-{size_label}",
        "product_ndc": "00000-0000",
        "generic_name": "LISINOPRIL",
        "labeler_name": "Acme Generics",
        "dosage_form": "TABLET",
        "strength": "10 mg/1",
        "package_description": f"{size_label} {unit} in 1 BOTTLE",
        "package_quantity": size,
        "package_unit": unit,
    }
    fields.update(kwargs)
    return CandidatePackage(**fields)


def make_parsed(**overrides: Any) -> ParsedPrescription:
    fields: dict[str, Any] = {
        "drug_name": "Lisinopril",
        "strength": "10mg",
        "dosage_form": "tablet",
        "sig": "Take 1 tablet by mouth once daily",
        "quantity": 30,
        "quantity_unit": "tablet",
        "days_supply": 30,
        "confidence": 0.97,
    }
    fields.update(overrides)
    return ParsedPrescription(**fields)


@pytest.fixture
def package_factory() -> Callable[..., CandidatePackage]:
    return make_package


@pytest.fixture
def parsed_factory() -> Callable[..., ParsedPrescription]:
    return make_parsed
