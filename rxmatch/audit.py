"""
Audit recorder.

Every pipeline stage writes one record here. Records go to a store (append-only JSONL by
default). Writes are retried with linear backoff and never raise: a broken audit store
must not change what the pipeline returns.
"""
import json
import logging
import math
import time
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

from pydantic import BaseModel

from rxmatch.errors import AuditPersistenceError
from rxmatch.schemas import AuditContext, AuditResult

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    PRESCRIPTION_SUBMITTED = "prescription_submitted"
    PRESCRIPTION_PARSED = "prescription_parsed"
    INTERPRETATION_REPAIR = "interpretation_repair"
    RXNORM_LOOKUP = "rxnorm_lookup"
    FDA_NDC_SEARCH = "fda_ndc_search"
    VALIDATION_COMPLETED = "validation_completed"
    VALIDATION_WARNING = "validation_warning"
    REVIEW_QUEUED = "review_queued"
    PACKAGE_SELECTED = "package_selected"
    EXPORT_ACTION = "export_action"
    PARSING_ERROR = "parsing_error"
    API_ERROR = "api_error"


ERROR_EVENTS = {AuditEventType.PARSING_ERROR, AuditEventType.API_ERROR}
APPROVED_EVENTS = {AuditEventType.PACKAGE_SELECTED, AuditEventType.EXPORT_ACTION}
LOW_CONFIDENCE = 0.8

_DROP = object()


class AuditStore(Protocol):
    def create(self, record: dict[str, Any]) -> str: ...
    def update_status(self, record_id: str, status: str) -> None: ...


class JsonlAuditStore:
    """Append one JSON object (one line) per record to the audit file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def create(self, record: dict[str, Any]) -> str:
        record_id = str(uuid.uuid4())
        line = {"id": record_id, "timestamp": datetime.now(tz=timezone.utc).isoformat(), **record}
        self._append(line)
        return record_id

    def update_status(self, record_id: str, status: str) -> None:
        self._append({
            "id": str(uuid.uuid4()),
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            "event_type": "status_update",
            "record_id": record_id,
            "status": status,
        })

    def _append(self, obj: dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False) + "\n")
        except OSError as e:
            raise AuditPersistenceError(f"cannot write {self.path}: {e}") from e


def _sanitize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return _sanitize(value.model_dump(mode="json"))
    if isinstance(value, Enum):
        return _sanitize(value.value)
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _DROP
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            clean = _sanitize(v)
            if clean is not _DROP:
                out[str(k)] = clean
        return out
    if isinstance(value, (list, tuple, set)):
        return [c for c in (_sanitize(v) for v in value) if c is not _DROP]
    return _DROP


def sanitize_payload(payload: Any) -> Any:
    """Round-trip through strict JSON, dropping anything that can't be serialized."""
    clean = _sanitize(payload)
    if clean is _DROP:
        return None
    return json.loads(json.dumps(clean, allow_nan=False))


def infer_status(event_type: AuditEventType, payload: dict[str, Any]) -> str:
    """rejected for errors, pending for low confidence, approved for selection/export, else pending."""
    if event_type in ERROR_EVENTS:
        return "rejected"
    confidence = payload.get("confidence_score")
    if isinstance(confidence, (int, float)) and confidence < LOW_CONFIDENCE:
        return "pending"
    if event_type in APPROVED_EVENTS:
        return "approved"
    return "pending"


class AuditRecorder:
    def __init__(
        self,
        store: AuditStore,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep

    def record(
        self,
        event_type: AuditEventType | str,
        payload: dict[str, Any] | None = None,
        context: AuditContext | None = None,
    ) -> AuditResult:
        """Persist one event. Returns a failure result instead of raising."""
        try:
            event_type = AuditEventType(event_type)
            clean = sanitize_payload(payload or {}) or {}
        except Exception as e:
            logger.warning("audit event %r rejected: %s", event_type, e)
            return AuditResult(success=False, error=str(e))
        if not isinstance(clean, dict):
            clean = {"value": clean}
        context = context or AuditContext()
        record = {
            "run_id": context.run_id,
            "user_id": context.user_id,
            "session_id": context.session_id,
            "event_type": event_type.value,
            "status": infer_status(event_type, clean),
            "confidence_score": clean.get("confidence_score"),
            "processing_time_ms": context.processing_time_ms,
            "rxcui": clean.get("rxcui"),
            "ndc_codes": clean.get("ndc_codes"),
            "payload": clean,
        }

        last_error = "unknown audit error"
        for attempt in range(1, self.retry_attempts + 1):
            try:
                record_id = self.store.create(record)
                logger.debug("audit %s stored as %s (attempt %d)", event_type.value, record_id, attempt)
                return AuditResult(success=True, record_id=record_id)
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(
                    "audit %s failed (attempt %d/%d): %s",
                    event_type.value, attempt, self.retry_attempts, last_error,
                )
                if attempt < self.retry_attempts:
                    self._sleep(self.retry_delay * attempt)
        return AuditResult(success=False, error=last_error)

    def update_status(self, record_id: str, status: str) -> AuditResult:
        """Move a record to pending/approved/rejected (review workflows)."""
        try:
            self.store.update_status(record_id, status)
            return AuditResult(success=True, record_id=record_id)
        except Exception as e:
            logger.warning("audit status update for %s failed: %s", record_id, e)
            return AuditResult(success=False, error=str(e) or e.__class__.__name__)
