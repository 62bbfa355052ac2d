"""
Review queue triggering: ValidationOutcome → ReviewRequest.

The queue itself (assignment, UI) lives elsewhere. This module only builds the request
(priority + notes for the pharmacist) and hands it to anything with submit(request) -> id.
"""
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from rxmatch.schemas import ReviewRequest, ValidationOutcome
from rxmatch.validation import review_priority


class ReviewQueue(Protocol):
    def submit(self, request: ReviewRequest) -> str: ...


class JsonlReviewQueue:
    """Append each review request as one JSON line (review_queue.jsonl)."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def submit(self, request: ReviewRequest) -> str:
        review_id = str(uuid.uuid4())
        record = {
            "id": review_id,
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            **request.model_dump(mode="json"),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")
        return review_id


def _review_notes(outcome: ValidationOutcome, prescription_text: str) -> str:
    lines = [
        "Prescription:",
        prescription_text.strip(),
        "",
        f"Confidence Level: {outcome.confidence_level} ({outcome.confidence_score * 100:.1f}%)",
        f"Reasoning: {outcome.reasoning}",
    ]
    failed = [c for c in outcome.reasonableness_checks if not c.passed or c.severity == "critical"]
    if failed:
        lines.append("")
        lines.append("Failed Reasonableness Checks:")
        for c in failed:
            lines.append(f"- {c.check_name} ({c.severity}): {c.message}")
    if outcome.errors:
        lines.append("")
        lines.append("Structural Errors:")
        for e in outcome.errors:
            lines.append(f"- {e.field}: {e.message}")
    return "\n".join(lines)


def build_review_request(calculation_id: str, outcome: ValidationOutcome, prescription_text: str) -> ReviewRequest:
    return ReviewRequest(
        calculation_id=calculation_id,
        priority=review_priority(outcome),
        notes=_review_notes(outcome, prescription_text),
    )
