"""
Interpretation step: prescription text → ParsedPrescription.

The LLM does two things:
1. Normalization: corrects drug-name spelling, maps the dosage form to a standard word,
   splits strength and quantity into value + unit.
2. Self-assessment: reports a confidence score and any warnings about the input.

Output is validated with Pydantic against a strict schema; one repair attempt if invalid.
A refusal or a second invalid reply is an InterpretationError. Results are cached by a
hash of the input text, so the same text is never sent to the oracle twice.
"""
import hashlib
import json
import logging
import time
from typing import Callable, Optional

from pydantic import ValidationError

from rxmatch.audit import AuditEventType, AuditRecorder
from rxmatch.cache import TieredCache
from rxmatch.errors import InterpretationError, OracleRefusal
from rxmatch.llm import ORACLE_ERRORS, complete, extract_json_from_response
from rxmatch.schemas import (
    AuditContext,
    InterpretationMetadata,
    InterpretationPayload,
    ParsedPrescription,
)

logger = logging.getLogger(__name__)

Oracle = Callable[[str, str], str]

INTERPRETATION_SYSTEM = """You are a pharmacy technician interpreting free-text prescriptions.
Output ONLY valid JSON matching this schema (no markdown, no explanation outside JSON):

{
  "refused": false,
  "refusal_reason": null,
  "drug_name": "corrected generic or brand name, e.g. Lisinopril",
  "strength": "number + unit, e.g. 10mg, 250mg/5ml, 1%",
  "form": "tablet | capsule | solution | suspension | injection | cream | ointment | gel | patch | inhaler | drops | syrup | powder | suppository | spray",
  "quantity": 30,
  "quantity_unit": "tablet | capsule | ml | g | unit",
  "sig": "directions as written, or null",
  "days_supply": 30,
  "confidence": 0.0-1.0,
  "normalizations": {
    "original_drug_name": "drug name exactly as written, or null",
    "spelling_corrections": ["lisinipril -> lisinopril"]
  },
  "warnings": ["anything ambiguous about the prescription"]
}

Rules:
- If the text is not a prescription or cannot be interpreted, reply {"refused": true, "refusal_reason": "..."}.
- quantity is the total amount to dispense; compute it from sig and days supply if not stated.
- days_supply is null when it cannot be determined.
- Lower the confidence for guessed fields, unreadable names, or conflicting numbers.
"""


def interpretation_cache_key(text: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"interpretation:{digest}"


def _to_parsed(payload: InterpretationPayload) -> ParsedPrescription:
    norm = payload.normalizations
    original = norm.original_drug_name
    return ParsedPrescription(
        drug_name=payload.drug_name.strip(),
        original_drug_name=original.strip() if original else None,
        strength=payload.strength.strip(),
        dosage_form=payload.form.strip().lower(),
        sig=payload.sig.strip() if payload.sig else None,
        quantity=payload.quantity,
        quantity_unit=payload.quantity_unit.strip().lower() if payload.quantity_unit else None,
        days_supply=payload.days_supply,
        confidence=payload.confidence,
        corrections=list(norm.spelling_corrections),
        warnings=list(payload.warnings),
    )


def parse_oracle_reply(raw: str) -> InterpretationPayload:
    """Raw oracle text → validated payload. Raises ValueError / ValidationError."""
    return InterpretationPayload.model_validate(extract_json_from_response(raw))


class InterpretationClient:
    def __init__(
        self,
        cache: TieredCache,
        audit: AuditRecorder,
        oracle: Optional[Oracle] = None,
        model_name: Optional[str] = None,
        ttl: int = 604800,
        allow_repair: bool = True,
    ):
        self.cache = cache
        self.audit = audit
        self.oracle = oracle or complete
        self.model_name = model_name
        self.ttl = ttl
        self.allow_repair = allow_repair

    def interpret(self, text: str, context: AuditContext | None = None) -> ParsedPrescription:
        return self.interpret_with_metadata(text, context)[0]

    def interpret_with_metadata(
        self, text: str, context: AuditContext | None = None
    ) -> tuple[ParsedPrescription, InterpretationMetadata]:
        context = context or AuditContext()
        if not text or not text.strip():
            raise InterpretationError("Prescription text cannot be empty")

        key = interpretation_cache_key(text)
        cached = self.cache.get(key)
        if cached is not None:
            try:
                parsed = ParsedPrescription.model_validate(cached)
            except ValidationError:
                logger.warning("Dropping malformed cached parse %s", key)
                self.cache.delete(key)
            else:
                meta = InterpretationMetadata(processing_time_ms=0.0, cached=True, model=self.model_name)
                self._record_parsed(parsed, meta, context)
                return parsed, meta

        start = time.perf_counter()
        try:
            parsed = self._call_oracle(text, context)
        except InterpretationError as e:
            elapsed = (time.perf_counter() - start) * 1000
            self.audit.record(
                AuditEventType.PARSING_ERROR,
                {"error": str(e), "text_length": len(text)},
                context.model_copy(update={"processing_time_ms": elapsed}),
            )
            raise
        elapsed = (time.perf_counter() - start) * 1000

        self.cache.set(key, parsed.model_dump(mode="json"), self.ttl)
        meta = InterpretationMetadata(processing_time_ms=elapsed, cached=False, model=self.model_name)
        self._record_parsed(parsed, meta, context)
        logger.info("Interpreted %r (confidence %.2f) in %.0f ms", parsed.drug_name, parsed.confidence, elapsed)
        return parsed, meta

    def _call_oracle(self, text: str, context: AuditContext) -> ParsedPrescription:
        user_msg = "Interpret this prescription.\n\nPrescription:\n" + text
        raw = self._ask(user_msg)
        try:
            payload = parse_oracle_reply(raw)
        except (ValueError, ValidationError) as e:
            if not self.allow_repair:
                raise InterpretationError(f"Oracle returned an invalid parse: {e}") from e
            self.audit.record(AuditEventType.INTERPRETATION_REPAIR, {"error": str(e)}, context)
            repair_msg = (
                "Previous output was invalid. Error:\n" + str(e)
                + "\n\nPrevious output:\n" + raw
                + "\n\nFix and output ONLY valid JSON for the same schema."
            )
            raw = self._ask(repair_msg)
            try:
                payload = parse_oracle_reply(raw)
            except (ValueError, ValidationError) as e2:
                raise InterpretationError(f"Oracle returned an invalid parse: {e2}") from e2

        if payload.refused:
            raise InterpretationError(
                f"Oracle refused to interpret prescription: {payload.refusal_reason or 'no reason given'}"
            )
        return _to_parsed(payload)

    def _ask(self, user_msg: str) -> str:
        try:
            return self.oracle(INTERPRETATION_SYSTEM, user_msg)
        except OracleRefusal as e:
            raise InterpretationError(f"Oracle refused to interpret prescription: {e}") from e
        except ORACLE_ERRORS as e:
            raise InterpretationError(f"Interpretation oracle unavailable: {e}") from e

    def _record_parsed(self, parsed: ParsedPrescription, meta: InterpretationMetadata, context: AuditContext) -> None:
        self.audit.record(
            AuditEventType.PRESCRIPTION_PARSED,
            {
                "parsed_result": parsed,
                "confidence_score": parsed.confidence,
                "cached": meta.cached,
                "model": meta.model,
            },
            context.model_copy(update={"processing_time_ms": meta.processing_time_ms}),
        )


def payload_json_example(parsed: ParsedPrescription) -> str:
    """Oracle-shaped JSON for an existing parse (demo mode, fixtures)."""
    return json.dumps({
        "refused": False,
        "refusal_reason": None,
        "drug_name": parsed.drug_name,
        "strength": parsed.strength,
        "form": parsed.dosage_form,
        "quantity": parsed.quantity,
        "quantity_unit": parsed.quantity_unit,
        "sig": parsed.sig,
        "days_supply": parsed.days_supply,
        "confidence": parsed.confidence,
        "normalizations": {
            "original_drug_name": parsed.original_drug_name,
            "spelling_corrections": parsed.corrections,
        },
        "warnings": parsed.warnings,
    })
