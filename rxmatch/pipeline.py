"""
Pipeline: prescription text → PipelineResult.

  interpret → standardize → catalog → validate (gate) → select

Stages run in order, each one audited. Standardization and catalog failures degrade
(no RxCUI → name search; no packages → no_packages). The gate either sends the parse to
the review queue (pending_review) or lets selection run.
"""
import logging
import time
import uuid
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional

from rxmatch.audit import AuditEventType, AuditRecorder, JsonlAuditStore
from rxmatch.cache import TieredCache, get_default_cache
from rxmatch.config import Settings, get_settings
from rxmatch.errors import CatalogFailure, PackageSelectionError, RxMatchError
from rxmatch.fda import CatalogClient
from rxmatch.interpret import InterpretationClient
from rxmatch.llm import complete, get_model
from rxmatch.review import JsonlReviewQueue, ReviewQueue, build_review_request
from rxmatch.rxnorm import StandardizationClient
from rxmatch.schemas import (
    AuditContext,
    CandidatePackage,
    ParsedPrescription,
    PipelineResult,
    SelectionOptions,
    StandardizedIdentifier,
    ValidationOutcome,
)
from rxmatch.selection import generate_recommendations, select_optimal_packages
from rxmatch.validation import ReasonablenessPolicy, validate_prescription

logger = logging.getLogger(__name__)


class RxMatchPipeline:
    def __init__(
        self,
        interpreter: InterpretationClient,
        standardizer: StandardizationClient,
        catalog: CatalogClient,
        review_queue: ReviewQueue,
        audit: AuditRecorder,
        options: SelectionOptions | None = None,
        policy: ReasonablenessPolicy | None = None,
    ):
        self.interpreter = interpreter
        self.standardizer = standardizer
        self.catalog = catalog
        self.review_queue = review_queue
        self.audit = audit
        self.options = options or SelectionOptions()
        self.policy = policy or ReasonablenessPolicy()

    def process(self, text: str, context: AuditContext | None = None) -> PipelineResult:
        """Run every stage for one prescription. Raises InterpretationError if the text can't be parsed."""
        context = context or AuditContext()
        run_id = context.run_id or str(uuid.uuid4())
        context = context.model_copy(update={"run_id": run_id})
        start = time.perf_counter()

        self.audit.record(AuditEventType.PRESCRIPTION_SUBMITTED, {"text_length": len(text or "")}, context)

        parsed: ParsedPrescription = self._stage("interpretation", context, self.interpreter.interpret, text, context)
        identifier: Optional[StandardizedIdentifier] = self._stage(
            "standardization",
            context,
            self.standardizer.standardize,
            parsed.drug_name, parsed.strength, parsed.dosage_form, context,
        )
        packages, catalog_warning = self._lookup_packages(parsed, identifier, context)
        outcome = self._stage("validation", context, self._validate, parsed, identifier, context)

        warnings = _collect_warnings(outcome)
        if catalog_warning:
            warnings.append(catalog_warning)
        base: dict[str, Any] = {
            "run_id": run_id,
            "parsed": parsed,
            "identifier": identifier,
            "packages": packages,
            "validation": outcome,
            "warnings": warnings,
        }

        if outcome.decision == "manual_review":
            request = build_review_request(run_id, outcome, text)
            review_id = self._stage("review", context, self.review_queue.submit, request)
            self.audit.record(
                AuditEventType.REVIEW_QUEUED,
                {
                    "review_id": review_id,
                    "priority": request.priority,
                    "confidence_score": outcome.confidence_score,
                    "rxcui": identifier.rxcui if identifier else None,
                },
                context,
            )
            logger.info("Run %s queued for review (priority %s)", run_id, request.priority)
            return PipelineResult(
                status="pending_review",
                message="Prescription queued for pharmacist review",
                review_request=request,
                review_id=review_id,
                **base,
            )

        if not packages:
            logger.info("Run %s: no packages found for %r", run_id, parsed.drug_name)
            return PipelineResult(
                status="no_packages",
                message=f"No packages found for {parsed.drug_name} {parsed.strength}",
                **base,
            )

        try:
            selection = select_optimal_packages(parsed.quantity, packages, self.options)
        except PackageSelectionError as e:
            logger.warning("Run %s cannot be fulfilled: %s", run_id, e)
            return PipelineResult(status="cannot_fulfill", message=f"Cannot fulfill prescription: {e}", **base)

        elapsed = (time.perf_counter() - start) * 1000
        self.audit.record(
            AuditEventType.PACKAGE_SELECTED,
            {
                "rxcui": identifier.rxcui if identifier else None,
                "ndc_codes": [s.package.ndc for s in selection.selected_packages],
                "total_units": selection.total_units,
                "overfill_percentage": selection.overfill_percentage,
                "cost_efficiency": selection.cost_efficiency,
                "score": selection.score,
                "confidence_score": outcome.confidence_score,
            },
            context.model_copy(update={"processing_time_ms": elapsed}),
        )
        return PipelineResult(
            status="approved",
            message=selection.reasoning,
            selection=selection,
            recommendations=generate_recommendations(selection, parsed.quantity),
            **base,
        )

    def _lookup_packages(
        self,
        parsed: ParsedPrescription,
        identifier: Optional[StandardizedIdentifier],
        context: AuditContext,
    ) -> tuple[list[CandidatePackage], Optional[str]]:
        try:
            if identifier is not None:
                packages = self._stage(
                    "catalog", context, self.catalog.search_by_identifier, identifier.rxcui, parsed.drug_name, context
                )
            else:
                packages = self._stage("catalog", context, self.catalog.search_by_name, parsed.drug_name, context)
        except CatalogFailure as e:
            logger.warning("Catalog unavailable for %r: %s", parsed.drug_name, e)
            return [], "Package catalog unavailable; no packages could be retrieved"
        return packages, None

    def _validate(
        self,
        parsed: ParsedPrescription,
        identifier: Optional[StandardizedIdentifier],
        context: AuditContext,
    ) -> ValidationOutcome:
        outcome = validate_prescription(parsed, self.policy)
        self.audit.record(
            AuditEventType.VALIDATION_COMPLETED,
            {
                "confidence_score": outcome.confidence_score,
                "confidence_level": outcome.confidence_level,
                "decision": outcome.decision,
                "is_valid": outcome.is_valid,
                "requires_manual_review": outcome.requires_manual_review,
                "reasoning": outcome.reasoning,
                "rxcui": identifier.rxcui if identifier else None,
            },
            context,
        )
        flagged = [c for c in outcome.reasonableness_checks if c.severity != "info"]
        if outcome.warnings or flagged:
            self.audit.record(
                AuditEventType.VALIDATION_WARNING,
                {
                    "confidence_score": outcome.confidence_score,
                    "warnings": outcome.warnings,
                    "checks": flagged,
                },
                context,
            )
        return outcome

    def _stage(self, name: str, context: AuditContext, fn: Callable[..., Any], *args: Any) -> Any:
        """Typed rxmatch errors pass through; anything else is audited as api_error, then re-raised."""
        try:
            return fn(*args)
        except RxMatchError:
            raise
        except Exception as e:
            logger.exception("Stage %s failed unexpectedly", name)
            self.audit.record(AuditEventType.API_ERROR, {"stage": name, "error": str(e)}, context)
            raise


def _collect_warnings(outcome: ValidationOutcome) -> list[str]:
    warnings = [w.message for w in outcome.warnings]
    warnings.extend(c.message for c in outcome.reasonableness_checks if c.severity == "warning")
    return warnings


def build_pipeline(
    settings: Settings | None = None,
    out_dir: str | Path = "outputs",
    cache: TieredCache | None = None,
    oracle: Callable[[str, str], str] | None = None,
    session: Any = None,
    options: SelectionOptions | None = None,
    policy: ReasonablenessPolicy | None = None,
    model_name: str | None = None,
) -> RxMatchPipeline:
    """Production wiring: one process-wide tiered cache, JSONL audit and review files under out_dir."""
    settings = settings or get_settings()
    out_dir = Path(out_dir)
    cache = cache or get_default_cache(settings)
    audit = AuditRecorder(
        JsonlAuditStore(out_dir / "audit.jsonl"),
        retry_attempts=settings.audit_retry_attempts,
        retry_delay=settings.audit_retry_delay,
    )
    interpreter = InterpretationClient(
        cache,
        audit,
        oracle=oracle or partial(complete, settings=settings),
        model_name=model_name or (None if oracle else get_model(settings)),
        ttl=settings.ttl_interpretation,
    )
    standardizer = StandardizationClient(
        cache,
        audit,
        session=session,
        base_url=settings.rxnorm_base_url,
        timeout=settings.timeout_standardization,
        ttl=settings.ttl_standardization,
    )
    catalog = CatalogClient(
        cache,
        audit,
        session=session,
        base_url=settings.fda_ndc_url,
        timeout=settings.timeout_catalog,
        ttl=settings.ttl_catalog,
    )
    return RxMatchPipeline(
        interpreter,
        standardizer,
        catalog,
        JsonlReviewQueue(out_dir / "review_queue.jsonl"),
        audit,
        options=options,
        policy=policy,
    )
