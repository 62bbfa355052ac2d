"""
Validation step: ParsedPrescription → ValidationOutcome (deterministic, no LLM).

Three independent layers:
1. Confidence classification of the oracle's self-reported score.
2. Structural validation (name, strength format, quantity, days supply, sig).
3. Medical reasonableness checks (days supply, quantity vs. form, strength magnitude,
   route/form compatibility), each with its own severity.

Together they decide whether the parse goes straight to package selection or to a human.
Thresholds live in ReasonablenessPolicy: they are heuristics, not clinical law.
"""
import re
from typing import Optional

from pydantic import BaseModel

from rxmatch.schemas import (
    ConfidenceAssessment,
    ConfidenceLevel,
    ParsedPrescription,
    Priority,
    ReasonablenessCheck,
    StructuralIssue,
    ValidationOutcome,
)

CONFIDENCE_THRESHOLDS = {"high": 0.95, "good": 0.85, "medium": 0.75}
AUTO_APPROVE_MIN = CONFIDENCE_THRESHOLDS["good"]
MANUAL_REVIEW_BELOW = CONFIDENCE_THRESHOLDS["medium"]

VALID_DOSAGE_FORMS = (
    "tablet", "capsule", "solution", "suspension", "injection", "cream", "ointment", "gel",
    "patch", "inhaler", "drops", "syrup", "powder", "suppository", "spray",
)

DRUG_NAME_RE = re.compile(r"^[A-Za-z0-9\s\-()]+$")
STRENGTH_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(mcg|mg|ml|g|l|iu|units?|%)", re.IGNORECASE)

LIQUID_FORMS = ("solution", "suspension", "syrup", "elixir", "liquid", "drops", "injection")
LIQUID_UNITS = ("ml", "milliliter", "milliliters", "l", "liter", "liters")
ORAL_FORMS = ("tablet", "capsule", "caplet", "softgel", "gelcap", "lozenge", "troche", "syrup", "elixir")
TOPICAL_FORMS = ("cream", "ointment", "gel", "lotion", "patch", "foam", "paste")
INHALATION_FORMS = ("inhaler", "inhalation", "aerosol", "nebulizer", "nebuliser")


def _form_re(forms: tuple[str, ...]) -> re.Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(forms) + r")(?:e?s)?\b", re.IGNORECASE)


ORAL_FORM_RE = _form_re(ORAL_FORMS)
TOPICAL_FORM_RE = _form_re(TOPICAL_FORMS)
INHALATION_FORM_RE = _form_re(INHALATION_FORMS)

TOPICAL_SIG_RE = re.compile(r"\b(apply|applied|topically|affected area|to (the )?skin|rub)\b", re.IGNORECASE)
ORAL_SIG_RE = re.compile(r"(\bby mouth\b|\borally\b|\bswallow|\bpo\b|\bp\.o\.)", re.IGNORECASE)


class ReasonablenessPolicy(BaseModel):
    """Sanity bounds for the reasonableness checks."""

    min_days_supply: int = 1
    max_days_supply: int = 90
    warn_days_supply: int = 60
    max_solid_quantity: float = 1000
    max_liquid_quantity: float = 5000
    warn_quantity: float = 500
    max_mg: float = 5000
    min_mg: float = 0.1
    max_mcg: float = 10000
    max_g: float = 50


DEFAULT_POLICY = ReasonablenessPolicy()


# --- Confidence ---

def get_confidence_level(score: float) -> ConfidenceLevel:
    if score >= CONFIDENCE_THRESHOLDS["high"]:
        return "high"
    if score >= CONFIDENCE_THRESHOLDS["good"]:
        return "good"
    if score >= CONFIDENCE_THRESHOLDS["medium"]:
        return "medium"
    return "low"


def validate_confidence_score(score: float) -> ConfidenceAssessment:
    """Classify a bare confidence score (no structural or reasonableness input)."""
    level = get_confidence_level(score)
    pct = f"{score * 100:.1f}%"
    reasoning = {
        "high": f"High confidence ({pct}) - eligible for auto-approval",
        "good": f"Good confidence ({pct}) - eligible for auto-approval",
        "medium": f"Medium confidence ({pct}) - manual review recommended",
        "low": f"Low confidence ({pct}) - manual review required",
    }[level]
    return ConfidenceAssessment(
        confidence_score=score,
        confidence_level=level,
        requires_manual_review=score < MANUAL_REVIEW_BELOW,
        should_auto_approve=score >= AUTO_APPROVE_MIN,
        reasoning=reasoning,
    )


# --- Structural validation ---

def parse_strength(strength: str | None) -> Optional[tuple[float, str]]:
    """'10mg' → (10.0, 'mg'); '250mg/5ml' → (250.0, 'mg'); unparseable → None."""
    m = STRENGTH_RE.match(strength or "")
    if not m:
        return None
    unit = m.group(2).lower()
    if unit == "units":
        unit = "unit"
    return float(m.group(1)), unit


def validate_structure(parsed: ParsedPrescription) -> tuple[list[StructuralIssue], list[StructuralIssue]]:
    """Return (errors, warnings). Errors block auto-approval."""
    errors: list[StructuralIssue] = []
    warnings: list[StructuralIssue] = []

    name = (parsed.drug_name or "").strip()
    if len(name) < 2 or not DRUG_NAME_RE.match(name):
        errors.append(StructuralIssue(
            field="drug_name", message="Drug name appears invalid or too short", code="INVALID_DRUG_NAME"))

    if parse_strength(parsed.strength) is None:
        errors.append(StructuralIssue(
            field="strength", message='Strength must include units (e.g., "10mg", "5ml")',
            code="INVALID_STRENGTH_FORMAT"))

    form = (parsed.dosage_form or "").strip().lower()
    if form not in VALID_DOSAGE_FORMS:
        warnings.append(StructuralIssue(
            field="dosage_form",
            message=f'Dosage form "{parsed.dosage_form}" is not in the standard list'))

    if parsed.quantity is None or parsed.quantity <= 0:
        errors.append(StructuralIssue(field="quantity", message="Quantity must be positive", code="INVALID_QUANTITY"))
    elif parsed.quantity > 10000:
        warnings.append(StructuralIssue(
            field="quantity", message=f"Unusually high quantity: {parsed.quantity:g}. Please verify this is correct."))

    if parsed.days_supply is not None:
        if parsed.days_supply <= 0:
            errors.append(StructuralIssue(
                field="days_supply", message="Days supply must be positive", code="INVALID_DAYS_SUPPLY"))
        elif parsed.days_supply > 365:
            warnings.append(StructuralIssue(
                field="days_supply", message=f"Days supply exceeds 365 days: {parsed.days_supply}"))

    if parsed.sig is not None and len(parsed.sig.strip()) < 5:
        warnings.append(StructuralIssue(
            field="sig", message="SIG appears unusually short. Verify directions are complete."))

    for w in parsed.warnings:
        warnings.append(StructuralIssue(field="interpretation", message=w))

    return errors, warnings


# --- Reasonableness checks ---

def _is_liquid(parsed: ParsedPrescription) -> bool:
    form = (parsed.dosage_form or "").lower()
    unit = (parsed.quantity_unit or "").lower()
    return any(f in form for f in LIQUID_FORMS) or unit in LIQUID_UNITS


def check_days_supply(parsed: ParsedPrescription, policy: ReasonablenessPolicy = DEFAULT_POLICY) -> ReasonablenessCheck:
    days = parsed.days_supply
    if days is None:
        return ReasonablenessCheck(check_name="days_supply", passed=True, message="No days supply specified")
    if days < policy.min_days_supply:
        return ReasonablenessCheck(
            check_name="days_supply", passed=False, severity="critical", value=days,
            threshold=policy.min_days_supply,
            message=f"Days supply {days} is below minimum of {policy.min_days_supply} day")
    if days > policy.max_days_supply:
        return ReasonablenessCheck(
            check_name="days_supply", passed=False, severity="critical", value=days,
            threshold=policy.max_days_supply,
            message=f"Days supply {days} exceeds typical maximum of {policy.max_days_supply} days")
    if days > policy.warn_days_supply:
        return ReasonablenessCheck(
            check_name="days_supply", passed=True, severity="warning", value=days,
            threshold=policy.warn_days_supply,
            message=f"Days supply {days} is longer than typical ({policy.warn_days_supply} days)")
    return ReasonablenessCheck(
        check_name="days_supply", passed=True, value=days, message="Days supply within normal range")


def check_quantity(parsed: ParsedPrescription, policy: ReasonablenessPolicy = DEFAULT_POLICY) -> ReasonablenessCheck:
    qty = parsed.quantity
    liquid = _is_liquid(parsed)
    max_qty = policy.max_liquid_quantity if liquid else policy.max_solid_quantity
    kind = "liquid" if liquid else "solid"
    if qty > max_qty:
        return ReasonablenessCheck(
            check_name="quantity", passed=False, severity="critical", value=qty, threshold=max_qty,
            message=f"Quantity {qty:g} is abnormally high for a {kind} form (max {max_qty:g})")
    if qty > policy.warn_quantity:
        return ReasonablenessCheck(
            check_name="quantity", passed=True, severity="warning", value=qty, threshold=policy.warn_quantity,
            message=f"Quantity {qty:g} is high; verify before dispensing")
    return ReasonablenessCheck(
        check_name="quantity", passed=True, value=qty, threshold=max_qty, message="Quantity within normal range")


def check_strength(parsed: ParsedPrescription, policy: ReasonablenessPolicy = DEFAULT_POLICY) -> ReasonablenessCheck:
    parsed_strength = parse_strength(parsed.strength)
    if parsed_strength is None:
        return ReasonablenessCheck(
            check_name="strength", passed=False, severity="warning", value=parsed.strength,
            message=f"Unable to validate strength format: {parsed.strength!r}")

    value, unit = parsed_strength
    label = f"{value:g}{unit}"
    if unit == "mg" and value > policy.max_mg:
        return ReasonablenessCheck(
            check_name="strength", passed=False, severity="warning", value=value, threshold=policy.max_mg,
            message=f"Strength {label} is unusually high (> {policy.max_mg:g}mg)")
    if unit == "mg" and value < policy.min_mg:
        return ReasonablenessCheck(
            check_name="strength", passed=False, severity="warning", value=value, threshold=policy.min_mg,
            message=f"Strength {label} is unusually low (< {policy.min_mg:g}mg)")
    if unit == "mcg" and value > policy.max_mcg:
        return ReasonablenessCheck(
            check_name="strength", passed=False, severity="warning", value=value, threshold=policy.max_mcg,
            message=f"Strength {label} is unusually high (> {policy.max_mcg:g}mcg)")
    if unit == "g" and value > policy.max_g:
        return ReasonablenessCheck(
            check_name="strength", passed=False, severity="warning", value=value, threshold=policy.max_g,
            message=f"Strength {label} is unusually high (> {policy.max_g:g}g)")
    return ReasonablenessCheck(check_name="strength", passed=True, value=value, message="Strength within normal range")


def check_route_form(parsed: ParsedPrescription) -> ReasonablenessCheck:
    sig = parsed.sig or ""
    form = (parsed.dosage_form or "").lower()
    if not sig.strip():
        return ReasonablenessCheck(check_name="route_form", passed=True, message="No directions to cross-check")

    topical_sig = bool(TOPICAL_SIG_RE.search(sig))
    oral_sig = bool(ORAL_SIG_RE.search(sig))

    # oral before topical: "gel capsule" is swallowed
    if INHALATION_FORM_RE.search(form):
        if topical_sig or oral_sig:
            return ReasonablenessCheck(
                check_name="route_form", passed=False, severity="warning", value=parsed.dosage_form,
                message=f"Possible route mismatch: inhalation form '{parsed.dosage_form}' with "
                        f"{'oral' if oral_sig else 'topical'} directions")
    elif ORAL_FORM_RE.search(form):
        if topical_sig:
            return ReasonablenessCheck(
                check_name="route_form", passed=False, severity="critical", value=parsed.dosage_form,
                message=f"Route mismatch: oral form '{parsed.dosage_form}' with topical directions")
    elif TOPICAL_FORM_RE.search(form):
        if oral_sig:
            return ReasonablenessCheck(
                check_name="route_form", passed=False, severity="critical", value=parsed.dosage_form,
                message=f"Route mismatch: topical form '{parsed.dosage_form}' with oral directions")

    return ReasonablenessCheck(check_name="route_form", passed=True, message="Route and dosage form are compatible")


def perform_reasonableness_checks(
    parsed: ParsedPrescription, policy: ReasonablenessPolicy = DEFAULT_POLICY
) -> list[ReasonablenessCheck]:
    return [
        check_days_supply(parsed, policy),
        check_quantity(parsed, policy),
        check_strength(parsed, policy),
        check_route_form(parsed),
    ]


# --- Gate ---

def validate_prescription(
    parsed: ParsedPrescription, policy: ReasonablenessPolicy | None = None
) -> ValidationOutcome:
    """Run all three layers and decide: auto-approve, approve with warning, or manual review."""
    policy = policy or DEFAULT_POLICY
    confidence = validate_confidence_score(parsed.confidence)
    errors, warnings = validate_structure(parsed)
    checks = perform_reasonableness_checks(parsed, policy)

    critical = [c for c in checks if c.severity == "critical"]
    check_warnings = [c for c in checks if c.severity == "warning"]

    requires_manual_review = confidence.requires_manual_review or bool(critical)
    should_auto_approve = confidence.should_auto_approve and not critical and not errors

    if requires_manual_review or errors:
        decision = "manual_review"
    elif should_auto_approve and not warnings and not check_warnings:
        decision = "auto_approve"
    else:
        decision = "approve_with_warning"

    reasons = [confidence.reasoning]
    if critical:
        reasons.append("Critical issues found: " + ", ".join(c.check_name for c in critical))
    if errors:
        reasons.append("Structural errors: " + ", ".join(e.field for e in errors))
    if check_warnings:
        reasons.append("Warnings: " + ", ".join(c.check_name for c in check_warnings))

    return ValidationOutcome(
        confidence_score=parsed.confidence,
        confidence_level=confidence.confidence_level,
        requires_manual_review=requires_manual_review,
        should_auto_approve=should_auto_approve,
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        reasonableness_checks=checks,
        reasoning="; ".join(reasons),
        decision=decision,
    )


def review_priority(outcome: ValidationOutcome) -> Priority:
    """high: critical check or low confidence; low: high/good with no warnings; else medium."""
    if outcome.confidence_level == "low" or any(c.severity == "critical" for c in outcome.reasonableness_checks):
        return "high"
    has_warnings = bool(outcome.warnings) or any(c.severity == "warning" for c in outcome.reasonableness_checks)
    if outcome.confidence_level in ("high", "good") and not has_warnings:
        return "low"
    return "medium"


def validate_batch(
    prescriptions: list[ParsedPrescription], policy: ReasonablenessPolicy | None = None
) -> tuple[list[ValidationOutcome], dict[str, int]]:
    outcomes = [validate_prescription(p, policy) for p in prescriptions]
    summary = {
        "total": len(outcomes),
        "valid": sum(1 for o in outcomes if o.is_valid),
        "invalid": sum(1 for o in outcomes if not o.is_valid),
        "with_warnings": sum(1 for o in outcomes if o.warnings),
        "manual_review": sum(1 for o in outcomes if o.decision == "manual_review"),
    }
    return outcomes, summary


def format_validation_outcome(outcome: ValidationOutcome) -> str:
    """Plain-text report for logs and the CLI."""
    lines = ["Validation passed" if outcome.is_valid else "Validation failed"]
    lines.append(f"Decision: {outcome.decision} (confidence {outcome.confidence_level}, "
                 f"{outcome.confidence_score * 100:.1f}%)")
    if outcome.errors:
        lines.append("Errors:")
        lines.extend(f"  - {e.field}: {e.message}" for e in outcome.errors)
    if outcome.warnings:
        lines.append("Warnings:")
        lines.extend(f"  - {w.field}: {w.message}" for w in outcome.warnings)
    flagged = [c for c in outcome.reasonableness_checks if c.severity != "info"]
    if flagged:
        lines.append("Reasonableness:")
        lines.extend(f"  - [{c.severity}] {c.check_name}: {c.message}" for c in flagged)
    lines.append(f"Reasoning: {outcome.reasoning}")
    return "\n".join(lines)
