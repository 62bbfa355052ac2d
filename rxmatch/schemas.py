"""
Data shapes for the prescription → package workflow.

- ParsedPrescription: what the interpretation oracle extracts from free text.
- StandardizedIdentifier / CandidatePackage: what the registries resolve it to.
- ValidationOutcome: what the confidence gate decides (auto-approve or review).
- PackageSelection: which packages to dispense.
"""
from datetime import date
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

ConfidenceLevel = Literal["high", "good", "medium", "low"]
Severity = Literal["info", "warning", "critical"]
Priority = Literal["low", "medium", "high"]
GateDecision = Literal["auto_approve", "approve_with_warning", "manual_review"]
CostEfficiency = Literal["optimal", "acceptable", "wasteful"]
AuditStatus = Literal["pending", "approved", "rejected"]


# --- Interpretation: free text → parse ---

class Normalizations(BaseModel):
    """Spelling/normalization metadata reported by the oracle."""

    model_config = ConfigDict(extra="forbid")

    original_drug_name: Optional[str] = None
    spelling_corrections: List[str] = Field(default_factory=list)


class InterpretationPayload(BaseModel):
    """Exact JSON contract of the oracle reply. Anything else is an InterpretationError."""

    model_config = ConfigDict(extra="forbid")

    refused: bool = False
    refusal_reason: Optional[str] = None
    drug_name: Optional[str] = None
    strength: Optional[str] = None
    form: Optional[str] = None
    quantity: Optional[float] = Field(default=None, gt=0)
    quantity_unit: Optional[str] = None
    sig: Optional[str] = None
    days_supply: Optional[int] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    normalizations: Normalizations = Field(default_factory=Normalizations)
    warnings: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _complete_unless_refused(self) -> "InterpretationPayload":
        if self.refused:
            return self
        missing = [
            name for name in ("drug_name", "strength", "form", "quantity", "confidence")
            if getattr(self, name) in (None, "")
        ]
        if missing:
            raise ValueError(f"incomplete parse, missing: {', '.join(missing)}")
        return self


class ParsedPrescription(BaseModel):
    """The interpreted prescription. Created once per run, never mutated."""

    model_config = ConfigDict(frozen=True)

    drug_name: str
    original_drug_name: Optional[str] = None
    strength: str
    dosage_form: str
    sig: Optional[str] = None
    quantity: float = Field(gt=0)
    quantity_unit: Optional[str] = None
    days_supply: Optional[int] = None
    confidence: float = Field(ge=0.0, le=1.0)
    corrections: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class InterpretationMetadata(BaseModel):
    processing_time_ms: float = 0.0
    cached: bool = False
    model: Optional[str] = None


# --- Registries: standardized id and candidate packages ---

class StandardizedIdentifier(BaseModel):
    """Canonical drug id (RxCUI) with its term type."""

    model_config = ConfigDict(frozen=True)

    rxcui: str
    name: str
    tty: Optional[str] = None  # SCD, SBD, GPCK, BPCK are directly prescribable


class CandidatePackage(BaseModel):
    """One dispensable package from the catalog."""

    model_config = ConfigDict(frozen=True)

    ndc: str
    product_ndc: str
    generic_name: str = ""
    labeler_name: str = ""
    brand_name: Optional[str] = None
    dosage_form: str = ""
    route: List[str] = Field(default_factory=list)
    strength: str = ""
    package_description: str = ""
    package_quantity: float = 1
    package_unit: str = "UNIT"
    is_active: bool = True
    expiration_date: Optional[date] = None


# --- Validation & confidence gate ---

class StructuralIssue(BaseModel):
    """One structural problem (error) or oddity (warning) in the parse."""

    field: str
    message: str
    code: Optional[str] = None


class ReasonablenessCheck(BaseModel):
    """Result of one medical sanity rule."""

    check_name: str  # days_supply, quantity, strength, route_form
    passed: bool
    severity: Severity = "info"
    message: str
    value: Optional[Any] = None
    threshold: Optional[float] = None


class ConfidenceAssessment(BaseModel):
    confidence_score: float
    confidence_level: ConfidenceLevel
    requires_manual_review: bool
    should_auto_approve: bool
    reasoning: str


class ValidationOutcome(BaseModel):
    """What the gate decided for one parse. Set by Python rules, not the LLM."""

    model_config = ConfigDict(frozen=True)

    confidence_score: float
    confidence_level: ConfidenceLevel
    requires_manual_review: bool
    should_auto_approve: bool
    is_valid: bool
    errors: List[StructuralIssue] = Field(default_factory=list)
    warnings: List[StructuralIssue] = Field(default_factory=list)
    reasonableness_checks: List[ReasonablenessCheck] = Field(default_factory=list)
    reasoning: str = ""
    decision: GateDecision = "manual_review"


class ReviewRequest(BaseModel):
    """What gets submitted to the external review queue."""

    calculation_id: str
    priority: Priority
    notes: str
    status: Literal["pending"] = "pending"


# --- Package selection ---

class SelectionOptions(BaseModel):
    max_packages: int = Field(default=3, ge=1)  # distinct package types in one dispense
    prefer_fewer_packages: bool = True
    allow_overfill: bool = True
    max_overfill_percentage: float = 50.0
    max_per_package: int = Field(default=10, ge=1)
    max_package_sizes: int = Field(default=15, ge=1)
    preference_margin: float = 5.0


class SelectedPackage(BaseModel):
    package: CandidatePackage
    quantity: int  # how many of this package
    units: float  # package_quantity * quantity


class PackageSelection(BaseModel):
    """The chosen fulfillment plan."""

    selected_packages: List[SelectedPackage]
    total_units: float
    overfill: float
    overfill_percentage: float
    efficiency: float
    score: float
    cost_efficiency: CostEfficiency
    reasoning: str = ""
    feasible: bool = True


class PackageRecommendation(BaseModel):
    """UI-facing row for one selected package."""

    ndc: str
    package_description: str
    quantity_needed: float
    packages_required: int
    total_units: float
    overage: float
    cost_efficiency: CostEfficiency
    labeler_name: str
    brand_name: Optional[str] = None


# --- Audit ---

class AuditContext(BaseModel):
    run_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    processing_time_ms: Optional[float] = None


class AuditResult(BaseModel):
    success: bool
    record_id: Optional[str] = None
    error: Optional[str] = None


# --- Pipeline result ---

class PipelineResult(BaseModel):
    """Everything one run produced. Status tells the caller what to show."""

    run_id: str
    status: Literal["approved", "pending_review", "no_packages", "cannot_fulfill"]
    message: str = ""
    parsed: ParsedPrescription
    identifier: Optional[StandardizedIdentifier] = None
    packages: List[CandidatePackage] = Field(default_factory=list)
    validation: ValidationOutcome
    selection: Optional[PackageSelection] = None
    recommendations: List[PackageRecommendation] = Field(default_factory=list)
    review_request: Optional[ReviewRequest] = None
    review_id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
