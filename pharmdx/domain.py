"""Domain records for diagnostic requests, results, safety findings and reviews.

Records that are persisted (requests, results and everything embedded in a
result) are pydantic models so they round-trip through JSON columns.  Values
that only live for the duration of one call are plain dataclasses.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .schemas import InputSnapshot
from .time_utils import utc_now


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (RequestStatus.PENDING, RequestStatus.PROCESSING)
CANCELLABLE_STATUSES = (RequestStatus.PENDING, RequestStatus.PROCESSING, RequestStatus.FAILED)


class AnalysisKind(str, enum.Enum):
    DIAGNOSTIC = "diagnostic"
    LAB_INTERPRETATION = "lab_interpretation"


class RequestPriority(str, enum.Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"


class FindingSeverity(str, enum.Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MODERATE = "moderate"
    MINOR = "minor"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    FindingSeverity.CRITICAL: 4,
    FindingSeverity.MAJOR: 3,
    FindingSeverity.MODERATE: 2,
    FindingSeverity.MINOR: 1,
}

BLOCKING_SEVERITIES = (FindingSeverity.CRITICAL, FindingSeverity.MAJOR)


class CheckType(str, enum.Enum):
    ALLERGY = "allergy"
    DRUG_INTERACTION = "drug_interaction"
    DUPLICATE_THERAPY = "duplicate_therapy"


class ReviewDecision(str, enum.Enum):
    APPROVED = "approved"
    MODIFIED = "modified"
    REJECTED = "rejected"


class ReviewAction(str, enum.Enum):
    APPROVE = "approve"
    MODIFY = "modify"
    REJECT = "reject"
    ESCALATE = "escalate"


class AdjustmentStatus(str, enum.Enum):
    APPLIED = "applied"
    BLOCKED = "blocked"
    FAILED = "failed"


class _Record(BaseModel):
    model_config = ConfigDict(protected_namespaces=())


class DiagnosticRequest(_Record):
    id: str
    tenant_id: str
    patient_id: str
    requester_id: str
    input_snapshot: InputSnapshot
    consent_obtained: bool
    consent_timestamp: Optional[datetime] = None
    status: RequestStatus = RequestStatus.PENDING
    kind: AnalysisKind = AnalysisKind.DIAGNOSTIC
    priority: RequestPriority = RequestPriority.ROUTINE
    location_id: Optional[str] = None
    retry_count: int = 0
    prompt_version: str = "v1.0"
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class Diagnosis(_Record):
    condition: str
    probability: float = Field(ge=0, le=1)
    reasoning: str
    severity: str
    confidence: str
    evidence_level: str


class SuggestedTest(_Record):
    test_name: str
    priority: str
    reasoning: str


class MedicationSuggestion(_Record):
    drug_name: str
    dosage: str
    frequency: str
    duration: str = ""
    reasoning: str
    safety_notes: List[str] = Field(default_factory=list)


class TherapyRecommendation(_Record):
    medication_name: str
    action: str
    rationale: str
    current_dose: Optional[str] = None
    recommended_dose: Optional[str] = None
    priority: Optional[str] = None


class RedFlag(_Record):
    flag: str
    severity: str
    action: str


class ReferralRecommendation(_Record):
    recommended: bool
    urgency: Optional[str] = None
    specialty: Optional[str] = None
    reason: Optional[str] = None


class AIMetadata(_Record):
    model_id: str
    model_version: str
    confidence_score: float = Field(ge=0, le=1)
    processing_time_ms: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    provider_request_id: Optional[str] = None
    attempts: int = 1
    prompt_version: str = "v1.0"


class SafetyFinding(_Record):
    check_type: CheckType
    severity: FindingSeverity
    description: str
    affected_medications: List[str]
    recommendation: str
    source: str
    timestamp: datetime = Field(default_factory=utc_now)

    def affects(self, medication: str) -> bool:
        needle = medication.strip().lower()
        return any(name.strip().lower() == needle for name in self.affected_medications)


class IncompleteCheck(_Record):
    medication: str
    counterpart: str
    error: str

    def involves(self, medication: str) -> bool:
        needle = medication.strip().lower()
        return needle in (self.medication.strip().lower(), self.counterpart.strip().lower())


class RiskAssessment(_Record):
    overall_risk: str
    risk_factors: List[str] = Field(default_factory=list)
    mitigating_factors: List[str] = Field(default_factory=list)


class PharmacistReview(_Record):
    decision: ReviewDecision
    reviewer_id: str
    reviewed_at: datetime = Field(default_factory=utc_now)
    notes: Optional[str] = None
    modifications: Optional[str] = None
    rejection_reason: Optional[str] = None
    signed_off: bool = False


class Escalation(_Record):
    reason: str
    escalated_by: str
    physician_id: Optional[str] = None
    escalated_at: datetime = Field(default_factory=utc_now)


class AdjustmentOutcome(_Record):
    medication_name: str
    adjustment_type: str
    status: AdjustmentStatus
    detail: Optional[str] = None
    medication_id: Optional[str] = None
    applied_by: Optional[str] = None
    applied_at: datetime = Field(default_factory=utc_now)


class DiagnosticResult(_Record):
    id: str
    request_id: str
    tenant_id: str
    patient_id: str
    diagnoses: List[Diagnosis] = Field(min_length=1)
    suggested_tests: List[SuggestedTest] = Field(default_factory=list)
    medication_suggestions: List[MedicationSuggestion] = Field(default_factory=list)
    therapy_recommendations: List[TherapyRecommendation] = Field(default_factory=list)
    red_flags: List[RedFlag] = Field(default_factory=list)
    referral_recommendation: Optional[ReferralRecommendation] = None
    ai_metadata: AIMetadata
    safety_findings: List[SafetyFinding] = Field(default_factory=list)
    critical_safety_issues: bool = False
    incomplete_safety_checks: List[IncompleteCheck] = Field(default_factory=list)
    risk_assessment: Optional[RiskAssessment] = None
    clinical_impression: Optional[str] = None
    follow_up_required: bool = False
    follow_up_date: Optional[datetime] = None
    raw_response: str
    disclaimer: str
    pharmacist_review: Optional[PharmacistReview] = None
    escalation: Optional[Escalation] = None
    medication_adjustments: List[AdjustmentOutcome] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def auto_approvable(self) -> bool:
        """Critical or major findings, or checks that never completed, need a human decision."""

        if self.critical_safety_issues or self.incomplete_safety_checks:
            return False
        return not any(f.severity in BLOCKING_SEVERITIES for f in self.safety_findings)

    @property
    def has_final_review(self) -> bool:
        return self.pharmacist_review is not None

    @property
    def is_escalated(self) -> bool:
        return self.escalation is not None

    def findings_for(self, medication: str) -> List[SafetyFinding]:
        return [finding for finding in self.safety_findings if finding.affects(medication)]

    def incomplete_checks_for(self, medication: str) -> List[IncompleteCheck]:
        return [check for check in self.incomplete_safety_checks if check.involves(medication)]


# ---------------------------------------------------------------------------
# Transient values
# ---------------------------------------------------------------------------


@dataclass
class CurrentMedication:
    name: str
    dosage: str = ""
    frequency: str = ""
    source: str = "snapshot"


@dataclass
class LabResultSummary:
    id: str
    test_name: str
    value: str
    unit: str = ""
    reference_range: str = ""
    interpretation: Optional[str] = None
    test_code: Optional[str] = None
    abnormal: bool = False
    critical: bool = False
    performed_at: Optional[datetime] = None


@dataclass
class PatientContext:
    """Everything the prompt and the safety checks know about a patient."""

    patient_id: str
    tenant_id: str
    age: Optional[int] = None
    sex: Optional[str] = None
    weight_kg: Optional[float] = None
    allergies: List[str] = field(default_factory=list)
    conditions: List[str] = field(default_factory=list)
    current_medications: List[CurrentMedication] = field(default_factory=list)
    lab_results: List[LabResultSummary] = field(default_factory=list)
    symptoms: Optional[Dict[str, Any]] = None
    vitals: Optional[Dict[str, Any]] = None
    social_history: Optional[Dict[str, Any]] = None
    clinical_question: Optional[str] = None
    indication: Optional[str] = None

    @property
    def medication_names(self) -> List[str]:
        return [med.name for med in self.current_medications]


@dataclass
class SafetyReport:
    findings: List[SafetyFinding] = field(default_factory=list)
    incomplete: List[IncompleteCheck] = field(default_factory=list)

    @property
    def critical_issues(self) -> bool:
        return any(f.severity in BLOCKING_SEVERITIES for f in self.findings)


@dataclass
class AnalysisOutcome:
    request: DiagnosticRequest
    result: Optional[DiagnosticResult] = None

    @property
    def succeeded(self) -> bool:
        return self.request.status == RequestStatus.COMPLETED and self.result is not None


@dataclass
class AdjustmentReport:
    applied: List[AdjustmentOutcome] = field(default_factory=list)
    unrecorded: List[AdjustmentOutcome] = field(default_factory=list)

    def _with_status(self, status: AdjustmentStatus) -> List[AdjustmentOutcome]:
        return [outcome for outcome in self.applied if outcome.status == status]

    @property
    def succeeded(self) -> List[AdjustmentOutcome]:
        return self._with_status(AdjustmentStatus.APPLIED)

    @property
    def blocked(self) -> List[AdjustmentOutcome]:
        return self._with_status(AdjustmentStatus.BLOCKED)

    @property
    def failed(self) -> List[AdjustmentOutcome]:
        return self._with_status(AdjustmentStatus.FAILED)


@dataclass
class PatientHistoryPage:
    items: List[DiagnosticRequest]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass
class AuditEvent:
    event_type: str
    tenant_id: Optional[str]
    actor_id: Optional[str] = None
    entity_id: Optional[str] = None
    patient_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
