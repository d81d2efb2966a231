"""Pydantic models for caller input and for the structured AI analysis payload."""

from __future__ import annotations

from typing import Annotated, Any, List, Literal, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    StringConstraints,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .config import STANDARD_DISCLAIMER

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

DEFAULT_PROBABILITY_SCALE = 100.0
DEFAULT_CONFIDENCE_SCORE = 75.0


# ---------------------------------------------------------------------------
# Caller input
# ---------------------------------------------------------------------------


class Symptoms(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subjective: List[NonEmptyStr] = Field(min_length=1)
    objective: List[NonEmptyStr] = Field(default_factory=list)
    duration: NonEmptyStr
    severity: Literal["mild", "moderate", "severe"]
    onset: Literal["acute", "chronic", "subacute"]


class VitalSigns(BaseModel):
    model_config = ConfigDict(extra="forbid")

    blood_pressure: Optional[str] = Field(default=None, pattern=r"^\d{2,3}/\d{2,3}$")
    heart_rate: Optional[int] = Field(default=None, ge=30, le=250)
    temperature: Optional[float] = Field(default=None, ge=30, le=45)
    respiratory_rate: Optional[int] = Field(default=None, ge=5, le=60)
    oxygen_saturation: Optional[float] = Field(default=None, ge=50, le=100)
    weight: Optional[float] = Field(default=None, gt=0, le=500)
    height: Optional[float] = Field(default=None, gt=0, le=300)


class CurrentMedicationInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: NonEmptyStr
    dosage: str = ""
    frequency: str = ""


class SocialHistory(BaseModel):
    model_config = ConfigDict(extra="forbid")

    smoking: Optional[Literal["never", "former", "current"]] = None
    alcohol: Optional[Literal["never", "occasional", "regular", "heavy"]] = None
    exercise: Optional[Literal["sedentary", "light", "moderate", "active"]] = None


class InputSnapshot(BaseModel):
    """Clinical input captured when a diagnostic request is created."""

    model_config = ConfigDict(extra="forbid")

    symptoms: Symptoms
    vitals: Optional[VitalSigns] = None
    current_medications: List[CurrentMedicationInput] = Field(default_factory=list)
    allergies: List[NonEmptyStr] = Field(default_factory=list)
    medical_history: List[NonEmptyStr] = Field(default_factory=list)
    lab_result_ids: List[NonEmptyStr] = Field(default_factory=list)
    social_history: Optional[SocialHistory] = None
    clinical_question: Optional[str] = Field(default=None, max_length=1000)
    indication: Optional[str] = Field(default=None, max_length=1000)


AdjustmentType = Literal[
    "dose_increase",
    "dose_decrease",
    "frequency_change",
    "discontinuation",
    "new_medication",
    "formulation_change",
]


class MedicationAdjustment(BaseModel):
    """A single pharmacist-approved change to a patient's medication list."""

    model_config = ConfigDict(extra="forbid")

    medication_name: NonEmptyStr
    adjustment_type: AdjustmentType
    medication_id: Optional[str] = None
    new_dose: Optional[str] = None
    new_frequency: Optional[str] = None
    new_regimen: Optional[str] = None
    formulation: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _require_change_detail(self) -> "MedicationAdjustment":
        kind = self.adjustment_type
        if kind in {"dose_increase", "dose_decrease", "new_medication"}:
            if not (self.new_dose or self.new_regimen):
                raise ValueError(f"{kind} requires new_dose or new_regimen")
        elif kind == "frequency_change":
            if not (self.new_frequency or self.new_regimen):
                raise ValueError("frequency_change requires new_frequency or new_regimen")
        elif kind == "formulation_change" and not self.formulation:
            raise ValueError("formulation_change requires formulation")
        return self

    def regimen_parts(self) -> Tuple[Optional[str], Optional[str]]:
        """Split ``new_regimen`` ("<drug> <dose> <frequency...>") into dose and frequency."""

        parts = (self.new_regimen or "").split()
        dose = parts[1] if len(parts) > 1 else None
        frequency = " ".join(parts[2:]) or None
        return dose, frequency

    @property
    def effective_dose(self) -> Optional[str]:
        return self.new_dose or self.regimen_parts()[0]

    @property
    def effective_frequency(self) -> Optional[str]:
        return self.new_frequency or self.regimen_parts()[1]


# ---------------------------------------------------------------------------
# AI analysis payload
# ---------------------------------------------------------------------------


def _scale_from(info: ValidationInfo) -> float:
    context = info.context or {}
    return float(context.get("probability_scale", DEFAULT_PROBABILITY_SCALE))


class _PayloadModel(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore", populate_by_name=True)


class DifferentialDiagnosis(_PayloadModel):
    condition: NonEmptyStr
    probability: float
    reasoning: NonEmptyStr
    severity: Literal["low", "medium", "high"]

    @field_validator("probability")
    @classmethod
    def _within_scale(cls, value: float, info: ValidationInfo) -> float:
        scale = _scale_from(info)
        if not 0 <= value <= scale:
            raise ValueError(f"probability must be between 0 and {scale:g}")
        return value


class RecommendedTest(_PayloadModel):
    test_name: NonEmptyStr = Field(alias="testName")
    priority: Literal["urgent", "routine", "optional"]
    reasoning: NonEmptyStr


class TherapeuticOption(_PayloadModel):
    medication: NonEmptyStr
    dosage: NonEmptyStr
    frequency: NonEmptyStr
    duration: str = ""
    reasoning: NonEmptyStr
    safety_notes: List[str] = Field(default_factory=list, alias="safetyNotes")


class RedFlagPayload(_PayloadModel):
    flag: NonEmptyStr
    severity: Literal["low", "medium", "high", "critical"]
    action: NonEmptyStr


class TherapyRecommendationPayload(_PayloadModel):
    medication_name: NonEmptyStr = Field(alias="medicationName")
    action: Literal["start", "stop", "adjust_dose", "monitor", "continue"]
    rationale: NonEmptyStr
    current_dose: Optional[str] = Field(default=None, alias="currentDose")
    recommended_dose: Optional[str] = Field(default=None, alias="recommendedDose")
    priority: Optional[Literal["critical", "high", "medium", "low"]] = None


class ReferralPayload(_PayloadModel):
    recommended: bool
    urgency: Optional[Literal["immediate", "within_24h", "routine"]] = None
    specialty: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _details_when_recommended(self) -> "ReferralPayload":
        if self.recommended:
            missing = [
                name
                for name in ("urgency", "specialty", "reason")
                if not (getattr(self, name) or "").strip()
            ]
            if missing:
                raise ValueError(
                    "required when a referral is recommended: " + ", ".join(missing)
                )
        return self


class AnalysisPayload(_PayloadModel):
    """Validated model output; probabilities stay on the declared scale."""

    differential_diagnoses: List[DifferentialDiagnosis] = Field(
        alias="differentialDiagnoses", min_length=1
    )
    recommended_tests: List[RecommendedTest] = Field(
        default_factory=list, alias="recommendedTests"
    )
    therapeutic_options: List[TherapeuticOption] = Field(
        default_factory=list, alias="therapeuticOptions"
    )
    red_flags: List[RedFlagPayload] = Field(default_factory=list, alias="redFlags")
    therapy_recommendations: List[TherapyRecommendationPayload] = Field(
        default_factory=list, alias="therapyRecommendations"
    )
    referral_recommendation: Optional[ReferralPayload] = Field(
        default=None, alias="referralRecommendation"
    )
    interpretation: Optional[str] = None
    disclaimer: str = Field(default=STANDARD_DISCLAIMER, validate_default=True)
    confidence_score: float = Field(
        default=DEFAULT_CONFIDENCE_SCORE, alias="confidenceScore", validate_default=True
    )

    _probability_scale: float = PrivateAttr(default=DEFAULT_PROBABILITY_SCALE)

    @field_validator(
        "recommended_tests",
        "therapeutic_options",
        "red_flags",
        "therapy_recommendations",
        mode="before",
    )
    @classmethod
    def _null_list_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("disclaimer", mode="before")
    @classmethod
    def _default_disclaimer(cls, value: Any) -> Any:
        if not isinstance(value, str) or not value.strip():
            return STANDARD_DISCLAIMER
        return value

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _default_confidence(cls, value: Any, info: ValidationInfo) -> float:
        context = info.context or {}
        default = float(context.get("default_confidence", DEFAULT_CONFIDENCE_SCORE))
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return default
        if not 0 <= value <= _scale_from(info):
            return default
        return float(value)

    @model_validator(mode="after")
    def _remember_scale(self, info: ValidationInfo) -> "AnalysisPayload":
        self._probability_scale = _scale_from(info)
        return self

    @property
    def probability_scale(self) -> float:
        return self._probability_scale

    def to_fraction(self, value: float) -> float:
        """Convert a value on the declared scale to the canonical 0-1 scale."""

        return value / self._probability_scale


__all__ = [
    "AdjustmentType",
    "AnalysisPayload",
    "CurrentMedicationInput",
    "DifferentialDiagnosis",
    "InputSnapshot",
    "MedicationAdjustment",
    "RecommendedTest",
    "RedFlagPayload",
    "ReferralPayload",
    "SocialHistory",
    "Symptoms",
    "TherapeuticOption",
    "TherapyRecommendationPayload",
    "VitalSigns",
]
