"""Assemble a normalized :class:`PatientContext` for one diagnostic request."""

from __future__ import annotations

from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from .domain import CurrentMedication, DiagnosticRequest, LabResultSummary, PatientContext
from .errors import ErrorCode, PharmDxError
from .store import DataStore
from .time_utils import calculate_age, ensure_utc


logger = structlog.get_logger(__name__)

_ABNORMAL_INTERPRETATIONS = {"low", "high", "abnormal", "critical"}


def _dedupe(values: Iterable[str]) -> List[str]:
    """Case-insensitive de-duplication keeping the first spelling seen."""

    seen = set()
    result: List[str] = []
    for value in values:
        text = (value or "").strip()
        key = text.lower()
        if not text or key in seen:
            continue
        seen.add(key)
        result.append(text)
    return result


def _allergen_names(raw: Iterable[Any]) -> List[str]:
    names = []
    for item in raw or []:
        if isinstance(item, dict):
            item = item.get("allergen") or item.get("name")
        if item:
            names.append(str(item))
    return names


def _active_conditions(raw: Iterable[Any]) -> List[str]:
    conditions = []
    for item in raw or []:
        if isinstance(item, dict):
            status = str(item.get("status") or "active").lower()
            name = item.get("condition") or item.get("name")
            if name and status == "active":
                conditions.append(str(name))
        elif item:
            conditions.append(str(item))
    return conditions


def _reference_range(row: Dict[str, Any]) -> str:
    if row.get("reference_text"):
        return str(row["reference_text"])
    low, high = row.get("reference_low"), row.get("reference_high")
    if low is not None and high is not None:
        return f"{low:g}-{high:g}"
    if low is not None:
        return f">= {low:g}"
    if high is not None:
        return f"<= {high:g}"
    return ""


def _lab_summary(row: Dict[str, Any]) -> LabResultSummary:
    interpretation = (row.get("interpretation") or "").lower() or None
    numeric = row.get("numeric_value")
    low, high = row.get("reference_low"), row.get("reference_high")
    out_of_range = numeric is not None and (
        (low is not None and numeric < low) or (high is not None and numeric > high)
    )
    critical = bool(row.get("critical_value")) or interpretation == "critical"
    performed_at = row.get("performed_at")
    return LabResultSummary(
        id=row["id"],
        test_name=row.get("test_name") or row.get("test_code") or "",
        test_code=row.get("test_code"),
        value=str(row.get("value") if row.get("value") is not None else numeric),
        unit=row.get("unit") or "",
        reference_range=_reference_range(row),
        interpretation=interpretation,
        abnormal=critical or out_of_range or interpretation in _ABNORMAL_INTERPRETATIONS,
        critical=critical,
        performed_at=ensure_utc(performed_at) if performed_at is not None else None,
    )


class PatientDataAggregator:
    """Reads patient, medication and lab data for one request from the store."""

    def __init__(self, store: DataStore, *, today: Optional[Callable[[], date]] = None) -> None:
        self._store = store
        self._today = today

    def aggregate(self, request: DiagnosticRequest) -> PatientContext:
        tenant_id, patient_id = request.tenant_id, request.patient_id
        patient = self._store.get_patient(tenant_id, patient_id)
        if patient is None:
            raise PharmDxError(
                ErrorCode.PATIENT_NOT_FOUND,
                "Patient not found",
                details={"patient_id": patient_id},
            )

        snapshot = request.input_snapshot
        vitals = snapshot.vitals.model_dump(exclude_none=True) if snapshot.vitals else {}
        today = self._today() if self._today else None

        medications: List[CurrentMedication] = []
        seen = set()

        def _add(name: Optional[str], dosage: Optional[str], frequency: Optional[str], source: str) -> None:
            text = (name or "").strip()
            if not text or text.lower() in seen:
                return
            seen.add(text.lower())
            medications.append(
                CurrentMedication(name=text, dosage=dosage or "", frequency=frequency or "", source=source)
            )

        for row in self._store.list_active_medications(tenant_id, patient_id):
            dosage = " ".join(part for part in (row.get("strength"), row.get("dosage")) if part)
            _add(row.get("drug_name"), dosage, row.get("frequency"), "medications")
        for row in self._store.list_current_medication_records(tenant_id, patient_id):
            _add(row.get("medication_name"), row.get("dose"), row.get("frequency"), "medication_records")
        for med in snapshot.current_medications:
            _add(med.name, med.dosage, med.frequency, "snapshot")

        lab_ids = list(snapshot.lab_result_ids)
        labs = self._store.get_lab_results(tenant_id, patient_id, lab_ids)
        found = {row["id"] for row in labs}
        for missing in (lab_id for lab_id in lab_ids if lab_id not in found):
            logger.warning(
                "lab_result_not_found",
                request_id=request.id,
                lab_result_id=missing,
            )

        context = PatientContext(
            patient_id=patient_id,
            tenant_id=tenant_id,
            age=calculate_age(patient.get("date_of_birth"), today),
            sex=patient.get("gender"),
            weight_kg=vitals.get("weight") or patient.get("weight_kg"),
            allergies=_dedupe([*_allergen_names(patient.get("allergies")), *snapshot.allergies]),
            conditions=_dedupe(
                [*_active_conditions(patient.get("chronic_conditions")), *snapshot.medical_history]
            ),
            current_medications=medications,
            lab_results=[_lab_summary(row) for row in labs],
            symptoms=snapshot.symptoms.model_dump(),
            vitals=vitals or None,
            social_history=(
                snapshot.social_history.model_dump(exclude_none=True)
                if snapshot.social_history
                else None
            ),
            clinical_question=snapshot.clinical_question,
            indication=snapshot.indication,
        )
        logger.debug(
            "patient_context_aggregated",
            request_id=request.id,
            medications=len(context.current_medications),
            allergies=len(context.allergies),
            lab_results=len(context.lab_results),
        )
        return context


__all__ = ["PatientDataAggregator"]
