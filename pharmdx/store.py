"""Persistence for patients, diagnostic requests and results.

Every read and write is scoped by ``tenant_id``.  Status changes are
compare-and-set updates (``UPDATE ... WHERE status IN (...)``) whose row
count tells the caller whether it won the transition.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import structlog
from sqlalchemy import Engine, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .db import session_scope
from .db.models import (
    adjustment_outcomes,
    diagnostic_requests,
    diagnostic_results,
    lab_results,
    medication_records,
    medications,
    patients,
)
from .domain import (
    ACTIVE_STATUSES,
    AdjustmentOutcome,
    DiagnosticRequest,
    DiagnosticResult,
    Escalation,
    PharmacistReview,
    RequestStatus,
)
from .errors import ErrorCode, PharmDxError
from .schemas import MedicationAdjustment
from .time_utils import ensure_utc, utc_now


logger = structlog.get_logger(__name__)

_ACTIVE = [status.value for status in ACTIVE_STATUSES]

_REQUEST_DATETIME_FIELDS = (
    "consent_timestamp",
    "processing_started_at",
    "processing_completed_at",
    "created_at",
    "updated_at",
)
_RESULT_JSON_FIELDS = (
    "diagnoses",
    "suggested_tests",
    "medication_suggestions",
    "therapy_recommendations",
    "red_flags",
    "referral_recommendation",
    "ai_metadata",
    "safety_findings",
    "incomplete_safety_checks",
    "risk_assessment",
    "pharmacist_review",
    "escalation",
)


class DataStore(Protocol):
    """Storage operations the orchestrator, aggregator and review workflow rely on."""

    def get_patient(self, tenant_id: str, patient_id: str) -> Optional[Dict[str, Any]]: ...

    def list_active_medications(self, tenant_id: str, patient_id: str) -> List[Dict[str, Any]]: ...

    def list_current_medication_records(
        self, tenant_id: str, patient_id: str
    ) -> List[Dict[str, Any]]: ...

    def get_lab_results(
        self, tenant_id: str, patient_id: str, lab_ids: Sequence[str]
    ) -> List[Dict[str, Any]]: ...

    def find_active_request(
        self, tenant_id: str, patient_id: str
    ) -> Optional[DiagnosticRequest]: ...

    def insert_request(self, request: DiagnosticRequest) -> DiagnosticRequest: ...

    def get_request(self, tenant_id: str, request_id: str) -> Optional[DiagnosticRequest]: ...

    def begin_processing(
        self, tenant_id: str, request_id: str, *, max_retries: int, increment_retry: bool = False
    ) -> bool: ...

    def transition_request(
        self,
        tenant_id: str,
        request_id: str,
        from_statuses: Iterable[RequestStatus],
        to_status: RequestStatus,
        **values: Any,
    ) -> bool: ...

    def complete_request(self, request: DiagnosticRequest, result: DiagnosticResult) -> bool: ...

    def get_result(self, tenant_id: str, result_id: str) -> Optional[DiagnosticResult]: ...

    def get_result_for_request(
        self, tenant_id: str, request_id: str
    ) -> Optional[DiagnosticResult]: ...

    def record_review(
        self,
        tenant_id: str,
        result_id: str,
        review: PharmacistReview,
        *,
        follow_up_required: bool,
        follow_up_date: Optional[datetime],
    ) -> bool: ...

    def record_escalation(self, tenant_id: str, result_id: str, escalation: Escalation) -> bool: ...

    def append_adjustment_outcome(
        self, tenant_id: str, result_id: str, outcome: AdjustmentOutcome
    ) -> None: ...

    def apply_medication_adjustment(
        self, tenant_id: str, patient_id: str, adjustment: MedicationAdjustment
    ) -> str: ...

    def list_patient_requests(
        self, tenant_id: str, patient_id: str, *, offset: int, limit: int
    ) -> Tuple[List[DiagnosticRequest], int]: ...

    def list_pending_reviews(self, tenant_id: str) -> List[DiagnosticResult]: ...

    def list_critical_cases(self, tenant_id: str) -> List[DiagnosticResult]: ...

    def list_escalated_cases(self, tenant_id: str) -> List[DiagnosticResult]: ...


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    elif isinstance(value, list):
        value = [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in value]
    return json.dumps(value)


def _load(raw: Optional[str], default: Any = None) -> Any:
    if raw in (None, ""):
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("stored_json_invalid", raw=str(raw)[:80])
        return default


def _status_values(statuses: Iterable[RequestStatus]) -> List[str]:
    return [RequestStatus(status).value for status in statuses]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if isinstance(value, datetime) else value


def _row_to_request(row: Mapping[str, Any]) -> DiagnosticRequest:
    data = dict(row)
    data["input_snapshot"] = _load(data["input_snapshot"], {})
    for name in _REQUEST_DATETIME_FIELDS:
        data[name] = _utc(data.get(name))
    return DiagnosticRequest.model_validate(data)


def _row_to_outcome(row: Mapping[str, Any]) -> AdjustmentOutcome:
    data = {key: value for key, value in row.items() if key not in ("id", "tenant_id", "result_id")}
    data["applied_at"] = _utc(data["applied_at"])
    return AdjustmentOutcome.model_validate(data)


def _row_to_result(
    row: Mapping[str, Any], outcomes: Sequence[AdjustmentOutcome] = ()
) -> DiagnosticResult:
    data = dict(row)
    data["medication_adjustments"] = list(outcomes)
    for name in _RESULT_JSON_FIELDS:
        data[name] = _load(data.get(name), [] if name.endswith("s") else None)
    for name in ("follow_up_date", "created_at", "updated_at"):
        data[name] = _utc(data.get(name))
    return DiagnosticResult.model_validate(data)


def _request_values(request: DiagnosticRequest) -> Dict[str, Any]:
    values = request.model_dump(exclude={"input_snapshot"})
    values["input_snapshot"] = request.input_snapshot.model_dump_json()
    values["status"] = request.status.value
    values["kind"] = request.kind.value
    values["priority"] = request.priority.value
    return values


def _result_values(result: DiagnosticResult) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "id": result.id,
        "tenant_id": result.tenant_id,
        "request_id": result.request_id,
        "patient_id": result.patient_id,
        "critical_safety_issues": result.critical_safety_issues,
        "clinical_impression": result.clinical_impression,
        "follow_up_required": result.follow_up_required,
        "follow_up_date": result.follow_up_date,
        "raw_response": result.raw_response,
        "disclaimer": result.disclaimer,
        "created_at": result.created_at,
        "updated_at": result.updated_at,
    }
    for name in _RESULT_JSON_FIELDS:
        values[name] = _dump(getattr(result, name))
    return values


class SqlDataStore:
    """:class:`DataStore` backed by SQLAlchemy Core tables."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, future=True, expire_on_commit=False)

    # ------------------------------------------------------------------
    # Patient data
    # ------------------------------------------------------------------
    def get_patient(self, tenant_id: str, patient_id: str) -> Optional[Dict[str, Any]]:
        stmt = select(patients).where(
            patients.c.id == patient_id, patients.c.tenant_id == tenant_id
        )
        with session_scope(self._sessions) as session:
            row = session.execute(stmt).mappings().first()
        if row is None:
            return None
        data = dict(row)
        data["allergies"] = _load(data.get("allergies"), [])
        data["chronic_conditions"] = _load(data.get("chronic_conditions"), [])
        return data

    def list_active_medications(self, tenant_id: str, patient_id: str) -> List[Dict[str, Any]]:
        stmt = (
            select(medications)
            .where(
                medications.c.tenant_id == tenant_id,
                medications.c.patient_id == patient_id,
                medications.c.status == "active",
            )
            .order_by(medications.c.drug_name)
        )
        with session_scope(self._sessions) as session:
            return [dict(row) for row in session.execute(stmt).mappings()]

    def list_current_medication_records(
        self, tenant_id: str, patient_id: str
    ) -> List[Dict[str, Any]]:
        stmt = (
            select(medication_records)
            .where(
                medication_records.c.tenant_id == tenant_id,
                medication_records.c.patient_id == patient_id,
                medication_records.c.phase == "current",
                medication_records.c.is_deleted == False,  # noqa: E712
            )
            .order_by(medication_records.c.medication_name)
        )
        with session_scope(self._sessions) as session:
            return [dict(row) for row in session.execute(stmt).mappings()]

    def get_lab_results(
        self, tenant_id: str, patient_id: str, lab_ids: Sequence[str]
    ) -> List[Dict[str, Any]]:
        if not lab_ids:
            return []
        stmt = select(lab_results).where(
            lab_results.c.tenant_id == tenant_id,
            lab_results.c.patient_id == patient_id,
            lab_results.c.id.in_(list(lab_ids)),
        )
        with session_scope(self._sessions) as session:
            rows = {row["id"]: dict(row) for row in session.execute(stmt).mappings()}
        return [rows[lab_id] for lab_id in lab_ids if lab_id in rows]

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def find_active_request(
        self, tenant_id: str, patient_id: str
    ) -> Optional[DiagnosticRequest]:
        stmt = select(diagnostic_requests).where(
            diagnostic_requests.c.tenant_id == tenant_id,
            diagnostic_requests.c.patient_id == patient_id,
            diagnostic_requests.c.status.in_(_ACTIVE),
        )
        with session_scope(self._sessions) as session:
            row = session.execute(stmt).mappings().first()
        return _row_to_request(row) if row is not None else None

    def insert_request(self, request: DiagnosticRequest) -> DiagnosticRequest:
        try:
            with session_scope(self._sessions) as session:
                session.execute(diagnostic_requests.insert().values(**_request_values(request)))
        except IntegrityError as exc:
            raise PharmDxError(
                ErrorCode.DUPLICATE_ACTIVE_REQUEST,
                "An active diagnostic request already exists for this patient",
                details={"patient_id": request.patient_id},
            ) from exc
        return request

    def get_request(self, tenant_id: str, request_id: str) -> Optional[DiagnosticRequest]:
        stmt = select(diagnostic_requests).where(
            diagnostic_requests.c.id == request_id,
            diagnostic_requests.c.tenant_id == tenant_id,
        )
        with session_scope(self._sessions) as session:
            row = session.execute(stmt).mappings().first()
        return _row_to_request(row) if row is not None else None

    def begin_processing(
        self, tenant_id: str, request_id: str, *, max_retries: int, increment_retry: bool = False
    ) -> bool:
        """Move a request into ``processing`` if it is eligible.

        Without ``increment_retry`` a pending request, or a failed one still
        under the retry ceiling, is claimed.  With ``increment_retry`` only a
        failed request under the ceiling is claimed and its retry count goes
        up by one in the same statement.
        """

        table = diagnostic_requests
        retryable = and_(
            table.c.status == RequestStatus.FAILED.value,
            table.c.retry_count < max_retries,
        )
        eligible = retryable if increment_retry else or_(
            table.c.status == RequestStatus.PENDING.value, retryable
        )
        now = utc_now()
        values: Dict[str, Any] = {
            "status": RequestStatus.PROCESSING.value,
            "processing_started_at": now,
            "processing_completed_at": None,
            "error_code": None,
            "error_message": None,
            "updated_at": now,
        }
        if increment_retry:
            values["retry_count"] = table.c.retry_count + 1
        stmt = (
            update(table)
            .where(table.c.id == request_id, table.c.tenant_id == tenant_id, eligible)
            .values(**values)
        )
        with session_scope(self._sessions) as session:
            return session.execute(stmt).rowcount == 1

    def transition_request(
        self,
        tenant_id: str,
        request_id: str,
        from_statuses: Iterable[RequestStatus],
        to_status: RequestStatus,
        **values: Any,
    ) -> bool:
        table = diagnostic_requests
        values.setdefault("updated_at", utc_now())
        stmt = (
            update(table)
            .where(
                table.c.id == request_id,
                table.c.tenant_id == tenant_id,
                table.c.status.in_(_status_values(from_statuses)),
            )
            .values(status=RequestStatus(to_status).value, **values)
        )
        with session_scope(self._sessions) as session:
            return session.execute(stmt).rowcount == 1

    def complete_request(self, request: DiagnosticRequest, result: DiagnosticResult) -> bool:
        """Persist ``result`` and mark its request completed in one transaction."""

        table = diagnostic_requests
        now = utc_now()
        stmt = (
            update(table)
            .where(
                table.c.id == request.id,
                table.c.tenant_id == request.tenant_id,
                table.c.status == RequestStatus.PROCESSING.value,
            )
            .values(
                status=RequestStatus.COMPLETED.value,
                processing_completed_at=now,
                updated_at=now,
            )
        )
        with session_scope(self._sessions) as session:
            if session.execute(stmt).rowcount != 1:
                return False
            session.execute(diagnostic_results.insert().values(**_result_values(result)))
        return True

    def list_patient_requests(
        self, tenant_id: str, patient_id: str, *, offset: int, limit: int
    ) -> Tuple[List[DiagnosticRequest], int]:
        table = diagnostic_requests
        scope = and_(table.c.tenant_id == tenant_id, table.c.patient_id == patient_id)
        stmt = (
            select(table)
            .where(scope)
            .order_by(table.c.created_at.desc(), table.c.id)
            .offset(offset)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(table).where(scope)
        with session_scope(self._sessions) as session:
            rows = session.execute(stmt).mappings().all()
            total = session.execute(count_stmt).scalar_one()
        return [_row_to_request(row) for row in rows], int(total)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def _fetch_results(self, tenant_id: str, *conditions: Any) -> List[DiagnosticResult]:
        """Tenant-scoped results matching ``conditions``, oldest first, with their outcomes."""

        table = diagnostic_results
        stmt = (
            select(table)
            .where(table.c.tenant_id == tenant_id, *conditions)
            .order_by(table.c.created_at, table.c.id)
        )
        with session_scope(self._sessions) as session:
            rows = session.execute(stmt).mappings().all()
            if not rows:
                return []
            outcome_stmt = (
                select(adjustment_outcomes)
                .where(
                    adjustment_outcomes.c.tenant_id == tenant_id,
                    adjustment_outcomes.c.result_id.in_([row["id"] for row in rows]),
                )
                .order_by(adjustment_outcomes.c.id)
            )
            outcomes: Dict[str, List[AdjustmentOutcome]] = {}
            for outcome_row in session.execute(outcome_stmt).mappings():
                outcomes.setdefault(outcome_row["result_id"], []).append(_row_to_outcome(outcome_row))
        return [_row_to_result(row, outcomes.get(row["id"], ())) for row in rows]

    def get_result(self, tenant_id: str, result_id: str) -> Optional[DiagnosticResult]:
        found = self._fetch_results(tenant_id, diagnostic_results.c.id == result_id)
        return found[0] if found else None

    def get_result_for_request(
        self, tenant_id: str, request_id: str
    ) -> Optional[DiagnosticResult]:
        found = self._fetch_results(tenant_id, diagnostic_results.c.request_id == request_id)
        return found[0] if found else None

    def record_review(
        self,
        tenant_id: str,
        result_id: str,
        review: PharmacistReview,
        *,
        follow_up_required: bool,
        follow_up_date: Optional[datetime],
    ) -> bool:
        table = diagnostic_results
        stmt = (
            update(table)
            .where(
                table.c.id == result_id,
                table.c.tenant_id == tenant_id,
                table.c.pharmacist_review.is_(None),
            )
            .values(
                pharmacist_review=_dump(review),
                follow_up_required=follow_up_required,
                follow_up_date=follow_up_date,
                updated_at=utc_now(),
            )
        )
        with session_scope(self._sessions) as session:
            return session.execute(stmt).rowcount == 1

    def record_escalation(self, tenant_id: str, result_id: str, escalation: Escalation) -> bool:
        table = diagnostic_results
        stmt = (
            update(table)
            .where(
                table.c.id == result_id,
                table.c.tenant_id == tenant_id,
                table.c.pharmacist_review.is_(None),
                table.c.escalation.is_(None),
            )
            .values(escalation=_dump(escalation), updated_at=utc_now())
        )
        with session_scope(self._sessions) as session:
            return session.execute(stmt).rowcount == 1

    def append_adjustment_outcome(
        self, tenant_id: str, result_id: str, outcome: AdjustmentOutcome
    ) -> None:
        with session_scope(self._sessions) as session:
            session.execute(
                adjustment_outcomes.insert().values(
                    tenant_id=tenant_id,
                    result_id=result_id,
                    medication_name=outcome.medication_name,
                    adjustment_type=outcome.adjustment_type,
                    status=outcome.status.value,
                    detail=outcome.detail,
                    medication_id=outcome.medication_id,
                    applied_by=outcome.applied_by,
                    applied_at=outcome.applied_at,
                )
            )
            session.execute(
                update(diagnostic_results)
                .where(diagnostic_results.c.id == result_id, diagnostic_results.c.tenant_id == tenant_id)
                .values(updated_at=utc_now())
            )

    def list_pending_reviews(self, tenant_id: str) -> List[DiagnosticResult]:
        return self._fetch_results(tenant_id, diagnostic_results.c.pharmacist_review.is_(None))

    def list_critical_cases(self, tenant_id: str) -> List[DiagnosticResult]:
        """Unreviewed results with a critical/major finding or a critical red flag."""

        table = diagnostic_results
        candidates = self._fetch_results(
            tenant_id,
            table.c.pharmacist_review.is_(None),
            or_(table.c.critical_safety_issues == True, table.c.red_flags != "[]"),  # noqa: E712
        )
        return [
            result
            for result in candidates
            if result.critical_safety_issues
            or any(flag.severity == "critical" for flag in result.red_flags)
        ]

    def list_escalated_cases(self, tenant_id: str) -> List[DiagnosticResult]:
        table = diagnostic_results
        return self._fetch_results(
            tenant_id, table.c.escalation.isnot(None), table.c.pharmacist_review.is_(None)
        )

    # ------------------------------------------------------------------
    # Medication changes
    # ------------------------------------------------------------------
    def apply_medication_adjustment(
        self, tenant_id: str, patient_id: str, adjustment: MedicationAdjustment
    ) -> str:
        """Apply one adjustment in its own transaction and return the medication id."""

        now = utc_now()
        with session_scope(self._sessions) as session:
            if adjustment.adjustment_type == "new_medication":
                medication_id = str(uuid.uuid4())
                session.execute(
                    medications.insert().values(
                        id=medication_id,
                        tenant_id=tenant_id,
                        patient_id=patient_id,
                        drug_name=adjustment.medication_name,
                        dosage=adjustment.effective_dose,
                        frequency=adjustment.effective_frequency,
                        dosage_form=adjustment.formulation,
                        status="active",
                        special_instructions=adjustment.reason,
                        updated_at=now,
                    )
                )
                return medication_id

            medication_id = self._find_active_medication(session, tenant_id, patient_id, adjustment)
            values: Dict[str, Any] = {"updated_at": now}
            kind = adjustment.adjustment_type
            if kind == "discontinuation":
                values["status"] = "discontinued"
            elif kind in ("dose_increase", "dose_decrease"):
                dose = adjustment.effective_dose
                if not dose:
                    raise PharmDxError(ErrorCode.INVALID_INPUT, "Adjustment does not specify a dose")
                values["dosage"] = dose
                if adjustment.effective_frequency:
                    values["frequency"] = adjustment.effective_frequency
            elif kind == "frequency_change":
                frequency = adjustment.effective_frequency
                if not frequency:
                    raise PharmDxError(
                        ErrorCode.INVALID_INPUT, "Adjustment does not specify a frequency"
                    )
                values["frequency"] = frequency
            elif kind == "formulation_change":
                values["dosage_form"] = adjustment.formulation
            session.execute(
                update(medications)
                .where(medications.c.id == medication_id, medications.c.tenant_id == tenant_id)
                .values(**values)
            )
            if kind == "discontinuation":
                session.execute(
                    update(medication_records)
                    .where(
                        medication_records.c.tenant_id == tenant_id,
                        medication_records.c.patient_id == patient_id,
                        func.lower(medication_records.c.medication_name)
                        == adjustment.medication_name.lower(),
                        medication_records.c.phase == "current",
                    )
                    .values(phase="past")
                )
            return medication_id

    @staticmethod
    def _find_active_medication(
        session, tenant_id: str, patient_id: str, adjustment: MedicationAdjustment
    ) -> str:
        conditions = [
            medications.c.tenant_id == tenant_id,
            medications.c.patient_id == patient_id,
            medications.c.status == "active",
        ]
        if adjustment.medication_id:
            conditions.append(medications.c.id == adjustment.medication_id)
        else:
            conditions.append(
                func.lower(medications.c.drug_name) == adjustment.medication_name.lower()
            )
        found = session.execute(select(medications.c.id).where(*conditions)).scalars().first()
        if found is None:
            raise PharmDxError(
                ErrorCode.INVALID_INPUT,
                f"No active medication named {adjustment.medication_name!r} for this patient",
            )
        return found


__all__ = ["DataStore", "SqlDataStore"]
