"""Request lifecycle for diagnostic and lab-interpretation analyses.

``pending -> processing -> completed | failed`` with ``cancelled`` reachable
from pending, processing and failed.  Every transition is a compare-and-set
in the store, so concurrent callers cannot both move a request into
``processing``.  Processing runs as a fixed sequence of stages; cancellation
and the wall-clock budget are checked at each stage boundary.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from . import metrics
from .ai_client import ChatCompletionClient, Completion
from .audit import AuditSink, BestEffortAudit
from .config import Settings, get_settings
from .domain import (
    CANCELLABLE_STATUSES,
    AIMetadata,
    AnalysisKind,
    AnalysisOutcome,
    AuditEvent,
    DiagnosticRequest,
    DiagnosticResult,
    Diagnosis,
    FindingSeverity,
    MedicationSuggestion,
    PatientHistoryPage,
    RedFlag,
    ReferralRecommendation,
    RequestPriority,
    RequestStatus,
    SafetyReport,
    SuggestedTest,
    TherapyRecommendation,
)
from .errors import ErrorCode, PharmDxError, RequestCancelled
from .interactions import lookup_from_settings
from .notifications import BestEffortNotifier, NotificationDispatcher
from .patient_context import PatientDataAggregator
from .prompts import PROBABILITY_SCALE, build_messages
from .risk import assess_risk, clinical_impression, confidence_label, evidence_level, follow_up_plan
from .safety import SafetyCheckEngine
from .sanitizer import sanitize_text
from .schemas import AnalysisPayload, InputSnapshot
from .store import DataStore
from .time_utils import utc_now
from .validator import validate_response


logger = structlog.get_logger(__name__)

CRITICAL_ALERT_KIND = "diagnostic_critical_alert"
MAX_HISTORY_PAGE_SIZE = 100
CANCEL_REASON_LIMIT = 1000


def _validation_issues(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
        for error in exc.errors()
    ]


class DiagnosticOrchestrator:
    """Create, process, retry and cancel diagnostic requests."""

    def __init__(
        self,
        store: DataStore,
        ai_client: ChatCompletionClient,
        *,
        settings: Optional[Settings] = None,
        aggregator: Optional[PatientDataAggregator] = None,
        safety_engine: Optional[SafetyCheckEngine] = None,
        audit: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None,
        processing_budget: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ai = ai_client
        self._settings = settings or get_settings()
        self._aggregator = aggregator or PatientDataAggregator(store)
        self._safety = safety_engine or SafetyCheckEngine(
            lookup_from_settings(self._settings), max_workers=self._settings.safety_max_workers
        )
        self._audit = BestEffortAudit(audit) if audit is not None else None
        self._notifier = BestEffortNotifier(notifier) if notifier is not None else None
        self.processing_budget = (
            processing_budget if processing_budget is not None else ai_client.worst_case_seconds()
        )
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _record(
        self,
        event_type: str,
        request: DiagnosticRequest,
        actor_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_event(
            AuditEvent(
                event_type=event_type,
                tenant_id=request.tenant_id,
                actor_id=actor_id,
                entity_id=request.id,
                patient_id=request.patient_id,
                details=dict(details or {}),
            )
        )

    def _require_request(self, request_id: str, tenant_id: str) -> DiagnosticRequest:
        request = self._store.get_request(tenant_id, request_id)
        if request is None:
            raise PharmDxError(
                ErrorCode.REQUEST_NOT_FOUND,
                "Diagnostic request not found",
                details={"request_id": request_id},
            )
        return request

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------
    def create_request(
        self,
        patient_id: str,
        requester_id: str,
        tenant_id: str,
        input_snapshot: Union[InputSnapshot, Mapping[str, Any]],
        consent_obtained: bool,
        *,
        kind: Union[AnalysisKind, str] = AnalysisKind.DIAGNOSTIC,
        priority: Union[RequestPriority, str] = RequestPriority.ROUTINE,
        location_id: Optional[str] = None,
    ) -> DiagnosticRequest:
        if not consent_obtained:
            raise PharmDxError(
                ErrorCode.NO_CONSENT,
                "Patient consent is required before requesting an AI analysis",
            )
        if self._store.get_patient(tenant_id, patient_id) is None:
            raise PharmDxError(
                ErrorCode.PATIENT_NOT_FOUND,
                "Patient not found",
                details={"patient_id": patient_id},
            )
        try:
            snapshot = (
                input_snapshot
                if isinstance(input_snapshot, InputSnapshot)
                else InputSnapshot.model_validate(input_snapshot)
            )
        except ValidationError as exc:
            raise PharmDxError(
                ErrorCode.INVALID_INPUT,
                "Clinical input failed validation",
                details={"issues": _validation_issues(exc)},
            ) from exc
        try:
            kind = AnalysisKind(kind)
            priority = RequestPriority(priority)
        except ValueError as exc:
            raise PharmDxError(ErrorCode.INVALID_INPUT, str(exc)) from exc

        existing = self._store.find_active_request(tenant_id, patient_id)
        if existing is not None:
            raise PharmDxError(
                ErrorCode.DUPLICATE_ACTIVE_REQUEST,
                "An active diagnostic request already exists for this patient",
                details={"request_id": existing.id},
            )

        now = utc_now()
        request = DiagnosticRequest(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            patient_id=patient_id,
            requester_id=requester_id,
            location_id=location_id,
            input_snapshot=snapshot,
            consent_obtained=True,
            consent_timestamp=now,
            kind=kind,
            priority=priority,
            prompt_version=self._settings.prompt_version,
            created_at=now,
            updated_at=now,
        )
        self._store.insert_request(request)
        metrics.REQUEST_TRANSITIONS_TOTAL.labels(status=RequestStatus.PENDING.value).inc()
        logger.info(
            "diagnostic_request_created",
            request_id=request.id,
            patient_id=patient_id,
            tenant_id=tenant_id,
            kind=kind.value,
            priority=priority.value,
        )
        self._record("diagnostic_request_created", request, requester_id, {"kind": kind.value})
        return request

    def get_request(self, request_id: str, tenant_id: str) -> DiagnosticRequest:
        return self._require_request(request_id, tenant_id)

    def get_result(self, result_id: str, tenant_id: str) -> DiagnosticResult:
        result = self._store.get_result(tenant_id, result_id)
        if result is None:
            raise PharmDxError(
                ErrorCode.RESULT_NOT_FOUND,
                "Diagnostic result not found",
                details={"result_id": result_id},
            )
        return result

    def get_result_for_request(self, request_id: str, tenant_id: str) -> DiagnosticResult:
        result = self._store.get_result_for_request(tenant_id, request_id)
        if result is None:
            raise PharmDxError(
                ErrorCode.RESULT_NOT_FOUND,
                "No result recorded for this request",
                details={"request_id": request_id},
            )
        return result

    def get_patient_history(
        self, patient_id: str, tenant_id: str, *, page: int = 1, limit: int = 20
    ) -> PatientHistoryPage:
        if page < 1 or not 1 <= limit <= MAX_HISTORY_PAGE_SIZE:
            raise PharmDxError(
                ErrorCode.INVALID_INPUT,
                f"page must be >= 1 and limit between 1 and {MAX_HISTORY_PAGE_SIZE}",
            )
        items, total = self._store.list_patient_requests(
            tenant_id, patient_id, offset=(page - 1) * limit, limit=limit
        )
        return PatientHistoryPage(items=items, total=total, page=page, limit=limit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def process(
        self,
        request_id: str,
        tenant_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> AnalysisOutcome:
        """Run the analysis pipeline for a pending (or retryable failed) request.

        Failures inside the pipeline leave the request ``failed`` and are
        reported through the returned outcome.  Precondition errors and
        cancellation are raised.
        """

        request = self._require_request(request_id, tenant_id)
        claimed = self._store.begin_processing(
            tenant_id, request_id, max_retries=self._settings.max_request_retries
        )
        if not claimed:
            current = self._require_request(request_id, tenant_id)
            raise PharmDxError(
                ErrorCode.INVALID_STATE,
                f"Request cannot be processed from status {current.status.value}",
                details={"status": current.status.value, "retry_count": current.retry_count},
            )
        metrics.REQUEST_TRANSITIONS_TOTAL.labels(status=RequestStatus.PROCESSING.value).inc()
        self._record("diagnostic_processing_started", request, None)
        return self._run(request_id, tenant_id, cancel_event)

    def retry(
        self,
        request_id: str,
        tenant_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> AnalysisOutcome:
        request = self._require_request(request_id, tenant_id)
        max_retries = self._settings.max_request_retries
        if request.status != RequestStatus.FAILED:
            raise PharmDxError(
                ErrorCode.INVALID_STATE,
                f"Only failed requests can be retried (status {request.status.value})",
            )
        if request.retry_count >= max_retries:
            raise PharmDxError(
                ErrorCode.MAX_RETRIES_EXCEEDED,
                f"Request has already been retried {request.retry_count} times",
                details={"retry_count": request.retry_count, "max_retries": max_retries},
            )
        claimed = self._store.begin_processing(
            tenant_id, request_id, max_retries=max_retries, increment_retry=True
        )
        if not claimed:
            raise PharmDxError(ErrorCode.INVALID_STATE, "Request changed state before retry")
        metrics.REQUEST_TRANSITIONS_TOTAL.labels(status=RequestStatus.PROCESSING.value).inc()
        logger.info("diagnostic_request_retried", request_id=request_id, retry_count=request.retry_count + 1)
        self._record(
            "diagnostic_request_retried", request, None, {"retry_count": request.retry_count + 1}
        )
        return self._run(request_id, tenant_id, cancel_event)

    def cancel(
        self,
        request_id: str,
        tenant_id: str,
        cancelled_by: str,
        reason: Optional[str] = None,
    ) -> None:
        request = self._require_request(request_id, tenant_id)
        if request.status not in CANCELLABLE_STATUSES:
            raise PharmDxError(
                ErrorCode.INVALID_STATE,
                f"Request cannot be cancelled from status {request.status.value}",
            )
        clean_reason = sanitize_text(reason, CANCEL_REASON_LIMIT) or None
        changed = self._store.transition_request(
            tenant_id,
            request_id,
            CANCELLABLE_STATUSES,
            RequestStatus.CANCELLED,
            cancelled_by=cancelled_by,
            cancellation_reason=clean_reason,
        )
        if not changed:
            raise PharmDxError(ErrorCode.INVALID_STATE, "Request changed state before cancellation")
        metrics.REQUEST_TRANSITIONS_TOTAL.labels(status=RequestStatus.CANCELLED.value).inc()
        logger.info("diagnostic_request_cancelled", request_id=request_id, cancelled_by=cancelled_by)
        self._record("diagnostic_request_cancelled", request, cancelled_by, {"reason": clean_reason})

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def _run(
        self,
        request_id: str,
        tenant_id: str,
        cancel_event: Optional[threading.Event],
    ) -> AnalysisOutcome:
        deadline = self._clock() + self.processing_budget
        request = self._require_request(request_id, tenant_id)

        def checkpoint(stage: str) -> None:
            current = self._store.get_request(tenant_id, request_id)
            if current is None or current.status == RequestStatus.CANCELLED:
                raise RequestCancelled(request_id)
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelled(request_id)
            if self._clock() > deadline:
                raise PharmDxError(
                    ErrorCode.PROCESSING_TIMEOUT,
                    f"Processing exceeded its {self.processing_budget:g}s budget before {stage}",
                )
            logger.debug("diagnostic_stage_started", stage=stage)

        with structlog.contextvars.bound_contextvars(request_id=request_id, tenant_id=tenant_id):
            try:
                checkpoint("aggregate")
                context = self._aggregator.aggregate(request)

                checkpoint("prompt")
                messages = build_messages(request.kind, context)

                checkpoint("ai_call")
                completion = self._ai.complete(
                    messages, request_id=request_id, cancel_event=cancel_event
                )

                checkpoint("validate")
                payload = validate_response(
                    completion.text,
                    probability_scale=PROBABILITY_SCALE,
                    default_confidence=self._settings.default_confidence,
                )

                checkpoint("safety")
                report = self._safety.check_all(self._proposed_medications(payload), context)

                checkpoint("persist")
                result = self._build_result(request, payload, completion, report)
                if not self._store.complete_request(request, result):
                    current = self._require_request(request_id, tenant_id)
                    if current.status == RequestStatus.CANCELLED:
                        raise RequestCancelled(request_id)
                    raise PharmDxError(
                        ErrorCode.INVALID_STATE,
                        f"Request left processing unexpectedly (status {current.status.value})",
                    )
            except RequestCancelled:
                if cancel_event is not None and cancel_event.is_set():
                    if self._store.transition_request(
                        tenant_id,
                        request_id,
                        (RequestStatus.PROCESSING,),
                        RequestStatus.CANCELLED,
                        cancellation_reason="Cancelled during processing",
                    ):
                        metrics.REQUEST_TRANSITIONS_TOTAL.labels(
                            status=RequestStatus.CANCELLED.value
                        ).inc()
                logger.info("diagnostic_processing_abandoned", reason="cancelled")
                self._record("diagnostic_processing_abandoned", request, None)
                raise
            except PharmDxError as exc:
                return self._fail(request, exc.code, exc.message, exc.details)
            except Exception as exc:
                logger.exception("diagnostic_processing_error")
                return self._fail(request, ErrorCode.INTERNAL_ERROR, f"Unexpected error: {exc}", {})

            metrics.REQUEST_TRANSITIONS_TOTAL.labels(status=RequestStatus.COMPLETED.value).inc()
            logger.info(
                "diagnostic_request_completed",
                result_id=result.id,
                diagnoses=len(result.diagnoses),
                critical_safety_issues=result.critical_safety_issues,
                attempts=completion.attempts,
            )
            self._record(
                "diagnostic_request_completed",
                request,
                None,
                {"result_id": result.id, "critical_safety_issues": result.critical_safety_issues},
            )
            self._send_alert(request, result)
            return AnalysisOutcome(request=self._require_request(request_id, tenant_id), result=result)

    def _fail(
        self,
        request: DiagnosticRequest,
        code: ErrorCode,
        message: str,
        details: Dict[str, Any],
    ) -> AnalysisOutcome:
        changed = self._store.transition_request(
            request.tenant_id,
            request.id,
            (RequestStatus.PROCESSING,),
            RequestStatus.FAILED,
            error_code=code.value,
            error_message=message[:2000],
            processing_completed_at=utc_now(),
        )
        if changed:
            metrics.REQUEST_TRANSITIONS_TOTAL.labels(status=RequestStatus.FAILED.value).inc()
        logger.warning(
            "diagnostic_request_failed",
            code=code.value,
            message=message,
            recorded=changed,
        )
        self._record(
            "diagnostic_request_failed",
            request,
            None,
            {**details, "code": code.value, "message": message},
        )
        return AnalysisOutcome(request=self._require_request(request.id, request.tenant_id))

    @staticmethod
    def _proposed_medications(payload: AnalysisPayload) -> List[str]:
        names = [option.medication for option in payload.therapeutic_options]
        names += [rec.medication_name for rec in payload.therapy_recommendations]
        seen = set()
        unique = []
        for name in names:
            key = name.strip().lower()
            if key and key not in seen:
                seen.add(key)
                unique.append(name.strip())
        return unique

    def _build_result(
        self,
        request: DiagnosticRequest,
        payload: AnalysisPayload,
        completion: Completion,
        report: SafetyReport,
    ) -> DiagnosticResult:
        diagnoses = []
        for item in payload.differential_diagnoses:
            probability = payload.to_fraction(item.probability)
            diagnoses.append(
                Diagnosis(
                    condition=item.condition,
                    probability=probability,
                    reasoning=item.reasoning,
                    severity=item.severity,
                    confidence=confidence_label(probability),
                    evidence_level=evidence_level(probability),
                )
            )
        red_flags = [RedFlag(flag=f.flag, severity=f.severity, action=f.action) for f in payload.red_flags]
        referral = (
            ReferralRecommendation(**payload.referral_recommendation.model_dump())
            if payload.referral_recommendation is not None
            else None
        )
        risk = assess_risk(diagnoses, red_flags, report.findings)
        follow_up, follow_up_at = follow_up_plan(risk.overall_risk, diagnoses, red_flags, referral)
        now = utc_now()
        return DiagnosticResult(
            id=str(uuid.uuid4()),
            request_id=request.id,
            tenant_id=request.tenant_id,
            patient_id=request.patient_id,
            diagnoses=diagnoses,
            suggested_tests=[
                SuggestedTest(test_name=t.test_name, priority=t.priority, reasoning=t.reasoning)
                for t in payload.recommended_tests
            ],
            medication_suggestions=[
                MedicationSuggestion(
                    drug_name=o.medication,
                    dosage=o.dosage,
                    frequency=o.frequency,
                    duration=o.duration,
                    reasoning=o.reasoning,
                    safety_notes=list(o.safety_notes),
                )
                for o in payload.therapeutic_options
            ],
            therapy_recommendations=[
                TherapyRecommendation(**rec.model_dump()) for rec in payload.therapy_recommendations
            ],
            red_flags=red_flags,
            referral_recommendation=referral,
            ai_metadata=AIMetadata(
                model_id=completion.model,
                model_version=self._settings.model_version,
                confidence_score=min(1.0, payload.to_fraction(payload.confidence_score)),
                processing_time_ms=completion.processing_time_ms,
                prompt_tokens=completion.usage.get("prompt_tokens", 0),
                completion_tokens=completion.usage.get("completion_tokens", 0),
                total_tokens=completion.usage.get("total_tokens", 0),
                provider_request_id=completion.provider_request_id,
                attempts=completion.attempts,
                prompt_version=request.prompt_version,
            ),
            safety_findings=list(report.findings),
            critical_safety_issues=report.critical_issues,
            incomplete_safety_checks=list(report.incomplete),
            risk_assessment=risk,
            clinical_impression=clinical_impression(diagnoses, red_flags),
            follow_up_required=follow_up,
            follow_up_date=follow_up_at,
            raw_response=completion.text,
            disclaimer=payload.disclaimer,
            created_at=now,
            updated_at=now,
        )

    def _send_alert(self, request: DiagnosticRequest, result: DiagnosticResult) -> None:
        critical_findings = [
            f for f in result.safety_findings if f.severity == FindingSeverity.CRITICAL
        ]
        if not result.red_flags and not critical_findings:
            return
        if self._notifier is None:
            logger.warning("critical_alert_not_sent", reason="no notifier configured")
            return
        severity = (
            "critical"
            if critical_findings or any(flag.severity == "critical" for flag in result.red_flags)
            else "high"
        )
        self._notifier.notify(
            request.requester_id,
            self._settings.alert_channel,
            {
                "kind": CRITICAL_ALERT_KIND,
                "title": "Diagnostic analysis requires attention",
                "message": (
                    f"{len(result.red_flags)} red flag(s) and "
                    f"{len(critical_findings)} critical safety finding(s) identified"
                ),
                "severity": severity,
                "tenant_id": request.tenant_id,
                "patient_id": request.patient_id,
                "request_id": request.id,
                "result_id": result.id,
                "red_flags": [flag.model_dump() for flag in result.red_flags],
                "critical_findings": [f.model_dump(mode="json") for f in critical_findings],
            },
        )


__all__ = ["CRITICAL_ALERT_KIND", "DiagnosticOrchestrator"]
