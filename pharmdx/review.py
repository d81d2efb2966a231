"""Pharmacist review, physician escalation and medication adjustments."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import ValidationError

from .audit import AuditSink, BestEffortAudit
from .config import Settings, get_settings
from .domain import (
    BLOCKING_SEVERITIES,
    AdjustmentOutcome,
    AdjustmentReport,
    AdjustmentStatus,
    AuditEvent,
    CheckType,
    DiagnosticResult,
    Escalation,
    FindingSeverity,
    PharmacistReview,
    ReviewAction,
    ReviewDecision,
)
from .errors import ErrorCode, PharmDxError
from .notifications import BestEffortNotifier, NotificationDispatcher
from .risk import follow_up_plan
from .sanitizer import sanitize_text
from .schemas import MedicationAdjustment
from .store import DataStore


logger = structlog.get_logger(__name__)

NOTES_LIMIT = 1000
REASON_LIMIT = 1000
MODIFICATIONS_LIMIT = 2000
ESCALATION_KIND = "diagnostic_escalation"

Detail = Union[str, Mapping[str, Any], None]


def _clean_text(value: Any, limit: int, field_name: str) -> Optional[str]:
    if value is None:
        return None
    text = sanitize_text(str(value))
    if len(text) > limit:
        raise PharmDxError(
            ErrorCode.INVALID_INPUT,
            f"{field_name} must be at most {limit} characters",
            details={"field": field_name, "length": len(text)},
        )
    return text or None


def _detail_fields(action: ReviewAction, detail: Detail) -> Dict[str, Any]:
    """Normalise ``detail`` into a mapping; a bare string is the action's main text."""

    if detail is None:
        return {}
    if isinstance(detail, str):
        key = {
            ReviewAction.APPROVE: "notes",
            ReviewAction.MODIFY: "modifications",
            ReviewAction.REJECT: "reason",
            ReviewAction.ESCALATE: "reason",
        }[action]
        return {key: detail}
    return dict(detail)


class ReviewWorkflow:
    """Apply pharmacist decisions to completed diagnostic results."""

    def __init__(
        self,
        store: DataStore,
        *,
        settings: Optional[Settings] = None,
        audit: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._audit = BestEffortAudit(audit) if audit is not None else None
        self._notifier = BestEffortNotifier(notifier) if notifier is not None else None

    def _record(
        self,
        event_type: str,
        result: DiagnosticResult,
        actor_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_event(
            AuditEvent(
                event_type=event_type,
                tenant_id=result.tenant_id,
                actor_id=actor_id,
                entity_id=result.id,
                patient_id=result.patient_id,
                details=dict(details or {}),
            )
        )

    def _require_result(self, result_id: str, tenant_id: str) -> DiagnosticResult:
        result = self._store.get_result(tenant_id, result_id)
        if result is None:
            raise PharmDxError(
                ErrorCode.RESULT_NOT_FOUND,
                "Diagnostic result not found",
                details={"result_id": result_id},
            )
        return result

    # ------------------------------------------------------------------
    # Review decisions
    # ------------------------------------------------------------------
    def review(
        self,
        result_id: str,
        tenant_id: str,
        reviewer_id: str,
        decision: Union[ReviewAction, str],
        detail: Detail = None,
    ) -> DiagnosticResult:
        try:
            action = ReviewAction(decision)
        except ValueError as exc:
            raise PharmDxError(ErrorCode.INVALID_INPUT, f"Unknown review decision {decision!r}") from exc
        fields = _detail_fields(action, detail)
        result = self._require_result(result_id, tenant_id)
        if result.has_final_review:
            raise PharmDxError(
                ErrorCode.INVALID_STATE,
                "Result has already been reviewed",
                details={"decision": result.pharmacist_review.decision.value},
            )

        if action is ReviewAction.APPROVE:
            return self.approve(result, reviewer_id, notes=fields.get("notes"))
        if action is ReviewAction.MODIFY:
            return self.modify(
                result,
                reviewer_id,
                modifications=fields.get("modifications"),
                notes=fields.get("notes"),
            )
        if action is ReviewAction.REJECT:
            return self.reject(result, reviewer_id, reason=fields.get("reason"), notes=fields.get("notes"))
        return self.escalate(
            result,
            reviewer_id,
            reason=fields.get("reason"),
            physician_id=fields.get("physician_id"),
        )

    def _store_review(
        self,
        result: DiagnosticResult,
        review: PharmacistReview,
        *,
        follow_up_required: bool,
        follow_up_date,
    ) -> DiagnosticResult:
        recorded = self._store.record_review(
            result.tenant_id,
            result.id,
            review,
            follow_up_required=follow_up_required,
            follow_up_date=follow_up_date,
        )
        if not recorded:
            raise PharmDxError(ErrorCode.INVALID_STATE, "Result has already been reviewed")
        logger.info(
            "pharmacist_review_recorded",
            result_id=result.id,
            reviewer_id=review.reviewer_id,
            decision=review.decision.value,
            follow_up_required=follow_up_required,
        )
        self._record(
            "pharmacist_review_recorded",
            result,
            review.reviewer_id,
            {"decision": review.decision.value, "follow_up_required": follow_up_required},
        )
        return self._require_result(result.id, result.tenant_id)

    def _follow_up(self, result: DiagnosticResult):
        risk = result.risk_assessment.overall_risk if result.risk_assessment else "low"
        return follow_up_plan(
            risk, result.diagnoses, result.red_flags, result.referral_recommendation
        )

    def approve(
        self, result: DiagnosticResult, reviewer_id: str, *, notes: Optional[str] = None
    ) -> DiagnosticResult:
        clean_notes = _clean_text(notes, NOTES_LIMIT, "notes")
        if result.critical_safety_issues:
            logger.warning(
                "approved_with_critical_safety_issues",
                result_id=result.id,
                reviewer_id=reviewer_id,
                findings=len(result.safety_findings),
            )
        required, when = self._follow_up(result)
        review = PharmacistReview(
            decision=ReviewDecision.APPROVED,
            reviewer_id=reviewer_id,
            notes=clean_notes,
            signed_off=True,
        )
        return self._store_review(result, review, follow_up_required=required, follow_up_date=when)

    def modify(
        self,
        result: DiagnosticResult,
        reviewer_id: str,
        *,
        modifications: Optional[str],
        notes: Optional[str] = None,
    ) -> DiagnosticResult:
        clean_modifications = _clean_text(modifications, MODIFICATIONS_LIMIT, "modifications")
        if not clean_modifications:
            raise PharmDxError(
                ErrorCode.MISSING_MODIFICATIONS,
                "Modifications are required when modifying a recommendation",
            )
        clean_notes = _clean_text(notes, NOTES_LIMIT, "notes")
        required, when = self._follow_up(result)
        review = PharmacistReview(
            decision=ReviewDecision.MODIFIED,
            reviewer_id=reviewer_id,
            notes=clean_notes,
            modifications=clean_modifications,
            signed_off=True,
        )
        return self._store_review(result, review, follow_up_required=required, follow_up_date=when)

    def reject(
        self,
        result: DiagnosticResult,
        reviewer_id: str,
        *,
        reason: Optional[str],
        notes: Optional[str] = None,
    ) -> DiagnosticResult:
        clean_reason = _clean_text(reason, REASON_LIMIT, "reason")
        if not clean_reason:
            raise PharmDxError(ErrorCode.MISSING_REASON, "A reason is required to reject a recommendation")
        review = PharmacistReview(
            decision=ReviewDecision.REJECTED,
            reviewer_id=reviewer_id,
            notes=_clean_text(notes, NOTES_LIMIT, "notes"),
            rejection_reason=clean_reason,
        )
        return self._store_review(
            result,
            review,
            follow_up_required=result.follow_up_required,
            follow_up_date=result.follow_up_date,
        )

    def escalate(
        self,
        result: DiagnosticResult,
        reviewer_id: str,
        *,
        reason: Optional[str],
        physician_id: Optional[str] = None,
    ) -> DiagnosticResult:
        clean_reason = _clean_text(reason, REASON_LIMIT, "reason")
        if not clean_reason:
            raise PharmDxError(ErrorCode.MISSING_REASON, "A reason is required to escalate a case")
        escalation = Escalation(
            reason=clean_reason,
            escalated_by=reviewer_id,
            physician_id=physician_id or None,
        )
        if not self._store.record_escalation(result.tenant_id, result.id, escalation):
            raise PharmDxError(ErrorCode.INVALID_STATE, "Result is already escalated or reviewed")
        logger.info(
            "diagnostic_result_escalated",
            result_id=result.id,
            escalated_by=reviewer_id,
            physician_id=physician_id,
        )
        self._record(
            "diagnostic_result_escalated",
            result,
            reviewer_id,
            {"reason": clean_reason, "physician_id": physician_id},
        )
        self._notify_escalation(result, escalation)
        return self._require_result(result.id, result.tenant_id)

    def _notify_escalation(self, result: DiagnosticResult, escalation: Escalation) -> None:
        if self._notifier is None:
            return
        recipient = escalation.physician_id
        if recipient is None:
            request = self._store.get_request(result.tenant_id, result.request_id)
            recipient = request.requester_id if request is not None else None
        if recipient is None:
            logger.warning("escalation_without_recipient", result_id=result.id)
            return
        self._notifier.notify(
            recipient,
            self._settings.alert_channel,
            {
                "kind": ESCALATION_KIND,
                "title": "Diagnostic case escalated for physician review",
                "message": escalation.reason,
                "severity": "high",
                "tenant_id": result.tenant_id,
                "patient_id": result.patient_id,
                "result_id": result.id,
                "request_id": result.request_id,
                "escalated_by": escalation.escalated_by,
            },
        )

    # ------------------------------------------------------------------
    # Medication adjustments
    # ------------------------------------------------------------------
    @staticmethod
    def _block_reason(result: DiagnosticResult, adjustment: MedicationAdjustment) -> Optional[str]:
        if adjustment.adjustment_type == "discontinuation":
            return None
        findings = result.findings_for(adjustment.medication_name)
        if any(
            f.check_type == CheckType.ALLERGY and f.severity == FindingSeverity.CRITICAL
            for f in findings
        ):
            return f"Critical allergy finding for {adjustment.medication_name}"
        if result.is_escalated:
            return None
        serious = [f for f in findings if f.severity in BLOCKING_SEVERITIES]
        if serious:
            return (
                f"{serious[0].severity.value.capitalize()} safety finding for "
                f"{adjustment.medication_name} requires escalation first"
            )
        unresolved = result.incomplete_checks_for(adjustment.medication_name)
        if unresolved:
            return (
                f"Interaction check for {adjustment.medication_name} and "
                f"{unresolved[0].counterpart} did not complete; escalation required"
            )
        return None

    def implement_adjustments(
        self,
        result_id: str,
        tenant_id: str,
        reviewer_id: str,
        adjustments: Sequence[Union[MedicationAdjustment, Mapping[str, Any]]],
    ) -> AdjustmentReport:
        result = self._require_result(result_id, tenant_id)
        review = result.pharmacist_review
        if review is None or review.decision not in (ReviewDecision.APPROVED, ReviewDecision.MODIFIED):
            raise PharmDxError(
                ErrorCode.INVALID_STATE,
                "Medication changes require an approved or modified review",
            )

        report = AdjustmentReport()
        for index, raw in enumerate(adjustments):
            outcome = self._apply_one(result, reviewer_id, index, raw)
            try:
                self._store.append_adjustment_outcome(tenant_id, result_id, outcome)
            except Exception:
                # Outcome stays in the report even when it cannot be persisted.
                logger.exception(
                    "medication_adjustment_outcome_not_recorded",
                    result_id=result_id,
                    medication=outcome.medication_name,
                    status=outcome.status.value,
                )
                report.unrecorded.append(outcome)
            self._record(
                f"medication_adjustment_{outcome.status.value}",
                result,
                reviewer_id,
                outcome.model_dump(mode="json"),
            )
            report.applied.append(outcome)

        logger.info(
            "medication_adjustments_processed",
            result_id=result_id,
            applied=len(report.succeeded),
            blocked=len(report.blocked),
            failed=len(report.failed),
        )
        return report

    def _apply_one(
        self,
        result: DiagnosticResult,
        reviewer_id: str,
        index: int,
        raw: Union[MedicationAdjustment, Mapping[str, Any]],
    ) -> AdjustmentOutcome:
        if isinstance(raw, MedicationAdjustment):
            adjustment = raw
        else:
            try:
                adjustment = MedicationAdjustment.model_validate(raw)
            except ValidationError as exc:
                source = raw if isinstance(raw, Mapping) else {}
                name = str(source.get("medication_name") or f"adjustment[{index}]")
                logger.warning("medication_adjustment_invalid", index=index, errors=exc.error_count())
                return AdjustmentOutcome(
                    medication_name=name,
                    adjustment_type=str(source.get("adjustment_type") or "unknown"),
                    status=AdjustmentStatus.FAILED,
                    detail="; ".join(error["msg"] for error in exc.errors()),
                    applied_by=reviewer_id,
                )

        blocked = self._block_reason(result, adjustment)
        if blocked is not None:
            logger.warning(
                "medication_adjustment_blocked",
                result_id=result.id,
                medication=adjustment.medication_name,
                reason=blocked,
            )
            return AdjustmentOutcome(
                medication_name=adjustment.medication_name,
                adjustment_type=adjustment.adjustment_type,
                status=AdjustmentStatus.BLOCKED,
                detail=blocked,
                applied_by=reviewer_id,
            )

        try:
            medication_id = self._store.apply_medication_adjustment(
                result.tenant_id, result.patient_id, adjustment
            )
        except PharmDxError as exc:
            logger.warning(
                "medication_adjustment_failed",
                medication=adjustment.medication_name,
                code=exc.code.value,
                error=exc.message,
            )
            detail = exc.message
        except Exception as exc:
            logger.exception("medication_adjustment_failed", medication=adjustment.medication_name)
            detail = f"Unexpected error: {exc}"
        else:
            return AdjustmentOutcome(
                medication_name=adjustment.medication_name,
                adjustment_type=adjustment.adjustment_type,
                status=AdjustmentStatus.APPLIED,
                medication_id=medication_id,
                detail=adjustment.reason,
                applied_by=reviewer_id,
            )
        return AdjustmentOutcome(
            medication_name=adjustment.medication_name,
            adjustment_type=adjustment.adjustment_type,
            status=AdjustmentStatus.FAILED,
            detail=detail,
            applied_by=reviewer_id,
        )

    def list_pending_reviews(self, tenant_id: str) -> List[DiagnosticResult]:
        return self._store.list_pending_reviews(tenant_id)

    def list_critical_cases(self, tenant_id: str) -> List[DiagnosticResult]:
        """Unreviewed results carrying a critical safety issue or a critical red flag."""

        return self._store.list_critical_cases(tenant_id)

    def list_escalated_cases(self, tenant_id: str) -> List[DiagnosticResult]:
        return self._store.list_escalated_cases(tenant_id)


__all__ = ["ESCALATION_KIND", "ReviewWorkflow"]
