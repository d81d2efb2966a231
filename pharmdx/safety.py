"""Allergy, drug-interaction and duplicate-therapy checks for proposed medications."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

import structlog

from . import metrics
from .domain import (
    CheckType,
    FindingSeverity,
    IncompleteCheck,
    PatientContext,
    SafetyFinding,
    SafetyReport,
)
from .interactions import Interaction, InteractionLookup


logger = structlog.get_logger(__name__)

ALLERGY_RECOMMENDATION = "DO NOT PRESCRIBE. Consider alternative therapy."
ALLERGY_SOURCE = "Patient Allergy Record"
INTERACTION_FALLBACK_RECOMMENDATION = "Monitor closely and consider alternative therapy"
INTERACTION_SOURCE = "Drug Interaction Database"
DUPLICATE_RECOMMENDATION = "Review current therapy before adding duplicate medication"
DUPLICATE_SOURCE = "Current Medication List"


def allergy_finding(medication: str, allergies: Sequence[str]) -> Optional[SafetyFinding]:
    """Return a critical finding for the first allergy that matches ``medication``."""

    med = medication.strip().lower()
    for allergy in allergies:
        allergen = allergy.strip().lower()
        if not allergen:
            continue
        if allergen in med or med in allergen:
            return SafetyFinding(
                check_type=CheckType.ALLERGY,
                severity=FindingSeverity.CRITICAL,
                description=f"Patient has a documented allergy to {allergy}",
                affected_medications=[medication],
                recommendation=ALLERGY_RECOMMENDATION,
                source=ALLERGY_SOURCE,
            )
    return None


def interaction_finding(
    medication: str,
    counterpart: str,
    interactions: Sequence[Interaction],
    *,
    source: str = INTERACTION_SOURCE,
) -> Optional[SafetyFinding]:
    """Collapse all interactions for one drug pair into a finding at the highest severity."""

    if not interactions:
        return None
    top = max(interactions, key=lambda item: item.normalized_severity.rank)
    return SafetyFinding(
        check_type=CheckType.DRUG_INTERACTION,
        severity=top.normalized_severity,
        description=top.description or f"Interaction detected between {medication} and {counterpart}",
        affected_medications=[medication, counterpart],
        recommendation=top.management or INTERACTION_FALLBACK_RECOMMENDATION,
        source=source,
    )


def duplicate_finding(medication: str, current: Sequence[str]) -> Optional[SafetyFinding]:
    med = medication.strip().lower()
    for name in current:
        if name.strip().lower() == med:
            return SafetyFinding(
                check_type=CheckType.DUPLICATE_THERAPY,
                severity=FindingSeverity.MODERATE,
                description=f"{medication} is already on the patient's current medication list",
                affected_medications=[medication],
                recommendation=DUPLICATE_RECOMMENDATION,
                source=DUPLICATE_SOURCE,
            )
    return None


class SafetyCheckEngine:
    """Run every safety check for a set of proposed medications.

    Interaction lookups for each (proposed, current) pair fan out over a
    bounded thread pool; findings are merged back in input order so the
    report is deterministic.
    """

    def __init__(
        self,
        lookup: InteractionLookup,
        *,
        max_workers: int = 4,
        source: str = INTERACTION_SOURCE,
    ) -> None:
        self._lookup = lookup
        self._max_workers = max(1, max_workers)
        self._source = source

    def check(self, proposed_medication: str, context: PatientContext) -> List[SafetyFinding]:
        return self.check_all([proposed_medication], context).findings

    def _lookup_pair(self, medication: str, counterpart: str) -> List[Interaction]:
        return list(self._lookup.check_interactions([medication, counterpart]))

    def check_all(self, proposed_medications: Sequence[str], context: PatientContext) -> SafetyReport:
        proposed = [name.strip() for name in proposed_medications if name and name.strip()]
        current = context.medication_names
        report = SafetyReport()
        if not proposed:
            return report

        plan: List[Tuple[str, List[Tuple[str, Future]]]] = []
        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="safety-lookup"
        ) as pool:
            for medication in proposed:
                pairs = [
                    (counterpart, pool.submit(self._lookup_pair, medication, counterpart))
                    for counterpart in current
                    if counterpart.strip().lower() != medication.lower()
                ]
                plan.append((medication, pairs))

            for medication, pairs in plan:
                found = allergy_finding(medication, context.allergies)
                if found is not None:
                    report.findings.append(found)
                for counterpart, future in pairs:
                    try:
                        interactions = future.result()
                    except Exception as exc:
                        metrics.INTERACTION_LOOKUP_FAILURES.labels(source=self._source).inc()
                        logger.warning(
                            "interaction_lookup_failed",
                            medication=medication,
                            counterpart=counterpart,
                            error=str(exc),
                        )
                        report.incomplete.append(
                            IncompleteCheck(medication=medication, counterpart=counterpart, error=str(exc))
                        )
                        continue
                    found = interaction_finding(
                        medication, counterpart, interactions, source=self._source
                    )
                    if found is not None:
                        report.findings.append(found)
                found = duplicate_finding(medication, current)
                if found is not None:
                    report.findings.append(found)

        for finding in report.findings:
            metrics.SAFETY_FINDINGS_TOTAL.labels(
                check_type=finding.check_type.value, severity=finding.severity.value
            ).inc()
        logger.info(
            "safety_checks_completed",
            patient_id=context.patient_id,
            medications=len(proposed),
            findings=len(report.findings),
            incomplete=len(report.incomplete),
            critical_issues=report.critical_issues,
        )
        return report


__all__ = [
    "SafetyCheckEngine",
    "allergy_finding",
    "duplicate_finding",
    "interaction_finding",
]
