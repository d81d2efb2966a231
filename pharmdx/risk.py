"""Deterministic risk scoring and follow-up scheduling for a validated analysis."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from .domain import (
    Diagnosis,
    FindingSeverity,
    RedFlag,
    ReferralRecommendation,
    RiskAssessment,
    SafetyFinding,
)
from .time_utils import utc_now

_FOLLOW_UP_DAYS = {"critical": 1, "high": 3, "medium": 7, "low": 14}
_REFERRAL_DAYS = {"immediate": 1, "within_24h": 2}


def confidence_label(probability: float) -> str:
    """Confidence bucket for a probability on the 0-1 scale."""

    percent = probability * 100
    if percent >= 70:
        return "high"
    if percent >= 40:
        return "medium"
    return "low"


def evidence_level(probability: float) -> str:
    percent = probability * 100
    if percent >= 80:
        return "definite"
    if percent >= 60:
        return "probable"
    if percent >= 30:
        return "possible"
    return "unlikely"


def overall_risk(
    diagnoses: Sequence[Diagnosis],
    red_flags: Sequence[RedFlag],
    findings: Sequence[SafetyFinding],
) -> str:
    if any(flag.severity == "critical" for flag in red_flags):
        return "critical"
    high_dx = any(d.severity == "high" and d.probability > 0.5 for d in diagnoses)
    serious_interaction = any(
        f.severity in (FindingSeverity.CRITICAL, FindingSeverity.MAJOR) for f in findings
    )
    high_flag = any(flag.severity == "high" for flag in red_flags)
    if high_dx or serious_interaction or high_flag:
        return "high"
    if any(d.severity == "medium" and d.probability > 0.6 for d in diagnoses):
        return "medium"
    return "low"


def _risk_factors(
    diagnoses: Sequence[Diagnosis],
    red_flags: Sequence[RedFlag],
    findings: Sequence[SafetyFinding],
) -> List[str]:
    factors = [
        f"High-severity differential: {d.condition} ({d.probability:.0%})"
        for d in diagnoses
        if d.severity == "high"
    ]
    factors += [f"Red flag ({flag.severity}): {flag.flag}" for flag in red_flags]
    factors += [
        f"{f.check_type.value.replace('_', ' ').capitalize()} ({f.severity.value}): {f.description}"
        for f in findings
        if f.severity in (FindingSeverity.CRITICAL, FindingSeverity.MAJOR)
    ]
    return factors


def _mitigating_factors(
    diagnoses: Sequence[Diagnosis],
    red_flags: Sequence[RedFlag],
    findings: Sequence[SafetyFinding],
) -> List[str]:
    factors = []
    if not red_flags:
        factors.append("No red flags identified")
    if not findings:
        factors.append("No safety concerns with proposed medications")
    if diagnoses and all(d.severity == "low" for d in diagnoses):
        factors.append("All differentials are low severity")
    return factors


def assess_risk(
    diagnoses: Sequence[Diagnosis],
    red_flags: Sequence[RedFlag],
    findings: Sequence[SafetyFinding],
) -> RiskAssessment:
    return RiskAssessment(
        overall_risk=overall_risk(diagnoses, red_flags, findings),
        risk_factors=_risk_factors(diagnoses, red_flags, findings),
        mitigating_factors=_mitigating_factors(diagnoses, red_flags, findings),
    )


def clinical_impression(diagnoses: Sequence[Diagnosis], red_flags: Sequence[RedFlag]) -> str:
    if not diagnoses:
        return "No differential diagnoses were produced."
    ranked = sorted(diagnoses, key=lambda d: d.probability, reverse=True)
    lead = ranked[0]
    text = (
        f"Most likely {lead.condition} ({lead.probability:.0%}, {lead.evidence_level})."
    )
    if len(ranked) > 1:
        text += " Also consider: " + ", ".join(d.condition for d in ranked[1:4]) + "."
    urgent = [flag.flag for flag in red_flags if flag.severity in ("critical", "high")]
    if urgent:
        text += " Urgent attention: " + "; ".join(urgent) + "."
    return text


def follow_up_required(diagnoses: Sequence[Diagnosis], red_flags: Sequence[RedFlag]) -> bool:
    return bool(red_flags) or any(d.severity == "high" and d.probability > 0.4 for d in diagnoses)


def follow_up_date(
    risk: str,
    red_flags: Sequence[RedFlag],
    referral: Optional[ReferralRecommendation],
    *,
    now: Optional[datetime] = None,
) -> datetime:
    """Earliest follow-up date implied by risk level, red flags and referral urgency."""

    days = _FOLLOW_UP_DAYS.get(risk, 14)
    if any(flag.severity == "critical" for flag in red_flags):
        days = min(days, 1)
    elif any(flag.severity == "high" for flag in red_flags):
        days = min(days, 3)
    if referral is not None and referral.recommended and referral.urgency in _REFERRAL_DAYS:
        days = min(days, _REFERRAL_DAYS[referral.urgency])
    return (now or utc_now()) + timedelta(days=days)


def follow_up_plan(
    risk: str,
    diagnoses: Sequence[Diagnosis],
    red_flags: Sequence[RedFlag],
    referral: Optional[ReferralRecommendation],
    *,
    now: Optional[datetime] = None,
) -> Tuple[bool, Optional[datetime]]:
    required = follow_up_required(diagnoses, red_flags) or risk in ("critical", "high")
    if not required:
        return False, None
    return True, follow_up_date(risk, red_flags, referral, now=now)


__all__ = [
    "assess_risk",
    "clinical_impression",
    "confidence_label",
    "evidence_level",
    "follow_up_date",
    "follow_up_plan",
    "follow_up_required",
    "overall_risk",
]
