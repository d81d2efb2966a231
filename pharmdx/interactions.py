"""Drug-drug interaction lookups.

Two implementations of :class:`InteractionLookup` are provided: a curated
in-process table of well-documented interactions and an HTTP client for an
external interaction service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import requests
import structlog

from .config import Settings
from .domain import FindingSeverity


logger = structlog.get_logger(__name__)

_SEVERITY_ALIASES = {
    "critical": FindingSeverity.CRITICAL,
    "contraindicated": FindingSeverity.CRITICAL,
    "absolute": FindingSeverity.CRITICAL,
    "major": FindingSeverity.MAJOR,
    "severe": FindingSeverity.MAJOR,
    "moderate": FindingSeverity.MODERATE,
    "minor": FindingSeverity.MINOR,
    "mild": FindingSeverity.MINOR,
}


def normalize_severity(raw: Optional[str]) -> FindingSeverity:
    """Map a lookup's severity vocabulary onto ours; unknown values become minor."""

    return _SEVERITY_ALIASES.get((raw or "").strip().lower(), FindingSeverity.MINOR)


@dataclass(frozen=True)
class Interaction:
    drug_a: str
    drug_b: str
    severity: str
    description: str = ""
    management: str = ""
    mechanism: str = ""
    monitoring: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def normalized_severity(self) -> FindingSeverity:
        return normalize_severity(self.severity)


class InteractionLookup(Protocol):
    def check_interactions(self, drug_names: Sequence[str]) -> List[Interaction]:
        """Return every known interaction among ``drug_names``."""


_CURATED: Tuple[Interaction, ...] = (
    Interaction(
        "warfarin",
        "aspirin",
        "critical",
        "Significantly increased bleeding risk",
        "Avoid combination. If necessary, use lowest effective doses with intensive monitoring.",
        "Synergistic anticoagulant and antiplatelet effects",
        ("INR", "CBC", "Signs of bleeding"),
    ),
    Interaction(
        "warfarin",
        "ciprofloxacin",
        "major",
        "Increased INR and bleeding risk",
        "Monitor INR closely. Consider dose reduction of warfarin by 25-50%.",
        "CYP450 inhibition increases warfarin levels",
        ("INR", "Signs of bleeding"),
    ),
    Interaction(
        "digoxin",
        "furosemide",
        "major",
        "Increased risk of digoxin toxicity and arrhythmias",
        "Monitor potassium levels and digoxin concentrations regularly.",
        "Furosemide-induced hypokalemia increases digoxin toxicity risk",
        ("Serum potassium", "Digoxin level", "ECG", "Renal function"),
    ),
    Interaction(
        "amlodipine",
        "atenolol",
        "moderate",
        "Enhanced blood pressure lowering, possible hypotension",
        "Monitor blood pressure regularly. Start with low doses.",
        "Additive hypotensive effects",
        ("Blood pressure", "Heart rate"),
    ),
    Interaction(
        "lisinopril",
        "spironolactone",
        "major",
        "Risk of hyperkalemia, especially in elderly or with kidney disease",
        "Monitor serum potassium and renal function closely.",
        "Both drugs increase potassium retention",
        ("Serum potassium", "Creatinine", "BUN"),
    ),
    Interaction(
        "glipizide",
        "ciprofloxacin",
        "moderate",
        "Increased risk of hypoglycemia",
        "Monitor blood glucose closely. Educate patient on hypoglycemia signs.",
        "Ciprofloxacin may enhance hypoglycemic effect",
        ("Blood glucose", "HbA1c"),
    ),
    Interaction(
        "simvastatin",
        "amlodipine",
        "moderate",
        "Increased risk of myopathy and rhabdomyolysis",
        "Limit simvastatin dose to 20mg daily when used with amlodipine.",
        "CYP3A4 inhibition by amlodipine increases simvastatin levels",
        ("CK levels", "Liver enzymes", "Muscle symptoms"),
    ),
    Interaction(
        "ibuprofen",
        "lisinopril",
        "moderate",
        "Reduced antihypertensive effect, increased kidney injury risk",
        "Monitor blood pressure and renal function. Use lowest effective NSAID dose.",
        "NSAIDs antagonize ACE inhibitor effects",
        ("Blood pressure", "Creatinine", "BUN"),
    ),
    Interaction(
        "diclofenac",
        "warfarin",
        "major",
        "Significantly increased bleeding risk",
        "Avoid combination. If necessary, intensive INR monitoring required.",
        "NSAIDs increase bleeding risk and may displace warfarin from protein binding",
        ("INR", "CBC", "Signs of bleeding"),
    ),
    Interaction(
        "azithromycin",
        "warfarin",
        "moderate",
        "Increased INR and bleeding risk",
        "Monitor INR more frequently during and after antibiotic course.",
        "Macrolide antibiotics may enhance warfarin effect",
        ("INR", "Signs of bleeding"),
    ),
)


class StaticInteractionTable:
    """Curated, case-insensitive interaction table keyed by unordered drug pair."""

    def __init__(self, interactions: Iterable[Interaction] = _CURATED) -> None:
        self._pairs: Dict[frozenset, List[Interaction]] = {}
        for interaction in interactions:
            key = frozenset((interaction.drug_a.lower(), interaction.drug_b.lower()))
            self._pairs.setdefault(key, []).append(interaction)

    def check_interactions(self, drug_names: Sequence[str]) -> List[Interaction]:
        names = [name.strip().lower() for name in drug_names if name and name.strip()]
        found: List[Interaction] = []
        for index, first in enumerate(names):
            for second in names[index + 1 :]:
                if first == second:
                    continue
                found.extend(self._pairs.get(frozenset((first, second)), ()))
        return found


def _parse_interaction(item: Mapping[str, Any]) -> Optional[Interaction]:
    drug_a = item.get("drug1") or item.get("drugA")
    drug_b = item.get("drug2") or item.get("drugB")
    if not drug_a or not drug_b:
        return None
    return Interaction(
        drug_a=str(drug_a),
        drug_b=str(drug_b),
        severity=str(item.get("severity") or ""),
        description=str(item.get("description") or item.get("clinicalEffect") or ""),
        management=str(item.get("management") or item.get("recommendation") or ""),
        mechanism=str(item.get("mechanism") or ""),
    )


class HttpInteractionLookup:
    """Query an external interaction service over HTTP.

    Network and HTTP errors propagate so the caller can record the pair as
    an incomplete check.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._url = base_url.rstrip("/") + "/interactions/check"
        self._timeout = timeout
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._session = session or requests.Session()

    def check_interactions(self, drug_names: Sequence[str]) -> List[Interaction]:
        resp = self._session.post(
            self._url,
            json={"drugs": list(drug_names)},
            headers=self._headers or None,
            timeout=self._timeout,
        )
        resp.raise_for_status()
        payload = resp.json()
        raw_items = payload.get("interactions", []) if isinstance(payload, Mapping) else payload
        interactions = []
        for item in raw_items or []:
            if isinstance(item, Mapping):
                parsed = _parse_interaction(item)
                if parsed is not None:
                    interactions.append(parsed)
        logger.debug("interaction_lookup_completed", drugs=len(drug_names), found=len(interactions))
        return interactions


def lookup_from_settings(settings: Settings) -> InteractionLookup:
    """Use the external interaction service when configured, else the curated table."""

    if settings.interaction_api_url:
        return HttpInteractionLookup(
            settings.interaction_api_url,
            timeout=settings.interaction_timeout,
        )
    return StaticInteractionTable()


__all__ = [
    "HttpInteractionLookup",
    "Interaction",
    "InteractionLookup",
    "StaticInteractionTable",
    "lookup_from_settings",
    "normalize_severity",
]
