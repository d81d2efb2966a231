"""Chat messages for diagnostic and lab-interpretation analyses."""

from __future__ import annotations

from typing import Dict, List

from .config import STANDARD_DISCLAIMER
from .domain import AnalysisKind, PatientContext

_RESPONSE_SCHEMA = """{
  "differentialDiagnoses": [
    {
      "condition": "string",
      "probability": number (0-100),
      "reasoning": "string",
      "severity": "low|medium|high"
    }
  ],
  "recommendedTests": [
    {
      "testName": "string",
      "priority": "urgent|routine|optional",
      "reasoning": "string"
    }
  ],
  "therapeuticOptions": [
    {
      "medication": "string",
      "dosage": "string",
      "frequency": "string",
      "duration": "string",
      "reasoning": "string",
      "safetyNotes": ["string"]
    }
  ],
  "redFlags": [
    {
      "flag": "string",
      "severity": "low|medium|high|critical",
      "action": "string"
    }
  ],
  "referralRecommendation": {
    "recommended": boolean,
    "urgency": "immediate|within_24h|routine",
    "specialty": "string",
    "reason": "string"
  },
  "disclaimer": "%s",
  "confidenceScore": number (0-100)
}""" % STANDARD_DISCLAIMER

_LAB_EXTENSION = """
For laboratory interpretation also include:
  "interpretation": "string",
  "therapyRecommendations": [
    {
      "medicationName": "string",
      "action": "start|stop|adjust_dose|monitor|continue",
      "currentDose": "string",
      "recommendedDose": "string",
      "rationale": "string",
      "priority": "critical|high|medium|low"
    }
  ]"""

SYSTEM_PROMPT = f"""You are an expert medical AI assistant designed to help pharmacists with diagnostic evaluations. Your role is to:

1. Analyze patient symptoms, vital signs, lab results, and medication history
2. Provide differential diagnoses with probability assessments
3. Recommend appropriate laboratory investigations
4. Suggest evidence-based therapeutic options
5. Identify red flags requiring immediate medical attention
6. Recommend specialist referrals when appropriate

IMPORTANT GUIDELINES:
- Always provide structured JSON output as specified
- Consider drug interactions and contraindications
- Prioritize patient safety over convenience
- Be conservative in recommendations
- Always recommend physician consultation for serious conditions

Your response must be valid JSON in this exact format:
{_RESPONSE_SCHEMA}"""

PROBABILITY_SCALE = 100.0


def _demographics(context: PatientContext) -> List[str]:
    lines = []
    if context.age is not None:
        lines.append(f"- Age: {context.age} years")
    if context.sex:
        lines.append(f"- Gender: {context.sex}")
    if context.weight_kg:
        lines.append(f"- Weight: {context.weight_kg:g} kg")
    return lines


def _vitals(vitals: Dict[str, object]) -> List[str]:
    labels = (
        ("blood_pressure", "Blood Pressure", ""),
        ("heart_rate", "Heart Rate", " bpm"),
        ("temperature", "Temperature", "°C"),
        ("respiratory_rate", "Respiratory Rate", " breaths/min"),
        ("oxygen_saturation", "Oxygen Saturation", "%"),
    )
    return [
        f"- {label}: {vitals[key]}{suffix}"
        for key, label, suffix in labels
        if vitals.get(key) is not None
    ]


def _section(title: str, lines: List[str]) -> List[str]:
    return [f"{title}:", *lines, ""] if lines else []


def _common_sections(context: PatientContext) -> List[str]:
    parts: List[str] = []
    if context.lab_results:
        parts += _section(
            "LABORATORY RESULTS",
            [
                f"- {lab.test_name}: {lab.value}{(' ' + lab.unit) if lab.unit else ''}"
                f" (Reference: {lab.reference_range or 'n/a'})"
                f"{' [CRITICAL]' if lab.critical else ' [ABNORMAL]' if lab.abnormal else ''}"
                for lab in context.lab_results
            ],
        )
    parts += _section(
        "CURRENT MEDICATIONS",
        [
            "- " + " ".join(part for part in (med.name, med.dosage, med.frequency) if part)
            for med in context.current_medications
        ],
    )
    if context.allergies:
        parts += _section("KNOWN ALLERGIES", ["- " + ", ".join(context.allergies)])
    if context.conditions:
        parts += _section("MEDICAL HISTORY", ["- " + ", ".join(context.conditions)])
    return parts


def build_diagnostic_prompt(context: PatientContext) -> str:
    parts = ["PATIENT PRESENTATION FOR DIAGNOSTIC ANALYSIS:", ""]
    parts += _section("PATIENT DEMOGRAPHICS", _demographics(context))
    symptoms = context.symptoms or {}
    symptom_lines = [
        f"- Onset: {symptoms.get('onset', 'unknown')}",
        f"- Duration: {symptoms.get('duration', 'unknown')}",
        f"- Severity: {symptoms.get('severity', 'unknown')}",
    ]
    if symptoms.get("subjective"):
        symptom_lines.append("- Subjective complaints: " + ", ".join(symptoms["subjective"]))
    if symptoms.get("objective"):
        symptom_lines.append("- Objective findings: " + ", ".join(symptoms["objective"]))
    parts += _section("PRESENTING SYMPTOMS", symptom_lines)
    parts += _section("VITAL SIGNS", _vitals(context.vitals or {}))
    parts += _common_sections(context)
    if context.social_history:
        parts += _section(
            "SOCIAL HISTORY",
            [f"- {key.title()}: {value}" for key, value in context.social_history.items() if value],
        )
    parts.append("Please provide a comprehensive diagnostic analysis in the specified JSON format.")
    return "\n".join(parts)


def build_lab_interpretation_prompt(context: PatientContext) -> str:
    parts = ["LABORATORY RESULTS FOR CLINICAL INTERPRETATION:", ""]
    parts += _section("PATIENT CONTEXT", _demographics(context))
    parts += _common_sections(context)
    clinical = []
    if context.indication:
        clinical.append(f"- Indication: {context.indication}")
    if context.clinical_question:
        clinical.append(f"- Clinical Question: {context.clinical_question}")
    parts += _section("CLINICAL CONTEXT", clinical)
    parts.append(
        "Interpret the laboratory results, flag drug-lab interactions with current medications "
        "and any dose adjustments they require, and respond in the specified JSON format."
    )
    return "\n".join(parts)


def build_messages(kind: AnalysisKind, context: PatientContext) -> List[Dict[str, str]]:
    """Return the system and user messages for ``kind``."""

    if AnalysisKind(kind) is AnalysisKind.LAB_INTERPRETATION:
        system = SYSTEM_PROMPT + "\n" + _LAB_EXTENSION
        user = build_lab_interpretation_prompt(context)
    else:
        system = SYSTEM_PROMPT
        user = build_diagnostic_prompt(context)
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


__all__ = [
    "PROBABILITY_SCALE",
    "SYSTEM_PROMPT",
    "build_diagnostic_prompt",
    "build_lab_interpretation_prompt",
    "build_messages",
]
