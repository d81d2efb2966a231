"""Turn raw model text into a validated :class:`AnalysisPayload`.

Validation happens in two phases: the first balanced block in the text
that parses as JSON becomes a loose tree, then the tree is validated
against the closed, strict payload models.  All issues are collected
and reported together; nothing partially valid is returned.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterator, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from .errors import ErrorCode, ResponseValidationError
from .schemas import DEFAULT_CONFIDENCE_SCORE, DEFAULT_PROBABILITY_SCALE, AnalysisPayload


logger = structlog.get_logger(__name__)


def _balanced_blocks(text: str) -> Iterator[str]:
    """Yield each balanced ``{...}`` block, trying every opening brace in turn.

    Braces inside JSON strings (including escaped quotes) are ignored.
    """

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    yield text[start : index + 1]
                    break
        start = text.find("{", start + 1)


def _first_json_object(text: str) -> Tuple[Optional[Any], Optional[str], Optional[str]]:
    """Return ``(tree, block, last_error)`` for the first block that parses as JSON."""

    last_error: Optional[str] = None
    for block in _balanced_blocks(text):
        try:
            return json.loads(block), block, None
        except json.JSONDecodeError as exc:
            last_error = exc.msg
    return None, None, last_error


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` block in ``text`` that is valid JSON."""

    return _first_json_object(text)[1]


def _format_issue(error: Dict[str, Any]) -> str:
    path = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
    return f"{path}: {error.get('msg', 'invalid value')}"


def validate_response(
    raw_text: str,
    *,
    probability_scale: float = DEFAULT_PROBABILITY_SCALE,
    default_confidence: float = DEFAULT_CONFIDENCE_SCORE,
) -> AnalysisPayload:
    """Validate ``raw_text`` and return the structured analysis.

    ``probability_scale`` is the upper bound the model was asked to use for
    probabilities and the confidence score.  ``default_confidence`` is
    expressed on a 0-100 scale and substituted when the model's confidence
    score is missing or out of range.
    """

    if probability_scale <= 0:
        raise ValueError("probability_scale must be positive")

    tree, block, parse_error = _first_json_object(raw_text or "")
    if block is None:
        issue = f"<root>: {parse_error}" if parse_error else "<root>: no JSON object found in response"
        raise ResponseValidationError(ErrorCode.NO_JSON_FOUND, [issue])

    context = {
        "probability_scale": float(probability_scale),
        "default_confidence": float(default_confidence) * float(probability_scale) / 100.0,
    }
    try:
        payload = AnalysisPayload.model_validate(tree, strict=True, context=context)
    except ValidationError as exc:
        issues: List[str] = [_format_issue(error) for error in exc.errors()]
        logger.warning("ai_response_rejected", issue_count=len(issues), issues=issues[:10])
        raise ResponseValidationError(ErrorCode.VALIDATION_FAILED, issues) from exc

    logger.debug(
        "ai_response_validated",
        diagnoses=len(payload.differential_diagnoses),
        red_flags=len(payload.red_flags),
    )
    return payload


__all__ = ["extract_json_object", "validate_response"]
