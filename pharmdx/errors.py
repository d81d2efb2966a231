"""Error taxonomy shared by every stage of the diagnostic pipeline."""

from __future__ import annotations

import enum
from typing import Any, Dict, List, Optional, Sequence


class ErrorCode(str, enum.Enum):
    """Stable error codes surfaced to callers and stored on failed requests."""

    NO_CONSENT = "NO_CONSENT"
    DUPLICATE_ACTIVE_REQUEST = "DUPLICATE_ACTIVE_REQUEST"
    PATIENT_NOT_FOUND = "PATIENT_NOT_FOUND"
    REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
    RESULT_NOT_FOUND = "RESULT_NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_STATE = "INVALID_STATE"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"
    AI_TIMEOUT = "AI_TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    NO_JSON_FOUND = "NO_JSON_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    PROCESSING_TIMEOUT = "PROCESSING_TIMEOUT"
    MISSING_REASON = "MISSING_REASON"
    MISSING_MODIFICATIONS = "MISSING_MODIFICATIONS"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class PharmDxError(Exception):
    """Base exception carrying a stable :class:`ErrorCode` and a readable message."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.code = ErrorCode(code)
        self.message = message
        self.details = dict(details or {})
        super().__init__(f"{self.code.value}: {message}")

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class AIClientError(PharmDxError):
    """Raised by the AI client adapter once a logical call has definitively failed."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        status_code: Optional[int] = None,
        attempts: int = 0,
        retryable: bool = False,
    ) -> None:
        super().__init__(
            code,
            message,
            details={"status_code": status_code, "attempts": attempts},
        )
        self.status_code = status_code
        self.attempts = attempts
        self.retryable = retryable


class ResponseValidationError(PharmDxError):
    """Raised when model output cannot be turned into a structured analysis."""

    def __init__(self, code: ErrorCode, issues: Sequence[str]) -> None:
        self.issues: List[str] = list(issues)
        summary = "; ".join(self.issues) if self.issues else "invalid AI response"
        super().__init__(code, summary, details={"issues": self.issues})


class RequestCancelled(PharmDxError):
    """Raised at a stage boundary when a request was cancelled mid-flight."""

    def __init__(self, request_id: str) -> None:
        super().__init__(
            ErrorCode.REQUEST_CANCELLED,
            f"Diagnostic request {request_id} was cancelled during processing",
        )
        self.request_id = request_id


__all__ = [
    "AIClientError",
    "ErrorCode",
    "PharmDxError",
    "RequestCancelled",
    "ResponseValidationError",
]
