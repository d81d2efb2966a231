"""AI-assisted clinical decision support for pharmacist review."""

from .config import Settings, get_settings
from .domain import (
    AdjustmentReport,
    AnalysisKind,
    AnalysisOutcome,
    DiagnosticRequest,
    DiagnosticResult,
    RequestStatus,
    ReviewAction,
)
from .errors import ErrorCode, PharmDxError
from .orchestrator import DiagnosticOrchestrator
from .review import ReviewWorkflow
from .service import PharmDxServices, build_services

__version__ = "0.1.0"

__all__ = [
    "AdjustmentReport",
    "AnalysisKind",
    "AnalysisOutcome",
    "DiagnosticOrchestrator",
    "DiagnosticRequest",
    "DiagnosticResult",
    "ErrorCode",
    "PharmDxError",
    "PharmDxServices",
    "RequestStatus",
    "ReviewAction",
    "ReviewWorkflow",
    "Settings",
    "build_services",
    "get_settings",
]
