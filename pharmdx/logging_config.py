"""structlog setup for hosts embedding the diagnostic pipeline.

Library modules only call ``structlog.get_logger(__name__)``; the host calls
:func:`configure_logging` once at start-up.  Request ids bound by the
orchestrator through ``structlog.contextvars`` appear on every line logged
while a request is processed.
"""

from __future__ import annotations

import logging
import os
from typing import Any, List, Optional

import structlog


def _shared_processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(level: Optional[str] = None, *, json_logs: Optional[bool] = None) -> None:
    """Route structlog through stdlib logging.

    ``level`` defaults to ``PHARMDX_LOG_LEVEL`` (INFO).  Output is JSON unless
    ``json_logs`` is false or ``PHARMDX_LOG_FORMAT=console``.
    """

    level_name = (level or os.getenv("PHARMDX_LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = os.getenv("PHARMDX_LOG_FORMAT", "json").strip().lower() != "console"
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format="%(message)s")

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[*_shared_processors(), renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


__all__ = ["configure_logging"]
