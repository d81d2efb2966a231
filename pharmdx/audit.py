"""Audit trail for request lifecycle and review events."""

from __future__ import annotations

import json
from typing import List, Optional, Protocol

import structlog
from sqlalchemy import Engine, select

from .db.models import audit_log
from .domain import AuditEvent
from .time_utils import ensure_utc


logger = structlog.get_logger(__name__)


class AuditSink(Protocol):
    def log_event(self, event: AuditEvent) -> None: ...


class SqlAuditSink:
    """Append audit events to the ``audit_log`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def log_event(self, event: AuditEvent) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                audit_log.insert().values(
                    tenant_id=event.tenant_id,
                    event_type=event.event_type,
                    actor_id=event.actor_id,
                    entity_id=event.entity_id,
                    patient_id=event.patient_id,
                    details=json.dumps(event.details, default=str),
                    created_at=event.timestamp,
                )
            )

    def events_for(self, entity_id: str, *, tenant_id: Optional[str] = None) -> List[AuditEvent]:
        stmt = select(audit_log).where(audit_log.c.entity_id == entity_id)
        if tenant_id is not None:
            stmt = stmt.where(audit_log.c.tenant_id == tenant_id)
        stmt = stmt.order_by(audit_log.c.id)
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            AuditEvent(
                event_type=row["event_type"],
                tenant_id=row["tenant_id"],
                actor_id=row["actor_id"],
                entity_id=row["entity_id"],
                patient_id=row["patient_id"],
                details=json.loads(row["details"] or "{}"),
                timestamp=ensure_utc(row["created_at"]),
            )
            for row in rows
        ]


class BestEffortAudit:
    """Wrap an :class:`AuditSink` so failures are logged and never reach the caller."""

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink

    def log_event(self, event: AuditEvent) -> None:
        try:
            self._sink.log_event(event)
        except Exception:
            logger.exception(
                "audit_event_failed",
                event_type=event.event_type,
                entity_id=event.entity_id,
            )


__all__ = ["AuditSink", "BestEffortAudit", "SqlAuditSink"]
