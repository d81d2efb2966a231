"""Wire the pipeline components against a database engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import Engine

from .ai_client import ChatCompletionClient
from .audit import SqlAuditSink
from .config import Settings, get_settings
from .db import build_engine, create_tables
from .notifications import NotificationService
from .orchestrator import DiagnosticOrchestrator
from .review import ReviewWorkflow
from .store import SqlDataStore


@dataclass
class PharmDxServices:
    engine: Engine
    store: SqlDataStore
    audit: SqlAuditSink
    notifications: NotificationService
    orchestrator: DiagnosticOrchestrator
    reviews: ReviewWorkflow


def build_services(
    engine: Optional[Engine] = None,
    settings: Optional[Settings] = None,
    *,
    ai_sdk: Any = None,
    create_schema: bool = True,
) -> PharmDxServices:
    """Build the orchestrator and review workflow sharing one store.

    ``ai_sdk`` replaces the ``openai.OpenAI`` client, which is otherwise
    created lazily on the first completion call.
    """

    settings = settings or get_settings()
    engine = engine if engine is not None else build_engine()
    if create_schema:
        create_tables(engine)
    store = SqlDataStore(engine)
    audit = SqlAuditSink(engine)
    notifications = NotificationService(engine)
    orchestrator = DiagnosticOrchestrator(
        store,
        ChatCompletionClient(settings, client=ai_sdk),
        settings=settings,
        audit=audit,
        notifier=notifications,
    )
    reviews = ReviewWorkflow(store, settings=settings, audit=audit, notifier=notifications)
    return PharmDxServices(
        engine=engine,
        store=store,
        audit=audit,
        notifications=notifications,
        orchestrator=orchestrator,
        reviews=reviews,
    )


__all__ = ["PharmDxServices", "build_services"]
