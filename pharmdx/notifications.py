"""Critical-alert and escalation notifications."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict, deque
from threading import Lock
from typing import Any, Deque, Dict, List, Mapping, Optional, Protocol

import structlog
from sqlalchemy import Engine, func, select

from .db.models import notifications
from .time_utils import isoformat_z, utc_now


logger = structlog.get_logger(__name__)


class NotificationDispatcher(Protocol):
    def notify(self, recipient: str, channel: str, payload: Mapping[str, Any]) -> None: ...


class NotificationService:
    """Persist notifications and keep a short per-recipient history in memory."""

    def __init__(self, engine: Engine, *, history_limit: int = 20) -> None:
        self._engine = engine
        self._history_limit = max(1, history_limit)
        self._recent: Dict[str, Deque[Dict[str, Any]]] = defaultdict(
            lambda: deque(maxlen=self._history_limit)
        )
        self._lock = Lock()

    @staticmethod
    def _normalise_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
        kind = str(payload.get("kind") or payload.get("type") or "notification")
        title = str(payload.get("title") or kind.replace("_", " ").title())
        return {
            "kind": kind,
            "title": title,
            "message": payload.get("message"),
            "severity": str(payload.get("severity") or "info"),
            "tenant_id": payload.get("tenant_id"),
        }

    def notify(self, recipient: str, channel: str, payload: Mapping[str, Any]) -> None:
        record = self._normalise_payload(payload)
        now = utc_now()
        notification_id = str(uuid.uuid4())
        with self._engine.begin() as conn:
            conn.execute(
                notifications.insert().values(
                    id=notification_id,
                    tenant_id=record["tenant_id"],
                    recipient_id=recipient,
                    channel=channel,
                    kind=record["kind"],
                    title=record["title"],
                    message=record["message"],
                    severity=record["severity"],
                    payload=json.dumps(dict(payload), default=str),
                    created_at=now,
                )
            )
        item = {
            "id": notification_id,
            "channel": channel,
            "createdAt": isoformat_z(now),
            "isRead": False,
            **record,
        }
        with self._lock:
            self._recent[recipient].appendleft(item)
        logger.info(
            "notification_recorded",
            recipient=recipient,
            channel=channel,
            kind=record["kind"],
            severity=record["severity"],
        )

    def recent(self, recipient: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(item) for item in self._recent.get(recipient, ())]

    def unread_count(self, recipient: str, *, tenant_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(notifications).where(
            notifications.c.recipient_id == recipient,
            notifications.c.is_read == False,  # noqa: E712
        )
        if tenant_id is not None:
            stmt = stmt.where(notifications.c.tenant_id == tenant_id)
        with self._engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())


class BestEffortNotifier:
    """Wrap a dispatcher so delivery failures are logged and swallowed."""

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher

    def notify(self, recipient: str, channel: str, payload: Mapping[str, Any]) -> bool:
        try:
            self._dispatcher.notify(recipient, channel, payload)
        except Exception:
            logger.exception(
                "notification_failed",
                recipient=recipient,
                channel=channel,
                kind=payload.get("kind"),
            )
            return False
        return True


__all__ = ["BestEffortNotifier", "NotificationDispatcher", "NotificationService"]
