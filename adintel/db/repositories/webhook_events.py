from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adintel.db.models import WebhookEvent
from adintel.db.repositories.base import Repository


class WebhookEventsRepository(Repository):
    def __init__(self, session: Session) -> None:
        super().__init__(session)

    def seen(self, event_id: str) -> bool:
        stmt = select(WebhookEvent.id).where(WebhookEvent.id == event_id)
        return self.session.execute(stmt).first() is not None

    def record(self, *, event_id: str, source: str, event_type: str, payload: dict[str, Any]) -> bool:
        """Store the event id; returns False when it was already recorded."""
        if self.seen(event_id):
            return False
        self.session.add(
            WebhookEvent(id=event_id, source=source, event_type=event_type, payload=payload)
        )
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            return False
        return True
