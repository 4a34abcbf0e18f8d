"""
Best-effort notifications emitted after a core transaction commits.

Each notification writes an inbox message for the recipient (when there is
one) and an outbox event carrying the operational alert, in its own session.
A failure here is logged and counted; it never reaches the caller, whose
financial effect has already committed.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.database.connection import get_session_factory
from commission_engine.database.models import CreatorProfile, InboxMessage, OutboxEvent
from commission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def format_lkr(cents: int) -> str:
    """Render an amount in cents as ``Rs. 9,000.00``."""
    sign = "-" if cents < 0 else ""
    rupees, remainder = divmod(abs(cents), 100)
    return f"{sign}Rs. {rupees:,}.{remainder:02d}"


@dataclass
class Notification:
    """An inbox message and/or operational alert about one aggregate."""

    event_type: str
    aggregate_type: str
    aggregate_id: str
    alert_message: str
    alert_data: Dict[str, Any] = field(default_factory=dict)
    priority: str = "medium"
    recipient_id: Optional[uuid.UUID] = None
    # Resolved to the creator's user id inside the notifier session
    recipient_creator_id: Optional[uuid.UUID] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    notification_type: str = "info"


class Notifier:
    """Writes notifications without ever raising."""

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        """
        Initialize notifier.

        Args:
            session_factory: Factory for the notifier's own sessions
        """
        self.session_factory = session_factory

    async def notify(self, notification: Notification) -> bool:
        """
        Persist a notification.

        Returns:
            bool: True if written, False if the write failed
        """
        try:
            factory = self.session_factory or get_session_factory()
            async with factory() as db:
                recipient_id = notification.recipient_id
                if recipient_id is None and notification.recipient_creator_id is not None:
                    recipient_id = await db.scalar(
                        select(CreatorProfile.user_id).where(
                            CreatorProfile.id == notification.recipient_creator_id
                        )
                    )
                if recipient_id is not None and notification.subject:
                    db.add(
                        InboxMessage(
                            recipient_id=recipient_id,
                            recipient_type="creator",
                            subject=notification.subject,
                            body=notification.body or notification.alert_message,
                            notification_type=notification.notification_type,
                        )
                    )
                db.add(
                    OutboxEvent(
                        aggregate_id=notification.aggregate_id,
                        aggregate_type=notification.aggregate_type,
                        event_type=notification.event_type,
                        payload={
                            "message": notification.alert_message,
                            "data": notification.alert_data,
                            "priority": notification.priority,
                        },
                    )
                )
                await db.commit()

        except Exception as e:
            logger.warning(
                "notification_failed",
                event_type=notification.event_type,
                aggregate_id=notification.aggregate_id,
                error=str(e),
            )
            metrics.record_notification("failed")
            return False

        metrics.record_notification("queued")
        return True
