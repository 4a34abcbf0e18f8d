"""
Outbox delivery of operational alerts.

Notifications land in ``outbox_events`` after the core transaction commits;
this publisher reads unpublished rows and hands them to the alert channel.
Delivery is at-least-once; an event is retried on later batches until it
succeeds or runs out of attempts.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.periods import utcnow
from commission_engine.database.connection import get_session_factory
from commission_engine.database.models import OutboxEvent
from commission_engine.integrations.alert_client import AlertClient
from commission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[Any]]


class OutboxPublisher:
    """
    Publishes events from the outbox table to the alert channel.

    1. Read unpublished events that still have attempts left
    2. Deliver each one
    3. Mark delivered events published, bump attempts on the rest
    """

    def __init__(
        self,
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 5,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine delivering one event (alert client by default)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
            max_attempts: Deliveries tried before an event is abandoned
            session_factory: Factory for the publisher's sessions
        """
        self.publisher_func = publisher_func or self._send_alert
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self.session_factory = session_factory
        self._alert_client: Optional[AlertClient] = None
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    def _sessions(self) -> Callable[[], AsyncSession]:
        return self.session_factory or get_session_factory()

    async def _send_alert(self, event_data: Dict[str, Any]) -> None:
        if self._alert_client is None:
            self._alert_client = AlertClient()
        payload = event_data["payload"]
        await self._alert_client.send(
            payload.get("message", event_data["event_type"]),
            payload.get("data"),
            payload.get("priority", "medium"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.published.is_(False),
                OutboxEvent.attempts < self.max_attempts,
            )
            .order_by(OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            await self.publisher_func(
                {
                    "id": event.id,
                    "aggregate_id": event.aggregate_id,
                    "aggregate_type": event.aggregate_type,
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "created_at": event.created_at.isoformat() if event.created_at else None,
                }
            )
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                attempt=event.attempts + 1,
                error=str(e),
            )
            metrics.record_outbox_event_published(event.event_type, "failed")
            return False

        metrics.record_outbox_event_published(event.event_type, "published")
        return True

    @staticmethod
    async def _record_attempts(db: AsyncSession, event_ids: List[int], delivered: bool) -> None:
        if not event_ids:
            return
        values: Dict[str, Any] = {"attempts": OutboxEvent.attempts + 1}
        if delivered:
            values.update(published=True, published_at=utcnow())
        await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self._sessions()() as db:
            try:
                events = await self._fetch_unpublished_events(db)
                if not events:
                    return 0

                published_ids = []
                failed_ids = []
                for event in events:
                    if await self._publish_event(event):
                        published_ids.append(event.id)
                    else:
                        failed_ids.append(event.id)

                await self._record_attempts(db, published_ids, delivered=True)
                await self._record_attempts(db, failed_ids, delivered=False)
                await db.commit()

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(failed_ids),
                )
                return len(published_ids)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def get_pending_count(self) -> int:
        """Number of events still awaiting delivery."""
        async with self._sessions()() as db:
            count = await db.scalar(
                select(func.count(OutboxEvent.id)).where(
                    OutboxEvent.published.is_(False),
                    OutboxEvent.attempts < self.max_attempts,
                )
            )
        metrics.set_outbox_queue_depth(count or 0)
        return count or 0

    async def start(self) -> None:
        """Poll and publish until ``stop`` is called."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    await self.get_pending_count()

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")
