"""
Transactional outbox.

Payment transitions write their notification event into ``outbox_events`` in
the same transaction as the status change. ``OutboxPublisher`` drains the
table into a ``Notifier``; a delivery failure leaves the event unpublished so
it is retried on the next batch and never touches payment state.
"""
import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.database.connection import get_session_factory
from payment_orchestrator.database.models import OutboxEvent, utcnow
from payment_orchestrator.monitoring.metrics import metrics

from .notifications import LoggingNotifier, Notifier

logger = structlog.get_logger(__name__)


def write_outbox_event(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    event_type: str,
    payload: Dict[str, Any],
    aggregate_type: str = "payment",
) -> OutboxEvent:
    """
    Add an event to the outbox within the caller's transaction.

    Args:
        db: Session of the transaction performing the domain change
        aggregate_id: Payment id
        event_type: Event type (e.g. 'payment.completed')
        payload: Event payload
        aggregate_type: Aggregate type

    Returns:
        OutboxEvent: The pending row
    """
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Publishes events from the outbox table to a notifier.

    Delivery per batch:
    1. Read unpublished events in creation order
    2. Hand each one to the notifier
    3. Mark delivered events as published
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            notifier: Destination of events (defaults to LoggingNotifier)
            session_factory: Session factory (defaults to the global one)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
        """
        self.notifier = notifier or LoggingNotifier()
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if delivered, False otherwise
        """
        start_time = time.time()
        try:
            event_data = {
                "id": event.id,
                "aggregate_id": str(event.aggregate_id),
                "aggregate_type": event.aggregate_type,
                "event_type": event.event_type,
                "payload": event.payload,
                "created_at": event.created_at.isoformat(),
            }

            await self.notifier.notify(event_data)

            metrics.record_outbox_event_published(event.event_type, time.time() - start_time)
            logger.info(
                "outbox_event_published",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=str(event.aggregate_id),
            )
            return True

        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
        )
        await db.execute(stmt)
        await db.commit()

        logger.info("outbox_events_marked_published", count=len(event_ids))

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

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids = []
                for event in events:
                    if await self._publish_event(event):
                        published_ids.append(event.id)

                await self._mark_as_published(db, published_ids)

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(events) - len(published_ids),
                )
                return len(published_ids)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events until ``stop`` is called.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # More may be waiting
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

    async def get_pending_count(self) -> int:
        """
        Get count of pending unpublished events.

        Returns:
            int: Number of unpublished events
        """
        async with self._sessions()() as db:
            stmt = (
                select(func.count())
                .select_from(OutboxEvent)
                .where(OutboxEvent.published.is_(False))
            )
            return int((await db.execute(stmt)).scalar_one())
