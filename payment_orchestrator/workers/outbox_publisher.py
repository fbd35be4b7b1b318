"""
Outbox publisher background worker.

Continuously polls the outbox table and hands payment events to the notifier.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from payment_orchestrator.config import get_settings
from payment_orchestrator.core.notifications import LoggingNotifier, Notifier
from payment_orchestrator.core.outbox import OutboxPublisher
from payment_orchestrator.database.connection import close_db, init_db
from payment_orchestrator.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher(notifier: Optional[Notifier] = None) -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until SIGINT or SIGTERM.

    Args:
        notifier: Destination of events (defaults to LoggingNotifier)
    """
    settings = get_settings()
    setup_logging(settings, service="outbox")

    logger.info("outbox_publisher_worker_starting")
    await init_db()

    publisher = OutboxPublisher(
        notifier=notifier or LoggingNotifier(locale=settings.default_locale),
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
