"""
Payment sweeper background worker.

Resolves what callbacks left open:
- ``processing`` payments whose callback never arrived are settled or failed
  from the gateway status inquiry
- completed payments whose order was never marked paid are reconciled again
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.config import get_settings
from payment_orchestrator.core.exceptions import PaymentError
from payment_orchestrator.core.orchestrator import PaymentOrchestrator
from payment_orchestrator.core.repository import PaymentRepository
from payment_orchestrator.database.connection import close_db, init_db
from payment_orchestrator.database.models import utcnow
from payment_orchestrator.gateways.base import GatewayTransportError
from payment_orchestrator.monitoring.logging import setup_logging
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentSweeper:
    """
    Periodic resolution of stale payments.

    Each record is handled independently; a gateway outage on one record
    leaves it for the next run and does not stop the batch.
    """

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        stale_after_seconds: int = 900,
        batch_size: int = 50,
        interval_seconds: float = 300.0,
    ):
        """
        Initialize sweeper.

        Args:
            orchestrator: Orchestrator used to settle and reconcile
            session_factory: Session factory (defaults to the orchestrator's)
            stale_after_seconds: Age after which a processing payment is inquired
            batch_size: Records handled per task and run
            interval_seconds: Pause between runs
        """
        self.orchestrator = orchestrator
        self.session_factory = session_factory or orchestrator.session_factory
        self.stale_after_seconds = stale_after_seconds
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.repository = PaymentRepository()
        self._running = False

    async def sweep_processing(self) -> Dict[str, int]:
        """
        Settle or fail processing payments older than the stale threshold.

        Returns:
            Dict[str, int]: Count per outcome
        """
        older_than = utcnow() - timedelta(seconds=self.stale_after_seconds)
        async with self.session_factory() as db:
            payment_ids = await self.repository.stale_processing(db, older_than, self.batch_size)

        counts = {"settled": 0, "failed": 0, "unchanged": 0, "errors": 0}
        for payment_id in payment_ids:
            try:
                result = await self.orchestrator.settle_from_inquiry(payment_id)
            except (GatewayTransportError, PaymentError) as e:
                logger.warning(
                    "sweeper_inquiry_failed",
                    payment_id=str(payment_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                counts["errors"] += 1
                metrics.record_sweep("inquiry", "error")
                continue

            if result is None:
                outcome = "unchanged"
            elif result.success:
                outcome = "settled"
            else:
                outcome = "failed" if not result.retryable else "unchanged"
            counts[outcome] += 1
            metrics.record_sweep("inquiry", outcome)

        return counts

    async def sweep_unreconciled(self) -> Dict[str, int]:
        """
        Retry marking orders paid for completed payments.

        Returns:
            Dict[str, int]: Count per outcome
        """
        async with self.session_factory() as db:
            payment_ids = await self.repository.unreconciled(db, self.batch_size)

        counts = {"reconciled": 0, "errors": 0}
        for payment_id in payment_ids:
            if await self.orchestrator.retry_reconciliation(payment_id):
                counts["reconciled"] += 1
                metrics.record_sweep("reconciliation", "reconciled")
            else:
                counts["errors"] += 1
                metrics.record_sweep("reconciliation", "error")

        return counts

    async def run_once(self) -> Dict[str, Dict[str, int]]:
        """
        Run both sweeps once.

        Returns:
            Dict[str, Dict[str, int]]: Counts per sweep
        """
        logger.info("payment_sweep_started")

        result = {
            "processing": await self.sweep_processing(),
            "reconciliation": await self.sweep_unreconciled(),
        }
        metrics.mark_sweep_run()

        logger.info("payment_sweep_completed", **result)
        return result

    async def start(self) -> None:
        """Run sweeps until ``stop`` is called."""
        self._running = True
        logger.info("payment_sweeper_started", interval_seconds=self.interval_seconds)

        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("payment_sweep_error", error=str(e))

                # Wake up regularly to notice a stop request
                remaining = self.interval_seconds
                while remaining > 0 and self._running:
                    step = min(remaining, 1.0)
                    await asyncio.sleep(step)
                    remaining -= step
        finally:
            logger.info("payment_sweeper_stopped")

    def stop(self) -> None:
        """Stop the sweeper loop."""
        self._running = False
        logger.info("payment_sweeper_stop_requested")


async def start_payment_sweeper(once: bool = False) -> None:
    """
    Start the sweeper worker.

    Args:
        once: Run a single sweep and exit
    """
    settings = get_settings()
    setup_logging(settings, service="sweeper")

    logger.info("payment_sweeper_worker_starting", once=once)
    await init_db()

    sweeper = PaymentSweeper(
        orchestrator=PaymentOrchestrator.from_settings(settings),
        stale_after_seconds=settings.sweeper_stale_after_seconds,
        batch_size=settings.sweeper_batch_size,
        interval_seconds=settings.sweeper_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("payment_sweeper_shutdown_signal_received", signal=sig)
        sweeper.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if once:
            await sweeper.run_once()
        else:
            await sweeper.start()
    finally:
        await close_db()
        logger.info("payment_sweeper_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Payment sweeper worker")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_payment_sweeper(once=args.once))


if __name__ == "__main__":
    main()
