"""Notification boundary fed by the transactional outbox."""
from typing import Any, Dict, Protocol

import structlog

logger = structlog.get_logger(__name__)

TITLES = {
    "payment.completed": {"fa": "پرداخت موفق", "en": "Payment Successful"},
    "payment.failed": {"fa": "پرداخت ناموفق", "en": "Payment Failed"},
    "payment.refunded": {"fa": "بازگشت وجه", "en": "Payment Refunded"},
}


class Notifier(Protocol):
    """
    Delivers payment outcome notifications.

    Raising signals a delivery failure; the outbox keeps the event and
    retries it on the next batch.
    """

    async def notify(self, event: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Notifier that records each event in the structured log."""

    def __init__(self, locale: str = "fa") -> None:
        self.locale = locale

    async def notify(self, event: Dict[str, Any]) -> None:
        event_type = event.get("event_type", "")
        payload = event.get("payload") or {}
        title = TITLES.get(event_type, {}).get(self.locale, event_type)

        logger.info(
            "payment_notification_sent",
            event_type=event_type,
            title=title,
            user_id=payload.get("user_id"),
            order_id=payload.get("order_id"),
            payment_id=event.get("aggregate_id"),
        )
