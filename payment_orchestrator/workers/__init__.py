"""Background workers."""
from .outbox_publisher import start_outbox_publisher
from .payment_sweeper import PaymentSweeper, start_payment_sweeper

__all__ = ["PaymentSweeper", "start_outbox_publisher", "start_payment_sweeper"]
