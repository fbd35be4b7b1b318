"""Database package for payment orchestration."""
from .connection import (
    close_db,
    create_engine_for_url,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
)
from .models import Base, Order, OutboxEvent, Payment, PaymentEvent

__all__ = [
    "Base",
    "Order",
    "OutboxEvent",
    "Payment",
    "PaymentEvent",
    "close_db",
    "create_engine_for_url",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
]
