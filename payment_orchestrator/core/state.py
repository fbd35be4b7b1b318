"""
Payment lifecycle state machine.

Within one attempt a payment only moves forward:

    pending → processing → completed → refunded
       ↓          ↓
     failed    failed | cancelled

A failed or cancelled record can be reused when the same order is paid
again. Reuse starts a new attempt cycle on the same row, back at
``pending``; it never reopens a completed or refunded payment.
"""
from enum import Enum
from typing import Dict, FrozenSet


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class InvalidTransitionError(Exception):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, current: PaymentStatus, target: PaymentStatus):
        super().__init__(f"Cannot transition from {current.value} to {target.value}")
        self.current = current
        self.target = target


TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.CANCELLED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.REFUNDED: frozenset(),
}

REUSABLE_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED})


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Return True if ``current → target`` is a legal transition."""
    return PaymentStatus(target) in TRANSITIONS[PaymentStatus(current)]


def ensure_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """
    Validate a transition.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(PaymentStatus(current), PaymentStatus(target))
