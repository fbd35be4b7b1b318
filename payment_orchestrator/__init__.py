"""
Payment orchestration service.

Initializes payments with third-party gateways, verifies their asynchronous
callbacks, reconciles settled payments with orders and performs refunds while
guaranteeing that one settlement credits an order exactly once.
"""

__version__ = "1.0.0"
