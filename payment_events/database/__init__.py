"""Database package for the payment-event core."""
from .connection import close_db, create_engine, create_session_factory, init_db, insert_for
from .models import (
    Account,
    Base,
    Job,
    Purchase,
    WebhookEventReceipt,
)

__all__ = [
    "Base",
    "Account",
    "Job",
    "Purchase",
    "WebhookEventReceipt",
    "close_db",
    "create_engine",
    "create_session_factory",
    "init_db",
    "insert_for",
]
