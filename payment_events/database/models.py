"""SQLAlchemy database models for the payment-event core."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Purchase(Base):
    """
    Completed checkout sessions.

    One row per provider session id. Webhook re-deliveries update the row in
    place; nothing in the core ever deletes it.
    """

    __tablename__ = "purchases"

    session_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_total: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    items: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    integrity_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    integrity_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    raw_event: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("mode IN ('payment', 'subscription')", name="valid_purchase_mode"),
        CheckConstraint("length(currency) = 3", name="valid_purchase_currency"),
        Index("idx_purchases_integrity", "integrity_valid"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation used by API responses and tests."""
        return {
            "session_id": self.session_id,
            "mode": self.mode,
            "amount_total": self.amount_total,
            "currency": self.currency,
            "product_id": self.product_id,
            "items": self.items,
            "user_id": self.user_id,
            "integrity_token": self.integrity_token,
            "integrity_valid": self.integrity_valid,
            "raw_event": self.raw_event,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        """String representation of Purchase."""
        return (
            f"<Purchase(session_id={self.session_id}, amount={self.amount_total}, "
            f"integrity_valid={self.integrity_valid})>"
        )


class Job(Base):
    """
    Deferred work items.

    Status only ever moves pending -> done or pending -> error. A row left in
    pending after a crash is picked up by an operator replay, never
    automatically.
    """

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    outcome: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'done', 'error')", name="valid_job_status"),
        Index("idx_jobs_status_created", "status", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation used by API responses."""
        return {
            "id": str(self.id),
            "job_type": self.job_type,
            "payload": self.payload,
            "status": self.status,
            "outcome": self.outcome,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        """String representation of Job."""
        return f"<Job(id={self.id}, type={self.job_type}, status={self.status})>"


class Account(Base):
    """
    Per-user tier and usage counters.

    Tier changes only through verified payment events. Counters are bumped
    with a single conditional UPDATE so concurrent requests cannot jointly
    overshoot a limit.
    """

    __tablename__ = "accounts"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    api_call_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lore_drop_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_payment_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_refund: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_refund_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("tier IN ('free', 'premium', 'enterprise')", name="valid_tier"),
        CheckConstraint("api_call_count >= 0", name="non_negative_api_calls"),
        CheckConstraint("lore_drop_count >= 0", name="non_negative_lore_drops"),
    )

    def __repr__(self) -> str:
        """String representation of Account."""
        return (
            f"<Account(user_id={self.user_id}, tier={self.tier}, "
            f"api_calls={self.api_call_count}, lore_drops={self.lore_drop_count})>"
        )


class WebhookEventReceipt(Base):
    """
    Provider events already handled.

    An event is marked processed only after all of its effects (ledger write
    and job enqueues) have been persisted.
    """

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        """String representation of WebhookEventReceipt."""
        return f"<WebhookEventReceipt(event_id={self.event_id}, type={self.event_type})>"
