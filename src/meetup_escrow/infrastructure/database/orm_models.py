"""SQLAlchemy 2.0 ORM models for the meetup escrow service.

Five tables:
    1. transactions         — Escrow transactions between a buyer and a seller.
    2. user_statistics      — Per-user reputation aggregates.
    3. applied_adjustments  — Idempotency markers for statistics deltas.
    4. reviews              — 1-10 ratings left after a completed transaction.
    5. transaction_events   — Append-only audit log of every state change.

Design decisions:
    - String(36) UUID primary keys so the same schema runs on PostgreSQL and SQLite.
    - Decimal for money (no floating point rounding errors).
    - JSON columns (JSONB on PostgreSQL) for audit metadata.
    - CHECK constraints on status, amount, rating and trust score bounds.
    - Optimistic concurrency: transactions.version is compared on every UPDATE.
    - transaction_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from meetup_escrow.domain.enums import LEGACY_STATUS_ALIASES, TransactionStatus

_JSON = JSON().with_variant(JSONB(), "postgresql")

_STORED_STATUSES = sorted({s.value for s in TransactionStatus} | set(LEGACY_STATUS_ALIASES))


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. transactions
# ---------------------------------------------------------------------------
class TransactionRow(Base):
    """An escrow transaction for one listing."""

    __tablename__ = "transactions"

    # --- Primary Key ---
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    # --- Participants ---
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    authorization_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Payment gateway hold on the captured deposit",
    )
    settlement_receipt: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_partial_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refunded_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        comment="Lifecycle state (guarded by TransactionStateMachine)",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic concurrency counter",
    )

    # --- Meetup ---
    scheduled_meetup_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    meetup_location: Mapped[str | None] = mapped_column(String(500))
    meetup_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # --- Deposit ---
    deposit_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deposit_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # --- Outcome ---
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    confirmed_by: Mapped[str | None] = mapped_column(String(64))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(String(10))
    cancelled_by_user_id: Mapped[str | None] = mapped_column(String(64))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancellation_timing: Mapped[str | None] = mapped_column(String(30))

    # --- Disputes ---
    dispute_reason: Mapped[str | None] = mapped_column(Text)
    disputed_by: Mapped[str | None] = mapped_column(String(64))
    dispute_outcome: Mapped[str | None] = mapped_column(String(20))
    adjudicator_id: Mapped[str | None] = mapped_column(String(64))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # --- Settlement claim ---
    settlement_action: Mapped[str | None] = mapped_column(
        String(40),
        comment="Event whose payment call is in flight; blocks other transitions",
    )
    settlement_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    needs_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manual_review_reason: Mapped[str | None] = mapped_column(Text)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    # --- Table Constraints & Indexes ---
    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{s}'" for s in _STORED_STATUSES) + ")",
            name="ck_transaction_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_transaction_positive_amount"),
        CheckConstraint("buyer_id <> seller_id", name="ck_transaction_distinct_parties"),
        Index("idx_transaction_status", "status"),
        Index("idx_transaction_buyer", "buyer_id"),
        Index("idx_transaction_seller", "seller_id"),
        Index("idx_transaction_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<TransactionRow id={self.id} status={self.status} v{self.version}>"


# ---------------------------------------------------------------------------
# 2. user_statistics
# ---------------------------------------------------------------------------
class UserStatisticsRow(Base):
    """Reputation aggregate. Only changed by increment-style UPDATEs."""

    __tablename__ = "user_statistics"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trust_score: Mapped[float] = mapped_column(Float, nullable=False)
    completed_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancellations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancellations_as_buyer: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancellations_as_seller: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_minute_cancels_as_buyer: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_minute_cancels_as_seller: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputes_lost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_rating: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "trust_score >= 0 AND trust_score <= 100", name="ck_stats_trust_bounds"
        ),
    )

    def __repr__(self) -> str:
        return f"<UserStatisticsRow user={self.user_id} trust={self.trust_score}>"


# ---------------------------------------------------------------------------
# 3. applied_adjustments
# ---------------------------------------------------------------------------
class AppliedAdjustmentRow(Base):
    """Marker proving a statistics delta was applied.

    The primary key is the idempotency key, so a second insert fails and the
    enclosing unit of work (marker + delta) rolls back.
    """

    __tablename__ = "applied_adjustments"

    idempotency_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


# ---------------------------------------------------------------------------
# 4. reviews
# ---------------------------------------------------------------------------
class ReviewRow(Base):
    __tablename__ = "reviews"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    transaction_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    rater_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rated_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("transaction_id", "rater_id", name="uq_review_per_rater"),
        CheckConstraint("rating >= 1 AND rating <= 10", name="ck_review_rating_range"),
        Index("idx_review_rated", "rated_id"),
    )


# ---------------------------------------------------------------------------
# 5. transaction_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class TransactionEventRow(Base):
    """Immutable audit record of a transaction state change.

    Written in the same database transaction as the versioned save it
    describes.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20))
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, default="system")
    metadata_json: Mapped[dict | None] = mapped_column("metadata", _JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_transaction", "transaction_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionEventRow type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )
