"""Collaborator protocols.

The escrow core talks to three outside services: a persistence store, a
payment gateway, and a notification dispatcher. Each is a Protocol
(structural subtyping) so concrete implementations don't need to inherit
from a base class, they just need to match the shape.

The domain layer has ZERO imports from SQLAlchemy, Redis, or any payment SDK.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol, runtime_checkable

from meetup_escrow.domain.enums import EventType, TransactionStatus
from meetup_escrow.domain.models import (
    Review,
    StatisticsDelta,
    Transaction,
    TransitionRecord,
    UserStatistics,
)


@dataclass(frozen=True)
class DomainEvent:
    """Notification payload handed to the dispatcher.

    Attributes:
        event_type: What happened.
        transaction_id: The transaction concerned.
        actor_id: Who triggered it (user id or "system").
        recipients: User ids that should hear about it.
        occurred_at: When it happened.
        data: Event-specific details (status, timing tier, receipt, ...).
    """

    event_type: EventType
    transaction_id: str
    actor_id: str
    recipients: tuple[str, ...]
    occurred_at: datetime
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize for transport (Redis pub/sub, logs)."""
        return {
            "event_type": self.event_type.value,
            "transaction_id": self.transaction_id,
            "actor_id": self.actor_id,
            "recipients": list(self.recipients),
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }


@runtime_checkable
class PersistenceStore(Protocol):
    """Durable storage for transactions, reviews, and user statistics.

    Concrete implementations:
        - infrastructure/database/repositories.py (SQLAlchemy async)
        - infrastructure/memory_store.py          (in-process, for tests and demos)
    """

    async def create_transaction(
        self, transaction: Transaction, record: TransitionRecord
    ) -> Transaction:
        """Insert a new transaction at version 0 together with its creation record."""
        ...

    async def load_transaction(self, transaction_id: str) -> Transaction:
        """Fetch a transaction.

        Raises:
            TransactionNotFoundError: If no such transaction exists.
        """
        ...

    async def save_transaction(
        self,
        transaction: Transaction,
        expected_version: int,
        record: TransitionRecord | None = None,
    ) -> Transaction:
        """Persist a transaction only if the stored version still matches.

        Returns the saved transaction with its version bumped by one. The
        optional record is appended to the audit trail atomically.

        Raises:
            VersionConflictError: If another writer got there first.
            TransactionNotFoundError: If the transaction does not exist.
        """
        ...

    async def list_transactions_by_status(
        self, statuses: Iterable[TransactionStatus]
    ) -> list[Transaction]:
        """Fetch every transaction in one of the given statuses, oldest first."""
        ...

    async def list_transactions_for_user(self, user_id: str) -> list[Transaction]:
        """Fetch every transaction a user is buyer or seller on, newest first."""
        ...

    async def list_events(self, transaction_id: str) -> list[TransitionRecord]:
        """Fetch the audit trail of a transaction in chronological order."""
        ...

    async def ensure_user_statistics(self, user_id: str) -> UserStatistics:
        """Create the statistics row for a user if it does not exist yet."""
        ...

    async def load_user_statistics(self, user_id: str) -> UserStatistics:
        """Fetch a user's statistics (a zeroed snapshot if none exist)."""
        ...

    async def apply_statistics_delta(
        self, user_id: str, delta: StatisticsDelta, idempotency_key: str
    ) -> UserStatistics:
        """Atomically record the idempotency marker and apply the delta.

        Raises:
            DuplicateAdjustmentError: If the marker is already present.
        """
        ...

    async def save_review(self, review: Review) -> Review:
        """Insert a review.

        Raises:
            DuplicateReviewError: If the rater already reviewed the transaction.
        """
        ...

    async def list_reviews_for_user(self, user_id: str) -> list[Review]:
        """Fetch reviews received by a user, newest first."""
        ...


@runtime_checkable
class PaymentGateway(Protocol):
    """Card/payment provider holding escrowed funds.

    Every call carries an idempotency key so a retried request never
    captures, releases, or refunds twice.
    """

    async def capture_deposit(self, amount: Decimal, *, idempotency_key: str) -> str:
        """Capture a deposit and return its authorization id."""
        ...

    async def release(
        self, authorization_id: str, *, amount: Decimal, idempotency_key: str
    ) -> str:
        """Release held funds to the seller and return a receipt id."""
        ...

    async def refund(
        self, authorization_id: str, *, amount: Decimal, idempotency_key: str
    ) -> str:
        """Refund held funds to the buyer and return a receipt id."""
        ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Fire-and-forget event sink (email/SMS/push fan-out lives behind it)."""

    async def emit(self, event: DomainEvent) -> None:
        ...
