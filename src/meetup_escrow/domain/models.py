"""Domain records for transactions, reviews, and user statistics.

Plain frozen dataclasses: every change produces a new value via
dataclasses.replace(), so a rejected transition can never leave a
half-mutated record behind. Persistence implementations map these to and
from their own storage types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from meetup_escrow.domain.cancellation import is_last_minute
from meetup_escrow.domain.enums import (
    ActorRole,
    CancellationTiming,
    DisputeOutcome,
    EventType,
    TransactionStatus,
    TrustLevel,
)


@dataclass(frozen=True)
class Transaction:
    """One escrow transaction between a buyer and a seller.

    Attributes:
        version: Optimistic concurrency counter, bumped by every save.
        cancellation_timing: Stamped by the classifier during cancel/refund
            transitions only.
        settlement_action: Name of the event whose payment call is in
            flight. While set, no other transition may start.
    """

    id: str
    buyer_id: str
    seller_id: str
    listing_id: str
    amount: Decimal
    platform_fee: Decimal
    status: TransactionStatus
    created_at: datetime
    updated_at: datetime
    version: int = 0

    # Meetup
    scheduled_meetup_at: datetime | None = None
    meetup_location: str | None = None
    meetup_started_at: datetime | None = None

    # Deposit
    authorization_id: str | None = None
    deposit_submitted_at: datetime | None = None
    deposit_accepted_at: datetime | None = None

    # Outcome
    completed_at: datetime | None = None
    confirmed_by: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: ActorRole | None = None
    cancelled_by_user_id: str | None = None
    cancellation_reason: str | None = None
    cancellation_timing: CancellationTiming | None = None

    # Disputes
    dispute_reason: str | None = None
    disputed_by: str | None = None
    dispute_outcome: DisputeOutcome | None = None
    adjudicator_id: str | None = None
    resolved_at: datetime | None = None
    is_partial_refund: bool = False
    refunded_amount: Decimal | None = None

    # Settlement
    settlement_receipt: str | None = None
    settlement_action: str | None = None
    settlement_started_at: datetime | None = None
    needs_manual_review: bool = False
    manual_review_reason: str | None = None

    @property
    def seller_payout(self) -> Decimal:
        return self.amount - self.platform_fee

    @property
    def is_last_minute_cancellation(self) -> bool:
        return is_last_minute(self.cancellation_timing)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def role_of(self, user_id: str) -> ActorRole | None:
        """Return the role a user plays in this transaction, if any."""
        if user_id == self.buyer_id:
            return ActorRole.BUYER
        if user_id == self.seller_id:
            return ActorRole.SELLER
        return None

    def counterparty_of(self, user_id: str) -> str | None:
        if user_id == self.buyer_id:
            return self.seller_id
        if user_id == self.seller_id:
            return self.buyer_id
        return None


@dataclass(frozen=True)
class Review:
    """A 1-10 rating left by one party of a completed transaction."""

    transaction_id: str
    rater_id: str
    rated_id: str
    rating: int
    comment: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class UserStatistics:
    """Per-user reputation aggregate.

    Only ever changed through StatisticsDelta applications.
    """

    user_id: str
    trust_score: float
    completed_transactions: int = 0
    cancellations: int = 0
    cancellations_as_buyer: int = 0
    cancellations_as_seller: int = 0
    last_minute_cancels_as_buyer: int = 0
    last_minute_cancels_as_seller: int = 0
    disputes_lost: int = 0
    rating_count: int = 0
    average_rating: float = 0.0
    version: int = 0
    updated_at: datetime | None = None

    @property
    def total_involvements(self) -> int:
        return self.completed_transactions + self.cancellations

    @property
    def last_minute_cancel_rate(self) -> float:
        """Share of this user's cancellations that were last-minute (0-1)."""
        if self.cancellations == 0:
            return 0.0
        last_minute = self.last_minute_cancels_as_buyer + self.last_minute_cancels_as_seller
        return last_minute / self.cancellations

    @property
    def trust_level(self) -> TrustLevel:
        completed = self.completed_transactions
        if self.trust_score >= 90 and completed >= 20:
            return TrustLevel.ELITE
        if self.trust_score >= 75 and completed >= 10:
            return TrustLevel.TRUSTED
        if self.trust_score >= 60 and completed >= 5:
            return TrustLevel.ESTABLISHED
        if self.total_involvements >= 1:
            return TrustLevel.BUILDING
        return TrustLevel.NEW


@dataclass(frozen=True)
class StatisticsDelta:
    """Increment-style change to one user's statistics.

    Counters are added, trust_score_change is added and then clamped to
    [0, 100], and a rating (if present) is folded into the running average.
    """

    completed_transactions: int = 0
    cancellations: int = 0
    cancellations_as_buyer: int = 0
    cancellations_as_seller: int = 0
    last_minute_cancels_as_buyer: int = 0
    last_minute_cancels_as_seller: int = 0
    disputes_lost: int = 0
    trust_score_change: float = 0.0
    rating: int | None = None

    @property
    def is_empty(self) -> bool:
        return self == StatisticsDelta()


@dataclass(frozen=True)
class TransitionRecord:
    """Append-only audit entry written together with a transaction save."""

    transaction_id: str
    event_type: EventType
    old_status: TransactionStatus | None
    new_status: TransactionStatus
    actor_id: str
    created_at: datetime
    metadata: dict = field(default_factory=dict)
