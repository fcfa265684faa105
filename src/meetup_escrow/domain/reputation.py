"""Reputation Adjustment Engine.

Turns a terminal transaction (or a review) into per-user StatisticsDelta
values. The engine is pure: it never touches storage. Application, including
the at-most-once guarantee, lives in services/reputation_service.py.

Outcome rules:
    COMPLETED               both parties +1 completed, trust reward per role
    CANCELLED / REFUNDED    cancelling party +1 cancellation (+ role counter,
                            + last-minute counter when last-minute), trust
                            penalty scaled by the timing tier
    DISPUTE_BUYER_FAVORED   seller loses: base refund penalty + dispute loss
    DISPUTE_SELLER_FAVORED  completion rules, buyer loses: dispute loss
    DISPUTE_SPLIT           no loser, no change
    DEPOSIT_REJECTED        no change
    *_REVIEW                rated party's running average

The shape of the trust curve is a TrustScorePolicy, not a constant.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from meetup_escrow.domain.enums import (
    ActorRole,
    CancellationTiming,
    DisputeOutcome,
    OutcomeKind,
    TransactionStatus,
)
from meetup_escrow.domain.models import (
    Review,
    StatisticsDelta,
    Transaction,
    UserStatistics,
)

MIN_RATING = 1
MAX_RATING = 10


@runtime_checkable
class TrustScorePolicy(Protocol):
    """Strategy deciding how much each outcome moves a trust score.

    All methods return non-negative magnitudes; the engine applies the sign.
    """

    def completion_reward(self, role: ActorRole) -> float:
        ...

    def cancellation_penalty(self, timing: CancellationTiming, role: ActorRole) -> float:
        ...

    def refund_penalty(self) -> float:
        ...

    def dispute_loss_penalty(self) -> float:
        ...


DEFAULT_CANCELLATION_PENALTIES: dict[CancellationTiming, float] = {
    CancellationTiming.LAST_MINUTE: 10.0,
    CancellationTiming.AFTER_SCHEDULED_TIME: 8.0,
    CancellationTiming.SAME_DAY: 6.0,
    CancellationTiming.ONE_DAY_BEFORE: 3.0,
    CancellationTiming.FEW_DAYS_BEFORE: 1.5,
    CancellationTiming.WELL_IN_ADVANCE: 0.5,
    CancellationTiming.UNSCHEDULED: 1.0,
}


@dataclass(frozen=True)
class TieredTrustPolicy:
    """Default policy: a fixed penalty per timing tier, same for both roles."""

    seller_reward: float = 2.0
    buyer_reward: float = 1.0
    penalties: Mapping[CancellationTiming, float] = field(
        default_factory=lambda: dict(DEFAULT_CANCELLATION_PENALTIES)
    )
    base_refund_penalty: float = 2.0
    dispute_penalty: float = 5.0

    def completion_reward(self, role: ActorRole) -> float:
        if role == ActorRole.SELLER:
            return self.seller_reward
        if role == ActorRole.BUYER:
            return self.buyer_reward
        return 0.0

    def cancellation_penalty(self, timing: CancellationTiming, role: ActorRole) -> float:
        return self.penalties.get(timing, 0.0)

    def refund_penalty(self) -> float:
        return self.base_refund_penalty

    def dispute_loss_penalty(self) -> float:
        return self.dispute_penalty


@dataclass(frozen=True)
class ReputationAdjustment:
    """Deltas produced by one outcome, keyed by user id."""

    transaction_id: str
    outcome_kind: OutcomeKind
    deltas: dict[str, StatisticsDelta] = field(default_factory=dict)

    def idempotency_key(self, user_id: str) -> str:
        return f"{self.transaction_id}:{self.outcome_kind.value}:{user_id}"


def outcome_kind_for(transaction: Transaction) -> OutcomeKind:
    """Classify a terminal transaction into the outcome kind it represents.

    Raises:
        ValueError: If the transaction is not terminal.
    """
    if not transaction.is_terminal:
        raise ValueError(
            f"Transaction {transaction.id} is not terminal ({transaction.status})"
        )
    if transaction.dispute_outcome is not None:
        return {
            DisputeOutcome.BUYER_FAVORED: OutcomeKind.DISPUTE_BUYER_FAVORED,
            DisputeOutcome.SELLER_FAVORED: OutcomeKind.DISPUTE_SELLER_FAVORED,
            DisputeOutcome.SPLIT: OutcomeKind.DISPUTE_SPLIT,
        }[transaction.dispute_outcome]
    return {
        TransactionStatus.COMPLETED: OutcomeKind.COMPLETED,
        TransactionStatus.CANCELLED: OutcomeKind.CANCELLED,
        TransactionStatus.REFUNDED: OutcomeKind.REFUNDED,
        TransactionStatus.DEPOSIT_REJECTED: OutcomeKind.DEPOSIT_REJECTED,
    }[transaction.status]


class ReputationAdjustmentEngine:
    """Computes statistics deltas for terminal outcomes and reviews."""

    def __init__(self, policy: TrustScorePolicy | None = None) -> None:
        self._policy = policy or TieredTrustPolicy()

    @property
    def policy(self) -> TrustScorePolicy:
        return self._policy

    def compute_outcome(self, transaction: Transaction) -> ReputationAdjustment:
        """Compute the deltas for a transaction's terminal outcome."""
        kind = outcome_kind_for(transaction)
        deltas: dict[str, StatisticsDelta] = {}

        if kind in (OutcomeKind.COMPLETED, OutcomeKind.DISPUTE_SELLER_FAVORED):
            deltas[transaction.seller_id] = self._completion_delta(ActorRole.SELLER)
            if kind == OutcomeKind.COMPLETED:
                deltas[transaction.buyer_id] = self._completion_delta(ActorRole.BUYER)
            else:
                deltas[transaction.buyer_id] = StatisticsDelta(
                    completed_transactions=1,
                    disputes_lost=1,
                    trust_score_change=-self._policy.dispute_loss_penalty(),
                )

        elif kind in (OutcomeKind.CANCELLED, OutcomeKind.REFUNDED):
            canceller = transaction.cancelled_by_user_id
            role = transaction.cancelled_by
            if canceller and role in (ActorRole.BUYER, ActorRole.SELLER):
                deltas[canceller] = self._cancellation_delta(
                    role, transaction.cancellation_timing or CancellationTiming.UNSCHEDULED
                )

        elif kind == OutcomeKind.DISPUTE_BUYER_FAVORED:
            deltas[transaction.seller_id] = StatisticsDelta(
                disputes_lost=1,
                trust_score_change=-(
                    self._policy.refund_penalty() + self._policy.dispute_loss_penalty()
                ),
            )

        return ReputationAdjustment(
            transaction_id=transaction.id, outcome_kind=kind, deltas=deltas
        )

    def compute_review(self, transaction: Transaction, review: Review) -> ReputationAdjustment:
        """Compute the rated party's delta for a review."""
        rater_role = transaction.role_of(review.rater_id)
        kind = (
            OutcomeKind.BUYER_REVIEW
            if rater_role == ActorRole.BUYER
            else OutcomeKind.SELLER_REVIEW
        )
        return ReputationAdjustment(
            transaction_id=transaction.id,
            outcome_kind=kind,
            deltas={review.rated_id: StatisticsDelta(rating=review.rating)},
        )

    def _completion_delta(self, role: ActorRole) -> StatisticsDelta:
        return StatisticsDelta(
            completed_transactions=1,
            trust_score_change=self._policy.completion_reward(role),
        )

    def _cancellation_delta(
        self, role: ActorRole, timing: CancellationTiming
    ) -> StatisticsDelta:
        last_minute = 1 if timing == CancellationTiming.LAST_MINUTE else 0
        as_buyer = role == ActorRole.BUYER
        return StatisticsDelta(
            cancellations=1,
            cancellations_as_buyer=1 if as_buyer else 0,
            cancellations_as_seller=0 if as_buyer else 1,
            last_minute_cancels_as_buyer=last_minute if as_buyer else 0,
            last_minute_cancels_as_seller=0 if as_buyer else last_minute,
            trust_score_change=-self._policy.cancellation_penalty(timing, role),
        )


def fold_delta(
    stats: UserStatistics,
    delta: StatisticsDelta,
    *,
    min_score: float = 0.0,
    max_score: float = 100.0,
) -> dict:
    """Return the field values of stats after applying delta.

    Used by stores that apply deltas in process; SQL stores express the same
    arithmetic as a single UPDATE.
    """
    values = {
        "completed_transactions": stats.completed_transactions + delta.completed_transactions,
        "cancellations": stats.cancellations + delta.cancellations,
        "cancellations_as_buyer": stats.cancellations_as_buyer + delta.cancellations_as_buyer,
        "cancellations_as_seller": stats.cancellations_as_seller + delta.cancellations_as_seller,
        "last_minute_cancels_as_buyer": (
            stats.last_minute_cancels_as_buyer + delta.last_minute_cancels_as_buyer
        ),
        "last_minute_cancels_as_seller": (
            stats.last_minute_cancels_as_seller + delta.last_minute_cancels_as_seller
        ),
        "disputes_lost": stats.disputes_lost + delta.disputes_lost,
        "trust_score": min(max_score, max(min_score, stats.trust_score + delta.trust_score_change)),
        "rating_count": stats.rating_count,
        "average_rating": stats.average_rating,
    }
    if delta.rating is not None:
        new_count = stats.rating_count + 1
        values["rating_count"] = new_count
        values["average_rating"] = (
            stats.average_rating + (delta.rating - stats.average_rating) / new_count
        )
    return values


@dataclass(frozen=True)
class ReputationSummary:
    """Read model combining statistics with derived warnings."""

    statistics: UserStatistics
    warnings: list[str]

    @property
    def trust_level(self):
        return self.statistics.trust_level


def summarize_reputation(stats: UserStatistics) -> ReputationSummary:
    """Derive human-facing warnings from a user's statistics."""
    warnings: list[str] = []
    rate = stats.last_minute_cancel_rate
    if rate > 0.30 and stats.cancellations >= 3:
        warnings.append("High last-minute cancellation rate")
    elif rate > 0.15 and stats.cancellations >= 2:
        warnings.append("Moderate last-minute cancellation rate")
    if stats.disputes_lost >= 3:
        warnings.append("Multiple lost disputes")
    if stats.rating_count >= 5 and stats.average_rating < 4.0:
        warnings.append("Low average rating")
    return ReputationSummary(statistics=stats, warnings=warnings)
