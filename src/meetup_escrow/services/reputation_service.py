"""Reputation Service — applies engine output to the persistence store.

Each per-user delta is applied under its own idempotency key, so replaying
a terminal outcome (retries, sweep re-runs, duplicate requests) changes a
user's statistics exactly once.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from meetup_escrow.domain.enums import CancellationTiming
from meetup_escrow.domain.exceptions import DuplicateAdjustmentError
from meetup_escrow.domain.reputation import (
    ReputationAdjustment,
    ReputationAdjustmentEngine,
    TieredTrustPolicy,
)
from meetup_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from meetup_escrow.config import Settings
    from meetup_escrow.domain.collaborators import PersistenceStore
    from meetup_escrow.domain.models import Review, Transaction


logger = get_logger(__name__)


def build_trust_policy(settings: Settings) -> TieredTrustPolicy:
    """Build the default trust policy from configured rewards and penalties."""
    penalties = {
        CancellationTiming(name): value
        for name, value in settings.cancellation_penalties.items()
    }
    return TieredTrustPolicy(
        seller_reward=settings.seller_completion_reward,
        buyer_reward=settings.buyer_completion_reward,
        penalties=penalties,
        base_refund_penalty=settings.refund_penalty,
        dispute_penalty=settings.dispute_loss_penalty,
    )


class ReputationService:
    def __init__(
        self,
        store: PersistenceStore,
        engine: ReputationAdjustmentEngine | None = None,
    ) -> None:
        self._store = store
        self._engine = engine or ReputationAdjustmentEngine()

    @property
    def engine(self) -> ReputationAdjustmentEngine:
        return self._engine

    async def apply_outcome(self, transaction: Transaction) -> ReputationAdjustment:
        """Apply the statistics change for a terminal transaction."""
        adjustment = self._engine.compute_outcome(transaction)
        await self._apply(adjustment)
        return adjustment

    async def apply_review(
        self, transaction: Transaction, review: Review
    ) -> ReputationAdjustment:
        """Fold a review's rating into the rated user's running average."""
        adjustment = self._engine.compute_review(transaction, review)
        await self._apply(adjustment)
        return adjustment

    async def _apply(self, adjustment: ReputationAdjustment) -> None:
        for user_id, delta in adjustment.deltas.items():
            if delta.is_empty:
                continue
            key = adjustment.idempotency_key(user_id)
            try:
                stats = await self._store.apply_statistics_delta(user_id, delta, key)
            except DuplicateAdjustmentError:
                logger.info("reputation.adjustment_already_applied", idempotency_key=key)
                continue
            logger.info(
                "reputation.adjustment_applied",
                idempotency_key=key,
                user_id=user_id,
                trust_score=stats.trust_score,
                trust_change=delta.trust_score_change,
            )
