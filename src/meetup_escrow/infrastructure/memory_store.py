"""In-process PersistenceStore.

Backs the test suite and quick demos. A single asyncio.Lock stands in for
the database: every method that reads-then-writes holds it, which gives the
same version-check and marker-plus-delta atomicity the SQL store gets from
its transactions.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import TYPE_CHECKING

from meetup_escrow.domain.exceptions import (
    DuplicateAdjustmentError,
    DuplicateReviewError,
    TransactionNotFoundError,
    VersionConflictError,
)
from meetup_escrow.domain.models import UserStatistics
from meetup_escrow.domain.reputation import fold_delta

if TYPE_CHECKING:
    from collections.abc import Iterable

    from meetup_escrow.domain.enums import TransactionStatus
    from meetup_escrow.domain.models import (
        Review,
        StatisticsDelta,
        Transaction,
        TransitionRecord,
    )


class InMemoryPersistenceStore:
    def __init__(self, initial_trust_score: float = 50.0) -> None:
        self._initial_trust_score = initial_trust_score
        self._lock = asyncio.Lock()
        self._transactions: dict[str, Transaction] = {}
        self._events: dict[str, list[TransitionRecord]] = {}
        self._statistics: dict[str, UserStatistics] = {}
        self._markers: set[str] = set()
        self._reviews: dict[tuple[str, str], Review] = {}

    # --- Transactions ---

    async def create_transaction(
        self, transaction: Transaction, record: TransitionRecord
    ) -> Transaction:
        async with self._lock:
            if transaction.id in self._transactions:
                raise VersionConflictError(transaction.id, transaction.version)
            self._transactions[transaction.id] = transaction
            self._events[transaction.id] = [record]
        return transaction

    async def load_transaction(self, transaction_id: str) -> Transaction:
        try:
            return self._transactions[transaction_id]
        except KeyError:
            raise TransactionNotFoundError(transaction_id) from None

    async def save_transaction(
        self,
        transaction: Transaction,
        expected_version: int,
        record: TransitionRecord | None = None,
    ) -> Transaction:
        async with self._lock:
            current = self._transactions.get(transaction.id)
            if current is None:
                raise TransactionNotFoundError(transaction.id)
            if current.version != expected_version:
                raise VersionConflictError(transaction.id, expected_version)
            saved = replace(transaction, version=expected_version + 1)
            self._transactions[transaction.id] = saved
            if record is not None:
                self._events[transaction.id].append(record)
        return saved

    async def list_transactions_by_status(
        self, statuses: Iterable[TransactionStatus]
    ) -> list[Transaction]:
        wanted = set(statuses)
        matches = [t for t in self._transactions.values() if t.status in wanted]
        return sorted(matches, key=lambda t: t.created_at)

    async def list_transactions_for_user(self, user_id: str) -> list[Transaction]:
        matches = [
            t for t in self._transactions.values() if user_id in (t.buyer_id, t.seller_id)
        ]
        return sorted(matches, key=lambda t: t.created_at, reverse=True)

    async def list_events(self, transaction_id: str) -> list[TransitionRecord]:
        return list(self._events.get(transaction_id, []))

    # --- User statistics ---

    async def ensure_user_statistics(self, user_id: str) -> UserStatistics:
        async with self._lock:
            return self._ensure(user_id)

    async def load_user_statistics(self, user_id: str) -> UserStatistics:
        stats = self._statistics.get(user_id)
        if stats is None:
            return UserStatistics(user_id=user_id, trust_score=self._initial_trust_score)
        return stats

    async def apply_statistics_delta(
        self, user_id: str, delta: StatisticsDelta, idempotency_key: str
    ) -> UserStatistics:
        async with self._lock:
            if idempotency_key in self._markers:
                raise DuplicateAdjustmentError(idempotency_key)
            current = self._ensure(user_id)
            updated = replace(
                current, **fold_delta(current, delta), version=current.version + 1
            )
            self._markers.add(idempotency_key)
            self._statistics[user_id] = updated
        return updated

    def _ensure(self, user_id: str) -> UserStatistics:
        if user_id not in self._statistics:
            self._statistics[user_id] = UserStatistics(
                user_id=user_id, trust_score=self._initial_trust_score
            )
        return self._statistics[user_id]

    # --- Reviews ---

    async def save_review(self, review: Review) -> Review:
        key = (review.transaction_id, review.rater_id)
        async with self._lock:
            if key in self._reviews:
                raise DuplicateReviewError(review.transaction_id, review.rater_id)
            self._reviews[key] = review
        return review

    async def list_reviews_for_user(self, user_id: str) -> list[Review]:
        received = [r for r in self._reviews.values() if r.rated_id == user_id]
        return sorted(received, key=lambda r: r.created_at, reverse=True)
