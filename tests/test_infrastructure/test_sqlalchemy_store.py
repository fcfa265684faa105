"""Tests for the SQLAlchemy persistence store against SQLite (aiosqlite)."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from meetup_escrow.domain.enums import CancellationTiming, EventType, TransactionStatus
from meetup_escrow.domain.exceptions import (
    DuplicateAdjustmentError,
    DuplicateReviewError,
    TransactionNotFoundError,
    VersionConflictError,
)
from meetup_escrow.domain.models import Review, StatisticsDelta, Transaction, TransitionRecord
from meetup_escrow.infrastructure.database.engine import build_engine, create_tables
from meetup_escrow.infrastructure.database.orm_models import TransactionRow
from meetup_escrow.infrastructure.database.repositories import SqlAlchemyPersistenceStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
async def engine(tmp_path, settings):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}", settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_store(engine) -> SqlAlchemyPersistenceStore:
    return SqlAlchemyPersistenceStore.from_engine(engine, initial_trust_score=50.0)


def make_txn(txn_id: str = "txn-1") -> Transaction:
    return Transaction(
        id=txn_id,
        buyer_id="buyer-1",
        seller_id="seller-1",
        listing_id="listing-1",
        amount=Decimal("100.00"),
        platform_fee=Decimal("5.00"),
        status=TransactionStatus.PENDING,
        created_at=NOW,
        updated_at=NOW,
    )


def created(txn: Transaction) -> TransitionRecord:
    return TransitionRecord(
        transaction_id=txn.id,
        event_type=EventType.TRANSACTION_CREATED,
        old_status=None,
        new_status=txn.status,
        actor_id=txn.buyer_id,
        created_at=NOW,
        metadata={"amount": "100.00"},
    )


class TestTransactions:
    async def test_round_trip(self, sql_store) -> None:
        txn = make_txn()
        await sql_store.create_transaction(txn, created(txn))

        loaded = await sql_store.load_transaction(txn.id)

        assert loaded == txn
        assert loaded.created_at.tzinfo is not None

    async def test_missing(self, sql_store) -> None:
        with pytest.raises(TransactionNotFoundError):
            await sql_store.load_transaction("nope")

    async def test_versioned_save(self, sql_store) -> None:
        txn = make_txn()
        await sql_store.create_transaction(txn, created(txn))
        cancelled = replace(
            txn,
            status=TransactionStatus.CANCELLED,
            cancellation_timing=CancellationTiming.UNSCHEDULED,
        )

        saved = await sql_store.save_transaction(cancelled, expected_version=0)
        assert saved.version == 1

        with pytest.raises(VersionConflictError):
            await sql_store.save_transaction(replace(txn, listing_id="other"), expected_version=0)
        loaded = await sql_store.load_transaction(txn.id)
        assert loaded.status == TransactionStatus.CANCELLED
        assert loaded.cancellation_timing == CancellationTiming.UNSCHEDULED

    async def test_save_unknown(self, sql_store) -> None:
        with pytest.raises(TransactionNotFoundError):
            await sql_store.save_transaction(make_txn("ghost"), expected_version=0)

    async def test_events_in_write_order(self, sql_store) -> None:
        txn = make_txn()
        await sql_store.create_transaction(txn, created(txn))
        record = TransitionRecord(
            transaction_id=txn.id,
            event_type=EventType.DEPOSIT_SUBMITTED,
            old_status=TransactionStatus.PENDING,
            new_status=TransactionStatus.DEPOSIT_SUBMITTED,
            actor_id="buyer-1",
            created_at=NOW,
        )
        await sql_store.save_transaction(
            replace(txn, status=TransactionStatus.DEPOSIT_SUBMITTED), 0, record
        )

        events = await sql_store.list_events(txn.id)
        assert [e.event_type for e in events] == [
            EventType.TRANSACTION_CREATED,
            EventType.DEPOSIT_SUBMITTED,
        ]
        assert events[0].metadata == {"amount": "100.00"}

    async def test_legacy_status_read_and_listed(self, sql_store, engine) -> None:
        txn = make_txn()
        await sql_store.create_transaction(txn, created(txn))
        async with engine.begin() as conn:
            await conn.execute(
                update(TransactionRow).where(TransactionRow.id == txn.id).values(status="IN_ESCROW")
            )

        loaded = await sql_store.load_transaction(txn.id)
        listed = await sql_store.list_transactions_by_status([TransactionStatus.DEPOSIT_ACCEPTED])

        assert loaded.status == TransactionStatus.DEPOSIT_ACCEPTED
        assert [t.id for t in listed] == [txn.id]

    async def test_transactions_for_user_newest_first(self, sql_store) -> None:
        older = make_txn("txn-old")
        newer = replace(
            make_txn("txn-new"),
            buyer_id="seller-1",
            seller_id="buyer-1",
            created_at=NOW + timedelta(hours=1),
        )
        other = replace(make_txn("txn-other"), buyer_id="someone", seller_id="else")
        for txn in (older, newer, other):
            await sql_store.create_transaction(txn, created(txn))

        listed = await sql_store.list_transactions_for_user("buyer-1")
        assert [t.id for t in listed] == ["txn-new", "txn-old"]


class TestStatistics:
    async def test_zeroed_snapshot_for_unknown_user(self, sql_store) -> None:
        stats = await sql_store.load_user_statistics("nobody")
        assert stats.trust_score == 50.0
        assert stats.completed_transactions == 0

    async def test_ensure_is_idempotent(self, sql_store) -> None:
        await sql_store.ensure_user_statistics("u1")
        stats = await sql_store.ensure_user_statistics("u1")
        assert stats.version == 0

    async def test_delta_applied_once(self, sql_store) -> None:
        delta = StatisticsDelta(cancellations=1, last_minute_cancels_as_seller=1, trust_score_change=-10)
        first = await sql_store.apply_statistics_delta("u1", delta, "txn-1:cancelled:u1")

        with pytest.raises(DuplicateAdjustmentError):
            await sql_store.apply_statistics_delta("u1", delta, "txn-1:cancelled:u1")

        stats = await sql_store.load_user_statistics("u1")
        assert stats == first
        assert stats.cancellations == 1
        assert stats.trust_score == 40.0

    async def test_trust_score_clamped(self, sql_store) -> None:
        await sql_store.apply_statistics_delta("u1", StatisticsDelta(trust_score_change=-80), "k1")
        stats = await sql_store.apply_statistics_delta(
            "u1", StatisticsDelta(trust_score_change=500), "k2"
        )
        assert stats.trust_score == 100.0

    async def test_running_average(self, sql_store) -> None:
        for i, rating in enumerate((8, 10, 6)):
            stats = await sql_store.apply_statistics_delta("u1", StatisticsDelta(rating=rating), f"r{i}")
        assert stats.rating_count == 3
        assert stats.average_rating == pytest.approx(8.0)


class TestReviews:
    async def test_duplicate_review(self, sql_store) -> None:
        txn = make_txn()
        await sql_store.create_transaction(txn, created(txn))
        review = Review(
            transaction_id=txn.id,
            rater_id="buyer-1",
            rated_id="seller-1",
            rating=9,
            created_at=NOW,
        )
        await sql_store.save_review(review)

        with pytest.raises(DuplicateReviewError):
            await sql_store.save_review(replace(review, rating=3))

        received = await sql_store.list_reviews_for_user("seller-1")
        assert [r.rating for r in received] == [9]

    async def test_reviews_newest_first(self, sql_store) -> None:
        for i in range(2):
            txn = make_txn(f"txn-{i}")
            await sql_store.create_transaction(txn, created(txn))
            await sql_store.save_review(
                Review(
                    transaction_id=txn.id,
                    rater_id="buyer-1",
                    rated_id="seller-1",
                    rating=5 + i,
                    created_at=NOW + timedelta(hours=i),
                )
            )

        received = await sql_store.list_reviews_for_user("seller-1")
        assert [r.rating for r in received] == [6, 5]


class TestServiceOnSqlite:
    async def test_lifecycle_on_sqlite(self, make_service, sql_store, gateway) -> None:
        svc = make_service(sql_store)
        txn = await svc.create_transaction("buyer-1", "seller-1", "listing-1", Decimal("100"))
        await svc.submit_deposit(txn.id, "buyer-1")
        await svc.accept_deposit(txn.id, "seller-1")
        await svc.schedule_meetup(txn.id, "seller-1", NOW + timedelta(hours=1))

        cancelled = await svc.cancel_transaction(txn.id, "buyer-1")
        again = await svc.get_transaction(txn.id)

        assert cancelled == again
        assert again.cancellation_timing == CancellationTiming.LAST_MINUTE
        assert again.settlement_receipt is not None
        stats = await svc.get_user_statistics("buyer-1")
        assert stats.last_minute_cancels_as_buyer == 1
        assert len(await svc.get_events(txn.id)) == 5
