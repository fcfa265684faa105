"""Repository classes and the SQLAlchemy persistence store.

Repositories encapsulate all SQL queries and provide a clean interface to
the store. They accept an AsyncSession and never manage their own
transactions (that's the caller's responsibility).

SqlAlchemyPersistenceStore implements the PersistenceStore protocol: every
method is one short database transaction, so a settlement claim is
committed (and visible to competing writers) before the payment call runs.
"""

from __future__ import annotations

from dataclasses import fields, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import case, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meetup_escrow.domain.enums import (
    LEGACY_STATUS_ALIASES,
    ActorRole,
    CancellationTiming,
    DisputeOutcome,
    EventType,
    TransactionStatus,
)
from meetup_escrow.domain.exceptions import (
    DuplicateAdjustmentError,
    DuplicateReviewError,
    TransactionNotFoundError,
    VersionConflictError,
)
from meetup_escrow.domain.models import (
    Review,
    Transaction,
    TransitionRecord,
    UserStatistics,
)
from meetup_escrow.infrastructure.database.orm_models import (
    AppliedAdjustmentRow,
    ReviewRow,
    TransactionEventRow,
    TransactionRow,
    UserStatisticsRow,
)
from meetup_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from meetup_escrow.domain.models import StatisticsDelta

logger = get_logger(__name__)

_TRANSACTION_FIELDS = tuple(f.name for f in fields(Transaction))
_STATISTICS_COUNTERS = (
    "completed_transactions",
    "cancellations",
    "cancellations_as_buyer",
    "cancellations_as_seller",
    "last_minute_cancels_as_buyer",
    "last_minute_cancels_as_seller",
    "disputes_lost",
)
_INSERT_BUILDERS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _stored_values(status: TransactionStatus) -> list[str]:
    """Canonical value plus every legacy spelling that maps onto it."""
    return [status.value] + [
        legacy for legacy, canonical in LEGACY_STATUS_ALIASES.items() if canonical == status
    ]


# ---------------------------------------------------------------------------
# Row <-> domain mapping
# ---------------------------------------------------------------------------


def transaction_to_values(transaction: Transaction) -> dict:
    """Column values for a transaction (enums flattened to strings)."""
    values = {name: getattr(transaction, name) for name in _TRANSACTION_FIELDS}
    for name in ("status", "cancelled_by", "cancellation_timing", "dispute_outcome"):
        if values[name] is not None:
            values[name] = values[name].value
    return values


def transaction_from_row(row: TransactionRow) -> Transaction:
    values = {name: getattr(row, name) for name in _TRANSACTION_FIELDS}
    for name, value in values.items():
        if isinstance(value, datetime):
            values[name] = _aware(value)
    values["status"] = TransactionStatus.parse(row.status)
    values["amount"] = Decimal(row.amount)
    values["platform_fee"] = Decimal(row.platform_fee)
    if row.refunded_amount is not None:
        values["refunded_amount"] = Decimal(row.refunded_amount)
    if row.cancelled_by is not None:
        values["cancelled_by"] = ActorRole(row.cancelled_by)
    if row.cancellation_timing is not None:
        values["cancellation_timing"] = CancellationTiming(row.cancellation_timing)
    if row.dispute_outcome is not None:
        values["dispute_outcome"] = DisputeOutcome(row.dispute_outcome)
    return Transaction(**values)


def statistics_from_row(row: UserStatisticsRow) -> UserStatistics:
    return UserStatistics(
        user_id=row.user_id,
        trust_score=row.trust_score,
        completed_transactions=row.completed_transactions,
        cancellations=row.cancellations,
        cancellations_as_buyer=row.cancellations_as_buyer,
        cancellations_as_seller=row.cancellations_as_seller,
        last_minute_cancels_as_buyer=row.last_minute_cancels_as_buyer,
        last_minute_cancels_as_seller=row.last_minute_cancels_as_seller,
        disputes_lost=row.disputes_lost,
        rating_count=row.rating_count,
        average_rating=row.average_rating,
        version=row.version,
        updated_at=_aware(row.updated_at),
    )


def review_from_row(row: ReviewRow) -> Review:
    return Review(
        transaction_id=row.transaction_id,
        rater_id=row.rater_id,
        rated_id=row.rated_id,
        rating=row.rating,
        comment=row.comment,
        created_at=_aware(row.created_at),
    )


def record_from_row(row: TransactionEventRow) -> TransitionRecord:
    return TransitionRecord(
        transaction_id=row.transaction_id,
        event_type=EventType(row.event_type),
        old_status=TransactionStatus.parse(row.old_status) if row.old_status else None,
        new_status=TransactionStatus.parse(row.new_status),
        actor_id=row.actor_id,
        created_at=_aware(row.created_at),
        metadata=dict(row.metadata_json or {}),
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class TransactionRepository:
    """Data access for escrow transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, transaction: Transaction) -> TransactionRow:
        """Insert a new transaction row."""
        row = TransactionRow(**transaction_to_values(transaction))
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_id(self, transaction_id: str) -> TransactionRow | None:
        result = await self._session.execute(
            select(TransactionRow).where(TransactionRow.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_statuses(self, statuses: Iterable[TransactionStatus]) -> list[TransactionRow]:
        """Fetch transactions in any of the given statuses, oldest first."""
        stored = [value for status in statuses for value in _stored_values(status)]
        result = await self._session.execute(
            select(TransactionRow)
            .where(TransactionRow.status.in_(stored))
            .order_by(TransactionRow.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_for_user(self, user_id: str) -> list[TransactionRow]:
        """Fetch transactions where the user is buyer or seller, newest first."""
        result = await self._session.execute(
            select(TransactionRow)
            .where(or_(TransactionRow.buyer_id == user_id, TransactionRow.seller_id == user_id))
            .order_by(TransactionRow.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_versioned(self, transaction: Transaction, expected_version: int) -> bool:
        """UPDATE ... WHERE version = expected. Returns False if no row matched."""
        values = transaction_to_values(transaction)
        values.pop("id")
        values.pop("created_at")
        values["version"] = expected_version + 1
        result = await self._session.execute(
            update(TransactionRow)
            .where(
                TransactionRow.id == transaction.id,
                TransactionRow.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def exists(self, transaction_id: str) -> bool:
        result = await self._session.execute(
            select(TransactionRow.id).where(TransactionRow.id == transaction_id)
        )
        return result.scalar_one_or_none() is not None


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, record: TransitionRecord) -> TransactionEventRow:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = TransactionEventRow(
            transaction_id=record.transaction_id,
            event_type=record.event_type.value,
            old_status=record.old_status.value if record.old_status else None,
            new_status=record.new_status.value,
            actor_id=record.actor_id,
            metadata_json=record.metadata or None,
            created_at=record.created_at,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_transaction(self, transaction_id: str) -> list[TransactionEventRow]:
        """Fetch all events for a transaction in the order they were written."""
        result = await self._session.execute(
            select(TransactionEventRow)
            .where(TransactionEventRow.transaction_id == transaction_id)
            .order_by(TransactionEventRow.id.asc())
        )
        return list(result.scalars().all())


class UserStatisticsRepository:
    """Data access for reputation aggregates and their idempotency markers."""

    def __init__(self, session: AsyncSession, dialect: str) -> None:
        self._session = session
        self._insert = _INSERT_BUILDERS[dialect]

    async def ensure(self, user_id: str, initial_trust_score: float) -> None:
        """Create the row if missing. Concurrent callers never conflict."""
        stmt = (
            self._insert(UserStatisticsRow)
            .values(
                user_id=user_id,
                trust_score=initial_trust_score,
                updated_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self._session.execute(stmt)

    async def get(self, user_id: str) -> UserStatisticsRow | None:
        result = await self._session.execute(
            select(UserStatisticsRow)
            .where(UserStatisticsRow.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_marker(self, user_id: str, idempotency_key: str) -> None:
        """Insert the idempotency marker.

        Raises:
            DuplicateAdjustmentError: If the marker already exists.
        """
        try:
            await self._session.execute(
                insert(AppliedAdjustmentRow).values(
                    idempotency_key=idempotency_key,
                    user_id=user_id,
                    created_at=datetime.now(UTC),
                )
            )
        except IntegrityError as exc:
            raise DuplicateAdjustmentError(idempotency_key) from exc

    async def apply_delta(self, user_id: str, delta: StatisticsDelta) -> None:
        """Apply a delta as one increment-style UPDATE.

        Every right-hand side reads the pre-update row, so the running
        average uses the old count and the old average.
        """
        table = UserStatisticsRow
        values: dict = {
            name: getattr(table, name) + getattr(delta, name)
            for name in _STATISTICS_COUNTERS
            if getattr(delta, name)
        }
        if delta.trust_score_change:
            raw = table.trust_score + delta.trust_score_change
            values["trust_score"] = case(
                (raw > 100.0, 100.0),
                (raw < 0.0, 0.0),
                else_=raw,
            )
        if delta.rating is not None:
            values["rating_count"] = table.rating_count + 1
            values["average_rating"] = table.average_rating + (
                (float(delta.rating) - table.average_rating) / (table.rating_count + 1)
            )
        values["version"] = table.version + 1
        values["updated_at"] = datetime.now(UTC)
        await self._session.execute(
            update(table)
            .where(table.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


class ReviewRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, review: Review) -> ReviewRow:
        """Insert a review.

        Raises:
            DuplicateReviewError: If the rater already reviewed the transaction.
        """
        row = ReviewRow(
            transaction_id=review.transaction_id,
            rater_id=review.rater_id,
            rated_id=review.rated_id,
            rating=review.rating,
            comment=review.comment,
            created_at=review.created_at or datetime.now(UTC),
        )
        self._session.add(row)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise DuplicateReviewError(review.transaction_id, review.rater_id) from exc
        return row

    async def get_for_rated_user(self, user_id: str) -> list[ReviewRow]:
        result = await self._session.execute(
            select(ReviewRow)
            .where(ReviewRow.rated_id == user_id)
            .order_by(ReviewRow.created_at.desc())
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PersistenceStore implementation
# ---------------------------------------------------------------------------


class SqlAlchemyPersistenceStore:
    """PersistenceStore backed by SQLAlchemy async (PostgreSQL or SQLite)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dialect: str,
        initial_trust_score: float = 50.0,
    ) -> None:
        if dialect not in _INSERT_BUILDERS:
            raise ValueError(f"Unsupported database dialect: {dialect}")
        self._session_factory = session_factory
        self._dialect = dialect
        self._initial_trust_score = initial_trust_score

    @classmethod
    def from_engine(
        cls, engine: AsyncEngine, initial_trust_score: float = 50.0
    ) -> SqlAlchemyPersistenceStore:
        factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        return cls(factory, engine.dialect.name, initial_trust_score)

    # --- Transactions ---

    async def create_transaction(
        self, transaction: Transaction, record: TransitionRecord
    ) -> Transaction:
        async with self._session_factory() as session, session.begin():
            await TransactionRepository(session).create(transaction)
            await EventRepository(session).record(record)
        return transaction

    async def load_transaction(self, transaction_id: str) -> Transaction:
        async with self._session_factory() as session:
            row = await TransactionRepository(session).get_by_id(transaction_id)
            if row is None:
                raise TransactionNotFoundError(transaction_id)
            return transaction_from_row(row)

    async def save_transaction(
        self,
        transaction: Transaction,
        expected_version: int,
        record: TransitionRecord | None = None,
    ) -> Transaction:
        async with self._session_factory() as session, session.begin():
            repo = TransactionRepository(session)
            if not await repo.update_versioned(transaction, expected_version):
                if not await repo.exists(transaction.id):
                    raise TransactionNotFoundError(transaction.id)
                raise VersionConflictError(transaction.id, expected_version)
            if record is not None:
                await EventRepository(session).record(record)
        return replace(transaction, version=expected_version + 1)

    async def list_transactions_by_status(
        self, statuses: Iterable[TransactionStatus]
    ) -> list[Transaction]:
        async with self._session_factory() as session:
            rows = await TransactionRepository(session).get_by_statuses(statuses)
            return [transaction_from_row(row) for row in rows]

    async def list_transactions_for_user(self, user_id: str) -> list[Transaction]:
        async with self._session_factory() as session:
            rows = await TransactionRepository(session).get_for_user(user_id)
            return [transaction_from_row(row) for row in rows]

    async def list_events(self, transaction_id: str) -> list[TransitionRecord]:
        async with self._session_factory() as session:
            rows = await EventRepository(session).get_by_transaction(transaction_id)
            return [record_from_row(row) for row in rows]

    # --- User statistics ---

    async def ensure_user_statistics(self, user_id: str) -> UserStatistics:
        async with self._session_factory() as session, session.begin():
            repo = UserStatisticsRepository(session, self._dialect)
            await repo.ensure(user_id, self._initial_trust_score)
            row = await repo.get(user_id)
            return statistics_from_row(row)

    async def load_user_statistics(self, user_id: str) -> UserStatistics:
        async with self._session_factory() as session:
            row = await UserStatisticsRepository(session, self._dialect).get(user_id)
            if row is None:
                return UserStatistics(user_id=user_id, trust_score=self._initial_trust_score)
            return statistics_from_row(row)

    async def apply_statistics_delta(
        self, user_id: str, delta: StatisticsDelta, idempotency_key: str
    ) -> UserStatistics:
        """Marker insert and delta UPDATE commit together or not at all."""
        async with self._session_factory() as session, session.begin():
            repo = UserStatisticsRepository(session, self._dialect)
            await repo.ensure(user_id, self._initial_trust_score)
            await repo.record_marker(user_id, idempotency_key)
            await repo.apply_delta(user_id, delta)
            row = await repo.get(user_id)
            stats = statistics_from_row(row)
        logger.debug("statistics.delta_applied", user_id=user_id, idempotency_key=idempotency_key)
        return stats

    # --- Reviews ---

    async def save_review(self, review: Review) -> Review:
        async with self._session_factory() as session, session.begin():
            row = await ReviewRepository(session).create(review)
            return review_from_row(row)

    async def list_reviews_for_user(self, user_id: str) -> list[Review]:
        async with self._session_factory() as session:
            rows = await ReviewRepository(session).get_for_rated_user(user_id)
            return [review_from_row(row) for row in rows]
