"""Shared test fixtures for the meetup escrow test suite.

Provides:
    - A controllable clock and test settings (no retry backoff, no sweep)
    - In-memory persistence, a scripted payment gateway and a recording
      notification dispatcher
    - A fully wired TransactionService plus a helper that drives a fresh
      transaction to any non-terminal status
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from meetup_escrow.config import Settings
from meetup_escrow.domain.enums import TransactionStatus
from meetup_escrow.domain.reputation import ReputationAdjustmentEngine
from meetup_escrow.infrastructure.memory_store import InMemoryPersistenceStore
from meetup_escrow.services.notification_service import NotificationService
from meetup_escrow.services.payment_service import PaymentService
from meetup_escrow.services.reputation_service import ReputationService, build_trust_policy
from meetup_escrow.services.sweep_service import ExpirationSweeper
from meetup_escrow.services.transaction_service import TransactionService

BUYER = "buyer-1"
SELLER = "seller-1"
ADJUDICATOR = "adjudicator-1"
START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class ScriptedGateway:
    """PaymentGateway double that records calls and raises scripted errors."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Decimal, str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self._results: dict[str, str] = {}

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def amounts(self, operation: str) -> list[Decimal]:
        return [amount for op, amount, _ in self.calls if op == operation]

    async def capture_deposit(self, amount: Decimal, *, idempotency_key: str) -> str:
        return await self._handle("capture", amount, idempotency_key)

    async def release(self, authorization_id: str, *, amount: Decimal, idempotency_key: str) -> str:
        return await self._handle("release", amount, idempotency_key)

    async def refund(self, authorization_id: str, *, amount: Decimal, idempotency_key: str) -> str:
        return await self._handle("refund", amount, idempotency_key)

    async def _handle(self, operation: str, amount: Decimal, key: str) -> str:
        await asyncio.sleep(0)
        self.calls.append((operation, amount, key))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)
        if key not in self._results:
            self._results[key] = f"{operation}_{len(self._results) + 1}"
        return self._results[key]


class RecordingDispatcher:
    def __init__(self) -> None:
        self.events: list = []
        self.broken = False

    async def emit(self, event) -> None:
        if self.broken:
            raise ConnectionError("dispatcher down")
        self.events.append(event)

    def types(self) -> list:
        return [event.event_type for event in self.events]


class InterleavingStore(InMemoryPersistenceStore):
    """Yields to the event loop after every load so concurrent writers collide."""

    async def load_transaction(self, transaction_id: str):
        transaction = await super().load_transaction(transaction_id)
        await asyncio.sleep(0)
        return transaction


class FlakyStatisticsStore(InMemoryPersistenceStore):
    """Fails the first statistics write, then behaves."""

    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 1

    async def apply_statistics_delta(self, user_id, delta, idempotency_key):
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("statistics store unavailable")
        return await super().apply_statistics_delta(user_id, delta, idempotency_key)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        payment_retry_backoff_seconds=0.0,
        payment_retry_max_seconds=0.0,
        sweep_enabled=False,
    )


@pytest.fixture
def store() -> InMemoryPersistenceStore:
    return InMemoryPersistenceStore()


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def make_service(settings, clock, gateway, dispatcher):
    def _make(store) -> TransactionService:
        return TransactionService(
            store,
            PaymentService.from_settings(gateway, settings),
            NotificationService(dispatcher, settings.notification_timeout_seconds),
            ReputationService(store, ReputationAdjustmentEngine(build_trust_policy(settings))),
            settings=settings,
            clock=clock,
        )

    return _make


@pytest.fixture
def service(make_service, store) -> TransactionService:
    return make_service(store)


@pytest.fixture
def sweeper(store, service, settings, clock) -> ExpirationSweeper:
    return ExpirationSweeper(store, service, settings, clock)


@pytest.fixture
def drive(service, clock):
    """Create a transaction and push it to the requested status."""

    async def _drive(
        status: TransactionStatus = TransactionStatus.PENDING,
        *,
        svc: TransactionService | None = None,
        amount: str = "100.00",
        meetup_in: timedelta = timedelta(hours=48),
    ):
        svc = svc or service
        txn = await svc.create_transaction(BUYER, SELLER, "listing-1", Decimal(amount))
        steps = [
            (TransactionStatus.DEPOSIT_SUBMITTED, lambda: svc.submit_deposit(txn.id, BUYER)),
            (TransactionStatus.DEPOSIT_ACCEPTED, lambda: svc.accept_deposit(txn.id, SELLER)),
            (
                TransactionStatus.MEETUP_SCHEDULED,
                lambda: svc.schedule_meetup(txn.id, SELLER, clock.now + meetup_in, "Cafe"),
            ),
            (TransactionStatus.IN_PROGRESS, lambda: svc.start_meetup(txn.id, BUYER)),
            (TransactionStatus.DISPUTED, lambda: svc.raise_dispute(txn.id, BUYER, "No show")),
        ]
        for _, step in steps:
            if txn.status == status:
                break
            txn = await step()
        assert txn.status == status
        return txn

    return _drive

