"""Races, replays and payment failures around settlement."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from meetup_escrow.domain.enums import EventType, TransactionStatus
from meetup_escrow.domain.exceptions import (
    ExternalServiceError,
    InvalidStateTransitionError,
    SettlementInProgressError,
)
from meetup_escrow.domain.models import Transaction
from meetup_escrow.services.payment_service import PaymentDeclinedError, TransientPaymentError
from meetup_escrow.services.reputation_service import ReputationService
from tests.conftest import BUYER, SELLER, InterleavingStore

S = TransactionStatus
TERMINAL_EVENTS = {
    EventType.TRANSACTION_COMPLETED,
    EventType.TRANSACTION_CANCELLED,
    EventType.TRANSACTION_REFUNDED,
}


@pytest.fixture
def racing_service(make_service):
    return make_service(InterleavingStore())


class TestCancelCompleteRace:
    @pytest.mark.parametrize("cancel_first", [True, False])
    async def test_exactly_one_terminal_outcome(
        self, racing_service, gateway, drive, cancel_first: bool
    ) -> None:
        txn = await drive(S.MEETUP_SCHEDULED, svc=racing_service)
        complete = racing_service.complete_transaction(txn.id, BUYER)
        cancel = racing_service.cancel_transaction(txn.id, SELLER, reason="race")
        calls = [cancel, complete] if cancel_first else [complete, cancel]

        results = await asyncio.gather(*calls, return_exceptions=True)

        winners = [r for r in results if isinstance(r, Transaction)]
        losers = [r for r in results if not isinstance(r, Transaction)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], InvalidStateTransitionError)

        final = await racing_service.get_transaction(txn.id)
        assert final.status == winners[0].status
        assert final.settlement_action is None
        assert len(gateway.amounts("release")) + len(gateway.amounts("refund")) == 1

        events = await racing_service.get_events(txn.id)
        assert sum(e.event_type in TERMINAL_EVENTS for e in events) == 1

    async def test_double_complete_race_settles_once(self, racing_service, gateway, drive) -> None:
        txn = await drive(S.IN_PROGRESS, svc=racing_service)

        results = await asyncio.gather(
            racing_service.complete_transaction(txn.id, BUYER),
            racing_service.complete_transaction(txn.id, BUYER),
            return_exceptions=True,
        )

        completed = [r for r in results if isinstance(r, Transaction)]
        assert completed
        assert all(r.status == S.COMPLETED for r in completed)
        # The loser either saw the finished record or the in-flight claim.
        assert all(
            isinstance(r, Transaction | SettlementInProgressError) for r in results
        )
        assert len(gateway.amounts("release")) == 1
        stats = await racing_service.get_user_statistics(SELLER)
        assert stats.completed_transactions == 1

    async def test_claimed_transaction_rejects_other_actions(self, service, store, drive) -> None:
        txn = await drive(S.IN_PROGRESS)
        await store.save_transaction(
            replace(txn, settlement_action="complete_transaction", settlement_started_at=txn.updated_at),
            txn.version,
        )

        with pytest.raises(SettlementInProgressError):
            await service.cancel_transaction(txn.id, SELLER)
        status = await service.get_status(txn.id)
        assert status["settlement_in_progress"] is True
        assert status["allowed_actions"] == []


class TestReplayIdempotency:
    async def test_same_outcome_applied_once(self, service, store, drive) -> None:
        txn = await drive(S.IN_PROGRESS)
        done = await service.complete_transaction(txn.id, BUYER)
        before = await store.load_user_statistics(SELLER)

        reputation = ReputationService(store)
        await reputation.apply_outcome(done)
        await reputation.apply_outcome(done)

        assert await store.load_user_statistics(SELLER) == before

    async def test_concurrent_replays_apply_once(self, service, store, drive) -> None:
        txn = await drive(S.MEETUP_SCHEDULED)
        done = await service.cancel_transaction(txn.id, SELLER)
        reputation = ReputationService(store)

        await asyncio.gather(*(reputation.apply_outcome(done) for _ in range(5)))

        assert (await store.load_user_statistics(SELLER)).cancellations == 1


class TestPaymentFailures:
    async def test_declined_release_flags_manual_review(
        self, service, gateway, dispatcher, drive
    ) -> None:
        txn = await drive(S.IN_PROGRESS)
        gateway.fail("release", PaymentDeclinedError("card network said no"))

        with pytest.raises(ExternalServiceError):
            await service.complete_transaction(txn.id, BUYER)

        after = await service.get_transaction(txn.id)
        assert after.status == S.IN_PROGRESS
        assert after.settlement_action is None
        assert after.needs_manual_review
        assert "complete_transaction failed" in after.manual_review_reason
        events = await service.get_events(txn.id)
        assert events[-1].event_type == EventType.MANUAL_REVIEW_REQUIRED
        assert dispatcher.types()[-1] == EventType.MANUAL_REVIEW_REQUIRED
        assert (await service.get_user_statistics(SELLER)).completed_transactions == 0

    async def test_retry_after_failure_succeeds_with_same_key(self, service, gateway, drive) -> None:
        txn = await drive(S.IN_PROGRESS)
        gateway.fail("release", PaymentDeclinedError("try later"))
        with pytest.raises(ExternalServiceError):
            await service.complete_transaction(txn.id, BUYER)

        done = await service.complete_transaction(txn.id, BUYER)

        assert done.status == S.COMPLETED
        keys = {key for op, _, key in gateway.calls if op == "release"}
        assert keys == {f"{txn.id}:complete_transaction"}

    async def test_transient_errors_are_retried(self, service, gateway, drive) -> None:
        txn = await drive(S.IN_PROGRESS)
        gateway.fail("release", TransientPaymentError("503"), TimeoutError())

        done = await service.complete_transaction(txn.id, BUYER)

        assert done.status == S.COMPLETED
        assert len(gateway.amounts("release")) == 3
        assert not done.needs_manual_review

    async def test_retry_budget_exhausted(self, service, gateway, settings, drive) -> None:
        txn = await drive(S.MEETUP_SCHEDULED)
        gateway.fail("refund", *[ConnectionError("down")] * settings.payment_max_attempts)

        with pytest.raises(ExternalServiceError):
            await service.cancel_transaction(txn.id, BUYER)

        after = await service.get_transaction(txn.id)
        assert after.status == S.MEETUP_SCHEDULED
        assert after.needs_manual_review
        assert len(gateway.amounts("refund")) == settings.payment_max_attempts

    async def test_failed_capture_stays_pending(self, service, gateway, drive) -> None:
        txn = await drive(S.PENDING)
        gateway.fail("capture", PaymentDeclinedError("insufficient funds"))

        with pytest.raises(ExternalServiceError):
            await service.submit_deposit(txn.id, BUYER)

        after = await service.get_transaction(txn.id)
        assert after.status == S.PENDING
        assert after.authorization_id is None
        assert after.needs_manual_review

    async def test_split_uses_distinct_keys(self, service, gateway, drive) -> None:
        txn = await drive(S.DISPUTED, amount="80.00")
        await service.resolve_dispute(txn.id, "split", "adjudicator-1")

        keys = [key for op, _, key in gateway.calls if op in ("refund", "release")]
        assert keys == [f"{txn.id}:resolve_split:refund", f"{txn.id}:resolve_split:release"]
        assert gateway.amounts("refund") == [Decimal("40.00")]
        assert gateway.amounts("release") == [Decimal("36.00")]
