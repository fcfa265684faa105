"""Tests for the expiration sweep."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

from meetup_escrow.domain.enums import ActorRole, EventType, TransactionStatus
from meetup_escrow.services.sweep_service import ExpirationSweeper
from tests.conftest import BUYER, SELLER, FlakyStatisticsStore

S = TransactionStatus


class TestDepositTimeouts:
    async def test_unaccepted_deposit_is_cancelled_and_refunded(
        self, sweeper, service, gateway, clock, drive
    ) -> None:
        txn = await drive(S.DEPOSIT_SUBMITTED)
        clock.advance(hours=25)

        report = await sweeper.run_once()

        assert report.cancelled == [txn.id]
        after = await service.get_transaction(txn.id)
        assert after.status == S.CANCELLED
        assert after.cancelled_by == ActorRole.SYSTEM
        assert after.cancellation_reason == "Deposit not accepted in time"
        assert len(gateway.amounts("refund")) == 1

    async def test_system_cancellation_leaves_reputation_alone(
        self, sweeper, service, clock, drive
    ) -> None:
        await drive(S.DEPOSIT_SUBMITTED)
        clock.advance(hours=25)
        await sweeper.run_once()

        for user in (BUYER, SELLER):
            stats = await service.get_user_statistics(user)
            assert stats.cancellations == 0
            assert stats.trust_score == 50.0

    async def test_fresh_deposit_is_left_alone(self, sweeper, service, clock, drive) -> None:
        txn = await drive(S.DEPOSIT_SUBMITTED)
        clock.advance(hours=23)

        report = await sweeper.run_once()

        assert report.cancelled == []
        assert (await service.get_transaction(txn.id)).status == S.DEPOSIT_SUBMITTED

    async def test_stale_pending_is_cancelled(self, sweeper, service, gateway, clock, drive) -> None:
        txn = await drive(S.PENDING)
        clock.advance(hours=73)

        report = await sweeper.run_once()

        assert report.cancelled == [txn.id]
        assert gateway.calls == []

    async def test_rerun_is_a_noop(self, sweeper, service, clock, drive) -> None:
        txn = await drive(S.DEPOSIT_SUBMITTED)
        clock.advance(hours=25)
        await sweeper.run_once()
        events_before = await service.get_events(txn.id)

        report = await sweeper.run_once()

        assert report.cancelled == [] and report.failed == []
        assert await service.get_events(txn.id) == events_before

    async def test_accepted_deposits_never_expire(self, sweeper, service, clock, drive) -> None:
        txn = await drive(S.DEPOSIT_ACCEPTED)
        clock.advance(days=30)

        await sweeper.run_once()

        assert (await service.get_transaction(txn.id)).status == S.DEPOSIT_ACCEPTED


class TestStaleClaims:
    async def test_old_claim_is_flagged_once(self, sweeper, service, store, clock, drive) -> None:
        txn = await drive(S.IN_PROGRESS)
        await store.save_transaction(
            replace(txn, settlement_action="complete_transaction", settlement_started_at=clock.now),
            txn.version,
        )
        clock.advance(minutes=16)

        first = await sweeper.run_once()
        second = await sweeper.run_once()

        assert first.flagged == [txn.id]
        assert second.flagged == []
        after = await service.get_transaction(txn.id)
        assert after.needs_manual_review
        assert after.settlement_action == "complete_transaction"
        events = await service.get_events(txn.id)
        assert events[-1].event_type == EventType.MANUAL_REVIEW_REQUIRED

    async def test_claimed_deposit_is_not_expired(self, sweeper, service, store, clock, drive) -> None:
        txn = await drive(S.DEPOSIT_SUBMITTED)
        await store.save_transaction(
            replace(txn, settlement_action="accept_deposit", settlement_started_at=clock.now),
            txn.version,
        )
        clock.advance(hours=25)

        report = await sweeper.run_once()

        assert report.cancelled == []
        assert report.flagged == [txn.id]
        assert (await service.get_transaction(txn.id)).status == S.DEPOSIT_SUBMITTED


class TestPeriodic:
    async def test_stops_when_event_set(self, store, service, settings, clock) -> None:
        fast = settings.model_copy(update={"sweep_interval_seconds": 0.01})
        sweeper = ExpirationSweeper(store, service, fast, clock)
        stop = asyncio.Event()

        task = asyncio.create_task(sweeper.run_periodic(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert task.done()

    async def test_checks_window_relative_to_clock(self, sweeper, service, clock, drive) -> None:
        txn = await drive(S.PENDING)
        report = await sweeper.run_once(clock.now + timedelta(hours=80))
        assert report.cancelled == [txn.id]


class TestOutcomeReplay:
    async def test_missed_statistics_are_replayed_once(
        self, make_service, settings, clock, drive
    ) -> None:
        store = FlakyStatisticsStore()
        svc = make_service(store)
        sweeper = ExpirationSweeper(store, svc, settings, clock)
        txn = await drive(S.MEETUP_SCHEDULED, svc=svc)

        await svc.cancel_transaction(txn.id, BUYER, reason="Changed my mind")
        assert (await svc.get_user_statistics(BUYER)).cancellations == 0

        report = await sweeper.run_once()
        assert report.replayed == [txn.id]
        assert (await svc.get_user_statistics(BUYER)).cancellations == 1

        await sweeper.run_once()
        assert (await svc.get_user_statistics(BUYER)).cancellations == 1

    async def test_old_terminal_transactions_are_left_alone(
        self, sweeper, service, clock, drive
    ) -> None:
        txn = await drive(S.MEETUP_SCHEDULED)
        await service.cancel_transaction(txn.id, BUYER)
        clock.advance(hours=2)

        report = await sweeper.run_once()
        assert report.replayed == []
