#!/usr/bin/env python3
"""Meetup Escrow — End-to-End Simulation.

Simulates five scenarios between a BuyerBot and a SellerBot:

    Scenario 1: Happy Path
        - Buyer creates a transaction and submits the deposit
        - Seller accepts, meetup is scheduled and started
        - Buyer confirms with a rating -> COMPLETED + payout released

    Scenario 2: Last-Minute Cancellation
        - Meetup scheduled, seller cancels 1 hour before it
        - Deposit refunded, seller's last-minute counter and trust drop

    Scenario 3: Dispute Split
        - Buyer raises a dispute after the meetup starts
        - Adjudicator resolves with a split -> partial refund + remainder released

    Scenario 4: Cancel / Complete Race
        - Buyer confirmation and a cancellation arrive at the same moment
        - Exactly one terminal outcome wins

    Scenario 5: Replay Idempotency
        - A terminal outcome is replayed through the reputation service
        - Statistics change exactly once

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    python simulation.py

    # Option B: Without Docker (SQLite in a temp file):
    python simulation.py --sqlite

    # Run a specific scenario:
    python simulation.py --sqlite --scenario 4
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from meetup_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from meetup_escrow.config import get_settings  # noqa: E402
from meetup_escrow.domain.enums import DisputeOutcome, TransactionAction  # noqa: E402
from meetup_escrow.domain.exceptions import EscrowError  # noqa: E402
from meetup_escrow.main import build_services  # noqa: E402

# Module-level state
_engine = None
_store = None
_tmpdir: tempfile.TemporaryDirectory | None = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False):
    """Initialize database engine, create tables and build the store."""
    global _engine, _store, _tmpdir

    from meetup_escrow.infrastructure.database.engine import (
        build_engine,
        create_tables,
        get_store,
        init_db,
    )
    from meetup_escrow.infrastructure.database.repositories import SqlAlchemyPersistenceStore

    settings = get_settings()
    if use_sqlite:
        _tmpdir = tempfile.TemporaryDirectory(prefix="meetup_escrow_")
        url = f"sqlite+aiosqlite:///{Path(_tmpdir.name) / 'simulation.db'}"
        _engine = build_engine(url, settings)
        await create_tables(_engine)
        _store = SqlAlchemyPersistenceStore.from_engine(
            _engine, initial_trust_score=settings.initial_trust_score
        )
        logger.info("database.sqlite_initialized", url=url)
    else:
        await init_db()
        _store = get_store()


async def shutdown_database():
    """Close database connections."""
    global _engine, _store, _tmpdir

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        if _tmpdir is not None:
            _tmpdir.cleanup()
            _tmpdir = None
    else:
        from meetup_escrow.infrastructure.database.engine import close_db
        await close_db()
    _store = None


def services():
    settings = get_settings().model_copy(
        update={"payment_retry_backoff_seconds": 0.0, "sweep_enabled": False}
    )
    return build_services(_store, settings)


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class BuyerBot:
    """Simulated buyer who creates, funds and confirms transactions."""

    user_id: str = "buyer-alice"

    async def buy(self, svc, seller: SellerBot, amount: Decimal, listing: str) -> str:
        txn = await svc.create_transaction(self.user_id, seller.user_id, listing, amount)
        logger.info("🔵 BUYER: Transaction created", transaction_id=txn.id, amount=str(amount))
        txn = await svc.transition(txn.id, TransactionAction.SUBMIT_DEPOSIT, self.user_id)
        logger.info(
            "🔵 BUYER: Deposit submitted",
            transaction_id=txn.id,
            authorization=txn.authorization_id,
        )
        return txn.id

    async def confirm(self, svc, transaction_id: str, rating: int | None = None):
        payload = {"rating": rating} if rating is not None else {}
        txn = await svc.transition(
            transaction_id, TransactionAction.COMPLETE, self.user_id, payload
        )
        logger.info("🔵 BUYER: Meetup confirmed", transaction_id=transaction_id, rating=rating)
        return txn


@dataclass
class SellerBot:
    """Simulated seller who accepts deposits and shows up (or not)."""

    user_id: str = "seller-bob"

    async def accept_and_schedule(self, svc, transaction_id: str, meetup_at: datetime) -> None:
        await svc.transition(transaction_id, TransactionAction.ACCEPT_DEPOSIT, self.user_id)
        await svc.transition(
            transaction_id,
            TransactionAction.SCHEDULE_MEETUP,
            self.user_id,
            {"scheduled_meetup_at": meetup_at.isoformat(), "location": "Central Station"},
        )
        logger.info(
            "🟢 SELLER: Deposit accepted, meetup scheduled",
            transaction_id=transaction_id,
            meetup_at=meetup_at.isoformat(),
        )


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_transaction(txn) -> None:
    print(f"  Status: {txn.status.value} (version {txn.version})")
    if txn.cancellation_timing:
        print(f"  Cancellation timing: {txn.cancellation_timing.value}")
    if txn.dispute_outcome:
        print(f"  Dispute outcome: {txn.dispute_outcome.value}")
    if txn.refunded_amount is not None:
        print(f"  Refunded: {txn.refunded_amount}")
    if txn.settlement_receipt:
        print(f"  Settlement receipt: {txn.settlement_receipt}")
    if txn.needs_manual_review:
        print(f"  ⚠️  Manual review: {txn.manual_review_reason}")


async def print_statistics(svc, *user_ids: str) -> None:
    for user_id in user_ids:
        summary = await svc.get_reputation_summary(user_id)
        stats = summary.statistics
        print(
            f"  👤 {user_id}: trust={stats.trust_score:.1f} ({summary.trust_level.value}) "
            f"completed={stats.completed_transactions} cancels={stats.cancellations} "
            f"rating={stats.average_rating:.2f} ({stats.rating_count})"
        )
        for warning in summary.warnings:
            print(f"     ⚠️  {warning}")


async def print_audit_trail(svc, transaction_id: str) -> None:
    """Print the full audit trail for a transaction."""
    events = await svc.get_events(transaction_id)
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status.value if evt.old_status else "—"
        print(f"    {i}. [{evt.event_type.value}] {old} → {evt.new_status.value} (by {evt.actor_id})")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    banner("SCENARIO 1: Happy Path — Deposit, Meetup, Confirmation")
    svc, _ = services()
    buyer, seller = BuyerBot(), SellerBot()

    section("Step 1: Buyer creates transaction and submits deposit")
    txn_id = await buyer.buy(svc, seller, Decimal("120.00"), "listing-bike-42")

    section("Step 2: Seller accepts and schedules the meetup")
    await seller.accept_and_schedule(svc, txn_id, datetime.now(UTC) + timedelta(days=2))

    section("Step 3: Meetup starts")
    await svc.transition(txn_id, TransactionAction.START_MEETUP, seller.user_id)

    section("Step 4: Buyer confirms and rates the seller 9/10")
    txn = await buyer.confirm(svc, txn_id, rating=9)
    print_transaction(txn)

    section("Step 5: Confirming again is a no-op")
    again = await buyer.confirm(svc, txn_id)
    print(f"  Same version after replay: {again.version == txn.version}")

    await print_statistics(svc, buyer.user_id, seller.user_id)
    await print_audit_trail(svc, txn_id)


# ===========================================================================
# Scenario 2: Last-Minute Cancellation
# ===========================================================================
async def scenario_2_last_minute_cancel() -> None:
    banner("SCENARIO 2: Last-Minute Cancellation by the Seller")
    svc, _ = services()
    buyer, seller = BuyerBot("buyer-carol"), SellerBot("seller-dave")

    section("Step 1: Setup (Create -> Deposit -> Accept -> Schedule)")
    now = datetime.now(UTC)
    txn_id = await buyer.buy(svc, seller, Decimal("80.00"), "listing-desk-7")
    await seller.accept_and_schedule(svc, txn_id, now + timedelta(hours=1))

    section("Step 2: Seller cancels one hour before the meetup")
    txn = await svc.cancel_transaction(txn_id, seller.user_id, reason="Sold it elsewhere", now=now)
    print_transaction(txn)
    print(f"  Last-minute: {txn.is_last_minute_cancellation}")

    await print_statistics(svc, buyer.user_id, seller.user_id)
    await print_audit_trail(svc, txn_id)


# ===========================================================================
# Scenario 3: Dispute Split
# ===========================================================================
async def scenario_3_dispute_split() -> None:
    banner("SCENARIO 3: Dispute Resolved with a Split")
    svc, _ = services()
    buyer, seller = BuyerBot("buyer-erin"), SellerBot("seller-frank")

    section("Step 1: Setup (Create -> Deposit -> Accept -> Schedule -> Start)")
    txn_id = await buyer.buy(svc, seller, Decimal("200.00"), "listing-camera-3")
    await seller.accept_and_schedule(svc, txn_id, datetime.now(UTC) + timedelta(hours=3))
    await svc.transition(txn_id, TransactionAction.START_MEETUP, buyer.user_id)

    section("Step 2: Buyer raises a dispute")
    await svc.transition(
        txn_id,
        TransactionAction.RAISE_DISPUTE,
        buyer.user_id,
        {"reason": "Lens is scratched, not as described"},
    )

    section("Step 3: Adjudicator splits the difference")
    txn = await svc.transition(
        txn_id,
        TransactionAction.RESOLVE_DISPUTE,
        "adjudicator-1",
        {"outcome": DisputeOutcome.SPLIT.value},
    )
    print_transaction(txn)

    await print_statistics(svc, buyer.user_id, seller.user_id)
    await print_audit_trail(svc, txn_id)


# ===========================================================================
# Scenario 4: Cancel / Complete Race
# ===========================================================================
async def scenario_4_race() -> None:
    banner("SCENARIO 4: Buyer Confirmation Races a Cancellation")
    svc, _ = services()
    buyer, seller = BuyerBot("buyer-gina"), SellerBot("seller-hank")

    section("Step 1: Setup (Create -> Deposit -> Accept -> Schedule)")
    txn_id = await buyer.buy(svc, seller, Decimal("60.00"), "listing-lamp-9")
    await seller.accept_and_schedule(svc, txn_id, datetime.now(UTC) + timedelta(hours=5))

    section("Step 2: Fire both at once")
    results = await asyncio.gather(
        buyer.confirm(svc, txn_id),
        svc.cancel_transaction(txn_id, seller.user_id, reason="Changed my mind"),
        return_exceptions=True,
    )
    for name, result in zip(("complete", "cancel"), results, strict=True):
        if isinstance(result, EscrowError):
            print(f"  ❌ {name}: {result.code} — {result.message}")
        elif isinstance(result, BaseException):
            raise result
        else:
            print(f"  ✅ {name}: {result.status.value}")

    final = await svc.get_transaction(txn_id)
    print_transaction(final)
    await print_audit_trail(svc, txn_id)


# ===========================================================================
# Scenario 5: Replay Idempotency
# ===========================================================================
async def scenario_5_replay() -> None:
    banner("SCENARIO 5: Replayed Terminal Outcome Applies Once")
    svc, _ = services()
    buyer, seller = BuyerBot("buyer-ivy"), SellerBot("seller-jack")

    section("Step 1: Complete a transaction")
    txn_id = await buyer.buy(svc, seller, Decimal("45.00"), "listing-chair-5")
    await seller.accept_and_schedule(svc, txn_id, datetime.now(UTC) + timedelta(days=1))
    txn = await buyer.confirm(svc, txn_id)
    await print_statistics(svc, buyer.user_id, seller.user_id)

    section("Step 2: Replay the outcome three more times")
    from meetup_escrow.services.reputation_service import ReputationService

    reputation = ReputationService(_store)
    for _ in range(3):
        await reputation.apply_outcome(txn)
    await print_statistics(svc, buyer.user_id, seller.user_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_last_minute_cancel,
    3: scenario_3_dispute_split,
    4: scenario_4_race,
    5: scenario_5_replay,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🤝" * 35)
        print("  MEETUP ESCROW — SIMULATION")
        db_type = "SQLite (temp file)" if use_sqlite else "PostgreSQL"
        print(f"  Database: {db_type}")
        print("  Payments: simulated gateway")
        print("🤝" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    if num not in SCENARIOS:
        print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
        return

    await init_database(use_sqlite=use_sqlite)
    try:
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Meetup Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-5). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in a temp file instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    if args.scenario:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
    else:
        asyncio.run(run_all(use_sqlite=args.sqlite))
