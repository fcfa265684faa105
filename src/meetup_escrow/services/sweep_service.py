"""Expiration sweep.

Periodic, re-runnable job that replaces inline timers:
    - DEPOSIT_SUBMITTED older than deposit_acceptance_timeout_hours -> cancelled by system
    - PENDING older than pending_deposit_timeout_hours             -> cancelled by system
    - settlement claims older than settlement_claim_timeout_minutes -> flagged for manual review
    - terminal transactions updated within outcome_replay_window_minutes -> reputation
      outcome re-applied, so a failed delta write is eventually recorded

Every action goes through TransactionService (or a version-checked save),
so a transaction that moved on between the scan and the action is skipped
rather than overwritten. Running the sweep twice is harmless.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from meetup_escrow.domain.enums import SYSTEM_ACTOR_ID, EventType, TransactionStatus
from meetup_escrow.domain.exceptions import (
    EscrowError,
    InvalidStateTransitionError,
    VersionConflictError,
)
from meetup_escrow.domain.models import TransitionRecord
from meetup_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from meetup_escrow.config import Settings
    from meetup_escrow.domain.collaborators import PersistenceStore
    from meetup_escrow.domain.models import Transaction
    from meetup_escrow.services.transaction_service import Clock, TransactionService

logger = get_logger(__name__)

_ACTIVE_STATUSES = tuple(s for s in TransactionStatus if not s.is_terminal)
_TERMINAL_STATUSES = tuple(s for s in TransactionStatus if s.is_terminal)


@dataclass
class SweepReport:
    """What one sweep run did."""

    cancelled: list[str] = field(default_factory=list)
    flagged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    replayed: list[str] = field(default_factory=list)


class ExpirationSweeper:
    def __init__(
        self,
        store: PersistenceStore,
        transactions: TransactionService,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self._store = store
        self._transactions = transactions
        self._settings = settings
        self._clock = clock

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        """Run a single sweep pass and report what happened."""
        now = now or self._clock()
        report = SweepReport()
        structlog.contextvars.bind_contextvars(sweep_run=uuid.uuid4().hex[:12])
        try:
            await self._replay_outcomes(now, report)
            await self._expire(
                TransactionStatus.DEPOSIT_SUBMITTED,
                now - timedelta(hours=self._settings.deposit_acceptance_timeout_hours),
                "Deposit not accepted in time",
                now,
                report,
            )
            await self._expire(
                TransactionStatus.PENDING,
                now - timedelta(hours=self._settings.pending_deposit_timeout_hours),
                "Deposit never submitted",
                now,
                report,
            )
            await self._flag_stale_claims(now, report)
        finally:
            structlog.contextvars.unbind_contextvars("sweep_run")

        logger.info(
            "sweep.completed",
            cancelled=len(report.cancelled),
            flagged=len(report.flagged),
            skipped=len(report.skipped),
            failed=len(report.failed),
            replayed=len(report.replayed),
        )
        return report

    async def run_periodic(self, stop: asyncio.Event | None = None) -> None:
        """Run the sweep every sweep_interval_seconds until stopped or cancelled."""
        stop = stop or asyncio.Event()
        interval = self._settings.sweep_interval_seconds
        logger.info("sweep.started", interval_seconds=interval)
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("sweep.run_failed", error=str(exc))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                continue
        logger.info("sweep.stopped")

    async def _expire(
        self,
        status: TransactionStatus,
        cutoff: datetime,
        reason: str,
        now: datetime,
        report: SweepReport,
    ) -> None:
        for txn in await self._store.list_transactions_by_status([status]):
            if _reference_time(txn) > cutoff or txn.settlement_action is not None:
                continue
            try:
                await self._transactions.cancel_transaction(
                    txn.id, SYSTEM_ACTOR_ID, reason=reason, now=now
                )
            except (InvalidStateTransitionError, VersionConflictError):
                # Moved on since the scan.
                report.skipped.append(txn.id)
                continue
            except EscrowError as exc:
                logger.warning("sweep.cancel_failed", transaction_id=txn.id, error=exc.message)
                report.failed.append(txn.id)
                continue
            logger.info("sweep.expired", transaction_id=txn.id, status=status.value)
            report.cancelled.append(txn.id)

    async def _replay_outcomes(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - timedelta(minutes=self._settings.outcome_replay_window_minutes)
        for txn in await self._store.list_transactions_by_status(_TERMINAL_STATUSES):
            if txn.updated_at < cutoff:
                continue
            if await self._transactions.record_outcome(txn):
                report.replayed.append(txn.id)
            else:
                report.failed.append(txn.id)

    async def _flag_stale_claims(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - timedelta(minutes=self._settings.settlement_claim_timeout_minutes)
        for txn in await self._store.list_transactions_by_status(_ACTIVE_STATUSES):
            if (
                txn.settlement_action is None
                or txn.needs_manual_review
                or txn.settlement_started_at is None
                or txn.settlement_started_at > cutoff
            ):
                continue
            reason = f"Settlement '{txn.settlement_action}' stalled since {txn.settlement_started_at.isoformat()}"
            flagged = replace(
                txn, needs_manual_review=True, manual_review_reason=reason, updated_at=now
            )
            record = TransitionRecord(
                transaction_id=txn.id,
                event_type=EventType.MANUAL_REVIEW_REQUIRED,
                old_status=txn.status,
                new_status=txn.status,
                actor_id=SYSTEM_ACTOR_ID,
                created_at=now,
                metadata={"reason": reason},
            )
            try:
                await self._store.save_transaction(flagged, txn.version, record)
            except VersionConflictError:
                report.skipped.append(txn.id)
                continue
            logger.warning("sweep.stale_claim_flagged", transaction_id=txn.id, reason=reason)
            report.flagged.append(txn.id)


def _reference_time(txn: Transaction) -> datetime:
    if txn.status == TransactionStatus.DEPOSIT_SUBMITTED and txn.deposit_submitted_at:
        return txn.deposit_submitted_at
    return txn.created_at
