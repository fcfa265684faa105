"""Transaction Service — core business logic for the escrow lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Cancellation classifier and reputation engine
    - Persistence store (versioned saves + audit trail)
    - Payment gateway and notification dispatcher

The REST routes, the expiration sweep and the simulation script all call
into this service, so every business rule lives here exactly once.

Write path of every transition:
    load -> permission check -> settlement claim check -> state machine guard
    -> (claim + payment call + finalize) or plain versioned save
    -> reputation adjustment (terminal only) -> notification

A VersionConflictError on the guarded save reloads and re-validates, so the
loser of a race observes the winner's state instead of overwriting it.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from meetup_escrow.config import get_settings
from meetup_escrow.domain.cancellation import classify_cancellation
from meetup_escrow.domain.collaborators import DomainEvent
from meetup_escrow.domain.enums import (
    SYSTEM_ACTOR_ID,
    ActorRole,
    DisputeOutcome,
    EventType,
    TransactionAction,
    TransactionStatus,
)
from meetup_escrow.domain.exceptions import (
    ActorNotPermittedError,
    ExternalServiceError,
    InvalidStateTransitionError,
    SettlementInProgressError,
    ValidationError,
    VersionConflictError,
)
from meetup_escrow.domain.models import Review, Transaction, TransitionRecord
from meetup_escrow.domain.reputation import MAX_RATING, MIN_RATING, summarize_reputation
from meetup_escrow.domain.state_machine import (
    DISPUTE_RESOLUTION_EVENTS,
    TransactionStateMachine,
    validate_transition,
)
from meetup_escrow.logging_config import get_logger
from meetup_escrow.schemas.actions import (
    AcceptDepositPayload,
    CancelPayload,
    CompletePayload,
    RaiseDisputePayload,
    RefundPayload,
    RejectDepositPayload,
    ResolveDisputePayload,
    ScheduleMeetupPayload,
    StartMeetupPayload,
    SubmitDepositPayload,
    parse_transition_payload,
)

if TYPE_CHECKING:
    from meetup_escrow.config import Settings
    from meetup_escrow.domain.collaborators import PaymentGateway, PersistenceStore
    from meetup_escrow.domain.enums import CancellationTiming
    from meetup_escrow.domain.models import UserStatistics
    from meetup_escrow.domain.reputation import ReputationSummary
    from meetup_escrow.services.notification_service import NotificationService
    from meetup_escrow.services.reputation_service import ReputationService

logger = get_logger(__name__)

Clock = Callable[[], datetime]

_CENT = Decimal("0.01")

_PARTIES = frozenset({ActorRole.BUYER, ActorRole.SELLER})

EVENT_ACTIONS: dict[str, TransactionAction] = {
    "submit_deposit": TransactionAction.SUBMIT_DEPOSIT,
    "accept_deposit": TransactionAction.ACCEPT_DEPOSIT,
    "reject_deposit": TransactionAction.REJECT_DEPOSIT,
    "schedule_meetup": TransactionAction.SCHEDULE_MEETUP,
    "start_meetup": TransactionAction.START_MEETUP,
    "complete_transaction": TransactionAction.COMPLETE,
    "cancel_transaction": TransactionAction.CANCEL,
    "refund_transaction": TransactionAction.REFUND,
    "raise_dispute": TransactionAction.RAISE_DISPUTE,
    "resolve_buyer_favored": TransactionAction.RESOLVE_DISPUTE,
    "resolve_seller_favored": TransactionAction.RESOLVE_DISPUTE,
    "resolve_split": TransactionAction.RESOLVE_DISPUTE,
}


def utc_now() -> datetime:
    return datetime.now(UTC)


# Payment step: given the transaction about to settle, perform the gateway
# call(s) and return the fields to stamp on the saved record.
Settlement = Callable[[Transaction], Awaitable[dict]]


@dataclass(frozen=True)
class _TransitionPlan:
    """Everything needed to apply one state machine event."""

    event: str
    event_type: EventType
    # None means "adjudicator": anyone who is not a party.
    allowed_roles: frozenset[ActorRole] | None
    changes: Callable[[Transaction, datetime], dict]
    metadata: dict = field(default_factory=dict)


class TransactionService:
    """Manages the escrow transaction lifecycle."""

    def __init__(
        self,
        store: PersistenceStore,
        payments: PaymentGateway,
        notifications: NotificationService,
        reputation: ReputationService,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._payments = payments
        self._notifications = notifications
        self._reputation = reputation
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_transaction(
        self,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        amount: Decimal | str | int,
    ) -> Transaction:
        """Create a new transaction in PENDING state."""
        buyer_id, seller_id, listing_id = (
            (value or "").strip() for value in (buyer_id, seller_id, listing_id)
        )
        if not buyer_id or not seller_id or not listing_id:
            raise ValidationError("buyer_id, seller_id and listing_id are required")
        if buyer_id == seller_id:
            raise ValidationError("Buyer and seller must be different users")
        amount = _to_amount(amount)

        now = self._clock()
        platform_fee = (amount * self._settings.platform_fee_rate).quantize(
            _CENT, rounding=ROUND_HALF_UP
        )
        transaction = Transaction(
            id=str(uuid.uuid4()),
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
            amount=amount,
            platform_fee=platform_fee,
            status=TransactionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        record = TransitionRecord(
            transaction_id=transaction.id,
            event_type=EventType.TRANSACTION_CREATED,
            old_status=None,
            new_status=TransactionStatus.PENDING,
            actor_id=buyer_id,
            created_at=now,
            metadata={"listing_id": listing_id, "amount": str(amount)},
        )
        await self._store.ensure_user_statistics(buyer_id)
        await self._store.ensure_user_statistics(seller_id)
        transaction = await self._store.create_transaction(transaction, record)

        logger.info(
            "transaction.created",
            transaction_id=transaction.id,
            listing_id=listing_id,
            amount=str(amount),
        )
        await self._notify(transaction, EventType.TRANSACTION_CREATED, buyer_id, now)
        return transaction

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------

    async def submit_deposit(self, transaction_id: str, actor_id: str) -> Transaction:
        """Buyer submits the deposit; the amount is captured by the gateway."""
        plan = _TransitionPlan(
            event="submit_deposit",
            event_type=EventType.DEPOSIT_SUBMITTED,
            allowed_roles=frozenset({ActorRole.BUYER}),
            changes=lambda txn, now: {"deposit_submitted_at": now},
        )
        return await self._run(transaction_id, plan, actor_id)

    async def accept_deposit(self, transaction_id: str, actor_id: str) -> Transaction:
        """Seller accepts the deposit; funds are now held in escrow."""
        plan = _TransitionPlan(
            event="accept_deposit",
            event_type=EventType.DEPOSIT_ACCEPTED,
            allowed_roles=frozenset({ActorRole.SELLER}),
            changes=lambda txn, now: {"deposit_accepted_at": now},
        )
        return await self._run(transaction_id, plan, actor_id)

    async def reject_deposit(
        self, transaction_id: str, actor_id: str, reason: str | None = None
    ) -> Transaction:
        """Seller rejects the deposit; it is refunded in full."""
        plan = _TransitionPlan(
            event="reject_deposit",
            event_type=EventType.DEPOSIT_REJECTED,
            allowed_roles=frozenset({ActorRole.SELLER}),
            changes=lambda txn, now: {},
            metadata={"reason": reason},
        )
        return await self._run(transaction_id, plan, actor_id)

    # ------------------------------------------------------------------
    # Meetup
    # ------------------------------------------------------------------

    async def schedule_meetup(
        self,
        transaction_id: str,
        actor_id: str,
        scheduled_meetup_at: datetime,
        location: str | None = None,
    ) -> Transaction:
        if scheduled_meetup_at.tzinfo is None or scheduled_meetup_at.utcoffset() is None:
            raise ValidationError("scheduled_meetup_at must be timezone-aware")
        meetup_at = scheduled_meetup_at.astimezone(UTC)
        plan = _TransitionPlan(
            event="schedule_meetup",
            event_type=EventType.MEETUP_SCHEDULED,
            allowed_roles=_PARTIES,
            changes=lambda txn, now: {
                "scheduled_meetup_at": meetup_at,
                "meetup_location": location,
            },
            metadata={"scheduled_meetup_at": meetup_at.isoformat(), "location": location},
        )
        return await self._run(transaction_id, plan, actor_id)

    async def start_meetup(self, transaction_id: str, actor_id: str) -> Transaction:
        plan = _TransitionPlan(
            event="start_meetup",
            event_type=EventType.MEETUP_STARTED,
            allowed_roles=_PARTIES,
            changes=lambda txn, now: {"meetup_started_at": now},
        )
        return await self._run(transaction_id, plan, actor_id)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_transaction(
        self,
        transaction_id: str,
        confirming_actor_id: str,
        rating: int | None = None,
        comment: str | None = None,
    ) -> Transaction:
        """Confirm the meetup went through and release the seller payout.

        Idempotent: completing an already-COMPLETED transaction returns it
        unchanged (no second payout, no second reputation adjustment, and
        any rating passed along is ignored).
        """
        if rating is not None:
            _check_rating(rating)
            if confirming_actor_id == SYSTEM_ACTOR_ID:
                raise ValidationError("System completions cannot carry a rating")

        already_completed = False

        def _already_completed(txn: Transaction) -> Transaction | None:
            nonlocal already_completed
            if txn.status == TransactionStatus.COMPLETED:
                already_completed = True
                return txn
            return None

        plan = _TransitionPlan(
            event="complete_transaction",
            event_type=EventType.TRANSACTION_COMPLETED,
            allowed_roles=frozenset({ActorRole.BUYER, ActorRole.SYSTEM}),
            changes=lambda txn, now: {
                "completed_at": now,
                "confirmed_by": confirming_actor_id,
            },
        )
        transaction = await self._run(
            transaction_id, plan, confirming_actor_id, short_circuit=_already_completed
        )
        if already_completed:
            logger.info("transaction.complete_noop", transaction_id=transaction_id)
            await self.record_outcome(transaction)
            return transaction
        if rating is not None:
            await self.submit_review(transaction_id, confirming_actor_id, rating, comment)
        return transaction

    # ------------------------------------------------------------------
    # Cancellation & refund
    # ------------------------------------------------------------------

    async def cancel_transaction(
        self,
        transaction_id: str,
        actor_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Transaction:
        """Cancel a non-terminal, non-disputed transaction.

        The cancellation timing tier is stamped from the scheduled meetup
        time and ``now``; any captured deposit is refunded.
        """
        plan = self._exit_plan(
            "cancel_transaction",
            EventType.TRANSACTION_CANCELLED,
            frozenset({ActorRole.BUYER, ActorRole.SELLER, ActorRole.SYSTEM}),
            actor_id,
            reason,
        )
        return await self._run(transaction_id, plan, actor_id, now=now)

    async def refund_transaction(
        self,
        transaction_id: str,
        actor_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Transaction:
        """Seller (or system) refunds the buyer's captured deposit."""
        plan = self._exit_plan(
            "refund_transaction",
            EventType.TRANSACTION_REFUNDED,
            frozenset({ActorRole.SELLER, ActorRole.SYSTEM}),
            actor_id,
            reason,
        )
        return await self._run(transaction_id, plan, actor_id, now=now)

    def _exit_plan(
        self,
        event: str,
        event_type: EventType,
        allowed_roles: frozenset[ActorRole],
        actor_id: str,
        reason: str | None,
    ) -> _TransitionPlan:
        def changes(txn: Transaction, now: datetime) -> dict:
            role = _role_of(txn, actor_id)
            return {
                "cancelled_at": now,
                "cancelled_by": role,
                "cancelled_by_user_id": actor_id,
                "cancellation_reason": reason,
                "cancellation_timing": classify_cancellation(txn.scheduled_meetup_at, now),
            }

        return _TransitionPlan(
            event=event,
            event_type=event_type,
            allowed_roles=allowed_roles,
            changes=changes,
            metadata={"reason": reason},
        )

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def raise_dispute(
        self, transaction_id: str, actor_id: str, reason: str
    ) -> Transaction:
        if not reason or not reason.strip():
            raise ValidationError("A dispute needs a reason")
        plan = _TransitionPlan(
            event="raise_dispute",
            event_type=EventType.DISPUTE_RAISED,
            allowed_roles=_PARTIES,
            changes=lambda txn, now: {"dispute_reason": reason, "disputed_by": actor_id},
            metadata={"reason": reason},
        )
        return await self._run(transaction_id, plan, actor_id)

    async def resolve_dispute(
        self,
        transaction_id: str,
        outcome: DisputeOutcome | str,
        adjudicator_id: str,
    ) -> Transaction:
        """Close a dispute with an adjudicated outcome.

        buyer_favored -> REFUNDED (full refund)
        seller_favored -> COMPLETED (payout released)
        split -> REFUNDED with a partial refund, remainder released
        """
        try:
            outcome = DisputeOutcome(outcome)
        except ValueError:
            raise ValidationError(f"Unknown dispute outcome '{outcome}'") from None
        ratio = self._settings.dispute_split_refund_ratio

        def changes(txn: Transaction, now: datetime) -> dict:
            values: dict = {
                "dispute_outcome": outcome,
                "adjudicator_id": adjudicator_id,
                "resolved_at": now,
            }
            if outcome == DisputeOutcome.BUYER_FAVORED:
                values["refunded_amount"] = txn.amount
            elif outcome == DisputeOutcome.SPLIT:
                values["is_partial_refund"] = True
                values["refunded_amount"] = (txn.amount * ratio).quantize(
                    _CENT, rounding=ROUND_HALF_UP
                )
            else:
                values["completed_at"] = now
            return values

        plan = _TransitionPlan(
            event=DISPUTE_RESOLUTION_EVENTS[outcome],
            event_type=EventType.DISPUTE_RESOLVED,
            allowed_roles=None,
            changes=changes,
            metadata={"outcome": outcome.value},
        )
        return await self._run(transaction_id, plan, adjudicator_id)

    # ------------------------------------------------------------------
    # Generic dispatcher
    # ------------------------------------------------------------------

    async def transition(
        self,
        transaction_id: str,
        action: TransactionAction | str,
        actor_id: str,
        payload: dict | None = None,
    ) -> Transaction:
        """Validate a tagged payload and dispatch to the matching operation."""
        parsed = parse_transition_payload(str(action), payload)
        match parsed:
            case SubmitDepositPayload():
                return await self.submit_deposit(transaction_id, actor_id)
            case AcceptDepositPayload():
                return await self.accept_deposit(transaction_id, actor_id)
            case RejectDepositPayload(reason=reason):
                return await self.reject_deposit(transaction_id, actor_id, reason)
            case ScheduleMeetupPayload(scheduled_meetup_at=when, location=location):
                return await self.schedule_meetup(transaction_id, actor_id, when, location)
            case StartMeetupPayload():
                return await self.start_meetup(transaction_id, actor_id)
            case CompletePayload(rating=rating, comment=comment):
                return await self.complete_transaction(
                    transaction_id, actor_id, rating=rating, comment=comment
                )
            case CancelPayload(reason=reason):
                return await self.cancel_transaction(transaction_id, actor_id, reason)
            case RefundPayload(reason=reason):
                return await self.refund_transaction(transaction_id, actor_id, reason)
            case RaiseDisputePayload(reason=reason):
                return await self.raise_dispute(transaction_id, actor_id, reason)
            case ResolveDisputePayload(outcome=outcome):
                return await self.resolve_dispute(transaction_id, outcome, actor_id)
        raise ValidationError(f"Unsupported action '{action}'")

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    async def submit_review(
        self,
        transaction_id: str,
        rater_id: str,
        rating: int,
        comment: str | None = None,
    ) -> Review:
        """Record a party's 1-10 rating of the counterparty.

        Raises:
            ValidationError: Rating out of range.
            ActorNotPermittedError: Rater is not a party to the transaction.
            InvalidStateTransitionError: Transaction is not COMPLETED.
            DuplicateReviewError: Rater already reviewed this transaction.
        """
        _check_rating(rating)
        transaction = await self._store.load_transaction(transaction_id)
        rated_id = transaction.counterparty_of(rater_id)
        if rated_id is None:
            raise ActorNotPermittedError(rater_id, "review this transaction")
        if transaction.status != TransactionStatus.COMPLETED:
            raise InvalidStateTransitionError(transaction.status.value, "submit_review")

        now = self._clock()
        review = await self._store.save_review(
            Review(
                transaction_id=transaction_id,
                rater_id=rater_id,
                rated_id=rated_id,
                rating=rating,
                comment=comment,
                created_at=now,
            )
        )
        await self._reputation.apply_review(transaction, review)
        logger.info(
            "review.submitted",
            transaction_id=transaction_id,
            rater_id=rater_id,
            rated_id=rated_id,
            rating=rating,
        )
        await self._notifications.publish(
            DomainEvent(
                event_type=EventType.REVIEW_SUBMITTED,
                transaction_id=transaction_id,
                actor_id=rater_id,
                recipients=(rated_id,),
                occurred_at=now,
                data={"rating": rating},
            )
        )
        return review

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: str) -> Transaction:
        return await self._store.load_transaction(transaction_id)

    async def get_status(self, transaction_id: str) -> dict:
        """Get transaction status with the actions that can be requested now."""
        transaction = await self._store.load_transaction(transaction_id)
        allowed: list[str] = []
        if transaction.settlement_action is None:
            sm = TransactionStateMachine(current_status=transaction.status.value)
            for event_name in sm.get_allowed_events():
                action = EVENT_ACTIONS[event_name].value
                if action not in allowed:
                    allowed.append(action)
        return {
            "transaction_id": transaction.id,
            "status": transaction.status,
            "version": transaction.version,
            "settlement_in_progress": transaction.settlement_action is not None,
            "allowed_actions": allowed,
        }

    async def get_events(self, transaction_id: str) -> list[TransitionRecord]:
        """Get audit trail."""
        await self._store.load_transaction(transaction_id)
        return await self._store.list_events(transaction_id)

    async def get_user_statistics(self, user_id: str) -> UserStatistics:
        return await self._store.load_user_statistics(user_id)

    async def list_user_transactions(
        self, user_id: str, role: ActorRole | str | None = None
    ) -> list[Transaction]:
        """Transactions a user took part in, newest first, optionally by side."""
        transactions = await self._store.list_transactions_for_user(user_id)
        if role is None:
            return transactions
        try:
            role = ActorRole(role)
        except ValueError:
            raise ValidationError(f"Unknown role '{role}'") from None
        if role == ActorRole.BUYER:
            return [t for t in transactions if t.buyer_id == user_id]
        if role == ActorRole.SELLER:
            return [t for t in transactions if t.seller_id == user_id]
        raise ValidationError("Role must be buyer or seller")

    async def list_reviews(self, user_id: str) -> list[Review]:
        """Reviews a user received, newest first."""
        return await self._store.list_reviews_for_user(user_id)

    async def get_reputation_summary(self, user_id: str) -> ReputationSummary:
        stats = await self._store.load_user_statistics(user_id)
        return summarize_reputation(stats)

    async def record_outcome(self, transaction: Transaction) -> bool:
        """Apply the reputation outcome of a terminal transaction.

        Safe to repeat: per-user deltas are keyed, so a replay only lands the
        ones a failed earlier attempt missed. Failures are logged, not raised;
        the status change they follow is already committed.
        """
        if not transaction.is_terminal:
            return False
        try:
            await self._reputation.apply_outcome(transaction)
        except Exception as exc:
            logger.error(
                "reputation.apply_failed",
                transaction_id=transaction.id,
                status=transaction.status.value,
                error=str(exc),
            )
            return False
        return True

    def classify_cancellation(
        self, scheduled_meetup_at: datetime | None, now: datetime | None = None
    ) -> CancellationTiming:
        return classify_cancellation(scheduled_meetup_at, now or self._clock())

    # ------------------------------------------------------------------
    # Transition engine
    # ------------------------------------------------------------------

    async def _run(
        self,
        transaction_id: str,
        plan: _TransitionPlan,
        actor_id: str,
        now: datetime | None = None,
        short_circuit: Callable[[Transaction], Transaction | None] | None = None,
    ) -> Transaction:
        """Apply a planned transition with optimistic concurrency.

        Each attempt reloads the transaction and re-validates from scratch.
        """
        last_conflict: VersionConflictError | None = None
        for attempt in range(1, self._settings.max_conflict_retries + 1):
            at = _as_utc(now or self._clock())
            transaction = await self._store.load_transaction(transaction_id)
            self._check_actor(transaction, actor_id, plan)

            if short_circuit is not None:
                done = short_circuit(transaction)
                if done is not None:
                    return done

            if transaction.settlement_action is not None:
                raise SettlementInProgressError(
                    transaction.status.value, plan.event, transaction.settlement_action
                )
            new_status = self._guard(transaction, plan.event)

            changes = plan.changes(transaction, at)
            record = TransitionRecord(
                transaction_id=transaction.id,
                event_type=plan.event_type,
                old_status=transaction.status,
                new_status=new_status,
                actor_id=actor_id,
                created_at=at,
                metadata={
                    "event": plan.event,
                    **{k: v for k, v in plan.metadata.items() if v is not None},
                    **_audit_fields(changes),
                },
            )
            settlement = self._settlement_for(plan.event, transaction, changes)

            try:
                if settlement is None:
                    updated = replace(
                        transaction, status=new_status, updated_at=at, **changes
                    )
                    saved = await self._store.save_transaction(
                        updated, transaction.version, record
                    )
                else:
                    saved = await self._settle(
                        transaction, new_status, changes, record, settlement, plan, at
                    )
            except VersionConflictError as exc:
                last_conflict = exc
                logger.info(
                    "transaction.version_conflict",
                    transaction_id=transaction_id,
                    transition_event=plan.event,
                    attempt=attempt,
                )
                continue

            logger.info(
                "transaction.transitioned",
                transaction_id=saved.id,
                transition_event=plan.event,
                from_status=record.old_status.value if record.old_status else None,
                to_status=saved.status.value,
                actor_id=actor_id,
            )
            if saved.is_terminal:
                await self.record_outcome(saved)
            await self._notify(saved, plan.event_type, actor_id, at, record.metadata)
            return saved

        if last_conflict is None:
            raise RuntimeError("max_conflict_retries must be at least 1")
        logger.warning(
            "transaction.conflict_budget_exhausted",
            transaction_id=transaction_id,
            transition_event=plan.event,
        )
        raise last_conflict

    async def _settle(
        self,
        transaction: Transaction,
        new_status: TransactionStatus,
        changes: dict,
        record: TransitionRecord,
        settlement: Settlement,
        plan: _TransitionPlan,
        at: datetime,
    ) -> Transaction:
        """Claim the transaction, call the gateway, then save the outcome.

        The claim save is version-checked; a VersionConflictError from it
        propagates so the caller can retry. The gateway call happens with no
        lock held.
        """
        claimed = await self._store.save_transaction(
            replace(
                transaction,
                settlement_action=plan.event,
                settlement_started_at=at,
                updated_at=at,
            ),
            transaction.version,
        )
        logger.info(
            "transaction.settlement_claimed",
            transaction_id=transaction.id,
            transition_event=plan.event,
        )

        try:
            settled_fields = await settlement(replace(transaction, **changes))
        except ExternalServiceError as exc:
            await self._abandon_settlement(claimed, plan.event, exc, at)
            raise

        current = claimed
        for _ in range(self._settings.max_conflict_retries + 1):
            final = replace(
                current,
                status=new_status,
                updated_at=at,
                settlement_action=None,
                settlement_started_at=None,
                **{**changes, **settled_fields},
            )
            try:
                return await self._store.save_transaction(final, current.version, record)
            except VersionConflictError:
                # Only the sweep may touch a claimed row (manual review flag).
                current = await self._store.load_transaction(transaction.id)
                if current.settlement_action != plan.event:
                    raise
        raise VersionConflictError(transaction.id, current.version)

    async def _abandon_settlement(
        self,
        claimed: Transaction,
        event: str,
        error: ExternalServiceError,
        at: datetime,
    ) -> None:
        """Clear a failed claim and flag the transaction for manual review."""
        reason = f"{event} failed: {error.message}"
        current = claimed
        for _ in range(self._settings.max_conflict_retries + 1):
            flagged = replace(
                current,
                settlement_action=None,
                settlement_started_at=None,
                needs_manual_review=True,
                manual_review_reason=reason,
                updated_at=at,
            )
            record = TransitionRecord(
                transaction_id=current.id,
                event_type=EventType.MANUAL_REVIEW_REQUIRED,
                old_status=current.status,
                new_status=current.status,
                actor_id=SYSTEM_ACTOR_ID,
                created_at=at,
                metadata={"event": event, "reason": reason},
            )
            try:
                saved = await self._store.save_transaction(flagged, current.version, record)
                break
            except VersionConflictError:
                current = await self._store.load_transaction(claimed.id)
        else:
            logger.error(
                "transaction.claim_release_failed",
                transaction_id=claimed.id,
                transition_event=event,
            )
            return

        logger.error(
            "transaction.settlement_failed",
            transaction_id=saved.id,
            transition_event=event,
            status=saved.status.value,
            error=error.message,
        )
        await self._notify(
            saved, EventType.MANUAL_REVIEW_REQUIRED, SYSTEM_ACTOR_ID, at, {"reason": reason}
        )

    def _settlement_for(
        self, event: str, transaction: Transaction, changes: dict
    ) -> Settlement | None:
        """Return the payment step an event needs, or None if it moves no money."""
        payments = self._payments
        key = f"{transaction.id}:{event}"

        if event == "submit_deposit":
            async def capture(txn: Transaction) -> dict:
                auth = await payments.capture_deposit(txn.amount, idempotency_key=key)
                return {"authorization_id": auth}
            return capture

        if transaction.authorization_id is None:
            return None

        if event in ("complete_transaction", "resolve_seller_favored"):
            async def release(txn: Transaction) -> dict:
                receipt = await payments.release(
                    txn.authorization_id, amount=txn.seller_payout, idempotency_key=key
                )
                return {"settlement_receipt": receipt}
            return release

        if event in (
            "reject_deposit",
            "cancel_transaction",
            "refund_transaction",
            "resolve_buyer_favored",
        ):
            async def refund(txn: Transaction) -> dict:
                receipt = await payments.refund(
                    txn.authorization_id, amount=txn.amount, idempotency_key=key
                )
                return {"settlement_receipt": receipt, "refunded_amount": txn.amount}
            return refund

        if event == "resolve_split":
            async def split(txn: Transaction) -> dict:
                refunded = txn.refunded_amount or Decimal("0")
                receipts = [
                    await payments.refund(
                        txn.authorization_id, amount=refunded, idempotency_key=f"{key}:refund"
                    )
                ]
                remainder = max(txn.amount - refunded - txn.platform_fee, Decimal("0"))
                if remainder > 0:
                    receipts.append(
                        await payments.release(
                            txn.authorization_id,
                            amount=remainder,
                            idempotency_key=f"{key}:release",
                        )
                    )
                return {"settlement_receipt": ",".join(receipts)}
            return split

        return None

    def _check_actor(self, transaction: Transaction, actor_id: str, plan: _TransitionPlan) -> None:
        role = _role_of(transaction, actor_id)
        if plan.allowed_roles is None:
            if role in _PARTIES:
                raise ActorNotPermittedError(actor_id, f"{plan.event} (party to the dispute)")
            return
        if role not in plan.allowed_roles:
            raise ActorNotPermittedError(actor_id, plan.event)

    @staticmethod
    def _guard(transaction: Transaction, event: str) -> TransactionStatus:
        """Validate the event against the state machine.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        try:
            return TransactionStatus(validate_transition(transaction.status.value, event))
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(transaction.status.value, event) from err

    async def _notify(
        self,
        transaction: Transaction,
        event_type: EventType,
        actor_id: str,
        at: datetime,
        data: dict | None = None,
    ) -> None:
        await self._notifications.publish(
            DomainEvent(
                event_type=event_type,
                transaction_id=transaction.id,
                actor_id=actor_id,
                recipients=(transaction.buyer_id, transaction.seller_id),
                occurred_at=at,
                data={"status": transaction.status.value, **(data or {})},
            )
        )


def _role_of(transaction: Transaction, actor_id: str) -> ActorRole | None:
    if actor_id == SYSTEM_ACTOR_ID:
        return ActorRole.SYSTEM
    return transaction.role_of(actor_id)


def _check_rating(rating: int) -> None:
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationError("Rating must be an integer")
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")


def _to_amount(amount: Decimal | str | int) -> Decimal:
    if isinstance(amount, float):
        amount = str(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount '{amount}'") from None
    if not value.is_finite():
        raise ValidationError("Amount must be positive")
    value = value.quantize(_CENT, rounding=ROUND_HALF_UP)
    if value <= 0:
        raise ValidationError("Amount must be positive")
    return value


def _audit_fields(changes: dict) -> dict:
    """Pick JSON-friendly values out of a change set for the audit trail."""
    audit = {}
    for key in ("cancellation_timing", "cancelled_by", "dispute_outcome", "refunded_amount"):
        value = changes.get(key)
        if value is not None:
            audit[key] = str(value)
    return audit


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError("Timestamps must be timezone-aware")
    return value.astimezone(UTC)
