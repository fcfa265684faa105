"""Domain enumerations for meetup escrow transactions.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class TransactionStatus(enum.StrEnum):
    """Lifecycle states of an escrow transaction.

    DEPOSIT_ACCEPTED is the canonical name for "funds held in escrow".
    Older rows may carry legacy spellings; use TransactionStatus.parse()
    whenever a status comes from storage or an external caller.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "PENDING"
    DEPOSIT_SUBMITTED = "DEPOSIT_SUBMITTED"
    DEPOSIT_ACCEPTED = "DEPOSIT_ACCEPTED"
    DEPOSIT_REJECTED = "DEPOSIT_REJECTED"
    MEETUP_SCHEDULED = "MEETUP_SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"

    @classmethod
    def parse(cls, value: str) -> "TransactionStatus":
        """Map a stored or legacy status string onto the canonical enum.

        Raises:
            ValueError: If the value is neither canonical nor a known alias.
        """
        normalized = value.strip().upper()
        if normalized in LEGACY_STATUS_ALIASES:
            return LEGACY_STATUS_ALIASES[normalized]
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown transaction status '{value}'") from None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


LEGACY_STATUS_ALIASES: dict[str, TransactionStatus] = {
    "IN_ESCROW": TransactionStatus.DEPOSIT_ACCEPTED,
    "HELD": TransactionStatus.DEPOSIT_ACCEPTED,
    "PAYMENT_CAPTURED": TransactionStatus.DEPOSIT_ACCEPTED,
    "RELEASED": TransactionStatus.COMPLETED,
}

TERMINAL_STATUSES: frozenset[TransactionStatus] = frozenset(
    {
        TransactionStatus.DEPOSIT_REJECTED,
        TransactionStatus.COMPLETED,
        TransactionStatus.CANCELLED,
        TransactionStatus.REFUNDED,
    }
)


class TransactionAction(enum.StrEnum):
    """Actions accepted by TransactionService.transition()."""

    SUBMIT_DEPOSIT = "submit_deposit"
    ACCEPT_DEPOSIT = "accept_deposit"
    REJECT_DEPOSIT = "reject_deposit"
    SCHEDULE_MEETUP = "schedule_meetup"
    START_MEETUP = "start_meetup"
    COMPLETE = "complete"
    CANCEL = "cancel"
    REFUND = "refund"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"


class ActorRole(enum.StrEnum):
    """Who performed an action on a transaction."""

    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


# Actor id used by the sweep and other automatic transitions.
SYSTEM_ACTOR_ID = "system"


class CancellationTiming(enum.StrEnum):
    """Timing tier of a cancellation relative to the scheduled meetup."""

    UNSCHEDULED = "unscheduled"
    AFTER_SCHEDULED_TIME = "after_scheduled_time"
    LAST_MINUTE = "last_minute"
    SAME_DAY = "same_day"
    ONE_DAY_BEFORE = "one_day_before"
    FEW_DAYS_BEFORE = "few_days_before"
    WELL_IN_ADVANCE = "well_in_advance"


class DisputeOutcome(enum.StrEnum):
    """Adjudicated result of a dispute."""

    BUYER_FAVORED = "buyer_favored"
    SELLER_FAVORED = "seller_favored"
    SPLIT = "split"


class OutcomeKind(enum.StrEnum):
    """Kinds of reputation-relevant outcomes.

    Together with a transaction id, an outcome kind identifies one
    statistics adjustment that must be applied at most once.
    """

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DEPOSIT_REJECTED = "deposit_rejected"
    DISPUTE_BUYER_FAVORED = "dispute_buyer_favored"
    DISPUTE_SELLER_FAVORED = "dispute_seller_favored"
    DISPUTE_SPLIT = "dispute_split"
    BUYER_REVIEW = "buyer_review"
    SELLER_REVIEW = "seller_review"


class EventType(enum.StrEnum):
    """Types of events recorded in the transaction_events audit table and
    emitted to the notification dispatcher.
    """

    # Lifecycle events
    TRANSACTION_CREATED = "TRANSACTION_CREATED"
    DEPOSIT_SUBMITTED = "DEPOSIT_SUBMITTED"
    DEPOSIT_ACCEPTED = "DEPOSIT_ACCEPTED"
    DEPOSIT_REJECTED = "DEPOSIT_REJECTED"
    MEETUP_SCHEDULED = "MEETUP_SCHEDULED"
    MEETUP_STARTED = "MEETUP_STARTED"

    # Terminal events
    TRANSACTION_COMPLETED = "TRANSACTION_COMPLETED"
    TRANSACTION_CANCELLED = "TRANSACTION_CANCELLED"
    TRANSACTION_REFUNDED = "TRANSACTION_REFUNDED"

    # Dispute events
    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # Reputation events
    REVIEW_SUBMITTED = "REVIEW_SUBMITTED"

    # Operational events
    MANUAL_REVIEW_REQUIRED = "MANUAL_REVIEW_REQUIRED"


class TrustLevel(enum.StrEnum):
    """Coarse trust bands shown next to a user's profile."""

    NEW = "new"
    BUILDING = "building"
    ESTABLISHED = "established"
    TRUSTED = "trusted"
    ELITE = "elite"
