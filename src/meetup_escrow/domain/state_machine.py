"""Escrow Transaction State Machine Guard.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API or the sweep asks for, an illegal transition
(e.g., PENDING -> COMPLETED) raises TransitionNotAllowed before anything is
written.

The state machine is instantiated per-transaction and validates transitions
before the stored status is updated.

Transition table:
    PENDING            -> DEPOSIT_SUBMITTED  (submit_deposit)
    DEPOSIT_SUBMITTED  -> DEPOSIT_ACCEPTED   (accept_deposit)
    DEPOSIT_SUBMITTED  -> DEPOSIT_REJECTED   (reject_deposit)
    DEPOSIT_ACCEPTED   -> MEETUP_SCHEDULED   (schedule_meetup)
    MEETUP_SCHEDULED   -> IN_PROGRESS        (start_meetup)
    MEETUP_SCHEDULED   -> COMPLETED          (complete_transaction)
    IN_PROGRESS        -> COMPLETED          (complete_transaction)
    <non-terminal>     -> CANCELLED          (cancel_transaction, not from DISPUTED)
    <deposit captured> -> REFUNDED           (refund_transaction, not from DISPUTED)
    DEPOSIT_ACCEPTED   -> DISPUTED           (raise_dispute)
    MEETUP_SCHEDULED   -> DISPUTED           (raise_dispute)
    IN_PROGRESS        -> DISPUTED           (raise_dispute)
    DISPUTED           -> REFUNDED           (resolve_buyer_favored, resolve_split)
    DISPUTED           -> COMPLETED          (resolve_seller_favored)
"""

from __future__ import annotations

from functools import lru_cache

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from meetup_escrow.domain.enums import DisputeOutcome, TransactionStatus


class TransactionStateMachine(StateMachine):
    """State machine that guards escrow transaction lifecycle transitions.

    Usage:
        sm = TransactionStateMachine(current_status="DEPOSIT_ACCEPTED")
        sm.schedule_meetup()  # transitions to MEETUP_SCHEDULED
        sm.status             # "MEETUP_SCHEDULED"
    """

    # --- States ---
    PENDING = State("PENDING", initial=True)
    DEPOSIT_SUBMITTED = State("DEPOSIT_SUBMITTED")
    DEPOSIT_ACCEPTED = State("DEPOSIT_ACCEPTED")
    DEPOSIT_REJECTED = State("DEPOSIT_REJECTED", final=True)
    MEETUP_SCHEDULED = State("MEETUP_SCHEDULED")
    IN_PROGRESS = State("IN_PROGRESS")
    DISPUTED = State("DISPUTED")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    # --- Events / Transitions ---

    # Deposit
    submit_deposit = PENDING.to(DEPOSIT_SUBMITTED)
    accept_deposit = DEPOSIT_SUBMITTED.to(DEPOSIT_ACCEPTED)
    reject_deposit = DEPOSIT_SUBMITTED.to(DEPOSIT_REJECTED)

    # Meetup
    schedule_meetup = DEPOSIT_ACCEPTED.to(MEETUP_SCHEDULED)
    start_meetup = MEETUP_SCHEDULED.to(IN_PROGRESS)
    complete_transaction = MEETUP_SCHEDULED.to(COMPLETED) | IN_PROGRESS.to(COMPLETED)

    # Early exits
    cancel_transaction = (
        PENDING.to(CANCELLED)
        | DEPOSIT_SUBMITTED.to(CANCELLED)
        | DEPOSIT_ACCEPTED.to(CANCELLED)
        | MEETUP_SCHEDULED.to(CANCELLED)
        | IN_PROGRESS.to(CANCELLED)
    )
    refund_transaction = (
        DEPOSIT_SUBMITTED.to(REFUNDED)
        | DEPOSIT_ACCEPTED.to(REFUNDED)
        | MEETUP_SCHEDULED.to(REFUNDED)
        | IN_PROGRESS.to(REFUNDED)
    )

    # Disputes
    raise_dispute = (
        DEPOSIT_ACCEPTED.to(DISPUTED)
        | MEETUP_SCHEDULED.to(DISPUTED)
        | IN_PROGRESS.to(DISPUTED)
    )
    resolve_buyer_favored = DISPUTED.to(REFUNDED)
    resolve_seller_favored = DISPUTED.to(COMPLETED)
    resolve_split = DISPUTED.to(REFUNDED)

    def __init__(self, current_status: str = "PENDING") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current TransactionStatus value, canonical or
                legacy (e.g., "IN_ESCROW" starts at DEPOSIT_ACCEPTED).
        """
        try:
            status = TransactionStatus.parse(str(current_status))
        except ValueError:
            valid = ", ".join(sorted(s.value for s in self.states))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            ) from None
        super().__init__(start_value=status.value)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches TransactionStatus)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.id for event in self.allowed_events]


EVENT_NAMES: tuple[str, ...] = (
    "submit_deposit",
    "accept_deposit",
    "reject_deposit",
    "schedule_meetup",
    "start_meetup",
    "complete_transaction",
    "cancel_transaction",
    "refund_transaction",
    "raise_dispute",
    "resolve_buyer_favored",
    "resolve_seller_favored",
    "resolve_split",
)

DISPUTE_RESOLUTION_EVENTS: dict[DisputeOutcome, str] = {
    DisputeOutcome.BUYER_FAVORED: "resolve_buyer_favored",
    DisputeOutcome.SELLER_FAVORED: "resolve_seller_favored",
    DisputeOutcome.SPLIT: "resolve_split",
}


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Args:
        current_status: Current TransactionStatus value.
        event_name: The event to fire (e.g., "accept_deposit").

    Returns:
        The new status string after the transition.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = TransactionStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None) if event_name in EVENT_NAMES else None
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status


@lru_cache(maxsize=1)
def transition_table() -> dict[str, dict[str, str]]:
    """Return {status: {event: target_status}} for every legal transition.

    Built by firing each event against a fresh machine, so it always agrees
    with the class definition above.
    """
    table: dict[str, dict[str, str]] = {}
    for status in TransactionStatus:
        targets: dict[str, str] = {}
        for event_name in EVENT_NAMES:
            try:
                targets[event_name] = validate_transition(status.value, event_name)
            except TransitionNotAllowed:
                continue
        table[status.value] = targets
    return table
