"""Tests for the TransactionStateMachine domain guard.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. The convenience function validate_transition works.
    4. Terminal states really are terminal, and COMPLETED is only reachable
       through escrow.
"""

from __future__ import annotations

from collections import deque

import pytest
from statemachine.exceptions import TransitionNotAllowed

from meetup_escrow.domain.enums import DisputeOutcome, TransactionStatus
from meetup_escrow.domain.state_machine import (
    DISPUTE_RESOLUTION_EVENTS,
    EVENT_NAMES,
    TransactionStateMachine,
    transition_table,
    validate_transition,
)


class TestHappyPath:
    """Test the full happy-path lifecycle: PENDING -> COMPLETED."""

    def test_full_lifecycle(self) -> None:
        sm = TransactionStateMachine("PENDING")
        assert sm.status == "PENDING"

        sm.submit_deposit()
        assert sm.status == "DEPOSIT_SUBMITTED"

        sm.accept_deposit()
        assert sm.status == "DEPOSIT_ACCEPTED"

        sm.schedule_meetup()
        assert sm.status == "MEETUP_SCHEDULED"

        sm.start_meetup()
        assert sm.status == "IN_PROGRESS"

        sm.complete_transaction()
        assert sm.status == "COMPLETED"

    def test_complete_straight_from_scheduled(self) -> None:
        sm = TransactionStateMachine("MEETUP_SCHEDULED")
        sm.complete_transaction()
        assert sm.status == "COMPLETED"

    def test_reject_deposit(self) -> None:
        sm = TransactionStateMachine("DEPOSIT_SUBMITTED")
        sm.reject_deposit()
        assert sm.status == "DEPOSIT_REJECTED"


class TestEarlyExits:
    @pytest.mark.parametrize(
        "status",
        ["PENDING", "DEPOSIT_SUBMITTED", "DEPOSIT_ACCEPTED", "MEETUP_SCHEDULED", "IN_PROGRESS"],
    )
    def test_cancel_from_active_states(self, status: str) -> None:
        assert validate_transition(status, "cancel_transaction") == "CANCELLED"

    def test_refund_needs_a_deposit(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("PENDING", "refund_transaction")
        assert validate_transition("DEPOSIT_SUBMITTED", "refund_transaction") == "REFUNDED"

    def test_disputed_cannot_be_cancelled_or_refunded(self) -> None:
        for event in ("cancel_transaction", "refund_transaction", "complete_transaction"):
            with pytest.raises(TransitionNotAllowed):
                validate_transition("DISPUTED", event)


class TestDisputePath:
    @pytest.mark.parametrize("status", ["DEPOSIT_ACCEPTED", "MEETUP_SCHEDULED", "IN_PROGRESS"])
    def test_dispute_from_escrowed_states(self, status: str) -> None:
        assert validate_transition(status, "raise_dispute") == "DISPUTED"

    @pytest.mark.parametrize("status", ["PENDING", "DEPOSIT_SUBMITTED"])
    def test_no_dispute_before_escrow(self, status: str) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(status, "raise_dispute")

    @pytest.mark.parametrize(
        ("outcome", "target"),
        [
            (DisputeOutcome.BUYER_FAVORED, "REFUNDED"),
            (DisputeOutcome.SELLER_FAVORED, "COMPLETED"),
            (DisputeOutcome.SPLIT, "REFUNDED"),
        ],
    )
    def test_resolutions(self, outcome: DisputeOutcome, target: str) -> None:
        assert validate_transition("DISPUTED", DISPUTE_RESOLUTION_EVENTS[outcome]) == target

    def test_resolution_only_from_disputed(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("IN_PROGRESS", "resolve_split")


class TestIllegalTransitions:
    """Verify that illegal transitions raise TransitionNotAllowed."""

    def test_pending_to_completed(self) -> None:
        sm = TransactionStateMachine("PENDING")
        with pytest.raises(TransitionNotAllowed):
            sm.complete_transaction()

    def test_accept_twice(self) -> None:
        sm = TransactionStateMachine("DEPOSIT_ACCEPTED")
        with pytest.raises(TransitionNotAllowed):
            sm.accept_deposit()

    def test_in_progress_cannot_be_rescheduled(self) -> None:
        sm = TransactionStateMachine("IN_PROGRESS")
        with pytest.raises(TransitionNotAllowed):
            sm.schedule_meetup()

    @pytest.mark.parametrize("status", ["COMPLETED", "CANCELLED", "REFUNDED", "DEPOSIT_REJECTED"])
    def test_terminal_states_are_final(self, status: str) -> None:
        sm = TransactionStateMachine(status)
        assert sm.get_allowed_events() == []


class TestAllowedEvents:
    def test_pending_allowed(self) -> None:
        allowed = TransactionStateMachine("PENDING").get_allowed_events()
        assert set(allowed) == {"submit_deposit", "cancel_transaction"}

    def test_disputed_allowed(self) -> None:
        allowed = TransactionStateMachine("DISPUTED").get_allowed_events()
        assert set(allowed) == set(DISPUTE_RESOLUTION_EVENTS.values())

    def test_legacy_status_starts_at_canonical_state(self) -> None:
        sm = TransactionStateMachine("IN_ESCROW")
        assert sm.status == "DEPOSIT_ACCEPTED"
        assert "schedule_meetup" in sm.get_allowed_events()


class TestTransitionTable:
    def test_table_matches_machine(self) -> None:
        table = transition_table()
        for status, targets in table.items():
            allowed = set(TransactionStateMachine(status).get_allowed_events())
            assert set(targets) == allowed

    def test_completed_only_reachable_through_escrow(self) -> None:
        """Every path from PENDING to COMPLETED passes DEPOSIT_ACCEPTED."""
        table = transition_table()
        start = (TransactionStatus.PENDING.value, False)
        seen = {start}
        queue = deque([start])
        while queue:
            status, escrowed = queue.popleft()
            assert not (status == "COMPLETED" and not escrowed)
            for target in table[status].values():
                state = (target, escrowed or target == "DEPOSIT_ACCEPTED")
                if state not in seen:
                    seen.add(state)
                    queue.append(state)
        assert ("COMPLETED", True) in seen

    def test_every_event_is_used(self) -> None:
        used = {event for targets in transition_table().values() for event in targets}
        assert used == set(EVENT_NAMES)


class TestValidateTransitionFunction:
    """Test the convenience function."""

    def test_valid_transition(self) -> None:
        assert validate_transition("DEPOSIT_SUBMITTED", "accept_deposit") == "DEPOSIT_ACCEPTED"

    def test_invalid_event_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition("PENDING", "nonexistent_event")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            TransactionStateMachine("INVALID_STATUS")
