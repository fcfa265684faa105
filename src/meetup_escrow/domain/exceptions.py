"""Domain exceptions for meetup escrow transactions.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- State Machine Errors ---


class InvalidStateTransitionError(EscrowError):
    """Raised when an action is not allowed from the current status.

    Example: PENDING -> complete_transaction (must pass through escrow first)
    """

    def __init__(self, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -/-> {attempted_event}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_event = attempted_event


class SettlementInProgressError(InvalidStateTransitionError):
    """Raised when another action already holds the settlement claim."""

    def __init__(self, current_state: str, attempted_event: str, claimed_by: str) -> None:
        super().__init__(current_state, attempted_event)
        self.message = (
            f"Settlement '{claimed_by}' already in progress; "
            f"cannot apply {attempted_event} from {current_state}"
        )
        self.args = (self.message,)
        self.code = "SETTLEMENT_IN_PROGRESS"
        self.claimed_by = claimed_by


# --- Concurrency Errors ---


class VersionConflictError(EscrowError):
    """Raised when a write is based on a stale version of a record."""

    def __init__(self, transaction_id: str, expected_version: int) -> None:
        super().__init__(
            message=(
                f"Transaction {transaction_id} was modified concurrently "
                f"(expected version {expected_version})"
            ),
            code="VERSION_CONFLICT",
        )
        self.transaction_id = transaction_id
        self.expected_version = expected_version


class DuplicateAdjustmentError(EscrowError):
    """Raised by a store when an idempotency marker is already present.

    Callers treat this as success: the adjustment was applied earlier.
    """

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Adjustment already applied for key: {idempotency_key}",
            code="DUPLICATE_ADJUSTMENT",
        )
        self.idempotency_key = idempotency_key


# --- Input Errors ---


class ValidationError(EscrowError):
    """Raised when input is malformed. Nothing has been mutated."""

    def __init__(self, message: str, errors: list | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.errors = errors or []


class DuplicateReviewError(ValidationError):
    """Raised when a party reviews the same transaction twice."""

    def __init__(self, transaction_id: str, rater_id: str) -> None:
        super().__init__(
            message=f"User {rater_id} already reviewed transaction {transaction_id}",
        )
        self.code = "DUPLICATE_REVIEW"


class ActorNotPermittedError(EscrowError):
    """Raised when an actor may not perform an action on a transaction."""

    def __init__(self, actor_id: str, action: str) -> None:
        super().__init__(
            message=f"Actor {actor_id} is not permitted to {action}",
            code="ACTOR_NOT_PERMITTED",
        )
        self.actor_id = actor_id
        self.action = action


# --- Lookup Errors ---


class TransactionNotFoundError(EscrowError):
    """Raised when a transaction ID does not exist."""

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"Transaction not found: {transaction_id}",
            code="TRANSACTION_NOT_FOUND",
        )
        self.transaction_id = transaction_id


# --- Collaborator Errors ---


class ExternalServiceError(EscrowError):
    """Raised when a payment or notification collaborator fails."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(message=f"{service} failed: {message}", code="EXTERNAL_SERVICE_ERROR")
        self.service = service
