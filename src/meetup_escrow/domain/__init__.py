"""Domain layer — pure business logic with zero framework dependencies."""

from meetup_escrow.domain.cancellation import (
    classify_cancellation,
    is_last_minute,
    timing_label,
)
from meetup_escrow.domain.collaborators import (
    DomainEvent,
    NotificationDispatcher,
    PaymentGateway,
    PersistenceStore,
)
from meetup_escrow.domain.enums import (
    ActorRole,
    CancellationTiming,
    DisputeOutcome,
    EventType,
    OutcomeKind,
    TransactionAction,
    TransactionStatus,
    TrustLevel,
)
from meetup_escrow.domain.exceptions import (
    ActorNotPermittedError,
    DuplicateAdjustmentError,
    DuplicateReviewError,
    EscrowError,
    ExternalServiceError,
    InvalidStateTransitionError,
    SettlementInProgressError,
    TransactionNotFoundError,
    ValidationError,
    VersionConflictError,
)
from meetup_escrow.domain.models import (
    Review,
    StatisticsDelta,
    Transaction,
    TransitionRecord,
    UserStatistics,
)
from meetup_escrow.domain.reputation import (
    ReputationAdjustment,
    ReputationAdjustmentEngine,
    TieredTrustPolicy,
    TrustScorePolicy,
    summarize_reputation,
)
from meetup_escrow.domain.state_machine import (
    TransactionStateMachine,
    validate_transition,
)

__all__ = [
    "ActorNotPermittedError",
    "ActorRole",
    "CancellationTiming",
    "DisputeOutcome",
    "DomainEvent",
    "DuplicateAdjustmentError",
    "DuplicateReviewError",
    "EscrowError",
    "EventType",
    "ExternalServiceError",
    "InvalidStateTransitionError",
    "NotificationDispatcher",
    "OutcomeKind",
    "PaymentGateway",
    "PersistenceStore",
    "ReputationAdjustment",
    "ReputationAdjustmentEngine",
    "Review",
    "SettlementInProgressError",
    "StatisticsDelta",
    "TieredTrustPolicy",
    "Transaction",
    "TransactionAction",
    "TransactionNotFoundError",
    "TransactionStateMachine",
    "TransactionStatus",
    "TransitionRecord",
    "TrustLevel",
    "TrustScorePolicy",
    "UserStatistics",
    "ValidationError",
    "VersionConflictError",
    "classify_cancellation",
    "is_last_minute",
    "summarize_reputation",
    "timing_label",
]
