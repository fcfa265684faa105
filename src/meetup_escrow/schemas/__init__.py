"""Pydantic API schemas."""

from meetup_escrow.schemas.actions import (
    TransitionPayload,
    parse_transition_payload,
)
from meetup_escrow.schemas.transaction import (
    CancellationTimingResponse,
    CreateTransactionRequest,
    HealthResponse,
    ReputationSummaryResponse,
    ReviewResponse,
    SubmitReviewRequest,
    TransactionEventResponse,
    TransactionResponse,
    TransactionStatusResponse,
    TransitionRequest,
    UserStatisticsResponse,
)

__all__ = [
    "CancellationTimingResponse",
    "CreateTransactionRequest",
    "HealthResponse",
    "ReputationSummaryResponse",
    "ReviewResponse",
    "SubmitReviewRequest",
    "TransactionEventResponse",
    "TransactionResponse",
    "TransactionStatusResponse",
    "TransitionPayload",
    "TransitionRequest",
    "UserStatisticsResponse",
    "parse_transition_payload",
]
