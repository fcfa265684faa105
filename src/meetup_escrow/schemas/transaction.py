"""Pydantic schemas for the transaction API.

Request and response shapes for the REST layer. They are separate from the
domain dataclasses; responses are built from them with from_attributes.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from meetup_escrow.domain.enums import (
    ActorRole,
    CancellationTiming,
    DisputeOutcome,
    EventType,
    TransactionAction,
    TransactionStatus,
    TrustLevel,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateTransactionRequest(BaseModel):
    """Request body for creating a new escrow transaction."""

    buyer_id: str = Field(..., min_length=1, max_length=64)
    seller_id: str = Field(..., min_length=1, max_length=64)
    listing_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=2,
        description="Purchase price held in escrow",
        examples=["120.00"],
    )


class TransitionRequest(BaseModel):
    """Request body for firing an action against a transaction."""

    action: TransactionAction
    actor_id: str = Field(..., min_length=1, max_length=64)
    payload: dict = Field(
        default_factory=dict,
        description=(
            "Action-specific fields, e.g. "
            '{"scheduled_meetup_at": "2026-05-01T18:00:00Z", "location": "Cafe"} '
            'for schedule_meetup or {"outcome": "split"} for resolve_dispute'
        ),
    )


class SubmitReviewRequest(BaseModel):
    """Request body for reviewing the counterparty of a completed transaction."""

    rater_id: str = Field(..., min_length=1, max_length=64)
    rating: int = Field(..., ge=1, le=10)
    comment: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    """Response schema for an escrow transaction."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    buyer_id: str
    seller_id: str
    listing_id: str
    amount: Decimal
    platform_fee: Decimal
    seller_payout: Decimal
    status: TransactionStatus
    version: int
    scheduled_meetup_at: datetime | None
    meetup_location: str | None
    meetup_started_at: datetime | None
    deposit_submitted_at: datetime | None
    deposit_accepted_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancelled_by: ActorRole | None
    cancellation_reason: str | None
    cancellation_timing: CancellationTiming | None
    is_last_minute_cancellation: bool
    dispute_reason: str | None
    disputed_by: str | None
    dispute_outcome: DisputeOutcome | None
    resolved_at: datetime | None
    is_partial_refund: bool
    refunded_amount: Decimal | None
    settlement_receipt: str | None
    needs_manual_review: bool
    manual_review_reason: str | None
    created_at: datetime
    updated_at: datetime


class TransactionStatusResponse(BaseModel):
    """Lightweight status check response."""

    transaction_id: str
    status: TransactionStatus
    version: int
    settlement_in_progress: bool
    allowed_actions: list[str] = Field(
        description="Actions that can be requested from the current status"
    )


class TransactionEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    event_type: EventType
    old_status: TransactionStatus | None
    new_status: TransactionStatus
    actor_id: str
    metadata: dict
    created_at: datetime


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    rater_id: str
    rated_id: str
    rating: int
    comment: str | None
    created_at: datetime | None


class UserStatisticsResponse(BaseModel):
    """Response schema for a user's reputation aggregate."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    trust_score: float
    trust_level: TrustLevel
    completed_transactions: int
    cancellations: int
    cancellations_as_buyer: int
    cancellations_as_seller: int
    last_minute_cancels_as_buyer: int
    last_minute_cancels_as_seller: int
    last_minute_cancel_rate: float
    disputes_lost: int
    rating_count: int
    average_rating: float


class ReputationSummaryResponse(BaseModel):
    user_id: str
    trust_score: float
    trust_level: TrustLevel
    average_rating: float
    rating_count: int
    last_minute_cancel_rate: float
    warnings: list[str]


class CancellationTimingResponse(BaseModel):
    scheduled_meetup_at: AwareDatetime | None
    cancel_time: AwareDatetime
    timing: CancellationTiming
    label: str
    is_last_minute: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
