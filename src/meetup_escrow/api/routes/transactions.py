"""Transaction REST API routes.

Routes:
    POST   /api/v1/transactions                    — Create a new transaction
    GET    /api/v1/transactions/{id}               — Get transaction details
    GET    /api/v1/transactions/{id}/status        — Status + allowed actions
    GET    /api/v1/transactions/{id}/events        — Audit trail
    POST   /api/v1/transactions/{id}/transitions   — Fire an action (tagged payload)
    POST   /api/v1/transactions/{id}/reviews       — Review the counterparty
    GET    /api/v1/cancellation-timing             — Classify a cancellation moment
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from meetup_escrow.api.deps import get_transaction_service
from meetup_escrow.domain.cancellation import is_last_minute, timing_label
from meetup_escrow.logging_config import get_logger
from meetup_escrow.schemas.transaction import (
    CancellationTimingResponse,
    CreateTransactionRequest,
    ReviewResponse,
    SubmitReviewRequest,
    TransactionEventResponse,
    TransactionResponse,
    TransactionStatusResponse,
    TransitionRequest,
)
from meetup_escrow.services.transaction_service import TransactionService, utc_now

router = APIRouter(prefix="/api/v1", tags=["Transactions"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "/transactions",
    response_model=TransactionResponse,
    status_code=201,
    summary="Create a new escrow transaction",
)
async def create_transaction(
    request: CreateTransactionRequest,
    svc: TransactionService = Depends(get_transaction_service),
) -> TransactionResponse:
    """Create a new transaction in PENDING state."""
    transaction = await svc.create_transaction(
        buyer_id=request.buyer_id,
        seller_id=request.seller_id,
        listing_id=request.listing_id,
        amount=request.amount,
    )
    return TransactionResponse.model_validate(transaction)


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get transaction details",
)
async def get_transaction(
    transaction_id: str,
    svc: TransactionService = Depends(get_transaction_service),
) -> TransactionResponse:
    transaction = await svc.get_transaction(transaction_id)
    return TransactionResponse.model_validate(transaction)


@router.get(
    "/transactions/{transaction_id}/status",
    response_model=TransactionStatusResponse,
    summary="Lightweight status check with allowed actions",
)
async def get_transaction_status(
    transaction_id: str,
    svc: TransactionService = Depends(get_transaction_service),
) -> TransactionStatusResponse:
    return TransactionStatusResponse(**await svc.get_status(transaction_id))


@router.get(
    "/transactions/{transaction_id}/events",
    response_model=list[TransactionEventResponse],
    summary="Get the audit trail",
)
async def get_transaction_events(
    transaction_id: str,
    svc: TransactionService = Depends(get_transaction_service),
) -> list[TransactionEventResponse]:
    events = await svc.get_events(transaction_id)
    return [TransactionEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post(
    "/transactions/{transaction_id}/transitions",
    response_model=TransactionResponse,
    summary="Apply an action to a transaction",
    description=(
        "Fires one lifecycle action. The payload is validated against the "
        "action's schema before the state machine is consulted; illegal "
        "transitions return 409 and leave the transaction untouched."
    ),
)
async def apply_transition(
    transaction_id: str,
    request: TransitionRequest,
    svc: TransactionService = Depends(get_transaction_service),
) -> TransactionResponse:
    transaction = await svc.transition(
        transaction_id, request.action, request.actor_id, request.payload
    )
    return TransactionResponse.model_validate(transaction)


@router.post(
    "/transactions/{transaction_id}/reviews",
    response_model=ReviewResponse,
    status_code=201,
    summary="Review the counterparty of a completed transaction",
)
async def submit_review(
    transaction_id: str,
    request: SubmitReviewRequest,
    svc: TransactionService = Depends(get_transaction_service),
) -> ReviewResponse:
    review = await svc.submit_review(
        transaction_id, request.rater_id, request.rating, request.comment
    )
    return ReviewResponse.model_validate(review)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


@router.get(
    "/cancellation-timing",
    response_model=CancellationTimingResponse,
    summary="Classify a cancellation relative to a scheduled meetup",
)
async def classify_cancellation_timing(
    scheduled_meetup_at: datetime | None = Query(default=None),
    cancel_time: datetime | None = Query(default=None),
    svc: TransactionService = Depends(get_transaction_service),
) -> CancellationTimingResponse:
    cancel_time = cancel_time or utc_now()
    timing = svc.classify_cancellation(scheduled_meetup_at, cancel_time)
    return CancellationTimingResponse(
        scheduled_meetup_at=scheduled_meetup_at,
        cancel_time=cancel_time,
        timing=timing,
        label=timing_label(timing),
        is_last_minute=is_last_minute(timing),
    )
