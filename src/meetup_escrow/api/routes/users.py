"""User reputation routes.

Routes:
    GET    /api/v1/users/{id}/statistics   — Raw reputation aggregate
    GET    /api/v1/users/{id}/reputation   — Trust level and warnings
    GET    /api/v1/users/{id}/reviews      — Reviews received, newest first
    GET    /api/v1/users/{id}/transactions — Buyer and seller history
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query

from meetup_escrow.api.deps import get_transaction_service
from meetup_escrow.schemas.transaction import (
    ReputationSummaryResponse,
    ReviewResponse,
    TransactionResponse,
    UserStatisticsResponse,
)
from meetup_escrow.services.transaction_service import TransactionService

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


@router.get(
    "/{user_id}/statistics",
    response_model=UserStatisticsResponse,
    summary="Get a user's reputation statistics",
)
async def get_user_statistics(
    user_id: str,
    svc: TransactionService = Depends(get_transaction_service),
) -> UserStatisticsResponse:
    stats = await svc.get_user_statistics(user_id)
    return UserStatisticsResponse.model_validate(stats)


@router.get(
    "/{user_id}/reputation",
    response_model=ReputationSummaryResponse,
    summary="Get a user's trust level and reputation warnings",
)
async def get_user_reputation(
    user_id: str,
    svc: TransactionService = Depends(get_transaction_service),
) -> ReputationSummaryResponse:
    summary = await svc.get_reputation_summary(user_id)
    stats = summary.statistics
    return ReputationSummaryResponse(
        user_id=stats.user_id,
        trust_score=stats.trust_score,
        trust_level=summary.trust_level,
        average_rating=stats.average_rating,
        rating_count=stats.rating_count,
        last_minute_cancel_rate=stats.last_minute_cancel_rate,
        warnings=summary.warnings,
    )


@router.get(
    "/{user_id}/reviews",
    response_model=list[ReviewResponse],
    summary="List reviews a user received",
)
async def list_user_reviews(
    user_id: str,
    svc: TransactionService = Depends(get_transaction_service),
) -> list[ReviewResponse]:
    reviews = await svc.list_reviews(user_id)
    return [ReviewResponse.model_validate(r) for r in reviews]


@router.get(
    "/{user_id}/transactions",
    response_model=list[TransactionResponse],
    summary="List a user's transactions as buyer and seller",
)
async def list_user_transactions(
    user_id: str,
    role: Literal["buyer", "seller"] | None = Query(default=None),
    svc: TransactionService = Depends(get_transaction_service),
) -> list[TransactionResponse]:
    transactions = await svc.list_user_transactions(user_id, role)
    return [TransactionResponse.model_validate(t) for t in transactions]
