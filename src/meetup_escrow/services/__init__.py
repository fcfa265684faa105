"""Application services — use case orchestration."""

from meetup_escrow.services.notification_service import (
    LoggingNotificationDispatcher,
    NotificationService,
    RedisNotificationDispatcher,
)
from meetup_escrow.services.payment_service import PaymentService, SimulatedPaymentGateway
from meetup_escrow.services.reputation_service import ReputationService, build_trust_policy
from meetup_escrow.services.sweep_service import ExpirationSweeper, SweepReport
from meetup_escrow.services.transaction_service import TransactionService

__all__ = [
    "ExpirationSweeper",
    "LoggingNotificationDispatcher",
    "NotificationService",
    "PaymentService",
    "RedisNotificationDispatcher",
    "ReputationService",
    "SimulatedPaymentGateway",
    "SweepReport",
    "TransactionService",
    "build_trust_policy",
]
