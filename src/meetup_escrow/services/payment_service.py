"""Payment Service — deposit capture, payout release, and refunds.

Two pieces:
    - SimulatedPaymentGateway: issues fake authorization/receipt ids so the
      whole lifecycle can run without a card processor.
    - PaymentService: wraps any PaymentGateway with a bounded tenacity retry
      budget and translates failures into ExternalServiceError.

Every call carries an idempotency key; the gateway must return the same id
for a repeated key, so a retry never captures or releases twice.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from meetup_escrow.domain.exceptions import ExternalServiceError
from meetup_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from decimal import Decimal

    from meetup_escrow.config import Settings
    from meetup_escrow.domain.collaborators import PaymentGateway

logger = get_logger(__name__)


class TransientPaymentError(Exception):
    """A gateway failure worth retrying (timeouts, 5xx, rate limits)."""


class PaymentDeclinedError(Exception):
    """A gateway failure that retrying cannot fix (card declined, bad auth id)."""


class SimulatedPaymentGateway:
    """In-process gateway that never moves money.

    Results are cached per idempotency key, matching how a real provider
    deduplicates retried requests.
    """

    def __init__(self) -> None:
        self._results: dict[str, str] = {}

    async def capture_deposit(self, amount: Decimal, *, idempotency_key: str) -> str:
        return self._issue("auth", idempotency_key, amount=amount, operation="capture")

    async def release(
        self, authorization_id: str, *, amount: Decimal, idempotency_key: str
    ) -> str:
        return self._issue(
            "rel", idempotency_key, amount=amount, operation="release",
            authorization_id=authorization_id,
        )

    async def refund(
        self, authorization_id: str, *, amount: Decimal, idempotency_key: str
    ) -> str:
        return self._issue(
            "ref", idempotency_key, amount=amount, operation="refund",
            authorization_id=authorization_id,
        )

    def _issue(self, prefix: str, idempotency_key: str, **context) -> str:
        if idempotency_key in self._results:
            return self._results[idempotency_key]
        result = f"{prefix}_{uuid.uuid4().hex[:24]}"
        self._results[idempotency_key] = result
        logger.info(
            "payment.simulated",
            result=result,
            idempotency_key=idempotency_key,
            amount=str(context.pop("amount")),
            **context,
        )
        return result


class PaymentService:
    """Retrying facade over a PaymentGateway.

    Implements the PaymentGateway protocol itself, so the transaction
    service never knows whether it talks to the raw gateway or this wrapper.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 10.0,
    ) -> None:
        self._gateway = gateway
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds

    @classmethod
    def from_settings(cls, gateway: PaymentGateway, settings: Settings) -> PaymentService:
        return cls(
            gateway,
            max_attempts=settings.payment_max_attempts,
            backoff_seconds=settings.payment_retry_backoff_seconds,
            max_backoff_seconds=settings.payment_retry_max_seconds,
        )

    async def capture_deposit(self, amount: Decimal, *, idempotency_key: str) -> str:
        return await self._call(
            "capture",
            idempotency_key,
            lambda: self._gateway.capture_deposit(amount, idempotency_key=idempotency_key),
        )

    async def release(
        self, authorization_id: str, *, amount: Decimal, idempotency_key: str
    ) -> str:
        return await self._call(
            "release",
            idempotency_key,
            lambda: self._gateway.release(
                authorization_id, amount=amount, idempotency_key=idempotency_key
            ),
        )

    async def refund(
        self, authorization_id: str, *, amount: Decimal, idempotency_key: str
    ) -> str:
        return await self._call(
            "refund",
            idempotency_key,
            lambda: self._gateway.refund(
                authorization_id, amount=amount, idempotency_key=idempotency_key
            ),
        )

    async def _call(
        self,
        operation: str,
        idempotency_key: str,
        request: Callable[[], Awaitable[str]],
    ) -> str:
        """Run one gateway request under the retry budget.

        Only TransientPaymentError, ConnectionError and TimeoutError are
        retried. Anything else fails on the first attempt.

        Raises:
            ExternalServiceError: When the request ultimately fails.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._backoff_seconds, max=self._max_backoff_seconds
            ),
            retry=retry_if_exception_type(
                (TransientPaymentError, ConnectionError, TimeoutError)
            ),
            before_sleep=lambda state: logger.warning(
                "payment.retrying",
                operation=operation,
                idempotency_key=idempotency_key,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await request()
        except (TransientPaymentError, ConnectionError, TimeoutError) as exc:
            logger.error(
                "payment.retry_exhausted",
                operation=operation,
                idempotency_key=idempotency_key,
                attempts=self._max_attempts,
                error=str(exc),
            )
            raise ExternalServiceError("payment_gateway", f"{operation}: {exc}") from exc
        except RetryError as exc:
            raise ExternalServiceError("payment_gateway", f"{operation}: {exc}") from exc
        except ExternalServiceError:
            raise
        except Exception as exc:
            logger.error(
                "payment.failed",
                operation=operation,
                idempotency_key=idempotency_key,
                error=str(exc),
            )
            raise ExternalServiceError("payment_gateway", f"{operation}: {exc}") from exc
        raise ExternalServiceError("payment_gateway", f"{operation}: no attempt made")
