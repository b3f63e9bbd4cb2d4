"""Bounded polling of a payment until it reaches a terminal status."""

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Optional

from membella.core.config import settings
from membella.core.exceptions import GatewayError, PaymentNotFound, PollTimeout
from membella.core.logging import log_info
from membella.core.metrics import POLL_ATTEMPTS
from membella.modules.payment.models import Payment, PaymentStatus
from membella.modules.payment.service import PaymentService
from membella.modules.payment.state import is_terminal

logger = logging.getLogger(__name__)

MIN_ATTEMPTS = 1


def clamp_attempts(max_attempts: Optional[int], upper: Optional[int] = None) -> int:
    """Clamp a requested attempt count into ``[1, POLL_MAX_ATTEMPTS]``."""
    upper = upper or settings.POLL_MAX_ATTEMPTS
    if max_attempts is None:
        max_attempts = settings.POLL_DEFAULT_ATTEMPTS
    return max(MIN_ATTEMPTS, min(max_attempts, upper))


class StatusPoller:
    """Polls a payment's status, re-reading storage before asking the gateway.

    A webhook that lands mid-poll is picked up on the next attempt without a
    gateway call.
    """

    def __init__(
        self,
        payment_service: PaymentService,
        base_interval: Optional[float] = None,
        max_interval: Optional[float] = None,
        max_attempts_cap: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.payment_service = payment_service
        self.base_interval = settings.POLL_INTERVAL_SECONDS if base_interval is None else base_interval
        self.max_interval = settings.POLL_MAX_INTERVAL_SECONDS if max_interval is None else max_interval
        self.max_attempts_cap = max_attempts_cap or settings.POLL_MAX_ATTEMPTS
        self._sleep = sleep

    def interval(self, attempt: int) -> float:
        """Delay after the zero-based ``attempt``: doubling, capped."""
        return min(self.base_interval * (2 ** min(attempt, 16)), self.max_interval)

    async def poll(self, payment_id: uuid.UUID, max_attempts: Optional[int] = None) -> Payment:
        """Wait for the payment to become terminal.

        Args:
            payment_id: Payment UUID
            max_attempts: Attempts before giving up, clamped to ``[1, 300]``

        Returns:
            The payment in its terminal status

        Raises:
            PaymentNotFound: If the payment does not exist
            PollTimeout: If the payment is still not terminal after the last attempt
        """
        attempts = clamp_attempts(max_attempts, self.max_attempts_cap)
        last_status = PaymentStatus.PENDING.value

        for attempt in range(attempts):
            payment = await self.payment_service.payment_repo.get_by_id(payment_id, fresh=True)
            if payment is None:
                raise PaymentNotFound()
            last_status = payment.status
            if is_terminal(payment.status):
                POLL_ATTEMPTS.labels(outcome="terminal").observe(attempt + 1)
                return payment

            if payment.gateway_charge_id:
                try:
                    result = await self.payment_service.refresh_from_gateway(payment_id)
                    last_status = result.payment.status
                    if is_terminal(last_status):
                        POLL_ATTEMPTS.labels(outcome="terminal").observe(attempt + 1)
                        return result.payment
                except GatewayError as e:
                    logger.warning(
                        f"Gateway check failed while polling: {e.message}",
                        extra={"payment_id": str(payment_id), "attempt": attempt + 1},
                    )

            if attempt < attempts - 1:
                await self._sleep(self.interval(attempt))

        POLL_ATTEMPTS.labels(outcome="timeout").observe(attempts)
        log_info(
            logger,
            "Payment polling timed out",
            payment_id=str(payment_id),
            attempts=attempts,
            status=last_status,
        )
        raise PollTimeout(last_status, attempts)
