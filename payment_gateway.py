"""
Payment gateway port.

The escrow core captures the borrower's payment, pays out releases and
issues refunds through a ``PaymentGateway``. The only implementation
shipped here is ``SimulatedPaymentGateway``: it never touches a live
processor and fails only when told to, so every outcome is reproducible.

Example:
    >>> gateway = SimulatedPaymentGateway()
    >>> gateway.fail_next_captures(1, 'card_declined')
    >>> await gateway.capture('ESC_1', Decimal('25.00'), method)   # raises GatewayFailure
    >>> await gateway.capture('ESC_1', Decimal('25.00'), method)   # succeeds
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from escrow_errors import GatewayFailure
from escrow_models import PaymentMethod, ReleaseType
from utils import mask_sensitive_data

logger = logging.getLogger(__name__)

# Gateway error codes the recovery strategy understands
CARD_DECLINED = 'card_declined'
INSUFFICIENT_FUNDS = 'insufficient_funds'
PROCESSING_ERROR = 'processing_error'
GATEWAY_TIMEOUT = 'timeout'


class GatewayResult(BaseModel):
    success: bool
    payment_id: Optional[str] = None
    reference: Optional[str] = None
    error_code: Optional[str] = None
    message: str = ""


class PaymentGateway(ABC):
    """Port to the payment processor."""

    @abstractmethod
    async def capture(
        self,
        transaction_id: str,
        amount: Decimal,
        payment_method: PaymentMethod
    ) -> GatewayResult:
        """
        Capture the borrower's payment into escrow.

        Raises:
            GatewayFailure: If the processor rejects or fails the capture
        """

    @abstractmethod
    async def release(
        self,
        payment_id: str,
        recipient_id: str,
        amount: Decimal,
        release_type: ReleaseType
    ) -> str:
        """Pay part of a captured payment out to a party; returns a reference."""

    @abstractmethod
    async def refund(self, payment_id: str, amount: Decimal, reason: str) -> str:
        """Refund part of a captured payment to the payer; returns a reference."""


class SimulatedPaymentGateway(PaymentGateway):
    """
    Deterministic stand-in for a payment processor.

    Identifiers come from a counter. Failures happen only for payment
    methods listed in ``declined_methods``, for the number of captures
    queued with ``fail_next_captures``, or while ``fail_refunds`` /
    ``fail_releases`` are set.
    """

    def __init__(
        self,
        declined_methods: Optional[Iterable[str]] = None,
        latency: float = 0.0
    ):
        self.declined_methods = set(declined_methods or [])
        self.latency = latency
        self.fail_refunds = False
        self.fail_releases = False
        self.calls: List[Dict[str, Any]] = []
        self._pending_failures: List[str] = []
        self._counter = itertools.count(1)

    def fail_next_captures(self, count: int, error_code: str = PROCESSING_ERROR) -> None:
        self._pending_failures.extend([error_code] * count)

    def calls_of(self, operation: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c['operation'] == operation]

    async def _simulate_latency(self) -> None:
        # Yields to the loop even at zero latency, like a real network call
        await asyncio.sleep(self.latency)

    async def capture(
        self,
        transaction_id: str,
        amount: Decimal,
        payment_method: PaymentMethod
    ) -> GatewayResult:
        await self._simulate_latency()
        self.calls.append({
            'operation': 'capture',
            'transaction_id': transaction_id,
            'amount': amount,
            'method_id': payment_method.method_id,
        })

        error_code = None
        if payment_method.method_id in self.declined_methods:
            error_code = CARD_DECLINED
        elif self._pending_failures:
            error_code = self._pending_failures.pop(0)

        if error_code:
            logger.warning(
                f"Simulated capture failed for {transaction_id} "
                f"({mask_sensitive_data(payment_method.method_id)}): {error_code}"
            )
            raise GatewayFailure(
                f"Payment capture failed: {error_code}",
                error_code=error_code,
                transaction_id=transaction_id
            )

        payment_id = f"pay_sim_{next(self._counter):06d}"
        logger.info(f"Simulated capture of {amount} for {transaction_id}: {payment_id}")
        return GatewayResult(
            success=True,
            payment_id=payment_id,
            reference=payment_id,
            message="Payment captured"
        )

    async def release(
        self,
        payment_id: str,
        recipient_id: str,
        amount: Decimal,
        release_type: ReleaseType
    ) -> str:
        await self._simulate_latency()
        self.calls.append({
            'operation': 'release',
            'payment_id': payment_id,
            'recipient_id': recipient_id,
            'amount': amount,
            'release_type': release_type,
        })
        if self.fail_releases:
            raise GatewayFailure(f"Release of {payment_id} failed", error_code=PROCESSING_ERROR)
        reference = f"rel_sim_{next(self._counter):06d}"
        logger.info(f"Simulated release of {amount} from {payment_id} to {recipient_id}: {reference}")
        return reference

    async def refund(self, payment_id: str, amount: Decimal, reason: str) -> str:
        await self._simulate_latency()
        self.calls.append({
            'operation': 'refund',
            'payment_id': payment_id,
            'amount': amount,
            'reason': reason,
        })
        if self.fail_refunds:
            raise GatewayFailure(f"Refund of {payment_id} failed", error_code=PROCESSING_ERROR)
        reference = f"re_sim_{next(self._counter):06d}"
        logger.info(f"Simulated refund of {amount} on {payment_id}: {reference}")
        return reference
