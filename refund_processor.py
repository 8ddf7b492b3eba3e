"""
Refund and release computations.

The amount functions are pure: they read only the amounts stored on the
transaction, so the same transaction always yields the same refund.
``RefundProcessor`` executes a RefundRequest against the payment gateway.
"""

import logging
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from escrow_errors import GatewayFailure, ValidationError
from escrow_models import (
    EscrowTransaction,
    PartyRole,
    RefundMode,
    RefundRequest,
    RefundStatus,
    ReleaseStatus,
    ReleaseType,
)
from payment_gateway import PaymentGateway
from utils import format_currency, to_money, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DAMAGE_CAP = Decimal('50')
DEFAULT_PLATFORM_FEE_SHARE = Decimal('0.5')
PARTIAL_RENTAL_SHARE = Decimal('0.5')
DAMAGE_DEDUCTION_SHARE = Decimal('0.5')


def calculate_refund_amount(
    transaction: EscrowTransaction,
    mode: RefundMode,
    damage_cap: Decimal = DEFAULT_DAMAGE_CAP,
    platform_fee_share: Decimal = DEFAULT_PLATFORM_FEE_SHARE
) -> Decimal:
    """
    Amount owed back to the borrower under a refund mode.

    Modes:
        full: rental fee + deposit + a share of any platform fee
        partial: half the rental fee + deposit
        security_only: deposit
        damage_deduction: deposit minus min(half the deposit, damage_cap)
    """
    rental_fee = transaction.rental_fee
    deposit = transaction.security_deposit

    if mode == RefundMode.FULL:
        amount = rental_fee + deposit + transaction.platform_fee * platform_fee_share
    elif mode == RefundMode.PARTIAL:
        amount = rental_fee * PARTIAL_RENTAL_SHARE + deposit
    elif mode == RefundMode.SECURITY_ONLY:
        amount = deposit
    elif mode == RefundMode.DAMAGE_DEDUCTION:
        amount = deposit - min(deposit * DAMAGE_DEDUCTION_SHARE, damage_cap)
    else:
        raise ValidationError(f"Unknown refund mode: {mode}")

    return to_money(amount)


def describe_refund(mode: Optional[RefundMode], amount: Decimal, currency: str) -> str:
    labels = {
        RefundMode.FULL: "Full refund",
        RefundMode.PARTIAL: "Partial refund (50% rental fee + deposit)",
        RefundMode.SECURITY_ONLY: "Security deposit refund",
        RefundMode.DAMAGE_DEDUCTION: "Deposit refund with damage deduction",
    }
    label = labels.get(mode, "Custom refund")
    return f"{label} of {format_currency(amount, currency)}"


def _released_to(transaction: EscrowTransaction, role: PartyRole) -> Decimal:
    return sum(
        (r.amount for r in transaction.releases
         if r.recipient_role == role and r.status == ReleaseStatus.RELEASED),
        Decimal('0.00'),
    )


def plan_releases(
    transaction: EscrowTransaction,
    release_type: ReleaseType,
    split_amounts: Optional[Dict[str, Decimal]] = None
) -> List[Tuple[PartyRole, Decimal]]:
    """
    Work out the payouts still owed for a release.

    Amounts already paid out are never paid twice, and the plan plus
    everything already paid never exceeds total_amount.

    Args:
        transaction: Transaction being settled
        release_type: complete, refund or partial
        split_amounts: {'to_lender': ..., 'to_borrower': ...} for partial

    Returns:
        List of (recipient role, amount) with positive amounts only

    Raises:
        ValidationError: If the split is missing, negative or too large
    """
    to_lender = _released_to(transaction, PartyRole.LENDER)
    to_borrower = _released_to(transaction, PartyRole.BORROWER)

    if release_type == ReleaseType.COMPLETE:
        plan = [
            (PartyRole.LENDER, transaction.rental_fee - to_lender),
            (PartyRole.BORROWER, transaction.security_deposit - to_borrower),
        ]
    elif release_type == ReleaseType.REFUND:
        plan = [(PartyRole.BORROWER, transaction.total_amount - to_lender - to_borrower)]
    elif release_type == ReleaseType.PARTIAL:
        if not split_amounts:
            raise ValidationError(
                "Partial release requires split amounts", transaction.transaction_id
            )
        unknown = set(split_amounts) - {'to_lender', 'to_borrower'}
        if unknown:
            raise ValidationError(
                f"Unknown split keys: {sorted(unknown)}", transaction.transaction_id
            )
        lender_share = to_money(split_amounts.get('to_lender', 0))
        borrower_share = to_money(split_amounts.get('to_borrower', 0))
        if lender_share < 0 or borrower_share < 0:
            raise ValidationError("Split amounts must not be negative", transaction.transaction_id)
        if lender_share + borrower_share == 0:
            raise ValidationError("Split amounts must not both be zero", transaction.transaction_id)
        if lender_share + borrower_share + transaction.paid_out > transaction.total_amount:
            raise ValidationError(
                f"Split {lender_share} + {borrower_share} exceeds the unreleased balance "
                f"of {transaction.total_amount - transaction.paid_out}",
                transaction.transaction_id
            )
        plan = [(PartyRole.LENDER, lender_share), (PartyRole.BORROWER, borrower_share)]
    else:
        raise ValidationError(f"Unknown release type: {release_type}", transaction.transaction_id)

    return [(role, to_money(amount)) for role, amount in plan if amount > 0]


class RefundProcessor:
    """Executes refund requests through the payment gateway."""

    def __init__(self, gateway: PaymentGateway, clock: Optional[Callable] = None):
        self.gateway = gateway
        self.clock = clock or utc_now

    async def process(self, refund: RefundRequest, transaction: EscrowTransaction) -> RefundRequest:
        """
        Send a refund to the gateway and record the outcome on the request.

        A transaction whose payment was never captured has nothing to
        return; its refund completes as a void. Gateway failures leave the
        request ``failed`` for the scheduler to retry.

        Returns:
            The updated RefundRequest (not yet persisted)
        """
        if refund.status == RefundStatus.COMPLETED:
            return refund

        refund = refund.model_copy()
        refund.status = RefundStatus.PROCESSING
        refund.attempts += 1

        if not transaction.payment_id:
            refund.status = RefundStatus.COMPLETED
            refund.reference = f"void-{transaction.transaction_id}"
            refund.processed_at = self.clock()
            refund.error_message = None
            logger.info(f"Refund {refund.refund_id} voided: no captured payment")
            return refund

        try:
            reference = await self.gateway.refund(
                transaction.payment_id, refund.amount, refund.reason.value
            )
        except GatewayFailure as e:
            refund.status = RefundStatus.FAILED
            refund.error_message = str(e)
            logger.error(
                f"Refund {refund.refund_id} for {transaction.transaction_id} failed "
                f"(attempt {refund.attempts}): {e}"
            )
            return refund

        refund.status = RefundStatus.COMPLETED
        refund.reference = reference
        refund.processed_at = self.clock()
        refund.error_message = None
        logger.info(
            f"Refund {refund.refund_id} completed: {refund.amount} "
            f"for {transaction.transaction_id} ({reference})"
        )
        return refund
