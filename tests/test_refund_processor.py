"""
Tests for refund amounts, release plans and refund execution.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from escrow_errors import ValidationError
from escrow_models import (
    EscrowTransaction,
    FundRelease,
    PartyRole,
    RefundMode,
    RefundReason,
    RefundRequest,
    RefundStatus,
    ReleaseStatus,
    ReleaseType,
)
from refund_processor import RefundProcessor, calculate_refund_amount, describe_refund, plan_releases


@pytest.fixture
def transaction(clock):
    return EscrowTransaction(
        transaction_id='ESC_refund',
        book_id='book_1',
        borrower_id='borrower_1',
        lender_id='lender_1',
        total_amount=Decimal('25.00'),
        rental_fee=Decimal('20.00'),
        security_deposit=Decimal('5.00'),
        payment_id='pay_sim_000099',
        created_at=clock(),
        expires_at=clock() + timedelta(hours=24)
    )


def released(transaction, role, amount, clock):
    transaction.releases.append(FundRelease(
        recipient_role=role,
        recipient_id=transaction.lender_id if role == PartyRole.LENDER else transaction.borrower_id,
        amount=Decimal(amount),
        release_type=ReleaseType.COMPLETE,
        status=ReleaseStatus.RELEASED,
        created_at=clock()
    ))


class TestRefundAmounts:

    def test_modes_for_rental(self, transaction):
        assert calculate_refund_amount(transaction, RefundMode.FULL) == Decimal('25.00')
        assert calculate_refund_amount(transaction, RefundMode.PARTIAL) == Decimal('15.00')
        assert calculate_refund_amount(transaction, RefundMode.SECURITY_ONLY) == Decimal('5.00')
        assert calculate_refund_amount(transaction, RefundMode.DAMAGE_DEDUCTION) == Decimal('2.50')

    def test_damage_deduction_is_capped(self, transaction):
        transaction = transaction.model_copy(update={
            'total_amount': Decimal('220.00'), 'security_deposit': Decimal('200.00')
        })
        assert calculate_refund_amount(transaction, RefundMode.DAMAGE_DEDUCTION) == Decimal('150.00')
        assert calculate_refund_amount(
            transaction, RefundMode.DAMAGE_DEDUCTION, damage_cap=Decimal('20')
        ) == Decimal('180.00')

    def test_same_transaction_same_amount(self, transaction):
        first = calculate_refund_amount(transaction, RefundMode.PARTIAL)
        second = calculate_refund_amount(transaction.model_copy(deep=True), RefundMode.PARTIAL)
        assert first == second

    def test_description(self):
        assert describe_refund(RefundMode.FULL, Decimal('25'), 'USD') == 'Full refund of USD 25.00'
        assert describe_refund(None, Decimal('7.5'), 'USD') == 'Custom refund of USD 7.50'


class TestReleasePlans:

    def test_complete_release(self, transaction):
        assert plan_releases(transaction, ReleaseType.COMPLETE) == [
            (PartyRole.LENDER, Decimal('20.00')),
            (PartyRole.BORROWER, Decimal('5.00')),
        ]

    def test_complete_release_skips_paid_parts(self, transaction, clock):
        released(transaction, PartyRole.LENDER, '20.00', clock)
        assert plan_releases(transaction, ReleaseType.COMPLETE) == [
            (PartyRole.BORROWER, Decimal('5.00'))
        ]

    def test_refund_release_returns_remainder(self, transaction, clock):
        assert plan_releases(transaction, ReleaseType.REFUND) == [
            (PartyRole.BORROWER, Decimal('25.00'))
        ]
        released(transaction, PartyRole.LENDER, '20.00', clock)
        assert plan_releases(transaction, ReleaseType.REFUND) == [
            (PartyRole.BORROWER, Decimal('5.00'))
        ]

    def test_partial_release(self, transaction):
        plan = plan_releases(
            transaction, ReleaseType.PARTIAL, {'to_lender': '12.50', 'to_borrower': 0}
        )
        assert plan == [(PartyRole.LENDER, Decimal('12.50'))]

    @pytest.mark.parametrize('split', [
        None,
        {'to_lender': '5', 'to_platform': '1'},
        {'to_lender': '-1', 'to_borrower': '5'},
        {'to_lender': 0, 'to_borrower': 0},
        {'to_lender': '20', 'to_borrower': '5.01'},
    ])
    def test_invalid_partial_splits(self, transaction, split):
        with pytest.raises(ValidationError):
            plan_releases(transaction, ReleaseType.PARTIAL, split)

    def test_partial_release_counts_earlier_payouts(self, transaction, clock):
        released(transaction, PartyRole.LENDER, '20.00', clock)
        with pytest.raises(ValidationError):
            plan_releases(transaction, ReleaseType.PARTIAL, {'to_borrower': '6.00'})


class TestRefundProcessor:

    def make_refund(self, clock, transaction_id='ESC_refund'):
        return RefundRequest(
            refund_id='REF_1',
            transaction_id=transaction_id,
            amount=Decimal('25.00'),
            reason=RefundReason.CANCELLATION,
            created_at=clock()
        )

    @pytest.mark.asyncio
    async def test_successful_refund(self, transaction, gateway, clock):
        processor = RefundProcessor(gateway, clock=clock)

        refund = await processor.process(self.make_refund(clock), transaction)

        assert refund.status == RefundStatus.COMPLETED
        assert refund.attempts == 1
        assert refund.processed_at == clock()
        assert gateway.calls_of('refund')[0]['payment_id'] == 'pay_sim_000099'

    @pytest.mark.asyncio
    async def test_failed_refund(self, transaction, gateway, clock):
        gateway.fail_refunds = True
        processor = RefundProcessor(gateway, clock=clock)
        original = self.make_refund(clock)

        refund = await processor.process(original, transaction)

        assert refund.status == RefundStatus.FAILED
        assert refund.error_message
        assert original.status == RefundStatus.PENDING

    @pytest.mark.asyncio
    async def test_uncaptured_payment_is_voided(self, transaction, gateway, clock):
        transaction.payment_id = None
        processor = RefundProcessor(gateway, clock=clock)

        refund = await processor.process(self.make_refund(clock), transaction)

        assert refund.status == RefundStatus.COMPLETED
        assert refund.reference == 'void-ESC_refund'
        assert gateway.calls_of('refund') == []

    @pytest.mark.asyncio
    async def test_completed_refund_is_not_sent_again(self, transaction, gateway, clock):
        processor = RefundProcessor(gateway, clock=clock)
        refund = await processor.process(self.make_refund(clock), transaction)

        again = await processor.process(refund, transaction)

        assert again is refund
        assert len(gateway.calls_of('refund')) == 1

    def test_refund_amount_must_be_positive(self, clock):
        with pytest.raises(ValueError):
            RefundRequest(
                refund_id='REF_0', transaction_id='ESC_refund', amount=Decimal('0'),
                reason=RefundReason.REQUESTED, created_at=clock()
            )
