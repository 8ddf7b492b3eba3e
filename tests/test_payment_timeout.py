"""
Tests for timeout sweeps, capture retries, escalation and refund retries.
"""

import random
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from config import Config
from escrow_models import (
    EscalationLevel,
    EscrowStatus,
    EscrowTransaction,
    RecoveryAction,
    RefundReason,
    RefundStatus,
    RetryStrategyType,
    TimeoutStatus,
)
from escrow_service import EXPIRY_REASON, EscrowService
from payment_gateway import CARD_DECLINED, INSUFFICIENT_FUNDS, PROCESSING_ERROR
from payment_timeout import (
    DEFAULT_STRATEGY,
    PaymentTimeoutHandler,
    RETRY_STRATEGIES,
    calculate_retry_delay,
    determine_recovery_action,
    get_retry_strategy,
)


def make_transaction(clock, total='25.00', rental='20.00', deposit='5.00', method_type='credit_card'):
    return EscrowTransaction(
        transaction_id='ESC_unit',
        book_id='book_x',
        borrower_id='borrower_1',
        lender_id='lender_1',
        total_amount=Decimal(total),
        rental_fee=Decimal(rental),
        security_deposit=Decimal(deposit),
        payment_method_type=method_type,
        created_at=clock(),
        expires_at=clock() + timedelta(hours=24)
    )


class TestRetryStrategies:

    def test_strategy_per_method_category(self):
        assert get_retry_strategy('credit_card').type == RetryStrategyType.EXPONENTIAL
        assert get_retry_strategy('BANK_TRANSFER').type == RetryStrategyType.FIXED
        assert get_retry_strategy('digital_wallet').type == RetryStrategyType.IMMEDIATE
        assert get_retry_strategy('carrier_pigeon') is DEFAULT_STRATEGY
        assert get_retry_strategy(None) is DEFAULT_STRATEGY

    def test_exponential_delay_grows_and_caps(self):
        rng = Mock(random=Mock(return_value=0.0))
        strategy = RETRY_STRATEGIES['credit_card']

        assert calculate_retry_delay(strategy, 0, rng) == 30.0
        assert calculate_retry_delay(strategy, 1, rng) == 60.0
        assert calculate_retry_delay(strategy, 2, rng) == 120.0
        assert calculate_retry_delay(strategy, 5, rng) == 300.0

    def test_jitter_adds_at_most_ten_percent(self):
        strategy = RETRY_STRATEGIES['credit_card']
        half = Mock(random=Mock(return_value=0.5))
        assert calculate_retry_delay(strategy, 0, half) == pytest.approx(31.5)

        rng = random.Random(7)
        for retry in range(4):
            base = min(30 * 2 ** retry, 300)
            delay = calculate_retry_delay(strategy, retry, rng)
            assert base <= delay <= base * 1.1

    def test_fixed_and_immediate_delays(self):
        assert calculate_retry_delay(RETRY_STRATEGIES['bank_transfer'], 0) == 300.0
        assert calculate_retry_delay(RETRY_STRATEGIES['bank_transfer'], 1) == 300.0
        assert calculate_retry_delay(RETRY_STRATEGIES['digital_wallet'], 3) == 10.0


class TestRecoveryAction:

    def test_insufficient_funds_goes_to_review(self, clock):
        transaction = make_transaction(clock)
        assert determine_recovery_action(transaction, INSUFFICIENT_FUNDS, 0) == RecoveryAction.MANUAL_REVIEW

    def test_repeated_decline_asks_for_other_method(self, clock):
        transaction = make_transaction(clock)
        assert determine_recovery_action(transaction, CARD_DECLINED, 1) == RecoveryAction.RETRY
        assert determine_recovery_action(transaction, CARD_DECLINED, 2) == RecoveryAction.ALTERNATIVE_METHOD

    def test_bank_transfer_first_failure_retries(self, clock):
        transaction = make_transaction(clock, '6.00', '4.00', '2.00', method_type='bank_transfer')
        assert determine_recovery_action(transaction, PROCESSING_ERROR, 0) == RecoveryAction.RETRY
        assert determine_recovery_action(transaction, PROCESSING_ERROR, 1) == RecoveryAction.REFUND

    def test_small_amount_is_refunded(self, clock):
        transaction = make_transaction(clock, '10.00', '6.00', '4.00')
        assert determine_recovery_action(transaction, PROCESSING_ERROR, 0) == RecoveryAction.REFUND

    def test_default_is_retry(self, clock):
        transaction = make_transaction(clock)
        assert determine_recovery_action(transaction, PROCESSING_ERROR, 0) == RecoveryAction.RETRY


class TestTimeoutSweep:

    @pytest.mark.asyncio
    async def test_sweep_expires_each_transaction_once(
        self, open_escrow, timeout_handler, escrow_service, catalog, clock
    ):
        first = (await open_escrow())['transactionId']
        second = (await open_escrow(book_id='book_2', total_amount='12.00'))['transactionId']
        clock.advance(hours=25)

        result = await timeout_handler.run_timeout_sweep()

        assert result['processedCount'] == 2
        assert {r['transactionId'] for r in result['results']} == {first, second}
        assert all(r['success'] for r in result['results'])

        again = await timeout_handler.run_timeout_sweep()
        assert again == {'processedCount': 0, 'results': []}

        for tid in (first, second):
            transaction = await escrow_service.get_transaction(tid)
            assert transaction.status == EscrowStatus.CANCELLED
            assert transaction.refund_reason == EXPIRY_REASON
            refunds = await escrow_service.get_refund_requests(tid)
            assert [r.reason for r in refunds] == [RefundReason.TIMEOUT]
        assert catalog.listings['book_1'].is_available is True
        assert catalog.listings['book_2'].is_available is True

    @pytest.mark.asyncio
    async def test_sweep_leaves_live_transactions(self, open_escrow, timeout_handler, clock):
        await open_escrow()
        clock.advance(hours=23)

        result = await timeout_handler.run_timeout_sweep()

        assert result['processedCount'] == 0


class TestPaymentRetries:

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_backoff(
        self, open_escrow, timeout_handler, escrow_service, ledger, clock
    ):
        escrow_service.gateway.fail_next_captures(1, PROCESSING_ERROR)
        tid = (await open_escrow())['transactionId']

        counts = await timeout_handler.process_payment_retries()
        assert counts == {'opened': 1, 'succeeded': 0, 'failed': 0, 'exhausted': 0, 'stopped': 0}

        record = await ledger.get_timeout(tid)
        assert record.status == TimeoutStatus.RETRY
        assert record.max_retries == 3
        assert timedelta(seconds=30) <= record.next_attempt_at - clock() <= timedelta(seconds=33)

        clock.advance(minutes=1)
        counts = await timeout_handler.process_payment_retries()
        assert counts['succeeded'] == 1

        transaction = await escrow_service.get_transaction(tid)
        assert transaction.status == EscrowStatus.PAID
        record = await ledger.get_timeout(tid)
        assert record.resolved_at == clock()

        clock.advance(days=31)
        assert await timeout_handler.cleanup_expired_timeouts() == 1
        assert await ledger.get_timeout(tid) is None

    @pytest.mark.asyncio
    async def test_retries_exhaust_and_cancel(
        self, open_escrow, timeout_handler, escrow_service, ledger, catalog, clock
    ):
        escrow_service.gateway.fail_next_captures(4, PROCESSING_ERROR)
        tid = (await open_escrow())['transactionId']
        await timeout_handler.process_payment_retries()

        totals = {'failed': 0, 'exhausted': 0}
        for _ in range(3):
            clock.advance(minutes=10)
            counts = await timeout_handler.process_payment_retries()
            totals['failed'] += counts['failed']
            totals['exhausted'] += counts['exhausted']

        assert totals == {'failed': 2, 'exhausted': 1}

        transaction = await escrow_service.get_transaction(tid)
        assert transaction.status == EscrowStatus.CANCELLED
        assert transaction.refund_reason == f"Payment failed: {PROCESSING_ERROR}"
        assert catalog.listings['book_1'].is_available is True

        record = await ledger.get_timeout(tid)
        assert record.status == TimeoutStatus.FAILED
        assert record.current_retry == 3
        assert record.timed_out_at == clock()

        refunds = await escrow_service.get_refund_requests(tid)
        assert [r.reason for r in refunds] == [RefundReason.FAILURE]

        # Nothing was captured, so the automatic level settles it at once
        counts = await timeout_handler.process_escalations()
        assert counts['resolved'] == 1
        refunds = await escrow_service.get_refund_requests(tid)
        assert refunds[0].status == RefundStatus.COMPLETED
        assert await ledger.list_unresolved_timeouts() == []

    @pytest.mark.asyncio
    async def test_small_amount_gives_up_on_first_failed_retry(
        self, open_escrow, timeout_handler, escrow_service, clock
    ):
        escrow_service.gateway.fail_next_captures(2, PROCESSING_ERROR)
        tid = (await open_escrow(book_id='book_cheap', total_amount='6.00'))['transactionId']
        await timeout_handler.process_payment_retries()

        clock.advance(minutes=1)
        counts = await timeout_handler.process_payment_retries()

        assert counts['exhausted'] == 1
        assert (await escrow_service.get_transaction(tid)).status == EscrowStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_repeated_decline_asks_borrower_for_another_method(
        self, open_escrow, timeout_handler, escrow_service, notifier, clock
    ):
        escrow_service.gateway.fail_next_captures(3, CARD_DECLINED)
        await open_escrow()
        await timeout_handler.process_payment_retries()

        for _ in range(2):
            clock.advance(minutes=10)
            await timeout_handler.process_payment_retries()

        assert 'Payment method declined' in notifier.subjects_for('borrower_1')

    @pytest.mark.asyncio
    async def test_retry_stops_when_transaction_left_pending(
        self, open_escrow, timeout_handler, escrow_service, ledger, clock
    ):
        escrow_service.gateway.fail_next_captures(1)
        tid = (await open_escrow())['transactionId']
        await timeout_handler.process_payment_retries()
        await escrow_service.request_refund(tid, 'cancellation')

        clock.advance(minutes=1)
        counts = await timeout_handler.process_payment_retries()

        assert counts['stopped'] == 1
        record = await ledger.get_timeout(tid)
        assert record.status == TimeoutStatus.CANCELLED
        assert record.is_resolved

    @pytest.mark.asyncio
    async def test_digital_wallet_uses_immediate_strategy(
        self, open_escrow, timeout_handler, escrow_service, ledger, clock
    ):
        escrow_service.gateway.fail_next_captures(1)
        tid = (await open_escrow(method_type='digital_wallet'))['transactionId']

        await timeout_handler.process_payment_retries()

        record = await ledger.get_timeout(tid)
        assert record.retry_strategy == RetryStrategyType.IMMEDIATE
        assert record.max_retries == 5
        assert record.next_attempt_at == clock() + timedelta(seconds=10)


class TestEscalation:

    async def _expire_paid_transaction(self, open_escrow, timeout_handler, gateway, clock):
        tid = (await open_escrow())['transactionId']
        gateway.fail_refunds = True
        clock.advance(hours=25)
        await timeout_handler.run_timeout_sweep()
        return tid

    @pytest.mark.asyncio
    async def test_escalation_ladder_fires_each_level_once(
        self, open_escrow, timeout_handler, gateway, ledger, notifier, clock
    ):
        tid = await self._expire_paid_transaction(open_escrow, timeout_handler, gateway, clock)

        counts = await timeout_handler.process_escalations()
        assert counts == {'escalated': 1, 'resolved': 0, 'failed': 0}
        record = await ledger.get_timeout(tid)
        assert record.escalation_level == EscalationLevel.AUTOMATIC
        assert record.escalation_history[0].action == 'auto_refund: 0/1 completed'

        # Same level again is a no-op
        counts = await timeout_handler.process_escalations()
        assert counts == {'escalated': 0, 'resolved': 0, 'failed': 0}

        clock.advance(hours=24)
        await timeout_handler.process_escalations()
        record = await ledger.get_timeout(tid)
        assert record.escalation_level == EscalationLevel.MANUAL
        assert notifier.admin_messages[-1]['subject'] == 'Unresolved escrow timeout'
        assert notifier.admin_messages[-1]['transaction_id'] == tid

        clock.advance(hours=48)
        await timeout_handler.process_escalations()
        record = await ledger.get_timeout(tid)
        assert record.escalation_level == EscalationLevel.ADMIN
        assert record.escalation_history[-1].action == f"admin_ticket: TICKET-{tid}"
        assert [h.level for h in record.escalation_history] == [
            EscalationLevel.AUTOMATIC, EscalationLevel.MANUAL, EscalationLevel.ADMIN
        ]
        assert notifier.tickets[0]['transaction_id'] == tid

        gateway.fail_refunds = False
        refund_counts = await timeout_handler.retry_failed_refunds()
        assert refund_counts == {'completed': 1, 'failed': 0, 'escalated': 0}

        counts = await timeout_handler.process_escalations()
        assert counts['resolved'] == 1
        assert await ledger.list_unresolved_timeouts() == []

    @pytest.mark.asyncio
    async def test_late_run_fires_skipped_levels_in_order(
        self, open_escrow, timeout_handler, gateway, ledger, clock
    ):
        tid = await self._expire_paid_transaction(open_escrow, timeout_handler, gateway, clock)
        clock.advance(hours=73)

        await timeout_handler.process_escalations()

        record = await ledger.get_timeout(tid)
        assert [h.level for h in record.escalation_history] == [
            EscalationLevel.AUTOMATIC, EscalationLevel.MANUAL, EscalationLevel.ADMIN
        ]

    @pytest.mark.asyncio
    async def test_amount_above_threshold_goes_to_manual_review(
        self, env, tmp_path, ledger, catalog, gateway, notifier, clock
    ):
        env.setenv('AUTO_REFUND_THRESHOLD', '10')
        config = Config(env_file=str(tmp_path / 'missing.env'))
        service = EscrowService(ledger, catalog, gateway, notifier=notifier, config=config, clock=clock)
        handler = PaymentTimeoutHandler(service, clock=clock)

        result = await service.initiate_escrow(
            'book_1', 'borrower_1', {'method_id': 'pm_card_4242'}, {'total_amount': '25.00'}
        )
        clock.advance(hours=25)
        await handler.run_timeout_sweep()

        await handler.process_escalations()

        record = await ledger.get_timeout(result['transactionId'])
        assert record.escalation_history[0].action == f"manual_review: REVIEW-{result['transactionId']}"
        assert gateway.calls_of('refund') == []

    @pytest.mark.asyncio
    async def test_uncaptured_payment_above_threshold_is_voided(
        self, env, tmp_path, ledger, catalog, gateway, notifier, clock
    ):
        env.setenv('AUTO_REFUND_THRESHOLD', '10')
        config = Config(env_file=str(tmp_path / 'missing.env'))
        service = EscrowService(ledger, catalog, gateway, notifier=notifier, config=config, clock=clock)
        handler = PaymentTimeoutHandler(service, clock=clock)
        gateway.fail_next_captures(10)

        result = await service.initiate_escrow(
            'book_1', 'borrower_1', {'method_id': 'pm_card_4242'}, {'total_amount': '25.00'}
        )
        tid = result['transactionId']
        clock.advance(hours=25)
        await handler.run_timeout_sweep()

        counts = await handler.process_escalations()

        assert counts == {'escalated': 0, 'resolved': 1, 'failed': 0}
        record = await ledger.get_timeout(tid)
        assert record.escalation_history[0].action == 'void: 1/1 completed'
        refunds = await ledger.list_refunds(tid)
        assert [r.status for r in refunds] == [RefundStatus.COMPLETED]
        assert gateway.calls_of('refund') == []
        assert notifier.reviews == []

        clock.advance(hours=80)
        await handler.process_escalations()

        assert notifier.tickets == []
        assert all(m['subject'] != 'Unresolved escrow timeout' for m in notifier.admin_messages)

    @pytest.mark.asyncio
    async def test_stale_record_update_is_skipped(
        self, open_escrow, timeout_handler, gateway, ledger, clock
    ):
        tid = await self._expire_paid_transaction(open_escrow, timeout_handler, gateway, clock)
        stale = await ledger.get_timeout(tid)
        stale.status = TimeoutStatus.CANCELLED

        saved = await timeout_handler._save(stale, expected=TimeoutStatus.RETRY)

        assert saved is False
        assert (await ledger.get_timeout(tid)).status == TimeoutStatus.TIMEOUT


class TestRefundRetries:

    @pytest.mark.asyncio
    async def test_refund_retries_stop_at_max_attempts(
        self, open_escrow, timeout_handler, escrow_service, gateway, notifier
    ):
        tid = (await open_escrow())['transactionId']
        gateway.fail_refunds = True
        refund = await escrow_service.request_refund(tid, 'cancellation')
        assert refund.attempts == 1

        assert await timeout_handler.retry_failed_refunds() == {
            'completed': 0, 'failed': 1, 'escalated': 0
        }
        assert await timeout_handler.retry_failed_refunds() == {
            'completed': 0, 'failed': 1, 'escalated': 1
        }
        assert notifier.reviews[-1]['transaction_id'] == tid
        assert refund.refund_id in notifier.reviews[-1]['reason']

        assert await timeout_handler.retry_failed_refunds() == {
            'completed': 0, 'failed': 0, 'escalated': 0
        }


class TestExpirationWarnings:

    @pytest.mark.asyncio
    async def test_warning_sent_once_to_both_parties(self, open_escrow, timeout_handler, notifier, clock):
        await open_escrow()
        clock.advance(hours=23)

        assert await timeout_handler.send_expiration_warnings() == 1
        assert 'Rental expiring soon' in notifier.subjects_for('lender_1')
        assert 'Rental expiring soon' in notifier.subjects_for('borrower_1')

        assert await timeout_handler.send_expiration_warnings() == 0

    @pytest.mark.asyncio
    async def test_no_warning_far_from_deadline(self, open_escrow, timeout_handler, clock):
        await open_escrow()
        clock.advance(hours=10)

        assert await timeout_handler.send_expiration_warnings() == 0
