"""
Payment timeout and recovery handling.

Works through transactions the request path could not finish:

    - capture failures are retried on a back-off chosen by payment method
      category; exhausted retries cancel the transaction and open a refund
    - expired and failed transactions climb the escalation ladder
      (automatic -> manual -> admin) by wall-clock time since the timeout
    - failed refunds are retried a bounded number of times
    - parties are warned before their escrow window closes

Nothing here holds in-memory state between runs; every decision is read
from and written back to the ledger.
"""

import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from config import Config, get_config
from escrow_errors import (
    ExpiredPayloadError,
    GatewayFailure,
    IntegrityFailure,
    StateTransitionError,
    TransactionExpiredError,
)
from escrow_ledger import EscrowLedger
from escrow_models import (
    ESCALATION_ORDER,
    EscalationLevel,
    EscalationRecord,
    EscrowStatus,
    EscrowTransaction,
    PaymentTimeout,
    RecoveryAction,
    RefundRequest,
    RefundStatus,
    RetryStrategyType,
    TimeoutStatus,
)
from escrow_service import EscrowService
from notifications import Notifier
from payment_gateway import CARD_DECLINED, INSUFFICIENT_FUNDS
from utils import format_currency, utc_now

logger = logging.getLogger(__name__)


class RetryStrategy(BaseModel):
    type: RetryStrategyType
    initial_delay: int          # seconds
    max_delay: int              # seconds
    max_retries: int
    multiplier: float = 1.0
    jitter: bool = False


RETRY_STRATEGIES = {
    'credit_card': RetryStrategy(
        type=RetryStrategyType.EXPONENTIAL,
        initial_delay=30, max_delay=300, max_retries=3, multiplier=2.0, jitter=True
    ),
    'bank_transfer': RetryStrategy(
        type=RetryStrategyType.FIXED,
        initial_delay=300, max_delay=1800, max_retries=2
    ),
    'digital_wallet': RetryStrategy(
        type=RetryStrategyType.IMMEDIATE,
        initial_delay=10, max_delay=60, max_retries=5
    ),
}

DEFAULT_STRATEGY = RETRY_STRATEGIES['credit_card']
JITTER_FRACTION = 0.1
SMALL_AMOUNT_REFUND_LIMIT = Decimal('10')
CARD_DECLINED_RETRY_LIMIT = 2


def get_retry_strategy(payment_method_type: Optional[str]) -> RetryStrategy:
    """Strategy for a payment method category; unknown categories back off exponentially."""
    return RETRY_STRATEGIES.get((payment_method_type or '').lower(), DEFAULT_STRATEGY)


def strategy_by_type(strategy_type: RetryStrategyType) -> RetryStrategy:
    for strategy in RETRY_STRATEGIES.values():
        if strategy.type == strategy_type:
            return strategy
    return DEFAULT_STRATEGY


def calculate_retry_delay(
    strategy: RetryStrategy,
    retry_number: int,
    rng: Optional[random.Random] = None
) -> float:
    """
    Seconds to wait before retry ``retry_number`` (0-based).

    Example:
        >>> calculate_retry_delay(RETRY_STRATEGIES['credit_card'], 2, random.Random(1))
        # 120s plus up to 10% jitter
    """
    if strategy.type == RetryStrategyType.EXPONENTIAL:
        delay = min(strategy.initial_delay * strategy.multiplier ** retry_number, strategy.max_delay)
    else:
        delay = min(strategy.initial_delay, strategy.max_delay)

    if strategy.jitter:
        delay += delay * JITTER_FRACTION * (rng or random).random()

    return float(delay)


def determine_recovery_action(
    transaction: EscrowTransaction,
    error_code: Optional[str],
    retry_count: int
) -> RecoveryAction:
    """First matching rule wins."""
    if error_code == INSUFFICIENT_FUNDS:
        return RecoveryAction.MANUAL_REVIEW
    if error_code == CARD_DECLINED and retry_count >= CARD_DECLINED_RETRY_LIMIT:
        return RecoveryAction.ALTERNATIVE_METHOD
    if transaction.payment_method_type == 'bank_transfer' and retry_count == 0:
        return RecoveryAction.RETRY
    if transaction.total_amount <= SMALL_AMOUNT_REFUND_LIMIT:
        return RecoveryAction.REFUND
    return RecoveryAction.RETRY


class PaymentTimeoutHandler:
    """
    Scheduler-side recovery for stuck, failed and expired transactions.

    Attributes:
        escrow_service: State machine used for every transaction transition
        ledger: Escrow ledger (defaults to the service's)
        notifier: Admin and party notifications (defaults to the service's)
        rng: Source of retry jitter
    """

    def __init__(
        self,
        escrow_service: EscrowService,
        ledger: Optional[EscrowLedger] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[Config] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None
    ):
        self.escrow_service = escrow_service
        self.ledger = ledger or escrow_service.ledger
        self.notifier = notifier or escrow_service.notifier
        self.config = config or escrow_service.config or get_config()
        self.clock = clock or escrow_service.clock or utc_now
        self.rng = rng or random.Random()

    # ==================== TIMEOUT SWEEP ====================

    async def run_timeout_sweep(self) -> Dict[str, Any]:
        """Expire overdue transactions; see EscrowService.run_timeout_sweep."""
        return await self.escrow_service.run_timeout_sweep()

    # ==================== CAPTURE RETRIES ====================

    async def process_payment_retries(self) -> Dict[str, int]:
        """
        Open retry records for new capture failures and run the retries that are due.

        Returns:
            Counts: opened, succeeded, failed, exhausted, stopped
        """
        counts = {'opened': 0, 'succeeded': 0, 'failed': 0, 'exhausted': 0, 'stopped': 0}
        now = self.clock()

        for transaction in await self.ledger.find_capture_failures():
            if await self.ledger.get_timeout(transaction.transaction_id) is None:
                if await self._open_retry_record(transaction, now):
                    counts['opened'] += 1

        for record in await self.ledger.list_unresolved_timeouts():
            if record.status != TimeoutStatus.RETRY:
                continue
            if record.next_attempt_at is None or record.next_attempt_at > now:
                continue
            try:
                outcome = await self._attempt_retry(record)
                counts[outcome] += 1
            except Exception as e:
                logger.error(f"Retry of {record.transaction_id} failed unexpectedly: {e}", exc_info=True)

        return counts

    async def _open_retry_record(self, transaction: EscrowTransaction, now: datetime) -> bool:
        strategy = get_retry_strategy(transaction.payment_method_type)
        failed_at = transaction.capture_failed_at or now
        record = PaymentTimeout(
            transaction_id=transaction.transaction_id,
            status=TimeoutStatus.RETRY,
            retry_strategy=strategy.type,
            max_retries=strategy.max_retries,
            current_retry=0,
            recovery_action=determine_recovery_action(
                transaction, transaction.capture_failure_reason, 0
            ),
            failure_reason=transaction.capture_failure_reason,
            last_attempt=failed_at,
            next_attempt_at=failed_at + timedelta(
                seconds=calculate_retry_delay(strategy, 0, self.rng)
            ),
            created_at=now,
            updated_at=now
        )

        async with self.ledger.lock(transaction.transaction_id) as session:
            if await session.get_timeout() is not None:
                return False
            if session.transaction.status != EscrowStatus.PENDING:
                return False
            await session.save_timeout(record)

        logger.info(
            f"Retry scheduled for {transaction.transaction_id} ({strategy.type.value}, "
            f"{strategy.max_retries} retries, next at {record.next_attempt_at.isoformat()})"
        )
        return True

    async def _attempt_retry(self, record: PaymentTimeout) -> str:
        transaction_id = record.transaction_id
        transaction = await self.ledger.get_transaction(transaction_id)
        if transaction is None or transaction.status != EscrowStatus.PENDING:
            await self._resolve(record, TimeoutStatus.CANCELLED, expected=TimeoutStatus.RETRY)
            return 'stopped'

        now = self.clock()
        logger.info(
            f"Retrying capture for {transaction_id} "
            f"(attempt {record.current_retry + 1}/{record.max_retries})"
        )

        try:
            await self.escrow_service.retry_capture(transaction_id)

        except TransactionExpiredError:
            # The expiry transition already moved the record to timeout
            return 'stopped'

        except StateTransitionError:
            await self._resolve(record, TimeoutStatus.CANCELLED, expected=TimeoutStatus.RETRY)
            return 'stopped'

        except (IntegrityFailure, ExpiredPayloadError) as e:
            record.failure_reason = e.code
            await self._exhaust(record, transaction, f"payment method unreadable ({e.code})")
            return 'exhausted'

        except GatewayFailure as e:
            previous_action = record.recovery_action
            record.current_retry += 1
            record.last_attempt = now
            record.failure_reason = e.error_code
            record.recovery_action = determine_recovery_action(
                transaction, e.error_code, record.current_retry
            )

            if record.retries_exhausted or record.recovery_action == RecoveryAction.REFUND:
                await self._exhaust(record, transaction, e.error_code)
                return 'exhausted'

            strategy = strategy_by_type(record.retry_strategy)
            record.next_attempt_at = now + timedelta(
                seconds=calculate_retry_delay(strategy, record.current_retry, self.rng)
            )
            await self._save(record, expected=TimeoutStatus.RETRY)

            if record.recovery_action != previous_action:
                await self._announce_recovery_action(record, transaction)

            logger.warning(
                f"Capture retry {record.current_retry}/{record.max_retries} failed for "
                f"{transaction_id}: {e.error_code}; next at {record.next_attempt_at.isoformat()}"
            )
            return 'failed'

        await self._resolve(record, TimeoutStatus.CANCELLED, expected=TimeoutStatus.RETRY)
        logger.info(f"Capture retry succeeded for {transaction_id}")
        return 'succeeded'

    async def _announce_recovery_action(self, record: PaymentTimeout, transaction: EscrowTransaction) -> None:
        if record.recovery_action == RecoveryAction.MANUAL_REVIEW:
            await self.notifier.open_manual_review(
                transaction.transaction_id, f"Payment capture failing: {record.failure_reason}"
            )
        elif record.recovery_action == RecoveryAction.ALTERNATIVE_METHOD:
            await self.notifier.notify_user(
                transaction.borrower_id,
                "Payment method declined",
                f"Your payment for rental {transaction.transaction_id} keeps being declined. "
                f"Please use a different payment method."
            )

    async def _exhaust(self, record: PaymentTimeout, transaction: EscrowTransaction, reason: str) -> None:
        """Give up on capture: cancel the transaction and start escalation."""
        refund = await self.escrow_service.fail_payment(transaction.transaction_id, reason)
        if refund is None:
            await self._resolve(record, TimeoutStatus.CANCELLED, expected=TimeoutStatus.RETRY)
            return

        now = self.clock()
        record.status = TimeoutStatus.FAILED
        record.timed_out_at = now
        record.next_attempt_at = None
        await self._save(record, expected=TimeoutStatus.RETRY)
        logger.warning(
            f"Capture retries exhausted for {transaction.transaction_id} after "
            f"{record.current_retry} attempts; refund {refund.refund_id} opened"
        )

    # ==================== ESCALATION ====================

    async def process_escalations(self) -> Dict[str, int]:
        """
        Move unresolved timeout records up the escalation ladder.

        Returns:
            Counts: escalated, resolved, failed
        """
        counts = {'escalated': 0, 'resolved': 0, 'failed': 0}
        now = self.clock()

        for record in await self.ledger.list_unresolved_timeouts():
            if record.status not in (TimeoutStatus.TIMEOUT, TimeoutStatus.FAILED):
                continue
            if record.timed_out_at is None:
                continue
            try:
                outcome = await self._escalate(record, now)
                if outcome:
                    counts[outcome] += 1
            except Exception as e:
                counts['failed'] += 1
                logger.error(f"Escalation of {record.transaction_id} failed: {e}", exc_info=True)

        return counts

    def target_level(self, timed_out_at: datetime, now: datetime) -> EscalationLevel:
        elapsed = now - timed_out_at
        if elapsed >= timedelta(hours=self.config.escalation_admin_hours):
            return EscalationLevel.ADMIN
        if elapsed >= timedelta(hours=self.config.escalation_manual_hours):
            return EscalationLevel.MANUAL
        return EscalationLevel.AUTOMATIC

    async def _escalate(self, record: PaymentTimeout, now: datetime) -> Optional[str]:
        transaction_id = record.transaction_id
        refunds = await self.ledger.list_refunds(transaction_id)
        if self._all_completed(refunds):
            await self._resolve(record, record.status, expected=record.status)
            return 'resolved'

        transaction = await self.ledger.get_transaction(transaction_id)
        if transaction is None:
            return None

        current = ESCALATION_ORDER.index(record.escalation_level)
        target = ESCALATION_ORDER.index(self.target_level(record.timed_out_at, now))
        if target <= current:
            return None

        expected = record.status
        for level in ESCALATION_ORDER[current + 1:target + 1]:
            action = await self._fire_level(level, transaction, refunds)
            record.escalation_level = level
            record.escalation_history.append(
                EscalationRecord(level=level, fired_at=now, action=action)
            )
            logger.warning(f"Escalated {transaction_id} to {level.value}: {action}")
            refunds = await self.ledger.list_refunds(transaction_id)
            if self._all_completed(refunds):
                break

        if self._all_completed(refunds):
            record.resolved_at = now
        await self._save(record, expected=expected)
        return 'resolved' if record.resolved_at else 'escalated'

    async def _fire_level(
        self,
        level: EscalationLevel,
        transaction: EscrowTransaction,
        refunds: List[RefundRequest]
    ) -> str:
        transaction_id = transaction.transaction_id
        outstanding = [r for r in refunds if r.status != RefundStatus.COMPLETED]
        owed = format_currency(sum(r.amount for r in outstanding), transaction.currency)

        if level == EscalationLevel.AUTOMATIC:
            # Nothing was captured: the refund is a void whatever the amount
            uncaptured = transaction.payment_id is None
            if uncaptured or transaction.total_amount <= self.config.auto_refund_threshold:
                completed = 0
                for refund in outstanding:
                    processed = await self.escrow_service.process_refund(refund.refund_id)
                    if processed.status == RefundStatus.COMPLETED:
                        completed += 1
                kind = 'void' if uncaptured else 'auto_refund'
                return f"{kind}: {completed}/{len(outstanding)} completed"
            reference = await self.notifier.open_manual_review(
                transaction_id,
                f"Refund of {owed} above the automatic threshold "
                f"({format_currency(self.config.auto_refund_threshold, transaction.currency)})"
            )
            return f"manual_review: {reference}"

        if level == EscalationLevel.MANUAL:
            await self.notifier.notify_admins(
                "Unresolved escrow timeout",
                f"Transaction unresolved for {self.config.escalation_manual_hours}h; "
                f"{owed} still owed to the borrower.",
                transaction_id
            )
            return "admins_notified"

        reference = await self.notifier.open_admin_ticket(
            transaction_id,
            f"Unresolved for {self.config.escalation_admin_hours}h; {owed} still owed"
        )
        return f"admin_ticket: {reference}"

    @staticmethod
    def _all_completed(refunds: List[RefundRequest]) -> bool:
        return all(r.status == RefundStatus.COMPLETED for r in refunds)

    # ==================== REFUND RETRIES ====================

    async def retry_failed_refunds(self) -> Dict[str, int]:
        """
        Re-send failed refunds; after MAX_REFUND_ATTEMPTS a manual review is opened.

        Returns:
            Counts: completed, failed, escalated
        """
        counts = {'completed': 0, 'failed': 0, 'escalated': 0}
        max_attempts = self.config.max_refund_attempts

        for refund in await self.ledger.find_refunds(RefundStatus.FAILED):
            if refund.attempts >= max_attempts:
                continue
            try:
                processed = await self.escrow_service.process_refund(refund.refund_id)
            except Exception as e:
                counts['failed'] += 1
                logger.error(f"Refund retry {refund.refund_id} raised: {e}", exc_info=True)
                continue

            if processed.status == RefundStatus.COMPLETED:
                counts['completed'] += 1
                continue

            counts['failed'] += 1
            if processed.attempts >= max_attempts:
                counts['escalated'] += 1
                await self.notifier.open_manual_review(
                    processed.transaction_id,
                    f"Refund {processed.refund_id} failed {processed.attempts} times: "
                    f"{processed.error_message}"
                )

        return counts

    # ==================== WARNINGS & CLEANUP ====================

    async def send_expiration_warnings(self) -> int:
        """Warn both parties once when a transaction is about to expire."""
        now = self.clock()
        until = now + timedelta(hours=self.config.expiry_warning_hours)
        sent = 0

        for candidate in await self.ledger.find_expiring(now, until):
            async with self.ledger.lock(candidate.transaction_id) as session:
                transaction = session.transaction
                if transaction.expiry_warning_sent or transaction.is_expired(now):
                    continue
                transaction.expiry_warning_sent = True
                await session.save_transaction(transaction)

            remaining = transaction.expires_at - now
            minutes = int(remaining.total_seconds() // 60)
            message = (
                f"Rental {transaction.transaction_id} expires in about {minutes} minutes. "
                f"Confirm the exchange before then or the hold will be cancelled."
            )
            await self.notifier.notify_user(transaction.lender_id, "Rental expiring soon", message)
            await self.notifier.notify_user(transaction.borrower_id, "Rental expiring soon", message)
            sent += 1

        return sent

    async def cleanup_expired_timeouts(self) -> int:
        """Delete resolved timeout records older than the retention period."""
        cutoff = self.clock() - timedelta(days=self.config.timeout_retention_days)
        deleted = await self.ledger.delete_resolved_timeouts(cutoff)
        if deleted:
            logger.info(f"Deleted {deleted} resolved timeout records older than {cutoff.date()}")
        return deleted

    # ==================== HELPERS ====================

    async def _save(self, record: PaymentTimeout, expected: TimeoutStatus) -> bool:
        """Write the record unless another writer moved it out of ``expected`` meanwhile."""
        async with self.ledger.lock(record.transaction_id) as session:
            current = await session.get_timeout()
            if current is not None and current.status != expected:
                logger.info(
                    f"Timeout record {record.transaction_id} changed to "
                    f"{current.status.value} concurrently; update skipped"
                )
                return False
            record.updated_at = self.clock()
            await session.save_timeout(record)
        return True

    async def _resolve(self, record: PaymentTimeout, status: TimeoutStatus, expected: TimeoutStatus) -> bool:
        record.status = status
        record.resolved_at = self.clock()
        record.next_attempt_at = None
        return await self._save(record, expected=expected)
