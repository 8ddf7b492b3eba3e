"""
Escrow Service Module for the book rental escrow core.

This module is the escrow state machine. It admits payment attempts
through the risk gate, records lender and borrower confirmations, and
releases, refunds or expires the held funds.

Features:
    - Risk-gated admission (approve / review / decline)
    - Dual confirmation for the lending leg and the return leg
    - Release to lender and deposit refund to borrower
    - Four refund modes and explicit release splits
    - Reactive and swept 24h expiry
    - Encrypted storage of the payment method descriptor

Every state change happens inside ``ledger.lock(transaction_id)``, so
concurrent confirmations, releases and the expiry sweep are linearized
per transaction.

Dependencies:
    - escrow_ledger.py: Ledger port
    - fraud_detection.py: Risk scorer
    - payment_gateway.py: Capture, release and refund
    - transaction_encryption.py: Payment method envelopes
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from book_catalog import BookCatalog
from config import Config, get_config
from escrow_errors import (
    AlreadyConfirmedError,
    AmountMismatchError,
    ConflictError,
    EscrowError,
    ExpiredPayloadError,
    ForbiddenActionError,
    FraudDetectionError,
    GatewayFailure,
    IntegrityFailure,
    SelfTransactionError,
    StateTransitionError,
    TransactionExpiredError,
    TransactionNotFoundError,
    ValidationError,
)
from escrow_ledger import EscrowLedger, LedgerSession
from escrow_models import (
    ConfirmationAction,
    ConfirmationEvent,
    EscrowStatus,
    EscrowTransaction,
    FraudCheck,
    FundRelease,
    PartyRole,
    PaymentContext,
    PaymentMethod,
    PaymentTimeout,
    RecentTransaction,
    Recommendation,
    RefundMode,
    RefundReason,
    RefundRequest,
    RefundStatus,
    ReleaseStatus,
    ReleaseType,
    TimeoutStatus,
    UserHistory,
)
from fraud_detection import FraudDetectionEngine
from notifications import LoggingNotifier, Notifier
from payment_gateway import GatewayResult, PaymentGateway
from refund_processor import (
    RefundProcessor,
    calculate_refund_amount,
    describe_refund,
    plan_releases,
)
from transaction_encryption import SecureEnvelope, TransactionEncryptionService
from utils import format_currency, generate_id, sanitize_input, to_money, utc_now

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Transaction expired - automatic timeout"


class EscrowStateValidator:
    """Legal status transitions of an escrow transaction."""

    VALID_TRANSITIONS = {
        EscrowStatus.PENDING: {EscrowStatus.PAID, EscrowStatus.CANCELLED, EscrowStatus.REFUNDED},
        EscrowStatus.PAID: {
            EscrowStatus.CONFIRMED, EscrowStatus.COMPLETED,
            EscrowStatus.CANCELLED, EscrowStatus.REFUNDED,
        },
        EscrowStatus.CONFIRMED: {EscrowStatus.COMPLETED, EscrowStatus.REFUNDED},
        EscrowStatus.COMPLETED: set(),
        EscrowStatus.CANCELLED: set(),
        EscrowStatus.REFUNDED: set(),
    }

    @classmethod
    def is_valid_transition(cls, from_status: EscrowStatus, to_status: EscrowStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, set())

    @classmethod
    def is_terminal_state(cls, status: EscrowStatus) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)

    @classmethod
    def validate(cls, transaction: EscrowTransaction, to_status: EscrowStatus) -> None:
        """
        Raises:
            StateTransitionError: If the transition is not allowed
        """
        if not cls.is_valid_transition(transaction.status, to_status):
            raise StateTransitionError(
                f"Invalid state transition: {transaction.status.value} -> {to_status.value}",
                transaction.transaction_id
            )


def project_confirmation_flags(events: List[ConfirmationEvent]) -> Dict[str, bool]:
    """
    Derive the confirmation flags from the event log.

    The lending leg reads ``lent`` / ``borrowed``. Once ``returned`` is
    recorded the return leg starts from both flags false, and
    ``received`` sets both again.
    """
    actions = {event.action for event in events}
    if ConfirmationAction.RETURNED in actions:
        returned_leg_done = ConfirmationAction.RECEIVED in actions
        return {'lender_confirmed': returned_leg_done, 'borrower_confirmed': returned_leg_done}
    return {
        'lender_confirmed': ConfirmationAction.LENT in actions,
        'borrower_confirmed': ConfirmationAction.BORROWED in actions,
    }


class EscrowService:
    """
    Core escrow business logic service.

    Attributes:
        ledger: Escrow ledger (source of truth)
        catalog: Book catalog, for prices and availability
        gateway: Payment gateway
        fraud_engine: Risk scorer gating admission
        encryption: Field encryption for payment method descriptors
        notifier: Party and admin notifications
        config: Configuration instance
    """

    # Statuses each confirmation action may be recorded in
    ACTION_STATUS = {
        ConfirmationAction.LENT: EscrowStatus.PAID,
        ConfirmationAction.BORROWED: EscrowStatus.PAID,
        ConfirmationAction.RETURNED: EscrowStatus.CONFIRMED,
        ConfirmationAction.RECEIVED: EscrowStatus.CONFIRMED,
    }

    def __init__(
        self,
        ledger: EscrowLedger,
        catalog: BookCatalog,
        gateway: PaymentGateway,
        fraud_engine: Optional[FraudDetectionEngine] = None,
        encryption: Optional[TransactionEncryptionService] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[Config] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the escrow service.

        Args:
            ledger: Escrow ledger implementation
            catalog: Book catalog implementation
            gateway: Payment gateway implementation
            fraud_engine: Risk scorer (optional, built from config if not provided)
            encryption: Encryption service (optional, built from config if not provided)
            notifier: Notification sink (optional, logs only if not provided)
            config: Configuration instance (optional, will load if not provided)
            clock: Returns the current UTC time (defaults to utils.utc_now)
        """
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.ledger = ledger
        self.catalog = catalog
        self.gateway = gateway
        self.fraud_engine = fraud_engine or FraudDetectionEngine(self.config, clock=self.clock)
        self.encryption = encryption or TransactionEncryptionService(
            config=self.config, clock=self.clock
        )
        self.notifier = notifier or LoggingNotifier()
        self.refund_processor = RefundProcessor(gateway, clock=self.clock)
        logger.info("EscrowService initialized successfully")

    # ==================== ADMISSION ====================

    async def assess_risk(
        self,
        context: PaymentContext,
        history: UserHistory,
        recent_transactions: Optional[List[RecentTransaction]] = None
    ) -> FraudCheck:
        """
        Score a payment attempt and write the result to the audit log.

        Returns:
            FraudCheck produced by the risk scorer
        """
        check = await self.fraud_engine.assess(context, history, recent_transactions or [])
        await self.ledger.record_fraud_check(check)
        return check

    async def initiate_escrow(
        self,
        book_id: str,
        borrower_id: str,
        payment_method: Union[PaymentMethod, Dict[str, Any]],
        amounts: Dict[str, Any],
        payment_context: Optional[PaymentContext] = None,
        user_history: Optional[UserHistory] = None,
        recent_transactions: Optional[List[RecentTransaction]] = None
    ) -> Dict[str, Any]:
        """
        Open an escrow hold for a book rental.

        The listing's declared prices are authoritative; ``amounts`` must
        carry a ``total_amount`` that matches them within AMOUNT_EPSILON.

        Args:
            book_id: Book being rented
            borrower_id: Paying user
            payment_method: Payment method descriptor
            amounts: {'total_amount': ..., 'currency': optional}
            payment_context: Risk context of the attempt (built from the request if omitted)
            user_history: Borrower's rolling history for the risk scorer
            recent_transactions: Borrower's recent transactions, for velocity checks

        Returns:
            {'transactionId', 'status'} plus 'riskReview' or 'retryScheduled'
            when capture did not run or did not succeed

        Raises:
            ValidationError: Malformed input or unknown book
            AmountMismatchError: Total disagrees with the listing price
            SelfTransactionError: Borrower is the lender
            ConflictError: Book is not available or already in escrow
            FraudDetectionError: Risk verdict was decline
        """
        logger.info(f"Initiating escrow: book={book_id}, borrower={borrower_id}")

        if not book_id or not borrower_id:
            raise ValidationError("book_id and borrower_id are required")

        if isinstance(payment_method, dict):
            try:
                payment_method = PaymentMethod.model_validate(payment_method)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid payment method: {e.errors()[0]['msg']}")

        listing = await self.catalog.get_listing(book_id)
        if listing is None:
            raise ValidationError(f"Book not found: {book_id}")

        if listing.lender_id == borrower_id:
            raise SelfTransactionError("Lenders cannot rent their own books")

        if not listing.is_available:
            raise ConflictError(f"Book {book_id} is not available for rental")

        if amounts.get('total_amount') is None:
            raise ValidationError("amounts.total_amount is required")
        total_amount = to_money(amounts['total_amount'])
        if abs(total_amount - listing.total_price) > self.config.amount_epsilon:
            raise AmountMismatchError(
                f"Amount {total_amount} does not match the listing price {listing.total_price}"
            )

        currency = (amounts.get('currency') or self.config.currency).upper()
        if payment_context is not None:
            currency = payment_context.currency.upper()
        if currency != self.config.currency:
            raise ValidationError(
                f"Unsupported currency {currency}; only {self.config.currency} is accepted"
            )

        now = self.clock()
        transaction_id = generate_id('ESC', now)

        if payment_context is None:
            payment_context = PaymentContext(
                user_id=borrower_id,
                amount=listing.total_price,
                currency=currency,
                payment_method_id=payment_method.method_id,
                payment_method_type=payment_method.type,
                timestamp=now,
                transaction_id=transaction_id
            )
        else:
            # Only request signals come from the caller; payer, amount and method are pinned
            payment_context = payment_context.model_copy(update={
                'transaction_id': transaction_id,
                'user_id': borrower_id,
                'amount': listing.total_price,
                'payment_method_id': payment_method.method_id,
                'payment_method_type': payment_method.type,
            })

        fraud_check = await self.assess_risk(
            payment_context,
            user_history or UserHistory(user_id=borrower_id),
            recent_transactions
        )

        if fraud_check.recommendation == Recommendation.DECLINE:
            logger.warning(
                f"Escrow declined by risk check for borrower {borrower_id}: "
                f"score={fraud_check.risk_score:.2f}"
            )
            raise FraudDetectionError(
                "Payment declined by risk assessment", fraud_check=fraud_check
            )

        needs_review = fraud_check.recommendation == Recommendation.REVIEW

        try:
            envelope = self.encryption.encrypt_payment_method(
                payment_method.model_dump(mode='json'), transaction_id, borrower_id
            )

            transaction = EscrowTransaction(
                transaction_id=transaction_id,
                book_id=book_id,
                borrower_id=borrower_id,
                lender_id=listing.lender_id,
                total_amount=listing.total_price,
                rental_fee=listing.rental_fee,
                security_deposit=listing.security_deposit,
                currency=self.config.currency,
                payment_method_type=payment_method.type,
                encrypted_payment_method=envelope.model_dump_json(),
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(hours=self.config.escrow_window_hours),
                risk_score=fraud_check.risk_score,
                risk_level=fraud_check.risk_level,
                risk_review=needs_review
            )

            await self.ledger.create_transaction(transaction)
            await self.catalog.set_availability(book_id, False)
            logger.info(f"Escrow transaction created: {transaction_id}")

        except EscrowError:
            raise
        except Exception as e:
            logger.error(f"Failed to initiate escrow: {e}")
            raise

        if needs_review:
            await self.notifier.open_manual_review(
                transaction_id,
                f"Payment held for risk review (score {fraud_check.risk_score:.2f}, "
                f"{len(fraud_check.flags)} flags)"
            )
            return {
                'transactionId': transaction_id,
                'status': EscrowStatus.PENDING.value,
                'riskReview': True,
            }

        return await self._capture_and_apply(transaction, payment_method)

    async def approve_reviewed_payment(self, transaction_id: str, admin_id: str) -> Dict[str, Any]:
        """
        Release a risk-review hold and capture the payment.

        Raises:
            StateTransitionError: If the transaction is not awaiting review
            TransactionExpiredError: If the window closed during review
        """
        async with self.ledger.lock(transaction_id) as session:
            expired = await self._expire_if_due(session)
            if not expired:
                transaction = session.transaction
                if transaction.status != EscrowStatus.PENDING or not transaction.risk_review:
                    raise StateTransitionError(
                        "Transaction is not awaiting risk review", transaction_id
                    )
                transaction.risk_review = False
                transaction.updated_at = self.clock()
                transaction.append_note(f"Risk review approved by {admin_id}")
                await session.save_transaction(transaction)

        if expired:
            await self._after_expiry(session.transaction)
            raise TransactionExpiredError("Escrow window has closed", transaction_id)

        logger.info(f"Risk review approved for {transaction_id} by {admin_id}")
        payment_method = await self._open_payment_method(session.transaction)
        return await self._capture_and_apply(session.transaction, payment_method)

    async def retry_capture(self, transaction_id: str) -> EscrowTransaction:
        """
        Capture again for an entry whose earlier capture failed.

        Returns:
            The transaction, now ``paid``

        Raises:
            GatewayFailure: If the capture failed again (recorded on the entry)
            TransactionExpiredError: If the window has closed
            StateTransitionError: If the entry is no longer pending
        """
        transaction = await self._require_transaction(transaction_id)
        if transaction.is_expired(self.clock()):
            await self.expire_transaction(transaction_id)
            raise TransactionExpiredError("Escrow window has closed", transaction_id)
        if transaction.status != EscrowStatus.PENDING:
            raise StateTransitionError(
                f"Cannot capture payment in status {transaction.status.value}", transaction_id
            )

        payment_method = await self._open_payment_method(transaction)
        result = await self._capture(transaction, payment_method)
        return await self._apply_capture(transaction_id, result)

    async def fail_payment(self, transaction_id: str, reason: str) -> Optional[RefundRequest]:
        """
        Cancel a pending entry whose payment could not be captured.

        Opens a ``failure`` refund for the full amount. Returns None if the
        entry had already left ``pending``.
        """
        refund = None
        async with self.ledger.lock(transaction_id) as session:
            transaction = session.transaction
            if transaction.status == EscrowStatus.PENDING:
                now = self.clock()
                self._transition(transaction, EscrowStatus.CANCELLED)
                transaction.cancelled_at = now
                transaction.refund_reason = f"Payment failed: {reason}"
                transaction.append_note(f"Payment capture abandoned: {reason}")
                refund = RefundRequest(
                    refund_id=generate_id('REF', now),
                    transaction_id=transaction_id,
                    amount=transaction.total_amount,
                    reason=RefundReason.FAILURE,
                    description=f"Payment failure refund of "
                                f"{format_currency(transaction.total_amount, transaction.currency)}",
                    requested_by='system',
                    created_at=now
                )
                await session.save_refund(refund)
                await session.save_transaction(transaction)

        if refund is None:
            return None

        logger.warning(f"Payment failed permanently for {transaction_id}: {reason}")
        await self.catalog.set_availability(session.transaction.book_id, True)
        await self.notifier.notify_user(
            session.transaction.borrower_id,
            "Payment failed",
            f"We could not collect payment for rental {transaction_id}. The rental was cancelled."
        )
        return refund

    async def _capture(self, transaction: EscrowTransaction, payment_method: PaymentMethod) -> GatewayResult:
        try:
            return await self.gateway.capture(
                transaction.transaction_id, transaction.total_amount, payment_method
            )
        except GatewayFailure as e:
            async with self.ledger.lock(transaction.transaction_id) as session:
                flagged = session.transaction
                flagged.capture_failed = True
                flagged.capture_failure_reason = e.error_code
                flagged.capture_failed_at = self.clock()
                flagged.updated_at = flagged.capture_failed_at
                await session.save_transaction(flagged)
            logger.warning(f"Payment capture failed for {transaction.transaction_id}: {e.error_code}")
            raise

    async def _apply_capture(self, transaction_id: str, result: GatewayResult) -> EscrowTransaction:
        late_refunds: List[str] = []
        async with self.ledger.lock(transaction_id) as session:
            transaction = session.transaction
            transaction.payment_id = result.payment_id
            if transaction.status == EscrowStatus.PENDING:
                self._transition(transaction, EscrowStatus.PAID)
                transaction.capture_failed = False
                transaction.capture_failure_reason = None
            else:
                # Captured after the entry left pending (e.g. expired meanwhile):
                # open refunds now have a payment to return, otherwise open one
                transaction.append_note(f"Late capture {result.payment_id} refunded")
                late_refunds = [
                    r.refund_id for r in await session.list_refunds()
                    if r.status != RefundStatus.COMPLETED
                ]
                if not late_refunds:
                    refund = RefundRequest(
                        refund_id=generate_id('REF', self.clock()),
                        transaction_id=transaction_id,
                        amount=transaction.total_amount,
                        reason=RefundReason.SYSTEM_ERROR,
                        description="Refund of payment captured after cancellation",
                        requested_by='system',
                        created_at=self.clock()
                    )
                    await session.save_refund(refund)
                    late_refunds = [refund.refund_id]
            await session.save_transaction(transaction)

        if late_refunds:
            logger.warning(f"Capture for {transaction_id} landed in status {transaction.status.value}")
            for refund_id in late_refunds:
                await self.process_refund(refund_id)
            return session.transaction

        logger.info(f"Payment captured for {transaction_id}: {result.payment_id}")
        await self.notifier.notify_user(
            transaction.lender_id,
            "Rental paid",
            f"Payment for rental {transaction_id} is held in escrow. Hand the book over "
            f"and confirm 'lent'."
        )
        return session.transaction

    async def _capture_and_apply(
        self,
        transaction: EscrowTransaction,
        payment_method: PaymentMethod
    ) -> Dict[str, Any]:
        try:
            result = await self._capture(transaction, payment_method)
        except GatewayFailure:
            return {
                'transactionId': transaction.transaction_id,
                'status': EscrowStatus.PENDING.value,
                'retryScheduled': True,
            }
        updated = await self._apply_capture(transaction.transaction_id, result)
        return {'transactionId': updated.transaction_id, 'status': updated.status.value}

    # ==================== CONFIRMATIONS ====================

    async def confirm_action(
        self,
        transaction_id: str,
        actor_id: str,
        action: Union[ConfirmationAction, str],
        ip_address: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        photo_url: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a party's confirmation of an exchange step.

        Both confirmations of the lending leg move the transaction to
        ``confirmed`` and release the rental fee; ``received`` after
        ``returned`` completes it and releases the deposit.

        Returns:
            {'transactionId', 'status', 'lenderConfirmed', 'borrowerConfirmed'}

        Raises:
            TransactionNotFoundError: Unknown transaction
            ForbiddenActionError: Actor is not the party the action belongs to
            AlreadyConfirmedError: The same party already recorded this action
            StateTransitionError: Action not allowed in the current status
            TransactionExpiredError: The escrow window has closed
        """
        try:
            action = ConfirmationAction(action)
        except ValueError:
            raise ValidationError(f"Unknown confirmation action: {action}", transaction_id)

        logger.info(f"Confirmation '{action.value}' on {transaction_id} by {actor_id}")
        became = None

        async with self.ledger.lock(transaction_id) as session:
            transaction = session.transaction

            role = transaction.party_role(actor_id)
            if role is None:
                raise ForbiddenActionError(
                    "Only the lender or the borrower can confirm exchange steps", transaction_id
                )
            if action.role != role:
                raise ForbiddenActionError(
                    f"'{action.value}' can only be confirmed by the {action.role.value}",
                    transaction_id
                )

            expired = await self._expire_if_due(session)
            if not expired:
                became = await self._record_confirmation(
                    session, role, action, actor_id,
                    ip_address, device_fingerprint, photo_url, notes
                )

        transaction = session.transaction
        if expired:
            await self._after_expiry(transaction)
            raise TransactionExpiredError("Escrow window has closed", transaction_id)

        if became == EscrowStatus.CONFIRMED:
            await self._notify_parties(
                transaction, "Exchange confirmed",
                f"Both parties confirmed rental {transaction_id}. The rental fee was released "
                f"to the lender."
            )
        elif became == EscrowStatus.COMPLETED:
            await self.catalog.set_availability(transaction.book_id, True)
            await self._notify_parties(
                transaction, "Rental completed",
                f"Rental {transaction_id} is complete. The security deposit was returned "
                f"to the borrower."
            )

        return {
            'transactionId': transaction_id,
            'status': transaction.status.value,
            'lenderConfirmed': transaction.lender_confirmed,
            'borrowerConfirmed': transaction.borrower_confirmed,
        }

    async def _record_confirmation(
        self,
        session: LedgerSession,
        role: PartyRole,
        action: ConfirmationAction,
        actor_id: str,
        ip_address: Optional[str],
        device_fingerprint: Optional[str],
        photo_url: Optional[str],
        notes: Optional[str]
    ) -> Optional[EscrowStatus]:
        """Append the event and apply its consequences; returns a newly entered status."""
        transaction = session.transaction
        events = await session.list_confirmations()
        recorded = {(e.role, e.action) for e in events}

        if (role, action) in recorded:
            raise AlreadyConfirmedError(
                f"{role.value} already confirmed '{action.value}'", transaction.transaction_id
            )

        required_status = self.ACTION_STATUS[action]
        if transaction.status != required_status:
            raise StateTransitionError(
                f"'{action.value}' requires status {required_status.value}, "
                f"transaction is {transaction.status.value}",
                transaction.transaction_id
            )

        if action == ConfirmationAction.RECEIVED and \
                (PartyRole.BORROWER, ConfirmationAction.RETURNED) not in recorded:
            raise StateTransitionError(
                "The borrower has not confirmed returning the book", transaction.transaction_id
            )

        now = self.clock()
        await session.add_confirmation(ConfirmationEvent(
            event_id=generate_id('CONF', now),
            transaction_id=transaction.transaction_id,
            actor_id=actor_id,
            role=role,
            action=action,
            created_at=now,
            ip_address=ip_address,
            device_fingerprint=device_fingerprint,
            photo_url=photo_url,
            notes=sanitize_input(notes) or None
        ))

        flags = project_confirmation_flags(await session.list_confirmations())
        transaction.lender_confirmed = flags['lender_confirmed']
        transaction.borrower_confirmed = flags['borrower_confirmed']
        transaction.updated_at = now

        became = None
        both = transaction.lender_confirmed and transaction.borrower_confirmed

        if transaction.status == EscrowStatus.PAID and both and transaction.confirmed_at is None:
            self._transition(transaction, EscrowStatus.CONFIRMED)
            transaction.confirmed_at = now
            await self._release_on_confirmation(transaction)
            became = EscrowStatus.CONFIRMED
            logger.info(f"Transaction {transaction.transaction_id} confirmed by both parties")

        elif transaction.status == EscrowStatus.CONFIRMED and both \
                and action == ConfirmationAction.RECEIVED:
            self._transition(transaction, EscrowStatus.COMPLETED)
            transaction.completed_at = now
            await self._release_earmarked(transaction)
            became = EscrowStatus.COMPLETED
            logger.info(f"Transaction {transaction.transaction_id} completed")

        await session.save_transaction(transaction)
        return became

    # ==================== RELEASES ====================

    async def _pay_out(
        self,
        transaction: EscrowTransaction,
        role: PartyRole,
        amount,
        release_type: ReleaseType
    ) -> FundRelease:
        now = self.clock()
        recipient_id = transaction.lender_id if role == PartyRole.LENDER else transaction.borrower_id
        release = FundRelease(
            recipient_role=role,
            recipient_id=recipient_id,
            amount=amount,
            release_type=release_type,
            status=ReleaseStatus.RELEASED,
            created_at=now
        )
        try:
            release.reference = await self.gateway.release(
                transaction.payment_id, recipient_id, amount, release_type
            )
            release.processed_at = now
        except GatewayFailure as e:
            release.status = ReleaseStatus.FAILED
            logger.error(
                f"Release of {amount} to {role.value} failed for {transaction.transaction_id}: {e}"
            )
            await self.notifier.notify_admins(
                "Fund release failed",
                f"Release of {format_currency(amount, transaction.currency)} to the "
                f"{role.value} failed: {e}",
                transaction.transaction_id
            )
        return release

    async def _release_on_confirmation(self, transaction: EscrowTransaction) -> None:
        if transaction.rental_fee > 0:
            transaction.releases.append(await self._pay_out(
                transaction, PartyRole.LENDER, transaction.rental_fee, ReleaseType.COMPLETE
            ))
        if transaction.security_deposit > 0:
            transaction.releases.append(FundRelease(
                recipient_role=PartyRole.BORROWER,
                recipient_id=transaction.borrower_id,
                amount=transaction.security_deposit,
                release_type=ReleaseType.REFUND,
                status=ReleaseStatus.EARMARKED,
                created_at=self.clock()
            ))

    async def _release_earmarked(self, transaction: EscrowTransaction) -> None:
        kept = []
        for release in transaction.releases:
            if release.status == ReleaseStatus.EARMARKED:
                release = await self._pay_out(
                    transaction, release.recipient_role, release.amount, release.release_type
                )
            kept.append(release)
        transaction.releases = kept

    async def release_funds(
        self,
        transaction_id: str,
        release_type: Union[ReleaseType, str],
        split_amounts: Optional[Dict[str, Any]] = None,
        performed_by: str = 'system'
    ) -> Dict[str, Any]:
        """
        Settle a held payment explicitly (admin or system).

        Args:
            transaction_id: Transaction identifier
            release_type: 'complete', 'refund' or 'partial'
            split_amounts: {'to_lender': ..., 'to_borrower': ...} for 'partial'
            performed_by: Who triggered the release, for the notes

        Returns:
            {'transactionId', 'status', 'releases': [...]} with the payouts just made

        Raises:
            ValidationError: Bad release type or split
            StateTransitionError: Not in paid or confirmed
        """
        try:
            release_type = ReleaseType(release_type)
        except ValueError:
            raise ValidationError(f"Unknown release type: {release_type}", transaction_id)

        logger.info(f"Releasing funds for {transaction_id}: {release_type.value} by {performed_by}")
        new_releases: List[FundRelease] = []

        try:
            async with self.ledger.lock(transaction_id) as session:
                expired = await self._expire_if_due(session)
                if not expired:
                    transaction = session.transaction
                    if transaction.status not in (EscrowStatus.PAID, EscrowStatus.CONFIRMED):
                        raise StateTransitionError(
                            f"Cannot release funds in status {transaction.status.value}",
                            transaction_id
                        )

                    plan = plan_releases(transaction, release_type, split_amounts)
                    target = (
                        EscrowStatus.REFUNDED if release_type == ReleaseType.REFUND
                        else EscrowStatus.COMPLETED
                    )
                    self._transition(transaction, target)

                    transaction.releases = [
                        r for r in transaction.releases if r.status != ReleaseStatus.EARMARKED
                    ]
                    for role, amount in plan:
                        release = await self._pay_out(transaction, role, amount, release_type)
                        transaction.releases.append(release)
                        new_releases.append(release)

                    now = self.clock()
                    if target == EscrowStatus.REFUNDED:
                        transaction.refunded_at = now
                        transaction.refund_reason = f"Released as refund by {performed_by}"
                    else:
                        transaction.completed_at = now
                    transaction.append_note(
                        f"Funds released ({release_type.value}) by {performed_by}"
                    )
                    await session.save_transaction(transaction)

        except EscrowError:
            raise
        except Exception as e:
            logger.error(f"Failed to release funds for {transaction_id}: {e}")
            raise

        transaction = session.transaction
        if expired:
            await self._after_expiry(transaction)
            raise TransactionExpiredError("Escrow window has closed", transaction_id)

        await self.catalog.set_availability(transaction.book_id, True)
        await self._notify_parties(
            transaction, "Funds released",
            f"Funds for rental {transaction_id} were released ({release_type.value})."
        )

        return {
            'transactionId': transaction_id,
            'status': transaction.status.value,
            'releases': [r.model_dump(mode='json') for r in new_releases],
        }

    # ==================== REFUNDS ====================

    async def request_refund(
        self,
        transaction_id: str,
        reason: Union[RefundReason, str],
        partial_amount=None,
        refund_mode: Union[RefundMode, str] = RefundMode.FULL,
        requested_by: Optional[str] = None
    ) -> RefundRequest:
        """
        Refund an active transaction to the borrower.

        The amount is ``partial_amount`` when given, otherwise the
        ``refund_mode`` computation over the stored amounts. It may not
        exceed what has not already been released to the lender.

        Returns:
            The RefundRequest, already sent to the gateway (status
            ``completed``, or ``failed`` to be retried by the scheduler)

        Raises:
            ValidationError: Bad reason, mode or amount
            StateTransitionError: Transaction is not active
            TransactionExpiredError: The escrow window has closed
        """
        try:
            reason = RefundReason(reason)
            refund_mode = RefundMode(refund_mode)
        except ValueError as e:
            raise ValidationError(str(e), transaction_id)

        logger.info(f"Refund requested for {transaction_id}: reason={reason.value}")
        refund = None

        async with self.ledger.lock(transaction_id) as session:
            expired = await self._expire_if_due(session)
            if not expired:
                transaction = session.transaction
                if not transaction.is_active:
                    raise StateTransitionError(
                        f"Cannot refund a {transaction.status.value} transaction", transaction_id
                    )

                if partial_amount is not None:
                    amount = to_money(partial_amount)
                    description = describe_refund(None, amount, transaction.currency)
                else:
                    amount = calculate_refund_amount(
                        transaction, refund_mode,
                        self.config.damage_deduction_cap,
                        self.config.platform_fee_refund_share
                    )
                    description = describe_refund(refund_mode, amount, transaction.currency)

                refundable = transaction.total_amount - transaction.released_to_lender
                if amount <= 0 or amount > refundable:
                    raise ValidationError(
                        f"Refund amount {amount} must be positive and at most {refundable}",
                        transaction_id
                    )

                now = self.clock()
                self._transition(transaction, EscrowStatus.REFUNDED)
                transaction.refunded_at = now
                transaction.refund_reason = reason.value
                transaction.notes = f"{transaction.notes}\nRefund processed: {description}"
                transaction.releases = [
                    r for r in transaction.releases if r.status != ReleaseStatus.EARMARKED
                ]

                refund = RefundRequest(
                    refund_id=generate_id('REF', now),
                    transaction_id=transaction_id,
                    amount=amount,
                    reason=reason,
                    mode=refund_mode if partial_amount is None else None,
                    description=description,
                    requested_by=requested_by,
                    created_at=now
                )
                refund = await self.refund_processor.process(refund, transaction)
                await session.save_refund(refund)
                await session.save_transaction(transaction)

        transaction = session.transaction
        if expired:
            await self._after_expiry(transaction)
            raise TransactionExpiredError("Escrow window has closed", transaction_id)

        await self.catalog.set_availability(transaction.book_id, True)
        await self.notifier.notify_user(
            transaction.borrower_id, "Refund processed", f"Rental {transaction_id}: {refund.description}"
        )
        return refund

    async def process_refund(self, refund_id: str) -> RefundRequest:
        """
        Execute (or re-execute) a stored refund request.

        Raises:
            ValidationError: If the refund id is unknown
        """
        stored = await self.ledger.get_refund(refund_id)
        if stored is None:
            raise ValidationError(f"Refund not found: {refund_id}")

        async with self.ledger.lock(stored.transaction_id) as session:
            current = next(
                (r for r in await session.list_refunds() if r.refund_id == refund_id), stored
            )
            processed = await self.refund_processor.process(current, session.transaction)
            if processed is not current:
                await session.save_refund(processed)
        return processed

    # ==================== EXPIRY ====================

    async def _expire_if_due(self, session: LedgerSession) -> bool:
        """Apply the expiry transition inside an open lock; True if it fired."""
        transaction = session.transaction
        now = self.clock()
        if not transaction.is_expired(now):
            return False

        self._transition(transaction, EscrowStatus.CANCELLED)
        transaction.cancelled_at = now
        transaction.refund_reason = EXPIRY_REASON
        transaction.append_note(f"Expired at {transaction.expires_at.isoformat()}")
        transaction.releases = [
            r for r in transaction.releases if r.status != ReleaseStatus.EARMARKED
        ]
        await session.save_transaction(transaction)

        await session.save_refund(RefundRequest(
            refund_id=generate_id('REF', now),
            transaction_id=transaction.transaction_id,
            amount=transaction.total_amount,
            reason=RefundReason.TIMEOUT,
            description=f"Timeout refund of "
                        f"{format_currency(transaction.total_amount, transaction.currency)}",
            requested_by='system',
            created_at=now
        ))

        timeout = await session.get_timeout()
        if timeout is None:
            timeout = PaymentTimeout(
                transaction_id=transaction.transaction_id,
                max_retries=0,
                created_at=now
            )
        timeout.status = TimeoutStatus.TIMEOUT
        timeout.timed_out_at = now
        timeout.next_attempt_at = None
        timeout.failure_reason = timeout.failure_reason or 'expired'
        timeout.updated_at = now
        await session.save_timeout(timeout)

        logger.warning(f"Transaction {transaction.transaction_id} expired and was cancelled")
        return True

    async def _after_expiry(self, transaction: EscrowTransaction) -> None:
        await self.catalog.set_availability(transaction.book_id, True)
        await self._notify_parties(
            transaction, "Rental expired",
            f"Rental {transaction.transaction_id} was not confirmed in time and has been "
            f"cancelled. Any payment will be refunded."
        )

    async def expire_transaction(self, transaction_id: str) -> bool:
        """
        Expire one transaction if its deadline has passed.

        Returns:
            True if this call performed the transition
        """
        async with self.ledger.lock(transaction_id) as session:
            expired = await self._expire_if_due(session)
        if expired:
            await self._after_expiry(session.transaction)
        return expired

    async def run_timeout_sweep(self) -> Dict[str, Any]:
        """
        Cancel every pending/paid transaction past its deadline.

        Each candidate is re-checked under its lock, so a transaction is
        transitioned by exactly one sweep.

        Returns:
            {'processedCount': int, 'results': [{'transactionId', 'success', 'error'?}]}
        """
        now = self.clock()
        candidates = await self.ledger.find_expired(now)
        results = []

        for transaction in candidates:
            try:
                if await self.expire_transaction(transaction.transaction_id):
                    results.append({'transactionId': transaction.transaction_id, 'success': True})
            except Exception as e:
                logger.error(
                    f"Failed to expire {transaction.transaction_id}: {e}", exc_info=True
                )
                results.append({
                    'transactionId': transaction.transaction_id,
                    'success': False,
                    'error': str(e),
                })

        processed = sum(1 for r in results if r['success'])
        if candidates:
            logger.info(f"Timeout sweep: {processed} of {len(candidates)} candidates cancelled")
        return {'processedCount': processed, 'results': results}

    # ==================== PAYMENT METHOD ====================

    async def get_payment_method_details(
        self,
        transaction_id: str,
        actor_id: str,
        is_admin: bool = False
    ) -> Optional[Dict[str, Any]]:
        """
        Decrypt the stored payment method for a party or an admin.

        Raises:
            ForbiddenActionError: Actor is neither a party nor an admin
            IntegrityFailure / ExpiredPayloadError: The envelope failed
                verification; the transaction is flagged for review first
        """
        transaction = await self._require_transaction(transaction_id)
        if not is_admin and transaction.party_role(actor_id) is None:
            raise ForbiddenActionError(
                "Not allowed to view this payment method", transaction_id
            )
        if not transaction.encrypted_payment_method:
            return None

        logger.info(f"Payment method of {transaction_id} accessed by {actor_id}")
        payment_method = await self._open_payment_method(transaction)
        return payment_method.model_dump()

    async def _open_payment_method(self, transaction: EscrowTransaction) -> PaymentMethod:
        try:
            envelope = SecureEnvelope.model_validate_json(transaction.encrypted_payment_method or '')
        except PydanticValidationError as e:
            await self._flag_for_review(transaction.transaction_id, f"Unreadable payment envelope: {e}")
            raise IntegrityFailure("Stored payment method is unreadable", transaction.transaction_id)

        try:
            data = self.encryption.decrypt_payment_method(
                envelope, transaction.transaction_id, transaction.borrower_id
            )
        except (IntegrityFailure, ExpiredPayloadError) as e:
            await self._flag_for_review(transaction.transaction_id, f"{e.code}: {e.message}")
            raise

        return PaymentMethod.model_validate(data)

    async def _flag_for_review(self, transaction_id: str, reason: str) -> None:
        async with self.ledger.lock(transaction_id) as session:
            transaction = session.transaction
            transaction.flagged_for_review = True
            transaction.flag_reason = reason
            transaction.updated_at = self.clock()
            await session.save_transaction(transaction)
        logger.warning(f"Transaction {transaction_id} flagged for review: {reason}")
        await self.notifier.open_manual_review(transaction_id, reason)

    # ==================== QUERIES ====================

    async def _require_transaction(self, transaction_id: str) -> EscrowTransaction:
        transaction = await self.ledger.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_id}", transaction_id)
        return transaction

    async def get_transaction(self, transaction_id: str) -> EscrowTransaction:
        """Fetch a transaction, expiring it first if its deadline has passed."""
        transaction = await self._require_transaction(transaction_id)
        if transaction.is_expired(self.clock()):
            await self.expire_transaction(transaction_id)
            transaction = await self._require_transaction(transaction_id)
        return transaction

    async def get_confirmations(self, transaction_id: str) -> List[ConfirmationEvent]:
        await self._require_transaction(transaction_id)
        return await self.ledger.list_confirmations(transaction_id)

    async def get_refund_requests(self, transaction_id: str) -> List[RefundRequest]:
        await self._require_transaction(transaction_id)
        return await self.ledger.list_refunds(transaction_id)

    # ==================== HELPERS ====================

    def _transition(self, transaction: EscrowTransaction, to_status: EscrowStatus) -> None:
        EscrowStateValidator.validate(transaction, to_status)
        logger.debug(
            f"{transaction.transaction_id}: {transaction.status.value} -> {to_status.value}"
        )
        transaction.status = to_status
        transaction.updated_at = self.clock()

    async def _notify_parties(self, transaction: EscrowTransaction, subject: str, message: str) -> None:
        await self.notifier.notify_user(transaction.lender_id, subject, message)
        await self.notifier.notify_user(transaction.borrower_id, subject, message)


# Singleton instance management
_escrow_service_instance: Optional[EscrowService] = None


def get_escrow_service(
    ledger: Optional[EscrowLedger] = None,
    catalog: Optional[BookCatalog] = None,
    gateway: Optional[PaymentGateway] = None,
    **kwargs
) -> EscrowService:
    """
    Get or create the escrow service singleton instance.

    The first call must provide the ledger, catalog and gateway; later
    calls return the same instance.

    Raises:
        RuntimeError: If the service has not been built yet and collaborators are missing
    """
    global _escrow_service_instance

    if _escrow_service_instance is None:
        if ledger is None or catalog is None or gateway is None:
            raise RuntimeError("EscrowService not initialized: ledger, catalog and gateway required")
        _escrow_service_instance = EscrowService(ledger, catalog, gateway, **kwargs)

    return _escrow_service_instance
