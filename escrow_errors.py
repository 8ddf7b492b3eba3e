"""
Exception hierarchy for the escrow core.

Every error carries a stable ``code`` the web layer maps onto a response
and a ``retryable`` hint. Business-rule errors are raised before any
ledger mutation.
"""

from typing import Optional


class EscrowError(Exception):
    """Base exception for escrow-related errors."""
    code = 'escrow_error'
    retryable = False

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id

    def to_dict(self) -> dict:
        return {
            'error': self.code,
            'message': self.message,
            'transaction_id': self.transaction_id,
            'retryable': self.retryable,
        }


class ValidationError(EscrowError):
    """Raised when input validation fails."""
    code = 'validation'


class AmountMismatchError(ValidationError):
    """Raised when the caller's total disagrees with the listing price."""
    code = 'amount_mismatch'


class SelfTransactionError(ValidationError):
    """Raised when a lender tries to rent their own book."""
    code = 'self_transaction'


class TransactionNotFoundError(EscrowError):
    """Raised when a transaction id is unknown."""
    code = 'not_found'


class ForbiddenActionError(EscrowError):
    """Raised when the actor may not perform the requested action."""
    code = 'forbidden'


class ConflictError(EscrowError):
    """Raised when the request collides with existing state."""
    code = 'conflict'


class ActiveTransactionExistsError(ConflictError):
    """Raised when the book already has an active escrow."""
    code = 'active_transaction_exists'


class AlreadyConfirmedError(ConflictError):
    """Raised for a duplicate (transaction, role, action) confirmation."""
    code = 'already_confirmed'


class StateTransitionError(EscrowError):
    """Raised when an invalid state transition is attempted."""
    code = 'invalid_state'


class TransactionExpiredError(StateTransitionError):
    """Raised when the escrow window closed before the requested transition."""
    code = 'expired_transaction'


class FraudDetectionError(EscrowError):
    """Raised when the risk verdict for a payment attempt is decline."""
    code = 'risk_declined'

    def __init__(self, message: str, fraud_check=None):
        super().__init__(message)
        self.fraud_check = fraud_check


class GatewayFailure(EscrowError):
    """Raised when the payment gateway rejects or fails a call."""
    code = 'gateway_failure'
    retryable = True

    def __init__(self, message: str, error_code: str = 'gateway_error',
                 transaction_id: Optional[str] = None):
        super().__init__(message, transaction_id)
        self.error_code = error_code


class IntegrityFailure(EscrowError):
    """Raised when an encrypted payload fails signature, tag or hash checks."""
    code = 'integrity_failure'


class ExpiredPayloadError(EscrowError):
    """Raised when an encrypted payload is past its expiry."""
    code = 'expired'
