"""
Data models for the book rental escrow core.

Every record the ledger persists or the risk scorer consumes is a
pydantic model; states and categorical fields are ``str`` enums so they
serialize as their plain values.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from utils import CENTS, to_money


class EscrowStatus(str, Enum):
    """Enumeration of possible escrow transaction states."""
    PENDING = "pending"          # Created, payment not captured yet
    PAID = "paid"                # Payment captured, held in escrow
    CONFIRMED = "confirmed"      # Both parties confirmed the hand-over
    COMPLETED = "completed"      # Book returned, all funds released
    CANCELLED = "cancelled"      # Expired or payment failed
    REFUNDED = "refunded"        # Funds returned to borrower


ACTIVE_STATUSES = (EscrowStatus.PENDING, EscrowStatus.PAID, EscrowStatus.CONFIRMED)
EXPIRABLE_STATUSES = (EscrowStatus.PENDING, EscrowStatus.PAID)


class PartyRole(str, Enum):
    LENDER = "lender"
    BORROWER = "borrower"
    ADMIN = "admin"


class ConfirmationAction(str, Enum):
    """Exchange steps a party can acknowledge."""
    LENT = "lent"                # Lender handed the book over
    BORROWED = "borrowed"        # Borrower received the book
    RETURNED = "returned"        # Borrower handed the book back
    RECEIVED = "received"        # Lender got the book back

    @property
    def role(self) -> PartyRole:
        if self in (ConfirmationAction.LENT, ConfirmationAction.RECEIVED):
            return PartyRole.LENDER
        return PartyRole.BORROWER


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Recommendation(str, Enum):
    APPROVE = "approve"
    REVIEW = "review"
    DECLINE = "decline"


class FlagSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> float:
        return SEVERITY_WEIGHTS[self]


SEVERITY_WEIGHTS = {
    FlagSeverity.LOW: 0.1,
    FlagSeverity.MEDIUM: 0.3,
    FlagSeverity.HIGH: 0.6,
    FlagSeverity.CRITICAL: 1.0,
}


class FlagType(str, Enum):
    VELOCITY = "velocity"
    AMOUNT = "amount"
    LOCATION = "location"
    DEVICE = "device"
    BEHAVIOR = "behavior"
    BLACKLIST = "blacklist"


class TimeoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    TIMEOUT = "timeout"
    RETRY = "retry"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EscalationLevel(str, Enum):
    NONE = "none"
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    ADMIN = "admin"


ESCALATION_ORDER = [
    EscalationLevel.NONE,
    EscalationLevel.AUTOMATIC,
    EscalationLevel.MANUAL,
    EscalationLevel.ADMIN,
]


class RetryStrategyType(str, Enum):
    IMMEDIATE = "immediate"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    ALTERNATIVE_METHOD = "alternative_method"
    MANUAL_REVIEW = "manual_review"
    REFUND = "refund"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundReason(str, Enum):
    TIMEOUT = "timeout"
    FAILURE = "failure"
    CANCELLATION = "cancellation"
    DISPUTE = "dispute"
    SYSTEM_ERROR = "system_error"
    REQUESTED = "requested"


class RefundMode(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    SECURITY_ONLY = "security_only"
    DAMAGE_DEDUCTION = "damage_deduction"


class ReleaseType(str, Enum):
    COMPLETE = "complete"
    REFUND = "refund"
    PARTIAL = "partial"


class ReleaseStatus(str, Enum):
    EARMARKED = "earmarked"
    RELEASED = "released"
    FAILED = "failed"


# ==================== ESCROW LEDGER ====================

class PaymentMethod(BaseModel):
    """Payment method descriptor as supplied by the borrower."""
    method_id: str
    type: str = "credit_card"
    details: Dict[str, Any] = Field(default_factory=dict)


class FundRelease(BaseModel):
    """A payout (or earmark) of part of the escrowed total."""
    recipient_role: PartyRole
    recipient_id: str
    amount: Decimal
    release_type: ReleaseType
    status: ReleaseStatus
    reference: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class EscrowTransaction(BaseModel):
    """One rental hold. ``version`` increases on every ledger write."""
    transaction_id: str
    book_id: str
    borrower_id: str
    lender_id: str

    total_amount: Decimal
    rental_fee: Decimal
    security_deposit: Decimal
    currency: str = "USD"

    status: EscrowStatus = EscrowStatus.PENDING
    lender_confirmed: bool = False
    borrower_confirmed: bool = False

    payment_method_type: str = "credit_card"
    payment_id: Optional[str] = None
    encrypted_payment_method: Optional[str] = None

    created_at: datetime
    updated_at: Optional[datetime] = None
    expires_at: datetime
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    refund_reason: Optional[str] = None
    notes: str = ""
    releases: List[FundRelease] = Field(default_factory=list)

    risk_score: Optional[float] = None
    risk_level: Optional[RiskLevel] = None
    risk_review: bool = False

    capture_failed: bool = False
    capture_failure_reason: Optional[str] = None
    capture_failed_at: Optional[datetime] = None

    flagged_for_review: bool = False
    flag_reason: Optional[str] = None
    expiry_warning_sent: bool = False
    version: int = 0

    @field_validator('total_amount', 'rental_fee', 'security_deposit')
    @classmethod
    def _round_amounts(cls, value: Decimal) -> Decimal:
        return to_money(value)

    @model_validator(mode='after')
    def _check_amounts(self) -> 'EscrowTransaction':
        if self.rental_fee < 0 or self.security_deposit < 0:
            raise ValueError("rental_fee and security_deposit must not be negative")
        if self.total_amount <= 0:
            raise ValueError("total_amount must be positive")
        if self.rental_fee + self.security_deposit != self.total_amount:
            raise ValueError("total_amount must equal rental_fee + security_deposit")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def platform_fee(self) -> Decimal:
        return self.total_amount - self.rental_fee - self.security_deposit

    @property
    def released_to_lender(self) -> Decimal:
        return sum(
            (r.amount for r in self.releases
             if r.recipient_role == PartyRole.LENDER and r.status == ReleaseStatus.RELEASED),
            Decimal('0.00'),
        )

    @property
    def paid_out(self) -> Decimal:
        """Everything already sent to either party."""
        return sum(
            (r.amount for r in self.releases if r.status == ReleaseStatus.RELEASED),
            Decimal('0.00'),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.status in EXPIRABLE_STATUSES and now >= self.expires_at

    def party_role(self, actor_id: str) -> Optional[PartyRole]:
        if actor_id == self.lender_id:
            return PartyRole.LENDER
        if actor_id == self.borrower_id:
            return PartyRole.BORROWER
        return None

    def append_note(self, text: str) -> None:
        self.notes = f"{self.notes}\n{text}" if self.notes else text


class ConfirmationEvent(BaseModel):
    """Append-only record of a single party acknowledgement."""
    event_id: str
    transaction_id: str
    actor_id: str
    role: PartyRole
    action: ConfirmationAction
    created_at: datetime
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    photo_url: Optional[str] = None
    notes: Optional[str] = None


# ==================== RISK SCORING ====================

class PaymentContext(BaseModel):
    user_id: str
    amount: Decimal
    currency: str = "USD"
    payment_method_id: str
    payment_method_type: Optional[str] = None
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    timestamp: datetime
    transaction_id: Optional[str] = None

    @property
    def location(self) -> Optional[str]:
        if not self.country:
            return None
        return f"{self.country}-{self.region or ''}"


class UserHistory(BaseModel):
    user_id: str
    total_transactions: int = 0
    average_amount: Decimal = Decimal('0')
    common_locations: List[str] = Field(default_factory=list)
    known_devices: List[str] = Field(default_factory=list)
    unusual_hours: List[int] = Field(default_factory=list)
    account_age_days: float = 0.0
    suspicious_activity_count: int = 0


class RecentTransaction(BaseModel):
    transaction_id: Optional[str] = None
    amount: Decimal
    timestamp: datetime


class FraudFlag(BaseModel):
    type: FlagType
    severity: FlagSeverity
    description: str


class FraudCheck(BaseModel):
    transaction_id: Optional[str] = None
    user_id: str
    risk_score: float
    risk_level: RiskLevel
    flags: List[FraudFlag] = Field(default_factory=list)
    recommendation: Recommendation
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


# ==================== TIMEOUT & RECOVERY ====================

class EscalationRecord(BaseModel):
    level: EscalationLevel
    fired_at: datetime
    action: str


class PaymentTimeout(BaseModel):
    """Recovery bookkeeping for one stuck or expired transaction."""
    transaction_id: str
    status: TimeoutStatus = TimeoutStatus.PENDING
    retry_strategy: RetryStrategyType = RetryStrategyType.EXPONENTIAL
    max_retries: int = 3
    current_retry: int = 0
    escalation_level: EscalationLevel = EscalationLevel.NONE
    escalation_history: List[EscalationRecord] = Field(default_factory=list)
    recovery_action: Optional[RecoveryAction] = None
    failure_reason: Optional[str] = None
    last_attempt: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    timed_out_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def retries_exhausted(self) -> bool:
        return self.current_retry >= self.max_retries

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class RefundRequest(BaseModel):
    refund_id: str
    transaction_id: str
    amount: Decimal
    reason: RefundReason
    status: RefundStatus = RefundStatus.PENDING
    mode: Optional[RefundMode] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    requested_by: Optional[str] = None
    attempts: int = 0
    error_message: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    @field_validator('amount')
    @classmethod
    def _positive_amount(cls, value: Decimal) -> Decimal:
        value = to_money(value)
        if value < CENTS:
            raise ValueError("refund amount must be positive")
        return value
