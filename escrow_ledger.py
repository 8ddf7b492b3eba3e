"""
Escrow Ledger ports and the in-memory ledger.

The ledger is the single source of truth for escrow transactions, the
append-only confirmation log, refund requests, timeout records and the
fraud-check audit trail. Writes that must be linearized per transaction
go through ``lock()``, which yields a ``LedgerSession``: everything
written through the session becomes visible together when the block
exits cleanly and is discarded if it raises.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from escrow_errors import (
    ActiveTransactionExistsError,
    AlreadyConfirmedError,
    TransactionNotFoundError,
)
from escrow_models import (
    EXPIRABLE_STATUSES,
    ConfirmationEvent,
    EscrowStatus,
    EscrowTransaction,
    FraudCheck,
    PaymentTimeout,
    RefundRequest,
    RefundStatus,
)

logger = logging.getLogger(__name__)


class LedgerSession(ABC):
    """Unit of work over one locked transaction."""

    transaction: EscrowTransaction

    @abstractmethod
    async def save_transaction(self, transaction: EscrowTransaction) -> None:
        ...

    @abstractmethod
    async def list_confirmations(self) -> List[ConfirmationEvent]:
        ...

    @abstractmethod
    async def add_confirmation(self, event: ConfirmationEvent) -> None:
        """Append an event; raises AlreadyConfirmedError on a duplicate tuple."""

    @abstractmethod
    async def list_refunds(self) -> List[RefundRequest]:
        ...

    @abstractmethod
    async def save_refund(self, refund: RefundRequest) -> None:
        ...

    @abstractmethod
    async def get_timeout(self) -> Optional[PaymentTimeout]:
        ...

    @abstractmethod
    async def save_timeout(self, timeout: PaymentTimeout) -> None:
        ...


class EscrowLedger(ABC):
    """Persistence port for the escrow core."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare storage (tables, indexes)."""

    @abstractmethod
    async def create_transaction(self, transaction: EscrowTransaction) -> EscrowTransaction:
        """Insert a new transaction; raises ActiveTransactionExistsError for a busy book."""

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[EscrowTransaction]:
        ...

    @abstractmethod
    def lock(self, transaction_id: str):
        """Async context manager yielding a LedgerSession; raises TransactionNotFoundError."""

    @abstractmethod
    async def list_confirmations(self, transaction_id: str) -> List[ConfirmationEvent]:
        ...

    @abstractmethod
    async def find_expired(self, now: datetime) -> List[EscrowTransaction]:
        """Pending/paid transactions whose expires_at has passed."""

    @abstractmethod
    async def find_expiring(self, now: datetime, until: datetime) -> List[EscrowTransaction]:
        """Pending/paid transactions expiring in (now, until] without a warning sent."""

    @abstractmethod
    async def find_capture_failures(self) -> List[EscrowTransaction]:
        """Pending transactions flagged with a capture failure."""

    @abstractmethod
    async def get_refund(self, refund_id: str) -> Optional[RefundRequest]:
        ...

    @abstractmethod
    async def list_refunds(self, transaction_id: str) -> List[RefundRequest]:
        ...

    @abstractmethod
    async def find_refunds(self, status: RefundStatus) -> List[RefundRequest]:
        ...

    @abstractmethod
    async def get_timeout(self, transaction_id: str) -> Optional[PaymentTimeout]:
        ...

    @abstractmethod
    async def list_unresolved_timeouts(self) -> List[PaymentTimeout]:
        ...

    @abstractmethod
    async def delete_resolved_timeouts(self, resolved_before: datetime) -> int:
        ...

    @abstractmethod
    async def record_fraud_check(self, check: FraudCheck) -> None:
        ...

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        ...


# ==================== IN-MEMORY LEDGER ====================

class _InMemorySession(LedgerSession):

    def __init__(self, ledger: 'InMemoryEscrowLedger', transaction: EscrowTransaction):
        self._ledger = ledger
        self.transaction = transaction
        self._dirty_transaction: Optional[EscrowTransaction] = None
        self._new_events: List[ConfirmationEvent] = []
        self._refunds: Dict[str, RefundRequest] = {}
        self._timeout: Optional[PaymentTimeout] = None

    async def save_transaction(self, transaction: EscrowTransaction) -> None:
        self._dirty_transaction = transaction.model_copy(deep=True)
        self.transaction = transaction

    async def list_confirmations(self) -> List[ConfirmationEvent]:
        committed = self._ledger._events.get(self.transaction.transaction_id, [])
        return [e.model_copy() for e in committed] + [e.model_copy() for e in self._new_events]

    async def add_confirmation(self, event: ConfirmationEvent) -> None:
        key = (event.role, event.action)
        for existing in await self.list_confirmations():
            if (existing.role, existing.action) == key:
                raise AlreadyConfirmedError(
                    f"{event.role.value} already confirmed '{event.action.value}'",
                    event.transaction_id
                )
        self._new_events.append(event.model_copy())

    async def list_refunds(self) -> List[RefundRequest]:
        refunds = {
            r.refund_id: r for r in self._ledger._refunds.values()
            if r.transaction_id == self.transaction.transaction_id
        }
        refunds.update(self._refunds)
        return [r.model_copy() for r in sorted(refunds.values(), key=lambda r: r.created_at)]

    async def save_refund(self, refund: RefundRequest) -> None:
        self._refunds[refund.refund_id] = refund.model_copy()

    async def get_timeout(self) -> Optional[PaymentTimeout]:
        if self._timeout is not None:
            return self._timeout.model_copy(deep=True)
        return await self._ledger.get_timeout(self.transaction.transaction_id)

    async def save_timeout(self, timeout: PaymentTimeout) -> None:
        self._timeout = timeout.model_copy(deep=True)

    def _commit(self) -> None:
        ledger = self._ledger
        if self._dirty_transaction is not None:
            self._dirty_transaction.version += 1
            self.transaction.version = self._dirty_transaction.version
            ledger._transactions[self._dirty_transaction.transaction_id] = self._dirty_transaction
        if self._new_events:
            ledger._events[self.transaction.transaction_id].extend(self._new_events)
        ledger._refunds.update(self._refunds)
        if self._timeout is not None:
            ledger._timeouts[self._timeout.transaction_id] = self._timeout


class InMemoryEscrowLedger(EscrowLedger):
    """
    Process-local ledger used in tests and in development without DATABASE_URL.

    Per-transaction ``asyncio.Lock`` objects give the same linearization the
    Postgres ledger gets from ``SELECT ... FOR UPDATE``.
    """

    def __init__(self):
        self._transactions: Dict[str, EscrowTransaction] = {}
        self._events: Dict[str, List[ConfirmationEvent]] = defaultdict(list)
        self._refunds: Dict[str, RefundRequest] = {}
        self._timeouts: Dict[str, PaymentTimeout] = {}
        self.fraud_checks: List[FraudCheck] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._create_lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.info("Using in-memory escrow ledger")

    async def create_transaction(self, transaction: EscrowTransaction) -> EscrowTransaction:
        async with self._create_lock:
            for existing in self._transactions.values():
                if existing.book_id == transaction.book_id and existing.is_active:
                    raise ActiveTransactionExistsError(
                        f"Book {transaction.book_id} already has an active transaction "
                        f"({existing.transaction_id})",
                        existing.transaction_id
                    )
            if transaction.transaction_id in self._transactions:
                raise ActiveTransactionExistsError(
                    f"Transaction {transaction.transaction_id} already exists",
                    transaction.transaction_id
                )
            stored = transaction.model_copy(deep=True)
            stored.version = 1
            self._transactions[stored.transaction_id] = stored
            return stored.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Optional[EscrowTransaction]:
        transaction = self._transactions.get(transaction_id)
        return transaction.model_copy(deep=True) if transaction else None

    @asynccontextmanager
    async def lock(self, transaction_id: str) -> AsyncIterator[LedgerSession]:
        lock = self._locks.setdefault(transaction_id, asyncio.Lock())
        self._lock_users[transaction_id] = self._lock_users.get(transaction_id, 0) + 1
        try:
            async with lock:
                transaction = self._transactions.get(transaction_id)
                if transaction is None:
                    raise TransactionNotFoundError(
                        f"Transaction not found: {transaction_id}", transaction_id
                    )
                session = _InMemorySession(self, transaction.model_copy(deep=True))
                yield session
                session._commit()
        finally:
            # Drop the lock once nobody holds or waits on it
            self._lock_users[transaction_id] -= 1
            if not self._lock_users[transaction_id]:
                del self._lock_users[transaction_id]
                del self._locks[transaction_id]

    async def list_confirmations(self, transaction_id: str) -> List[ConfirmationEvent]:
        return [e.model_copy() for e in self._events.get(transaction_id, [])]

    async def find_expired(self, now: datetime) -> List[EscrowTransaction]:
        return self._select(lambda t: t.status in EXPIRABLE_STATUSES and t.expires_at <= now)

    async def find_expiring(self, now: datetime, until: datetime) -> List[EscrowTransaction]:
        return self._select(
            lambda t: t.status in EXPIRABLE_STATUSES
            and now < t.expires_at <= until
            and not t.expiry_warning_sent
        )

    async def find_capture_failures(self) -> List[EscrowTransaction]:
        return self._select(lambda t: t.status == EscrowStatus.PENDING and t.capture_failed)

    def _select(self, predicate) -> List[EscrowTransaction]:
        matches = [t for t in self._transactions.values() if predicate(t)]
        return [t.model_copy(deep=True) for t in sorted(matches, key=lambda t: t.expires_at)]

    async def get_refund(self, refund_id: str) -> Optional[RefundRequest]:
        refund = self._refunds.get(refund_id)
        return refund.model_copy() if refund else None

    async def list_refunds(self, transaction_id: str) -> List[RefundRequest]:
        refunds = [r for r in self._refunds.values() if r.transaction_id == transaction_id]
        return [r.model_copy() for r in sorted(refunds, key=lambda r: r.created_at)]

    async def find_refunds(self, status: RefundStatus) -> List[RefundRequest]:
        refunds = [r for r in self._refunds.values() if r.status == status]
        return [r.model_copy() for r in sorted(refunds, key=lambda r: r.created_at)]

    async def get_timeout(self, transaction_id: str) -> Optional[PaymentTimeout]:
        timeout = self._timeouts.get(transaction_id)
        return timeout.model_copy(deep=True) if timeout else None

    async def list_unresolved_timeouts(self) -> List[PaymentTimeout]:
        return [
            t.model_copy(deep=True) for t in self._timeouts.values()
            if t.resolved_at is None
        ]

    async def delete_resolved_timeouts(self, resolved_before: datetime) -> int:
        stale = [
            tid for tid, t in self._timeouts.items()
            if t.resolved_at is not None and t.resolved_at < resolved_before
        ]
        for tid in stale:
            del self._timeouts[tid]
        return len(stale)

    async def record_fraud_check(self, check: FraudCheck) -> None:
        self.fraud_checks.append(check.model_copy(deep=True))

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {status.value: 0 for status in EscrowStatus}
        for transaction in self._transactions.values():
            counts[transaction.status.value] += 1
        return counts
