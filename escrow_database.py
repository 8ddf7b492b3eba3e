"""
PostgreSQL escrow ledger.

Implements the EscrowLedger port on asyncpg. Per-transaction writes run
inside one database transaction that holds the row lock taken by
``SELECT ... FOR UPDATE``; updates additionally compare the stored
version so a lost lock can never overwrite newer state.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import asyncpg
from pydantic import BaseModel

from database import Database, DatabaseError
from escrow_errors import (
    ActiveTransactionExistsError,
    AlreadyConfirmedError,
    ConflictError,
    TransactionNotFoundError,
)
from escrow_ledger import EscrowLedger, LedgerSession
from escrow_models import (
    ConfirmationEvent,
    EscrowStatus,
    EscrowTransaction,
    FraudCheck,
    PaymentTimeout,
    RefundRequest,
    RefundStatus,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS escrow_transactions (
    transaction_id VARCHAR(64) PRIMARY KEY,
    book_id VARCHAR(64) NOT NULL,
    borrower_id VARCHAR(64) NOT NULL,
    lender_id VARCHAR(64) NOT NULL,
    total_amount NUMERIC(12, 2) NOT NULL CHECK (total_amount > 0),
    rental_fee NUMERIC(12, 2) NOT NULL CHECK (rental_fee >= 0),
    security_deposit NUMERIC(12, 2) NOT NULL CHECK (security_deposit >= 0),
    currency CHAR(3) NOT NULL DEFAULT 'USD',
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'paid', 'confirmed', 'completed', 'cancelled', 'refunded')),
    lender_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
    borrower_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
    payment_method_type VARCHAR(32) NOT NULL,
    payment_id VARCHAR(128),
    encrypted_payment_method TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ,
    expires_at TIMESTAMPTZ NOT NULL,
    confirmed_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    refunded_at TIMESTAMPTZ,
    refund_reason TEXT,
    notes TEXT NOT NULL DEFAULT '',
    releases JSONB NOT NULL DEFAULT '[]'::jsonb,
    risk_score DOUBLE PRECISION,
    risk_level VARCHAR(10),
    risk_review BOOLEAN NOT NULL DEFAULT FALSE,
    capture_failed BOOLEAN NOT NULL DEFAULT FALSE,
    capture_failure_reason TEXT,
    capture_failed_at TIMESTAMPTZ,
    flagged_for_review BOOLEAN NOT NULL DEFAULT FALSE,
    flag_reason TEXT,
    expiry_warning_sent BOOLEAN NOT NULL DEFAULT FALSE,
    version INTEGER NOT NULL DEFAULT 1,
    CONSTRAINT amounts_balance CHECK (total_amount = rental_fee + security_deposit),
    CONSTRAINT distinct_parties CHECK (borrower_id <> lender_id)
);

CREATE TABLE IF NOT EXISTS confirmation_events (
    event_id VARCHAR(64) PRIMARY KEY,
    transaction_id VARCHAR(64) NOT NULL REFERENCES escrow_transactions(transaction_id),
    actor_id VARCHAR(64) NOT NULL,
    role VARCHAR(10) NOT NULL CHECK (role IN ('lender', 'borrower')),
    action VARCHAR(10) NOT NULL CHECK (action IN ('lent', 'borrowed', 'returned', 'received')),
    created_at TIMESTAMPTZ NOT NULL,
    ip_address VARCHAR(64),
    device_fingerprint VARCHAR(256),
    photo_url TEXT,
    notes TEXT,
    CONSTRAINT unique_confirmation UNIQUE (transaction_id, role, action)
);

CREATE TABLE IF NOT EXISTS refund_requests (
    refund_id VARCHAR(64) PRIMARY KEY,
    transaction_id VARCHAR(64) NOT NULL REFERENCES escrow_transactions(transaction_id),
    amount NUMERIC(12, 2) NOT NULL CHECK (amount > 0),
    reason VARCHAR(20) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    mode VARCHAR(20),
    description TEXT,
    reference VARCHAR(128),
    requested_by VARCHAR(64),
    attempts INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    processed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS payment_timeouts (
    transaction_id VARCHAR(64) PRIMARY KEY REFERENCES escrow_transactions(transaction_id),
    status VARCHAR(20) NOT NULL,
    retry_strategy VARCHAR(20) NOT NULL,
    max_retries INTEGER NOT NULL,
    current_retry INTEGER NOT NULL DEFAULT 0,
    escalation_level VARCHAR(20) NOT NULL DEFAULT 'none',
    escalation_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    recovery_action VARCHAR(32),
    failure_reason TEXT,
    last_attempt TIMESTAMPTZ,
    next_attempt_at TIMESTAMPTZ,
    timed_out_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ,
    resolved_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS fraud_check_log (
    id SERIAL PRIMARY KEY,
    transaction_id VARCHAR(64),
    user_id VARCHAR(64) NOT NULL,
    risk_score DOUBLE PRECISION NOT NULL,
    risk_level VARCHAR(10) NOT NULL,
    recommendation VARCHAR(10) NOT NULL,
    flags JSONB NOT NULL,
    details JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
"""

INDEXES = """
CREATE INDEX IF NOT EXISTS idx_escrow_book_status ON escrow_transactions(book_id, status);
CREATE INDEX IF NOT EXISTS idx_escrow_expiry_status ON escrow_transactions(expires_at, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_escrow_one_active_per_book
    ON escrow_transactions(book_id) WHERE status IN ('pending', 'paid', 'confirmed');
CREATE INDEX IF NOT EXISTS idx_confirmations_transaction ON confirmation_events(transaction_id);
CREATE INDEX IF NOT EXISTS idx_refunds_transaction ON refund_requests(transaction_id);
CREATE INDEX IF NOT EXISTS idx_refunds_status ON refund_requests(status);
CREATE INDEX IF NOT EXISTS idx_timeouts_unresolved ON payment_timeouts(resolved_at);
CREATE INDEX IF NOT EXISTS idx_fraud_log_user ON fraud_check_log(user_id, created_at DESC);
"""


def _to_row(model: BaseModel, json_fields: Iterable[str] = ()) -> Dict[str, Any]:
    """Flatten a model into column values asyncpg can encode."""
    row = model.model_dump(exclude=set(json_fields))
    for key, value in row.items():
        if isinstance(value, Enum):
            row[key] = value.value
    if json_fields:
        row.update(model.model_dump(mode='json', include=set(json_fields)))
    return row


async def _upsert(conn: asyncpg.Connection, table: str, key: str, row: Dict[str, Any]) -> None:
    columns = list(row)
    placeholders = ', '.join(f"${i}" for i in range(1, len(columns) + 1))
    updates = ', '.join(f"{c} = EXCLUDED.{c}" for c in columns if c != key)
    await conn.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT ({key}) DO UPDATE SET {updates}",
        *row.values()
    )


class PostgresLedgerSession(LedgerSession):
    """Session bound to a connection inside an open database transaction."""

    def __init__(self, conn: asyncpg.Connection, transaction: EscrowTransaction):
        self.conn = conn
        self.transaction = transaction

    async def save_transaction(self, transaction: EscrowTransaction) -> None:
        row = _to_row(transaction, json_fields=('releases',))
        expected_version = row.pop('version')
        transaction_id = row.pop('transaction_id')
        columns = list(row)
        assignments = ', '.join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        new_version = await self.conn.fetchval(
            f"""
            UPDATE escrow_transactions
            SET {assignments}, version = version + 1
            WHERE transaction_id = ${len(columns) + 1} AND version = ${len(columns) + 2}
            RETURNING version
            """,
            *row.values(), transaction_id, expected_version
        )
        if new_version is None:
            raise ConflictError(
                f"Transaction {transaction_id} was modified concurrently", transaction_id
            )
        transaction.version = new_version
        self.transaction = transaction

    async def list_confirmations(self) -> List[ConfirmationEvent]:
        rows = await self.conn.fetch(
            "SELECT * FROM confirmation_events WHERE transaction_id = $1 ORDER BY created_at",
            self.transaction.transaction_id
        )
        return [ConfirmationEvent.model_validate(dict(r)) for r in rows]

    async def add_confirmation(self, event: ConfirmationEvent) -> None:
        row = _to_row(event)
        columns = list(row)
        placeholders = ', '.join(f"${i}" for i in range(1, len(columns) + 1))
        try:
            await self.conn.execute(
                f"INSERT INTO confirmation_events ({', '.join(columns)}) VALUES ({placeholders})",
                *row.values()
            )
        except asyncpg.UniqueViolationError:
            raise AlreadyConfirmedError(
                f"{event.role.value} already confirmed '{event.action.value}'",
                event.transaction_id
            )

    async def list_refunds(self) -> List[RefundRequest]:
        rows = await self.conn.fetch(
            "SELECT * FROM refund_requests WHERE transaction_id = $1 ORDER BY created_at",
            self.transaction.transaction_id
        )
        return [RefundRequest.model_validate(dict(r)) for r in rows]

    async def save_refund(self, refund: RefundRequest) -> None:
        await _upsert(self.conn, 'refund_requests', 'refund_id', _to_row(refund))

    async def get_timeout(self) -> Optional[PaymentTimeout]:
        row = await self.conn.fetchrow(
            "SELECT * FROM payment_timeouts WHERE transaction_id = $1",
            self.transaction.transaction_id
        )
        return PaymentTimeout.model_validate(dict(row)) if row else None

    async def save_timeout(self, timeout: PaymentTimeout) -> None:
        await _upsert(
            self.conn, 'payment_timeouts', 'transaction_id',
            _to_row(timeout, json_fields=('escalation_history',))
        )


class PostgresEscrowLedger(EscrowLedger):
    """Escrow ledger persisted in PostgreSQL."""

    def __init__(self, database: Database):
        """
        Args:
            database: Connected Database holding the asyncpg pool
        """
        self.db = database

    async def initialize(self) -> None:
        """Create all required tables with indexes and constraints."""
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(SCHEMA)
                    await conn.execute(INDEXES)
            logger.info("Escrow ledger tables created/verified successfully")
        except Exception as e:
            logger.error(f"Escrow ledger initialization failed: {e}")
            raise DatabaseError(f"Failed to initialize escrow ledger: {e}")

    async def create_transaction(self, transaction: EscrowTransaction) -> EscrowTransaction:
        row = _to_row(transaction, json_fields=('releases',))
        row['version'] = 1
        columns = list(row)
        placeholders = ', '.join(f"${i}" for i in range(1, len(columns) + 1))
        try:
            async with self.db.require_pool().acquire() as conn:
                record = await conn.fetchrow(
                    f"INSERT INTO escrow_transactions ({', '.join(columns)}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    *row.values()
                )
        except asyncpg.UniqueViolationError:
            logger.warning(f"Book {transaction.book_id} already has an active transaction")
            raise ActiveTransactionExistsError(
                f"Book {transaction.book_id} already has an active transaction",
                transaction.transaction_id
            )
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to create escrow transaction: {e}")
            raise DatabaseError(f"Failed to create escrow transaction: {e}")
        return EscrowTransaction.model_validate(dict(record))

    async def get_transaction(self, transaction_id: str) -> Optional[EscrowTransaction]:
        row = await self._fetchrow(
            "SELECT * FROM escrow_transactions WHERE transaction_id = $1", transaction_id
        )
        return EscrowTransaction.model_validate(dict(row)) if row else None

    @asynccontextmanager
    async def lock(self, transaction_id: str) -> AsyncIterator[LedgerSession]:
        async with self.db.require_pool().acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM escrow_transactions WHERE transaction_id = $1 FOR UPDATE",
                    transaction_id
                )
                if row is None:
                    raise TransactionNotFoundError(
                        f"Transaction not found: {transaction_id}", transaction_id
                    )
                yield PostgresLedgerSession(conn, EscrowTransaction.model_validate(dict(row)))

    async def list_confirmations(self, transaction_id: str) -> List[ConfirmationEvent]:
        rows = await self._fetch(
            "SELECT * FROM confirmation_events WHERE transaction_id = $1 ORDER BY created_at",
            transaction_id
        )
        return [ConfirmationEvent.model_validate(dict(r)) for r in rows]

    async def find_expired(self, now: datetime) -> List[EscrowTransaction]:
        rows = await self._fetch(
            """
            SELECT * FROM escrow_transactions
            WHERE status IN ('pending', 'paid') AND expires_at <= $1
            ORDER BY expires_at
            """,
            now
        )
        return [EscrowTransaction.model_validate(dict(r)) for r in rows]

    async def find_expiring(self, now: datetime, until: datetime) -> List[EscrowTransaction]:
        rows = await self._fetch(
            """
            SELECT * FROM escrow_transactions
            WHERE status IN ('pending', 'paid')
            AND expires_at > $1 AND expires_at <= $2
            AND NOT expiry_warning_sent
            ORDER BY expires_at
            """,
            now, until
        )
        return [EscrowTransaction.model_validate(dict(r)) for r in rows]

    async def find_capture_failures(self) -> List[EscrowTransaction]:
        rows = await self._fetch(
            """
            SELECT * FROM escrow_transactions
            WHERE status = 'pending' AND capture_failed
            ORDER BY capture_failed_at
            """
        )
        return [EscrowTransaction.model_validate(dict(r)) for r in rows]

    async def get_refund(self, refund_id: str) -> Optional[RefundRequest]:
        row = await self._fetchrow("SELECT * FROM refund_requests WHERE refund_id = $1", refund_id)
        return RefundRequest.model_validate(dict(row)) if row else None

    async def list_refunds(self, transaction_id: str) -> List[RefundRequest]:
        rows = await self._fetch(
            "SELECT * FROM refund_requests WHERE transaction_id = $1 ORDER BY created_at",
            transaction_id
        )
        return [RefundRequest.model_validate(dict(r)) for r in rows]

    async def find_refunds(self, status: RefundStatus) -> List[RefundRequest]:
        rows = await self._fetch(
            "SELECT * FROM refund_requests WHERE status = $1 ORDER BY created_at",
            status.value
        )
        return [RefundRequest.model_validate(dict(r)) for r in rows]

    async def get_timeout(self, transaction_id: str) -> Optional[PaymentTimeout]:
        row = await self._fetchrow(
            "SELECT * FROM payment_timeouts WHERE transaction_id = $1", transaction_id
        )
        return PaymentTimeout.model_validate(dict(row)) if row else None

    async def list_unresolved_timeouts(self) -> List[PaymentTimeout]:
        rows = await self._fetch(
            "SELECT * FROM payment_timeouts WHERE resolved_at IS NULL ORDER BY created_at"
        )
        return [PaymentTimeout.model_validate(dict(r)) for r in rows]

    async def delete_resolved_timeouts(self, resolved_before: datetime) -> int:
        try:
            async with self.db.require_pool().acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM payment_timeouts WHERE resolved_at IS NOT NULL AND resolved_at < $1",
                    resolved_before
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to delete resolved timeouts: {e}")
            raise DatabaseError(f"Failed to delete resolved timeouts: {e}")
        # asyncpg returns the command tag, e.g. 'DELETE 3'
        return int(result.split()[-1])

    async def record_fraud_check(self, check: FraudCheck) -> None:
        try:
            async with self.db.require_pool().acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO fraud_check_log
                    (transaction_id, user_id, risk_score, risk_level, recommendation,
                     flags, details, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    check.transaction_id, check.user_id, check.risk_score,
                    check.risk_level.value, check.recommendation.value,
                    [f.model_dump(mode='json') for f in check.flags],
                    check.model_dump(mode='json')['details'],
                    check.timestamp
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to record fraud check for {check.user_id}: {e}")
            raise DatabaseError(f"Failed to record fraud check: {e}")

    async def count_by_status(self) -> Dict[str, int]:
        rows = await self._fetch(
            "SELECT status, COUNT(*) AS count FROM escrow_transactions GROUP BY status"
        )
        counts = {status.value: 0 for status in EscrowStatus}
        counts.update({r['status']: r['count'] for r in rows})
        return counts

    async def _fetch(self, query: str, *args) -> List[asyncpg.Record]:
        try:
            async with self.db.require_pool().acquire() as conn:
                return await conn.fetch(query, *args)
        except asyncpg.PostgresError as e:
            logger.error(f"Ledger query failed: {e}")
            raise DatabaseError(f"Ledger query failed: {e}")

    async def _fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        try:
            async with self.db.require_pool().acquire() as conn:
                return await conn.fetchrow(query, *args)
        except asyncpg.PostgresError as e:
            logger.error(f"Ledger query failed: {e}")
            raise DatabaseError(f"Ledger query failed: {e}")
