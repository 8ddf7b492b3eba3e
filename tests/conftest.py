"""
Shared fixtures for the escrow core test suite.

Every component gets the same frozen clock, so tests move time forward
explicitly with ``clock.advance(hours=25)`` instead of sleeping.
"""

import logging
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from blacklist_service import StaticBlacklistService
from book_catalog import BookListing, InMemoryBookCatalog
from config import Config
from escrow_ledger import InMemoryEscrowLedger
from escrow_service import EscrowService
from fraud_detection import FraudDetectionEngine
from notifications import Notifier
from payment_gateway import SimulatedPaymentGateway
from payment_timeout import PaymentTimeoutHandler
from transaction_encryption import TransactionEncryptionService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

MASTER_KEY_HEX = '11' * 32
HMAC_KEY_HEX = '22' * 32
BLACKLISTED_IP = '203.0.113.9'
START_TIME = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

# Variables a developer machine might export that would change defaults
_ISOLATED_ENV = (
    'DATABASE_URL', 'ESCROW_CURRENCY', 'ESCROW_WINDOW_HOURS', 'AMOUNT_EPSILON',
    'AUTO_REFUND_THRESHOLD', 'ESCALATION_MANUAL_HOURS', 'ESCALATION_ADMIN_HOURS',
    'MAX_REFUND_ATTEMPTS', 'EXPIRY_WARNING_HOURS', 'TIMEOUT_RETENTION_DAYS',
    'FRAUD_HIGH_RISK_COUNTRIES', 'BLACKLISTED_PAYMENT_METHODS', 'BLACKLIST_SERVICE_URL',
    'TELEGRAM_BOT_TOKEN', 'ADMIN_CHAT_ID', 'LOG_LEVEL', 'LOG_FORMAT',
    'PAYMENT_METHOD_TTL_HOURS', 'BANKING_DETAILS_TTL_HOURS',
)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):
    """Notifier that keeps every call for assertions."""

    def __init__(self):
        self.user_messages: List[Dict[str, Any]] = []
        self.admin_messages: List[Dict[str, Any]] = []
        self.reviews: List[Dict[str, str]] = []
        self.tickets: List[Dict[str, str]] = []

    async def notify_user(self, user_id: str, subject: str, message: str) -> None:
        self.user_messages.append({'user_id': user_id, 'subject': subject, 'message': message})

    async def notify_admins(self, subject: str, message: str,
                            transaction_id: Optional[str] = None) -> None:
        self.admin_messages.append({
            'subject': subject, 'message': message, 'transaction_id': transaction_id
        })

    async def open_manual_review(self, transaction_id: str, reason: str) -> str:
        self.reviews.append({'transaction_id': transaction_id, 'reason': reason})
        return f"REVIEW-{transaction_id}"

    async def open_admin_ticket(self, transaction_id: str, reason: str) -> str:
        self.tickets.append({'transaction_id': transaction_id, 'reason': reason})
        return f"TICKET-{transaction_id}"

    def subjects_for(self, user_id: str) -> List[str]:
        return [m['subject'] for m in self.user_messages if m['user_id'] == user_id]


@pytest.fixture
def env(monkeypatch):
    """Baseline test environment; tests may setenv more before building Config."""
    for key in _ISOLATED_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('APP_ENV', 'test')
    monkeypatch.setenv('ESCROW_MASTER_KEY', MASTER_KEY_HEX)
    monkeypatch.setenv('ESCROW_HMAC_KEY', HMAC_KEY_HEX)
    monkeypatch.setenv('BLACKLISTED_IPS', BLACKLISTED_IP)
    return monkeypatch


@pytest.fixture
def config(env, tmp_path) -> Config:
    return Config(env_file=str(tmp_path / 'missing.env'))


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def ledger() -> InMemoryEscrowLedger:
    return InMemoryEscrowLedger()


@pytest.fixture
def catalog() -> InMemoryBookCatalog:
    catalog = InMemoryBookCatalog()
    catalog.add(BookListing(
        book_id='book_1', lender_id='lender_1', title='Dune',
        rental_fee=Decimal('20.00'), security_deposit=Decimal('5.00')
    ))
    catalog.add(BookListing(
        book_id='book_2', lender_id='lender_2', title='Middlemarch',
        rental_fee=Decimal('8.00'), security_deposit=Decimal('4.00')
    ))
    catalog.add(BookListing(
        book_id='book_cheap', lender_id='lender_2', title='Pamphlet',
        rental_fee=Decimal('4.00'), security_deposit=Decimal('2.00')
    ))
    return catalog


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def blacklist() -> StaticBlacklistService:
    return StaticBlacklistService(ips=[BLACKLISTED_IP], payment_methods=['pm_stolen_0001'])


@pytest.fixture
def fraud_engine(config, blacklist, clock) -> FraudDetectionEngine:
    return FraudDetectionEngine(config, blacklist=blacklist, clock=clock)


@pytest.fixture
def encryption(config, clock) -> TransactionEncryptionService:
    return TransactionEncryptionService(config=config, clock=clock)


@pytest.fixture
def escrow_service(ledger, catalog, gateway, fraud_engine, encryption, notifier,
                   config, clock) -> EscrowService:
    return EscrowService(
        ledger, catalog, gateway,
        fraud_engine=fraud_engine,
        encryption=encryption,
        notifier=notifier,
        config=config,
        clock=clock
    )


@pytest.fixture
def timeout_handler(escrow_service, config, clock) -> PaymentTimeoutHandler:
    return PaymentTimeoutHandler(escrow_service, config=config, clock=clock, rng=random.Random(0))


@pytest.fixture
def open_escrow(escrow_service):
    """Start a rental with the listing's exact price; returns the service response."""

    async def _open(
        book_id: str = 'book_1',
        borrower_id: str = 'borrower_1',
        total_amount: str = '25.00',
        method_type: str = 'credit_card',
        **kwargs
    ) -> Dict[str, Any]:
        return await escrow_service.initiate_escrow(
            book_id,
            borrower_id,
            {'method_id': 'pm_card_4242', 'type': method_type, 'details': {'last4': '4242'}},
            {'total_amount': total_amount},
            **kwargs
        )

    return _open
