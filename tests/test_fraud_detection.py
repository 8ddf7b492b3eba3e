"""
Tests for the payment risk scorer.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from blacklist_service import BlacklistLookupError
from escrow_models import (
    FlagSeverity,
    FlagType,
    PaymentContext,
    RecentTransaction,
    Recommendation,
    RiskLevel,
    UserHistory,
)
from fraud_detection import FraudDetectionEngine

from conftest import BLACKLISTED_IP


@pytest.fixture
def trusted_history():
    return UserHistory(
        user_id='borrower_1',
        total_transactions=40,
        average_amount=Decimal('10.00'),
        common_locations=['US-CA'],
        known_devices=['device_home'],
        account_age_days=365
    )


def make_context(clock, amount='25.00', **overrides):
    fields = {
        'user_id': 'borrower_1',
        'amount': Decimal(amount),
        'payment_method_id': 'pm_card_4242',
        'ip_address': '198.51.100.20',
        'device_fingerprint': 'device_home',
        'user_agent': 'Mozilla/5.0',
        'country': 'US',
        'region': 'CA',
        'timestamp': clock(),
    }
    fields.update(overrides)
    return PaymentContext(**fields)


class TestFraudDetectionEngine:

    @pytest.mark.asyncio
    async def test_clean_payment_is_approved(self, fraud_engine, trusted_history, clock):
        check = await fraud_engine.assess(make_context(clock), trusted_history, [])

        assert check.flags == []
        assert check.risk_score == 0.0
        assert check.risk_level == RiskLevel.LOW
        assert check.recommendation == Recommendation.APPROVE

    @pytest.mark.asyncio
    async def test_large_amount_from_blacklisted_ip_is_declined(
        self, fraud_engine, trusted_history, clock
    ):
        context = make_context(clock, amount='400.00', ip_address=BLACKLISTED_IP)

        check = await fraud_engine.assess(context, trusted_history, [])

        assert check.recommendation == Recommendation.DECLINE
        kinds = {(f.type, f.severity) for f in check.flags}
        assert (FlagType.BLACKLIST, FlagSeverity.CRITICAL) in kinds
        assert (FlagType.AMOUNT, FlagSeverity.HIGH) in kinds

    @pytest.mark.asyncio
    async def test_identical_inputs_give_identical_results(self, fraud_engine, trusted_history, clock):
        context = make_context(clock, amount='400.00', country='FR', region=None)

        first = await fraud_engine.assess(context, trusted_history, [])
        second = await fraud_engine.assess(context, trusted_history, [])

        assert first.model_dump() == second.model_dump()

    @pytest.mark.asyncio
    async def test_hourly_velocity_counts_current_attempt(self, fraud_engine, trusted_history, clock):
        recent = [
            RecentTransaction(amount=Decimal('10'), timestamp=clock() - timedelta(minutes=5 * i))
            for i in range(1, 6)
        ]

        check = await fraud_engine.assess(make_context(clock), trusted_history, recent)

        assert check.details['hourly_count'] == 6
        assert any(
            f.type == FlagType.VELOCITY and f.severity == FlagSeverity.HIGH for f in check.flags
        )

    @pytest.mark.asyncio
    async def test_velocity_at_limit_is_not_flagged(self, fraud_engine, trusted_history, clock):
        recent = [
            RecentTransaction(amount=Decimal('10'), timestamp=clock() - timedelta(minutes=5 * i))
            for i in range(1, 5)
        ]

        check = await fraud_engine.assess(make_context(clock), trusted_history, recent)

        assert check.details['hourly_count'] == 5
        assert not [f for f in check.flags if f.type == FlagType.VELOCITY]

    @pytest.mark.asyncio
    async def test_bot_user_agent_is_declined(self, fraud_engine, trusted_history, clock):
        context = make_context(clock, user_agent='Mozilla/5.0 HeadlessChrome')

        check = await fraud_engine.assess(context, trusted_history, [])

        assert check.recommendation == Recommendation.DECLINE

    @pytest.mark.asyncio
    async def test_three_medium_flags_need_review(self, fraud_engine, clock):
        history = UserHistory(
            user_id='borrower_1',
            average_amount=Decimal('4.00'),
            common_locations=['US-CA'],
            account_age_days=0.2
        )
        context = make_context(clock, country='FR', region=None, device_fingerprint=None)

        check = await fraud_engine.assess(context, history, [])

        assert sum(1 for f in check.flags if f.severity == FlagSeverity.MEDIUM) == 3
        assert check.risk_level == RiskLevel.LOW
        assert check.recommendation == Recommendation.REVIEW

    @pytest.mark.asyncio
    async def test_blacklisted_payment_method(self, fraud_engine, trusted_history, clock):
        context = make_context(clock, payment_method_id='pm_stolen_0001')

        check = await fraud_engine.assess(context, trusted_history, [])

        assert check.recommendation == Recommendation.DECLINE

    @pytest.mark.asyncio
    async def test_failed_blacklist_lookup_counts_as_clean(self, config, trusted_history, clock):
        blacklist = Mock()
        blacklist.is_ip_blacklisted = AsyncMock(side_effect=BlacklistLookupError('down'))
        blacklist.is_payment_method_blacklisted = AsyncMock(return_value=False)
        engine = FraudDetectionEngine(config, blacklist=blacklist, clock=clock)

        check = await engine.assess(make_context(clock), trusted_history, [])

        assert check.recommendation == Recommendation.APPROVE
        blacklist.is_ip_blacklisted.assert_awaited_once()

    def test_risk_level_thresholds(self, fraud_engine):
        assert fraud_engine.calculate_risk_level(0.95) == RiskLevel.CRITICAL
        assert fraud_engine.calculate_risk_level(0.9) == RiskLevel.CRITICAL
        assert fraud_engine.calculate_risk_level(0.85) == RiskLevel.HIGH
        assert fraud_engine.calculate_risk_level(0.6) == RiskLevel.MEDIUM
        assert fraud_engine.calculate_risk_level(0.59) == RiskLevel.LOW

    def test_maximum_score_is_critical(self, fraud_engine):
        assert fraud_engine.calculate_risk_level(1.0) == RiskLevel.CRITICAL
