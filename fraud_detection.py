"""
Fraud Detection Module for the book rental escrow service.

Scores a payment attempt before it may enter escrow. Six independent
checks (velocity, amount, location, device, behavior, blacklist) emit
severity-weighted flags; the weights are summed, normalized and mapped
to a risk level and a recommendation.

Any critical flag declines the payment whatever the aggregate score is.
"""

import hashlib
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from blacklist_service import BlacklistService, StaticBlacklistService
from config import Config, get_config
from escrow_models import (
    FlagSeverity,
    FlagType,
    FraudCheck,
    FraudFlag,
    PaymentContext,
    Recommendation,
    RecentTransaction,
    RiskLevel,
    UserHistory,
)
from utils import mask_sensitive_data, to_money, utc_now

logger = logging.getLogger(__name__)


class FraudDetectionEngine:
    """
    Risk scorer for payment attempts.

    Pure apart from the blacklist lookups: identical inputs always give
    the same score, flags and recommendation.
    """

    # Risk level thresholds on the normalized score
    CRITICAL_THRESHOLD = 0.9
    HIGH_THRESHOLD = 0.8
    MEDIUM_THRESHOLD = 0.6

    SCORE_NORMALIZER = 10
    MEDIUM_FLAGS_FOR_REVIEW = 3

    HIGH_AMOUNT_RATIO = 10
    MEDIUM_AMOUNT_RATIO = 5
    MIN_ACCOUNT_AGE_DAYS = 1
    MAX_SUSPICIOUS_ACTIVITY = 3

    SUSPICIOUS_USER_AGENTS = (
        'bot', 'crawler', 'spider', 'headless', 'automated', 'selenium', 'puppeteer'
    )

    def __init__(
        self,
        config: Optional[Config] = None,
        blacklist: Optional[BlacklistService] = None,
        clock: Optional[Callable] = None
    ):
        """
        Initialize the fraud detection engine.

        Args:
            config: Configuration instance (optional, will load if not provided)
            blacklist: Blacklist lookup (defaults to the configured static lists)
            clock: Returns the current UTC time (defaults to utils.utc_now)
        """
        self.config = config or get_config()
        self.blacklist = blacklist or StaticBlacklistService(
            self.config.blacklisted_ips, self.config.blacklisted_payment_methods
        )
        self.clock = clock or utc_now

        self.daily_limit = self.config.fraud_daily_limit
        self.single_transaction_limit = self.config.fraud_single_transaction_limit
        self.round_amount_threshold = self.config.fraud_round_amount_threshold
        self.hourly_velocity_limit = self.config.fraud_hourly_velocity_limit
        self.daily_velocity_limit = self.config.fraud_daily_velocity_limit
        self.high_risk_countries = set(self.config.high_risk_countries)

    async def assess(
        self,
        context: PaymentContext,
        history: UserHistory,
        recent_transactions: Iterable[RecentTransaction]
    ) -> FraudCheck:
        """
        Assess a payment attempt.

        Args:
            context: The payment attempt being screened
            history: Rolling history of the paying user
            recent_transactions: The user's recent transactions, for velocity

        Returns:
            FraudCheck with score, level, flags and recommendation
        """
        recent = list(recent_transactions)
        details = {}
        flags: List[FraudFlag] = []

        flags.extend(self._check_velocity(context, recent, details))
        flags.extend(self._check_amount(context, history, details))
        flags.extend(self._check_location(context, history))
        flags.extend(self._check_device(context, history))
        flags.extend(self._check_behavior(context, history))
        flags.extend(await self._check_blacklists(context))

        total_weight = sum(flag.severity.weight for flag in flags)
        risk_score = min(round(total_weight, 6) / self.SCORE_NORMALIZER, 1.0)
        risk_level = self.calculate_risk_level(risk_score)
        recommendation = self.get_recommendation(risk_level, flags)

        check = FraudCheck(
            transaction_id=context.transaction_id,
            user_id=context.user_id,
            risk_score=risk_score,
            risk_level=risk_level,
            flags=flags,
            recommendation=recommendation,
            details=details,
            timestamp=self.clock()
        )

        log = logger.warning if recommendation != Recommendation.APPROVE else logger.info
        log(
            f"Fraud check for user {context.user_id}: score={risk_score:.2f}, "
            f"level={risk_level.value}, recommendation={recommendation.value}, "
            f"flags={[f.type.value + ':' + f.severity.value for f in flags]}"
        )
        return check

    # ==================== CHECKS ====================

    def _check_velocity(
        self,
        context: PaymentContext,
        recent: List[RecentTransaction],
        details: dict
    ) -> List[FraudFlag]:
        flags = []
        now = context.timestamp

        # Counts include the attempt being screened
        last_hour = [
            tx for tx in recent
            if timedelta(0) <= now - tx.timestamp <= timedelta(hours=1)
        ]
        hourly_count = len(last_hour) + 1
        if hourly_count > self.hourly_velocity_limit:
            flags.append(FraudFlag(
                type=FlagType.VELOCITY,
                severity=FlagSeverity.HIGH,
                description=f"{hourly_count} transactions in the last hour"
            ))

        today = [
            tx for tx in recent
            if tx.timestamp.date() == now.date() and tx.timestamp <= now
        ]
        daily_count = len(today) + 1
        if daily_count > self.daily_velocity_limit:
            flags.append(FraudFlag(
                type=FlagType.VELOCITY,
                severity=FlagSeverity.CRITICAL,
                description=f"{daily_count} transactions today"
            ))

        daily_amount = sum((tx.amount for tx in today), Decimal('0')) + context.amount
        if daily_amount > self.daily_limit:
            flags.append(FraudFlag(
                type=FlagType.VELOCITY,
                severity=FlagSeverity.MEDIUM,
                description=f"Daily transaction limit exceeded: {to_money(daily_amount)}"
            ))

        details.update({
            'hourly_count': hourly_count,
            'daily_count': daily_count,
            'daily_amount': str(to_money(daily_amount)),
        })
        return flags

    def _check_amount(
        self,
        context: PaymentContext,
        history: UserHistory,
        details: dict
    ) -> List[FraudFlag]:
        flags = []
        amount = context.amount

        if history.average_amount > 0:
            ratio = amount / history.average_amount
            details['amount_ratio'] = float(round(ratio, 2))
            if ratio > self.HIGH_AMOUNT_RATIO:
                severity = FlagSeverity.HIGH
            elif ratio > self.MEDIUM_AMOUNT_RATIO:
                severity = FlagSeverity.MEDIUM
            else:
                severity = None
            if severity:
                flags.append(FraudFlag(
                    type=FlagType.AMOUNT,
                    severity=severity,
                    description=f"Amount {ratio:.1f}x higher than user average"
                ))

        if amount > self.single_transaction_limit:
            severity = (
                FlagSeverity.HIGH if amount > self.single_transaction_limit * 2
                else FlagSeverity.MEDIUM
            )
            flags.append(FraudFlag(
                type=FlagType.AMOUNT,
                severity=severity,
                description=f"High transaction amount: {to_money(amount)}"
            ))

        if amount % 100 == 0 and amount >= self.round_amount_threshold:
            flags.append(FraudFlag(
                type=FlagType.AMOUNT,
                severity=FlagSeverity.LOW,
                description="Round number transaction amount"
            ))

        return flags

    def _check_location(self, context: PaymentContext, history: UserHistory) -> List[FraudFlag]:
        flags = []
        location = context.location
        if location is None:
            return flags

        if history.common_locations and location not in history.common_locations:
            flags.append(FraudFlag(
                type=FlagType.LOCATION,
                severity=FlagSeverity.MEDIUM,
                description=f"Transaction from new location: {location}"
            ))

        if context.country.upper() in self.high_risk_countries:
            flags.append(FraudFlag(
                type=FlagType.LOCATION,
                severity=FlagSeverity.HIGH,
                description=f"Transaction from high-risk country: {context.country}"
            ))

        return flags

    def _check_device(self, context: PaymentContext, history: UserHistory) -> List[FraudFlag]:
        flags = []

        fingerprint = context.device_fingerprint
        if fingerprint and fingerprint not in history.known_devices:
            device_hash = hashlib.sha256(
                (fingerprint + (context.user_agent or '')).encode('utf-8')
            ).hexdigest()
            flags.append(FraudFlag(
                type=FlagType.DEVICE,
                severity=FlagSeverity.LOW,
                description=f"Transaction from new device ({device_hash[:8]})"
            ))

        if context.user_agent:
            user_agent = context.user_agent.lower()
            if any(pattern in user_agent for pattern in self.SUSPICIOUS_USER_AGENTS):
                flags.append(FraudFlag(
                    type=FlagType.DEVICE,
                    severity=FlagSeverity.CRITICAL,
                    description="Suspicious user agent detected"
                ))

        return flags

    def _check_behavior(self, context: PaymentContext, history: UserHistory) -> List[FraudFlag]:
        flags = []

        if context.timestamp.hour in history.unusual_hours:
            flags.append(FraudFlag(
                type=FlagType.BEHAVIOR,
                severity=FlagSeverity.LOW,
                description=f"Transaction at unusual hour ({context.timestamp.hour:02d}:00)"
            ))

        if history.account_age_days < self.MIN_ACCOUNT_AGE_DAYS:
            flags.append(FraudFlag(
                type=FlagType.BEHAVIOR,
                severity=FlagSeverity.MEDIUM,
                description="Transaction from very new account"
            ))

        if history.suspicious_activity_count > self.MAX_SUSPICIOUS_ACTIVITY:
            flags.append(FraudFlag(
                type=FlagType.BEHAVIOR,
                severity=FlagSeverity.HIGH,
                description=(
                    f"User has history of suspicious activity "
                    f"({history.suspicious_activity_count} incidents)"
                )
            ))

        return flags

    async def _check_blacklists(self, context: PaymentContext) -> List[FraudFlag]:
        flags = []

        if context.ip_address:
            if await self._safe_lookup(self.blacklist.is_ip_blacklisted, context.ip_address, 'IP'):
                flags.append(FraudFlag(
                    type=FlagType.BLACKLIST,
                    severity=FlagSeverity.CRITICAL,
                    description="IP address found on blacklist"
                ))

        if await self._safe_lookup(
            self.blacklist.is_payment_method_blacklisted,
            context.payment_method_id,
            'payment method'
        ):
            flags.append(FraudFlag(
                type=FlagType.BLACKLIST,
                severity=FlagSeverity.CRITICAL,
                description="Payment method found on blacklist"
            ))

        return flags

    async def _safe_lookup(self, lookup, value: str, label: str) -> bool:
        """A failed lookup counts as not blacklisted."""
        try:
            return await lookup(value)
        except Exception as e:
            logger.warning(
                f"Blacklist {label} lookup failed for {mask_sensitive_data(value)}, "
                f"treating as not blacklisted: {e}"
            )
            return False

    # ==================== AGGREGATION ====================

    def calculate_risk_level(self, risk_score: float) -> RiskLevel:
        if risk_score >= self.CRITICAL_THRESHOLD:
            return RiskLevel.CRITICAL
        if risk_score >= self.HIGH_THRESHOLD:
            return RiskLevel.HIGH
        if risk_score >= self.MEDIUM_THRESHOLD:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def get_recommendation(self, risk_level: RiskLevel, flags: List[FraudFlag]) -> Recommendation:
        # Fail closed: critical signals decline before anything else is considered
        if risk_level == RiskLevel.CRITICAL or any(
            f.severity == FlagSeverity.CRITICAL for f in flags
        ):
            return Recommendation.DECLINE

        if risk_level == RiskLevel.HIGH:
            return Recommendation.REVIEW

        medium_flags = sum(1 for f in flags if f.severity == FlagSeverity.MEDIUM)
        if medium_flags >= self.MEDIUM_FLAGS_FOR_REVIEW:
            return Recommendation.REVIEW

        return Recommendation.APPROVE
