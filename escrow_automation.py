"""
Escrow Automation Module for the book rental escrow service.

This module schedules the background recovery work:
- Timeout sweep (expire overdue holds) and expiry warnings
- Payment capture retries
- Escalation of unresolved timeouts
- Retries of failed refunds
- Cleanup of resolved timeout records

Dependencies:
    - APScheduler: For background job scheduling
    - payment_timeout.py: For the recovery logic each job runs
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config, get_config
from payment_timeout import PaymentTimeoutHandler
from utils import utc_now

logger = logging.getLogger(__name__)

REFUND_RETRY_INTERVAL_MINUTES = 30


class EscrowAutomation:
    """
    Automation service for the escrow core.

    Wraps every PaymentTimeoutHandler job with timing, statistics and
    error logging, and runs them on an AsyncIOScheduler.
    """

    def __init__(
        self,
        handler: PaymentTimeoutHandler,
        config: Optional[Config] = None,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        """
        Initialize escrow automation service.

        Args:
            handler: Recovery handler the jobs delegate to
            config: Configuration instance (optional, will load if not provided)
            scheduler: Scheduler to use (a new AsyncIOScheduler if not provided)
        """
        self.handler = handler
        self.config = config or get_config()
        self.scheduler = scheduler or AsyncIOScheduler(timezone='UTC')
        self.is_running = False

        # Statistics
        self.stats: Dict[str, Any] = {
            'transactions_expired': 0,
            'payment_retries': 0,
            'retries_exhausted': 0,
            'escalations': 0,
            'refunds_retried': 0,
            'warnings_sent': 0,
            'timeouts_cleaned': 0,
            'job_failures': 0,
            'last_run': {},
            'start_time': None,
        }

    async def start(self) -> None:
        """Start the automation scheduler."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        try:
            self._schedule_tasks()
            self.scheduler.start()
            self.is_running = True
            self.stats['start_time'] = utc_now()

            logger.info("Escrow automation started successfully")
            logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

        except Exception as e:
            logger.error(f"Failed to start automation: {e}", exc_info=True)
            raise

    async def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        """Schedule all automation tasks."""

        # Expire overdue holds
        self.scheduler.add_job(
            self.process_timeouts,
            trigger=IntervalTrigger(minutes=self.config.timeout_sweep_interval_minutes),
            id='process_timeouts',
            name='Process Transaction Timeouts',
            max_instances=1,
            misfire_grace_time=300
        )

        # Warn parties before expiry
        self.scheduler.add_job(
            self.send_expiration_warnings,
            trigger=IntervalTrigger(minutes=self.config.timeout_sweep_interval_minutes),
            id='expiration_warnings',
            name='Send Expiration Warnings',
            max_instances=1,
            misfire_grace_time=300
        )

        # Capture retries
        self.scheduler.add_job(
            self.process_payment_retries,
            trigger=IntervalTrigger(seconds=self.config.retry_sweep_interval_seconds),
            id='payment_retries',
            name='Process Payment Retries',
            max_instances=1,
            misfire_grace_time=60
        )

        # Escalation ladder
        self.scheduler.add_job(
            self.process_escalations,
            trigger=IntervalTrigger(minutes=self.config.escalation_interval_minutes),
            id='process_escalations',
            name='Process Escalations',
            max_instances=1,
            misfire_grace_time=300
        )

        # Failed refunds
        self.scheduler.add_job(
            self.retry_failed_refunds,
            trigger=IntervalTrigger(minutes=REFUND_RETRY_INTERVAL_MINUTES),
            id='retry_failed_refunds',
            name='Retry Failed Refunds',
            max_instances=1,
            misfire_grace_time=300
        )

        # Cleanup - Daily at 3 AM
        self.scheduler.add_job(
            self.cleanup_expired_timeouts,
            trigger=CronTrigger(hour=3, minute=0),
            id='cleanup_timeouts',
            name='Cleanup Resolved Timeouts',
            max_instances=1
        )

        logger.info("All automation tasks scheduled")

    async def _run_job(self, name: str, job: Callable[[], Awaitable[Any]]) -> Optional[Any]:
        """Run one job with timing and error logging; failures never propagate to the scheduler."""
        logger.info(f"Starting {name} task")
        start_time = datetime.now()

        try:
            result = await job()
        except Exception as e:
            self.stats['job_failures'] += 1
            logger.error(f"{name} task failed: {e}", exc_info=True)
            return None

        self.stats['last_run'][name] = utc_now()
        duration = (datetime.now() - start_time).total_seconds()
        logger.info(f"{name} task completed in {duration:.2f}s: {result}")
        return result

    async def process_timeouts(self) -> Optional[Dict[str, Any]]:
        result = await self._run_job('timeout_sweep', self.handler.run_timeout_sweep)
        if result:
            self.stats['transactions_expired'] += result['processedCount']
            failed = [r for r in result['results'] if not r['success']]
            if failed:
                logger.warning(f"Timeout sweep could not expire {len(failed)} transactions")
        return result

    async def process_payment_retries(self) -> Optional[Dict[str, int]]:
        result = await self._run_job('payment_retries', self.handler.process_payment_retries)
        if result:
            self.stats['payment_retries'] += result['succeeded'] + result['failed']
            self.stats['retries_exhausted'] += result['exhausted']
        return result

    async def process_escalations(self) -> Optional[Dict[str, int]]:
        result = await self._run_job('escalations', self.handler.process_escalations)
        if result:
            self.stats['escalations'] += result['escalated']
        return result

    async def retry_failed_refunds(self) -> Optional[Dict[str, int]]:
        result = await self._run_job('refund_retries', self.handler.retry_failed_refunds)
        if result:
            self.stats['refunds_retried'] += result['completed'] + result['failed']
        return result

    async def send_expiration_warnings(self) -> Optional[int]:
        result = await self._run_job('expiration_warnings', self.handler.send_expiration_warnings)
        if result:
            self.stats['warnings_sent'] += result
        return result

    async def cleanup_expired_timeouts(self) -> Optional[int]:
        result = await self._run_job('cleanup', self.handler.cleanup_expired_timeouts)
        if result:
            self.stats['timeouts_cleaned'] += result
        return result

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        start_time = self.stats.get('start_time')
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'stats': self.stats,
            'uptime': (utc_now() - start_time).total_seconds() if start_time else 0,
        }


# Singleton instance
_automation_instance: Optional[EscrowAutomation] = None


def get_escrow_automation(
    handler: Optional[PaymentTimeoutHandler] = None,
    config: Optional[Config] = None
) -> EscrowAutomation:
    """
    Get or create escrow automation instance.

    Raises:
        RuntimeError: If called for the first time without a handler
    """
    global _automation_instance

    if _automation_instance is None:
        if handler is None:
            raise RuntimeError("EscrowAutomation not initialized: handler required")
        _automation_instance = EscrowAutomation(handler, config)

    return _automation_instance


async def start_automation(handler: PaymentTimeoutHandler, config: Optional[Config] = None) -> EscrowAutomation:
    """Start escrow automation service."""
    automation = get_escrow_automation(handler, config)
    await automation.start()
    return automation


async def stop_automation() -> None:
    """Stop escrow automation service."""
    global _automation_instance

    if _automation_instance:
        await _automation_instance.stop()
        _automation_instance = None
