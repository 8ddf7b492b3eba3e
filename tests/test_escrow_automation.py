"""
Tests for the background job scheduler wrapper.
"""

from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

import escrow_automation
from escrow_automation import (
    EscrowAutomation,
    get_escrow_automation,
    start_automation,
    stop_automation,
)

JOB_IDS = [
    'process_timeouts',
    'expiration_warnings',
    'payment_retries',
    'process_escalations',
    'retry_failed_refunds',
    'cleanup_timeouts',
]


@pytest.fixture
def handler():
    handler = Mock()
    handler.run_timeout_sweep = AsyncMock(return_value={
        'processedCount': 2,
        'results': [
            {'transactionId': 'ESC_1', 'success': True},
            {'transactionId': 'ESC_2', 'success': True},
        ],
    })
    handler.process_payment_retries = AsyncMock(
        return_value={'succeeded': 1, 'failed': 2, 'exhausted': 1}
    )
    handler.process_escalations = AsyncMock(return_value={'escalated': 3, 'resolved': 0})
    handler.retry_failed_refunds = AsyncMock(
        return_value={'completed': 1, 'failed': 1, 'escalated': 0}
    )
    handler.send_expiration_warnings = AsyncMock(return_value=4)
    handler.cleanup_expired_timeouts = AsyncMock(return_value=5)
    return handler


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.get_jobs.return_value = [Mock() for _ in JOB_IDS]
    return scheduler


@pytest.fixture
def automation(handler, config, scheduler):
    return EscrowAutomation(handler, config=config, scheduler=scheduler)


@pytest.fixture
def reset_singleton(monkeypatch):
    monkeypatch.setattr(escrow_automation, '_automation_instance', None)


class TestScheduling:

    @pytest.mark.asyncio
    async def test_start_schedules_every_job(self, automation, scheduler):
        await automation.start()

        ids = [c.kwargs['id'] for c in scheduler.add_job.call_args_list]
        assert ids == JOB_IDS
        scheduler.start.assert_called_once()
        assert automation.is_running is True
        assert automation.get_stats()['scheduled_jobs'] == len(JOB_IDS)

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, automation, scheduler):
        await automation.start()
        await automation.start()

        assert scheduler.add_job.call_count == len(JOB_IDS)
        scheduler.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop(self, automation, scheduler):
        await automation.start()
        await automation.stop()

        scheduler.shutdown.assert_called_once_with(wait=False)
        assert automation.is_running is False
        assert automation.get_stats()['scheduled_jobs'] == 0

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, automation, scheduler):
        await automation.stop()

        scheduler.shutdown.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_failure_propagates(self, automation, scheduler):
        scheduler.start.side_effect = RuntimeError('no event loop')

        with pytest.raises(RuntimeError):
            await automation.start()

        assert automation.is_running is False


class TestJobs:

    @pytest.mark.asyncio
    async def test_jobs_update_stats(self, automation):
        await automation.process_timeouts()
        await automation.process_payment_retries()
        await automation.process_escalations()
        await automation.retry_failed_refunds()
        await automation.send_expiration_warnings()
        await automation.cleanup_expired_timeouts()

        stats = automation.stats
        assert stats['transactions_expired'] == 2
        assert stats['payment_retries'] == 3
        assert stats['retries_exhausted'] == 1
        assert stats['escalations'] == 3
        assert stats['refunds_retried'] == 2
        assert stats['warnings_sent'] == 4
        assert stats['timeouts_cleaned'] == 5
        assert stats['job_failures'] == 0
        assert set(stats['last_run']) == {
            'timeout_sweep', 'payment_retries', 'escalations',
            'refund_retries', 'expiration_warnings', 'cleanup',
        }

    @pytest.mark.asyncio
    async def test_failing_job_is_counted_not_raised(self, automation, handler):
        handler.process_escalations.side_effect = RuntimeError('ledger unavailable')

        result = await automation.process_escalations()

        assert result is None
        assert automation.stats['job_failures'] == 1
        assert automation.stats['escalations'] == 0
        assert 'escalations' not in automation.stats['last_run']

    @pytest.mark.asyncio
    async def test_partial_sweep_failures_still_count_processed(self, automation, handler):
        handler.run_timeout_sweep.return_value = {
            'processedCount': 1,
            'results': [
                {'transactionId': 'ESC_1', 'success': True},
                {'transactionId': 'ESC_2', 'success': False, 'error': 'conflict'},
            ],
        }

        result = await automation.process_timeouts()

        assert result['processedCount'] == 1
        assert automation.stats['transactions_expired'] == 1

    def test_stats_before_start(self, automation):
        stats = automation.get_stats()

        assert stats['is_running'] is False
        assert stats['uptime'] == 0


class TestSingleton:

    def test_handler_required_on_first_use(self, reset_singleton):
        with pytest.raises(RuntimeError):
            get_escrow_automation()

    @pytest.mark.asyncio
    async def test_start_and_stop_automation(self, reset_singleton, handler, config, monkeypatch):
        scheduler_class = MagicMock()
        monkeypatch.setattr(escrow_automation, 'AsyncIOScheduler', scheduler_class)

        automation = await start_automation(handler, config)

        assert get_escrow_automation() is automation
        assert automation.is_running is True
        scheduler_class.return_value.start.assert_called_once()

        await stop_automation()

        scheduler_class.return_value.shutdown.assert_called_once_with(wait=False)
        assert escrow_automation._automation_instance is None
