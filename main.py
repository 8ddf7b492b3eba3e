"""
Book Rental Escrow - Main Application Entry Point

This module orchestrates the escrow core by:
- Loading configuration
- Initializing logger and database
- Wiring ledger, catalog, gateway, risk scorer, encryption and notifications
- Running the recovery scheduler in the background
- Managing graceful shutdown
"""

import asyncio
import logging
import signal
import sys
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from telegram import Bot

from blacklist_service import BlacklistService, HttpBlacklistService, StaticBlacklistService
from book_catalog import InMemoryBookCatalog, PostgresBookCatalog
from config import Config, ConfigError, get_config
from database import Database, close_database, get_database
from escrow_automation import EscrowAutomation, start_automation, stop_automation
from escrow_database import PostgresEscrowLedger
from escrow_ledger import InMemoryEscrowLedger
from escrow_service import EscrowService, get_escrow_service
from fraud_detection import FraudDetectionEngine
from notifications import LoggingNotifier, Notifier, TelegramNotifier
from payment_gateway import SimulatedPaymentGateway
from payment_timeout import PaymentTimeoutHandler
from transaction_encryption import get_encryption_service
from utils import setup_logger

# Global variables
logger: Optional[logging.Logger] = None
shutdown_event = threading.Event()
telegram_bot: Optional[Bot] = None

HEALTH_CHECK_INTERVAL = 1800  # 30 minutes in seconds


def signal_handler(signum: int, frame) -> None:
    """
    Handle shutdown signals (SIGINT, SIGTERM) for graceful shutdown.

    Args:
        signum: Signal number
        frame: Current stack frame
    """
    signal_name = signal.Signals(signum).name
    logger.info(f"\n{'='*60}")
    logger.info(f"Received {signal_name} signal. Initiating graceful shutdown...")
    logger.info(f"{'='*60}")
    shutdown_event.set()


def build_blacklist(config: Config) -> BlacklistService:
    if config.blacklist_service_url:
        logger.info(f"Using remote blacklist at {config.blacklist_service_url}")
        return HttpBlacklistService(config.blacklist_service_url, timeout=config.blacklist_timeout)
    return StaticBlacklistService(config.blacklisted_ips, config.blacklisted_payment_methods)


async def build_notifier(config: Config) -> Notifier:
    global telegram_bot

    if not config.has_telegram_config:
        logger.info("Telegram not configured - notifications go to the log only")
        return LoggingNotifier()

    telegram_bot = Bot(token=config.telegram_bot_token)
    await telegram_bot.initialize()
    logger.info("✓ Telegram notifications enabled")
    return TelegramNotifier(telegram_bot, config.admin_chat_id)


async def initialize_application(config: Config) -> Dict[str, Any]:
    """
    Build every component of the escrow core.

    Returns:
        Dict with database (or None), escrow_service and timeout_handler

    Raises:
        ConfigError: If encryption keys are invalid
        DatabaseError: If the database cannot be reached
    """
    logger.info("Initializing application components...")

    database: Optional[Database] = None
    if config.has_database_config:
        logger.info("Initializing database connection...")
        database = await get_database(
            config.database_url, config.db_pool_min_size, config.db_pool_max_size
        )
        ledger = PostgresEscrowLedger(database)
        catalog = PostgresBookCatalog(database)
    else:
        logger.warning("DATABASE_URL not set - using the in-memory ledger and catalog")
        ledger = InMemoryEscrowLedger()
        catalog = InMemoryBookCatalog()

    await ledger.initialize()
    logger.info("✓ Escrow ledger ready")

    encryption = get_encryption_service(config)
    logger.info("✓ Encryption keys loaded")

    notifier = await build_notifier(config)

    escrow_service = get_escrow_service(
        ledger,
        catalog,
        SimulatedPaymentGateway(),
        fraud_engine=FraudDetectionEngine(config, blacklist=build_blacklist(config)),
        encryption=encryption,
        notifier=notifier,
        config=config
    )
    timeout_handler = PaymentTimeoutHandler(escrow_service)

    return {
        'database': database,
        'escrow_service': escrow_service,
        'timeout_handler': timeout_handler,
    }


async def perform_health_checks(escrow_service: EscrowService, database: Optional[Database]) -> None:
    """Log ledger counts and database health."""
    try:
        counts = await escrow_service.ledger.count_by_status()
        active = sum(counts.get(s, 0) for s in ('pending', 'paid', 'confirmed'))
        logger.info(f"🏥 Escrow health: {active} active transactions, by status: {counts}")

        if database and not await database.health_check():
            logger.error("❌ Database health check failed")

    except Exception as e:
        logger.error(f"Failed to perform health checks: {e}", exc_info=True)


def display_startup_banner(config: Config) -> None:
    """
    Display startup banner with configuration information.

    Args:
        config: Application configuration object
    """
    banner = f"""
╔{'='*58}╗
║{' '*19}BOOK RENTAL ESCROW{' '*21}║
╚{'='*58}╝

📅 Startup Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}

🔧 Configuration:
   • Environment:        {config.app_env}
   • Version:            {config.app_version}
   • Currency:           {config.currency}
   • Escrow Window:      {config.escrow_window_hours}h
   • Ledger:             {'PostgreSQL' if config.has_database_config else 'in-memory'}
   • Telegram Alerts:    {'ENABLED' if config.has_telegram_config else 'DISABLED'}
   • Log Level:          {config.log_level}

⏱  Recovery Schedule:
   • Timeout sweep:      every {config.timeout_sweep_interval_minutes} min
   • Payment retries:    every {config.retry_sweep_interval_seconds} s
   • Escalations:        every {config.escalation_interval_minutes} min

🚀 Starting services...
"""
    print(banner)
    logger.info("Application startup initiated")


async def async_main(config: Config) -> None:
    """
    Main asynchronous function that orchestrates the entire application.
    """
    database: Optional[Database] = None
    automation: Optional[EscrowAutomation] = None

    try:
        display_startup_banner(config)

        components = await initialize_application(config)
        database = components['database']
        escrow_service = components['escrow_service']

        automation = await start_automation(components['timeout_handler'], config)

        # Sweep once immediately so holds that expired while down are not left waiting
        await automation.process_timeouts()
        await perform_health_checks(escrow_service, database)

        logger.info(f"{'='*60}")
        logger.info("📚 Escrow core is running")
        logger.info(f"{'='*60}\n")

        last_health_check = asyncio.get_running_loop().time()
        while not shutdown_event.is_set():
            await asyncio.sleep(1)

            current_time = asyncio.get_running_loop().time()
            if current_time - last_health_check >= HEALTH_CHECK_INTERVAL:
                await perform_health_checks(escrow_service, database)
                logger.info(f"Automation stats: {automation.get_stats()['stats']}")
                last_health_check = current_time

    finally:
        logger.info("Performing cleanup...")

        if automation:
            await stop_automation()
            logger.info("✓ Escrow scheduler stopped")

        if telegram_bot:
            await telegram_bot.shutdown()
            logger.info("✓ Telegram bot shut down")

        if database:
            logger.info("Closing database connections...")
            await close_database()
            logger.info("✓ Database connections closed")

        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Sets up logging, signal handlers, and runs the async main function.
    """
    global logger

    try:
        config = get_config()
    except ConfigError as e:
        print(f"CRITICAL ERROR: Invalid configuration: {e}")
        sys.exit(1)

    try:
        # Configure the root logger so every module's logger is captured
        setup_logger(
            '',
            log_level=config.log_level,
            log_file=config.log_file,
            log_format=config.log_format,
            max_bytes=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = logging.getLogger('book_escrow')
        logger.info("Logger initialized successfully")

        # Register signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        logger.info("Signal handlers registered (SIGINT, SIGTERM)")

        asyncio.run(async_main(config))
        logger.info("Shutdown complete. Goodbye!")

    except Exception as e:
        if logger:
            logger.critical(f"Application failed to start: {e}", exc_info=True)
        else:
            print(f"CRITICAL ERROR: Application failed to start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
