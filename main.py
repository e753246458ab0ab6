"""
P2P Escrow Service - Main Application Entry Point

This module orchestrates the entire application by:
- Loading configuration and setting up logging
- Connecting the escrow store (PostgreSQL or in-memory)
- Building the transfer, notification and identity collaborators
- Starting the expiry/reconciliation scheduler
- Serving the FastAPI app with uvicorn on the same event loop
- Managing graceful shutdown
"""

import asyncio
import logging
import sys
from typing import Any, Optional

import uvicorn
from telegram import Bot

from api_server import create_app
from config import Config, ConfigError, get_config
from escrow_automation import EscrowAutomation
from escrow_database import EscrowDatabase
from escrow_errors import DatabaseError
from escrow_service import EscrowService
from identity import TelegramIdentityVerifier
from memory_store import InMemoryEscrowDatabase
from notifications import EscrowNotifier
from transfer_service import create_transfer_client
from utils import setup_logger

logger = logging.getLogger(__name__)


async def initialize_store(config: Config) -> Any:
    """
    Connect the configured escrow store and create its tables.

    Args:
        config: Application configuration

    Returns:
        Connected store instance

    Raises:
        DatabaseError: If PostgreSQL is unreachable
    """
    if config.store_backend == 'memory':
        database = InMemoryEscrowDatabase()
    else:
        database = EscrowDatabase(
            config.database_url,
            min_size=config.db_pool_min_size,
            max_size=config.db_pool_max_size
        )

    await database.connect()
    await database.initialize_tables()
    logger.info(f"✓ Escrow store ready ({config.store_backend})")
    return database


def build_service(config: Config, database: Any, bot: Optional[Bot]) -> EscrowService:
    """Wire the escrow service with its collaborators."""
    notifier = EscrowNotifier(
        bot=bot,
        admin_chat_id=config.admin_chat_id,
        currency=config.currency,
        decimals=config.currency_decimals
    )
    return EscrowService(
        database,
        create_transfer_client(config),
        notifier=notifier,
        config=config
    )


def display_startup_banner(config: Config) -> None:
    """Log startup information."""
    logger.info("=" * 60)
    logger.info(f"{config.app_name} v{config.app_version} ({config.app_env})")
    logger.info(f"Store: {config.store_backend}")
    logger.info(f"Deposit window: {config.deposit_window_hours}h")
    logger.info(
        f"Transfers: {'simulated' if config.uses_simulated_transfers else config.transfer_api_url}"
    )
    logger.info(f"Release on transfer failure: {config.release_on_transfer_failure}")
    logger.info(f"Notifications: {'enabled' if config.enable_notifications else 'disabled'}")
    logger.info(f"API: http://{config.api_host}:{config.api_port}")
    logger.info("=" * 60)


async def async_main(config: Config) -> None:
    """
    Main asynchronous function that orchestrates the entire application.
    """
    database = None
    automation = None
    service = None
    bot = Bot(config.telegram_bot_token) if config.enable_notifications else None

    try:
        database = await initialize_store(config)
        service = build_service(config, database, bot)

        automation = EscrowAutomation(service, config)
        await automation.start()

        verifier = TelegramIdentityVerifier(
            config.telegram_bot_token,
            max_age_seconds=config.auth_max_age_seconds
        )
        app = create_app(service, verifier, config, automation=automation)

        display_startup_banner(config)

        server = uvicorn.Server(uvicorn.Config(
            app=app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
            access_log=True,
        ))
        # uvicorn installs its own SIGINT/SIGTERM handlers and returns on shutdown
        await server.serve()

    finally:
        logger.info("Performing cleanup...")

        if automation is not None:
            await automation.stop()
            logger.info("✓ Escrow scheduler stopped")

        if service is not None:
            await service.wait_for_notifications()

        if bot is not None:
            try:
                await bot.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down Telegram bot: {e}")

        if database is not None:
            await database.disconnect()
            logger.info("✓ Database connections closed")

        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Sets up logging and runs the async main function.
    """
    try:
        config = get_config()
    except ConfigError as e:
        print(f"CRITICAL ERROR: Invalid configuration: {e}")
        sys.exit(1)

    setup_logger(
        log_level=config.log_level,
        log_file=config.log_file,
        log_format=config.log_format,
        max_bytes=config.log_max_size,
        backup_count=config.log_backup_count
    )
    logger.info("Logger initialized successfully")

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except DatabaseError as e:
        logger.critical(f"Escrow store unavailable: {e}")
        sys.exit(1)
    except Exception as e:
        logger.critical(f"Application failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
