"""
Fashion Marketplace Escrow - Main Application Entry Point

This module orchestrates the entire application by:
- Loading configuration
- Initializing logger and the order store
- Wiring the escrow, dispute, KYC and admin services
- Starting the notification worker and the automation scheduler
- Serving the FastAPI app with uvicorn
- Managing graceful shutdown
"""

import asyncio
import logging
import sys
from typing import List, Optional

import uvicorn
from telegram import Bot

from admin_review import AdminReviewService
from api_server import create_app
from catalog_service import CatalogService
from config import Config, ConfigError, get_config
from database import DatabaseError, create_postgres_store
from dispute_manager import DisputeManager
from escrow_automation import EscrowAutomation
from escrow_service import EscrowService
from identity import JWTIdentityProvider
from kyc_service import KycService
from notification_service import (
    InAppNotificationChannel,
    NotificationChannel,
    NotificationEmitter,
    TelegramNotificationChannel,
    WebhookNotificationChannel,
)
from order_store import InMemoryOrderStore, OrderStore
from utils import setup_logger

logger = logging.getLogger(__name__)


async def build_store(config: Config) -> OrderStore:
    """
    Create the order store: PostgreSQL when DATABASE_URL is set, otherwise in-memory.

    Raises:
        DatabaseError: If PostgreSQL is configured but unreachable
    """
    if config.has_database_config:
        logger.info("Initializing PostgreSQL order store...")
        store = await create_postgres_store(
            config.database_url,
            min_size=config.db_pool_min_size,
            max_size=config.db_pool_max_size
        )
        logger.info("✓ PostgreSQL order store ready")
        return store

    logger.warning("DATABASE_URL not set - using the in-memory order store (data is not persisted)")
    return InMemoryOrderStore()


def build_channels(config: Config, store: OrderStore) -> List[NotificationChannel]:
    """Create the notification channels enabled by configuration."""
    channels: List[NotificationChannel] = [InAppNotificationChannel(store)]

    if config.has_telegram_config:
        channels.append(TelegramNotificationChannel(
            Bot(token=config.telegram_bot_token),
            admin_chat_id=config.admin_chat_id
        ))
        logger.info("  ✓ Telegram notifications enabled")

    if config.notification_webhook_url:
        channels.append(WebhookNotificationChannel(
            config.notification_webhook_url,
            timeout=config.notification_timeout
        ))
        logger.info("  ✓ Webhook notifications enabled")

    return channels


def display_startup_banner(config: Config) -> None:
    """Log a summary of the running configuration."""
    logger.info(f"{'=' * 60}")
    logger.info(f"🧵 {config.app_name} v{config.app_version}")
    logger.info(f"{'=' * 60}")
    logger.info(f"Environment: {config.app_env}")
    logger.info(f"Currencies: {', '.join(config.supported_currencies)}")
    logger.info(f"Auto-release after: {config.auto_release_days} days")
    logger.info(f"Ship deadline: {config.ship_deadline_days} days")
    logger.info(f"Payment timeout: {config.payment_timeout_hours} hours")
    logger.info(f"Designer KYC required: {config.require_designer_kyc}")
    logger.info(f"API: http://{config.api_host}:{config.api_port}")
    logger.info(f"{'=' * 60}")


async def async_main(config: Config) -> None:
    """Wire every component, serve the API and shut down cleanly."""
    display_startup_banner(config)

    store = await build_store(config)
    emitter: Optional[NotificationEmitter] = None
    automation: Optional[EscrowAutomation] = None

    try:
        escrow_service = EscrowService(store, config)
        dispute_manager = DisputeManager(store, escrow_service)
        kyc_service = KycService(store)
        catalog_service = CatalogService(store, config)
        admin_review = AdminReviewService(store, escrow_service, dispute_manager, kyc_service)
        identity = JWTIdentityProvider(
            config.jwt_secret,
            algorithm=config.jwt_algorithm,
            audience=config.jwt_audience
        )

        if config.enable_notifications:
            logger.info("Setting up notifications...")
            emitter = NotificationEmitter(
                build_channels(config, store),
                max_queue=config.notification_queue_size
            )
            escrow_service.add_listener(emitter.on_transition)
            await emitter.start()
            logger.info("✓ Notification worker started")

        if config.automation_enabled:
            automation = EscrowAutomation(escrow_service, config)
            await automation.start()
            logger.info("✓ Escrow automation started")

        app = create_app(
            store, escrow_service, dispute_manager, kyc_service,
            admin_review, identity, config,
            catalog_service=catalog_service
        )
        server = uvicorn.Server(uvicorn.Config(
            app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        ))

        logger.info("🚀 Escrow service is ready to accept requests")
        await server.serve()

    finally:
        logger.info("Shutting down...")

        if automation:
            await automation.stop()
            logger.info("✓ Escrow automation stopped")

        if emitter:
            await emitter.stop()
            logger.info("✓ Notifications flushed")

        await store.close()
        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Loads configuration, sets up logging and runs the async main function.
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
    except DatabaseError as e:
        logger.critical(f"Application failed to start: {e}", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted. Goodbye!")


if __name__ == "__main__":
    main()
