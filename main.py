"""
Main entry point for the appointment slot engine.
Runs the HTTP API (slot routes and Stripe webhook) together with the
scheduled jobs.
"""

import asyncio
import sys
from typing import Optional

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiohttp import web

from config import settings
from notifications import set_bot_instance
from scheduler import setup_scheduler, shutdown_scheduler
from utils.logging_config import setup_logging
from webhook import create_app

logger = setup_logging(name=__name__, log_file="app.log")


def create_bot() -> Optional[Bot]:
    """Telegram bot used for notifications, or None when no token is configured."""
    if not settings.bot_token:
        logger.warning("BOT_TOKEN not set - notifications are disabled")
        return None
    return Bot(
        token=settings.bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )


async def main() -> None:
    """Start the scheduler and serve the API until cancelled."""
    try:
        settings.validate_all_required()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    bot = create_bot()
    set_bot_instance(bot)

    if settings.scheduler_enabled:
        setup_scheduler()

    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, host=settings.host, port=settings.port)

    try:
        await site.start()
        logger.info(f"Slot engine listening on {settings.host}:{settings.port}")
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Server cancelled")
    finally:
        logger.info("Shutting down...")
        shutdown_scheduler()
        await runner.cleanup()

        if bot:
            try:
                await bot.session.close()
                logger.info("Bot session closed")
            except Exception as e:
                logger.error(f"Error closing bot session: {e}", exc_info=True)

        logger.info("Shutdown complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
