#!/usr/bin/env python3
"""
Background worker for the bot auto-reactivation job
Starts the cron scheduler and keeps the event loop alive until interrupted
"""
import asyncio
import logging
import signal
import sys
import os

from sqlalchemy import text

from virtualvoices import __version__
from virtualvoices.config import settings
from virtualvoices.database import get_tenant_engine, dispose_tenant_engines
from virtualvoices.services.reactivation_scheduler import (
    get_active_companies,
    is_scheduler_running,
    start_bot_reactivation_scheduler,
    stop_bot_reactivation_scheduler,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(settings.log_file, encoding='utf-8')
    ]
)

logger = logging.getLogger(__name__)


def show_startup_banner():
    """Show startup banner with system info"""
    logger.info("🤖 Bot auto-reactivation worker - Starting up...")
    logger.info("=" * 50)
    logger.info(f"📅 Version: {__version__}")
    logger.info(f"🐍 Python: {sys.version.split()[0]}")
    logger.info(f"📁 Working directory: {os.getcwd()}")
    logger.info(f"⏱️ Schedule: {settings.bot_reactivation_cron} ({settings.scheduler_timezone})")
    logger.info(f"🏢 Companies: {', '.join(get_active_companies()) or 'none'}")
    logger.info(f"⌛ Default inactivity threshold: {settings.default_inactivity_threshold_minutes}min")
    logger.info("=" * 50)


def test_connections() -> bool:
    """Check that every company database is reachable"""
    all_ok = True
    for c_name in get_active_companies():
        try:
            engine = get_tenant_engine(c_name)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info(f"✅ Database connection successful for {c_name}")
        except Exception as e:
            logger.error(f"❌ Database connection failed for {c_name}: {e}")
            all_ok = False
    return all_ok


async def run_worker():
    show_startup_banner()

    if not test_connections():
        logger.warning("⚠️ Some company databases are unreachable, their checks will report errors")

    start_bot_reactivation_scheduler()
    if not is_scheduler_running():
        logger.warning("⚠️ Nothing scheduled, worker exiting")
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers, Ctrl+C still raises KeyboardInterrupt
            pass

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down bot auto-reactivation scheduler...")
        stop_bot_reactivation_scheduler()
        dispose_tenant_engines()


if __name__ == "__main__":
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("👋 Worker stopped by user")
