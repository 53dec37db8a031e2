"""
Bot auto-reactivation scheduler

Runs the reactivation check for every configured company on a cron schedule
(BOT_REACTIVATION_CRON, every 15 minutes by default).
"""
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import settings
from ..models import ReactivationStats
from .bot_reactivation import check_and_reactivate_bots

logger = logging.getLogger(__name__)

JOB_ID = "bot_auto_reactivation"

_scheduler: Optional[AsyncIOScheduler] = None


def get_active_companies() -> List[str]:
    """Companies processed on every run (AUTO_REACTIVATION_COMPANIES)"""
    return settings.get_reactivation_companies()


def build_cron_trigger(expression: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expression, timezone=settings.scheduler_timezone)
    except ValueError as e:
        raise ValueError(f"Invalid bot reactivation cron expression {expression!r}: {e}") from e


def _log_stats(c_name: str, stats: ReactivationStats) -> None:
    logger.info(f"✅ {c_name} completed:")
    logger.info(f"   - Checked: {stats.total_checked} chats")
    logger.info(f"   - Reactivated: {stats.reactivated} bots")
    logger.info(f"   - Failed: {stats.failed} errors")

    if stats.errors:
        logger.info("   - Errors:")
        for err in stats.errors:
            logger.info(f"     • {err.number}: {err.error}")


async def run_reactivation_cycle(
    companies: Optional[List[str]] = None,
    dry_run: bool = False
) -> Dict[str, ReactivationStats]:
    """One scheduled pass over all companies"""
    started_at = datetime.utcnow()
    started = time.monotonic()
    logger.info(f"⏰ Running bot auto-reactivation check at {started_at.isoformat()}")

    results: Dict[str, ReactivationStats] = {}
    for c_name in (companies if companies is not None else get_active_companies()):
        try:
            logger.info(f"📋 Processing {c_name}...")
            stats = check_and_reactivate_bots(c_name, dry_run=dry_run)
            results[c_name] = stats
            _log_stats(c_name, stats)
        except Exception as e:
            logger.error(f"❌ Error processing {c_name}: {e}", exc_info=True)

    duration = time.monotonic() - started
    logger.info(f"✅ Bot reactivation check completed in {duration:.2f}s")
    return results


def start_bot_reactivation_scheduler() -> bool:
    """Start the cron job on the running asyncio loop, returns False when nothing was started"""
    global _scheduler

    if not settings.bot_reactivation_enabled:
        logger.info("🚫 Bot auto-reactivation scheduler is disabled")
        return False

    if is_scheduler_running():
        logger.warning("⚠️ Bot auto-reactivation scheduler is already running")
        return False

    trigger = build_cron_trigger(settings.bot_reactivation_cron)
    logger.info(f"🤖 Starting bot auto-reactivation scheduler ({settings.bot_reactivation_cron})")

    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
    scheduler.add_job(
        run_reactivation_cycle,
        trigger=trigger,
        id=JOB_ID,
        name="Bot auto-reactivation check",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    scheduler.start()
    _scheduler = scheduler

    logger.info("✅ Bot auto-reactivation scheduler started successfully")
    return True


def stop_bot_reactivation_scheduler() -> None:
    global _scheduler

    if _scheduler is None:
        return

    if _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("🛑 Bot auto-reactivation scheduler stopped")


def is_scheduler_running() -> bool:
    return _scheduler is not None and _scheduler.running


async def run_bot_reactivation_once(c_name: str, dry_run: bool = False) -> ReactivationStats:
    """Run the check manually for one company and log a full report"""
    logger.info(f"🧪 Running bot reactivation check manually for {c_name} (dry_run: {dry_run})")

    try:
        stats = check_and_reactivate_bots(c_name, dry_run=dry_run)

        logger.info(f"📊 Results for {c_name}:")
        logger.info(f"   - Checked: {stats.total_checked} chats")
        logger.info(f"   - Reactivated: {stats.reactivated} bots")
        logger.info(f"   - Failed: {stats.failed} errors")

        if stats.results:
            logger.info("📝 Reactivated prospects:")
            for result in stats.results:
                logger.info(f"   • {result.number}: inactive for {result.inactive_minutes} minutes, success: {result.success}")

        if stats.errors:
            logger.info("❌ Errors:")
            for err in stats.errors:
                logger.info(f"   • {err.number}: {err.error}")

        return stats

    except Exception as e:
        logger.error(f"❌ Error running bot reactivation: {e}", exc_info=True)
        raise
