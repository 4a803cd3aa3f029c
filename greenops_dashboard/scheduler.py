"""APScheduler: re-runs the full cost sync for every connected account."""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from greenops_dashboard import supabase_client as db
from greenops_dashboard.config import SYNC_INTERVAL_HOURS
from greenops_dashboard.services.costs import sync_costs

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def sync_connected_accounts() -> dict:
    """Full sync for each connected user. One failing account does not stop the rest."""
    result = {"processed": 0, "synced": 0, "errors": 0}
    for user_id in db.get_connected_users():
        result["processed"] += 1
        try:
            stats = sync_costs(user_id)
        except Exception as e:
            logger.error("Scheduled sync failed for %s: %s", user_id, e)
            result["errors"] += 1
            continue
        if stats is not None:
            result["synced"] += 1
    return result


async def run_scheduled_sync():
    try:
        result = await asyncio.to_thread(sync_connected_accounts)
        if result["processed"] > 0:
            logger.info(
                "Scheduled sync: %d processed, %d synced, %d errors",
                result["processed"],
                result["synced"],
                result["errors"],
            )
    except Exception as e:
        logger.error("Scheduled sync failed: %s", e)


def start_scheduler() -> None:
    scheduler.add_job(run_scheduled_sync, "interval", hours=SYNC_INTERVAL_HOURS,
                      id="sync_connected_accounts", replace_existing=True)
    scheduler.start()
    logger.info("Scheduler started: syncing connected accounts every %d hours",
                SYNC_INTERVAL_HOURS)
