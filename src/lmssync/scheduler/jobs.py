"""
APScheduler jobs for background sync.

A nightly incremental chain (users, groups, memberships, courses, course
properties, enrollments) keeps the local store fresh without anyone
pressing a button. On-demand syncs through the API share the same lock, so
a nightly run that finds a sync already in flight logs and skips.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lmssync.config import get_settings
from lmssync.errors import SyncConflictError
from lmssync.timeutil import utcnow

logger = logging.getLogger(__name__)


def build_scheduler(orchestrator) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        orchestrator: SyncOrchestrator whose lock guards every run.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"orchestrator": orchestrator},
    )

    return scheduler


async def _nightly_sync(orchestrator) -> None:
    """Nightly job: incremental sync chain. Never raises into the scheduler."""
    logger.info("Nightly sync starting at %s", utcnow().isoformat())
    try:
        results = await orchestrator.run_chain(mode="incremental")
    except SyncConflictError as exc:
        logger.warning("Nightly sync skipped, sync already running: %s", exc.current)
        return
    except Exception as exc:
        logger.error("Nightly sync failed: %s", exc)
        return
    for result in results:
        logger.info(
            "Nightly %s: %s (%d processed, %d failed)",
            result["entityType"], result["status"], result["processed"], result["failed"],
        )
