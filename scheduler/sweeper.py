from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app_logging.activity_logger import ActivityLogger
from config.settings import settings
from workflow.store import ConversationStore

logger = ActivityLogger("store_sweeper")
_scheduler: AsyncIOScheduler | None = None


# ── Scheduler job ──────────────────────────────────────────────────────────────

def sweep_store(store: ConversationStore) -> int:
    """Remove completed conversations whose grace window has passed."""
    purged = store.purge_expired()
    if purged:
        logger.info("store_swept", purged=purged, active=len(store))
    return purged


# ── Lifecycle ──────────────────────────────────────────────────────────────────

def start_sweeper(store: ConversationStore, interval_seconds: int | None = None) -> AsyncIOScheduler:
    """Must be called with the bot's event loop running."""
    global _scheduler
    interval = interval_seconds or settings.store_sweep_interval_seconds

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        sweep_store,
        trigger=IntervalTrigger(seconds=interval),
        args=[store],
        id="conversation_sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    _scheduler.start()

    logger.info("sweeper_started", interval_seconds=interval)
    return _scheduler


def stop_sweeper() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("sweeper_stopped")
    _scheduler = None
