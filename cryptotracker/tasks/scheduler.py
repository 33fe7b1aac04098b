import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cryptotracker.container import ServiceContainer

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def refresh_portfolio(services: ServiceContainer):
    """
    Scheduled task to refresh portfolio prices.
    Inside the cooldown this only recomputes from cached prices.
    """
    logger.info("Starting scheduled portfolio refresh...")
    try:
        result = await services.portfolio.refresh()
        logger.info(
            f"Refresh complete ({result.status}): value=${result.summary.total_value:.2f}, "
            f"pl=${result.summary.profit_loss:.2f}"
        )
    except Exception as e:
        logger.error(f"Portfolio refresh failed: {e}", exc_info=True)


def start_scheduler(services: ServiceContainer):
    """Start the APScheduler with the refresh job (first run immediately)."""
    interval = services.settings.poll_interval_seconds

    scheduler.add_job(
        refresh_portfolio,
        trigger=IntervalTrigger(seconds=interval),
        args=[services],
        id="portfolio_refresh",
        name="Refresh portfolio prices",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )

    scheduler.start()
    logger.info(f"Scheduler started with {interval}s refresh interval")


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete")
