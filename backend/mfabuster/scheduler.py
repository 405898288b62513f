"""APScheduler jobs for the MFA Buster function service.

Replaces the pg_cron triggers with in-process jobs and exposes the
lifecycle helpers ``start_scheduler()`` and ``shutdown_scheduler()``.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mfabuster.deps import get_supabase
from mfabuster.exceptions import FunctionError
from mfabuster.services.audit_cron_service import run_scheduled_all_audits
from mfabuster.services.exchange_rate_service import update_exchange_rates
from mfabuster.services.invitation_service import cleanup_invites
from mfabuster.services.report_fetch_service import run_scheduled_gam_reports_fetch

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scheduler singleton
# ---------------------------------------------------------------------------
scheduler = AsyncIOScheduler()


# ---------------------------------------------------------------------------
# Scheduled job functions
# ---------------------------------------------------------------------------


async def run_exchange_rate_refresh():
    try:
        result = await update_exchange_rates(get_supabase())
        logger.info(f"Scheduled exchange rate refresh stored {result.get('ratesUpdated')} rates")
    except FunctionError as e:
        logger.error(f"Scheduled exchange rate refresh failed: {e.error}")


async def run_gam_reports_fetch():
    try:
        result = await run_scheduled_gam_reports_fetch(get_supabase())
        logger.info(
            f"Scheduled GAM reports fetch triggered "
            f"(coldStart={result.get('coldStart')}, attempts={result.get('attempts')})"
        )
    except FunctionError as e:
        logger.error(f"Scheduled GAM reports fetch failed: {e.error}")


async def run_all_audits():
    """Daily audit run over every enabled publisher. Runs at 2 AM UTC."""
    try:
        result = await run_scheduled_all_audits(get_supabase())
        logger.info(
            f"Scheduled all-audits run finished: {result.get('executionStatus')} "
            f"({result.get('queuedCount')} queued, {result.get('failedCount')} failed)"
        )
    except FunctionError as e:
        logger.error(f"Scheduled all-audits run failed: {e.error}")


async def run_invitation_cleanup():
    try:
        result = await cleanup_invites(get_supabase())
        logger.info(f"Invitation cleanup expired {result.get('cleaned', 0)} invitations")
    except FunctionError as e:
        logger.error(f"Invitation cleanup failed: {e.error}")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def start_scheduler():
    """Start the APScheduler for background jobs."""
    if scheduler.running:
        logger.info("Scheduler already running; skipping start")
        return

    # Daily exchange rates at 0:30 AM UTC, ahead of the report fetch
    scheduler.add_job(
        run_exchange_rate_refresh,
        "cron",
        hour=0,
        minute=30,
        id="update_exchange_rates",
        replace_existing=True,
    )

    # Daily GAM report fetch at 1:00 AM UTC
    scheduler.add_job(
        run_gam_reports_fetch,
        "cron",
        hour=1,
        minute=0,
        id="scheduled_gam_reports_fetch",
        name="Fetch GAM reports for all publishers",
        max_instances=1,
        replace_existing=True,
    )

    # Daily site audits at 2:00 AM UTC
    scheduler.add_job(
        run_all_audits,
        "cron",
        hour=2,
        minute=0,
        id="scheduled_all_audits",
        name="Audit sites for all publishers",
        max_instances=1,
        replace_existing=True,
    )

    # Daily invitation expiry at 3:00 AM UTC
    scheduler.add_job(
        run_invitation_cleanup,
        "cron",
        hour=3,
        minute=0,
        id="cleanup_invites",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started - exchange rates 0:30, GAM reports 1:00, "
        "site audits 2:00, invitation cleanup 3:00 UTC"
    )


def shutdown_scheduler():
    """Gracefully shut down the scheduler if it is running."""
    if getattr(scheduler, "running", False):
        scheduler.shutdown()
