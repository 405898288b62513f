"""New publisher onboarding: historical GAM fetch followed by a site audit.

When a publisher is added, the GAM report worker pulls its last two months
of reports. The worker also writes a pending ``audit_job_queue`` row listing
the publisher's sites; once that row shows up, the site monitor worker is
asked to audit those sites. The site audit is best effort: its failure never
changes the outcome reported for the report fetch.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from mfabuster.deps import epoch_ms, now_iso, run_query, sleep_ms, _error_message
from mfabuster.exceptions import FunctionError
from mfabuster.worker_resilience import (
    WorkerCallOptions,
    call_worker_with_resilience,
    log_cold_start,
)

logger = logging.getLogger(__name__)

AUDIT_JOB_POLL_DELAYS_MS = [500, 1000, 1500, 2000, 2500]

SITE_AUDIT_MAX_RETRIES = 2
SITE_AUDIT_TIMEOUT_MS = 60_000
SITE_AUDIT_RETRY_DELAYS_MS = [5_000, 10_000]


@dataclass
class SiteAuditTrigger:
    success: bool
    site_audit_triggered: bool
    error: Optional[str] = None


async def fetch_audit_job_queue(
    supabase, request_id: str, publisher_id: str
) -> Optional[Dict[str, Any]]:
    """Latest pending audit job for the publisher, or None."""
    try:
        response = await run_query(
            lambda: supabase.table("audit_job_queue")
            .select("id, publisher_id, sites, status, queued_at")
            .eq("publisher_id", publisher_id)
            .eq("status", "pending")
            .order("queued_at", desc=True)
            .limit(1)
            .execute()
        )
    except APIError as e:
        logger.error(f"[{request_id}] Error querying audit_job_queue: {_error_message(e)}")
        return None

    rows = response.data or []
    if rows:
        job = rows[0]
        logger.info(f"[{request_id}] Found pending audit job: {job.get('id')} with status {job.get('status')}")
        return job

    logger.warning(f"[{request_id}] No pending audit job found for publisher {publisher_id}")
    return None


async def wait_for_audit_job(
    supabase,
    request_id: str,
    publisher_id: str,
    delays_ms: List[int] = AUDIT_JOB_POLL_DELAYS_MS,
) -> Optional[Dict[str, Any]]:
    """Poll for the audit job the worker writes after a successful fetch."""
    max_polls = len(delays_ms)
    for poll, delay in enumerate(delays_ms, start=1):
        await sleep_ms(delay)
        job = await fetch_audit_job_queue(supabase, request_id, publisher_id)
        if job:
            logger.info(f"[{request_id}] Found audit job queue entry after {poll} attempt(s)")
            return job
        if poll < max_polls:
            logger.info(
                f"[{request_id}] Audit job queue entry not yet available, "
                f"retrying ({poll}/{max_polls})..."
            )
    return None


def extract_job_site_names(sites: Any) -> List[str]:
    """Site names from an audit job's ``sites`` column.

    Entries are either plain strings or objects carrying ``name`` and/or
    ``url``; ``name`` wins. Empty values are dropped.
    """
    if not isinstance(sites, list):
        return []
    names = []
    for site in sites:
        if isinstance(site, str):
            name = site
        elif isinstance(site, dict):
            name = site.get("name") or site.get("url")
        else:
            name = None
        if name:
            names.append(name)
    return names


async def trigger_site_audit(
    request_id: str,
    publisher_id: str,
    audit_job: Dict[str, Any],
    site_monitor_url: Optional[str],
    worker_secret: Optional[str] = None,
) -> SiteAuditTrigger:
    """Ask the site monitor worker to audit the job's sites.

    Always reports ``success=True``; ``site_audit_triggered`` and ``error``
    carry what actually happened.
    """
    try:
        if not site_monitor_url:
            logger.warning(
                f"[{request_id}] Site monitoring worker URL not configured, "
                "skipping site audit trigger"
            )
            return SiteAuditTrigger(success=True, site_audit_triggered=False)

        logger.info(
            f"[{request_id}] Triggering site audit for publisher {publisher_id} "
            f"with job ID {audit_job.get('id')}"
        )
        site_names = extract_job_site_names(audit_job.get("sites"))

        if not site_names:
            logger.warning(
                f"[{request_id}] No sites found in audit job queue entry, "
                "cannot trigger site audit"
            )
            return SiteAuditTrigger(success=True, site_audit_triggered=False)

        logger.info(
            f"[{request_id}] Site audit will process {len(site_names)} site(s): "
            f"{', '.join(site_names)}"
        )

        result = await call_worker_with_resilience(
            WorkerCallOptions(
                worker_url=site_monitor_url,
                endpoint="/audit-batch-sites",
                request_id=f"{request_id}-site-audit",
                body={"publisher_id": publisher_id, "site_names": site_names},
                worker_secret=worker_secret,
                max_retries=SITE_AUDIT_MAX_RETRIES,
                initial_timeout_ms=SITE_AUDIT_TIMEOUT_MS,
                retry_delays_ms=list(SITE_AUDIT_RETRY_DELAYS_MS),
            )
        )

        if not result.success:
            logger.warning(
                f"[{request_id}] Site audit trigger failed after {result.attempts} "
                f"attempt(s): {result.error}. Will continue in background."
            )
            return SiteAuditTrigger(
                success=True, site_audit_triggered=False, error=result.error
            )

        logger.info(f"[{request_id}] Successfully triggered site audit for publisher {publisher_id}")
        return SiteAuditTrigger(success=True, site_audit_triggered=True)

    except Exception as e:
        logger.exception(f"[{request_id}] Error triggering site audit")
        return SiteAuditTrigger(
            success=True, site_audit_triggered=False, error=str(e) or type(e).__name__
        )


async def run_new_publisher_report_and_audit(
    supabase, publisher_id: Optional[str]
) -> Dict[str, Any]:
    """Kick off the historical fetch for a new publisher, then its site audit.

    Returns:
        Response payload; ``success`` mirrors the report fetch only.

    Raises:
        FunctionError: 400 without a publisher id, 500 when the workers or
            Supabase are not configured.
    """
    request_id = f"new-pub-{epoch_ms()}"

    if not publisher_id:
        raise FunctionError(
            400, "publisherId is required in request body", requestId=request_id
        )

    logger.info(f"[{request_id}] New publisher GAM report triggered for publisher: {publisher_id}")

    render_worker_url = os.getenv("RENDER_WORKER_URL")
    site_monitor_url = os.getenv("SITE_MONITOR_WORKER_URL")
    worker_secret = os.getenv("WORKER_SECRET")

    if not render_worker_url:
        raise FunctionError(
            500,
            "RENDER_WORKER_URL environment variable not set",
            requestId=request_id,
            triggeredAt=now_iso(),
        )
    if not os.getenv("SUPABASE_URL") or not os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        raise FunctionError(
            500,
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY environment variables not set",
            requestId=request_id,
            triggeredAt=now_iso(),
        )

    logger.info(f"[{request_id}] Triggering worker to fetch last 2 months of data")
    result = await call_worker_with_resilience(
        WorkerCallOptions(
            worker_url=render_worker_url,
            endpoint="/fetch-historical-reports",
            request_id=request_id,
            body={
                "publisherId": publisher_id,
                "triggered_by": "new_publisher_edge_function",
            },
        )
    )
    await log_cold_start(supabase, "gam-reports-worker-historical", request_id, result)

    site_audit_triggered = False
    site_audit_error = None

    if result.success:
        logger.info(
            f"[{request_id}] Historical report fetch initiated successfully "
            f"after {result.attempts} attempt(s)"
        )
        audit_job = await wait_for_audit_job(supabase, request_id, publisher_id)

        if audit_job:
            trigger = await trigger_site_audit(
                request_id, publisher_id, audit_job, site_monitor_url, worker_secret
            )
            site_audit_triggered = trigger.site_audit_triggered
            site_audit_error = trigger.error
            logger.info(
                f"[{request_id}] Site audit trigger result: triggered={site_audit_triggered}, "
                f"error={site_audit_error or 'none'}"
            )
        else:
            logger.warning(
                f"[{request_id}] Audit job queue entry was not found after "
                f"{len(AUDIT_JOB_POLL_DELAYS_MS)} attempts. Site audit will not be "
                "triggered but GAM data was fetched successfully."
            )
    else:
        logger.warning(
            f"[{request_id}] Worker call failed after {result.attempts} attempt(s): {result.error}"
        )

    return {
        "success": result.success,
        "message": (
            "Historical GAM report fetch initiated for new publisher"
            if result.success
            else "Historical fetch encountered issues but will continue in background"
        ),
        "publisherId": publisher_id,
        "requestId": request_id,
        "workerResponse": result.data,
        "coldStart": result.cold_start,
        "attempts": result.attempts,
        "durationMs": result.total_duration_ms,
        "siteAudit": {
            "triggered": site_audit_triggered,
            "error": site_audit_error,
        },
        "triggeredAt": now_iso(),
    }
