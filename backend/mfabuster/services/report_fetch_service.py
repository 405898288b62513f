"""Daily GAM report fetch trigger."""

import logging
import os
from typing import Any, Dict

from mfabuster.deps import epoch_ms, now_iso
from mfabuster.exceptions import FunctionError
from mfabuster.worker_resilience import (
    WorkerCallOptions,
    call_worker_with_resilience,
    log_cold_start,
)

logger = logging.getLogger(__name__)


async def run_scheduled_gam_reports_fetch(supabase) -> Dict[str, Any]:
    """Ask the GAM report worker to fetch yesterday's reports for everyone.

    Raises:
        FunctionError: 500 when the worker URL is missing or every attempt
            failed.
    """
    request_id = f"scheduled-{epoch_ms()}"
    logger.info(f"[{request_id}] Scheduled GAM reports fetch triggered")

    worker_url = os.getenv("RENDER_WORKER_URL")
    if not worker_url:
        raise FunctionError(
            500,
            "RENDER_WORKER_URL environment variable not set",
            triggeredAt=now_iso(),
        )

    result = await call_worker_with_resilience(
        WorkerCallOptions(
            worker_url=worker_url,
            endpoint="/fetch-reports",
            request_id=request_id,
            body={"triggered_by": "pg_cron_scheduled_edge_function"},
        )
    )
    await log_cold_start(supabase, "gam-reports-worker", request_id, result)

    if not result.success:
        logger.error(f"[{request_id}] Error triggering scheduled GAM reports fetch: {result.error}")
        raise FunctionError(
            500, result.error or "Worker call failed", triggeredAt=now_iso()
        )

    logger.info(f"[{request_id}] Worker triggered successfully after {result.attempts} attempt(s)")
    return {
        "success": True,
        "message": "Scheduled GAM reports fetch triggered successfully",
        "workerResponse": result.data,
        "coldStart": result.cold_start,
        "attempts": result.attempts,
        "durationMs": result.total_duration_ms,
        "triggeredAt": now_iso(),
    }
