"""Site audit dispatch: single batch, trigger-all and the daily cron run.

``audit_batch_sites`` is the only code that talks to the site monitor
worker directly. The bulk paths (trigger-all and the scheduled cron) go
through the ``audit-batch-sites`` function over HTTP so every audit request
lands in the same place, gets the same retry policy and the same cold-start
telemetry.
"""

import logging
import math
import os
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from postgrest.exceptions import APIError

from mfabuster.deps import (
    epoch_ms,
    functions_base_url,
    now_iso,
    run_query,
    sleep_ms,
    _error_message,
)
from mfabuster.exceptions import FunctionError
from mfabuster.helpers.audit_helpers import extract_site_names, fetch_publisher_site_names
from mfabuster.worker_resilience import (
    WorkerCallOptions,
    call_worker_with_resilience,
    log_cold_start,
)

logger = logging.getLogger(__name__)

CRON_JOB_NAME = "scheduled-all-audits-cron"

BATCH_MAX_RETRIES = 2
BATCH_TIMEOUT_MS = 120_000
BATCH_RETRY_DELAYS_MS = [10_000, 20_000]

PUBLISHER_DELAY_RANGE_MS = (2_000, 5_000)

# Per-publisher breaker used by the cron (distinct from the worker breaker)
PUBLISHER_FAILURE_THRESHOLD = 3
PUBLISHER_FAILURE_WINDOW = timedelta(minutes=60)

CRON_AUDIT_MAX_RETRIES = 3
CRON_AUDIT_BASE_DELAY_MS = 1_000
CRON_AUDIT_TIMEOUT_SECONDS = 30


def _function_key() -> str:
    return os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY") or ""


def _random_delay_ms() -> int:
    low, high = PUBLISHER_DELAY_RANGE_MS
    return random.randint(low, high)


# ============================================================================
# audit-batch-sites
# ============================================================================


async def audit_batch_sites(
    supabase,
    publisher_id: Optional[str],
    site_names: Any,
    priority: str = "normal",
) -> Dict[str, Any]:
    """Forward one publisher's sites to the site monitor worker.

    Raises:
        FunctionError: 400 on missing input, 503 when the worker is not
            configured or did not accept the batch.
    """
    request_id = str(uuid.uuid4())

    if not publisher_id:
        raise FunctionError(400, "Missing required field: publisher_id", requestId=request_id)
    if not isinstance(site_names, list) or not site_names:
        raise FunctionError(
            400,
            "Missing required field: site_names (non-empty array)",
            requestId=request_id,
        )

    worker_url = os.getenv("SITE_MONITOR_WORKER_URL")
    if not worker_url:
        logger.error(f"[{request_id}] SITE_MONITOR_WORKER_URL not configured")
        raise FunctionError(
            503, "Site monitoring worker is not configured", requestId=request_id
        )

    logger.info(
        f"[{request_id}] Received batch audit request for publisher {publisher_id} "
        f"with {len(site_names)} sites"
    )

    result = await call_worker_with_resilience(
        WorkerCallOptions(
            worker_url=worker_url,
            endpoint="/audit-batch-sites",
            request_id=request_id,
            body={
                "publisher_id": publisher_id,
                "site_names": site_names,
                "priority": priority,
            },
            worker_secret=os.getenv("WORKER_SECRET"),
            max_retries=BATCH_MAX_RETRIES,
            initial_timeout_ms=BATCH_TIMEOUT_MS,
            retry_delays_ms=list(BATCH_RETRY_DELAYS_MS),
        )
    )
    logger.info(
        f"[{request_id}] Worker response: success={result.success}, "
        f"attempts={result.attempts}, duration={result.total_duration_ms}ms"
    )
    await log_cold_start(supabase, "site-monitor-worker-batch", request_id, result)

    if not result.success:
        logger.warning(
            f"[{request_id}] Worker call failed after {result.attempts} attempt(s): {result.error}"
        )
        raise FunctionError(
            503,
            result.error or "Failed to process batch audit request",
            requestId=request_id,
            attempts=result.attempts,
            durationMs=result.total_duration_ms,
        )

    return {
        "success": True,
        "message": "Batch audit job queued for processing",
        "data": result.data,
        "requestId": request_id,
        "attempts": result.attempts,
        "durationMs": result.total_duration_ms,
        "coldStart": result.cold_start,
    }


async def _post_audit_batch(
    client: httpx.AsyncClient,
    publisher_id: str,
    site_names: List[str],
    timeout: Optional[float] = None,
) -> httpx.Response:
    key = _function_key()
    return await client.post(
        f"{functions_base_url()}/audit-batch-sites",
        json={"publisher_id": publisher_id, "site_names": site_names},
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {key}",
            "Apikey": key,
            "X-Client-Info": "trigger-all-audits/1.0",
        },
        timeout=timeout,
    )


# ============================================================================
# trigger-all-publisher-audits
# ============================================================================


async def trigger_all_publisher_audits(
    supabase, http_client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    """Queue an audit for every publisher that has a GAM status."""
    request_id = str(uuid.uuid4())
    worker_url = os.getenv("SITE_MONITOR_WORKER_URL")
    if not worker_url:
        logger.error(f"[{request_id}] SITE_MONITOR_WORKER_URL not configured")
        raise FunctionError(503, "Site monitoring worker URL is not configured")

    logger.info(f"[{request_id}] Starting trigger all publisher audits with worker URL: {worker_url}")

    try:
        response = await run_query(
            lambda: supabase.table("publishers")
            .select("id, name, domain, network_code")
            .not_.is_("gam_status", "null")
            .order("created_at", desc=True)
            .execute()
        )
    except APIError as e:
        logger.error(f"[{request_id}] Error fetching publishers: {_error_message(e)}")
        raise FunctionError(500, _error_message(e))

    publishers = response.data or []
    logger.info(f"[{request_id}] Found {len(publishers)} publishers")

    results: List[Dict[str, Any]] = []
    queued_count = 0
    failed_count = 0

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient()
    try:
        for i, publisher in enumerate(publishers):
            publisher_id = publisher["id"]
            publisher_name = publisher.get("name")
            logger.info(
                f"[{request_id}] Processing publisher {i + 1}/{len(publishers)}: {publisher_name}"
            )
            entry = {"publisherId": publisher_id, "publisherName": publisher_name}

            try:
                rpc_response = await run_query(
                    lambda: supabase.rpc(
                        "get_publisher_site_names", {"p_publisher_id": publisher_id}
                    ).execute()
                )
                site_names = extract_site_names(rpc_response.data) or ["primary"]

                audit_response = await _post_audit_batch(client, publisher_id, site_names)
                if audit_response.is_success:
                    logger.info(f"[{request_id}] Successfully queued audit for {publisher_name}")
                    entry["status"] = "queued"
                    queued_count += 1
                else:
                    logger.error(
                        f"[{request_id}] Audit endpoint error for {publisher_id}: "
                        f"{audit_response.status_code} {audit_response.text}"
                    )
                    entry["status"] = "failed"
                    entry["error"] = (
                        f"Audit endpoint returned {audit_response.status_code}: {audit_response.text}"
                    )
                    failed_count += 1
            except APIError as e:
                logger.warning(
                    f"[{request_id}] Error fetching site names for {publisher_id}: {_error_message(e)}"
                )
                entry["status"] = "failed"
                entry["error"] = f"Failed to fetch site names: {_error_message(e)}"
                failed_count += 1
            except httpx.HTTPError as e:
                logger.error(f"[{request_id}] Exception processing {publisher_name}: {e}")
                entry["status"] = "failed"
                entry["error"] = str(e) or type(e).__name__
                failed_count += 1

            results.append(entry)

            if i < len(publishers) - 1:
                delay_ms = _random_delay_ms()
                logger.info(f"[{request_id}] Rate limiting: waiting {delay_ms}ms before next publisher")
                await sleep_ms(delay_ms)
    finally:
        if owns_client:
            await client.aclose()

    logger.info(
        f"[{request_id}] Completed trigger all audits: {queued_count} queued, {failed_count} failed"
    )
    return {
        "success": queued_count > 0,
        "totalPublishers": len(publishers),
        "queuedPublishers": queued_count,
        "failedPublishers": failed_count,
        "results": results,
    }


# ============================================================================
# scheduled-all-audits-cron
# ============================================================================


async def check_publisher_circuit_breaker(
    supabase, publisher_id: str, request_id: str
) -> Tuple[bool, Optional[str]]:
    """Trip when the publisher has too many recent ``audit_failures`` rows.

    Lookup errors never trip the breaker.
    """
    since = (datetime.now(timezone.utc) - PUBLISHER_FAILURE_WINDOW).isoformat()
    try:
        response = await run_query(
            lambda: supabase.table("audit_failures")
            .select("id")
            .eq("publisher_id", publisher_id)
            .gte("failure_timestamp", since)
            .execute()
        )
    except APIError as e:
        logger.warning(
            f"[{request_id}] Error checking circuit breaker for {publisher_id}: {_error_message(e)}"
        )
        return False, None

    failure_count = len(response.data or [])
    if failure_count >= PUBLISHER_FAILURE_THRESHOLD:
        logger.info(
            f"[{request_id}] Circuit breaker TRIPPED for publisher {publisher_id}: "
            f"{failure_count} failures in last 60 minutes"
        )
        return True, (
            f"{PUBLISHER_FAILURE_THRESHOLD}+ audit failures in last 60 minutes "
            f"({failure_count} failures)"
        )
    return False, None


async def log_admin_alert(
    supabase, alert_type: str, publisher_id: str, message: str, request_id: str
) -> None:
    try:
        await run_query(
            lambda: supabase.table("admin_alerts")
            .insert(
                {
                    "alert_type": alert_type,
                    "publisher_id": publisher_id,
                    "subject": alert_type,
                    "message": message,
                    "metadata": {"request_id": request_id},
                }
            )
            .execute()
        )
    except APIError as e:
        logger.warning(f"[{request_id}] Failed to log admin alert: {_error_message(e)}")


async def call_audit_batch_endpoint(
    client: httpx.AsyncClient,
    publisher_id: str,
    site_names: List[str],
    request_id: str,
) -> Tuple[bool, Optional[str]]:
    """POST to audit-batch-sites with exponential backoff.

    A timed-out attempt is retried immediately.
    """
    for attempt in range(1, CRON_AUDIT_MAX_RETRIES + 1):
        delay_ms = CRON_AUDIT_BASE_DELAY_MS * 2 ** (attempt - 1)
        try:
            response = await _post_audit_batch(
                client, publisher_id, site_names, timeout=CRON_AUDIT_TIMEOUT_SECONDS
            )
        except httpx.TimeoutException:
            logger.warning(f"[{request_id}] Attempt {attempt} timed out")
            continue
        except httpx.HTTPError as e:
            logger.warning(f"[{request_id}] Attempt {attempt} failed: {e}")
            if attempt < CRON_AUDIT_MAX_RETRIES:
                await sleep_ms(delay_ms)
            continue

        if response.is_success:
            logger.info(
                f"[{request_id}] Successfully queued audit for publisher {publisher_id} "
                f"(attempt {attempt})"
            )
            return True, None

        logger.warning(
            f"[{request_id}] Audit endpoint returned {response.status_code} "
            f"(attempt {attempt}): {response.text}"
        )
        if attempt < CRON_AUDIT_MAX_RETRIES:
            logger.info(f"[{request_id}] Retrying in {delay_ms}ms...")
            await sleep_ms(delay_ms)

    return False, f"Failed after {CRON_AUDIT_MAX_RETRIES} retry attempts"


def execution_status_for(queued_count: int, failed_count: int) -> str:
    if failed_count == 0:
        return "success"
    if failed_count > queued_count:
        return "failed"
    return "partial"


async def _process_cron_publisher(
    supabase,
    client: httpx.AsyncClient,
    publisher: Dict[str, Any],
    request_id: str,
) -> Dict[str, Any]:
    publisher_id = publisher["id"]
    name = publisher.get("name")

    tripped, reason = await check_publisher_circuit_breaker(supabase, publisher_id, request_id)
    if tripped:
        logger.info(f"[{request_id}] Skipping publisher {name} - circuit breaker triggered")
        await log_admin_alert(
            supabase,
            "circuit_breaker_skip",
            publisher_id,
            f"Publisher {name} skipped due to circuit breaker: {reason}",
            request_id,
        )
        return {"publisherId": publisher_id, "status": "skipped", "reason": reason}

    site_names = await fetch_publisher_site_names(
        supabase, publisher_id, request_id, strict=True
    )
    if not site_names:
        logger.warning(f"[{request_id}] No site names found for publisher {name}, skipping")
        await log_admin_alert(
            supabase,
            "site_skip",
            publisher_id,
            f"Publisher {name} skipped - no site names available",
            request_id,
        )
        return {
            "publisherId": publisher_id,
            "status": "skipped",
            "reason": "No site names available",
        }

    success, error = await call_audit_batch_endpoint(client, publisher_id, site_names, request_id)
    if success:
        return {"publisherId": publisher_id, "status": "queued"}

    await log_admin_alert(
        supabase,
        "audit_failure",
        publisher_id,
        f"Failed to queue audit for publisher {name}: {error}",
        request_id,
    )
    return {"publisherId": publisher_id, "status": "failed", "reason": error}


async def _call_finalize(client: httpx.AsyncClient, execution_date: str, request_id: str) -> None:
    try:
        response = await client.post(
            f"{functions_base_url()}/finalize-cron-execution",
            json={"cronJobName": CRON_JOB_NAME, "executionDate": execution_date},
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {os.getenv('SUPABASE_SERVICE_ROLE_KEY', '')}",
            },
        )
    except httpx.HTTPError as e:
        logger.warning(f"[{request_id}] Failed to call finalize endpoint: {e}")
        return
    if not response.is_success:
        logger.warning(f"[{request_id}] Finalize endpoint returned {response.status_code}")


async def run_scheduled_all_audits(
    supabase, http_client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    """Daily audit run over all enabled publishers.

    Progress is written to ``cron_execution_logs``; publishers with a tripped
    breaker or no sites are skipped and reported through ``admin_alerts``.
    """
    start_ms = epoch_ms()
    request_id = f"cron-{start_ms}"
    started_at = now_iso()
    execution_date = datetime.now(timezone.utc).date().isoformat()
    log_id = None

    logger.info(f"[{request_id}] Starting scheduled daily cron audit execution at {started_at}")

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient()
    try:
        try:
            response = await run_query(
                lambda: supabase.table("publishers")
                .select("id, name, domain, network_code, enabled")
                .eq("enabled", True)
                .order("created_at", desc=True)
                .execute()
            )
        except APIError as e:
            raise RuntimeError(f"Failed to fetch publishers: {_error_message(e)}") from e

        publishers = response.data or []
        total_publishers = len(publishers)
        logger.info(f"[{request_id}] Found {total_publishers} enabled publishers")

        try:
            log_response = await run_query(
                lambda: supabase.table("cron_execution_logs")
                .insert(
                    {
                        "request_id": request_id,
                        "cron_job_name": CRON_JOB_NAME,
                        "execution_date": execution_date,
                        "total_publishers": total_publishers,
                        "queued_count": 0,
                        "failed_count": 0,
                        "skipped_count": 0,
                        "duration_seconds": 0,
                        "started_at": started_at,
                        "execution_status": "partial",
                    }
                )
                .execute()
            )
            if log_response.data:
                log_id = log_response.data[0].get("id")
                logger.info(f"[{request_id}] Created execution log entry")
        except APIError as e:
            logger.warning(f"[{request_id}] Failed to create execution log entry: {_error_message(e)}")

        results: List[Dict[str, Any]] = []
        counts = {"queued": 0, "failed": 0, "skipped": 0}

        for i, publisher in enumerate(publishers):
            logger.info(
                f"[{request_id}] Processing publisher {i + 1}/{total_publishers}: {publisher.get('name')}"
            )
            try:
                outcome = await _process_cron_publisher(supabase, client, publisher, request_id)
            except (APIError, httpx.HTTPError) as e:
                logger.error(
                    f"[{request_id}] Exception processing publisher {publisher.get('name')}: "
                    f"{_error_message(e)}"
                )
                outcome = {
                    "publisherId": publisher["id"],
                    "status": "failed",
                    "reason": _error_message(e),
                }
            counts[outcome["status"]] += 1
            results.append(outcome)

            if i < total_publishers - 1:
                await sleep_ms(_random_delay_ms())

        completed_at = now_iso()
        duration_ms = epoch_ms() - start_ms
        duration_seconds = math.floor(duration_ms / 1000)
        next_scheduled_time = (datetime.now(timezone.utc) + timedelta(hours=24)).isoformat()
        status = execution_status_for(counts["queued"], counts["failed"])

        logger.info(
            f"[{request_id}] Cron execution completed: {counts['queued']} queued, "
            f"{counts['failed']} failed, {counts['skipped']} skipped in {duration_seconds}s"
        )

        if log_id is not None:
            try:
                await run_query(
                    lambda: supabase.table("cron_execution_logs")
                    .update(
                        {
                            "queued_count": counts["queued"],
                            "failed_count": counts["failed"],
                            "skipped_count": counts["skipped"],
                            "duration_seconds": duration_seconds,
                            "completed_at": completed_at,
                            "execution_status": status,
                            "next_scheduled_time": next_scheduled_time,
                            "summary_json": {
                                "request_id": request_id,
                                "total_publishers": total_publishers,
                                "queued_count": counts["queued"],
                                "failed_count": counts["failed"],
                                "skipped_count": counts["skipped"],
                                "duration_seconds": duration_seconds,
                                "execution_status": status,
                                "results": results,
                                "completed_at": completed_at,
                            },
                        }
                    )
                    .eq("id", log_id)
                    .execute()
                )
            except APIError as e:
                logger.warning(f"[{request_id}] Failed to update execution log: {_error_message(e)}")

        await _call_finalize(client, execution_date, request_id)

        return {
            "success": counts["failed"] == 0,
            "requestId": request_id,
            "totalPublishers": total_publishers,
            "queuedCount": counts["queued"],
            "failedCount": counts["failed"],
            "skippedCount": counts["skipped"],
            "durationMs": duration_ms,
            "executionStatus": status,
        }

    except Exception as e:
        logger.exception(f"[{request_id}] Unhandled error in cron execution")
        duration_ms = epoch_ms() - start_ms
        error_message = str(e) or type(e).__name__
        if log_id is not None:
            try:
                await run_query(
                    lambda: supabase.table("cron_execution_logs")
                    .update(
                        {
                            "execution_status": "failed",
                            "error_message": error_message,
                            "duration_seconds": math.floor(duration_ms / 1000),
                            "completed_at": now_iso(),
                        }
                    )
                    .eq("id", log_id)
                    .execute()
                )
            except APIError as log_err:
                logger.error(f"[{request_id}] Failed to update error log: {_error_message(log_err)}")
        raise FunctionError(
            500,
            error_message,
            requestId=request_id,
            durationMs=duration_ms,
            executionStatus="failed",
        ) from e
    finally:
        if owns_client:
            await client.aclose()


# ============================================================================
# finalize-cron-execution
# ============================================================================


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def finalize_cron_execution(
    supabase, cron_job_name: Optional[str], execution_date: Optional[str]
) -> Dict[str, Any]:
    """Roll ``cron_execution_progress`` rows up into the execution log."""
    request_id = str(uuid.uuid4())
    logger.info(f"[{request_id}] Finalizing cron execution for {cron_job_name} on {execution_date}")

    try:
        response = await run_query(
            lambda: supabase.table("cron_execution_progress")
            .select("*")
            .eq("cron_job_name", cron_job_name)
            .eq("execution_date", execution_date)
            .execute()
        )
        records = response.data or []

        completed = sum(1 for p in records if p.get("status") == "completed")
        failed = sum(1 for p in records if p.get("status") == "failed")
        processing = sum(1 for p in records if p.get("status") == "processing")
        total_sites = sum(p.get("sites_audited") or 0 for p in records)

        started = [_parse_timestamp(p["started_at"]) for p in records if p.get("started_at")]
        duration_seconds = 0
        if started:
            duration_seconds = round(
                (datetime.now(timezone.utc) - min(started)).total_seconds()
            )

        summary_json = {
            "cronJobName": cron_job_name,
            "executionDate": execution_date,
            "completedPublishers": completed,
            "failedPublishers": failed,
            "processingPublishers": processing,
            "totalPublishers": len(records),
            "totalSitesAudited": total_sites,
            "totalBatches": completed + failed,
            "durationSeconds": duration_seconds,
            "finalized_at": now_iso(),
            "details": [
                {
                    "publisher_id": p.get("publisher_id"),
                    "sites_audited": p.get("sites_audited"),
                    "status": p.get("status"),
                    "error": p.get("error_message"),
                }
                for p in records
            ],
        }

        await run_query(
            lambda: supabase.table("cron_execution_logs")
            .update(
                {
                    "total_publishers": len(records),
                    "total_sites_processed": total_sites,
                    "successful_batches": completed,
                    "failed_batches": failed,
                    "duration_seconds": duration_seconds,
                    "summary_json": summary_json,
                }
            )
            .eq("cron_job_name", cron_job_name)
            .eq("execution_date", execution_date)
            .execute()
        )
    except (APIError, ValueError) as e:
        logger.error(f"[{request_id}] Error finalizing cron execution: {_error_message(e)}")
        raise FunctionError(
            500, "Failed to finalize cron execution", details=_error_message(e)
        ) from e

    logger.info(
        f"[{request_id}] Finalization complete: {completed}/{len(records)} publishers completed, "
        f"{total_sites} sites audited in {duration_seconds}s"
    )
    return {
        "success": True,
        "message": "Cron execution finalized",
        "summary": {
            "totalPublishers": len(records),
            "completedPublishers": completed,
            "failedPublishers": failed,
            "processingPublishers": processing,
            "totalSitesAudited": total_sites,
            "durationSeconds": duration_seconds,
        },
    }
