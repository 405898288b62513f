"""Site audit routes: single batch, fan-out, daily cron and its finalizer."""

import logging

from fastapi import APIRouter, Depends

from mfabuster.deps import get_supabase, require_function_auth
from mfabuster.models import AuditBatchRequest, FinalizeCronRequest
from mfabuster.services import audit_cron_service

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/functions/v1",
    tags=["audits"],
    dependencies=[Depends(require_function_auth)],
)


@router.post("/audit-batch-sites")
async def audit_batch_sites(body: AuditBatchRequest, supabase=Depends(get_supabase)):
    return await audit_cron_service.audit_batch_sites(
        supabase, body.publisher_id, body.site_names, body.priority
    )


@router.post("/trigger-all-publisher-audits")
async def trigger_all_publisher_audits(supabase=Depends(get_supabase)):
    return await audit_cron_service.trigger_all_publisher_audits(supabase)


@router.post("/scheduled-all-audits-cron")
async def scheduled_all_audits_cron(supabase=Depends(get_supabase)):
    return await audit_cron_service.run_scheduled_all_audits(supabase)


@router.post("/finalize-cron-execution")
async def finalize_cron_execution(body: FinalizeCronRequest, supabase=Depends(get_supabase)):
    return await audit_cron_service.finalize_cron_execution(
        supabase, body.cron_job_name, body.execution_date
    )
