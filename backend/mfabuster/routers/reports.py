"""GAM report fetch routes: new publisher onboarding and the daily fetch."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from mfabuster.deps import get_supabase, require_function_auth
from mfabuster.models import NewPublisherRequest
from mfabuster.services.publisher_onboarding_service import run_new_publisher_report_and_audit
from mfabuster.services.report_fetch_service import run_scheduled_gam_reports_fetch

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/functions/v1",
    tags=["reports"],
    dependencies=[Depends(require_function_auth)],
)


@router.post("/new-pub-report-and-audit")
async def new_pub_report_and_audit(
    body: NewPublisherRequest,
    supabase=Depends(get_supabase),
):
    """Historical report fetch plus first site audit for a new publisher.

    Answers 200 when the report fetch started and 202 when it did not; the
    audit outcome is reported in the body either way.
    """
    payload = await run_new_publisher_report_and_audit(supabase, body.publisher_id)
    return JSONResponse(status_code=200 if payload["success"] else 202, content=payload)


@router.post("/scheduled-gam-reports-fetch")
async def scheduled_gam_reports_fetch(supabase=Depends(get_supabase)):
    return await run_scheduled_gam_reports_fetch(supabase)
