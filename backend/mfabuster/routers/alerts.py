"""Alert email route."""

from fastapi import APIRouter, Depends

from mfabuster.deps import get_supabase, require_function_auth
from mfabuster.models import AlertEmailRequest
from mfabuster.services.alert_email_service import send_alert_email

router = APIRouter(
    prefix="/functions/v1",
    tags=["alerts"],
    dependencies=[Depends(require_function_auth)],
)


@router.post("/send-alert-email")
async def send_alert(body: AlertEmailRequest, supabase=Depends(get_supabase)):
    return await send_alert_email(supabase, body)
