"""Google Ad Manager routes: API pass-through and service key checks."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from mfabuster.deps import get_supabase, require_function_auth
from mfabuster.models import GamApiRequest
from mfabuster.services.gam_service import gam_api
from mfabuster.services.service_key_status_service import check_service_key_status

router = APIRouter(
    prefix="/functions/v1",
    tags=["gam"],
    dependencies=[Depends(require_function_auth)],
)


@router.get("/gam-api")
async def gam_api_route(
    endpoint: str = Query("test"),
    network_code: Optional[str] = Query(None, alias="networkCode"),
    order_id: Optional[str] = Query(None, alias="orderId"),
    path: Optional[str] = Query(None),
):
    """``endpoint`` is one of test, list-networks, network, orders, line-items, custom."""
    return await gam_api(
        GamApiRequest(endpoint=endpoint, network_code=network_code, order_id=order_id, path=path)
    )


@router.api_route("/check-service-key-status", methods=["GET", "POST"])
async def service_key_status(
    publisher_id: Optional[str] = Query(None, alias="publisherId"),
    supabase=Depends(get_supabase),
):
    return await check_service_key_status(supabase, publisher_id)
