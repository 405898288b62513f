"""Exchange rate refresh and currency conversion routes."""

from fastapi import APIRouter, Depends

from mfabuster.deps import get_supabase, require_function_auth
from mfabuster.models import ConvertCurrencyRequest
from mfabuster.services.exchange_rate_service import convert_currency, update_exchange_rates

router = APIRouter(
    prefix="/functions/v1",
    tags=["currency"],
    dependencies=[Depends(require_function_auth)],
)


@router.post("/update-exchange-rates")
async def update_rates(supabase=Depends(get_supabase)):
    return await update_exchange_rates(supabase)


@router.post("/convert-currency")
async def convert(body: ConvertCurrencyRequest, supabase=Depends(get_supabase)):
    amounts = [a.model_dump() for a in body.amounts] if body.amounts is not None else None
    return await convert_currency(supabase, amounts, body.target_currency)
