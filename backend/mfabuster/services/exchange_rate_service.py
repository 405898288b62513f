"""Exchange rate refresh and currency conversion.

Rates are stored USD-based: ``usd_rate`` is the USD value of one unit of
``currency_code``. The upstream API quotes the other way round (units of
currency per USD), so rates are inverted on the way in.
"""

import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError

from mfabuster.deps import run_query, _error_message
from mfabuster.exceptions import FunctionError

logger = logging.getLogger(__name__)

EXCHANGE_RATE_API_URL = "https://open.er-api.com/v6/latest/USD"
EXCHANGE_RATE_SOURCE = "open.er-api.com"
SAMPLE_CURRENCIES = ["USD", "EUR", "GBP", "JPY", "CAD", "AUD"]


def _require_supabase_config() -> None:
    if not os.getenv("SUPABASE_URL") or not os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        raise FunctionError(500, "Missing Supabase configuration")


def _quoted_rates(payload: Dict[str, Any]) -> Dict[str, float]:
    # open.er-api.com answers with ``rates``; the keyed v6 API with ``conversion_rates``
    return payload.get("conversion_rates") or payload.get("rates") or {}


def build_rate_rows(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Turn an open.er-api.com payload into ``exchange_rates`` rows."""
    rate_date = (
        datetime.fromtimestamp(payload["time_last_update_unix"], tz=timezone.utc)
        .date()
        .isoformat()
    )
    rows = []
    for currency_code, rate in _quoted_rates(payload).items():
        if currency_code != "USD" and (not isinstance(rate, (int, float)) or rate <= 0):
            logger.warning(f"Skipping {currency_code}: unusable quote {rate!r}")
            continue
        usd_rate = 1.0 if currency_code == "USD" else 1.0 / rate
        rows.append(
            {
                "currency_code": currency_code,
                "usd_rate": usd_rate,
                "rate_date": rate_date,
                "source": EXCHANGE_RATE_SOURCE,
            }
        )
    return rows


async def update_exchange_rates(
    supabase, http_client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    _require_supabase_config()
    logger.info("Fetching exchange rates from API...")

    try:
        if http_client is not None:
            response = await http_client.get(EXCHANGE_RATE_API_URL, timeout=30.0)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(EXCHANGE_RATE_API_URL)
    except httpx.HTTPError as e:
        logger.error(f"Error updating exchange rates: {e}")
        raise FunctionError(500, str(e) or type(e).__name__) from e

    if not response.is_success:
        raise FunctionError(500, f"Exchange rate API returned {response.status_code}")

    payload = response.json()
    if payload.get("result") != "success":
        raise FunctionError(500, "Failed to fetch exchange rates")

    logger.info(f"Fetched {len(_quoted_rates(payload))} exchange rates")
    rows = build_rate_rows(payload)
    rate_date = rows[0]["rate_date"] if rows else None

    logger.info(f"Upserting {len(rows)} exchange rates for {rate_date}...")
    try:
        await run_query(
            lambda: supabase.table("exchange_rates")
            .upsert(rows, on_conflict="currency_code,rate_date")
            .execute()
        )
    except APIError as e:
        logger.error(f"Error updating exchange rates: {_error_message(e)}")
        raise FunctionError(500, _error_message(e)) from e

    logger.info(f"Successfully updated exchange rates for {rate_date}")

    sample_rates: List[Dict[str, Any]] = []
    try:
        verify = await run_query(
            lambda: supabase.table("exchange_rates")
            .select("currency_code, usd_rate")
            .eq("rate_date", rate_date)
            .in_("currency_code", SAMPLE_CURRENCIES)
            .execute()
        )
        sample_rates = verify.data or []
        logger.info(f"Sample rates: {sample_rates}")
    except APIError as e:
        logger.warning(f"Could not verify rates: {_error_message(e)}")

    return {
        "success": True,
        "message": "Exchange rates updated successfully",
        "rateDate": rate_date,
        "ratesUpdated": len(rows),
        "sampleRates": sample_rates,
    }


def _as_float(value: Any) -> float:
    # numeric columns come back from PostgREST as strings
    if isinstance(value, (str, Decimal)):
        return float(value)
    return value


def latest_rate_map(rows: List[Dict[str, Any]]) -> Dict[str, float]:
    """First row per currency wins; rows are expected newest first."""
    rate_map: Dict[str, float] = {}
    for row in rows:
        code = row["currency_code"]
        if code not in rate_map:
            rate_map[code] = _as_float(row["usd_rate"])
    rate_map.setdefault("USD", 1.0)
    return rate_map


async def convert_currency(
    supabase,
    amounts: Any,
    target_currency: Optional[str] = None,
) -> Dict[str, Any]:
    """Convert ``[{amount, currency}, ...]`` into ``target_currency``.

    Currencies without a stored rate are treated as USD.
    """
    _require_supabase_config()
    target = target_currency or "USD"

    if not isinstance(amounts, list):
        raise FunctionError(400, "Invalid request: amounts array is required")

    currencies = {item.get("currency") for item in amounts}
    currencies.add(target)

    try:
        response = await run_query(
            lambda: supabase.table("exchange_rates")
            .select("currency_code, usd_rate")
            .in_("currency_code", sorted(c for c in currencies if c))
            .order("rate_date", desc=True)
            .execute()
        )
    except APIError as e:
        logger.error(f"Error converting currency: {_error_message(e)}")
        raise FunctionError(500, _error_message(e)) from e

    rate_map = latest_rate_map(response.data or [])
    to_rate = rate_map.get(target) or 1.0

    conversions = []
    for item in amounts:
        from_rate = rate_map.get(item.get("currency")) or 1.0
        converted = item["amount"] * from_rate / to_rate
        conversions.append(
            {
                "originalAmount": item["amount"],
                "originalCurrency": item.get("currency"),
                "convertedAmount": converted,
                "targetCurrency": target,
                "exchangeRate": from_rate / to_rate,
            }
        )

    return {
        "success": True,
        "conversions": conversions,
        "total": sum(c["convertedAmount"] for c in conversions),
        "targetCurrency": target,
    }
