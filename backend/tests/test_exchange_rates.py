"""
Unit Tests for Exchange Rates and Currency Conversion

Usage:
    cd backend && pytest tests/test_exchange_rates.py -v
"""

import asyncio
import os
import sys

import httpx
import pytest

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from mfabuster.exceptions import FunctionError
from mfabuster.services.exchange_rate_service import (
    EXCHANGE_RATE_API_URL,
    build_rate_rows,
    convert_currency,
    latest_rate_map,
    update_exchange_rates,
)
from conftest import FakeSupabase


# 2026-01-05T00:00:00Z
RATE_TIMESTAMP = 1767571200


def make_payload(**rates):
    return {
        "result": "success",
        "time_last_update_unix": RATE_TIMESTAMP,
        "rates": {"USD": 1, **rates},
    }


def run_update(supabase, handler):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await update_exchange_rates(supabase, http_client=client)

    return asyncio.run(_run())


class TestBuildRateRows:
    """Tests for turning API quotes into USD-based rows."""

    def test_inverts_rates(self):
        rows = build_rate_rows(make_payload(EUR=0.5, JPY=100))
        by_code = {r["currency_code"]: r for r in rows}

        assert by_code["USD"]["usd_rate"] == 1.0
        assert by_code["EUR"]["usd_rate"] == pytest.approx(2.0)
        assert by_code["JPY"]["usd_rate"] == pytest.approx(0.01)
        assert by_code["EUR"]["rate_date"] == "2026-01-05"
        assert by_code["EUR"]["source"] == "open.er-api.com"

    def test_accepts_conversion_rates_key(self):
        payload = {"result": "success", "time_last_update_unix": RATE_TIMESTAMP,
                   "conversion_rates": {"GBP": 0.8}}
        assert build_rate_rows(payload)[0]["usd_rate"] == pytest.approx(1.25)

    def test_skips_zero_and_negative_quotes(self):
        rows = build_rate_rows(make_payload(EUR=0.5, XXX=0, YYY=-2))
        codes = {r["currency_code"] for r in rows}

        assert codes == {"USD", "EUR"}


class TestUpdateExchangeRates:
    """Tests for the refresh job."""

    def test_upserts_rates(self, supabase_env):
        supabase = FakeSupabase()
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json=make_payload(EUR=0.5, GBP=0.8))

        result = run_update(supabase, handler)

        assert seen == [EXCHANGE_RATE_API_URL]
        assert result["success"] is True
        assert result["ratesUpdated"] == 3
        assert result["rateDate"] == "2026-01-05"
        assert {r["currency_code"] for r in result["sampleRates"]} == {"USD", "EUR", "GBP"}
        assert len(supabase.rows("exchange_rates")) == 3

    def test_upsert_replaces_same_day_rate(self, supabase_env):
        supabase = FakeSupabase(
            {"exchange_rates": [{"currency_code": "EUR", "rate_date": "2026-01-05", "usd_rate": 9.0}]}
        )
        run_update(supabase, lambda request: httpx.Response(200, json=make_payload(EUR=0.5)))

        eur = [r for r in supabase.rows("exchange_rates") if r["currency_code"] == "EUR"]
        assert len(eur) == 1
        assert eur[0]["usd_rate"] == pytest.approx(2.0)

    def test_api_failure(self, supabase_env):
        with pytest.raises(FunctionError) as exc:
            run_update(FakeSupabase(), lambda request: httpx.Response(200, json={"result": "error"}))
        assert exc.value.status_code == 500
        assert exc.value.error == "Failed to fetch exchange rates"

    def test_missing_config(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        with pytest.raises(FunctionError) as exc:
            asyncio.run(update_exchange_rates(FakeSupabase()))
        assert exc.value.error == "Missing Supabase configuration"


class TestConvertCurrency:
    """Tests for conversion against stored rates."""

    @pytest.fixture
    def supabase(self):
        return FakeSupabase(
            {
                "exchange_rates": [
                    {"currency_code": "EUR", "usd_rate": "1.10", "rate_date": "2026-01-05"},
                    {"currency_code": "EUR", "usd_rate": "1.00", "rate_date": "2026-01-04"},
                    {"currency_code": "GBP", "usd_rate": 1.25, "rate_date": "2026-01-05"},
                ]
            }
        )

    def test_latest_rate_map_prefers_first_row(self):
        rows = [
            {"currency_code": "EUR", "usd_rate": "1.10"},
            {"currency_code": "EUR", "usd_rate": "1.00"},
        ]
        assert latest_rate_map(rows) == {"EUR": 1.10, "USD": 1.0}

    def test_converts_to_usd_by_default(self, supabase_env, supabase):
        result = asyncio.run(
            convert_currency(supabase, [{"amount": 100, "currency": "EUR"}, {"amount": 10, "currency": "USD"}])
        )

        assert result["targetCurrency"] == "USD"
        assert result["conversions"][0]["convertedAmount"] == pytest.approx(110.0)
        assert result["conversions"][0]["exchangeRate"] == pytest.approx(1.10)
        assert result["total"] == pytest.approx(120.0)

    def test_converts_between_currencies(self, supabase_env, supabase):
        result = asyncio.run(convert_currency(supabase, [{"amount": 125, "currency": "GBP"}], "EUR"))
        assert result["conversions"][0]["convertedAmount"] == pytest.approx(125 * 1.25 / 1.10)

    def test_unknown_currency_treated_as_usd(self, supabase_env, supabase):
        result = asyncio.run(convert_currency(supabase, [{"amount": 5, "currency": "XYZ"}]))
        assert result["conversions"][0]["convertedAmount"] == pytest.approx(5)

    def test_amounts_required(self, supabase_env, supabase):
        with pytest.raises(FunctionError) as exc:
            asyncio.run(convert_currency(supabase, None))
        assert exc.value.status_code == 400
        assert exc.value.error == "Invalid request: amounts array is required"
