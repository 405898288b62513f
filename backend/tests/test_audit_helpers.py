"""
Unit Tests for Audit Helpers

Tests site-name lookup via the get_publisher_site_names RPC and the
result-shaping helpers used by the audit functions.

Usage:
    cd backend && pytest tests/test_audit_helpers.py -v
"""

import asyncio
import os
import sys

import pytest

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from mfabuster.helpers.audit_helpers import (
    aggregate_audit_errors,
    chunk_site_names,
    create_multi_site_audit_result,
    extract_site_names,
    fetch_multiple_publisher_site_names,
    fetch_publisher_site_names,
)
from conftest import FakeSupabase, make_api_error


def make_supabase(sites_by_publisher=None, error=None) -> FakeSupabase:
    supabase = FakeSupabase()
    sites_by_publisher = sites_by_publisher or {}

    def handler(params):
        if error is not None:
            return error
        return [{"site_name": s} for s in sites_by_publisher.get(params["p_publisher_id"], [])]

    supabase.rpc_handlers["get_publisher_site_names"] = handler
    return supabase


class TestExtractSiteNames:
    """Tests for RPC result parsing."""

    def test_keeps_non_blank_strings(self):
        rows = [{"site_name": "a"}, {"site_name": "  "}, {"site_name": None}, {"other": 1}, "x"]
        assert extract_site_names(rows) == ["a"]

    def test_non_list_returns_empty(self):
        assert extract_site_names(None) == []
        assert extract_site_names({"site_name": "a"}) == []


class TestFetchPublisherSiteNames:
    """Tests for the RPC lookup and its fallbacks."""

    def test_returns_site_names(self):
        supabase = make_supabase({"pub-1": ["news", "sports"]})
        names = asyncio.run(fetch_publisher_site_names(supabase, "pub-1", "req"))
        assert names == ["news", "sports"]
        assert supabase.calls[0] == ("rpc", "get_publisher_site_names", {"p_publisher_id": "pub-1"})

    def test_empty_falls_back_to_primary(self):
        supabase = make_supabase({})
        assert asyncio.run(fetch_publisher_site_names(supabase, "pub-1", "req")) == ["primary"]

    def test_error_falls_back_to_primary(self):
        supabase = make_supabase(error=make_api_error("rpc failed"))
        assert asyncio.run(fetch_publisher_site_names(supabase, "pub-1", "req")) == ["primary"]

    def test_strict_mode_returns_empty(self):
        supabase = make_supabase(error=make_api_error("rpc failed"))
        assert asyncio.run(fetch_publisher_site_names(supabase, "pub-1", "req", strict=True)) == []
        supabase = make_supabase({})
        assert asyncio.run(fetch_publisher_site_names(supabase, "pub-1", "req", strict=True)) == []

    def test_multiple_publishers(self):
        supabase = make_supabase({"pub-1": ["a"], "pub-2": []})
        result = asyncio.run(fetch_multiple_publisher_site_names(supabase, ["pub-1", "pub-2"], "req"))
        assert result == {"pub-1": ["a"], "pub-2": ["primary"]}


class TestChunkSiteNames:
    """Tests for batching site names."""

    def test_even_and_remainder_chunks(self):
        assert chunk_site_names(["a", "b", "c", "d", "e"], 2) == [["a", "b"], ["c", "d"], ["e"]]

    def test_empty_list(self):
        assert chunk_site_names([], 3) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            chunk_site_names(["a"], 0)


class TestAuditResults:
    """Tests for error aggregation and multi-site result shaping."""

    def test_aggregate_errors(self):
        result = aggregate_audit_errors([{"error": "timeout"}, {"error": "dns"}], "news")
        assert result["site_name"] == "news"
        assert result["error"] == "timeout; dns"
        assert result["timestamp"]

    def test_multi_site_result(self):
        result = create_multi_site_audit_result(
            "pub-1",
            ["news", "sports", "weather"],
            ["news", "weather"],
            [{"name": "sports", "error": "blocked"}],
        )

        assert result["publisherId"] == "pub-1"
        assert result["totalSites"] == 3
        assert result["successCount"] == 2
        assert result["failureCount"] == 1
        assert result["sites"] == [
            {"name": "news", "status": "success"},
            {"name": "sports", "status": "failed", "error": "blocked"},
            {"name": "weather", "status": "success"},
        ]
        assert result["errors"][0]["site_name"] == "sports"
        assert result["errors"][0]["error"] == "blocked"
