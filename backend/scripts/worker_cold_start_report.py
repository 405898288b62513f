#!/usr/bin/env python3
"""
Worker Cold Start Report

Summarises the ``worker_cold_starts`` telemetry written after every worker
call: per worker, how often calls hit a cold start, how often they
succeeded, and the average duration and attempt count.

Usage:
    # Last 7 days, all workers
    python -m scripts.worker_cold_start_report

    # Last 30 days for one worker
    python -m scripts.worker_cold_start_report --days 30 --worker gam-reports-worker

    # Machine readable output
    python -m scripts.worker_cold_start_report --json

Environment Variables:
    SUPABASE_URL: Supabase project URL
    SUPABASE_SERVICE_ROLE_KEY: Supabase service role key
"""

import argparse
import json
import os
import sys
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv


def summarize_cold_starts(rows: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    Group telemetry rows by worker and compute the report figures.

    Args:
        rows: ``worker_cold_starts`` records

    Returns:
        Mapping of worker name to totals, rates (0-100) and averages
    """
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        grouped[row.get("worker_name") or "unknown"].append(row)

    summary = {}
    for worker, calls in sorted(grouped.items()):
        total = len(calls)
        cold = sum(1 for c in calls if c.get("cold_start"))
        succeeded = sum(1 for c in calls if c.get("success"))
        summary[worker] = {
            "total_calls": total,
            "cold_starts": cold,
            "cold_start_rate": round(cold / total * 100, 1),
            "success_rate": round(succeeded / total * 100, 1),
            "avg_duration_ms": round(sum(c.get("duration_ms") or 0 for c in calls) / total),
            "avg_attempts": round(sum(c.get("attempts") or 0 for c in calls) / total, 2),
        }
    return summary


class WorkerColdStartReport:
    """Loads cold start telemetry from Supabase."""

    def __init__(
        self,
        supabase_url: Optional[str] = None,
        supabase_key: Optional[str] = None,
    ):
        load_dotenv()
        self.supabase_url = supabase_url or os.getenv("SUPABASE_URL")
        self.supabase_key = supabase_key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        self._supabase = None

        if not self.supabase_url or not self.supabase_key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY environment variables are required"
            )

    @property
    def supabase(self):
        """Lazy initialization of Supabase client."""
        if self._supabase is None:
            from supabase import create_client
            self._supabase = create_client(self.supabase_url, self.supabase_key)
        return self._supabase

    def fetch_rows(self, days: int, worker: Optional[str] = None) -> List[Dict[str, Any]]:
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        query = (
            self.supabase.table("worker_cold_starts")
            .select("worker_name, cold_start, duration_ms, attempts, success, created_at")
            .gte("created_at", since)
        )
        if worker:
            query = query.eq("worker_name", worker)
        return query.execute().data or []

    def run(self, days: int, worker: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        return summarize_cold_starts(self.fetch_rows(days, worker))


def print_summary(summary: Dict[str, Dict[str, Any]], days: int) -> None:
    print(f"\nWorker cold starts, last {days} day(s)")
    print("=" * 60)
    if not summary:
        print("No worker calls recorded.")
        return
    for worker, stats in summary.items():
        print(f"\n{worker}")
        print(f"  Calls:        {stats['total_calls']}")
        print(f"  Cold starts:  {stats['cold_starts']} ({stats['cold_start_rate']}%)")
        print(f"  Success rate: {stats['success_rate']}%")
        print(f"  Avg duration: {stats['avg_duration_ms']} ms")
        print(f"  Avg attempts: {stats['avg_attempts']}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Summarise worker cold start telemetry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--days", type=int, default=7, help="Look-back window in days (default: 7)")
    parser.add_argument("--worker", type=str, help="Only report on this worker name")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args()

    try:
        report = WorkerColdStartReport()
        summary = report.run(days=args.days, worker=args.worker)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        print_summary(summary, args.days)


if __name__ == "__main__":
    main()
