"""
MFA Buster Functions Package

This package contains the FastAPI service that replaces the dashboard's
Supabase edge functions, including:

- main.py: FastAPI application and router wiring
- worker_resilience.py: retry/backoff/circuit-breaker calls to external workers
- services/: report fetch, site audit dispatch, alerts, invitations, currency
- scheduler.py: APScheduler jobs that replace the pg_cron triggers
"""

__version__ = "1.0.0"
