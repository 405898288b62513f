"""Shared dependencies for all function routers.

Centralises the Supabase client singleton, environment helpers, the
function-auth dependency and small utility helpers so that every router
and service module can ``from mfabuster.deps import …`` without pulling in
the ``main`` module.
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from postgrest.exceptions import APIError
from supabase import create_client, Client

load_dotenv()

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def _truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def epoch_ms() -> int:
    return int(time.time() * 1000)


async def sleep_ms(ms: float) -> None:
    await asyncio.sleep(ms / 1000)


def functions_base_url() -> str:
    """Base URL other functions are reachable at (``.../functions/v1``)."""
    base = os.getenv("FUNCTIONS_BASE_URL")
    if base:
        return base.rstrip("/")
    supabase_url = os.getenv("SUPABASE_URL", "http://localhost:8000")
    return f"{supabase_url.rstrip('/')}/functions/v1"


# ---------------------------------------------------------------------------
# Supabase client (singleton)
# ---------------------------------------------------------------------------
_supabase: Optional[Client] = None


def get_supabase() -> Client:
    """Return the service-role Supabase client, creating it on first use.

    Raises:
        RuntimeError: when SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is unset
    """
    global _supabase
    if _supabase is None:
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        if not url or not key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY environment variables not set"
            )
        _supabase = create_client(url, key)
        logger.info(f"Supabase client initialised for {url}")
    return _supabase


async def run_query(fn: Callable[[], Any]) -> Any:
    """Run a blocking supabase-py call without blocking the event loop."""
    return await asyncio.to_thread(fn)


# ---------------------------------------------------------------------------
# Small utility helpers
# ---------------------------------------------------------------------------


def _error_message(e: BaseException) -> str:
    """Best-effort human readable message for supabase / transport errors."""
    if isinstance(e, APIError):
        return e.message or str(e)
    return str(e) or type(e).__name__


# ---------------------------------------------------------------------------
# Function auth dependency
# ---------------------------------------------------------------------------


def _accepted_tokens() -> set[str]:
    keys = (
        os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
        os.getenv("SUPABASE_ANON_KEY"),
        os.getenv("WORKER_SECRET"),
    )
    return {k for k in keys if k}


# ---------------------------------------------------------------------------
# HTTPBearer security scheme
# ---------------------------------------------------------------------------
security = HTTPBearer(auto_error=False)


async def require_function_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Check the Bearer token sent by cron, workers and the dashboard.

    Any configured Supabase key or the worker secret is accepted. When none
    of them is configured (local development) every request is let through.
    """
    accepted = _accepted_tokens()
    if not accepted:
        return None

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    token = credentials.credentials
    if token not in accepted:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )
    return token
