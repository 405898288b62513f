"""
Worker Resilience Helper

Calls the external report-fetching and site-monitoring workers from short
lived HTTP handlers. The workers run on a scale-to-zero host, so the first
request after idle can take tens of seconds or fail outright. This module
wraps every worker call with:

- per-attempt timeouts
- retries with jittered backoff delays
- cold-start detection (slow first attempt)
- a circuit breaker per worker base URL that fails fast after repeated
  fully-failed calls and closes again after a cool-down
- cold-start telemetry rows in ``worker_cold_starts``

All durations are milliseconds, matching the ``duration_ms`` column the
dashboard reads.

Usage::

    from mfabuster.worker_resilience import WorkerCallOptions, call_worker_with_resilience

    result = await call_worker_with_resilience(
        WorkerCallOptions(
            worker_url=os.environ["RENDER_WORKER_URL"],
            endpoint="/fetch-reports",
            request_id=request_id,
            body={"triggered_by": "scheduler"},
        )
    )
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from postgrest.types import ReturnMethod

from mfabuster.deps import run_query

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_RETRY_DELAYS_MS = [10_000, 20_000, 40_000]
FALLBACK_RETRY_DELAY_MS = 10_000
RETRY_JITTER_PERCENT = 0.2

COLD_START_THRESHOLD_MS = 5_000

BREAKER_FAILURE_THRESHOLD = 5
BREAKER_RESET_TIMEOUT_MS = 60_000
CIRCUIT_OPEN_ERROR = "Circuit breaker is open - worker appears to be down"


def _now_ms() -> float:
    return time.monotonic() * 1000


async def _sleep_ms(ms: int) -> None:
    await asyncio.sleep(ms / 1000)


def add_jitter(ms: float, jitter_percent: float = 0.1) -> float:
    """Spread ``ms`` uniformly over ``[ms - ms*p, ms + ms*p]``."""
    jitter_amount = ms * jitter_percent
    return ms + (random.random() * jitter_amount * 2 - jitter_amount)


def build_worker_url(worker_url: str, endpoint: str) -> str:
    clean_worker_url = worker_url[:-1] if worker_url.endswith("/") else worker_url
    clean_endpoint = endpoint if endpoint.startswith("/") else f"/{endpoint}"
    return f"{clean_worker_url}{clean_endpoint}"


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


@dataclass
class CircuitBreaker:
    """Consecutive-failure breaker for one worker.

    A *failure* is a whole call whose every attempt failed, not a single
    attempt. Once open, calls fail fast until ``reset_timeout_ms`` has passed
    since the last failure; the next call then closes the breaker and goes
    through.
    """

    failure_threshold: int = BREAKER_FAILURE_THRESHOLD
    reset_timeout_ms: int = BREAKER_RESET_TIMEOUT_MS
    failures: int = 0
    last_failure_time: float = 0.0
    is_open: bool = False

    def allow_request(self) -> bool:
        if not self.is_open:
            return True
        if _now_ms() - self.last_failure_time > self.reset_timeout_ms:
            self.is_open = False
            self.failures = 0
            return True
        return False

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_time = _now_ms()
        if self.failures >= self.failure_threshold:
            self.is_open = True

    def record_success(self) -> None:
        self.failures = 0
        self.is_open = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "failures": self.failures,
            "is_open": self.is_open,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_ms": self.reset_timeout_ms,
        }


_breakers: Dict[str, CircuitBreaker] = {}


def _breaker_key(worker_url: str) -> str:
    return worker_url.rstrip("/").lower()


def get_circuit_breaker(worker_url: str) -> CircuitBreaker:
    """Return the process-wide breaker for a worker base URL."""
    key = _breaker_key(worker_url)
    breaker = _breakers.get(key)
    if breaker is None:
        breaker = CircuitBreaker()
        _breakers[key] = breaker
    return breaker


def circuit_breaker_states() -> Dict[str, Dict[str, Any]]:
    return {url: breaker.snapshot() for url, breaker in _breakers.items()}


def reset_circuit_breakers() -> None:
    _breakers.clear()


# ---------------------------------------------------------------------------
# Call options / result
# ---------------------------------------------------------------------------


@dataclass
class WorkerCallOptions:
    worker_url: str
    endpoint: str
    request_id: str
    body: Dict[str, Any] = field(default_factory=dict)
    method: str = "POST"
    max_retries: int = DEFAULT_MAX_RETRIES
    initial_timeout_ms: int = DEFAULT_TIMEOUT_MS
    retry_delays_ms: List[int] = field(default_factory=lambda: list(DEFAULT_RETRY_DELAYS_MS))
    worker_secret: Optional[str] = None
    enable_circuit_breaker: bool = True


@dataclass
class WorkerCallResult:
    success: bool
    attempts: int
    cold_start: bool
    total_duration_ms: int
    data: Any = None
    error: Optional[str] = None


class WorkerCallError(Exception):
    """A worker attempt that got a response, but not a usable one."""


def _retry_delay_ms(retry_delays_ms: List[int], attempt: int) -> int:
    base_delay = FALLBACK_RETRY_DELAY_MS
    if attempt - 1 < len(retry_delays_ms) and retry_delays_ms[attempt - 1]:
        base_delay = retry_delays_ms[attempt - 1]
    return math.ceil(add_jitter(base_delay, RETRY_JITTER_PERCENT))


def _describe_error(exc: Exception, timeout_ms: int) -> str:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return f"Request timed out after {timeout_ms}ms"
    return str(exc) or type(exc).__name__


async def call_worker_with_resilience(
    options: WorkerCallOptions,
    http_client: Optional[httpx.AsyncClient] = None,
) -> WorkerCallResult:
    """Call a worker endpoint with retries, cold-start detection and a breaker.

    Never raises for worker-side problems: transport errors, timeouts, non-2xx
    statuses and non-JSON bodies all end up in the returned result.

    Args:
        options: Target, payload and retry policy for the call.
        http_client: Optional client to reuse (tests inject a mock transport).

    Returns:
        WorkerCallResult describing the outcome of the whole call.
    """
    request_id = options.request_id
    breaker = (
        get_circuit_breaker(options.worker_url)
        if options.enable_circuit_breaker
        else None
    )

    if breaker is not None and not breaker.allow_request():
        logger.warning(f"[{request_id}] Circuit breaker is open, failing fast")
        return WorkerCallResult(
            success=False,
            error=CIRCUIT_OPEN_ERROR,
            attempts=0,
            cold_start=False,
            total_duration_ms=0,
        )

    full_url = build_worker_url(options.worker_url, options.endpoint)
    method = options.method.upper()
    max_retries = options.max_retries

    headers = {"Content-Type": "application/json"}
    if options.worker_secret:
        headers["Authorization"] = f"Bearer {options.worker_secret}"

    payload = None
    if method == "POST":
        payload = {**options.body, "request_id": request_id}

    timeout_seconds = options.initial_timeout_ms / 1000
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient()

    start_time = _now_ms()
    last_error: Optional[str] = None
    cold_start = False

    try:
        for attempt in range(1, max_retries + 1):
            logger.info(f"[{request_id}] Attempt {attempt}/{max_retries}: Calling {full_url}")
            attempt_start = _now_ms()

            try:
                # The deadline covers the whole exchange, body included
                response = await asyncio.wait_for(
                    client.request(
                        method,
                        full_url,
                        headers=headers,
                        json=payload,
                        timeout=timeout_seconds,
                    ),
                    timeout_seconds,
                )
                attempt_duration = _now_ms() - attempt_start

                if attempt == 1 and attempt_duration > COLD_START_THRESHOLD_MS:
                    cold_start = True
                    logger.info(f"[{request_id}] Cold start detected ({attempt_duration:.0f}ms)")

                if not response.is_success:
                    raise WorkerCallError(
                        f"Worker responded with status {response.status_code}: {response.text}"
                    )

                data = response.json()
                total_duration = _now_ms() - start_time

                if breaker is not None:
                    breaker.record_success()
                logger.info(
                    f"[{request_id}] Success on attempt {attempt} "
                    f"({attempt_duration:.0f}ms, total: {total_duration:.0f}ms)"
                )

                return WorkerCallResult(
                    success=True,
                    data=data,
                    attempts=attempt,
                    cold_start=cold_start,
                    total_duration_ms=round(total_duration),
                )

            except (
                httpx.HTTPError,
                httpx.InvalidURL,
                asyncio.TimeoutError,
                WorkerCallError,
                ValueError,
            ) as e:
                last_error = _describe_error(e, options.initial_timeout_ms)
                elapsed = _now_ms() - start_time
                logger.error(
                    f"[{request_id}] Attempt {attempt} failed after {elapsed:.0f}ms: {last_error}"
                )

                if attempt < max_retries:
                    delay_ms = _retry_delay_ms(options.retry_delays_ms, attempt)
                    logger.info(
                        f"[{request_id}] Waiting {delay_ms}ms before retry {attempt + 1}..."
                    )
                    await _sleep_ms(delay_ms)
    finally:
        if owns_client:
            await client.aclose()

    if breaker is not None:
        breaker.record_failure()
    total_duration = _now_ms() - start_time
    logger.error(
        f"[{request_id}] All {max_retries} attempts failed. "
        f"Total duration: {total_duration:.0f}ms"
    )

    return WorkerCallResult(
        success=False,
        error=last_error or "Unknown error",
        attempts=max_retries,
        cold_start=cold_start,
        total_duration_ms=round(total_duration),
    )


# ---------------------------------------------------------------------------
# Cold start telemetry
# ---------------------------------------------------------------------------


async def log_cold_start(
    supabase,
    worker_name: str,
    request_id: str,
    result: WorkerCallResult,
) -> None:
    """Record the outcome of a worker call in ``worker_cold_starts``.

    Telemetry failures are logged and never propagated to the caller.
    """
    record = {
        "worker_name": worker_name,
        "request_id": request_id,
        "cold_start": result.cold_start,
        "duration_ms": result.total_duration_ms,
        "attempts": result.attempts,
        "success": result.success,
        "error_message": result.error,
    }
    try:
        await run_query(
            lambda: supabase.table("worker_cold_starts")
            .insert(record, returning=ReturnMethod.minimal)
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to log cold start: {e}")
