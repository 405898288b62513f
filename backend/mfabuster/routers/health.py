"""Health-check router."""

from datetime import datetime, timezone

from fastapi import APIRouter

from mfabuster import __version__
from mfabuster.worker_resilience import circuit_breaker_states

router = APIRouter(tags=["health"])


@router.get("/")
async def root():
    """Health check"""
    return {"status": "ok", "message": "MFA Buster functions are running"}


@router.get("/health")
async def health_check():
    """Liveness plus the state of every worker circuit breaker seen so far."""
    breakers = circuit_breaker_states()
    open_breakers = [url for url, state in breakers.items() if state["is_open"]]
    return {
        "status": "degraded" if open_breakers else "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "circuitBreakers": breakers,
    }
