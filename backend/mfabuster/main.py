"""
MFA Buster functions - FastAPI service for publisher onboarding, site audits,
alerts, invitations and GAM access checks
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mfabuster import __version__
from mfabuster.deps import _truthy
from mfabuster.routers import alerts, audits, currency, gam, health, invitations, reports
from mfabuster.scheduler import start_scheduler, shutdown_scheduler
from mfabuster.security import setup_security

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the scheduler when enabled; stop it on shutdown."""
    if _truthy(os.getenv("MFA_ENABLE_SCHEDULER", "false")):
        start_scheduler()
    else:
        logger.info("Scheduler disabled (set MFA_ENABLE_SCHEDULER=true to enable)")
    logger.info("MFA Buster functions started")
    yield
    shutdown_scheduler()
    logger.info("MFA Buster functions shutdown complete")


app = FastAPI(
    title="MFA Buster Functions",
    description="Publisher onboarding, site audits, alerting and invitations",
    version=__version__,
    lifespan=lifespan,
)

# =============================================================================
# CORS Configuration
# =============================================================================
# Production accepts HTTPS origins from ALLOWED_ORIGINS only; development
# falls back to the local dashboard dev servers.

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()

if ENVIRONMENT == "production":
    ALLOWED_ORIGINS = []
    for origin in os.getenv("ALLOWED_ORIGINS", "").split(","):
        origin = origin.strip()
        if not origin:
            continue
        if not origin.startswith("https://"):
            logger.warning(f"[CORS] Rejecting non-HTTPS origin in production: {origin}")
            continue
        if "localhost" in origin or "127.0.0.1" in origin:
            logger.warning(f"[CORS] Rejecting localhost origin in production: {origin}")
            continue
        ALLOWED_ORIGINS.append(origin)
else:
    default_origins = "http://localhost:3000,http://localhost:5173"
    ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.getenv("ALLOWED_ORIGINS", default_origins).split(",")
        if origin.strip()
    ]

if not ALLOWED_ORIGINS:
    raise ValueError("CORS configuration error: No valid allowed origins configured")

logger.info(f"[CORS] Environment: {ENVIRONMENT}, allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Client-Info", "Apikey"],
)

# Must run after the CORS middleware is added
setup_security(app, ALLOWED_ORIGINS)

app.include_router(health.router)
app.include_router(reports.router)
app.include_router(audits.router)
app.include_router(currency.router)
app.include_router(alerts.router)
app.include_router(invitations.router)
app.include_router(gam.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
