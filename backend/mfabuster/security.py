"""
Security Module for the MFA Buster function service

Implements the HTTP hardening shared by every function route:
- Rate limiting (IP-based using slowapi)
- Security headers middleware with request IDs
- Request size validation
- Error responses in the functions' ``{"success": false, "error": ...}`` envelope

Configuration via environment variables:
- RATE_LIMIT_PER_MINUTE: Requests per minute per IP (default: 100)
- MAX_REQUEST_SIZE_MB: Maximum request body size in MB (default: 10)
- TRUSTED_PROXY_COUNT: Proxies appending to X-Forwarded-For (default: 1)
- ENVIRONMENT: 'production' or 'development' (affects error detail exposure)
"""

import os
import uuid
import time
import logging
import ipaddress
from typing import Callable, Dict

from fastapi import FastAPI, Request, Response, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from mfabuster.deps import _get_int_env
from mfabuster.exceptions import FunctionError

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

RATE_LIMIT_PER_MINUTE = _get_int_env("RATE_LIMIT_PER_MINUTE", 100)
DEFAULT_RATE_LIMIT = f"{RATE_LIMIT_PER_MINUTE}/minute"

MAX_REQUEST_SIZE_MB = _get_int_env("MAX_REQUEST_SIZE_MB", 10)
MAX_REQUEST_SIZE_BYTES = MAX_REQUEST_SIZE_MB * 1024 * 1024

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION = ENVIRONMENT.lower() == "production"

TRUSTED_PROXY_COUNT = _get_int_env("TRUSTED_PROXY_COUNT", 1)


# =============================================================================
# Rate Limiter Setup
# =============================================================================

def _is_valid_ip(ip_str: str) -> bool:
    if not ip_str or len(ip_str) > 45:  # IPv6 max
        return False
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """
    Extract the client IP, taking the rightmost untrusted X-Forwarded-For hop.

    Example: "spoofed, real-client, proxy1" with TRUSTED_PROXY_COUNT=1
    gives "real-client". Falls back to X-Real-IP, then the socket peer.

    Returns:
        The client IP address, or "unknown" if not determinable
    """
    direct_ip = request.client.host if request.client else None

    if forwarded_for := request.headers.get("X-Forwarded-For"):
        if ips := [ip.strip() for ip in forwarded_for.split(",") if ip.strip()]:
            if len(ips) > TRUSTED_PROXY_COUNT:
                client_ip = ips[-(TRUSTED_PROXY_COUNT + 1)]
            else:
                client_ip = ips[0]

            if _is_valid_ip(client_ip):
                return client_ip
            logger.warning(
                f"Invalid IP in X-Forwarded-For header: {client_ip[:50]!r}",
                extra={"direct_ip": direct_ip},
            )

    if real_ip := request.headers.get("X-Real-IP"):
        real_ip = real_ip.strip()
        if _is_valid_ip(real_ip):
            return real_ip
        logger.warning(
            f"Invalid X-Real-IP header: {real_ip[:50]!r}",
            extra={"direct_ip": direct_ip},
        )

    return direct_ip if direct_ip and _is_valid_ip(direct_ip) else "unknown"


limiter = Limiter(
    key_func=get_client_ip,
    default_limits=[DEFAULT_RATE_LIMIT],
    storage_uri="memory://",  # single instance; use Redis when scaled out
    strategy="fixed-window",
)

# Stricter limits for the unauthenticated invitation flows
INVITATION_RATE_LIMIT = "10/minute"
ACCEPT_INVITE_RATE_LIMIT = "5/minute"


def rate_limit_invitation():
    return limiter.limit(INVITATION_RATE_LIMIT)


def rate_limit_accept_invite():
    return limiter.limit(ACCEPT_INVITE_RATE_LIMIT)


# =============================================================================
# Middleware
# =============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers and an ``X-Request-ID`` to every response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.start_time = time.time()

        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )
        response.headers["X-Request-ID"] = request_id
        if not response.headers.get("Cache-Control"):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"

        duration = time.time() - request.state.start_time
        logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s "
            f"request_id={request_id} client_ip={get_client_ip(request)}"
        )
        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Rejects bodies larger than MAX_REQUEST_SIZE_MB based on Content-Length."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if content_length := request.headers.get("content-length"):
            try:
                size = int(content_length)
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={"success": False, "error": "Invalid Content-Length header"},
                )
            if size > MAX_REQUEST_SIZE_BYTES:
                return JSONResponse(
                    status_code=413,
                    content={
                        "success": False,
                        "error": f"Request body too large. Maximum size is {MAX_REQUEST_SIZE_MB}MB.",
                    },
                )

        return await call_next(request)


# =============================================================================
# Exception Handlers
# =============================================================================

def _response_headers(request: Request, allowed_origins: list[str]) -> Dict[str, str]:
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))
    headers = {"X-Request-ID": request_id}
    origin = request.headers.get("origin", "")
    if origin in allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def create_function_error_handler(allowed_origins: list[str]) -> Callable:
    async def function_error_handler(request: Request, exc: FunctionError) -> JSONResponse:
        headers = _response_headers(request, allowed_origins)
        if exc.status_code >= 500:
            logger.error(
                f"Function failed: {request.url.path} status={exc.status_code} "
                f"error={exc.error!r} request_id={headers['X-Request-ID']}"
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_content(), headers=headers)

    return function_error_handler


def create_secure_exception_handler(allowed_origins: list[str]) -> Callable:
    """
    Handler for unexpected exceptions.

    The full error is always logged. Production responses carry a generic
    message; development responses include the exception text.
    """

    async def secure_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        headers = _response_headers(request, allowed_origins)
        request_id = headers["X-Request-ID"]

        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {str(exc)} "
            f"request_id={request_id} path={request.url.path} "
            f"method={request.method} client_ip={get_client_ip(request)}",
            exc_info=True,
        )

        if IS_PRODUCTION:
            content = {
                "success": False,
                "error": "Internal server error",
                "requestId": request_id,
            }
        else:
            content = {
                "success": False,
                "error": str(exc) or "Internal server error",
                "errorType": type(exc).__name__,
                "requestId": request_id,
            }
        return JSONResponse(status_code=500, content=content, headers=headers)

    return secure_exception_handler


def create_rate_limit_exceeded_handler(allowed_origins: list[str]) -> Callable:
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        headers = _response_headers(request, allowed_origins)
        headers["Retry-After"] = "60"

        logger.warning(
            f"Rate limit exceeded: client_ip={get_client_ip(request)} "
            f"path={request.url.path} request_id={headers['X-Request-ID']}"
        )
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "Rate limit exceeded. Please slow down your requests.",
                "retryAfterSeconds": 60,
            },
            headers=headers,
        )

    return rate_limit_handler


def create_http_exception_handler(allowed_origins: list[str]) -> Callable:
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        headers = _response_headers(request, allowed_origins)
        if exc.status_code == 401:
            logger.warning(
                f"Authentication failed: client_ip={get_client_ip(request)} "
                f"path={request.url.path} request_id={headers['X-Request-ID']}"
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=headers,
        )

    return http_exception_handler


# =============================================================================
# Security Setup Function
# =============================================================================

def setup_security(app: FastAPI, allowed_origins: list[str]) -> None:
    """
    Configure rate limiting, security headers, size limits and the
    exception handlers on ``app``.
    """
    app.state.limiter = limiter

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware)

    app.add_exception_handler(RateLimitExceeded, create_rate_limit_exceeded_handler(allowed_origins))
    app.add_exception_handler(FunctionError, create_function_error_handler(allowed_origins))
    app.add_exception_handler(Exception, create_secure_exception_handler(allowed_origins))
    app.add_exception_handler(HTTPException, create_http_exception_handler(allowed_origins))

    logger.info(
        f"Security middleware configured: "
        f"rate_limit={RATE_LIMIT_PER_MINUTE}/min, "
        f"max_request_size={MAX_REQUEST_SIZE_MB}MB, "
        f"environment={ENVIRONMENT}"
    )
