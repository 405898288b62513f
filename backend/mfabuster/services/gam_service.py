"""Google Ad Manager REST access with the shared service account.

The service account JSON lives in ``GAM_SERVICE_ACCOUNT_JSON``; access tokens
are minted with google-auth for the ``dfp`` scope.
"""

import asyncio
import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

import google.auth.transport.requests
import httpx
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account

from mfabuster.exceptions import FunctionError
from mfabuster.models.requests import GamApiRequest

logger = logging.getLogger(__name__)

GAM_SCOPES = ["https://www.googleapis.com/auth/dfp"]
GAM_API_BASE = "https://admanager.googleapis.com/v1"
GAM_REQUEST_TIMEOUT = 30.0

REQUIRED_CREDENTIAL_FIELDS = ("private_key", "client_email", "token_uri")


def load_service_account_info() -> Optional[Dict[str, Any]]:
    """Parsed service account JSON, or None when unset or incomplete."""
    raw = os.getenv("GAM_SERVICE_ACCOUNT_JSON")
    if not raw:
        logger.error("GAM_SERVICE_ACCOUNT_JSON environment variable not set")
        return None
    try:
        info = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing service account credentials: {e}")
        return None
    if not isinstance(info, dict) or not all(info.get(f) for f in REQUIRED_CREDENTIAL_FIELDS):
        logger.error("Service account credentials missing required fields")
        return None
    return info


def _fetch_token(info: Dict[str, Any]) -> str:
    credentials = service_account.Credentials.from_service_account_info(info, scopes=GAM_SCOPES)
    credentials.refresh(google.auth.transport.requests.Request())
    return credentials.token


async def get_access_token(info: Dict[str, Any]) -> str:
    """OAuth access token for the service account.

    Raises:
        FunctionError: 500 when the token exchange fails
    """
    try:
        return await asyncio.to_thread(_fetch_token, info)
    except (GoogleAuthError, ValueError) as e:
        raise FunctionError(500, f"Failed to get access token: {e}") from e


def _auth_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def check_network_access(
    network_code: str,
    access_token: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Optional[str]]:
    """Probe a GAM network with the service account token.

    Returns ``{"status": ..., "error": ...}`` where status is ``active``,
    ``no_service_email`` (403) or ``invalid``.
    """
    client = http_client or httpx.AsyncClient(timeout=GAM_REQUEST_TIMEOUT)
    logger.info(f"Checking network access for network code: {network_code}")
    try:
        response = await client.get(
            f"{GAM_API_BASE}/networks/{network_code}", headers=_auth_headers(access_token)
        )
    except httpx.HTTPError as e:
        logger.error(f"Network check error for {network_code}: {e}")
        return {"status": "invalid", "error": str(e) or type(e).__name__}
    finally:
        if http_client is None:
            await client.aclose()

    if response.is_success:
        body = _response_body(response)
        name = body.get("displayName") if isinstance(body, dict) else None
        logger.info(f"Successfully accessed GAM network: {name or network_code}")
        return {"status": "active", "error": None}

    logger.error(f"GAM API error for {network_code}: {response.status_code} {_response_body(response)}")
    if response.status_code == 403:
        return {"status": "no_service_email", "error": "No service account email configured in GAM"}
    if response.status_code == 404:
        return {"status": "invalid", "error": "Network not found"}
    if response.status_code == 401:
        return {"status": "invalid", "error": "Authentication failed"}
    return {"status": "invalid", "error": "Access denied or network not found"}


def _gam_error_message(status_code: int, client_email: str) -> str:
    if status_code == 403:
        return (
            f"Access denied. The service account ({client_email}) does not have permission "
            "to access this GAM network. Please add it as an Admin or Reports user in "
            "GAM Admin > Access & Authorization > Users."
        )
    if status_code == 404:
        return "Network not found. Please verify the network code is correct."
    if status_code == 401:
        return "Authentication failed. Please verify the service account credentials are correct."
    return "GAM API request failed"


def resolve_gam_url(request: GamApiRequest) -> str:
    """Upstream URL for a network-scoped endpoint.

    Raises:
        FunctionError: 400 for missing parameters or an unknown endpoint
    """
    endpoint = request.endpoint
    if not request.network_code:
        raise FunctionError(400, "networkCode parameter is required for API calls")

    network_url = f"{GAM_API_BASE}/networks/{request.network_code}"
    if endpoint == "network":
        return network_url
    if endpoint == "orders":
        return f"{network_url}/orders?pageSize=1"
    if endpoint == "line-items":
        if not request.order_id:
            raise FunctionError(400, "orderId parameter is required for line-items endpoint")
        return f"{network_url}/orders/{request.order_id}/lineItems"
    if endpoint == "custom":
        if not request.path:
            raise FunctionError(400, "path parameter is required for custom endpoint")
        return request.path
    raise FunctionError(400, "Invalid endpoint specified")


async def gam_api(
    request: GamApiRequest, http_client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    """Authenticated pass-through to the GAM REST API.

    ``test`` only checks that a token can be minted; ``list-networks`` lists
    the networks the service account can see; the remaining endpoints need
    ``networkCode``.
    """
    request_id = str(uuid.uuid4())
    endpoint = request.endpoint or "test"
    logger.info(f"[{request_id}] New GAM API request (endpoint={endpoint})")

    info = load_service_account_info()
    if info is None:
        raise FunctionError(500, "Service account credentials not configured")

    access_token = await get_access_token(info)
    client_email = info["client_email"]

    if endpoint == "test":
        return {
            "success": True,
            "message": "Google Ad Manager API authentication successful",
            "service_account": client_email,
            "token_obtained": True,
        }

    if endpoint == "list-networks":
        url = f"{GAM_API_BASE}/networks"
    else:
        url = resolve_gam_url(request.model_copy(update={"endpoint": endpoint}))

    logger.info(f"[{request_id}] Calling GAM API: {url}")
    client = http_client or httpx.AsyncClient(timeout=GAM_REQUEST_TIMEOUT)
    try:
        response = await client.get(url, headers=_auth_headers(access_token))
    except httpx.HTTPError as e:
        logger.error(f"[{request_id}] GAM API request failed: {e}")
        raise FunctionError(500, "Internal server error", details=str(e) or type(e).__name__) from e
    finally:
        if http_client is None:
            await client.aclose()

    body = _response_body(response)
    if response.is_success:
        logger.info(f"[{request_id}] GAM API request successful")
        return {"success": True, "data": body}

    logger.error(f"[{request_id}] GAM API error: {response.status_code} {body}")
    if endpoint == "list-networks":
        raise FunctionError(
            response.status_code, "GAM API request failed", data=body, status=response.status_code
        )
    raise FunctionError(
        response.status_code,
        _gam_error_message(response.status_code, client_email),
        details=body,
        status=response.status_code,
        networkCode=request.network_code,
        serviceAccount=client_email,
    )
