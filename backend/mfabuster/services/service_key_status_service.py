"""Service-account access checks for publisher GAM networks.

Each check stores ``service_key_status`` on the publisher. Failed checks
raise a high severity alert and email the active admins.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError

from mfabuster.deps import now_iso, run_query, _error_message
from mfabuster.exceptions import FunctionError
from mfabuster.models.requests import AlertEmailRequest
from mfabuster.services.alert_email_service import fetch_admin_emails, send_alert_email
from mfabuster.services.gam_service import (
    check_network_access,
    get_access_token,
    load_service_account_info,
)

logger = logging.getLogger(__name__)

FAILED_STATUSES = ("no_service_email", "invalid")


def _alert_for(publisher: Dict[str, Any], result: Dict[str, Optional[str]]) -> Dict[str, str]:
    label = f'"{publisher.get("name")}" ({publisher.get("domain")})'
    code = publisher["network_code"]
    if result["status"] == "no_service_email":
        return {
            "type": "no_service_email",
            "title": "No Service Email Configured",
            "message": (
                f"Publisher {label} - Network Code: {code} does not have a service account "
                "email configured in Google Ad Manager."
            ),
        }
    return {
        "type": "gam_access_failed",
        "title": "GAM Access Failed",
        "message": (
            f"Unable to access GAM network for publisher {label} - "
            f"Network Code: {code}. Error: {result['error']}"
        ),
    }


async def _raise_access_alert(
    supabase, publisher: Dict[str, Any], result: Dict[str, Optional[str]]
) -> None:
    alert = _alert_for(publisher, result)
    try:
        await run_query(
            lambda: supabase.table("alerts")
            .insert(
                {
                    "publisher_id": publisher["id"],
                    "type": alert["type"],
                    "severity": "high",
                    "status": "pending",
                    "title": alert["title"],
                    "message": alert["message"],
                    "details": {
                        "network_code": publisher["network_code"],
                        "service_key_status": result["status"],
                        "error": result["error"],
                        "checked_at": now_iso(),
                    },
                }
            )
            .execute()
        )
        admins = await fetch_admin_emails(supabase, active_only=True)
    except APIError as e:
        logger.error(f"Failed to create alert for publisher {publisher['id']}: {_error_message(e)}")
        return

    for email in admins:
        try:
            await send_alert_email(
                supabase,
                AlertEmailRequest(
                    test_email=email,
                    type=alert["type"],
                    severity="high",
                    message=alert["message"],
                    publisher_id=publisher["id"],
                ),
            )
        except FunctionError as e:
            logger.error(f"Failed to send email to {email}: {e.error}")


async def _check_publisher(
    supabase,
    publisher: Dict[str, Any],
    access_token: str,
    http_client: Optional[httpx.AsyncClient],
) -> Dict[str, Any]:
    result = await check_network_access(publisher["network_code"], access_token, http_client)

    update_error = None
    try:
        await run_query(
            lambda: supabase.table("publishers")
            .update(
                {
                    "service_key_status": result["status"],
                    "service_key_error": result["error"],
                    "service_key_last_check": now_iso(),
                }
            )
            .eq("id", publisher["id"])
            .execute()
        )
    except APIError as e:
        update_error = _error_message(e)
        logger.error(f"Failed to update publisher {publisher['id']}: {update_error}")

    if result["status"] in FAILED_STATUSES:
        await _raise_access_alert(supabase, publisher, result)

    return {**result, "updateError": update_error}


async def _token_or_raise() -> str:
    info = load_service_account_info()
    if info is None:
        raise FunctionError(500, "Service account credentials not configured")
    return await get_access_token(info)


async def check_service_key_status(
    supabase,
    publisher_id: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Check GAM access for one publisher, or every publisher with a network code."""
    if publisher_id:
        try:
            response = await run_query(
                lambda: supabase.table("publishers")
                .select("id, name, domain, network_code")
                .eq("id", publisher_id)
                .single()
                .execute()
            )
        except APIError as e:
            raise FunctionError(500, f"Failed to fetch publisher: {_error_message(e)}") from e

        publisher = response.data
        if not publisher.get("network_code"):
            raise FunctionError(400, "Publisher does not have a network code")

        access_token = await _token_or_raise()
        outcome = await _check_publisher(supabase, publisher, access_token, http_client)
        if outcome["updateError"]:
            raise FunctionError(500, f"Failed to update publisher: {outcome['updateError']}")

        return {
            "success": True,
            "publisherId": publisher_id,
            "status": outcome["status"],
            "error": outcome["error"],
            "checkedAt": now_iso(),
        }

    try:
        response = await run_query(
            lambda: supabase.table("publishers")
            .select("id, name, domain, network_code")
            .not_.is_("network_code", "null")
            .execute()
        )
    except APIError as e:
        raise FunctionError(500, f"Failed to fetch publishers: {_error_message(e)}") from e

    access_token = await _token_or_raise()
    results: List[Dict[str, Any]] = []
    for publisher in response.data or []:
        outcome = await _check_publisher(supabase, publisher, access_token, http_client)
        results.append(
            {
                "publisherId": publisher["id"],
                "networkCode": publisher["network_code"],
                "status": outcome["status"],
                "error": outcome["error"],
                "updateError": outcome["updateError"],
            }
        )

    logger.info(f"Checked service key status for {len(results)} publishers")
    return {
        "success": True,
        "checked": len(results),
        "results": results,
        "checkedAt": now_iso(),
    }
