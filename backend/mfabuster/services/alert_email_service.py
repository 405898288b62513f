"""Alert email delivery to dashboard admins.

Every delivery attempt, sent or failed, is written to ``email_logs``.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from postgrest.exceptions import APIError

from mfabuster.deps import epoch_ms, now_iso, run_query, _error_message
from mfabuster.exceptions import FunctionError
from mfabuster.models.requests import AlertEmailRequest
from mfabuster.services.email_service import get_email_config, send_email
from mfabuster.services.email_templates import (
    alert_subject,
    alert_type_label,
    render_alert_email,
)

logger = logging.getLogger(__name__)

ADMIN_ROLES = ["admin", "super_admin"]


async def fetch_admin_emails(supabase, active_only: bool = False) -> List[str]:
    """Email addresses of admin and super admin users.

    Raises:
        APIError: when the ``app_users`` query fails
    """
    def _query():
        query = supabase.table("app_users").select("email").in_("role", ADMIN_ROLES)
        if active_only:
            query = query.eq("status", "active")
        return query.execute()

    response = await run_query(_query)
    return [row["email"] for row in (response.data or []) if row.get("email")]


async def _admin_recipients(supabase, empty_message: str) -> List[str]:
    try:
        emails = await fetch_admin_emails(supabase)
    except APIError as e:
        raise FunctionError(500, f"Failed to fetch admin users: {_error_message(e)}") from e
    if not emails:
        raise FunctionError(500, empty_message)
    return emails


async def _lookup_alert(supabase, alert_id: str, use_trend_alerts: bool) -> Dict[str, Any]:
    if use_trend_alerts:
        table, columns = "publisher_trend_alerts", "*, publishers(name, primary_domain)"
    else:
        table, columns = "alerts", "*, publishers(name, domain)"

    try:
        response = await run_query(
            lambda: supabase.table(table).select(columns).eq("id", alert_id).single().execute()
        )
    except APIError as e:
        raise FunctionError(
            500, f"Failed to fetch alert from {table}: {_error_message(e)}"
        ) from e
    return response.data


async def resolve_alert_and_recipients(
    supabase, request: AlertEmailRequest
) -> Tuple[Dict[str, Any], List[str]]:
    """Work out which alert to send and to whom, based on the request shape."""
    if request.alert_id and request.publisher_name:
        alert = {
            "id": request.alert_id,
            "alert_type": request.alert_type,
            "severity": request.severity,
            "message": request.message,
            "metadata": request.metadata or {},
            "created_at": request.timestamp,
            "publisher_id": request.publisher_id,
            "publishers": {
                "name": request.publisher_name,
                "primary_domain": request.publisher_domain,
            },
        }
        if request.recipient_email:
            return alert, [request.recipient_email]
        return alert, await _admin_recipients(supabase, "No admin or super admin users found")

    if request.test_email:
        alert = {
            "id": f"test-alert-{epoch_ms()}",
            "alert_type": request.type or "service_key_failure",
            "severity": request.severity or "high",
            "message": request.message or "This is a test alert email from the monitoring system.",
            "publisher_id": request.publisher_id or "test-publisher",
            "created_at": now_iso(),
        }
        return alert, [request.test_email]

    if request.alert_id:
        use_trend_alerts = request.source == "site-monitoring" or request.use_trend_alerts
        alert = await _lookup_alert(supabase, request.alert_id, use_trend_alerts)
        recipients = await _admin_recipients(
            supabase, "No admin or super admin users found to send alerts to"
        )
        return alert, recipients

    raise FunctionError(500, "Either alertId with data or testEmail must be provided")


async def _log_email(
    supabase,
    result: Dict[str, Any],
    subject: str,
    body: str,
    alert: Dict[str, Any],
    publisher_id: Optional[str],
) -> None:
    record = {
        "email": result["email"],
        "subject": subject,
        "status": result["status"],
        "error_message": result["error"],
        "email_type": "alert",
        "metadata": {
            "alert_id": alert.get("id"),
            "alert_type": alert.get("alert_type") or alert.get("type"),
            "severity": alert.get("severity"),
            "publisher_id": alert.get("publisher_id") or publisher_id,
            **result["metadata"],
        },
        "recipient": result["email"],
        "body": body,
        "alert_id": alert.get("id"),
    }
    try:
        await run_query(lambda: supabase.table("email_logs").insert(record).execute())
    except APIError as e:
        logger.error(f"Failed to log email for {result['email']}: {_error_message(e)}")


async def send_alert_email(supabase, request: AlertEmailRequest) -> Dict[str, Any]:
    """Render the alert email and deliver it to every recipient.

    Raises:
        FunctionError: 500 when the alert or recipients cannot be resolved,
            or when no delivery succeeded.
    """
    if not os.getenv("SUPABASE_URL") or not os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        raise FunctionError(500, "Missing Supabase environment variables")

    alert, recipients = await resolve_alert_and_recipients(supabase, request)

    body = render_alert_email(alert)
    subject = alert_subject(alert)
    logger.info(
        f"Sending alert emails to {len(recipients)} admin(s): {', '.join(recipients)} "
        f"(id={alert.get('id')}, type={alert_type_label(alert)}, severity={alert.get('severity')})"
    )

    config = get_email_config()
    results: List[Dict[str, Any]] = []

    for email in recipients:
        if config is None:
            results.append(
                {"email": email, "status": "failed", "error": "SMTP configuration missing", "metadata": {}}
            )
            continue

        outcome = await send_email(config, email, subject, body, sender_name="MFA Buster Alerts")
        if outcome.success:
            results.append({"email": email, "status": "sent", "error": None, "metadata": outcome.metadata})
        else:
            logger.error(f"Email delivery failed to {email}: {outcome.error}")
            results.append(
                {
                    "email": email,
                    "status": "failed",
                    "error": outcome.error or "Unknown email error",
                    "metadata": {},
                }
            )

    for result in results:
        await _log_email(supabase, result, subject, body, alert, request.publisher_id)

    success_count = sum(1 for r in results if r["status"] == "sent")
    failed_count = len(results) - success_count

    if success_count == 0:
        raise FunctionError(
            500,
            "All email deliveries failed",
            details="Alert created but emails could not be delivered. Please check SMTP configuration.",
            alertId=alert.get("id"),
            recipients=recipients,
            results=results,
        )

    return {
        "success": True,
        "message": f"Alert emails sent: {success_count} succeeded, {failed_count} failed",
        "alertId": alert.get("id"),
        "recipients": recipients,
        "successCount": success_count,
        "failedCount": failed_count,
        "results": results,
        "timestamp": now_iso(),
    }
