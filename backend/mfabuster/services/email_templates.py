"""HTML/text bodies for alert and invitation emails."""

import json
from datetime import datetime
from html import escape
from typing import Any, Dict, Optional, Tuple

BRAND_COLOR = "#48a77f"

_SEVERITY_STYLES = {
    "critical": "background-color: #dc3545; color: white;",
    "high": "background-color: #fd7e14; color: white;",
    "medium": "background-color: #ffc107; color: black;",
    "low": "background-color: #28a745; color: white;",
}


def alert_type_label(alert: Dict[str, Any]) -> str:
    """``alert_type`` (or ``type``) with underscores as spaces."""
    return (alert.get("alert_type") or alert.get("type") or "").replace("_", " ")


def alert_severity(alert: Dict[str, Any]) -> str:
    return alert.get("severity") or "unknown"


def alert_subject(alert: Dict[str, Any]) -> str:
    return f"[{alert_severity(alert).upper()}] Alert: {alert_type_label(alert)}"


def _format_time(value: Optional[str]) -> str:
    if not value:
        return "N/A"
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return str(value)
    return parsed.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def render_alert_email(alert: Dict[str, Any]) -> str:
    severity = alert_severity(alert)
    badge_style = _SEVERITY_STYLES.get(severity, "background-color: #6c757d; color: white;")

    parts = [
        f"""<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
<div style="max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="background-color: {BRAND_COLOR}; color: white; padding: 20px; text-align: center;">
    <h1 style="margin: 0;">Site Monitoring Alert</h1>
  </div>
  <div style="background-color: #f9f9f9; padding: 20px; border: 1px solid #ddd;">
    <div style="margin: 20px 0; padding: 15px; background-color: white; border-left: 4px solid {BRAND_COLOR};">
      <p><strong>Alert ID:</strong> {escape(str(alert.get("id", "")))}</p>
      <p><strong>Type:</strong> {escape(alert_type_label(alert).upper())}</p>
      <p><strong>Severity:</strong>
        <span style="display: inline-block; padding: 5px 10px; border-radius: 3px; font-weight: bold; {badge_style}">{escape(severity.upper())}</span>
      </p>
      <p><strong>Time:</strong> {escape(_format_time(alert.get("created_at")))}</p>
    </div>
    <h3>Message:</h3>
    <p>{escape(str(alert.get("message") or ""))}</p>"""
    ]

    if publisher := alert.get("publishers"):
        domain = publisher.get("primary_domain") or publisher.get("domain") or "N/A"
        parts.append(
            "<h3>Publisher Details:</h3>"
            f"<p><strong>Name:</strong> {escape(str(publisher.get('name') or ''))}</p>"
            f"<p><strong>Domain:</strong> {escape(str(domain))}</p>"
        )

    if metadata := alert.get("metadata"):
        parts.append(
            "<h3>Additional Details:</h3>"
            '<pre style="background: #f5f5f5; padding: 10px; border-radius: 4px; overflow-x: auto;">'
            f"{escape(json.dumps(metadata, indent=2, default=str))}</pre>"
        )

    parts.append(
        """<p style="margin-top: 20px;">Please log in to the dashboard to acknowledge or resolve this alert.</p>
  </div>
  <div style="text-align: center; margin-top: 20px; color: #666; font-size: 12px;">
    <p>This is an automated alert from your MFA Buster monitoring system.</p>
    <p>Do not reply to this email.</p>
  </div>
</div>
</body>
</html>"""
    )
    return "\n".join(parts)


INVITATION_SUBJECT = "You're invited to join LP Media Dashboard"


def render_invitation_email(
    email: str,
    role: str,
    accept_url: str,
    invitee_name: str,
    inviter_name: str,
    company_name: str,
) -> Tuple[str, str]:
    """Return ``(html, text)`` bodies for an invitation."""
    role_label = role.replace("_", " ", 1).upper()

    html = f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Invitation to LP Media Dashboard</title></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
  line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f8fafc;">
<div style="background: white; border-radius: 12px; padding: 40px;">
  <div style="text-align: center; margin-bottom: 30px;">
    <div style="font-size: 28px; font-weight: bold; color: {BRAND_COLOR};">LP Media Dashboard</div>
    <div style="font-size: 24px; font-weight: 600; color: #1e293b;">You're Invited!</div>
  </div>
  <p>Hello {escape(invitee_name)},</p>
  <p>You've been invited by <strong>{escape(inviter_name)}</strong> from <strong>{escape(company_name)}</strong> to join the LP Media Dashboard.</p>
  <p>Your role: <strong>{escape(role_label)}</strong></p>
  <div style="text-align: center;">
    <a href="{escape(accept_url)}" style="display: inline-block; background: {BRAND_COLOR}; color: white;
      padding: 14px 28px; text-decoration: none; border-radius: 8px; font-weight: 600; margin: 20px 0;">Accept Invitation</a>
  </div>
  <div style="background: #e0f2fe; border-left: 4px solid {BRAND_COLOR}; padding: 15px; margin: 20px 0;">
    <p><strong>Important:</strong> This invitation link will expire in 7 days. Please click the button above to complete your registration and set your password.</p>
  </div>
  <p>If the button doesn't work, copy and paste this link into your browser:</p>
  <p style="word-break: break-all; color: {BRAND_COLOR};">{escape(accept_url)}</p>
  <p>If you have any questions, please contact your administrator.</p>
  <p>Best regards,<br>The LP Media Team</p>
  <div style="text-align: center; margin-top: 30px; color: #666; font-size: 12px;">
    <p>This email was sent to {escape(email)}. If you didn't expect this invitation, you can safely ignore this email.</p>
  </div>
</div>
</body>
</html>"""

    text = f"""Hello {invitee_name},

You've been invited by {inviter_name} from {company_name} to join the LP Media Dashboard.

Your role: {role_label}

To accept your invitation and set your password, please visit:
{accept_url}

This invitation link will expire in 7 days.

If you have any questions, please contact your administrator.

Best regards,
The LP Media Team

---
This email was sent to {email}. If you didn't expect this invitation, you can safely ignore this email."""

    return html, text
