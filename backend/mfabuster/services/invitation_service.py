"""User invitations: send, accept/validate and expiry cleanup.

Invitations carry a 64 hex character token and expire after seven days.
Accepting one creates the Supabase auth user and its ``app_users`` profile;
if the profile cannot be written the auth user is deleted again so the
invitation can be retried.
"""

import logging
import os
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import AuthError

from mfabuster.deps import now_iso, run_query, _error_message
from mfabuster.exceptions import FunctionError
from mfabuster.models.requests import AcceptInviteRequest, SendInvitationRequest
from mfabuster.services.email_service import get_email_config, send_email
from mfabuster.services.email_templates import INVITATION_SUBJECT, render_invitation_email

logger = logging.getLogger(__name__)

VALID_ROLES = {"super_admin", "admin", "partner"}
PRIVILEGED_ROLES = {"super_admin", "admin"}
INVITATION_TTL = timedelta(days=7)
MIN_PASSWORD_LENGTH = 8

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)

_STATUS_MESSAGES = {
    "accepted": "This invitation has already been used",
    "expired": "This invitation has expired",
    "cancelled": "This invitation has been cancelled",
}


def generate_invitation_token() -> str:
    return secrets.token_hex(32)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_expired(invite: Dict[str, Any]) -> bool:
    expires_at = _parse_ts(invite.get("expires_at"))
    return expires_at is not None and expires_at < datetime.now(timezone.utc)


def _require_supabase_config() -> None:
    if not os.getenv("SUPABASE_URL") or not os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        raise FunctionError(500, "Missing Supabase configuration")


async def _insert_log(supabase, table: str, record: Dict[str, Any], request_id: str) -> None:
    try:
        await run_query(lambda: supabase.table(table).insert(record).execute())
    except APIError as e:
        logger.error(f"[{request_id}] Failed to write {table}: {_error_message(e)}")


# ============================================================================
# send-invitation
# ============================================================================


async def _auth_user_exists(supabase, email: str, request_id: str) -> bool:
    try:
        users = await run_query(lambda: supabase.auth.admin.list_users())
    except AuthError as e:
        logger.error(f"[{request_id}] Error checking users: {e}")
        return False
    return any(getattr(u, "email", None) == email for u in users or [])


async def _has_active_invitation(supabase, email: str, request_id: str) -> bool:
    try:
        response = await run_query(
            lambda: supabase.table("invitations")
            .select("id, status, expires_at")
            .eq("email", email)
            .eq("status", "pending")
            .execute()
        )
    except APIError as e:
        logger.error(f"[{request_id}] Error checking existing invitations: {_error_message(e)}")
        raise FunctionError(
            500, "Failed to check existing invitations", details=_error_message(e)
        ) from e
    return any(not _is_expired(row) for row in response.data or [])


async def send_invitation(supabase, request: SendInvitationRequest) -> Dict[str, Any]:
    """Create an invitation and email the accept link.

    Raises:
        FunctionError: 400 on invalid input or duplicates, 403 when the
            inviter may not grant the role, 500 when the record cannot be
            created or the email could not be delivered.
    """
    request_id = str(uuid.uuid4())
    _require_supabase_config()
    app_url = os.getenv("APP_URL") or os.getenv("SUPABASE_URL")

    email, role, invited_by = request.email, request.role, request.invited_by
    logger.info(f"[{request_id}] Processing invitation for {email} (role={role}, invited_by={invited_by})")

    if not email or not role or not invited_by:
        raise FunctionError(400, "Missing required fields: email, role, invited_by")
    if not EMAIL_RE.match(email):
        raise FunctionError(400, "Invalid email format")
    if role not in VALID_ROLES:
        raise FunctionError(400, "Invalid role specified")

    try:
        inviter = await run_query(
            lambda: supabase.table("app_users").select("role").eq("id", invited_by).limit(1).execute()
        )
        inviter_rows = inviter.data or []
    except APIError as e:
        logger.error(f"[{request_id}] Inviter lookup failed: {_error_message(e)}")
        inviter_rows = []
    if not inviter_rows:
        raise FunctionError(403, "Inviter user not found or unauthorized")

    inviter_role = inviter_rows[0].get("role")
    if role in PRIVILEGED_ROLES and inviter_role != "super_admin":
        logger.warning(f"[{request_id}] Insufficient permissions: {inviter_role} cannot create {role}")
        raise FunctionError(403, "Only super admins can create admin or super admin users")

    if await _auth_user_exists(supabase, email, request_id):
        raise FunctionError(400, "User with this email already exists")
    if await _has_active_invitation(supabase, email, request_id):
        raise FunctionError(400, "An active invitation already exists for this email")

    metadata = request.metadata or {}
    token = generate_invitation_token()
    expires_at = datetime.now(timezone.utc) + INVITATION_TTL

    try:
        inserted = await run_query(
            lambda: supabase.table("invitations")
            .insert(
                {
                    "email": email,
                    "role": role,
                    "token": token,
                    "partner_id": request.partner_id or None,
                    "invited_by": invited_by,
                    "status": "pending",
                    "expires_at": expires_at.isoformat(),
                    "metadata": {
                        "full_name": request.name or metadata.get("full_name"),
                        "company_name": request.company_name or metadata.get("company_name"),
                        "inviter_name": metadata.get("inviter_name"),
                    },
                }
            )
            .execute()
        )
    except APIError as e:
        logger.error(f"[{request_id}] Failed to create invitation: {_error_message(e)}")
        raise FunctionError(
            500, "Failed to create invitation record", details=_error_message(e)
        ) from e
    if not inserted.data:
        raise FunctionError(500, "Failed to create invitation record")

    invitation_id = inserted.data[0]["id"]
    accept_url = f"{(app_url or '').rstrip('/')}/invite/{token}"
    company_name = request.company_name or metadata.get("company_name") or "LP Media"
    html, text = render_invitation_email(
        email=email,
        role=role,
        accept_url=accept_url,
        invitee_name=request.name or metadata.get("full_name") or "there",
        inviter_name=metadata.get("inviter_name") or "Admin",
        company_name=company_name,
    )

    email_error: Optional[str] = None
    if request.test_mode:
        logger.info(f"[{request_id}] TEST MODE: skipping email send, invitation URL: {accept_url}")
        email_status = "sent"
        email_metadata: Dict[str, Any] = {"test_mode": True, "invitation_url": accept_url}
    else:
        config = get_email_config()
        if config is None:
            email_status, email_error = "failed", "SMTP configuration missing"
            email_metadata = {"invitation_url": accept_url}
        else:
            outcome = await send_email(config, email, INVITATION_SUBJECT, html, text)
            if outcome.success:
                email_status, email_metadata = "sent", outcome.metadata
            else:
                email_status = "failed"
                email_error = outcome.error or "Unknown email error"
                email_metadata = {"invitation_url": accept_url}

    await _insert_log(
        supabase,
        "email_logs",
        {
            "email": email,
            "subject": INVITATION_SUBJECT,
            "status": email_status,
            "error_message": email_error,
            "email_type": "invitation",
            "metadata": {
                "role": role,
                "invited_by": invited_by,
                "invitation_id": invitation_id,
                "company_name": company_name,
                **email_metadata,
            },
        },
        request_id,
    )
    await _insert_log(
        supabase,
        "audit_logs",
        {
            "user_id": invited_by,
            "user_email": email,
            "user_role": role,
            "action": "user_invitation_sent",
            "entity_type": "invitations",
            "entity_id": invitation_id,
            "details": {
                "email": email,
                "role": role,
                "invited_by": invited_by,
                "email_status": email_status,
            },
        },
        request_id,
    )

    invitation_url = accept_url if request.test_mode else None
    if email_status == "failed":
        raise FunctionError(
            500,
            email_error or "Email delivery failed",
            details="Invitation created but email could not be delivered. Please check SMTP configuration.",
            invitation_id=invitation_id,
            invitation_url=invitation_url,
        )

    response: Dict[str, Any] = {
        "success": True,
        "message": f"Invitation sent successfully to {email}",
        "invitation_id": invitation_id,
        "email_status": email_status,
    }
    if invitation_url:
        response["invitation_url"] = invitation_url
    return response


# ============================================================================
# accept-invite
# ============================================================================


async def _find_pending_invite(
    supabase, token: str, request_id: str, lookup_error: str, **extra: Any
) -> Dict[str, Any]:
    """Pending, unexpired invitation for ``token``; raises FunctionError otherwise."""
    try:
        response = await run_query(
            lambda: supabase.table("invitations")
            .select("*")
            .eq("token", token)
            .eq("status", "pending")
            .limit(1)
            .execute()
        )
    except APIError as e:
        message = lookup_error
        if "permission denied" in (e.message or "").lower():
            message = "Supabase RLS is blocking the invitations query. Ensure you use service_role key."
        logger.error(f"[{request_id}] Database error during token lookup: {_error_message(e)}")
        raise FunctionError(500, message, details=_error_message(e), code=e.code, **extra) from e

    rows = response.data or []
    if not rows:
        logger.warning(f"[{request_id}] No pending invitation found with token: {token[:8]}...")
        any_invite = await run_query(
            lambda: supabase.table("invitations")
            .select("status, expires_at")
            .eq("token", token)
            .limit(1)
            .execute()
        )
        status = (any_invite.data or [{}])[0].get("status")
        raise FunctionError(
            400, _STATUS_MESSAGES.get(status, "Invalid invitation token"), **extra
        )

    invite = rows[0]
    if _is_expired(invite):
        await run_query(
            lambda: supabase.table("invitations")
            .update({"status": "expired"})
            .eq("id", invite["id"])
            .execute()
        )
        raise FunctionError(
            400, "This invitation has expired. Please request a new one.", **extra
        )
    return invite


async def accept_invite(supabase, request: AcceptInviteRequest) -> Dict[str, Any]:
    """Validate an invitation token, or accept it and create the user.

    ``action`` of ``validate`` (or ``verify``) only checks the token.
    """
    request_id = str(uuid.uuid4())
    _require_supabase_config()

    token = request.token
    if not token:
        raise FunctionError(400, "Token is required")

    if request.action in ("validate", "verify"):
        invite = await _find_pending_invite(
            supabase, token, request_id, "Database error while verifying token", valid=False
        )
        return {
            "success": True,
            "valid": True,
            "invitation": {
                "email": invite["email"],
                "role": invite["role"],
                "metadata": invite.get("metadata"),
            },
        }

    password = request.password
    if not password:
        raise FunctionError(400, "Password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise FunctionError(400, "Password must be at least 8 characters long")

    invite = await _find_pending_invite(supabase, token, request_id, "Failed to retrieve invitation")
    invite_meta = invite.get("metadata") or {}
    full_name = request.full_name or invite_meta.get("full_name") or invite["email"].split("@")[0]

    try:
        auth_response = await run_query(
            lambda: supabase.auth.admin.create_user(
                {
                    "email": invite["email"],
                    "password": password,
                    "email_confirm": True,
                    "user_metadata": {
                        "full_name": full_name,
                        "company_name": invite_meta.get("company_name"),
                    },
                }
            )
        )
        auth_user = auth_response.user
    except AuthError as e:
        logger.error(f"[{request_id}] Failed to create user: {e}")
        await _insert_log(
            supabase,
            "email_logs",
            {
                "email": invite["email"],
                "subject": "Invitation Acceptance Failed",
                "status": "failed",
                "error_message": f"User creation failed: {e}",
                "email_type": "invitation_acceptance",
                "metadata": {"invitation_id": invite["id"], "error": str(e)},
            },
            request_id,
        )
        raise FunctionError(500, "Failed to create user account", details=str(e)) from e

    user_id = str(auth_user.id) if auth_user is not None else ""
    if not UUID_RE.match(user_id):
        logger.error(f"[{request_id}] Invalid user id returned from auth: {user_id!r}")
        if user_id:
            try:
                await run_query(lambda: supabase.auth.admin.delete_user(user_id))
            except AuthError as e:
                logger.error(f"[{request_id}] Failed to delete invalid auth user: {e}")
        raise FunctionError(500, f"Invalid user ID returned from auth system: {user_id}")

    try:
        await run_query(
            lambda: supabase.table("app_users")
            .upsert(
                {
                    "id": user_id,
                    "email": invite["email"],
                    "full_name": full_name,
                    "role": invite["role"],
                    "status": "active",
                    "company_name": invite_meta.get("company_name"),
                    "invited_by": invite.get("invited_by"),
                },
                on_conflict="id",
            )
            .execute()
        )
    except APIError as e:
        logger.error(f"[{request_id}] Failed to create app_users record: {_error_message(e)}")
        try:
            await run_query(lambda: supabase.auth.admin.delete_user(user_id))
        except AuthError as rollback_error:
            logger.error(f"[{request_id}] Failed to roll back auth user {user_id}: {rollback_error}")
        raise FunctionError(
            500,
            f"Failed to create user profile: {_error_message(e)}",
            details=_error_message(e),
            code=e.code,
            hint=e.hint,
        ) from e

    try:
        await run_query(
            lambda: supabase.table("invitations")
            .update({"status": "accepted", "accepted_at": now_iso()})
            .eq("id", invite["id"])
            .execute()
        )
    except APIError as e:
        logger.error(f"[{request_id}] Failed to mark invitation as accepted: {_error_message(e)}")

    await _insert_log(
        supabase,
        "audit_logs",
        {
            "user_id": user_id,
            "user_email": invite["email"],
            "user_role": invite["role"],
            "action": "invitation_accepted",
            "entity_type": "invitations",
            "entity_id": invite["id"],
            "details": {
                "email": invite["email"],
                "role": invite["role"],
                "invited_by": invite.get("invited_by"),
            },
        },
        request_id,
    )

    return {
        "success": True,
        "message": "Invitation accepted successfully",
        "user_id": user_id,
        "email": invite["email"],
        "role": invite["role"],
    }


# ============================================================================
# cleanup-invites
# ============================================================================


async def cleanup_invites(supabase) -> Dict[str, Any]:
    """Expire pending invitations past their expiry or older than seven days."""
    _require_supabase_config()
    logger.info("[CLEANUP-INVITES] Starting cleanup process")

    now = datetime.now(timezone.utc)
    cutoff = (now - INVITATION_TTL).isoformat()

    try:
        response = await run_query(
            lambda: supabase.table("invitations")
            .select("id, email, created_at, expires_at")
            .eq("status", "pending")
            .or_(f"expires_at.lt.{now.isoformat()},created_at.lt.{cutoff}")
            .execute()
        )
        expired: List[Dict[str, Any]] = response.data or []

        if not expired:
            logger.info("[CLEANUP-INVITES] No expired invitations found")
            return {
                "success": True,
                "message": "No expired invitations to clean up",
                "cleaned": 0,
            }

        await run_query(
            lambda: supabase.table("invitations")
            .update({"status": "expired"})
            .in_("id", [inv["id"] for inv in expired])
            .execute()
        )
    except APIError as e:
        logger.error(f"[CLEANUP-INVITES] Unexpected error: {_error_message(e)}")
        raise FunctionError(500, "Internal server error", details=_error_message(e)) from e

    await _insert_log(
        supabase,
        "audit_logs",
        {
            "user_id": None,
            "user_email": "system",
            "user_role": "system",
            "action": "invitations_cleanup",
            "entity_type": "invitations",
            "entity_id": "bulk",
            "details": {
                "cleaned_count": len(expired),
                "emails": [inv["email"] for inv in expired],
                "timestamp": now_iso(),
            },
        },
        "cleanup-invites",
    )

    logger.info(f"[CLEANUP-INVITES] Successfully cleaned {len(expired)} invitations")
    return {
        "success": True,
        "message": f"Successfully expired {len(expired)} old invitations",
        "cleaned": len(expired),
        "invitations": [
            {
                "email": inv["email"],
                "created_at": inv.get("created_at"),
                "expires_at": inv.get("expires_at"),
            }
            for inv in expired
        ],
    }
