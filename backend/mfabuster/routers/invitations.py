"""Invitation routes: send, accept/validate and expiry cleanup."""

import logging

from fastapi import APIRouter, Depends, Request

from mfabuster.deps import get_supabase, require_function_auth
from mfabuster.models import AcceptInviteRequest, SendInvitationRequest
from mfabuster.security import rate_limit_accept_invite, rate_limit_invitation
from mfabuster.services import invitation_service

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/functions/v1",
    tags=["invitations"],
    dependencies=[Depends(require_function_auth)],
)


@router.post("/send-invitation")
@rate_limit_invitation()
async def send_invitation(
    request: Request,
    body: SendInvitationRequest,
    supabase=Depends(get_supabase),
):
    return await invitation_service.send_invitation(supabase, body)


@router.post("/accept-invite")
@rate_limit_accept_invite()
async def accept_invite(
    request: Request,
    body: AcceptInviteRequest,
    supabase=Depends(get_supabase),
):
    """Accept an invitation, or only validate its token with ``action="validate"``."""
    return await invitation_service.accept_invite(supabase, body)


@router.post("/cleanup-invites")
async def cleanup_invites(supabase=Depends(get_supabase)):
    return await invitation_service.cleanup_invites(supabase)
