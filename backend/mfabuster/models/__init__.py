"""
MFA Buster Function Models

Pydantic request bodies for the function routes.
"""

from .requests import (
    NewPublisherRequest,
    AuditBatchRequest,
    FinalizeCronRequest,
    CurrencyAmount,
    ConvertCurrencyRequest,
    AlertEmailRequest,
    SendInvitationRequest,
    AcceptInviteRequest,
    GamApiRequest,
)

__all__ = [
    "NewPublisherRequest",
    "AuditBatchRequest",
    "FinalizeCronRequest",
    "CurrencyAmount",
    "ConvertCurrencyRequest",
    "AlertEmailRequest",
    "SendInvitationRequest",
    "AcceptInviteRequest",
    "GamApiRequest",
]
