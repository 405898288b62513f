"""Request bodies accepted by the function routes.

Field names follow the wire format the dashboard, workers and pg_cron
already send (camelCase for most functions, snake_case for the audit and
invitation ones). Required-field checks happen in the services so missing
values produce the functions' 400 envelope instead of a 422.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NewPublisherRequest(_CamelModel):
    publisher_id: Optional[str] = Field(None, alias="publisherId")


class AuditBatchRequest(BaseModel):
    publisher_id: Optional[str] = None
    site_names: Optional[Any] = None
    priority: str = "normal"


class FinalizeCronRequest(_CamelModel):
    cron_job_name: Optional[str] = Field(None, alias="cronJobName")
    execution_date: Optional[str] = Field(None, alias="executionDate")


class CurrencyAmount(BaseModel):
    amount: float
    currency: str


class ConvertCurrencyRequest(_CamelModel):
    amounts: Optional[List[CurrencyAmount]] = None
    target_currency: Optional[str] = Field(None, alias="targetCurrency")


class AlertEmailRequest(_CamelModel):
    """Body of send-alert-email.

    Three shapes are accepted: full alert data (``alertId`` plus
    ``publisherName``), a test email (``testEmail``), or a bare ``alertId``
    to look up.
    """

    alert_id: Optional[str] = Field(None, alias="alertId")
    publisher_name: Optional[str] = Field(None, alias="publisherName")
    publisher_domain: Optional[str] = Field(None, alias="publisherDomain")
    publisher_id: Optional[str] = Field(None, alias="publisherId")
    alert_type: Optional[str] = Field(None, alias="alertType")
    type: Optional[str] = None
    severity: Optional[str] = None
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    recipient_email: Optional[str] = Field(None, alias="recipientEmail")
    test_email: Optional[str] = Field(None, alias="testEmail")
    source: Optional[str] = None
    use_trend_alerts: bool = Field(False, alias="useTrendAlerts")


class SendInvitationRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    invited_by: Optional[str] = None
    company_name: Optional[str] = None
    partner_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    test_mode: bool = False


class AcceptInviteRequest(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None
    full_name: Optional[str] = None
    action: Optional[str] = None


class GamApiRequest(_CamelModel):
    endpoint: Optional[str] = None
    network_code: Optional[str] = Field(None, alias="networkCode")
    order_id: Optional[str] = Field(None, alias="orderId")
    path: Optional[str] = None
