"""
Unit Tests for Alert Email Delivery

Tests SMTP configuration and delivery, the alert templates, and
send_alert_email in its three request shapes (full data, test email and
alert lookup).

Usage:
    cd backend && pytest tests/test_alert_email.py -v
"""

import asyncio
import os
import smtplib
import socket
import sys

import pytest

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from mfabuster.exceptions import FunctionError
from mfabuster.models.requests import AlertEmailRequest
from mfabuster.services import alert_email_service
from mfabuster.services.email_service import (
    EmailConfig,
    EmailResult,
    classify_smtp_error,
    get_email_config,
    send_email,
)
from mfabuster.services.email_templates import (
    alert_subject,
    render_alert_email,
    render_invitation_email,
)
from conftest import FakeSupabase


CONFIG = EmailConfig(
    host="smtp.example.com",
    port=587,
    username="alerts@example.com",
    password="password",
    sender="alerts@example.com",
)

ADMINS = [
    {"id": "u1", "email": "admin@example.com", "role": "admin", "status": "active"},
    {"id": "u2", "email": "root@example.com", "role": "super_admin", "status": "active"},
    {"id": "u3", "email": "partner@example.com", "role": "partner", "status": "active"},
]


# ============================================================================
# SMTP CONFIG AND DELIVERY
# ============================================================================

class TestEmailConfig:
    """Tests for reading SMTP settings from the environment."""

    def test_complete_config(self, smtp):
        config = get_email_config()
        assert config.host == "smtp.example.com"
        assert config.port == 2525
        assert config.sender == "alerts@example.com"

    def test_sender_override_and_default_port(self, smtp, monkeypatch):
        monkeypatch.setenv("SMTP_FROM", "noreply@example.com")
        monkeypatch.delenv("SMTP_PORT")
        config = get_email_config()
        assert config.port == 587
        assert config.sender == "noreply@example.com"

    def test_invalid_port_falls_back(self, smtp, monkeypatch):
        monkeypatch.setenv("SMTP_PORT", "not-a-port")
        assert get_email_config().port == 587

    def test_missing_password(self, smtp, monkeypatch):
        monkeypatch.delenv("SMTP_PASS")
        assert get_email_config() is None


class TestSendEmail:
    """Tests for SMTP delivery through a fake server."""

    def test_sends_over_starttls(self, smtp):
        result = asyncio.run(send_email(CONFIG, "ops@example.com", "Subject", "<p>Hi</p>", "Hi"))

        assert result.success is True
        assert result.metadata["accepted"] == ["ops@example.com"]
        assert result.metadata["messageId"]

        sent = smtp.sent[0]
        assert sent["tls"] is True
        assert sent["to"] == ["ops@example.com"]
        assert sent["sender"] == "alerts@example.com"
        assert "Subject: Subject" in sent["message"]
        assert "MFA Buster" in sent["message"]

    def test_refused_recipient_is_failure(self, smtp):
        smtp.refused = {"ops@example.com": (550, b"mailbox unavailable")}
        result = asyncio.run(send_email(CONFIG, "ops@example.com", "Subject", "<p>Hi</p>"))
        assert result.success is False
        assert "ops@example.com" in result.error

    def test_authentication_error_is_classified(self, smtp):
        smtp.error = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        result = asyncio.run(send_email(CONFIG, "ops@example.com", "Subject", "<p>Hi</p>"))
        assert result.success is False
        assert result.error == "SMTP Authentication Failed: Invalid credentials for smtp.example.com"

    def test_classify_network_errors(self):
        assert classify_smtp_error(socket.timeout(), CONFIG).startswith("SMTP Timeout")
        assert classify_smtp_error(ConnectionRefusedError(), CONFIG).startswith("SMTP Connection Refused")
        assert classify_smtp_error(socket.gaierror(), CONFIG) == (
            "SMTP Host Not Found: smtp.example.com does not exist"
        )
        assert classify_smtp_error(OSError("broken pipe"), CONFIG) == "broken pipe"


# ============================================================================
# TEMPLATES
# ============================================================================

class TestTemplates:
    """Tests for alert and invitation bodies."""

    def test_alert_subject(self):
        assert alert_subject({"alert_type": "service_key_failure", "severity": "high"}) == (
            "[HIGH] Alert: service key failure"
        )
        assert alert_subject({"type": "mfa_spike"}) == "[UNKNOWN] Alert: mfa spike"

    def test_alert_body_escapes_content(self):
        html = render_alert_email(
            {
                "id": "a1",
                "alert_type": "ctr_spike",
                "severity": "critical",
                "message": "<script>alert(1)</script>",
                "created_at": "2026-01-05T10:00:00Z",
                "publishers": {"name": "Acme & Co", "primary_domain": "acme.test"},
                "metadata": {"ctr": 0.42},
            }
        )
        assert "&lt;script&gt;" in html
        assert "<script>" not in html
        assert "Acme &amp; Co" in html
        assert "acme.test" in html
        assert "Additional Details" in html
        assert "#dc3545" in html

    def test_invitation_bodies(self):
        html, text = render_invitation_email(
            email="new@example.com",
            role="super_admin",
            accept_url="https://app.example.com/invite/abc",
            invitee_name="Dana",
            inviter_name="Admin",
            company_name="LP Media",
        )
        assert "SUPER ADMIN" in html
        assert 'href="https://app.example.com/invite/abc"' in html
        assert "Hello Dana," in text
        assert "expire in 7 days" in text


# ============================================================================
# send-alert-email
# ============================================================================

@pytest.fixture
def deliveries(monkeypatch):
    """Replace SMTP delivery; map an address to an error string to fail it."""
    sent = []
    failures = {}

    async def fake_send(config, to_email, subject, html_body, text_body=None, sender_name="MFA Buster"):
        sent.append({"to": to_email, "subject": subject, "sender_name": sender_name})
        if to_email in failures:
            return EmailResult(success=False, error=failures[to_email])
        return EmailResult(success=True, metadata={"messageId": "<id@test>", "accepted": [to_email]})

    monkeypatch.setattr(alert_email_service, "send_email", fake_send)
    fake_send.sent = sent
    fake_send.failures = failures
    return fake_send


def send(supabase, **body):
    return asyncio.run(alert_email_service.send_alert_email(supabase, AlertEmailRequest(**body)))


class TestSendAlertEmail:
    """Tests for resolving alerts and recipients and logging deliveries."""

    def test_full_alert_data_goes_to_admins(self, supabase_env, smtp, deliveries):
        supabase = FakeSupabase({"app_users": ADMINS})

        result = send(
            supabase,
            alertId="alert-1",
            publisherName="Acme",
            publisherDomain="acme.test",
            alertType="ctr_spike",
            severity="medium",
            message="CTR spiked",
        )

        assert result["success"] is True
        assert result["recipients"] == ["admin@example.com", "root@example.com"]
        assert result["successCount"] == 2
        assert result["failedCount"] == 0
        assert result["message"] == "Alert emails sent: 2 succeeded, 0 failed"
        assert deliveries.sent[0]["subject"] == "[MEDIUM] Alert: ctr spike"
        assert deliveries.sent[0]["sender_name"] == "MFA Buster Alerts"

        logs = supabase.rows("email_logs")
        assert len(logs) == 2
        assert logs[0]["email_type"] == "alert"
        assert logs[0]["alert_id"] == "alert-1"
        assert logs[0]["metadata"]["messageId"] == "<id@test>"

    def test_explicit_recipient(self, supabase_env, smtp, deliveries):
        result = send(FakeSupabase(), alertId="alert-1", publisherName="Acme", recipientEmail="one@example.com")
        assert result["recipients"] == ["one@example.com"]

    def test_test_email_mode(self, supabase_env, smtp, deliveries):
        result = send(FakeSupabase(), testEmail="qa@example.com")

        assert result["alertId"].startswith("test-alert-")
        assert result["recipients"] == ["qa@example.com"]
        assert deliveries.sent[0]["subject"] == "[HIGH] Alert: service key failure"

    def test_lookup_alert_by_id(self, supabase_env, smtp, deliveries):
        supabase = FakeSupabase(
            {
                "app_users": ADMINS,
                "alerts": [{"id": "alert-9", "alert_type": "gam_access", "severity": "low", "message": "m"}],
            }
        )
        result = send(supabase, alertId="alert-9")
        assert result["alertId"] == "alert-9"
        assert result["successCount"] == 2

    def test_lookup_missing_alert(self, supabase_env, smtp, deliveries):
        with pytest.raises(FunctionError) as exc:
            send(FakeSupabase({"app_users": ADMINS}), alertId="missing", source="site-monitoring")
        assert exc.value.status_code == 500
        assert exc.value.error.startswith("Failed to fetch alert from publisher_trend_alerts")

    def test_no_admins(self, supabase_env, smtp, deliveries):
        with pytest.raises(FunctionError) as exc:
            send(FakeSupabase(), alertId="alert-1", publisherName="Acme")
        assert exc.value.error == "No admin or super admin users found"

    def test_partial_failure(self, supabase_env, smtp, deliveries):
        deliveries.failures["root@example.com"] = "SMTP Timeout: Server smtp.example.com:2525 not responding"
        supabase = FakeSupabase({"app_users": ADMINS})

        result = send(supabase, alertId="alert-1", publisherName="Acme")

        assert result["successCount"] == 1
        assert result["failedCount"] == 1
        failed = [log for log in supabase.rows("email_logs") if log["status"] == "failed"]
        assert failed[0]["error_message"].startswith("SMTP Timeout")

    def test_all_deliveries_failed(self, supabase_env, no_smtp, deliveries):
        supabase = FakeSupabase()

        with pytest.raises(FunctionError) as exc:
            send(supabase, testEmail="qa@example.com")

        assert exc.value.status_code == 500
        assert exc.value.error == "All email deliveries failed"
        assert exc.value.extra["results"][0]["error"] == "SMTP configuration missing"
        assert deliveries.sent == []
        assert supabase.rows("email_logs")[0]["status"] == "failed"

    def test_missing_request_shape(self, supabase_env, smtp, deliveries):
        with pytest.raises(FunctionError) as exc:
            send(FakeSupabase())
        assert exc.value.error == "Either alertId with data or testEmail must be provided"

    def test_missing_supabase_env(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        with pytest.raises(FunctionError) as exc:
            send(FakeSupabase(), testEmail="qa@example.com")
        assert exc.value.error == "Missing Supabase environment variables"
