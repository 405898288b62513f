"""SMTP delivery for alert and invitation emails.

Configuration (environment):
- SMTP_HOST, SMTP_USER, SMTP_PASS: required, sending is disabled without them
- SMTP_PORT: defaults to 587
- SMTP_FROM: defaults to SMTP_USER

Connections always upgrade with STARTTLS before authenticating. The blocking
smtplib session runs in a worker thread.
"""

import asyncio
import logging
import os
import smtplib
import socket
import uuid
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_SMTP_PORT = 587
SMTP_TIMEOUT_SECONDS = 30


@dataclass
class EmailConfig:
    host: str
    port: int
    username: str
    password: str
    sender: str


@dataclass
class EmailResult:
    success: bool
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def get_email_config() -> Optional[EmailConfig]:
    """Read SMTP settings; None when host, user or password is missing."""
    host = os.getenv("SMTP_HOST")
    port = os.getenv("SMTP_PORT")
    username = os.getenv("SMTP_USER")
    password = os.getenv("SMTP_PASS")

    if not host or not username or not password:
        logger.error(
            "SMTP configuration incomplete: "
            f"host={'set' if host else 'missing'} "
            f"user={'set' if username else 'missing'} "
            f"pass={'set' if password else 'missing'}"
        )
        return None

    try:
        port_number = int(port) if port else DEFAULT_SMTP_PORT
    except ValueError:
        logger.warning(f"Invalid SMTP_PORT {port!r}, using {DEFAULT_SMTP_PORT}")
        port_number = DEFAULT_SMTP_PORT

    return EmailConfig(
        host=host,
        port=port_number,
        username=username,
        password=password,
        sender=os.getenv("SMTP_FROM") or username,
    )


def classify_smtp_error(exc: BaseException, config: EmailConfig) -> str:
    """Map a delivery exception to an operator-readable message."""
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return f"SMTP Authentication Failed: Invalid credentials for {config.host}"
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return f"SMTP Timeout: Server {config.host}:{config.port} not responding"
    if isinstance(exc, ConnectionRefusedError):
        return f"SMTP Connection Refused: Cannot connect to {config.host}:{config.port}"
    if isinstance(exc, socket.gaierror):
        return f"SMTP Host Not Found: {config.host} does not exist"
    return str(exc) or type(exc).__name__


def _build_message(
    config: EmailConfig,
    to_email: str,
    subject: str,
    html_body: str,
    text_body: Optional[str],
    sender_name: str,
) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = formataddr((sender_name, config.sender))
    msg["To"] = to_email
    msg["Message-ID"] = make_msgid()
    if text_body:
        msg.attach(MIMEText(text_body, "plain"))
    msg.attach(MIMEText(html_body, "html"))
    return msg


async def send_email(
    config: EmailConfig,
    to_email: str,
    subject: str,
    html_body: str,
    text_body: Optional[str] = None,
    sender_name: str = "MFA Buster",
) -> EmailResult:
    """Deliver one message. Never raises; failures come back in the result."""
    send_id = str(uuid.uuid4())
    logger.info(f"[EMAIL_SEND:{send_id}] Sending email to {to_email} via {config.host}:{config.port}")

    msg = _build_message(config, to_email, subject, html_body, text_body, sender_name)

    def _send_sync() -> Dict[str, Any]:
        with smtplib.SMTP(config.host, config.port, timeout=SMTP_TIMEOUT_SECONDS) as server:
            server.starttls()
            server.login(config.username, config.password)
            return server.sendmail(config.sender, [to_email], msg.as_string())

    try:
        refused = await asyncio.to_thread(_send_sync)
    except (smtplib.SMTPException, OSError) as e:
        error = classify_smtp_error(e, config)
        logger.error(f"[EMAIL_SEND:{send_id}] Email sending failed: {error}")
        return EmailResult(success=False, error=error)

    if refused:
        reason = ", ".join(refused)
        logger.error(f"[EMAIL_SEND:{send_id}] SMTP server rejected the message: {reason}")
        return EmailResult(
            success=False, error=f"SMTP server rejected the message: {reason}"
        )

    logger.info(f"[EMAIL_SEND:{send_id}] Email sent and accepted by SMTP server")
    return EmailResult(
        success=True,
        metadata={"messageId": msg["Message-ID"], "accepted": [to_email]},
    )
