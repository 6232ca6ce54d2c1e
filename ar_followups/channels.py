"""
AR Follow-up Automation -- Channel Providers

The boundary between the dispatch engine and the outside world.  Every
provider exposes

    send(to, subject, body) -> DeliveryResult

and raises ``TransientDeliveryError`` (timeouts, rate limits, server
errors) or ``PermanentDeliveryError`` (bad address, unsubscribed) on
failure.  Every network call has a bounded timeout.

Providers:
    SMTPEmailProvider    email via an SMTP relay (STARTTLS)
    TwilioSMSProvider    SMS via the Twilio REST API
    OutboxEmailProvider  writes .eml files instead of sending (dry runs)
    OutboxSMSProvider    writes .txt files instead of sending (dry runs)
"""

from __future__ import annotations

import logging
import re
import smtplib
import socket
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import format_datetime, formataddr, make_msgid
from pathlib import Path
from typing import Any, Optional, Protocol

import requests

from .config import FollowUpConfig, SenderInfo, SMSSettings, SMTPSettings
from .errors import PermanentDeliveryError, TransientDeliveryError
from .models import Channel
from .templates import html_to_plaintext

logger = logging.getLogger(__name__)

_HTML_RE = re.compile(r"<(?:p|br|div|a|b|strong|i|em|ul|li|table|span)\b", re.IGNORECASE)

# Twilio error codes that will never succeed on retry
# https://www.twilio.com/docs/api/errors
TWILIO_PERMANENT_CODES = {
    21211,  # invalid 'To' phone number
    21408,  # region not enabled
    21610,  # recipient unsubscribed (STOP)
    21612,  # cannot route to this number
    21614,  # 'To' is not a mobile number
}


@dataclass
class DeliveryResult:
    """What a provider reports for an accepted message."""

    provider_message_id: str = ""
    status: str = "sent"
    response: dict[str, Any] = field(default_factory=dict)


class ChannelProvider(Protocol):
    channel: Channel

    def send(self, to: str, subject: str, body: str) -> DeliveryResult: ...


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

def build_mime_message(sender: SenderInfo, to: str, subject: str, body: str) -> MIMEMultipart:
    """Build a multipart/alternative message with a text part (and HTML if the body has markup)."""
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((sender.name, sender.email)) if sender.email else sender.name
    msg["To"] = to
    if sender.reply_to:
        msg["Reply-To"] = sender.reply_to
    msg["Subject"] = subject
    msg["Date"] = format_datetime(datetime.now(timezone.utc))
    domain = sender.email.split("@", 1)[1] if "@" in sender.email else None
    msg["Message-ID"] = make_msgid(domain=domain)

    if _HTML_RE.search(body):
        msg.attach(MIMEText(html_to_plaintext(body), "plain", "utf-8"))
        msg.attach(MIMEText(body, "html", "utf-8"))
    else:
        msg.attach(MIMEText(body, "plain", "utf-8"))
    return msg


class SMTPEmailProvider:
    """Sends email through an SMTP relay with STARTTLS."""

    channel = Channel.EMAIL

    def __init__(self, settings: SMTPSettings, sender: SenderInfo):
        self.settings = settings
        self.sender = sender

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.host and self.sender.email)

    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        msg = build_mime_message(self.sender, to, subject, body)
        from_addr = self.sender.email or self.settings.username

        try:
            with smtplib.SMTP(self.settings.host, self.settings.port,
                              timeout=self.settings.timeout_seconds) as server:
                if self.settings.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password)
                server.sendmail(from_addr, [to], msg.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            code, reason = next(iter(exc.recipients.values()), (550, b""))
            error_cls = TransientDeliveryError if 400 <= code < 500 else PermanentDeliveryError
            raise error_cls(
                f"recipient {to} refused: {code} {_decode(reason)}",
                code=str(code),
            ) from exc
        except smtplib.SMTPAuthenticationError as exc:
            # Bad relay credentials affect every message; retry once fixed
            logger.error("SMTP authentication failed for %s", self.settings.username)
            raise TransientDeliveryError("SMTP authentication failed", code=str(exc.smtp_code)) from exc
        except smtplib.SMTPSenderRefused as exc:
            # The relay rejects the From address for every recipient alike
            logger.error("SMTP relay refused sender %s: %s", exc.sender, _decode(exc.smtp_error))
            raise TransientDeliveryError(
                f"sender {exc.sender} refused: {exc.smtp_code} {_decode(exc.smtp_error)}",
                code=str(exc.smtp_code),
            ) from exc
        except smtplib.SMTPConnectError as exc:
            raise TransientDeliveryError(f"SMTP connect failed: {exc}", code=str(exc.smtp_code)) from exc
        except smtplib.SMTPResponseException as exc:
            error_cls = PermanentDeliveryError if exc.smtp_code >= 500 else TransientDeliveryError
            raise error_cls(
                f"SMTP error {exc.smtp_code}: {_decode(exc.smtp_error)}",
                code=str(exc.smtp_code),
            ) from exc
        except (smtplib.SMTPException, socket.timeout, OSError) as exc:
            raise TransientDeliveryError(f"SMTP delivery failed: {exc}", code="network") from exc

        message_id = msg["Message-ID"]
        logger.info("Sent email to %s (%s)", to, message_id)
        return DeliveryResult(
            provider_message_id=message_id,
            status="sent",
            response={"relay": self.settings.host, "message_id": message_id},
        )


# ---------------------------------------------------------------------------
# SMS
# ---------------------------------------------------------------------------

def normalize_phone(number: str, default_country_code: str = "1") -> str:
    """Normalize a phone number to E.164 ('+15551234567').

    Raises:
        PermanentDeliveryError: If the number cannot be a real phone number.
    """
    raw = (number or "").strip()
    digits = re.sub(r"\D", "", raw)
    if raw.startswith("+"):
        normalized = "+" + digits
    elif len(digits) == 10:
        normalized = f"+{default_country_code}{digits}"
    elif len(digits) == 11 and digits.startswith(default_country_code):
        normalized = "+" + digits
    else:
        normalized = "+" + digits
    if not 8 <= len(normalized) - 1 <= 15:
        raise PermanentDeliveryError(f"invalid phone number: {number!r}", code="invalid_number")
    return normalized


class TwilioSMSProvider:
    """Sends SMS through the Twilio Messages REST endpoint."""

    channel = Channel.SMS

    def __init__(self, settings: SMSSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.account_sid and self.settings.auth_token and self.settings.from_number)

    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        if not self.is_configured:
            raise TransientDeliveryError("SMS provider is not configured", code="not_configured")

        recipient = normalize_phone(to, self.settings.default_country_code)
        url = f"{self.settings.api_base_url}/Accounts/{self.settings.account_sid}/Messages.json"

        try:
            response = self.session.post(
                url,
                data={"To": recipient, "From": self.settings.from_number, "Body": body},
                auth=(self.settings.account_sid, self.settings.auth_token),
                timeout=self.settings.timeout_seconds,
            )
        except requests.exceptions.Timeout as exc:
            raise TransientDeliveryError(f"SMS request timed out: {exc}", code="timeout") from exc
        except requests.exceptions.RequestException as exc:
            raise TransientDeliveryError(f"SMS connection error: {exc}", code="network") from exc

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text[:500]}

        status_code = response.status_code
        if status_code in (200, 201):
            sid = data.get("sid", "")
            logger.info("Sent SMS to %s (%s)", recipient, sid)
            return DeliveryResult(provider_message_id=sid, status=data.get("status", "queued"), response=data)

        error_code = data.get("code")
        message = data.get("message") or f"HTTP {status_code}"
        if status_code == 429 or status_code >= 500:
            raise TransientDeliveryError(f"SMS provider unavailable: {message}",
                                         code=str(error_code or status_code), response=data)
        if status_code in (401, 403):
            logger.error("Twilio rejected the account credentials (HTTP %d)", status_code)
            raise TransientDeliveryError(f"SMS provider auth failed: {message}",
                                         code=str(error_code or status_code), response=data)
        if error_code in TWILIO_PERMANENT_CODES or 400 <= status_code < 500:
            raise PermanentDeliveryError(f"SMS rejected: {message}",
                                         code=str(error_code or status_code), response=data)
        raise TransientDeliveryError(f"unexpected SMS response: {message}",
                                     code=str(status_code), response=data)


# ---------------------------------------------------------------------------
# Outbox (dry run)
# ---------------------------------------------------------------------------

def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value).strip("_") or "unknown"


class OutboxEmailProvider:
    """Writes each message to ``out_dir`` as an .eml file instead of sending."""

    channel = Channel.EMAIL

    def __init__(self, out_dir: str | Path, sender: Optional[SenderInfo] = None):
        self.out_dir = Path(out_dir)
        self.sender = sender or SenderInfo()

    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        msg = build_mime_message(self.sender, to, subject, body)
        message_id = msg["Message-ID"]
        self.out_dir.mkdir(parents=True, exist_ok=True)
        path = self.out_dir / f"{_safe_name(to)}_{_safe_name(message_id)}.eml"
        try:
            path.write_text(msg.as_string(), encoding="utf-8")
        except OSError as exc:
            raise TransientDeliveryError(f"could not write {path}: {exc}", code="io") from exc
        logger.info("Wrote %s", path)
        return DeliveryResult(provider_message_id=message_id, status="written", response={"path": str(path)})


class OutboxSMSProvider(OutboxEmailProvider):
    """Writes each SMS to ``out_dir`` as a .txt file instead of sending."""

    channel = Channel.SMS

    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        self.out_dir.mkdir(parents=True, exist_ok=True)
        path = self.out_dir / f"{_safe_name(to)}_{stamp}.txt"
        try:
            path.write_text(f"To: {to}\n\n{body}\n", encoding="utf-8")
        except OSError as exc:
            raise TransientDeliveryError(f"could not write {path}: {exc}", code="io") from exc
        logger.info("Wrote %s", path)
        return DeliveryResult(provider_message_id=f"outbox-{stamp}", status="written", response={"path": str(path)})


def build_providers(config: FollowUpConfig, dry_run: bool = False) -> dict[Channel, ChannelProvider]:
    """Providers for every channel, live or outbox."""
    if dry_run:
        out_dir = config.outbox.resolved_dir
        return {
            Channel.EMAIL: OutboxEmailProvider(out_dir, config.sender),
            Channel.SMS: OutboxSMSProvider(out_dir, config.sender),
        }
    return {
        Channel.EMAIL: SMTPEmailProvider(config.smtp, config.sender),
        Channel.SMS: TwilioSMSProvider(config.sms),
    }


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
