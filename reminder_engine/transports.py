"""
Invoice Reminder Engine -- Delivery Transports

Channel adapters the dispatcher calls.  Each ``send`` either returns a
SendReceipt or raises DeliveryError with enough detail (code, status) for
the dispatcher to decide whether the failure is worth retrying.

    SmtpEmailTransport   smtplib + STARTTLS, multipart text/HTML
    TwilioSmsTransport   Twilio Messages REST API over httpx

Usage:
    from reminder_engine.transports import build_transports

    transports = build_transports(cfg, composer)
    receipt = transports[Channel.EMAIL].send("ap@client.com", text, subject="...")
"""

from __future__ import annotations

import logging
import math
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Callable, Optional

import httpx

from .composer import TemplateComposer, truncate_message
from .config import EngineConfig, SenderInfo, SMSSettings, SMTPSettings
from .dispatcher import DeliveryError
from .models import Channel, SendReceipt

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


# ---------------------------------------------------------------------------
# Phone helpers
# ---------------------------------------------------------------------------

def validate_phone_number(phone: str, default_country_code: str = "91") -> str:
    """Normalize to E.164.  Raises DeliveryError for unusable numbers.

    10-digit numbers starting with 9 are assumed domestic and get the
    default country code.

    >>> validate_phone_number("98765 43210")
    '+919876543210'
    """
    if not phone:
        raise DeliveryError("Phone number is required", code="INVALID_PHONE")

    cleaned = _NON_DIGITS.sub("", str(phone))
    if len(cleaned) < 10 or len(cleaned) > 15:
        raise DeliveryError(
            "Invalid phone number length. Must be 10-15 digits.", code="INVALID_PHONE"
        )
    if len(cleaned) == 10 and cleaned.startswith("9"):
        cleaned = default_country_code + cleaned
    return "+" + cleaned


def sms_segments(text: str) -> int:
    return math.ceil(len(text) / 160)


def sms_cost(phone: str, text: str, settings: Optional[SMSSettings] = None) -> float:
    """Approximate provider cost in USD: segments x per-segment rate."""
    settings = settings or SMSSettings()
    domestic = phone.startswith("+" + settings.default_country_code)
    rate = settings.domestic_cost_per_segment if domestic else settings.international_cost_per_segment
    return sms_segments(text) * rate


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

class SmtpEmailTransport:
    """Send reminders through an SMTP relay.

    The plain-text body is sent alongside an HTML rendering with an
    unsubscribe footer.
    """

    channel = Channel.EMAIL

    def __init__(
        self,
        settings: SMTPSettings,
        sender: SenderInfo,
        composer: Optional[TemplateComposer] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        self.settings = settings
        self.sender = sender
        self.composer = composer or TemplateComposer(sender_name=sender.name)
        self._smtp_factory = smtp_factory

    @property
    def from_address(self) -> str:
        return self.sender.email or self.settings.username

    def build_message(
        self, address: str, text: str, subject: str, reference: Optional[str] = None
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.sender.name, self.from_address))
        msg["To"] = address
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(domain=self.from_address.partition("@")[2] or None)
        msg["List-Unsubscribe"] = f"<{self.composer.unsubscribe_url(address, reference)}>"

        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(self.composer.wrap_html(text, address, reference), "html", "utf-8"))
        return msg

    def send(
        self,
        address: str,
        text: str,
        *,
        subject: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> SendReceipt:
        if not address:
            raise DeliveryError("No recipient email address", code="EENVELOPE")
        if not self.from_address:
            raise DeliveryError("Email service not configured", code="NOT_CONFIGURED")

        msg = self.build_message(address, text, subject or "Payment Reminder", reference)

        try:
            with self._smtp_factory(
                self.settings.host, self.settings.port, timeout=self.settings.timeout_seconds
            ) as server:
                if self.settings.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password)
                server.sendmail(self.from_address, [address], msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            raise DeliveryError(
                "SMTP authentication failed. Check the configured credentials.",
                code="EAUTH",
                status_code=e.smtp_code,
            ) from e
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryError(f"Recipient refused: {address}", code="EENVELOPE") from e
        except smtplib.SMTPServerDisconnected as e:
            raise DeliveryError(f"SMTP server disconnected: {e}", code="ECONNRESET") from e
        except smtplib.SMTPResponseException as e:
            # 4xx replies are transient by definition
            code = "SERVICE_UNAVAILABLE" if 400 <= e.smtp_code < 500 else "ESMTP"
            raise DeliveryError(
                f"SMTP error {e.smtp_code}: {e.smtp_error!r}", code=code, status_code=e.smtp_code
            ) from e
        except smtplib.SMTPException as e:
            raise DeliveryError(f"SMTP error: {e}", code="ESMTP") from e

        logger.info("Email sent to %s (%s)", address, msg["Message-ID"])
        return SendReceipt(message_id=msg["Message-ID"], cost=self.settings.cost_per_email)


# ---------------------------------------------------------------------------
# SMS
# ---------------------------------------------------------------------------

class TwilioSmsTransport:
    """Send SMS through the Twilio Messages REST API.

    ``client`` is injectable so tests can pass an ``httpx.Client`` built on
    ``httpx.MockTransport``.
    """

    channel = Channel.SMS

    def __init__(self, settings: SMSSettings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(settings.timeout_seconds), follow_redirects=False
        )

    @property
    def messages_url(self) -> str:
        base = self.settings.api_base_url.rstrip("/")
        return f"{base}/Accounts/{self.settings.account_sid}/Messages.json"

    def send(
        self,
        address: str,
        text: str,
        *,
        subject: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> SendReceipt:
        if not self.settings.is_configured:
            raise DeliveryError("SMS service not initialized", code="NOT_CONFIGURED")

        phone = validate_phone_number(address, self.settings.default_country_code)
        body = truncate_message(text)

        data = {"To": phone, "From": self.settings.from_number, "Body": body}
        if self.settings.status_callback_url:
            data["StatusCallback"] = self.settings.status_callback_url

        try:
            resp = self.client.post(
                self.messages_url,
                data=data,
                auth=(self.settings.account_sid, self.settings.auth_token),
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"SMS request timed out: {e}", code="ETIMEDOUT") from e
        except httpx.ConnectError as e:
            raise DeliveryError(f"SMS connection failed: {e}", code="ECONNREFUSED") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"SMS transport error: {e}", code="ECONNRESET") from e

        if resp.status_code >= 400:
            raise self._error_from_response(resp)

        payload = resp.json()
        sid = payload.get("sid")
        logger.info("SMS sent to %s (%s)", phone, sid)
        return SendReceipt(message_id=sid, cost=sms_cost(phone, body, self.settings))

    def get_balance(self) -> float:
        """Current account credit, from the Twilio Balance resource."""
        if not self.settings.is_configured:
            raise DeliveryError("SMS service not initialized", code="NOT_CONFIGURED")
        base = self.settings.api_base_url.rstrip("/")
        try:
            resp = self.client.get(
                f"{base}/Accounts/{self.settings.account_sid}/Balance.json",
                auth=(self.settings.account_sid, self.settings.auth_token),
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"SMS balance request failed: {e}", code="ECONNRESET") from e
        if resp.status_code >= 400:
            raise self._error_from_response(resp)
        return float(resp.json()["balance"])

    @staticmethod
    def _error_from_response(resp: httpx.Response) -> DeliveryError:
        message = f"http_{resp.status_code}"
        code = None
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            message = str(payload.get("message") or message)
            if payload.get("code") is not None:
                code = str(payload["code"])
        if resp.status_code == 429 and code is None:
            code = "RATE_LIMIT_EXCEEDED"
        return DeliveryError(message, code=code, status_code=resp.status_code)

    def close(self) -> None:
        self.client.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_transports(
    cfg: EngineConfig, composer: Optional[TemplateComposer] = None
) -> dict[Channel, object]:
    """Transports for every channel the configuration can drive."""
    transports: dict[Channel, object] = {
        Channel.EMAIL: SmtpEmailTransport(cfg.smtp, cfg.sender, composer),
    }
    if cfg.sms.is_configured:
        transports[Channel.SMS] = TwilioSmsTransport(cfg.sms)
    else:
        logger.info("SMS credentials not configured; SMS channel disabled")
    return transports
