"""
Invoice Reminder Engine -- Message Composer

Renders reminder text with Jinja2.  One template per escalation level
(gentle / firm / urgent), each with a payment-details block, plus an HTML
wrapper for email that carries the unsubscribe footer.

Templates ship inside this module.  A ``template_dir`` may supply files
named ``gentle.txt``, ``firm.txt``, ``urgent.txt`` or ``email_wrapper.html``
that take precedence over the built-in versions.

Usage:
    from reminder_engine.composer import TemplateComposer

    composer = TemplateComposer()
    text = composer.compose(EscalationLevel.FIRM, invoice, contact, details, 1)
    html = composer.wrap_html(text, recipient="ap@client.com", invoice_id="INV-1")
    sms = composer.format_for(Channel.SMS, EscalationLevel.FIRM, invoice, text).body
"""

from __future__ import annotations

import html
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlencode

from jinja2 import ChoiceLoader, DictLoader, Environment, FileSystemLoader, StrictUndefined

from .config import ComposerSettings
from .eligibility import days_overdue as compute_days_overdue
from .models import Channel, Contact, EscalationLevel, Invoice, OutboundMessage, PaymentDetails
from .tone_resolver import get_profile


SMS_MAX_LENGTH = 160
_DATE_FORMAT = "%d/%m/%Y"
_CACHE_LIMIT = 500


# ---------------------------------------------------------------------------
# Built-in templates
# ---------------------------------------------------------------------------

_PAYMENT_BLOCK = """\
{% if payment_details and not payment_details.is_empty %}

Payment Details:
{% if payment_details.upi_id %}UPI ID: {{ payment_details.upi_id }}
{% endif %}
{% if payment_details.bank_details %}Bank Details:
{{ payment_details.bank_details }}
{% endif %}
{% if payment_details.paypal_email %}PayPal: {{ payment_details.paypal_email }}
{% endif %}
{% endif %}
"""

_BUILTIN_TEMPLATES: dict[str, str] = {
    "payment_details.txt": _PAYMENT_BLOCK,
    "gentle.txt": """\
Dear {{ client_name }},

I hope this message finds you well. This is a friendly reminder that invoice {{ invoice_number }} for {{ amount | format_currency(currency_symbol) }} was due on {{ due_date | format_date }}.

If you have already made the payment, please disregard this message. Otherwise, I would appreciate it if you could process the payment at your earliest convenience.
{% include "payment_details.txt" %}

Thank you for your business!

Best regards""",
    "firm.txt": """\
Dear {{ client_name }},

This is a payment reminder for invoice {{ invoice_number }} amounting to {{ amount | format_currency(currency_symbol) }}, which was due on {{ due_date | format_date }} ({{ days_overdue }} days ago).
{% if previous_reminder_count %}

We have already sent {{ previous_reminder_count }} reminder{{ "s" if previous_reminder_count != 1 else "" }} about this invoice.
{% endif %}

We kindly request that you process this payment as soon as possible to avoid any late fees.
{% include "payment_details.txt" %}

Please confirm once the payment has been made.

Best regards""",
    "urgent.txt": """\
Dear {{ client_name }},

This is an urgent reminder regarding invoice {{ invoice_number }} for {{ amount | format_currency(currency_symbol) }}, which is now {{ days_overdue }} days overdue (due date: {{ due_date | format_date }}).

We request immediate payment to settle this outstanding amount. Late fees may apply as per our payment terms.
{% include "payment_details.txt" %}

Please contact us immediately if there are any issues with this payment.

Best regards""",
    "email_wrapper.html": """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <style>
    body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }
    .content { background: #ffffff; padding: 24px; border-radius: 8px; }
    .footer { margin-top: 30px; padding-top: 20px; border-top: 1px solid #e5e7eb; font-size: 12px; color: #6b7280; text-align: center; }
    .unsubscribe { color: #6b7280; text-decoration: underline; }
  </style>
</head>
<body>
  <div class="content">
    {{ body }}
  </div>
  <div class="footer">
    <p>This is an automated payment reminder from {{ sender_name }}.</p>
    <p><a href="{{ unsubscribe_url }}" class="unsubscribe">Unsubscribe from reminders</a></p>
  </div>
</body>
</html>
""",
}


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def format_currency(amount: float | None, symbol: str = "₹") -> str:
    """'₹1,510.00'.  None renders as zero."""
    if amount is None:
        amount = 0.0
    return f"{symbol}{amount:,.2f}"


def format_date(d: date | datetime | None) -> str:
    if d is None:
        return ""
    return d.strftime(_DATE_FORMAT)


def subject_for(level: EscalationLevel, invoice_number: str) -> str:
    """Email subject for a reminder at ``level``."""
    return get_profile(level).subject(invoice_number)


def text_to_html(text: str) -> str:
    """Escape plain text and turn paragraphs/line breaks into HTML."""
    paragraphs = [p for p in text.strip().split("\n\n") if p.strip()]
    return "\n    ".join(
        "<p>" + html.escape(p).replace("\n", "<br>") + "</p>" for p in paragraphs
    )


def truncate_message(text: str, limit: int = SMS_MAX_LENGTH) -> str:
    """Cut ``text`` to ``limit`` characters, ending in '...' when cut."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def sms_text(invoice: Invoice, message: str, preview_chars: int = 100) -> str:
    """Short SMS form: 'Invoice {number}: {first N chars}...' capped at 160."""
    preview = " ".join(message.split())[:preview_chars]
    return truncate_message(f"Invoice {invoice.invoice_number}: {preview}...")


def email_message(level: EscalationLevel, invoice: Invoice, text: str,
                  preview_chars: int = 100) -> OutboundMessage:
    return OutboundMessage(body=text, subject=subject_for(level, invoice.invoice_number))


def sms_message(level: EscalationLevel, invoice: Invoice, text: str,
                preview_chars: int = 100) -> OutboundMessage:
    return OutboundMessage(body=sms_text(invoice, text, preview_chars))


CHANNEL_FORMATTERS: dict[Channel, Callable[..., OutboundMessage]] = {
    Channel.EMAIL: email_message,
    Channel.SMS: sms_message,
}


# ---------------------------------------------------------------------------
# Composer
# ---------------------------------------------------------------------------

class TemplateComposer:
    """Jinja2 message composer for the three escalation levels.

    Args:
        settings: Currency symbol, app URL (unsubscribe links) and optional
            template override directory.
        sender_name: Shown in the email footer.
        default_payment_details: Used when neither the invoice nor the
            caller supplies payment details.
        clock: Supplies "now" for the days-overdue figure in the text.
        cache: Keep rendered messages keyed by invoice, level, day count
            and reminder count.
    """

    def __init__(
        self,
        settings: Optional[ComposerSettings] = None,
        sender_name: str = "Invoice Guard",
        default_payment_details: Optional[PaymentDetails] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cache: bool = False,
    ) -> None:
        self.settings = settings or ComposerSettings()
        self.sender_name = sender_name
        self.default_payment_details = default_payment_details
        self._clock = clock or datetime.now

        loaders = []
        if self.settings.template_dir:
            loaders.append(FileSystemLoader(str(Path(self.settings.template_dir))))
        loaders.append(DictLoader(_BUILTIN_TEMPLATES))

        self.env = Environment(
            loader=ChoiceLoader(loaders),
            autoescape=False,  # plain-text bodies; the wrapper escapes explicitly
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["format_date"] = format_date
        self.env.filters["format_currency"] = format_currency

        self._cache_enabled = cache
        self._cache: dict[tuple, str] = {}
        self._cache_lock = threading.Lock()

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def compose(
        self,
        level: EscalationLevel,
        invoice: Invoice,
        contact: Contact,
        payment_details: Optional[PaymentDetails] = None,
        previous_reminder_count: int = 0,
    ) -> str:
        """Render the reminder body for ``invoice`` at ``level``."""
        overdue = compute_days_overdue(invoice.due_at, self._clock())
        key = (invoice.invoice_id, level.value, overdue, previous_reminder_count)

        if self._cache_enabled:
            with self._cache_lock:
                cached = self._cache.get(key)
            if cached is not None:
                return cached

        context = {
            "client_name": contact.client_name or invoice.client_name or "Valued Customer",
            "invoice_number": invoice.invoice_number,
            "amount": invoice.amount,
            "due_date": invoice.due_at,
            "days_overdue": overdue,
            "previous_reminder_count": previous_reminder_count,
            "payment_details": (
                payment_details or invoice.payment_details or self.default_payment_details
            ),
            "currency_symbol": self.settings.currency_symbol,
        }
        template = self.env.get_template(f"{get_profile(level).template_name}.txt")
        text = template.render(**context).strip()

        if self._cache_enabled:
            with self._cache_lock:
                if len(self._cache) >= _CACHE_LIMIT:
                    self._cache.clear()
                self._cache[key] = text
        return text

    def unsubscribe_url(self, recipient: str, invoice_id: Optional[str] = None) -> str:
        params = {"email": recipient}
        if invoice_id:
            params["invoiceId"] = invoice_id
        return f"{self.settings.app_url.rstrip('/')}/unsubscribe?{urlencode(params)}"

    def wrap_html(self, text: str, recipient: str, invoice_id: Optional[str] = None) -> str:
        """Full HTML email around a plain-text body, with unsubscribe footer."""
        template = self.env.get_template("email_wrapper.html")
        return template.render(
            body=text_to_html(text),
            sender_name=html.escape(self.sender_name),
            unsubscribe_url=html.escape(self.unsubscribe_url(recipient, invoice_id), quote=True),
        )

    def format_for(
        self, channel: Channel, level: EscalationLevel, invoice: Invoice, text: str
    ) -> OutboundMessage:
        """Shape a composed body for ``channel``: email gets a subject, SMS a preview."""
        formatter = CHANNEL_FORMATTERS[channel]
        return formatter(level, invoice, text, self.settings.sms_preview_chars)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
