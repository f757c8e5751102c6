"""Ports -- the collaborator interfaces the reminder engine depends on.

The engine only ever talks to these protocols.  Reference adapters live in
log_store.py, composer.py, transports.py, notifier.py and data_loader.py;
tests swap in fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from .config import ReminderConfig
from .models import (
    Channel,
    Contact,
    EscalationLevel,
    Invoice,
    OutboundMessage,
    PaymentDetails,
    ReminderLog,
    SendReceipt,
)


class InvoiceSource(Protocol):
    """Supplies invoices past their due date and not yet paid."""

    def list_overdue_invoices(self) -> list[Invoice]: ...


class ContactStore(Protocol):
    def find_contact_by_invoice_id(self, invoice_id: str) -> Optional[Contact]: ...


class LogStore(Protocol):
    """Append/point-update store for ReminderLog rows."""

    def create_log(self, log: ReminderLog) -> ReminderLog: ...

    def update_log(self, log: ReminderLog) -> bool: ...

    def find_logs_by_invoice_id(self, invoice_id: str) -> list[ReminderLog]: ...

    def count_sent(self, invoice_id: str) -> int: ...


class BudgetChecker(Protocol):
    def is_within_budget(self, tenant_id: str) -> bool: ...


class MessageComposer(Protocol):
    """Builds the message body for one invoice at one escalation level."""

    def compose(
        self,
        level: EscalationLevel,
        invoice: Invoice,
        contact: Contact,
        payment_details: Optional[PaymentDetails],
        previous_reminder_count: int,
    ) -> str: ...

    def format_for(
        self, channel: Channel, level: EscalationLevel, invoice: Invoice, text: str
    ) -> OutboundMessage: ...


class Transport(Protocol):
    """Delivers one message on one channel.  Raises DeliveryError on failure.

    ``reference`` is the invoice id, used for tracking links.
    """

    def send(
        self,
        address: str,
        text: str,
        *,
        subject: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> SendReceipt: ...


class Notifier(Protocol):
    """Operator alerts.  Implementations must not raise."""

    def notify_failed_batch(self, count: int, invoice_ids: list[str], errors: list[str]) -> None: ...

    def notify_scheduler_failure(self, error: BaseException) -> None: ...

    def notify_service_down(self, service: str, error: str) -> None: ...

    def notify_quota_exceeded(self, service: str, error: str) -> None: ...

    def notify_low_sms_credits(self, balance: float, threshold: float) -> None: ...


class ConfigSource(Protocol):
    def list_configs(self) -> Iterable[ReminderConfig]: ...


class Clock(Protocol):
    """Returns the current naive local datetime."""

    def __call__(self) -> datetime: ...
