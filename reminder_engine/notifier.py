"""Operator notifications: failed reminder batches, scheduler crashes,
provider outages, exhausted quotas and low SMS credit.

Notifiers never raise.  A notification that cannot be delivered is logged
and recorded in ``history`` with status ``failed``.  ``history`` keeps the
most recent ``history_limit`` notifications.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 200


@dataclass
class Notification:
    notification_id: str
    kind: str
    subject: str
    message: str
    created_at: datetime
    severity: str = "error"
    status: str = "pending"
    error: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationThresholds:
    """When a measured value is bad enough to alert the operator."""

    failed_reminders: int = 3
    low_sms_credits: float = 10.0


def should_notify(kind: str, value: float, thresholds: NotificationThresholds) -> bool:
    """Gate for threshold-based alerts.  Other kinds always notify."""
    if kind == "failed_reminders":
        return value >= thresholds.failed_reminders
    if kind == "low_sms_credits":
        return value < thresholds.low_sms_credits
    return True


# ---------------------------------------------------------------------------
# Message text
# ---------------------------------------------------------------------------

def failed_batch_message(count: int, invoice_ids: list[str], errors: list[str]) -> tuple[str, str]:
    """(subject, body) for a batch of failed reminders."""
    plural = "s" if count > 1 else ""
    subject = f"{count} Reminder{plural} Failed to Send"
    lines = [
        f"- Invoice {inv_id}: {errors[i] if i < len(errors) and errors[i] else 'Unknown error'}"
        for i, inv_id in enumerate(invoice_ids)
    ]
    body = (
        "Hello,\n\n"
        f"We encountered issues sending {count} payment reminder{plural}.\n\n"
        "Failed Invoices:\n"
        + "\n".join(lines)
        + "\n\nPlease check your service configurations and try again. "
        "If the problem persists, contact support.\n\n"
        "Best regards,\nInvoice Guard System"
    )
    return subject, body


def scheduler_failure_message(error: BaseException, when: datetime) -> tuple[str, str]:
    subject = "Scheduler Service Failed"
    body = (
        "Hello,\n\n"
        "The automated reminder scheduler has encountered an error.\n\n"
        f"Error: {error}\n"
        f"Timestamp: {when.strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        "The current run was aborted; the next scheduled run will proceed as normal.\n\n"
        "Best regards,\nInvoice Guard System"
    )
    return subject, body


def service_down_message(service: str, error: str, when: datetime) -> tuple[str, str]:
    name = service.upper()
    subject = f"{name} Service Unavailable"
    body = (
        "Hello,\n\n"
        f"The {name} service is currently unavailable.\n\n"
        f"Service: {service}\n"
        f"Error: {error}\n"
        f"Last Attempt: {when.strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        "Reminders that depend on this service are failing. Check the provider's "
        "status page, your credentials and your account status.\n\n"
        "Best regards,\nInvoice Guard System"
    )
    return subject, body


def quota_exceeded_message(service: str, error: str) -> tuple[str, str]:
    name = service.upper()
    subject = f"{name} API Quota Exceeded"
    body = (
        "Hello,\n\n"
        f"Your {name} API quota or rate limit has been exceeded.\n\n"
        f"Error: {error}\n\n"
        "Reminders on this service will keep failing until the quota resets. "
        f"Upgrade your {service} plan or update the credentials in the configuration.\n\n"
        "Best regards,\nInvoice Guard System"
    )
    return subject, body


def low_sms_credits_message(balance: float, threshold: float) -> tuple[str, str]:
    subject = f"Low SMS Credits - {balance:.2f} Remaining"
    body = (
        "Hello,\n\n"
        "Your SMS credit balance is running low.\n\n"
        f"Current Balance: ${balance:.2f}\n"
        f"Threshold: ${threshold:.2f}\n\n"
        "Add credits to your Twilio account to avoid interruption of SMS reminders.\n\n"
        "Best regards,\nInvoice Guard System"
    )
    return subject, body


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------

class LoggingNotifier:
    """Writes notifications to the log and keeps a bounded in-memory history."""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self._clock = clock or datetime.now
        self._lock = threading.Lock()
        self.history: deque[Notification] = deque(maxlen=max(1, history_limit))

    def notify_failed_batch(self, count: int, invoice_ids: list[str], errors: list[str]) -> None:
        subject, body = failed_batch_message(count, invoice_ids, errors)
        self._record("failed_reminders", subject, body, {
            "failed_count": count,
            "invoice_ids": list(invoice_ids),
            "errors": list(errors),
        })

    def notify_scheduler_failure(self, error: BaseException) -> None:
        subject, body = scheduler_failure_message(error, self._clock())
        self._record("scheduler_failure", subject, body, {"error": str(error)})

    def notify_service_down(self, service: str, error: str) -> None:
        subject, body = service_down_message(service, error, self._clock())
        self._record("service_down", subject, body, {"service": service, "error": error})

    def notify_quota_exceeded(self, service: str, error: str) -> None:
        subject, body = quota_exceeded_message(service, error)
        self._record("api_quota_exceeded", subject, body, {"service": service, "error": error})

    def notify_low_sms_credits(self, balance: float, threshold: float) -> None:
        subject, body = low_sms_credits_message(balance, threshold)
        self._record("low_sms_credits", subject, body,
                     {"current_balance": balance, "threshold": threshold},
                     severity="warning")

    def clear_history(self) -> None:
        with self._lock:
            self.history.clear()

    def _record(
        self, kind: str, subject: str, body: str, metadata: dict, severity: str = "error"
    ) -> Notification:
        note = Notification(
            notification_id=f"notif_{uuid.uuid4().hex[:12]}",
            kind=kind,
            subject=subject,
            message=body,
            created_at=self._clock(),
            severity=severity,
            metadata=metadata,
        )
        with self._lock:
            self.history.append(note)
        try:
            self._deliver(note)
            note.status = "sent"
        except Exception as e:
            note.status = "failed"
            note.error = str(e)
            logger.error("Could not deliver %s notification: %s", kind, e)
        return note

    def _deliver(self, note: Notification) -> None:
        logger.warning("%s\n%s", note.subject, note.message)


class EmailNotifier(LoggingNotifier):
    """Logs every notification and also emails it to the operator."""

    def __init__(
        self,
        transport,
        recipient: str,
        clock: Optional[Callable[[], datetime]] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        super().__init__(clock, history_limit)
        self.transport = transport
        self.recipient = recipient

    def _deliver(self, note: Notification) -> None:
        super()._deliver(note)
        self.transport.send(self.recipient, note.message, subject=note.subject)
