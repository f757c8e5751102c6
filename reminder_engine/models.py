"""Data models for the invoice reminder engine.

Plain dataclasses and enums.  Invoices and contacts are read-only inputs
owned by collaborators; ReminderLog is the append-only delivery record the
eligibility checks are reconstructed from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


DEFAULT_TENANT = "default"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Channel(str, Enum):
    """Outbound delivery channels a tenant can enable."""

    EMAIL = "email"
    SMS = "sms"

    def address_for(self, contact: Contact) -> str | None:
        """Return the contact's address for this channel, or None if missing."""
        if self is Channel.EMAIL:
            return contact.email or None
        return contact.phone or None


class ReminderStatus(str, Enum):
    """Lifecycle of a ReminderLog row: pending -> sent | failed."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EscalationLevel(str, Enum):
    """Tone of a reminder, ordered by urgency.

    gentle < firm < urgent.  Compare with ``urgency`` rather than the
    string values.
    """

    GENTLE = "gentle"
    FIRM = "firm"
    URGENT = "urgent"

    @property
    def urgency(self) -> int:
        return _URGENCY[self]


_URGENCY: dict[EscalationLevel, int] = {
    EscalationLevel.GENTLE: 0,
    EscalationLevel.FIRM: 1,
    EscalationLevel.URGENT: 2,
}


class EligibilityReason(str, Enum):
    """Machine-readable reason attached to every eligibility decision."""

    ALL_CHECKS_PASSED = "all_checks_passed"
    MAX_REMINDERS_REACHED = "max_reminders_reached"
    INTERVAL_NOT_MET = "interval_not_met"
    WEEKEND_EXCLUDED = "weekend_excluded"
    OUTSIDE_BUSINESS_HOURS = "outside_business_hours"
    OPTED_OUT = "opted_out"
    BUDGET_EXCEEDED = "budget_exceeded"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PaymentDetails:
    """How the client can pay.  Every field is optional."""

    upi_id: str = ""
    bank_details: str = ""
    paypal_email: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.upi_id or self.bank_details or self.paypal_email)


@dataclass(frozen=True)
class Invoice:
    """An overdue invoice as supplied by the invoice source.

    ``due_date`` may be a date (treated as local midnight) or a naive
    local datetime.
    """

    invoice_id: str
    invoice_number: str
    due_date: date | datetime
    amount: float = 0.0
    status: str = "pending"
    tenant_id: str = DEFAULT_TENANT
    client_name: str = ""
    payment_details: PaymentDetails | None = None

    @property
    def due_at(self) -> datetime:
        """Due date as a datetime (midnight when only a date is known)."""
        if isinstance(self.due_date, datetime):
            return self.due_date
        return datetime(self.due_date.year, self.due_date.month, self.due_date.day)


@dataclass(frozen=True)
class Contact:
    """Client contact for one invoice.

    At least one of email/phone is set by the contact store.  ``opted_out``
    vetoes every automated reminder.
    """

    invoice_id: str
    client_name: str = ""
    email: str | None = None
    phone: str | None = None
    opted_out: bool = False

    @property
    def first_name(self) -> str:
        if not self.client_name:
            return ""
        return self.client_name.split()[0]


# ---------------------------------------------------------------------------
# Delivery records
# ---------------------------------------------------------------------------

@dataclass
class ReminderLog:
    """One delivery attempt-set for one invoice on one channel.

    Created PENDING before dispatch and updated in place to SENT or FAILED
    once the dispatcher returns.  Never deleted.
    """

    invoice_id: str
    channel: Channel
    message: str
    escalation_level: EscalationLevel
    sent_at: datetime
    status: ReminderStatus = ReminderStatus.PENDING
    delivered_at: datetime | None = None
    error: str | None = None
    cost: float | None = None
    message_id: str | None = None
    attempts: int = 0
    retryable: bool | None = None     # set on FAILED rows only
    log_id: str = ""
    tenant_id: str = DEFAULT_TENANT

    @property
    def is_sent(self) -> bool:
        return self.status is ReminderStatus.SENT

    def to_dict(self) -> dict:
        """Serialize to a plain dict for JSON export and reports."""
        return {
            "log_id": self.log_id,
            "tenant_id": self.tenant_id,
            "invoice_id": self.invoice_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "message": self.message,
            "escalation_level": self.escalation_level.value,
            "sent_at": self.sent_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "error": self.error,
            "cost": self.cost,
            "message_id": self.message_id,
            "attempts": self.attempts,
            "retryable": self.retryable,
        }


@dataclass(frozen=True)
class EligibilityDecision:
    """Send/no-send verdict with exactly one reason.  Never persisted."""

    send: bool
    reason: EligibilityReason
    detail: str = ""

    @classmethod
    def accept(cls) -> EligibilityDecision:
        return cls(True, EligibilityReason.ALL_CHECKS_PASSED, "All checks passed")

    @classmethod
    def reject(cls, reason: EligibilityReason, detail: str = "") -> EligibilityDecision:
        return cls(False, reason, detail)


@dataclass(frozen=True)
class OutboundMessage:
    """A composed reminder shaped for one channel.  Only email has a subject."""

    body: str
    subject: str | None = None


@dataclass(frozen=True)
class SendReceipt:
    """What a transport returns on success."""

    message_id: str | None = None
    cost: float = 0.0


@dataclass
class DeliveryOutcome:
    """Structured result of one RetryingDispatcher.dispatch() call."""

    success: bool
    attempts: int
    message_id: str | None = None
    cost: float | None = None
    error: str | None = None
    retryable: bool = False
    delays: list[float] = field(default_factory=list)
