"""Invoice Reminder Engine - eligibility, escalation and reliable delivery.

Decides whether an overdue invoice may get a payment reminder now, picks
the tone (gentle / firm / urgent), and delivers it over email or SMS with
bounded, exponentially backed-off retries.  The ReminderOrchestrator runs
one pass over all overdue invoices; the ReminderScheduler repeats it.
"""

from .models import (
    Channel,
    Contact,
    DeliveryOutcome,
    EligibilityDecision,
    EligibilityReason,
    EscalationLevel,
    Invoice,
    PaymentDetails,
    ReminderLog,
    ReminderStatus,
    SendReceipt,
)
from .config import ConfigError, EngineConfig, ReminderConfig, get_config
from .dispatcher import DeliveryError, RetryingDispatcher, RetryPolicy
from .eligibility import EligibilityEvaluator
from .orchestrator import PausedInvoices, ReminderOrchestrator, TickResult
from .scheduler import ReminderScheduler
from .tone_resolver import ToneResolver, resolve

__all__ = [
    "Channel",
    "ConfigError",
    "Contact",
    "DeliveryError",
    "DeliveryOutcome",
    "EligibilityDecision",
    "EligibilityEvaluator",
    "EligibilityReason",
    "EngineConfig",
    "EscalationLevel",
    "Invoice",
    "PaymentDetails",
    "PausedInvoices",
    "ReminderConfig",
    "ReminderLog",
    "ReminderOrchestrator",
    "ReminderScheduler",
    "ReminderStatus",
    "RetryPolicy",
    "RetryingDispatcher",
    "SendReceipt",
    "TickResult",
    "ToneResolver",
    "get_config",
    "resolve",
]
