"""
Reminder Eligibility Evaluator

Decides whether a reminder may be sent for one invoice right now.  Checks
run in a fixed order and stop at the first rejection, so every decision
carries exactly one reason:

    1. contact opted out            -> opted_out
    2. tenant over monthly budget   -> budget_exceeded
    3. sent count >= max_reminders  -> max_reminders_reached
    4. last send too recent         -> interval_not_met
    5. weekend (if excluded)        -> weekend_excluded
    6. outside business hours       -> outside_business_hours
    7. otherwise                    -> all_checks_passed

All times are naive datetimes in server-local time.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from .config import ReminderConfig, parse_hhmm
from .models import (
    Contact,
    EligibilityDecision,
    EligibilityReason,
    Invoice,
    ReminderLog,
)
from .ports import BudgetChecker, Clock

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def days_between(earlier: datetime, later: datetime) -> int:
    """Whole days between two instants: floor(|later - earlier| / 24h).

    Not calendar aware.  Two events 23h59m apart are 0 days apart even if
    they straddle midnight.
    """
    delta = later - earlier
    ms = abs(delta.days * MS_PER_DAY + delta.seconds * 1000 + delta.microseconds // 1000)
    return ms // MS_PER_DAY


def days_overdue(due_at: datetime, now: datetime) -> int:
    """max(0, floor((now - due) / 24h)).  Not-yet-due invoices are 0."""
    delta = now - due_at
    if delta.total_seconds() <= 0:
        return 0
    return delta.days


def is_weekend(moment: datetime) -> bool:
    """Saturday or Sunday."""
    return moment.weekday() >= 5


def within_business_hours(moment: datetime, start: str, end: str) -> bool:
    """start <= minute-of-day < end, both given as HH:MM."""
    minute = moment.hour * 60 + moment.minute
    return parse_hhmm(start) <= minute < parse_hhmm(end)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

class EligibilityEvaluator:
    """
    Runs the ordered constraint checks.

    Args:
        budget: Optional BudgetChecker.  When None, every tenant is
            treated as within budget.
        clock: Zero-argument callable returning "now".  Used when
            ``evaluate`` is not handed an explicit ``now``.
    """

    def __init__(self, budget: Optional[BudgetChecker] = None, clock: Optional[Clock] = None):
        self._budget = budget
        self._clock = clock or datetime.now

    def evaluate(
        self,
        invoice: Invoice,
        contact: Contact,
        config: ReminderConfig,
        history: Iterable[ReminderLog],
        now: Optional[datetime] = None,
    ) -> EligibilityDecision:
        """Return the send/no-send decision for one invoice."""
        if now is None:
            now = self._clock()

        # 1. Opt-out is an absolute veto
        if contact.opted_out:
            return EligibilityDecision.reject(
                EligibilityReason.OPTED_OUT,
                f"{contact.client_name or invoice.invoice_id} opted out of automated reminders",
            )

        # 2. Budget
        if not self._within_budget(invoice.tenant_id):
            return EligibilityDecision.reject(
                EligibilityReason.BUDGET_EXCEEDED,
                f"Monthly budget exhausted for tenant {invoice.tenant_id}",
            )

        sent = [log for log in history if log.is_sent]

        # 3. Max reminders
        if len(sent) >= config.max_reminders:
            return EligibilityDecision.reject(
                EligibilityReason.MAX_REMINDERS_REACHED,
                f"Maximum reminders ({config.max_reminders}) reached",
            )

        # 4. Interval since the most recent successful send
        if sent:
            last_sent_at = max(log.sent_at for log in sent)
            elapsed = days_between(last_sent_at, now)
            if elapsed < config.interval_days:
                return EligibilityDecision.reject(
                    EligibilityReason.INTERVAL_NOT_MET,
                    f"Only {elapsed} days since last reminder (need {config.interval_days})",
                )

        # 5. Weekend
        if config.exclude_weekends and is_weekend(now):
            return EligibilityDecision.reject(
                EligibilityReason.WEEKEND_EXCLUDED,
                "Weekend reminders are disabled",
            )

        # 6. Business hours
        hours = config.business_hours
        if config.business_hours_only and not within_business_hours(now, hours.start, hours.end):
            return EligibilityDecision.reject(
                EligibilityReason.OUTSIDE_BUSINESS_HOURS,
                f"Outside business hours ({hours.start} - {hours.end})",
            )

        return EligibilityDecision.accept()

    def _within_budget(self, tenant_id: str) -> bool:
        if self._budget is None:
            return True
        try:
            return bool(self._budget.is_within_budget(tenant_id))
        except Exception:
            # Budget lookups failing must not block reminders
            logger.exception("Budget check failed for tenant %s; treating as within budget", tenant_id)
            return True
