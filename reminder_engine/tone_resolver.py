"""
Reminder Tone Resolver

Maps the number of days an invoice is overdue onto an escalation level.
The level picks the message template, the email subject, and the urgency
used for reporting.

Default ladder (configurable per tenant):
    GENTLE:  1-3 days overdue   (friendly nudge)
    FIRM:    4-7 days overdue   (clear expectation of payment)
    URGENT:  8+ days overdue    (immediate action requested)

Values that fall outside every range (0, negatives, gaps between
misconfigured ranges) resolve to GENTLE.
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import EscalationLevels
from .models import EscalationLevel


# ---------------------------------------------------------------------------
# Tone Profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToneProfile:
    """
    Everything that depends on the escalation level alone.

    Attributes:
        level: The escalation level this profile describes.
        template_name: Identifier of the message template.
        subject_template: Email subject, formatted with ``invoice_number``.
        tone: Short description of the register the message is written in.
    """
    level: EscalationLevel
    template_name: str
    subject_template: str
    tone: str

    @property
    def urgency(self) -> int:
        return self.level.urgency

    def subject(self, invoice_number: str) -> str:
        return self.subject_template.format(invoice_number=invoice_number)


TONE_PROFILES: dict[EscalationLevel, ToneProfile] = {
    EscalationLevel.GENTLE: ToneProfile(
        level=EscalationLevel.GENTLE,
        template_name="gentle",
        subject_template="Payment Reminder: Invoice {invoice_number}",
        tone="friendly and polite",
    ),
    EscalationLevel.FIRM: ToneProfile(
        level=EscalationLevel.FIRM,
        template_name="firm",
        subject_template="Payment Due: Invoice {invoice_number}",
        tone="professional but firm",
    ),
    EscalationLevel.URGENT: ToneProfile(
        level=EscalationLevel.URGENT,
        template_name="urgent",
        subject_template="URGENT: Overdue Payment - Invoice {invoice_number}",
        tone="urgent and direct",
    ),
}


# ---------------------------------------------------------------------------
# Resolution Result
# ---------------------------------------------------------------------------

@dataclass
class ToneResult:
    """
    The result of resolving a single invoice.

    Attributes:
        level: The resolved escalation level.
        profile: Template, subject and tone for that level.
        days_overdue: The value that was resolved.
        in_configured_range: False when the value matched no range and
            fell back to GENTLE.
    """
    level: EscalationLevel
    profile: ToneProfile
    days_overdue: int
    in_configured_range: bool = True


# ---------------------------------------------------------------------------
# Core Resolution
# ---------------------------------------------------------------------------

def resolve(days_overdue: int, levels: EscalationLevels) -> EscalationLevel:
    """
    Pick the escalation level for ``days_overdue``.  Pure and total.

    Examples:
        >>> resolve(2, EscalationLevels())
        <EscalationLevel.GENTLE: 'gentle'>
        >>> resolve(5, EscalationLevels())
        <EscalationLevel.FIRM: 'firm'>
        >>> resolve(8, EscalationLevels())
        <EscalationLevel.URGENT: 'urgent'>
        >>> resolve(0, EscalationLevels())
        <EscalationLevel.GENTLE: 'gentle'>
    """
    return resolve_tone(days_overdue, levels).level


def resolve_tone(days_overdue: int, levels: EscalationLevels) -> ToneResult:
    """Resolve ``days_overdue`` into a full ToneResult."""
    days_overdue = int(days_overdue)

    if levels.gentle.contains(days_overdue):
        level, matched = EscalationLevel.GENTLE, True
    elif levels.firm.contains(days_overdue):
        level, matched = EscalationLevel.FIRM, True
    elif days_overdue >= levels.urgent.min_days:
        level, matched = EscalationLevel.URGENT, True
    else:
        level, matched = EscalationLevel.GENTLE, False

    return ToneResult(
        level=level,
        profile=TONE_PROFILES[level],
        days_overdue=days_overdue,
        in_configured_range=matched,
    )


def get_profile(level: EscalationLevel) -> ToneProfile:
    """Retrieve the tone profile for a level."""
    return TONE_PROFILES[level]


class ToneResolver:
    """Stateless object wrapper so the resolver can be injected like any port."""

    def resolve(self, days_overdue: int, levels: EscalationLevels) -> EscalationLevel:
        return resolve(days_overdue, levels)

    def resolve_tone(self, days_overdue: int, levels: EscalationLevels) -> ToneResult:
        return resolve_tone(days_overdue, levels)
