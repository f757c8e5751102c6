"""Tests for reminder_engine.models -- enums, dataclasses and serialization.

Covers:
- Channel address lookup
- Escalation level ordering
- Invoice due_at normalization
- ReminderLog.to_dict
- EligibilityDecision constructors
"""

from datetime import date, datetime

import pytest

from reminder_engine.models import (
    Channel,
    Contact,
    EligibilityDecision,
    EligibilityReason,
    EscalationLevel,
    Invoice,
    PaymentDetails,
    ReminderLog,
    ReminderStatus,
)


# ============================================================================
# Enums
# ============================================================================

class TestChannel:
    """Channel.address_for picks the right contact field."""

    def test_email_address(self):
        contact = Contact("INV-1", email="a@b.example", phone="9876543210")
        assert Channel.EMAIL.address_for(contact) == "a@b.example"

    def test_sms_address(self):
        contact = Contact("INV-1", email="a@b.example", phone="9876543210")
        assert Channel.SMS.address_for(contact) == "9876543210"

    @pytest.mark.parametrize("channel", list(Channel))
    def test_missing_address_is_none(self, channel):
        contact = Contact("INV-1", email="", phone=None)
        assert channel.address_for(contact) is None

    def test_values_round_trip_from_strings(self):
        assert Channel("email") is Channel.EMAIL
        assert Channel("sms") is Channel.SMS


class TestEscalationLevel:
    """Urgency gives the gentle < firm < urgent ordering."""

    def test_urgency_order(self):
        assert (
            EscalationLevel.GENTLE.urgency
            < EscalationLevel.FIRM.urgency
            < EscalationLevel.URGENT.urgency
        )

    def test_string_values(self):
        assert [lv.value for lv in EscalationLevel] == ["gentle", "firm", "urgent"]


# ============================================================================
# Inputs
# ============================================================================

class TestInvoice:

    def test_date_due_becomes_midnight(self):
        inv = Invoice("INV-1", "N-1", due_date=date(2026, 3, 1))
        assert inv.due_at == datetime(2026, 3, 1, 0, 0)

    def test_datetime_due_kept(self):
        due = datetime(2026, 3, 1, 14, 30)
        inv = Invoice("INV-1", "N-1", due_date=due)
        assert inv.due_at == due

    def test_defaults(self):
        inv = Invoice("INV-1", "N-1", due_date=date(2026, 3, 1))
        assert inv.tenant_id == "default"
        assert inv.status == "pending"
        assert inv.payment_details is None


class TestPaymentDetails:

    def test_empty(self):
        assert PaymentDetails().is_empty

    @pytest.mark.parametrize("kwargs", [
        {"upi_id": "shop@upi"},
        {"bank_details": "HDFC 0001"},
        {"paypal_email": "pay@shop.example"},
    ])
    def test_any_field_makes_non_empty(self, kwargs):
        assert not PaymentDetails(**kwargs).is_empty


class TestContact:

    def test_first_name(self):
        assert Contact("INV-1", client_name="Asha Mehta").first_name == "Asha"

    def test_first_name_blank(self):
        assert Contact("INV-1").first_name == ""


# ============================================================================
# Records
# ============================================================================

class TestReminderLog:

    @pytest.fixture
    def log(self) -> ReminderLog:
        return ReminderLog(
            invoice_id="INV-1",
            channel=Channel.SMS,
            message="hello",
            escalation_level=EscalationLevel.FIRM,
            sent_at=datetime(2026, 3, 11, 10, 0),
        )

    def test_defaults_to_pending(self, log):
        assert log.status is ReminderStatus.PENDING
        assert not log.is_sent
        assert log.attempts == 0

    def test_is_sent(self, log):
        log.status = ReminderStatus.SENT
        assert log.is_sent

    def test_to_dict(self, log):
        log.status = ReminderStatus.SENT
        log.delivered_at = datetime(2026, 3, 11, 10, 1)
        log.cost = 0.005
        d = log.to_dict()
        assert d["channel"] == "sms"
        assert d["status"] == "sent"
        assert d["escalation_level"] == "firm"
        assert d["sent_at"] == "2026-03-11T10:00:00"
        assert d["delivered_at"] == "2026-03-11T10:01:00"
        assert d["cost"] == 0.005
        assert d["tenant_id"] == "default"

    def test_to_dict_without_delivery(self, log):
        assert log.to_dict()["delivered_at"] is None
        assert log.to_dict()["retryable"] is None

    def test_to_dict_failed_row_carries_retryable(self, log):
        log.status = ReminderStatus.FAILED
        log.retryable = True
        assert log.to_dict()["retryable"] is True


class TestEligibilityDecision:

    def test_accept(self):
        d = EligibilityDecision.accept()
        assert d.send is True
        assert d.reason is EligibilityReason.ALL_CHECKS_PASSED

    def test_reject(self):
        d = EligibilityDecision.reject(EligibilityReason.OPTED_OUT, "nope")
        assert d.send is False
        assert d.reason is EligibilityReason.OPTED_OUT
        assert d.detail == "nope"
