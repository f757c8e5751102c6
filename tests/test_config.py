"""Tests for reminder_engine.config -- defaults, validation and YAML overlay.

Covers:
- Default values for every section
- ReminderConfig.validate() invariants
- ReminderConfig.from_dict parsing
- get_config() YAML overlay, missing file, duplicate tenants
- Environment variable fallbacks for credentials
"""

import pytest

from reminder_engine.config import (
    BusinessHours,
    ConfigError,
    EngineConfig,
    EscalationLevels,
    EscalationRange,
    NotificationSettings,
    ReminderConfig,
    SMSSettings,
    SMTPSettings,
    get_config,
    parse_hhmm,
)
from reminder_engine.models import Channel


# ============================================================================
# Defaults
# ============================================================================

class TestDefaults:
    """A bare EngineConfig should carry the documented defaults."""

    def test_reminder_defaults(self):
        cfg = ReminderConfig()
        assert cfg.channels == [Channel.EMAIL]
        assert cfg.interval_days == 3
        assert cfg.max_reminders == 5
        assert cfg.business_hours.start == "09:00"
        assert cfg.business_hours.end == "18:00"
        assert cfg.business_hours_only and cfg.exclude_weekends

    def test_escalation_defaults(self):
        lv = EscalationLevels()
        assert (lv.gentle.min_days, lv.gentle.max_days) == (1, 3)
        assert (lv.firm.min_days, lv.firm.max_days) == (4, 7)
        assert (lv.urgent.min_days, lv.urgent.max_days) == (8, None)

    def test_engine_defaults(self):
        cfg = EngineConfig()
        assert cfg.retry.max_retries == 3
        assert cfg.retry.initial_delay_seconds == 60.0
        assert cfg.retry.multiplier == 2.0
        assert cfg.scheduler.failure_threshold == 3
        assert cfg.scheduler.interval_seconds == 6 * 3600
        assert len(cfg.tenants) == 1

    def test_defaults_validate(self):
        ReminderConfig().validate()


class TestParseHHMM:

    @pytest.mark.parametrize("value,expected", [
        ("00:00", 0),
        ("09:30", 570),
        ("9:05", 545),
        ("23:59", 1439),
    ])
    def test_valid(self, value, expected):
        assert parse_hhmm(value) == expected

    @pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "", None])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_hhmm(value)


class TestEscalationRange:

    def test_bounded(self):
        r = EscalationRange(4, 7)
        assert [r.contains(d) for d in (3, 4, 7, 8)] == [False, True, True, False]

    def test_unbounded(self):
        r = EscalationRange(8)
        assert r.contains(8) and r.contains(10_000)
        assert not r.contains(7)


# ============================================================================
# Validation
# ============================================================================

class TestValidate:
    """validate() rejects every documented invariant violation."""

    def test_no_channels(self):
        with pytest.raises(ConfigError, match="channel"):
            ReminderConfig(channels=[]).validate()

    @pytest.mark.parametrize("interval", [0, 31])
    def test_interval_out_of_range(self, interval):
        with pytest.raises(ConfigError, match="interval_days"):
            ReminderConfig(interval_days=interval).validate()

    @pytest.mark.parametrize("interval", [1, 30])
    def test_interval_bounds_accepted(self, interval):
        ReminderConfig(interval_days=interval).validate()

    @pytest.mark.parametrize("max_reminders", [0, 21])
    def test_max_reminders_out_of_range(self, max_reminders):
        with pytest.raises(ConfigError, match="max_reminders"):
            ReminderConfig(max_reminders=max_reminders).validate()

    def test_hours_start_after_end(self):
        cfg = ReminderConfig(business_hours=BusinessHours("18:00", "09:00"))
        with pytest.raises(ConfigError, match="Business hours"):
            cfg.validate()

    def test_hours_equal(self):
        cfg = ReminderConfig(business_hours=BusinessHours("09:00", "09:00"))
        with pytest.raises(ConfigError):
            cfg.validate()

    def test_overlapping_gentle_and_firm(self):
        levels = EscalationLevels(gentle=EscalationRange(1, 4))
        with pytest.raises(ConfigError, match="Gentle max"):
            ReminderConfig(escalation_levels=levels).validate()

    def test_overlapping_firm_and_urgent(self):
        levels = EscalationLevels(urgent=EscalationRange(7))
        with pytest.raises(ConfigError, match="Firm max"):
            ReminderConfig(escalation_levels=levels).validate()

    def test_inverted_range(self):
        levels = EscalationLevels(firm=EscalationRange(6, 5), urgent=EscalationRange(8))
        with pytest.raises(ConfigError, match="Firm min"):
            ReminderConfig(escalation_levels=levels).validate()

    def test_gap_between_ranges_is_allowed(self):
        levels = EscalationLevels(
            gentle=EscalationRange(1, 2),
            firm=EscalationRange(5, 7),
            urgent=EscalationRange(10),
        )
        ReminderConfig(escalation_levels=levels).validate()


# ============================================================================
# from_dict
# ============================================================================

class TestFromDict:

    def test_full_mapping(self):
        cfg = ReminderConfig.from_dict({
            "tenant_id": "acme",
            "channels": ["EMAIL", "sms"],
            "interval_days": 2,
            "max_reminders": 4,
            "business_hours": {"start": "08:00", "end": "20:00"},
            "escalation_levels": {
                "gentle": {"min_days": 1, "max_days": 5},
                "firm": {"min_days": 6, "max_days": 10},
                "urgent": {"min_days": 11},
            },
            "payment_details": {"upi_id": "acme@upi"},
        })
        assert cfg.tenant_id == "acme"
        assert cfg.channels == [Channel.EMAIL, Channel.SMS]
        assert cfg.interval_days == 2
        assert cfg.business_hours.end == "20:00"
        assert cfg.escalation_levels.firm.max_days == 10
        assert cfg.escalation_levels.urgent.min_days == 11
        assert cfg.payment_details.upi_id == "acme@upi"
        cfg.validate()

    def test_partial_mapping_keeps_defaults(self):
        cfg = ReminderConfig.from_dict({"interval_days": 7})
        assert cfg.interval_days == 7
        assert cfg.max_reminders == 5
        assert cfg.channels == [Channel.EMAIL]

    def test_unknown_channel(self):
        with pytest.raises(ConfigError, match="Unknown channel"):
            ReminderConfig.from_dict({"channels": ["fax"]})


# ============================================================================
# get_config
# ============================================================================

class TestGetConfig:
    """YAML overlay behaviour."""

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_config(tmp_path / "nope.yaml")

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        cfg = get_config(path)
        assert cfg.tenants[0].interval_days == 3

    def test_overlay(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "tenants:\n"
            "  - tenant_id: acme\n"
            "    channels: [email, sms]\n"
            "    interval_days: 5\n"
            "  - tenant_id: globex\n"
            "    enabled: false\n"
            "retry:\n"
            "  max_retries: 2\n"
            "  initial_delay_seconds: 1\n"
            "scheduler:\n"
            "  interval_hours: 1\n"
            "budget:\n"
            "  monthly_limits:\n"
            "    acme: 25.0\n"
            "sender:\n"
            "  name: Acme Billing\n"
        )
        cfg = get_config(path)
        assert [t.tenant_id for t in cfg.tenants] == ["acme", "globex"]
        assert cfg.tenant("acme").channels == [Channel.EMAIL, Channel.SMS]
        assert cfg.tenant("acme").interval_days == 5
        assert cfg.tenant("globex").enabled is False
        assert cfg.tenant("missing") is None
        assert cfg.retry.max_retries == 2
        assert cfg.scheduler.interval_seconds == 3600
        assert cfg.budget.monthly_limits == {"acme": 25.0}
        assert cfg.sender.name == "Acme Billing"

    def test_invalid_tenant_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("tenants:\n  - interval_days: 45\n")
        with pytest.raises(ConfigError, match="interval_days"):
            get_config(path)

    def test_duplicate_enabled_tenants(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("tenants:\n  - tenant_id: acme\n  - tenant_id: acme\n")
        with pytest.raises(ConfigError, match="More than one"):
            get_config(path)

    def test_disabled_duplicate_allowed(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "tenants:\n  - tenant_id: acme\n  - tenant_id: acme\n    enabled: false\n"
        )
        assert len(get_config(path).tenants) == 2

    def test_tenants_must_be_list(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("tenants:\n  acme: {}\n")
        with pytest.raises(ConfigError):
            get_config(path)


# ============================================================================
# Environment fallbacks
# ============================================================================

class TestEnvironment:

    def test_smtp_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("SMTP_USERNAME", "bot@acme.example")
        monkeypatch.setenv("SMTP_PASSWORD", "secret")
        s = SMTPSettings()
        assert s.username == "bot@acme.example"
        assert s.password == "secret"

    def test_explicit_smtp_values_win(self, monkeypatch):
        monkeypatch.setenv("SMTP_USERNAME", "env@acme.example")
        assert SMTPSettings(username="explicit@acme.example").username == "explicit@acme.example"

    def test_twilio_from_env(self, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok")
        s = SMSSettings(from_number="+15550001111")
        assert s.account_sid == "AC123"
        assert s.is_configured

    def test_sms_not_configured_without_number(self, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok")
        assert not SMSSettings().is_configured

    def test_notification_recipient_fallback(self, monkeypatch):
        monkeypatch.delenv("USER_EMAIL", raising=False)
        assert NotificationSettings().recipient_email == "admin@invoiceguard.com"
        monkeypatch.setenv("USER_EMAIL", "ops@acme.example")
        assert NotificationSettings().recipient_email == "ops@acme.example"
