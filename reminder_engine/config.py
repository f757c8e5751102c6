"""
Invoice Reminder Engine -- Configuration Module

Centralizes all configuration for the reminder engine.  Loads defaults from
dataclasses, then overlays any overrides from config.yaml.

Usage:
    from reminder_engine.config import get_config
    cfg = get_config()                          # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")     # loads a specific file
    print(cfg.tenants[0].interval_days)         # 3
    print(cfg.retry.initial_delay_seconds)      # 60.0
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import DEFAULT_TENANT, Channel, PaymentDetails

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # reminder_engine/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"

_HHMM_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


class ConfigError(ValueError):
    """Raised when a configuration value fails validation."""


def parse_hhmm(value: str) -> int:
    """Convert 'HH:MM' into minutes after midnight.

    >>> parse_hhmm("09:30")
    570
    """
    if not isinstance(value, str) or not _HHMM_PATTERN.match(value):
        raise ConfigError(f"Invalid time format {value!r}. Use HH:MM")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


# ===================================================================
# 1. Escalation Ranges
# ===================================================================

@dataclass
class EscalationRange:
    """Inclusive day range for one escalation level (max None = unbounded)."""
    min_days: int
    max_days: Optional[int] = None

    def contains(self, days_overdue: int) -> bool:
        if days_overdue < self.min_days:
            return False
        if self.max_days is not None and days_overdue > self.max_days:
            return False
        return True


@dataclass
class EscalationLevels:
    """gentle -> firm -> urgent ladder.  Ranges must not overlap."""
    gentle: EscalationRange = field(default_factory=lambda: EscalationRange(1, 3))
    firm: EscalationRange = field(default_factory=lambda: EscalationRange(4, 7))
    urgent: EscalationRange = field(default_factory=lambda: EscalationRange(8, None))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationLevels:
        levels = cls()
        for name in ("gentle", "firm", "urgent"):
            section = data.get(name)
            if not isinstance(section, dict):
                continue
            current: EscalationRange = getattr(levels, name)
            current.min_days = int(section.get("min_days", current.min_days))
            if name != "urgent":
                current.max_days = int(section.get("max_days", current.max_days))
        return levels


# ===================================================================
# 2. Business Hours
# ===================================================================

@dataclass
class BusinessHours:
    """Sending window in server-local time.  End is exclusive."""
    start: str = "09:00"
    end: str = "18:00"

    @property
    def start_minute(self) -> int:
        return parse_hhmm(self.start)

    @property
    def end_minute(self) -> int:
        return parse_hhmm(self.end)


# ===================================================================
# 3. Per-tenant Reminder Configuration
# ===================================================================

@dataclass
class ReminderConfig:
    """Reminder behaviour for one tenant.

    The engine assumes a validated instance; ``validate()`` is run by
    ``get_config`` and can be called by any other config producer.
    """
    tenant_id: str = DEFAULT_TENANT
    enabled: bool = True
    channels: list[Channel] = field(default_factory=lambda: [Channel.EMAIL])
    interval_days: int = 3
    max_reminders: int = 5
    business_hours_only: bool = True
    exclude_weekends: bool = True
    business_hours: BusinessHours = field(default_factory=BusinessHours)
    escalation_levels: EscalationLevels = field(default_factory=EscalationLevels)
    payment_details: Optional[PaymentDetails] = None

    def validate(self) -> ReminderConfig:
        """Check every invariant; raise ConfigError on the first violation."""
        if not self.channels:
            raise ConfigError("At least one channel must be selected")
        if not 1 <= self.interval_days <= 30:
            raise ConfigError(f"interval_days must be between 1 and 30, got {self.interval_days}")
        if not 1 <= self.max_reminders <= 20:
            raise ConfigError(f"max_reminders must be between 1 and 20, got {self.max_reminders}")
        if self.business_hours.start_minute >= self.business_hours.end_minute:
            raise ConfigError(
                f"Business hours start {self.business_hours.start} must be before "
                f"end {self.business_hours.end}"
            )
        levels = self.escalation_levels
        if levels.gentle.max_days is None or levels.firm.max_days is None:
            raise ConfigError("Gentle and firm levels need a max_days value")
        if levels.gentle.min_days > levels.gentle.max_days:
            raise ConfigError("Gentle min days must not exceed gentle max days")
        if levels.firm.min_days > levels.firm.max_days:
            raise ConfigError("Firm min days must not exceed firm max days")
        if levels.gentle.max_days >= levels.firm.min_days:
            raise ConfigError("Gentle max days must be less than firm min days")
        if levels.firm.max_days >= levels.urgent.min_days:
            raise ConfigError("Firm max days must be less than urgent min days")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReminderConfig:
        """Build a config from a YAML/JSON mapping, keeping defaults for gaps."""
        cfg = cls()
        for attr in ("tenant_id", "enabled", "interval_days", "max_reminders",
                     "business_hours_only", "exclude_weekends"):
            if attr in data:
                setattr(cfg, attr, data[attr])
        if "channels" in data:
            try:
                cfg.channels = [Channel(str(c).lower()) for c in data["channels"] or []]
            except ValueError as exc:
                raise ConfigError(f"Unknown channel in {data['channels']!r}") from exc
        if isinstance(data.get("business_hours"), dict):
            hours = data["business_hours"]
            cfg.business_hours = BusinessHours(
                start=str(hours.get("start", cfg.business_hours.start)),
                end=str(hours.get("end", cfg.business_hours.end)),
            )
        if isinstance(data.get("escalation_levels"), dict):
            cfg.escalation_levels = EscalationLevels.from_dict(data["escalation_levels"])
        if isinstance(data.get("payment_details"), dict):
            cfg.payment_details = PaymentDetails(**data["payment_details"])
        return cfg


# ===================================================================
# 4. Retry Policy
# ===================================================================

@dataclass
class RetrySettings:
    """Exponential backoff for provider calls: 1 min, 2 min, 4 min."""
    max_retries: int = 3
    initial_delay_seconds: float = 60.0
    multiplier: float = 2.0


# ===================================================================
# 5. Scheduler
# ===================================================================

@dataclass
class SchedulerSettings:
    """Tick cadence, worker pool size and batch failure threshold."""
    interval_hours: float = 6.0
    max_workers: int = 4
    failure_threshold: int = 3
    run_immediately: bool = False

    @property
    def interval_seconds(self) -> float:
        return self.interval_hours * 3600.0


# ===================================================================
# 6. SMTP Settings
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP relay used by the email transport and the email notifier."""
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD
    timeout_seconds: float = 30.0
    cost_per_email: float = 0.0

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")


# ===================================================================
# 7. SMS Settings
# ===================================================================

@dataclass
class SMSSettings:
    """Twilio REST credentials and pricing used for cost tracking."""
    account_sid: str = ""     # set via env var TWILIO_ACCOUNT_SID
    auth_token: str = ""      # set via env var TWILIO_AUTH_TOKEN
    from_number: str = ""
    api_base_url: str = "https://api.twilio.com/2010-04-01"
    status_callback_url: str = ""
    timeout_seconds: float = 15.0
    default_country_code: str = "91"
    domestic_cost_per_segment: float = 0.0050
    international_cost_per_segment: float = 0.0075

    def __post_init__(self):
        self.account_sid = self.account_sid or os.environ.get("TWILIO_ACCOUNT_SID", "")
        self.auth_token = self.auth_token or os.environ.get("TWILIO_AUTH_TOKEN", "")

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)


# ===================================================================
# 8. Sender / Notifications
# ===================================================================

@dataclass
class SenderInfo:
    """Default FROM identity for outgoing reminders."""
    name: str = "Invoice Guard"
    email: str = ""


@dataclass
class NotificationSettings:
    """Who hears about operator alerts, and when the threshold-based ones fire."""
    recipient_email: str = ""   # falls back to env var USER_EMAIL
    use_email: bool = False
    low_sms_credit_threshold: float = 10.0
    history_limit: int = 200

    def __post_init__(self):
        self.recipient_email = (
            self.recipient_email or os.environ.get("USER_EMAIL", "admin@invoiceguard.com")
        )


# ===================================================================
# 9. Budget
# ===================================================================

@dataclass
class BudgetSettings:
    """Monthly spend limit per tenant (0 or missing = no limit)."""
    monthly_limits: dict[str, float] = field(default_factory=dict)


# ===================================================================
# 10. Storage / Data Files
# ===================================================================

@dataclass
class StorageSettings:
    """Where the reminder log lives."""
    db_path: str = "output/reminder_logs.db"

    def resolve(self) -> Path:
        p = Path(self.db_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


@dataclass
class DataFilePaths:
    """Paths to input data files (relative to project root unless absolute)."""
    invoices_xlsx: str = "data/invoices.xlsx"

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 11. Message Composer
# ===================================================================

@dataclass
class ComposerSettings:
    """Rendering options for the default Jinja2 composer."""
    currency_symbol: str = "₹"
    app_url: str = "http://localhost:3000"
    template_dir: str = ""          # optional override directory
    sms_preview_chars: int = 100


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class EngineConfig:
    """Top-level configuration container for the reminder engine."""
    tenants: list[ReminderConfig] = field(default_factory=lambda: [ReminderConfig()])
    retry: RetrySettings = field(default_factory=RetrySettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    sms: SMSSettings = field(default_factory=SMSSettings)
    sender: SenderInfo = field(default_factory=SenderInfo)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    data_files: DataFilePaths = field(default_factory=DataFilePaths)
    composer: ComposerSettings = field(default_factory=ComposerSettings)

    def tenant(self, tenant_id: str) -> Optional[ReminderConfig]:
        for cfg in self.tenants:
            if cfg.tenant_id == tenant_id:
                return cfg
        return None


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: EngineConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto an EngineConfig instance."""

    # --- tenants ---
    if "tenants" in data:
        tenants = data["tenants"] or []
        if not isinstance(tenants, list):
            raise ConfigError("'tenants' must be a list of reminder configs")
        cfg.tenants = [ReminderConfig.from_dict(t or {}) for t in tenants]

    # --- simple sub-configs ---
    _section_map = {
        "retry": cfg.retry,
        "scheduler": cfg.scheduler,
        "smtp": cfg.smtp,
        "sms": cfg.sms,
        "sender": cfg.sender,
        "notifications": cfg.notifications,
        "budget": cfg.budget,
        "storage": cfg.storage,
        "data_files": cfg.data_files,
        "composer": cfg.composer,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> EngineConfig:
    """Build an EngineConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated, validated EngineConfig instance.

    Raises:
        FileNotFoundError: an explicit yaml_path does not exist.
        ConfigError: a tenant config violates its invariants.
    """
    cfg = EngineConfig()

    if yaml_path is not None and not Path(yaml_path).exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    seen: set[str] = set()
    for tenant in cfg.tenants:
        tenant.validate()
        if tenant.enabled:
            if tenant.tenant_id in seen:
                raise ConfigError(f"More than one enabled config for tenant {tenant.tenant_id!r}")
            seen.add(tenant.tenant_id)

    return cfg


# ===================================================================
# Quick smoke test when run directly
# ===================================================================

if __name__ == "__main__":
    cfg = get_config()
    print(f"Project root : {PROJECT_ROOT}")
    print(f"Config path  : {DEFAULT_CONFIG_PATH}")
    print(f"Sender       : {cfg.sender.name} <{cfg.sender.email}>")
    print(f"Schedule     : every {cfg.scheduler.interval_hours}h, {cfg.scheduler.max_workers} workers")
    for tenant in cfg.tenants:
        lv = tenant.escalation_levels
        print(
            f"  {tenant.tenant_id}: channels={[c.value for c in tenant.channels]} "
            f"gentle={lv.gentle.min_days}-{lv.gentle.max_days} "
            f"firm={lv.firm.min_days}-{lv.firm.max_days} urgent={lv.urgent.min_days}+"
        )
