"""Invoice Reminder Engine -- Reminder Orchestrator.

Runs one reminder tick:

    1. Load the enabled per-tenant reminder configs
    2. List overdue invoices from the invoice source
    3. Evaluation pool, one task per invoice:
         a. skip paused invoices and invoices without a contact
         b. compute days overdue, fetch delivery history
         c. ask the eligibility evaluator; skip silently on rejection
         d. resolve the escalation level, compose and shape the message
            for every configured channel with an address
         e. hand each channel's message to the delivery pool
    4. Delivery pool, one task per (invoice, channel): write a pending
       log row, dispatch with retries, update the row to sent/failed
    5. If enough deliveries failed, send one aggregated notification

Retry backoff only ever sleeps on a delivery worker, so an invoice in
backoff never holds up the eligibility check of another invoice.

Provider trouble seen during the tick (composer outage, exhausted quota,
low SMS credit, a channel that stays unreachable) raises at most one
operator alert of each kind per tick.

Ticks are serialized: a tick requested while another one is running is
skipped and reported as such.  Nothing raised inside a tick escapes
``run_tick``; a crash is reported through the notifier instead.

Usage::

    orchestrator = ReminderOrchestrator(
        config_source=StaticConfigSource(cfg.tenants),
        invoice_source=source,
        contact_store=source,
        log_store=SqliteReminderLogStore(cfg.storage.resolve()),
        transports=build_transports(cfg, composer),
        composer=composer,
        notifier=LoggingNotifier(),
    )
    result = orchestrator.run_tick()
    print(result.summary())
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Hashable, Iterable, Optional

from .config import ReminderConfig
from .dispatcher import RetryingDispatcher
from .eligibility import EligibilityEvaluator, days_overdue as compute_days_overdue
from .models import (
    Channel,
    DeliveryOutcome,
    EligibilityDecision,
    EscalationLevel,
    Invoice,
    OutboundMessage,
    ReminderLog,
    ReminderStatus,
)
from .notifier import NotificationThresholds, should_notify
from .ports import (
    Clock,
    ConfigSource,
    ContactStore,
    InvoiceSource,
    LogStore,
    MessageComposer,
    Notifier,
    Transport,
)
from .tone_resolver import ToneResolver

logger = logging.getLogger(__name__)

COMPOSER_SERVICE = "composer"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class InvoiceOutcome(str, Enum):
    """What happened to one invoice during a tick."""

    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"
    PAUSED = "paused"
    NO_CONTACT = "no_contact"
    NO_CONFIG = "no_config"
    INELIGIBLE = "ineligible"
    NO_CHANNEL = "no_channel"
    PLANNED = "planned"          # dry run: would have been sent
    ERROR = "error"


@dataclass
class InvoiceResult:
    invoice_id: str
    tenant_id: str
    outcome: InvoiceOutcome
    days_overdue: int = 0
    decision: Optional[EligibilityDecision] = None
    level: Optional[EscalationLevel] = None
    channels: list[Channel] = field(default_factory=list)
    deliveries: list[ReminderLog] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class TickResult:
    """Container for one tick's output."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    dry_run: bool = False
    skipped: bool = False          # another tick was already running
    invoices: list[InvoiceResult] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)
    notified_failed_batch: bool = False
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    @property
    def evaluated(self) -> int:
        return len(self.invoices)

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.invoices for d in r.deliveries if d.is_sent)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    def count(self, outcome: InvoiceOutcome) -> int:
        return sum(1 for r in self.invoices if r.outcome is outcome)

    def summary(self) -> str:
        if self.skipped:
            return "Tick skipped: previous tick still running"
        counts = {o.value: self.count(o) for o in InvoiceOutcome if self.count(o)}
        parts = ", ".join(f"{k}={v}" for k, v in counts.items()) or "no invoices"
        text = (
            f"{'Dry run' if self.dry_run else 'Tick'}: {self.evaluated} invoices ({parts}); "
            f"{self.sent_count} delivered, {self.failed_count} failed "
            f"in {self.duration_seconds:.1f}s"
        )
        if self.error:
            text += f"; aborted: {self.error}"
        return text

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "dry_run": self.dry_run,
            "skipped": self.skipped,
            "evaluated": self.evaluated,
            "sent": self.sent_count,
            "failed": self.failed_count,
            "outcomes": {o.value: self.count(o) for o in InvoiceOutcome},
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Collaborators owned by the orchestrator layer
# ---------------------------------------------------------------------------

class PausedInvoices:
    """Invoices whose automated reminders are on hold."""

    def __init__(self, invoice_ids: Iterable[str] = ()):
        self._ids = set(invoice_ids)
        self._lock = threading.Lock()

    def pause(self, invoice_id: str) -> bool:
        """Returns False if it was already paused."""
        with self._lock:
            if invoice_id in self._ids:
                return False
            self._ids.add(invoice_id)
        logger.info("Reminders paused for invoice %s", invoice_id)
        return True

    def resume(self, invoice_id: str) -> bool:
        """Returns False if it was not paused."""
        with self._lock:
            if invoice_id not in self._ids:
                return False
            self._ids.discard(invoice_id)
        logger.info("Reminders resumed for invoice %s", invoice_id)
        return True

    def is_paused(self, invoice_id: str) -> bool:
        with self._lock:
            return invoice_id in self._ids

    def list(self) -> list[str]:
        with self._lock:
            return sorted(self._ids)


class StaticConfigSource:
    """Config source over a fixed list (typically the YAML tenants)."""

    def __init__(self, configs: Iterable[ReminderConfig]):
        self._configs = list(configs)

    def list_configs(self) -> list[ReminderConfig]:
        return list(self._configs)


class _TickAlerts:
    """Remembers which operator alerts this tick already raised."""

    def __init__(self):
        self._raised: set[Hashable] = set()
        self._lock = threading.Lock()

    def first(self, key: Hashable) -> bool:
        with self._lock:
            if key in self._raised:
                return False
            self._raised.add(key)
            return True


# (invoice result, [(channel, pending delivery)])
_Prepared = tuple[InvoiceResult, list[tuple[Channel, "Future[ReminderLog]"]]]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ReminderOrchestrator:
    """Drives eligibility, tone, composition and delivery for one tick."""

    def __init__(
        self,
        *,
        config_source: ConfigSource,
        invoice_source: InvoiceSource,
        contact_store: ContactStore,
        log_store: LogStore,
        transports: dict[Channel, Transport],
        composer: MessageComposer,
        notifier: Notifier,
        evaluator: Optional[EligibilityEvaluator] = None,
        tone_resolver: Optional[ToneResolver] = None,
        dispatcher: Optional[RetryingDispatcher] = None,
        clock: Optional[Clock] = None,
        paused: Optional[PausedInvoices] = None,
        sms_balance: Optional[Callable[[], float]] = None,
        max_workers: int = 4,
        failure_threshold: int = 3,
        low_sms_credit_threshold: float = 10.0,
        dry_run: bool = False,
    ):
        self.config_source = config_source
        self.invoice_source = invoice_source
        self.contact_store = contact_store
        self.log_store = log_store
        self.transports = dict(transports)
        self.composer = composer
        self.notifier = notifier
        self.clock = clock or datetime.now
        self.evaluator = evaluator or EligibilityEvaluator(clock=self.clock)
        self.tone_resolver = tone_resolver or ToneResolver()
        self.dispatcher = dispatcher or RetryingDispatcher()
        self.paused = paused if paused is not None else PausedInvoices()
        self.sms_balance = sms_balance
        self.max_workers = max(1, int(max_workers))
        self.failure_threshold = failure_threshold
        self.thresholds = NotificationThresholds(
            failed_reminders=failure_threshold,
            low_sms_credits=low_sms_credit_threshold,
        )
        self.dry_run = dry_run

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._last_result: Optional[TickResult] = None
        self._tick_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def pause_invoice(self, invoice_id: str) -> bool:
        return self.paused.pause(invoice_id)

    def resume_invoice(self, invoice_id: str) -> bool:
        return self.paused.resume(invoice_id)

    def run_tick(self, dry_run: Optional[bool] = None) -> TickResult:
        """Process every overdue invoice once.  Never raises."""
        dry = self.dry_run if dry_run is None else dry_run
        result = TickResult(started_at=self.clock(), dry_run=dry)

        if not self._run_lock.acquire(blocking=False):
            logger.warning("Reminder tick requested while another is running; skipping")
            result.skipped = True
            result.completed_at = self.clock()
            return result

        try:
            self._run(result, dry)
        except Exception as e:
            logger.exception("Reminder tick aborted")
            result.error = str(e) or e.__class__.__name__
            self._safe_notify(self.notifier.notify_scheduler_failure, e)
        finally:
            result.completed_at = self.clock()
            with self._state_lock:
                self._last_result = result
                self._tick_count += 1
            self._run_lock.release()

        logger.info("%s", result.summary())
        return result

    def status(self) -> dict:
        """Snapshot for the CLI and health checks."""
        with self._state_lock:
            last = self._last_result
            ticks = self._tick_count
        return {
            "running": self.is_running,
            "ticks_completed": ticks,
            "last_tick": last.to_dict() if last else None,
            "paused_invoices": self.paused.list(),
            "channels": sorted(c.value for c in self.transports),
            "dry_run": self.dry_run,
        }

    # ------------------------------------------------------------------
    # Tick internals
    # ------------------------------------------------------------------

    def _run(self, result: TickResult, dry_run: bool) -> None:
        configs = self._active_configs()
        invoices = list(self.invoice_source.list_overdue_invoices())
        now = result.started_at
        alerts = _TickAlerts()
        logger.info(
            "Reminder tick: %d overdue invoices, %d active tenant configs%s",
            len(invoices), len(configs), " (dry run)" if dry_run else "",
        )

        failures_lock = threading.Lock()

        def record_failure(invoice_id: str, error: str) -> None:
            with failures_lock:
                result.failures.append((invoice_id, error))

        if invoices:
            workers = min(self.max_workers, len(invoices))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reminder-send") as senders:

                def work(invoice: Invoice) -> _Prepared:
                    config = configs.get(invoice.tenant_id)
                    if config is None:
                        res = InvoiceResult(invoice.invoice_id, invoice.tenant_id, InvoiceOutcome.NO_CONFIG)
                        return res, []
                    try:
                        res, messages = self._prepare_invoice(invoice, config, now, dry_run, alerts)
                    except Exception as e:
                        logger.exception("Error processing invoice %s", invoice.invoice_id)
                        error = str(e) or e.__class__.__name__
                        record_failure(invoice.invoice_id, error)
                        res = InvoiceResult(
                            invoice.invoice_id, invoice.tenant_id, InvoiceOutcome.ERROR, error=error
                        )
                        return res, []
                    jobs = [
                        (channel, senders.submit(
                            self._deliver, invoice, channel, address, res.level, message, now, alerts
                        ))
                        for channel, address, message in messages
                    ]
                    return res, jobs

                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reminder-eval") as evaluators:
                    prepared = list(evaluators.map(work, invoices))

                result.invoices = [
                    self._collect(res, jobs, record_failure) for res, jobs in prepared
                ]

        if should_notify("failed_reminders", len(result.failures), self.thresholds):
            ids = [inv_id for inv_id, _ in result.failures]
            errors = [err for _, err in result.failures]
            logger.warning("%d reminder deliveries failed this tick; notifying", len(ids))
            result.notified_failed_batch = self._safe_notify(
                self.notifier.notify_failed_batch, len(ids), ids, errors
            )

    def _active_configs(self) -> dict[str, ReminderConfig]:
        active: dict[str, ReminderConfig] = {}
        for config in self.config_source.list_configs():
            if not config.enabled:
                continue
            if config.tenant_id in active:
                logger.warning("Ignoring duplicate active config for tenant %s", config.tenant_id)
                continue
            active[config.tenant_id] = config
        return active

    def _prepare_invoice(
        self,
        invoice: Invoice,
        config: ReminderConfig,
        now: datetime,
        dry_run: bool,
        alerts: _TickAlerts,
    ) -> tuple[InvoiceResult, list[tuple[Channel, str, OutboundMessage]]]:
        """Evaluate one invoice and shape its message for every usable channel."""
        res = InvoiceResult(invoice.invoice_id, invoice.tenant_id, InvoiceOutcome.INELIGIBLE)

        if self.paused.is_paused(invoice.invoice_id):
            logger.debug("Invoice %s is paused", invoice.invoice_id)
            res.outcome = InvoiceOutcome.PAUSED
            return res, []

        contact = self.contact_store.find_contact_by_invoice_id(invoice.invoice_id)
        if contact is None:
            logger.info("No contact for invoice %s; skipping", invoice.invoice_id)
            res.outcome = InvoiceOutcome.NO_CONTACT
            return res, []

        res.days_overdue = compute_days_overdue(invoice.due_at, now)
        history = self.log_store.find_logs_by_invoice_id(invoice.invoice_id)

        res.decision = self.evaluator.evaluate(invoice, contact, config, history, now=now)
        if not res.decision.send:
            logger.debug(
                "Invoice %s not eligible: %s (%s)",
                invoice.invoice_id, res.decision.reason.value, res.decision.detail,
            )
            return res, []

        res.level = self.tone_resolver.resolve(res.days_overdue, config.escalation_levels)
        res.channels = [c for c in config.channels if c.address_for(contact)]
        if not res.channels:
            logger.info("Contact for invoice %s has no address for %s",
                        invoice.invoice_id, [c.value for c in config.channels])
            res.outcome = InvoiceOutcome.NO_CHANNEL
            return res, []

        if dry_run:
            logger.info(
                "[dry run] would send %s reminder for invoice %s (%d days overdue) via %s",
                res.level.value, invoice.invoice_id, res.days_overdue,
                ", ".join(c.value for c in res.channels),
            )
            res.outcome = InvoiceOutcome.PLANNED
            return res, []

        previous = sum(1 for log in history if log.is_sent)
        try:
            text = self.composer.compose(
                res.level, invoice, contact,
                invoice.payment_details or config.payment_details, previous,
            )
            messages = [
                (channel, channel.address_for(contact),
                 self.composer.format_for(channel, res.level, invoice, text))
                for channel in res.channels
            ]
        except Exception as e:
            self._alert_composer_failure(e, alerts)
            raise
        return res, messages

    def _collect(
        self,
        res: InvoiceResult,
        jobs: list[tuple[Channel, Future]],
        record_failure: Callable[[str, str], None],
    ) -> InvoiceResult:
        """Wait for an invoice's deliveries and settle its outcome."""
        if not jobs:
            return res

        for channel, job in jobs:
            try:
                log = job.result()
            except Exception as e:
                logger.error("Delivery error for invoice %s on %s: %s", res.invoice_id, channel.value, e)
                record_failure(res.invoice_id, f"{channel.value}: {e}")
                continue
            res.deliveries.append(log)
            if not log.is_sent:
                record_failure(res.invoice_id, f"{channel.value}: {log.error}")

        sent = sum(1 for d in res.deliveries if d.is_sent)
        if sent == len(res.channels):
            res.outcome = InvoiceOutcome.SENT
        elif sent:
            res.outcome = InvoiceOutcome.PARTIAL
        else:
            res.outcome = InvoiceOutcome.FAILED
        return res

    def _deliver(
        self,
        invoice: Invoice,
        channel: Channel,
        address: str,
        level: EscalationLevel,
        message: OutboundMessage,
        now: datetime,
        alerts: _TickAlerts,
    ) -> ReminderLog:
        transport = self.transports.get(channel)
        if transport is None:
            raise LookupError(f"No transport configured for channel {channel.value}")

        log = self.log_store.create_log(ReminderLog(
            invoice_id=invoice.invoice_id,
            tenant_id=invoice.tenant_id,
            channel=channel,
            message=message.body,
            escalation_level=level,
            sent_at=now,
        ))

        outcome = self.dispatcher.dispatch(
            lambda: transport.send(
                address, message.body, subject=message.subject, reference=invoice.invoice_id
            ),
            label=f"{invoice.invoice_id}/{channel.value}",
        )

        log.attempts = outcome.attempts
        if outcome.success:
            log.status = ReminderStatus.SENT
            log.delivered_at = self.clock()
            log.message_id = outcome.message_id
            log.cost = outcome.cost
            logger.info(
                "Sent %s %s reminder for invoice %s (%d attempt(s))",
                level.value, channel.value, invoice.invoice_id, outcome.attempts,
            )
        else:
            log.status = ReminderStatus.FAILED
            log.error = outcome.error
            log.retryable = outcome.retryable
            logger.warning(
                "Failed %s reminder for invoice %s: %s (retryable=%s)",
                channel.value, invoice.invoice_id, outcome.error, outcome.retryable,
            )
        self.log_store.update_log(log)

        if not outcome.success:
            self._alert_delivery_failure(channel, outcome, alerts)
        return log

    # ------------------------------------------------------------------
    # Operator alerts
    # ------------------------------------------------------------------

    def _alert_composer_failure(self, error: Exception, alerts: _TickAlerts) -> None:
        text = str(error) or error.__class__.__name__
        if _mentions(text, "quota", "limit"):
            if alerts.first(("quota", COMPOSER_SERVICE)):
                self._safe_notify(self.notifier.notify_quota_exceeded, COMPOSER_SERVICE, text)
        elif alerts.first(("down", COMPOSER_SERVICE)):
            self._safe_notify(self.notifier.notify_service_down, COMPOSER_SERVICE, text)

    def _alert_delivery_failure(
        self, channel: Channel, outcome: DeliveryOutcome, alerts: _TickAlerts
    ) -> None:
        text = outcome.error or ""
        if _mentions(text, "quota", "limit"):
            if alerts.first(("quota", channel.value)):
                self._safe_notify(self.notifier.notify_quota_exceeded, channel.value, text)
        elif channel is Channel.SMS and _mentions(text, "credit", "balance"):
            if alerts.first(("credits", channel.value)):
                self._safe_notify(self._check_sms_credits)
        elif outcome.retryable:
            # retries exhausted on a transient error: the provider is unreachable
            if alerts.first(("down", channel.value)):
                self._safe_notify(self.notifier.notify_service_down, channel.value, text)

    def _check_sms_credits(self) -> None:
        if self.sms_balance is None:
            logger.info("SMS failure mentions credit but no balance check is configured")
            return
        balance = self.sms_balance()
        if should_notify("low_sms_credits", balance, self.thresholds):
            logger.warning("SMS credit balance %.2f below %.2f", balance, self.thresholds.low_sms_credits)
            self.notifier.notify_low_sms_credits(balance, self.thresholds.low_sms_credits)

    def _safe_notify(self, fn, *args) -> bool:
        try:
            fn(*args)
        except Exception:
            logger.exception("Notifier failed")
            return False
        return True


def _mentions(text: str, *words: str) -> bool:
    lowered = text.lower()
    return any(w in lowered for w in words)
