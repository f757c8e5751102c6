"""Invoice Reminder Engine -- Command-line entry point.

Wires the configured collaborators together and either runs a single
reminder tick or keeps running on a schedule:

    1. Load configuration (config.yaml or defaults)
    2. Open the invoice workbook and the reminder log database
    3. Build composer, transports, notifier and budget checker
    4. Run one tick (default), or start the scheduler (--serve)

Usage::

    # One tick with config.yaml at the project root:
    python -m reminder_engine.main

    # Custom config / workbook / database:
    python -m reminder_engine.main --config custom.yaml --xlsx data/invoices.xlsx --db out.db

    # Evaluate only, send nothing:
    python -m reminder_engine.main --dry-run

    # Keep running every scheduler.interval_hours:
    python -m reminder_engine.main --serve
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .composer import TemplateComposer
from .config import ConfigError, EngineConfig, get_config
from .dispatcher import RetryingDispatcher, RetryPolicy
from .eligibility import EligibilityEvaluator
from .log_store import LogBudgetChecker, SqliteReminderLogStore
from .models import Channel
from .notifier import EmailNotifier, LoggingNotifier
from .orchestrator import ReminderOrchestrator, StaticConfigSource
from .data_loader import WorkbookInvoiceSource
from .scheduler import ReminderScheduler
from .transports import build_transports

logger = logging.getLogger(__name__)


def build_orchestrator(
    cfg: EngineConfig,
    xlsx_path: Optional[str] = None,
    db_path: Optional[str] = None,
    dry_run: bool = False,
) -> ReminderOrchestrator:
    """Assemble a ReminderOrchestrator from configuration.

    Raises:
        FileNotFoundError: the invoice workbook does not exist.
    """
    workbook = Path(xlsx_path) if xlsx_path else cfg.data_files.resolve(cfg.data_files.invoices_xlsx)
    if not workbook.exists():
        raise FileNotFoundError(f"Invoice workbook not found: {workbook}")

    source = WorkbookInvoiceSource(workbook)
    store = SqliteReminderLogStore(Path(db_path) if db_path else cfg.storage.resolve())
    budget = LogBudgetChecker(store, cfg.budget.monthly_limits)

    composer = TemplateComposer(
        settings=cfg.composer,
        sender_name=cfg.sender.name,
        cache=True,
    )
    transports = build_transports(cfg, composer)

    alerts = cfg.notifications
    if alerts.use_email:
        notifier = EmailNotifier(
            transports[Channel.EMAIL], alerts.recipient_email, history_limit=alerts.history_limit
        )
    else:
        notifier = LoggingNotifier(history_limit=alerts.history_limit)

    sms = transports.get(Channel.SMS)

    return ReminderOrchestrator(
        config_source=StaticConfigSource(cfg.tenants),
        invoice_source=source,
        contact_store=source,
        log_store=store,
        transports=transports,
        composer=composer,
        notifier=notifier,
        evaluator=EligibilityEvaluator(budget=budget),
        dispatcher=RetryingDispatcher(RetryPolicy.from_settings(cfg.retry)),
        sms_balance=sms.get_balance if sms is not None else None,
        max_workers=cfg.scheduler.max_workers,
        failure_threshold=cfg.scheduler.failure_threshold,
        low_sms_credit_threshold=alerts.low_sms_credit_threshold,
        dry_run=dry_run,
    )


def serve(orchestrator: ReminderOrchestrator, cfg: EngineConfig) -> int:
    """Run the scheduler until interrupted."""
    scheduler = ReminderScheduler(
        orchestrator,
        interval_seconds=cfg.scheduler.interval_seconds,
        run_immediately=cfg.scheduler.run_immediately,
    )

    def _handle_signal(signum, _frame):
        logger.info("Received signal %s; shutting down", signum)
        scheduler.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    scheduler.start()
    try:
        while not scheduler.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        scheduler.stop()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    parser = argparse.ArgumentParser(
        description="Invoice Reminder Engine - send overdue payment reminders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m reminder_engine.main\n"
            "  python -m reminder_engine.main --xlsx data/invoices.xlsx --dry-run\n"
            "  python -m reminder_engine.main --serve --verbose\n"
        ),
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config.yaml (default: project root config.yaml)")
    parser.add_argument("--xlsx", type=str, default=None,
                        help="Path to the invoice workbook (overrides config)")
    parser.add_argument("--db", type=str, default=None,
                        help="Path to the reminder log database (overrides config)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Evaluate and resolve tone without sending or logging")
    parser.add_argument("--serve", action="store_true",
                        help="Keep running and tick every scheduler.interval_hours")
    parser.add_argument("--json", action="store_true",
                        help="Print the tick result as JSON")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose (DEBUG) logging")

    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        cfg = get_config(args.config)
        orchestrator = build_orchestrator(cfg, args.xlsx, args.db, dry_run=args.dry_run)
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1

    if args.serve:
        return serve(orchestrator, cfg)

    result = orchestrator.run_tick()
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"\n{result.summary()}")
    return 1 if result.error else 0


if __name__ == "__main__":
    sys.exit(main())
