"""Invoice Reminder Engine - XLSX Data Loader.

Reads invoices and client contacts from a workbook and returns typed
``Invoice`` and ``Contact`` objects for the orchestrator.

Sheet layout
~~~~~~~~~~~~

+--------------+--------------------------------------------------------+
| Sheet        | Columns (matched by header text, any order)            |
+==============+========================================================+
| ``Invoices`` | Invoice ID, Invoice Number, Client Name, Due Date,     |
|              | Amount, Status, Tenant, UPI ID, Bank Details, PayPal   |
| ``Contacts`` | Invoice ID, Client Name, Email, Phone, Opted Out       |
+--------------+--------------------------------------------------------+

Usage::

    from reminder_engine.data_loader import WorkbookInvoiceSource

    source = WorkbookInvoiceSource("data/invoices.xlsx")
    for invoice in source.list_overdue_invoices():
        contact = source.find_contact_by_invoice_id(invoice.invoice_id)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import IO, Callable, Optional, Union

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from .models import DEFAULT_TENANT, Contact, Invoice, PaymentDetails

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

INVOICES_SHEET = "Invoices"
CONTACTS_SHEET = "Contacts"

# Column header aliases -- mapped by *header text* so column order in the
# workbook does not matter.
_INVOICE_HEADERS: dict[str, list[str]] = {
    "invoice_id":     ["Invoice ID", "ID"],
    "invoice_number": ["Invoice Number", "Invoice No", "Invoice #"],
    "client_name":    ["Client Name", "Client", "Customer"],
    "due_date":       ["Due Date"],
    "amount":         ["Amount", "Total Due", "Amount Due"],
    "status":         ["Status"],
    "tenant_id":      ["Tenant", "Tenant ID", "Account"],
    "upi_id":         ["UPI ID", "UPI"],
    "bank_details":   ["Bank Details"],
    "paypal_email":   ["PayPal", "PayPal Email"],
}

_CONTACT_HEADERS: dict[str, list[str]] = {
    "invoice_id":  ["Invoice ID", "ID"],
    "client_name": ["Client Name", "Client", "Name"],
    "email":       ["Email", "Client Email"],
    "phone":       ["Phone", "Client Phone", "Mobile"],
    "opted_out":   ["Opted Out", "Opt Out", "Unsubscribed"],
}

# Cell values that should be treated as null / unknown.
_NULL_SIGNALS: set[str | None] = {"", "#N/A", "N/A", "#REF!", None}

# Invoice statuses that never receive reminders.
_CLOSED_STATUSES = {"paid", "cancelled", "canceled", "void", "draft"}


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class LoadResult:
    """Aggregated output from :func:`load_workbook`."""

    invoices: list[Invoice] = field(default_factory=list)
    contacts: list[Contact] = field(default_factory=list)
    contacts_by_invoice: dict[str, Contact] = field(default_factory=dict)

    source_file: str | None = None
    total_rows_scanned: int = 0
    empty_rows_skipped: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def open_invoices(self) -> list[Invoice]:
        return [i for i in self.invoices if i.status.lower() not in _CLOSED_STATUSES]

    @property
    def total_outstanding(self) -> float:
        return sum(i.amount for i in self.open_invoices)

    def print_summary(self) -> None:
        """Print a human-readable summary of what was loaded."""
        missing = [i.invoice_id for i in self.invoices if i.invoice_id not in self.contacts_by_invoice]
        print("=" * 65)
        print("  Invoice Reminder Engine -- Data Load Summary")
        print("=" * 65)
        print(f"  Source file       : {self.source_file or '(bytes buffer)'}")
        print(f"  Rows scanned      : {self.total_rows_scanned}")
        print(f"  Empty rows skipped: {self.empty_rows_skipped}")
        print("-" * 65)
        print(f"  Total invoices    : {len(self.invoices)}")
        print(f"  Open invoices     : {len(self.open_invoices)}")
        print(f"  Outstanding       : {self.total_outstanding:,.2f}")
        print(f"  Contacts loaded   : {len(self.contacts)}")
        if missing:
            print(f"  No contact for    : {', '.join(missing)}")
        if self.warnings:
            print("-" * 65)
            for w in self.warnings:
                print(f"  ! {w}")
        print("=" * 65)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_workbook(source: Union[str, Path, IO[bytes]]) -> LoadResult:
    """Load invoices and contacts from a reminder workbook.

    Raises:
        FileNotFoundError: ``source`` is a path that does not exist.
        ValueError: the ``Invoices`` sheet is missing.
    """
    result = LoadResult()
    wb = _open_workbook(source)
    if isinstance(source, (str, Path)):
        result.source_file = str(source)

    try:
        if INVOICES_SHEET not in wb.sheetnames:
            raise ValueError(
                f"Sheet '{INVOICES_SHEET}' not found.  Available: {wb.sheetnames}"
            )
        invoices, meta = _parse_invoices(wb[INVOICES_SHEET])
        result.invoices = invoices
        result.total_rows_scanned = meta["rows_scanned"]
        result.empty_rows_skipped = meta["empty_rows"]
        result.warnings.extend(meta["warnings"])

        if CONTACTS_SHEET in wb.sheetnames:
            contacts, warnings = _parse_contacts(wb[CONTACTS_SHEET])
            result.contacts = contacts
            result.warnings.extend(warnings)
            result.contacts_by_invoice = {c.invoice_id: c for c in contacts}
        else:
            result.warnings.append(
                f"Sheet '{CONTACTS_SHEET}' not found -- contact data unavailable"
            )
    finally:
        wb.close()

    logger.info(
        "Loaded %d invoices and %d contacts from %s",
        len(result.invoices), len(result.contacts), result.source_file or "buffer",
    )
    return result


class WorkbookInvoiceSource:
    """Invoice source and contact store backed by one workbook.

    The file is re-read on every ``list_overdue_invoices`` call so edits
    between ticks are picked up.  Contact lookups use the most recent load.
    """

    def __init__(self, path: Union[str, Path], clock: Optional[Callable[[], datetime]] = None):
        self.path = Path(path)
        self._clock = clock or datetime.now
        self._lock = threading.Lock()
        self._last: Optional[LoadResult] = None

    def reload(self) -> LoadResult:
        result = load_workbook(self.path)
        with self._lock:
            self._last = result
        return result

    def list_overdue_invoices(self) -> list[Invoice]:
        now = self._clock()
        result = self.reload()
        return [inv for inv in result.open_invoices if inv.due_at < now]

    def find_contact_by_invoice_id(self, invoice_id: str) -> Optional[Contact]:
        with self._lock:
            last = self._last
        if last is None:
            last = self.reload()
        return last.contacts_by_invoice.get(invoice_id)


# ---------------------------------------------------------------------------
# Workbook opening
# ---------------------------------------------------------------------------

def _open_workbook(source: Union[str, Path, IO[bytes]]) -> Workbook:
    """Open an openpyxl Workbook from a file path or bytes buffer."""
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"XLSX file not found: {path}")
        logger.debug("Opening XLSX file: %s", path)
        return openpyxl.load_workbook(path, data_only=True, read_only=False)

    logger.debug("Opening XLSX from bytes buffer")
    return openpyxl.load_workbook(source, data_only=True, read_only=False)


# ---------------------------------------------------------------------------
# Sheet parsing
# ---------------------------------------------------------------------------

def _parse_invoices(ws: Worksheet) -> tuple[list[Invoice], dict]:
    header_map = _build_header_map(ws, _INVOICE_HEADERS)
    missing = [h for h in ("invoice_id", "due_date") if h not in header_map]
    if missing:
        raise ValueError(f"Sheet '{ws.title}' is missing required columns: {missing}")

    invoices: list[Invoice] = []
    meta = {"rows_scanned": 0, "empty_rows": 0, "warnings": []}

    for row_idx, row in enumerate(ws.iter_rows(min_row=2), start=2):
        meta["rows_scanned"] += 1
        invoice_id = _clean_str(_cell_value(row, header_map, "invoice_id"))
        if not invoice_id:
            meta["empty_rows"] += 1
            continue

        due_date = _parse_date(
            _cell_value(row, header_map, "due_date"), f"row {row_idx}", meta["warnings"]
        )
        if due_date is None:
            meta["warnings"].append(f"row {row_idx}: invoice {invoice_id} has no due date; skipped")
            continue

        details = PaymentDetails(
            upi_id=_clean_str(_cell_value(row, header_map, "upi_id")),
            bank_details=_clean_str(_cell_value(row, header_map, "bank_details")),
            paypal_email=_clean_str(_cell_value(row, header_map, "paypal_email")),
        )
        invoices.append(Invoice(
            invoice_id=invoice_id,
            invoice_number=_clean_str(_cell_value(row, header_map, "invoice_number")) or invoice_id,
            due_date=due_date,
            amount=_parse_currency(_cell_value(row, header_map, "amount")),
            status=(_clean_str(_cell_value(row, header_map, "status")) or "pending").lower(),
            tenant_id=_clean_str(_cell_value(row, header_map, "tenant_id")) or DEFAULT_TENANT,
            client_name=_clean_str(_cell_value(row, header_map, "client_name")),
            payment_details=None if details.is_empty else details,
        ))

    return invoices, meta


def _parse_contacts(ws: Worksheet) -> tuple[list[Contact], list[str]]:
    header_map = _build_header_map(ws, _CONTACT_HEADERS)
    warnings: list[str] = []
    if "invoice_id" not in header_map:
        warnings.append(f"Sheet '{ws.title}' has no Invoice ID column -- contacts skipped")
        return [], warnings

    contacts: list[Contact] = []
    for row_idx, row in enumerate(ws.iter_rows(min_row=2), start=2):
        invoice_id = _clean_str(_cell_value(row, header_map, "invoice_id"))
        if not invoice_id:
            continue
        email = _clean_str_or_none(_cell_value(row, header_map, "email"))
        phone = _clean_str_or_none(_cell_value(row, header_map, "phone"))
        if email is None and phone is None:
            warnings.append(f"row {row_idx}: contact for {invoice_id} has no email or phone")
            continue
        contacts.append(Contact(
            invoice_id=invoice_id,
            client_name=_clean_str(_cell_value(row, header_map, "client_name")),
            email=email,
            phone=phone,
            opted_out=_parse_bool(_cell_value(row, header_map, "opted_out")),
        ))
    return contacts, warnings


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------

def _build_header_map(
    ws: Worksheet,
    header_spec: dict[str, list[str]],
) -> dict[str, int]:
    """Map logical field names to 0-based column indices.

    Reads row 1 of the worksheet and matches each header cell against
    the known aliases in *header_spec*.
    """
    header_map: dict[str, int] = {}

    row1_values: list[str | None] = []
    for cell in ws[1]:
        val = cell.value
        row1_values.append(str(val).strip().lower() if val is not None else None)

    for logical_name, aliases in header_spec.items():
        wanted = {a.lower() for a in aliases}
        for idx, header_text in enumerate(row1_values):
            if header_text in wanted:
                header_map[logical_name] = idx
                break

    logger.debug("Header map for %s (%d/%d): %s",
                 ws.title, len(header_map), len(header_spec), list(header_map))
    return header_map


def _cell_value(row, header_map: dict[str, int], field_name: str):
    """Read a cell by logical field name; None when absent."""
    idx = header_map.get(field_name)
    if idx is None or idx >= len(row):
        return None
    return row[idx].value


# ---------------------------------------------------------------------------
# Data cleaning / type coercion helpers
# ---------------------------------------------------------------------------

def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    s = str(val).strip()
    return "" if s in _NULL_SIGNALS else s


def _clean_str_or_none(val) -> str | None:
    s = _clean_str(val)
    return s or None


def _parse_bool(val) -> bool:
    """Handles ``True``, ``"TRUE"``, ``"yes"``, ``1``."""
    if val is None:
        return False
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in ("true", "1", "yes", "y")


def _parse_currency(val, default: float = 0.0) -> float:
    """Parse an amount cell: numbers, ``"₹1,234.56"``, ``"($500.00)"``."""
    if val is None:
        return default
    if isinstance(val, (int, float)):
        return float(val)

    s = str(val).strip()
    if not s or s in _NULL_SIGNALS:
        return default

    negative = s.startswith("(") and s.endswith(")")
    if negative:
        s = s[1:-1]
    s = s.replace("$", "").replace("₹", "").replace(",", "").strip()
    try:
        amount = float(s)
    except ValueError:
        return default
    return -amount if negative else amount


def _parse_date(val, context: str, warnings: list[str]) -> date | datetime | None:
    """Parse a due-date cell.

    Datetime cells keep their time of day; date strings become dates.
    Excel serial numbers are converted from the 1899-12-30 epoch.
    """
    if val is None:
        return None
    if isinstance(val, datetime):
        if val.hour == 0 and val.minute == 0 and val.second == 0:
            return val.date()
        return val
    if isinstance(val, date):
        return val

    if isinstance(val, (int, float)) and not isinstance(val, bool):
        serial = int(val)
        if 20000 < serial < 80000:
            return (datetime(1899, 12, 30) + timedelta(days=serial)).date()

    s = str(val).strip()
    if s in _NULL_SIGNALS:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%Y-%m-%dT%H:%M:%S", "%b %d, %Y", "%B %d, %Y"):
        try:
            parsed = datetime.strptime(s, fmt)
        except ValueError:
            continue
        return parsed if "T" in fmt else parsed.date()

    warnings.append(f"{context}: unrecognised date {s!r}")
    return None
