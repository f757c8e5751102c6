"""Tests for reminder_engine.data_loader -- XLSX parsing and data loading.

Covers:
- Loading invoices and contacts from a generated workbook
- Header aliases and column order independence
- Field parsing and type coercion (dates, amounts, booleans)
- Overdue filtering and contact lookup in WorkbookInvoiceSource
- Error handling (missing file, missing sheet, missing columns)
"""

from datetime import date, datetime
from pathlib import Path

import openpyxl
import pytest

from reminder_engine.data_loader import (
    LoadResult,
    WorkbookInvoiceSource,
    _parse_bool,
    _parse_currency,
    _parse_date,
    load_workbook,
)

from fakes import NOW


# ============================================================================
# Workbook builder
# ============================================================================

INVOICE_ROWS = [
    ["Invoice ID", "Invoice Number", "Client Name", "Due Date", "Amount", "Status", "Tenant", "UPI ID"],
    ["INV-1", "2026-001", "Asha Traders", date(2026, 3, 1), 1510, "pending", None, "asha@upi"],
    ["INV-2", "2026-002", "Bela Foods", "2026-03-20", "₹2,000.50", "Pending", "acme", None],
    ["INV-3", "2026-003", "Chai Co", datetime(2026, 2, 1, 15, 30), "(100)", "paid", None, None],
    [None, None, None, None, None, None, None, None],
    ["INV-4", None, "Dosa Hut", "15/02/2026", 99.5, None, None, None],
    ["INV-5", "2026-005", "No Due", None, 10, "pending", None, None],
]

CONTACT_ROWS = [
    ["Client Email", "Invoice ID", "Name", "Phone", "Opted Out"],
    ["ap@asha.example", "INV-1", "Asha Mehta", None, None],
    ["billing@bela.example", "INV-2", "Bela", "98765 43210", "yes"],
    [None, "INV-3", "Chai", None, None],
    [None, "INV-4", "Dosa", 9123456789, False],
]


def _write_workbook(path: Path, invoices=INVOICE_ROWS, contacts=CONTACT_ROWS) -> Path:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Invoices"
    for row in invoices:
        ws.append(row)
    if contacts is not None:
        cs = wb.create_sheet("Contacts")
        for row in contacts:
            cs.append(row)
    wb.save(path)
    return path


@pytest.fixture
def workbook(tmp_path) -> Path:
    return _write_workbook(tmp_path / "invoices.xlsx")


# ============================================================================
# Full Workbook Load
# ============================================================================

class TestLoadWorkbook:

    @pytest.fixture
    def result(self, workbook) -> LoadResult:
        return load_workbook(workbook)

    def test_invoice_count(self, result):
        assert [i.invoice_id for i in result.invoices] == ["INV-1", "INV-2", "INV-3", "INV-4"]

    def test_empty_rows_skipped(self, result):
        assert result.empty_rows_skipped == 1
        assert result.total_rows_scanned == 6

    def test_missing_due_date_warns(self, result):
        assert any("INV-5" in w for w in result.warnings)

    def test_invoice_fields(self, result):
        inv = result.invoices[0]
        assert inv.invoice_number == "2026-001"
        assert inv.client_name == "Asha Traders"
        assert inv.due_date == date(2026, 3, 1)
        assert inv.amount == 1510.0
        assert inv.tenant_id == "default"
        assert inv.payment_details.upi_id == "asha@upi"

    def test_string_amount_and_tenant(self, result):
        inv = result.invoices[1]
        assert inv.amount == pytest.approx(2000.50)
        assert inv.status == "pending"
        assert inv.tenant_id == "acme"
        assert inv.payment_details is None

    def test_datetime_due_keeps_time(self, result):
        assert result.invoices[2].due_date == datetime(2026, 2, 1, 15, 30)
        assert result.invoices[2].amount == -100.0

    def test_invoice_number_defaults_to_id(self, result):
        inv = result.invoices[3]
        assert inv.invoice_number == "INV-4"
        assert inv.due_date == date(2026, 2, 15)

    def test_open_invoices_exclude_paid(self, result):
        assert [i.invoice_id for i in result.open_invoices] == ["INV-1", "INV-2", "INV-4"]
        assert result.total_outstanding == pytest.approx(1510 + 2000.50 + 99.5)

    def test_contacts(self, result):
        by_id = result.contacts_by_invoice
        assert set(by_id) == {"INV-1", "INV-2", "INV-4"}
        assert by_id["INV-1"].email == "ap@asha.example"
        assert by_id["INV-1"].phone is None
        assert by_id["INV-2"].opted_out is True
        assert by_id["INV-2"].phone == "98765 43210"
        assert by_id["INV-4"].phone == "9123456789"
        assert by_id["INV-4"].email is None

    def test_contact_without_address_warns(self, result):
        assert any("INV-3" in w and "no email or phone" in w for w in result.warnings)

    def test_print_summary(self, result, capsys):
        result.print_summary()
        out = capsys.readouterr().out
        assert "Open invoices     : 3" in out
        assert "No contact for    : INV-3" in out


class TestMissingPieces:

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workbook(tmp_path / "missing.xlsx")

    def test_missing_invoices_sheet(self, tmp_path):
        path = tmp_path / "wb.xlsx"
        wb = openpyxl.Workbook()
        wb.active.title = "Something Else"
        wb.save(path)
        with pytest.raises(ValueError, match="Invoices"):
            load_workbook(path)

    def test_missing_required_column(self, tmp_path):
        path = _write_workbook(tmp_path / "wb.xlsx", invoices=[["Invoice ID", "Amount"], ["INV-1", 5]])
        with pytest.raises(ValueError, match="due_date"):
            load_workbook(path)

    def test_missing_contacts_sheet(self, tmp_path):
        path = _write_workbook(tmp_path / "wb.xlsx", contacts=None)
        result = load_workbook(path)
        assert result.contacts == []
        assert any("Contacts" in w for w in result.warnings)

    def test_bytes_buffer(self, workbook):
        with open(workbook, "rb") as fh:
            result = load_workbook(fh)
        assert result.source_file is None
        assert len(result.invoices) == 4


# ============================================================================
# Invoice source
# ============================================================================

class TestWorkbookInvoiceSource:

    def test_lists_open_overdue_invoices(self, workbook):
        source = WorkbookInvoiceSource(workbook, clock=lambda: NOW)
        assert [i.invoice_id for i in source.list_overdue_invoices()] == ["INV-1", "INV-4"]

    def test_contact_lookup(self, workbook):
        source = WorkbookInvoiceSource(workbook, clock=lambda: NOW)
        source.list_overdue_invoices()
        assert source.find_contact_by_invoice_id("INV-1").client_name == "Asha Mehta"
        assert source.find_contact_by_invoice_id("INV-3") is None

    def test_lookup_loads_lazily(self, workbook):
        source = WorkbookInvoiceSource(workbook, clock=lambda: NOW)
        assert source.find_contact_by_invoice_id("INV-2").email == "billing@bela.example"

    def test_picks_up_edits_between_calls(self, tmp_path):
        path = _write_workbook(tmp_path / "wb.xlsx")
        source = WorkbookInvoiceSource(path, clock=lambda: NOW)
        assert len(source.list_overdue_invoices()) == 2
        rows = INVOICE_ROWS[:2] + [["INV-9", "9", "New", date(2026, 3, 2), 1, "pending", None, None]]
        _write_workbook(path, invoices=rows)
        assert [i.invoice_id for i in source.list_overdue_invoices()] == ["INV-1", "INV-9"]


# ============================================================================
# Cleaning helpers
# ============================================================================

class TestCleaning:

    @pytest.mark.parametrize("val,expected", [
        (None, 0.0),
        (12, 12.0),
        ("$1,234.56", 1234.56),
        ("₹500", 500.0),
        ("($50.00)", -50.0),
        ("#N/A", 0.0),
        ("abc", 0.0),
    ])
    def test_currency(self, val, expected):
        assert _parse_currency(val) == pytest.approx(expected)

    @pytest.mark.parametrize("val,expected", [
        (None, False), (True, True), ("TRUE", True), ("yes", True),
        (1, True), ("no", False), (0, False),
    ])
    def test_bool(self, val, expected):
        assert _parse_bool(val) is expected

    @pytest.mark.parametrize("val,expected", [
        ("2026-03-01", date(2026, 3, 1)),
        ("01/03/2026", date(2026, 3, 1)),
        ("Mar 01, 2026", date(2026, 3, 1)),
        ("March 1, 2026", date(2026, 3, 1)),
        ("2026-03-01T14:00:00", datetime(2026, 3, 1, 14, 0)),
        (46082, date(2026, 3, 1)),
        (datetime(2026, 3, 1), date(2026, 3, 1)),
    ])
    def test_date(self, val, expected):
        assert _parse_date(val, "cell", []) == expected

    def test_unrecognised_date_warns(self):
        warnings = []
        assert _parse_date("someday", "row 3", warnings) is None
        assert warnings == ["row 3: unrecognised date 'someday'"]
