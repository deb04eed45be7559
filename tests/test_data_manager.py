"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from stock_ledger import constants, data_manager  # noqa: E402
from stock_ledger.setup_excel import SHEET_COLUMNS, create_master_workbook, run_from_config


RECEIVING = constants.SheetName.RECEIVING_RECORDS.value
BATCHES = constants.SheetName.RECEIVED_BATCHES.value
OUTGOING = constants.SheetName.OUTGOING_TRANSACTIONS.value
ALLOCATIONS = constants.SheetName.ALLOCATIONS.value


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "nested" / "deeper"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    if any((parent / "config.ini").exists() for parent in tmp_path.parents):
        pytest.skip("a config.ini exists above the temporary directory")
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Store"
    assert parser.get("Defaults", "Recorder") == "admin"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_recorder == "admin"
    assert settings.store_name == "Test Store"
    assert settings.schema_version == constants.EXPECTED_SCHEMA_VERSION


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=x.xlsx\nStoreName=A\nSchemaVersion=1.0.0")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert workbook.sheetnames == list(SHEET_COLUMNS)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_receiving_record(
        workbook, data_manager.ReceivingRecordRow(10, "2024-01-05", "CV Sumber", "admin")
    )
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[RECEIVING].iter_rows(min_row=2, values_only=True))
    assert (10, "2024-01-05", "CV Sumber", "admin") in rows


def test_refresh_workbook_discards_unsaved_rows(master_workbook_path):
    """refresh_workbook should return a freshly loaded workbook from disk."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_receiving_record(
        original, data_manager.ReceivingRecordRow(10, "2024-01-05", "CV Sumber", "admin")
    )

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not original
    assert list(data_manager.iter_receiving_records(refreshed)) == []


def test_batches_round_trip_through_disk(master_workbook_path):
    """Identifiers come back as ints and prices as Decimals after saving."""

    workbook = data_manager.open_workbook(master_workbook_path)
    row = data_manager.BatchRow(
        record_id=1_700_000_000_000,
        batch_id=1_700_000_000_001,
        item_name="Kopi",
        unit="sachet",
        quantity=10,
        unit_price=Decimal("1250.50"),
    )
    data_manager.append_batch(workbook, row)
    data_manager.save_workbook(workbook, master_workbook_path)

    rows = list(data_manager.iter_batches(data_manager.open_workbook(master_workbook_path)))
    assert rows == [row]
    assert isinstance(rows[0].record_id, int)


def test_allocations_round_trip_through_disk(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    row = data_manager.AllocationRow(
        item_id=31,
        transaction_id=30,
        item_name="Kopi",
        unit="sachet",
        quantity=4,
        unit_price=Decimal("100"),
        source_record_id=10,
        source_batch_id=11,
    )
    data_manager.append_allocation(workbook, row)
    data_manager.save_workbook(workbook, master_workbook_path)

    rows = list(data_manager.iter_allocations(data_manager.open_workbook(master_workbook_path)))
    assert rows == [row]


def test_iter_outgoing_transactions_yields_rows(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    workbook[OUTGOING].append(
        [30, "2024-01-05T10:00:00+00:00", "Warung", constants.TransactionKind.SALE.value, "admin"]
    )

    rows = list(data_manager.iter_outgoing_transactions(workbook))
    assert rows == [
        data_manager.OutgoingTransactionRow(
            transaction_id=30,
            created_at_iso="2024-01-05T10:00:00+00:00",
            destination="Warung",
            kind="Penjualan",
            recorded_by="admin",
        )
    ]


def test_iter_sheet_skips_blank_rows(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[RECEIVING]
    sheet.append([None, None, None, None])
    sheet.append([10, "2024-01-05", "CV Sumber", "admin"])

    rows = list(data_manager.iter_receiving_records(workbook))
    assert [row.record_id for row in rows] == [10]


def test_delete_rows_removes_every_match(master_workbook_path):
    """delete_rows should drop all rows sharing the key and keep the others."""

    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[BATCHES]
    sheet.append([10, 11, "Kopi", "sachet", 10, 100])
    sheet.append([20, 21, "Gula", "kg", 1, 15000])
    sheet.append([10, 12, "Teh", "dus", 2, 5000])

    removed = data_manager.delete_rows(workbook, BATCHES, "RecordID", 10)

    assert removed == 2
    assert [row.batch_id for row in data_manager.iter_batches(workbook)] == [21]


def test_delete_rows_without_match_is_noop(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert data_manager.delete_rows(workbook, BATCHES, "RecordID", 10) == 0


def test_serialize_allocation_preserves_order():
    """serialize_allocation should follow the column ordering defined by setup."""

    record = data_manager.AllocationRow(31, 30, "Kopi", "sachet", 4, Decimal("100"), 10, 11)
    assert data_manager.serialize_allocation(record) == [31, 30, "Kopi", "sachet", 4, Decimal("100"), 10, 11]
    assert len(data_manager.serialize_allocation(record)) == len(SHEET_COLUMNS[ALLOCATIONS])


def test_serialize_receiving_record_preserves_order():
    record = data_manager.ReceivingRecordRow(10, "2024-01-05", "CV Sumber", "admin")
    assert data_manager.serialize_receiving_record(record) == [10, "2024-01-05", "CV Sumber", "admin"]


def test_deserialize_receiving_record_accepts_excel_dates():
    """Hand-edited date cells arrive as datetimes and are reduced to dates."""

    record = data_manager.deserialize_receiving_record(
        [10.0, datetime(2024, 1, 5, 0, 0), "CV Sumber", "admin"]
    )
    assert record.record_id == 10
    assert record.received_on_iso == "2024-01-05"


def test_deserialize_batch_normalizes_numbers():
    record = data_manager.deserialize_batch([10.0, "11", "Kopi", "sachet", 10.0, 1250.5])
    assert (record.record_id, record.batch_id, record.quantity) == (10, 11, 10)
    assert record.unit_price == Decimal("1250.5")


def test_create_master_workbook_refuses_overwrite(tmp_path):
    destination = create_master_workbook(tmp_path / "book.xlsx")
    with pytest.raises(FileExistsError):
        create_master_workbook(destination)


def test_create_master_workbook_writes_headers(tmp_path):
    destination = create_master_workbook(tmp_path / "book.xlsx")
    workbook = openpyxl.load_workbook(destination)
    for sheet_name, columns in SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[sheet_name][1]]
        assert header == list(columns)


def test_run_from_config_uses_data_file(config_factory):
    bundle = config_factory(make_relative=True)
    bundle.workbook_path.unlink()

    created = run_from_config(bundle.config_path)
    assert created == bundle.workbook_path.resolve()
    assert created.exists()
