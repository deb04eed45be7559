"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or deleting
   rows for goods-in notas, their batches, goods-out notas, and allocations.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
RECEIVING_RECORDS_SHEET = SheetName.RECEIVING_RECORDS.value
RECEIVED_BATCHES_SHEET = SheetName.RECEIVED_BATCHES.value
OUTGOING_TRANSACTIONS_SHEET = SheetName.OUTGOING_TRANSACTIONS.value
ALLOCATIONS_SHEET = SheetName.ALLOCATIONS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_recorder: str


@dataclass(frozen=True)
class ReceivingRecordRow:
    """In-memory view of a row from the ``ReceivingRecords`` sheet."""

    record_id: int
    received_on_iso: str
    supplier: str
    recorded_by: str


@dataclass(frozen=True)
class BatchRow:
    """In-memory view of a row from the ``ReceivedBatches`` sheet."""

    record_id: int
    batch_id: int
    item_name: str
    unit: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class OutgoingTransactionRow:
    """In-memory view of a row from the ``OutgoingTransactions`` sheet."""

    transaction_id: int
    created_at_iso: str
    destination: str
    kind: str
    recorded_by: str


@dataclass(frozen=True)
class AllocationRow:
    """In-memory view of a row from the ``Allocations`` sheet."""

    item_id: int
    transaction_id: int
    item_name: str
    unit: str
    quantity: int
    unit_price: Decimal
    source_record_id: int
    source_batch_id: int


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file. The path is *not* resolved or validated when supplied
            explicitly.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Callers receive
    the ``ConfigParser`` even if individual sections are missing; validation of
    required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The function validates that all required options are present under the
    expected sections and normalizes the configured data file path. Relative
    paths are expanded against ``base_path`` when provided, or against the
    current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container with resolved data file
            path, store metadata, schema version, and default recorder.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_recorder = parser.get("Defaults", "Recorder")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_recorder=default_recorder,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_receiving_records(workbook: Workbook) -> Iterable[ReceivingRecordRow]:
    """Iterate over goods-in nota headers stored on ``ReceivingRecords``."""

    for raw in _iter_sheet(workbook, RECEIVING_RECORDS_SHEET):
        yield deserialize_receiving_record(raw)


def iter_batches(workbook: Workbook) -> Iterable[BatchRow]:
    """Iterate over received batch lines stored on ``ReceivedBatches``.

    Rows are yielded in sheet order, which is the order the lines were listed
    on their nota. The business layer relies on that order to rebuild each
    record's batch sequence.
    """

    for raw in _iter_sheet(workbook, RECEIVED_BATCHES_SHEET):
        yield deserialize_batch(raw)


def iter_outgoing_transactions(workbook: Workbook) -> Iterable[OutgoingTransactionRow]:
    """Iterate over goods-out nota headers stored on ``OutgoingTransactions``."""

    for raw in _iter_sheet(workbook, OUTGOING_TRANSACTIONS_SHEET):
        yield deserialize_outgoing_transaction(raw)


def iter_allocations(workbook: Workbook) -> Iterable[AllocationRow]:
    """Iterate over allocation lines stored on ``Allocations``."""

    for raw in _iter_sheet(workbook, ALLOCATIONS_SHEET):
        yield deserialize_allocation(raw)


def append_receiving_record(workbook: Workbook, record: ReceivingRecordRow) -> None:
    workbook[RECEIVING_RECORDS_SHEET].append(serialize_receiving_record(record))


def append_batch(workbook: Workbook, record: BatchRow) -> None:
    workbook[RECEIVED_BATCHES_SHEET].append(serialize_batch(record))


def append_outgoing_transaction(workbook: Workbook, record: OutgoingTransactionRow) -> None:
    workbook[OUTGOING_TRANSACTIONS_SHEET].append(serialize_outgoing_transaction(record))


def append_allocation(workbook: Workbook, record: AllocationRow) -> None:
    """Append an allocation line to the ``Allocations`` worksheet.

    Unit prices remain :class:`~decimal.Decimal` instances after
    serialization, so the frozen FIFO price is stored without float rounding.
    """

    workbook[ALLOCATIONS_SHEET].append(serialize_allocation(record))


def _header_map(workbook: Workbook, sheet_name: str) -> dict[object, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def delete_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> int:
    """Delete every row whose ``key_column`` equals ``key_value``.

    Rows are removed bottom-up so earlier indices stay valid while deleting.

    Returns:
        int: Number of rows removed.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == key_value
    ]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    if matches:
        log.debug("Deleted %d row(s) from '%s' where %s=%s", len(matches), sheet_name, key_column, key_value)
    return len(matches)


def serialize_receiving_record(record: ReceivingRecordRow) -> list[object]:
    return [record.record_id, record.received_on_iso, record.supplier, record.recorded_by]


def serialize_batch(record: BatchRow) -> list[object]:
    return [
        record.record_id,
        record.batch_id,
        record.item_name,
        record.unit,
        record.quantity,
        record.unit_price,
    ]


def serialize_outgoing_transaction(record: OutgoingTransactionRow) -> list[object]:
    return [
        record.transaction_id,
        record.created_at_iso,
        record.destination,
        record.kind,
        record.recorded_by,
    ]


def serialize_allocation(record: AllocationRow) -> list[object]:
    """Convert an allocation dataclass into the ``Allocations`` column order."""

    return [
        record.item_id,
        record.transaction_id,
        record.item_name,
        record.unit,
        record.quantity,
        record.unit_price,
        record.source_record_id,
        record.source_batch_id,
    ]


def _to_int(raw: object) -> int:
    return int(Decimal(str(raw)))


def _to_decimal(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal("0")


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def deserialize_receiving_record(raw_row: Sequence[object]) -> ReceivingRecordRow:
    """Convert a raw worksheet row into a :class:`ReceivingRecordRow`.

    Identifiers come back from Excel as ``int`` or ``float`` depending on how
    the cell was last written, so they are normalized through ``Decimal``.
    Dates are kept as ISO text; openpyxl may also hand back ``datetime``
    values for hand-edited cells, which are reduced to their date part.
    """

    record_id, received_on, supplier, recorded_by = raw_row[:4]
    if hasattr(received_on, "date") and callable(received_on.date):
        received_on = received_on.date()
    received_on_iso = received_on.isoformat() if hasattr(received_on, "isoformat") else _to_text(received_on)
    return ReceivingRecordRow(
        record_id=_to_int(record_id),
        received_on_iso=received_on_iso,
        supplier=_to_text(supplier),
        recorded_by=_to_text(recorded_by),
    )


def deserialize_batch(raw_row: Sequence[object]) -> BatchRow:
    record_id, batch_id, item_name, unit, quantity, unit_price = raw_row[:6]
    return BatchRow(
        record_id=_to_int(record_id),
        batch_id=_to_int(batch_id),
        item_name=_to_text(item_name),
        unit=_to_text(unit),
        quantity=_to_int(quantity),
        unit_price=_to_decimal(unit_price),
    )


def deserialize_outgoing_transaction(raw_row: Sequence[object]) -> OutgoingTransactionRow:
    transaction_id, created_at, destination, kind, recorded_by = raw_row[:5]
    return OutgoingTransactionRow(
        transaction_id=_to_int(transaction_id),
        created_at_iso=_to_text(created_at),
        destination=_to_text(destination),
        kind=_to_text(kind),
        recorded_by=_to_text(recorded_by),
    )


def deserialize_allocation(raw_row: Sequence[object]) -> AllocationRow:
    """Convert a raw worksheet row into a strongly typed allocation record.

    Args:
        raw_row (Sequence[object]): Raw cell values from the ``Allocations``
            sheet in their worksheet order.

    Returns:
        AllocationRow: Dataclass with integer identifiers and quantities and a
            :class:`~decimal.Decimal` unit price.
    """

    (
        item_id,
        transaction_id,
        item_name,
        unit,
        quantity,
        unit_price,
        source_record_id,
        source_batch_id,
    ) = raw_row[:8]
    return AllocationRow(
        item_id=_to_int(item_id),
        transaction_id=_to_int(transaction_id),
        item_name=_to_text(item_name),
        unit=_to_text(unit),
        quantity=_to_int(quantity),
        unit_price=_to_decimal(unit_price),
        source_record_id=_to_int(source_record_id),
        source_batch_id=_to_int(source_batch_id),
    )
