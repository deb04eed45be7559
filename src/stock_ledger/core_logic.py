"""Business logic layer for the stock ledger.

This module connects the FIFO engine (:mod:`stock_ledger.engine`) to the
master workbook. It consumes the Data Access Layer (DAL) for all I/O, loads
the goods-in / goods-out history into an :class:`InventoryLedger`, and mirrors
every mutation the engine accepts back into the workbook. Nothing is written
to the workbook for a request the engine rejects, and a write that fails
partway is rolled back so the workbook never holds half a record.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, SheetName, TransactionKind
from .engine import InventoryLedger
from .exceptions import BusinessRuleViolation, MissingReferenceError
from .history import StockHistory
from .models import (
    Allocation,
    Batch,
    OutgoingTransaction,
    ReceivedItem,
    ReceivingRecord,
    RequestLine,
    StockKey,
)

__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "RuntimeContext",
    "ReceiveGoodsCommand",
    "EditReceiptCommand",
    "IssueGoodsCommand",
    "ReportEntry",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "load_history",
    "get_ledger",
    "record_receipt",
    "edit_receipt",
    "delete_receipt",
    "record_issue",
    "delete_issue",
    "query_stock",
    "calculate_stock",
    "is_record_locked",
    "list_receipts",
    "list_issues",
    "get_receipt",
    "get_issue",
    "build_period_report",
]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class ReceiveGoodsCommand:
    """User intent for registering a goods-in nota."""

    received_on: date
    supplier: str
    items: Sequence[ReceivedItem]
    recorded_by: Optional[str] = None


@dataclass(frozen=True)
class EditReceiptCommand:
    """User intent for replacing the contents of an unconsumed goods-in nota."""

    record_id: int
    received_on: date
    supplier: str
    items: Sequence[ReceivedItem]


@dataclass(frozen=True)
class IssueGoodsCommand:
    """User intent for issuing stock through a goods-out nota."""

    destination: str
    kind: TransactionKind
    lines: Sequence[RequestLine]
    recorded_by: Optional[str] = None


@dataclass(frozen=True)
class ReportEntry:
    """One row of the chronological goods-in / goods-out report."""

    entry_id: int
    occurred_on: date
    direction: str
    description: str
    line_count: int
    value: Decimal
    recorded_by: str


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived objects.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets so the next read reloads the workbook."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def get_ledger(context: RuntimeContext) -> InventoryLedger:
    """Return the engine for ``context``, loading it from the workbook once.

    The ledger keeps the goods-in / goods-out history in memory. Remaining
    stock and lock state are never cached here: the engine recomputes them
    from that history on every query.
    """

    bucket = _get_cache_bucket(context, "ledger")
    if "engine" not in bucket:
        history = load_history(context.workbook)
        bucket["engine"] = InventoryLedger(history)
        log.debug(
            "Loaded ledger with %d receiving record(s) and %d outgoing transaction(s)",
            len(history.records),
            len(history.transactions),
        )
    return bucket["engine"]


def load_history(workbook: Workbook) -> StockHistory:
    """Rebuild the in-memory :class:`StockHistory` from the workbook sheets.

    Batch and allocation rows are grouped under their owning record or
    transaction in sheet order. Rows whose owner header is missing are
    skipped with a warning rather than attached to nothing.
    """

    batches_by_record: Dict[int, List[data_manager.BatchRow]] = defaultdict(list)
    for row in data_manager.iter_batches(workbook):
        batches_by_record[row.record_id].append(row)

    allocations_by_transaction: Dict[int, List[data_manager.AllocationRow]] = defaultdict(list)
    for row in data_manager.iter_allocations(workbook):
        allocations_by_transaction[row.transaction_id].append(row)

    records = [
        build_receiving_record(row, batches_by_record.pop(row.record_id, []))
        for row in data_manager.iter_receiving_records(workbook)
    ]
    transactions = [
        build_outgoing_transaction(row, allocations_by_transaction.pop(row.transaction_id, []))
        for row in data_manager.iter_outgoing_transactions(workbook)
    ]

    for record_id in batches_by_record:
        log.warning("Ignoring batch rows for unknown receiving record '%s'", record_id)
    for transaction_id in allocations_by_transaction:
        log.warning("Ignoring allocation rows for unknown outgoing transaction '%s'", transaction_id)

    return StockHistory(records, transactions)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache, so the ledger is rebuilt from disk on next use.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def _resolve_recorder(context: RuntimeContext, candidate: Optional[str]) -> str:
    return candidate if candidate else context.settings.default_recorder


def record_receipt(context: RuntimeContext, command: ReceiveGoodsCommand) -> ReceivingRecord:
    """Register a goods-in nota and append it to the workbook.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (ReceiveGoodsCommand): Structured goods-in intent. When
            ``recorded_by`` is empty the configured default recorder is used.

    Returns:
        ReceivingRecord: The stored record with its assigned identifiers.

    Raises:
        ValueError: When the nota has no items or an item fails validation.
    """
    ledger = get_ledger(context)
    record = ledger.submit_receiving_record(
        received_on=command.received_on,
        supplier=command.supplier,
        recorded_by=_resolve_recorder(context, command.recorded_by),
        items=command.items,
    )
    try:
        _write_receipt(context.workbook, record)
    except Exception:
        log.error("Rolling back partially written receiving record %d", record.record_id)
        _invalidate_cache(context, "ledger")
        _erase_receipt(context.workbook, record.record_id)
        raise
    return record


def edit_receipt(context: RuntimeContext, command: EditReceiptCommand) -> ReceivingRecord:
    """Replace a goods-in nota wholesale, provided none of its stock was issued.

    Raises:
        MissingReferenceError: If the record does not exist.
        LockedRecordError: If any of the record's batches has been consumed.
        ValueError: When the new contents fail validation.
    """
    ledger = get_ledger(context)
    previous = ledger.history.get_record(command.record_id)
    record = ledger.update_receiving_record(
        command.record_id,
        received_on=command.received_on,
        supplier=command.supplier,
        items=command.items,
    )
    try:
        _erase_receipt(context.workbook, record.record_id)
        _write_receipt(context.workbook, record)
    except Exception:
        log.error("Restoring receiving record %d after a failed rewrite", record.record_id)
        _invalidate_cache(context, "ledger")
        _erase_receipt(context.workbook, record.record_id)
        _write_receipt(context.workbook, previous)
        raise
    return record


def delete_receipt(context: RuntimeContext, record_id: int) -> ReceivingRecord:
    """Delete a goods-in nota, provided none of its stock was issued.

    Raises:
        MissingReferenceError: If the record does not exist.
        LockedRecordError: If any of the record's batches has been consumed.
    """
    ledger = get_ledger(context)
    record = ledger.delete_receiving_record(record_id)
    try:
        _erase_receipt(context.workbook, record_id)
    except Exception:
        log.error("Restoring receiving record %d after a failed delete", record_id)
        _invalidate_cache(context, "ledger")
        _erase_receipt(context.workbook, record_id)
        _write_receipt(context.workbook, record)
        raise
    return record


def record_issue(context: RuntimeContext, command: IssueGoodsCommand) -> OutgoingTransaction:
    """Allocate a goods-out nota FIFO and append it to the workbook.

    Returns:
        OutgoingTransaction: The committed transaction, including every
            batch split and its frozen unit price.

    Raises:
        InsufficientStockError: If any line exceeds remaining stock; nothing
            is recorded for any line.
        DuplicateLineError: If a stock key is listed twice.
        AllocationConsistencyError: If the engine could not allocate stock it
            had validated.
        ValueError: When the destination or lines are malformed.
    """
    ledger = get_ledger(context)
    transaction = ledger.submit_outgoing_transaction(
        destination=command.destination,
        kind=command.kind,
        recorded_by=_resolve_recorder(context, command.recorded_by),
        lines=command.lines,
    )
    try:
        _write_issue(context.workbook, transaction)
    except Exception:
        log.error("Rolling back partially written outgoing transaction %d", transaction.transaction_id)
        _invalidate_cache(context, "ledger")
        _erase_issue(context.workbook, transaction.transaction_id)
        raise
    return transaction


def delete_issue(context: RuntimeContext, transaction_id: int) -> OutgoingTransaction:
    """Delete a goods-out nota and every allocation it owns.

    Stock and record locks recover automatically because both are computed
    from the remaining history.

    Raises:
        MissingReferenceError: If the transaction does not exist.
    """
    ledger = get_ledger(context)
    transaction = ledger.delete_outgoing_transaction(transaction_id)
    try:
        _erase_issue(context.workbook, transaction_id)
    except Exception:
        log.error("Restoring outgoing transaction %d after a failed delete", transaction_id)
        _invalidate_cache(context, "ledger")
        _erase_issue(context.workbook, transaction_id)
        _write_issue(context.workbook, transaction)
        raise
    return transaction


def query_stock(context: RuntimeContext, stock_key: StockKey, as_of: Optional[int] = None) -> int:
    return get_ledger(context).query_stock(stock_key, as_of=as_of)


def calculate_stock(context: RuntimeContext, as_of: Optional[int] = None) -> Dict[StockKey, int]:
    """Compute the remaining quantity of every stock key.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        as_of (int | None): Optional identifier cutoff; see
            :func:`stock_ledger.models.cutoff_for`.

    Returns:
        dict[StockKey, int]: Remaining quantity per stock key, sorted by key.
    """
    summary = get_ledger(context).stock_summary(as_of=as_of)
    log.debug("Calculated stock for %d stock key(s)", len(summary))
    return summary


def is_record_locked(context: RuntimeContext, record_id: int) -> bool:
    ledger = get_ledger(context)
    ledger.history.get_record(record_id)
    return ledger.is_record_locked(record_id)


def list_receipts(context: RuntimeContext) -> List[ReceivingRecord]:
    return get_ledger(context).history.records


def list_issues(context: RuntimeContext) -> List[OutgoingTransaction]:
    return get_ledger(context).history.transactions


def get_receipt(context: RuntimeContext, record_id: int) -> ReceivingRecord:
    return get_ledger(context).history.get_record(record_id)


def get_issue(context: RuntimeContext, transaction_id: int) -> OutgoingTransaction:
    return get_ledger(context).history.get_transaction(transaction_id)


def build_period_report(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[ReportEntry]:
    """Merge goods-in and goods-out notas within ``[start, end]`` chronologically.

    Goods-in notas are placed by their receipt date and valued at
    ``price * quantity`` of their batches. Goods-out notas are placed by the
    UTC date encoded in their identifier and valued at their realized FIFO
    cost. Either bound may be omitted.

    Returns:
        list[ReportEntry]: Entries ordered by date, then identifier.
    """

    def _in_range(day: date) -> bool:
        return (start is None or day >= start) and (end is None or day <= end)

    history = get_ledger(context).history
    entries: List[ReportEntry] = []
    for record in history.records:
        if _in_range(record.received_on):
            entries.append(
                ReportEntry(
                    entry_id=record.record_id,
                    occurred_on=record.received_on,
                    direction="IN",
                    description=f"Nota dari {record.supplier}",
                    line_count=len(record.batches),
                    value=record.total_value,
                    recorded_by=record.recorded_by,
                )
            )
    for transaction in history.transactions:
        occurred_on = transaction.created_at.date()
        if _in_range(occurred_on):
            entries.append(
                ReportEntry(
                    entry_id=transaction.transaction_id,
                    occurred_on=occurred_on,
                    direction="OUT",
                    description=f"Nota Keluar ke {transaction.destination}",
                    line_count=len({allocation.stock_key for allocation in transaction.allocations}),
                    value=transaction.total_cost,
                    recorded_by=transaction.recorded_by,
                )
            )
    entries.sort(key=lambda entry: (entry.occurred_on, entry.entry_id))
    log.debug("Built period report with %d entries (start=%s, end=%s)", len(entries), start, end)
    return entries


def build_receiving_record(
    row: data_manager.ReceivingRecordRow,
    batch_rows: Sequence[data_manager.BatchRow],
) -> ReceivingRecord:
    """Materialize a :class:`ReceivingRecord` from its header and batch rows."""
    return ReceivingRecord(
        record_id=row.record_id,
        received_on=date.fromisoformat(row.received_on_iso[:10]),
        supplier=row.supplier,
        recorded_by=row.recorded_by,
        batches=tuple(
            Batch(
                record_id=row.record_id,
                batch_id=batch_row.batch_id,
                stock_key=StockKey(batch_row.item_name, batch_row.unit),
                quantity=batch_row.quantity,
                unit_price=batch_row.unit_price,
            )
            for batch_row in batch_rows
        ),
    )


def build_outgoing_transaction(
    row: data_manager.OutgoingTransactionRow,
    allocation_rows: Sequence[data_manager.AllocationRow],
) -> OutgoingTransaction:
    """Materialize an :class:`OutgoingTransaction` from its header and allocation rows."""
    return OutgoingTransaction(
        transaction_id=row.transaction_id,
        destination=row.destination,
        kind=TransactionKind(row.kind),
        recorded_by=row.recorded_by,
        allocations=tuple(
            Allocation(
                item_id=allocation_row.item_id,
                transaction_id=row.transaction_id,
                stock_key=StockKey(allocation_row.item_name, allocation_row.unit),
                quantity=allocation_row.quantity,
                unit_price=allocation_row.unit_price,
                source_record_id=allocation_row.source_record_id,
                source_batch_id=allocation_row.source_batch_id,
            )
            for allocation_row in allocation_rows
        ),
    )


def build_receipt_rows(
    record: ReceivingRecord,
) -> tuple[data_manager.ReceivingRecordRow, List[data_manager.BatchRow]]:
    """Flatten a :class:`ReceivingRecord` into its header row and batch rows."""
    header = data_manager.ReceivingRecordRow(
        record_id=record.record_id,
        received_on_iso=record.received_on.isoformat(),
        supplier=record.supplier,
        recorded_by=record.recorded_by,
    )
    batches = [
        data_manager.BatchRow(
            record_id=batch.record_id,
            batch_id=batch.batch_id,
            item_name=batch.stock_key.name,
            unit=batch.stock_key.unit,
            quantity=batch.quantity,
            unit_price=batch.unit_price,
        )
        for batch in record.batches
    ]
    return header, batches


def build_issue_rows(
    transaction: OutgoingTransaction,
) -> tuple[data_manager.OutgoingTransactionRow, List[data_manager.AllocationRow]]:
    """Flatten an :class:`OutgoingTransaction` into its header and allocation rows."""
    header = data_manager.OutgoingTransactionRow(
        transaction_id=transaction.transaction_id,
        created_at_iso=transaction.created_at.isoformat(),
        destination=transaction.destination,
        kind=transaction.kind.value,
        recorded_by=transaction.recorded_by,
    )
    allocations = [
        data_manager.AllocationRow(
            item_id=allocation.item_id,
            transaction_id=allocation.transaction_id,
            item_name=allocation.stock_key.name,
            unit=allocation.stock_key.unit,
            quantity=allocation.quantity,
            unit_price=allocation.unit_price,
            source_record_id=allocation.source_record_id,
            source_batch_id=allocation.source_batch_id,
        )
        for allocation in transaction.allocations
    ]
    return header, allocations


def _write_receipt(workbook: Workbook, record: ReceivingRecord) -> None:
    header, batches = build_receipt_rows(record)
    data_manager.append_receiving_record(workbook, header)
    for batch in batches:
        data_manager.append_batch(workbook, batch)


def _erase_receipt(workbook: Workbook, record_id: int) -> None:
    data_manager.delete_rows(workbook, SheetName.RECEIVED_BATCHES.value, "RecordID", record_id)
    data_manager.delete_rows(workbook, SheetName.RECEIVING_RECORDS.value, "RecordID", record_id)


def _erase_issue(workbook: Workbook, transaction_id: int) -> None:
    data_manager.delete_rows(workbook, SheetName.ALLOCATIONS.value, "TransactionID", transaction_id)
    data_manager.delete_rows(workbook, SheetName.OUTGOING_TRANSACTIONS.value, "TransactionID", transaction_id)


def _write_issue(workbook: Workbook, transaction: OutgoingTransaction) -> None:
    header, allocations = build_issue_rows(transaction)
    data_manager.append_outgoing_transaction(workbook, header)
    for allocation in allocations:
        data_manager.append_allocation(workbook, allocation)
