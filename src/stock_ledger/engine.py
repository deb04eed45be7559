"""Public facade of the FIFO inventory allocation engine.

:class:`InventoryLedger` owns a :class:`StockHistory` and an
:class:`IdentitySource` and exposes the handful of operations the surrounding
application needs: receive goods, edit or delete a receipt while it is still
unconsumed, issue goods, cancel an issue, and query stock and lock state.

The engine assumes a single writer. Each operation runs to completion
synchronously and either commits one whole record/transaction or raises
without touching the history.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from . import log
from .allocation import allocate
from .constants import TransactionKind
from .exceptions import LockedRecordError
from .history import StockHistory
from .models import (
    Batch,
    IdentitySource,
    OutgoingTransaction,
    ReceivedItem,
    ReceivingRecord,
    RequestLine,
    StockKey,
)
from .stock import is_record_locked, locked_record_ids, remaining_in_batch, remaining_stock, stock_summary


def require_text(value: str, label: str) -> str:
    """Strip ``value`` and reject it when nothing is left."""
    cleaned = (value or "").strip()
    if not cleaned:
        log.error("Validation failed: %s is blank", label)
        raise ValueError(f"{label} must not be blank")
    return cleaned


def require_valid_item(item: ReceivedItem) -> None:
    """Validate one goods-in line.

    Raises:
        ValueError: If the name or unit is blank, the quantity is not a
            positive integer, or the unit price is negative or not finite.
    """
    require_text(item.name, "Item name")
    require_text(item.unit, "Unit")
    if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
        log.error("Quantity validation failed for %s: %r", item.stock_key, item.quantity)
        raise ValueError("Quantity must be a positive integer")
    price = Decimal(item.unit_price)
    if not price.is_finite():
        log.error("Price validation failed for %s: %s", item.stock_key, item.unit_price)
        raise ValueError("Unit price must be a finite number")
    if price < Decimal("0"):
        log.error("Price validation failed for %s: %s", item.stock_key, item.unit_price)
        raise ValueError("Unit price must be zero or positive")


class InventoryLedger:
    """Single-writer FIFO stock ledger over an in-memory history.

    Args:
        history (StockHistory | None): Existing history, e.g. loaded from the
            master workbook. A fresh empty history is used when omitted.
        identity (IdentitySource | None): Identifier source for new records,
            batches, transactions and allocations. It is advanced past every
            identifier already present in ``history``.
    """

    def __init__(self, history: Optional[StockHistory] = None, identity: Optional[IdentitySource] = None) -> None:
        self._history = history if history is not None else StockHistory()
        self._identity = identity if identity is not None else IdentitySource()
        self._identity.observe(self._history.max_identifier())

    @property
    def history(self) -> StockHistory:
        return self._history

    @property
    def identity(self) -> IdentitySource:
        return self._identity

    # ------------------------------------------------------------------
    # Goods-in
    # ------------------------------------------------------------------

    def submit_receiving_record(
        self,
        *,
        received_on: date,
        supplier: str,
        recorded_by: str,
        items: Sequence[ReceivedItem],
    ) -> ReceivingRecord:
        """Register a new goods-in nota and return the stored record."""
        supplier = require_text(supplier, "Supplier")
        recorded_by = require_text(recorded_by, "Recorder")
        record_id = self._identity.next_id()
        record = ReceivingRecord(
            record_id=record_id,
            received_on=received_on,
            supplier=supplier,
            recorded_by=recorded_by,
            batches=self._build_batches(record_id, items),
        )
        self._history.append_record(record)
        log.info(
            "Recorded receiving record %d from '%s' with %d batch(es), value=%s",
            record.record_id,
            record.supplier,
            len(record.batches),
            record.total_value,
        )
        return record

    def update_receiving_record(
        self,
        record_id: int,
        *,
        received_on: date,
        supplier: str,
        items: Sequence[ReceivedItem],
    ) -> ReceivingRecord:
        """Replace a receiving record wholesale while it is still unconsumed.

        The record keeps its id, and with it its position on the FIFO axis.
        Items carrying the ``batch_id`` of one of the record's existing batches
        keep that id; every other item becomes a new batch.

        Raises:
            MissingReferenceError: If ``record_id`` is unknown.
            LockedRecordError: If any batch of the record has been consumed.
            ValueError: If the new contents fail validation.
        """
        current = self._history.get_record(record_id)
        self._require_unlocked(record_id, action="edit")
        supplier = require_text(supplier, "Supplier")
        updated = ReceivingRecord(
            record_id=record_id,
            received_on=received_on,
            supplier=supplier,
            recorded_by=current.recorded_by,
            batches=self._build_batches(record_id, items, existing=current.batches),
        )
        self._history.replace_record(updated)
        log.info(
            "Updated receiving record %d (%d batch(es), value=%s)",
            record_id,
            len(updated.batches),
            updated.total_value,
        )
        return updated

    def delete_receiving_record(self, record_id: int) -> ReceivingRecord:
        """Remove an unconsumed receiving record and all of its batches.

        Raises:
            MissingReferenceError: If ``record_id`` is unknown.
            LockedRecordError: If any batch of the record has been consumed.
        """
        self._history.get_record(record_id)
        self._require_unlocked(record_id, action="delete")
        record = self._history.remove_record(record_id)
        log.info("Deleted receiving record %d", record_id)
        return record

    # ------------------------------------------------------------------
    # Goods-out
    # ------------------------------------------------------------------

    def submit_outgoing_transaction(
        self,
        *,
        destination: str,
        kind: TransactionKind,
        recorded_by: str,
        lines: Sequence[RequestLine],
    ) -> OutgoingTransaction:
        """Allocate ``lines`` FIFO and commit them as one outgoing transaction.

        Raises:
            ValueError: If the destination, recorder or lines are malformed.
            DuplicateLineError: If a stock key is requested twice.
            InsufficientStockError: If any line exceeds its remaining stock.
                No allocation is recorded for any line in that case.
            AllocationConsistencyError: If validated stock could not be
                allocated to batches.
        """
        destination = require_text(destination, "Destination")
        recorded_by = require_text(recorded_by, "Recorder")
        kind = TransactionKind(kind)
        lines = [replace(line, name=line.name.strip(), unit=line.unit.strip()) for line in lines]
        transaction = allocate(
            self._history,
            lines,
            identity=self._identity,
            destination=destination,
            kind=kind,
            recorded_by=recorded_by,
        )
        self._history.append_transaction(transaction)
        log.info(
            "Recorded outgoing transaction %d to '%s' (%s): %d allocation(s), cost=%s",
            transaction.transaction_id,
            transaction.destination,
            transaction.kind.value,
            len(transaction.allocations),
            transaction.total_cost,
        )
        return transaction

    def delete_outgoing_transaction(self, transaction_id: int) -> OutgoingTransaction:
        """Remove an outgoing transaction together with all of its allocations.

        Raises:
            MissingReferenceError: If ``transaction_id`` is unknown.
        """
        transaction = self._history.remove_transaction(transaction_id)
        log.info(
            "Deleted outgoing transaction %d, releasing %d allocation(s)",
            transaction_id,
            len(transaction.allocations),
        )
        return transaction

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query_stock(self, stock_key: StockKey, as_of: Optional[int] = None) -> int:
        return remaining_stock(self._history, stock_key, as_of=as_of)

    def stock_summary(self, as_of: Optional[int] = None) -> Dict[StockKey, int]:
        return stock_summary(self._history, as_of=as_of)

    def is_record_locked(self, record_id: int) -> bool:
        return is_record_locked(self._history, record_id)

    def locked_record_ids(self) -> set[int]:
        return locked_record_ids(self._history)

    def remaining_in_batch(self, record_id: int, batch_id: int) -> int:
        for batch in self._history.get_record(record_id).batches:
            if batch.batch_id == batch_id:
                return remaining_in_batch(self._history, batch)
        raise KeyError(f"Unknown batch {batch_id} in receiving record {record_id}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_unlocked(self, record_id: int, *, action: str) -> None:
        if is_record_locked(self._history, record_id):
            log.error("Refused to %s locked receiving record %d", action, record_id)
            raise LockedRecordError(record_id)

    def _build_batches(
        self,
        record_id: int,
        items: Sequence[ReceivedItem],
        *,
        existing: Sequence[Batch] = (),
    ) -> tuple[Batch, ...]:
        if not items:
            log.error("Receiving record %d rejected: no items", record_id)
            raise ValueError("A receiving record needs at least one item")
        for item in items:
            require_valid_item(item)

        reusable = {batch.batch_id for batch in existing}
        batches: List[Batch] = []
        for item in items:
            if item.batch_id is not None and item.batch_id in reusable:
                batch_id = item.batch_id
                reusable.discard(batch_id)
            else:
                batch_id = self._identity.next_id()
            batches.append(
                Batch(
                    record_id=record_id,
                    batch_id=batch_id,
                    stock_key=StockKey(item.name.strip(), item.unit.strip()),
                    quantity=item.quantity,
                    unit_price=Decimal(item.unit_price),
                )
            )
        return tuple(batches)


__all__ = ["InventoryLedger", "require_text", "require_valid_item"]
