"""In-memory history of receiving records and outgoing transactions.

The history is the only mutable state of the engine. It stores whole records
and whole transactions and nothing derived from them: remaining quantities and
lock states are folds computed by :mod:`stock_ledger.stock` on every query.

A secondary index maps each stock key to its batches in FIFO order (ascending
record id, then position within the record). The index is a lookup aid only
and is rebuilt for the affected keys whenever a receiving record changes.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List

from . import log
from .exceptions import MissingReferenceError
from .models import Allocation, Batch, OutgoingTransaction, ReceivingRecord, StockKey


class StockHistory:
    """Append-style store of the goods-in and goods-out history.

    Args:
        records (Iterable[ReceivingRecord]): Receiving records to seed the
            history with, in any order.
        transactions (Iterable[OutgoingTransaction]): Outgoing transactions to
            seed the history with.
    """

    def __init__(
        self,
        records: Iterable[ReceivingRecord] = (),
        transactions: Iterable[OutgoingTransaction] = (),
    ) -> None:
        self._records: Dict[int, ReceivingRecord] = {}
        self._transactions: Dict[int, OutgoingTransaction] = {}
        self._batches_by_key: Dict[StockKey, List[Batch]] = {}
        for record in records:
            self.append_record(record)
        for transaction in transactions:
            self.append_transaction(transaction)

    @property
    def records(self) -> List[ReceivingRecord]:
        """Receiving records in FIFO (record id) order."""
        return [self._records[record_id] for record_id in sorted(self._records)]

    @property
    def transactions(self) -> List[OutgoingTransaction]:
        """Outgoing transactions in creation (transaction id) order."""
        return [self._transactions[transaction_id] for transaction_id in sorted(self._transactions)]

    def max_identifier(self) -> int:
        """Return the largest identifier of any entity stored in the history."""
        identifiers = [0]
        for record in self._records.values():
            identifiers.append(record.record_id)
            identifiers.extend(batch.batch_id for batch in record.batches)
        for transaction in self._transactions.values():
            identifiers.append(transaction.transaction_id)
            identifiers.extend(allocation.item_id for allocation in transaction.allocations)
        return max(identifiers)

    def get_record(self, record_id: int) -> ReceivingRecord:
        try:
            return self._records[record_id]
        except KeyError as exc:
            log.warning("Receiving record lookup failed for id '%s'", record_id)
            raise MissingReferenceError(f"Unknown receiving record id: {record_id}") from exc

    def get_transaction(self, transaction_id: int) -> OutgoingTransaction:
        try:
            return self._transactions[transaction_id]
        except KeyError as exc:
            log.warning("Outgoing transaction lookup failed for id '%s'", transaction_id)
            raise MissingReferenceError(f"Unknown outgoing transaction id: {transaction_id}") from exc

    def append_record(self, record: ReceivingRecord) -> None:
        if record.record_id in self._records:
            raise ValueError(f"Duplicate receiving record id: {record.record_id}")
        self._records[record.record_id] = record
        self._reindex({batch.stock_key for batch in record.batches})

    def replace_record(self, record: ReceivingRecord) -> ReceivingRecord:
        """Swap a stored record for a new version carrying the same id."""
        previous = self.get_record(record.record_id)
        self._records[record.record_id] = record
        touched = {batch.stock_key for batch in previous.batches}
        touched.update(batch.stock_key for batch in record.batches)
        self._reindex(touched)
        return previous

    def remove_record(self, record_id: int) -> ReceivingRecord:
        record = self.get_record(record_id)
        del self._records[record_id]
        self._reindex({batch.stock_key for batch in record.batches})
        return record

    def append_transaction(self, transaction: OutgoingTransaction) -> None:
        if transaction.transaction_id in self._transactions:
            raise ValueError(f"Duplicate outgoing transaction id: {transaction.transaction_id}")
        self._transactions[transaction.transaction_id] = transaction

    def remove_transaction(self, transaction_id: int) -> OutgoingTransaction:
        transaction = self.get_transaction(transaction_id)
        del self._transactions[transaction_id]
        return transaction

    def batches_for(self, stock_key: StockKey) -> List[Batch]:
        """Return the batches of ``stock_key`` oldest first."""
        return list(self._batches_by_key.get(stock_key, ()))

    def iter_batches(self) -> Iterator[Batch]:
        for record in self.records:
            yield from record.batches

    def iter_allocations(self) -> Iterator[Allocation]:
        for transaction in self.transactions:
            yield from transaction.allocations

    def _reindex(self, stock_keys: Iterable[StockKey]) -> None:
        for stock_key in stock_keys:
            batches = [
                batch
                for record_id in sorted(self._records)
                for batch in self._records[record_id].batches
                if batch.stock_key == stock_key
            ]
            if batches:
                self._batches_by_key[stock_key] = batches
            else:
                self._batches_by_key.pop(stock_key, None)


__all__ = ["StockHistory"]
