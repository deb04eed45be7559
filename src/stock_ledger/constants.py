"""Enumerations shared across the stock ledger modules.

Centralises domain constants so that the engine, the workbook data access
layer (DAL), and the CLI rely on a single source of truth for identifiers
that end up persisted in the master workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionKind(str, Enum):
    """Enumerate the purposes an outgoing (goods-out) nota may serve."""

    SALE = "Penjualan"
    INTERNAL_USE = "Pemakaian Internal"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    RECEIVING_RECORDS = "ReceivingRecords"
    RECEIVED_BATCHES = "ReceivedBatches"
    OUTGOING_TRANSACTIONS = "OutgoingTransactions"
    ALLOCATIONS = "Allocations"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionKind",
    "SheetName",
]
