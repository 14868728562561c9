"""Enumerations and limits shared across the party ledger modules.

Centralises domain constants so that the source adapters, the record
ingestion layer, and the reconciliation logic agree on a single set of
identifiers.
"""

from __future__ import annotations

from enum import Enum


# Paging limits applied to every transaction source.
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 20
DEFAULT_PAGE_TIMEOUT = 30.0
DEFAULT_MAX_WORKERS = 3

UNKNOWN_PARTY_VALUE = "unknown"


class SourceKind(str, Enum):
    """Enumerate the independent paginated streams the engine reads.

    ``PRODUCTS`` is the product catalog; it carries no transactions and is
    only used to find the supplier behind a bare product id.
    """

    RECEIPTS = "receipts"
    WRITE_OFFS = "writeoffs"
    PAYMENTS = "payments"
    PRODUCTS = "products"


class MovementKind(str, Enum):
    """Enumerate the stock movement kinds that affect party balances."""

    RECEIPT = "receipt"
    WRITE_OFF = "writeoff"


class FetchState(str, Enum):
    """Terminal states of the page-fetch loop."""

    LAST_PAGE_REACHED = "lastPageReached"
    CAP_REACHED = "capReached"
    SOURCE_ERROR = "sourceError"


class ResultStatus(str, Enum):
    """Completeness of an engine result."""

    COMPLETE = "Complete"
    PARTIAL = "Partial"


class PartyKeyKind(str, Enum):
    """Namespaces a resolved party identifier can live in."""

    ID = "id"
    NAME = "name"
    UNKNOWN = "unknown"


class IssueKind(str, Enum):
    """Data-quality problems reported alongside best-effort results."""

    SOURCE_UNAVAILABLE = "SourceUnavailable"
    MALFORMED_RECORD = "MalformedRecord"
    AMBIGUOUS_PARTY = "AmbiguousParty"
    NEGATIVE_QUANTITY = "NegativeQuantity"
    UNPARSEABLE_TIMESTAMP = "UnparseableTimestamp"


class LedgerLineType(str, Enum):
    """Kinds of settlement ledger lines."""

    PAYMENT_IN = "paymentIn"
    MOVEMENT_OUT = "movementOut"


class LedgerStatus(str, Enum):
    """Normalised status shown on each ledger line."""

    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"


# Source status strings mapped onto ledger statuses. Anything absent from the
# record falls back to CONFIRMED.
STATUS_ALIASES = {
    "completed": LedgerStatus.CONFIRMED,
    "confirmed": LedgerStatus.CONFIRMED,
    "paid": LedgerStatus.CONFIRMED,
    "draft": LedgerStatus.PENDING,
    "pending": LedgerStatus.PENDING,
    "partially_paid": LedgerStatus.PENDING,
    "failed": LedgerStatus.FAILED,
    "refunded": LedgerStatus.REFUNDED,
}

# Movement ``reason`` fragments that mark a receipt as a supplier return.
RETURN_REASON_MARKERS = ("return", "возврат")


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_MAX_PAGES",
    "DEFAULT_PAGE_TIMEOUT",
    "DEFAULT_MAX_WORKERS",
    "UNKNOWN_PARTY_VALUE",
    "SourceKind",
    "MovementKind",
    "FetchState",
    "ResultStatus",
    "PartyKeyKind",
    "IssueKind",
    "LedgerLineType",
    "LedgerStatus",
    "STATUS_ALIASES",
    "RETURN_REASON_MARKERS",
]
