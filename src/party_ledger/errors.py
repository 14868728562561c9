"""Exception taxonomy and data-quality issue records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .constants import IssueKind, SourceKind


class ReconciliationError(Exception):
    """Base class for every error raised by the reconciliation engine."""


class SourceUnavailable(ReconciliationError):
    """Raised when every requested source failed and no usable data remains."""

    def __init__(self, message: str, *, failed_sources: tuple[SourceKind, ...] = ()) -> None:
        super().__init__(message)
        self.failed_sources = failed_sources


class FetchCancelled(ReconciliationError):
    """Raised when a caller aborts an in-flight multi-page fetch."""


class MalformedRecordError(ReconciliationError):
    """Raised when a raw record lacks a field required to use it."""


class NegativeQuantityError(MalformedRecordError):
    """Raised when a movement carries a negative quantity."""


@dataclass(frozen=True)
class RecordIssue:
    """One skipped or flagged record, reported next to a best-effort result."""

    kind: IssueKind
    reason: str
    source: Optional[SourceKind] = None
    record_id: Optional[str] = None

    def describe(self) -> str:
        where = self.source.value if self.source is not None else "engine"
        target = f" [{self.record_id}]" if self.record_id else ""
        return f"{self.kind.value} ({where}){target}: {self.reason}"


__all__ = [
    "ReconciliationError",
    "SourceUnavailable",
    "FetchCancelled",
    "MalformedRecordError",
    "NegativeQuantityError",
    "RecordIssue",
]
