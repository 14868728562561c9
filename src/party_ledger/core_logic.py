"""Reconciliation logic for counter-party balances.

This module folds typed transactions into per-party figures, groups stock
movements into document batches, and builds settlement ledgers. It consumes
:mod:`party_ledger.sources` and :mod:`party_ledger.data_manager` for all I/O
and never mutates its inputs.

Sign convention, fixed for every view:

* A receipt (the operator takes goods from the party) raises the debt owed
  to the party by ``unit_price * quantity``.
* A write-off of the party's goods lowers that debt by the same measure.
* A payment with a positive amount settles part of the debt; a negative
  amount (a refund from the party) raises it again.
* A receipt whose reason marks it as a return is goods going back to the
  party. It is tracked separately and never counts as a receipt.

So ``debt = receipts_value - writeoff_value - payments_total``. The
settlement ledger views the same flows from the party's account:
payments are credits, receipts are debits, and
``closing_balance = opening_balance + total_credit - total_debit``.
Records whose timestamp cannot be parsed are reported and left out of both
views, so a party summary and its ledger always close on the same balance.
All money is :class:`~decimal.Decimal`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from . import data_manager, log
from .constants import (
    DEFAULT_MAX_WORKERS,
    STATUS_ALIASES,
    IssueKind,
    LedgerLineType,
    LedgerStatus,
    MovementKind,
    ResultStatus,
    SourceKind,
)
from .data_manager import Movement, Payment, Transaction
from .errors import RecordIssue, SourceUnavailable
from .resolver import UNKNOWN_PARTY, PartyDirectory, PartyKey, ProductCatalog, display_name_for, resolve
from .sources import CancellationToken, HttpPageProvider, TransactionSource, fetch_sources


ALL_SOURCES: tuple[SourceKind, ...] = (SourceKind.RECEIPTS, SourceKind.WRITE_OFFS, SourceKind.PAYMENTS)
ZERO = Decimal("0")


def _source_of(transaction: Transaction) -> SourceKind:
    if isinstance(transaction, Payment):
        return SourceKind.PAYMENTS
    if transaction.kind is MovementKind.RECEIPT:
        return SourceKind.RECEIPTS
    return SourceKind.WRITE_OFFS


def _as_party_key(party: Union[PartyKey, str]) -> PartyKey:
    return party if isinstance(party, PartyKey) else PartyKey.for_id(str(party))


def _timestamp_issue(transaction: Transaction) -> RecordIssue:
    return RecordIssue(
        IssueKind.UNPARSEABLE_TIMESTAMP,
        f"unparseable timestamp {transaction.timestamp_raw!r}",
        _source_of(transaction),
        transaction.id,
    )


def normalize_status(raw: Optional[str]) -> LedgerStatus:
    """Map a source status string onto a :class:`LedgerStatus`.

    Records without a status are confirmed; statuses the engine does not
    recognise are shown as pending.
    """

    if raw is None or not raw.strip():
        return LedgerStatus.CONFIRMED
    return STATUS_ALIASES.get(raw.strip().lower(), LedgerStatus.PENDING)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


@dataclass
class PartyAccumulator:
    """Running figures for one party bucket, owned by a single aggregation."""

    key: PartyKey
    display_name: Optional[str] = None
    receipts_value: Decimal = ZERO
    writeoff_value: Decimal = ZERO
    payments_total: Decimal = ZERO
    returns_value: Decimal = ZERO
    units_received: int = 0
    units_written_off: int = 0
    units_returned: int = 0
    transaction_ids: List[str] = field(default_factory=list)
    last_activity: Optional[datetime] = None
    last_writeoff_at: Optional[datetime] = None

    @property
    def transaction_count(self) -> int:
        return len(self.transaction_ids)

    @property
    def debt(self) -> Decimal:
        return self.receipts_value - self.writeoff_value - self.payments_total

    def _touch(self, transaction: Transaction) -> None:
        self.transaction_ids.append(transaction.id)
        if self.display_name is None:
            self.display_name = display_name_for(transaction.party_refs)
        moment = transaction.timestamp
        if moment is not None and (self.last_activity is None or moment > self.last_activity):
            self.last_activity = moment

    def add_movement(self, movement: Movement) -> None:
        self._touch(movement)
        if movement.kind is MovementKind.RECEIPT and movement.is_return:
            self.returns_value += movement.value
            self.units_returned += movement.quantity
            return
        if movement.kind is MovementKind.RECEIPT:
            self.receipts_value += movement.value
            self.units_received += movement.quantity
            return
        self.writeoff_value += movement.value
        self.units_written_off += movement.quantity
        moment = movement.timestamp
        if moment is not None and (self.last_writeoff_at is None or moment > self.last_writeoff_at):
            self.last_writeoff_at = moment

    def add_payment(self, payment: Payment) -> None:
        self._touch(payment)
        self.payments_total += payment.amount


@dataclass(frozen=True)
class AggregationResult:
    """Per-party accumulators plus the records that could not be applied."""

    accumulators: Dict[PartyKey, PartyAccumulator]
    issues: tuple[RecordIssue, ...] = ()

    @property
    def applied_count(self) -> int:
        return sum(acc.transaction_count for acc in self.accumulators.values())


def aggregate(
    transactions: Iterable[Transaction],
    *,
    directory: Optional[PartyDirectory] = None,
) -> AggregationResult:
    """Fold transactions into one :class:`PartyAccumulator` per party.

    Every transaction lands in exactly one bucket, ``unknown`` included, with
    two exceptions that are reported instead of applied:

    * movements with a negative quantity (``NegativeQuantity``);
    * records whose timestamp could not be parsed (``UnparseableTimestamp``),
      which the settlement ledger cannot place either.

    Buckets appear in first-seen order. The accumulators are created inside
    the call and never shared, so aggregating the same input twice yields
    equal results.

    Args:
        transactions (Iterable[Transaction]): Typed movements and payments in
            arrival order. The input is not mutated.
        directory (PartyDirectory | None): Optional directory used to fold
            name-only references into id buckets.

    Returns:
        AggregationResult: Accumulators keyed by :class:`PartyKey` plus the
            issues raised while folding. Records routed to the ``unknown``
            bucket are also listed as ``AmbiguousParty`` issues.
    """

    accumulators: Dict[PartyKey, PartyAccumulator] = {}
    issues: List[RecordIssue] = []

    for transaction in transactions:
        source = _source_of(transaction)
        if isinstance(transaction, Movement) and transaction.quantity < 0:
            issues.append(
                RecordIssue(
                    IssueKind.NEGATIVE_QUANTITY,
                    f"quantity is negative: {transaction.quantity}",
                    source,
                    transaction.id,
                )
            )
            continue
        if transaction.timestamp is None:
            issues.append(_timestamp_issue(transaction))
            continue

        key = resolve(transaction, directory)
        if key.is_unknown:
            issues.append(RecordIssue(IssueKind.AMBIGUOUS_PARTY, "no party id or name", source, transaction.id))

        accumulator = accumulators.get(key)
        if accumulator is None:
            accumulator = PartyAccumulator(key=key)
            accumulators[key] = accumulator

        if isinstance(transaction, Payment):
            accumulator.add_payment(transaction)
        else:
            accumulator.add_movement(transaction)

    log.debug("Aggregated transactions into %d party buckets", len(accumulators))
    return AggregationResult(accumulators=accumulators, issues=tuple(issues))


def partition(
    transactions: Iterable[Transaction],
    *,
    directory: Optional[PartyDirectory] = None,
) -> Dict[PartyKey, List[Transaction]]:
    """Split transactions by resolved party, keeping arrival order."""

    buckets: Dict[PartyKey, List[Transaction]] = {}
    for transaction in transactions:
        buckets.setdefault(resolve(transaction, directory), []).append(transaction)
    return buckets


@dataclass(frozen=True)
class PartySummary:
    """List-level view of one party.

    ``incoming_total`` is what was paid to the party (ledger credits) and
    ``outgoing_total`` the value of goods received from it (ledger debits).
    Returns and write-offs are reported next to them but, as in the ledger,
    never move ``closing_balance``.
    """

    key: PartyKey
    display_name: str
    opening_balance: Decimal = ZERO
    incoming_total: Decimal = ZERO
    outgoing_total: Decimal = ZERO
    writeoff_total: Decimal = ZERO
    returns_total: Decimal = ZERO
    units_received: int = 0
    units_written_off: int = 0
    units_returned: int = 0
    transaction_count: int = 0
    last_activity: Optional[datetime] = None
    last_writeoff_at: Optional[datetime] = None

    @property
    def closing_balance(self) -> Decimal:
        return self.opening_balance + self.incoming_total - self.outgoing_total

    @property
    def debt(self) -> Decimal:
        return self.outgoing_total - self.writeoff_total - self.incoming_total


def _summary_from(
    key: PartyKey,
    accumulator: Optional[PartyAccumulator],
    directory: Optional[PartyDirectory],
) -> PartySummary:
    entry = directory.entry_for(key) if directory is not None else None
    if entry is not None:
        display_name = entry.display_name
    elif accumulator is not None and accumulator.display_name:
        display_name = accumulator.display_name
    else:
        display_name = key.value
    opening = entry.opening_balance if entry is not None else ZERO
    if accumulator is None:
        return PartySummary(key=key, display_name=display_name, opening_balance=opening)
    return PartySummary(
        key=key,
        display_name=display_name,
        opening_balance=opening,
        incoming_total=accumulator.payments_total,
        outgoing_total=accumulator.receipts_value,
        writeoff_total=accumulator.writeoff_value,
        returns_total=accumulator.returns_value,
        units_received=accumulator.units_received,
        units_written_off=accumulator.units_written_off,
        units_returned=accumulator.units_returned,
        transaction_count=accumulator.transaction_count,
        last_activity=accumulator.last_activity,
        last_writeoff_at=accumulator.last_writeoff_at,
    )


def summarize_parties(
    accumulators: Mapping[PartyKey, PartyAccumulator],
    *,
    directory: Optional[PartyDirectory] = None,
) -> List[PartySummary]:
    """Turn accumulators into party summaries with opening balances.

    Directory parties come first, in directory order, even when they had no
    activity. Remaining buckets follow in first-seen order and the
    ``unknown`` bucket, if any, is always last.
    """

    summaries: List[PartySummary] = []
    emitted: set[PartyKey] = set()
    if directory is not None:
        for entry in directory:
            key = PartyKey.for_id(entry.party_id)
            summaries.append(_summary_from(key, accumulators.get(key), directory))
            emitted.add(key)
    for key, accumulator in accumulators.items():
        if key in emitted or key.is_unknown:
            continue
        summaries.append(_summary_from(key, accumulator, directory))
    if UNKNOWN_PARTY in accumulators:
        summaries.append(_summary_from(UNKNOWN_PARTY, accumulators[UNKNOWN_PARTY], directory))
    return summaries


# ---------------------------------------------------------------------------
# Batch grouper
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Batch:
    """Movements sharing one document identifier, shown as a single row.

    Representative fields come from the first movement that arrived.
    """

    key: str
    kind: MovementKind
    movements: tuple[Movement, ...]

    @property
    def representative(self) -> Movement:
        return self.movements[0]

    @property
    def size(self) -> int:
        return len(self.movements)

    @property
    def is_grouped(self) -> bool:
        return len(self.movements) > 1

    @property
    def total_quantity(self) -> int:
        return sum(movement.quantity for movement in self.movements)

    @property
    def total_value(self) -> Decimal:
        return sum((movement.value for movement in self.movements), ZERO)

    @property
    def product_name(self) -> str:
        return self.representative.product_name

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.representative.timestamp

    @property
    def status(self) -> str:
        if any(normalize_status(movement.status) is LedgerStatus.PENDING for movement in self.movements):
            return "draft"
        return self.representative.status or "completed"


def group_batches(movements: Iterable[Movement]) -> List[Batch]:
    """Group movements by ``batch_id``, then ``movement_number``, then ``id``.

    Groups are kept separate per movement kind and returned in the order
    their first member arrived; members keep arrival order too. Nothing is
    sorted by time: the representative of a batch is the member that arrived
    first, even when a later member carries an earlier timestamp.

    Args:
        movements (Iterable[Movement]): Movements in arrival order.

    Returns:
        List[Batch]: One batch per ``(kind, grouping key)``. The batches hold
            every input movement exactly once, so total quantity is
            conserved.
    """

    groups: Dict[tuple[MovementKind, str], List[Movement]] = {}
    for movement in movements:
        groups.setdefault((movement.kind, movement.grouping_key), []).append(movement)
    return [Batch(key=key, kind=kind, movements=tuple(members)) for (kind, key), members in groups.items()]


# ---------------------------------------------------------------------------
# Settlement ledger builder
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerLine:
    """One chronological credit or debit on a party's account."""

    line_type: LedgerLineType
    document_number: str
    timestamp: datetime
    credit: Optional[Decimal]
    debit: Optional[Decimal]
    comment: str
    status: LedgerStatus
    source_id: str
    running_balance: Decimal = ZERO

    @property
    def amount(self) -> Decimal:
        return (self.credit or ZERO) - (self.debit or ZERO)


@dataclass(frozen=True)
class SettlementLedger:
    """Lines sorted newest first, with opening and closing balances."""

    party_id: Union[PartyKey, str]
    lines: tuple[LedgerLine, ...]
    opening_balance: Decimal
    total_credit: Decimal
    total_debit: Decimal
    issues: tuple[RecordIssue, ...] = ()

    @property
    def closing_balance(self) -> Decimal:
        return self.opening_balance + self.total_credit - self.total_debit


def _payment_line(payment: Payment) -> LedgerLine:
    return LedgerLine(
        line_type=LedgerLineType.PAYMENT_IN,
        document_number=payment.number or "#PAY",
        timestamp=payment.timestamp,
        credit=payment.amount,
        debit=None,
        comment=payment.note or "",
        status=normalize_status(payment.status),
        source_id=payment.id,
    )


def _movement_line(movement: Movement) -> LedgerLine:
    return LedgerLine(
        line_type=LedgerLineType.MOVEMENT_OUT,
        document_number=movement.movement_number or movement.id[-5:].upper(),
        timestamp=movement.timestamp,
        credit=None,
        debit=movement.value,
        comment=movement.product_name,
        status=normalize_status(movement.status),
        source_id=movement.id,
    )


def _qualifies_for_ledger(movement: Movement) -> bool:
    return movement.kind is MovementKind.RECEIPT and not movement.is_return


def build_ledger(
    party_id: Union[PartyKey, str],
    payments: Sequence[Payment],
    movements: Sequence[Movement],
    opening_balance: Decimal = ZERO,
) -> SettlementLedger:
    """Merge payments and receipts of one party into a settlement ledger.

    Payments become credit lines and non-return receipts become debit lines
    worth ``unit_price * quantity``; write-offs and returns are not part of
    the settlement. Each line carries the balance reached after applying it
    in chronological order.

    Lines are returned newest first. Both sorts are stable, so lines with
    equal timestamps keep their arrival order, payments before movements,
    in the running-balance pass and in the displayed order alike.

    Args:
        party_id (PartyKey | str): Party the ledger belongs to. Only used as
            a label; the caller selects the records.
        payments (Sequence[Payment]): The party's payments.
        movements (Sequence[Movement]): The party's movements. Write-offs
            and returns are ignored.
        opening_balance (Decimal): Balance before the first line.

    Returns:
        SettlementLedger: Lines, totals and the closing balance, where
            ``closing = opening + total_credit - total_debit``. Records whose
            timestamp could not be parsed are left out and listed as
            ``UnparseableTimestamp`` issues.
    """

    candidates: List[LedgerLine] = []
    issues: List[RecordIssue] = []

    for payment in payments:
        if payment.timestamp is None:
            issues.append(_timestamp_issue(payment))
            continue
        candidates.append(_payment_line(payment))

    for movement in movements:
        if not _qualifies_for_ledger(movement):
            continue
        if movement.timestamp is None:
            issues.append(_timestamp_issue(movement))
            continue
        candidates.append(_movement_line(movement))

    chronological = sorted(candidates, key=lambda line: line.timestamp)
    balance = opening_balance
    total_credit = ZERO
    total_debit = ZERO
    settled: List[LedgerLine] = []
    for line in chronological:
        total_credit += line.credit or ZERO
        total_debit += line.debit or ZERO
        balance += line.amount
        settled.append(
            LedgerLine(
                line_type=line.line_type,
                document_number=line.document_number,
                timestamp=line.timestamp,
                credit=line.credit,
                debit=line.debit,
                comment=line.comment,
                status=line.status,
                source_id=line.source_id,
                running_balance=balance,
            )
        )
    newest_first = sorted(settled, key=lambda line: line.timestamp, reverse=True)

    if issues:
        log.warning("Ledger for %s skipped %d record(s) with bad timestamps", party_id, len(issues))
    return SettlementLedger(
        party_id=party_id,
        lines=tuple(newest_first),
        opening_balance=opening_balance,
        total_credit=total_credit,
        total_debit=total_debit,
        issues=tuple(issues),
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconciliationReport:
    """List-level result: one summary per party plus data-quality issues."""

    summaries: tuple[PartySummary, ...]
    accumulators: Dict[PartyKey, PartyAccumulator]
    issues: tuple[RecordIssue, ...]
    status: ResultStatus
    failed_sources: tuple[SourceKind, ...] = ()
    record_count: int = 0

    @property
    def is_partial(self) -> bool:
        return self.status is ResultStatus.PARTIAL


@dataclass(frozen=True)
class PartyStatement:
    """Detail view of one party: ledger, batches and issues."""

    party: PartyKey
    display_name: str
    ledger: SettlementLedger
    receipt_batches: tuple[Batch, ...]
    writeoff_batches: tuple[Batch, ...]
    returns: tuple[Movement, ...]
    payments: tuple[Payment, ...]
    issues: tuple[RecordIssue, ...]
    status: ResultStatus = ResultStatus.COMPLETE
    failed_sources: tuple[SourceKind, ...] = ()

    @property
    def supplied_units(self) -> int:
        return sum(batch.total_quantity for batch in self.receipt_batches)

    @property
    def supplied_value(self) -> Decimal:
        return sum((batch.total_value for batch in self.receipt_batches), ZERO)


def reconcile_parties(
    source: TransactionSource,
    *,
    directory: Optional[PartyDirectory] = None,
    catalog: Optional[ProductCatalog] = None,
    merge_names: bool = True,
    filters: Optional[Mapping[str, Any]] = None,
    cancel_token: Optional[CancellationToken] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> ReconciliationReport:
    """Fetch every source concurrently and summarise balances per party.

    The directory always supplies opening balances and display names; it is
    used to fold name-only references into id buckets only when
    ``merge_names`` is set.
    A ``catalog`` lets movements that reference their product only by id be
    attributed to the product's supplier.

    Raises:
        SourceUnavailable: If no source returned any usable data.
        FetchCancelled: If ``cancel_token`` is cancelled mid-fetch.
    """

    results = fetch_sources(source, ALL_SOURCES, filters, cancel_token=cancel_token, max_workers=max_workers)
    ingested = data_manager.ingest_results(results, catalog=catalog)
    aggregation = aggregate(ingested.transactions, directory=directory if merge_names else None)
    summaries = summarize_parties(aggregation.accumulators, directory=directory)
    log.info(
        "Reconciled %d parties from %d records (%s)",
        len(summaries),
        ingested.record_count,
        ingested.status.value,
    )
    return ReconciliationReport(
        summaries=tuple(summaries),
        accumulators=aggregation.accumulators,
        issues=ingested.issues + aggregation.issues,
        status=ingested.status,
        failed_sources=ingested.failed_sources,
        record_count=ingested.record_count,
    )


def assemble_statement(
    party: Union[PartyKey, str],
    transactions: Iterable[Transaction],
    *,
    directory: Optional[PartyDirectory] = None,
    merge_names: bool = True,
    opening_balance: Optional[Decimal] = None,
) -> PartyStatement:
    """Build a :class:`PartyStatement` from already-typed transactions.

    Only transactions resolving to ``party`` are considered. The opening
    balance defaults to the directory's value for the party, else zero.
    """

    key = _as_party_key(party)
    subset = partition(transactions, directory=directory if merge_names else None).get(key, [])
    movements = [txn for txn in subset if isinstance(txn, Movement) and txn.quantity >= 0]
    payments = [txn for txn in subset if isinstance(txn, Payment)]
    issues = [
        RecordIssue(IssueKind.NEGATIVE_QUANTITY, f"quantity is negative: {txn.quantity}", _source_of(txn), txn.id)
        for txn in subset
        if isinstance(txn, Movement) and txn.quantity < 0
    ]

    entry = directory.entry_for(key) if directory is not None else None
    if opening_balance is None:
        opening_balance = entry.opening_balance if entry is not None else ZERO
    if entry is not None:
        display_name = entry.display_name
    else:
        display_name = next(
            (name for name in (display_name_for(txn.party_refs) for txn in subset) if name),
            key.value,
        )

    receipts = [m for m in movements if m.kind is MovementKind.RECEIPT and not m.is_return]
    returns = [m for m in movements if m.kind is MovementKind.RECEIPT and m.is_return]
    writeoffs = [m for m in movements if m.kind is MovementKind.WRITE_OFF]
    ledger = build_ledger(key, payments, movements, opening_balance)

    return PartyStatement(
        party=key,
        display_name=display_name,
        ledger=ledger,
        receipt_batches=tuple(group_batches(receipts)),
        writeoff_batches=tuple(group_batches(writeoffs)),
        returns=tuple(returns),
        payments=tuple(payments),
        issues=tuple(issues) + ledger.issues,
    )


def build_party_statement(
    source: TransactionSource,
    party: Union[PartyKey, str],
    *,
    directory: Optional[PartyDirectory] = None,
    catalog: Optional[ProductCatalog] = None,
    merge_names: bool = True,
    opening_balance: Optional[Decimal] = None,
    filters: Optional[Mapping[str, Any]] = None,
    cancel_token: Optional[CancellationToken] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> PartyStatement:
    """Fetch every source and build the settlement statement of one party.

    Raises:
        SourceUnavailable: If no source returned any usable data.
        FetchCancelled: If ``cancel_token`` is cancelled mid-fetch.
    """

    results = fetch_sources(source, ALL_SOURCES, filters, cancel_token=cancel_token, max_workers=max_workers)
    ingested = data_manager.ingest_results(results, catalog=catalog)
    statement = assemble_statement(
        party,
        ingested.transactions,
        directory=directory,
        merge_names=merge_names,
        opening_balance=opening_balance,
    )
    log.info(
        "Built statement for %s: %d ledger lines, closing %s (%s)",
        statement.party,
        len(statement.ledger.lines),
        statement.ledger.closing_balance,
        ingested.status.value,
    )
    return replace(
        statement,
        issues=ingested.issues + statement.issues,
        status=ingested.status,
        failed_sources=ingested.failed_sources,
    )


def list_batches(
    source: TransactionSource,
    kind: MovementKind,
    *,
    party: Optional[Union[PartyKey, str]] = None,
    directory: Optional[PartyDirectory] = None,
    catalog: Optional[ProductCatalog] = None,
    filters: Optional[Mapping[str, Any]] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> tuple[List[Batch], data_manager.IngestResult]:
    """Fetch one movement source and group it into document batches.

    When ``party`` is given only that party's movements are grouped. The
    ingestion result is returned alongside so callers can report issues.

    Raises:
        SourceUnavailable: If the movement source returned no usable data.
        FetchCancelled: If ``cancel_token`` is cancelled mid-fetch.
    """

    source_kind = SourceKind.RECEIPTS if kind is MovementKind.RECEIPT else SourceKind.WRITE_OFFS
    results = fetch_sources(source, (source_kind,), filters, cancel_token=cancel_token, max_workers=1)
    ingested = data_manager.ingest_results(results, catalog=catalog)
    movements: Sequence[Movement] = ingested.movements
    if party is not None:
        key = _as_party_key(party)
        movements = [movement for movement in movements if resolve(movement, directory) == key]
    batches = group_batches(movements)
    log.info("Grouped %d %s movements into %d batches", len(movements), kind.value, len(batches))
    return batches, ingested


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeContext:
    """Settings plus the live source used by the command-line front-end."""

    settings: data_manager.EngineSettings
    provider: HttpPageProvider
    source: TransactionSource


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load settings and wire an HTTP-backed :class:`TransactionSource`.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context ready for the orchestration functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """

    settings = data_manager.load_settings(config_path)
    provider = HttpPageProvider(
        base_url=settings.base_url,
        api_token=settings.api_token,
        timeout=settings.page_timeout,
    )
    source = TransactionSource(
        provider,
        page_size=settings.page_size,
        max_pages=settings.max_pages,
        page_timeout=settings.page_timeout,
    )
    log.info("Loaded runtime context for '%s'", settings.base_url)
    return RuntimeContext(settings=settings, provider=provider, source=source)


def load_directory(context: RuntimeContext) -> PartyDirectory:
    """Fetch the party directory through the context's provider.

    Raises:
        SourceUnavailable: If the directory endpoint cannot be read.
    """

    return data_manager.deserialize_directory(context.provider.fetch_parties())


def load_catalog(
    context: RuntimeContext,
    *,
    cancel_token: Optional[CancellationToken] = None,
) -> ProductCatalog:
    """Read the product catalog through the context's paginated source.

    The catalog is paged with the same loop and limits as the transaction
    sources. A catalog that stops part-way is still used; the missing
    products simply cannot be looked up.

    Args:
        context (RuntimeContext): Runtime context whose source is read.
        cancel_token (CancellationToken | None): Optional token to abort the
            fetch.

    Returns:
        ProductCatalog: Products keyed by id.

    Raises:
        SourceUnavailable: If the catalog failed before yielding any product.
        FetchCancelled: If ``cancel_token`` is cancelled mid-fetch.
    """

    result = context.source.fetch_all(SourceKind.PRODUCTS, cancel_token=cancel_token)
    if not result.ok and not result.records:
        raise SourceUnavailable(
            f"Product catalog unavailable: {result.error}",
            failed_sources=(SourceKind.PRODUCTS,),
        )
    if not result.ok:
        log.warning("Product catalog is incomplete: %s", result.error)
    return data_manager.deserialize_catalog(result.records)


__all__ = [
    "ALL_SOURCES",
    "normalize_status",
    "PartyAccumulator",
    "AggregationResult",
    "aggregate",
    "partition",
    "PartySummary",
    "summarize_parties",
    "Batch",
    "group_batches",
    "LedgerLine",
    "SettlementLedger",
    "build_ledger",
    "ReconciliationReport",
    "PartyStatement",
    "reconcile_parties",
    "assemble_statement",
    "build_party_statement",
    "list_batches",
    "RuntimeContext",
    "load_runtime_context",
    "load_directory",
    "load_catalog",
]
