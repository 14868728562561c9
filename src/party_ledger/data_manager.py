"""Data access layer for the party ledger engine.

This module turns raw collaborator payloads into typed records and engine
outputs back into plain rows. Reconciliation rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Record ingestion: converting page payloads into :class:`Movement` and
   :class:`Payment` records, collecting data-quality issues on the way.
3. Export: serialising ledgers and party summaries into spreadsheet rows and
   ``openpyxl`` workbooks.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, Optional, Sequence, Union

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    DEFAULT_MAX_PAGES,
    DEFAULT_MAX_WORKERS,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PAGE_TIMEOUT,
    RETURN_REASON_MARKERS,
    FetchState,
    IssueKind,
    MovementKind,
    ResultStatus,
    SourceKind,
)
from .errors import MalformedRecordError, NegativeQuantityError, RecordIssue, SourceUnavailable
from .resolver import PartyDirectory, PartyEntry, PartyRef, ProductCatalog, extract_party_refs, normalize_name

if TYPE_CHECKING:
    from .core_logic import PartySummary, SettlementLedger
    from .sources import SourceResult


CONFIG_FILE_NAME = "config.ini"

MOVEMENT_KIND_BY_SOURCE = {
    SourceKind.RECEIPTS: MovementKind.RECEIPT,
    SourceKind.WRITE_OFFS: MovementKind.WRITE_OFF,
}

LEDGER_COLUMNS = ("Type", "Document", "Timestamp", "Credit", "Debit", "Balance", "Comment", "Status")
SUMMARY_COLUMNS = (
    "PartyKey",
    "PartyName",
    "OpeningBalance",
    "Payments",
    "Receipts",
    "WriteOffs",
    "Returns",
    "ClosingBalance",
    "Debt",
    "UnitsReceived",
    "UnitsWrittenOff",
    "LastActivity",
)


@dataclass(frozen=True)
class EngineSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    base_url: str
    api_token: Optional[str]
    page_size: int
    max_pages: int
    page_timeout: float
    max_workers: int
    export_dir: Path


@dataclass(frozen=True)
class Movement:
    """A stock receipt or write-off as reported by a movement source."""

    id: str
    kind: MovementKind
    product_ref: Optional[str]
    quantity: int
    unit_price: Decimal
    party_refs: tuple[PartyRef, ...] = ()
    product_name: str = "-"
    batch_id: Optional[str] = None
    movement_number: Optional[str] = None
    timestamp: Optional[datetime] = None
    timestamp_raw: str = ""
    location_from: Optional[str] = None
    location_to: Optional[str] = None
    note: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None

    @property
    def value(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def grouping_key(self) -> str:
        return self.batch_id or self.movement_number or self.id

    @property
    def is_return(self) -> bool:
        reason = (self.reason or "").lower()
        return any(marker in reason for marker in RETURN_REASON_MARKERS)


@dataclass(frozen=True)
class Payment:
    """A settlement payment. Positive amounts settle, negative are refunds."""

    id: str
    amount: Decimal
    party_refs: tuple[PartyRef, ...] = ()
    number: Optional[str] = None
    timestamp: Optional[datetime] = None
    timestamp_raw: str = ""
    method: Optional[str] = None
    note: Optional[str] = None
    status: Optional[str] = None


Transaction = Union[Movement, Payment]


@dataclass(frozen=True)
class IngestResult:
    """Typed records recovered from one or more source results."""

    movements: tuple[Movement, ...] = ()
    payments: tuple[Payment, ...] = ()
    issues: tuple[RecordIssue, ...] = ()
    failed_sources: tuple[SourceKind, ...] = ()
    record_count: int = 0
    status: ResultStatus = field(default=ResultStatus.COMPLETE)

    @property
    def transactions(self) -> List[Transaction]:
        return [*self.movements, *self.payments]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the engine.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory looking for ``CONFIG_FILE_NAME``; the first match wins.

    Raises:
        FileNotFoundError: If no parent directory contains the file.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> EngineSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`EngineSettings`.

    Only ``[Source] BaseUrl`` is mandatory. Paging limits fall back to the
    package defaults and a relative ``[Export] OutputDir`` is anchored to
    ``base_path`` (or the working directory).

    Raises:
        KeyError: If the ``[Source]`` section or its ``BaseUrl`` is missing.
        ValueError: If a numeric option cannot be parsed or is not positive.
    """

    try:
        base_url = parser.get("Source", "BaseUrl")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    api_token = parser.get("Source", "ApiToken", fallback="") or None
    page_size = parser.getint("Source", "PageSize", fallback=DEFAULT_PAGE_SIZE)
    max_pages = parser.getint("Source", "MaxPages", fallback=DEFAULT_MAX_PAGES)
    page_timeout = parser.getfloat("Source", "PageTimeout", fallback=DEFAULT_PAGE_TIMEOUT)
    max_workers = parser.getint("Source", "MaxWorkers", fallback=DEFAULT_MAX_WORKERS)
    for name, value in (
        ("PageSize", page_size),
        ("MaxPages", max_pages),
        ("PageTimeout", page_timeout),
        ("MaxWorkers", max_workers),
    ):
        if value <= 0:
            raise ValueError(f"[Source] {name} must be positive, got {value}")

    export_dir = Path(parser.get("Export", "OutputDir", fallback="exports"))
    if not export_dir.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        export_dir = (base_path / export_dir).resolve()

    return EngineSettings(
        base_url=base_url.rstrip("/"),
        api_token=api_token,
        page_size=page_size,
        max_pages=max_pages,
        page_timeout=page_timeout,
        max_workers=max_workers,
        export_dir=export_dir,
    )


def load_settings(config_path: Optional[Path] = None) -> EngineSettings:
    """Find, read and parse the configuration in one step."""

    located = Path(find_config_file(config_path)).expanduser().resolve()
    settings = parse_settings(read_config(located), base_path=located.parent)
    log.info("Loaded engine settings from '%s'", located)
    return settings


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def _first_text(payload: Mapping[str, Any], *fields: str) -> Optional[str]:
    for name in fields:
        value = payload.get(name)
        if value is None or isinstance(value, (Mapping, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _first_present(payload: Mapping[str, Any], *fields: str) -> Any:
    for name in fields:
        value = payload.get(name)
        if value is not None and value != "":
            return value
    return None


def to_decimal(raw: Any, *, field_name: str) -> Decimal:
    """Convert a raw monetary value into a finite :class:`Decimal`.

    Floats are routed through ``str`` so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion.

    Raises:
        MalformedRecordError: If the value is not a finite number.
    """

    if isinstance(raw, bool):
        raise MalformedRecordError(f"{field_name} is not numeric: {raw!r}")
    try:
        value = raw if isinstance(raw, Decimal) else Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as exc:
        raise MalformedRecordError(f"{field_name} is not numeric: {raw!r}") from exc
    if not value.is_finite():
        raise MalformedRecordError(f"{field_name} is not finite: {raw!r}")
    return value


def to_quantity(raw: Any) -> int:
    """Convert a raw quantity into a non-negative integer.

    Raises:
        MalformedRecordError: If the quantity is missing or not integral.
        NegativeQuantityError: If the quantity is below zero.
    """

    if raw is None or raw == "":
        raise MalformedRecordError("quantity is missing")
    value = to_decimal(raw, field_name="quantity")
    if value != value.to_integral_value():
        raise MalformedRecordError(f"quantity is not a whole number: {raw!r}")
    quantity = int(value)
    if quantity < 0:
        raise NegativeQuantityError(f"quantity is negative: {quantity}")
    return quantity


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse an ISO-8601 value into an aware UTC-comparable ``datetime``.

    Naive values are assumed to be UTC so that mixed inputs remain sortable.
    Returns ``None`` when the value cannot be parsed.
    """

    if isinstance(raw, datetime):
        moment = raw
    elif isinstance(raw, date):
        moment = datetime(raw.year, raw.month, raw.day)
    elif isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


# ---------------------------------------------------------------------------
# Record deserialisation
# ---------------------------------------------------------------------------


def deserialize_movement(
    payload: Mapping[str, Any],
    kind: MovementKind,
    catalog: Optional[ProductCatalog] = None,
) -> Movement:
    """Convert a raw stock-movement payload into a :class:`Movement`.

    The embedded product may be a populated object (carrying the purchase
    price, display name and supplier) or a bare identifier. When a
    ``catalog`` is supplied, a bare identifier is replaced by the catalog's
    product record, and a catalog record also wins over a populated object
    with the same id. The unit price is taken from the movement first and
    from the product second; without either it is zero.

    The timestamp must be present, but a value that cannot be parsed is kept
    as ``None`` next to its raw text so later stages can report it.

    Args:
        payload (Mapping[str, Any]): Raw record from a movement source.
        kind (MovementKind): Whether the record came from the receipts or the
            write-offs source.
        catalog (ProductCatalog | None): Optional product catalog used to
            expand bare product ids.

    Returns:
        Movement: Typed movement with its party references already extracted.

    Raises:
        MalformedRecordError: If the id, quantity or timestamp is missing, or a
            numeric field cannot be parsed.
        NegativeQuantityError: If the quantity is negative.
    """

    record_id = _first_text(payload, "_id", "id", "movementId")
    if record_id is None:
        raise MalformedRecordError("movement has no identifier")

    product = _first_present(payload, "productId", "product")
    if catalog is not None:
        product = catalog.expand(product)
    if isinstance(product, Mapping):
        product_ref = _first_text(product, "_id", "id")
        product_name = _first_text(product, "nameRu", "name") or _first_text(payload, "productName") or "-"
    else:
        product = {}
        product_ref = _first_text(payload, "productId", "product")
        product_name = _first_text(payload, "productName") or "-"

    quantity = to_quantity(payload.get("quantity"))

    price_raw = _first_present(payload, "unitPrice", "purchasePrice")
    if price_raw is None:
        price_raw = product.get("purchasePrice")
    unit_price = Decimal("0") if price_raw is None else to_decimal(price_raw, field_name="unitPrice")
    if unit_price < 0:
        raise MalformedRecordError(f"unitPrice is negative: {unit_price}")

    timestamp_raw = _first_present(payload, "createdAt", "timestamp", "date")
    if timestamp_raw is None:
        raise MalformedRecordError("movement has no timestamp")

    return Movement(
        id=record_id,
        kind=kind,
        product_ref=product_ref,
        quantity=quantity,
        unit_price=unit_price,
        party_refs=extract_party_refs(payload, catalog),
        product_name=product_name,
        batch_id=_first_text(payload, "batchNumber", "batchId"),
        movement_number=_first_text(payload, "movementId"),
        timestamp=parse_timestamp(timestamp_raw),
        timestamp_raw=str(timestamp_raw),
        location_from=_first_text(payload, "fromLocation", "locationFrom"),
        location_to=_first_text(payload, "toLocation", "locationTo"),
        note=_first_text(payload, "notes", "note"),
        status=_first_text(payload, "status"),
        reason=_first_text(payload, "reason"),
    )


def deserialize_payment(payload: Mapping[str, Any]) -> Payment:
    """Convert a raw payment payload into a :class:`Payment`.

    The amount is kept with the sign the source reports: a positive amount
    is a payment to the party, a negative one a refund from it. The
    ``transactionDate`` field is preferred over the creation time.

    Args:
        payload (Mapping[str, Any]): Raw record from the payments source.

    Returns:
        Payment: Typed payment with its party references already extracted.

    Raises:
        MalformedRecordError: If the id, amount or timestamp is missing or
            unparseable.
    """

    record_id = _first_text(payload, "_id", "id", "paymentNumber")
    if record_id is None:
        raise MalformedRecordError("payment has no identifier")

    amount_raw = payload.get("amount")
    if amount_raw is None or amount_raw == "":
        raise MalformedRecordError("payment amount is missing")
    amount = to_decimal(amount_raw, field_name="amount")

    timestamp_raw = _first_present(payload, "transactionDate", "createdAt", "timestamp", "date")
    if timestamp_raw is None:
        raise MalformedRecordError("payment has no timestamp")

    return Payment(
        id=record_id,
        amount=amount,
        party_refs=extract_party_refs(payload),
        number=_first_text(payload, "paymentNumber", "number"),
        timestamp=parse_timestamp(timestamp_raw),
        timestamp_raw=str(timestamp_raw),
        method=_first_text(payload, "method"),
        note=_first_text(payload, "notes", "note"),
        status=_first_text(payload, "status"),
    )


def deserialize_directory(payloads: Iterable[Mapping[str, Any]]) -> PartyDirectory:
    """Build a :class:`PartyDirectory` from raw party (supplier) payloads.

    Entries without an identifier are skipped. A malformed opening balance is
    logged and treated as zero.

    Args:
        payloads (Iterable[Mapping[str, Any]]): Raw supplier records as
            returned by the directory endpoint.

    Returns:
        PartyDirectory: Directory in the order the entries were listed.
    """

    entries: List[PartyEntry] = []
    for payload in payloads:
        party_id = _first_text(payload, "id", "_id")
        if party_id is None:
            log.warning("Skipping party directory entry without an id: %r", payload.get("name"))
            continue
        opening_raw = payload.get("openingBalance")
        try:
            opening = Decimal("0") if opening_raw in (None, "") else to_decimal(opening_raw, field_name="openingBalance")
        except MalformedRecordError as exc:
            log.warning("Party '%s': %s; using 0", party_id, exc)
            opening = Decimal("0")
        entries.append(
            PartyEntry(
                party_id=party_id,
                display_name=normalize_name(payload.get("name")) or party_id,
                opening_balance=opening,
            )
        )
    log.debug("Loaded party directory with %d entries", len(entries))
    return PartyDirectory(entries)


def deserialize_catalog(payloads: Iterable[Any]) -> ProductCatalog:
    """Build a :class:`ProductCatalog` from raw product payloads.

    Non-object entries and products without an id are skipped.

    Args:
        payloads (Iterable[Any]): Records read from the products endpoint.

    Returns:
        ProductCatalog: Catalog keyed by product id.
    """

    products = [payload for payload in payloads if isinstance(payload, Mapping)]
    catalog = ProductCatalog(products)
    if len(catalog) < len(products):
        log.warning("Skipped %d product(s) without an id", len(products) - len(catalog))
    log.debug("Loaded product catalog with %d entries", len(catalog))
    return catalog


def _record_label(payload: Any) -> Optional[str]:
    if isinstance(payload, Mapping):
        return _first_text(payload, "_id", "id", "movementId", "paymentNumber")
    return None


def ingest_results(
    results: Mapping[SourceKind, "SourceResult"],
    *,
    catalog: Optional[ProductCatalog] = None,
) -> IngestResult:
    """Deserialise every record of the given source results.

    Records that cannot be used are skipped and reported as issues; a source
    that stopped on an error contributes a ``SourceUnavailable`` issue and
    turns the status to ``Partial``.

    Args:
        results (Mapping[SourceKind, SourceResult]): Fetch results keyed by
            transaction source. Only receipts, write-offs and payments are
            understood.
        catalog (ProductCatalog | None): Optional product catalog passed on
            to :func:`deserialize_movement`.

    Returns:
        IngestResult: Typed movements and payments in arrival order, plus
            the issues, failed sources and overall status.

    Raises:
        SourceUnavailable: If every source failed and not a single record was
            recovered.
    """

    movements: List[Movement] = []
    payments: List[Payment] = []
    issues: List[RecordIssue] = []
    failed: List[SourceKind] = []
    record_count = 0

    for kind, result in results.items():
        if result.state is FetchState.SOURCE_ERROR:
            failed.append(kind)
            issues.append(
                RecordIssue(
                    kind=IssueKind.SOURCE_UNAVAILABLE,
                    source=kind,
                    reason=f"stopped at page {result.pages_fetched + 1}: {result.error or 'no success'}",
                )
            )

        for payload in result.records:
            record_count += 1
            try:
                if not isinstance(payload, Mapping):
                    raise MalformedRecordError(f"record is not an object: {type(payload).__name__}")
                if kind is SourceKind.PAYMENTS:
                    payments.append(deserialize_payment(payload))
                else:
                    movements.append(deserialize_movement(payload, MOVEMENT_KIND_BY_SOURCE[kind], catalog))
            except NegativeQuantityError as exc:
                issues.append(RecordIssue(IssueKind.NEGATIVE_QUANTITY, str(exc), kind, _record_label(payload)))
            except MalformedRecordError as exc:
                issues.append(RecordIssue(IssueKind.MALFORMED_RECORD, str(exc), kind, _record_label(payload)))

    if results and len(failed) == len(results) and record_count == 0:
        log.error("All sources failed: %s", ", ".join(kind.value for kind in failed))
        raise SourceUnavailable("No source returned usable data", failed_sources=tuple(failed))

    status = ResultStatus.PARTIAL if failed else ResultStatus.COMPLETE
    if issues:
        log.warning("Ingestion finished with %d issue(s), status %s", len(issues), status.value)
    return IngestResult(
        movements=tuple(movements),
        payments=tuple(payments),
        issues=tuple(issues),
        failed_sources=tuple(failed),
        record_count=record_count,
        status=status,
    )


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _cell_timestamp(moment: Optional[datetime]) -> str:
    # openpyxl rejects timezone-aware datetimes
    return moment.isoformat() if moment is not None else ""


def ledger_rows(ledger: "SettlementLedger") -> List[list[object]]:
    """Serialise ledger lines into the ``LEDGER_COLUMNS`` ordering."""

    return [
        [
            line.line_type.value,
            line.document_number,
            _cell_timestamp(line.timestamp),
            line.credit,
            line.debit,
            line.running_balance,
            line.comment,
            line.status.value,
        ]
        for line in ledger.lines
    ]


def summary_rows(summaries: Sequence["PartySummary"]) -> List[list[object]]:
    """Serialise party summaries into the ``SUMMARY_COLUMNS`` ordering."""

    return [
        [
            str(summary.key),
            summary.display_name,
            summary.opening_balance,
            summary.incoming_total,
            summary.outgoing_total,
            summary.writeoff_total,
            summary.returns_total,
            summary.closing_balance,
            summary.debt,
            summary.units_received,
            summary.units_written_off,
            _cell_timestamp(summary.last_activity),
        ]
        for summary in summaries
    ]


def _write_sheet(workbook: Workbook, title: str, columns: Sequence[str], rows: Iterable[Sequence[object]]) -> None:
    sheet = workbook.create_sheet(title=title)
    bold_font = Font(bold=True)
    for col_idx, column_name in enumerate(columns, 1):
        cell = sheet.cell(row=1, column=col_idx)
        cell.value = column_name
        cell.font = bold_font
    for row in rows:
        sheet.append(list(row))


def _new_workbook() -> Workbook:
    workbook = openpyxl.Workbook()
    if "Sheet" in workbook.sheetnames:
        del workbook["Sheet"]
    return workbook


def save_workbook(workbook: Workbook, destination: Path) -> Path:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    return dest


def export_ledger_workbook(ledger: "SettlementLedger", destination: Path) -> Path:
    """Write a settlement ledger to an ``.xlsx`` file and return its path.

    The ``Ledger`` sheet holds one row per line; the ``Totals`` sheet holds
    the opening balance, credit and debit totals and the closing balance.
    """

    workbook = _new_workbook()
    _write_sheet(workbook, "Ledger", LEDGER_COLUMNS, ledger_rows(ledger))
    _write_sheet(
        workbook,
        "Totals",
        ("Party", "OpeningBalance", "TotalCredit", "TotalDebit", "ClosingBalance"),
        [[
            str(ledger.party_id),
            ledger.opening_balance,
            ledger.total_credit,
            ledger.total_debit,
            ledger.closing_balance,
        ]],
    )
    path = save_workbook(workbook, destination)
    log.info("Exported ledger for %s (%d lines) to '%s'", ledger.party_id, len(ledger.lines), path)
    return path


def export_summary_workbook(summaries: Sequence["PartySummary"], destination: Path) -> Path:
    """Write party summaries to an ``.xlsx`` file and return its path."""

    workbook = _new_workbook()
    _write_sheet(workbook, "Parties", SUMMARY_COLUMNS, summary_rows(summaries))
    path = save_workbook(workbook, destination)
    log.info("Exported %d party summaries to '%s'", len(summaries), path)
    return path
