"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest

from conftest import movement_payload, payment_payload
from party_ledger import constants, core_logic, data_manager
from party_ledger.constants import FetchState, IssueKind, MovementKind, ResultStatus, SourceKind
from party_ledger.errors import MalformedRecordError, NegativeQuantityError, SourceUnavailable
from party_ledger.resolver import InlineParty, PartyId, PartyKey, resolve
from party_ledger.sources import SourceResult


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    (tmp_path / "config.ini").write_text("[Source]\nBaseUrl = https://erp.test\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == tmp_path / "config.ini"


def test_read_config_missing_file_raises(tmp_path):
    """Reading a missing file should raise FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "absent.ini")


def test_parse_settings_reads_values_and_anchors_export_dir(config_factory):
    """Relative export directories are anchored to the config directory."""

    bundle = config_factory(page_size=25, max_pages=3, output_dir="out")
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.directory)

    assert settings.base_url == "https://erp.test/api"
    assert settings.api_token == "secret"
    assert settings.page_size == 25
    assert settings.max_pages == 3
    assert settings.page_timeout == constants.DEFAULT_PAGE_TIMEOUT
    assert settings.max_workers == constants.DEFAULT_MAX_WORKERS
    assert settings.export_dir == (bundle.directory / "out").resolve()


def test_parse_settings_requires_base_url():
    """A missing [Source] BaseUrl is a KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Export]\nOutputDir = x\n")

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


def test_parse_settings_rejects_non_positive_limits():
    """Paging limits must be positive."""

    parser = configparser.ConfigParser()
    parser.read_string("[Source]\nBaseUrl = https://erp.test\nMaxPages = 0\n")

    with pytest.raises(ValueError):
        data_manager.parse_settings(parser)


def test_parse_settings_treats_blank_token_as_none():
    """An empty ApiToken disables authentication."""

    parser = configparser.ConfigParser()
    parser.read_string("[Source]\nBaseUrl = https://erp.test/\nApiToken =\n")

    settings = data_manager.parse_settings(parser)

    assert settings.api_token is None
    assert settings.base_url == "https://erp.test"


def test_load_settings_uses_config_directory(config_factory):
    """load_settings should resolve relative paths next to the config file."""

    bundle = config_factory()

    settings = data_manager.load_settings(bundle.config_path)

    assert settings.export_dir == (bundle.directory / "exports").resolve()


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def test_to_decimal_avoids_binary_float_noise():
    """Floats are converted through their string form."""

    assert data_manager.to_decimal(0.1, field_name="x") == Decimal("0.1")


@pytest.mark.parametrize("raw", ["abc", True, "NaN", "Infinity"])
def test_to_decimal_rejects_non_numeric(raw):
    """Non-numeric and non-finite values are malformed."""

    with pytest.raises(MalformedRecordError):
        data_manager.to_decimal(raw, field_name="amount")


def test_to_quantity_rules():
    """Quantities must be present, whole and non-negative."""

    assert data_manager.to_quantity("7") == 7
    assert data_manager.to_quantity(3.0) == 3
    with pytest.raises(MalformedRecordError):
        data_manager.to_quantity(None)
    with pytest.raises(MalformedRecordError):
        data_manager.to_quantity("2.5")
    with pytest.raises(NegativeQuantityError):
        data_manager.to_quantity(-1)


def test_parse_timestamp_variants():
    """ISO strings, trailing Z, naive values and dates all become aware UTC."""

    assert data_manager.parse_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=UTC)
    assert data_manager.parse_timestamp("2024-03-01T10:00:00") == datetime(2024, 3, 1, 10, tzinfo=UTC)
    assert data_manager.parse_timestamp(date(2024, 3, 1)) == datetime(2024, 3, 1, tzinfo=UTC)
    assert data_manager.parse_timestamp("not a date") is None
    assert data_manager.parse_timestamp(None) is None


# ---------------------------------------------------------------------------
# Record deserialisation
# ---------------------------------------------------------------------------


def test_deserialize_movement_reads_populated_product():
    """Price and name come from the populated product when absent on the movement."""

    movement = data_manager.deserialize_movement(
        movement_payload("m1", quantity=4, price=12.5, batchNumber="B7", movementId="MV-1", status="draft"),
        MovementKind.RECEIPT,
    )

    assert movement.id == "m1"
    assert movement.kind is MovementKind.RECEIPT
    assert movement.product_ref == "prod-m1"
    assert movement.product_name == "Product m1"
    assert movement.unit_price == Decimal("12.5")
    assert movement.value == Decimal("50.0")
    assert movement.batch_id == "B7"
    assert movement.movement_number == "MV-1"
    assert movement.grouping_key == "B7"
    assert movement.timestamp == datetime(2024, 3, 1, 10, tzinfo=UTC)
    assert movement.status == "draft"
    assert movement.party_refs[0] == PartyId("sup-1")


def test_deserialize_movement_prefers_movement_level_price():
    """An explicit unitPrice on the movement wins over the product's price."""

    payload = movement_payload("m1", price="99", unitPrice="10", productId="prod-x", productName="Bare")

    movement = data_manager.deserialize_movement(payload, MovementKind.WRITE_OFF)

    assert movement.unit_price == Decimal("10")
    assert movement.product_ref == "prod-x"
    assert movement.product_name == "Bare"


def test_deserialize_movement_expands_bare_product_id_through_catalog():
    """A bare productId picks up supplier, price and name from the catalog."""

    catalog = data_manager.deserialize_catalog(
        [{"_id": "prod-1", "nameRu": "Widget", "purchasePrice": 20, "supplierId": "sup-9"}]
    )
    payload = movement_payload("m1", quantity=3, supplier=None, productId="prod-1")

    bare = data_manager.deserialize_movement(payload, MovementKind.RECEIPT)
    expanded = data_manager.deserialize_movement(payload, MovementKind.RECEIPT, catalog)

    assert bare.party_refs == ()
    assert bare.unit_price == Decimal("0")
    assert expanded.product_ref == "prod-1"
    assert expanded.product_name == "Widget"
    assert expanded.unit_price == Decimal("20")
    assert expanded.party_refs == (InlineParty("sup-9", None),)
    assert resolve(expanded) == PartyKey.for_id("sup-9")


def test_deserialize_catalog_skips_entries_without_id():
    """Catalog entries need an object with an id."""

    catalog = data_manager.deserialize_catalog([{"_id": "prod-1"}, {"name": "No Id"}, "junk", {"id": 7}])

    assert len(catalog) == 2
    assert "prod-1" in catalog
    assert "7" in catalog


def test_deserialize_movement_keeps_unparseable_timestamp_raw():
    """An unparseable timestamp is kept as raw text for later reporting."""

    movement = data_manager.deserialize_movement(movement_payload("m1", created_at="31/02/2024"), MovementKind.RECEIPT)

    assert movement.timestamp is None
    assert movement.timestamp_raw == "31/02/2024"


@pytest.mark.parametrize(
    "payload",
    [
        {"quantity": 1, "createdAt": "2024-01-01"},
        movement_payload("m1", created_at=None),
        movement_payload("m1", quantity=None),
        movement_payload("m1", price="-1"),
    ],
)
def test_deserialize_movement_rejects_malformed_payloads(payload):
    """Missing ids, timestamps, quantities or negative prices are malformed."""

    with pytest.raises(MalformedRecordError):
        data_manager.deserialize_movement(payload, MovementKind.RECEIPT)


def test_deserialize_payment_reads_populated_customer():
    """A populated customer object yields an inline party reference."""

    payment = data_manager.deserialize_payment(
        payment_payload(
            "p1",
            amount="-250.50",
            customer={"_id": "sup-4", "name": "Initech"},
            paymentNumber="PAY-4",
            method="cash",
            status="completed",
        )
    )

    assert payment.amount == Decimal("-250.50")
    assert payment.number == "PAY-4"
    assert payment.method == "cash"
    assert payment.party_refs == (InlineParty("sup-4", "Initech"),)
    assert payment.timestamp == datetime(2024, 3, 2, 10, tzinfo=UTC)


def test_deserialize_payment_requires_amount():
    """A payment without an amount cannot be used."""

    with pytest.raises(MalformedRecordError):
        data_manager.deserialize_payment(payment_payload("p1", amount=None))


def test_deserialize_directory_skips_entries_without_id():
    """Directory entries need an id; bad opening balances become zero."""

    directory = data_manager.deserialize_directory(
        [
            {"id": "sup-1", "name": " Acme Ltd ", "openingBalance": "1000000"},
            {"name": "No Id"},
            {"_id": "sup-2", "name": "Globex", "openingBalance": "lots"},
        ]
    )

    assert len(directory) == 2
    assert directory.get("sup-1").display_name == "Acme Ltd"
    assert directory.get("sup-1").opening_balance == Decimal("1000000")
    assert directory.get("sup-2").opening_balance == Decimal("0")


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def _result(kind, records, state=FetchState.LAST_PAGE_REACHED, pages=1, error=None):
    return SourceResult(kind=kind, records=tuple(records), state=state, pages_fetched=pages, error=error)


def test_ingest_results_collects_records_and_issues():
    """Bad records become issues while good ones are kept."""

    results = {
        SourceKind.RECEIPTS: _result(
            SourceKind.RECEIPTS,
            [movement_payload("r1"), movement_payload("neg", quantity=-2), "junk"],
        ),
        SourceKind.PAYMENTS: _result(SourceKind.PAYMENTS, [payment_payload("p1"), payment_payload("p2", amount="x")]),
    }

    ingested = data_manager.ingest_results(results)

    assert [m.id for m in ingested.movements] == ["r1"]
    assert [p.id for p in ingested.payments] == ["p1"]
    assert ingested.record_count == 5
    assert ingested.status is ResultStatus.COMPLETE
    kinds = [(issue.kind, issue.record_id) for issue in ingested.issues]
    assert (IssueKind.NEGATIVE_QUANTITY, "neg") in kinds
    assert (IssueKind.MALFORMED_RECORD, None) in kinds
    assert (IssueKind.MALFORMED_RECORD, "p2") in kinds
    assert [txn.id for txn in ingested.transactions] == ["r1", "p1"]


def test_ingest_results_passes_catalog_to_movements():
    """Movements ingested with a catalog resolve through their product."""

    results = {
        SourceKind.WRITE_OFFS: _result(
            SourceKind.WRITE_OFFS, [movement_payload("w1", supplier=None, productId="prod-1")]
        ),
    }
    catalog = data_manager.deserialize_catalog([{"_id": "prod-1", "supplierId": "sup-9"}])

    ingested = data_manager.ingest_results(results, catalog=catalog)

    assert resolve(ingested.movements[0]) == PartyKey.for_id("sup-9")


def test_ingest_results_marks_partial_on_source_error():
    """A source that stopped on an error makes the result partial."""

    results = {
        SourceKind.RECEIPTS: _result(
            SourceKind.RECEIPTS, [movement_payload("r1")], state=FetchState.SOURCE_ERROR, pages=1, error="boom"
        ),
        SourceKind.PAYMENTS: _result(SourceKind.PAYMENTS, []),
    }

    ingested = data_manager.ingest_results(results)

    assert ingested.status is ResultStatus.PARTIAL
    assert ingested.failed_sources == (SourceKind.RECEIPTS,)
    issue = ingested.issues[0]
    assert issue.kind is IssueKind.SOURCE_UNAVAILABLE
    assert "stopped at page 2" in issue.reason
    assert "boom" in issue.describe()


def test_ingest_results_raises_when_nothing_usable():
    """All sources failing with no records raises SourceUnavailable."""

    results = {
        kind: _result(kind, [], state=FetchState.SOURCE_ERROR, pages=0, error="down")
        for kind in (SourceKind.RECEIPTS, SourceKind.PAYMENTS)
    }

    with pytest.raises(SourceUnavailable):
        data_manager.ingest_results(results)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _sample_ledger():
    payment = data_manager.deserialize_payment(payment_payload("p1", amount="300000", paymentNumber="PAY-1"))
    receipt = data_manager.deserialize_movement(
        movement_payload("r1", quantity=10, price="50000"), MovementKind.RECEIPT
    )
    return core_logic.build_ledger(PartyKey.for_id("sup-1"), [payment], [receipt], Decimal("1000000"))


def test_ledger_rows_follow_column_order():
    """Ledger rows should line up with LEDGER_COLUMNS."""

    rows = data_manager.ledger_rows(_sample_ledger())

    assert len(rows[0]) == len(data_manager.LEDGER_COLUMNS)
    assert rows[0][:2] == ["paymentIn", "PAY-1"]
    assert rows[0][3] == Decimal("300000")
    assert rows[0][5] == Decimal("800000")
    assert rows[1][4] == Decimal("500000")


def test_export_ledger_workbook_writes_sheets(tmp_path):
    """The exported workbook should contain a bold header and a totals sheet."""

    path = data_manager.export_ledger_workbook(_sample_ledger(), tmp_path / "nested" / "ledger.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert workbook.sheetnames == ["Ledger", "Totals"]
    ledger_sheet = workbook["Ledger"]
    assert [cell.value for cell in ledger_sheet[1]] == list(data_manager.LEDGER_COLUMNS)
    assert ledger_sheet["A1"].font.bold
    assert ledger_sheet.max_row == 3
    totals = [cell.value for cell in workbook["Totals"][2]]
    assert totals[0] == "id:sup-1"
    assert Decimal(str(totals[-1])) == Decimal("800000")


def test_export_summary_workbook_writes_one_row_per_party(tmp_path, directory):
    """The summary export should contain one row per party."""

    summaries = core_logic.summarize_parties({}, directory=directory)

    path = data_manager.export_summary_workbook(summaries, tmp_path / "summary.xlsx")

    sheet = openpyxl.load_workbook(path)["Parties"]
    assert [cell.value for cell in sheet[1]] == list(data_manager.SUMMARY_COLUMNS)
    assert [sheet.cell(row=row, column=2).value for row in (2, 3)] == ["Acme Ltd", "Globex"]
