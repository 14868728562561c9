"""Shared pytest fixtures and utilities for party ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from party_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from party_ledger.resolver import PartyDirectory, PartyEntry  # noqa: E402

_CONFIG_TEMPLATE = (
    "[Source]\n"
    "BaseUrl = {base_url}\n"
    "ApiToken = {api_token}\n"
    "PageSize = {page_size}\n"
    "MaxPages = {max_pages}\n\n"
    "[Export]\n"
    "OutputDir = {output_dir}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    base_url: str
    output_dir: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes config.ini bundles on demand."""

    def _create_config(
        *,
        base_url: str = "https://erp.test/api",
        api_token: str = "secret",
        page_size: int = 50,
        max_pages: int = 10,
        output_dir: str = "exports",
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                base_url=base_url,
                api_token=api_token,
                page_size=page_size,
                max_pages=max_pages,
                output_dir=output_dir,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            base_url=base_url,
            output_dir=output_dir,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


# ---------------------------------------------------------------------------
# Raw payload factories
# ---------------------------------------------------------------------------


def movement_payload(
    record_id: str,
    *,
    quantity: Any = 1,
    price: Any = "100",
    supplier: Any = "sup-1",
    created_at: Any = "2024-03-01T10:00:00Z",
    **extra: Any,
) -> Dict[str, Any]:
    """Build a raw stock-movement record shaped like the ERP feed."""

    payload: Dict[str, Any] = {
        "_id": record_id,
        "quantity": quantity,
        "productId": {"_id": f"prod-{record_id}", "nameRu": f"Product {record_id}", "purchasePrice": price},
        "createdAt": created_at,
    }
    if supplier is not None:
        payload["supplierId"] = supplier
    payload.update(extra)
    return payload


def payment_payload(
    record_id: str,
    *,
    amount: Any = "100",
    customer: Any = "sup-1",
    date: Any = "2024-03-02T10:00:00Z",
    **extra: Any,
) -> Dict[str, Any]:
    """Build a raw payment record shaped like the ERP feed."""

    payload: Dict[str, Any] = {"_id": record_id, "amount": amount, "transactionDate": date}
    if customer is not None:
        payload["customer"] = customer
    payload.update(extra)
    return payload


def page(records: List[Any], *, pages: Optional[int] = None, success: bool = True) -> Dict[str, Any]:
    """Wrap records into a page response, with pagination when ``pages`` is set."""

    response: Dict[str, Any] = {"success": success, "data": records}
    if pages is not None:
        response["pagination"] = {"pages": pages, "total": len(records) * pages}
    return response


class ScriptedFetcher:
    """Page fetcher replaying canned responses per source kind.

    Each script entry is either a page mapping or an exception instance to
    raise. Requests past the end of a script return an empty last page.
    """

    def __init__(self, scripts: Mapping[constants.SourceKind, List[Any]]) -> None:
        self.scripts = {kind: list(entries) for kind, entries in scripts.items()}
        self.calls: List[tuple[constants.SourceKind, int, int, Dict[str, Any]]] = []

    def __call__(self, kind, page_number, limit, filters):
        self.calls.append((kind, page_number, limit, dict(filters)))
        entries = self.scripts.get(kind, [])
        if page_number > len(entries):
            return page([], pages=page_number)
        entry = entries[page_number - 1]
        if isinstance(entry, BaseException):
            raise entry
        return entry

    def pages_requested(self, kind: constants.SourceKind) -> List[int]:
        return [number for called, number, _, _ in self.calls if called is kind]


@pytest.fixture
def payloads() -> Mapping[str, Callable[..., Any]]:
    """Expose the raw payload builders to tests."""

    return {"movement": movement_payload, "payment": payment_payload, "page": page}


@pytest.fixture
def fetcher_factory() -> Callable[..., ScriptedFetcher]:
    """Return a factory producing :class:`ScriptedFetcher` instances."""

    return ScriptedFetcher


@pytest.fixture
def directory() -> PartyDirectory:
    """Directory with two known suppliers."""

    return PartyDirectory(
        [
            PartyEntry("sup-1", "Acme Ltd", Decimal("1000")),
            PartyEntry("sup-2", "Globex", Decimal("0")),
        ]
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="ledger-cli", description="Ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a runtime context through the public API."""

    return core_logic.load_runtime_context(config_file)


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def engine_settings(tmp_path: Path) -> data_manager.EngineSettings:
    """Provide default settings for runtime context tests."""

    return data_manager.EngineSettings(
        base_url="https://erp.test/api",
        api_token=None,
        page_size=constants.DEFAULT_PAGE_SIZE,
        max_pages=constants.DEFAULT_MAX_PAGES,
        page_timeout=constants.DEFAULT_PAGE_TIMEOUT,
        max_workers=constants.DEFAULT_MAX_WORKERS,
        export_dir=tmp_path / "exports",
    )
