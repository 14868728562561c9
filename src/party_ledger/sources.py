"""Paginated transaction sources.

A page fetcher is any callable ``fetch(kind, page, limit, filters)`` that
returns a mapping shaped like::

    {"success": True, "data": [...], "pagination": {"page": 1, "pages": 4, "total": 312}}

:class:`TransactionSource` drives a fetcher page by page until one of the
terminal :class:`~party_ledger.constants.FetchState` values is reached:

* ``sourceError`` when a page reports no ``success``, raises, or times out;
* ``lastPageReached`` when ``page >= pagination.pages``, or, for sources
  that send no pagination metadata, when a page comes back shorter than the
  page size;
* ``capReached`` when the page cap is hit first.

A failed page keeps what was read so far; the caller sees the
``sourceError`` state and decides what to do with partial data. Nothing is
retried here.
"""

from __future__ import annotations

import threading
import time
from concurrent import futures
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import requests

from . import log
from .constants import (
    DEFAULT_MAX_PAGES,
    DEFAULT_MAX_WORKERS,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PAGE_TIMEOUT,
    FetchState,
    SourceKind,
)
from .errors import FetchCancelled, SourceUnavailable


PageFetcher = Callable[[SourceKind, int, int, Mapping[str, Any]], Mapping[str, Any]]

# How often a waiting fetch wakes up to look at its cancellation token.
_CANCEL_POLL_SECONDS = 0.05


class CancellationToken:
    """Shared flag a caller sets to abort in-flight fetches."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise FetchCancelled("Fetch cancelled by caller")


@dataclass(frozen=True)
class SourceResult:
    """Everything one source yielded before its fetch loop terminated."""

    kind: SourceKind
    records: tuple[Any, ...]
    state: FetchState
    pages_fetched: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is not FetchState.SOURCE_ERROR


def _total_pages(pagination: Any) -> Optional[int]:
    if not isinstance(pagination, Mapping):
        return None
    raw = pagination.get("pages", pagination.get("totalPages"))
    try:
        return max(int(raw), 1)
    except (TypeError, ValueError):
        return None


class TransactionSource:
    """Uniform cursor over a paginated page fetcher."""

    def __init__(
        self,
        fetch_page: PageFetcher,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        page_timeout: Optional[float] = DEFAULT_PAGE_TIMEOUT,
    ) -> None:
        if page_size <= 0 or max_pages <= 0:
            raise ValueError("page_size and max_pages must be positive")
        self._fetch_page = fetch_page
        self.page_size = page_size
        self.max_pages = max_pages
        self.page_timeout = page_timeout

    def fetch_all(
        self,
        kind: SourceKind,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SourceResult:
        """Read every page of ``kind`` and return the collected records.

        Raises:
            FetchCancelled: If ``cancel_token`` is cancelled before the loop
                terminates. Records read so far are discarded.
        """

        token = cancel_token or CancellationToken()
        query = dict(filters or {})
        records: List[Any] = []
        page = 1
        executor = futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"page-{kind.value}")
        try:
            while True:
                token.raise_if_cancelled()
                try:
                    payload = self._await_page(executor, token, kind, page, query)
                except FetchCancelled:
                    raise
                except futures.TimeoutError:
                    return self._stop_on_error(kind, records, page, f"page {page} timed out after {self.page_timeout}s")
                except Exception as exc:
                    return self._stop_on_error(kind, records, page, f"page {page} failed: {exc}")

                if not isinstance(payload, Mapping) or not payload.get("success"):
                    return self._stop_on_error(kind, records, page, f"page {page} reported no success")

                items = payload.get("data") or payload.get("items") or []
                if not isinstance(items, list):
                    return self._stop_on_error(kind, records, page, f"page {page} carried no record list")
                records.extend(items)
                log.debug("%s page %d returned %d records", kind.value, page, len(items))

                state = self._terminal_state(page, len(items), payload.get("pagination"))
                if state is not None:
                    log.info("%s: %s after %d page(s), %d records", kind.value, state.value, page, len(records))
                    return SourceResult(kind=kind, records=tuple(records), state=state, pages_fetched=page)
                page += 1
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _await_page(
        self,
        executor: futures.ThreadPoolExecutor,
        token: CancellationToken,
        kind: SourceKind,
        page: int,
        query: Mapping[str, Any],
    ) -> Any:
        future = executor.submit(self._fetch_page, kind, page, self.page_size, query)
        deadline = None if self.page_timeout is None else time.monotonic() + self.page_timeout
        while True:
            if token.cancelled:
                future.cancel()
                raise FetchCancelled(f"Fetch of {kind.value} cancelled at page {page}")
            wait = _CANCEL_POLL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    raise futures.TimeoutError()
                wait = min(wait, remaining)
            done, _ = futures.wait([future], timeout=wait)
            if done:
                return future.result()

    def _terminal_state(self, page: int, count: int, pagination: Any) -> Optional[FetchState]:
        total_pages = _total_pages(pagination)
        if total_pages is not None:
            if page >= total_pages:
                return FetchState.LAST_PAGE_REACHED
        elif count < self.page_size:
            # No usable metadata: a short page is the last one.
            return FetchState.LAST_PAGE_REACHED
        if page >= self.max_pages:
            return FetchState.CAP_REACHED
        return None

    @staticmethod
    def _stop_on_error(kind: SourceKind, records: Sequence[Any], page: int, message: str) -> SourceResult:
        log.warning("%s: %s; keeping %d records", kind.value, message, len(records))
        return SourceResult(
            kind=kind,
            records=tuple(records),
            state=FetchState.SOURCE_ERROR,
            pages_fetched=page - 1,
            error=message,
        )


def fetch_sources(
    source: TransactionSource,
    kinds: Sequence[SourceKind],
    filters: Optional[Mapping[str, Any]] = None,
    *,
    cancel_token: Optional[CancellationToken] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> Dict[SourceKind, SourceResult]:
    """Fetch independent sources concurrently, one worker per kind.

    Results are keyed in the order ``kinds`` were given.

    Raises:
        FetchCancelled: If the token is cancelled while any source is still
            being read.
    """

    token = cancel_token or CancellationToken()
    ordered = list(dict.fromkeys(kinds))
    workers = max(1, min(max_workers, len(ordered) or 1))
    with futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="source") as executor:
        pending = {kind: executor.submit(source.fetch_all, kind, filters, cancel_token=token) for kind in ordered}
        results: Dict[SourceKind, SourceResult] = {}
        cancelled: Optional[FetchCancelled] = None
        for kind, future in pending.items():
            try:
                results[kind] = future.result()
            except FetchCancelled as exc:
                token.cancel()
                cancelled = cancelled or exc
    if cancelled is not None:
        raise cancelled
    return results


# ---------------------------------------------------------------------------
# HTTP provider
# ---------------------------------------------------------------------------


ENDPOINTS: Mapping[SourceKind, tuple[str, Mapping[str, str]]] = {
    SourceKind.RECEIPTS: ("/stock-movements", {"type": "in"}),
    SourceKind.WRITE_OFFS: ("/stock-movements", {"type": "out"}),
    SourceKind.PAYMENTS: ("/payments", {}),
    SourceKind.PRODUCTS: ("/products", {}),
}
PARTIES_ENDPOINT = "/suppliers"


class HttpPageProvider:
    """Page fetcher backed by the ERP REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_PAGE_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._session = session or requests.Session()
        self._timeout = timeout

    def __call__(self, kind: SourceKind, page: int, limit: int, filters: Mapping[str, Any]) -> Dict:
        path, fixed = ENDPOINTS[kind]
        params = {**filters, **fixed, "page": page, "limit": limit}
        return self._request("GET", path, params=params)

    def fetch_parties(self, *, limit: int = 200) -> List[Dict]:
        """Return the raw party directory (suppliers with opening balances).

        Raises:
            SourceUnavailable: If the request fails or reports no success.
        """

        try:
            payload = self._request("GET", PARTIES_ENDPOINT, params={"activeOnly": "true", "limit": limit})
        except requests.RequestException as exc:
            raise SourceUnavailable(f"Party directory unavailable: {exc}") from exc
        if not payload.get("success"):
            raise SourceUnavailable("Party directory reported no success")
        parties = payload.get("suppliers") or payload.get("data") or []
        log.info("Loaded %d parties from directory", len(parties))
        return parties

    def _request(self, method: str, path: str, *, params: Optional[Dict] = None) -> Dict:
        url = f"{self._base_url}{path}"
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        log.debug("ERP request %s %s params=%s", method, url, params)
        response = self._session.request(method, url, headers=headers, params=params, timeout=self._timeout)
        response.raise_for_status()
        return response.json()
