"""HTTP client for the remote full-text search index.

The index is expected to answer ``GET {SEARCH_API_URL}/indexes/{index}/query``
with either a JSON list of hits or an object carrying ``hits``.  Failures put
the client in a short cooldown during which :meth:`is_ready` reports
``False`` so callers go straight to their local fallback.

The index is fed by posting batches of records to
``POST {SEARCH_API_URL}/indexes/{index}/documents`` (see
:func:`sync_search_index`).
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import quote, urljoin

import requests
import structlog
from prometheus_client import Counter

from examflow.config import Settings
from examflow.errors import SearchDegradedError
from examflow.search import SEARCH_COLLECTIONS, SEARCHABLE_FIELDS
from examflow.store import DocumentStore
from examflow.time_utils import now_iso

logger = structlog.get_logger(__name__)

SEARCH_SERVICE_FAILURES = Counter(
    "examflow_search_service_failures_total",
    "Remote search calls that failed",
    ("reason",),
)

DEFAULT_COOLDOWN_SECONDS = 30.0
DEFAULT_INDEX_TIMEOUT_SECONDS = 30.0
INDEX_BATCH_SIZE = 500


class HttpSearchService:
    """Implements ``is_ready()`` and ``query(index, text)`` over HTTP."""

    def __init__(
        self,
        base_url: Optional[str],
        *,
        api_key: Optional[str] = None,
        auth_header: str = "Authorization",
        hits_per_page: int = 20,
        timeout: float = 2.0,
        cooldown: float = DEFAULT_COOLDOWN_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") + "/" if base_url else None
        self._api_key = api_key
        self._auth_header = auth_header
        self._hits_per_page = max(1, hits_per_page)
        self._timeout = timeout
        self._cooldown = cooldown
        self._session = session or requests.Session()
        self._unavailable_until = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpSearchService":
        return cls(
            settings.search_api_url,
            api_key=settings.search_api_key,
            auth_header=settings.search_auth_header,
            hits_per_page=settings.search_hits_per_page,
            timeout=settings.search_timeout,
        )

    @property
    def configured(self) -> bool:
        return self._base_url is not None

    def is_ready(self) -> bool:
        return self.configured and time.monotonic() >= self._unavailable_until

    def mark_unavailable(self, reason: str) -> None:
        self._unavailable_until = time.monotonic() + self._cooldown
        SEARCH_SERVICE_FAILURES.labels(reason=reason).inc()

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {"Accept": "application/json"}
        if self._api_key:
            headers[self._auth_header] = self._api_key
        return headers

    def _url(self, index_name: str, action: str = "query") -> str:
        if self._base_url is None:
            raise SearchDegradedError("SEARCH_API_URL is not configured")
        return urljoin(self._base_url, f"indexes/{quote(index_name, safe='')}/{action}")

    def query_blocking(self, index_name: str, text: str) -> List[Dict[str, Any]]:
        url = self._url(index_name)
        try:
            resp = self._session.get(
                url,
                params={"q": text, "hitsPerPage": self._hits_per_page},
                headers=self._headers(),
                timeout=self._timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.Timeout as exc:
            self.mark_unavailable("timeout")
            logger.warning("search_service_timeout", index=index_name)
            raise SearchDegradedError("remote search timed out") from exc
        except (requests.RequestException, ValueError) as exc:
            self.mark_unavailable("error")
            logger.warning("search_service_failed", index=index_name, error=str(exc))
            raise SearchDegradedError(f"remote search failed: {exc}") from exc

        if isinstance(payload, Mapping):
            raw = payload.get("hits") or payload.get("results") or []
        elif isinstance(payload, list):
            raw = payload
        else:
            raw = []
        return [dict(item) for item in raw if isinstance(item, Mapping)]

    async def query(self, index_name: str, text: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.query_blocking, index_name, text)

    def index_documents_blocking(
        self,
        index_name: str,
        records: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = INDEX_BATCH_SIZE,
    ) -> int:
        """Upsert ``records`` into ``index_name`` in batches; returns the count sent.

        Indexing failures raise without touching the query cooldown, since a
        rejected batch says nothing about whether searches are answered.
        """

        url = self._url(index_name, "documents")
        headers = dict(self._headers())
        headers["Content-Type"] = "application/json"
        sent = 0
        batch_size = max(1, batch_size)
        for start in range(0, len(records), batch_size):
            batch = [dict(item) for item in records[start : start + batch_size]]
            try:
                resp = self._session.post(
                    url,
                    json=batch,
                    headers=headers,
                    timeout=max(self._timeout, DEFAULT_INDEX_TIMEOUT_SECONDS),
                )
                resp.raise_for_status()
            except requests.RequestException as exc:
                SEARCH_SERVICE_FAILURES.labels(reason="index").inc()
                logger.warning(
                    "search_index_push_failed",
                    index=index_name,
                    sent=sent,
                    error=str(exc),
                )
                raise SearchDegradedError(f"indexing {index_name} failed after {sent} records: {exc}") from exc
            sent += len(batch)
        logger.info("search_index_pushed", index=index_name, count=sent)
        return sent

    async def index_documents(
        self,
        index_name: str,
        records: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = INDEX_BATCH_SIZE,
    ) -> int:
        return await asyncio.to_thread(
            self.index_documents_blocking, index_name, records, batch_size=batch_size
        )

    async def check_connection(self, index_name: str) -> bool:
        """Issue an empty query to confirm the index answers; clears any cooldown."""

        if not self.configured:
            return False
        self._unavailable_until = 0.0
        try:
            await self.query(index_name, "")
        except SearchDegradedError:
            return False
        return True


def search_record(doc: Mapping[str, Any], kind: str, *, updated: Optional[str] = None) -> Dict[str, Any]:
    """Project a stored document onto the fields the index searches."""

    record: Dict[str, Any] = {"objectID": str(doc["id"]), "id": doc["id"]}
    for name in SEARCHABLE_FIELDS[kind]:
        value = doc.get(name)
        if value is not None:
            record[name] = value
    record["_tags"] = [kind]
    record["_updated"] = updated or now_iso()
    return record


async def sync_search_index(
    store: DocumentStore,
    service: HttpSearchService,
    kinds: Iterable[str],
    *,
    batch_size: int = INDEX_BATCH_SIZE,
) -> Dict[str, int]:
    """Push every stored document of each kind to its index.

    Returns the number of records sent per kind.  Documents without an ``id``
    are skipped.  A failing batch raises :class:`SearchDegradedError` and
    leaves later kinds unsent.
    """

    updated = now_iso()
    counts: Dict[str, int] = {}
    for kind in kinds:
        if kind not in SEARCH_COLLECTIONS:
            raise ValueError(f"Unsupported search kind: {kind}")
        docs = await store.query(SEARCH_COLLECTIONS[kind])
        records = [search_record(doc, kind, updated=updated) for doc in docs if doc.get("id")]
        counts[kind] = await service.index_documents(kind, records, batch_size=batch_size)
    return counts


__all__ = [
    "HttpSearchService",
    "INDEX_BATCH_SIZE",
    "SEARCH_SERVICE_FAILURES",
    "search_record",
    "sync_search_index",
]
