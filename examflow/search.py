"""Tiered search: remote full-text index first, local substring scan as fallback.

``SearchRouter.search`` never raises.  Every failure of the remote tier
(not ready, error, timeout, not configured) resolves to a scan of the local
snapshot tagged ``source=local`` with the reason attached.  Calls arriving
within the debounce window supersede the pending one, and a result computed
for a superseded call is discarded.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import structlog
from prometheus_client import Counter

from examflow.errors import SearchDegradedError
from examflow.models import EXAMS, PATIENTS

logger = structlog.get_logger(__name__)

SEARCH_REQUESTS_TOTAL = Counter(
    "examflow_search_requests_total",
    "Searches served, by the tier that produced the hits",
    ("source",),
)

DEFAULT_DEBOUNCE_MS = 300
DEFAULT_TIMEOUT_MS = 2000

# Fields scanned by the local fallback, per entity kind.
SEARCHABLE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "patients": ("lastName", "firstName", "gender", "profession", "address", "phone", "email"),
    "exams": ("patientLastName", "patientFirstName", "id", "patientId", "admissionType", "currentStage"),
}

# Store collection holding each searchable kind.
SEARCH_COLLECTIONS: Dict[str, str] = {"patients": PATIENTS, "exams": EXAMS}

Hit = Dict[str, Any]
RemoteSearchFn = Callable[[str], Union[Awaitable[Sequence[Mapping[str, Any]]], Sequence[Mapping[str, Any]]]]


class SearchSource(str, enum.Enum):
    REMOTE = "remote"
    LOCAL = "local"
    NONE = "none"


@dataclass(frozen=True)
class SearchResult:
    query: str
    hits: Tuple[Hit, ...] = ()
    source: SearchSource = SearchSource.NONE
    reason: Optional[str] = None
    superseded: bool = False
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "hits": [dict(hit) for hit in self.hits],
            "source": self.source.value,
            "reason": self.reason,
            "superseded": self.superseded,
        }


class IndexedSearch:
    """Binds a search service (``is_ready`` / ``query``) to one index name."""

    def __init__(self, service: Any, index_name: str) -> None:
        self._service = service
        self.index_name = index_name

    async def __call__(self, text: str) -> Sequence[Mapping[str, Any]]:
        if not self._service.is_ready():
            raise SearchDegradedError(f"search index {self.index_name} is not ready")
        hits = self._service.query(self.index_name, text)
        if inspect.isawaitable(hits):
            hits = await hits
        return hits


def local_search(
    query: str,
    snapshot: Iterable[Mapping[str, Any]],
    kind: str,
) -> List[Hit]:
    """Case-insensitive substring scan of ``snapshot`` in its original order."""

    needle = query.strip().lower()
    if not needle:
        return []
    fields = SEARCHABLE_FIELDS.get(kind, ())
    hits: List[Hit] = []
    for item in snapshot:
        if not isinstance(item, Mapping):
            continue
        for name in fields:
            value = item.get(name)
            if value is None:
                continue
            if needle in str(value).lower():
                hits.append(dict(item))
                break
    return hits


@dataclass
class SearchRouter:
    """Routes one view's queries; keep one router per search box."""

    kind: str = "patients"
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    latest: Optional[SearchResult] = field(default=None, init=False)
    _sequence: int = field(default=0, init=False, repr=False)

    @property
    def sequence(self) -> int:
        return self._sequence

    async def search(
        self,
        query: Optional[str],
        *,
        remote_search_fn: Optional[RemoteSearchFn] = None,
        local_snapshot: Iterable[Mapping[str, Any]] = (),
        timeout_ms: Optional[int] = None,
        kind: Optional[str] = None,
    ) -> SearchResult:
        text = (query or "").strip()
        self._sequence += 1
        sequence = self._sequence
        if not text:
            result = SearchResult(query="", reason="empty_query", sequence=sequence)
            self.latest = result
            return result

        if self.debounce_ms > 0:
            await asyncio.sleep(self.debounce_ms / 1000.0)
            if sequence != self._sequence:
                logger.debug("search_debounced", query=text, sequence=sequence)
                return self._superseded(text, sequence)

        result = await self._execute(
            text,
            sequence,
            remote_search_fn,
            local_snapshot,
            (timeout_ms if timeout_ms is not None else self.timeout_ms) / 1000.0,
            kind or self.kind,
        )
        if sequence != self._sequence:
            logger.debug("search_result_discarded", query=text, sequence=sequence, latest=self._sequence)
            return self._superseded(text, sequence)
        self.latest = result
        return result

    async def _execute(
        self,
        text: str,
        sequence: int,
        remote_search_fn: Optional[RemoteSearchFn],
        local_snapshot: Iterable[Mapping[str, Any]],
        timeout: float,
        kind: str,
    ) -> SearchResult:
        if remote_search_fn is None:
            reason = "remote_not_configured"
        else:
            try:
                hits = remote_search_fn(text)
                if inspect.isawaitable(hits):
                    hits = await asyncio.wait_for(hits, timeout)
                remote_hits = tuple(dict(hit) for hit in hits or () if isinstance(hit, Mapping))
            except SearchDegradedError as exc:
                reason = f"remote_not_ready: {exc}"
            except asyncio.TimeoutError:
                reason = "remote_timeout"
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                reason = f"remote_error: {exc}"
            else:
                SEARCH_REQUESTS_TOTAL.labels(source=SearchSource.REMOTE.value).inc()
                return SearchResult(
                    query=text,
                    hits=remote_hits,
                    source=SearchSource.REMOTE,
                    sequence=sequence,
                )

        logger.info("search_fallback_local", query=text, kind=kind, reason=reason)
        SEARCH_REQUESTS_TOTAL.labels(source=SearchSource.LOCAL.value).inc()
        return SearchResult(
            query=text,
            hits=tuple(local_search(text, local_snapshot, kind)),
            source=SearchSource.LOCAL,
            reason=reason,
            sequence=sequence,
        )

    def _superseded(self, text: str, sequence: int) -> SearchResult:
        return SearchResult(query=text, reason="superseded", superseded=True, sequence=sequence)


__all__ = [
    "SEARCHABLE_FIELDS",
    "SEARCH_COLLECTIONS",
    "IndexedSearch",
    "SearchResult",
    "SearchRouter",
    "SearchSource",
    "local_search",
]
