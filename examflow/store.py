"""Document store adapters and the change feed consumed by the broadcaster.

Two adapters implement :class:`DocumentStore`: a dict-backed store for tests
and development, and a SQLAlchemy store keeping each document as JSON text in
a single ``documents`` table.  Both publish every write to an in-process
:class:`ChangeFeed` from which :meth:`DocumentStore.listen` streams are cut.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import json
import time
import uuid
import weakref
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    Tuple,
    TypeVar,
)

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from examflow.config import Settings
from examflow.errors import RecordNotFoundError, StoreUnavailableError
from examflow.models import ChangeType

logger = structlog.get_logger(__name__)

Document = Dict[str, Any]
T = TypeVar("T")


@dataclass(frozen=True)
class ChangeEvent:
    """One change delivered by a store listener."""

    doc_id: str
    doc: Optional[Document]
    change_type: ChangeType


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    return value


def matches_filter(doc: Optional[Mapping[str, Any]], criteria: Optional[Mapping[str, Any]]) -> bool:
    """Return ``True`` when every key of ``criteria`` equals the field in ``doc``."""

    if doc is None:
        return False
    if not criteria:
        return True
    return all(_plain(doc.get(key)) == _plain(value) for key, value in criteria.items())


_CLOSED = object()


class ChangeStream:
    """Async iterator over :class:`ChangeEvent` items for one listener.

    Registration happens in the constructor so nothing written after
    :meth:`DocumentStore.listen` returns can be missed.  A dropped connection
    surfaces as :class:`StoreUnavailableError` from ``__anext__``.
    """

    def __init__(
        self,
        feed: "ChangeFeed",
        collection: str,
        criteria: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.collection = collection
        self.criteria: Dict[str, Any] = dict(criteria or {})
        self._feed = feed
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False
        feed.register(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def fail(self, exc: BaseException) -> None:
        if not self._closed:
            self._queue.put_nowait(exc)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed.unregister(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ChangeStream":
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self.close()
            raise item
        return item


class ChangeFeed:
    """Routes committed writes to the streams listening on a collection."""

    def __init__(self) -> None:
        self._streams: Dict[str, Set[ChangeStream]] = defaultdict(set)

    def register(self, stream: ChangeStream) -> None:
        self._streams[stream.collection].add(stream)

    def unregister(self, stream: ChangeStream) -> None:
        streams = self._streams.get(stream.collection)
        if not streams:
            return
        streams.discard(stream)
        if not streams:
            self._streams.pop(stream.collection, None)

    def listener_count(self, collection: Optional[str] = None) -> int:
        if collection is not None:
            return len(self._streams.get(collection, ()))
        return sum(len(streams) for streams in self._streams.values())

    def publish(
        self,
        collection: str,
        doc_id: str,
        doc: Optional[Document],
        change_type: ChangeType,
        *,
        previous: Optional[Document] = None,
    ) -> None:
        for stream in list(self._streams.get(collection, ())):
            now_matches = change_type is not ChangeType.REMOVED and matches_filter(doc, stream.criteria)
            was_matching = matches_filter(previous, stream.criteria)
            if now_matches:
                kind = change_type
                if change_type is ChangeType.MODIFIED and previous is not None and not was_matching:
                    kind = ChangeType.ADDED
                stream.push(ChangeEvent(doc_id, copy.deepcopy(doc), kind))
            elif was_matching:
                # Left the filtered view (or was deleted).
                stream.push(ChangeEvent(doc_id, None, ChangeType.REMOVED))

    def disconnect(self, reason: str = "change stream disconnected") -> int:
        """Fail every open stream; returns how many were dropped."""

        dropped = 0
        for streams in list(self._streams.values()):
            for stream in list(streams):
                stream.fail(StoreUnavailableError(reason))
                dropped += 1
        self._streams.clear()
        return dropped


class DocumentStore(Protocol):
    """Asynchronous document store contract."""

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    async def create(self, collection: str, data: Mapping[str, Any]) -> str:
        ...

    async def update(self, collection: str, doc_id: str, partial: Mapping[str, Any]) -> None:
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    async def query(
        self, collection: str, criteria: Optional[Mapping[str, Any]] = None
    ) -> List[Document]:
        ...

    def listen(
        self, collection: str, criteria: Optional[Mapping[str, Any]] = None
    ) -> ChangeStream:
        ...


def _new_id() -> str:
    return uuid.uuid4().hex[:20]


def _normalise(data: Mapping[str, Any]) -> Document:
    return json.loads(json.dumps({key: _plain(value) for key, value in data.items()}))


class MemoryDocumentStore:
    """Dict-backed store preserving insertion order within each collection."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = defaultdict(dict)
        self.feed = ChangeFeed()

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def create(self, collection: str, data: Mapping[str, Any]) -> str:
        doc = _normalise(data)
        doc_id = str(doc.get("id") or _new_id())
        doc["id"] = doc_id
        self._collections[collection][doc_id] = doc
        self.feed.publish(collection, doc_id, doc, ChangeType.ADDED)
        return doc_id

    async def update(self, collection: str, doc_id: str, partial: Mapping[str, Any]) -> None:
        docs = self._collections.get(collection, {})
        current = docs.get(doc_id)
        if current is None:
            raise RecordNotFoundError(f"{collection}/{doc_id} does not exist")
        previous = copy.deepcopy(current)
        current.update(_normalise(partial))
        current["id"] = doc_id
        self.feed.publish(collection, doc_id, current, ChangeType.MODIFIED, previous=previous)

    async def delete(self, collection: str, doc_id: str) -> None:
        previous = self._collections.get(collection, {}).pop(doc_id, None)
        if previous is None:
            return
        self.feed.publish(collection, doc_id, None, ChangeType.REMOVED, previous=previous)

    async def query(
        self, collection: str, criteria: Optional[Mapping[str, Any]] = None
    ) -> List[Document]:
        return [
            copy.deepcopy(doc)
            for doc in self._collections.get(collection, {}).values()
            if matches_filter(doc, criteria)
        ]

    def listen(
        self, collection: str, criteria: Optional[Mapping[str, Any]] = None
    ) -> ChangeStream:
        return ChangeStream(self.feed, collection, criteria)

    def disconnect(self, reason: str = "change stream disconnected") -> int:
        """Simulate the loss of the change-stream connection."""

        dropped = self.feed.disconnect(reason)
        logger.warning("document_store_disconnected", dropped=dropped, reason=reason)
        return dropped


metadata = sa.MetaData()

documents = sa.Table(
    "documents",
    metadata,
    sa.Column("pk", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("collection", sa.Text, nullable=False),
    sa.Column("doc_id", sa.Text, nullable=False),
    sa.Column("data", sa.Text, nullable=False),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.Column("updated_at", sa.Float, nullable=False),
    sa.UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc"),
    sqlite_autoincrement=True,
)
sa.Index("idx_documents_collection", documents.c.collection)


class SqlDocumentStore:
    """SQLAlchemy-backed store; blocking calls run in a worker thread."""

    def __init__(self, engine: Engine, *, create_schema: bool = True) -> None:
        self._engine = engine
        self.feed = ChangeFeed()
        self._write_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
            weakref.WeakKeyDictionary()
        )
        if create_schema:
            metadata.create_all(engine)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SqlDocumentStore":
        engine = sa.create_engine(settings.database_url, **settings.engine_options())
        return cls(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def _write_lock(self) -> asyncio.Lock:
        """Lock held across a write and its publish, so events follow commit order."""

        loop = asyncio.get_running_loop()
        lock = self._write_locks.get(loop)
        if lock is None:
            lock = self._write_locks[loop] = asyncio.Lock()
        return lock

    async def _run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as exc:
            logger.error("document_store_failed", operation=operation, error=str(exc))
            raise StoreUnavailableError(
                "The record store is unavailable; please retry.",
                details={"operation": operation},
            ) from exc

    # ------------------------------------------------------------------
    # Blocking helpers
    # ------------------------------------------------------------------
    def _select_one(self, collection: str, doc_id: str) -> Optional[Document]:
        stmt = sa.select(documents.c.data).where(
            documents.c.collection == collection, documents.c.doc_id == doc_id
        )
        with self._engine.connect() as conn:
            row = conn.execute(stmt).first()
        if row is None:
            return None
        return json.loads(row[0])

    def _insert(self, collection: str, doc: Document) -> None:
        now = time.time()
        with self._engine.begin() as conn:
            conn.execute(
                sa.insert(documents).values(
                    collection=collection,
                    doc_id=doc["id"],
                    data=json.dumps(doc),
                    created_at=now,
                    updated_at=now,
                )
            )

    def _merge(
        self, collection: str, doc_id: str, partial: Document
    ) -> Tuple[Document, Document]:
        where = (documents.c.collection == collection, documents.c.doc_id == doc_id)
        with self._engine.begin() as conn:
            row = conn.execute(sa.select(documents.c.data).where(*where)).first()
            if row is None:
                raise RecordNotFoundError(f"{collection}/{doc_id} does not exist")
            previous = json.loads(row[0])
            merged = {**previous, **partial, "id": doc_id}
            conn.execute(
                sa.update(documents)
                .where(*where)
                .values(data=json.dumps(merged), updated_at=time.time())
            )
        return previous, merged

    def _remove(self, collection: str, doc_id: str) -> Optional[Document]:
        where = (documents.c.collection == collection, documents.c.doc_id == doc_id)
        with self._engine.begin() as conn:
            row = conn.execute(sa.select(documents.c.data).where(*where)).first()
            if row is None:
                return None
            conn.execute(sa.delete(documents).where(*where))
        return json.loads(row[0])

    def _select_all(self, collection: str) -> List[Document]:
        stmt = (
            sa.select(documents.c.data)
            .where(documents.c.collection == collection)
            .order_by(documents.c.pk)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [json.loads(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # DocumentStore API
    # ------------------------------------------------------------------
    async def get_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        return await self._run("get_by_id", self._select_one, collection, doc_id)

    async def create(self, collection: str, data: Mapping[str, Any]) -> str:
        doc = _normalise(data)
        doc_id = str(doc.get("id") or _new_id())
        doc["id"] = doc_id
        async with self._write_lock():
            await self._run("create", self._insert, collection, doc)
            self.feed.publish(collection, doc_id, doc, ChangeType.ADDED)
        return doc_id

    async def update(self, collection: str, doc_id: str, partial: Mapping[str, Any]) -> None:
        async with self._write_lock():
            previous, merged = await self._run(
                "update", self._merge, collection, doc_id, _normalise(partial)
            )
            self.feed.publish(collection, doc_id, merged, ChangeType.MODIFIED, previous=previous)

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._write_lock():
            previous = await self._run("delete", self._remove, collection, doc_id)
            if previous is not None:
                self.feed.publish(collection, doc_id, None, ChangeType.REMOVED, previous=previous)

    async def query(
        self, collection: str, criteria: Optional[Mapping[str, Any]] = None
    ) -> List[Document]:
        docs = await self._run("query", self._select_all, collection)
        return [doc for doc in docs if matches_filter(doc, criteria)]

    def listen(
        self, collection: str, criteria: Optional[Mapping[str, Any]] = None
    ) -> ChangeStream:
        return ChangeStream(self.feed, collection, criteria)

    def disconnect(self, reason: str = "change stream disconnected") -> int:
        dropped = self.feed.disconnect(reason)
        logger.warning("document_store_disconnected", dropped=dropped, reason=reason)
        return dropped


__all__ = [
    "ChangeEvent",
    "ChangeStream",
    "ChangeFeed",
    "DocumentStore",
    "MemoryDocumentStore",
    "SqlDocumentStore",
    "documents",
    "matches_filter",
    "metadata",
]
