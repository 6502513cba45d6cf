"""Fan-out of store change streams to subscribed views.

One :class:`SyncBroadcaster` serves one collection.  Each distinct topic (a
single record id, or an equality filter over the collection) owns one store
listener which is opened with the first subscription and closed with the
last.  Changes reach subscribers in store delivery order; an identical change
for the same document is delivered once.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

import structlog
from prometheus_client import Counter

from examflow.errors import StoreUnavailableError
from examflow.models import ChangeType
from examflow.store import ChangeEvent, ChangeStream, DocumentStore

logger = structlog.get_logger(__name__)

STREAM_DROPS_TOTAL = Counter(
    "examflow_sync_stream_drops_total",
    "Change streams lost while subscribers were attached",
    ("collection",),
)


@dataclass(frozen=True)
class Topic:
    """What a subscription listens to: one record, or a filtered collection view."""

    collection: str
    record_id: Optional[str] = None
    criteria: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def for_record(cls, collection: str, record_id: str) -> "Topic":
        return cls(collection=collection, record_id=str(record_id))

    @classmethod
    def for_filter(cls, collection: str, criteria: Optional[Mapping[str, Any]] = None) -> "Topic":
        items = []
        for key, value in (criteria or {}).items():
            if isinstance(value, enum.Enum):
                value = value.value
            items.append((str(key), value))
        return cls(collection=collection, criteria=tuple(sorted(items)))

    def listen_filter(self) -> Dict[str, Any]:
        if self.record_id is not None:
            return {"id": self.record_id}
        return dict(self.criteria)

    def describe(self) -> str:
        if self.record_id is not None:
            return f"{self.collection}/{self.record_id}"
        if not self.criteria:
            return self.collection
        terms = ",".join(f"{key}={value}" for key, value in self.criteria)
        return f"{self.collection}?{terms}"


@dataclass(frozen=True)
class ChangeSet:
    topic: Topic
    changes: Tuple[ChangeEvent, ...]


ChangeCallback = Callable[[ChangeSet], Union[None, Awaitable[None]]]
StatusCallback = Callable[[bool], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by :meth:`SyncBroadcaster.subscribe`.

    ``close()`` stops delivery immediately, including in the middle of a
    fan-out, and may be called more than once.  The handle is also callable
    and usable as a context manager.
    """

    def __init__(
        self,
        broadcaster: "SyncBroadcaster",
        topic: Topic,
        on_change: ChangeCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self.topic = topic
        self.on_change = on_change
        self.on_status = on_status
        self._broadcaster = broadcaster
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def is_live(self) -> bool:
        return self._active and self._broadcaster.is_live(self.topic)

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._broadcaster._release(self)

    unsubscribe = close

    def __call__(self) -> None:
        self.close()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class _TopicState:
    subscribers: List[Subscription] = field(default_factory=list)
    stream: Optional[ChangeStream] = None
    task: Optional["asyncio.Task[None]"] = None
    live: bool = False
    fingerprints: Dict[str, str] = field(default_factory=dict)


def _fingerprint(event: ChangeEvent) -> str:
    if event.change_type is ChangeType.REMOVED:
        return ChangeType.REMOVED.value
    body = json.dumps(event.doc, sort_keys=True, separators=(",", ":"), default=str)
    return body


class SyncBroadcaster:
    """Relays store changes for one collection to every live subscriber."""

    def __init__(self, store: DocumentStore, collection: str) -> None:
        self._store = store
        self.collection = collection
        self._states: Dict[Topic, _TopicState] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def topic(self, target: Union[str, Mapping[str, Any], Topic, None] = None) -> Topic:
        """Resolve a record id, filter mapping or :class:`Topic` for this collection."""

        if isinstance(target, Topic):
            if target.collection != self.collection:
                raise ValueError(
                    f"topic {target.describe()} does not belong to collection {self.collection}"
                )
            return target
        if target is None or isinstance(target, Mapping):
            return Topic.for_filter(self.collection, target)
        return Topic.for_record(self.collection, str(target))

    def subscribe(
        self,
        target: Union[str, Mapping[str, Any], Topic, None],
        on_change: ChangeCallback,
        *,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        """Register ``on_change`` for ``target`` and return its subscription handle.

        Must be called from a running event loop.  Delivery starts with the
        next change; nothing that happened before the call is replayed.  If
        the topic's stream was lost, subscribing opens a fresh one.
        """

        topic = self.topic(target)
        loop = asyncio.get_running_loop()
        state = self._states.setdefault(topic, _TopicState())
        subscription = Subscription(self, topic, on_change, on_status)
        state.subscribers.append(subscription)
        if state.stream is None or state.stream.closed:
            self._open(topic, state, loop)
        logger.debug(
            "sync_subscribed",
            topic=topic.describe(),
            subscribers=len(state.subscribers),
        )
        return subscription

    def is_live(self, target: Union[str, Mapping[str, Any], Topic, None]) -> bool:
        state = self._states.get(self.topic(target))
        return bool(state and state.live)

    def subscriber_count(self, target: Union[str, Mapping[str, Any], Topic, None]) -> int:
        state = self._states.get(self.topic(target))
        return len(state.subscribers) if state else 0

    @property
    def topics(self) -> List[Topic]:
        return list(self._states)

    async def notify(self, topic: Topic, change_set: ChangeSet) -> None:
        """Deliver ``change_set`` to the live subscribers of ``topic``."""

        state = self._states.get(topic)
        if state is None:
            return
        fresh = []
        for event in change_set.changes:
            fingerprint = _fingerprint(event)
            if state.fingerprints.get(event.doc_id) == fingerprint:
                continue
            state.fingerprints[event.doc_id] = fingerprint
            fresh.append(event)
        if not fresh:
            return
        delivery = ChangeSet(topic=topic, changes=tuple(fresh))
        for subscription in list(state.subscribers):
            if not subscription.active:
                continue
            try:
                result = subscription.on_change(delivery)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("sync_subscriber_failed", topic=topic.describe())

    async def aclose(self) -> None:
        """Close every subscription and wait for the listeners to stop."""

        tasks = []
        for state in list(self._states.values()):
            if state.task is not None:
                tasks.append(state.task)
            for subscription in list(state.subscribers):
                subscription.close()
        self._states.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Listener lifecycle
    # ------------------------------------------------------------------
    def _open(self, topic: Topic, state: _TopicState, loop: asyncio.AbstractEventLoop) -> None:
        state.stream = self._store.listen(self.collection, topic.listen_filter())
        state.fingerprints.clear()
        was_live = state.live
        state.live = True
        state.task = loop.create_task(self._pump(topic, state, state.stream))
        if not was_live and len(state.subscribers) > 1:
            loop.create_task(self._announce(topic, state, True))

    async def _pump(self, topic: Topic, state: _TopicState, stream: ChangeStream) -> None:
        try:
            async for event in stream:
                await self.notify(topic, ChangeSet(topic=topic, changes=(event,)))
        except StoreUnavailableError as exc:
            STREAM_DROPS_TOTAL.labels(collection=self.collection).inc()
            logger.warning("sync_stream_dropped", topic=topic.describe(), error=str(exc))
        finally:
            stream.close()
        if self._states.get(topic) is state and state.stream is stream:
            # The stream ended without the last subscriber leaving.
            await self._announce(topic, state, False)

    async def _announce(self, topic: Topic, state: _TopicState, live: bool) -> None:
        state.live = live
        for subscription in list(state.subscribers):
            if not subscription.active or subscription.on_status is None:
                continue
            try:
                result = subscription.on_status(live)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("sync_status_callback_failed", topic=topic.describe())

    def _release(self, subscription: Subscription) -> None:
        topic = subscription.topic
        state = self._states.get(topic)
        if state is None:
            return
        if subscription in state.subscribers:
            state.subscribers.remove(subscription)
        if state.subscribers:
            return
        self._states.pop(topic, None)
        stream, task = state.stream, state.task
        state.stream = None
        state.task = None
        state.live = False
        if stream is not None:
            stream.close()
        if task is not None and not task.done():
            task.cancel()
        logger.debug("sync_topic_closed", topic=topic.describe())


__all__ = [
    "ChangeSet",
    "Subscription",
    "SyncBroadcaster",
    "Topic",
    "STREAM_DROPS_TOTAL",
]
