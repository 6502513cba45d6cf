"""Websocket relay that streams exam record changes to connected views."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Mapping

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect

from examflow.permissions import SessionContext
from examflow.store import DocumentStore
from examflow.sync import ChangeSet, SyncBroadcaster, Topic

logger = structlog.get_logger(__name__)


def _change_message(change_set: ChangeSet) -> Dict[str, Any]:
    return {
        "type": "changes",
        "topic": change_set.topic.describe(),
        "changes": [
            {
                "docId": event.doc_id,
                "changeType": event.change_type.value,
                "doc": event.doc,
            }
            for event in change_set.changes
        ],
    }


class ExamWebSocketManager:
    """Relay broadcaster changes for one topic to a websocket client."""

    def __init__(self, broadcaster: SyncBroadcaster, store: DocumentStore) -> None:
        self._broadcaster = broadcaster
        self._store = store

    async def handle(self, websocket: WebSocket, topic: Topic, session: SessionContext) -> None:
        """Stream ``topic`` to ``websocket`` until the client disconnects.

        The subscription is opened before the snapshot is read so no change
        falls between the two; it is closed, and the session logged out, when
        the socket goes away.
        """

        await websocket.accept()
        await websocket.send_json({"event": "connected", "topic": topic.describe()})
        send_lock = asyncio.Lock()

        async def _send(payload: Mapping[str, Any]) -> None:
            async with send_lock:
                await websocket.send_json(dict(payload))

        async def _on_change(change_set: ChangeSet) -> None:
            await _send(_change_message(change_set))

        async def _on_status(live: bool) -> None:
            await _send({"type": "status", "live": live})

        subscription = self._broadcaster.subscribe(topic, _on_change, on_status=_on_status)
        log = logger.bind(topic=topic.describe(), actor_id=session.actor.id)
        try:
            if topic.record_id is not None:
                doc = await self._store.get_by_id(topic.collection, topic.record_id)
                docs = [doc] if doc else []
            else:
                docs = await self._store.query(topic.collection, topic.listen_filter())
            await _send({"type": "snapshot", "docs": docs})
            await _send({"type": "status", "live": subscription.is_live})
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        except Exception as exc:  # pragma: no cover - unexpected transport error
            log.debug("exams_ws_receive_error", error=str(exc))
        finally:
            subscription.close()
            session.logout()
            log.debug("exams_ws_closed")


__all__ = ["ExamWebSocketManager"]
