"""Live visitor presence over WebSockets.

``PresenceHub`` keeps the open presence sockets, applies socket events to the
visitor store and pushes ``liveCountUpdate`` frames to every client whenever
the live count may have changed. ``PresenceReconciler`` runs the periodic
inactivity sweep and retention purge.

Wire format, both directions::

    {"event": "<name>", "data": {...}}
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import WebSocket, WebSocketDisconnect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from folio_shield.core.settings import settings
from folio_shield.db.session import SessionLocal
from folio_shield.models.visitor import SESSION_ID_MAX_LENGTH
from folio_shield.services.visitors import VisitorService, get_visitor_service
from folio_shield.services.workers import IntervalWorker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Server -> client
EVENT_CONNECTED = "connected"
EVENT_LIVE_COUNT = "liveCountUpdate"
# Client -> server
EVENT_JOIN = "visitorJoin"
EVENT_PAGE_CHANGE = "pageChange"
EVENT_ACTIVITY = "activityUpdate"
EVENT_LEAVE = "visitorLeave"


class PresenceHub:
    """Registry of connected presence sockets and their visitor sessions."""

    def __init__(
        self,
        visitor_service: VisitorService | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self.visitors = visitor_service or get_visitor_service()
        self.session_factory = session_factory
        self._connections: dict[str, WebSocket] = {}
        # socket_id -> session_id, known once the socket sent visitorJoin
        self._sessions: dict[str, str] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def session_for(self, socket_id: str) -> str | None:
        return self._sessions.get(socket_id)

    async def run_db(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a visitor-store call in a worker thread with its own session."""

        def _call() -> T:
            with self.session_factory() as db:
                return fn(db, *args, **kwargs)

        return await asyncio.to_thread(_call)

    # --- Connection lifecycle ------------------------------------------------------
    async def connect(self, websocket: WebSocket) -> str:
        """Accept the socket, register it and send it its id and the live count.

        The ``connected`` frame carries the socket id so the client can pass it
        as ``socketId`` to the HTTP track endpoint.
        """
        await websocket.accept()
        socket_id = uuid.uuid4().hex
        self._connections[socket_id] = websocket
        try:
            await websocket.send_json({"event": EVENT_CONNECTED, "data": {"socketId": socket_id}})
            count = await self.live_count()
            await websocket.send_json({"event": EVENT_LIVE_COUNT, "data": {"liveViewers": count}})
        except (SQLAlchemyError, WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning("Failed to send initial presence frames to %s: %s", socket_id, e)
        return socket_id

    async def disconnect(self, socket_id: str) -> None:
        """Forget the socket and mark its session inactive.

        A session reconnected on another socket keeps its new socket id and is
        left active.
        """
        self._connections.pop(socket_id, None)
        session_id = self._sessions.pop(socket_id, None)
        try:
            if session_id:
                await self.run_db(self.visitors.mark_inactive, session_id, owner_socket_id=socket_id)
            else:
                await self.run_db(self.visitors.mark_inactive_by_socket, socket_id)
        except SQLAlchemyError as e:
            logger.error("Failed to mark socket %s inactive: %s", socket_id, e)
            return
        await self.broadcast_live_count()

    # --- Client events -------------------------------------------------------------
    async def handle_event(
        self,
        socket_id: str,
        event: str | None,
        data: dict[str, Any] | None,
        *,
        ip_address: str = "unknown",
        user_agent: str = "",
    ) -> None:
        data = data or {}
        try:
            if event == EVENT_JOIN:
                await self.join(
                    socket_id,
                    data.get("sessionId"),
                    data.get("page"),
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            elif event in (EVENT_PAGE_CHANGE, EVENT_ACTIVITY):
                await self.touch(socket_id, data.get("page"))
            elif event == EVENT_LEAVE:
                await self.leave(socket_id)
            else:
                logger.debug("Ignoring unknown presence event %r from %s", event, socket_id)
        except SQLAlchemyError as e:
            logger.error("Presence event %s from %s failed: %s", event, socket_id, e)

    async def join(
        self,
        socket_id: str,
        session_id: Any,
        page: Any = None,
        *,
        ip_address: str = "unknown",
        user_agent: str = "",
    ) -> None:
        if not isinstance(session_id, str) or not session_id.strip():
            logger.debug("visitorJoin without sessionId from %s", socket_id)
            return
        if len(session_id) > SESSION_ID_MAX_LENGTH:
            logger.debug("visitorJoin with oversized sessionId from %s", socket_id)
            return
        self._sessions[socket_id] = session_id
        await self.run_db(
            self.visitors.track,
            session_id,
            page=page if isinstance(page, str) else None,
            socket_id=socket_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.broadcast_live_count()

    async def touch(self, socket_id: str, page: Any = None) -> None:
        """Refresh activity for the socket's session (page change or heartbeat)."""
        session_id = self._sessions.get(socket_id)
        if session_id is None:
            return
        await self.run_db(
            self.visitors.update_activity,
            session_id,
            page=page if isinstance(page, str) else None,
            socket_id=socket_id,
        )

    async def leave(self, socket_id: str) -> None:
        session_id = self._sessions.pop(socket_id, None)
        if session_id:
            await self.run_db(self.visitors.mark_inactive, session_id)
        else:
            await self.run_db(self.visitors.mark_inactive_by_socket, socket_id)
        await self.broadcast_live_count()

    # --- Broadcast -----------------------------------------------------------------
    async def live_count(self) -> int:
        return await self.run_db(self.visitors.get_live_count)

    async def broadcast_live_count(self) -> int | None:
        """Push the recomputed live count to every socket.

        Failures are logged and swallowed; sockets that cannot be written to
        are dropped from the registry.
        """
        try:
            count = await self.live_count()
        except SQLAlchemyError as e:
            logger.error("Failed to compute live count: %s", e)
            return None

        message = {"event": EVENT_LIVE_COUNT, "data": {"liveViewers": count}}
        dead: list[str] = []
        for socket_id, websocket in list(self._connections.items()):
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug("Dropping presence socket %s: %s", socket_id, e)
                dead.append(socket_id)
        for socket_id in dead:
            self._connections.pop(socket_id, None)
        return count


class PresenceReconciler(IntervalWorker):
    """Deactivates idle sessions, purges expired ones and rebroadcasts the count."""

    name = "presence-reconciler"

    def __init__(self, hub: PresenceHub, interval: float | None = None) -> None:
        super().__init__(interval or settings.presence_sweep_interval_seconds)
        self.hub = hub

    async def tick(self) -> None:
        deactivated = await self.hub.run_db(self.hub.visitors.sweep_inactive)
        purged = await self.hub.run_db(self.hub.visitors.purge_expired)
        if deactivated or purged:
            logger.info(
                "Presence sweep: %d session(s) marked inactive, %d purged",
                deactivated,
                purged,
            )
        await self.hub.broadcast_live_count()


_presence_hub: PresenceHub | None = None


def get_presence_hub() -> PresenceHub:
    """Return the process-wide presence hub."""
    global _presence_hub
    if _presence_hub is None:
        _presence_hub = PresenceHub()
    return _presence_hub
