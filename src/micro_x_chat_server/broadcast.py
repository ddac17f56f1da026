from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger

from micro_x_chat_server.models import WireModel


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class SessionBroadcastRouter:
    """Binds each live connection to at most one session and fans events out to a session's subscribers.

    Events for one session go out in the order `publish` is called. Each send is bounded by
    `send_timeout`; a failed or timed-out send is logged, the connection is dropped from the
    session, and the other subscribers still receive the event.
    """

    def __init__(self, send_timeout: float = 10.0):
        self._send_timeout = send_timeout
        self._bindings: dict[Connection, str | None] = {}
        self._lock = asyncio.Lock()

    async def attach(self, connection: Connection) -> None:
        async with self._lock:
            self._bindings.setdefault(connection, None)

    async def bind(self, connection: Connection, session_id: str) -> None:
        async with self._lock:
            previous = self._bindings.get(connection)
            self._bindings[connection] = session_id
        if previous and previous != session_id:
            logger.debug(f"Connection rebound from session {previous} to {session_id}")

    async def detach(self, connection: Connection) -> str | None:
        async with self._lock:
            return self._bindings.pop(connection, None)

    def session_of(self, connection: Connection) -> str | None:
        return self._bindings.get(connection)

    def subscribers(self, session_id: str) -> list[Connection]:
        return [conn for conn, sid in self._bindings.items() if sid == session_id]

    @property
    def connection_count(self) -> int:
        return len(self._bindings)

    async def send(self, connection: Connection, event: WireModel) -> bool:
        return await self._deliver(connection, event.to_wire())

    async def publish(self, session_id: str, event: WireModel) -> int:
        """Send to every subscriber of the session. Returns how many sends succeeded."""
        targets = self.subscribers(session_id)
        if not targets:
            logger.debug(f"No subscribers for session {session_id}; dropping {getattr(event, 'type', 'event')}")
            return 0
        payload = event.to_wire()
        results = await asyncio.gather(*(self._deliver(conn, payload) for conn in targets))
        return sum(1 for ok in results if ok)

    async def _deliver(self, connection: Connection, payload: dict) -> bool:
        try:
            await asyncio.wait_for(connection.send_json(payload), timeout=self._send_timeout)
            return True
        except Exception as ex:
            logger.warning(f"Failed to send {payload.get('type')} to connection: {type(ex).__name__}: {ex}")
            await self.detach(connection)
            return False
