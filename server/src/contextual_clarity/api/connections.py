"""Transport adapter and registry for live session connections."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from starlette.websockets import WebSocket, WebSocketState

from contextual_clarity.api.protocol import CloseCode

if TYPE_CHECKING:
    from contextual_clarity.api.session_handler import ConnectionState

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the session handler needs from a transport.

    ``state`` is the per-connection handle owned by the handler.
    """

    state: ConnectionState

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int, reason: str = "") -> None: ...


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the Connection protocol."""

    def __init__(self, websocket: WebSocket, state: ConnectionState) -> None:
        self.websocket = websocket
        self.state = state
        self.close_code: int | None = None

    @property
    def closed(self) -> bool:
        return self.close_code is not None

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)

    async def close(self, code: int, reason: str = "") -> None:
        """Close the socket. Idempotent."""
        if self.close_code is not None:
            return
        self.close_code = code
        if self.websocket.application_state != WebSocketState.DISCONNECTED:
            await self.websocket.close(code=code, reason=reason)


class ConnectionRegistry:
    """Tracks live connections so they can be closed on shutdown."""

    def __init__(self) -> None:
        self._connections: dict[int, WebSocketConnection] = {}

    def register(self, connection: WebSocketConnection) -> None:
        self._connections[id(connection)] = connection

    def unregister(self, connection: WebSocketConnection) -> None:
        """Remove a connection. Idempotent."""
        self._connections.pop(id(connection), None)

    def count(self) -> int:
        return len(self._connections)

    def for_session(self, session_id: str) -> list[WebSocketConnection]:
        return [c for c in self._connections.values() if c.state.session_id == session_id]

    async def close_all(
        self,
        code: int = CloseCode.SERVER_SHUTDOWN,
        reason: str = "Server shutting down",
    ) -> int:
        """Close every live connection and return how many were closed."""
        connections = list(self._connections.values())
        for connection in connections:
            try:
                await connection.close(code, reason)
            except Exception as e:
                logger.warning(f"Failed to close connection for {connection.state.session_id}: {e}")
        self._connections.clear()
        if connections:
            logger.info(f"Closed {len(connections)} live connection(s) with code {code}")
        return len(connections)
