"""Transport contract and shared event plumbing."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from memlink import __version__
from memlink.log_config import get_logger
from memlink.mcp.models import (
    EventHandler,
    ToolRequest,
    ToolResponse,
    TransportConfig,
    TransportEvent,
    TransportKind,
    TransportStatus,
)

log = get_logger("mcp.transport")

CLIENT_TYPE = "memlink-cli"
NOT_CONNECTED_CODE = -1


class Transport(Protocol):
    """Common contract for all transport implementations."""

    kind: TransportKind

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send(self, request: ToolRequest) -> ToolResponse: ...

    def is_connected(self) -> bool: ...

    def get_status(self) -> TransportStatus: ...

    def on(self, event: TransportEvent, handler: EventHandler) -> None: ...

    def off(self, event: TransportEvent, handler: EventHandler) -> None: ...

    async def dispose(self) -> None: ...


class BaseTransport:
    """Event registry, status bookkeeping and header assembly.

    Subclasses implement connect/disconnect/send and flip ``_connected``.
    """

    kind: TransportKind

    def __init__(self, config: TransportConfig):
        self.config = config
        self._connected = False
        self._disposed = False
        self._last_error: str | None = None
        self._last_ping: datetime | None = None
        self._latency: float | None = None
        self._reconnect_attempts = 0
        self._handlers: dict[TransportEvent, list[EventHandler]] = {}

    def build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Client-Type": CLIENT_TYPE,
            "X-Client-Version": __version__,
            **self.config.headers,
        }
        if self.config.auth is not None:
            headers.update(self.config.auth.as_headers())
        return headers

    def is_connected(self) -> bool:
        return self._connected

    def get_status(self) -> TransportStatus:
        return TransportStatus(
            connected=self.is_connected(),
            kind=self.kind,
            url=self.config.url,
            latency=self._latency,
            last_ping=self._last_ping,
            last_error=self._last_error,
            reconnect_attempts=self._reconnect_attempts,
        )

    def on(self, event: TransportEvent, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(TransportEvent(event), [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: TransportEvent, handler: EventHandler) -> None:
        handlers = self._handlers.get(TransportEvent(event), [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: TransportEvent, data: Any = None) -> None:
        # Copy so handlers may unregister themselves mid-dispatch
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(event, data)
            except Exception as e:
                log.error(f"[{self.kind.value}] Error in event handler for {event.value}: {e}")

    def _mark_disconnected(self, reason: str, data: Any = None) -> None:
        """Drop connection state after a network-class failure."""
        self._last_error = reason
        was_connected = self._connected
        self._connected = False
        if was_connected:
            log.warning(f"[{self.kind.value}] Connection lost: {reason}")
        self._emit(TransportEvent.DISCONNECTED, data)

    @staticmethod
    def not_connected() -> ToolResponse:
        return ToolResponse.failure(NOT_CONNECTED_CODE, "Transport not connected")
