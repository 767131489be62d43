"""WebSocket transport: persistent duplex channel to the MCP endpoint.

Features:
- JSON-RPC 2.0 request/response correlation by message id
- Heartbeat via aiohttp autoping
- Bounded queue of requests while a reconnect is pending
- Reconnection with exponential backoff and jitter, independent of the
  transport manager's fallback chain
"""

from __future__ import annotations

import asyncio
import json
import random
from collections import deque
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

import aiohttp

from memlink.errors import ConfigurationError, ConnectionError, ProtocolError
from memlink.log_config import get_logger
from memlink.mcp.models import ToolRequest, ToolResponse, TransportConfig, TransportEvent, TransportKind
from memlink.mcp.transports.base import BaseTransport

log = get_logger("mcp.websocket")

MAX_QUEUED_MESSAGES = 100
HEARTBEAT_INTERVAL = 30.0  # seconds
NORMAL_CLOSURE = 1000


class WebSocketTransport(BaseTransport):
    """WebSocket transport over aiohttp."""

    kind = TransportKind.WEBSOCKET

    def __init__(self, config: TransportConfig):
        super().__init__(config)
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnecting = False
        self._message_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._queue: deque[tuple[int, ToolRequest]] = deque()

    def build_headers(self) -> dict[str, str]:
        headers = super().build_headers()
        headers.pop("Content-Type", None)
        return headers

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket; bounded by the configured timeout."""
        if self._disposed:
            raise ConfigurationError("Transport has been disposed")

        log.debug(f"Opening WebSocket to {self.config.url}")
        try:
            await asyncio.wait_for(self._open(), timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            await self._teardown_socket()
            self._last_error = "Connection timeout"
            self._emit(TransportEvent.ERROR, e)
            raise ConnectionError("Connection timeout") from e
        except (aiohttp.ClientError, OSError) as e:
            await self._teardown_socket()
            self._last_error = str(e) or type(e).__name__
            self._emit(TransportEvent.ERROR, e)
            raise ConnectionError(f"WebSocket connect failed: {self._last_error}") from e
        except asyncio.CancelledError:
            await self._teardown_socket()
            raise

        self._on_open()

    async def _open(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.build_headers())
        self._ws = await self._session.ws_connect(self.config.url, heartbeat=HEARTBEAT_INTERVAL)

    def _on_open(self) -> None:
        self._connected = True
        self._reconnect_attempts = 0
        self._reconnecting = False
        self._last_error = None
        self._last_ping = datetime.now(timezone.utc)
        self._reader_task = asyncio.create_task(self._read_loop(self._ws))
        log.info(f"WebSocket connected to {self.config.url}")
        self._flush_queue()
        self._emit(TransportEvent.CONNECTED)

    async def disconnect(self) -> None:
        """Close the socket with a normal closure; never reconnects."""
        self._cancel_reconnect()
        ws = self._ws
        self._ws = None
        await self._stop_reader()
        if ws is not None and not ws.closed:
            try:
                await ws.close(code=NORMAL_CLOSURE, message=b"Client disconnect")
            except (aiohttp.ClientError, OSError) as e:
                log.debug(f"Error closing WebSocket: {e}")
        await self._close_session()
        self._connected = False
        self._fail_pending("Transport disconnected")
        self._emit(TransportEvent.DISCONNECTED)

    async def dispose(self) -> None:
        self._disposed = True
        self._handlers.clear()
        await self.disconnect()

    def is_connected(self) -> bool:
        return self._connected and self._ws is not None and not self._ws.closed

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send(self, request: ToolRequest) -> ToolResponse:
        self._message_id += 1
        msg_id = self._message_id
        future = asyncio.get_running_loop().create_future()

        if not self.is_connected():
            if (
                self.config.reconnect.enabled
                and self._reconnecting
                and len(self._queue) < MAX_QUEUED_MESSAGES
            ):
                self._pending[msg_id] = future
                self._queue.append((msg_id, request))
                log.debug(f"Queued request {msg_id} ({request.name}) until reconnect")
                return await self._await_response(msg_id, future, queued=True)
            return self.not_connected()

        self._pending[msg_id] = future
        try:
            await self._ws.send_str(self._frame(msg_id, request))
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            self._pending.pop(msg_id, None)
            reason = str(e) or type(e).__name__
            await self._drop_socket(reason)
            self._emit(TransportEvent.ERROR, e)
            return ToolResponse.failure(-1, reason)

        return await self._await_response(msg_id, future)

    async def _await_response(self, msg_id: int, future: asyncio.Future, queued: bool = False) -> ToolResponse:
        started = perf_counter()
        try:
            response = await asyncio.wait_for(future, timeout=self.config.timeout)
        except asyncio.TimeoutError:
            reason = "Request timeout (queued)" if queued else "Request timeout"
            self._last_error = reason
            if not queued:
                await self._drop_socket(reason)
            self._emit(TransportEvent.ERROR, ConnectionError(reason))
            return ToolResponse.failure(-1, reason)
        finally:
            self._pending.pop(msg_id, None)
            self._discard_queued(msg_id)

        self._latency = (perf_counter() - started) * 1000
        return response

    @staticmethod
    def _frame(msg_id: int, request: ToolRequest) -> str:
        payload = request.to_dict()
        return json.dumps({"jsonrpc": "2.0", "id": msg_id, **payload})

    def _flush_queue(self) -> None:
        if not self.is_connected() or not self._queue:
            return
        log.debug(f"Flushing {len(self._queue)} queued request(s)")
        while self._queue:
            msg_id, request = self._queue.popleft()
            if msg_id in self._pending:
                asyncio.create_task(self._send_queued(msg_id, request))

    async def _send_queued(self, msg_id: int, request: ToolRequest) -> None:
        ws = self._ws
        if ws is None:
            error = "Transport not connected"
        else:
            try:
                await ws.send_str(self._frame(msg_id, request))
                return
            except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
                error = str(e) or type(e).__name__
        future = self._pending.pop(msg_id, None)
        if future is not None and not future.done():
            future.set_result(ToolResponse.failure(-1, error))

    def _discard_queued(self, msg_id: int) -> None:
        if self._queue:
            self._queue = deque(item for item in self._queue if item[0] != msg_id)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_result(ToolResponse.failure(-1, reason))
        self._pending.clear()
        self._queue.clear()

    # ------------------------------------------------------------------
    # Incoming traffic
    # ------------------------------------------------------------------

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._handle_message(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ws.exception()
                    self._last_error = str(error)
                    self._emit(TransportEvent.ERROR, error)
                    break
        finally:
            # An intentional disconnect detaches the socket before cancelling us
            if ws is self._ws:
                self._handle_close(ws.close_code)

    def _handle_message(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            log.warning(f"Failed to parse WebSocket message: {raw[:200]}")
            self._emit(TransportEvent.ERROR, ProtocolError("Malformed WebSocket message", code=-32700))
            return

        self._last_ping = datetime.now(timezone.utc)
        if not isinstance(message, dict):
            return

        msg_id = message.get("id")
        if msg_id is not None:
            future = self._pending.get(msg_id)
            if future is not None and not future.done():
                if message.get("error"):
                    future.set_result(ToolResponse.from_dict({"error": message["error"]}))
                else:
                    future.set_result(ToolResponse(result=message.get("result")))
            return

        if message.get("method"):
            # Server-initiated notification
            self._emit(TransportEvent.MESSAGE, message)

    def _handle_close(self, code: int | None) -> None:
        self._connected = False
        self._ws = None

        if code == NORMAL_CLOSURE or self._disposed:
            self._fail_pending("Transport disconnected")
            self._emit(TransportEvent.DISCONNECTED, {"code": code})
            return

        self._last_error = f"Connection closed: {code}"
        log.warning(f"WebSocket closed unexpectedly (code={code})")
        self._emit(TransportEvent.DISCONNECTED, {"code": code})

        policy = self.config.reconnect
        if not policy.enabled:
            self._fail_pending("Transport disconnected")
        elif self._reconnect_attempts >= policy.max_attempts:
            self._fail_pending("Max reconnection attempts reached")
        elif not self._reconnecting:
            self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter, capped at max_delay."""
        policy = self.config.reconnect
        delay = policy.base_delay * (2 ** (attempt - 1)) + random.uniform(0, policy.base_delay)
        return min(delay, policy.max_delay)

    def _schedule_reconnect(self) -> None:
        if self._disposed:
            return
        self._reconnecting = True
        self._reconnect_attempts += 1
        delay = self.backoff_delay(self._reconnect_attempts)
        log.info(f"Reconnecting WebSocket in {delay:.2f}s (attempt {self._reconnect_attempts})")
        self._emit(TransportEvent.RECONNECTING, {"attempt": self._reconnect_attempts, "delay": delay})
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._disposed:
            return
        try:
            await self.connect()
        except ConnectionError as e:
            log.warning(f"Reconnect attempt {self._reconnect_attempts} failed: {e}")
            if self._reconnect_attempts < self.config.reconnect.max_attempts:
                self._schedule_reconnect()
            else:
                self._reconnecting = False
                self._fail_pending("Max reconnection attempts reached")

    def _cancel_reconnect(self) -> None:
        self._reconnecting = False
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Teardown helpers
    # ------------------------------------------------------------------

    async def _stop_reader(self) -> None:
        task = self._reader_task
        self._reader_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_session(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _teardown_socket(self) -> None:
        """Release a half-open socket and its session after a failed connect."""
        ws = self._ws
        self._ws = None
        self._connected = False
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, OSError) as e:
                log.debug(f"Error closing half-open WebSocket: {e}")
        await self._close_session()

    async def _drop_socket(self, reason: str) -> None:
        """Tear down a socket that failed at the network level."""
        ws = self._ws
        self._ws = None
        self._mark_disconnected(reason)
        await self._stop_reader()
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, OSError) as e:
                log.debug(f"Error closing WebSocket: {e}")
        await self._close_session()
        self._fail_pending(reason)
