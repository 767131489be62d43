"""Transport manager: transport selection, fallback chain and health monitoring.

The manager owns exactly one active transport at a time. It connects along
a preference-ordered chain, counts failures per transport kind inside a
sliding window, falls back to the next kind when the threshold is crossed,
and periodically tries to restore the preferred kind.

Usage:
    from memlink.mcp.manager import TransportManager, TransportManagerSettings

    async with TransportManager(TransportManagerSettings(preference="auto")) as manager:
        response = await manager.send(ToolRequest("memory_search", {"query": "..."}))
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from memlink.config import DEFAULT_HTTP_URL, DEFAULT_WEBSOCKET_URL, Config
from memlink.credentials import CredentialStore
from memlink.errors import ConfigurationError, ConnectionError, MemlinkError
from memlink.log_config import get_logger, log_timing
from memlink.mcp.models import (
    AuthDescriptor,
    ConnectionHealth,
    EventHandler,
    ReconnectPolicy,
    ToolRequest,
    ToolResponse,
    TransportConfig,
    TransportEvent,
    TransportKind,
    TransportPreference,
)
from memlink.mcp.transports import Transport, create_transport

log = get_logger("mcp.manager")

NO_TRANSPORT_CODE = -1


class ManagerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class FailureRecord:
    count: int
    first_failure: float
    last_failure: float


class FailureTracker:
    """Per-kind failure counts inside a sliding time window.

    Records whose first failure is older than the window are stale: they
    reset on the next failure and never count toward the threshold.
    """

    def __init__(
        self,
        threshold: int = 3,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window = window
        self._clock = clock
        self._records: dict[TransportKind, FailureRecord] = {}

    def record(self, kind: TransportKind) -> FailureRecord:
        now = self._clock()
        existing = self._records.get(kind)
        if existing is None or now - existing.first_failure > self.window:
            existing = FailureRecord(count=1, first_failure=now, last_failure=now)
            self._records[kind] = existing
        else:
            existing.count += 1
            existing.last_failure = now
        return existing

    def get(self, kind: TransportKind) -> FailureRecord | None:
        """Return the live record for ``kind``, expiring a stale one."""
        record = self._records.get(kind)
        if record is None:
            return None
        if self._clock() - record.first_failure > self.window:
            del self._records[kind]
            return None
        return record

    def should_fallback(self, kind: TransportKind) -> bool:
        record = self._records.get(kind)
        if record is None:
            return False
        window_start = self._clock() - self.window
        return record.count >= self.threshold and record.first_failure > window_start

    def clear(self, kind: TransportKind) -> None:
        self._records.pop(kind, None)

    def reset(self) -> None:
        self._records.clear()

    def total(self) -> int:
        return sum(r.count for kind in list(self._records) if (r := self.get(kind)) is not None)


@dataclass
class TransportManagerSettings:
    """Tunables for a TransportManager instance."""

    preference: TransportPreference = TransportPreference.AUTO
    websocket_url: str | None = DEFAULT_WEBSOCKET_URL
    http_url: str | None = DEFAULT_HTTP_URL
    auth: AuthDescriptor | None = None
    enable_realtime: bool = True
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    failure_threshold: int = 3
    failure_window: float = 60.0
    health_check_interval: float = 30.0
    recovery_interval: float = 300.0

    def __post_init__(self):
        self.preference = TransportPreference(self.preference)

    @classmethod
    def from_config(cls, config: Config) -> "TransportManagerSettings":
        return cls(
            preference=TransportPreference(config.preference),
            websocket_url=config.websocket_url,
            http_url=config.http_url,
            enable_realtime=config.enable_realtime,
            timeout=config.request_timeout,
            failure_threshold=config.failure_threshold,
            failure_window=config.failure_window,
            health_check_interval=config.health_check_interval,
            recovery_interval=config.recovery_interval,
        )


@dataclass
class TransportManagerStatus:
    active_transport: TransportKind | None
    available_transports: list[TransportKind]
    connection_health: ConnectionHealth
    real_time_capable: bool
    last_health_check: datetime | None = None
    failure_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_transport": self.active_transport.value if self.active_transport else None,
            "available_transports": [k.value for k in self.available_transports],
            "connection_health": self.connection_health.value,
            "real_time_capable": self.real_time_capable,
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "failure_count": self.failure_count,
        }


class TransportManager:
    """Manages transport lifecycle, the fallback chain and health monitoring."""

    def __init__(
        self,
        settings: TransportManagerSettings | None = None,
        credentials: CredentialStore | None = None,
        transport_factory: Callable[[TransportConfig], Transport] = create_transport,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or TransportManagerSettings()
        self._credentials = credentials
        self._transport_factory = transport_factory
        self._failures = FailureTracker(
            threshold=self.settings.failure_threshold,
            window=self.settings.failure_window,
            clock=clock,
        )

        self._active: Transport | None = None
        self._active_kind: TransportKind | None = None
        self._state = ManagerState.DISCONNECTED
        self._exhausted = False
        self._disposed = False
        self._inflight = 0
        self._last_health_check: datetime | None = None

        self._swap_lock = asyncio.Lock()
        self._health_task: asyncio.Task | None = None
        self._recovery_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._subscribers: list[tuple[TransportEvent, EventHandler]] = []

    async def __aenter__(self) -> "TransportManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def failures(self) -> FailureTracker:
        return self._failures

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def get_transport_order(self) -> list[TransportKind]:
        preference = self.settings.preference
        if preference == TransportPreference.WEBSOCKET:
            return [TransportKind.WEBSOCKET, TransportKind.HTTP]
        if preference == TransportPreference.HTTP:
            return [TransportKind.HTTP]
        # Auto: real-time first unless disabled
        if self.settings.enable_realtime:
            return [TransportKind.WEBSOCKET, TransportKind.HTTP]
        return [TransportKind.HTTP, TransportKind.WEBSOCKET]

    async def connect(self) -> None:
        """Connect along the transport order; first success wins.

        Raises:
            ConfigurationError: If the manager has been disposed
            ConnectionError: If every transport in the order failed
        """
        if self._disposed:
            raise ConfigurationError("TransportManager has been disposed")

        async with self._swap_lock:
            if self._is_live():
                return

            log.info("Initializing transport connection...")
            self._state = ManagerState.CONNECTING
            errors: list[str] = []

            for kind in self.get_transport_order():
                try:
                    log.debug(f"Attempting {kind.value} transport...")
                    with log_timing(f"{kind.value} connect", log):
                        await self._connect_transport(kind)
                except Exception as e:
                    log.warning(f"{kind.value} failed: {e}")
                    self._failures.record(kind)
                    errors.append(f"{kind.value}: {e}")
                    continue

                log.info(f"Connected via {kind.value}")
                self._state = ManagerState.CONNECTED
                self._exhausted = False
                self._start_health_monitoring()
                self._start_recovery_attempts()
                return

            self._state = ManagerState.DISCONNECTED
            raise ConnectionError(f"All transports failed to connect ({'; '.join(errors)})")

    async def disconnect(self) -> None:
        """Stop timers and release the active transport."""
        timers = [self._health_task, self._recovery_task]
        self._stop_health_monitoring()
        self._stop_recovery_attempts()
        pending = [t for t in (*timers, *self._background) if t is not None and t is not asyncio.current_task()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._background.clear()

        transport = self._active
        self._active = None
        self._active_kind = None
        self._state = ManagerState.DISCONNECTED
        self._exhausted = False

        if transport is not None:
            await self._release(transport)

    async def dispose(self) -> None:
        """Cancel timers, drop the transport and forget failures. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        await self.disconnect()
        self._failures.reset()
        self._subscribers.clear()
        log.debug("TransportManager disposed")

    def is_connected(self) -> bool:
        return self._is_live()

    def _is_live(self) -> bool:
        return self._active is not None and self._active.is_connected()

    async def _connect_transport(self, kind: TransportKind) -> None:
        """Connect a fresh transport of ``kind`` and make it the active one."""
        transport = self._transport_factory(self._build_transport_config(kind))
        self._attach_handlers(transport)
        try:
            await asyncio.wait_for(transport.connect(), timeout=self.settings.timeout)
        except asyncio.TimeoutError as e:
            await self._release(transport)
            raise ConnectionError(f"{kind.value} connect timed out after {self.settings.timeout}s") from e
        except (Exception, asyncio.CancelledError):
            await self._release(transport)
            raise

        previous = self._active
        self._active = None
        if previous is not None:
            await self._release(previous)
        self._active = transport
        self._active_kind = kind
        self._failures.clear(kind)

    def _build_transport_config(self, kind: TransportKind) -> TransportConfig:
        url = self.settings.websocket_url if kind == TransportKind.WEBSOCKET else self.settings.http_url
        if not url:
            raise ConfigurationError(f"No URL configured for {kind.value} transport")

        auth = self.settings.auth
        if auth is None and self._credentials is not None:
            auth = self._credentials.get_auth_header()

        return TransportConfig(
            kind=kind,
            url=url,
            headers=dict(self.settings.headers),
            auth=auth,
            reconnect=self.settings.reconnect,
            timeout=self.settings.timeout,
        )

    async def _release(self, transport: Transport) -> None:
        try:
            await transport.dispose()
        except Exception as e:
            log.warning(f"Error disposing {transport.kind.value} transport: {e}")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send(self, request: ToolRequest) -> ToolResponse:
        """Send through the active transport; never raises."""
        if not self._is_live():
            try:
                await self.connect()
            except MemlinkError as e:
                log.warning(f"No transport available: {e}")
                return ToolResponse.failure(NO_TRANSPORT_CODE, "No transport available")

        transport = self._active
        kind = self._active_kind
        if transport is None or kind is None:
            return ToolResponse.failure(NO_TRANSPORT_CODE, "No transport available")

        self._inflight += 1
        try:
            response = await asyncio.wait_for(transport.send(request), timeout=self.settings.timeout)
        except asyncio.TimeoutError:
            response = ToolResponse.failure(-1, "Request timeout")
        except Exception as e:
            log.error(f"{kind.value} send raised: {e}")
            response = ToolResponse.failure(-1, str(e) or type(e).__name__)
        finally:
            self._inflight -= 1

        if response.error is not None:
            self._failures.record(kind)
            await self.check_fallback()

        return response

    # ------------------------------------------------------------------
    # Fallback and recovery
    # ------------------------------------------------------------------

    async def check_fallback(self) -> bool:
        """Fall back to the next transport kind when the threshold is crossed.

        Returns:
            True if a fallback transport is now active
        """
        kind = self._active_kind
        if self._disposed or kind is None or not self._failures.should_fallback(kind):
            return False

        async with self._swap_lock:
            if self._active_kind is not kind:
                return False

            log.warning(f"Failure threshold reached for {kind.value}, attempting fallback...")
            order = self.get_transport_order()
            remaining = order[order.index(kind) + 1:] if kind in order else []

            for next_kind in remaining:
                try:
                    await self._connect_transport(next_kind)
                except Exception as e:
                    log.warning(f"Fallback to {next_kind.value} failed: {e}")
                    continue
                log.info(f"Fell back to {next_kind.value}")
                self._state = ManagerState.CONNECTED
                self._exhausted = False
                self._start_recovery_attempts()
                return True

            # Keep serving best-effort on the current transport
            log.error("All fallback transports failed")
            self._exhausted = True
            return False

    async def attempt_recovery(self) -> bool:
        """Try to restore the most-preferred transport.

        Returns:
            True if the preferred transport is active
        """
        preferred = self.get_transport_order()[0]
        if self._active_kind == preferred:
            return True
        if self._disposed:
            return False

        async with self._swap_lock:
            log.info(f"Attempting recovery to {preferred.value}...")
            try:
                await self._connect_transport(preferred)
            except Exception as e:
                log.info(f"Recovery failed: {e}")
                return False
            log.info(f"Recovered to {preferred.value}")
            self._state = ManagerState.CONNECTED
            self._exhausted = False
            return True

    def _start_recovery_attempts(self) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        if self._active_kind == self.get_transport_order()[0]:
            return
        self._recovery_task = asyncio.create_task(self._recovery_loop())

    async def _recovery_loop(self) -> None:
        while not self._disposed:
            await asyncio.sleep(self.settings.recovery_interval)
            try:
                if await self.attempt_recovery():
                    return
            except Exception as e:
                log.error(f"Recovery attempt raised: {e}")

    def _stop_recovery_attempts(self) -> None:
        self._recovery_task = self._cancel(self._recovery_task)

    # ------------------------------------------------------------------
    # Health monitoring
    # ------------------------------------------------------------------

    async def run_health_check(self) -> bool:
        """Single health probe; a dead transport triggers check_fallback()."""
        transport = self._active
        if transport is not None and transport.is_connected():
            self._last_health_check = datetime.now(timezone.utc)
            if self._exhausted:
                log.info("Health check passed, transport considered usable again")
                self._exhausted = False
            return True

        log.warning("Health check: Transport disconnected")
        await self.check_fallback()
        return False

    def _start_health_monitoring(self) -> None:
        self._stop_health_monitoring()
        self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while not self._disposed:
            await asyncio.sleep(self.settings.health_check_interval)
            try:
                await self.run_health_check()
            except Exception as e:
                log.error(f"Health check raised: {e}")

    def _stop_health_monitoring(self) -> None:
        self._health_task = self._cancel(self._health_task)

    @staticmethod
    def _cancel(task: asyncio.Task | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return None

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def on_transport_event(self, event: TransportEvent, handler: EventHandler) -> None:
        """Subscribe to events of the active transport and its successors."""
        event = TransportEvent(event)
        self._subscribers.append((event, handler))
        if self._active is not None:
            self._active.on(event, handler)

    def _attach_handlers(self, transport: Transport) -> None:
        transport.on(TransportEvent.DISCONNECTED, lambda _e, data: self._handle_disconnect(transport, data))
        transport.on(TransportEvent.ERROR, lambda _e, error: self._handle_error(transport, error))
        transport.on(TransportEvent.RECONNECTING, lambda _e, data: self._handle_reconnecting(data))
        for event, handler in self._subscribers:
            transport.on(event, handler)

    def _handle_disconnect(self, transport: Transport, data: Any) -> None:
        if transport is not self._active or self._disposed:
            return
        log.warning(f"Transport disconnected: {data}" if data else "Transport disconnected")
        self._spawn(self.check_fallback())

    def _handle_error(self, transport: Transport, error: Any) -> None:
        if transport is not self._active:
            return
        log.warning(f"Transport error: {error}")
        # Errors surfaced through send() are counted there
        if self._inflight == 0 and self._active_kind is not None:
            self._failures.record(self._active_kind)

    def _handle_reconnecting(self, data: Any) -> None:
        data = data or {}
        log.info(f"Reconnecting (attempt {data.get('attempt')}, delay {data.get('delay', 0):.2f}s)...")

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_real_time_capable(self) -> bool:
        return self._active_kind == TransportKind.WEBSOCKET and self.settings.enable_realtime

    def get_status(self) -> TransportManagerStatus:
        """Consistent snapshot of the manager; never raises."""
        last_check = self._last_health_check
        if last_check is None and self._active is not None:
            try:
                last_check = self._active.get_status().last_ping
            except Exception as e:
                log.debug(f"Transport status unavailable: {e}")

        return TransportManagerStatus(
            active_transport=self._active_kind,
            available_transports=self._available_transports(),
            connection_health=self._connection_health(),
            real_time_capable=self._active_kind == TransportKind.WEBSOCKET,
            last_health_check=last_check,
            failure_count=self._failures.total(),
        )

    def _available_transports(self) -> list[TransportKind]:
        available = []
        if self.settings.websocket_url:
            available.append(TransportKind.WEBSOCKET)
        if self.settings.http_url:
            available.append(TransportKind.HTTP)
        return available

    def _connection_health(self) -> ConnectionHealth:
        try:
            live = self._is_live()
        except Exception:
            live = False
        if not live or self._exhausted:
            return ConnectionHealth.DISCONNECTED

        if self._active_kind != self.get_transport_order()[0]:
            return ConnectionHealth.DEGRADED

        record = self._failures.get(self._active_kind)
        if record is not None and record.count > 0:
            return ConnectionHealth.DEGRADED

        return ConnectionHealth.HEALTHY
