"""Tests for TransportManager and FailureTracker."""

import asyncio

import pytest

from memlink.config import Config
from memlink.credentials import StaticCredentialStore
from memlink.errors import ConfigurationError, ConnectionError
from memlink.mcp.manager import FailureTracker, ManagerState, TransportManager, TransportManagerSettings
from memlink.mcp.models import (
    AuthDescriptor,
    ConnectionHealth,
    ToolRequest,
    ToolResponse,
    TransportEvent,
    TransportKind,
    TransportPreference,
    TransportStatus,
)

WS = TransportKind.WEBSOCKET
HTTP = TransportKind.HTTP


class FakeTransport:
    """In-memory transport whose behavior is driven by the factory."""

    def __init__(self, config, behavior):
        self.config = config
        self.kind = config.kind
        self.behavior = behavior
        self.connected = False
        self.disposed = False
        self.handlers = {}
        self.sent = []

    async def connect(self):
        if self.behavior.get("fail_connect"):
            raise ConnectionError(f"{self.kind.value} refused")
        self.connected = True
        delay = self.behavior.get("connect_delay")
        if delay:
            # Socket is open but the handshake has not finished
            await asyncio.sleep(delay)

    async def disconnect(self):
        self.connected = False

    async def send(self, request):
        self.sent.append(request)
        delay = self.behavior.get("send_delay")
        if delay:
            await asyncio.sleep(delay)
        respond = self.behavior.get("respond")
        if respond is not None:
            return respond(self, request)
        return ToolResponse(result={"via": self.kind.value})

    def is_connected(self):
        return self.connected

    def get_status(self):
        return TransportStatus(connected=self.connected, kind=self.kind, url=self.config.url)

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def off(self, event, handler):
        self.handlers.get(event, []).remove(handler)

    async def dispose(self):
        self.disposed = True
        self.connected = False
        self.handlers.clear()

    def emit(self, event, data=None):
        for handler in list(self.handlers.get(event, [])):
            handler(event, data)


class FakeFactory:
    """transport_factory that hands out FakeTransports and remembers them."""

    def __init__(self):
        self.behaviors = {WS: {}, HTTP: {}}
        self.created = []

    def __call__(self, config):
        transport = FakeTransport(config, self.behaviors[config.kind])
        self.created.append(transport)
        return transport

    def fail(self, kind, failing=True):
        self.behaviors[kind]["fail_connect"] = failing

    def slow(self, kind, connect=None, send=None):
        self.behaviors[kind]["connect_delay"] = connect
        self.behaviors[kind]["send_delay"] = send

    def respond(self, kind, fn):
        self.behaviors[kind]["respond"] = fn

    def latest(self, kind):
        return [t for t in self.created if t.kind == kind][-1]


def server_error(transport, request):
    return ToolResponse.failure(500, "HTTP 500: Internal Server Error")


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def make_manager(factory, clock):
    managers = []

    def _make(**overrides):
        overrides.setdefault("timeout", 2.0)
        settings = TransportManagerSettings(
            websocket_url="wss://test/ws",
            http_url="https://test/api/v1",
            **overrides,
        )
        manager = TransportManager(settings, transport_factory=factory, clock=clock)
        managers.append(manager)
        return manager

    yield _make


async def settle(manager):
    """Let background fallback tasks spawned by transport events finish."""
    await asyncio.sleep(0)
    pending = list(manager._background)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


class TestFailureTracker:
    """Sliding-window failure counting."""

    def test_record_increments(self, clock):
        tracker = FailureTracker(threshold=3, window=60, clock=clock)
        tracker.record(WS)
        clock.advance(5)
        record = tracker.record(WS)

        assert record.count == 2
        assert record.last_failure - record.first_failure == 5

    def test_threshold_inside_window(self, clock):
        tracker = FailureTracker(threshold=3, window=60, clock=clock)
        for _ in range(2):
            tracker.record(HTTP)
        assert tracker.should_fallback(HTTP) is False

        tracker.record(HTTP)
        assert tracker.should_fallback(HTTP) is True

    def test_stale_record_resets(self, clock):
        """A failure after the window restarts the count at one."""
        tracker = FailureTracker(threshold=3, window=60, clock=clock)
        tracker.record(WS)
        tracker.record(WS)
        clock.advance(61)

        record = tracker.record(WS)

        assert record.count == 1
        assert tracker.should_fallback(WS) is False

    def test_oldest_failure_must_be_inside_window(self, clock):
        tracker = FailureTracker(threshold=3, window=60, clock=clock)
        for _ in range(3):
            tracker.record(WS)
        clock.advance(60)

        assert tracker.should_fallback(WS) is False

    def test_get_expires_stale_records(self, clock):
        tracker = FailureTracker(threshold=3, window=60, clock=clock)
        tracker.record(WS)
        assert tracker.get(WS) is not None

        clock.advance(120)
        assert tracker.get(WS) is None
        assert tracker.total() == 0

    def test_kinds_are_independent(self, clock):
        tracker = FailureTracker(threshold=2, window=60, clock=clock)
        tracker.record(WS)
        tracker.record(WS)
        tracker.record(HTTP)

        assert tracker.should_fallback(WS) is True
        assert tracker.should_fallback(HTTP) is False
        tracker.clear(WS)
        assert tracker.total() == 1


class TestTransportOrder:
    """Preference -> fallback chain."""

    @pytest.mark.parametrize(
        "preference,realtime,expected",
        [
            ("auto", True, [WS, HTTP]),
            ("auto", False, [HTTP, WS]),
            ("websocket", True, [WS, HTTP]),
            ("websocket", False, [WS, HTTP]),
            ("http", True, [HTTP]),
        ],
    )
    def test_order(self, make_manager, preference, realtime, expected):
        manager = make_manager(preference=preference, enable_realtime=realtime)
        assert manager.get_transport_order() == expected

    def test_invalid_preference(self):
        with pytest.raises(ValueError):
            TransportManagerSettings(preference="carrier-pigeon")

    def test_settings_from_config(self, monkeypatch):
        monkeypatch.setenv("MEMLINK_TRANSPORT", "http")
        monkeypatch.setenv("MEMLINK_FAILURE_THRESHOLD", "5")

        settings = TransportManagerSettings.from_config(Config())

        assert settings.preference == TransportPreference.HTTP
        assert settings.failure_threshold == 5


class TestConnect:
    """Initial connection along the chain."""

    @pytest.mark.asyncio
    async def test_preferred_transport_is_healthy(self, make_manager):
        manager = make_manager()
        await manager.connect()

        status = manager.get_status()
        assert status.active_transport == WS
        assert status.connection_health == ConnectionHealth.HEALTHY
        assert status.real_time_capable is True
        assert manager.is_real_time_capable() is True
        assert manager.state == ManagerState.CONNECTED
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_websocket_fails_http_succeeds(self, make_manager, factory):
        """auto + realtime: ws fails, http connects, health is degraded."""
        factory.fail(WS)
        manager = make_manager()

        await manager.connect()

        status = manager.get_status()
        assert manager.is_connected() is True
        assert status.active_transport == HTTP
        assert status.connection_health == ConnectionHealth.DEGRADED
        assert status.real_time_capable is False
        assert status.available_transports == [WS, HTTP]
        assert manager.failures.get(WS).count == 1
        assert factory.latest(WS).disposed is True
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_all_transports_fail(self, make_manager, factory):
        factory.fail(WS)
        factory.fail(HTTP)
        manager = make_manager()

        with pytest.raises(ConnectionError, match="All transports failed"):
            await manager.connect()

        assert manager.is_connected() is False
        assert manager.state == ManagerState.DISCONNECTED
        assert manager.get_status().connection_health == ConnectionHealth.DISCONNECTED
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_missing_url_skips_kind(self, factory, clock):
        settings = TransportManagerSettings(websocket_url=None, http_url="https://test/api/v1")
        manager = TransportManager(settings, transport_factory=factory, clock=clock)

        await manager.connect()

        assert manager.get_status().active_transport == HTTP
        assert manager.get_status().available_transports == [HTTP]
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent_when_live(self, make_manager, factory):
        manager = make_manager()
        await manager.connect()
        await manager.connect()

        assert len(factory.created) == 1
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_credentials_flow_into_transport(self, factory, clock):
        auth = AuthDescriptor(type="bearer", value="tok")
        manager = TransportManager(
            TransportManagerSettings(websocket_url="wss://t/ws", http_url="https://t"),
            credentials=StaticCredentialStore(auth),
            transport_factory=factory,
            clock=clock,
        )

        await manager.connect()

        assert factory.latest(WS).config.auth == auth
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, make_manager):
        manager = make_manager()
        async with manager as m:
            assert m.is_connected() is True
        assert manager.is_connected() is False

    @pytest.mark.asyncio
    async def test_connect_timeout_falls_back(self, make_manager, factory):
        """A websocket handshake that hangs past the timeout is dropped for http."""
        factory.slow(WS, connect=5.0)
        manager = make_manager(timeout=0.05)

        await manager.connect()

        slow_ws = factory.latest(WS)
        assert slow_ws.disposed is True
        assert manager.get_status().active_transport == HTTP
        assert manager.failures.get(WS).count == 1
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_connect_timeout_everywhere(self, make_manager, factory):
        factory.slow(WS, connect=5.0)
        factory.slow(HTTP, connect=5.0)
        manager = make_manager(timeout=0.05)

        with pytest.raises(ConnectionError, match="timed out"):
            await manager.connect()

        assert all(t.disposed for t in factory.created)
        assert manager.is_connected() is False
        await manager.dispose()


class TestDispose:
    """dispose() semantics."""

    @pytest.mark.asyncio
    async def test_dispose_twice(self, make_manager, factory):
        manager = make_manager()
        await manager.connect()

        await manager.dispose()
        assert manager.is_connected() is False
        await manager.dispose()
        assert manager.is_connected() is False
        assert factory.latest(WS).disposed is True

    @pytest.mark.asyncio
    async def test_connect_after_dispose_raises(self, make_manager):
        manager = make_manager()
        await manager.dispose()

        with pytest.raises(ConfigurationError):
            await manager.connect()

    @pytest.mark.asyncio
    async def test_dispose_cancels_timers(self, make_manager, factory):
        factory.fail(WS)
        manager = make_manager()
        await manager.connect()
        health_task = manager._health_task
        recovery_task = manager._recovery_task
        assert health_task is not None
        assert recovery_task is not None

        await manager.dispose()
        await asyncio.gather(health_task, recovery_task, return_exceptions=True)

        assert health_task.cancelled()
        assert recovery_task.cancelled()
        assert manager.failures.total() == 0

    @pytest.mark.asyncio
    async def test_dispose_during_recovery_releases_transport(self, make_manager, factory):
        """Disposing while recovery is mid-handshake disposes the half-open transport."""
        factory.fail(WS)
        manager = make_manager(recovery_interval=0.01)
        await manager.connect()

        factory.fail(WS, False)
        factory.slow(WS, connect=5.0)
        for _ in range(200):
            if any(t.kind == WS and t.connected for t in factory.created):
                break
            await asyncio.sleep(0.01)
        half_open = factory.latest(WS)
        assert half_open.connected is True

        await manager.dispose()

        assert half_open.disposed is True
        assert [t for t in factory.created if not t.disposed] == []


class TestSend:
    """send() never raises and feeds failure tracking."""

    @pytest.mark.asyncio
    async def test_send_connects_lazily(self, make_manager):
        manager = make_manager()

        response = await manager.send(ToolRequest(name="memory_list"))

        assert response.result == {"via": "websocket"}
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_send_without_any_transport(self, make_manager, factory):
        factory.fail(WS)
        factory.fail(HTTP)
        manager = make_manager()

        response = await manager.send(ToolRequest(name="memory_list"))

        assert response.error.code == -1
        assert response.error.message == "No transport available"
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_send_timeout_records_failure(self, make_manager, factory):
        manager = make_manager(timeout=0.05)
        await manager.connect()
        factory.slow(WS, send=5.0)

        response = await manager.send(ToolRequest(name="memory_list"))

        assert response.ok is False
        assert response.error.code == -1
        assert response.error.message == "Request timeout"
        assert manager.failures.get(WS).count == 1
        assert manager.get_status().active_transport == WS
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_transport_exception_becomes_failure(self, make_manager, factory):
        def explode(transport, request):
            raise RuntimeError("wire on fire")

        factory.respond(WS, explode)
        manager = make_manager()

        response = await manager.send(ToolRequest(name="memory_list"))

        assert response.error.message == "wire on fire"
        assert manager.failures.get(WS).count == 1
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_error_event_during_send_not_double_counted(self, make_manager, factory):
        def fail_with_event(transport, request):
            transport.emit(TransportEvent.ERROR, RuntimeError("boom"))
            return ToolResponse.failure(-1, "boom")

        factory.respond(WS, fail_with_event)
        manager = make_manager()

        await manager.send(ToolRequest(name="memory_list"))

        assert manager.failures.get(WS).count == 1
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_threshold_triggers_fallback(self, make_manager, factory):
        factory.respond(WS, server_error)
        manager = make_manager(preference="websocket")
        await manager.connect()
        ws_transport = factory.latest(WS)

        for _ in range(3):
            response = await manager.send(ToolRequest(name="memory_search"))
            assert response.ok is False

        status = manager.get_status()
        assert status.active_transport == HTTP
        assert status.connection_health == ConnectionHealth.DEGRADED
        assert ws_transport.disposed is True
        assert manager._recovery_task is not None

        response = await manager.send(ToolRequest(name="memory_search"))
        assert response.result == {"via": "http"}
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_fall_back(self, make_manager, factory, clock):
        factory.respond(WS, server_error)
        manager = make_manager()
        await manager.connect()

        await manager.send(ToolRequest(name="memory_search"))
        await manager.send(ToolRequest(name="memory_search"))
        clock.advance(61)
        await manager.send(ToolRequest(name="memory_search"))

        assert manager.get_status().active_transport == WS
        assert manager.failures.get(WS).count == 1
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_exhausted_fallback_keeps_transport(self, make_manager, factory, captured_logs):
        """Three failures on a fallback http transport with nothing left to try."""
        factory.fail(WS)
        factory.respond(HTTP, server_error)
        manager = make_manager(failure_threshold=3, failure_window=60)
        await manager.connect()
        http_transport = factory.latest(HTTP)

        for _ in range(3):
            await manager.send(ToolRequest(name="memory_create", arguments={"content": "x"}))

        assert any("All fallback transports failed" in m for m in captured_logs)
        assert http_transport.disposed is False
        status = manager.get_status()
        assert status.active_transport == HTTP
        assert status.connection_health == ConnectionHealth.DISCONNECTED

        # A passing health check makes the transport usable again
        assert await manager.run_health_check() is True
        assert manager.get_status().connection_health == ConnectionHealth.DEGRADED
        await manager.dispose()


class TestRecoveryAndHealth:
    """Recovery to the preferred transport and health monitoring."""

    @pytest.mark.asyncio
    async def test_attempt_recovery_restores_preferred(self, make_manager, factory):
        factory.fail(WS)
        manager = make_manager()
        await manager.connect()
        http_transport = factory.latest(HTTP)

        factory.fail(WS, False)
        assert await manager.attempt_recovery() is True

        status = manager.get_status()
        assert status.active_transport == WS
        assert status.connection_health == ConnectionHealth.HEALTHY
        assert http_transport.disposed is True
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_attempt_recovery_failure_keeps_fallback(self, make_manager, factory):
        factory.fail(WS)
        manager = make_manager()
        await manager.connect()

        assert await manager.attempt_recovery() is False
        assert manager.get_status().active_transport == HTTP
        assert manager.is_connected() is True
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_recovery_loop_runs_periodically(self, make_manager, factory):
        factory.fail(WS)
        manager = make_manager(recovery_interval=0.05)
        await manager.connect()

        factory.fail(WS, False)
        await asyncio.sleep(0.3)

        assert manager.get_status().active_transport == WS
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_health_check_on_dead_transport_below_threshold(self, make_manager, factory):
        manager = make_manager()
        await manager.connect()
        factory.latest(WS).connected = False

        assert await manager.run_health_check() is False
        assert manager.get_status().active_transport == WS
        assert manager.get_status().connection_health == ConnectionHealth.DISCONNECTED
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_health_loop_falls_back(self, make_manager, factory):
        manager = make_manager(health_check_interval=0.05)
        await manager.connect()
        factory.latest(WS).connected = False
        for _ in range(3):
            manager.failures.record(WS)

        await asyncio.sleep(0.3)

        assert manager.get_status().active_transport == HTTP
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_error_events_then_disconnect_fall_back(self, make_manager, factory):
        manager = make_manager()
        await manager.connect()
        ws_transport = factory.latest(WS)

        for _ in range(3):
            ws_transport.emit(TransportEvent.ERROR, RuntimeError("socket error"))
        ws_transport.connected = False
        ws_transport.emit(TransportEvent.DISCONNECTED, {"code": 1006})
        await settle(manager)

        assert manager.get_status().active_transport == HTTP
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_events_from_replaced_transport_are_ignored(self, make_manager, factory):
        factory.fail(WS)
        manager = make_manager()
        await manager.connect()
        stale = factory.created[0]

        stale.emit(TransportEvent.ERROR, RuntimeError("late"))

        assert manager.failures.get(HTTP) is None
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_subscribers_follow_new_transport(self, make_manager, factory):
        factory.respond(WS, server_error)
        manager = make_manager()
        seen = []
        manager.on_transport_event(TransportEvent.MESSAGE, lambda e, d: seen.append(d))
        await manager.connect()

        for _ in range(3):
            await manager.send(ToolRequest(name="memory_search"))
        factory.latest(HTTP).emit(TransportEvent.MESSAGE, "from-http")

        assert seen == ["from-http"]
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_get_status_never_raises(self, make_manager, factory):
        manager = make_manager()
        await manager.connect()

        def broken():
            raise RuntimeError("status bug")

        factory.latest(WS).is_connected = broken

        status = manager.get_status()
        assert status.connection_health == ConnectionHealth.DISCONNECTED
        assert status.to_dict()["active_transport"] == "websocket"
        factory.latest(WS).is_connected = lambda: False
        await manager.dispose()
