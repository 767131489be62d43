"""Local MCP server lifecycle manager.

Detects the embedded server entry point, persists its configuration,
spawns it as a child process, verifies it is alive and stops it again.
Only one server instance is tracked at a time: starting a new one always
disposes the previous handle first.

Usage:
    from memlink.local import ConnectionManager

    manager = ConnectionManager()
    result = await manager.connect_local()
    if not result.success:
        print(result.error, result.suggestions)
    await manager.stop_local_server()
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

import httpx
from pydantic import ValidationError

from memlink.config import Config
from memlink.errors import ConfigurationError, ProcessError
from memlink.guidance import suggestions_for
from memlink.log_config import get_logger
from memlink.local.models import (
    ConfigResult,
    ConnectionResult,
    ConnectionStatus,
    LocalServerConfig,
    LocalServerState,
    ServerInstance,
    ServerStatus,
)

log = get_logger("local.connection")

STOP_TIMEOUT = 5.0  # seconds to wait for SIGTERM before SIGKILL
KILL_TIMEOUT = 2.0
HEALTH_CHECK_TIMEOUT = 1.0
HEALTH_POLL_INTERVAL = 0.25

# A line on the child's stdout/stderr that announces readiness
READY_PATTERN = re.compile(r"\b(ready|listening on|server started|running on)\b", re.IGNORECASE)

ENTRY_NAMES = ("mcp_server_entry.py", "mcp-server-entry.js")


@dataclass
class _ServerHandle:
    """The one live process slot owned by a ConnectionManager."""

    instance: ServerInstance
    process: asyncio.subprocess.Process
    log_file: IO[str]
    waiter: asyncio.Task
    pumps: list[asyncio.Task] = field(default_factory=list)
    watcher: asyncio.Task | None = None
    stopping: bool = False


def _default_candidates() -> list[Path]:
    pkg_dir = Path(__file__).resolve().parent.parent
    root = pkg_dir.parent
    cwd = Path.cwd()
    return [
        # Embedded server shipped inside the package
        pkg_dir / "server" / "mcp_server_entry.py",
        # Relative to the package root
        root / "dist" / "mcp-server-entry.js",
        root / "mcp-server-entry.js",
        # Installed as a node dependency
        cwd / "node_modules" / "@memlink" / "cli" / "dist" / "mcp-server-entry.js",
        # Development checkouts
        cwd / "dist" / "mcp-server-entry.js",
        cwd / "cli" / "dist" / "mcp-server-entry.js",
        cwd.parent / "cli" / "dist" / "mcp-server-entry.js",
    ]


class ConnectionManager:
    """Manages discovery, configuration and lifecycle of the local MCP server."""

    def __init__(
        self,
        config_path: Path | str | None = None,
        candidate_paths: list[Path | str] | None = None,
    ):
        """Initialize the manager.

        Args:
            config_path: Where the JSON config lives (default: ~/.memlink/mcp-config.json)
            candidate_paths: Override the server entry locations probed by detection
        """
        self.config_path = Path(config_path) if config_path else Config().config_path
        self._candidates = [Path(p) for p in candidate_paths] if candidate_paths is not None else None
        self._config = LocalServerConfig()
        self._status = ConnectionStatus()
        self._state = LocalServerState.IDLE
        self._slot: _ServerHandle | None = None
        self._connect_lock = asyncio.Lock()
        log.debug(f"ConnectionManager initialized: config={self.config_path}")

    @property
    def state(self) -> LocalServerState:
        return self._state

    @property
    def log_dir(self) -> Path:
        return self.config_path.parent / "logs"

    async def init(self) -> None:
        """Load persisted configuration."""
        self._load_config()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> LocalServerConfig:
        return self._config.model_copy()

    async def update_config(self, updates: dict[str, Any]) -> LocalServerConfig:
        """Merge ``updates`` into the config, validate and persist.

        Raises:
            ConfigurationError: If a field is invalid; the prior config is kept
        """
        merged = {**self._config.model_dump(), **updates}
        try:
            new_config = LocalServerConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        self._config = new_config
        self._save_config()
        log.info(f"Configuration updated: {sorted(updates)}")
        return self.get_config()

    def _load_config(self) -> None:
        try:
            data = json.loads(self.config_path.read_text())
            self._config = LocalServerConfig.model_validate({**LocalServerConfig().model_dump(), **data})
        except FileNotFoundError:
            self._config = LocalServerConfig()
        except (json.JSONDecodeError, OSError, ValidationError, TypeError) as e:
            log.warning(f"Ignoring invalid config at {self.config_path}: {e}")
            self._config = LocalServerConfig()

    def _save_config(self) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(json.dumps(self._config.model_dump(), indent=2))
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {e}") from e

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect_server_path(self) -> str | None:
        """Find the embedded MCP server entry point. Never raises."""
        try:
            candidates = list(self._candidates) if self._candidates is not None else _default_candidates()
            env_path = os.environ.get("MEMLINK_SERVER_PATH")
            if env_path:
                candidates.insert(0, Path(env_path))

            for candidate in candidates:
                if self._looks_like_server(candidate):
                    log.debug(f"Detected MCP server at {candidate}")
                    return str(candidate.resolve())

            log.debug(f"No MCP server found in {len(candidates)} candidate locations")
            return None
        except Exception as e:
            log.error(f"Error detecting server path: {e}")
            return None

    @staticmethod
    def _looks_like_server(path: Path) -> bool:
        try:
            if not path.is_file():
                return False
            content = path.read_text(errors="ignore").lower()
        except OSError:
            return False
        return "mcp" in content or "server" in content

    async def auto_configure_local_server(self) -> ConfigResult:
        """Detect the server and persist a config pointing at it."""
        self._state = LocalServerState.DETECTING
        server_path = await self.detect_server_path()
        if not server_path:
            self._state = LocalServerState.IDLE
            return ConfigResult(
                success=False,
                error="Could not detect MCP server path for auto-configuration",
            )

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self._config = self._config.model_copy(update={"local_server_path": server_path})
            self._save_config()
        except (OSError, ConfigurationError) as e:
            self._state = LocalServerState.IDLE
            return ConfigResult(success=False, error=f"Auto-configuration failed: {e}")

        self._state = LocalServerState.IDLE
        log.info(f"Auto-configured local server: {server_path}")
        return ConfigResult(success=True, config_path=str(self.config_path), server_path=server_path)

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect_local(self) -> ConnectionResult:
        """Detect, start and verify the local server. Never raises.

        Concurrent callers are serialized; the first one starts the server and
        the rest reuse it.
        """
        async with self._connect_lock:
            try:
                return await self._connect_local()
            except Exception as e:
                self._status.connection_attempts += 1
                self._status.last_error = str(e)
                log.error(f"Local connection failed: {e}")
                return ConnectionResult(
                    success=False,
                    error=f"Connection failed: {e}",
                    suggestions=suggestions_for(e),
                )

    async def _connect_local(self) -> ConnectionResult:
        self._load_config()

        self._state = LocalServerState.DETECTING
        server_path = self._config.local_server_path.strip() or await self.detect_server_path()
        if not server_path:
            self._state = LocalServerState.IDLE
            self._status.connection_attempts += 1
            self._status.last_error = "Could not detect local MCP server path"
            return ConnectionResult(
                success=False,
                error="Could not detect local MCP server path",
                suggestions=suggestions_for(ConfigurationError("missing server path")),
            )

        if server_path != self._config.local_server_path:
            self._config = self._config.model_copy(update={"local_server_path": server_path})
            self._save_config()
        self._status.server_path = server_path

        if not self._is_server_running():
            await self._start_with_retries()

        connected = await self.verify_connection(server_path)
        self._status.connection_attempts += 1
        if connected:
            self._status.is_connected = True
            self._status.last_connected = datetime.now(timezone.utc)
            self._status.last_error = None
            return ConnectionResult(success=True, server_path=server_path)

        self._status.is_connected = False
        self._status.last_error = "Failed to verify MCP server connection"
        return ConnectionResult(
            success=False,
            error="Failed to verify MCP server connection",
            suggestions=suggestions_for(ProcessError("verification failed")),
        )

    async def _start_with_retries(self) -> ServerInstance:
        attempts = self._config.retry_attempts
        last_error: ProcessError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.start_local_server()
            except ProcessError as e:
                last_error = e
                log.warning(f"Start attempt {attempt}/{attempts} failed: {e}")
        raise last_error

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def _build_command(self, server_path: str) -> list[str]:
        suffix = Path(server_path).suffix.lower()
        if suffix == ".py":
            return [sys.executable, server_path]
        if suffix in (".js", ".mjs", ".cjs"):
            return ["node", server_path]
        return [server_path]

    async def start_local_server(self) -> ServerInstance:
        """Spawn the server and wait (bounded) until it signals readiness.

        Raises:
            ConfigurationError: If no server path is configured or it does not exist
            ProcessError: On spawn failure, early exit or startup timeout
        """
        server_path = self._config.local_server_path.strip()
        if not server_path:
            raise ConfigurationError("No local server path configured")
        if not Path(server_path).is_file():
            raise ConfigurationError(f"Server entry point not found: {server_path}")

        # Supersede any previous instance
        await self._release_slot()

        self._state = LocalServerState.STARTING
        started = datetime.now(timezone.utc)
        log_path = self.log_dir / f"mcp-server-{started.strftime('%Y%m%d-%H%M%S-%f')}.log"
        port = self._config.server_port

        env = os.environ.copy()
        env["PORT"] = str(port)
        env["LOG_LEVEL"] = self._config.log_level
        env["PYTHONUNBUFFERED"] = "1"
        cmd = self._build_command(server_path)
        log.info(f"Starting local MCP server: {' '.join(cmd)} (port={port})")

        log_file = None
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "a", encoding="utf-8")
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            if log_file is not None:
                log_file.close()
            self._state = LocalServerState.ERROR
            self._status.server_instance = ServerInstance(
                pid=0,
                port=port,
                status=ServerStatus.ERROR,
                start_time=started,
                log_path=str(log_path),
                server_path=server_path,
            )
            self._status.last_error = f"Failed to spawn server: {e}"
            raise ProcessError(f"Failed to spawn server: {e}", log_path=str(log_path)) from e

        instance = ServerInstance(
            pid=process.pid,
            port=port,
            status=ServerStatus.STARTING,
            start_time=started,
            log_path=str(log_path),
            server_path=server_path,
        )
        ready = asyncio.Event()
        handle = _ServerHandle(
            instance=instance,
            process=process,
            log_file=log_file,
            waiter=asyncio.create_task(process.wait()),
        )
        handle.pumps = [
            asyncio.create_task(self._pump(process.stdout, log_file, ready)),
            asyncio.create_task(self._pump(process.stderr, log_file, ready)),
        ]
        self._slot = handle
        self._status.server_instance = instance

        await self._await_ready(handle, ready)
        return instance

    async def _await_ready(self, handle: _ServerHandle, ready: asyncio.Event) -> None:
        timeout = self._config.connection_timeout
        ready_task = asyncio.create_task(ready.wait())
        probe_task = asyncio.create_task(self._probe_health(handle.instance.port, ready))
        try:
            done, _ = await asyncio.wait(
                {ready_task, handle.waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (ready_task, probe_task):
                if not task.done():
                    task.cancel()

        instance = handle.instance
        if ready_task in done and ready.is_set() and handle.process.returncode is None:
            instance.transition(ServerStatus.RUNNING)
            self._state = LocalServerState.RUNNING
            handle.watcher = asyncio.create_task(self._watch_exit(handle))
            log.info(f"Local MCP server running (PID={instance.pid}, log={instance.log_path})")
            return

        if handle.waiter in done or handle.process.returncode is not None:
            reason = f"Server exited before ready (code {handle.process.returncode})"
        else:
            reason = f"Server startup timeout after {timeout}s"
            await self._terminate(handle, force=True)

        instance.transition(ServerStatus.ERROR)
        self._state = LocalServerState.ERROR
        self._status.last_error = reason
        log.error(f"{reason}; see {instance.log_path}")
        await self._close_handle(handle)
        if self._slot is handle:
            self._slot = None
        raise ProcessError(reason, log_path=instance.log_path)

    async def _pump(self, stream: asyncio.StreamReader | None, log_file: IO[str], ready: asyncio.Event) -> None:
        """Copy child output into the instance log, watching for readiness."""
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace")
            log_file.write(text)
            log_file.flush()
            if not ready.is_set() and READY_PATTERN.search(text):
                ready.set()

    async def _probe_health(self, port: int, ready: asyncio.Event) -> None:
        url = f"http://127.0.0.1:{port}/health"
        async with httpx.AsyncClient(timeout=HEALTH_CHECK_TIMEOUT) as client:
            while not ready.is_set():
                try:
                    response = await client.get(url)
                    if response.status_code == 200:
                        ready.set()
                        return
                except httpx.HTTPError:
                    pass  # Not listening yet
                await asyncio.sleep(HEALTH_POLL_INTERVAL)

    async def _watch_exit(self, handle: _ServerHandle) -> None:
        """Track the child's own exit after it became ready."""
        code = await asyncio.shield(handle.waiter)
        instance = handle.instance
        if handle.stopping or code == 0:
            instance.transition(ServerStatus.STOPPED)
        else:
            instance.transition(ServerStatus.ERROR)
            self._status.last_error = f"Server exited unexpectedly (code {code})"
            log.warning(f"Local MCP server exited unexpectedly (PID={instance.pid}, code={code})")

        if not handle.stopping and self._slot is handle:
            self._slot = None
            self._status.is_connected = False
            self._state = LocalServerState.STOPPED if code == 0 else LocalServerState.ERROR
            await self._close_handle(handle)

    async def stop_local_server(self) -> None:
        """Terminate the server; escalates to SIGKILL after a bounded wait."""
        handle = self._slot
        if handle is None:
            return

        log.info(f"Stopping local MCP server (PID={handle.instance.pid})...")
        await self._terminate(handle)
        handle.instance.transition(ServerStatus.STOPPED)
        await self._close_handle(handle)
        if self._slot is handle:
            self._slot = None
        self._status.is_connected = False
        self._state = LocalServerState.STOPPED
        log.info("Local MCP server stopped")

    async def _terminate(self, handle: _ServerHandle, force: bool = False) -> None:
        handle.stopping = True
        process = handle.process
        if process.returncode is not None:
            return

        try:
            if force:
                process.kill()
            else:
                process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(asyncio.shield(handle.waiter), timeout=STOP_TIMEOUT)
            return
        except asyncio.TimeoutError:
            log.warning(f"Server didn't stop gracefully, sending SIGKILL (PID={handle.instance.pid})")

        try:
            process.kill()
            await asyncio.wait_for(asyncio.shield(handle.waiter), timeout=KILL_TIMEOUT)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            log.error(f"Failed to reap server process {handle.instance.pid}")

    async def _close_handle(self, handle: _ServerHandle) -> None:
        """Drain output pumps and close the instance log."""
        if handle.pumps:
            _, pending = await asyncio.wait(handle.pumps, timeout=KILL_TIMEOUT)
            for task in pending:
                task.cancel()
        if handle.watcher is not None and handle.watcher is not asyncio.current_task() and not handle.watcher.done():
            handle.watcher.cancel()
        if not handle.log_file.closed:
            handle.log_file.close()

    async def _release_slot(self) -> None:
        if self._slot is not None:
            log.debug(f"Disposing previous server instance (PID={self._slot.instance.pid})")
            await self.stop_local_server()

    # ------------------------------------------------------------------
    # Verification and status
    # ------------------------------------------------------------------

    @staticmethod
    def _process_exists(pid: int) -> bool:
        """Check if a process with given PID exists."""
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)  # Signal 0 = just check existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return False

    def _is_server_running(self) -> bool:
        instance = self._status.server_instance
        return (
            self._slot is not None
            and instance is not None
            and instance.status == ServerStatus.RUNNING
            and self._process_exists(instance.pid)
        )

    async def verify_connection(self, server_path: str) -> bool:
        """True iff an instance exists, is running, and its PID is alive."""
        instance = self._status.server_instance
        if instance is None:
            return False
        if instance.server_path and server_path and instance.server_path != server_path:
            log.debug(f"Verifying {server_path}, instance runs {instance.server_path}")
        if instance.status != ServerStatus.RUNNING:
            return False
        if not self._process_exists(instance.pid):
            instance.transition(ServerStatus.STOPPED)
            return False
        return True

    def get_connection_status(self) -> ConnectionStatus:
        """Consistent copy of the connection status; never raises."""
        return self._status.snapshot()
