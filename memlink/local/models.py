"""Config and status types for the local MCP server manager."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from memlink.log_config import get_logger

log = get_logger("local.models")

LogLevel = Literal["error", "warn", "info", "debug"]


class LocalServerConfig(BaseModel):
    """Persisted local server configuration, validated on every update."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    local_server_path: str = ""
    server_port: int = Field(3000, ge=1000, le=65535)
    auto_start: bool = True
    connection_timeout: float = Field(10.0, gt=0, description="Seconds to wait for readiness")
    retry_attempts: int = Field(3, gt=0)
    log_level: LogLevel = "info"


class ServerStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class LocalServerState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


# Forward-only transitions within one instance's life
_ALLOWED_TRANSITIONS: dict[ServerStatus, set[ServerStatus]] = {
    ServerStatus.STARTING: {ServerStatus.RUNNING, ServerStatus.STOPPED, ServerStatus.ERROR},
    ServerStatus.RUNNING: {ServerStatus.STOPPED, ServerStatus.ERROR},
    ServerStatus.STOPPED: set(),
    ServerStatus.ERROR: set(),
}


@dataclass
class ServerInstance:
    pid: int
    port: int
    status: ServerStatus
    start_time: datetime
    log_path: str
    server_path: str = ""

    def transition(self, new_status: ServerStatus) -> bool:
        """Move to ``new_status`` if allowed; terminal states never change."""
        if new_status == self.status:
            return True
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            log.debug(f"Ignoring transition {self.status.value} -> {new_status.value} (pid={self.pid})")
            return False
        self.status = new_status
        return True

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "port": self.port,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "log_path": self.log_path,
            "server_path": self.server_path,
        }


@dataclass
class ConnectionStatus:
    is_connected: bool = False
    connection_attempts: int = 0
    server_path: str | None = None
    server_instance: ServerInstance | None = None
    last_connected: datetime | None = None
    last_error: str | None = None

    def snapshot(self) -> "ConnectionStatus":
        instance = replace(self.server_instance) if self.server_instance is not None else None
        return replace(self, server_instance=instance)


@dataclass
class ConnectionResult:
    success: bool
    server_path: str | None = None
    error: str | None = None
    suggestions: list[str] = field(default_factory=list)


@dataclass
class ConfigResult:
    success: bool
    config_path: str | None = None
    server_path: str | None = None
    error: str | None = None
