"""Data model shared by transports and the transport manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable


class TransportKind(str, Enum):
    """Closed set of transport channels."""

    WEBSOCKET = "websocket"
    HTTP = "http"


class TransportPreference(str, Enum):
    AUTO = "auto"
    WEBSOCKET = "websocket"
    HTTP = "http"


class TransportEvent(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    MESSAGE = "message"
    RECONNECTING = "reconnecting"


class ConnectionHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"


# Handlers receive the event and an optional payload
EventHandler = Callable[[TransportEvent, Any], None]


@dataclass(frozen=True)
class AuthDescriptor:
    """Credential rendered into request headers.

    bearer -> Authorization: Bearer <value>
    apikey -> X-API-Key: <value>
    """

    type: str
    value: str

    def __post_init__(self):
        if self.type not in ("bearer", "apikey"):
            raise ValueError(f"Unsupported auth type: {self.type}")

    def as_headers(self) -> dict[str, str]:
        if self.type == "bearer":
            return {"Authorization": f"Bearer {self.value}"}
        return {"X-API-Key": self.value}


@dataclass(frozen=True)
class ReconnectPolicy:
    enabled: bool = True
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0


@dataclass(frozen=True)
class TransportConfig:
    """Immutable configuration handed to a transport at construction."""

    kind: TransportKind
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    auth: AuthDescriptor | None = None
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    timeout: float = 30.0


@dataclass
class TransportStatus:
    connected: bool
    kind: TransportKind
    url: str
    latency: float | None = None
    last_ping: datetime | None = None
    last_error: str | None = None
    reconnect_attempts: int = 0


@dataclass
class ToolRequest:
    """MCP tool call envelope: {method: "tools/call", params: {name, arguments}}."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    method: str = "tools/call"

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "params": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolRequest":
        params = data.get("params") or {}
        return cls(
            name=params.get("name", ""),
            arguments=params.get("arguments") or {},
            method=data.get("method", "tools/call"),
        )


@dataclass
class ToolError:
    code: int
    message: str
    data: Any = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            d["data"] = self.data
        return d


@dataclass
class ToolResponse:
    """MCP response envelope: exactly one of result / error is meaningful."""

    result: Any = None
    error: ToolError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, code: int, message: str, data: Any = None) -> "ToolResponse":
        return cls(error=ToolError(code=code, message=message, data=data))

    @classmethod
    def from_dict(cls, data: dict) -> "ToolResponse":
        err = data.get("error")
        if err:
            return cls.failure(
                int(err.get("code", -1)),
                str(err.get("message", "Unknown error")),
                err.get("data"),
            )
        return cls(result=data.get("result"))

    def to_dict(self) -> dict:
        if self.error is not None:
            return {"error": self.error.to_dict()}
        return {"result": self.result}
