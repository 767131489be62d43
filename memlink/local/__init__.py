"""Local MCP server lifecycle: detection, configuration, start/stop, verification."""

from memlink.local.connection import ConnectionManager
from memlink.local.models import (
    ConfigResult,
    ConnectionResult,
    ConnectionStatus,
    LocalServerConfig,
    LocalServerState,
    ServerInstance,
    ServerStatus,
)

__all__ = [
    "ConfigResult",
    "ConnectionManager",
    "ConnectionResult",
    "ConnectionStatus",
    "LocalServerConfig",
    "LocalServerState",
    "ServerInstance",
    "ServerStatus",
]
