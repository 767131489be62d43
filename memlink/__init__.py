"""Memlink - resilient MCP client connectivity.

Keeps a client talking to the Memlink MCP service:
- WebSocket transport for real-time traffic, HTTP transport as fallback
- TransportManager for failure tracking, health checks and recovery
- ConnectionManager for the local MCP server process
"""

__version__ = "0.1.0"

from memlink.config import Config
from memlink.errors import ConfigurationError, ConnectionError, MemlinkError, ProcessError, ProtocolError
from memlink.local import ConnectionManager
from memlink.mcp import TransportManager, TransportManagerSettings

__all__ = [
    "Config",
    "ConfigurationError",
    "ConnectionError",
    "ConnectionManager",
    "MemlinkError",
    "ProcessError",
    "ProtocolError",
    "TransportManager",
    "TransportManagerSettings",
]
