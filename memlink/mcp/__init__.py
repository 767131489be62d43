"""MCP client connectivity.

Architecture:
    TransportManager → Transport (websocket OR http) → remote MCP service
    - Manager handles: preference order, failure window, fallback, health and recovery
    - Transports handle: wire framing, request correlation, reconnect (websocket)

Configuration:
    - MEMLINK_TRANSPORT: auto | websocket | http (default: auto)
    - MEMLINK_WS_URL / MEMLINK_HTTP_URL: remote endpoints
    - MEMLINK_ENABLE_REALTIME: allow the websocket transport (default: true)
"""

from memlink.mcp.manager import FailureTracker, TransportManager, TransportManagerSettings, TransportManagerStatus
from memlink.mcp.transports import HttpTransport, WebSocketTransport, create_transport

__all__ = [
    "FailureTracker",
    "HttpTransport",
    "TransportManager",
    "TransportManagerSettings",
    "TransportManagerStatus",
    "WebSocketTransport",
    "create_transport",
]
