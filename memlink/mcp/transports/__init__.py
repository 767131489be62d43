"""MCP transport adapters: websocket (real-time) and http (request/response)."""

from memlink.mcp.models import TransportConfig, TransportKind
from memlink.mcp.transports.base import BaseTransport, Transport
from memlink.mcp.transports.http import HttpTransport
from memlink.mcp.transports.websocket import WebSocketTransport

TRANSPORT_CLASSES: dict[TransportKind, type[BaseTransport]] = {
    TransportKind.WEBSOCKET: WebSocketTransport,
    TransportKind.HTTP: HttpTransport,
}


def create_transport(config: TransportConfig) -> Transport:
    """Build the transport for ``config.kind``."""
    try:
        cls = TRANSPORT_CLASSES[TransportKind(config.kind)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown transport type: {config.kind}") from None
    return cls(config)


__all__ = [
    "BaseTransport",
    "HttpTransport",
    "Transport",
    "WebSocketTransport",
    "create_transport",
]
