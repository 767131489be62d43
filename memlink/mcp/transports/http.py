"""HTTP transport: maps MCP tool calls onto the REST API.

Request/response only, so it is never real-time capable. ``connect()`` is a
probe of the service's ``/health`` endpoint.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import httpx

from memlink.errors import ConfigurationError, ConnectionError, is_network_error
from memlink.log_config import get_logger
from memlink.mcp.models import ToolRequest, ToolResponse, TransportConfig, TransportEvent, TransportKind
from memlink.mcp.transports.base import BaseTransport

log = get_logger("mcp.http")

# Known tools with a dedicated REST endpoint; everything else goes to /mcp/tools/{name}
TOOL_ENDPOINTS: dict[str, str] = {
    "memory_create": "/memory",
    "memory_search": "/memory/search",
    "memory_list": "/memory",
    "memory_get": "/memory",
    "memory_update": "/memory",
    "memory_delete": "/memory",
    "memory_stats": "/memory/stats",
    "topic_create": "/topics",
    "topic_list": "/topics",
    "system_health": "/health",
}

ACTION_METHODS: dict[str, str] = {
    "create": "POST",
    "update": "PUT",
    "delete": "DELETE",
    "search": "POST",
}

MALFORMED_BODY_CODE = -32700
API_PREFIX = "/api/v1"


def map_tool_to_endpoint(tool_name: str) -> str:
    return TOOL_ENDPOINTS.get(tool_name, f"/mcp/tools/{tool_name}")


def map_tool_to_method(tool_name: str) -> str:
    """Infer the HTTP verb from the trailing action segment (memory_create -> create)."""
    action = tool_name.rsplit("_", 1)[-1] or tool_name
    return ACTION_METHODS.get(action, "GET")


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def build_query(arguments: dict[str, Any]) -> dict[str, str]:
    """Serialize tool arguments as query parameters, dropping None values."""
    return {k: _query_value(v) for k, v in arguments.items() if v is not None}


def health_url_for(base_url: str) -> str:
    """Derive the health endpoint from the configured base URL.

    https://api.example.com/api/v1 -> https://api.example.com/health
    """
    url = httpx.URL(base_url)
    path = url.path.rstrip("/")
    if path.endswith(API_PREFIX):
        path = path[: -len(API_PREFIX)].rstrip("/")
    return str(url.copy_with(path=f"{path}/health"))


class HttpTransport(BaseTransport):
    """HTTP transport over httpx.AsyncClient."""

    kind = TransportKind.HTTP

    def __init__(self, config: TransportConfig):
        super().__init__(config)
        self.base_url = config.url.rstrip("/")
        self._client: httpx.AsyncClient | None = None

    @property
    def health_url(self) -> str:
        return health_url_for(self.config.url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=self.build_headers(),
                timeout=httpx.Timeout(self.config.timeout),
            )
        return self._client

    async def _close_client(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def connect(self) -> None:
        """Probe the health endpoint; raises ConnectionError on failure."""
        if self._disposed:
            raise ConfigurationError("Transport has been disposed")

        log.debug(f"Probing {self.health_url}")
        try:
            client = await self._get_client()
            response = await client.get(self.health_url)
        except httpx.HTTPError as e:
            self._connected = False
            self._last_error = str(e) or type(e).__name__
            self._emit(TransportEvent.ERROR, e)
            raise ConnectionError(f"Health check failed: {self._last_error}") from e

        if not response.is_success:
            self._connected = False
            self._last_error = f"Health check failed: {response.status_code} {response.reason_phrase}"
            error = ConnectionError(self._last_error, code=response.status_code)
            self._emit(TransportEvent.ERROR, error)
            raise error

        self._connected = True
        self._last_ping = datetime.now(timezone.utc)
        self._last_error = None
        log.info(f"HTTP transport connected to {self.base_url}")
        self._emit(TransportEvent.CONNECTED)

    async def disconnect(self) -> None:
        self._connected = False
        await self._close_client()
        self._emit(TransportEvent.DISCONNECTED)

    async def send(self, request: ToolRequest) -> ToolResponse:
        if not self._connected:
            return self.not_connected()

        endpoint = map_tool_to_endpoint(request.name)
        method = map_tool_to_method(request.name)
        url = f"{self.base_url}{endpoint}"
        arguments = request.arguments or {}

        try:
            client = await self._get_client()
            if method == "GET":
                response = await client.request(method, url, params=build_query(arguments))
            else:
                response = await client.request(method, url, json=arguments)
        except httpx.HTTPError as e:
            return self._handle_request_error(e)

        self._last_ping = datetime.now(timezone.utc)

        if response.status_code >= 400:
            # Protocol-level failure: the endpoint is reachable, state is untouched
            log.debug(f"{method} {endpoint} -> {response.status_code}")
            return ToolResponse.failure(
                response.status_code,
                f"HTTP {response.status_code}: {response.reason_phrase}",
                response.text,
            )

        if not response.content:
            data = None
        else:
            try:
                data = response.json()
            except ValueError as e:
                preview = response.text[:200]
                log.warning(f"Malformed JSON from {endpoint}: {preview}")
                return ToolResponse.failure(
                    MALFORMED_BODY_CODE, f"Malformed response body: {e}", preview
                )

        self._emit(TransportEvent.MESSAGE, data)
        return ToolResponse(result=data)

    def _handle_request_error(self, error: Exception) -> ToolResponse:
        self._last_error = str(error) or type(error).__name__
        network = isinstance(error, (httpx.TimeoutException, httpx.NetworkError)) or is_network_error(
            self._last_error
        )
        if network:
            self._mark_disconnected(self._last_error)
        self._emit(TransportEvent.ERROR, error)
        return ToolResponse.failure(-1, self._last_error)

    async def dispose(self) -> None:
        self._disposed = True
        self._handlers.clear()
        self._connected = False
        await self._close_client()
