"""Troubleshooting hints for connection failures.

Maps an exception (or error message) to a category and a short list of
human-readable suggestions shown by the CLI and returned by
``ConnectionManager.connect_local()``.
"""

from memlink.errors import ConfigurationError, ProcessError


def classify_error(error: BaseException | str) -> str:
    """Return one of: auth, network, timeout, tls, config, process, unknown."""
    if isinstance(error, ConfigurationError):
        return "config"
    if isinstance(error, ProcessError):
        return "process"

    message = str(error).lower()
    code = getattr(error, "code", None)

    if code in (401, 403) or any(s in message for s in ("401", "403", "unauthorized", "authentication", "forbidden")):
        return "auth"
    if any(s in message for s in ("certificate", "ssl", "tls")):
        return "tls"
    if any(s in message for s in ("timeout", "timed out", "etimedout")):
        return "timeout"
    if any(s in message for s in ("refused", "econnrefused", "enotfound", "name resolution", "network", "unreachable")):
        return "network"
    return "unknown"


_SUGGESTIONS: dict[str, list[str]] = {
    "auth": [
        "No credentials found or credentials were rejected",
        "Set MEMLINK_API_KEY or MEMLINK_TOKEN",
        "Run: memlink status to confirm which endpoint is used",
    ],
    "network": [
        "Connection refused: the endpoint is not reachable",
        "Check the service health endpoint in a browser or with curl",
        "Verify MEMLINK_HTTP_URL / MEMLINK_WS_URL and any proxy settings",
    ],
    "timeout": [
        "Connection timeout: the endpoint did not answer in time",
        "Check network latency and firewall rules",
        "Raise MEMLINK_REQUEST_TIMEOUT if the service is slow",
    ],
    "tls": [
        "SSL/TLS certificate issue",
        "Check system time and date",
        "Check that corporate proxies are not intercepting TLS",
    ],
    "config": [
        "Ensure the package is properly installed",
        "Check that the MCP server files are present",
        "Try running: memlink local configure",
    ],
    "process": [
        "Check server logs for errors",
        "Ensure no other process is using the port",
        "Try: memlink local stop, then memlink local start",
    ],
    "unknown": [
        "Check your network connection",
        "Verify the MCP server is installed correctly",
        "Re-run with MEMLINK_LOG_LEVEL=DEBUG for details",
    ],
}


def suggestions_for(error: BaseException | str) -> list[str]:
    return list(_SUGGESTIONS[classify_error(error)])
