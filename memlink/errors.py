"""Exception hierarchy for memlink.

Network-class failures (ConnectionError) feed transport failure tracking
and may trigger fallback. Everything else is surfaced to the caller as-is.
"""


class MemlinkError(Exception):
    """Base error for the connection layer."""

    def __init__(self, message: str, code: int = -1):
        super().__init__(message)
        self.code = code


class ConnectionError(MemlinkError):
    """Transport could not reach the endpoint (refused, timeout, DNS, abort)."""
    pass


class ProtocolError(MemlinkError):
    """Endpoint answered, but with an HTTP error or a malformed body."""

    def __init__(self, message: str, code: int = -1, data: object = None):
        super().__init__(message, code)
        self.data = data


class ConfigurationError(MemlinkError):
    """Missing server path or invalid configuration field."""
    pass


class ProcessError(MemlinkError):
    """Local server process failed to spawn or exited before it was ready."""

    def __init__(self, message: str, code: int = -1, log_path: str | None = None):
        super().__init__(message, code)
        self.log_path = log_path


# Lower-cased substrings that identify network-class failures
NETWORK_ERROR_SIGNATURES = (
    "network",
    "connection refused",
    "econnrefused",
    "connect call failed",
    "cannot connect",
    "all connection attempts failed",
    "enotfound",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo",
    "etimedout",
    "timed out",
    "timeout",
    "abort",
    "cancelled",
    "server disconnected",
    "connection reset",
)


def is_network_error(error: BaseException | str) -> bool:
    """Return True if an error looks like a transport-level network failure."""
    if isinstance(error, ConnectionError):
        return True
    if isinstance(error, (ProtocolError, ConfigurationError)):
        return False
    if isinstance(error, (TimeoutError, OSError)):
        return True
    message = str(error).lower()
    return any(sig in message for sig in NETWORK_ERROR_SIGNATURES)
