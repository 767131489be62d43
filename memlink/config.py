"""Configuration for memlink.

Simple dataclass-based configuration with sensible defaults.
Override via environment variables with MEMLINK_ prefix.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from memlink.log_config import get_logger

log = get_logger("config")

# Look for .env in the working directory and the package parent
_pkg_dir = Path(__file__).parent.parent
_env_loaded = load_dotenv(Path.cwd() / ".env") or load_dotenv(_pkg_dir / ".env")
log.debug(f"Loaded .env file: {_env_loaded}")

DEFAULT_WEBSOCKET_URL = "wss://mcp.memlink.dev/ws"
DEFAULT_HTTP_URL = "https://api.memlink.dev/api/v1"


def _get_env(key: str, default: str) -> str:
    """Get environment variable with MEMLINK_ prefix."""
    return os.getenv(f"MEMLINK_{key}", default)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean environment variable."""
    val = os.getenv(f"MEMLINK_{key}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


@dataclass
class Config:
    """memlink client configuration.

    Attributes:
        data_dir: Directory for config and process logs (default: ~/.memlink)
        websocket_url: WebSocket MCP endpoint
        http_url: HTTP REST base URL
        preference: Transport preference: auto, websocket or http
        enable_realtime: Prefer real-time (WebSocket) first in auto mode
        request_timeout: Per-request and per-connect timeout in seconds
        failure_threshold: Failures within the window that trigger fallback
        failure_window: Sliding failure window in seconds
        health_check_interval: Seconds between transport health checks
        recovery_interval: Seconds between attempts to restore the preferred transport
    """

    data_dir: Path = field(
        default_factory=lambda: Path(_get_env("DATA_DIR", str(Path.home() / ".memlink")))
    )
    websocket_url: str = field(
        default_factory=lambda: _get_env("WS_URL", DEFAULT_WEBSOCKET_URL)
    )
    http_url: str = field(
        default_factory=lambda: _get_env("HTTP_URL", DEFAULT_HTTP_URL)
    )
    preference: str = field(
        default_factory=lambda: _get_env("TRANSPORT", "auto")
    )
    enable_realtime: bool = field(
        default_factory=lambda: _get_env_bool("ENABLE_REALTIME", True)
    )
    request_timeout: float = field(
        default_factory=lambda: float(_get_env("REQUEST_TIMEOUT", "30"))
    )
    failure_threshold: int = field(
        default_factory=lambda: int(_get_env("FAILURE_THRESHOLD", "3"))
    )
    failure_window: float = field(
        default_factory=lambda: float(_get_env("FAILURE_WINDOW", "60"))
    )
    health_check_interval: float = field(
        default_factory=lambda: float(_get_env("HEALTH_CHECK_INTERVAL", "30"))
    )
    recovery_interval: float = field(
        default_factory=lambda: float(_get_env("RECOVERY_INTERVAL", "300"))
    )

    def __post_init__(self):
        """Ensure paths are Path objects and log the effective settings."""
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)

        log.debug(f"data_dir={self.data_dir}")
        log.debug(f"websocket_url={self.websocket_url}, http_url={self.http_url}")
        log.debug(f"preference={self.preference}, enable_realtime={self.enable_realtime}")
        log.debug(
            f"failure_threshold={self.failure_threshold}, failure_window={self.failure_window}s"
        )

    @property
    def config_path(self) -> Path:
        """Path of the persisted local server config."""
        override = os.getenv("MEMLINK_CONFIG_PATH")
        if override:
            return Path(override)
        return self.data_dir / "mcp-config.json"
