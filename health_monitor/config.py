"""
Health Monitor Configuration - Endpoints, cadence and retry settings.

Values come from environment variables (a local .env file is loaded
first). Credentials are never logged; `to_dict()` masks them.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Optional

from dotenv import load_dotenv

from .models import MetricKind
from .retry import RetryPolicy


load_dotenv()


DEFAULT_PROGRAM_ID = "6JjHXLheGSNvvexgzMthEcgjkcirDrGduc3HAKB2P1v2"
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///health_monitor.db"


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def derive_ws_url(rpc_url: str) -> str:
    """Websocket endpoint matching an HTTP RPC endpoint."""
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://"):]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://"):]
    return rpc_url


@dataclass
class MonitorConfig:
    """Main configuration for the health monitor."""

    # Endpoints
    rpc_url: str = DEFAULT_RPC_URL
    ws_url: str = ""
    protocol_api_url: str = ""
    database_url: str = DEFAULT_DATABASE_URL

    # Credentials
    telegram_bot_token: Optional[str] = None

    # Protocol
    program_id: str = DEFAULT_PROGRAM_ID
    metric_kind: MetricKind = MetricKind.HEALTH
    rearm_margin: Optional[int] = None  # None -> metric_kind.default_margin

    # Cadence
    poll_interval_seconds: float = 120.0
    heartbeat_interval_seconds: float = 86_400.0
    command_poll_timeout_seconds: int = 30

    # Outbound call retries
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Protocol client initialization recovery
    client_init_base_delay_seconds: float = 1.0
    client_init_max_attempts: int = 10

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    def __post_init__(self) -> None:
        if not self.ws_url:
            self.ws_url = derive_ws_url(self.rpc_url)
        if self.rearm_margin is None:
            self.rearm_margin = self.metric_kind.default_margin

    @property
    def metric_max(self) -> Optional[int]:
        return self.metric_kind.maximum

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Build configuration from environment variables."""
        margin = os.environ.get("REARM_MARGIN")
        return cls(
            rpc_url=os.environ.get("RPC_URL", DEFAULT_RPC_URL),
            ws_url=os.environ.get("WS_URL", ""),
            protocol_api_url=os.environ.get("PROTOCOL_API_URL", ""),
            database_url=os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN") or None,
            program_id=os.environ.get("PROGRAM_ID", DEFAULT_PROGRAM_ID),
            metric_kind=MetricKind(os.environ.get("METRIC_KIND", MetricKind.HEALTH.value)),
            rearm_margin=int(margin) if margin else None,
            poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 120.0),
            heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", 86_400.0),
            retry=RetryPolicy(
                max_retries=_env_int("MAX_RETRIES", 3),
                initial_delay_seconds=_env_float("RETRY_INITIAL_DELAY", 1.0),
            ),
            client_init_base_delay_seconds=_env_float("CLIENT_INIT_BASE_DELAY", 1.0),
            client_init_max_attempts=_env_int("CLIENT_INIT_MAX_ATTEMPTS", 10),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "text"),
        )

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems: list[str] = []
        if not self.telegram_bot_token:
            problems.append("TELEGRAM_BOT_TOKEN is not set")
        if not self.protocol_api_url:
            problems.append("PROTOCOL_API_URL is not set")
        if self.poll_interval_seconds <= 0:
            problems.append("POLL_INTERVAL_SECONDS must be positive")
        if self.rearm_margin is not None and self.rearm_margin <= 0:
            problems.append("REARM_MARGIN must be positive")
        if self.client_init_max_attempts < 1:
            problems.append("CLIENT_INIT_MAX_ATTEMPTS must be at least 1")
        if self.retry.max_retries < 0:
            problems.append("MAX_RETRIES must not be negative")
        return problems

    def to_dict(self) -> dict[str, Any]:
        return {
            "rpc_url": self.rpc_url,
            "ws_url": self.ws_url,
            "protocol_api_url": self.protocol_api_url,
            "database_url": self.database_url,
            "telegram_bot_token": "***" if self.telegram_bot_token else None,
            "program_id": self.program_id,
            "metric_kind": self.metric_kind.value,
            "rearm_margin": self.rearm_margin,
            "poll_interval_seconds": self.poll_interval_seconds,
            "heartbeat_interval_seconds": self.heartbeat_interval_seconds,
            "max_retries": self.retry.max_retries,
            "client_init_max_attempts": self.client_init_max_attempts,
        }


# Default configuration instance
_default_config: Optional[MonitorConfig] = None


def get_config() -> MonitorConfig:
    """Get the process configuration, loading it from the environment once."""
    global _default_config
    if _default_config is None:
        _default_config = MonitorConfig.from_env()
    return _default_config


def set_config(config: MonitorConfig) -> None:
    """Set the process configuration."""
    global _default_config
    _default_config = config
