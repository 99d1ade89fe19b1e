"""Server settings, read from the environment and an optional ``.env`` file."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from recall_mcp.router import DEFAULT_MAX_BODY_BYTES
from recall_mcp.session_store import DEFAULT_IDLE_TIMEOUT, DEFAULT_SWEEP_INTERVAL

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseSettings):
    """Recall MCP server settings.

    Every field maps to an upper-case environment variable of the same name,
    e.g. RECALL_NETWORK=mainnet or SESSION_IDLE_TIMEOUT=600.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # Recall toolkit
    recall_private_key: SecretStr | None = None
    """Required to provision sessions; the server still boots without it."""
    recall_network: str = "testnet"

    # HTTP settings
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: LogLevel = "INFO"
    max_body_bytes: int = Field(default=DEFAULT_MAX_BODY_BYTES, gt=0)

    # Session settings
    session_idle_timeout: float = Field(default=DEFAULT_IDLE_TIMEOUT, gt=0)
    session_sweep_interval: float = Field(default=DEFAULT_SWEEP_INTERVAL, gt=0)
    enable_resumability: bool = False
    """Keep a per-session in-memory event log so clients can resume with Last-Event-ID."""
