"""Configuration management for zk-ultralight.

Provides environment-based configuration using Pydantic Settings.
All settings can be overridden via environment variables with the
ZK_ULTRALIGHT_ prefix.

Example:
    export ZK_ULTRALIGHT_HOSTS=zk1:2181,zk2:2181,zk3:2181
    export ZK_ULTRALIGHT_CONNECT_TIMEOUT=8
    export ZK_ULTRALIGHT_LOG_LEVEL=DEBUG
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class UltralightConfig(BaseSettings):
    """Configuration settings for zk-ultralight.

    Loads settings from environment variables (ZK_ULTRALIGHT_ prefix) and .env
    file. Settings cascade: .env file < environment variables < explicit overrides.

    Configuration Groups:
        Cluster: Host list and session/connect timeouts
        Tools: Session timeout for the tree-walk commands
        Observability: OTEL endpoint and logging preferences
    """

    model_config = SettingsConfigDict(
        env_prefix="ZK_ULTRALIGHT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Cluster Configuration
    hosts: str = Field(
        default="localhost:2181",
        description="Comma-separated host:port list of the coordination cluster",
    )
    session_timeout: float | None = Field(
        default=None,
        description="Session timeout in seconds (client default when unset)",
    )
    connect_timeout: float = Field(
        default=16.0,
        description="Seconds to wait for a usable session before failing",
    )

    # Tools
    tool_session_timeout: float = Field(
        default=60.0,
        description="Session timeout in seconds for the tree-walk commands",
    )

    # Observability
    otel_enabled: bool = Field(default=False, description="Enable OpenTelemetry")
    otel_endpoint: str | None = Field(
        default=None,
        description="OpenTelemetry collector endpoint (console exporter when unset)",
    )
    otel_service_name: str = Field(default="zk-ultralight", description="OTEL service.name")
    otel_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0, description="Trace sampling")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format (json or console)")

    @field_validator("connect_timeout", "tool_session_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @property
    def host_list(self) -> list[str]:
        """Hosts as a list, whitespace and empty entries removed."""
        return [h.strip() for h in self.hosts.split(",") if h.strip()]
