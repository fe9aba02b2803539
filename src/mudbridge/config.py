"""Configuration management for the mudbridge proxy using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Proxy settings loaded from environment variables.

    All durations are in milliseconds. A value of 0 disables the
    corresponding timer where noted.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # WebSocket listener
    ws_host: str = Field(default="0.0.0.0", description="WebSocket bind address", alias="WS_HOST")
    ws_port: int = Field(
        default=8080, ge=0, le=65535, description="WebSocket listen port", alias="WS_PORT"
    )
    max_message_size: int = Field(
        default=65536, ge=1, description="Largest accepted client frame", alias="MAX_MESSAGE_SIZE"
    )

    # Telnet backend
    telnet_host: str = Field(
        default="ranvier", description="Telnet game server host", alias="TELNET_HOST"
    )
    telnet_port: int = Field(
        default=3000, ge=1, le=65535, description="Telnet game server port", alias="TELNET_PORT"
    )
    connect_timeout: int = Field(
        default=10000, ge=1, description="Backend connect timeout", alias="TELNET_CONNECT_TIMEOUT"
    )

    # Connection management
    connection_timeout: int = Field(
        default=30000, ge=0, description="Client idle timeout (0 disables)", alias="CONNECTION_TIMEOUT"
    )
    reconnect_delay: int = Field(
        default=1000, ge=0, description="Initial reconnect backoff", alias="RECONNECT_DELAY"
    )
    reconnect_max_delay: int = Field(
        default=10000, ge=0, description="Reconnect backoff ceiling", alias="RECONNECT_MAX_DELAY"
    )
    max_reconnect_attempts: int = Field(
        default=5, ge=0, description="Reconnect attempts before giving up", alias="RECONNECT_ATTEMPTS"
    )
    keepalive_interval: int = Field(
        default=30000, ge=0, description="Backend keepalive interval", alias="KEEPALIVE_INTERVAL"
    )
    keepalive_timeout: int = Field(
        default=60000, ge=0, description="Backend silence before reconnect", alias="KEEPALIVE_TIMEOUT"
    )
    ping_interval: int = Field(
        default=30000, ge=0, description="WebSocket ping interval (0 disables)", alias="PING_INTERVAL"
    )
    pong_timeout: int = Field(
        default=5000, ge=1, description="Wait for pong before closing", alias="PONG_TIMEOUT"
    )
    buffer_size: int = Field(
        default=8192, ge=1, description="Backend read size and max frame size", alias="BUFFER_SIZE"
    )
    write_queue_limit: int = Field(
        default=65536, ge=1, description="Pending backend write bytes", alias="WRITE_QUEUE_LIMIT"
    )
    shutdown_grace: int = Field(
        default=5000, ge=0, description="Drain time for sessions on shutdown", alias="SHUTDOWN_GRACE"
    )

    # Security
    max_connections: int = Field(
        default=100, ge=1, description="Max concurrent sessions", alias="MAX_CONNECTIONS"
    )
    rate_limit_window: int = Field(
        default=60000, ge=1, description="Rate limit window", alias="RATE_LIMIT_WINDOW"
    )
    rate_limit_max: int = Field(
        default=100, ge=1, description="Messages allowed per window", alias="RATE_LIMIT_MAX"
    )
    rate_limit_violations: int = Field(
        default=5,
        ge=1,
        description="Consecutive rate limit violations before the session is closed",
        alias="RATE_LIMIT_VIOLATIONS",
    )

    # Relay behaviour
    send_text_frames: bool = Field(
        default=False, description="Send backend output as text frames", alias="SEND_TEXT_FRAMES"
    )
    status_notices: bool = Field(
        default=True, description="Send connection state notices to clients", alias="STATUS_NOTICES"
    )
    filter_telnet_iac: bool = Field(
        default=False, description="Strip Telnet IAC negotiation from output", alias="FILTER_TELNET_IAC"
    )
    append_crlf: bool = Field(
        default=False, description="Terminate client messages with CRLF", alias="APPEND_CRLF"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level", alias="LOG_LEVEL")
    log_format: str = Field(
        default="console", description="Log format (console or json)", alias="LOG_FORMAT"
    )
    enable_connection_logs: bool = Field(
        default=True, description="Log connection lifecycle events", alias="ENABLE_CONNECTION_LOGS"
    )
    enable_message_logs: bool = Field(
        default=False, description="Log every relayed message", alias="ENABLE_MESSAGE_LOGS"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return value

    @property
    def telnet_target(self) -> str:
        """Backend address as host:port."""
        return f"{self.telnet_host}:{self.telnet_port}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
