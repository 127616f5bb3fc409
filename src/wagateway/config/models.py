"""
Pydantic models for gateway configuration.

Defines the schema loaded from config/gateway.yaml.
"""

from typing import List

from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, description="Bind port")
    public_dir: str = Field(default="public", description="Directory holding the pairing page")


class SessionsConfig(BaseModel):
    """Session lifecycle tuning."""

    root: str = Field(default="sessions", description="Root of per-session credential directories")
    max_sessions: int = Field(default=50, ge=1, description="Global cap on tracked sessions")
    max_retries: int = Field(default=3, ge=0, description="Reconnect attempts before a session is dropped")
    reconnect_delay: float = Field(default=5.0, ge=0, description="Seconds to wait before reconnecting")
    pairing_delay: float = Field(
        default=3.0,
        ge=0,
        description="Seconds between opening a socket and requesting a pairing code",
    )
    pairing_timeout: float = Field(default=15.0, gt=0, description="Seconds an HTTP request waits for a code")
    stale_after_hours: float = Field(default=24, gt=0, description="Age after which session dirs are swept")
    cleanup_interval: float = Field(default=3600, gt=0, description="Seconds between stale-dir sweeps")
    initial_cleanup_delay: float = Field(default=10, ge=0, description="Seconds before the first sweep")
    pending_ttl_minutes: float = Field(
        default=10,
        gt=0,
        description="Minutes a never-connected session may stay tracked",
    )
    pending_sweep_interval: float = Field(default=300, gt=0, description="Seconds between pending sweeps")
    resume_on_startup: bool = Field(
        default=True,
        description="Reconnect sessions found connected on disk at startup",
    )
    send_code_message: bool = Field(
        default=False,
        description="Also send the pairing code to the user's own chat (best effort)",
    )
    send_connected_message: bool = Field(
        default=False,
        description="Send a connected notice to the account's own chat after linking (best effort)",
    )


class TransportConfig(BaseModel):
    """Baileys sidecar bridge settings."""

    bridge_url: str = Field(default="http://127.0.0.1:8081", description="Sidecar base URL")
    bridge_token: str = Field(default="", description="Shared secret for both directions")
    timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP timeout for sidecar calls")


class WebhookConfig(BaseModel):
    """Webhook configuration."""

    enabled: bool = Field(default=False, description="Whether webhooks are enabled")
    on_connected: str = Field(default="", description="URL to POST when a session connects")
    on_closed: str = Field(default="", description="URL to POST when a session is dropped")
    on_message: str = Field(default="", description="URL to POST inbound WhatsApp events to")
    secret: str = Field(default="", description="HMAC-SHA256 secret for webhook signature")
    timeout_seconds: int = Field(default=10, description="HTTP request timeout in seconds")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    dir: str = Field(default="logs")


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    newsletters: List[str] = Field(
        default_factory=list,
        description="Newsletter JIDs each session follows after connecting",
    )
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
