"""
Gateway configuration: YAML file + environment overrides.
"""

from wagateway.config.models import (
    GatewayConfig,
    LoggingConfig,
    ServerConfig,
    SessionsConfig,
    TransportConfig,
    WebhookConfig,
)
from wagateway.config.loader import load_config

__all__ = [
    "GatewayConfig",
    "LoggingConfig",
    "ServerConfig",
    "SessionsConfig",
    "TransportConfig",
    "WebhookConfig",
    "load_config",
]
