"""
YAML configuration loader.

Reads config/gateway.yaml into a GatewayConfig and applies environment
overrides on top. The run script loads ``.env`` with python-dotenv first.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml

from wagateway.config.models import GatewayConfig

logger = structlog.get_logger("config")

DEFAULT_CONFIG_PATH = "config/gateway.yaml"

# Default YAML content written when config file does not exist
_DEFAULT_CONFIG_YAML = """\
# WhatsApp pairing gateway configuration
server:
  host: "0.0.0.0"
  port: 3000
  public_dir: "public"

sessions:
  root: "sessions"
  max_sessions: 50
  max_retries: 3
  reconnect_delay: 5
  pairing_delay: 3
  pairing_timeout: 15
  stale_after_hours: 24
  cleanup_interval: 3600
  initial_cleanup_delay: 10
  pending_ttl_minutes: 10
  pending_sweep_interval: 300
  resume_on_startup: true
  send_code_message: false
  send_connected_message: false

transport:
  bridge_url: "http://127.0.0.1:8081"
  bridge_token: ""
  timeout_seconds: 30

newsletters: []

webhooks:
  enabled: false
  on_connected: ""
  on_closed: ""
  on_message: ""
  secret: ""
  timeout_seconds: 10

logging:
  level: "INFO"
  dir: "logs"
"""

# env var -> (section, key, caster)
ENV_OVERRIDES = {
    "SESSIONS_DIR": ("sessions", "root", str),
    "MAX_SESSIONS": ("sessions", "max_sessions", int),
    "BRIDGE_URL": ("transport", "bridge_url", str),
    "BRIDGE_TOKEN": ("transport", "bridge_token", str),
    "LOG_LEVEL": ("logging", "level", str),
    "HOST": ("server", "host", str),
    "PORT": ("server", "port", int),
}


def _apply_env(raw: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    for var, (section, key, caster) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value in (None, ""):
            continue
        try:
            raw.setdefault(section, {})[key] = caster(value)
        except ValueError:
            logger.warning("config_env_override_invalid", var=var, value=value)
            continue
        logger.debug("config_env_override", var=var, section=section, key=key)
    return raw


def load_config(
    path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
    create_default: bool = True,
) -> GatewayConfig:
    """Load gateway config from YAML, creating a default file if absent.

    Args:
        path: Config file path. Defaults to ``$GATEWAY_CONFIG`` or
              ``config/gateway.yaml``.
        environ: Environment mapping for overrides (defaults to os.environ).
        create_default: Write the default YAML when the file is missing.
    """
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get("GATEWAY_CONFIG") or DEFAULT_CONFIG_PATH)

    raw: Dict[str, Any] = {}
    if not config_path.exists():
        logger.info("gateway_config_not_found", path=str(config_path), create_default=create_default)
        if create_default:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text(_DEFAULT_CONFIG_YAML, encoding="utf-8")
    else:
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            logger.error("gateway_config_parse_error", path=str(config_path), error=str(exc))
            raw = {}

    config = GatewayConfig(**_apply_env(raw, env))
    logger.info(
        "gateway_config_loaded",
        path=str(config_path),
        sessions_root=config.sessions.root,
        max_sessions=config.sessions.max_sessions,
    )
    return config
