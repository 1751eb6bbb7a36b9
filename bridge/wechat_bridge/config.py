"""Configuration loading and persistence.

The config is a YAML mapping read into a plain dict.  Sections:

    account    messaging service endpoint, auth key, login tunables
    gateway    agent gateway URL, token, agent id, timeouts
    reconnect  backoff tunables shared by both clients
    auth       pairing store path and optional fixed pairing code
    media      inbound image directory
    behavior   channel name, health interval, chatroom filter, dry run
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.openclaw/wechat-bridge/config.yaml"

_DEFAULT_CONFIG = """\
# WeChat bridge configuration
# Created automatically on first run.

account:
  host: 127.0.0.1
  port: 8099
  # Leave empty to mint one with the admin key on first start.
  auth_key: ""
  admin_key: ""
  login_poll_interval: 2
  login_timeout: 120

gateway:
  url: ws://127.0.0.1:18789
  token: ""
  agent_id: main
  call_timeout: 120

reconnect:
  base_delay: 2
  max_delay: 30

behavior:
  channel: wechat
  health_interval: 30
  ignore_chatrooms: false
"""


def load_config(config_path: str) -> dict[str, Any]:
    """Load YAML config, returning an empty dict if the file is missing."""
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning("Config file not found: %s, using defaults", path)
        return {}
    return yaml.safe_load(path.read_text()) or {}


def ensure_config(config_path: str) -> str:
    """Create a default config file if none exists."""
    path = Path(config_path).expanduser()
    if path.exists():
        return str(path)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_DEFAULT_CONFIG)
    logger.info("Created default config at %s", path)
    return str(path)


def save_auth_key(config_path: str, auth_key: str) -> None:
    """Persist a freshly generated account auth key into the config file."""
    path = Path(config_path).expanduser()
    data: dict[str, Any] = {}
    if path.exists():
        data = yaml.safe_load(path.read_text()) or {}
    data.setdefault("account", {})["auth_key"] = auth_key
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    logger.info("Saved account auth key to %s", path)


def client_config(config: dict[str, Any], section: str) -> dict[str, Any]:
    """Build a client's config: its section plus the shared reconnect tunables."""
    reconnect = config.get("reconnect", {})
    merged: dict[str, Any] = {}
    if "base_delay" in reconnect:
        merged["reconnect_base_delay"] = reconnect["base_delay"]
    if "max_delay" in reconnect:
        merged["reconnect_max_delay"] = reconnect["max_delay"]
    if config.get("behavior", {}).get("dry_run"):
        merged["dry_run"] = True
    merged.update(config.get(section, {}))
    return merged
