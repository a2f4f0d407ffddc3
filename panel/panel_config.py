"""
Panel configuration.

The panel config file (PANEL_CONFIG_PATH, default
~/.openclaw-panel/panel.config.json) is the only place runtime mode, gateway
port and container names come from. Environment lookups for the gateway
client happen here and nowhere else; the client receives a ready-made
GatewayClientConfig.

Environment:
  PANEL_CONFIG_PATH                  - panel config file
  OPENCLAW_GATEWAY_WS_URL            - full gateway URL override
  OPENCLAW_GATEWAY_PORT              - gateway port (systemd runtime)
  OPENCLAW_GATEWAY_CONTAINER_PORT    - gateway port (docker runtime)
  OPENCLAW_CONFIG_PATH               - gateway config file (locates state dir)
  OPENCLAW_DEVICE_IDENTITY_PATH      - device identity file override
  OPENCLAW_GATEWAY_TOKEN             - fallback bearer token for RPC calls
"""

import json
import os
from pathlib import Path
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, Field

from docker_update import PANEL_CONTAINER_NAME, PANEL_IMAGE_REPO
from gateway_client import GatewayClientConfig
from image_tags import DEFAULT_IMAGE_REPO

DEFAULT_GATEWAY_PORT = 18789


class PanelSettings(BaseModel):
    listen_host: str = "127.0.0.1"
    listen_port: int = Field(default=18080, gt=0)
    # The panel's own container, recreated by /update/apply.
    container_name: str = PANEL_CONTAINER_NAME
    image_repo: str = PANEL_IMAGE_REPO


class RuntimeSettings(BaseModel):
    mode: Literal["systemd", "docker"] = "systemd"


class OpenclawSettings(BaseModel):
    config_path: str = "~/.openclaw/openclaw.json"
    service_name: str = "openclaw-gateway"
    container_name: str = "openclaw-gateway"
    image_repo: str = DEFAULT_IMAGE_REPO
    gateway_port: int = Field(default=DEFAULT_GATEWAY_PORT, gt=0)
    gateway_ws_url: str = ""


class PanelConfig(BaseModel):
    panel: PanelSettings = Field(default_factory=PanelSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    openclaw: OpenclawSettings = Field(default_factory=OpenclawSettings)


def _env(env: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return os.environ if env is None else env


def expand_home(value: str) -> str:
    text = (value or "").strip()
    if not text:
        return text
    return os.path.expanduser(text)


def _port(value) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return 0
    return parsed if parsed > 0 else 0


def get_panel_config_path(env: Optional[Mapping[str, str]] = None) -> Path:
    override = _env(env).get("PANEL_CONFIG_PATH", "").strip()
    if override:
        return Path(expand_home(override))
    return Path.home() / ".openclaw-panel" / "panel.config.json"


def load_panel_config(path: Optional[Path] = None) -> PanelConfig:
    """Load the panel config, falling back to defaults for a missing or unreadable file."""
    path = Path(path) if path else get_panel_config_path()
    if not path.exists():
        return PanelConfig()
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        print(f"[panel-config] Cannot read {path}, using defaults: {e}")
        return PanelConfig()
    if not isinstance(data, dict):
        print(f"[panel-config] {path} is not a JSON object, using defaults")
        return PanelConfig()
    return PanelConfig.model_validate(data)


def resolve_gateway_ws_url(config: PanelConfig, env: Optional[Mapping[str, str]] = None) -> str:
    """
    Gateway WebSocket URL.

    OPENCLAW_GATEWAY_WS_URL wins, then openclaw.gateway_ws_url, then a URL
    derived from the runtime: the container/service name in docker mode,
    127.0.0.1 otherwise.
    """
    env = _env(env)
    override = env.get("OPENCLAW_GATEWAY_WS_URL", "").strip()
    if override:
        return override
    explicit = config.openclaw.gateway_ws_url.strip()
    if explicit:
        return explicit

    if config.runtime.mode == "docker":
        host = (
            config.openclaw.container_name.strip()
            or config.openclaw.service_name.strip()
            or "openclaw-gateway"
        )
        env_port = env.get("OPENCLAW_GATEWAY_CONTAINER_PORT", "")
    else:
        host = "127.0.0.1"
        env_port = env.get("OPENCLAW_GATEWAY_PORT", "")
    port = _port(env_port) or _port(config.openclaw.gateway_port) or DEFAULT_GATEWAY_PORT
    return f"ws://{host}:{port}/ws"


def resolve_state_dir(config: PanelConfig, env: Optional[Mapping[str, str]] = None) -> Path:
    env = _env(env)
    config_path = expand_home(env.get("OPENCLAW_CONFIG_PATH", "")) or expand_home(config.openclaw.config_path)
    if config_path:
        return Path(config_path).parent
    return Path.home() / ".openclaw"


def resolve_identity_path(config: PanelConfig, env: Optional[Mapping[str, str]] = None) -> Path:
    override = expand_home(_env(env).get("OPENCLAW_DEVICE_IDENTITY_PATH", ""))
    if override:
        return Path(override)
    return resolve_state_dir(config, env) / "identity" / "device.json"


def build_gateway_client_config(
    config: PanelConfig,
    env: Optional[Mapping[str, str]] = None,
) -> GatewayClientConfig:
    """The one place gateway client settings are read from the environment."""
    env = _env(env)
    return GatewayClientConfig(
        url=resolve_gateway_ws_url(config, env),
        identity_path=resolve_identity_path(config, env),
        token=env.get("OPENCLAW_GATEWAY_TOKEN", "").strip(),
    )
