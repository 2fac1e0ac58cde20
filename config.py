from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_DIR_CANDIDATES = (".clawdbot", ".openclaw")
GATEWAY_CONFIG_FILES = ("clawdbot.json", "openclaw.json")
BRIDGE_CONFIG_FILE = "bridge.json"
DEFAULT_GATEWAY_PORT = 18789

BRIDGE_JSON_EXAMPLE = """{
    "feishu": {
      "app_id": "cli_xxx",
      "app_secret": "xxx"
    }
  }"""


class ConfigError(Exception):
    """Configuration is missing or invalid."""


class FeishuConfig(BaseModel):
    app_id: str = Field(default="")
    app_secret: str = Field(default="")
    verification_token: str = Field(default="")
    api_base: str = Field(default="https://open.feishu.cn/open-apis")


class GatewayConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=DEFAULT_GATEWAY_PORT, ge=0, le=65535)
    token: str = Field(default="")
    agent_id: str = Field(default="main")
    session_key: str = Field(default="")
    client_platform: str = Field(default="linux")
    ask_timeout_s: float = Field(default=15 * 60, gt=0)
    reset_timeout_s: float = Field(default=10.0, gt=0)


class BridgeSettings(BaseModel):
    platform: str = Field(default="feishu")
    thinking_threshold_ms: int = Field(default=0, ge=0)
    edit_interval_ms: int = Field(default=300, ge=0)
    animation_interval_ms: int = Field(default=500, ge=0)
    dedup_ttl_s: float = Field(default=600, gt=0)
    dedup_sweep_interval_s: float = Field(default=60, gt=0)
    restart_gateway_on_reset: bool = Field(default=True)
    restart_command: List[str] = Field(default_factory=lambda: ["clawdbot", "gateway", "restart"])
    shutdown_grace_s: float = Field(default=10.0, ge=0)


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    events_path: str = Field(default="/feishu/events")


class SystemConfig(BaseModel):
    log_dir: Optional[Path] = Field(default=None)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        value = (v or "INFO").upper()
        if value not in valid_levels:
            raise ValueError(f"log_level must be one of: {sorted(valid_levels)}")
        return value


class BridgeConfig(BaseSettings):
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)
    server: ServerConfig = Field(default_factory=ServerConfig)
    system: SystemConfig = Field(default_factory=SystemConfig)

    model_config = SettingsConfigDict(
        env_prefix="BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


def config_dir(home: Optional[Path] = None) -> Path:
    """First existing of ~/.clawdbot, ~/.openclaw; defaults to ~/.clawdbot."""
    home = home or Path.home()
    candidates = [home / name for name in CONFIG_DIR_CANDIDATES]
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    return candidates[0]


def _find_config_file(directory: Path, *names: str) -> Optional[Path]:
    for name in names:
        path = directory / name
        if path.exists():
            return path
    return None


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"failed to read {path}: {e}") from e
    except ValueError as e:
        raise ConfigError(f"failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"failed to parse {path}: expected a JSON object")
    return data


def _deep_merge(target: dict, source: dict) -> dict:
    for k, v in source.items():
        if isinstance(v, dict) and isinstance(target.get(k), dict):
            _deep_merge(target[k], v)
        else:
            target[k] = v
    return target


def _file_overrides(gateway_data: Dict[str, Any], bridge_data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the on-disk layouts onto BridgeConfig fields."""
    gw = gateway_data.get("gateway") or {}
    overrides: Dict[str, Any] = {"gateway": {}, "feishu": {}, "bridge": {}}

    if gw.get("port"):
        overrides["gateway"]["port"] = gw["port"]
    token = (gw.get("auth") or {}).get("token")
    if token:
        overrides["gateway"]["token"] = token

    overrides["feishu"].update(bridge_data.get("feishu") or {})
    if bridge_data.get("thinking_threshold_ms") is not None:
        overrides["bridge"]["thinking_threshold_ms"] = bridge_data["thinking_threshold_ms"]
    if bridge_data.get("agent_id"):
        overrides["gateway"]["agent_id"] = bridge_data["agent_id"]
    if bridge_data.get("session_key"):
        overrides["gateway"]["session_key"] = bridge_data["session_key"]
    for section in ("bridge", "server", "system"):
        if isinstance(bridge_data.get(section), dict):
            _deep_merge(overrides.setdefault(section, {}), bridge_data[section])
    return overrides


def load_config(directory: Optional[Path] = None) -> BridgeConfig:
    """Load gateway + bridge config files from the config dir.

    Gateway config: clawdbot.json or openclaw.json (managed by ClawdBot).
    Bridge config: bridge.json. Environment (BRIDGE_*) fills what the files
    leave unset.
    """
    directory = directory or config_dir()

    gw_path = _find_config_file(directory, *GATEWAY_CONFIG_FILES)
    if gw_path is None:
        raise ConfigError(
            f"failed to find gateway config ({' or '.join(GATEWAY_CONFIG_FILES)}) in {directory}"
        )
    br_path = _find_config_file(directory, BRIDGE_CONFIG_FILE)
    if br_path is None:
        raise ConfigError(
            f"failed to find {BRIDGE_CONFIG_FILE} in {directory}\n\n"
            f"Create it with:\n  {BRIDGE_JSON_EXAMPLE}"
        )

    base_from_env = BridgeConfig()
    merged_data = base_from_env.model_dump()
    _deep_merge(merged_data, _file_overrides(_read_json(gw_path), _read_json(br_path)))

    try:
        cfg = BridgeConfig(**merged_data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e

    if not cfg.feishu.app_id:
        raise ConfigError(f"feishu.app_id is required in {br_path}")
    if not cfg.feishu.app_secret:
        raise ConfigError(f"feishu.app_secret is required in {br_path}")
    if not cfg.gateway.port:
        cfg.gateway.port = DEFAULT_GATEWAY_PORT
    if cfg.system.log_dir is None:
        cfg.system.log_dir = directory

    return cfg


def parse_key_value(args: List[str]) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        if sep:
            result[key] = value
    return result


def save_bridge_args(args: List[str], directory: Optional[Path] = None) -> Optional[Path]:
    """Persist ``fs_app_id=… fs_app_secret=… agent_id=… thinking_ms=…`` into bridge.json.

    Nothing is written unless an app id or secret is given.
    """
    kv = parse_key_value(args)
    app_id = kv.get("fs_app_id", "")
    app_secret = kv.get("fs_app_secret", "")
    if not app_id and not app_secret:
        return None

    directory = directory or config_dir()
    path = directory / BRIDGE_CONFIG_FILE
    data: Dict[str, Any] = {}
    if path.exists():
        try:
            data = _read_json(path)
        except ConfigError:
            data = {}

    feishu = data.setdefault("feishu", {})
    if app_id:
        feishu["app_id"] = app_id
    if app_secret:
        feishu["app_secret"] = app_secret
    if "agent_id" in kv:
        data["agent_id"] = kv["agent_id"]
    if "thinking_ms" in kv:
        try:
            data["thinking_threshold_ms"] = int(kv["thinking_ms"])
        except ValueError:
            pass

    directory.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    os.chmod(path, 0o600)
    return path
