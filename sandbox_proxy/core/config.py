"""Proxy configuration loading.

Configuration is only read from host-side locations. The workspace is
writable from inside the container and must never influence policy or
binaries.
"""

from __future__ import annotations

import os
from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field

from sandbox_proxy.core.models import ConfigError

CONFIG_ENV_VAR = "SANDBOX_PROXY_CONFIG"
SCREENSHOTS_ENV_VAR = "CLIPBOARD_SCREENSHOTS_DIR"

# Layout shared with the container-side clients
PROXY_DIR_NAME = ".claude-sandbox"
GH_PROXY_SOCKET_NAME = "gh-proxy.sock"
CLIPBOARD_PROXY_SOCKET_NAME = "clipboard-proxy.sock"
CONTAINER_WORKSPACE = Path("/workspace")


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "sandbox-proxy" / "config.yaml"


def default_screenshots_dir() -> Path:
    override = os.environ.get(SCREENSHOTS_ENV_VAR)
    if override:
        return Path(override)
    return Path.home() / "Pictures" / "Screenshots"


def proxy_dir(workspace: Path) -> Path:
    return workspace / PROXY_DIR_NAME


def gh_socket_path(workspace: Path) -> Path:
    return proxy_dir(workspace) / GH_PROXY_SOCKET_NAME


def clipboard_socket_path(workspace: Path) -> Path:
    return proxy_dir(workspace) / CLIPBOARD_PROXY_SOCKET_NAME


def audit_log_path(socket_path: Path) -> Path:
    """Audit log lives beside its socket: gh-proxy.sock -> gh-proxy.log."""
    return socket_path.with_suffix(".log")


class ProxyConfig(BaseModel):
    """Settings shared by both proxies."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    gh_binary: str = "gh"

    # Timeouts (seconds)
    command_timeout: float = Field(default=120.0, gt=0)
    read_timeout: float = Field(default=30.0, gt=0)

    # Size limits (prevent unbounded memory use per request)
    max_request_bytes: int = Field(default=1024 * 1024, gt=0)
    max_output_bytes: int = Field(default=50 * 1024 * 1024, gt=0)

    # Clipboard proxy
    screenshots_dir: Path = Field(default_factory=default_screenshots_dir)
    screenshot_max_age: float = Field(default=120.0, gt=0)
    screenshot_extensions: frozenset[str] = frozenset(
        {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}
    )

    # Parent-exit polling interval when --watch-parent is set
    watchdog_interval: float = Field(default=2.0, gt=0)

    @pydantic.field_validator("screenshots_dir", mode="after")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    @pydantic.field_validator("screenshot_extensions", mode="before")
    @classmethod
    def _normalize_extensions(cls, value):
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(
                (e if str(e).startswith(".") else f".{e}").lower() for e in value
            )
        return value


def load_config(path: Path | None = None) -> ProxyConfig:
    """Load configuration from YAML.

    Search order: explicit path, $SANDBOX_PROXY_CONFIG, then
    ~/.config/sandbox-proxy/config.yaml. A missing default file yields
    defaults; a missing explicit file is an error.

    Raises:
        ConfigError: If the file is unreadable, not a mapping, or invalid
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_ENV_VAR))
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_path) if env_path else default_config_path()

    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return ProxyConfig()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML file '{path}': {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file '{path}': {e}") from e

    if data is None:
        return ProxyConfig()
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid YAML content in '{path}'. "
            f"Expected a dictionary, got {type(data).__name__}."
        )

    try:
        return ProxyConfig(**data)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid config '{path}': {details}") from e
