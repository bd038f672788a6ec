"""
Persisted configuration.

A YAML document with two sections:

    auth:
      github_token: ghp_...
    run:
      http_proxy: http://proxy:3128
      https_proxy: http://proxy:3128
      all_proxy: socks5://proxy:1080
      no_proxy: localhost,127.0.0.1

Lives at ``$XDG_CONFIG_HOME/toolkeeper/config.yml`` (``~/.config`` when unset),
or wherever ``TOOLKEEPER_CONFIG`` points.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml

from .common import atomic_write_text, env_value, xdg_dir
from .errors import ConfigCorrupt

CONFIG_DIR_NAME = "toolkeeper"
CONFIG_FILE_NAME = "config.yml"

# CLI key -> (section, field)
CONFIG_KEYS = {
    "github-token": ("auth", "github_token"),
    "run-http-proxy": ("run", "http_proxy"),
    "run-https-proxy": ("run", "https_proxy"),
    "run-all-proxy": ("run", "all_proxy"),
    "run-no-proxy": ("run", "no_proxy"),
}
SECRET_KEYS = {"github-token"}

TOKEN_ENV_VARS = ("GITHUB_TOKEN", "GH_TOKEN")


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {type(value).__name__}")
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class AuthConfig:
    """
    Credentials used for upstream API calls.

    Attributes:
        github_token: Token sent to api.github.com
    """
    github_token: str | None = None

    @staticmethod
    def from_dict(data: dict[str, Any]) -> AuthConfig:
        return AuthConfig(github_token=_clean(data.get("github_token")))

    def to_dict(self) -> dict[str, Any]:
        return {"github_token": self.github_token} if self.github_token else {}


@dataclass(frozen=True)
class RunConfig:
    """
    Proxy overrides applied to network calls and to ``keeper run`` children.

    Attributes:
        http_proxy: Proxy URL for http:// targets
        https_proxy: Proxy URL for https:// targets
        all_proxy: Proxy URL for any scheme
        no_proxy: Comma-separated bypass list
    """
    http_proxy: str | None = None
    https_proxy: str | None = None
    all_proxy: str | None = None
    no_proxy: str | None = None

    def __post_init__(self):
        """Validate proxy URLs."""
        for name in ("http_proxy", "https_proxy", "all_proxy"):
            value = getattr(self, name)
            if value is None:
                continue
            parsed = urlparse(value)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(
                    f"Invalid {name}: {value!r}. Must be a URL such as http://host:port"
                )

    @staticmethod
    def from_dict(data: dict[str, Any]) -> RunConfig:
        return RunConfig(
            http_proxy=_clean(data.get("http_proxy")),
            https_proxy=_clean(data.get("https_proxy")),
            all_proxy=_clean(data.get("all_proxy")),
            no_proxy=_clean(data.get("no_proxy")),
        )

    def to_dict(self) -> dict[str, Any]:
        out = {}
        for name in ("http_proxy", "https_proxy", "all_proxy", "no_proxy"):
            value = getattr(self, name)
            if value:
                out[name] = value
        return out


@dataclass(frozen=True)
class KeeperConfig:
    """
    Complete persisted configuration.

    Attributes:
        auth: Credential settings
        run: Proxy overrides
        source: Path the config was loaded from (empty for defaults)
    """
    auth: AuthConfig = field(default_factory=AuthConfig)
    run: RunConfig = field(default_factory=RunConfig)
    source: str = ""

    @staticmethod
    def from_dict(data: dict[str, Any], source: str = "") -> KeeperConfig:
        auth = data.get("auth") or {}
        run = data.get("run") or {}
        if not isinstance(auth, dict) or not isinstance(run, dict):
            raise ValueError("sections 'auth' and 'run' must be mappings")
        return KeeperConfig(
            auth=AuthConfig.from_dict(auth),
            run=RunConfig.from_dict(run),
            source=source,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        auth = self.auth.to_dict()
        run = self.run.to_dict()
        if auth:
            out["auth"] = auth
        if run:
            out["run"] = run
        return out


def config_path(env: Mapping[str, str] | None = None) -> Path:
    """
    Resolve the config file location.

    Raises:
        ConfigCorrupt: If neither TOOLKEEPER_CONFIG, XDG_CONFIG_HOME nor HOME is set
    """
    env = os.environ if env is None else env
    override = env_value(env, "TOOLKEEPER_CONFIG")
    if override:
        return Path(override)
    base = xdg_dir(env, "XDG_CONFIG_HOME", ".config")
    if base is None:
        raise ConfigCorrupt(
            "cannot resolve config path",
            remediation="set HOME or XDG_CONFIG_HOME",
        )
    return base / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def load_config(path: Path) -> KeeperConfig:
    """
    Load configuration from a YAML file.

    A missing file yields the defaults.

    Raises:
        ConfigCorrupt: If the file is unreadable, not YAML, or has invalid values
    """
    if not path.exists():
        return KeeperConfig()
    if not path.is_file():
        raise ConfigCorrupt(f"config path is not a file: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigCorrupt(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigCorrupt(
            f"invalid YAML in config {path}: {e}",
            remediation=f"fix or remove {path}",
        ) from e

    if data is None:
        return KeeperConfig(source=str(path))
    if not isinstance(data, dict):
        raise ConfigCorrupt(f"config {path} must be a mapping at the top level")

    try:
        return KeeperConfig.from_dict(data, source=str(path))
    except ValueError as e:
        raise ConfigCorrupt(f"invalid config {path}: {e}") from e


def save_config(cfg: KeeperConfig, path: Path) -> None:
    """Persist configuration atomically with owner-only permissions."""
    text = yaml.safe_dump(cfg.to_dict(), default_flow_style=False, sort_keys=True)
    atomic_write_text(path, text, mode=0o600)


def get_value(cfg: KeeperConfig, key: str) -> str | None:
    section, name = _lookup_key(key)
    return getattr(getattr(cfg, section), name)


def set_value(cfg: KeeperConfig, key: str, value: str | None) -> KeeperConfig:
    """
    Return a copy of cfg with key set (or cleared when value is empty).

    Raises:
        ConfigCorrupt: If the resulting value is invalid
    """
    section, name = _lookup_key(key)
    cleaned = value.strip() if value else None
    try:
        updated = replace(getattr(cfg, section), **{name: cleaned or None})
    except ValueError as e:
        raise ConfigCorrupt(str(e)) from e
    return replace(cfg, **{section: updated})


def unset_value(cfg: KeeperConfig, key: str) -> KeeperConfig:
    return set_value(cfg, key, None)


def _lookup_key(key: str) -> tuple[str, str]:
    try:
        return CONFIG_KEYS[key]
    except KeyError:
        raise ConfigCorrupt(
            f"unknown config key: {key}",
            remediation=f"valid keys: {', '.join(sorted(CONFIG_KEYS))}",
        ) from None


def mask_secret(secret: str) -> str:
    """Mask a secret, keeping the first and last four characters when long enough."""
    if len(secret) <= 8:
        return "********"
    return f"{secret[:4]}...{secret[-4:]}"


def resolve_github_token(
    explicit: str | None,
    env: Mapping[str, str],
    cfg: KeeperConfig,
) -> str | None:
    """
    Resolve the GitHub token.

    Precedence: explicit flag, GITHUB_TOKEN, GH_TOKEN, then config.
    """
    if explicit and explicit.strip():
        return explicit.strip()
    for var in TOKEN_ENV_VARS:
        value = env_value(env, var)
        if value:
            return value
    return cfg.auth.github_token
