"""Configuration for gigachatui.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./gigachatui.yaml``
  3. ``~/.config/gigachatui/config.yaml``
  4. Built-in defaults

Client credentials are read from ``GIGACHAT_CLIENT_ID`` /
``GIGACHAT_CLIENT_SECRET`` (or the legacy ``CLIENT_ID`` / ``CLIENT_SECRET``)
and override values from the file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from gigachatui.types import CompletionOptions, Model

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class AuthSpec:
    """OAuth token issuer settings."""

    client_id: str = ""
    client_secret: str = ""
    auth_url: str = "https://ngw.devices.sberbank.ru:9443/api/v2/oauth"
    scope: str = "GIGACHAT_API_PERS"
    refresh_interval: float = 20 * 60  # seconds
    timeout: float = 30
    verify_ssl: bool = True

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class ApiSpec:
    """Completion endpoint settings."""

    base_url: str = "https://gigachat.devices.sberbank.ru/api/v1"
    model: str = Model.LITE.value
    timeout: float = 120
    verify_ssl: bool = True
    options: CompletionOptions = field(default_factory=CompletionOptions)


@dataclass
class StorageSpec:
    db_path: str = "~/.gigachatui/sqlite.db"


@dataclass
class ChatConfig:
    """Top-level config for gigachatui."""

    auth: AuthSpec = field(default_factory=AuthSpec)
    api: ApiSpec = field(default_factory=ApiSpec)
    storage: StorageSpec = field(default_factory=StorageSpec)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./gigachatui.yaml"),
    Path.home() / ".config" / "gigachatui" / "config.yaml",
]

_ENV_CLIENT_ID = ("GIGACHAT_CLIENT_ID", "CLIENT_ID")
_ENV_CLIENT_SECRET = ("GIGACHAT_CLIENT_SECRET", "CLIENT_SECRET")


def _pick(raw: dict[str, Any], cls: type) -> dict[str, Any]:
    """Keep only keys that are fields of dataclass *cls*."""
    fields = cls.__dataclass_fields__
    unknown = set(raw) - set(fields)
    if unknown:
        _logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return {k: v for k, v in raw.items() if k in fields and v is not None}


def _parse_api(raw: dict[str, Any] | None) -> ApiSpec:
    if not raw:
        return ApiSpec()
    raw = dict(raw)
    options_raw = raw.pop("options", None) or {}
    try:
        options = CompletionOptions(**_pick(options_raw, CompletionOptions))
    except TypeError as e:
        # e.g. ``temperature: hot`` fails the numeric range comparisons
        raise ValueError(f"invalid api.options: {e}") from e
    return ApiSpec(**_pick(raw, ApiSpec), options=options)


def _from_env(env: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


def apply_env(config: ChatConfig, env: Mapping[str, str] | None = None) -> ChatConfig:
    """Overlay client credentials from the environment."""
    env = os.environ if env is None else env
    client_id = _from_env(env, _ENV_CLIENT_ID)
    client_secret = _from_env(env, _ENV_CLIENT_SECRET)
    if client_id:
        config.auth.client_id = client_id
    if client_secret:
        config.auth.client_secret = client_secret
    return config


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> ChatConfig:
    """Load configuration from YAML and the environment.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.
    env:
        Environment mapping for credentials (defaults to ``os.environ``).

    Returns
    -------
    ChatConfig

    Raises ``FileNotFoundError`` for an explicit path that does not exist
    and ``ValueError`` for out-of-range or wrongly typed sampling options
    (including ``stream: false``).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return apply_env(ChatConfig(), env)

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = ChatConfig(
        auth=AuthSpec(**_pick(raw.get("auth") or {}, AuthSpec)),
        api=_parse_api(raw.get("api")),
        storage=StorageSpec(**_pick(raw.get("storage") or {}, StorageSpec)),
    )
    return apply_env(config, env)
