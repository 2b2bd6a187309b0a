"""Configuration for open-chat.

Config discovery (first match wins):
  1. explicit ``path`` argument
  2. ``./open_chat.yaml``
  3. ``~/.config/open-chat/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from open_chat.types import GenerationParams

_logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MAX_RETRIES = 3


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProfileSpec:
    """A named provider profile (endpoint, credentials, default model)."""

    provider: str = "openrouter"
    url: str = DEFAULT_BASE_URL
    api_key: str = ""
    model: str = ""
    default_params: GenerationParams = field(default_factory=GenerationParams)
    referer: str = "https://github.com/open-chat/open-chat"
    title: str = "open-chat"
    max_retries: int = DEFAULT_MAX_RETRIES
    timeout: float = 120

    @property
    def is_openrouter(self) -> bool:
        return "openrouter" in self.url


@dataclass
class ChatConfig:
    """Top-level config."""

    # Active profile name
    profile: str = "default"

    # Named profiles
    profiles: dict[str, ProfileSpec] = field(
        default_factory=lambda: {"default": ProfileSpec()}
    )

    @property
    def active_profile(self) -> ProfileSpec:
        return self.profiles.get(self.profile, ProfileSpec())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./open_chat.yaml"),
    Path.home() / ".config" / "open-chat" / "config.yaml",
]


def _parse_params(raw: dict[str, Any] | None) -> GenerationParams:
    if not raw:
        return GenerationParams()
    return GenerationParams(
        temperature=raw.get("temperature"),
        max_tokens=raw.get("max_tokens"),
        top_p=raw.get("top_p"),
        stop=raw.get("stop"),
    )


def _parse_profile(raw: dict[str, Any]) -> ProfileSpec:
    defaults = ProfileSpec()
    return ProfileSpec(
        provider=raw.get("provider", defaults.provider),
        url=raw.get("url", defaults.url),
        api_key=raw.get("api_key", defaults.api_key),
        model=raw.get("model", defaults.model),
        default_params=_parse_params(raw.get("default_params")),
        referer=raw.get("referer", defaults.referer),
        title=raw.get("title", defaults.title),
        max_retries=raw.get("max_retries", defaults.max_retries),
        timeout=raw.get("timeout", defaults.timeout),
    )


def load_config(path: str | Path | None = None) -> ChatConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ChatConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return ChatConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return ChatConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    profiles: dict[str, ProfileSpec] = {}
    for name, praw in (raw.get("profiles") or {}).items():
        profiles[name] = _parse_profile(praw or {})

    if not profiles:
        profiles["default"] = ProfileSpec()

    return ChatConfig(
        profile=raw.get("profile", "default"),
        profiles=profiles,
    )
