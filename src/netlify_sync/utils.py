"""Configuration loading for netlify-sync."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from .exceptions import ConfigError

DEFAULT_CONFIG_PATH = Path("~/.config/netlify-sync/config.json")
DEFAULT_IGNORE_PATTERNS = (".*", "_src/")
DEPLOY_STRATEGIES = ("inprocess", "subprocess")


def _expand(value: str) -> Path:
    return Path(os.path.expanduser(value)).resolve()


@dataclass(frozen=True)
class Config:
    """Runtime configuration loaded from config.json."""

    src_dir: Path
    site_id: str
    token_path: Path
    state_dir: Path
    ignore_patterns: tuple[str, ...] = DEFAULT_IGNORE_PATTERNS
    history_limit: int = 6
    deploy_strategy: str = "inprocess"
    poll_interval_seconds: float = 10.0
    connectivity_url: str = "https://api.netlify.com"
    connectivity_timeout_seconds: float = 3.0
    api_base_url: str = "https://api.netlify.com/api/v1"
    deploy_message: str = "Manual deploy from netlify-sync"
    deploy_timeout_seconds: float = 300.0
    python_executable: str = sys.executable

    @classmethod
    def from_dict(cls, payload: dict) -> Config:
        """Create a Config object from a raw dictionary."""
        for key in ("src_dir", "site_id", "token_path"):
            if key not in payload:
                raise ConfigError(f"Missing required config key: {key}")

        ignore_patterns = payload.get("ignore_patterns", list(DEFAULT_IGNORE_PATTERNS))
        if not isinstance(ignore_patterns, list):
            raise TypeError("ignore_patterns must be a list of glob patterns")

        history_limit = int(payload.get("history_limit", 6))
        poll_interval_seconds = float(payload.get("poll_interval_seconds", 10.0))
        connectivity_timeout_seconds = float(payload.get("connectivity_timeout_seconds", 3.0))
        deploy_timeout_seconds = float(payload.get("deploy_timeout_seconds", 300.0))
        deploy_strategy = str(payload.get("deploy_strategy", "inprocess"))

        if history_limit <= 0:
            raise ValueError(f"history_limit must be positive, got {history_limit}")
        if poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {poll_interval_seconds}"
            )
        if connectivity_timeout_seconds <= 0:
            raise ValueError(
                "connectivity_timeout_seconds must be positive, "
                f"got {connectivity_timeout_seconds}"
            )
        if deploy_timeout_seconds <= 0:
            raise ValueError(
                f"deploy_timeout_seconds must be positive, got {deploy_timeout_seconds}"
            )
        if deploy_strategy not in DEPLOY_STRATEGIES:
            raise ValueError(
                f"deploy_strategy must be one of {', '.join(DEPLOY_STRATEGIES)}, "
                f"got {deploy_strategy!r}"
            )

        return cls(
            src_dir=_expand(payload["src_dir"]),
            site_id=str(payload["site_id"]),
            token_path=_expand(payload["token_path"]),
            state_dir=_expand(payload.get("state_dir", "~/.cache/netlify-sync")),
            ignore_patterns=tuple(str(p) for p in ignore_patterns),
            history_limit=history_limit,
            deploy_strategy=deploy_strategy,
            poll_interval_seconds=poll_interval_seconds,
            connectivity_url=str(payload.get("connectivity_url", cls.connectivity_url)),
            connectivity_timeout_seconds=connectivity_timeout_seconds,
            api_base_url=str(payload.get("api_base_url", cls.api_base_url)).rstrip("/"),
            deploy_message=str(payload.get("deploy_message", cls.deploy_message)),
            deploy_timeout_seconds=deploy_timeout_seconds,
            python_executable=str(payload.get("python_executable", sys.executable)),
        )


def load_config(path: Path) -> Config:
    """Load configuration from the provided path."""
    path = Path(os.path.expanduser(str(path)))
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as err:
        raise ConfigError(f"Failed to read config {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")
    return Config.from_dict(data)
