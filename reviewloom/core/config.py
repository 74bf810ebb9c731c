"""Runtime configuration for ReviewLoom.

Settings are resolved in increasing precedence from built-in defaults,
an optional YAML file and environment variables (``.env`` is honoured).
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.path.expanduser("~/.reviewloom"))
DEFAULT_CONFIG_PATH = DATA_DIR / "config.yaml"

# argv templates per provider; "{model}" is substituted at spawn time
DEFAULT_PROVIDER_COMMANDS: Dict[str, List[str]] = {
    "claude": ["claude", "-p", "--model", "{model}"],
    "gemini": ["gemini", "--model", "{model}"],
    "codex": ["codex", "exec", "--model", "{model}", "-"],
}


@dataclass
class Settings:
    """Process-wide defaults for the analysis service."""

    database_url: str = f"sqlite:///{DATA_DIR / 'database.db'}"
    default_provider: str = "claude"
    default_model: str = "sonnet"
    worktree_root: str = str(DATA_DIR / "worktrees")

    # Resource bounds
    max_active_jobs: int = 8
    max_observers_per_job: int = 32
    max_finished_jobs: int = 256
    channel_buffer_size: int = 64

    # Progress delivery
    sse_keepalive_seconds: float = 15.0
    poll_interval_seconds: float = 1.0

    # Analyzer
    level_timeout_seconds: float = 300.0
    provider_commands: Dict[str, List[str]] = field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_COMMANDS)
    )


# env var -> (settings attribute, converter)
_ENV_OVERRIDES = {
    "DATABASE_URL": ("database_url", str),
    "REVIEWLOOM_PROVIDER": ("default_provider", str),
    "REVIEWLOOM_MODEL": ("default_model", str),
    "REVIEWLOOM_WORKTREE_ROOT": ("worktree_root", str),
    "REVIEWLOOM_MAX_ACTIVE_JOBS": ("max_active_jobs", int),
    "REVIEWLOOM_MAX_OBSERVERS": ("max_observers_per_job", int),
    "REVIEWLOOM_LEVEL_TIMEOUT": ("level_timeout_seconds", float),
}


def _load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load the optional YAML config file.

    Returns:
        Mapping of settings keys to values; empty when the file is absent.
    """
    if not config_path.exists():
        logger.debug(f"No config file at {config_path}, using defaults")
        return {}

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return data


def load_settings(config_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """Build Settings from defaults, YAML file and environment."""
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = Path(environ.get("REVIEWLOOM_CONFIG", str(DEFAULT_CONFIG_PATH)))

    settings = Settings()

    for key, value in _load_yaml_config(config_path).items():
        if key == "provider_commands" and isinstance(value, dict):
            settings.provider_commands.update({k: list(v) for k, v in value.items()})
        elif key in ("provider", "model"):
            # pair-review style short keys
            setattr(settings, f"default_{key}", value)
        elif hasattr(settings, key):
            setattr(settings, key, value)
        else:
            logger.warning(f"Ignoring unknown config key: {key}")

    for env_name, (attr, convert) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw:
            setattr(settings, attr, convert(raw))

    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached process-wide settings."""
    return load_settings()
