"""
Configuration Loading Functions.

Handles loading RepoRadar configuration from YAML with ``${VAR}`` expansion
and environment variable overrides. Environment variables take precedence
over the file so deployments can change settings without editing it.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from reporadar.core.config import Config
from reporadar.core.exceptions import ValidationError
from reporadar.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"

# env var -> (section, key, converter)
ENV_OVERRIDES = {
    "REPORADAR_JOB_STORE_URL": ("jobs", "store_url", str),
    "REDIS_URL": ("jobs", "store_url", str),
    "REPORADAR_JOB_QUEUE_NAME": ("jobs", "queue_name", str),
    "REPORADAR_JOB_CONCURRENCY": ("jobs", "concurrency", int),
    "REPORADAR_JOB_MAX_ATTEMPTS": ("jobs", "max_attempts", int),
    "REPORADAR_JOB_RETENTION_MS": ("jobs", "retention_ms", int),
    "REPORADAR_LOG_LEVEL": ("logging", "level", str),
}


def expand_env_vars(value: Any) -> Any:
    """Recursively expand environment variables in config values.

    Strings may use ``${VAR_NAME}`` or ``${VAR_NAME:default}``.

    Args:
        value: Configuration value (string, dict, list, or primitive)

    Returns:
        Value with all environment variables expanded
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}:]+)(?::([^}]*))?\}"

        def replace_env_var(match: re.Match) -> str:
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(match.group(1), default_value)

        return re.sub(pattern, replace_env_var, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay environment variables onto raw config data.

    REPORADAR_JOB_STORE_URL wins over REDIS_URL when both are set.
    """
    for env_name in reversed(list(ENV_OVERRIDES)):
        raw = os.environ.get(env_name)
        if not raw:
            continue
        section, key, convert = ENV_OVERRIDES[env_name]
        try:
            value = convert(raw)
        except ValueError as e:
            raise ValidationError(f"Invalid value for {env_name}: {raw!r}") from e
        data.setdefault(section, {})[key] = value
    return data


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from YAML plus environment overrides.

    Args:
        config_path: Path to the YAML file. Defaults to ./config.yaml;
            a missing default file yields the built-in defaults.

    Returns:
        Validated Config
    """
    path = config_path or Path.cwd() / DEFAULT_CONFIG_FILE
    data: Dict[str, Any] = {}

    if path.exists():
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValidationError(f"Config file must contain a mapping: {path}")
        data = expand_env_vars(loaded)
        logger.debug("Loaded config file", path=str(path))
    elif config_path is not None:
        raise ValidationError(f"Config file not found: {config_path}")

    data = _apply_env_overrides(data)
    return Config.from_dict(data)


def save_config(config: Config, config_path: Path) -> None:
    """Write configuration to YAML."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.to_dict(), f, sort_keys=False)
