"""Configuration discovery, loading and saving."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from obsmem.config.schema import OMConfig
from obsmem.errors import ConfigError
from obsmem.logging import get_logger
from obsmem.utils.helpers import atomic_write_text

logger = get_logger(__name__)

CONFIG_FILENAME = "om-config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    return (cwd or Path.cwd()) / ".obsmem" / CONFIG_FILENAME


def get_global_config_path() -> Path:
    return Path.home() / ".obsmem" / CONFIG_FILENAME


@dataclass
class LoadedConfig:
    config: OMConfig
    path: Path | None = None


def parse_config_text(text: str) -> OMConfig:
    """Parse user-supplied JSON into a normalized config.

    Raises:
        ConfigError: if *text* is not a JSON object.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("config must be a JSON object")
    return OMConfig.model_validate(raw)


def load_config(cwd: Path | None = None) -> LoadedConfig:
    """
    Load the first config file found (project, then global).

    A malformed file yields full defaults rather than a partial merge.
    """
    for path in (get_project_config_path(cwd), get_global_config_path()):
        if not path.exists():
            continue
        try:
            config = parse_config_text(path.read_text(encoding="utf-8"))
        except (ConfigError, OSError) as e:
            logger.warning("Failed to load config, using defaults", path=str(path), error=str(e))
            return LoadedConfig(config=OMConfig(), path=path)
        return LoadedConfig(config=config, path=path)
    return LoadedConfig(config=OMConfig())


def save_project_config(config: OMConfig, cwd: Path | None = None) -> Path:
    path = get_project_config_path(cwd)
    atomic_write_text(path, json.dumps(config.to_json_dict(), indent=2, ensure_ascii=False) + "\n")
    logger.info("Config saved", path=str(path))
    return path
