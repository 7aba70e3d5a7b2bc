"""Configuration module for obsmem."""

from obsmem.config.loader import LoadedConfig, load_config, parse_config_text, save_project_config
from obsmem.config.schema import OMConfig, ResilienceConfig, StorageSettings

__all__ = [
    "LoadedConfig",
    "OMConfig",
    "ResilienceConfig",
    "StorageSettings",
    "load_config",
    "parse_config_text",
    "save_project_config",
]
