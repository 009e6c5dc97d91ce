"""Configuration."""

from .config import FrameworkConfig, clear_config_cache, load_config

__all__ = [
    "FrameworkConfig",
    "clear_config_cache",
    "load_config",
]
