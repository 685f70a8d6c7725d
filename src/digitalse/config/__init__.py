"""
config/ — runtime settings (config.yaml + .env, validated by pydantic).
"""

from digitalse.config.settings import ConfigError, Settings, get_settings, load_settings

__all__ = ["ConfigError", "Settings", "get_settings", "load_settings"]
