"""
Configuration for sourceperm.

Global settings are read from SOURCEPERM_* environment variables.
"""

from sourceperm.config.settings import SourcePermSettings, get_settings, settings

__all__ = ["SourcePermSettings", "settings", "get_settings"]
