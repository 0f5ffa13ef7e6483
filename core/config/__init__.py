"""Configuration helpers for canarygate components."""

from .settings import (
    ConfigError,
    ControllerSettings,
    RolloutPolicy,
    SecurityThreshold,
    YamlSettingsSource,
    load_settings,
)

__all__ = [
    "ConfigError",
    "ControllerSettings",
    "RolloutPolicy",
    "SecurityThreshold",
    "YamlSettingsSource",
    "load_settings",
]
