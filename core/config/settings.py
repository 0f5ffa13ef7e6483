# SPDX-License-Identifier: MIT
"""Controller configuration powered by ``pydantic-settings``.

Values resolve in order: explicit keyword arguments, ``CANARYGATE_*``
environment variables, ``.env`` file, then an optional YAML file named by
``config_file``.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml  # type: ignore[import-untyped]
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError
from pydantic_settings.sources import PydanticBaseSettingsSource

__all__ = [
    "ConfigError",
    "ControllerSettings",
    "RolloutPolicy",
    "SecurityThreshold",
    "YamlSettingsSource",
    "load_settings",
]

SecurityThreshold = Literal["low", "medium", "high", "critical"]


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


class RolloutPolicy(BaseModel):
    """Retry and escalation limits applied by every rollout state machine."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_traffic_attempts: PositiveInt = Field(
        5,
        description="Attempts to apply a traffic split before aborting the rollout.",
    )
    traffic_backoff_initial: PositiveFloat = Field(
        1.0,
        description="Delay in seconds before the first traffic retry.",
    )
    traffic_backoff_max: PositiveFloat = Field(
        30.0,
        description="Upper bound for the exponential traffic retry delay.",
    )
    max_inconclusive_retries: int = Field(
        2,
        ge=0,
        description="Inconclusive analysis runs retried before the rollout aborts.",
    )
    restore_attempts: PositiveInt = Field(
        5,
        description="Attempts to restore 100% stable traffic during an abort.",
    )
    restore_backoff_initial: PositiveFloat = Field(0.05)
    restore_backoff_max: PositiveFloat = Field(2.0)
    weight_poll_interval: PositiveFloat = Field(
        5.0,
        description="Seconds between checks that a requested weight was applied.",
    )
    weight_confirm_timeout: PositiveFloat = Field(
        300.0,
        description="Seconds a requested weight may stay unconfirmed before the rollout aborts.",
    )

    @model_validator(mode="after")
    def _validate_backoff(self) -> "RolloutPolicy":
        if self.traffic_backoff_max < self.traffic_backoff_initial:
            raise ValueError("traffic_backoff_max cannot be less than traffic_backoff_initial")
        if self.restore_backoff_max < self.restore_backoff_initial:
            raise ValueError("restore_backoff_max cannot be less than restore_backoff_initial")
        return self


class YamlSettingsSource(PydanticBaseSettingsSource):
    """Lowest-priority settings source reading a YAML mapping."""

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        init_source: PydanticBaseSettingsSource | None = None,
        env_source: PydanticBaseSettingsSource | None = None,
    ) -> None:
        super().__init__(settings_cls)
        self._init_source = init_source
        self._env_source = env_source

    def __call__(self) -> dict[str, Any]:
        config_path = self._resolve_path()
        if config_path is None:
            return {}
        try:
            text = config_path.read_text(encoding="utf8")
        except FileNotFoundError:
            return {}
        try:
            payload = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise SettingsError(
                f"failed to parse YAML configuration at {config_path}: {exc}"
            ) from exc
        if not isinstance(payload, Mapping):
            raise SettingsError(f"configuration file {config_path} must define a mapping")
        return dict(payload)

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def _resolve_path(self) -> Path | None:
        for source in (self._init_source, self._env_source):
            if source is None:
                continue
            data = source()
            candidate = data.get("config_file") or data.get("config")
            if candidate:
                return Path(candidate).expanduser()
        return None


class ControllerSettings(BaseSettings):
    """Process-wide configuration of the rollout controller."""

    model_config = SettingsConfigDict(
        env_prefix="CANARYGATE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf8",
        extra="ignore",
    )

    config_file: Path | None = Field(
        default=None,
        description="Optional YAML configuration file.",
        validation_alias=AliasChoices("config_file", "config"),
    )
    state_dir: Path = Field(
        Path("state"),
        description="Directory holding the SQLite rollout and history databases.",
    )
    max_workers: PositiveInt = Field(
        4,
        description="Size of the reconciliation worker pool.",
    )
    tick_interval: PositiveFloat = Field(
        10.0,
        description="Default seconds between periodic reconciliations of an active rollout.",
    )
    history_retention: PositiveInt = Field(
        20,
        description="Stable revisions retained as rollback targets.",
    )
    analysis_history_limit: PositiveInt = Field(
        25,
        description="Finished analysis runs retained per rollout.",
    )
    security_threshold: SecurityThreshold = Field(
        "medium",
        description="Lowest vulnerability severity that blocks a canary.",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field("INFO")
    log_json: bool = Field(True)
    policy: RolloutPolicy = Field(default_factory=RolloutPolicy)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_source = YamlSettingsSource(settings_cls, init_settings, env_settings)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_source,
            file_secret_settings,
        )

    @property
    def rollouts_db(self) -> Path:
        return self.state_dir / "rollouts.sqlite"

    @property
    def history_db(self) -> Path:
        return self.state_dir / "history.sqlite"


def load_settings(config_file: str | Path | None = None, **overrides: Any) -> ControllerSettings:
    """Build :class:`ControllerSettings`, raising :class:`ConfigError` on invalid input."""

    if config_file is not None:
        overrides["config_file"] = Path(config_file)
    try:
        return ControllerSettings(**overrides)
    except (ValidationError, SettingsError) as exc:
        raise ConfigError(str(exc)) from exc
