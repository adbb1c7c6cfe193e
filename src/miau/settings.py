from __future__ import annotations

from pathlib import Path
from typing import Annotated

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
)
from pydantic.types import PositiveFloat, StrictBool
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import ConfigError, display_path, resolve_config_path
from .constants import (
    DEFAULT_AUTH_DIR,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_OPEN_TIMEOUT_S,
    DEFAULT_RECONNECT_DELAY_S,
)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class BotSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: NonEmptyStr = "Miau"


class ConnectionSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    max_reconnect_attempts: Annotated[int, Field(ge=1)] = (
        DEFAULT_MAX_RECONNECT_ATTEMPTS
    )
    reconnect_delay_s: Annotated[float, Field(ge=0)] = DEFAULT_RECONNECT_DELAY_S
    open_timeout_s: PositiveFloat | None = DEFAULT_OPEN_TIMEOUT_S
    mark_online_on_connect: StrictBool = False
    auth_dir: NonEmptyStr = str(DEFAULT_AUTH_DIR)


class JidSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    ignore: list[NonEmptyStr] = Field(default_factory=list)
    ignore_patterns: list[NonEmptyStr] = Field(default_factory=list)


class MiauSettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="MIAU__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    backend: NonEmptyStr | None = None
    handlers: list[NonEmptyStr] = Field(default_factory=list)

    bot: BotSettings = Field(default_factory=BotSettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    jids: JidSettings = Field(default_factory=JidSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    def auth_dir(self, *, config_path: Path) -> Path:
        path = Path(self.connection.auth_dir).expanduser()
        if not path.is_absolute():
            path = config_path.parent / path
        return path


def load_settings(path: str | Path | None = None) -> tuple[MiauSettings, Path]:
    cfg_path = resolve_config_path(path)
    _ensure_config_file(cfg_path)
    return _load_settings_from_path(cfg_path), cfg_path


def require_backend(settings: MiauSettings, config_path: Path) -> str:
    if settings.backend is None:
        raise ConfigError(
            f"Missing key `backend` in {display_path(config_path)}; "
            "set it to an installed session backend."
        )
    return settings.backend


def _ensure_config_file(cfg_path: Path) -> None:
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.") from None
    if not cfg_path.exists():
        raise ConfigError(
            f"Missing config file `{display_path(cfg_path)}`."
        ) from None


def _load_settings_from_path(cfg_path: Path) -> MiauSettings:
    cfg = dict(MiauSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "MiauSettingsBound",
        (MiauSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        raise ConfigError(f"Failed to load config {cfg_path}: {exc}") from exc
