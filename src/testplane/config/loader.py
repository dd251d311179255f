"""Configuration loading with pydantic-settings.

Supports loading configuration from multiple sources with precedence:
1. Direct kwargs (highest priority)
2. Environment variables (TESTPLANE__SECTION__KEY)
3. YAML config file (testplane.yaml, or an explicit path)
4. Built-in defaults (lowest priority)
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from testplane.config.models import (
    DatabaseConfig,
    EditorConfig,
    LinksConfig,
    LoggingConfig,
    ProjectConfig,
    TesterConfig,
    TestPlaneConfig,
    WatcherConfig,
)
from testplane.core.errors import ConfigError

DEFAULT_CONFIG_NAME = "testplane.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError.parse_error(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigError.parse_error(str(path), "top level must be a mapping")
    return data


def _settings_class(yaml_config: dict[str, Any]) -> type[BaseSettings]:
    """Settings class bound to one parsed YAML document.

    Built per call so concurrent loads of different files never share state.
    """

    class TestPlaneSettings(BaseSettings):
        """Root config. Env vars: TESTPLANE__LOGGING__LEVEL, TESTPLANE__DATABASE__PATH, etc."""

        model_config = SettingsConfigDict(
            env_prefix="TESTPLANE__",
            env_nested_delimiter="__",
            case_sensitive=False,
        )

        logging: LoggingConfig = LoggingConfig()
        database: DatabaseConfig = DatabaseConfig()
        watcher: WatcherConfig = WatcherConfig()
        links: LinksConfig = LinksConfig()
        editors: dict[str, EditorConfig] = {}
        testers: dict[str, TesterConfig] = {}
        projects: dict[str, ProjectConfig] = {}
        exclude: list[str] = []

        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            # First source wins
            yaml_settings = InitSettingsSource(settings_cls, init_kwargs=yaml_config)
            return (init_settings, env_settings, yaml_settings)

    return TestPlaneSettings


def load_config(config_path: Path | None = None, **kwargs: Any) -> TestPlaneConfig:
    """Load config: defaults < YAML file < env vars < kwargs.

    Args:
        config_path: YAML file to read. Defaults to ./testplane.yaml; a missing
                     default file means "defaults only", a missing explicit
                     file is an error.
        **kwargs: Override values (highest precedence).

    Returns:
        Fully resolved configuration object.

    Raises:
        ConfigError: On a missing explicit file, invalid YAML or validation errors.
    """
    if config_path is not None and not config_path.exists():
        raise ConfigError.file_not_found(str(config_path))
    path = config_path or Path.cwd() / DEFAULT_CONFIG_NAME
    yaml_config = _load_yaml(path)

    settings_cls = _settings_class(yaml_config)
    try:
        settings = settings_cls(**kwargs)
        return TestPlaneConfig.model_validate(settings.model_dump())
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(loc) for loc in err["loc"])
        raise ConfigError.invalid_value(field, err.get("input"), err["msg"]) from e
