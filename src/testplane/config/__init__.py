"""Config module exports."""

from testplane.config.loader import load_config
from testplane.config.models import (
    DatabaseConfig,
    EditorConfig,
    LinksConfig,
    LoggingConfig,
    ProjectConfig,
    SuiteConfig,
    TesterConfig,
    TestPlaneConfig,
    WatcherConfig,
)

__all__ = [
    "load_config",
    "TestPlaneConfig",
    "DatabaseConfig",
    "EditorConfig",
    "LinksConfig",
    "LoggingConfig",
    "ProjectConfig",
    "SuiteConfig",
    "TesterConfig",
    "WatcherConfig",
]
