"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (TESTPLANE__SECTION__KEY)
3. YAML config file (testplane.yaml)
4. Built-in defaults (this file)

Environment Variable Format:
    TESTPLANE__<SECTION>__<KEY>=<VALUE>

Examples:
    TESTPLANE__LOGGING__LEVEL=DEBUG
    TESTPLANE__DATABASE__PATH=/var/lib/testplane/state.db
    TESTPLANE__WATCHER__SYNC_INTERVAL_SEC=30
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from testplane.core.errors import ConfigError

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
ArtifactStrategy = Literal["generic", "pattern"]

# Matches "tests/example.spec.js:4", "(resources/js/example.spec.js:4:23" and
# "/app/tests/ExampleTest.php:449". Group 1 is the file, group 2 the line.
DEFAULT_FILE_MATCHER = r"((?:\.{0,2}/)?[\w\-.]+(?:/[\w\-.]+)*\.[A-Za-z]\w*):(\d+)"

DEFAULT_EDIT_URL_TEMPLATE = "/testplane/file/edit?filename={file}&suite_id={suite_id}&line={line}"


class LogOutputConfig(BaseModel):
    """Single logging output configuration."""

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        TESTPLANE__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every queue transition.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class DatabaseConfig(BaseModel):
    """State database configuration.

    Env vars:
        TESTPLANE__DATABASE__PATH: SQLite file holding tests, runs and the queue
        TESTPLANE__DATABASE__MAX_RETRIES: Max retry attempts for locked DB
    """

    path: str = Field(
        default=".testplane/state.db",
        description="SQLite database file. Relative paths resolve against the working directory.",
    )
    busy_timeout_ms: int = Field(
        default=30000,
        description="SQLite busy timeout (ms). How long to wait for locks.",
    )
    max_retries: int = Field(
        default=3,
        description="Max retry attempts for locked database errors.",
    )
    retry_base_delay_sec: float = Field(
        default=0.1,
        description="Base delay between retries (exponential backoff).",
    )


class WatcherConfig(BaseModel):
    """Continuous runner timing.

    Env vars:
        TESTPLANE__WATCHER__ENABLED: React to filesystem changes
        TESTPLANE__WATCHER__SYNC_INTERVAL_SEC: Full re-scan period
    """

    enabled: bool = Field(default=True, description="React to filesystem changes.")
    debounce_sec: float = Field(
        default=0.5,
        description="Quiet period before a batch of file changes is processed.",
    )
    sync_interval_sec: float = Field(
        default=60.0,
        description="Period of the full test re-scan. 0 disables the timer.",
    )
    poll_interval_sec: float = Field(
        default=1.0,
        description="Worker sleep when the queue is empty.",
    )


class LinksConfig(BaseModel):
    """Source-reference linking in processed logs."""

    file_matcher: str = Field(
        default=DEFAULT_FILE_MATCHER,
        description="Regex finding file references in logs. Group 1 = file, group 2 = line.",
    )
    edit_url_template: str = Field(
        default=DEFAULT_EDIT_URL_TEMPLATE,
        description="Link target with {file} (url-safe base64), {line} and {suite_id}.",
    )


class EditorConfig(BaseModel):
    """Editor launch command."""

    bin: str = Field(description="Command template with {file} and {line} placeholders.")
    default: bool = False


class TesterConfig(BaseModel):
    """Profile of an external test-running tool."""

    command: str
    output_folder: str | None = None
    output_html_fail_extension: str | None = None
    output_png_fail_extension: str | None = None
    require_tee: bool = False
    require_script: bool = False
    error_pattern: str | None = None
    env: dict[str, str] | None = None
    artifact_strategy: ArtifactStrategy = "generic"
    screenshot_pattern: str | None = Field(
        default=None,
        description="Pattern strategy only: regex whose group 2 names a failing case.",
    )
    screenshot_template: str | None = Field(
        default=None,
        description="Pattern strategy only: screenshot file name with a {name} placeholder.",
    )


class SuiteConfig(BaseModel):
    """A group of tests inside a project, run by one tester."""

    tester: str
    tests_path: str | None = None
    command_options: str | None = None
    file_mask: str | None = None
    retries: int = 0
    editor: str | None = None


class ProjectConfig(BaseModel):
    """A codebase root and its suites."""

    path: str
    tests_path: str = "tests"
    suites: dict[str, SuiteConfig] = Field(default_factory=dict)
    exclude: list[str] = Field(default_factory=list)
    depends: list[str] = Field(default_factory=list)


class TestPlaneConfig(BaseModel):
    """Root configuration for TestPlane."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    links: LinksConfig = Field(default_factory=LinksConfig)
    editors: dict[str, EditorConfig] = Field(default_factory=dict)
    testers: dict[str, TesterConfig] = Field(default_factory=dict)
    projects: dict[str, ProjectConfig] = Field(default_factory=dict)
    exclude: list[str] = Field(
        default_factory=list,
        description="Path prefixes never turned into tests, for every project.",
    )

    def exclusions_for(self, project_name: str) -> list[str]:
        """Global plus project exclusion prefixes, made absolute."""
        project = self.projects.get(project_name)
        if project is None:
            return list(self.exclude)
        root = Path(project.path)
        prefixes = list(self.exclude)
        for prefix in project.exclude:
            p = Path(prefix)
            prefixes.append(str(p if p.is_absolute() else root / p))
        return prefixes

    def default_editor(self) -> EditorConfig:
        for editor in self.editors.values():
            if editor.default:
                return editor
        raise ConfigError.no_default_editor()

    def editor_bin(self, name: str | None) -> str:
        """Command template for the named editor, falling back to the default."""
        if name and name in self.editors:
            return self.editors[name].bin
        return self.default_editor().bin
