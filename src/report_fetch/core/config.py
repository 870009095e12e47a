"""Configuration system for report-fetch.

Settings are Pydantic models grouped by concern (bridge, timeouts, paths,
archive, transfer, application). String values in the YAML file may use
``${NAME}`` references, resolved from the environment before validation.

The engine never reads settings from disk on its own; the CLI loads a YAML
file through :func:`load_main_config` and injects the resulting
:class:`MainConfig` at construction time.
"""

import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Annotated, Final, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from report_fetch.core.remote import normalize_remote_path

# ${NAME} with NAME in upper case letters, digits and underscores
ENV_VAR_PATTERN: Final[re.Pattern[str]] = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_REPORTS_PATH: Final[str] = "/sdcard/Documents"
DEFAULT_ARCHIVE_PATH: Final[str] = "/sdcard/Documents/Archive"
DEFAULT_OUTPUT_ROOT: Final[Path] = Path.home() / "AemulusXRReporting"

type TimeoutKey = Literal[
    "default_command",
    "device_list",
    "file_check",
    "mkdir",
    "copy",
    "remove",
    "cleanup",
    "pull",
    "output_flush",
]


class BridgeConfig(BaseModel):
    """Configuration for the device bridge binary and polling cadence."""

    adb_path: Annotated[
        str,
        Field(
            min_length=1,
            description="Path or name of the bridge (adb) executable",
        ),
    ] = "adb"
    poll_interval_ms: Annotated[
        int,
        Field(
            gt=0,
            description="Device enumeration polling interval in milliseconds",
        ),
    ] = 1000


class TimeoutsConfig(BaseModel):
    """Per-call-site time budgets for bridge commands, in milliseconds."""

    default_command: Annotated[int, Field(gt=0, description="Generic command budget")] = 5000
    device_list: Annotated[int, Field(gt=0, description="Device enumeration budget")] = 5000
    file_check: Annotated[int, Field(gt=0, description="File type/existence check budget")] = 2000
    mkdir: Annotated[int, Field(gt=0, description="Directory creation budget")] = 3000
    copy: Annotated[int, Field(gt=0, description="Remote copy budget")] = 5000
    remove: Annotated[int, Field(gt=0, description="Remote removal budget")] = 2000
    cleanup: Annotated[int, Field(gt=0, description="Archive cleanup removal budget")] = 3000
    pull: Annotated[int, Field(gt=0, description="Single file pull budget")] = 60000
    output_flush: Annotated[
        int,
        Field(ge=0, description="Grace window for buffered output after process exit"),
    ] = 500

    def seconds(self, key: TimeoutKey | str) -> float:
        """Return the budget for ``key`` converted to seconds.

        Raises:
            KeyError: If ``key`` is not a known timeout
        """
        if key not in TimeoutsConfig.model_fields:
            msg = f"Unknown timeout key: {key}"
            raise KeyError(msg)
        milliseconds: int = getattr(self, key)
        return milliseconds / 1000.0


class PathsConfig(BaseModel):
    """Remote and local locations used by the fetch pipeline."""

    reports_path: Annotated[
        str,
        Field(
            min_length=1,
            description="Remote directory holding newly generated reports",
        ),
    ] = DEFAULT_REPORTS_PATH
    archive_path: Annotated[
        str,
        Field(
            min_length=1,
            description="Remote directory receiving archived reports",
        ),
    ] = DEFAULT_ARCHIVE_PATH
    output_root: Annotated[
        Path,
        Field(
            description="Local root under which dated report folders are created",
        ),
    ] = DEFAULT_OUTPUT_ROOT

    @field_validator("reports_path", "archive_path", mode="after")
    @classmethod
    def normalize_remote_paths(cls, v: str) -> str:
        """Normalize remote paths to forward slashes without a trailing slash.

        Args:
            v: Remote path as configured

        Returns:
            Normalized remote path
        """
        return normalize_remote_path(v)

    @field_validator("output_root", mode="after")
    @classmethod
    def expand_output_root(cls, v: Path) -> Path:
        """Expand ``~`` in the local output root."""
        return v.expanduser()


class ArchiveConfig(BaseModel):
    """Configuration for remote archive retention."""

    max_archived_files: Annotated[
        int,
        Field(
            gt=0,
            description="Maximum number of files kept in the remote archive",
        ),
    ] = 100


class TransferConfig(BaseModel):
    """Configuration for host-side saving of pulled reports."""

    rename_extensions: Annotated[
        Sequence[str],
        Field(
            description="File extensions that receive the archival date stamp",
        ),
    ] = (".pdf", ".csv")
    auto_fetch: Annotated[
        bool,
        Field(
            description="Fetch automatically whenever the device comes online",
        ),
    ] = True

    @field_validator("rename_extensions", mode="after")
    @classmethod
    def validate_extensions(cls, v: Sequence[str]) -> tuple[str, ...]:
        """Ensure every extension is non-empty and starts with a dot.

        Args:
            v: Sequence of configured extensions

        Returns:
            Normalized extensions as a tuple

        Raises:
            ValueError: If an extension is blank
        """
        normalized: list[str] = []
        for extension in v:
            cleaned = extension.strip()
            if not cleaned or cleaned == ".":
                msg = "Rename extensions must not be empty"
                raise ValueError(msg)
            normalized.append(cleaned if cleaned.startswith(".") else f".{cleaned}")
        return tuple(normalized)


class ApplicationConfig(BaseModel):
    """Configuration for application-level settings."""

    log_level: Annotated[
        str,
        Field(
            description="Logging level",
            pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        ),
    ] = "INFO"
    syslog_enabled: Annotated[
        bool,
        Field(
            description="Enable syslog integration",
        ),
    ] = False


class MainConfig(BaseModel):
    """Main application configuration schema.

    Every section has defaults, so an empty YAML document yields a working
    configuration for a single device on the default paths.
    """

    bridge: Annotated[BridgeConfig, Field(description="Bridge binary and polling")] = BridgeConfig()
    timeouts: Annotated[TimeoutsConfig, Field(description="Command time budgets")] = TimeoutsConfig()
    paths: Annotated[PathsConfig, Field(description="Remote and local locations")] = PathsConfig()
    archive: Annotated[ArchiveConfig, Field(description="Archive retention")] = ArchiveConfig()
    transfer: Annotated[TransferConfig, Field(description="Host-side saving")] = TransferConfig()
    application: Annotated[ApplicationConfig, Field(description="Application settings")] = ApplicationConfig()


class EnvironmentVariableError(Exception):
    """Raised when a ``${NAME}`` reference names an unset variable."""


class ConfigurationError(Exception):
    """Raised when the configuration file cannot be read or is invalid."""


def resolve_env_var(value: str) -> str:
    """Substitute ``${NAME}`` references in ``value`` from the environment.

    Raises:
        EnvironmentVariableError: If a referenced variable is not set

    Examples:
        >>> os.environ["REPORTS_DIR"] = "/sdcard/Reports"
        >>> resolve_env_var("${REPORTS_DIR}/today")
        '/sdcard/Reports/today'
    """

    def lookup(match: re.Match[str]) -> str:
        name = match.group(1)
        try:
            return os.environ[name]
        except KeyError:
            msg = f"Environment variable '{name}' is referenced but not set"
            raise EnvironmentVariableError(msg) from None

    return ENV_VAR_PATTERN.sub(lookup, value)


def _resolve_node(node: object) -> object:
    # YAML data is untyped until MainConfig validates it
    if isinstance(node, str):
        return resolve_env_var(node)
    if isinstance(node, Mapping):
        return resolve_env_vars_in_dict(node)  # pyright: ignore[reportUnknownArgumentType]  # YAML boundary
    if isinstance(node, list):
        return [_resolve_node(item) for item in node]  # pyright: ignore[reportUnknownVariableType]  # YAML boundary
    return node


def resolve_env_vars_in_dict(data: Mapping[str, object]) -> dict[str, object]:
    """Resolve references in every string of a parsed YAML mapping.

    Nested mappings and lists are walked; other scalars pass through.
    """
    return {key: _resolve_node(value) for key, value in data.items()}


def _format_validation_error(config_path: Path, error: ValidationError) -> str:
    lines = [f"Invalid configuration in {config_path}:"]
    for detail in error.errors():
        location = " → ".join(str(part) for part in detail["loc"])
        lines.append(f"  {location}: {detail['msg']} ({detail['type']})")
    return "\n".join(lines)


def load_main_config(config_path: Path) -> MainConfig:
    """Read, resolve and validate the YAML configuration at ``config_path``.

    An empty document yields the defaults.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not a
            mapping, references an unset variable, or fails validation
    """
    if not config_path.is_file():
        msg = f"Configuration file not found: {config_path} (see config/report-fetch.yaml for an example)"
        raise ConfigurationError(msg)

    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        msg = f"Cannot read configuration file {config_path}: {e}"
        raise ConfigurationError(msg) from e

    try:
        document: object = yaml.safe_load(text)  # pyright: ignore[reportAny]  # YAML boundary
    except yaml.YAMLError as e:
        msg = f"Failed to parse YAML in {config_path}: {e}"
        raise ConfigurationError(msg) from e

    if document is None:
        document = {}
    if not isinstance(document, dict):
        msg = f"Expected YAML dictionary at the top of {config_path}, got {type(document).__name__}"
        raise ConfigurationError(msg)

    try:
        resolved = resolve_env_vars_in_dict(document)  # pyright: ignore[reportUnknownArgumentType]  # YAML boundary
    except EnvironmentVariableError as e:
        msg = f"Environment variable resolution failed for {config_path}: {e}"
        raise ConfigurationError(msg) from e

    try:
        return MainConfig.model_validate(resolved)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(config_path, e)) from e
