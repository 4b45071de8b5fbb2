"""Load and validate run settings from a YAML file, the environment and CLI overrides."""

import logging
import os
from collections.abc import Mapping
from dataclasses import MISSING, asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "GCR_"
DEFAULT_SETTINGS_PATH = "settings.yml"

MANUAL_FIX_KINDS = ("issue", "pull_request")
OUTPUT_FORMATS = ("text", "table", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when settings are missing or invalid; the run must not start."""


@dataclass
class Settings:
    owner: str = ""
    topics: list[str] = field(default_factory=list)
    filter_repos: list[str] = field(default_factory=list)
    include_repos: list[str] = field(default_factory=list)
    exclude_repos: list[str] = field(default_factory=list)

    branch_name: str = "cookstyle-fixes"
    default_branch: str = "main"
    pr_title: str = "Cookstyle Automated Fixes"
    issue_title: str = "Manual Cookstyle Fixes Required"
    labels: list[str] = field(default_factory=lambda: ["cookstyle", "automated"])
    pr_body_header: str = "Hey!\nI ran Cookstyle against this repo and here are the results."
    create_manual_fix_artifacts: bool = True
    manual_fix_kind: str = "issue"

    git_name: str = "Cookstyle Bot"
    git_email: str = "cookstyle-bot@example.com"

    cache_dir: str = "/tmp/cookstyle-runner"
    workspace_dir: str = "/tmp/cookstyle-runner/workspace"
    use_cache: bool = True
    cache_max_age: int = 7 * 24 * 60 * 60
    force_refresh: bool = False
    force_refresh_repos: list[str] = field(default_factory=list)

    retry_count: int = 3
    retry_delay: float = 1.0
    thread_count: int = 5
    task_timeout: int = 1800
    command_timeout: int = 300

    manage_changelog: bool = False
    changelog_location: str = "CHANGELOG.md"
    changelog_marker: str = "## Unreleased"

    dry_run: bool = False
    log_level: str = "INFO"
    output_format: str = "text"
    report_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# YAML sections flatten onto Settings fields; keys are "<section>.<key>".
_SECTION_KEYS = {
    "github.owner": "owner",
    "github.destination_repo_owner": "owner",
    "github.topics": "topics",
    "github.destination_repo_topics": "topics",
    "github.branch_name": "branch_name",
    "github.default_git_branch": "default_branch",
    "github.default_branch": "default_branch",
    "github.pull_request.title": "pr_title",
    "github.pull_request.labels": "labels",
    "github.pull_request.body_header": "pr_body_header",
    "github.issue.title": "issue_title",
    "github.manual_fix.enabled": "create_manual_fix_artifacts",
    "github.manual_fix.kind": "manual_fix_kind",
    "git.name": "git_name",
    "git.email": "git_email",
    "cache.dir": "cache_dir",
    "cache.enabled": "use_cache",
    "cache.max_age": "cache_max_age",
    "cache.force_refresh": "force_refresh",
    "cache.force_refresh_repos": "force_refresh_repos",
    "processing.workspace_dir": "workspace_dir",
    "processing.thread_count": "thread_count",
    "processing.retry_count": "retry_count",
    "processing.retry_delay": "retry_delay",
    "processing.task_timeout": "task_timeout",
    "processing.command_timeout": "command_timeout",
    "processing.filter_repos": "filter_repos",
    "processing.include_repos": "include_repos",
    "processing.exclude_repos": "exclude_repos",
    "changelog.manage": "manage_changelog",
    "changelog.location": "changelog_location",
    "changelog.marker": "changelog_marker",
    "logging.level": "log_level",
    "output.format": "output_format",
    "output.report_path": "report_path",
}


def _flatten(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, dotted + "."))
        else:
            flat[dotted] = value
    return flat


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw YAML/env value to the type of the Settings field *name*."""
    field_def = Settings.__dataclass_fields__[name]
    if field_def.default_factory is not MISSING:
        return _split_csv(value)
    default = field_def.default
    if default is None:
        return None if value in (None, "") else str(value)
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigError(f"{name}: expected a boolean, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name}: expected an integer, got {value!r}") from exc
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name}: expected a number, got {value!r}") from exc
    return "" if value is None else str(value)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return dict(data)


def _values_from_yaml(data: Mapping[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(Settings)}
    values: dict[str, Any] = {}
    for dotted, value in _flatten(data).items():
        name = _SECTION_KEYS.get(dotted)
        if name is None and dotted in names:
            name = dotted
        if name is None:
            logger.warning("Ignoring unknown setting %r", dotted)
            continue
        values[name] = value
    return values


def _values_from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for f in fields(Settings):
        key = ENV_PREFIX + f.name.upper()
        if key in environ:
            values[f.name] = environ[key]
    return values


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Build Settings from defaults, then *path*, then ``GCR_*`` env vars, then *overrides*.

    *path* may be omitted; ``settings.yml`` in the working directory is used
    when present. An explicit *path* that does not exist is an error.
    Overrides whose value is None are ignored so CLI flags left unset do not
    mask file or environment values.

    Raises ConfigError if any source holds a value of the wrong type or the
    combined settings fail :func:`validate_settings`.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    if path is None:
        default_path = Path(environ.get(ENV_PREFIX + "SETTINGS", DEFAULT_SETTINGS_PATH))
        if default_path.exists():
            path = default_path
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Settings file not found: {path}")
        logger.debug("Loading settings from %s", path)
        values.update(_values_from_yaml(_read_yaml(path)))

    values.update(_values_from_env(environ))
    for name, value in (overrides or {}).items():
        if value is not None:
            values[name] = value

    settings = Settings(**{name: _coerce(name, value) for name, value in values.items()})
    settings.log_level = settings.log_level.upper()
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    """Raise ConfigError listing every problem found in *settings*."""
    errors: list[str] = []
    if not settings.owner.strip():
        errors.append(f"owner is required (set github.owner or {ENV_PREFIX}OWNER)")
    if settings.thread_count < 1:
        errors.append("thread_count must be at least 1")
    if settings.retry_count < 0:
        errors.append("retry_count must not be negative")
    if settings.retry_delay < 0:
        errors.append("retry_delay must not be negative")
    if settings.cache_max_age <= 0:
        errors.append("cache_max_age must be greater than 0")
    if settings.task_timeout <= 0 or settings.command_timeout <= 0:
        errors.append("task_timeout and command_timeout must be greater than 0")
    if not settings.branch_name.strip():
        errors.append("branch_name must not be empty")
    elif settings.branch_name == settings.default_branch:
        errors.append("branch_name must differ from default_branch")
    if settings.manual_fix_kind not in MANUAL_FIX_KINDS:
        errors.append(f"manual_fix_kind must be one of {', '.join(MANUAL_FIX_KINDS)}")
    if settings.output_format not in OUTPUT_FORMATS:
        errors.append(f"output_format must be one of {', '.join(OUTPUT_FORMATS)}")
    if settings.log_level not in LOG_LEVELS:
        errors.append(f"log_level must be one of {', '.join(LOG_LEVELS)}")
    if errors:
        raise ConfigError("Configuration validation failed: " + "; ".join(errors))
