"""Engine settings (TOML) and project spec (YAML) loaders."""

from taskforge.config.project_spec import (
    dump_project_spec,
    find_project_spec,
    load_project_spec,
    parse_project_spec,
)
from taskforge.config.schema import ConfigLoadError, ConfigValidationError, ConfigValidationIssue
from taskforge.config.settings import ENV_PREFIX, TaskforgeSettings, load_settings

__all__ = [
    "ENV_PREFIX",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "TaskforgeSettings",
    "dump_project_spec",
    "find_project_spec",
    "load_project_spec",
    "load_settings",
    "parse_project_spec",
]
