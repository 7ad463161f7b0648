"""
Engine settings loader.

Precedence is CLI overrides > environment (``TASKFORGE_`` prefix, ``__`` between
section and key) > ``taskforge.toml`` > built-in defaults. The merged mapping is
validated as a whole, so one error message lists every problem.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from taskforge.config.schema import (
    ConfigLoadError,
    IssueCollector,
    as_bool,
    as_enum,
    as_float,
    as_int,
    as_object,
    as_str,
    join,
    merge_config,
    reject_unknown_keys,
)
from taskforge.constants import (
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_MAX_ITERATIONS,
    SETTINGS_FILE,
    SIGNATURE_HISTORY_CAP,
    STUCK_MIN_ITERATION,
    STUCK_WINDOW_MULTIPLIER,
)
from taskforge.control_plane.engine import EngineSettings

ENV_PREFIX: Final[str] = "TASKFORGE_"
ENV_SECTION_SEPARATOR: Final[str] = "__"

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

_ValueType = Literal["str", "int", "float", "bool"]

_BINDINGS: Final[Mapping[tuple[str, str], _ValueType]] = {
    ("paths", "state_dir"): "str",
    ("engine", "default_max_iterations"): "int",
    ("engine", "command_timeout_seconds"): "float",
    ("engine", "stuck_window"): "int",
    ("engine", "stuck_min_iteration"): "int",
    ("engine", "signature_history"): "int",
    ("engine", "artifacts"): "bool",
    ("engine", "backend_logs"): "bool",
    ("logging", "level"): "str",
    ("logging", "json_logs"): "bool",
}

_DEFAULTS: Final[Mapping[str, Mapping[str, object]]] = {
    "paths": {},
    "engine": {
        "default_max_iterations": DEFAULT_MAX_ITERATIONS,
        "command_timeout_seconds": float(DEFAULT_COMMAND_TIMEOUT_SECONDS),
        "stuck_window": STUCK_WINDOW_MULTIPLIER,
        "stuck_min_iteration": STUCK_MIN_ITERATION,
        "signature_history": SIGNATURE_HISTORY_CAP,
        "artifacts": True,
        "backend_logs": True,
    },
    "logging": {"level": "INFO", "json_logs": True},
}


@dataclass(frozen=True, slots=True)
class TaskforgeSettings:
    engine: EngineSettings
    state_dir: str | None = None
    log_level: str = "INFO"
    json_logs: bool = True
    source: Path | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "paths": {"state_dir": self.state_dir},
            "engine": {
                "default_max_iterations": self.engine.default_max_iterations,
                "command_timeout_seconds": self.engine.command_timeout_seconds,
                "stuck_window": self.engine.stuck_window,
                "stuck_min_iteration": self.engine.stuck_min_iteration,
                "signature_history": self.engine.signature_history,
                "artifacts": self.engine.artifacts_enabled,
                "backend_logs": self.engine.backend_logs,
            },
            "logging": {"level": self.log_level, "json_logs": self.json_logs},
            "source": None if self.source is None else str(self.source),
        }


def load_settings(
    config_path: str | Path | None = None,
    *,
    repo_root: str | Path | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> TaskforgeSettings:
    """Load settings with deterministic precedence: CLI > env > file > defaults."""

    explicit = config_path is not None
    if config_path is not None:
        resolved = Path(config_path).expanduser().resolve()
    else:
        base = Path(repo_root) if repo_root is not None else Path.cwd()
        resolved = (base / SETTINGS_FILE).resolve()

    file_payload = _load_toml_file(resolved, required=explicit)
    env_payload = _collect_env_overrides(os.environ if environ is None else environ)
    cli_payload = _materialize_cli_overrides(cli_overrides or {})

    merged = merge_config(_DEFAULTS, file_payload)
    merged = merge_config(merged, env_payload)
    merged = merge_config(merged, cli_payload)
    return _validate(merged, source=resolved if resolved.exists() else None)


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"settings file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read settings file {path}: {exc}") from exc
    return parsed


def _collect_env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for (section, key), value_type in sorted(_BINDINGS.items()):
        env_name = f"{ENV_PREFIX}{section.upper()}{ENV_SECTION_SEPARATOR}{key.upper()}"
        raw = environ.get(env_name)
        if raw is None:
            continue
        overrides.setdefault(section, {})[key] = _coerce_env(raw, value_type, env_name)
    return overrides


def _coerce_env(raw: str, value_type: _ValueType, env_name: str) -> object:
    value = raw.strip()
    if value_type == "str":
        return value
    if value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be an integer") from exc
    if value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off)")


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    """Dotted keys (``engine.stuck_window``) become nested sections; ``None`` values are skipped."""

    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        value = cli_overrides[key]
        if value is None:
            continue
        section, _, name = key.partition(".")
        if not section or not name:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        payload.setdefault(section, {})[name] = value
    return payload


def _validate(merged: Mapping[str, object], *, source: Path | None) -> TaskforgeSettings:
    issues = IssueCollector()
    reject_unknown_keys(merged, {"paths", "engine", "logging"}, "", issues)

    paths = as_object(merged.get("paths", {}), "paths", issues) or {}
    reject_unknown_keys(paths, {"state_dir"}, "paths", issues)
    state_dir = (
        as_str(paths["state_dir"], "paths.state_dir", issues) if "state_dir" in paths else None
    )

    engine = as_object(merged.get("engine", {}), "engine", issues) or {}
    engine_keys = {key for section, key in _BINDINGS if section == "engine"}
    reject_unknown_keys(engine, engine_keys, "engine", issues)

    def engine_int(key: str) -> int | None:
        return as_int(engine.get(key), join("engine", key), issues, minimum=1)

    max_iterations = engine_int("default_max_iterations")
    stuck_window = engine_int("stuck_window")
    stuck_min_iteration = engine_int("stuck_min_iteration")
    signature_history = engine_int("signature_history")
    timeout = as_float(
        engine.get("command_timeout_seconds"), "engine.command_timeout_seconds", issues
    )
    if timeout is not None and timeout <= 0:
        issues.add("engine.command_timeout_seconds", "must be > 0")
    artifacts = as_bool(engine.get("artifacts"), "engine.artifacts", issues)
    backend_logs = as_bool(engine.get("backend_logs"), "engine.backend_logs", issues)

    logging_section = as_object(merged.get("logging", {}), "logging", issues) or {}
    reject_unknown_keys(logging_section, {"level", "json_logs"}, "logging", issues)
    level_raw = logging_section.get("level")
    level = as_enum(
        level_raw.upper() if isinstance(level_raw, str) else level_raw,
        "logging.level",
        issues,
        allowed_values=LOG_LEVELS,
    )
    json_logs = as_bool(logging_section.get("json_logs"), "logging.json_logs", issues)

    issues.raise_if_any(source="settings")
    assert max_iterations is not None and stuck_window is not None
    assert stuck_min_iteration is not None and signature_history is not None
    assert timeout is not None and artifacts is not None and backend_logs is not None
    assert level is not None and json_logs is not None

    return TaskforgeSettings(
        engine=EngineSettings(
            default_max_iterations=max_iterations,
            command_timeout_seconds=timeout,
            signature_history=signature_history,
            stuck_window=stuck_window,
            stuck_min_iteration=stuck_min_iteration,
            artifacts_enabled=artifacts,
            backend_logs=backend_logs,
        ),
        state_dir=state_dir,
        log_level=level,
        json_logs=json_logs,
        source=source,
    )


__all__ = ["ENV_PREFIX", "LOG_LEVELS", "TaskforgeSettings", "load_settings"]
