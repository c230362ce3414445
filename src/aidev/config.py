"""Loading and validation of ``config.yaml``."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from .diagnoser import DiagnoseConfig
from .models.chat_completions import DEFAULT_BASE_URL, DEFAULT_MODEL
from .orchestrator import RepairConfig
from .tools.extractors import ExtractorTables

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "path": ".",
    },
    "diagnose": {
        "timeout": 300,
        "runtime_timeout": 10,
        "check_config": True,
        "check_deps": True,
        "check_build": True,
        "check_lint": True,
        "check_tests": True,
        "check_runtime": True,
        "autofix": False,
        "max_fix_attempts": 3,
    },
    "toolchain": {
        "build": "go build -v ./...",
        "vet": "go vet ./...",
        "lint": "golangci-lint run --timeout 5m --issues-exit-code 1",
        "test": "go test -v -json ./...",
        "deps_verify": "go mod verify",
        "deps_tidy": "go mod tidy -v",
        "run": "go run",
        "manifest": "go.mod",
    },
    "extractors": {
        "escalated_linters": ["errcheck", "staticcheck"],
        "linter_suggestions": {},
        "compiler_rules": [],
    },
    "repair": {
        "max_retries": 3,
        "build_verify": True,
        "test_verify": False,
        "verify_timeout": 300,
    },
    "models": {
        "default": DEFAULT_MODEL,
        "base_url": DEFAULT_BASE_URL,
        "timeout": 60,
        "max_attempts": 1,
        "retry_delay": 0.5,
    },
    "files": {
        "backup": True,
        "backup_dir": ".ai-backup",
        "max_backups": 10,
    },
}


@dataclass(slots=True)
class ModelSettings:
    """Validated ``models`` section plus CLI overrides."""

    default: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 60.0
    max_attempts: int = 1
    retry_delay: float = 0.5
    api_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("models.timeout must be positive.")
        if self.max_attempts < 1:
            raise ValueError("models.max_attempts must be at least 1.")
        if self.retry_delay < 0:
            raise ValueError("models.retry_delay cannot be negative.")

    @property
    def offline(self) -> bool:
        name = self.default.lower()
        return name == "offline" or name.endswith("-offline")


_REPAIR_ADAPTER = TypeAdapter(RepairConfig)
_MODELS_ADAPTER = TypeAdapter(ModelSettings)


class ConfigError(ValueError):
    """Raised when the configuration file is missing, malformed or invalid."""


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def load_config(config_path: Path, *, required: bool = True) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary.

    A missing file yields the default template unless ``required`` is set.
    """
    if not config_path.exists():
        if required:
            raise ConfigError(f"Config file not found: {config_path}")
        return copy_config_template()

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def section(config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    """Return the mapping stored under ``name`` or an empty dict."""
    value = config.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping.")
    return dict(value)


def resolve_project_path(config: Mapping[str, Any], config_path: Path, override: Path | None = None) -> Path:
    """Resolve the project directory, relative paths being anchored at the config file."""
    if override is not None:
        return override.resolve()
    raw = section(config, "project").get("path") or "."
    candidate = Path(str(raw))
    if not candidate.is_absolute():
        candidate = config_path.resolve().parent / candidate
    return candidate.resolve()


def build_diagnose_config(
    config: Mapping[str, Any],
    *,
    project_path: Path,
    **overrides: Any,
) -> DiagnoseConfig:
    try:
        return DiagnoseConfig.from_mapping(
            section(config, "diagnose"),
            section(config, "toolchain"),
            project_path=project_path,
            **overrides,
        )
    except (ValidationError, ValueError) as error:
        raise ConfigError(f"Invalid diagnose/toolchain configuration: {error}") from error


def build_repair_config(config: Mapping[str, Any], **overrides: Any) -> RepairConfig:
    data = section(config, "repair")
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return _REPAIR_ADAPTER.validate_python(data)
    except (ValidationError, ValueError) as error:
        raise ConfigError(f"Invalid repair configuration: {error}") from error


def build_model_settings(
    config: Mapping[str, Any],
    *,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ModelSettings:
    data = section(config, "models")
    overrides = {"default": model, "api_key": api_key, "timeout": timeout}
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return _MODELS_ADAPTER.validate_python(data)
    except (ValidationError, ValueError) as error:
        raise ConfigError(f"Invalid models configuration: {error}") from error


def build_extractor_tables(config: Mapping[str, Any]) -> ExtractorTables:
    return ExtractorTables.from_mapping(section(config, "extractors"))


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ModelSettings",
    "build_diagnose_config",
    "build_extractor_tables",
    "build_model_settings",
    "build_repair_config",
    "copy_config_template",
    "load_config",
    "resolve_project_path",
    "section",
    "write_config",
]
