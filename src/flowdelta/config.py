"""Configuration management for flowdelta."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from flowdelta.exceptions import ConfigError

FLOWDELTA_DIR = ".flowdelta"
CONFIG_FILE = "config.json"
DEFAULT_REGISTRY = ".exp/workflows.json"


class RegistryConfig(BaseModel):
    """Where the workflow registry lives and how strictly it is loaded."""

    path: str = DEFAULT_REGISTRY
    verify_docs: bool = True


class ValidatorConfig(BaseModel):
    """Diagram syntax checker configuration."""

    backend: Literal["mmdc", "builtin"] = "mmdc"
    command: list[str] = Field(default_factory=lambda: ["mmdc"])
    timeout: float = 10.0
    max_repairs: int = 3
    retries: int = 2
    backoff: float = 0.5


class DiffConfig(BaseModel):
    """Diagram diff behavior."""

    # "id" pairs nodes by structural id only, so a relabel is a change;
    # "id_label" pairs by (id, label), so a relabel is a removal plus an addition.
    node_identity: Literal["id_label", "id"] = "id_label"


class AnalysisConfig(BaseModel):
    """Pipeline behavior."""

    max_workers: int = 4
    flag_unchanged_matched: bool = False
    report_dir: str = ".flowdelta/reports"
    workspace_dir: str = ".flowdelta/workspaces"


class ProjectConfig(BaseModel):
    """Full project configuration."""

    name: str = ""
    root_path: str = "."
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    diff: DiffConfig = Field(default_factory=DiffConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from `start` looking for a .flowdelta directory."""
    current = (start or Path.cwd()).resolve()
    while current != current.parent:
        if (current / FLOWDELTA_DIR).is_dir():
            return current
        current = current.parent
    if (current / FLOWDELTA_DIR).is_dir():
        return current
    return None


def get_flowdelta_dir(root: Path) -> Path:
    """Get the .flowdelta directory for a project root."""
    return root / FLOWDELTA_DIR


def load_config(root: Path) -> ProjectConfig:
    """Load configuration from .flowdelta/config.json.

    Raises:
        ConfigError: The file exists but is not valid JSON or fails validation.
    """
    config_path = get_flowdelta_dir(root) / CONFIG_FILE
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
            return ProjectConfig(**data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ConfigError(f"Invalid config {config_path}: {e}") from e
    return ProjectConfig(name=root.name, root_path=str(root))


def save_config(root: Path, config: ProjectConfig) -> None:
    """Save configuration to .flowdelta/config.json."""
    fd_dir = get_flowdelta_dir(root)
    fd_dir.mkdir(parents=True, exist_ok=True)
    config_path = fd_dir / CONFIG_FILE
    config_path.write_text(json.dumps(config.model_dump(), indent=2))


def set_config_value(config: ProjectConfig, key: str, value: Any) -> ProjectConfig:
    """Set a nested config value using dot notation (e.g., 'validator.timeout')."""
    parts = key.split(".")
    data = config.model_dump()
    target = data
    for part in parts[:-1]:
        if part not in target or not isinstance(target[part], dict):
            raise KeyError(f"Invalid config key: {key}")
        target = target[part]
    if parts[-1] not in target:
        raise KeyError(f"Invalid config key: {key}")
    target[parts[-1]] = value
    return ProjectConfig(**data)
