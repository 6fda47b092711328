"""Configuration model, YAML loading, and startup checks."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "chorebot.yaml"
CREDENTIAL_VARIABLES: tuple[str, ...] = ("GITHUB_TOKEN", "GH_TOKEN")


class ConfigError(RuntimeError):
    """Raised for invalid arguments, configuration, or environment before any stage runs."""


class SectionModel(BaseModel):
    """Base model for configuration sections; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


class EngineSettings(SectionModel):
    """Limits threaded into the workflow engine."""

    threshold: float = Field(default=90.0, ge=0, le=100)
    max_batch_size: int = Field(default=5, ge=1)
    max_units: int = Field(default=5, ge=0)
    timeout: float = Field(default=900.0, gt=0)
    concurrency: int = Field(default=4, ge=1)


class IssueSettings(SectionModel):
    """Issue tracker client behaviour."""

    list_limit: int = Field(default=150, ge=1)
    title_max_length: int = Field(default=256, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    base_branch: Optional[str] = None


class AgentSettings(SectionModel):
    """Where the analysis and remediation subagents live."""

    bin_dir: Optional[str] = None
    executables: Dict[str, str] = Field(default_factory=dict)


class VerificationCheckSettings(SectionModel):
    """One local verification command run before a change is pushed."""

    name: str
    command: List[str]
    optional: bool = False


class VerificationSettings(SectionModel):
    checks: List[VerificationCheckSettings] = Field(default_factory=list)


class PromptSettings(SectionModel):
    directory: Optional[str] = None


class WorkflowStepSettings(SectionModel):
    """A workflow step that overrides the stage's default failure policy."""

    stage: str
    policy: Literal["fatal", "skip", "retry"]
    retries: int = Field(default=1, ge=1)


class ChoreBotConfig(SectionModel):
    """Top-level configuration document."""

    engine: EngineSettings = Field(default_factory=EngineSettings)
    issues: IssueSettings = Field(default_factory=IssueSettings)
    agents: AgentSettings = Field(default_factory=AgentSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    prompts: PromptSettings = Field(default_factory=PromptSettings)
    workflows: Dict[str, List[Union[str, WorkflowStepSettings]]] = Field(default_factory=dict)


DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "engine": {
        "threshold": 90.0,
        "max_batch_size": 5,
        "max_units": 5,
        "timeout": 900.0,
        "concurrency": 4,
    },
    "issues": {
        "list_limit": 150,
        "title_max_length": 256,
        "max_attempts": 3,
        "retry_delay": 1.0,
        "backoff_factor": 2.0,
    },
    "agents": {
        "bin_dir": "agents/bin",
        "executables": {},
    },
    "verification": {
        "checks": [
            {"name": "guidelines", "command": ["make", "run-guidelines"], "optional": True},
        ],
    },
    "prompts": {"directory": None},
    "workflows": {
        "nightly": [
            "scan-todos",
            {"stage": "run-coverage-analysis", "policy": "retry", "retries": 1},
            "approve-pending-runs",
        ],
    },
}


def default_config_data() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def load_config(config_path: Path | str | None) -> ChoreBotConfig:
    """Load and validate the YAML configuration.

    ``None`` or a missing default file yields the built-in defaults; an explicit
    path that does not exist is an error.
    """
    if config_path is None:
        return ChoreBotConfig()

    path = Path(config_path)
    if not path.exists():
        if path.name == DEFAULT_CONFIG_NAME and not path.is_absolute():
            LOGGER.debug("No %s found; using defaults", DEFAULT_CONFIG_NAME)
            return ChoreBotConfig()
        raise ConfigError(f"Config file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    try:
        return ChoreBotConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration in {path}: {error}") from error


def require_credential(environ: Mapping[str, str] | None = None) -> str:
    """Return the issue tracker token or raise :class:`ConfigError` when absent."""
    env = os.environ if environ is None else environ
    for name in CREDENTIAL_VARIABLES:
        value = env.get(name, "").strip()
        if value:
            return value
    names = " or ".join(CREDENTIAL_VARIABLES)
    raise ConfigError(f"No issue tracker credential found. Set {names} in the environment.")


def resolve_repo_path(repo_path: Path | str) -> Path:
    """Validate the target repository path supplied on the command line."""
    path = Path(repo_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Repository path does not exist: {path}")
    if not path.is_dir():
        raise ConfigError(f"Repository path is not a directory: {path}")
    return path.resolve()


__all__ = [
    "AgentSettings",
    "ChoreBotConfig",
    "ConfigError",
    "CREDENTIAL_VARIABLES",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "EngineSettings",
    "IssueSettings",
    "PromptSettings",
    "VerificationCheckSettings",
    "VerificationSettings",
    "WorkflowStepSettings",
    "default_config_data",
    "load_config",
    "require_credential",
    "resolve_repo_path",
    "write_config",
]
