"""
Configuration system using Pydantic for type-safe settings management.

Settings are loaded from a YAML file with ``${VAR}`` interpolation and can be
overridden through ``AUTOPILOT_*`` environment variables, using ``__`` as the
nested delimiter (``AUTOPILOT_WORKFLOW__MAX_WORK_HOURS=4``).
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_autopilot.engine.recovery import FixType
from repo_autopilot.exceptions import ConfigurationError


class GitProviderConfig(BaseModel):
    """Host provider configuration (GitHub or Gitea)."""

    provider_type: Literal["github", "gitea"] = Field(default="github", description="Type of host provider")
    base_url: HttpUrl = Field(default=HttpUrl("https://api.github.com"), description="API base URL of the host")
    api_token: SecretStr = Field(..., description="API token for authentication (supports ${ENV})")


class RepositoryConfig(BaseModel):
    """Repository configuration."""

    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    default_branch: str = Field(default="main", description="Base branch for work branches and pull requests")


class WorkflowConfig(BaseModel):
    """Scheduler timing and recovery behavior."""

    max_work_hours: float = Field(default=8.0, ge=0.0, description="Time box per assignment before abandonment")
    resume_completion_percentage: int = Field(
        default=50, ge=1, le=100, description="Completion percentage credited when work resumes after a blocker"
    )
    max_recovery_attempts: int = Field(
        default=3, ge=1, description="Escalation waits allowed before an escalated failure abandons the workflow"
    )
    recovery_timeout_minutes: float = Field(default=30.0, gt=0.0, description="Upper bound on one recovery attempt")
    enable_aggressive_recovery: bool = Field(
        default=False, description="Attempt recovery for conflicts and CI failures not marked as automatically fixable"
    )
    idle_poll_seconds: float = Field(default=10.0, gt=0.0, description="Sleep between polls when no work is assigned")
    progress_poll_seconds: float = Field(default=30.0, gt=0.0, description="Sleep between work observations")
    review_poll_seconds: float = Field(default=60.0, gt=0.0, description="Sleep between review checks")
    escalation_wait_seconds: float = Field(
        default=60.0, gt=0.0, description="Wait before re-trying an escalated blocker"
    )
    monitoring_interval_seconds: float = Field(default=300.0, gt=0.0, description="Status report interval")
    max_concurrent_agents: int = Field(default=3, ge=1, le=50, description="Maximum assignments held at once")
    checkpoint_directory: str = Field(default=".autopilot/checkpoints", description="Directory for checkpoint files")
    enable_checkpoints: bool = Field(default=True, description="Write checkpoints on terminal transitions")
    checkpoints_kept: int = Field(default=5, ge=1, description="Checkpoint files kept per agent")
    checkpoint_max_age_days: int = Field(
        default=30, ge=1, description="Checkpoints older than this are deleted at startup"
    )


class LabelsConfig(BaseModel):
    """Issue labels the scheduler reads and writes."""

    ready: str = Field(default="autopilot:ready", description="Issue is available for assignment")
    in_progress: str = Field(default="in-progress", description="Issue is claimed by an agent")
    work_complete: str = Field(default="autopilot:done", description="Agent reports the work is finished")
    blocked_prefix: str = Field(default="blocked:", description="Prefix of blocker labels, e.g. blocked:tests")
    changes_requested: str = Field(default="changes-requested", description="Review changes handed to the agent")
    completed: str = Field(default="completed", description="Work merged")
    needs_attention: str = Field(default="needs-attention", description="Workflow abandoned")
    owner_prefix: str = Field(default="autopilot:agent:", description="Prefix of the label naming the claiming agent")

    def owner_label(self, agent: str) -> str:
        return f"{self.owner_prefix}{agent}"

    def owner_of(self, labels: Iterable[str]) -> str | None:
        """Agent named by an owner label, if the issue carries one."""
        for label in labels:
            if label.startswith(self.owner_prefix):
                return label[len(self.owner_prefix) :]
        return None


class FixesConfig(BaseModel):
    """Shell commands run by the command fix executor, per fix type."""

    working_directory: str = Field(default=".", description="Checkout the fix commands run in")
    timeout_seconds: float = Field(default=600.0, gt=0.0, description="Limit applied to each fix command")
    commands: dict[FixType, list[str]] = Field(default_factory=dict, description="Commands per fix type")


class AutopilotSettings(BaseSettings):
    """Main scheduler settings.

    Combines all configuration sections and provides loading from YAML
    files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    git_provider: GitProviderConfig
    repository: RepositoryConfig
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    fixes: FixesConfig = Field(default_factory=FixesConfig)

    @property
    def checkpoint_dir(self) -> Path:
        return Path(self.workflow.checkpoint_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> AutopilotSettings:
        """Load settings from YAML file with environment variable interpolation.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            AutopilotSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports ``${VAR_NAME}`` (required) and ``${VAR_NAME:-default}``.
        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
