"""Configuration system for the autonomous workflow scheduler.

Key Components:
    - AutopilotSettings: Main configuration container with YAML loading support
    - GitProviderConfig: Host provider configuration (GitHub, Gitea)
    - RepositoryConfig: Repository settings
    - WorkflowConfig: Time box, polling and recovery settings
    - LabelsConfig: Issue labels read and written by the scheduler
    - FixesConfig: Commands used for automated fixes

Example:
    >>> from repo_autopilot.config import AutopilotSettings
    >>> settings = AutopilotSettings.from_yaml("autopilot.yaml")
    >>> settings.workflow.max_work_hours
    8.0
"""

from repo_autopilot.config.settings import (
    AutopilotSettings,
    FixesConfig,
    GitProviderConfig,
    LabelsConfig,
    RepositoryConfig,
    WorkflowConfig,
)

__all__ = [
    "AutopilotSettings",
    "FixesConfig",
    "GitProviderConfig",
    "LabelsConfig",
    "RepositoryConfig",
    "WorkflowConfig",
]
