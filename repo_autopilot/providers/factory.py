"""Factory for creating host provider instances based on configuration."""

import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.exceptions import ConfigurationError
from repo_autopilot.providers.base import HostProvider
from repo_autopilot.providers.gitea_rest import GiteaRestProvider
from repo_autopilot.providers.github_rest import GitHubRestProvider

log = structlog.get_logger(__name__)


def create_host_provider(settings: AutopilotSettings) -> HostProvider:
    """Create the host provider named by ``git_provider.provider_type``.

    Args:
        settings: Scheduler settings containing provider configuration

    Returns:
        HostProvider instance (Gitea or GitHub), not yet connected

    Raises:
        ConfigurationError: If provider type is not supported

    Example:
        >>> settings = AutopilotSettings.from_yaml("autopilot.yaml")
        >>> host = create_host_provider(settings)
        >>> await host.connect()
        >>> issues = await host.get_issues(labels=["autopilot:ready"])
    """
    provider_type = settings.git_provider.provider_type
    base_url = str(settings.git_provider.base_url)
    token = settings.git_provider.api_token.get_secret_value()

    if provider_type == "gitea":
        log.info("creating_gitea_provider", base_url=base_url)
        return GiteaRestProvider(
            base_url=base_url,
            token=token,
            owner=settings.repository.owner,
            repo=settings.repository.name,
        )

    if provider_type == "github":
        log.info("creating_github_provider", base_url=base_url)
        return GitHubRestProvider(
            token=token,
            owner=settings.repository.owner,
            repo=settings.repository.name,
            base_url=base_url,
        )

    raise ConfigurationError(f"Unsupported host provider type: {provider_type}. Supported types: gitea, github")
