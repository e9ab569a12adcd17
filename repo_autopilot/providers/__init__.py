"""Host provider implementations.

Key Components:
    - HostProvider: Abstract base for issue/PR/branch hosts
    - WorkObserver: Abstract source of work observations
    - InconsistencyRecovery: Abstract bookkeeping repair backend
    - GitHubRestProvider: GitHub REST API implementation (PyGithub)
    - GiteaRestProvider: Gitea REST API implementation (httpx)
    - create_host_provider: Build the configured provider

Example:
    >>> from repo_autopilot.providers import create_host_provider
    >>> host = create_host_provider(settings)
    >>> await host.connect()
"""

from repo_autopilot.providers.base import HostProvider, InconsistencyRecovery, WorkObserver
from repo_autopilot.providers.factory import create_host_provider
from repo_autopilot.providers.gitea_rest import GiteaRestProvider
from repo_autopilot.providers.github_rest import GitHubRestProvider

__all__ = [
    "GiteaRestProvider",
    "GitHubRestProvider",
    "HostProvider",
    "InconsistencyRecovery",
    "WorkObserver",
    "create_host_provider",
]
