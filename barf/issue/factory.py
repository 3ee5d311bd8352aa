"""Select the issue store for a configuration."""

import logging

from barf.errors import ConfigError
from barf.issue.github import GitHubIssueStore
from barf.issue.local import LocalIssueStore
from barf.issue.store import IssueStore
from barf.lib.config import Config, ISSUE_PROVIDER_GITHUB, ISSUE_PROVIDER_LOCAL

logger = logging.getLogger(__name__)


def create_issue_store(config: Config) -> IssueStore:
    """Build the store named by ISSUE_PROVIDER.

    Raises:
        ConfigError: if the github provider is selected without GITHUB_REPO
    """
    if config.issue_provider == ISSUE_PROVIDER_GITHUB:
        if not config.github_repo:
            raise ConfigError("ISSUE_PROVIDER=github requires GITHUB_REPO (owner/repo)")
        logger.debug(f"Using GitHub issue store for {config.github_repo}")
        return GitHubIssueStore(config.github_repo)

    if config.issue_provider != ISSUE_PROVIDER_LOCAL:
        raise ConfigError(f"Unknown ISSUE_PROVIDER: {config.issue_provider}")
    return LocalIssueStore(config.issues_dir, config.barf_dir)
