"""Resolve which GitHub App installation authorizes work on a repository."""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from ..config import settings
from ..models import InstallationScope
from ..schemas.github import GitHubInstallation
from ..utils.github_auth import build_install_url
from .errors import NotInstalledError
from .github_client import (
    GitHubClient,
    GitHubForbiddenError,
    GitHubNotFoundError,
    GitHubUnauthorizedError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedInstallation:
    """The installation chosen to act on a repository."""

    installation_id: int
    scope: InstallationScope
    owner_login: str
    owner_type: str


@dataclass(frozen=True)
class AppIdentity:
    """The platform's GitHub App, matched by id so renames don't break lookups."""

    app_id: int
    slug: str

    @classmethod
    def from_settings(cls) -> "AppIdentity":
        return cls(app_id=settings.github_app_id, slug=settings.github_app_slug)

    def matches(self, installation: GitHubInstallation) -> bool:
        if installation.app_id is not None:
            return installation.app_id == self.app_id
        # Payload without app_id: fall back to the slug
        return (installation.app_slug or "").lower() == self.slug.lower()


class InstallationStrategy(Protocol):
    """One way of finding an installation; None means "not found here"."""

    name: str

    async def resolve(
        self, owner: str, repo: str, gh: GitHubClient
    ) -> ResolvedInstallation | None: ...


class RepositoryInstallationStrategy:
    """Ask GitHub for the installation covering this exact repository."""

    name = "repository"

    def __init__(self, identity: AppIdentity):
        self.identity = identity

    async def resolve(
        self, owner: str, repo: str, gh: GitHubClient
    ) -> ResolvedInstallation | None:
        try:
            installation = await gh.get_repo_installation(owner, repo)
        except (GitHubNotFoundError, GitHubUnauthorizedError, GitHubForbiddenError):
            return None

        if not self.identity.matches(installation):
            return None
        return ResolvedInstallation(
            installation_id=installation.id,
            scope=InstallationScope.REPOSITORY,
            owner_login=installation.account.login,
            owner_type=installation.account.type,
        )


class AccountInstallationStrategy:
    """Find our app among the caller's user and organization installations."""

    name = "account"

    def __init__(self, identity: AppIdentity):
        self.identity = identity

    async def resolve(
        self, owner: str, repo: str, gh: GitHubClient
    ) -> ResolvedInstallation | None:
        try:
            installations = await gh.list_user_installations()
        except (GitHubNotFoundError, GitHubForbiddenError):
            return None

        logger.debug(f"Found {len(installations)} installations visible to caller")
        for installation in installations:
            if not self.identity.matches(installation):
                continue
            if installation.account.login.lower() != owner.lower():
                continue
            scope = (
                InstallationScope.ORGANIZATION
                if installation.account.type == "Organization"
                else InstallationScope.USER
            )
            return ResolvedInstallation(
                installation_id=installation.id,
                scope=scope,
                owner_login=installation.account.login,
                owner_type=installation.account.type,
            )
        return None


class InstallationResolver:
    """Tries each strategy in order and stops at the first hit.

    Results are never cached: installations come and go between
    registration attempts. Network and rate-limit failures propagate
    as transient errors instead of being read as "not installed".
    """

    def __init__(
        self,
        strategies: Sequence[InstallationStrategy] | None = None,
        github_factory: Callable[[str], GitHubClient] = GitHubClient,
    ):
        if strategies is None:
            identity = AppIdentity.from_settings()
            strategies = [
                RepositoryInstallationStrategy(identity),
                AccountInstallationStrategy(identity),
            ]
        self.strategies = list(strategies)
        self._github_factory = github_factory

    async def resolve(
        self,
        owner: str,
        repo: str,
        user_token: str,
        repo_id: int | None = None,
    ) -> ResolvedInstallation:
        """Return the authorizing installation or raise NotInstalledError."""
        async with self._github_factory(user_token) as gh:
            for strategy in self.strategies:
                result = await strategy.resolve(owner, repo, gh)
                if result is not None:
                    logger.info(
                        f"Resolved installation {result.installation_id} for {owner}/{repo} "
                        f"via {strategy.name} strategy (scope={result.scope.value})"
                    )
                    return result

        logger.info(f"GitHub App not installed for {owner}/{repo}")
        raise NotInstalledError(build_install_url(state=repo_id))
