"""Repository registration and visibility."""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from ..config import settings
from ..models import InstallationScope, RepositoryRegistration
from ..schemas.github import GitHubIssue, GitHubRepository
from ..utils.github_auth import split_full_name
from .access_gate import AccessGate
from .chain_gateway import ChainGateway, PoolBalances
from .deadline import deadline
from .errors import (
    AlreadyRegisteredError,
    BountyPoolError,
    InvalidRequestError,
    NotAuthorizedError,
    NotFoundError,
)
from .github_client import (
    GitHubClient,
    GitHubForbiddenError,
    GitHubNotFoundError,
    GitHubUnauthorizedError,
)
from .installation_resolver import InstallationResolver, ResolvedInstallation
from .locks import KeyedLock
from .principal import Principal
from .registry import RepositoryRegistry
from .token_cache import TokenCache

logger = logging.getLogger(__name__)

POOL_INFO_ERROR = "Unable to fetch pool information. Please try again later."


@dataclass
class RepositoryWithPool:
    """A registration with its on-chain balances, if they could be read."""

    registration: RepositoryRegistration
    balances: PoolBalances | None = None
    pool_info_error: str | None = None


@dataclass
class AccessibleRepositories:
    """Visible repositories plus how many private ones could not be verified."""

    repositories: list[RepositoryWithPool] = field(default_factory=list)
    unverified_count: int = 0


@dataclass
class BountyIssues:
    """Open bounty issues of one registered repository."""

    registration: RepositoryRegistration
    labels: list[str]
    issues: list[GitHubIssue] = field(default_factory=list)


@dataclass
class FinalizeResult:
    """Outcome of linking an installation's repositories."""

    linked: int = 0
    failed: int = 0


class RepositoryService:
    """Registers repositories and lists the ones a principal may see."""

    def __init__(
        self,
        registry: RepositoryRegistry,
        resolver: InstallationResolver,
        access_gate: AccessGate,
        token_cache: TokenCache,
        gateway: ChainGateway,
        repo_locks: KeyedLock,
        github_factory: Callable[[str], GitHubClient] = GitHubClient,
        request_timeout: float | None = None,
    ):
        self.registry = registry
        self.resolver = resolver
        self.access_gate = access_gate
        self.token_cache = token_cache
        self.gateway = gateway
        self.repo_locks = repo_locks
        self._github_factory = github_factory
        self.request_timeout = request_timeout or settings.request_timeout_seconds

    @staticmethod
    def _require_github(principal: Principal) -> str:
        if not principal.is_authenticated or not principal.github_token:
            raise NotAuthorizedError("GitHub authentication required")
        return principal.github_token

    async def register_repository(
        self,
        principal: Principal,
        repo_full_name: str,
        installation_id_hint: int | None = None,
    ) -> RepositoryRegistration:
        """
        Register a repository for bounties.

        Steps:
        1. Read the repository with the caller's token (id, privacy)
        2. Require the caller to own it or administer the owning org
        3. Establish the installation (verified hint, else resolver)
        4. Write the registration

        Nothing is written unless every step succeeds.
        """
        user_token = self._require_github(principal)
        parts = split_full_name(repo_full_name)
        if parts is None:
            raise InvalidRequestError("Invalid repository name format")
        owner, name = parts

        async with deadline(self.request_timeout, f"registering {repo_full_name}"):
            async with self._github_factory(user_token) as gh:
                try:
                    repo = await gh.get_repo(owner, name)
                except GitHubNotFoundError as exc:
                    raise NotAuthorizedError(
                        f"Repository {repo_full_name} not found or not visible to you"
                    ) from exc
                except GitHubUnauthorizedError as exc:
                    raise NotAuthorizedError("GitHub token rejected, sign in again") from exc
                await self._require_repo_admin(gh, principal, owner, repo)

            async with self.repo_locks.hold(repo.id):
                existing = await self.registry.get(repo.id)
                if existing is not None:
                    raise AlreadyRegisteredError(existing)

                if installation_id_hint is not None:
                    installation = await self._verify_installation_hint(
                        installation_id_hint, owner, name
                    )
                else:
                    try:
                        installation = await self.resolver.resolve(
                            owner, name, user_token, repo_id=repo.id
                        )
                    except GitHubUnauthorizedError as exc:
                        raise NotAuthorizedError("GitHub token rejected, sign in again") from exc

                await self.registry.record_installation(
                    installation.installation_id,
                    installation.owner_login,
                    installation.owner_type,
                    installation.scope,
                )
                return await self.registry.upsert(
                    github_repo_id=repo.id,
                    full_name=repo.full_name,
                    registering_user_id=principal.user_id,
                    installation_id=installation.installation_id,
                    is_private=repo.private,
                )

    async def _require_repo_admin(
        self,
        gh: GitHubClient,
        principal: Principal,
        owner: str,
        repo: GitHubRepository,
    ) -> None:
        if owner.lower() == principal.github_login.lower():
            return

        # Someone else's repository: only admins of the owning org may register it
        membership = await gh.get_org_membership(owner)
        if membership is None or membership.state != "active" or membership.role != "admin":
            logger.info(f"User {principal.github_login} is not an admin of org {owner}")
            raise NotAuthorizedError(
                f"You must be an admin of {owner} to register its repositories"
            )
        logger.info(f"User {principal.github_login} verified as admin of org {owner}")

    async def _verify_installation_hint(
        self, installation_id: int, owner: str, name: str
    ) -> ResolvedInstallation:
        """Accept a client-supplied installation only if it can read the repo."""
        try:
            token = await self.token_cache.get_token(installation_id)
            async with self._github_factory(token) as gh:
                repo = await gh.get_repo(owner, name)
        except (GitHubNotFoundError, GitHubUnauthorizedError, GitHubForbiddenError) as exc:
            raise NotAuthorizedError(
                f"Installation {installation_id} does not grant access to {owner}/{name}"
            ) from exc

        logger.info(f"Using provided installation ID {installation_id} for {owner}/{name}")
        return ResolvedInstallation(
            installation_id=installation_id,
            scope=InstallationScope.REPOSITORY,
            owner_login=repo.owner.login if repo.owner else owner,
            owner_type=repo.owner.type if repo.owner else "User",
        )

    async def _with_pools(
        self, registrations: Sequence[RepositoryRegistration]
    ) -> list[RepositoryWithPool]:
        """Attach pool balances; a failed read marks that item, not the list."""

        async def attach(registration: RepositoryRegistration) -> RepositoryWithPool:
            try:
                balances = await self.gateway.get_pool_balances(registration.github_repo_id)
            except BountyPoolError as exc:
                logger.error(
                    f"Error fetching pool info for repo {registration.github_repo_id}: {exc}"
                )
                return RepositoryWithPool(registration, pool_info_error=POOL_INFO_ERROR)
            return RepositoryWithPool(registration, balances=balances)

        return list(await asyncio.gather(*(attach(r) for r in registrations)))

    async def list_accessible_repositories(self, principal: Principal) -> AccessibleRepositories:
        """All active registrations the principal may see, with pool balances."""
        async with deadline(self.request_timeout, "listing accessible repositories"):
            registrations = await self.registry.list_all()
            report = await self.access_gate.filter_visible(registrations, principal)
            repositories = await self._with_pools(report.visible)

        private_count = sum(1 for r in report.visible if r.is_private)
        logger.info(
            f"User {principal.user_id} has access to {len(report.visible)} repos "
            f"({private_count} private, {report.unverified_count} unverified)"
        )
        return AccessibleRepositories(repositories, report.unverified_count)

    async def list_public_repositories(self) -> list[RepositoryWithPool]:
        async with deadline(self.request_timeout, "listing public repositories"):
            return await self._with_pools(await self.registry.list_public())

    async def list_registered_repositories(
        self, principal: Principal
    ) -> list[RepositoryRegistration]:
        if not principal.is_authenticated:
            raise NotAuthorizedError("User not authenticated")
        return await self.registry.list_by_user(principal.user_id)

    async def get_visible_repository(
        self, principal: Principal, github_repo_id: int
    ) -> RepositoryWithPool:
        """One repository with balances; invisible ones read as missing."""
        async with deadline(self.request_timeout, f"reading repository {github_repo_id}"):
            registration = await self.registry.get(github_repo_id)
            if registration is None or not await self.access_gate.can_view(
                registration, principal
            ):
                raise NotFoundError("Repository not found")
            return (await self._with_pools([registration]))[0]

    async def list_bounty_issues(
        self,
        principal: Principal,
        github_repo_id: int,
        labels: Sequence[str] | None = None,
    ) -> BountyIssues:
        """Open issues of a visible repository carrying every label in *labels*."""
        async with deadline(self.request_timeout, f"listing bounties of {github_repo_id}"):
            registration = await self.registry.get(github_repo_id)
            return await self._bounty_issues(principal, registration, labels)

    async def list_bounty_issues_by_name(
        self,
        principal: Principal,
        repo_full_name: str,
        labels: Sequence[str] | None = None,
    ) -> BountyIssues:
        """Same as list_bounty_issues, addressed by ``owner/repo``."""
        if split_full_name(repo_full_name) is None:
            raise InvalidRequestError("Invalid repository name format")
        async with deadline(self.request_timeout, f"listing bounties of {repo_full_name}"):
            registration = await self.registry.find_by_full_name(repo_full_name)
            return await self._bounty_issues(principal, registration, labels)

    async def _bounty_issues(
        self,
        principal: Principal,
        registration: RepositoryRegistration | None,
        labels: Sequence[str] | None,
    ) -> BountyIssues:
        if registration is None or not await self.access_gate.can_view(registration, principal):
            raise NotFoundError("Repository not found")
        if not registration.is_active:
            raise InvalidRequestError(f"{registration.full_name} is not active")

        wanted = [label.strip() for label in (labels or settings.bounty_labels) if label.strip()]
        if not wanted:
            raise InvalidRequestError("At least one label is required")

        # Read as the installation so private repositories work for any viewer
        try:
            token = await self.token_cache.get_token(registration.installation_id)
            async with self._github_factory(token) as gh:
                issues = await gh.list_issues(
                    registration.owner, registration.name, labels=wanted
                )
        except (GitHubNotFoundError, GitHubUnauthorizedError, GitHubForbiddenError) as exc:
            logger.warning(
                f"Installation {registration.installation_id} cannot read issues of "
                f"{registration.full_name}: {exc}"
            )
            raise NotFoundError(f"Issues of {registration.full_name} are not readable") from exc

        logger.info(
            f"Found {len(issues)} issues labelled {','.join(wanted)} in {registration.full_name}"
        )
        return BountyIssues(registration, wanted, issues)

    async def set_repository_active(
        self, principal: Principal, github_repo_id: int, is_active: bool
    ) -> RepositoryRegistration:
        """Toggle a registration; only its registrant may."""
        if not principal.is_authenticated:
            raise NotAuthorizedError("User not authenticated")

        async with self.repo_locks.hold(github_repo_id):
            registration = await self.registry.get(github_repo_id)
            if registration is None:
                raise NotFoundError("Repository not found")
            if registration.registering_user_id != principal.user_id:
                raise NotAuthorizedError("Not authorized to modify this repository")
            await self.registry.set_active(github_repo_id, is_active)
            registration.is_active = is_active

        logger.info(
            f"Repository {github_repo_id} active status set to {is_active} "
            f"by user {principal.user_id}"
        )
        return registration

    async def finalize_installation(
        self, principal: Principal, installation_id: int
    ) -> FinalizeResult:
        """Link every repository of a freshly installed app to the caller.

        The caller must be able to see the installation. Existing
        registrations are re-linked and keep their registrant; a failure
        on one repository is counted and the rest continue.
        """
        user_token = self._require_github(principal)

        async with deadline(self.request_timeout, f"finalizing installation {installation_id}"):
            async with self._github_factory(user_token) as gh:
                installations = await gh.list_user_installations()
            installation = next((i for i in installations if i.id == installation_id), None)
            if installation is None:
                raise NotAuthorizedError(f"Installation {installation_id} is not visible to you")

            scope = (
                InstallationScope.ORGANIZATION
                if installation.account.type == "Organization"
                else InstallationScope.USER
            )
            await self.registry.record_installation(
                installation_id,
                installation.account.login,
                installation.account.type,
                scope,
            )

            token = await self.token_cache.get_token(installation_id)
            async with self._github_factory(token) as gh:
                repositories = await gh.list_installation_repositories()
            logger.info(f"Found {len(repositories)} repositories for installation {installation_id}")

            result = FinalizeResult()
            for repo in repositories:
                try:
                    async with self.repo_locks.hold(repo.id):
                        existing = await self.registry.get(repo.id)
                        await self.registry.upsert(
                            github_repo_id=repo.id,
                            full_name=repo.full_name,
                            registering_user_id=(
                                existing.registering_user_id if existing else principal.user_id
                            ),
                            installation_id=installation_id,
                            is_private=repo.private,
                        )
                    result.linked += 1
                except BountyPoolError as exc:
                    logger.error(f"Error linking {repo.full_name} to installation {installation_id}: {exc}")
                    result.failed += 1

        logger.info(
            f"Installation {installation_id}: linked {result.linked}, failed {result.failed} "
            f"for user {principal.user_id}"
        )
        return result
