"""Decide who may see a repository's bounty and pool data."""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..config import settings
from ..models import RepositoryRegistration
from .errors import BountyPoolError
from .github_client import GitHubClient
from .principal import Principal
from .token_cache import TokenCache

logger = logging.getLogger(__name__)


class AccessOutcome(str, Enum):
    """Result of probing one repository for one principal."""

    PUBLIC = "public"
    COLLABORATOR = "collaborator"
    DENIED = "denied"
    UNVERIFIED = "unverified"  # probe could not complete; treated as denied

    @property
    def visible(self) -> bool:
        return self in (AccessOutcome.PUBLIC, AccessOutcome.COLLABORATOR)


@dataclass
class ProbeDiagnostic:
    """Why a private repository could not be verified."""

    github_repo_id: int
    full_name: str
    reason: str


@dataclass
class AccessReport:
    """Visible repositories plus the probes that failed along the way."""

    visible: list[RepositoryRegistration] = field(default_factory=list)
    diagnostics: list[ProbeDiagnostic] = field(default_factory=list)

    @property
    def unverified_count(self) -> int:
        return len(self.diagnostics)


class AccessGate:
    """Fail-closed visibility check.

    Public repositories are visible to everyone without touching GitHub.
    Private ones are visible only to authenticated collaborators, checked
    with the repository's installation token. Any failure to complete
    the check denies access. Results are not cached, so a newly added
    collaborator is visible on the next call.
    """

    def __init__(
        self,
        token_cache: TokenCache,
        github_factory: Callable[[str], GitHubClient] = GitHubClient,
        concurrency: int | None = None,
    ):
        self.token_cache = token_cache
        self._github_factory = github_factory
        # Shared by every request so the cap is global
        self._semaphore = asyncio.Semaphore(concurrency or settings.access_probe_concurrency)

    async def can_view(self, repo: RepositoryRegistration, principal: Principal) -> bool:
        outcome, _ = await self._probe(repo, principal)
        return outcome.visible

    async def probe(self, repo: RepositoryRegistration, principal: Principal) -> AccessOutcome:
        outcome, _ = await self._probe(repo, principal)
        return outcome

    async def _probe(
        self, repo: RepositoryRegistration, principal: Principal
    ) -> tuple[AccessOutcome, str | None]:
        if not repo.is_private:
            return AccessOutcome.PUBLIC, None
        if not principal.is_authenticated:
            return AccessOutcome.DENIED, None

        async with self._semaphore:
            try:
                token = await self.token_cache.get_token(repo.installation_id)
            except (BountyPoolError, asyncio.TimeoutError) as exc:
                logger.warning(
                    f"Could not get installation token for private repo {repo.full_name}: {exc}"
                )
                return AccessOutcome.UNVERIFIED, f"installation token unavailable: {exc}"

            try:
                async with self._github_factory(token) as gh:
                    is_collaborator = await gh.check_collaborator(
                        repo.owner, repo.name, principal.github_login
                    )
            except (BountyPoolError, asyncio.TimeoutError) as exc:
                logger.warning(
                    f"Error checking collaborator status for {repo.full_name}: {exc}"
                )
                return AccessOutcome.UNVERIFIED, f"collaborator check failed: {exc}"

        if is_collaborator:
            return AccessOutcome.COLLABORATOR, None
        return AccessOutcome.DENIED, None

    async def filter_visible(
        self,
        repos: Sequence[RepositoryRegistration],
        principal: Principal,
    ) -> AccessReport:
        """Probe every repository concurrently; failures exclude, never abort."""
        results = await asyncio.gather(
            *(self._probe(repo, principal) for repo in repos),
            return_exceptions=True,
        )

        report = AccessReport()
        for repo, result in zip(repos, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    f"Unexpected error probing {repo.full_name}",
                    exc_info=result,
                )
                report.diagnostics.append(
                    ProbeDiagnostic(repo.github_repo_id, repo.full_name, repr(result))
                )
                continue

            outcome, reason = result
            if outcome.visible:
                report.visible.append(repo)
            elif outcome is AccessOutcome.UNVERIFIED:
                report.diagnostics.append(
                    ProbeDiagnostic(repo.github_repo_id, repo.full_name, reason or "unverified")
                )

        if report.diagnostics:
            logger.info(
                f"{report.unverified_count} private repositories excluded as unverifiable "
                f"for user {principal.user_id}"
            )
        return report
