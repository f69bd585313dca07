"""Handle GitHub App installation events."""

import logging

from ..models import InstallationScope
from ..schemas.github import GitHubInstallation, InstallationEvent, InstallationRepositoriesEvent
from .registry import RepositoryRegistry
from .token_cache import TokenCache

logger = logging.getLogger(__name__)


def _scope_of(installation: GitHubInstallation) -> InstallationScope:
    if installation.account.type == "Organization":
        return InstallationScope.ORGANIZATION
    return InstallationScope.USER


async def handle_installation_event(
    event: InstallationEvent,
    registry: RepositoryRegistry,
    token_cache: TokenCache,
) -> None:
    """Handle installation created/deleted/suspend/unsuspend events."""
    installation = event.installation

    match event.action:
        case "created" | "new_permissions_accepted":
            await registry.record_installation(
                installation.id,
                installation.account.login,
                installation.account.type,
                _scope_of(installation),
            )
            # Permissions may have changed under an existing token
            token_cache.evict(installation.id)

        case "deleted":
            token_cache.evict(installation.id)
            await registry.deactivate_for_installation(installation.id)
            await registry.set_installation_state(installation.id, is_active=False, delete=True)

        case "suspend":
            token_cache.evict(installation.id)
            await registry.set_installation_state(installation.id, is_active=False)

        case "unsuspend":
            await registry.set_installation_state(installation.id, is_active=True)

    logger.info(
        f"Installation {installation.id} ({installation.account.login}) {event.action} "
        f"by {event.sender.login}"
    )


async def handle_repos_event(
    event: InstallationRepositoriesEvent,
    registry: RepositoryRegistry,
) -> None:
    """Handle repositories added/removed from installation.

    Added repositories are not registered here; registration needs a
    user who owns or administers them.
    """
    if event.action == "removed" and event.repositories_removed:
        removed = [repo.id for repo in event.repositories_removed]
        await registry.deactivate_for_installation(event.installation.id, removed)
    elif event.action == "added":
        logger.info(
            f"{len(event.repositories_added)} repositories added to installation "
            f"{event.installation.id}"
        )
