"""GitHub webhook endpoints."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ..schemas.github import InstallationEvent, InstallationRepositoriesEvent
from ..services.installation_manager import handle_installation_event, handle_repos_event
from ..services.registry import RepositoryRegistry
from ..services.token_cache import TokenCache
from ..utils.github_auth import verify_webhook_signature
from .deps import get_registry, get_token_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/github")
async def github_webhook(
    request: Request,
    x_github_event: str = Header(..., alias="X-GitHub-Event"),
    x_hub_signature_256: str = Header(..., alias="X-Hub-Signature-256"),
    registry: RepositoryRegistry = Depends(get_registry),
    token_cache: TokenCache = Depends(get_token_cache),
) -> dict:
    """
    Main GitHub webhook endpoint.

    Handles: installation, installation_repositories, ping
    """
    body = await request.body()

    # Verify signature
    if not verify_webhook_signature(body, x_hub_signature_256):
        raise HTTPException(status_code=401, detail="Invalid signature")

    payload = await request.json()

    match x_github_event:
        case "installation":
            event = InstallationEvent(**payload)
            await handle_installation_event(event, registry, token_cache)
            return {"status": "processed"}

        case "installation_repositories":
            event = InstallationRepositoriesEvent(**payload)
            await handle_repos_event(event, registry)
            return {"status": "processed"}

        case "ping":
            return {"status": "pong"}

        case _:
            logger.debug(f"Ignoring GitHub event {x_github_event}")
            return {"status": "ignored", "event": x_github_event}
