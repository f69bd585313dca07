"""GitHub App installation endpoints."""

from fastapi import APIRouter, Depends

from ..schemas.api import (
    FinalizeInstallationRequest,
    FinalizeInstallationResponse,
    InstallUrlResponse,
)
from ..services.principal import Principal
from ..services.repository_service import RepositoryService
from ..utils.github_auth import build_install_url
from .deps import get_principal, get_repository_service

router = APIRouter(prefix="/github/app", tags=["github-app"])


@router.get("/install-url", response_model=InstallUrlResponse)
async def install_url(state: str | None = None) -> InstallUrlResponse:
    """Link where the caller installs the GitHub App."""
    return InstallUrlResponse(install_url=build_install_url(state))


@router.post("/finalize-installation", response_model=FinalizeInstallationResponse)
async def finalize_installation(
    body: FinalizeInstallationRequest,
    principal: Principal = Depends(get_principal),
    service: RepositoryService = Depends(get_repository_service),
) -> FinalizeInstallationResponse:
    """Register or re-link every repository of a fresh installation."""
    result = await service.finalize_installation(principal, body.installation_id)
    return FinalizeInstallationResponse(
        installation_id=body.installation_id,
        linked=result.linked,
        failed=result.failed,
    )
