"""Repository registration and visibility endpoints."""

from fastapi import APIRouter, Depends, Query, status

from ..schemas.api import (
    AccessibleRepositoriesResponse,
    BountyIssueResponse,
    BountyIssuesResponse,
    FundingStatusResponse,
    PoolInfo,
    RegisterRepositoryRequest,
    RepositoryResponse,
    RepositoryWithPoolResponse,
    UpdateActiveRequest,
    WindowStatusResponse,
)
from ..services.principal import Principal
from ..services.repository_service import BountyIssues, RepositoryService, RepositoryWithPool
from ..services.reward_service import RewardService
from .deps import get_principal, get_repository_service, get_reward_service

router = APIRouter(prefix="/repositories", tags=["repositories"])


def _with_pool_response(item: RepositoryWithPool) -> RepositoryWithPoolResponse:
    pool = None
    if item.balances is not None:
        pool = PoolInfo(
            xdc=item.balances.xdc,
            roxn=item.balances.roxn,
            usdc=item.balances.usdc,
        )
    return RepositoryWithPoolResponse(
        repository=RepositoryResponse.model_validate(item.registration),
        pool=pool,
        pool_info_error=item.pool_info_error,
    )


def _split_labels(labels: str | None) -> list[str] | None:
    if labels is None:
        return None
    return [label for label in labels.split(",") if label.strip()]


def _bounties_response(result: BountyIssues) -> BountyIssuesResponse:
    return BountyIssuesResponse(
        github_repo_id=result.registration.github_repo_id,
        full_name=result.registration.full_name,
        labels=result.labels,
        issues=[
            BountyIssueResponse(
                id=issue.id,
                number=issue.number,
                title=issue.title,
                state=issue.state,
                html_url=issue.html_url,
                labels=[label["name"] for label in issue.labels if label.get("name")],
            )
            for issue in result.issues
        ],
    )


@router.post("/register", response_model=RepositoryResponse, status_code=status.HTTP_201_CREATED)
async def register_repository(
    body: RegisterRepositoryRequest,
    principal: Principal = Depends(get_principal),
    service: RepositoryService = Depends(get_repository_service),
) -> RepositoryResponse:
    """Register a repository the caller owns or administers."""
    registration = await service.register_repository(
        principal, body.repo_full_name, body.installation_id
    )
    return RepositoryResponse.model_validate(registration)


@router.get("/accessible", response_model=AccessibleRepositoriesResponse)
async def list_accessible_repositories(
    principal: Principal = Depends(get_principal),
    service: RepositoryService = Depends(get_repository_service),
) -> AccessibleRepositoriesResponse:
    """Public repositories plus the private ones the caller collaborates on."""
    result = await service.list_accessible_repositories(principal)
    return AccessibleRepositoriesResponse(
        repositories=[_with_pool_response(item) for item in result.repositories],
        unverified_count=result.unverified_count,
    )


@router.get("/public", response_model=list[RepositoryWithPoolResponse])
async def list_public_repositories(
    service: RepositoryService = Depends(get_repository_service),
) -> list[RepositoryWithPoolResponse]:
    """Active public repositories, no authentication needed."""
    return [_with_pool_response(item) for item in await service.list_public_repositories()]


@router.get("/registered", response_model=list[RepositoryResponse])
async def list_registered_repositories(
    principal: Principal = Depends(get_principal),
    service: RepositoryService = Depends(get_repository_service),
) -> list[RepositoryResponse]:
    """Repositories the caller registered."""
    registrations = await service.list_registered_repositories(principal)
    return [RepositoryResponse.model_validate(r) for r in registrations]


@router.get("/{repo_id}", response_model=RepositoryWithPoolResponse)
async def get_repository(
    repo_id: int,
    principal: Principal = Depends(get_principal),
    service: RepositoryService = Depends(get_repository_service),
) -> RepositoryWithPoolResponse:
    return _with_pool_response(await service.get_visible_repository(principal, repo_id))


@router.patch("/{repo_id}/active", response_model=RepositoryResponse)
async def set_repository_active(
    repo_id: int,
    body: UpdateActiveRequest,
    principal: Principal = Depends(get_principal),
    service: RepositoryService = Depends(get_repository_service),
) -> RepositoryResponse:
    """Enable or disable funding and rewards for a repository."""
    registration = await service.set_repository_active(principal, repo_id, body.is_active)
    return RepositoryResponse.model_validate(registration)


@router.get("/{repo_id}/funding-status", response_model=FundingStatusResponse)
async def funding_status(
    repo_id: int,
    principal: Principal = Depends(get_principal),
    service: RewardService = Depends(get_reward_service),
) -> FundingStatusResponse:
    """Window ceilings, usage and reset times."""
    result = await service.funding_status(principal, repo_id)
    return FundingStatusResponse(
        github_repo_id=result.github_repo_id,
        repository_windows=[
            WindowStatusResponse.model_validate(w) for w in result.repository_windows
        ],
        funder_windows=[WindowStatusResponse.model_validate(w) for w in result.funder_windows],
    )


@router.get("/{repo_id}/bounties", response_model=BountyIssuesResponse)
async def list_bounty_issues(
    repo_id: int,
    labels: str | None = Query(None, description="Comma-separated labels, all required"),
    principal: Principal = Depends(get_principal),
    service: RepositoryService = Depends(get_repository_service),
) -> BountyIssuesResponse:
    """Open issues labelled as bounties."""
    result = await service.list_bounty_issues(principal, repo_id, _split_labels(labels))
    return _bounties_response(result)


@router.get("/by-name/{owner}/{repo}/bounties", response_model=BountyIssuesResponse)
async def list_bounty_issues_by_name(
    owner: str,
    repo: str,
    labels: str | None = Query(None, description="Comma-separated labels, all required"),
    principal: Principal = Depends(get_principal),
    service: RepositoryService = Depends(get_repository_service),
) -> BountyIssuesResponse:
    result = await service.list_bounty_issues_by_name(
        principal, f"{owner}/{repo}", _split_labels(labels)
    )
    return _bounties_response(result)
