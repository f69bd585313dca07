"""Request and response schemas for the bounty API."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from ..models import AllocationStatus, Currency, WindowKind


class RegisterRepositoryRequest(BaseModel):
    """Request to register a repository for bounties."""

    repo_full_name: str = Field(..., examples=["acme/widgets"])
    installation_id: int | None = Field(
        None,
        description="Installation the client already knows about; verified before use",
    )


class RepositoryResponse(BaseModel):
    """A repository registration."""

    github_repo_id: int
    full_name: str
    registering_user_id: int
    installation_id: int
    is_private: bool
    is_active: bool
    registered_at: datetime

    class Config:
        from_attributes = True


class PoolInfo(BaseModel):
    """On-chain reward pool balances of a repository."""

    xdc: Decimal
    roxn: Decimal
    usdc: Decimal


class RepositoryWithPoolResponse(BaseModel):
    """A repository with its pool, or why the pool could not be read."""

    repository: RepositoryResponse
    pool: PoolInfo | None = None
    pool_info_error: str | None = None


class AccessibleRepositoriesResponse(BaseModel):
    """Repositories visible to the caller."""

    repositories: list[RepositoryWithPoolResponse]
    unverified_count: int = Field(
        0,
        description="Private repositories left out because access could not be checked",
    )


class BountyIssueResponse(BaseModel):
    """An open issue labelled as a bounty."""

    id: int
    number: int
    title: str
    state: str
    html_url: str | None = None
    labels: list[str] = Field(default_factory=list)


class BountyIssuesResponse(BaseModel):
    """Bounty issues of one repository."""

    github_repo_id: int
    full_name: str
    labels: list[str]
    issues: list[BountyIssueResponse]


class UpdateActiveRequest(BaseModel):
    """Toggle whether a repository accepts funding and rewards."""

    is_active: bool


class FundRequest(BaseModel):
    """Add funds to a repository's pool."""

    currency: Currency
    amount: Decimal = Field(..., gt=0)
    idempotency_key: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Chosen by the client; resending it never funds twice",
    )


class RewardRequest(BaseModel):
    """Pay an issue bounty to a contributor wallet."""

    currency: Currency
    amount: Decimal = Field(..., gt=0)
    recipient_wallet: str = Field(..., examples=["0x" + "0" * 40])


class TransactionResponse(BaseModel):
    """A mined pool transaction."""

    tx_hash: str
    block_number: int | None = None


class AllocationResponse(BaseModel):
    """Latest reward allocation for an issue and currency."""

    github_repo_id: int
    issue_id: int
    currency: Currency
    amount: Decimal
    recipient_wallet: str
    attempt: int
    status: AllocationStatus
    chain_tx_hash: str | None
    error_message: str | None
    created_at: datetime
    confirmed_at: datetime | None

    class Config:
        from_attributes = True


class WindowStatusResponse(BaseModel):
    """Usage of one rolling window."""

    currency: Currency
    kind: WindowKind
    limit: Decimal
    consumed: Decimal
    remaining: Decimal
    resets_at: datetime | None

    class Config:
        from_attributes = True


class FundingStatusResponse(BaseModel):
    """Ceilings and usage for a repository and the caller."""

    github_repo_id: int
    repository_windows: list[WindowStatusResponse]
    funder_windows: list[WindowStatusResponse]


class InstallUrlResponse(BaseModel):
    """Where to install the GitHub App."""

    install_url: str


class FinalizeInstallationRequest(BaseModel):
    """Link the repositories of a fresh installation to the caller."""

    installation_id: int


class FinalizeInstallationResponse(BaseModel):
    """How many repositories were linked."""

    installation_id: int
    linked: int
    failed: int
