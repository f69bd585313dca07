"""Pydantic schemas for API validation."""

from .api import (
    AccessibleRepositoriesResponse,
    AllocationResponse,
    FinalizeInstallationRequest,
    FinalizeInstallationResponse,
    FundingStatusResponse,
    FundRequest,
    InstallUrlResponse,
    PoolInfo,
    RegisterRepositoryRequest,
    RepositoryResponse,
    RepositoryWithPoolResponse,
    RewardRequest,
    TransactionResponse,
    UpdateActiveRequest,
    WindowStatusResponse,
)
from .github import (
    GitHubInstallation,
    GitHubIssue,
    GitHubRepository,
    GitHubUser,
    InstallationEvent,
    InstallationRepositoriesEvent,
    OrgMembership,
)

__all__ = [
    "AccessibleRepositoriesResponse",
    "AllocationResponse",
    "FinalizeInstallationRequest",
    "FinalizeInstallationResponse",
    "FundRequest",
    "FundingStatusResponse",
    "GitHubInstallation",
    "GitHubIssue",
    "GitHubRepository",
    "GitHubUser",
    "InstallUrlResponse",
    "InstallationEvent",
    "InstallationRepositoriesEvent",
    "OrgMembership",
    "PoolInfo",
    "RegisterRepositoryRequest",
    "RepositoryResponse",
    "RepositoryWithPoolResponse",
    "RewardRequest",
    "TransactionResponse",
    "UpdateActiveRequest",
    "WindowStatusResponse",
]
