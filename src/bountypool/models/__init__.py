"""Database models."""

from .base import Base
from .chain_operation import ChainOperation
from .enums import (
    AllocationStatus,
    ChainOperationStatus,
    Currency,
    InstallationScope,
    WindowKind,
)
from .funding_window import FundingWindowCounter
from .installation import Installation
from .pool_funding import PoolFunding
from .repository import RepositoryRegistration
from .reward_allocation import RewardAllocation

__all__ = [
    "AllocationStatus",
    "Base",
    "ChainOperation",
    "ChainOperationStatus",
    "Currency",
    "FundingWindowCounter",
    "Installation",
    "InstallationScope",
    "PoolFunding",
    "RepositoryRegistration",
    "RewardAllocation",
    "WindowKind",
]
