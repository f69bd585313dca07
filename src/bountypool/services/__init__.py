"""Business logic services."""

from .errors import (
    AlreadyRegisteredError,
    BountyPoolError,
    ChainError,
    ChainPendingError,
    ChainRejectedError,
    ChainUnreachableError,
    InconsistentStateError,
    InvalidRequestError,
    LimitExceededError,
    NotAuthorizedError,
    NotFoundError,
    NotInstalledError,
    RateLimitedError,
    TransientError,
)
from .access_gate import AccessGate, AccessOutcome, AccessReport
from .chain_gateway import (
    ChainGateway,
    HttpChainGateway,
    JournaledChainGateway,
    OperationStatus,
    PoolBalances,
    TxRef,
)
from .github_client import GitHubClient
from .installation_manager import handle_installation_event, handle_repos_event
from .installation_resolver import InstallationResolver, ResolvedInstallation
from .locks import KeyedLock
from .principal import ANONYMOUS, Principal
from .registry import RepositoryRegistry
from .repository_service import AccessibleRepositories, RepositoryService, RepositoryWithPool
from .reward_ledger import RewardLedger, WindowStatus
from .reward_service import FundingStatus, ReconcileReport, RewardService
from .token_cache import AppTokenExchanger, TokenCache

__all__ = [
    "ANONYMOUS",
    "AccessGate",
    "AccessOutcome",
    "AccessReport",
    "AccessibleRepositories",
    "AlreadyRegisteredError",
    "AppTokenExchanger",
    "BountyPoolError",
    "ChainError",
    "ChainGateway",
    "ChainPendingError",
    "ChainRejectedError",
    "ChainUnreachableError",
    "FundingStatus",
    "GitHubClient",
    "HttpChainGateway",
    "InconsistentStateError",
    "InstallationResolver",
    "InvalidRequestError",
    "JournaledChainGateway",
    "KeyedLock",
    "LimitExceededError",
    "NotAuthorizedError",
    "NotFoundError",
    "NotInstalledError",
    "OperationStatus",
    "PoolBalances",
    "Principal",
    "RateLimitedError",
    "ReconcileReport",
    "RepositoryRegistry",
    "RepositoryService",
    "RepositoryWithPool",
    "ResolvedInstallation",
    "RewardLedger",
    "RewardService",
    "TokenCache",
    "TransientError",
    "TxRef",
    "WindowStatus",
    "handle_installation_event",
    "handle_repos_event",
]
