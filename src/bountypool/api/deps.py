"""Request dependencies: the acting principal and the service objects."""

from fastapi import Request

from ..services.principal import ANONYMOUS, Principal
from ..services.registry import RepositoryRegistry
from ..services.repository_service import RepositoryService
from ..services.reward_service import RewardService
from ..services.token_cache import TokenCache


def get_principal(request: Request) -> Principal:
    """Principal placed on the request by the auth middleware, else anonymous."""
    principal = getattr(request.state, "principal", None)
    return principal if isinstance(principal, Principal) else ANONYMOUS


def get_repository_service(request: Request) -> RepositoryService:
    return request.app.state.repository_service


def get_reward_service(request: Request) -> RewardService:
    return request.app.state.reward_service


def get_registry(request: Request) -> RepositoryRegistry:
    return request.app.state.registry


def get_token_cache(request: Request) -> TokenCache:
    return request.app.state.token_cache
