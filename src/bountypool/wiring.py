"""Construction and teardown of the long-lived service objects."""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database import async_session_factory
from .services.access_gate import AccessGate
from .services.chain_gateway import HttpChainGateway, JournaledChainGateway
from .services.installation_resolver import InstallationResolver
from .services.locks import KeyedLock
from .services.registry import RepositoryRegistry
from .services.repository_service import RepositoryService
from .services.reward_ledger import RewardLedger
from .services.reward_service import RewardService
from .services.token_cache import AppTokenExchanger, TokenCache

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request or task needs, built once per process."""

    token_cache: TokenCache
    registry: RepositoryRegistry
    chain: HttpChainGateway
    repository_service: RepositoryService
    reward_service: RewardService

    async def close(self) -> None:
        await self.token_cache.close()
        await self.chain.close()


def build_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> Services:
    session_factory = session_factory or async_session_factory

    token_cache = TokenCache(AppTokenExchanger())
    registry = RepositoryRegistry(session_factory)
    access_gate = AccessGate(token_cache)
    chain = HttpChainGateway()
    gateway = JournaledChainGateway(chain, session_factory)
    ledger = RewardLedger(session_factory)
    # Shared so registration, funding and payouts for one repo never interleave
    repo_locks = KeyedLock()

    repository_service = RepositoryService(
        registry=registry,
        resolver=InstallationResolver(),
        access_gate=access_gate,
        token_cache=token_cache,
        gateway=gateway,
        repo_locks=repo_locks,
    )
    reward_service = RewardService(
        session_factory=session_factory,
        registry=registry,
        ledger=ledger,
        gateway=gateway,
        access_gate=access_gate,
        repo_locks=repo_locks,
    )
    logger.info("Services initialized")
    return Services(token_cache, registry, chain, repository_service, reward_service)
