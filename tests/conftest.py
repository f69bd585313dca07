"""Pytest configuration and fixtures."""

import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PROCRASTINATE_DATABASE_URL", "postgresql://localhost/bountypool_test")
os.environ.setdefault("GITHUB_APP_ID", "1234")
os.environ.setdefault("GITHUB_APP_PRIVATE_KEY", "not-a-real-key")
os.environ.setdefault("GITHUB_APP_NAME", "Bounty Pool")
os.environ.setdefault("GITHUB_APP_SLUG", "bounty-pool")
os.environ.setdefault("GITHUB_WEBHOOK_SECRET", "webhook-secret")
os.environ.setdefault("CHAIN_GATEWAY_URL", "https://relayer.test")
os.environ.setdefault("CHAIN_GATEWAY_API_KEY", "relayer-key")

import asyncio
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bountypool.models import Base, ChainOperationStatus
from bountypool.services.access_gate import AccessGate
from bountypool.services.chain_gateway import (
    JournaledChainGateway,
    OperationStatus,
    PoolBalances,
    TxRef,
)
from bountypool.services.errors import (
    ChainPendingError,
    ChainRejectedError,
    ChainUnreachableError,
)
from bountypool.services.github_client import GitHubClient, GitHubNotFoundError
from bountypool.services.installation_resolver import InstallationResolver
from bountypool.services.locks import KeyedLock
from bountypool.services.principal import Principal
from bountypool.services.registry import RepositoryRegistry
from bountypool.services.repository_service import RepositoryService
from bountypool.services.reward_ledger import RewardLedger
from bountypool.services.reward_service import RewardService
from bountypool.services.token_cache import InstallationToken, TokenCache

APP_ID = 1234
GITHUB_BASE = "https://api.github.test"

_REPO_RE = re.compile(r"^/repos/([^/]+)/([^/]+)$")
_REPO_INSTALLATION_RE = re.compile(r"^/repos/([^/]+)/([^/]+)/installation$")
_COLLABORATOR_RE = re.compile(r"^/repos/([^/]+)/([^/]+)/collaborators/([^/]+)$")
_MEMBERSHIP_RE = re.compile(r"^/user/memberships/orgs/([^/]+)$")
_ISSUES_RE = re.compile(r"^/repos/([^/]+)/([^/]+)/issues$")


class FakeGitHub:
    """In-memory GitHub API served through httpx.MockTransport.

    Tokens are opaque strings: user tokens map to a login in ``users``,
    installation tokens look like ``inst-<id>``.
    """

    def __init__(self) -> None:
        self.users: dict[str, str] = {}
        self.repos: dict[str, dict] = {}
        self.readable: dict[str, set[str]] = defaultdict(set)  # token -> private repos
        self.repo_installations: dict[str, dict] = {}
        self.user_installations: dict[str, list[dict]] = defaultdict(list)
        self.installation_repos: dict[str, list[str]] = defaultdict(list)
        self.collaborators: dict[str, set[str]] = defaultdict(set)
        self.memberships: dict[tuple[str, str], dict] = {}
        self.issues: dict[str, list[dict]] = defaultdict(list)
        self.failures: dict[str, httpx.Response] = {}
        self.requests: list[tuple[str, str]] = []

    # Setup helpers

    def add_user(self, token: str, login: str) -> None:
        self.users[token] = login

    def add_repo(
        self, full_name: str, repo_id: int, private: bool = False, owner_type: str = "User"
    ) -> None:
        owner, name = full_name.split("/")
        self.repos[full_name.lower()] = {
            "id": repo_id,
            "full_name": full_name,
            "name": name,
            "private": private,
            "default_branch": "main",
            "owner": {"login": owner, "id": repo_id * 10, "type": owner_type},
        }

    def add_issue(
        self, full_name: str, number: int, labels: list[str], pull_request: bool = False
    ) -> None:
        issue = {
            "id": number * 100,
            "number": number,
            "title": f"Issue {number}",
            "state": "open",
            "html_url": f"https://github.test/{full_name}/issues/{number}",
            "labels": [{"name": label} for label in labels],
        }
        if pull_request:
            issue["pull_request"] = {"url": f"https://api.github.test/pulls/{number}"}
        self.issues[full_name.lower()].append(issue)

    @staticmethod
    def installation(
        installation_id: int, account: str, account_type: str = "User", app_id: int = APP_ID
    ) -> dict:
        return {
            "id": installation_id,
            "app_id": app_id,
            "app_slug": "bounty-pool" if app_id == APP_ID else "other-app",
            "account": {"login": account, "id": installation_id * 7, "type": account_type},
        }

    def install_on_repo(self, full_name: str, installation_id: int, app_id: int = APP_ID) -> None:
        owner = full_name.split("/")[0]
        account_type = self.repos[full_name.lower()]["owner"]["type"]
        self.repo_installations[full_name.lower()] = self.installation(
            installation_id, owner, account_type, app_id
        )
        self.installation_repos[f"inst-{installation_id}"].append(full_name)

    def install_for_user(
        self,
        token: str,
        installation_id: int,
        account: str,
        account_type: str = "User",
        app_id: int = APP_ID,
        repos: list[str] | None = None,
    ) -> None:
        self.user_installations[token].append(
            self.installation(installation_id, account, account_type, app_id)
        )
        self.installation_repos[f"inst-{installation_id}"].extend(repos or [])

    def fail(self, path: str, status: int, headers: dict | None = None) -> None:
        self.failures[path] = httpx.Response(status, headers=headers, json={"message": "boom"})

    # Transport

    def factory(self, token: str) -> GitHubClient:
        return GitHubClient(
            token,
            base_url=GITHUB_BASE,
            transport=httpx.MockTransport(self.handler),
        )

    def _can_read(self, token: str, full_name: str) -> bool:
        repo = self.repos.get(full_name.lower())
        if repo is None:
            return False
        if not repo["private"]:
            return True
        if full_name.lower() in {r.lower() for r in self.readable[token]}:
            return True
        return full_name.lower() in {r.lower() for r in self.installation_repos.get(token, [])}

    def handler(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        path = request.url.path
        self.requests.append((token, path))

        if path in self.failures:
            return self.failures[path]

        if m := _REPO_INSTALLATION_RE.match(path):
            installation = self.repo_installations.get(f"{m[1]}/{m[2]}".lower())
            if installation is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=installation)

        if m := _ISSUES_RE.match(path):
            full_name = f"{m[1]}/{m[2]}"
            if not self._can_read(token, full_name):
                return httpx.Response(404, json={"message": "Not Found"})
            wanted = set(filter(None, request.url.params.get("labels", "").split(",")))
            issues = [
                issue
                for issue in self.issues[full_name.lower()]
                if wanted <= {label["name"] for label in issue["labels"]}
            ]
            return httpx.Response(200, json=issues)

        if m := _COLLABORATOR_RE.match(path):
            full_name = f"{m[1]}/{m[2]}".lower()
            if m[3] in self.collaborators[full_name]:
                return httpx.Response(204)
            return httpx.Response(404, json={"message": "Not Found"})

        if m := _REPO_RE.match(path):
            full_name = f"{m[1]}/{m[2]}"
            if not self._can_read(token, full_name):
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=self.repos[full_name.lower()])

        if m := _MEMBERSHIP_RE.match(path):
            membership = self.memberships.get((self.users.get(token, ""), m[1].lower()))
            if membership is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=membership)

        if path == "/user/installations":
            if token not in self.users:
                return httpx.Response(401, json={"message": "Bad credentials"})
            installations = self.user_installations[token]
            return httpx.Response(
                200, json={"total_count": len(installations), "installations": installations}
            )

        if path == "/installation/repositories":
            repos = [self.repos[name.lower()] for name in self.installation_repos.get(token, [])]
            return httpx.Response(200, json={"total_count": len(repos), "repositories": repos})

        return httpx.Response(404, json={"message": "Not Found"})


class FakeExchange:
    """Installation token exchange that counts calls."""

    def __init__(self) -> None:
        self.calls: list[int] = []
        self.failing: set[int] = set()

    async def __call__(self, installation_id: int) -> InstallationToken:
        self.calls.append(installation_id)
        if installation_id in self.failing:
            raise GitHubNotFoundError(f"installation {installation_id} is gone", 404)
        return InstallationToken(
            token=f"inst-{installation_id}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )


class FakeChain:
    """Relayer stand-in: idempotent by key, scripted outcomes."""

    def __init__(self) -> None:
        self.submissions: list[tuple] = []
        self.operations: dict[str, OperationStatus] = {}
        self.balances: dict[int, PoolBalances] = {}
        self.unreadable_pools: set[int] = set()
        self.outcomes: list[str] = []
        self.delay = 0.0  # seconds before a submission is answered
        self._counter = 0

    def _next_tx(self) -> TxRef:
        self._counter += 1
        return TxRef(tx_hash=f"0x{self._counter:064x}", block_number=1000 + self._counter)

    def mine(self, key: str) -> TxRef:
        """Confirm a pending operation."""
        pending = self.operations[key]
        tx = TxRef(pending.tx.tx_hash, 2000) if pending.tx else self._next_tx()
        self.operations[key] = OperationStatus(ChainOperationStatus.CONFIRMED, tx)
        return tx

    def drop(self, key: str) -> None:
        """Reject a pending operation."""
        self.operations[key] = OperationStatus(
            ChainOperationStatus.REJECTED, reason="dropped from mempool"
        )

    async def _submit(self, key: str, call: tuple) -> TxRef:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.submissions.append(call)
        known = self.operations.get(key)
        if known is not None and known.status == ChainOperationStatus.CONFIRMED:
            return known.tx

        outcome = self.outcomes.pop(0) if self.outcomes else "confirm"
        if outcome == "confirm":
            tx = self._next_tx()
            self.operations[key] = OperationStatus(ChainOperationStatus.CONFIRMED, tx)
            return tx
        if outcome == "pending":
            tx = self._next_tx()
            self.operations[key] = OperationStatus(ChainOperationStatus.PENDING, tx)
            raise ChainPendingError(key, tx.tx_hash)
        if outcome == "reject":
            self.operations[key] = OperationStatus(
                ChainOperationStatus.REJECTED, reason="insufficient pool balance"
            )
            raise ChainRejectedError("insufficient pool balance", key)
        raise ChainUnreachableError("relayer unreachable")

    async def fund(self, repo_id, currency, amount, idempotency_key) -> TxRef:
        return await self._submit(idempotency_key, ("fund", repo_id, currency, amount))

    async def allocate(
        self, repo_id, issue_id, currency, amount, recipient, idempotency_key
    ) -> TxRef:
        return await self._submit(
            idempotency_key, ("allocate", repo_id, issue_id, currency, amount, recipient)
        )

    async def lookup(self, idempotency_key: str) -> OperationStatus | None:
        return self.operations.get(idempotency_key)

    async def get_pool_balances(self, repo_id: int) -> PoolBalances:
        if repo_id in self.unreadable_pools:
            raise ChainUnreachableError("pool read failed")
        return self.balances.get(repo_id, PoolBalances())


ALICE = Principal(user_id=1, github_login="alice", github_token="user-alice")
BOB = Principal(user_id=2, github_login="bob", github_token="user-bob")


@pytest.fixture
async def db_engine(tmp_path):
    """Create a test database engine."""
    # File-backed SQLite so concurrent sessions see each other's commits
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Create a test session factory."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
def github():
    gh = FakeGitHub()
    gh.add_user("user-alice", "alice")
    gh.add_user("user-bob", "bob")
    return gh


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
async def token_cache(exchange):
    cache = TokenCache(exchange)
    yield cache
    await cache.close()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def registry(session_factory):
    return RepositoryRegistry(session_factory)


@pytest.fixture
def gateway(chain, session_factory):
    return JournaledChainGateway(chain, session_factory, timeout=5)


@pytest.fixture
def ledger(session_factory):
    return RewardLedger(
        session_factory,
        funding_limits={"XDC": Decimal("1000"), "ROXN": Decimal("1000"), "USDC": Decimal("150")},
        transfer_limits={"XDC": Decimal("500"), "ROXN": Decimal("500"), "USDC": Decimal("100")},
    )


@pytest.fixture
def access_gate(token_cache, github):
    return AccessGate(token_cache, github_factory=github.factory, concurrency=4)


@pytest.fixture
def repo_locks():
    return KeyedLock()


@pytest.fixture
def repository_service(registry, token_cache, access_gate, gateway, repo_locks, github):
    return RepositoryService(
        registry=registry,
        resolver=InstallationResolver(github_factory=github.factory),
        access_gate=access_gate,
        token_cache=token_cache,
        gateway=gateway,
        repo_locks=repo_locks,
        github_factory=github.factory,
        request_timeout=10,
    )


@pytest.fixture
def reward_service(session_factory, registry, ledger, gateway, access_gate, repo_locks):
    return RewardService(
        session_factory=session_factory,
        registry=registry,
        ledger=ledger,
        gateway=gateway,
        access_gate=access_gate,
        repo_locks=repo_locks,
        request_timeout=10,
    )


@pytest.fixture
async def registered_repo(registry):
    """alice/widgets (id 42), public, registered by alice on installation 7."""
    return await registry.upsert(
        github_repo_id=42,
        full_name="alice/widgets",
        registering_user_id=ALICE.user_id,
        installation_id=7,
        is_private=False,
    )
