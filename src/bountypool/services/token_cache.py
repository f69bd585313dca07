"""Installation access token cache with single-flight refresh."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

from ..config import settings
from ..utils.github_auth import generate_app_jwt
from .github_client import GitHubUnavailableError, raise_for_github_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallationToken:
    """A short-lived installation access token."""

    token: str
    expires_at: datetime


TokenExchange = Callable[[int], Awaitable[InstallationToken]]


def _parse_expiry(value: str | None) -> datetime:
    """Parse GitHub's ``expires_at``; tokens last one hour when absent."""
    if not value:
        return datetime.now(timezone.utc) + timedelta(hours=1)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class AppTokenExchanger:
    """Exchanges an installation id for a token using the app's JWT."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.github_api_url
        self.timeout = timeout or settings.github_timeout_seconds
        self._transport = transport

    async def __call__(self, installation_id: int) -> InstallationToken:
        app_jwt = generate_app_jwt()

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"/app/installations/{installation_id}/access_tokens",
                    headers={
                        "Authorization": f"Bearer {app_jwt}",
                        "Accept": "application/vnd.github+json",
                    },
                )
        except httpx.HTTPError as exc:
            raise GitHubUnavailableError(
                f"Token exchange for installation {installation_id} failed: {exc}"
            ) from exc

        raise_for_github_status(response)
        data = response.json()
        return InstallationToken(
            token=data["token"],
            expires_at=_parse_expiry(data.get("expires_at")),
        )


class TokenCache:
    """Caches installation tokens by installation id.

    Entries are considered expired ``safety_margin`` before GitHub's
    expiry so requests already in flight never carry a dead token.
    Concurrent misses for one installation share a single exchange.
    A failed exchange evicts the entry and propagates; nothing stale
    is ever returned.
    """

    def __init__(
        self,
        exchange: TokenExchange,
        safety_margin: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._exchange = exchange
        self._safety_margin = (
            safety_margin
            if safety_margin is not None
            else timedelta(seconds=settings.token_safety_margin_seconds)
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: dict[int, InstallationToken] = {}
        self._inflight: dict[int, asyncio.Task[InstallationToken]] = {}

    def _fresh(self, entry: InstallationToken) -> bool:
        return self._clock() < entry.expires_at - self._safety_margin

    async def get_token(self, installation_id: int) -> str:
        """Return a valid token, exchanging at most once per miss."""
        entry = self._entries.get(installation_id)
        if entry is not None and self._fresh(entry):
            return entry.token

        task = self._inflight.get(installation_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(installation_id))
            self._inflight[installation_id] = task

        # Shielded: one cancelled caller must not abort the shared exchange
        entry = await asyncio.shield(task)
        return entry.token

    async def _refresh(self, installation_id: int) -> InstallationToken:
        self._entries.pop(installation_id, None)
        try:
            entry = await self._exchange(installation_id)
        except Exception as exc:
            logger.warning(f"Token exchange failed for installation {installation_id}: {exc}")
            raise
        finally:
            self._inflight.pop(installation_id, None)

        self._entries[installation_id] = entry
        return entry

    def evict(self, installation_id: int) -> None:
        """Drop a cached token (installation deleted, suspended, revoked)."""
        self._entries.pop(installation_id, None)

    async def close(self) -> None:
        """Cancel in-flight exchanges and forget all tokens."""
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        self._entries.clear()
