"""Async GitHub API client authenticated by a user or installation token."""

import logging
import re
import time
from typing import Any

import httpx

from ..config import settings
from ..schemas.github import (
    GitHubInstallation,
    GitHubIssue,
    GitHubRepository,
    OrgMembership,
)
from .errors import BountyPoolError, RateLimitedError, TransientError

logger = logging.getLogger(__name__)

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')


class GitHubError(BountyPoolError):
    """Unexpected response from the GitHub API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class GitHubNotFoundError(GitHubError):
    """404: missing, or hidden from this token."""


class GitHubUnauthorizedError(GitHubError):
    """401: token is invalid or expired."""


class GitHubForbiddenError(GitHubError):
    """403 that is not a rate limit."""


class GitHubUnavailableError(GitHubError, TransientError):
    """Network failure, timeout or 5xx."""


class GitHubRateLimitedError(GitHubError, RateLimitedError):
    """Primary or secondary rate limit exhausted."""

    def __init__(self, retry_after: int, status_code: int | None = None) -> None:
        RateLimitedError.__init__(self, retry_after)
        self.status_code = status_code


def rate_limit_wait(response: httpx.Response) -> int | None:
    """Seconds to wait if *response* is a rate-limit rejection, else None."""
    if response.status_code not in (403, 429):
        return None

    retry_after = response.headers.get("Retry-After")
    if retry_after is not None:
        try:
            return max(int(retry_after), 1)
        except ValueError:
            return 60

    if response.headers.get("X-RateLimit-Remaining") == "0":
        reset = response.headers.get("X-RateLimit-Reset")
        try:
            return max(int(reset) - int(time.time()), 1) if reset else 60
        except ValueError:
            return 60

    # 429 without headers is still a rate limit
    return 60 if response.status_code == 429 else None


def raise_for_github_status(response: httpx.Response) -> None:
    """Map an error response to the GitHub exception hierarchy."""
    status = response.status_code
    if status < 400:
        return

    wait = rate_limit_wait(response)
    if wait is not None:
        logger.warning(f"GitHub rate limit hit on {response.request.url.path}, retry in {wait}s")
        raise GitHubRateLimitedError(wait, status)

    request = response.request
    message = f"GitHub {request.method} {request.url.path} returned {status}"
    if status == 401:
        raise GitHubUnauthorizedError(message, status)
    if status == 403:
        raise GitHubForbiddenError(message, status)
    if status == 404:
        raise GitHubNotFoundError(message, status)
    if status >= 500:
        raise GitHubUnavailableError(message, status)
    raise GitHubError(message, status)


class GitHubClient:
    """Async GitHub API client."""

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        token: str,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = token
        self._base_url = base_url or settings.github_api_url or self.BASE_URL
        self._timeout = timeout or settings.github_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "GitHubClient":
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        assert self._client is not None
        try:
            response = await self._client.request(method, url, params=params)
        except httpx.TimeoutException as exc:
            raise GitHubUnavailableError(f"GitHub {method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise GitHubUnavailableError(f"GitHub {method} {url} failed: {exc}") from exc
        return response

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("GET", url, params)
        raise_for_github_status(response)
        return response.json()

    async def _get_paginated(
        self,
        url: str,
        key: str | None = None,
        params: dict[str, Any] | None = None,
        max_pages: int = 10,
    ) -> list[dict[str, Any]]:
        """Follow ``Link: rel="next"`` headers, collecting items.

        *key* names the list inside an object envelope
        (``{"installations": [...]}``); None means the body is the list.
        """
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        page_params: dict[str, Any] | None = {"per_page": 100, **(params or {})}
        pages = 0
        while next_url and pages < max_pages:
            response = await self._request("GET", next_url, page_params)
            raise_for_github_status(response)
            data = response.json()
            items.extend(data[key] if key else data)

            match = _NEXT_LINK_RE.search(response.headers.get("Link", ""))
            next_url = match.group(1) if match else None
            page_params = None  # the next link carries its own query
            pages += 1
        return items

    async def get_repo(self, owner: str, repo: str) -> GitHubRepository:
        """Get repository details."""
        data = await self._get_json(f"/repos/{owner}/{repo}")
        return GitHubRepository.model_validate(data)

    async def get_repo_installation(self, owner: str, repo: str) -> GitHubInstallation:
        """Get the app installation covering a specific repository."""
        data = await self._get_json(f"/repos/{owner}/{repo}/installation")
        return GitHubInstallation.model_validate(data)

    async def list_user_installations(self) -> list[GitHubInstallation]:
        """List installations the token's user can access."""
        items = await self._get_paginated("/user/installations", key="installations")
        return [GitHubInstallation.model_validate(item) for item in items]

    async def list_installation_repositories(self) -> list[GitHubRepository]:
        """List repositories granted to the installation (installation token only)."""
        items = await self._get_paginated("/installation/repositories", key="repositories")
        return [GitHubRepository.model_validate(item) for item in items]

    async def check_collaborator(self, owner: str, repo: str, username: str) -> bool:
        """Binary membership check: 204 is a collaborator, 404 is not."""
        response = await self._request(
            "GET", f"/repos/{owner}/{repo}/collaborators/{username}"
        )
        if response.status_code == 204:
            return True
        if response.status_code == 404:
            return False
        raise_for_github_status(response)
        raise GitHubError(
            f"Unexpected collaborator status {response.status_code}",
            response.status_code,
        )

    async def get_org_membership(self, org: str) -> OrgMembership | None:
        """The token user's membership in *org*, or None if not a member."""
        try:
            data = await self._get_json(f"/user/memberships/orgs/{org}")
        except GitHubNotFoundError:
            return None
        return OrgMembership.model_validate(data)

    async def list_issues(
        self,
        owner: str,
        repo: str,
        state: str = "open",
        labels: list[str] | None = None,
    ) -> list[GitHubIssue]:
        """List issues (pull requests excluded)."""
        params: dict[str, Any] = {"state": state}
        if labels:
            params["labels"] = ",".join(labels)
        items = await self._get_paginated(f"/repos/{owner}/{repo}/issues", params=params)
        issues = [GitHubIssue.model_validate(item) for item in items]
        return [issue for issue in issues if issue.pull_request is None]
