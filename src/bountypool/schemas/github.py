"""Pydantic models for GitHub API and webhook payloads."""

from typing import Literal

from pydantic import BaseModel, Field


class GitHubUser(BaseModel):
    """GitHub user or organization."""

    login: str
    id: int
    type: str = "User"  # "User" or "Organization"


class GitHubRepository(BaseModel):
    """GitHub repository info."""

    id: int
    full_name: str
    name: str
    default_branch: str = "main"
    private: bool = False
    owner: GitHubUser | None = None  # absent in installation webhook payloads


class GitHubInstallation(BaseModel):
    """GitHub App installation info."""

    id: int
    account: GitHubUser
    app_id: int | None = None
    app_slug: str | None = None
    repository_selection: Literal["all", "selected"] | None = None


class GitHubIssue(BaseModel):
    """Issue as returned by the issues list endpoint."""

    id: int
    number: int
    title: str
    state: str
    html_url: str | None = None
    labels: list[dict] = Field(default_factory=list)
    pull_request: dict | None = None  # Present if issue is a PR


class OrgMembership(BaseModel):
    """The authenticated user's membership in an organization."""

    state: Literal["active", "pending"]
    role: Literal["admin", "member", "billing_manager"]


class InstallationEvent(BaseModel):
    """Webhook payload for installation events."""

    action: Literal[
        "created", "deleted", "suspend", "unsuspend", "new_permissions_accepted"
    ]
    installation: GitHubInstallation
    repositories: list[GitHubRepository] = Field(default_factory=list)
    sender: GitHubUser


class InstallationRepositoriesEvent(BaseModel):
    """Webhook payload for installation_repositories events."""

    action: Literal["added", "removed"]
    installation: GitHubInstallation
    repositories_added: list[GitHubRepository] = Field(default_factory=list)
    repositories_removed: list[GitHubRepository] = Field(default_factory=list)
    sender: GitHubUser
