"""GitHub App authentication utilities."""

import hashlib
import hmac
import re
import time
from urllib.parse import urlencode

import jwt

from ..config import settings

_OWNER_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9]|-(?=[A-Za-z0-9])){0,38}$")
_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]{1,100}$")


def generate_app_jwt() -> str:
    """Generate a JWT for GitHub App authentication."""
    now = int(time.time())
    payload = {
        "iat": now - 60,  # Issued at (60 seconds ago for clock skew)
        "exp": now + (10 * 60),  # Expires in 10 minutes
        "iss": str(settings.github_app_id),
    }
    return jwt.encode(payload, settings.github_app_private_key, algorithm="RS256")


def verify_webhook_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    expected = hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(f"sha256={expected}", signature)


def is_valid_owner(owner: str) -> bool:
    """GitHub logins: alphanumerics and single inner hyphens, max 39 chars."""
    return bool(_OWNER_RE.match(owner or ""))


def is_valid_repo_name(name: str) -> bool:
    return bool(_REPO_RE.match(name or "")) and name not in (".", "..")


def split_full_name(full_name: str) -> tuple[str, str] | None:
    """Split ``owner/repo``; None when either half is malformed."""
    parts = (full_name or "").split("/")
    if len(parts) != 2:
        return None
    owner, repo = parts
    if not is_valid_owner(owner) or not is_valid_repo_name(repo):
        return None
    return owner, repo


def build_install_url(state: str | int | None = None) -> str:
    """Link where a user installs the GitHub App."""
    url = f"https://github.com/apps/{settings.github_app_slug}/installations/new"
    if state is not None:
        url += "?" + urlencode({"state": str(state)})
    return url
