"""Utility modules."""

from .github_auth import (
    build_install_url,
    generate_app_jwt,
    split_full_name,
    verify_webhook_signature,
)
from .logging import setup_logging

__all__ = [
    "build_install_url",
    "generate_app_jwt",
    "setup_logging",
    "split_full_name",
    "verify_webhook_signature",
]
