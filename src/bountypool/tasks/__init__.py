"""Procrastinate task definitions."""

from .reconcile_tasks import reconcile_pending_operations
from .worker import app as procrastinate_app

__all__ = [
    "procrastinate_app",
    "reconcile_pending_operations",
]
