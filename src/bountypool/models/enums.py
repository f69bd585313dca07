"""Enumerations shared by models, services and schemas."""

from enum import Enum


class Currency(str, Enum):
    """Currencies a reward pool can hold."""

    XDC = "XDC"
    ROXN = "ROXN"
    USDC = "USDC"


class WindowKind(str, Enum):
    """Which rolling ceiling an admission counts against."""

    FUNDING = "funding"
    TRANSFER = "transfer"


class InstallationScope(str, Enum):
    """How broadly a GitHub App installation applies."""

    REPOSITORY = "repository"  # found via the repo-specific endpoint
    ORGANIZATION = "organization"
    USER = "user"


class AllocationStatus(str, Enum):
    """Lifecycle of a reward allocation."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"  # terminal, retry needs a new allocation


class ChainOperationStatus(str, Enum):
    """Journal state of a single idempotent chain call."""

    SUBMITTED = "submitted"  # sent, no answer recorded yet
    PENDING = "pending"  # accepted by the chain, not mined
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
