"""Exceptions raised by the service layer."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models import Currency, RepositoryRegistration, WindowKind


class BountyPoolError(Exception):
    """Base service exception."""


class NotFoundError(BountyPoolError):
    """Resource not found."""


class InvalidRequestError(BountyPoolError):
    """Malformed input (bad repository name, non-positive amount, ...)."""


class NotAuthorizedError(BountyPoolError):
    """Caller lacks the privilege for this operation."""


class NotInstalledError(BountyPoolError):
    """The GitHub App is not installed where it needs to be."""

    def __init__(self, install_url: str, message: str = "GitHub App not installed") -> None:
        self.install_url = install_url
        super().__init__(message)


class AlreadyRegisteredError(BountyPoolError):
    """Repository already has a registration."""

    def __init__(self, registration: "RepositoryRegistration") -> None:
        self.registration = registration
        super().__init__(f"{registration.full_name} is already registered")


class LimitExceededError(BountyPoolError):
    """An admission would push a rolling window over its ceiling."""

    def __init__(
        self,
        subject_id: str,
        currency: "Currency",
        kind: "WindowKind",
        limit: Decimal,
        consumed: Decimal,
        requested: Decimal,
        resets_at: datetime,
    ) -> None:
        self.subject_id = subject_id
        self.currency = currency
        self.kind = kind
        self.limit = limit
        self.consumed = consumed
        self.requested = requested
        self.resets_at = resets_at
        super().__init__(
            f"{kind.value} limit for {currency.value} exceeded: "
            f"{consumed} of {limit} used, {requested} requested"
        )

    @property
    def remaining(self) -> Decimal:
        return max(self.limit - self.consumed, Decimal(0))


class TransientError(BountyPoolError):
    """An external system is temporarily unavailable; retry with backoff."""

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class RateLimitedError(TransientError):
    """An external rate limit is exhausted."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"rate limit exceeded, retry after {retry_after}s", retry_after)


class ChainError(BountyPoolError):
    """Base for chain gateway outcomes other than a mined transaction."""


class ChainPendingError(ChainError):
    """Submitted but not mined; poll, never resubmit with a new key."""

    def __init__(self, idempotency_key: str, tx_hash: str | None = None) -> None:
        self.idempotency_key = idempotency_key
        self.tx_hash = tx_hash
        super().__init__(f"chain operation {idempotency_key} is pending")


class ChainRejectedError(ChainError):
    """The chain refused the operation; retry needs a new key."""

    def __init__(self, reason: str, idempotency_key: str | None = None) -> None:
        self.reason = reason
        self.idempotency_key = idempotency_key
        super().__init__(f"chain rejected operation: {reason}")


class ChainUnreachableError(ChainError, TransientError):
    """RPC/network failure; the same key may be retried."""

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        TransientError.__init__(self, message, retry_after)


class InconsistentStateError(BountyPoolError):
    """The store and the chain disagree; needs an operator."""
