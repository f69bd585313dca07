"""Map service exceptions to JSON error responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..services.errors import (
    AlreadyRegisteredError,
    BountyPoolError,
    ChainPendingError,
    ChainRejectedError,
    InconsistentStateError,
    InvalidRequestError,
    LimitExceededError,
    NotAuthorizedError,
    NotFoundError,
    NotInstalledError,
    TransientError,
)

logger = logging.getLogger(__name__)

_STATUS_MAP: dict[type[BountyPoolError], int] = {
    NotInstalledError: 409,
    AlreadyRegisteredError: 409,
    NotAuthorizedError: 403,
    NotFoundError: 404,
    InvalidRequestError: 422,
    LimitExceededError: 429,
    ChainPendingError: 202,
    ChainRejectedError: 422,
    TransientError: 503,
    InconsistentStateError: 500,
}


def _status_for(exc: BountyPoolError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_MAP:
            return _STATUS_MAP[cls]
    return 500


def _error_body(exc: BountyPoolError) -> dict:
    """Error payload with whatever the client needs to act on it."""
    body: dict = {"detail": str(exc), "error": type(exc).__name__}

    match exc:
        case NotInstalledError():
            body["install_url"] = exc.install_url
        case AlreadyRegisteredError():
            body["github_repo_id"] = exc.registration.github_repo_id
        case LimitExceededError():
            body.update(
                currency=exc.currency.value,
                kind=exc.kind.value,
                limit=str(exc.limit),
                consumed=str(exc.consumed),
                remaining=str(exc.remaining),
                requested=str(exc.requested),
                resets_at=exc.resets_at.isoformat(),
            )
        case ChainPendingError():
            body.update(idempotency_key=exc.idempotency_key, tx_hash=exc.tx_hash)
        case ChainRejectedError():
            body.update(reason=exc.reason, idempotency_key=exc.idempotency_key)
        case TransientError():
            body["retry_after"] = exc.retry_after
        case InconsistentStateError():
            body["requires_operator"] = True
    return body


async def _bounty_error_handler(request: Request, exc: BountyPoolError) -> JSONResponse:
    status = _status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")

    headers = None
    if isinstance(exc, TransientError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=status, content=_error_body(exc), headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    """Register exception handlers on the app."""
    app.add_exception_handler(BountyPoolError, _bounty_error_handler)  # type: ignore[arg-type]
