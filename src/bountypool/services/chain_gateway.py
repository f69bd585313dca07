"""Gateway to the on-chain reward pool and its idempotency contract.

The contract itself lives behind a relayer service; this module only
knows how to submit operations, read their outcome and replay results.
Every mutating call carries an idempotency key:

* a key that already confirmed returns the original transaction,
* a pending key is polled, never resubmitted under a new key,
* a rejected key stays rejected (retry needs a new key),
* an unreachable outcome may be retried with the same key.
"""

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..models import ChainOperation, ChainOperationStatus, Currency
from .errors import (
    ChainPendingError,
    ChainRejectedError,
    ChainUnreachableError,
    InconsistentStateError,
    InvalidRequestError,
)
from .locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TxRef:
    """A mined transaction."""

    tx_hash: str
    block_number: int | None = None


@dataclass(frozen=True)
class OperationStatus:
    """What the chain knows about an idempotency key."""

    status: ChainOperationStatus
    tx: TxRef | None = None
    reason: str | None = None


@dataclass(frozen=True)
class PoolBalances:
    """Reward pool balances of one repository."""

    xdc: Decimal = Decimal(0)
    roxn: Decimal = Decimal(0)
    usdc: Decimal = Decimal(0)

    def for_currency(self, currency: Currency) -> Decimal:
        return getattr(self, currency.value.lower())


class ChainGateway(Protocol):
    """Operations the core needs from the reward pool."""

    async def fund(
        self,
        repo_id: int,
        currency: Currency,
        amount: Decimal,
        idempotency_key: str,
    ) -> TxRef: ...

    async def allocate(
        self,
        repo_id: int,
        issue_id: int,
        currency: Currency,
        amount: Decimal,
        recipient: str,
        idempotency_key: str,
    ) -> TxRef: ...

    async def lookup(self, idempotency_key: str) -> OperationStatus | None: ...

    async def get_pool_balances(self, repo_id: int) -> PoolBalances: ...


def _amount(value: Decimal) -> str:
    return format(value.normalize(), "f")


class HttpChainGateway:
    """Talks to the relayer that signs and submits pool transactions."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.chain_gateway_url,
            headers={
                "Authorization": f"Bearer {api_key or settings.chain_gateway_api_key}",
                "Accept": "application/json",
            },
            timeout=timeout or settings.chain_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        idempotency_key: str | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise ChainUnreachableError(f"Chain relayer timed out on {url}") from exc
        except httpx.TransportError as exc:
            raise ChainUnreachableError(f"Chain relayer unreachable: {exc}") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise ChainUnreachableError(
                "Chain relayer is throttling requests",
                int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 500 or response.status_code in (401, 403):
            raise ChainUnreachableError(
                f"Chain relayer returned {response.status_code} for {url}"
            )
        return response

    @staticmethod
    def _tx_from_body(body: dict[str, Any]) -> TxRef:
        return TxRef(tx_hash=body["tx_hash"], block_number=body.get("block_number"))

    def _outcome(self, response: httpx.Response, idempotency_key: str) -> TxRef:
        body = response.json() if response.content else {}
        status = response.status_code

        if status in (400, 409, 422):
            raise ChainRejectedError(body.get("reason") or f"HTTP {status}", idempotency_key)
        if status == 202 or body.get("status") == "pending":
            raise ChainPendingError(idempotency_key, body.get("tx_hash"))
        if status in (200, 201) and body.get("status", "confirmed") == "confirmed":
            return self._tx_from_body(body)
        if body.get("status") == "rejected":
            raise ChainRejectedError(body.get("reason") or "rejected", idempotency_key)
        raise ChainUnreachableError(f"Unexpected relayer response {status}")

    async def fund(
        self,
        repo_id: int,
        currency: Currency,
        amount: Decimal,
        idempotency_key: str,
    ) -> TxRef:
        response = await self._send(
            "POST",
            f"/v1/pools/{repo_id}/fund",
            idempotency_key,
            json={"currency": currency.value, "amount": _amount(amount)},
        )
        return self._outcome(response, idempotency_key)

    async def allocate(
        self,
        repo_id: int,
        issue_id: int,
        currency: Currency,
        amount: Decimal,
        recipient: str,
        idempotency_key: str,
    ) -> TxRef:
        response = await self._send(
            "POST",
            f"/v1/pools/{repo_id}/issues/{issue_id}/allocations",
            idempotency_key,
            json={
                "currency": currency.value,
                "amount": _amount(amount),
                "recipient": recipient,
            },
        )
        return self._outcome(response, idempotency_key)

    async def lookup(self, idempotency_key: str) -> OperationStatus | None:
        response = await self._send("GET", f"/v1/operations/{idempotency_key}")
        if response.status_code == 404:
            return None
        body = response.json()
        status = ChainOperationStatus(body["status"])
        tx = self._tx_from_body(body) if body.get("tx_hash") else None
        return OperationStatus(status=status, tx=tx, reason=body.get("reason"))

    async def get_pool_balances(self, repo_id: int) -> PoolBalances:
        response = await self._send("GET", f"/v1/pools/{repo_id}")
        if response.status_code == 404:
            return PoolBalances()
        body = response.json()
        return PoolBalances(
            xdc=Decimal(str(body.get("xdc", "0"))),
            roxn=Decimal(str(body.get("roxn", "0"))),
            usdc=Decimal(str(body.get("usdc", "0"))),
        )


def request_fingerprint(operation: str, *parts: object) -> str:
    """Stable digest of an operation's parameters."""
    canonical = "|".join(
        [operation]
        + [_amount(p) if isinstance(p, Decimal) else str(p).lower() for p in parts]
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class JournaledChainGateway:
    """Wraps a gateway with a local journal of idempotency keys.

    The journal makes replays local: a confirmed key is answered from
    the database and a pending key is polled. A key may only ever be
    used with the parameters it was first submitted with.
    """

    def __init__(
        self,
        inner: ChainGateway,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float | None = None,
    ):
        self.inner = inner
        self._session_factory = session_factory
        self.timeout = timeout or settings.chain_timeout_seconds
        self._locks = KeyedLock()

    async def fund(
        self,
        repo_id: int,
        currency: Currency,
        amount: Decimal,
        idempotency_key: str,
    ) -> TxRef:
        fingerprint = request_fingerprint("fund", repo_id, currency.value, amount)
        return await self._execute(
            idempotency_key,
            "fund",
            fingerprint,
            lambda: self.inner.fund(repo_id, currency, amount, idempotency_key),
        )

    async def allocate(
        self,
        repo_id: int,
        issue_id: int,
        currency: Currency,
        amount: Decimal,
        recipient: str,
        idempotency_key: str,
    ) -> TxRef:
        fingerprint = request_fingerprint(
            "allocate", repo_id, issue_id, currency.value, amount, recipient
        )
        return await self._execute(
            idempotency_key,
            "allocate",
            fingerprint,
            lambda: self.inner.allocate(
                repo_id, issue_id, currency, amount, recipient, idempotency_key
            ),
        )

    async def get_pool_balances(self, repo_id: int) -> PoolBalances:
        try:
            return await asyncio.wait_for(self.inner.get_pool_balances(repo_id), self.timeout)
        except asyncio.TimeoutError as exc:
            raise ChainUnreachableError(f"Pool balance read for {repo_id} timed out") from exc

    async def lookup(self, idempotency_key: str) -> OperationStatus | None:
        """Journal state, refreshed from the chain while not terminal."""
        async with self._locks.hold(idempotency_key):
            op = await self._load(idempotency_key)
            if op is None:
                return None
            if op.status == ChainOperationStatus.CONFIRMED:
                return OperationStatus(op.status, TxRef(op.tx_hash, op.block_number))
            if op.status == ChainOperationStatus.REJECTED:
                return OperationStatus(op.status, reason=op.error_message)
            return await self._refresh(op)

    async def _load(self, idempotency_key: str) -> ChainOperation | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChainOperation).where(ChainOperation.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none()

    async def _record(self, idempotency_key: str, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ChainOperation)
                .where(ChainOperation.idempotency_key == idempotency_key)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _refresh(self, op: ChainOperation) -> OperationStatus:
        """Ask the chain about a submitted or pending key."""
        try:
            remote = await asyncio.wait_for(self.inner.lookup(op.idempotency_key), self.timeout)
        except asyncio.TimeoutError as exc:
            raise ChainUnreachableError(f"Lookup of {op.idempotency_key} timed out") from exc

        if remote is None:
            if op.status == ChainOperationStatus.PENDING:
                raise InconsistentStateError(
                    f"Chain has no record of pending operation {op.idempotency_key}"
                )
            # Submission never arrived
            return OperationStatus(ChainOperationStatus.SUBMITTED)

        if remote.status == ChainOperationStatus.CONFIRMED and remote.tx is not None:
            if op.tx_hash and op.tx_hash != remote.tx.tx_hash:
                raise InconsistentStateError(
                    f"Operation {op.idempotency_key} recorded tx {op.tx_hash}, "
                    f"chain reports {remote.tx.tx_hash}"
                )
            await self._record(
                op.idempotency_key,
                status=ChainOperationStatus.CONFIRMED,
                tx_hash=remote.tx.tx_hash,
                block_number=remote.tx.block_number,
            )
        elif remote.status == ChainOperationStatus.REJECTED:
            await self._record(
                op.idempotency_key,
                status=ChainOperationStatus.REJECTED,
                error_message=remote.reason,
            )
        elif remote.status == ChainOperationStatus.PENDING and op.status != remote.status:
            await self._record(
                op.idempotency_key,
                status=ChainOperationStatus.PENDING,
                tx_hash=remote.tx.tx_hash if remote.tx else None,
            )
        return remote

    async def _claim(self, idempotency_key: str, operation: str, fingerprint: str) -> ChainOperation | None:
        """Create the journal entry, or return the existing one."""
        existing = await self._load(idempotency_key)
        if existing is not None:
            return existing
        async with self._session_factory() as session:
            session.add(
                ChainOperation(
                    idempotency_key=idempotency_key,
                    operation=operation,
                    fingerprint=fingerprint,
                    status=ChainOperationStatus.SUBMITTED,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return await self._load(idempotency_key)
        return None

    async def _execute(
        self,
        idempotency_key: str,
        operation: str,
        fingerprint: str,
        call: Callable[[], Awaitable[TxRef]],
    ) -> TxRef:
        async with self._locks.hold(idempotency_key):
            op = await self._claim(idempotency_key, operation, fingerprint)
            if op is not None:
                if op.fingerprint != fingerprint or op.operation != operation:
                    raise InvalidRequestError(
                        f"Idempotency key {idempotency_key} was used with different parameters"
                    )
                if op.status == ChainOperationStatus.CONFIRMED:
                    logger.info(f"Replaying confirmed chain operation {idempotency_key}")
                    return TxRef(op.tx_hash, op.block_number)
                if op.status == ChainOperationStatus.REJECTED:
                    raise ChainRejectedError(op.error_message or "rejected", idempotency_key)
                if op.status == ChainOperationStatus.PENDING:
                    remote = await self._refresh(op)
                    return self._settled(remote, idempotency_key)
                # SUBMITTED: the previous outcome is unknown, resubmitting the same key is safe

            try:
                tx = await asyncio.wait_for(call(), self.timeout)
            except asyncio.TimeoutError as exc:
                logger.warning(f"Chain operation {idempotency_key} timed out")
                raise ChainUnreachableError(f"Chain operation {idempotency_key} timed out") from exc
            except ChainPendingError as exc:
                await self._record(
                    idempotency_key, status=ChainOperationStatus.PENDING, tx_hash=exc.tx_hash
                )
                raise
            except ChainRejectedError as exc:
                logger.warning(f"Chain rejected {operation} {idempotency_key}: {exc.reason}")
                await self._record(
                    idempotency_key,
                    status=ChainOperationStatus.REJECTED,
                    error_message=exc.reason,
                )
                raise ChainRejectedError(exc.reason, idempotency_key) from exc

            await self._record(
                idempotency_key,
                status=ChainOperationStatus.CONFIRMED,
                tx_hash=tx.tx_hash,
                block_number=tx.block_number,
            )
            logger.info(f"Chain {operation} {idempotency_key} confirmed in {tx.tx_hash}")
            return tx

    @staticmethod
    def _settled(remote: OperationStatus, idempotency_key: str) -> TxRef:
        if remote.status == ChainOperationStatus.CONFIRMED and remote.tx is not None:
            return remote.tx
        if remote.status == ChainOperationStatus.REJECTED:
            raise ChainRejectedError(remote.reason or "rejected", idempotency_key)
        raise ChainPendingError(idempotency_key, remote.tx.tx_hash if remote.tx else None)
