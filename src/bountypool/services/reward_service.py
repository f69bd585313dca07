"""Funding reward pools and paying out issue bounties."""

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..models import (
    AllocationStatus,
    ChainOperation,
    ChainOperationStatus,
    Currency,
    PoolFunding,
    RepositoryRegistration,
    RewardAllocation,
    WindowKind,
)
from .access_gate import AccessGate
from .chain_gateway import ChainGateway, OperationStatus, TxRef
from .deadline import deadline
from .errors import (
    BountyPoolError,
    ChainPendingError,
    ChainRejectedError,
    InconsistentStateError,
    InvalidRequestError,
    NotAuthorizedError,
    NotFoundError,
    TransientError,
)
from .locks import KeyedLock
from .principal import Principal
from .registry import RepositoryRegistry
from .reward_ledger import Admission, RewardLedger, WindowStatus, repository_subject, user_subject

logger = logging.getLogger(__name__)

WALLET_PATTERN = re.compile(r"^(0x|xdc)[0-9a-fA-F]{40}$")


def allocation_key(github_repo_id: int, issue_id: int, currency: Currency, attempt: int) -> str:
    return f"alloc:{github_repo_id}:{issue_id}:{currency.value}:{attempt}"


@dataclass
class ReconcileReport:
    """Counts from one reconciliation sweep."""

    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0
    inconsistent: int = 0


@dataclass
class FundingStatus:
    """Window usage for one repository, plus the caller's own funding windows."""

    github_repo_id: int
    repository_windows: list[WindowStatus]
    funder_windows: list[WindowStatus]


class RewardService:
    """Moves value through the reward pool under ledger ceilings.

    Every mutating operation is serialized per repository, admitted by
    the ledger before anything reaches the chain, and carries an
    idempotency key so that retries never move value twice.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: RepositoryRegistry,
        ledger: RewardLedger,
        gateway: ChainGateway,
        access_gate: AccessGate,
        repo_locks: KeyedLock,
        request_timeout: float | None = None,
    ):
        self._session_factory = session_factory
        self.registry = registry
        self.ledger = ledger
        self.gateway = gateway
        self.access_gate = access_gate
        self.repo_locks = repo_locks
        self.request_timeout = request_timeout or settings.request_timeout_seconds

    async def _owned_registration(
        self, principal: Principal, github_repo_id: int
    ) -> RepositoryRegistration:
        if not principal.is_authenticated:
            raise NotAuthorizedError("User not authenticated")
        registration = await self.registry.get(github_repo_id)
        if registration is None:
            raise NotFoundError("Repository not found")
        if registration.registering_user_id != principal.user_id:
            raise NotAuthorizedError("Only the repository's registrant may move its funds")
        if not registration.is_active:
            raise InvalidRequestError(f"{registration.full_name} is not active")
        return registration

    async def _visible_registration(
        self, principal: Principal, github_repo_id: int
    ) -> RepositoryRegistration:
        registration = await self.registry.get(github_repo_id)
        if registration is None or not await self.access_gate.can_view(registration, principal):
            raise NotFoundError("Repository not found")
        return registration

    @staticmethod
    def _check_amount(amount: Decimal) -> None:
        if not amount.is_finite() or amount <= 0:
            raise InvalidRequestError("Amount must be positive")

    async def _release_all(self, admissions: Sequence[Admission]) -> None:
        for admission in admissions:
            await self.ledger.release(admission)

    # Funding

    async def fund_repository(
        self,
        principal: Principal,
        github_repo_id: int,
        currency: Currency,
        amount: Decimal,
        idempotency_key: str,
    ) -> TxRef:
        """Add funds to a repository's pool.

        The amount is admitted against the repository's and the funder's
        funding windows first. A rejected transfer gives the admissions
        back; a pending or unreachable one keeps them, since the funds may
        still move. Retrying with the same key after such an outcome
        resumes the original operation instead of admitting again. The
        caller always supplies the key.
        """
        self._check_amount(amount)
        if not idempotency_key:
            raise InvalidRequestError("Funding requires an idempotency key")

        async with deadline(self.request_timeout, f"funding repository {github_repo_id}"):
            await self._owned_registration(principal, github_repo_id)

            async with self.repo_locks.hold(github_repo_id):
                prior = await self.gateway.lookup(idempotency_key)
                if prior is not None:
                    return await self._resume_funding(
                        prior, github_repo_id, currency, amount, idempotency_key
                    )

                funding = await self._load_funding(idempotency_key)
                if funding is None:
                    funding = await self._admit_funding(
                        principal, github_repo_id, currency, amount, idempotency_key
                    )
                elif (
                    funding.github_repo_id != github_repo_id
                    or funding.funder_user_id != principal.user_id
                    or funding.currency != currency
                    or funding.amount != amount
                ):
                    raise InvalidRequestError(
                        f"Idempotency key {idempotency_key} was used with different parameters"
                    )

                try:
                    tx = await self.gateway.fund(github_repo_id, currency, amount, idempotency_key)
                except ChainRejectedError:
                    await self._release_funding(funding)
                    raise

        logger.info(
            f"User {principal.user_id} funded repo {github_repo_id} with "
            f"{amount} {currency.value} in {tx.tx_hash}"
        )
        return tx

    async def _admit_funding(
        self,
        principal: Principal,
        github_repo_id: int,
        currency: Currency,
        amount: Decimal,
        key: str,
    ) -> PoolFunding:
        """Admit a deposit against both funding windows and record it.

        Any interruption before the record is stored, cancellation
        included, gives the admissions back: nothing was submitted yet.
        """
        admissions: list[Admission] = []
        recorded = False
        try:
            admissions.append(
                await self.ledger.admit(
                    repository_subject(github_repo_id), currency, amount, WindowKind.FUNDING
                )
            )
            admissions.append(
                await self.ledger.admit(
                    user_subject(principal.user_id), currency, amount, WindowKind.FUNDING
                )
            )
            funding = PoolFunding(
                idempotency_key=key,
                github_repo_id=github_repo_id,
                funder_user_id=principal.user_id,
                currency=currency,
                amount=amount,
                repository_window_start=admissions[0].window_start,
                funder_window_start=admissions[1].window_start,
            )
            async with self._session_factory() as session:
                session.add(funding)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise InvalidRequestError(
                        f"Idempotency key {key} is already in use"
                    ) from exc
                recorded = True
        except BaseException:
            await self._release_all(admissions)
            if recorded:
                await self._discard_funding(key)
            raise
        return funding

    async def _load_funding(self, key: str) -> PoolFunding | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PoolFunding).where(PoolFunding.idempotency_key == key)
            )
            return result.scalar_one_or_none()

    async def _discard_funding(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(PoolFunding).where(PoolFunding.idempotency_key == key))
            await session.commit()

    @staticmethod
    def _funding_admissions(funding: PoolFunding) -> list[Admission]:
        return [
            Admission(
                repository_subject(funding.github_repo_id),
                funding.currency,
                WindowKind.FUNDING,
                funding.amount,
                funding.repository_window_start,
            ),
            Admission(
                user_subject(funding.funder_user_id),
                funding.currency,
                WindowKind.FUNDING,
                funding.amount,
                funding.funder_window_start,
            ),
        ]

    async def _release_funding(self, funding: PoolFunding) -> None:
        """Give a rejected deposit's admissions back, at most once."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(PoolFunding)
                .where(
                    PoolFunding.idempotency_key == funding.idempotency_key,
                    PoolFunding.released_at.is_(None),
                )
                .values(released_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount == 1:
            await self._release_all(self._funding_admissions(funding))

    async def _resume_funding(
        self,
        prior: OperationStatus,
        github_repo_id: int,
        currency: Currency,
        amount: Decimal,
        key: str,
    ) -> TxRef:
        # The first call already admitted the amount; the gateway replays a
        # confirmed key, re-raises a rejected one and rejects changed parameters
        logger.info(f"Resuming funding {key} ({prior.status.value})")
        try:
            return await self.gateway.fund(github_repo_id, currency, amount, key)
        except ChainRejectedError:
            funding = await self._load_funding(key)
            if funding is not None:
                await self._release_funding(funding)
            raise

    async def reconcile_funding(self, funding: PoolFunding) -> ChainOperationStatus:
        """Settle one deposit whose chain outcome was left open.

        A deposit the chain never saw is resubmitted under its own key and
        a rejected one gives its admissions back.
        """
        key = funding.idempotency_key
        remote = await self.gateway.lookup(key)

        if remote is None or remote.status == ChainOperationStatus.SUBMITTED:
            try:
                await self.gateway.fund(
                    funding.github_repo_id, funding.currency, funding.amount, key
                )
            except ChainPendingError:
                return ChainOperationStatus.PENDING
            except ChainRejectedError:
                await self._release_funding(funding)
                return ChainOperationStatus.REJECTED
            return ChainOperationStatus.CONFIRMED

        if remote.status == ChainOperationStatus.REJECTED:
            await self._release_funding(funding)
        return remote.status

    # Allocation

    async def _latest_allocation(
        self, github_repo_id: int, issue_id: int, currency: Currency
    ) -> RewardAllocation | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RewardAllocation)
                .where(
                    RewardAllocation.github_repo_id == github_repo_id,
                    RewardAllocation.issue_id == issue_id,
                    RewardAllocation.currency == currency,
                )
                .order_by(RewardAllocation.attempt.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_allocation(
        self, principal: Principal, github_repo_id: int, issue_id: int, currency: Currency
    ) -> RewardAllocation:
        """Latest allocation for an issue of a repository the caller can see."""
        await self._visible_registration(principal, github_repo_id)
        allocation = await self._latest_allocation(github_repo_id, issue_id, currency)
        if allocation is None:
            raise NotFoundError("No reward allocated for this issue")
        return allocation

    async def _mark(
        self,
        allocation: RewardAllocation,
        status: AllocationStatus,
        tx: TxRef | None = None,
        error: str | None = None,
    ) -> RewardAllocation:
        values: dict = {"status": status, "error_message": error}
        if tx is not None:
            values.update(
                chain_tx_hash=tx.tx_hash,
                block_number=tx.block_number,
                confirmed_at=datetime.now(timezone.utc),
            )
        async with self._session_factory() as session:
            await session.execute(
                update(RewardAllocation)
                .where(RewardAllocation.id == allocation.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        for field_name, value in values.items():
            setattr(allocation, field_name, value)
        return allocation

    async def allocate_reward(
        self,
        principal: Principal,
        github_repo_id: int,
        issue_id: int,
        currency: Currency,
        amount: Decimal,
        recipient_wallet: str,
    ) -> TxRef:
        """
        Pay an issue bounty from the repository's pool.

        At most one effective payout exists per (repository, issue,
        currency):
        - confirmed: the original transaction is returned
        - pending: the earlier attempt is reconciled first
        - failed: a new attempt is made under a fresh key
        """
        self._check_amount(amount)
        if not WALLET_PATTERN.match(recipient_wallet):
            raise InvalidRequestError("Invalid recipient wallet address")

        async with deadline(
            self.request_timeout, f"allocating reward for {github_repo_id}#{issue_id}"
        ):
            await self._owned_registration(principal, github_repo_id)

            async with self.repo_locks.hold(github_repo_id):
                latest = await self._latest_allocation(github_repo_id, issue_id, currency)
                if latest is not None and latest.status == AllocationStatus.PENDING:
                    latest = await self.reconcile_allocation(latest)
                    if latest.status == AllocationStatus.PENDING:
                        raise ChainPendingError(latest.idempotency_key, latest.chain_tx_hash)

                if latest is not None and latest.status == AllocationStatus.CONFIRMED:
                    logger.info(
                        f"Reward for {github_repo_id}#{issue_id} already paid "
                        f"in {latest.chain_tx_hash}"
                    )
                    return TxRef(latest.chain_tx_hash, latest.block_number)

                attempt = latest.attempt + 1 if latest is not None else 1
                return await self._new_allocation(
                    principal, github_repo_id, issue_id, currency, amount, recipient_wallet, attempt
                )

    async def _new_allocation(
        self,
        principal: Principal,
        github_repo_id: int,
        issue_id: int,
        currency: Currency,
        amount: Decimal,
        recipient_wallet: str,
        attempt: int,
    ) -> TxRef:
        admission = await self.ledger.admit(
            repository_subject(github_repo_id), currency, amount, WindowKind.TRANSFER
        )

        key = allocation_key(github_repo_id, issue_id, currency, attempt)
        allocation = RewardAllocation(
            github_repo_id=github_repo_id,
            issue_id=issue_id,
            currency=currency,
            amount=amount,
            recipient_wallet=recipient_wallet,
            approver_id=principal.user_id,
            attempt=attempt,
            idempotency_key=key,
            status=AllocationStatus.PENDING,
        )
        async with self._session_factory() as session:
            session.add(allocation)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                await self.ledger.release(admission)
                raise TransientError(
                    f"Concurrent allocation for {github_repo_id}#{issue_id}, retry"
                ) from exc
            await session.refresh(allocation)

        try:
            tx = await self.gateway.allocate(
                github_repo_id, issue_id, currency, amount, recipient_wallet, key
            )
        except ChainRejectedError as exc:
            await self._mark(allocation, AllocationStatus.FAILED, error=exc.reason)
            await self.ledger.release(admission)
            raise
        except ChainPendingError as exc:
            if exc.tx_hash:
                async with self._session_factory() as session:
                    await session.execute(
                        update(RewardAllocation)
                        .where(RewardAllocation.id == allocation.id)
                        .values(chain_tx_hash=exc.tx_hash)
                    )
                    await session.commit()
            raise

        await self._mark(allocation, AllocationStatus.CONFIRMED, tx=tx)
        logger.info(
            f"Allocated {amount} {currency.value} for {github_repo_id}#{issue_id} "
            f"to {recipient_wallet} in {tx.tx_hash}"
        )
        return tx

    # Reconciliation

    async def reconcile_allocation(self, allocation: RewardAllocation) -> RewardAllocation:
        """Bring one allocation in line with the chain.

        A pending allocation is promoted to confirmed or failed, or
        resubmitted under its own key if the chain never saw it. A settled
        allocation is only checked: a contradiction raises
        InconsistentStateError and is left for an operator.
        """
        key = allocation.idempotency_key
        remote = await self.gateway.lookup(key)

        if allocation.status != AllocationStatus.PENDING:
            self._check_settled(allocation, remote)
            return allocation

        if remote is None or remote.status == ChainOperationStatus.SUBMITTED:
            try:
                tx = await self.gateway.allocate(
                    allocation.github_repo_id,
                    allocation.issue_id,
                    allocation.currency,
                    allocation.amount,
                    allocation.recipient_wallet,
                    key,
                )
            except ChainPendingError:
                return allocation
            except ChainRejectedError as exc:
                return await self._mark(allocation, AllocationStatus.FAILED, error=exc.reason)
            return await self._mark(allocation, AllocationStatus.CONFIRMED, tx=tx)

        if remote.status == ChainOperationStatus.CONFIRMED and remote.tx is not None:
            if allocation.chain_tx_hash and allocation.chain_tx_hash != remote.tx.tx_hash:
                raise InconsistentStateError(
                    f"Allocation {key} recorded tx {allocation.chain_tx_hash}, "
                    f"chain reports {remote.tx.tx_hash}"
                )
            return await self._mark(allocation, AllocationStatus.CONFIRMED, tx=remote.tx)
        if remote.status == ChainOperationStatus.REJECTED:
            return await self._mark(allocation, AllocationStatus.FAILED, error=remote.reason)
        return allocation

    @staticmethod
    def _check_settled(allocation: RewardAllocation, remote: OperationStatus | None) -> None:
        key = allocation.idempotency_key
        remote_status = remote.status if remote else None
        if allocation.status == AllocationStatus.CONFIRMED:
            if remote_status != ChainOperationStatus.CONFIRMED:
                raise InconsistentStateError(
                    f"Allocation {key} is confirmed locally but the chain reports "
                    f"{remote_status.value if remote_status else 'nothing'}"
                )
            if remote.tx is not None and remote.tx.tx_hash != allocation.chain_tx_hash:
                raise InconsistentStateError(
                    f"Allocation {key} recorded tx {allocation.chain_tx_hash}, "
                    f"chain reports {remote.tx.tx_hash}"
                )
        elif allocation.status == AllocationStatus.FAILED:
            if remote_status == ChainOperationStatus.CONFIRMED:
                raise InconsistentStateError(
                    f"Allocation {key} failed locally but the chain confirmed it"
                )

    async def reconcile_pending(self, limit: int | None = None) -> ReconcileReport:
        """Reconcile the oldest pending allocations and open deposits.

        One failing operation never stops the sweep.
        """
        batch = limit or settings.reconcile_batch_size
        async with self._session_factory() as session:
            result = await session.execute(
                select(RewardAllocation)
                .where(RewardAllocation.status == AllocationStatus.PENDING)
                .order_by(RewardAllocation.created_at)
                .limit(batch)
            )
            allocations = list(result.scalars().all())

            # A deposit with no journal entry was interrupted before submission
            result = await session.execute(
                select(PoolFunding)
                .outerjoin(
                    ChainOperation,
                    ChainOperation.idempotency_key == PoolFunding.idempotency_key,
                )
                .where(
                    PoolFunding.released_at.is_(None),
                    or_(
                        ChainOperation.status.is_(None),
                        ChainOperation.status.in_(
                            [ChainOperationStatus.SUBMITTED, ChainOperationStatus.PENDING]
                        ),
                    ),
                )
                .order_by(PoolFunding.created_at)
                .limit(batch)
            )
            fundings = list(result.scalars().all())

        report = ReconcileReport()
        for allocation in allocations:
            report.checked += 1
            async with self.repo_locks.hold(allocation.github_repo_id):
                try:
                    allocation = await self.reconcile_allocation(allocation)
                except InconsistentStateError as exc:
                    logger.error(f"Operator action required: {exc}")
                    report.inconsistent += 1
                    continue
                except BountyPoolError as exc:
                    logger.warning(
                        f"Could not reconcile allocation {allocation.idempotency_key}: {exc}"
                    )
                    report.errors += 1
                    continue

            if allocation.status == AllocationStatus.CONFIRMED:
                report.confirmed += 1
            elif allocation.status == AllocationStatus.FAILED:
                report.failed += 1
            else:
                report.pending += 1

        for funding in fundings:
            report.checked += 1
            async with self.repo_locks.hold(funding.github_repo_id):
                try:
                    status = await self.reconcile_funding(funding)
                except InconsistentStateError as exc:
                    logger.error(f"Operator action required: {exc}")
                    report.inconsistent += 1
                    continue
                except BountyPoolError as exc:
                    logger.warning(
                        f"Could not reconcile funding {funding.idempotency_key}: {exc}"
                    )
                    report.errors += 1
                    continue

            if status == ChainOperationStatus.CONFIRMED:
                report.confirmed += 1
            elif status == ChainOperationStatus.REJECTED:
                report.failed += 1
            else:
                report.pending += 1

        if report.checked:
            logger.info(
                f"Reconciled {len(allocations)} allocations and {len(fundings)} deposits: "
                f"{report.confirmed} confirmed, {report.failed} failed, {report.pending} pending, "
                f"{report.errors} errors, {report.inconsistent} inconsistent"
            )
        return report

    # Status

    async def funding_status(self, principal: Principal, github_repo_id: int) -> FundingStatus:
        """Ceilings and usage for a repository the caller can see."""
        await self._visible_registration(principal, github_repo_id)

        repo_subject = repository_subject(github_repo_id)
        repository_windows = [
            await self.ledger.status(repo_subject, currency, kind)
            for kind in WindowKind
            for currency in Currency
        ]
        funder_windows = []
        if principal.is_authenticated:
            funder_windows = [
                await self.ledger.status(
                    user_subject(principal.user_id), currency, WindowKind.FUNDING
                )
                for currency in Currency
            ]
        return FundingStatus(github_repo_id, repository_windows, funder_windows)

