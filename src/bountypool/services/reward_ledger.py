"""Rolling-window ceilings on funding and reward transfers."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..models import Currency, FundingWindowCounter, WindowKind
from .errors import InvalidRequestError, LimitExceededError, TransientError
from .locks import KeyedLock

logger = logging.getLogger(__name__)

# Compare-and-swap rounds before giving up on a contended counter
_MAX_ATTEMPTS = 5


def repository_subject(github_repo_id: int) -> str:
    return f"repo:{github_repo_id}"


def user_subject(user_id: int) -> str:
    return f"user:{user_id}"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class Admission:
    """An accepted amount, needed to release it again."""

    subject_id: str
    currency: Currency
    kind: WindowKind
    amount: Decimal
    window_start: datetime


@dataclass(frozen=True)
class WindowStatus:
    """Current usage of one window."""

    subject_id: str
    currency: Currency
    kind: WindowKind
    limit: Decimal
    consumed: Decimal
    resets_at: datetime | None

    @property
    def remaining(self) -> Decimal:
        return max(self.limit - self.consumed, Decimal(0))


class RewardLedger:
    """Admits or rejects amounts against per-currency rolling ceilings.

    One counter row exists per (subject, currency, kind). An expired
    window is reset lazily by the next admission. Check-and-increment is
    a single conditional UPDATE, so two admissions can never both pass
    a check only one of them should; a per-key lock additionally keeps
    same-process callers from spinning on each other.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        funding_limits: dict[str, Decimal] | None = None,
        transfer_limits: dict[str, Decimal] | None = None,
        window: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._session_factory = session_factory
        self._limits = {
            WindowKind.FUNDING: funding_limits or settings.funding_daily_limits,
            WindowKind.TRANSFER: transfer_limits or settings.transfer_daily_limits,
        }
        self.window = window or timedelta(seconds=settings.ledger_window_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = KeyedLock()

    def limit_for(self, currency: Currency, kind: WindowKind) -> Decimal:
        try:
            return Decimal(self._limits[kind][currency.value])
        except KeyError:
            # No configured ceiling means the currency is not accepted
            return Decimal(0)

    @staticmethod
    def _counter_query(subject_id: str, currency: Currency, kind: WindowKind):
        return select(
            FundingWindowCounter.id,
            FundingWindowCounter.window_start,
            FundingWindowCounter.amount_consumed,
        ).where(
            FundingWindowCounter.subject_id == subject_id,
            FundingWindowCounter.currency == currency,
            FundingWindowCounter.kind == kind,
        )

    async def admit(
        self,
        subject_id: str,
        currency: Currency,
        amount: Decimal,
        kind: WindowKind,
    ) -> Admission:
        """Consume *amount* from the window or raise LimitExceededError.

        Reaching the ceiling exactly is allowed; exceeding it is not.
        """
        if amount <= 0:
            raise InvalidRequestError("Amount must be positive")

        limit = self.limit_for(currency, kind)

        async with self._locks.hold((subject_id, currency, kind)):
            async with self._session_factory() as session:
                for _ in range(_MAX_ATTEMPTS):
                    admission = await self._try_admit(
                        session, subject_id, currency, amount, kind, limit
                    )
                    if admission is not None:
                        logger.info(
                            f"Admitted {amount} {currency.value} {kind.value} for {subject_id}"
                        )
                        return admission

        raise TransientError(f"Window counter for {subject_id} is contended, retry")

    async def _try_admit(
        self,
        session: AsyncSession,
        subject_id: str,
        currency: Currency,
        amount: Decimal,
        kind: WindowKind,
        limit: Decimal,
    ) -> Admission | None:
        """One compare-and-swap round; None means a concurrent writer won."""
        now = self._clock()
        row = (await session.execute(self._counter_query(subject_id, currency, kind))).first()

        def exceeded(consumed: Decimal, window_start: datetime) -> LimitExceededError:
            logger.info(
                f"Rejected {amount} {currency.value} {kind.value} for {subject_id}: "
                f"{consumed} of {limit} used"
            )
            return LimitExceededError(
                subject_id, currency, kind, limit, consumed, amount, window_start + self.window
            )

        if row is None:
            if amount > limit:
                raise exceeded(Decimal(0), now)
            session.add(
                FundingWindowCounter(
                    subject_id=subject_id,
                    currency=currency,
                    kind=kind,
                    window_start=now,
                    amount_consumed=amount,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return Admission(subject_id, currency, kind, amount, now)

        counter_id, observed_start, consumed = row
        window_start = _as_utc(observed_start)

        if window_start + self.window <= now:
            # Window elapsed: reset and consume in one step
            if amount > limit:
                raise exceeded(Decimal(0), now)
            result = await session.execute(
                update(FundingWindowCounter)
                .where(
                    FundingWindowCounter.id == counter_id,
                    FundingWindowCounter.window_start == observed_start,
                )
                .values(window_start=now, amount_consumed=amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            return Admission(subject_id, currency, kind, amount, now)

        result = await session.execute(
            update(FundingWindowCounter)
            .where(
                FundingWindowCounter.id == counter_id,
                FundingWindowCounter.window_start == observed_start,
                FundingWindowCounter.amount_consumed + amount <= limit,
            )
            .values(amount_consumed=FundingWindowCounter.amount_consumed + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await session.commit()
            return Admission(subject_id, currency, kind, amount, window_start)

        await session.rollback()
        fresh = (await session.execute(self._counter_query(subject_id, currency, kind))).first()
        if fresh is not None and _as_utc(fresh.window_start) == window_start:
            raise exceeded(Decimal(fresh.amount_consumed), window_start)
        return None

    async def release(self, admission: Admission) -> None:
        """Give back an admission whose operation definitely did not happen.

        A window that has since rolled over is left alone.
        """
        async with self._locks.hold((admission.subject_id, admission.currency, admission.kind)):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(FundingWindowCounter)
                    .where(
                        FundingWindowCounter.subject_id == admission.subject_id,
                        FundingWindowCounter.currency == admission.currency,
                        FundingWindowCounter.kind == admission.kind,
                        FundingWindowCounter.window_start == admission.window_start,
                        FundingWindowCounter.amount_consumed >= admission.amount,
                    )
                    .values(amount_consumed=FundingWindowCounter.amount_consumed - admission.amount)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

        if result.rowcount == 1:
            logger.info(
                f"Released {admission.amount} {admission.currency.value} "
                f"{admission.kind.value} for {admission.subject_id}"
            )

    async def status(
        self, subject_id: str, currency: Currency, kind: WindowKind
    ) -> WindowStatus:
        """Usage of the current window (an elapsed window reads as empty)."""
        limit = self.limit_for(currency, kind)
        async with self._session_factory() as session:
            row = (await session.execute(self._counter_query(subject_id, currency, kind))).first()

        if row is None:
            return WindowStatus(subject_id, currency, kind, limit, Decimal(0), None)

        resets_at = _as_utc(row.window_start) + self.window
        if resets_at <= self._clock():
            return WindowStatus(subject_id, currency, kind, limit, Decimal(0), None)
        return WindowStatus(
            subject_id, currency, kind, limit, Decimal(row.amount_consumed), resets_at
        )
