"""Pool funding model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Integer, Numeric, String, func
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .enums import Currency


class PoolFunding(Base):
    """A funder's deposit into a repository pool and the windows it was admitted in.

    The chain outcome lives in the operation journal under the same
    idempotency key; this row is what lets a rejected deposit give its
    admissions back.
    """

    __tablename__ = "pool_fundings"

    idempotency_key: Mapped[str] = mapped_column(String(200), primary_key=True)

    github_repo_id: Mapped[int] = mapped_column(BigInteger, index=True)
    funder_user_id: Mapped[int] = mapped_column(Integer, index=True)
    currency: Mapped[Currency] = mapped_column(SQLEnum(Currency))
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18))

    # Window starts of the two admissions, needed to release them
    repository_window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    funder_window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
