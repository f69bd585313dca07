"""Reward allocation model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Integer, Numeric, String, Text, UniqueConstraint, func
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .enums import AllocationStatus, Currency


class RewardAllocation(Base):
    """A payout of an issue bounty to a contributor wallet."""

    __tablename__ = "reward_allocations"
    __table_args__ = (
        UniqueConstraint(
            "github_repo_id",
            "issue_id",
            "currency",
            "attempt",
            name="uq_allocation_attempt",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    github_repo_id: Mapped[int] = mapped_column(BigInteger, index=True)
    issue_id: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[Currency] = mapped_column(SQLEnum(Currency))
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18))
    recipient_wallet: Mapped[str] = mapped_column(String(64))
    approver_id: Mapped[int] = mapped_column(Integer)

    # Failed attempts are terminal; a retry is a new row with attempt + 1
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    idempotency_key: Mapped[str] = mapped_column(String(200), unique=True, index=True)

    status: Mapped[AllocationStatus] = mapped_column(
        SQLEnum(AllocationStatus),
        default=AllocationStatus.PENDING,
        index=True,
    )
    chain_tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
