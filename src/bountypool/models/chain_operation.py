"""Journal of idempotent chain gateway calls."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String, Text, func
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .enums import ChainOperationStatus


class ChainOperation(Base):
    """Outcome of one mutating chain call, keyed by its idempotency key."""

    __tablename__ = "chain_operations"

    idempotency_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    operation: Mapped[str] = mapped_column(String(20))  # "fund" or "allocate"

    # Canonical request parameters; a key may not be reused with others
    fingerprint: Mapped[str] = mapped_column(String(64))

    status: Mapped[ChainOperationStatus] = mapped_column(SQLEnum(ChainOperationStatus))
    tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
