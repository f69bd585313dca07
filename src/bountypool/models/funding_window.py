"""Rolling-window spend counter model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, UniqueConstraint, func
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .enums import Currency, WindowKind


class FundingWindowCounter(Base):
    """Amount consumed by one subject in the current window."""

    __tablename__ = "funding_window_counters"
    __table_args__ = (
        UniqueConstraint(
            "subject_id",
            "currency",
            "kind",
            name="uq_subject_currency_kind",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    # "repo:<github id>" or "user:<user id>"
    subject_id: Mapped[str] = mapped_column(String(100), index=True)
    currency: Mapped[Currency] = mapped_column(SQLEnum(Currency))
    kind: Mapped[WindowKind] = mapped_column(SQLEnum(WindowKind))

    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    amount_consumed: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=Decimal(0))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
