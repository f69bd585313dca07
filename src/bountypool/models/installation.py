"""GitHub App installation model."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, String, func
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .enums import InstallationScope


class Installation(Base):
    """Local mirror of a GitHub App installation.

    GitHub owns installations; this row is refreshed from webhooks and
    successful resolutions and is never used to grant access on its own.
    """

    __tablename__ = "installations"

    id: Mapped[int] = mapped_column(primary_key=True)
    github_installation_id: Mapped[int] = mapped_column(
        BigInteger,
        unique=True,
        index=True,
    )

    # Owner info (org or user)
    owner_type: Mapped[str] = mapped_column(String(20))  # "Organization" or "User"
    owner_login: Mapped[str] = mapped_column(String(255), index=True)
    scope: Mapped[InstallationScope] = mapped_column(SQLEnum(InstallationScope))

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    suspended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
