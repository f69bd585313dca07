"""Repository registration model."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RepositoryRegistration(Base):
    """A repository registered for bounties by one platform user."""

    __tablename__ = "repository_registrations"

    id: Mapped[int] = mapped_column(primary_key=True)

    # GitHub's numeric id; immutable once written
    github_repo_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(255), index=True)  # "owner/repo"

    registering_user_id: Mapped[int] = mapped_column(Integer, index=True)

    # GitHub installation id, may be re-linked
    installation_id: Mapped[int] = mapped_column(BigInteger, index=True)

    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Timestamps
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.full_name.split("/", 1)[1]
