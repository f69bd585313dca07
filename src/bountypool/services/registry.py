"""Persistent mapping of repositories to registrants and installations."""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Installation, InstallationScope, RepositoryRegistration

logger = logging.getLogger(__name__)


class RepositoryRegistry:
    """Store for RepositoryRegistration rows and the installation mirror."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, github_repo_id: int) -> RepositoryRegistration | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RepositoryRegistration).where(
                    RepositoryRegistration.github_repo_id == github_repo_id
                )
            )
            return result.scalar_one_or_none()

    async def find_by_full_name(self, full_name: str) -> RepositoryRegistration | None:
        """Registration by owner/name, compared the way GitHub does (case-insensitive)."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RepositoryRegistration).where(
                    func.lower(RepositoryRegistration.full_name) == full_name.lower()
                )
            )
            return result.scalars().first()

    async def list_all(self, active_only: bool = True) -> list[RepositoryRegistration]:
        stmt = select(RepositoryRegistration).order_by(RepositoryRegistration.registered_at.desc())
        if active_only:
            stmt = stmt.where(RepositoryRegistration.is_active.is_(True))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_public(self) -> list[RepositoryRegistration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RepositoryRegistration)
                .where(
                    RepositoryRegistration.is_private.is_(False),
                    RepositoryRegistration.is_active.is_(True),
                )
                .order_by(RepositoryRegistration.registered_at.desc())
            )
            return list(result.scalars().all())

    async def list_by_user(self, user_id: int) -> list[RepositoryRegistration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RepositoryRegistration)
                .where(RepositoryRegistration.registering_user_id == user_id)
                .order_by(RepositoryRegistration.registered_at.desc())
            )
            return list(result.scalars().all())

    async def upsert(
        self,
        github_repo_id: int,
        full_name: str,
        registering_user_id: int,
        installation_id: int,
        is_private: bool,
    ) -> RepositoryRegistration:
        """Create the registration, or refresh the mutable fields of an existing one.

        The repo id never changes; name, installation (re-link), privacy
        and registrant may. Safe to repeat.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(RepositoryRegistration).where(
                    RepositoryRegistration.github_repo_id == github_repo_id
                )
            )
            registration = result.scalar_one_or_none()

            if registration is None:
                registration = RepositoryRegistration(
                    github_repo_id=github_repo_id,
                    full_name=full_name,
                    registering_user_id=registering_user_id,
                    installation_id=installation_id,
                    is_private=is_private,
                    is_active=True,
                )
                session.add(registration)
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost a race with another writer; fall through to update
                    await session.rollback()
                    return await self.upsert(
                        github_repo_id, full_name, registering_user_id, installation_id, is_private
                    )
                logger.info(f"Registered {full_name} ({github_repo_id}) for user {registering_user_id}")
            else:
                if registration.installation_id != installation_id:
                    logger.info(
                        f"Re-linking {full_name} from installation {registration.installation_id} "
                        f"to {installation_id}"
                    )
                registration.full_name = full_name
                registration.registering_user_id = registering_user_id
                registration.installation_id = installation_id
                registration.is_private = is_private
                registration.updated_at = datetime.now(timezone.utc)
                await session.commit()

            await session.refresh(registration)
            return registration

    async def set_active(self, github_repo_id: int, is_active: bool) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(RepositoryRegistration)
                .where(RepositoryRegistration.github_repo_id == github_repo_id)
                .values(is_active=is_active, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def deactivate_for_installation(
        self,
        installation_id: int,
        github_repo_ids: list[int] | None = None,
    ) -> int:
        """Deactivate registrations linked to an installation (all or the given repos)."""
        stmt = update(RepositoryRegistration).where(
            RepositoryRegistration.installation_id == installation_id
        )
        if github_repo_ids is not None:
            stmt = stmt.where(RepositoryRegistration.github_repo_id.in_(github_repo_ids))
        async with self._session_factory() as session:
            result = await session.execute(
                stmt.values(is_active=False, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info(f"Deactivated {result.rowcount} registrations of installation {installation_id}")
        return result.rowcount

    async def record_installation(
        self,
        github_installation_id: int,
        owner_login: str,
        owner_type: str,
        scope: InstallationScope,
        is_active: bool = True,
    ) -> None:
        """Upsert the local mirror of an installation."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Installation).where(
                    Installation.github_installation_id == github_installation_id
                )
            )
            installation = result.scalar_one_or_none()
            if installation is None:
                session.add(
                    Installation(
                        github_installation_id=github_installation_id,
                        owner_login=owner_login,
                        owner_type=owner_type,
                        scope=scope,
                        is_active=is_active,
                    )
                )
            else:
                installation.owner_login = owner_login
                installation.owner_type = owner_type
                installation.scope = scope
                installation.is_active = is_active
                if is_active:
                    installation.suspended_at = None
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()

    async def set_installation_state(
        self,
        github_installation_id: int,
        is_active: bool,
        delete: bool = False,
    ) -> None:
        """Mirror suspend/unsuspend/delete of an installation."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Installation).where(
                    Installation.github_installation_id == github_installation_id
                )
            )
            installation = result.scalar_one_or_none()
            if installation is None:
                return
            if delete:
                await session.delete(installation)
            else:
                installation.is_active = is_active
                installation.suspended_at = None if is_active else datetime.now(timezone.utc)
            await session.commit()
