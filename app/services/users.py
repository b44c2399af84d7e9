"""
User Service - Mirrors identity provider claims into the users table.
"""

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import User
from app.db.queries import utc_now
from app.models.domain import UserIdentity

logger = get_logger(__name__)


class UserService:
    """Upsert of local user records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, identity: UserIdentity) -> User:
        """
        Insert the user or refresh their profile fields from the latest claims.

        Claims the provider didn't send keep their stored value.
        """
        now = utc_now()
        profile = {
            "email": identity.email,
            "first_name": identity.first_name,
            "last_name": identity.last_name,
            "profile_image_url": identity.profile_image_url,
        }
        updates = {key: value for key, value in profile.items() if value is not None}
        updates["updated_at"] = now

        stmt = (
            pg_insert(User)
            .values(id=identity.user_id, created_at=now, updated_at=now, **profile)
            .on_conflict_do_update(index_elements=[User.id], set_=updates)
            .returning(User)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        user = result.scalar_one()
        await self.session.commit()

        logger.debug("user_upserted", user_id=user.id)
        return user
