from typing import Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from hypemarket.models.user import User


class IdentityService:
    @staticmethod
    async def find_by_id(db: AsyncSession, user_id: UUID) -> Optional[User]:
        """Fresh account state (role, user type, active flag) for capability re-checks."""
        return await db.get(User, user_id, populate_existing=True)
