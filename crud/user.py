"""
UserRepository for database operations on User model
"""

from typing import Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select
from database_models import User
from models.subscription import SubscriptionTier
from models.user import UserRole


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve a user by email address.

        Args:
            email: User's email address (case-insensitive search)

        Returns:
            User object if found, None otherwise
        """
        result = await self.db.execute(
            select(User).where(User.email == email.lower())
        )
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def create_user(self, user_data: dict) -> User:
        """
        Create a new user in the database.

        Args:
            user_data: Dictionary containing user data. Must include:
                - email: str
                - hashed_password: str
                Optional:
                - name: str
                - role: UserRole (defaults to USER)
                - is_active: bool (defaults to True)

        Returns:
            Created User object, always on the FREE tier
        """
        user = User(
            email=user_data["email"].lower(),
            hashed_password=user_data["hashed_password"],
            name=user_data.get("name"),
            role=user_data.get("role", UserRole.USER),
            is_active=user_data.get("is_active", True),
            subscription_tier=SubscriptionTier.FREE,
        )
        self.db.add(user)
        await self.db.flush()  # Flush to get the ID without committing
        await self.db.refresh(user)
        return user

    async def update_user(self, user: User, updates: dict) -> User:
        """
        Update user fields.

        Args:
            user: User object to update
            updates: Dictionary of fields to update (e.g., {"name": "Ada"})

        Returns:
            Updated User object
        """
        for key, value in updates.items():
            if hasattr(user, key):
                setattr(user, key, value)

        await self.db.flush()
        await self.db.refresh(user)
        return user

    async def set_subscription_tier(self, user_id: int, tier: SubscriptionTier) -> Optional[User]:
        """Write the denormalized tier; returns None when the user does not exist."""
        user = await self.get_user_by_id(user_id)
        if user is None:
            return None
        if user.subscription_tier != tier:
            user.subscription_tier = tier
            await self.db.flush()
        return user

    async def count_by_tier(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(User.subscription_tier, func.count(User.id)).group_by(User.subscription_tier)
        )
        return {SubscriptionTier(tier).value: count for tier, count in result.all()}
