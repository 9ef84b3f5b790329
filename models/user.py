from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from models.subscription import SubscriptionTier


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class SignupRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class UserOut(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: UserRole = UserRole.USER
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    is_active: bool = True
    created_at: Optional[datetime] = None
