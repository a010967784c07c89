from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class UserResponse(BaseModel):
    id: int
    external_id: str
    email: str
    full_name: Optional[str] = None
    is_admin: bool
    free_posts_used: int
    purchased_credits: int
    unlimited_until: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RoleResponse(BaseModel):
    is_admin: bool
    role: str


class UserSyncRequest(BaseModel):
    full_name: Optional[str] = None  # Overrides the name claim when present


class SetAdminRequest(BaseModel):
    email: Optional[str] = None
    user_id: Optional[int] = None
    is_admin: bool = True
