from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class CreatePostRequest(BaseModel):
    title: str = Field(..., max_length=300)
    content: str
    subreddit: str

    @field_validator("title", "content", "subreddit")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class CreatePostResponse(BaseModel):
    success: bool
    post_id: int
    allocation_kind: str


class PostLimitsResponse(BaseModel):
    can_create: bool
    allocation_kind: Optional[str] = None
    remaining: Optional[int] = None  # None while unlimited
    reason: str
    free_posts_remaining: int
    purchased_posts_remaining: int
    purchased_credits: int
    unlimited_until: Optional[datetime] = None
    is_admin: bool
    posts_this_month: int


class PostResponse(BaseModel):
    id: int
    title: Optional[str] = None
    body: Optional[str] = None
    subreddit: Optional[str] = None
    status: Optional[str] = None
    allocation_kind: str
    credits_spent: int
    tools_used: List[str] = []
    created_at: datetime

    class Config:
        from_attributes = True
