from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.time import utcnow

ALLOCATION_FREE = "free"
ALLOCATION_PURCHASED = "purchased"
ALLOCATION_UNLIMITED = "unlimited"
ALLOCATION_KINDS = (ALLOCATION_FREE, ALLOCATION_PURCHASED, ALLOCATION_UNLIMITED)

RECORD_POST = "post"
RECORD_AI_TOOL = "ai_tool"


class UsageRecord(Base):
    """
    One row per created post, or per AI-tool use that is not tied to a post.

    Rows are never rewritten, except that AI-tool charges made for the same
    post accumulate on that post's row (credits_spent, tools_used).
    """

    __tablename__ = "usage_records"
    __table_args__ = (
        Index("ix_usage_records_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    allocation_kind = Column(String, nullable=False)
    record_type = Column(String, nullable=False, default=RECORD_POST)

    # Post content (record_type == "post")
    title = Column(String(300), nullable=True)
    body = Column(Text, nullable=True)
    subreddit = Column(String, nullable=True)
    status = Column(String, nullable=True, default="pending")

    credits_spent = Column(Integer, nullable=False, default=0)
    tools_used = Column(MutableList.as_mutable(JSON), nullable=False, default=list)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="usage_records")
