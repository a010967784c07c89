from typing import Optional

from pydantic import BaseModel, Field


class ToolRequest(BaseModel):
    title: str = Field(..., max_length=300)
    body: str = ""
    subreddit: Optional[str] = None
    flair: Optional[str] = None
    post_id: Optional[int] = None  # Attach the charge to an existing post
