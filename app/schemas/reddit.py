from typing import List

from pydantic import BaseModel, Field

MAX_BATCH_SUBREDDITS = 10


class SubredditBatchRequest(BaseModel):
    subreddits: List[str] = Field(..., min_length=1, max_length=MAX_BATCH_SUBREDDITS)
