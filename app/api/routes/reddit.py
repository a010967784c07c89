import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies import get_reddit_client
from app.dependencies.auth import verify_session_token
from app.schemas.reddit import SubredditBatchRequest
from app.services.content_tools import PostInput, check_post_viability
from app.services.reddit_client import RedditClient, RedditError, is_valid_subreddit_name

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_session_token)])


def _checked_name(subreddit: str) -> str:
    name = subreddit.strip()
    if name.lower().startswith("r/"):
        name = name[2:]
    if not is_valid_subreddit_name(name):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid subreddit name")
    return name


def _upstream_failed(what: str, e: Exception) -> HTTPException:
    logger.warning("[Reddit] Failed to fetch %s: %s", what, e)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Failed to fetch {what} from Reddit")


@router.get("/rules")
async def get_rules(subreddit: str = Query(...), reddit: RedditClient = Depends(get_reddit_client)):
    name = _checked_name(subreddit)
    try:
        return await reddit.get_rules(name)
    except RedditError as e:
        raise _upstream_failed("rules", e)


@router.get("/flairs")
async def get_flairs(subreddit: str = Query(...), reddit: RedditClient = Depends(get_reddit_client)):
    name = _checked_name(subreddit)
    try:
        return await reddit.get_flairs(name)
    except RedditError as e:
        raise _upstream_failed("flairs", e)


@router.get("/post-requirements")
async def get_post_requirements(subreddit: str = Query(...), reddit: RedditClient = Depends(get_reddit_client)):
    name = _checked_name(subreddit)
    try:
        return await reddit.get_post_requirements(name)
    except RedditError as e:
        raise _upstream_failed("post requirements", e)


@router.get("/subreddit-info")
async def get_subreddit_info(subreddit: str = Query(...), reddit: RedditClient = Depends(get_reddit_client)):
    name = _checked_name(subreddit)
    try:
        info = await reddit.get_subreddit_info(name)
    except RedditError as e:
        raise _upstream_failed("subreddit information", e)
    if info is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subreddit not found")
    return info


@router.get("/subreddits")
async def list_subreddits(
    query: Optional[str] = Query(None, max_length=100),
    limit: int = Query(25, ge=1, le=100),
    reddit: RedditClient = Depends(get_reddit_client),
):
    try:
        return await reddit.list_subreddits(query.strip() if query else None, limit)
    except RedditError as e:
        raise _upstream_failed("subreddits", e)


@router.get("/check-post-viability")
async def check_viability(
    subreddit: str = Query(...),
    title: str = Query(..., max_length=300),
    body: str = Query("", max_length=40000),
    reddit: RedditClient = Depends(get_reddit_client),
):
    """Free rule-conflict check of a draft against the subreddit's own rules."""
    name = _checked_name(subreddit)
    if not title.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
    try:
        rules = await reddit.get_rules(name)
    except RedditError as e:
        raise _upstream_failed("rules", e)

    analysis = check_post_viability(PostInput(title=title, body=body, subreddit=name), rules)
    return {
        "subreddit": name,
        "analysis": analysis,
        "rules_count": len(rules),
        "message": "Post appears to comply with subreddit rules"
        if analysis["can_post"]
        else "Post may violate subreddit rules. Consider reviewing the suggestions.",
    }


async def _subreddit_bundle(reddit: RedditClient, name: str) -> dict:
    info, rules, flairs, requirements = await asyncio.gather(
        reddit.get_subreddit_info(name),
        reddit.get_rules(name),
        reddit.get_flairs(name),
        reddit.get_post_requirements(name),
        return_exceptions=True,
    )
    for part, value in (("info", info), ("rules", rules), ("flairs", flairs), ("requirements", requirements)):
        if isinstance(value, Exception):
            logger.warning("[Reddit] batch %s for r/%s failed: %s", part, name, value)
    return {
        "info": None if isinstance(info, Exception) else info,
        "rules": [] if isinstance(rules, Exception) else rules,
        "flairs": [] if isinstance(flairs, Exception) else flairs,
        "requirements": None if isinstance(requirements, Exception) else requirements,
    }


@router.post("/batch")
async def batch(payload: SubredditBatchRequest, reddit: RedditClient = Depends(get_reddit_client)):
    """Info, rules, flairs and requirements for up to ten subreddits at once."""
    names = []
    for subreddit in payload.subreddits:
        name = _checked_name(subreddit)
        if name not in names:
            names.append(name)
    bundles = await asyncio.gather(*(_subreddit_bundle(reddit, name) for name in names))
    return dict(zip(names, bundles))
