"""
Paid AI tools for drafting a Reddit post.

Each call is charged first (committed), then the model is asked without any
database lock held. If the model fails, the local analyzer answers instead,
unless AI_REFUND_ON_FAILURE is set, in which case the charge is refunded and
the call fails with 503.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.dependencies import get_app_settings, get_gemini_client, get_reddit_client
from app.core.config import Settings
from app.core.credit_plans import get_tool_cost
from app.core.errors import UpstreamUnavailable, ValidationError
from app.db.session import get_db
from app.dependencies.auth import get_current_user
from app.models.user import User
from app.schemas.tools import ToolRequest
from app.services import content_tools, ledger
from app.services.gemini_client import GeminiClient, GeminiError
from app.services.reddit_client import RedditClient, RedditError, is_valid_subreddit_name

logger = logging.getLogger(__name__)

router = APIRouter()


async def _subreddit_context(tool: str, subreddit: Optional[str], reddit: RedditClient) -> Optional[List[Dict[str, Any]]]:
    """Rules or flairs that sharpen the prompt. Missing context never fails the call."""
    if not subreddit:
        return None
    try:
        if tool == content_tools.CHECK_RULES:
            return await reddit.get_rules(subreddit)
        if tool == content_tools.SUGGEST_FLAIRS:
            return await reddit.get_flairs(subreddit)
    except RedditError as e:
        logger.info("[Tools] r/%s context unavailable for %s: %s", subreddit, tool, e)
    return None


async def run_tool(
    tool: str,
    payload: ToolRequest,
    db: Session,
    user: User,
    settings: Settings,
    gemini: GeminiClient,
    reddit: RedditClient,
) -> Dict[str, Any]:
    if payload.subreddit and not is_valid_subreddit_name(payload.subreddit):
        raise ValidationError("Invalid subreddit name")
    if not payload.title.strip():
        raise ValidationError("Title is required")

    post = content_tools.PostInput(
        title=payload.title,
        body=payload.body or "",
        subreddit=payload.subreddit,
        flair=payload.flair,
    )
    definition = content_tools.TOOLS[tool]

    spend = ledger.spend_ai_tool_credits(
        db, user.id, tool, get_tool_cost(tool), usage_record_id=payload.post_id
    )

    args: list = [post]
    if tool in (content_tools.CHECK_RULES, content_tools.SUGGEST_FLAIRS):
        args.append(await _subreddit_context(tool, payload.subreddit, reddit))

    try:
        text = await gemini.generate(definition.prompt(*args))
        answer = content_tools.parse_model_json(text, definition.result_key)
        if answer is None:
            raise GeminiError("Model answer was not the expected JSON")
        result = content_tools.merge_model_answer(tool, post, answer)
        source = "ai"
    except GeminiError as e:
        logger.warning("[Tools] %s for user %s: model unavailable (%s)", tool, user.id, e)
        if settings.AI_REFUND_ON_FAILURE:
            ledger.refund_ai_tool_credits(db, user.id, spend.charged, spend.usage_record_id)
            raise UpstreamUnavailable()
        result = definition.analyze(*args)
        source = "fallback"

    result.update({
        "tool": tool,
        "source": source,
        "credits_charged": spend.charged,
        "credits_remaining": spend.new_balance,
    })
    return result


@router.post("/check-rules")
async def check_rules(
    payload: ToolRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
    gemini: GeminiClient = Depends(get_gemini_client),
    reddit: RedditClient = Depends(get_reddit_client),
):
    return await run_tool(content_tools.CHECK_RULES, payload, db, user, settings, gemini, reddit)


@router.post("/detect-anomalies")
async def detect_anomalies(
    payload: ToolRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
    gemini: GeminiClient = Depends(get_gemini_client),
    reddit: RedditClient = Depends(get_reddit_client),
):
    return await run_tool(content_tools.DETECT_ANOMALIES, payload, db, user, settings, gemini, reddit)


@router.post("/find-subreddits")
async def find_subreddits(
    payload: ToolRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
    gemini: GeminiClient = Depends(get_gemini_client),
    reddit: RedditClient = Depends(get_reddit_client),
):
    return await run_tool(content_tools.FIND_SUBREDDITS, payload, db, user, settings, gemini, reddit)


@router.post("/suggest-flairs")
async def suggest_flairs(
    payload: ToolRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
    gemini: GeminiClient = Depends(get_gemini_client),
    reddit: RedditClient = Depends(get_reddit_client),
):
    return await run_tool(content_tools.SUGGEST_FLAIRS, payload, db, user, settings, gemini, reddit)
