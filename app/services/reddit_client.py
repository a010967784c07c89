"""
Read-only Reddit metadata client (rules, flairs, post requirements, search).

Uses application-only OAuth (client_credentials) when credentials are set and
the public JSON endpoints otherwise.
"""
import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
OAUTH_BASE = "https://oauth.reddit.com"
PUBLIC_BASE = "https://www.reddit.com"

# Refresh the cached token this many seconds before it expires
TOKEN_REFRESH_MARGIN = 60

SUBREDDIT_NAME_RE = re.compile(r"^[A-Za-z0-9_]{2,21}$")


class RedditError(Exception):
    pass


def is_valid_subreddit_name(name: Optional[str]) -> bool:
    return bool(name) and SUBREDDIT_NAME_RE.match(name) is not None


def _flair(flair_id: str, text: str, background: str, text_color: str = "dark") -> Dict[str, str]:
    return {
        "id": flair_id,
        "text": text,
        "css_class": "",
        "text_color": text_color,
        "background_color": background,
    }


def generic_flairs(subreddit: str) -> List[Dict[str, str]]:
    """Flairs to offer when a subreddit exposes none."""
    sub = subreddit.lower()
    flairs = [
        _flair("discussion", "Discussion", "#2196f3"),
        _flair("question", "Question", "#ff9800"),
        _flair("help", "Help", "#f44336"),
        _flair("news", "News", "#4caf50"),
        _flair("showcase", "Showcase", "#9c27b0"),
    ]
    if "programming" in sub or "coding" in sub or "dev" in sub:
        flairs.append(_flair("tutorial", "Tutorial", "#00bcd4"))
        flairs.append(_flair("project", "Project", "#ff5722"))
    if "business" in sub or "entrepreneur" in sub or "startup" in sub:
        flairs.append(_flair("success-story", "Success Story", "#007373", "light"))
        flairs.append(_flair("advice", "Advice", "#ff9800"))
    return flairs


class RedditClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        user_agent: str,
        timeout: float = 12.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.user_agent = user_agent
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": user_agent},
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def uses_oauth(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            try:
                r = await self._client.post(
                    TOKEN_URL,
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                )
            except httpx.RequestError as e:
                raise RedditError(f"Reddit token request failed: {e}") from e
            if r.status_code != 200:
                raise RedditError(f"Reddit token request failed {r.status_code}: {r.text[:200]}")
            data = r.json()
            token = data.get("access_token")
            if not token:
                raise RedditError("No access_token in Reddit response")
            expires_in = int(data.get("expires_in") or 3600)
            self._token = token
            self._token_expires_at = time.monotonic() + expires_in - TOKEN_REFRESH_MARGIN
            logger.info("[Reddit] Obtained app token, expires in %ss", expires_in)
            return token

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        if self.uses_oauth:
            token = await self._access_token()
            url = f"{OAUTH_BASE}{path}"
            headers = {"Authorization": f"Bearer {token}"}
        else:
            url = f"{PUBLIC_BASE}{path}.json"
            headers = {}
        try:
            return await self._client.get(url, params=params, headers=headers)
        except httpx.RequestError as e:
            raise RedditError(f"Reddit request failed: {e}") from e

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        r = await self._get(path, params)
        if r.status_code != 200:
            raise RedditError(f"Reddit returned {r.status_code} for {path}")
        try:
            return r.json()
        except ValueError as e:
            raise RedditError(f"Reddit returned invalid JSON for {path}") from e

    async def get_rules(self, subreddit: str) -> List[Dict[str, Any]]:
        data = await self._get_json(f"/r/{subreddit}/about/rules")
        rules = data.get("rules") if isinstance(data, dict) else None
        if not isinstance(rules, list):
            return []
        return [
            {
                "kind": rule.get("kind") or "all",
                "short_name": rule.get("short_name") or "Rule",
                "description": rule.get("description") or "",
                "priority": rule.get("priority") or 0,
                "violation_reason": rule.get("violation_reason") or "",
            }
            for rule in rules
        ]

    async def get_flairs(self, subreddit: str) -> List[Dict[str, Any]]:
        r = await self._get(f"/r/{subreddit}/api/link_flair_v2")
        flairs: List[Dict[str, Any]] = []
        if r.status_code == 200:
            try:
                data = r.json()
            except ValueError:
                data = []
            for item in data if isinstance(data, list) else []:
                text = item.get("text")
                if not text:
                    continue
                flairs.append(
                    {
                        "id": item.get("id") or text.lower().replace(" ", "-"),
                        "text": text,
                        "css_class": item.get("css_class") or "",
                        "text_color": item.get("text_color") or "dark",
                        "background_color": item.get("background_color") or "#dadada",
                    }
                )
        elif r.status_code not in (403, 404):
            raise RedditError(f"Reddit returned {r.status_code} for flairs")
        if not flairs:
            logger.info("[Reddit] r/%s exposes no flairs; using generic ones", subreddit)
            return generic_flairs(subreddit)
        return flairs

    async def get_post_requirements(self, subreddit: str) -> Optional[Dict[str, Any]]:
        r = await self._get(f"/api/v1/{subreddit}/post_requirements")
        if r.status_code in (403, 404):
            return None
        if r.status_code != 200:
            raise RedditError(f"Reddit returned {r.status_code} for post requirements")
        data = r.json() or {}
        return {
            "title_required": data.get("title_required") is not False,
            "title_text_max_length": data.get("title_text_max_length") or 300,
            "title_text_min_length": data.get("title_text_min_length") or 1,
            "body_restriction_policy": data.get("body_restriction_policy") or "none",
            "domain_blacklist": data.get("domain_blacklist") or [],
            "domain_whitelist": data.get("domain_whitelist") or [],
            "body_blacklisted_strings": data.get("body_blacklisted_strings") or [],
            "body_required_strings": data.get("body_required_strings") or [],
            "title_blacklisted_strings": data.get("title_blacklisted_strings") or [],
            "title_required_strings": data.get("title_required_strings") or [],
            "is_flair_required": data.get("is_flair_required") is True,
        }

    async def get_subreddit_info(self, subreddit: str) -> Optional[Dict[str, Any]]:
        r = await self._get(f"/r/{subreddit}/about")
        if r.status_code == 404:
            return None
        if r.status_code != 200:
            raise RedditError(f"Reddit returned {r.status_code} for subreddit info")
        about = (r.json() or {}).get("data")
        if not about or not about.get("display_name"):
            return None
        return {
            "display_name": about["display_name"],
            "public_description": about.get("public_description") or "",
            "subscribers": about.get("subscribers") or 0,
            "over18": bool(about.get("over18")),
            "url": f"https://reddit.com/r/{about['display_name']}",
        }

    async def list_subreddits(self, query: Optional[str] = None, limit: int = 25) -> List[Dict[str, Any]]:
        if query:
            data = await self._get_json(
                "/subreddits/search", {"q": query, "limit": limit, "sort": "relevance"}
            )
        else:
            data = await self._get_json("/subreddits/popular", {"limit": limit})
        children = (data.get("data") or {}).get("children") if isinstance(data, dict) else None
        if children is None:
            raise RedditError("Invalid response format from Reddit")
        return [
            {
                "id": child["data"].get("id"),
                "display_name": child["data"].get("display_name"),
                "public_description": child["data"].get("public_description") or "",
                "subscribers": child["data"].get("subscribers") or 0,
            }
            for child in children
            if child.get("data")
        ]
