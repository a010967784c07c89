"""
Post analysis tools.

Each tool has a Gemini prompt and a deterministic keyword/regex analyzer.
The analyzer answers whenever the model is unavailable or its answer cannot
be parsed, so a charged tool call always returns something useful.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

CHECK_RULES = "check_rules"
DETECT_ANOMALIES = "detect_anomalies"
FIND_SUBREDDITS = "find_subreddits"
SUGGEST_FLAIRS = "suggest_flairs"

URL_RE = re.compile(r"https?://[^\s]+")
SHORTENER_DOMAINS = ("bit.ly", "tinyurl.com", "goo.gl", "t.co")
SELF_PROMO_PHRASES = ("my channel", "my blog", "my website", "check out", "subscribe", "follow me")
SPAM_PATTERNS = (
    re.compile(r"free\s+(money|cash|bitcoin)", re.IGNORECASE),
    re.compile(r"click\s+here", re.IGNORECASE),
    re.compile(r"limited\s+time", re.IGNORECASE),
    re.compile(r"act\s+now", re.IGNORECASE),
)


@dataclass
class PostInput:
    title: str
    body: str
    subreddit: Optional[str] = None
    flair: Optional[str] = None


# ---------------------------------------------------------------------------
# Deterministic analyzers
# ---------------------------------------------------------------------------

def check_rules(post: PostInput, rules: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    title, body = post.title or "", post.body or ""
    violations: List[str] = []

    if len(title) < 10:
        violations.append("Title too short (minimum 10 characters)")
    if len(title) > 300:
        violations.append("Title too long (maximum 300 characters)")
    if len(body) < 20:
        violations.append("Post body too short (minimum 20 characters)")
    if len(body) > 40000:
        violations.append("Post body too long (maximum 40,000 characters)")

    lowered = title.lower()
    if "buy" in lowered or "sell" in lowered:
        violations.append("Title contains commercial language - may violate spam rules")

    if title:
        caps_ratio = sum(1 for ch in title if "A" <= ch <= "Z") / len(title)
        if caps_ratio > 0.7:
            violations.append("Title has too many capital letters - may be considered shouting")

    if URL_RE.search(body) and "reddit.com" not in body:
        violations.append("External links detected - ensure they're relevant and not spam")

    return {
        "violations": violations,
        "checked": True,
        "subreddit": post.subreddit,
        "rules_considered": len(rules or []),
    }


# (rule name, rule wording that makes it strict, post phrases that trip it, suggestion)
RULE_CONFLICTS = (
    (
        "Self-Promotion/Advertising",
        (
            "no self promotion", "no self-promotion", "no promotion", "no promotional",
            "no advertising", "no advertisements", "no ads", "no spam", "no commercial",
            "no business", "no marketing", "no selling", "no affiliate", "no referral",
            "no sponsored", "no paid content",
        ),
        (
            "check out", "my new", "my app", "my product", "my service", "my website",
            "my business", "my company", "my startup", "my brand", "download", "sign up",
            "subscribe", "buy now", "try it", "promo", "discount", "limited time",
            "free trial", "affiliate", "referral", "make money", "sponsored",
        ),
        "Consider posting in subreddits that allow self-promotion or focus on discussion rather than promotion",
    ),
    (
        "Personal Information",
        (
            "no personal information", "no doxxing", "no personal details",
            "no private information", "no identifying information",
        ),
        (
            "my name is", "my email is", "my phone is", "my address is", "my instagram",
            "my twitter", "contact me at", "dm me", "message me", "email me", "call me", "text me",
        ),
        "Remove personal contact information and use Reddit's messaging system instead",
    ),
    (
        "Spam/Karma Farming",
        (
            "no spam", "no repetitive posts", "no duplicate content", "no reposts",
            "no low effort", "no karma farming",
        ),
        ("upvote", "downvote", "karma", "vote for me"),
        "Focus on providing valuable content rather than asking for votes",
    ),
)


def check_post_viability(post: PostInput, rules: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """
    Match a post against a subreddit's own rules.

    A rule conflicts when its wording forbids a kind of post and the post
    reads like that kind. The generic checks from check_rules are reported
    alongside.
    """
    content = f"{post.title or ''} {post.body or ''}".lower()
    conflicting: List[str] = []
    suggestions: List[str] = []

    for rule in rules or []:
        rule_text = f"{rule.get('short_name') or ''} {rule.get('description') or ''}".lower()
        for _name, strict_words, indicators, suggestion in RULE_CONFLICTS:
            if not any(word in rule_text for word in strict_words):
                continue
            if any(indicator in content for indicator in indicators):
                name = rule.get("short_name") or "Rule"
                if name not in conflicting:
                    conflicting.append(name)
                if suggestion not in suggestions:
                    suggestions.append(suggestion)

    can_post = not conflicting
    return {
        "can_post": can_post,
        "reason": "Post appears to comply with subreddit rules"
        if can_post
        else f"Post may violate {len(conflicting)} rule(s)",
        "conflicting_rules": conflicting,
        "suggestions": suggestions,
        "violations": check_rules(post, rules)["violations"],
    }


def detect_anomalies(post: PostInput) -> Dict[str, Any]:
    content = f"{post.title or ''} {post.body or ''}"
    anomalies: List[Dict[str, str]] = []

    counts: Dict[str, int] = {}
    for word in content.lower().split():
        counts[word] = counts.get(word, 0) + 1
    repeated = [word for word, count in counts.items() if count > 5 and len(word) > 3]
    if repeated:
        anomalies.append({
            "type": "Repetition",
            "description": f"Excessive repetition of words: {', '.join(repeated)}",
            "severity": "medium",
        })

    links = URL_RE.findall(content)
    if len(links) > 3:
        anomalies.append({
            "type": "Link Spam",
            "description": f"Too many links detected ({len(links)}). Consider reducing to 1-2 relevant links.",
            "severity": "high",
        })
    if any(domain in link for link in links for domain in SHORTENER_DOMAINS):
        anomalies.append({
            "type": "Suspicious Links",
            "description": "Contains shortened or suspicious links that may be flagged as spam",
            "severity": "high",
        })

    if content.count("!") > 5:
        anomalies.append({
            "type": "Excessive Punctuation",
            "description": "Too many exclamation marks - may appear spammy or unprofessional",
            "severity": "low",
        })

    caps_words = [
        word for word in content.split()
        if len(word) > 3 and word == word.upper() and re.search(r"[A-Z]", word)
    ]
    if len(caps_words) > 2:
        anomalies.append({
            "type": "Excessive Caps",
            "description": f"Too many words in all caps: {', '.join(caps_words)}",
            "severity": "medium",
        })

    lowered = content.lower()
    if any(phrase in lowered for phrase in SELF_PROMO_PHRASES):
        anomalies.append({
            "type": "Self-Promotion",
            "description": "Content appears to be self-promotional - ensure it follows subreddit rules",
            "severity": "medium",
        })

    if any(pattern.search(content) for pattern in SPAM_PATTERNS):
        anomalies.append({
            "type": "Spam Patterns",
            "description": "Content contains patterns commonly associated with spam",
            "severity": "high",
        })

    return {"anomalies": anomalies, "analyzed": True, "subreddit": post.subreddit}


_TOPIC_SUBREDDITS = (
    (("programming", "code", "developer"), (
        ("programming", 4200000, "Programming and development content"),
        ("webdev", 850000, "Web development focused"),
    )),
    (("game", "gaming", "play"), (
        ("gaming", 38000000, "General gaming discussion"),
        ("pcgaming", 3200000, "PC gaming specific"),
    )),
    (("question", "help", "advice"), (
        ("AskReddit", 45000000, "General questions and discussion"),
        ("NoStupidQuestions", 4200000, "Safe space for any questions"),
    )),
    (("news", "update", "breaking"), (
        ("worldnews", 32000000, "International news and events"),
        ("news", 18000000, "General news discussion"),
    )),
)

_DEFAULT_SUBREDDITS = (
    ("mildlyinteresting", 19000000, "Interesting content that might fit"),
    ("todayilearned", 30000000, "Educational or informative content"),
)


def find_subreddits(post: PostInput) -> Dict[str, Any]:
    content = f"{post.title or ''} {post.body or ''}".lower()
    alternatives: List[Dict[str, Any]] = []
    for keywords, subreddits in _TOPIC_SUBREDDITS:
        if any(keyword in content for keyword in keywords):
            alternatives.extend(
                {"name": name, "subscribers": subscribers, "reason": reason}
                for name, subscribers, reason in subreddits
            )
    if not alternatives:
        alternatives = [
            {"name": name, "subscribers": subscribers, "reason": reason}
            for name, subscribers, reason in _DEFAULT_SUBREDDITS
        ]
    return {"alternatives": alternatives, "current_subreddit": post.subreddit, "analyzed": True}


_FLAIR_TABLES: Dict[str, List[tuple]] = {
    "programming": [
        ("Help", 85, "Seeking programming help"),
        ("Discussion", 70, "General programming discussion"),
        ("Showcase", 60, "Showing off code or projects"),
        ("Tutorial", 55, "Educational content"),
    ],
    "webdev": [
        ("Question", 90, "Web development questions"),
        ("Showcase", 75, "Project showcase"),
        ("Tutorial", 65, "Educational content"),
        ("Career", 50, "Career-related discussion"),
    ],
    "gaming": [
        ("Discussion", 80, "Gaming discussion"),
        ("News", 70, "Gaming news"),
        ("Screenshot", 60, "Game screenshots"),
        ("Question", 55, "Gaming questions"),
    ],
    "AskReddit": [
        ("Serious", 85, "Serious discussion"),
        ("NSFW", 70, "Adult content"),
        ("Funny", 60, "Humorous content"),
        ("Advice", 55, "Seeking advice"),
    ],
    "default": [
        ("Discussion", 80, "General discussion"),
        ("Question", 75, "Asking a question"),
        ("News", 60, "News or updates"),
        ("Meta", 50, "Meta discussion"),
    ],
}

# (content keywords, flair text fragments, boost)
_FLAIR_BOOSTS = (
    (("help", "question", "how"), ("help", "question"), 15),
    (("show", "look", "check"), ("showcase",), 20),
    (("tutorial", "guide", "learn"), ("tutorial",), 25),
    (("news", "update", "announcement"), ("news",), 20),
    (("serious", "important"), ("serious",), 15),
)


def suggest_flairs(post: PostInput, available: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    content = f"{post.title or ''} {post.body or ''}".lower()
    table = _FLAIR_TABLES.get(post.subreddit or "", _FLAIR_TABLES["default"])

    suggestions = []
    for text, confidence, reason in table:
        flair_text = text.lower()
        for keywords, fragments, boost in _FLAIR_BOOSTS:
            if any(k in content for k in keywords) and any(f in flair_text for f in fragments):
                confidence += boost
        suggestions.append({"text": text, "confidence": min(confidence, 100), "reason": reason})

    suggestions.sort(key=lambda s: s["confidence"], reverse=True)
    return {"suggestions": suggestions[:3], "subreddit": post.subreddit, "analyzed": True}


# ---------------------------------------------------------------------------
# Model prompts and answer parsing
# ---------------------------------------------------------------------------

def _post_block(post: PostInput) -> str:
    lines = [f"Subreddit: r/{post.subreddit}" if post.subreddit else "Subreddit: (not chosen)"]
    if post.flair:
        lines.append(f"Flair: {post.flair}")
    lines.append(f"Title: {post.title}")
    lines.append(f"Body:\n{post.body}")
    return "\n".join(lines)


def check_rules_prompt(post: PostInput, rules: Optional[List[Dict[str, Any]]] = None) -> str:
    rules_text = "\n".join(
        f"- {rule.get('short_name')}: {rule.get('description', '')[:300]}" for rule in rules or []
    ) or "- (rules unavailable; use general Reddit etiquette)"
    return (
        "You review Reddit posts before they are submitted.\n"
        f"Subreddit rules:\n{rules_text}\n\n"
        f"{_post_block(post)}\n\n"
        'Answer with JSON only: {"violations": ["<short description>", ...]}. '
        "Use an empty list when the post follows the rules."
    )


def detect_anomalies_prompt(post: PostInput) -> str:
    return (
        "Find anything in this Reddit post that moderators or spam filters may flag "
        "(repetition, link spam, shorteners, shouting, self-promotion, scam wording).\n\n"
        f"{_post_block(post)}\n\n"
        'Answer with JSON only: {"anomalies": [{"type": "...", "description": "...", '
        '"severity": "low|medium|high"}]}'
    )


def find_subreddits_prompt(post: PostInput) -> str:
    return (
        "Suggest up to 5 subreddits where this post would fit and be welcome.\n\n"
        f"{_post_block(post)}\n\n"
        'Answer with JSON only: {"alternatives": [{"name": "<subreddit without r/>", '
        '"subscribers": <approximate int>, "reason": "..."}]}'
    )


def suggest_flairs_prompt(post: PostInput, available: Optional[List[Dict[str, Any]]] = None) -> str:
    choices = ", ".join(f["text"] for f in available or [] if f.get("text")) or "(unknown; propose common ones)"
    return (
        f"Available flairs: {choices}\n\n"
        f"{_post_block(post)}\n\n"
        "Pick the 3 best flairs for this post. "
        'Answer with JSON only: {"suggestions": [{"text": "...", "confidence": <0-100>, "reason": "..."}]}'
    )


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_model_json(text: str, list_key: str) -> Optional[Dict[str, Any]]:
    """Pull the JSON object out of a model answer; None unless it has a list under list_key."""
    if not text:
        return None
    fenced = _FENCE_RE.search(text)
    candidate = fenced.group(1) if fenced else text
    start, end = candidate.find("{"), candidate.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(candidate[start:end + 1])
    except ValueError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get(list_key), list):
        return None
    return data


@dataclass
class ToolSpec:
    name: str
    result_key: str
    analyze: Callable[..., Dict[str, Any]]
    prompt: Callable[..., str]


TOOLS: Dict[str, ToolSpec] = {
    CHECK_RULES: ToolSpec(CHECK_RULES, "violations", check_rules, check_rules_prompt),
    DETECT_ANOMALIES: ToolSpec(DETECT_ANOMALIES, "anomalies", detect_anomalies, detect_anomalies_prompt),
    FIND_SUBREDDITS: ToolSpec(FIND_SUBREDDITS, "alternatives", find_subreddits, find_subreddits_prompt),
    SUGGEST_FLAIRS: ToolSpec(SUGGEST_FLAIRS, "suggestions", suggest_flairs, suggest_flairs_prompt),
}


def merge_model_answer(tool: str, post: PostInput, answer: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a parsed model answer like the analyzer's result."""
    definition = TOOLS[tool]
    items = answer[definition.result_key]
    if tool == SUGGEST_FLAIRS:
        items = items[:3]
    result: Dict[str, Any] = {definition.result_key: items}
    if tool == CHECK_RULES:
        result.update({"checked": True, "subreddit": post.subreddit})
    elif tool == FIND_SUBREDDITS:
        result.update({"current_subreddit": post.subreddit, "analyzed": True})
    else:
        result.update({"subreddit": post.subreddit, "analyzed": True})
    return result
