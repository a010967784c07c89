import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

# One free post per calendar month
FREE_POSTS_PER_MONTH = 1

UNLIMITED_WINDOW_DAYS = 30

# Purchasable plans, keyed by the plan id carried in checkout metadata.
# amount_cents is the list price, used only to infer a plan when metadata is missing.
CREDIT_PLANS: Dict[str, Dict[str, int]] = {
    "onePost": {"credits": 1, "amount_cents": 99, "unlimited_days": 0},
    "fivePosts": {"credits": 5, "amount_cents": 699, "unlimited_days": 0},
    "tenPosts": {"credits": 10, "amount_cents": 100, "unlimited_days": 0},
    "hundredPosts": {"credits": 100, "amount_cents": 500, "unlimited_days": 0},
    "fiveHundredPosts": {"credits": 500, "amount_cents": 1500, "unlimited_days": 0},
    "credits100": {"credits": 100, "amount_cents": 900, "unlimited_days": 0},
    "unlimitedMonthly": {"credits": 0, "amount_cents": 1499, "unlimited_days": UNLIMITED_WINDOW_DAYS},
}

DEFAULT_CHECKOUT_PLAN = "credits100"

# Older checkouts used these names
PLAN_ALIASES = {
    "unlimited_monthly_1499": "unlimitedMonthly",
    "credits": "credits100",
}

# Credits charged per AI tool invocation
AI_TOOL_COSTS: Dict[str, int] = {
    "check_rules": 1,
    "detect_anomalies": 1,
    "suggest_flairs": 1,
    "find_subreddits": 2,
}


@dataclass
class PlanResolution:
    plan_id: Optional[str]
    credits: int
    unlimited_days: int
    source: str  # "metadata_plan" | "metadata_credits" | "amount"
    mismatch: bool = False


def get_plan(plan_id: Optional[str]) -> Optional[Dict[str, int]]:
    if not plan_id:
        return None
    return CREDIT_PLANS.get(PLAN_ALIASES.get(plan_id, plan_id))


def get_tool_cost(tool: str) -> int:
    """Get the credit cost of an AI tool."""
    return AI_TOOL_COSTS[tool]


def infer_plan_from_amount(amount: Optional[int], currency: Optional[str]) -> Optional[str]:
    """
    Guess the purchased plan from the paid amount.

    Only a last resort: amounts arrive both in minor units (100) and in major
    units (1), and INR payments only approximately match the USD price list.
    """
    if amount is None:
        return None
    currency = (currency or "USD").upper()
    if currency not in ("USD", "INR"):
        return None

    if amount in (100, 1):
        return "tenPosts"
    if amount in (500, 5):
        return "hundredPosts"
    if amount in (1500, 15):
        return "fiveHundredPosts"
    if amount in (699, 999):
        return "fivePosts"
    if amount == 900:
        return "credits100"
    if amount == 1499:
        return "unlimitedMonthly"
    # Approximate INR equivalents
    if 80 <= amount <= 90:
        return "hundredPosts"
    if 15 <= amount <= 25:
        return "tenPosts"
    if 1200 <= amount <= 1300:
        return "fiveHundredPosts"
    return None


def _metadata_credits(metadata: Mapping[str, Any]) -> Optional[int]:
    raw = metadata.get("credits")
    if raw is None or raw == "":
        return None
    try:
        credits = int(str(raw).strip())
    except (TypeError, ValueError):
        logger.warning("[Plans] Ignoring non-integer credits metadata: %r", raw)
        return None
    return credits if credits > 0 else None


def resolve_plan(
    metadata: Optional[Mapping[str, Any]],
    amount: Optional[int],
    currency: Optional[str],
) -> Optional[PlanResolution]:
    """
    Work out what a successful payment buys.

    Explicit plan metadata is the source of truth, then explicit credits
    metadata, and only then the amount. A disagreement between metadata and
    the amount is flagged for reconciliation but metadata still wins.
    """
    metadata = metadata or {}
    inferred_id = infer_plan_from_amount(amount, currency)
    inferred = get_plan(inferred_id)

    plan_key = metadata.get("plan_id") or metadata.get("plan") or metadata.get("planType")
    plan = get_plan(plan_key)
    if plan_key and plan is None:
        logger.warning("[Plans] Unknown plan id in payment metadata: %r", plan_key)

    resolution = None
    if plan is not None:
        resolution = PlanResolution(
            plan_id=PLAN_ALIASES.get(plan_key, plan_key),
            credits=plan["credits"],
            unlimited_days=plan["unlimited_days"],
            source="metadata_plan",
        )
    else:
        credits = _metadata_credits(metadata)
        if credits is not None:
            resolution = PlanResolution(
                plan_id=None,
                credits=credits,
                unlimited_days=0,
                source="metadata_credits",
            )

    if resolution is None:
        if inferred is None:
            return None
        logger.warning(
            "[Plans] No plan metadata; inferred %s from amount=%s %s",
            inferred_id, amount, currency,
        )
        return PlanResolution(
            plan_id=inferred_id,
            credits=inferred["credits"],
            unlimited_days=inferred["unlimited_days"],
            source="amount",
        )

    if inferred is not None and (
        inferred["credits"] != resolution.credits
        or inferred["unlimited_days"] != resolution.unlimited_days
    ):
        resolution.mismatch = True
        logger.warning(
            "[Plans] Reconciliation: metadata says %s credits (%s) but amount=%s %s looks like %s; using metadata",
            resolution.credits, resolution.source, amount, currency, inferred_id,
        )
    return resolution
