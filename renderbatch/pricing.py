"""
Engine tier price list.

Users pick an engine tier (or let it vary per job); the tier decides both the
render backend and the per-video cost we show before a batch starts.
"""

from typing import Optional

ENGINE_TIER_DIMENSION = "engineTier"
DEFAULT_TIER = "free"

# Average cost per rendered video (USD) for each tier
TIER_COSTS = {
    "free": 0.0,
    "low": 0.10,
    "medium": 0.375,
    "premium": 1.75,
}

# Older pricing-tier names still sent by the agency flow
TIER_ALIASES = {
    "cheap": "low",
    "normal": "medium",
    "expensive": "premium",
}


def normalize_tier(tier: Optional[str]) -> str:
    if not tier:
        return DEFAULT_TIER
    tier = tier.lower()
    return TIER_ALIASES.get(tier, tier)


def cost_for_tier(tier: Optional[str]) -> float:
    """Per-video cost for a tier. Unknown tiers are priced as medium."""
    return TIER_COSTS.get(normalize_tier(tier), TIER_COSTS["medium"])


def cost_for_dimensions(dimensions: dict) -> float:
    return cost_for_tier(dimensions.get(ENGINE_TIER_DIMENSION))
