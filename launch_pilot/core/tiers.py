"""
Subscription tiers and feature access rules.

Fixed tier table with monthly token allowances, model selection and
feature gates.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Union

logger = logging.getLogger(__name__)


class Tier(Enum):
    """Subscription levels, ordered from least to most privileged."""
    FREE = "free"
    STARTER = "starter"
    INDUSTRY = "industry"
    ULTRA = "ultra"
    LIFETIME = "lifetime"

    @property
    def rank(self) -> int:
        return TIER_HIERARCHY.index(self)


TIER_HIERARCHY = [Tier.FREE, Tier.STARTER, Tier.INDUSTRY, Tier.ULTRA, Tier.LIFETIME]

FREE_MODEL = "google/gemini-2.0-flash-001"
MID_MODEL = "anthropic/claude-3.5-haiku"
PREMIUM_MODEL = "google/gemini-2.5-flash"

UNLIMITED_PROJECTS = 999999


@dataclass(frozen=True)
class TierSpec:
    """Static description of a subscription tier."""
    name: str
    token_limit: int
    price: Decimal
    model: str
    project_limit: int


@dataclass(frozen=True)
class TierTable:
    """Fixed tier table."""
    tiers: Dict[Tier, TierSpec]

    def get_spec(self, tier: Union[Tier, str]) -> TierSpec:
        """Get the TierSpec for a tier, falling back to the free tier.

        Args:
            tier: Tier or tier name

        Returns:
            TierSpec for the tier
        """
        return self.tiers[resolve_tier(tier)]


TIER_TABLE = TierTable({
    Tier.FREE: TierSpec(
        name="Free",
        token_limit=10000,
        price=Decimal("0"),
        model=FREE_MODEL,
        project_limit=1
    ),
    Tier.STARTER: TierSpec(
        name="Starter",
        token_limit=50000,
        price=Decimal("29.99"),
        model=MID_MODEL,
        project_limit=UNLIMITED_PROJECTS
    ),
    Tier.INDUSTRY: TierSpec(
        name="Industry",
        token_limit=150000,
        price=Decimal("59.99"),
        model=MID_MODEL,
        project_limit=UNLIMITED_PROJECTS
    ),
    Tier.ULTRA: TierSpec(
        name="Ultra",
        token_limit=250000,
        price=Decimal("79.99"),
        model=PREMIUM_MODEL,
        project_limit=UNLIMITED_PROJECTS
    ),
    Tier.LIFETIME: TierSpec(
        name="Lifetime",
        token_limit=999999999,
        price=Decimal("299"),
        model=PREMIUM_MODEL,
        project_limit=UNLIMITED_PROJECTS
    ),
})


# Minimum tier required for each feature
FEATURE_ACCESS: Dict[str, Tier] = {
    "chatbot": Tier.FREE,
    "idea_generator": Tier.FREE,
    "budget_planner": Tier.FREE,
    "bom_analysis": Tier.FREE,
    "legal_compliance": Tier.STARTER,
    "deep_analysis": Tier.STARTER,
    "integrations": Tier.STARTER,
    "timeline_assistant": Tier.STARTER,
    "pdf_export": Tier.STARTER,
    "store_sync": Tier.ULTRA,
    "analytics": Tier.ULTRA,
    "team_collaboration": Tier.ULTRA,
    "advanced_ai": Tier.ULTRA,
}


def resolve_tier(tier: Union[Tier, str, None]) -> Tier:
    """Resolve a tier name to a Tier, defaulting to FREE for unknown values."""
    if isinstance(tier, Tier):
        return tier
    try:
        return Tier(str(tier).lower())
    except ValueError:
        logger.warning("Unknown tier %r, defaulting to free tier", tier)
        return Tier.FREE


def get_token_limit(tier: Union[Tier, str]) -> int:
    """Monthly token allowance for a tier."""
    return TIER_TABLE.get_spec(tier).token_limit


def has_feature_access(user_tier: Union[Tier, str], required_tier: Union[Tier, str]) -> bool:
    """Check whether a tier is at or above the required tier."""
    return resolve_tier(user_tier).rank >= resolve_tier(required_tier).rank


def can_access_feature(user_tier: Union[Tier, str], feature: str) -> bool:
    """Check whether a tier may use a named feature.

    Raises:
        KeyError: If the feature is not known
    """
    if feature not in FEATURE_ACCESS:
        raise KeyError(f"Unknown feature: {feature}")
    return has_feature_access(user_tier, FEATURE_ACCESS[feature])


def get_project_limit(tier: Union[Tier, str]) -> int:
    return TIER_TABLE.get_spec(tier).project_limit


def can_create_more_projects(tier: Union[Tier, str], current_project_count: int) -> bool:
    return current_project_count < get_project_limit(tier)


def model_for_tier(tier: Union[Tier, str]) -> str:
    """Default completion model for a tier."""
    return TIER_TABLE.get_spec(tier).model


def model_tier_class(tier: Union[Tier, str]) -> str:
    """Coarse model class for display: basic, advanced or premium."""
    resolved = resolve_tier(tier)
    if resolved == Tier.FREE:
        return "basic"
    if resolved in (Tier.STARTER, Tier.INDUSTRY):
        return "advanced"
    return "premium"
