"""
Usage guardrails and tier gating.

Checks run before an expensive action (AI completion, idea generation)
and block it with an upgrade message when a limit is hit.

Enforcement order used by idea generation:
1. Daily limit - Free tier generation cap per day
2. Minimum credits - Free tier needs a usable balance
3. Input length - Oversized prompts are rejected before spending quota
4. Token budget - Estimated request must fit in the remaining allowance
"""

import logging
from enum import Enum, auto
from typing import Iterable, Optional, Union

from . import ledger
from .tiers import FEATURE_ACCESS, TIER_TABLE, Tier, can_access_feature, resolve_tier
from launch_pilot.storage.models import CreditsState

logger = logging.getLogger(__name__)

DEFAULT_MAX_INPUT_CHARS = 10000
DEFAULT_FREE_DAILY_LIMIT = 3
DEFAULT_FREE_MIN_CREDITS = 1000
DEFAULT_WARN_RATIO = 0.9


class EnforcementAction(Enum):
    """Available enforcement actions in order of severity."""
    ALLOW = auto()    # Allow the request (no action)
    WARN = auto()     # Log warning but allow request
    BLOCK = auto()    # Reject the request entirely


class GuardrailViolation(Exception):
    """Raised when a guardrail blocks an action."""
    def __init__(self, message: str, action: EnforcementAction = EnforcementAction.BLOCK):
        super().__init__(message)
        self.action = action


class QuotaExceeded(GuardrailViolation):
    """Monthly token allowance would be exceeded."""


class DailyLimitExceeded(GuardrailViolation):
    """Per-day generation cap reached."""


class InsufficientCredits(GuardrailViolation):
    """Remaining balance is below the minimum for an action."""


class FeatureLocked(GuardrailViolation):
    """Tier does not unlock the feature."""


class InputTooLong(GuardrailViolation):
    """User input exceeds the allowed length."""


def _upgrade_hint(tier: Tier) -> str:
    if tier == Tier.FREE:
        next_limit = TIER_TABLE.get_spec(Tier.STARTER).token_limit
        return f"Upgrade to Starter for {next_limit:,} tokens/month!"
    return "Please wait for your monthly reset."


def check_token_budget(
    entry: CreditsState,
    estimated_tokens: int,
    warn_ratio: float = DEFAULT_WARN_RATIO
) -> EnforcementAction:
    """Check that an estimated request fits in the remaining allowance.

    Args:
        entry: Current ledger entry
        estimated_tokens: Prompt tokens plus requested completion tokens
        warn_ratio: Usage share after the call that triggers a warning

    Returns:
        ALLOW, or WARN when usage after the call crosses warn_ratio

    Raises:
        QuotaExceeded: If the request may exceed the allowance
    """
    limit = ledger.allowance(entry)
    if entry.used_this_month + estimated_tokens > limit:
        left = limit - entry.used_this_month
        raise QuotaExceeded(
            f"You have {left} tokens left this month, but this request may use up to "
            f"{estimated_tokens}. {_upgrade_hint(entry.tier)}"
        )
    if limit and (entry.used_this_month + estimated_tokens) / limit >= warn_ratio:
        logger.warning(
            "Usage nearing limit for %s tier: %d + %d of %d tokens",
            entry.tier.value, entry.used_this_month, estimated_tokens, limit
        )
        return EnforcementAction.WARN
    return EnforcementAction.ALLOW


def check_daily_limit(
    tier: Union[Tier, str],
    count_today: int,
    limit: int = DEFAULT_FREE_DAILY_LIMIT
) -> EnforcementAction:
    """Cap free-tier generations per day. Paid tiers are unlimited."""
    if resolve_tier(tier) == Tier.FREE and count_today >= limit:
        raise DailyLimitExceeded(
            f"Free users can generate up to {limit} ideas per day. "
            "Upgrade to Starter or Ultra for unlimited ideas."
        )
    return EnforcementAction.ALLOW


def check_min_credits(
    entry: CreditsState,
    minimum: int = DEFAULT_FREE_MIN_CREDITS
) -> EnforcementAction:
    """Require a minimum remaining balance on the free tier."""
    if entry.tier == Tier.FREE and ledger.remaining(entry) < minimum:
        raise InsufficientCredits(
            f"Free users need at least {minimum:,} credits left for this action. "
            f"{_upgrade_hint(entry.tier)}"
        )
    return EnforcementAction.ALLOW


def check_feature_access(tier: Union[Tier, str], feature: str) -> EnforcementAction:
    """Block features the tier does not unlock.

    Raises:
        FeatureLocked: If the tier is below the feature's minimum tier
        KeyError: If the feature is not known
    """
    if not can_access_feature(tier, feature):
        required = TIER_TABLE.get_spec(FEATURE_ACCESS[feature]).name
        raise FeatureLocked(f"{feature} requires the {required} plan or higher.")
    return EnforcementAction.ALLOW


def check_input_length(
    fields: Iterable[Optional[str]],
    max_chars: int = DEFAULT_MAX_INPUT_CHARS
) -> EnforcementAction:
    """Reject prompts whose combined user input is too long."""
    total = sum(len(value) for value in fields if value)
    if total > max_chars:
        raise InputTooLong(
            "Your input is very long which can cause parsing issues and waste tokens. "
            "Please try shorter, more focused descriptions in each field."
        )
    return EnforcementAction.ALLOW
