"""
Tests for usage gates.
"""
import pytest

from launch_pilot.core.guardrails import (
    DailyLimitExceeded,
    EnforcementAction,
    FeatureLocked,
    GuardrailViolation,
    InputTooLong,
    InsufficientCredits,
    QuotaExceeded,
    check_daily_limit,
    check_feature_access,
    check_input_length,
    check_min_credits,
    check_token_budget,
)
from launch_pilot.core.tiers import Tier
from launch_pilot.storage.models import CreditsState


def make_entry(tier=Tier.FREE, used=0, purchased=0):
    return CreditsState(tier=tier, used_this_month=used, purchased_credits=purchased, last_reset="2026-03")


class TestTokenBudget:
    """Test pre-flight token budget checks."""

    def test_allows_request_within_budget(self):
        assert check_token_budget(make_entry(used=1000), 2000) == EnforcementAction.ALLOW

    def test_blocks_request_over_budget(self):
        with pytest.raises(QuotaExceeded) as excinfo:
            check_token_budget(make_entry(used=9500), 1000)

        assert excinfo.value.action == EnforcementAction.BLOCK
        assert "500 tokens left" in str(excinfo.value)
        assert "Upgrade to Starter" in str(excinfo.value)

    def test_paid_tier_told_to_wait(self):
        with pytest.raises(QuotaExceeded, match="monthly reset"):
            check_token_budget(make_entry(Tier.STARTER, used=49900), 512)

    def test_warns_near_limit(self):
        assert check_token_budget(make_entry(used=8500), 600) == EnforcementAction.WARN

    def test_purchased_credits_count(self):
        assert check_token_budget(make_entry(used=9500, purchased=1000), 1000) != EnforcementAction.BLOCK

    def test_violation_is_guardrail_violation(self):
        with pytest.raises(GuardrailViolation):
            check_token_budget(make_entry(used=10000), 1)


class TestDailyLimit:
    """Test the free tier daily generation cap."""

    def test_under_limit(self):
        assert check_daily_limit(Tier.FREE, 2) == EnforcementAction.ALLOW

    def test_at_limit_blocks(self):
        with pytest.raises(DailyLimitExceeded, match="up to 3 ideas per day"):
            check_daily_limit(Tier.FREE, 3)

    def test_paid_tiers_unlimited(self):
        assert check_daily_limit("starter", 100) == EnforcementAction.ALLOW

    def test_custom_limit(self):
        with pytest.raises(DailyLimitExceeded):
            check_daily_limit(Tier.FREE, 1, limit=1)


class TestMinCredits:
    """Test minimum balance checks."""

    def test_free_tier_below_minimum(self):
        with pytest.raises(InsufficientCredits):
            check_min_credits(make_entry(used=9500))

    def test_free_tier_above_minimum(self):
        assert check_min_credits(make_entry(used=1000)) == EnforcementAction.ALLOW

    def test_paid_tier_not_checked(self):
        assert check_min_credits(make_entry(Tier.STARTER, used=50000)) == EnforcementAction.ALLOW


class TestFeatureAndInput:
    """Test feature gates and input length guard."""

    def test_locked_feature(self):
        with pytest.raises(FeatureLocked, match="Starter plan"):
            check_feature_access(Tier.FREE, "deep_analysis")

    def test_unlocked_feature(self):
        assert check_feature_access(Tier.ULTRA, "store_sync") == EnforcementAction.ALLOW

    def test_input_too_long(self):
        with pytest.raises(InputTooLong):
            check_input_length(["x" * 6000, "y" * 4001])

    def test_input_within_limit_ignores_empty_fields(self):
        assert check_input_length(["x" * 10000, "", None]) == EnforcementAction.ALLOW
