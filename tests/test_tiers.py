"""
Tests for subscription tier rules.
"""
import pytest

from launch_pilot.core.tiers import (
    FREE_MODEL,
    MID_MODEL,
    PREMIUM_MODEL,
    Tier,
    can_access_feature,
    can_create_more_projects,
    get_project_limit,
    get_token_limit,
    has_feature_access,
    model_for_tier,
    model_tier_class,
    resolve_tier,
)


class TestTierTable:
    """Test the fixed tier table."""

    @pytest.mark.parametrize("tier, limit", [
        ("free", 10000),
        ("starter", 50000),
        ("industry", 150000),
        ("ultra", 250000),
        ("lifetime", 999999999),
    ])
    def test_token_limits(self, tier, limit):
        assert get_token_limit(tier) == limit

    def test_unknown_tier_falls_back_to_free(self):
        assert resolve_tier("platinum") == Tier.FREE
        assert resolve_tier(None) == Tier.FREE
        assert get_token_limit("platinum") == 10000

    def test_resolve_is_case_insensitive(self):
        assert resolve_tier("ULTRA") == Tier.ULTRA

    @pytest.mark.parametrize("tier, model, model_class", [
        (Tier.FREE, FREE_MODEL, "basic"),
        (Tier.STARTER, MID_MODEL, "advanced"),
        (Tier.INDUSTRY, MID_MODEL, "advanced"),
        (Tier.ULTRA, PREMIUM_MODEL, "premium"),
        (Tier.LIFETIME, PREMIUM_MODEL, "premium"),
    ])
    def test_model_selection(self, tier, model, model_class):
        assert model_for_tier(tier) == model
        assert model_tier_class(tier) == model_class


class TestFeatureAccess:
    """Test feature gates."""

    def test_hierarchy(self):
        assert has_feature_access(Tier.ULTRA, Tier.STARTER)
        assert has_feature_access(Tier.STARTER, Tier.STARTER)
        assert not has_feature_access(Tier.FREE, Tier.STARTER)

    def test_free_features(self):
        assert can_access_feature("free", "chatbot")
        assert can_access_feature("free", "idea_generator")

    def test_paid_features(self):
        assert not can_access_feature("free", "deep_analysis")
        assert can_access_feature("starter", "deep_analysis")
        assert not can_access_feature("industry", "analytics")
        assert can_access_feature("lifetime", "analytics")

    def test_unknown_feature(self):
        with pytest.raises(KeyError, match="Unknown feature"):
            can_access_feature("ultra", "time_travel")


class TestProjectLimits:
    """Test project count limits."""

    def test_free_tier_single_project(self):
        assert get_project_limit(Tier.FREE) == 1
        assert can_create_more_projects(Tier.FREE, 0)
        assert not can_create_more_projects(Tier.FREE, 1)

    def test_paid_tiers_unlimited(self):
        assert can_create_more_projects(Tier.STARTER, 500)
