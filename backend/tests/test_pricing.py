"""Pricing table and cost calculation tests"""
import pytest
from decimal import Decimal

from app.models.ai_model_pricing import AiModelPricing
from app.services.pricing_service import (
    DEFAULT_TOKEN_PRICING,
    PricingEntry,
    TokenUsage,
    calculate_token_cost,
    deactivate_model_pricing,
    estimate_operation_cost,
    get_estimated_tokens,
    get_fixed_cost,
    get_model_pricing,
    list_model_pricing,
    seed_default_pricing,
    upsert_model_pricing,
)

STANDARD = PricingEntry(
    input_cost_per_1k=Decimal("1.0"),
    output_cost_per_1k=Decimal("3.0"),
    minimum_credits=Decimal("1"),
)


@pytest.mark.critical
class TestCalculateTokenCost:
    """Test cost = max(minimum, multiplier * weighted token cost)"""

    def test_charges_weighted_token_cost(self):
        breakdown = calculate_token_cost(TokenUsage(2000, 1000, 3000), STANDARD)

        assert breakdown.input_cost == Decimal("2.00")
        assert breakdown.output_cost == Decimal("3.00")
        assert breakdown.final_cost == Decimal("5.00")
        assert breakdown.minimum_applied is False

    def test_minimum_floor_applies_to_tiny_usage(self):
        breakdown = calculate_token_cost(TokenUsage(10, 0, 10), STANDARD)

        assert breakdown.total_cost == Decimal("0.01")
        assert breakdown.final_cost == Decimal("1")
        assert breakdown.minimum_applied is True

    def test_zero_usage_costs_the_minimum(self):
        breakdown = calculate_token_cost(TokenUsage(), STANDARD)
        assert breakdown.final_cost == STANDARD.minimum_credits

    def test_model_multiplier_scales_cost(self):
        pricing = PricingEntry(Decimal("1"), Decimal("3"), Decimal("1"), Decimal("1.5"))
        breakdown = calculate_token_cost(TokenUsage(2000, 1000, 3000), pricing)

        assert breakdown.final_cost == Decimal("7.50")
        assert breakdown.model_multiplier == Decimal("1.5")

    def test_fractional_cost_rounds_up_to_the_cent(self):
        pricing = PricingEntry(Decimal("1"), Decimal("1"), Decimal("0"))
        breakdown = calculate_token_cost(TokenUsage(1001, 0, 1001), pricing)

        # 1.001 credits is never undercharged
        assert breakdown.final_cost == Decimal("1.01")

    def test_cost_never_below_minimum(self):
        pricing = PricingEntry(Decimal("0.15"), Decimal("0.6"), Decimal("2"))
        for usage in (TokenUsage(1, 1, 2), TokenUsage(500, 500, 1000), TokenUsage(0, 3000, 3000)):
            assert calculate_token_cost(usage, pricing).final_cost >= Decimal("2")

    def test_breakdown_serializes_camel_case(self):
        data = calculate_token_cost(TokenUsage(2000, 1000, 3000), STANDARD, model_name="default").to_dict()

        assert data["inputTokens"] == 2000
        assert data["outputTokens"] == 1000
        assert data["finalCost"] == 5.0
        assert data["minimumApplied"] is False
        assert data["model"] == "default"


@pytest.mark.critical
class TestEstimates:
    """Test pre-call estimates"""

    def test_ai_operations_have_token_estimates(self):
        usage = get_estimated_tokens("ai_question")
        assert usage == TokenUsage(500, 1500, 2000)

    def test_non_token_operations_have_no_estimate(self):
        assert get_estimated_tokens("feature_usage") is None

    def test_fixed_cost_defaults_to_one_credit(self):
        assert get_fixed_cost("feature_usage") == Decimal("1")
        assert get_fixed_cost("unknown_operation") == Decimal("1")

    def test_estimate_operation_cost_uses_type_estimate(self):
        breakdown = estimate_operation_cost("ai_question", STANDARD)
        # 0.5 * 1 + 1.5 * 3
        assert breakdown.final_cost == Decimal("5.00")

    def test_estimate_operation_cost_prefers_explicit_tokens(self):
        breakdown = estimate_operation_cost("ai_question", STANDARD, estimated_tokens=TokenUsage(10, 0, 10))
        assert breakdown.final_cost == Decimal("1")


@pytest.mark.critical
class TestModelPricingLookup:
    """Test rate card resolution order"""

    def test_builtin_model(self, db_session):
        assert get_model_pricing("gpt-4o", db_session) == DEFAULT_TOKEN_PRICING["gpt-4o"]

    def test_unknown_model_falls_back_to_default(self, db_session):
        assert get_model_pricing("some-new-model", db_session) == DEFAULT_TOKEN_PRICING["default"]

    def test_missing_model_name_uses_default(self):
        assert get_model_pricing(None) == DEFAULT_TOKEN_PRICING["default"]

    def test_database_row_overrides_builtin(self, db_session):
        upsert_model_pricing("gpt-4o", "4", "8", minimum_credits="2", db=db_session)

        pricing = get_model_pricing("gpt-4o", db_session)
        assert pricing.input_cost_per_1k == Decimal("4")
        assert pricing.output_cost_per_1k == Decimal("8")
        assert pricing.minimum_credits == Decimal("2")

    def test_inactive_row_is_ignored(self, db_session):
        upsert_model_pricing("gpt-4o", "4", "8", db=db_session)
        assert deactivate_model_pricing("gpt-4o", db_session) is True

        assert get_model_pricing("gpt-4o", db_session) == DEFAULT_TOKEN_PRICING["gpt-4o"]

    def test_deactivate_unknown_model_returns_false(self, db_session):
        assert deactivate_model_pricing("nope", db_session) is False


@pytest.mark.medium
class TestPricingAdministration:
    """Test pricing rows managed by admins"""

    def test_upsert_updates_existing_row(self, db_session):
        upsert_model_pricing("tutor-model", "1", "2", db=db_session)
        upsert_model_pricing("tutor-model", "3", "4", model_multiplier="2", db=db_session)

        rows = db_session.query(AiModelPricing).filter(AiModelPricing.model_name == "tutor-model").all()
        assert len(rows) == 1
        assert rows[0].model_multiplier == Decimal("2")

    def test_upsert_rejects_invalid_values(self, db_session):
        with pytest.raises(ValueError):
            upsert_model_pricing("tutor-model", "-1", "2", db=db_session)
        with pytest.raises(ValueError):
            upsert_model_pricing("tutor-model", "1", "2", model_multiplier="0", db=db_session)

    def test_list_merges_database_and_builtin(self, db_session):
        upsert_model_pricing("gpt-4o", "4", "8", db=db_session)
        listing = {item["model_name"]: item for item in list_model_pricing(db_session)}

        assert listing["gpt-4o"]["source"] == "database"
        assert listing["gpt-4o"]["inputCostPer1kTokens"] == 4.0
        assert listing["claude-3-haiku"]["source"] == "builtin"
        assert "default" in listing

    def test_seed_is_idempotent(self, db_session):
        first = seed_default_pricing(db_session)
        second = seed_default_pricing(db_session)

        assert first == len(DEFAULT_TOKEN_PRICING) - 1
        assert second == 0
