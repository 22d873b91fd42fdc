"""
Pricing Engine Tests
====================
Tests for model pricing lookup and cost estimation.
"""

import math
from pathlib import Path

import pytest

from tollgate.core.pricing import (
    DEFAULT_PRICING,
    ModelPricing,
    PricingEngine,
    format_cost,
)


class TestPricingEngine:
    """Tests for the pricing engine."""

    @pytest.fixture
    def engine(self) -> PricingEngine:
        """Create a pricing engine with default config."""
        return PricingEngine()

    def test_opus_one_million_input_tokens(self, engine: PricingEngine):
        """Test that 1M Opus input tokens cost $15.00."""
        cost = engine.estimate_cost("claude-opus-4-6", input_tokens=1_000_000, output_tokens=0)
        assert cost == pytest.approx(15.00)

    def test_input_and_output_cost(self, engine: PricingEngine):
        """Test cost calculation for a mixed call."""
        cost = engine.estimate_cost("claude-sonnet-4-6", input_tokens=1000, output_tokens=500)
        assert cost == pytest.approx(0.003 + 0.0075)

    def test_cache_multipliers(self, engine: PricingEngine):
        """Test that cache reads bill at 0.1x and cache writes at 1.25x input."""
        read = engine.estimate_cost("claude-sonnet-4-6", cache_read_tokens=1_000_000)
        write = engine.estimate_cost("claude-sonnet-4-6", cache_creation_tokens=1_000_000)

        assert read == pytest.approx(0.30)
        assert write == pytest.approx(3.75)

    def test_zero_tokens_zero_cost(self, engine: PricingEngine):
        """Test that zero tokens result in zero cost."""
        assert engine.estimate_cost("claude-opus-4-6", 0, 0) == 0

    def test_exact_match(self, engine: PricingEngine):
        """Test exact model lookup."""
        assert engine.resolve_pricing("claude-3-haiku-20240307") == ModelPricing(0.25, 1.25)

    def test_dated_model_matches_longest_prefix(self, engine: PricingEngine):
        """Test that a suffixed id resolves to the most specific table key."""
        assert engine.resolve_pricing("claude-opus-4-6-20250215") == ModelPricing(15.00, 75.00)
        assert engine.resolve_pricing("claude-haiku-4-5-20251001") == ModelPricing(0.80, 4.00)

    def test_bare_family_prefix(self, engine: PricingEngine):
        """Test that a truncated name resolves to a table key it prefixes."""
        assert engine.resolve_pricing("claude-3-5-haiku") == ModelPricing(0.80, 4.00)

    def test_keyword_fallback(self, engine: PricingEngine):
        """Test family keyword matching for unknown ids."""
        assert engine.resolve_pricing("my-custom-OPUS-build") == ModelPricing(15.00, 75.00)
        assert engine.resolve_pricing("haiku-next") == ModelPricing(0.80, 4.00)
        assert engine.resolve_pricing("sonnet-experimental") == ModelPricing(3.00, 15.00)

    @pytest.mark.parametrize("model", ["unknown-model-xyz", "gpt-4o", "", None])
    def test_unknown_model_uses_mid_tier(self, engine: PricingEngine, model):
        """Test that unknown models get finite mid-tier pricing."""
        pricing = engine.resolve_pricing(model)
        cheapest = engine.resolve_pricing("claude-haiku-4-6")
        priciest = engine.resolve_pricing("claude-opus-4-6")

        assert math.isfinite(pricing.input_rate)
        assert math.isfinite(pricing.output_rate)
        assert cheapest.input_rate <= pricing.input_rate <= priciest.input_rate
        assert pricing == ModelPricing(3.00, 15.00)

    def test_unknown_model_cost_is_finite(self, engine: PricingEngine):
        """Test that estimation never fails for an unknown model."""
        cost = engine.estimate_cost("totally-new-model", 1000, 1000)
        assert math.isfinite(cost)
        assert cost > 0

    def test_list_models(self, engine: PricingEngine):
        """Test getting all priced models."""
        models = engine.list_models()

        assert len(models) == len(DEFAULT_PRICING["models"])
        assert [m["model"] for m in models] == sorted(m["model"] for m in models)
        assert {"model", "input_rate", "output_rate"} <= set(models[0])


class TestPricingConfig:
    """Tests for loading the pricing table from YAML."""

    def test_missing_file_uses_defaults(self, tmp_path: Path):
        """Test fallback to the built-in table."""
        engine = PricingEngine(str(tmp_path / "missing.yaml"))
        assert engine.resolve_pricing("claude-opus-4-6") == ModelPricing(15.00, 75.00)

    def test_custom_table(self, tmp_path: Path):
        """Test that a YAML table overrides the defaults."""
        config = tmp_path / "pricing.yaml"
        config.write_text(
            "models:\n"
            "  house-large: {input: 10.0, output: 20.0}\n"
            "  house-small: {input: 1.0, output: 2.0}\n"
            "families:\n"
            "  opus: house-large\n"
            "  sonnet: house-small\n"
            "  haiku: house-small\n"
        )
        engine = PricingEngine(str(config))

        assert engine.resolve_pricing("house-large") == ModelPricing(10.0, 20.0)
        assert engine.resolve_pricing("mystery") == ModelPricing(1.0, 2.0)
        assert engine.resolve_pricing("some-opus") == ModelPricing(10.0, 20.0)

    def test_invalid_table_falls_back(self, tmp_path: Path):
        """Test that an unusable file falls back to defaults."""
        config = tmp_path / "pricing.yaml"
        config.write_text("models:\n  broken: {input: -1, output: 2}\n")
        engine = PricingEngine(str(config))

        assert engine.resolve_pricing("claude-opus-4-6") == ModelPricing(15.00, 75.00)


class TestFormatCost:
    """Tests for cost display formatting."""

    def test_zero(self):
        assert format_cost(0) == "$0.000"

    def test_sub_tenth_cent_uses_six_decimals(self):
        assert format_cost(0.000045) == "$0.000045"

    def test_sub_cent_uses_four_decimals(self):
        assert format_cost(0.0042) == "$0.0042"

    def test_larger_amounts_use_three_decimals(self):
        assert format_cost(0.05) == "$0.050"
        assert format_cost(15) == "$15.000"
