"""
Token Cost Engine
=================
Model pricing lookup and cost estimation. All rates are USD per
1,000,000 tokens.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

from tollgate.config import get_settings

logger = structlog.get_logger()

TOKENS_PER_RATE_UNIT = 1_000_000
CACHE_READ_MULTIPLIER = 0.1
CACHE_CREATION_MULTIPLIER = 1.25

# Keyword fallback order; the first family found in the model name wins.
FAMILY_KEYWORDS = ("opus", "haiku", "sonnet")
DEFAULT_FAMILY = "sonnet"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a model, USD per 1M tokens."""

    input_rate: float
    output_rate: float


DEFAULT_PRICING: dict[str, Any] = {
    "models": {
        "claude-opus-4-6": {"input": 15.00, "output": 75.00},
        "claude-opus-4": {"input": 15.00, "output": 75.00},
        "claude-sonnet-4-6": {"input": 3.00, "output": 15.00},
        "claude-sonnet-4-5": {"input": 3.00, "output": 15.00},
        "claude-sonnet-4": {"input": 3.00, "output": 15.00},
        "claude-haiku-4-6": {"input": 0.80, "output": 4.00},
        "claude-haiku-4-5": {"input": 0.80, "output": 4.00},
        "claude-haiku-4": {"input": 0.80, "output": 4.00},
        "claude-3-5-sonnet-20241022": {"input": 3.00, "output": 15.00},
        "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00},
        "claude-3-5-sonnet-20240620": {"input": 3.00, "output": 15.00},
        "claude-3-opus-20240229": {"input": 15.00, "output": 75.00},
        "claude-3-sonnet-20240229": {"input": 3.00, "output": 15.00},
        "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
    },
    "families": {
        "opus": "claude-opus-4-6",
        "sonnet": "claude-sonnet-4-6",
        "haiku": "claude-haiku-4-6",
    },
}


class PricingEngine:
    """
    Model pricing engine.

    Loads the pricing table from YAML, falling back to the built-in
    table when the file is missing or unreadable. Lookups go through an
    ordered pipeline: exact name, prefix, family keyword, default family.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or get_settings().pricing_config_path
        self._models: dict[str, ModelPricing] = {}
        self._families: dict[str, str] = {}
        self._load_pricing()

    def _load_pricing(self) -> None:
        """Load pricing configuration from YAML file."""
        config_file = Path(self.config_path)

        if not config_file.exists():
            logger.warning("Pricing config not found, using defaults", path=self.config_path)
            self._apply(DEFAULT_PRICING)
            return

        try:
            with open(config_file) as f:
                self._apply(yaml.safe_load(f))
            logger.info("Loaded pricing configuration", path=self.config_path, models=len(self._models))
        except Exception as e:
            logger.error("Failed to load pricing config", path=self.config_path, error=str(e))
            self._apply(DEFAULT_PRICING)

    def _apply(self, data: dict[str, Any]) -> None:
        if not isinstance(data, dict) or not isinstance(data.get("models"), dict):
            raise ValueError("pricing table must contain a 'models' mapping")

        models = {}
        for name, rates in data["models"].items():
            input_rate = float(rates["input"])
            output_rate = float(rates["output"])
            if input_rate < 0 or output_rate < 0:
                raise ValueError(f"negative rate for {name}")
            models[str(name)] = ModelPricing(input_rate, output_rate)

        families = dict(DEFAULT_PRICING["families"])
        families.update(data.get("families") or {})
        missing = [family for family, model in families.items() if model not in models]
        if missing:
            raise ValueError(f"family defaults not in pricing table: {missing}")

        self._models = models
        self._families = families

    def resolve_pricing(self, model: Optional[str]) -> ModelPricing:
        """
        Get pricing for a model. Never fails.

        Precedence:
            1. exact table key
            2. longest table key the model starts with (dated/suffixed ids),
               then the first table key starting with the model (bare families)
            3. family keyword in the model name, case-insensitive
            4. default (mid-tier) family
        """
        if not model:
            return self._family_pricing(DEFAULT_FAMILY)

        if model in self._models:
            return self._models[model]

        prefixed = [key for key in self._models if model.startswith(key)]
        if prefixed:
            return self._models[max(prefixed, key=len)]
        for key, pricing in self._models.items():
            if key.startswith(model):
                return pricing

        lower = model.lower()
        for family in FAMILY_KEYWORDS:
            if family in lower:
                return self._family_pricing(family)

        logger.debug("Unknown model, using default pricing", model=model)
        return self._family_pricing(DEFAULT_FAMILY)

    def _family_pricing(self, family: str) -> ModelPricing:
        return self._models[self._families[family]]

    def estimate_cost(
        self,
        model: Optional[str],
        input_tokens: int = 0,
        output_tokens: int = 0,
        cache_read_tokens: int = 0,
        cache_creation_tokens: int = 0,
    ) -> float:
        """
        Estimate the USD cost of one call.

        Cache reads are billed at 10% of the input rate and cache
        writes at 125% of it.
        """
        pricing = self.resolve_pricing(model)
        unit = TOKENS_PER_RATE_UNIT

        input_cost = (input_tokens / unit) * pricing.input_rate
        output_cost = (output_tokens / unit) * pricing.output_rate
        cache_read_cost = (cache_read_tokens / unit) * pricing.input_rate * CACHE_READ_MULTIPLIER
        cache_creation_cost = (
            (cache_creation_tokens / unit) * pricing.input_rate * CACHE_CREATION_MULTIPLIER
        )

        return input_cost + output_cost + cache_read_cost + cache_creation_cost

    def list_models(self) -> list[dict[str, Any]]:
        """All priced models, sorted by name."""
        return [
            {"model": name, "input_rate": p.input_rate, "output_rate": p.output_rate}
            for name, p in sorted(self._models.items())
        ]


def format_cost(cost: float) -> str:
    """Format a USD cost for display."""
    if cost == 0:
        return "$0.000"
    if cost < 0.001:
        return f"${cost:.6f}"
    if cost < 0.01:
        return f"${cost:.4f}"
    return f"${cost:.3f}"
