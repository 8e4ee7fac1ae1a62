"""
tokenmeter - Pricing Catalog

Per-model token prices and cost estimation.
Prices are USD per 1000 tokens.

Costs are display estimates, not a billing source of truth: an unknown
model costs nothing rather than failing the metered request.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional

from ..core.config import QuotaSettings


COST_QUANTUM = Decimal("0.00000001")
_PER = Decimal(1000)


@dataclass(frozen=True)
class ModelPrice:
    """Input and output price for one model, USD per 1000 tokens."""
    model_name: str
    input_per_1k: Decimal
    output_per_1k: Decimal

    def cost(self, input_tokens, output_tokens) -> Decimal:
        input_cost = Decimal(input_tokens) / _PER * self.input_per_1k
        output_cost = Decimal(output_tokens) / _PER * self.output_per_1k
        return input_cost + output_cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "input_per_1k": float(self.input_per_1k),
            "output_per_1k": float(self.output_per_1k),
        }


def _price(model_name: str, input_per_1k, output_per_1k) -> ModelPrice:
    # str() keeps float literals such as 0.0005 exact
    return ModelPrice(
        model_name=model_name,
        input_per_1k=Decimal(str(input_per_1k)),
        output_per_1k=Decimal(str(output_per_1k)),
    )


DEFAULT_MODEL_PRICES: Dict[str, ModelPrice] = {
    p.model_name: p for p in (
        _price("gpt-3.5-turbo", 0.0005, 0.0015),
        _price("gpt-4", 0.03, 0.06),
        _price("claude-3-opus", 0.015, 0.075),
        _price("claude-3-sonnet", 0.003, 0.015),
        _price("llama-3", 0, 0),
    )
}


class CostCalculator:
    """
    Cost estimation over a price table.

    The table is built at construction time from the defaults merged with
    any overrides; nothing is read from module globals afterwards.
    """

    def __init__(self, overrides: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._prices: Dict[str, ModelPrice] = dict(DEFAULT_MODEL_PRICES)
        for model_name, prices in (overrides or {}).items():
            self._prices[model_name] = _price(
                model_name,
                prices.get("input", 0),
                prices.get("output", 0),
            )

    @classmethod
    def from_settings(cls, settings: QuotaSettings) -> "CostCalculator":
        return cls(overrides=settings.model_cost_overrides)

    def get_price(self, model_name: str) -> Optional[ModelPrice]:
        """Exact match first, then case-insensitive."""
        price = self._prices.get(model_name)
        if price is not None:
            return price
        wanted = (model_name or "").strip().lower()
        for name, candidate in self._prices.items():
            if name.lower() == wanted:
                return candidate
        return None

    def cost(self, tokens: int, model_name: str) -> Decimal:
        """
        Estimated cost of a single token count.

        Only the total is known at the metering point, so it is split
        evenly between input and output pricing.
        """
        half = Decimal(tokens) / 2
        return self._estimate(model_name, half, half)

    def cost_split(self, input_tokens: int, output_tokens: int, model_name: str) -> Decimal:
        """Estimated cost when the real input/output split is known."""
        return self._estimate(model_name, input_tokens, output_tokens)

    def _estimate(self, model_name: str, input_tokens, output_tokens) -> Decimal:
        price = self.get_price(model_name)
        if price is None:
            return Decimal(0).quantize(COST_QUANTUM)
        return price.cost(input_tokens, output_tokens).quantize(
            COST_QUANTUM, rounding=ROUND_HALF_UP
        )

    def list_models(self) -> List[ModelPrice]:
        return sorted(self._prices.values(), key=lambda p: p.model_name)
