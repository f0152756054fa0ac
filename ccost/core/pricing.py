"""
Pricing calculations and rate management.

Maps a model name and token counts to a cost in USD. The rate table is an
injected collaborator; the resolver itself keeps no state.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_EVEN
from enum import Enum
from typing import Dict, Mapping, Optional

from ccost.config.logger import get_logger
from ccost.core.errors import PricingUnavailableError
from ccost.core.token_counter import TokenUsage
from ccost.storage.models import UsageRecord

LOGGER = get_logger("ccost.pricing")

BASE_CURRENCY = "USD"
_PER_MILLION = Decimal("1000000")


class CostMode(Enum):
    """How a record's cost is determined."""
    AUTO = "auto"            # Embedded cost when present, otherwise calculate
    CALCULATE = "calculate"  # Always derive from the rate table
    DISPLAY = "display"      # Embedded cost only; zero when absent


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token rates for one model, in USD."""
    input_per_mtok: Decimal
    output_per_mtok: Decimal
    cache_per_mtok: Decimal  # Applies to both cache creation and cache reads

    def cost(self, usage: TokenUsage) -> Decimal:
        """Exact cost of the given usage (no rounding)."""
        return (
            Decimal(usage.input_tokens) * self.input_per_mtok
            + Decimal(usage.output_tokens) * self.output_per_mtok
            + Decimal(usage.cache_tokens) * self.cache_per_mtok
        ) / _PER_MILLION


@dataclass(frozen=True)
class PricingTable:
    """Rate table for known models with an optional default tier."""
    prices: Mapping[str, ModelPricing] = field(default_factory=dict)
    default: Optional[ModelPricing] = None

    def rate(self, model: str) -> ModelPricing:
        """Get pricing for a model, falling back to the default tier.

        Raises:
            PricingUnavailableError: If the model is unknown and there is no default tier
        """
        pricing = self.prices.get(model)
        if pricing is not None:
            return pricing
        if self.default is None:
            raise PricingUnavailableError(model)
        LOGGER.info("Model not in pricing table; using default tier", extra={"model": model})
        return self.default

    def with_overrides(
        self,
        prices: Mapping[str, ModelPricing],
        default: Optional[ModelPricing] = None,
    ) -> "PricingTable":
        """Return a new table with extra model rates (and optionally a new default)."""
        merged: Dict[str, ModelPricing] = dict(self.prices)
        merged.update(prices)
        return PricingTable(prices=merged, default=default or self.default)


# Fallback tier for unknown models (Sonnet-class rates)
DEFAULT_TIER = ModelPricing(
    input_per_mtok=Decimal("3.00"),
    output_per_mtok=Decimal("15.00"),
    cache_per_mtok=Decimal("0.30"),
)

PRICING_TABLE = PricingTable(
    prices={
        "claude-sonnet-4-20250514": ModelPricing(
            input_per_mtok=Decimal("3.00"),
            output_per_mtok=Decimal("15.00"),
            cache_per_mtok=Decimal("0.30"),
        ),
        "claude-opus-4-20250514": ModelPricing(
            input_per_mtok=Decimal("15.00"),
            output_per_mtok=Decimal("75.00"),
            cache_per_mtok=Decimal("1.50"),
        ),
        "claude-3-5-sonnet-20241022": ModelPricing(
            input_per_mtok=Decimal("3.00"),
            output_per_mtok=Decimal("15.00"),
            cache_per_mtok=Decimal("0.30"),
        ),
        "claude-3-5-haiku-20241022": ModelPricing(
            input_per_mtok=Decimal("0.80"),
            output_per_mtok=Decimal("4.00"),
            cache_per_mtok=Decimal("0.08"),
        ),
        "claude-haiku-3-5-20241022": ModelPricing(
            input_per_mtok=Decimal("1.00"),
            output_per_mtok=Decimal("5.00"),
            cache_per_mtok=Decimal("0.10"),
        ),
    },
    default=DEFAULT_TIER,
)


@dataclass(frozen=True)
class ResolvedCost:
    """Cost of one record in USD."""
    amount: Decimal
    cost_available: bool = True


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> Decimal:
    """Calculate cost for model usage from the rate table.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Rate table to price against

    Returns:
        Exact cost in USD

    Raises:
        PricingUnavailableError: If the model is unknown and the table has no default tier
    """
    return table.rate(model).cost(usage)


def resolve_cost(
    record: UsageRecord,
    table: PricingTable = PRICING_TABLE,
    mode: CostMode = CostMode.AUTO,
) -> ResolvedCost:
    """Resolve the cost of one record under the given mode.

    Display mode never fails: a record without an embedded cost costs zero
    and is reported as unavailable.
    """
    if mode is CostMode.DISPLAY:
        if record.embedded_cost is None:
            return ResolvedCost(amount=Decimal("0"), cost_available=False)
        return ResolvedCost(amount=record.embedded_cost)

    if mode is CostMode.AUTO and record.embedded_cost is not None:
        return ResolvedCost(amount=record.embedded_cost)

    return ResolvedCost(amount=calculate_cost(record.model, record.usage, table))


def quantize_cost(amount: Decimal, places: int = 2) -> Decimal:
    """Round a cost for presentation (banker's rounding).

    Accumulated totals are never rounded; call this only when displaying.
    """
    if places < 0:
        raise ValueError("places must be >= 0")
    return amount.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)
