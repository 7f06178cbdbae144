"""
Pricing calculations and rate management.

Resolves a model identifier to a per-token rate and computes the cost of a
single usage record.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set, Tuple

from .token_counter import TokenUsage, UsageMetrics

logger = logging.getLogger(__name__)

TOKENS_PER_MILLION = Decimal("1000000")

# Cache reads are billed at 10% of the full input rate.
CACHE_READ_MULTIPLIER = 0.1

DEFAULT_FAMILY = "sonnet"

COST_DECIMAL_PLACES = 4

_DATE_PATTERN = re.compile(r"\d{8}")
_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class CatalogueEntry:
    """Published list price for one model, in USD per million tokens."""
    family: str
    released: date
    input_per_million: Decimal
    output_per_million: Decimal


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    model: str
    family: str
    input_rate_per_token: float
    output_rate_per_token: float

    @classmethod
    def from_catalogue(cls, model: str, entry: CatalogueEntry) -> "ModelPricing":
        return cls(
            model=model,
            family=entry.family,
            input_rate_per_token=float(entry.input_per_million / TOKENS_PER_MILLION),
            output_rate_per_token=float(entry.output_per_million / TOKENS_PER_MILLION),
        )


# Fixed catalogue - changes require a release, never a runtime update
PRICING_CATALOGUE: Mapping[str, CatalogueEntry] = MappingProxyType({
    "claude-3-opus-20240229": CatalogueEntry(
        family="opus",
        released=date(2024, 2, 29),
        input_per_million=Decimal("15.00"),
        output_per_million=Decimal("75.00"),
    ),
    "claude-opus-4-20250514": CatalogueEntry(
        family="opus",
        released=date(2025, 5, 14),
        input_per_million=Decimal("15.00"),
        output_per_million=Decimal("75.00"),
    ),
    "claude-opus-4-1-20250805": CatalogueEntry(
        family="opus",
        released=date(2025, 8, 5),
        input_per_million=Decimal("15.00"),
        output_per_million=Decimal("75.00"),
    ),
    "claude-3-5-sonnet-20241022": CatalogueEntry(
        family="sonnet",
        released=date(2024, 10, 22),
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
    ),
    "claude-sonnet-4-20250514": CatalogueEntry(
        family="sonnet",
        released=date(2025, 5, 14),
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
    ),
    "claude-sonnet-4-5-20250929": CatalogueEntry(
        family="sonnet",
        released=date(2025, 9, 29),
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
    ),
    "claude-3-haiku-20240307": CatalogueEntry(
        family="haiku",
        released=date(2024, 3, 7),
        input_per_million=Decimal("0.25"),
        output_per_million=Decimal("1.25"),
    ),
    "claude-3-5-haiku-20241022": CatalogueEntry(
        family="haiku",
        released=date(2024, 10, 22),
        input_per_million=Decimal("0.80"),
        output_per_million=Decimal("4.00"),
    ),
    "claude-haiku-4-5-20251001": CatalogueEntry(
        family="haiku",
        released=date(2025, 10, 1),
        input_per_million=Decimal("1.00"),
        output_per_million=Decimal("5.00"),
    ),
})


def _version_tag(name: str, family: str) -> str:
    """Extract the numeric version of a model name, e.g. ``"3-5"`` or ``"4-5"``.

    Release dates, the vendor prefix and the family word are ignored so that
    ``claude-3-5-sonnet-latest`` and ``claude-3.5-sonnet`` share the tag of
    ``claude-3-5-sonnet-20241022``.
    """
    normalized = _DATE_PATTERN.sub("", name.lower())
    tokens = [t for t in _TOKEN_SPLIT.split(normalized) if t and t != family]
    return "-".join(t for t in tokens if t.isdigit())


@dataclass(frozen=True)
class PricingTable:
    """Read-only pricing table with family-aware resolution."""
    catalogue: Mapping[str, CatalogueEntry]
    default_family: str = DEFAULT_FAMILY
    _warned: Set[str] = field(default_factory=set, compare=False, repr=False)

    @property
    def families(self) -> List[str]:
        return sorted({entry.family for entry in self.catalogue.values()})

    def _variants(self, family: str) -> List[Tuple[str, CatalogueEntry]]:
        """Catalogue entries of a family, newest release first."""
        variants = [(name, e) for name, e in self.catalogue.items() if e.family == family]
        return sorted(variants, key=lambda item: (item[1].released, item[0]), reverse=True)

    def _pick_variant(self, family: str, normalized_model: str) -> ModelPricing:
        """Choose the priced variant of a family for a model string.

        A release date or version tag in the string names one generation
        (``claude-3-5-haiku-latest`` is 3.5 Haiku, not the newest Haiku), so
        it wins when it matches a catalogue variant. Otherwise the most
        recently released variant is used.
        """
        variants = self._variants(family)

        dates = set(_DATE_PATTERN.findall(normalized_model))
        for name, entry in variants:
            if entry.released.strftime("%Y%m%d") in dates:
                return ModelPricing.from_catalogue(name, entry)

        wanted = _version_tag(normalized_model, family)
        if wanted:
            for name, entry in variants:
                if _version_tag(name, family) == wanted:
                    return ModelPricing.from_catalogue(name, entry)

        name, entry = variants[0]
        return ModelPricing.from_catalogue(name, entry)

    def _warn_once(self, key: str, message: str, *args) -> None:
        if key in self._warned:
            return
        self._warned.add(key)
        logger.warning(message, *args)

    def get_pricing(self, model: Optional[str]) -> ModelPricing:
        """Resolve pricing for a model identifier.

        Resolution order: exact catalogue match, case-folded family substring
        match (preferring the variant named by date or version, otherwise the
        newest release), and finally the default family.

        Args:
            model: Model identifier as recorded in the log

        Returns:
            ModelPricing for the model. Never raises for unknown models.
        """
        if model and model in self.catalogue:
            return ModelPricing.from_catalogue(model, self.catalogue[model])

        normalized = (model or "").strip().casefold()
        if normalized in self.catalogue:
            return ModelPricing.from_catalogue(normalized, self.catalogue[normalized])

        matched = [family for family in self.families if normalized and family in normalized]
        if len(matched) > 1:
            # Deterministic tie-break: the family with the most recent release wins
            matched.sort(key=lambda f: (self._variants(f)[0][1].released, f), reverse=True)
            self._warn_once(
                f"ambiguous:{normalized}",
                "Model %r matches several pricing families %s; using %r",
                model, sorted(matched), matched[0],
            )
        if matched:
            return self._pick_variant(matched[0], normalized)

        self._warn_once(
            f"unknown:{model}",
            "Unknown model %r, falling back to %r pricing",
            model, self.default_family,
        )
        return self._pick_variant(self.default_family, "")


PRICING_TABLE = PricingTable(PRICING_CATALOGUE)


def resolve_pricing(model: Optional[str]) -> ModelPricing:
    """Resolve a model identifier against the default pricing table."""
    return PRICING_TABLE.get_pricing(model)


def compute_usage_metrics(
    usage: Optional[TokenUsage],
    model: Optional[str],
    table: PricingTable = PRICING_TABLE,
) -> UsageMetrics:
    """Compute token breakdown and cost for one record.

    cost = (new input + cache creation) * input rate
           + cache read * input rate * 0.1
           + output * output rate

    Cost keeps full float precision; rounding happens at serialization only.
    """
    usage = usage or TokenUsage()
    pricing = table.get_pricing(model)

    new_input = usage.input_tokens
    creation = usage.cache_creation_input_tokens
    read = usage.cache_read_input_tokens
    output = usage.output_tokens

    cost = (
        (new_input + creation) * pricing.input_rate_per_token
        + read * pricing.input_rate_per_token * CACHE_READ_MULTIPLIER
        + output * pricing.output_rate_per_token
    )

    return UsageMetrics(
        new_input_tokens=new_input,
        cache_creation_tokens=creation,
        cache_read_tokens=read,
        output_tokens=output,
        cost=cost,
    )


def calculate_cost(model: Optional[str], usage: TokenUsage) -> float:
    """Full-precision cost of a usage block for a model."""
    return compute_usage_metrics(usage, model).cost


def format_cost(value: float, places: int = COST_DECIMAL_PLACES) -> str:
    """Format an accumulated cost to fixed decimal places for output."""
    quantum = Decimal(1).scaleb(-places)
    return str(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def get_all_pricing_rates() -> Dict[str, Dict[str, object]]:
    """Catalogue rates in USD per million tokens, keyed by model."""
    return {
        name: {
            "family": entry.family,
            "released": entry.released.isoformat(),
            "input_per_million": entry.input_per_million,
            "output_per_million": entry.output_per_million,
        }
        for name, entry in PRICING_CATALOGUE.items()
    }
