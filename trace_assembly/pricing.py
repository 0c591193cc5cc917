"""Pricing table: (vendor, model) to per-token rates.

The table is an immutable lookup supplied from outside the assembly core
(built-in rates, or a JSON file named by PRICING_TABLE_PATH). Lookups are
case-insensitive on vendor and model. Coverage is never complete, new models
ship faster than pricing metadata, so a miss simply returns None.
"""

import json
import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from . import config
from .models import PricingEntry

logger = logging.getLogger(__name__)

PricingKey = Tuple[str, str]


class ModelAlias(BaseModel):
    """Price models containing `pattern` as the listed `model` of the same vendor."""

    model_config = ConfigDict(frozen=True)

    vendor: str
    pattern: str
    model: str


class RateSpec(BaseModel):
    input: float = Field(..., ge=0)
    output: float = Field(..., ge=0)


class PricingDocument(BaseModel):
    """Shape of a pricing JSON file.

    Example
    -------
        {
          "unit": "1k",
          "vendors": {"openai": {"gpt-4": {"input": 0.03, "output": 0.06}}},
          "aliases": [{"vendor": "openai", "pattern": "gpt-4", "model": "gpt-4"}]
        }
    """

    unit: Literal["1k", "token"] = "1k"
    vendors: Dict[str, Dict[str, RateSpec]] = Field(default_factory=dict)
    aliases: List[ModelAlias] = Field(default_factory=list)


def _key(vendor: str, model: str) -> PricingKey:
    return vendor.strip().lower(), model.strip().lower()


class PricingTable:
    """Immutable, case-insensitive (vendor, model) -> PricingEntry lookup."""

    def __init__(
        self,
        entries: Mapping[PricingKey, PricingEntry],
        aliases: Iterable[ModelAlias] = (),
    ):
        self._entries: Mapping[PricingKey, PricingEntry] = MappingProxyType(
            {_key(vendor, model): entry for (vendor, model), entry in entries.items()}
        )
        self._aliases: Tuple[ModelAlias, ...] = tuple(
            ModelAlias(
                vendor=alias.vendor.strip().lower(),
                pattern=alias.pattern.strip().lower(),
                model=alias.model.strip().lower(),
            )
            for alias in aliases
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        return self.lookup(*key) is not None

    def __iter__(self) -> Iterator[PricingKey]:
        return iter(self._entries)

    @property
    def aliases(self) -> Tuple[ModelAlias, ...]:
        return self._aliases

    def lookup(self, vendor: Optional[str], model: Optional[str]) -> Optional[PricingEntry]:
        """Find the rates for a vendor/model pair.

        Tries the exact pair first, then the vendor's aliases in order.

        Returns
        -------
        Optional[PricingEntry]
            The rates, or None when the pair is not priced.
        """
        if not vendor or not model:
            return None
        vendor_key, model_key = _key(vendor, model)
        entry = self._entries.get((vendor_key, model_key))
        if entry is not None:
            return entry
        for alias in self._aliases:
            if alias.vendor == vendor_key and alias.pattern in model_key:
                entry = self._entries.get((vendor_key, alias.model))
                if entry is not None:
                    return entry
        return None

    @classmethod
    def from_rates_per_1k(
        cls,
        vendors: Mapping[str, Mapping[str, Mapping[str, float]]],
        aliases: Iterable[ModelAlias] = (),
    ) -> "PricingTable":
        """Build a table from rates quoted per 1,000 tokens."""
        document = PricingDocument(unit="1k", vendors=vendors, aliases=list(aliases))
        return cls._from_document(document)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingTable":
        """Build a table from a parsed pricing document.

        Raises
        ------
        pydantic.ValidationError
            If the document does not have the expected shape.
        """
        return cls._from_document(PricingDocument.model_validate(data))

    @classmethod
    def from_file(cls, path: str) -> "PricingTable":
        """Load a table from a JSON pricing document on disk."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        table = cls.from_dict(data)
        logger.info(f"Loaded pricing table from {path} ({len(table)} entries)")
        return table

    @classmethod
    def _from_document(cls, document: PricingDocument) -> "PricingTable":
        divisor = 1000.0 if document.unit == "1k" else 1.0
        entries = {
            (vendor, model): PricingEntry(
                input_rate=rates.input / divisor,
                output_rate=rates.output / divisor,
            )
            for vendor, models in document.vendors.items()
            for model, rates in models.items()
        }
        return cls(entries, document.aliases)


# Built-in rates, USD per 1,000 tokens
OPENAI_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-4-32k": {"input": 0.06, "output": 0.12},
    "gpt-4-0125-preview": {"input": 0.01, "output": 0.03},
    "gpt-4-1106-preview": {"input": 0.01, "output": 0.03},
    "gpt-4-1106-vision-preview": {"input": 0.01, "output": 0.03},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    "gpt-3.5-turbo-0125": {"input": 0.0005, "output": 0.0015},
    "gpt-3.5-turbo-instruct": {"input": 0.0015, "output": 0.002},
}

ANTHROPIC_PRICING: Dict[str, Dict[str, float]] = {
    "claude-3-haiku": {"input": 0.00025, "output": 0.00125},
    "claude-3-sonnet": {"input": 0.003, "output": 0.015},
    "claude-3-opus": {"input": 0.015, "output": 0.075},
    "claude-2.1": {"input": 0.008, "output": 0.024},
    "claude-2.0": {"input": 0.008, "output": 0.024},
    "claude-instant": {"input": 0.0008, "output": 0.0024},
}

PERPLEXITY_PRICING: Dict[str, Dict[str, float]] = {
    "sonar-small-chat": {"input": 0.0002, "output": 0.0002},
    "sonar-small-online": {"input": 0.0002, "output": 0.0002},
    "sonar-medium-chat": {"input": 0.0006, "output": 0.0006},
    "sonar-medium-online": {"input": 0.0006, "output": 0.0006},
    "mistral-7b-instruct": {"input": 0.0002, "output": 0.0002},
    "mixtral-8x7b-instruct": {"input": 0.0006, "output": 0.0018},
}

COHERE_PRICING: Dict[str, Dict[str, float]] = {
    "command-light": {"input": 0.0003, "output": 0.0006},
    "command-light-nightly": {"input": 0.0003, "output": 0.0006},
    "command": {"input": 0.001, "output": 0.002},
    "command-nightly": {"input": 0.001, "output": 0.002},
    "command-r": {"input": 0.0005, "output": 0.0015},
    "command-r-plus": {"input": 0.003, "output": 0.015},
}

# Evaluated in order; the first alias whose target is priced wins
DEFAULT_ALIASES: List[ModelAlias] = [
    ModelAlias(vendor="openai", pattern="gpt-4", model="gpt-4"),
    ModelAlias(vendor="anthropic", pattern="opus", model="claude-3-opus"),
    ModelAlias(vendor="anthropic", pattern="sonnet", model="claude-3-sonnet"),
    ModelAlias(vendor="anthropic", pattern="haiku", model="claude-3-haiku"),
    ModelAlias(vendor="anthropic", pattern="claude-2.1", model="claude-2.1"),
    ModelAlias(vendor="anthropic", pattern="claude-2.0", model="claude-2.0"),
    ModelAlias(vendor="anthropic", pattern="instant", model="claude-instant"),
]


def builtin_pricing_table() -> PricingTable:
    """The built-in OpenAI, Anthropic, Perplexity and Cohere rates."""
    return PricingTable.from_rates_per_1k(
        {
            "openai": OPENAI_PRICING,
            "anthropic": ANTHROPIC_PRICING,
            "perplexity": PERPLEXITY_PRICING,
            "cohere": COHERE_PRICING,
        },
        DEFAULT_ALIASES,
    )


def default_pricing_table() -> PricingTable:
    """Pricing table from PRICING_TABLE_PATH when set, else the built-in one."""
    if config.PRICING_TABLE_PATH:
        return PricingTable.from_file(config.PRICING_TABLE_PATH)
    return builtin_pricing_table()
