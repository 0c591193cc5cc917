"""Usage and cost aggregation.

Token counts come from the typed usage view built by the normalizer; rates
come from a `PricingTable`. A span whose vendor/model is not priced costs
zero and is listed in `CostReport.unpriced_span_ids`, nothing is raised or
logged per span.

Totals are summed with `math.fsum`, which is exactly rounded, so the result
does not depend on the order spans are processed in. This matters because
spans arrive page by page.
"""

import math
import logging
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .models import CostBreakdown, Span
from .pricing import PricingTable, default_pricing_table

logger = logging.getLogger(__name__)


class SpanUsage(BaseModel):
    """Token counts and cost of a single span."""

    span_id: str
    vendor: str = ""
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    total_tokens: int = 0
    cost: CostBreakdown = Field(default_factory=CostBreakdown)
    # False when the span reported usage that no pricing entry matched
    priced: bool = True


class TokenTotals(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    total_tokens: int = 0


class CostReport(BaseModel):
    """Aggregated cost of a set of spans.

    Attributes
    ----------
    cost : CostBreakdown
        Summed monetary cost.
    tokens : TokenTotals
        Summed token counts, priced or not.
    spans : List[SpanUsage]
        Per-span usage, ordered by span id.
    unpriced_span_ids : List[str]
        Spans that carried token usage but matched no pricing entry, for
        optional surfacing by the UI.
    """

    cost: CostBreakdown = Field(default_factory=CostBreakdown)
    tokens: TokenTotals = Field(default_factory=TokenTotals)
    spans: List[SpanUsage] = Field(default_factory=list)
    unpriced_span_ids: List[str] = Field(default_factory=list)

    @property
    def has_unpriced(self) -> bool:
        return bool(self.unpriced_span_ids)


def span_usage(span: Span, pricing: PricingTable) -> SpanUsage:
    """Extract token counts from a span and price them."""
    semantics = span.semantics
    usage = semantics.usage
    if usage is None:
        return SpanUsage(
            span_id=span.span_id, vendor=semantics.vendor, model=semantics.model
        )

    counts = dict(
        span_id=span.span_id,
        vendor=semantics.vendor,
        model=semantics.model,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        cached_input_tokens=usage.cached_input_tokens,
        total_tokens=usage.total_tokens,
    )

    entry = pricing.lookup(semantics.vendor, semantics.model)
    if entry is None:
        return SpanUsage(**counts, priced=False)

    cost = CostBreakdown.from_parts(
        input=usage.input_tokens * entry.input_rate,
        output=usage.output_tokens * entry.output_rate,
    )
    return SpanUsage(**counts, cost=cost)


def summarize(usages: Iterable[SpanUsage]) -> CostReport:
    """Combine per-span usage into a report, independent of input order."""
    ordered = sorted(usages, key=lambda u: u.span_id)
    inputs = [u.cost.input for u in ordered]
    outputs = [u.cost.output for u in ordered]

    return CostReport(
        cost=CostBreakdown(
            total=math.fsum(inputs + outputs),
            input=math.fsum(inputs),
            output=math.fsum(outputs),
        ),
        tokens=TokenTotals(
            input_tokens=sum(u.input_tokens for u in ordered),
            output_tokens=sum(u.output_tokens for u in ordered),
            cached_input_tokens=sum(u.cached_input_tokens for u in ordered),
            total_tokens=sum(u.total_tokens for u in ordered),
        ),
        spans=ordered,
        unpriced_span_ids=[u.span_id for u in ordered if not u.priced],
    )


def aggregate(
    spans: Iterable[Span],
    pricing: Optional[PricingTable] = None,
) -> CostReport:
    """Aggregate token usage and cost over a trace's spans.

    Parameters
    ----------
    spans : Iterable[Span]
        Flat list of spans; `children` are not followed. A span id seen
        twice is counted once.
    pricing : Optional[PricingTable]
        Rates to apply; the default pricing table when None.

    Returns
    -------
    CostReport
        Totals plus per-span usage.
    """
    if pricing is None:
        pricing = default_pricing_table()

    usages: Dict[str, SpanUsage] = {}
    for span in spans:
        if span.span_id not in usages:
            usages[span.span_id] = span_usage(span, pricing)
    return summarize(usages.values())


class CostAccumulator:
    """Running cost totals across incrementally fetched pages.

    Contributions are keyed by span id: a span delivered again on a later
    page is not counted twice, and the first delivery is kept, matching the
    page cache.
    """

    def __init__(self, pricing: Optional[PricingTable] = None):
        self.pricing = pricing if pricing is not None else default_pricing_table()
        self._usages: Dict[str, SpanUsage] = {}

    def __len__(self) -> int:
        return len(self._usages)

    def add(self, spans: Iterable[Span]) -> None:
        for span in spans:
            if span.span_id not in self._usages:
                self._usages[span.span_id] = span_usage(span, self.pricing)

    def report(self) -> CostReport:
        return summarize(self._usages.values())

    def reset(self) -> None:
        self._usages = {}
