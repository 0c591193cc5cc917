"""LLM trace assembly - span normalization, hierarchy, timeline and cost"""

from .models import Span, RawSpan, SpanStatus, SpanPage, CostBreakdown, PricingEntry
from .normalizer import normalize, normalize_batch, parse_timestamp, format_timestamp
from .hierarchy import build, build_from_parent_ids, walk
from .timeline import layout, trace_bounds, axis_ticks
from .pricing import PricingTable, default_pricing_table
from .cost import CostAccumulator, CostReport, aggregate
from .cache import PageCache, merge
from .trace import AssembledTrace, assemble_trace, assemble_traces
from .feed import TraceFeed

__all__ = [
    "Span",
    "RawSpan",
    "SpanStatus",
    "SpanPage",
    "CostBreakdown",
    "PricingEntry",
    "normalize",
    "normalize_batch",
    "parse_timestamp",
    "format_timestamp",
    "build",
    "build_from_parent_ids",
    "walk",
    "layout",
    "trace_bounds",
    "axis_ticks",
    "PricingTable",
    "default_pricing_table",
    "CostAccumulator",
    "CostReport",
    "aggregate",
    "PageCache",
    "merge",
    "AssembledTrace",
    "assemble_trace",
    "assemble_traces",
    "TraceFeed",
]

__version__ = "0.1.0"
