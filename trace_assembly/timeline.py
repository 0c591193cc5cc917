"""Timeline mapper: proportional layout of a span forest.

All positioning is pre-computed here so the rendering layer only draws.
Every span of a trace shares one coordinate system: offsets are measured
from the trace start and scaled by `width / total_duration`, where the
total duration spans the whole trace rather than a subtree.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from . import config
from .hierarchy import walk
from .models import Span

logger = logging.getLogger(__name__)


class TimelineEntry(BaseModel):
    """Position of one span on the timeline, in layout units."""

    offset: float
    length: float
    depth: int = 0


class AxisTick(BaseModel):
    """One labelled mark on the time axis."""

    offset: float
    label: str


def _millis_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000


def _flatten(spans: Iterable[Span]) -> List[Span]:
    """All spans of a forest, nested children included."""
    return [span for span, _ in walk(spans)]


def trace_bounds(spans: Iterable[Span]) -> Tuple[Optional[datetime], float]:
    """Compute the trace start and total duration.

    Parameters
    ----------
    spans : Iterable[Span]
        Root spans (children are included) or a flat span list.

    Returns
    -------
    Tuple[Optional[datetime], float]
        Earliest start time (None when there are no spans) and
        `max(end_time) - min(start_time)` in milliseconds.
    """
    all_spans = _flatten(spans)
    if not all_spans:
        return None, 0.0
    start = min(span.start_time for span in all_spans)
    end = max(span.end_time for span in all_spans)
    return start, _millis_between(start, end)


def layout(
    forest: Iterable[Span],
    total_duration: Optional[float] = None,
    trace_start: Optional[datetime] = None,
    width: float = config.TIMELINE_WIDTH,
    min_length: float = config.TIMELINE_MIN_LENGTH,
) -> Dict[str, TimelineEntry]:
    """Map every span of a forest to an offset and length.

    Parameters
    ----------
    forest : Iterable[Span]
        Root spans with children populated.
    total_duration : Optional[float]
        Trace duration in milliseconds; computed from the forest when None.
    trace_start : Optional[datetime]
        Reference instant for offset 0; the earliest start when None.
    width : float
        Layout width W, in layout units.
    min_length : float
        Floor applied to span lengths so zero-length spans stay visible.

    Returns
    -------
    Dict[str, TimelineEntry]
        Entry per span id, in tree (pre-)order.
    """
    roots = list(forest)
    if not roots:
        return {}

    if total_duration is None or trace_start is None:
        bounds_start, bounds_duration = trace_bounds(roots)
        if trace_start is None:
            trace_start = bounds_start
        if total_duration is None:
            total_duration = bounds_duration

    # a zero duration trace collapses to offset 0
    scale = width / total_duration if total_duration and total_duration > 0 else 0.0

    entries: Dict[str, TimelineEntry] = {}
    for span, depth in walk(roots):
        offset = _millis_between(trace_start, span.start_time) * scale
        length = span.duration_ms * scale
        entries[span.span_id] = TimelineEntry(
            offset=offset,
            length=max(length, min_length),
            depth=depth,
        )
    return entries


def format_duration(duration_ms: float) -> str:
    """Format a duration for display (e.g., "0ms", "250ms", "1.50s")."""
    if duration_ms < 1000:
        return f"{round(duration_ms, 2):g}ms"
    return f"{duration_ms / 1000:.2f}s"


def axis_ticks(
    total_duration: float,
    steps: int = config.TIMELINE_AXIS_STEPS,
    width: float = config.TIMELINE_WIDTH,
) -> List[AxisTick]:
    """Evenly spaced time axis marks from 0 to the total duration."""
    if steps <= 0:
        return []
    step_ms = max(total_duration, 0.0) / steps
    return [
        AxisTick(offset=width * i / steps, label=format_duration(step_ms * i))
        for i in range(steps + 1)
    ]
