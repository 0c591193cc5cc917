"""Hierarchy builder: reconstruct the call tree of a trace.

Instrumentation SDKs often do not send parent ids on every code path, so
nesting is inferred from time-interval containment with a single sorted
pass over an explicit stack of open spans.

The forest is first built as an arena (`SpanForest`: spans indexed by id,
parent-to-children edges stored as id lists) and only then materialized into
`Span` copies with `children` populated. Input spans are never mutated.
"""

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from .models import Span

logger = logging.getLogger(__name__)


class SpanForest(BaseModel):
    """Arena representation of a trace's span forest.

    Attributes
    ----------
    spans : Dict[str, Span]
        Spans by id, in hierarchy sort order.
    roots : List[str]
        Ids of root spans, in temporal order.
    children : Dict[str, List[str]]
        Ids of the direct children of each span, in temporal order.
    parents : Dict[str, Optional[str]]
        Parent id of each span (None for roots). Kept for debugging.
    """

    spans: Dict[str, Span] = Field(default_factory=dict)
    roots: List[str] = Field(default_factory=list)
    children: Dict[str, List[str]] = Field(default_factory=dict)
    parents: Dict[str, Optional[str]] = Field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.spans)

    def parent_of(self, span_id: str) -> Optional[Span]:
        parent_id = self.parents.get(span_id)
        return self.spans.get(parent_id) if parent_id else None

    def _link(self, span_id: str, parent_id: Optional[str]) -> None:
        self.parents[span_id] = parent_id
        self.children.setdefault(span_id, [])
        if parent_id is None:
            self.roots.append(span_id)
        else:
            self.children.setdefault(parent_id, []).append(span_id)

    def materialize(self) -> List[Span]:
        """Return root `Span` copies with `children` populated recursively."""
        built: Dict[str, Span] = {}
        for root_id in self.roots:
            # iterative post-order, children are built before their parent
            stack: List[Tuple[str, bool]] = [(root_id, False)]
            while stack:
                span_id, expanded = stack.pop()
                child_ids = self.children.get(span_id, [])
                if expanded:
                    built[span_id] = self.spans[span_id].model_copy(
                        update={"children": [built[c] for c in child_ids]}
                    )
                else:
                    stack.append((span_id, True))
                    stack.extend((c, False) for c in child_ids)
        return [built[root_id] for root_id in self.roots]


def _unique(spans: Iterable[Span]) -> List[Span]:
    """Drop repeated span ids, keeping the first occurrence."""
    seen = set()
    result: List[Span] = []
    for span in spans:
        if span.span_id in seen:
            logger.debug(f"Ignoring duplicate span id {span.span_id} in trace {span.trace_id}")
            continue
        seen.add(span.span_id)
        result.append(span)
    return result


def sort_for_hierarchy(spans: Iterable[Span]) -> List[Span]:
    """Sort by start ascending, then end descending, then encounter order.

    Among spans opened at the same instant the one closing last is taken as
    the outer one. Python's sort is stable (also with reverse=True), so
    equal intervals keep their encounter order.
    """
    by_end = sorted(spans, key=lambda s: s.end_time, reverse=True)
    return sorted(by_end, key=lambda s: s.start_time)


def build_forest(spans: Iterable[Span]) -> SpanForest:
    """Infer the span forest from interval containment.

    Spans are visited in `sort_for_hierarchy` order while a stack holds the
    spans still open. For each span, closed spans (end <= its start) are
    popped; the nearest open span that also contains its end becomes its
    parent, otherwise it is a root. The span is then pushed.

    With properly nested intervals the parent is always the top of the
    stack. A span partially overlapping the top is attached to the nearest
    open span that fully contains it instead, so a parent always contains
    its children.

    Parameters
    ----------
    spans : Iterable[Span]
        All spans of one trace, in any order.

    Returns
    -------
    SpanForest
        The arena; empty input yields an empty forest.
    """
    forest = SpanForest()
    stack: List[Span] = []

    for span in sort_for_hierarchy(_unique(spans)):
        while stack and stack[-1].end_time <= span.start_time:
            stack.pop()

        parent: Optional[Span] = None
        for candidate in reversed(stack):
            if candidate.end_time > span.start_time and candidate.end_time >= span.end_time:
                parent = candidate
                break

        forest.spans[span.span_id] = span
        forest._link(span.span_id, parent.span_id if parent else None)
        stack.append(span)

    return forest


def build(spans: Iterable[Span]) -> List[Span]:
    """Build the span hierarchy of one trace from time containment.

    Returns the root spans, in temporal order, each with a fully populated
    `children` tree.
    """
    return build_forest(spans).materialize()


def build_forest_from_parent_ids(spans: Iterable[Span]) -> SpanForest:
    """Build the forest from explicit `parent_id` links.

    Spans whose parent is missing from the batch become roots, as does any
    span that would close a parent cycle.
    """
    forest = SpanForest()
    ordered = sort_for_hierarchy(_unique(spans))
    for span in ordered:
        forest.spans[span.span_id] = span

    parent_ids: Dict[str, Optional[str]] = {}
    for span in ordered:
        parent_id = span.parent_id
        if parent_id and parent_id != span.span_id and parent_id in forest.spans:
            parent_ids[span.span_id] = parent_id
        else:
            parent_ids[span.span_id] = None

    for span in ordered:
        # walk up; reaching ourselves again means a cycle
        seen = {span.span_id}
        current = parent_ids[span.span_id]
        while current is not None:
            if current in seen:
                logger.debug(f"Parent cycle at span {span.span_id}, treating it as a root")
                parent_ids[span.span_id] = None
                break
            seen.add(current)
            current = parent_ids[current]

    for span in ordered:
        forest._link(span.span_id, parent_ids[span.span_id])
    return forest


def build_from_parent_ids(spans: Iterable[Span]) -> List[Span]:
    """Build the span hierarchy from explicit parent ids."""
    return build_forest_from_parent_ids(spans).materialize()


def walk(roots: Iterable[Span]) -> Iterator[Tuple[Span, int]]:
    """Depth-first pre-order traversal yielding (span, depth), roots at depth 0."""
    stack: List[Tuple[Span, int]] = [(root, 0) for root in reversed(list(roots))]
    while stack:
        span, depth = stack.pop()
        yield span, depth
        stack.extend((child, depth + 1) for child in reversed(span.children))


def find_parent(forest: SpanForest, span_id: str) -> Optional[Span]:
    """Look up the parent of a span, for debugging."""
    return forest.parent_of(span_id)
