"""Trace assembly: from a trace's spans to everything the renderer needs.

`assemble_trace` ties the pieces together for one trace: hierarchy, timeline
layout, cost, plus the summary fields shown in the trace list (status,
vendors, models, prompts/responses, tool calls).
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from . import config
from .cache import merge
from .cost import CostReport, aggregate
from .hierarchy import build, build_from_parent_ids, sort_for_hierarchy
from .models import RawSpan, Span
from .normalizer import EPOCH, decode_json, group_by_trace, normalize_batch
from .pricing import PricingTable, default_pricing_table
from .timeline import AxisTick, TimelineEntry, axis_ticks, layout, trace_bounds

logger = logging.getLogger(__name__)

PROMPT_EVENT = "gen_ai.content.prompt"
COMPLETION_EVENT = "gen_ai.content.completion"
PROMPT_EVENT_KEY = "gen_ai.prompt"
COMPLETION_EVENT_KEY = "gen_ai.completion"


class ToolCall(BaseModel):
    """A tool/function call requested by an LLM within the trace."""

    id: str = ""
    type: str = "function"
    name: str
    arguments: str
    timestamp: Optional[datetime] = None
    count: int = 1


class Message(BaseModel):
    """Prompt and response content recorded on one span."""

    span_id: str
    prompts: List[Any] = Field(default_factory=list)
    responses: List[Any] = Field(default_factory=list)


class AssembledTrace(BaseModel):
    """One trace, ready for rendering.

    Attributes
    ----------
    trace_id : str
        Identifier shared by all spans of the trace.
    status : str
        "error" if any span errored, otherwise "success".
    namespace : str
        Name of the first root span.
    roots : List[Span]
        Span forest with children populated.
    layout : Dict[str, TimelineEntry]
        Timeline position of every span.
    axis : List[AxisTick]
        Time axis marks for the timeline.
    cost : CostReport
        Token usage and cost of the trace.
    """

    trace_id: str = ""
    status: str = "success"
    session_id: str = ""
    service_type: str = "session"
    namespace: str = ""
    vendors: List[str] = Field(default_factory=list)
    models: List[str] = Field(default_factory=list)
    user_ids: List[str] = Field(default_factory=list)
    prompt_ids: List[str] = Field(default_factory=list)
    prompt_versions: List[str] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)
    tool_calls: List[ToolCall] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    total_duration_ms: float = 0.0
    span_count: int = 0
    roots: List[Span] = Field(default_factory=list)
    layout: Dict[str, TimelineEntry] = Field(default_factory=dict)
    axis: List[AxisTick] = Field(default_factory=list)
    cost: CostReport = Field(default_factory=CostReport)

    @property
    def is_empty(self) -> bool:
        return self.span_count == 0


def trace_key(trace: AssembledTrace) -> str:
    return trace.trace_id


def trace_start(trace: AssembledTrace) -> Any:
    # empty traces sort last
    return trace.start_time or EPOCH


# =============================================================================
# TOOL CALLS & MESSAGES
# =============================================================================

def _tool_call(item: Any, timestamp: datetime, fallback_id: str = "") -> Optional[ToolCall]:
    """Build a ToolCall from an OpenAI style `{"function": {...}}` entry."""
    if not isinstance(item, dict):
        return None
    function = item.get("function")
    if not isinstance(function, dict):
        return None
    name, arguments = function.get("name"), function.get("arguments")
    if not name or not arguments:
        return None
    return ToolCall(
        id=str(item.get("id") or fallback_id),
        type=str(item.get("type") or "function"),
        name=str(name),
        arguments=arguments if isinstance(arguments, str) else str(arguments),
        timestamp=timestamp,
    )


def _message_tool_calls(message: Any, timestamp: datetime) -> List[ToolCall]:
    if not isinstance(message, dict):
        return []
    calls: List[ToolCall] = []

    tool_calls = message.get("tool_calls")
    if isinstance(tool_calls, list):
        calls.extend(c for c in (_tool_call(t, timestamp) for t in tool_calls) if c)

    function_call = message.get("function_call")
    if isinstance(function_call, dict):
        call = _tool_call(
            {"type": "function", "function": function_call},
            timestamp,
            fallback_id=str(message.get("id") or ""),
        )
        if call:
            calls.append(call)

    # some SDKs put the tool call list, JSON-encoded, in the content
    content = message.get("content")
    if isinstance(content, str):
        parsed = decode_json(content)
        if isinstance(parsed, list):
            calls.extend(c for c in (_tool_call(i, timestamp) for i in parsed) if c)
    return calls


def extract_tool_calls(span: Span) -> List[ToolCall]:
    """Tool calls found in a span's prompt and completion events."""
    calls: List[ToolCall] = []
    for event in span.events:
        attributes = event.get("attributes")
        if not isinstance(attributes, dict):
            continue

        if event.get("name") == PROMPT_EVENT and attributes.get(PROMPT_EVENT_KEY):
            history = decode_json(attributes[PROMPT_EVENT_KEY])
            if isinstance(history, list):
                for message in history:
                    calls.extend(_message_tool_calls(message, span.start_time))

        if event.get("name") == COMPLETION_EVENT and attributes.get(COMPLETION_EVENT_KEY):
            completion = decode_json(attributes[COMPLETION_EVENT_KEY])
            messages = completion if isinstance(completion, list) else [completion]
            for message in messages:
                calls.extend(_message_tool_calls(message, span.start_time))
    return calls


def _count_tool_calls(calls: Iterable[ToolCall]) -> List[ToolCall]:
    """One entry per tool name carrying the call count, ordered by first use."""
    counts: Dict[str, int] = {}
    first: Dict[str, ToolCall] = {}
    for call in sorted(calls, key=lambda c: c.timestamp or EPOCH):
        counts[call.name] = counts.get(call.name, 0) + 1
        first.setdefault(call.name, call)
    return [
        call.model_copy(update={"count": counts[name]})
        for name, call in first.items()
    ]


def _event_content(span: Span, event_name: str, key: str) -> List[Any]:
    for event in span.events:
        attributes = event.get("attributes")
        if event.get("name") == event_name and isinstance(attributes, dict):
            if attributes.get(key):
                return [attributes[key]]
    return []


def extract_messages(span: Span) -> List[Message]:
    """Prompt/response content from attributes and from content events."""
    messages: List[Message] = []
    semantics = span.semantics
    if semantics.prompts or semantics.responses:
        messages.append(Message(
            span_id=span.span_id,
            prompts=[semantics.prompts] if semantics.prompts else [],
            responses=[semantics.responses] if semantics.responses else [],
        ))

    prompts = _event_content(span, PROMPT_EVENT, PROMPT_EVENT_KEY)
    responses = _event_content(span, COMPLETION_EVENT, COMPLETION_EVENT_KEY)
    if prompts or responses:
        messages.append(Message(span_id=span.span_id, prompts=prompts, responses=responses))
    return messages


# =============================================================================
# ASSEMBLY
# =============================================================================

def _unique_in_order(values: Iterable[Optional[str]]) -> List[str]:
    result: List[str] = []
    for value in values:
        if value and value not in result:
            result.append(value)
    return result


def assemble_trace(
    spans: Iterable[Span],
    pricing: Optional[PricingTable] = None,
    use_parent_ids: bool = False,
    width: float = config.TIMELINE_WIDTH,
) -> AssembledTrace:
    """Assemble one trace from its spans.

    Parameters
    ----------
    spans : Iterable[Span]
        All spans sharing one trace id, in any order.
    pricing : Optional[PricingTable]
        Rates for cost aggregation; the default table when None.
    use_parent_ids : bool
        Link spans through their explicit parent ids instead of inferring
        nesting from time containment.
    width : float
        Timeline layout width.

    Returns
    -------
    AssembledTrace
        The assembled trace; no spans gives an empty trace.
    """
    spans = list(spans)
    if not spans:
        return AssembledTrace()
    if pricing is None:
        pricing = default_pricing_table()

    roots = build_from_parent_ids(spans) if use_parent_ids else build(spans)
    start, total_duration = trace_bounds(spans)
    ordered = sort_for_hierarchy(spans)

    session_id = ""
    service_type = "session"
    tool_calls: List[ToolCall] = []
    messages: List[Message] = []
    for span in ordered:
        semantics = span.semantics
        session_id = semantics.session_id or session_id
        service_type = semantics.service_type or service_type
        tool_calls.extend(extract_tool_calls(span))
        messages.extend(extract_messages(span))

    return AssembledTrace(
        trace_id=spans[0].trace_id,
        status="error" if any(span.has_error for span in spans) else "success",
        session_id=session_id,
        service_type=service_type,
        namespace=roots[0].name if roots else "",
        vendors=_unique_in_order(s.semantics.vendor for s in ordered),
        models=_unique_in_order(s.semantics.model for s in ordered),
        user_ids=[s.semantics.user_id for s in ordered if s.semantics.user_id],
        prompt_ids=[s.semantics.prompt_id for s in ordered if s.semantics.prompt_id],
        prompt_versions=[
            s.semantics.prompt_version for s in ordered if s.semantics.prompt_version
        ],
        messages=messages,
        tool_calls=_count_tool_calls(tool_calls),
        start_time=start,
        total_duration_ms=total_duration,
        span_count=len(spans),
        roots=roots,
        layout=layout(roots, total_duration, start, width=width),
        axis=axis_ticks(total_duration, width=width),
        cost=aggregate(spans, pricing),
    )


def assemble_spans(
    spans: Iterable[Span],
    pricing: Optional[PricingTable] = None,
    use_parent_ids: bool = False,
) -> List[AssembledTrace]:
    """Group normalized spans per trace and assemble each trace.

    Returns
    -------
    List[AssembledTrace]
        One entry per trace id, newest trace first.
    """
    if pricing is None:
        pricing = default_pricing_table()
    traces = [
        assemble_trace(group, pricing, use_parent_ids=use_parent_ids)
        for group in group_by_trace(spans).values()
    ]
    return merge([], traces, key=trace_key, sort_key=trace_start)


def assemble_traces(
    raw_spans: Iterable[Union[RawSpan, Dict[str, Any]]],
    pricing: Optional[PricingTable] = None,
    use_parent_ids: bool = False,
) -> List[AssembledTrace]:
    """Run the full pipeline on raw records: normalize, group, assemble."""
    return assemble_spans(normalize_batch(raw_spans), pricing, use_parent_ids)
