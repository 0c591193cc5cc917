"""Span normalizer.

Turns raw span records into `Span` objects. This never raises: a bad
timestamp, an unparsable attribute bag or a missing id is recovered with a
safe default and recorded in `Span.malformed`, so a single broken record
cannot blank out a whole page.
"""

import re
import json
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from .models import (
    CombinedUsage,
    DiscreteUsage,
    RawSpan,
    Span,
    SpanSemantics,
    SpanStatus,
    safe_int,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Date, time, one or two fractional parts, optional zone.
# The second fractional part covers the "ms.us" form: 2024-01-01T00:00:00.123.456Z
_TIMESTAMP_RE = re.compile(
    r"^(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    r"[Tt ](?P<hour>\d{2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?"
    r"(?:\.(?P<frac>\d+))?(?:\.(?P<subfrac>\d+))?"
    r"\s*(?P<zone>[Zz]|UTC|[+-]\d{2}(?::?\d{2})?)?$"
)
_NUMERIC_RE = re.compile(r"^-?\d+(?:\.\d+)?$")

# Epoch magnitude thresholds, checked largest first
_NANOS_THRESHOLD = 1e17
_MICROS_THRESHOLD = 1e14
_MILLIS_THRESHOLD = 1e11

# Attribute keys consumed by SpanSemantics; everything else lands in `other`
VENDOR_KEY = "langtrace.service.name"
SERVICE_TYPE_KEY = "langtrace.service.type"
MODEL_KEYS = ("gen_ai.response.model", "llm.model", "gen_ai.request.model")
PROMPT_TOKENS_KEY = "gen_ai.usage.prompt_tokens"
COMPLETION_TOKENS_KEY = "gen_ai.usage.completion_tokens"
INPUT_TOKENS_KEY = "gen_ai.usage.input_tokens"
OUTPUT_TOKENS_KEY = "gen_ai.usage.output_tokens"
CACHED_TOKENS_KEY = "gen_ai.usage.cached_tokens"
TOKEN_COUNTS_KEY = "llm.token.counts"
PROMPTS_KEY = "llm.prompts"
RESPONSES_KEY = "llm.responses"
SESSION_KEY = "session.id"
USER_KEY = "user_id"
PROMPT_ID_KEY = "prompt_id"
PROMPT_VERSION_KEY = "prompt_version"

CONSUMED_KEYS = frozenset(
    (
        VENDOR_KEY,
        SERVICE_TYPE_KEY,
        *MODEL_KEYS,
        PROMPT_TOKENS_KEY,
        COMPLETION_TOKENS_KEY,
        INPUT_TOKENS_KEY,
        OUTPUT_TOKENS_KEY,
        CACHED_TOKENS_KEY,
        TOKEN_COUNTS_KEY,
        PROMPTS_KEY,
        RESPONSES_KEY,
        SESSION_KEY,
        USER_KEY,
        PROMPT_ID_KEY,
        PROMPT_VERSION_KEY,
    )
)


# =============================================================================
# TIMESTAMPS
# =============================================================================

def _zone_from_text(zone: Optional[str]) -> timezone:
    if not zone or zone in ("Z", "z", "UTC"):
        return timezone.utc
    sign = -1 if zone[0] == "-" else 1
    digits = zone[1:].replace(":", "")
    hours = int(digits[:2])
    minutes = int(digits[2:4]) if len(digits) >= 4 else 0
    return timezone(sign * timedelta(hours=hours, minutes=minutes))


def _from_epoch_number(value: float) -> Optional[datetime]:
    """Convert an epoch number to a datetime, guessing the unit by magnitude."""
    magnitude = abs(value)
    try:
        if magnitude >= _NANOS_THRESHOLD:
            micros = value / 1_000
        elif magnitude >= _MICROS_THRESHOLD:
            micros = value
        elif magnitude >= _MILLIS_THRESHOLD:
            micros = value * 1_000
        else:
            micros = value * 1_000_000
        return EPOCH + timedelta(microseconds=round(micros))
    except (ValueError, OverflowError):
        return None


def _from_text(value: str) -> Optional[datetime]:
    text = value.strip()
    if not text:
        return None
    if _NUMERIC_RE.match(text):
        try:
            number = float(text) if "." in text else int(text)
        except ValueError:
            # longer than the interpreter's int conversion limit
            return None
        return _from_epoch_number(number)

    match = _TIMESTAMP_RE.match(text)
    if not match:
        return None

    frac = match.group("frac") or ""
    subfrac = match.group("subfrac")
    if subfrac is not None:
        # milliseconds followed by the microseconds within that millisecond
        frac = frac[:3].ljust(3, "0") + subfrac[:3].rjust(3, "0")
    micros = int((frac + "000000")[:6])

    try:
        parsed = datetime(
            int(match.group("year")),
            int(match.group("month")),
            int(match.group("day")),
            int(match.group("hour")),
            int(match.group("minute")),
            int(match.group("second") or 0),
            micros,
            tzinfo=_zone_from_text(match.group("zone")),
        )
    except ValueError:
        return None
    return parsed.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp in any of the observed formats to an aware UTC datetime.

    Parameters
    ----------
    value : Any
        One of:
            - datetime (naive values are taken as UTC)
            - ISO-8601 string, `T` or space separator, `Z`/offset/no zone,
              fractional seconds of any length (kept to microseconds)
            - "ms.us" double fraction string, e.g. "2024-01-01T00:00:00.123.456Z"
            - epoch number or numeric string in s, ms, us or ns
            - OTLP high resolution pair [seconds, nanoseconds]

    Returns
    -------
    Optional[datetime]
        Parsed datetime, or None if the value matches no known format.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        if value != value:  # NaN
            return None
        return _from_epoch_number(value)
    if isinstance(value, str):
        return _from_text(value)
    if isinstance(value, (list, tuple)) and len(value) == 2:
        seconds, nanos = value
        if isinstance(seconds, (int, float)) and isinstance(nanos, (int, float)):
            try:
                return EPOCH + timedelta(
                    seconds=int(seconds), microseconds=int(nanos) // 1_000
                )
            except (ValueError, OverflowError):
                return None
    return None


def format_timestamp(dt: datetime) -> str:
    """Serialize a datetime as ISO-8601 UTC with microseconds and a `Z` suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# =============================================================================
# ATTRIBUTES & EVENTS
# =============================================================================

def decode_json(value: Any) -> Any:
    """Decode a JSON string, returning None on failure. Non-strings pass through."""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        return value
    try:
        decoded = json.loads(value)
    except ValueError:
        return None
    # some producers double-encode the attribute bag
    if isinstance(decoded, str):
        try:
            decoded = json.loads(decoded)
        except ValueError:
            return None
    return decoded


def _decode_mapping(value: Any) -> Optional[Dict[str, Any]]:
    decoded = decode_json(value)
    if isinstance(decoded, dict):
        return dict(decoded)
    return None


def parse_attributes(value: Any) -> Dict[str, Any]:
    """Decode a JSON-encoded attribute bag; anything malformed yields {}."""
    if value is None or value == "":
        return {}
    decoded = _decode_mapping(value)
    if decoded is None:
        logger.debug("Could not decode span attributes, using empty map")
        return {}
    return decoded


def parse_events(value: Any) -> List[Dict[str, Any]]:
    """Decode a JSON-encoded event list; anything malformed yields []."""
    if value is None or value == "" or value == "[]":
        return []
    decoded = decode_json(value)
    if not isinstance(decoded, list):
        logger.debug("Could not decode span events, using empty list")
        return []
    return [event for event in decoded if isinstance(event, dict)]


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _extract_usage(attributes: Dict[str, Any]):
    """Pick the token usage shape present on the span.

    Discrete `gen_ai.usage.*` counters win when non-zero (the
    prompt/completion pair before the input/output pair), then the
    combined `llm.token.counts` object.
    """
    cached = max(0, safe_int(attributes.get(CACHED_TOKENS_KEY)))

    prompt_tokens = max(0, safe_int(attributes.get(PROMPT_TOKENS_KEY)))
    completion_tokens = max(0, safe_int(attributes.get(COMPLETION_TOKENS_KEY)))
    if prompt_tokens or completion_tokens:
        return DiscreteUsage(
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            cached_input_tokens=cached,
        )

    input_tokens = max(0, safe_int(attributes.get(INPUT_TOKENS_KEY)))
    output_tokens = max(0, safe_int(attributes.get(OUTPUT_TOKENS_KEY)))
    if input_tokens or output_tokens:
        return DiscreteUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=cached,
        )

    counts = _decode_mapping(attributes.get(TOKEN_COUNTS_KEY))
    if counts:
        # older SDKs used prompt/completion naming inside the object too
        reported_total = counts.get("total_tokens")
        return CombinedUsage(
            input_tokens=max(0, safe_int(
                counts.get("input_tokens", counts.get("prompt_tokens"))
            )),
            output_tokens=max(0, safe_int(
                counts.get("output_tokens", counts.get("completion_tokens"))
            )),
            cached_input_tokens=max(0, safe_int(counts.get("cached_tokens"))),
            reported_total=(
                max(0, safe_int(reported_total))
                if reported_total is not None else None
            ),
        )
    return None


def extract_semantics(attributes: Dict[str, Any]) -> SpanSemantics:
    """Build the typed attribute view from a decoded attribute map."""
    model = ""
    for key in MODEL_KEYS:
        if attributes.get(key):
            model = str(attributes[key])
            break

    return SpanSemantics(
        vendor=str(attributes.get(VENDOR_KEY) or "").strip().lower(),
        service_type=str(attributes.get(SERVICE_TYPE_KEY) or ""),
        model=model,
        usage=_extract_usage(attributes),
        prompts=attributes.get(PROMPTS_KEY),
        responses=attributes.get(RESPONSES_KEY),
        session_id=str(attributes.get(SESSION_KEY) or ""),
        user_id=_optional_str(attributes.get(USER_KEY)),
        prompt_id=_optional_str(attributes.get(PROMPT_ID_KEY)),
        prompt_version=_optional_str(attributes.get(PROMPT_VERSION_KEY)),
        other={k: v for k, v in attributes.items() if k not in CONSUMED_KEYS},
    )


# =============================================================================
# NORMALIZE
# =============================================================================

def _coerce_raw(raw: Any) -> RawSpan:
    if isinstance(raw, RawSpan):
        return raw
    if isinstance(raw, dict):
        try:
            return RawSpan.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"Unreadable span record, using empty record: {e}")
            return RawSpan()
    logger.debug(f"Span record of type {type(raw).__name__} is not a mapping")
    return RawSpan()


def _placeholder_id(
    record: RawSpan,
    start: datetime,
    end: datetime,
    attributes: Dict[str, Any],
    position: int,
) -> str:
    """Stable id for a record without one.

    Derived from the record's content so id-less spans fetched on different
    pages do not collide, and from its batch position so identical records
    in one batch stay distinct.
    """
    content = json.dumps(
        [
            format_timestamp(start),
            format_timestamp(end),
            attributes,
            record.events,
            position,
        ],
        skipkeys=True,
        default=str,
    )
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:12]
    return f"{record.trace_id or 'trace'}:{record.name or 'span'}:{digest}"


def normalize(
    raw: Union[RawSpan, Dict[str, Any]],
    position: int = 0,
) -> Span:
    """Normalize one raw span record. Never raises.

    Parameters
    ----------
    raw : Union[RawSpan, Dict[str, Any]]
        The record as received from the fetch API.
    position : int
        Position of the record in its batch. Together with the record's
        times and attributes it seeds the placeholder id of a record that
        carries none.

    Returns
    -------
    Span
        The normalized span. Fields recovered with a default are listed
        in `Span.malformed`.
    """
    record = _coerce_raw(raw)
    malformed: List[str] = []

    start = parse_timestamp(record.start_time)
    end = parse_timestamp(record.end_time)
    if start is None:
        malformed.append("start_time")
        start = end if end is not None else EPOCH
    if end is None:
        malformed.append("end_time")
        end = start
    elif end < start:
        malformed.append("end_time")
        end = start

    attributes: Optional[Dict[str, Any]] = {}
    if record.attributes is not None and record.attributes != "":
        attributes = _decode_mapping(record.attributes)
    if attributes is None:
        malformed.append("attributes")
        attributes = {}

    span_id = record.span_id
    if not span_id:
        malformed.append("span_id")
        span_id = _placeholder_id(record, start, end, attributes, position)

    if malformed:
        logger.debug(f"Span {span_id} recovered malformed fields: {malformed}")

    return Span(
        span_id=span_id,
        trace_id=record.trace_id or "",
        parent_id=record.parent_id,
        name=record.name or "",
        start_time=start,
        end_time=end,
        status=SpanStatus.parse(record.status_code),
        attributes=attributes,
        semantics=extract_semantics(attributes),
        events=parse_events(record.events),
        malformed=malformed,
    )


def normalize_batch(raws: Iterable[Union[RawSpan, Dict[str, Any]]]) -> List[Span]:
    """Normalize a batch of records.

    Spans with neither a usable start nor end time are pinned to the
    earliest valid start of the batch instead of the Unix epoch.
    """
    spans = [normalize(raw, position=i) for i, raw in enumerate(raws)]

    untimed = [
        i for i, span in enumerate(spans)
        if "start_time" in span.malformed and "end_time" in span.malformed
    ]
    if not untimed:
        return spans

    valid_starts = [
        span.start_time for span in spans if "start_time" not in span.malformed
    ]
    if not valid_starts:
        return spans

    anchor = min(valid_starts)
    for i in untimed:
        logger.warning(
            f"Span {spans[i].span_id} has no usable timestamps, "
            f"pinning to batch start {format_timestamp(anchor)}"
        )
        spans[i] = spans[i].model_copy(
            update={"start_time": anchor, "end_time": anchor}
        )
    return spans


def group_by_trace(spans: Iterable[Span]) -> Dict[str, List[Span]]:
    """Group spans by trace id, in order of first appearance."""
    groups: Dict[str, List[Span]] = {}
    for span in spans:
        groups.setdefault(span.trace_id, []).append(span)
    return groups
