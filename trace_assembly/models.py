"""Data models for trace assembly"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, List, Optional, Dict, Any, Union, Literal
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
import logging

logger = logging.getLogger(__name__)


def safe_int(val: Any) -> int:
    """Safely convert value to int (handles str, float strings, None, etc).

    Returns 0 when the value cannot be converted.
    """
    if val is None or isinstance(val, bool):
        return 0
    try:
        return int(val)
    except (ValueError, TypeError):
        pass
    try:
        return int(float(val))
    except (ValueError, TypeError, OverflowError):
        return 0


def safe_float(val: Any) -> float:
    """Safely convert value to float (handles str, None, etc).

    Returns 0.0 when the value cannot be converted.
    """
    if val is None or isinstance(val, bool):
        return 0.0
    try:
        return float(val)
    except (ValueError, TypeError):
        return 0.0


class SpanStatus(str, Enum):
    """Status of a recorded operation."""

    OK = "OK"
    ERROR = "ERROR"
    UNSET = "UNSET"

    @classmethod
    def parse(cls, value: Any) -> "SpanStatus":
        """Map the status encodings seen in the wild onto the enum.

        Accepts "OK"/"ERROR"/"UNSET", their "STATUS_CODE_" prefixed forms,
        OTLP integer codes (0 unset, 1 ok, 2 error) and status objects
        carrying either a `status_code` string or a `code` integer.
        Anything else is UNSET.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            if value.get("status_code"):
                return cls.parse(value["status_code"])
            return cls.parse(value.get("code"))
        if isinstance(value, int) and not isinstance(value, bool):
            return {0: cls.UNSET, 1: cls.OK, 2: cls.ERROR}.get(value, cls.UNSET)
        if isinstance(value, str):
            code = value.strip().upper()
            if code.startswith("STATUS_CODE_"):
                code = code[len("STATUS_CODE_"):]
            if code in cls.__members__:
                return cls[code]
            if code.isdigit():
                return cls.parse(int(code))
        if value not in (None, ""):
            logger.debug(f"Unknown span status {value!r}, treating as UNSET")
        return cls.UNSET


class RawSpan(BaseModel):
    """A span record as delivered by the fetch API.

    Every field is optional and loosely typed: telemetry producers are
    third-party SDKs, so this model must accept whatever they send. Unknown
    keys are kept as extras.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    span_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("span_id", "id", "spanId")
    )
    trace_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("trace_id", "traceId")
    )
    parent_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "parent_id", "parentId", "parent_span_id", "parentSpanId"
        ),
    )
    name: Optional[str] = None
    start_time: Any = Field(
        None, validation_alias=AliasChoices("start_time", "startTime")
    )
    end_time: Any = Field(
        None, validation_alias=AliasChoices("end_time", "endTime")
    )
    status_code: Any = Field(
        None, validation_alias=AliasChoices("status_code", "status")
    )
    attributes: Any = None
    events: Any = None

    @field_validator("span_id", "trace_id", "parent_id", "name", mode="before")
    @classmethod
    def stringify(cls, v):
        """Identifiers and names may arrive as numbers; keep them as strings."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            return v
        if isinstance(v, (int, float)):
            return str(v)
        return None


class DiscreteUsage(BaseModel):
    """Token usage reported as discrete `gen_ai.usage.*` counters."""

    kind: Literal["discrete"] = "discrete"
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cached_input_tokens


class CombinedUsage(BaseModel):
    """Token usage reported as one `llm.token.counts` object."""

    kind: Literal["combined"] = "combined"
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    reported_total: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        if self.reported_total is not None:
            return self.reported_total
        return self.input_tokens + self.output_tokens + self.cached_input_tokens


TokenUsage = Annotated[
    Union[DiscreteUsage, CombinedUsage], Field(discriminator="kind")
]


class SpanSemantics(BaseModel):
    """Typed view over the attribute keys the assembly core consumes.

    Built once by the normalizer from the decoded attribute map. Keys that
    are not consumed by a typed field are kept in `other`.
    """

    vendor: str = ""
    service_type: str = ""
    model: str = ""
    usage: Optional[TokenUsage] = None
    prompts: Optional[Any] = None
    responses: Optional[Any] = None
    session_id: str = ""
    user_id: Optional[str] = None
    prompt_id: Optional[str] = None
    prompt_version: Optional[str] = None
    other: Dict[str, Any] = Field(default_factory=dict)


class Span(BaseModel):
    """One recorded operation, normalized.

    `start_time` and `end_time` are timezone-aware UTC datetimes. A span
    whose end precedes its start is clamped to zero length at `start_time`.
    `children` is populated only by the hierarchy builder.
    """

    model_config = ConfigDict(populate_by_name=True)

    span_id: str
    trace_id: str = ""
    parent_id: Optional[str] = None
    name: str = ""
    start_time: datetime
    end_time: datetime
    status: SpanStatus = SpanStatus.UNSET
    attributes: Dict[str, Any] = Field(default_factory=dict)
    semantics: SpanSemantics = Field(default_factory=SpanSemantics)
    events: List[Dict[str, Any]] = Field(default_factory=list)
    children: List["Span"] = Field(default_factory=list)
    # names of fields recovered with a default while normalizing
    malformed: List[str] = Field(default_factory=list)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_datetime(cls, v):
        """Parse datetime from any supported timestamp format."""
        # Import here to avoid circular import
        from .normalizer import parse_timestamp

        parsed = parse_timestamp(v)
        # Unparsable values are left for pydantic to reject
        return parsed if parsed is not None else v

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v):
        return SpanStatus.parse(v)

    @model_validator(mode="after")
    def clamp_end_time(self) -> "Span":
        if self.end_time < self.start_time:
            self.end_time = self.start_time
        return self

    @property
    def duration(self) -> timedelta:
        """Duration of this span."""
        return self.end_time - self.start_time

    @property
    def duration_ms(self) -> float:
        return self.duration.total_seconds() * 1000

    @property
    def has_error(self) -> bool:
        return self.status == SpanStatus.ERROR


Span.model_rebuild()


class CostBreakdown(BaseModel):
    """Monetary cost split into input and output parts.

    `total == input + output` within floating-point tolerance.
    """

    total: float = 0.0
    input: float = 0.0
    output: float = 0.0

    @classmethod
    def zero(cls) -> "CostBreakdown":
        return cls()

    @classmethod
    def from_parts(cls, input: float, output: float) -> "CostBreakdown":
        return cls(total=input + output, input=input, output=output)

    def __add__(self, other: "CostBreakdown") -> "CostBreakdown":
        if not isinstance(other, CostBreakdown):
            return NotImplemented
        return CostBreakdown(
            total=self.total + other.total,
            input=self.input + other.input,
            output=self.output + other.output,
        )


class PricingEntry(BaseModel):
    """Per-token rates for one (vendor, model) pair."""

    model_config = ConfigDict(frozen=True)

    input_rate: float = Field(..., ge=0)
    output_rate: float = Field(..., ge=0)


class PageMetadata(BaseModel):
    """Pagination metadata returned with each fetched page."""

    page: int = 1
    total_pages: int = 1

    @field_validator("page", "total_pages", mode="before")
    @classmethod
    def parse_int(cls, v):
        """Page numbers arrive as strings from some endpoints."""
        return safe_int(v) or 1


class SpanPage(BaseModel):
    """One page of raw spans plus pagination metadata."""

    result: List[RawSpan] = Field(default_factory=list)
    metadata: PageMetadata = Field(default_factory=PageMetadata)

    @field_validator("result", mode="before")
    @classmethod
    def drop_non_records(cls, v):
        """Keep only mapping-like records; anything else is dropped."""
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, (dict, RawSpan))]

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v):
        """A null or non-object metadata block reads as a single page."""
        if isinstance(v, (dict, PageMetadata)):
            return v
        return {}
