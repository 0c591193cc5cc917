"""Tests for the span normalizer.

The normalizer must accept every timestamp and attribute shape seen from
third-party SDKs and never raise on a malformed record.
"""

import json
import logging

import pytest
from datetime import datetime, timedelta, timezone

from trace_assembly.models import CombinedUsage, DiscreteUsage, RawSpan, SpanStatus
from trace_assembly.normalizer import (
    EPOCH,
    decode_json,
    extract_semantics,
    format_timestamp,
    group_by_trace,
    normalize,
    normalize_batch,
    parse_attributes,
    parse_events,
    parse_timestamp,
)

EXPECTED = datetime(2024, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)


class TestParseTimestamp:
    """Tests for parse_timestamp across the observed formats."""

    @pytest.mark.parametrize("value", [
        "2024-01-01T00:00:00.123456Z",
        "2024-01-01T00:00:00.123456",
        "2024-01-01 00:00:00.123456",
        "2024-01-01T00:00:00.123456789Z",
        "2024-01-01T00:00:00.123.456Z",
        "2024-01-01T02:00:00.123456+02:00",
        "2024-01-01T00:00:00.123456 UTC",
        1704067200123456,
        "1704067200123456",
        1704067200123456000,
    ])
    def test_formats(self, value):
        assert parse_timestamp(value) == EXPECTED

    def test_epoch_millis(self):
        assert parse_timestamp(1704067200123) == EXPECTED.replace(microsecond=123000)

    def test_otlp_seconds_nanos_pair(self):
        assert parse_timestamp([1704067200, 123456789]) == EXPECTED

    def test_naive_datetime_taken_as_utc(self):
        naive = datetime(2024, 1, 1, 0, 0, 0, 123456)

        assert parse_timestamp(naive) == EXPECTED

    def test_aware_datetime_converted_to_utc(self):
        local = EXPECTED.astimezone(timezone(timedelta(hours=-5)))

        result = parse_timestamp(local)

        assert result == EXPECTED
        assert result.utcoffset() == timedelta(0)

    def test_short_fraction_is_padded(self):
        assert parse_timestamp("2024-01-01T00:00:00.5Z").microsecond == 500000

    def test_no_fraction(self):
        assert parse_timestamp("2024-01-01T00:00:00Z") == EXPECTED.replace(microsecond=0)

    @pytest.mark.parametrize("value", [
        None, "", "   ", "yesterday", "2024-13-01T00:00:00Z", True, {}, float("nan"),
        "9" * 400, "9" * 5000, [float("nan"), 0], [float("inf"), 0],
    ])
    def test_unparsable_returns_none(self, value):
        assert parse_timestamp(value) is None


class TestFormatTimestamp:

    def test_format(self):
        assert format_timestamp(EXPECTED) == "2024-01-01T00:00:00.123456Z"

    def test_round_trip_is_exact(self):
        assert parse_timestamp(format_timestamp(EXPECTED)) == EXPECTED

    def test_naive_taken_as_utc(self):
        assert format_timestamp(datetime(2024, 1, 1)) == "2024-01-01T00:00:00.000000Z"


class TestParseAttributes:
    """Tests for JSON attribute bag decoding."""

    def test_decodes_json_string(self):
        assert parse_attributes('{"a": 1}') == {"a": 1}

    def test_accepts_mapping(self):
        assert parse_attributes({"a": 1}) == {"a": 1}

    def test_double_encoded(self):
        assert parse_attributes(json.dumps(json.dumps({"a": 1}))) == {"a": 1}

    @pytest.mark.parametrize("value", [None, "", "{not json", "[1, 2]", 42])
    def test_malformed_yields_empty(self, value):
        assert parse_attributes(value) == {}


class TestParseEvents:

    def test_decodes_list(self):
        events = parse_events('[{"name": "e1"}, "junk"]')

        assert events == [{"name": "e1"}]

    @pytest.mark.parametrize("value", [None, "", "[]", "{bad", '{"name": "e"}'])
    def test_malformed_yields_empty(self, value):
        assert parse_events(value) == []


class TestDecodeJson:

    def test_non_string_passes_through(self):
        assert decode_json([1]) == [1]

    def test_invalid_returns_none(self):
        assert decode_json("plain text") is None


class TestExtractSemantics:
    """Tests for the typed attribute view."""

    def test_discrete_prompt_completion(self):
        semantics = extract_semantics({
            "gen_ai.usage.prompt_tokens": "100",
            "gen_ai.usage.completion_tokens": 50,
            "gen_ai.usage.cached_tokens": 10,
        })

        assert isinstance(semantics.usage, DiscreteUsage)
        assert semantics.usage.input_tokens == 100
        assert semantics.usage.output_tokens == 50
        assert semantics.usage.cached_input_tokens == 10

    def test_discrete_input_output(self):
        semantics = extract_semantics({
            "gen_ai.usage.input_tokens": 7,
            "gen_ai.usage.output_tokens": 3,
        })

        assert isinstance(semantics.usage, DiscreteUsage)
        assert semantics.usage.total_tokens == 10

    def test_combined_token_counts(self):
        semantics = extract_semantics({
            "llm.token.counts": json.dumps(
                {"input_tokens": 20, "output_tokens": 30, "total_tokens": 50}
            ),
        })

        assert isinstance(semantics.usage, CombinedUsage)
        assert semantics.usage.input_tokens == 20
        assert semantics.usage.total_tokens == 50

    def test_combined_legacy_key_names(self):
        semantics = extract_semantics({
            "llm.token.counts": {"prompt_tokens": 4, "completion_tokens": 6},
        })

        assert semantics.usage.input_tokens == 4
        assert semantics.usage.output_tokens == 6

    def test_negative_counts_clamped(self):
        semantics = extract_semantics({
            "gen_ai.usage.prompt_tokens": -5,
            "gen_ai.usage.completion_tokens": 2,
        })

        assert semantics.usage.input_tokens == 0

    def test_no_usage(self):
        assert extract_semantics({}).usage is None

    def test_vendor_lowercased_and_model_precedence(self):
        semantics = extract_semantics({
            "langtrace.service.name": " OpenAI ",
            "gen_ai.request.model": "gpt-4",
            "gen_ai.response.model": "gpt-4-0613",
        })

        assert semantics.vendor == "openai"
        assert semantics.model == "gpt-4-0613"

    def test_unknown_keys_go_to_other(self):
        semantics = extract_semantics({"llm.model": "m", "custom.key": 1})

        assert semantics.other == {"custom.key": 1}


class TestNormalize:
    """Tests for normalize, which never raises."""

    def test_well_formed_record(self, raw_llm_span):
        span = normalize(raw_llm_span)

        assert span.span_id == "span-llm"
        assert span.trace_id == "trace-1"
        assert span.parent_id == "span-root"
        assert span.status == SpanStatus.OK
        assert span.duration_ms == 500
        assert span.semantics.vendor == "openai"
        assert span.semantics.session_id == "session-9"
        assert span.attributes["http.status"] == 200
        assert span.malformed == []

    def test_accepts_raw_span_model(self, raw_llm_span):
        span = normalize(RawSpan.model_validate(raw_llm_span))

        assert span.span_id == "span-llm"

    def test_missing_end_time(self, raw_llm_span):
        del raw_llm_span["end_time"]

        span = normalize(raw_llm_span)

        assert span.end_time == span.start_time
        assert span.malformed == ["end_time"]

    def test_end_before_start_clamped(self, raw_llm_span):
        raw_llm_span["end_time"] = "2024-05-01T11:00:00Z"

        span = normalize(raw_llm_span)

        assert span.duration_ms == 0
        assert "end_time" in span.malformed

    def test_bad_start_falls_back_to_end(self, raw_llm_span):
        raw_llm_span["start_time"] = "garbage"

        span = normalize(raw_llm_span)

        assert span.start_time == span.end_time
        assert span.malformed == ["start_time"]

    def test_no_timestamps_pinned_to_epoch(self):
        span = normalize({"span_id": "s1"})

        assert span.start_time == EPOCH
        assert span.end_time == EPOCH
        assert "start_time" in span.malformed
        assert "end_time" in span.malformed

    def test_malformed_attributes(self, raw_llm_span):
        raw_llm_span["attributes"] = "{broken"

        span = normalize(raw_llm_span)

        assert span.attributes == {}
        assert span.malformed == ["attributes"]

    def test_missing_id_gets_placeholder(self, raw_llm_span):
        del raw_llm_span["span_id"]

        span = normalize(raw_llm_span, position=3)

        assert span.span_id.startswith("trace-1:openai.chat.completions.create:")
        assert span.span_id == normalize(raw_llm_span, position=3).span_id
        assert "span_id" in span.malformed

    def test_placeholder_follows_content(self):
        first = normalize({"trace_id": "t", "name": "llm", "start_time": "2024-05-01T12:00:00Z"})
        second = normalize({"trace_id": "t", "name": "llm", "start_time": "2024-05-01T12:00:05Z"})

        assert first.span_id != second.span_id

    @pytest.mark.parametrize("raw", [None, "junk", 12, {"span_id": {"nested": 1}}])
    def test_never_raises(self, raw):
        span = normalize(raw)

        assert span.span_id

    @pytest.mark.parametrize("value", ["9" * 400, "9" * 5000, [float("nan"), 0]])
    def test_out_of_range_timestamps_recovered(self, value):
        span = normalize({"span_id": "x", "start_time": value, "end_time": value})

        assert span.start_time == EPOCH
        assert span.malformed == ["start_time", "end_time"]


class TestNormalizeBatch:

    def test_untimed_spans_pinned_to_batch_start(self, raw_root_span, raw_llm_span, caplog):
        untimed = {"span_id": "lost", "trace_id": "trace-1"}

        with caplog.at_level(logging.WARNING):
            spans = normalize_batch([raw_llm_span, untimed, raw_root_span])

        assert spans[1].start_time == spans[2].start_time
        assert spans[1].end_time == spans[2].start_time
        assert "lost" in caplog.text

    def test_all_untimed_stay_at_epoch(self):
        spans = normalize_batch([{"span_id": "a"}, {"span_id": "b"}])

        assert all(span.start_time == EPOCH for span in spans)

    def test_placeholder_ids_unique_within_batch(self):
        spans = normalize_batch([{"trace_id": "t"}, {"trace_id": "t"}])

        assert spans[0].span_id != spans[1].span_id


class TestGroupByTrace:

    def test_groups_in_first_appearance_order(self, raw_llm_span, raw_root_span):
        other = dict(raw_root_span, span_id="x", trace_id="trace-2")

        groups = group_by_trace(normalize_batch([other, raw_llm_span, raw_root_span]))

        assert list(groups) == ["trace-2", "trace-1"]
        assert [s.span_id for s in groups["trace-1"]] == ["span-llm", "span-root"]
