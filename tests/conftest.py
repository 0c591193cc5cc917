"""Pytest configuration and shared fixtures for trace assembly tests."""

import json
from datetime import datetime, timedelta, timezone

import pytest
import respx

from trace_assembly.models import Span
from trace_assembly.normalizer import extract_semantics
from trace_assembly.pricing import PricingTable

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(ms: float) -> datetime:
    """Instant `ms` milliseconds after BASE_TIME."""
    return BASE_TIME + timedelta(milliseconds=ms)


def make_span(span_id, start_ms, end_ms, trace_id="trace-1", name=None, **attributes):
    """Build a normalized Span on the [start_ms, end_ms] interval."""
    return Span(
        span_id=span_id,
        trace_id=trace_id,
        name=name or span_id,
        start_time=at(start_ms),
        end_time=at(end_ms),
        attributes=attributes,
        semantics=extract_semantics(attributes),
    )


@pytest.fixture
def respx_mock():
    """Fixture that provides a respx mock router.

    Configuration:
        - assert_all_mocked=False: Allows unmocked requests to pass through.
        - assert_all_called=True: Ensures every mock defined is actually used.
          Catches typos in mock URLs and dead mocks.
    """
    with respx.mock(assert_all_mocked=False, assert_all_called=True) as mock:
        yield mock


@pytest.fixture
def pricing():
    """Small pricing table with round per-1k rates."""
    return PricingTable.from_rates_per_1k(
        {"openai": {"gpt-4": {"input": 0.03, "output": 0.06}}}
    )


@pytest.fixture
def raw_llm_span():
    """A span record as the fetch API returns it, attributes JSON-encoded."""
    return {
        "span_id": "span-llm",
        "trace_id": "trace-1",
        "parent_id": "span-root",
        "name": "openai.chat.completions.create",
        "start_time": "2024-05-01T12:00:00.100Z",
        "end_time": "2024-05-01T12:00:00.600Z",
        "status_code": "STATUS_CODE_OK",
        "attributes": json.dumps({
            "langtrace.service.name": "OpenAI",
            "langtrace.service.type": "llm",
            "gen_ai.request.model": "gpt-4",
            "gen_ai.usage.prompt_tokens": 100,
            "gen_ai.usage.completion_tokens": 50,
            "session.id": "session-9",
            "user_id": "user-7",
            "http.status": 200,
        }),
        "events": "[]",
    }


@pytest.fixture
def raw_root_span():
    """Root span enclosing `raw_llm_span`."""
    return {
        "span_id": "span-root",
        "trace_id": "trace-1",
        "name": "agent.run",
        "start_time": "2024-05-01T12:00:00.000Z",
        "end_time": "2024-05-01T12:00:01.000Z",
        "status_code": "UNSET",
        "attributes": "{}",
        "events": "[]",
    }
