import httpx
import logging
from typing import Optional, Dict, Any, List

from .config import API_URL, API_KEY, DEFAULT_TIMEOUT
from .models import RawSpan, SpanPage

logger = logging.getLogger(__name__)


def _get_headers() -> Dict[str, str]:
    """Get default headers for API requests."""
    return {"X-API-Key": API_KEY}


def _unwrap_page(data: Any) -> Dict[str, Any]:
    """Pages come either bare or wrapped as {"spans": {...}} / {"traces": {...}}."""
    if not isinstance(data, dict):
        return {}
    for key in ("spans", "traces"):
        if isinstance(data.get(key), dict):
            return data[key]
    return data


async def fetch_spans_page(
    page: int,
    page_size: int,
    filters: Optional[List[Dict[str, Any]]] = None,
    project_id: Optional[str] = None,
) -> SpanPage:
    """Fetch one page of spans.

    Parameters
    ----------
    page : int
        1-based page number.
    page_size : int
        Number of spans per page.
    filters : Optional[List[Dict[str, Any]]]
        Filter clauses, e.g. {"key": "llm.model", "operation": "EQUALS",
        "value": "gpt-4", "type": "attribute"}. Combined with AND.
    project_id : Optional[str]
        Project to read from; the API key's project when omitted.

    Returns
    -------
    SpanPage
        Raw span records plus pagination metadata.

    Raises
    ------
    httpx.HTTPStatusError
        If the API returns an error status code.
    """
    body: Dict[str, Any] = {
        "page": page,
        "pageSize": page_size,
        "filters": filters or [],
        "filterOperation": "AND",
    }
    if project_id:
        body["projectId"] = project_id
    logger.debug(f"Fetching span page {page} (size {page_size}, {len(body['filters'])} filters)")

    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
        resp = await client.post(
            f"{API_URL}/api/spans",
            headers=_get_headers(),
            json=body,
        )
        resp.raise_for_status()
        return SpanPage.model_validate(_unwrap_page(resp.json()))


async def get_trace_spans(trace_id: str) -> List[RawSpan]:
    """Fetch all spans of a single trace.

    Parameters
    ----------
    trace_id : str
        ID of the trace to fetch.

    Returns
    -------
    List[RawSpan]
        The trace's span records, in the order the API returned them.
    """
    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
        resp = await client.get(
            f"{API_URL}/api/trace",
            headers=_get_headers(),
            params={"traceId": trace_id},
        )
        resp.raise_for_status()
        data = resp.json()

    if isinstance(data, dict):
        data = data.get("spans", data.get("result", []))
    return SpanPage.model_validate({"result": data}).result

