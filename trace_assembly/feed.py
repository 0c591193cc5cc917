"""Paginated trace feed.

Drives the infinite-scroll trace list: fetches span pages one at a time,
merges them into a `PageCache` and keeps a running cost total. Changing the
filters starts a new cache generation, so a page requested under the old
filters is discarded when it arrives instead of being mixed in.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from . import api, config
from .cache import PageCache
from .cost import CostAccumulator, CostReport
from .models import Span, SpanPage
from .normalizer import normalize_batch
from .pricing import PricingTable, default_pricing_table
from .trace import AssembledTrace, assemble_spans

logger = logging.getLogger(__name__)

PageFetcher = Callable[..., Awaitable[SpanPage]]


class TraceFeed:
    """State behind one trace list view.

    Attributes
    ----------
    filters : List[Dict[str, Any]]
        Active filter clauses, sent with every page request.
    page : int
        Next page to request (1-based).
    total_pages : int
        Page count reported by the last response.
    loading : bool
        True while a page request is in flight.
    error_message : str
        Last fetch error, empty when the last fetch succeeded.
    """

    def __init__(
        self,
        fetch_page: Optional[PageFetcher] = None,
        pricing: Optional[PricingTable] = None,
        page_size: int = config.PAGE_SIZE,
        project_id: Optional[str] = None,
    ):
        self.fetch_page = fetch_page or api.fetch_spans_page
        self.pricing = pricing if pricing is not None else default_pricing_table()
        self.page_size = page_size
        self.project_id = project_id

        self.cache: PageCache[Span] = PageCache()
        self.accumulator = CostAccumulator(self.pricing)
        self.filters: List[Dict[str, Any]] = []
        self.page = 1
        self.total_pages = 1
        self.loading = False
        self.error_message = ""
        self._loading_generation: Optional[int] = None

    @property
    def has_more(self) -> bool:
        return self.page <= self.total_pages

    @property
    def spans(self) -> List[Span]:
        return list(self.cache.items)

    def refresh(self) -> int:
        """Drop everything fetched so far and restart from page 1.

        Returns
        -------
        int
            The new cache generation.
        """
        generation = self.cache.reset()
        self.accumulator.reset()
        self.page = 1
        self.total_pages = 1
        self.loading = False
        self.error_message = ""
        logger.info(f"Trace feed reset (generation {generation})")
        return generation

    def set_filters(self, filters: Optional[List[Dict[str, Any]]]) -> bool:
        """Apply new filter clauses.

        Returns
        -------
        bool
            True if the filters changed and the feed was reset.
        """
        filters = list(filters or [])
        if filters == self.filters:
            return False
        self.filters = filters
        self.refresh()
        return True

    async def load_next_page(self) -> bool:
        """Fetch and merge the next page.

        Returns
        -------
        bool
            True if a page was merged. False when a fetch is already in
            flight, every page has been read, the fetch failed or returned
            an unreadable body, or the filters changed mid-fetch.
        """
        if self.loading or not self.has_more:
            return False

        generation = self.cache.generation
        page = self.page
        self.loading = True
        self._loading_generation = generation
        try:
            result = await self.fetch_page(
                page=page,
                page_size=self.page_size,
                filters=self.filters,
                project_id=self.project_id,
            )
        except (httpx.HTTPError, ValueError) as e:
            # ValueError: non-JSON body or a page that fails validation
            logger.error(f"Failed to fetch span page {page}: {e}")
            if self.cache.is_current(generation):
                self.error_message = str(e)
            return False
        finally:
            # a reset while in flight already released the flag
            if self._loading_generation == generation:
                self.loading = False

        spans = normalize_batch(result.result)
        if not self.cache.merge_page(spans, generation=generation):
            return False

        self.error_message = ""
        self.total_pages = result.metadata.total_pages
        if result.metadata.page <= result.metadata.total_pages:
            self.page = result.metadata.page + 1
        else:
            self.page = self.total_pages + 1
        self.accumulator.add(spans)
        logger.debug(
            f"Merged page {result.metadata.page}/{self.total_pages} "
            f"({len(spans)} spans, {len(self.cache)} cached)"
        )
        return True

    def traces(self) -> List[AssembledTrace]:
        """Assemble the cached spans into traces, newest trace first."""
        return assemble_spans(self.cache.items, self.pricing)

    def cost_report(self) -> CostReport:
        """Running cost of every span fetched under the current filters."""
        return self.accumulator.report()
