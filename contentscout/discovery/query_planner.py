"""
Two-tier search planning.

The niche phrase is the primary query and gets ~75% of the requested hits;
when tags are known, the top tags joined as one phrase form a secondary
query for the remaining ~25%. Results are merged by video id with the
primary query's ordering taking priority.
"""
import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..errors import ExternalCallError
from .models import SearchHit
from .youtube_search import MAX_PAGE_SIZE, YouTubeClient

logger = logging.getLogger(__name__)

PRIMARY_SHARE = 0.75
SECONDARY_SHARE = 0.25
MAX_QUERY_TAGS = 7


@dataclass
class QueryPlan:
    """The sub-queries to run and how many hits each should contribute."""
    primary_query: str
    primary_count: int
    secondary_query: Optional[str] = None
    secondary_count: int = 0

    @property
    def queries(self) -> list[tuple[str, int]]:
        plan = [(self.primary_query, self.primary_count)]
        if self.secondary_query and self.secondary_count > 0:
            plan.append((self.secondary_query, self.secondary_count))
        return plan


def _clean_tags(tags: Optional[Iterable[str]]) -> list[str]:
    """Trim, drop blanks and de-duplicate tags case-insensitively, in order."""
    seen = set()
    cleaned = []
    for tag in tags or []:
        tag = (tag or "").strip()
        key = tag.lower()
        if tag and key not in seen:
            seen.add(key)
            cleaned.append(tag)
    return cleaned


def build_query_plan(
    niche: str, tags: Optional[Iterable[str]], desired_count: int
) -> QueryPlan:
    """Split the desired hit count between the niche and tag queries.

    Without tags the niche query is the only query and asks for the full
    count.
    """
    desired_count = max(0, int(desired_count))
    top_tags = _clean_tags(tags)[:MAX_QUERY_TAGS]

    if not top_tags:
        return QueryPlan(primary_query=niche, primary_count=desired_count)

    return QueryPlan(
        primary_query=niche,
        primary_count=math.ceil(desired_count * PRIMARY_SHARE),
        secondary_query=" ".join(top_tags),
        secondary_count=math.ceil(desired_count * SECONDARY_SHARE),
    )


def merge_hits(*hit_lists: Iterable[SearchHit]) -> list[SearchHit]:
    """Merge hit lists, keeping the first occurrence of each video id."""
    seen = set()
    merged = []
    for hits in hit_lists:
        for hit in hits:
            if hit.video_id in seen:
                continue
            seen.add(hit.video_id)
            merged.append(hit)
    return merged


class QueryPlanner:
    """Runs a query plan against the search provider."""

    def __init__(self, client: YouTubeClient, order: str = "relevance"):
        self.client = client
        self.order = order

    async def paginate(
        self,
        query: str,
        count: int,
        region_code: Optional[str] = None,
        published_after: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> list[SearchHit]:
        """Page through search results at the maximum page size.

        Stops once ``count`` hits are collected or the provider has no
        further pages. A short final count is accepted as is.
        """
        hits: list[SearchHit] = []
        page_token = None
        while len(hits) < count:
            page = await self.client.search_page(
                query,
                order=self.order,
                max_results=MAX_PAGE_SIZE,
                region_code=region_code,
                published_after=published_after,
                category_id=category_id,
                page_token=page_token,
            )
            hits.extend(page.hits)
            page_token = page.next_page_token
            if not page_token or not page.hits:
                break
        return hits[:count]

    async def search(
        self,
        niche: str,
        tags: Optional[Iterable[str]] = None,
        region_code: Optional[str] = None,
        published_after: Optional[str] = None,
        desired_count: int = 50,
        category_id: Optional[str] = None,
        on_progress: Optional[Callable[[str, int, int], None]] = None,
    ) -> list[SearchHit]:
        """Run the two-tier search and return deduplicated hits.

        A sub-query that fails with an ExternalCallError is logged and
        skipped; the other sub-query's results are still returned. If every
        sub-query fails, the last error is raised.
        """
        plan = build_query_plan(niche, tags, desired_count)
        queries = plan.queries
        results: list[list[SearchHit]] = []
        last_error: Optional[ExternalCallError] = None

        for index, (query, count) in enumerate(queries, 1):
            if on_progress:
                on_progress(query, index, len(queries))
            try:
                hits = await self.paginate(
                    query,
                    count,
                    region_code=region_code,
                    published_after=published_after,
                    category_id=category_id,
                )
            except ExternalCallError as e:
                logger.error("Search query '%s' failed: %s", query, e)
                last_error = e
                continue
            logger.info("Query '%s' returned %d hits", query, len(hits))
            results.append(hits)

        if not results and last_error is not None:
            raise last_error

        merged = merge_hits(*results)
        logger.info(
            "Search for '%s' produced %d unique hits from %d queries",
            niche, len(merged), len(queries),
        )
        return merged
