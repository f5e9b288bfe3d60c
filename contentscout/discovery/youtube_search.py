"""
YouTube Data API client: paginated search plus batched video details.

search.list costs 100 quota units per page; videos.list costs 1 unit per
50 ids, so statistics are resolved in batches after the search is merged.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from ..config import settings
from ..errors import ConfigurationError, ExternalCallError, RateLimitError
from .models import Candidate, SearchHit

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50  # search.list maximum
MAX_DETAIL_BATCH = 50  # videos.list maximum ids per request

SEARCH_ORDERS = ("relevance", "viewCount", "rating", "date")

TIME_WINDOWS = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}

VIDEO_ID_PATTERNS = [
    r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)([a-zA-Z0-9_-]{11})",
    r"[?&]v=([a-zA-Z0-9_-]{11})",
    r"^([a-zA-Z0-9_-]{11})$",
]


def _parse_duration(duration_str: str) -> int:
    """Parse ISO 8601 duration (PT1H2M3S, P1DT2H) to seconds."""
    match = re.match(
        r"P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$", duration_str or ""
    )
    if not match:
        return 0
    days = int(match.group(1) or 0)
    hours = int(match.group(2) or 0)
    minutes = int(match.group(3) or 0)
    seconds = int(match.group(4) or 0)
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def _pick_thumbnail(snippet: dict) -> str:
    thumbnails = snippet.get("thumbnails", {})
    return (
        thumbnails.get("high", {}).get("url")
        or thumbnails.get("medium", {}).get("url")
        or thumbnails.get("default", {}).get("url", "")
    )


def _to_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def published_after_for_window(
    time_window: Optional[str], now: Optional[datetime] = None
) -> Optional[str]:
    """Translate a time window ("7d", "48h", "1y", "all") to an RFC 3339 bound.

    Unknown windows fall back to 30 days; "all" means no lower bound.
    """
    if not time_window or time_window == "all":
        return None
    now = now or datetime.now(timezone.utc)

    delta = TIME_WINDOWS.get(time_window)
    if delta is None:
        match = re.fullmatch(r"(\d+)([hd])", time_window.strip())
        if match:
            amount = int(match.group(1))
            delta = timedelta(hours=amount) if match.group(2) == "h" else timedelta(days=amount)
        else:
            logger.warning("Unknown time window '%s', using 30d", time_window)
            delta = TIME_WINDOWS["30d"]

    bound = (now - delta).astimezone(timezone.utc)
    return bound.strftime("%Y-%m-%dT%H:%M:%SZ")


def extract_video_id(url: str) -> Optional[str]:
    """Extract an 11-character video id from a URL or a bare id."""
    if not url:
        return None
    for pattern in VIDEO_ID_PATTERNS:
        match = re.search(pattern, url.strip())
        if match:
            return match.group(1)
    return None


@dataclass
class SearchPage:
    """One page of search hits and the token for the next page."""
    hits: list[SearchHit]
    next_page_token: Optional[str]


class YouTubeClient:
    """Async client for the search and videos endpoints."""

    def __init__(
        self,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        if not api_key:
            raise ConfigurationError("YouTube API key is required")
        self.api_key = api_key
        self.base_url = (base_url or settings.YOUTUBE_API_BASE).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _get(self, endpoint: str, params: dict) -> dict:
        """GET an endpoint and return its JSON body, mapping failures."""
        try:
            resp = await self._client.get(
                f"{self.base_url}/{endpoint}",
                params={**params, "key": self.api_key},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (403, 429):
                logger.error("YouTube API quota exceeded or rate limited (%d)", status)
                raise RateLimitError(
                    f"YouTube {endpoint} rejected: quota exceeded or rate limited",
                    service="youtube",
                    status_code=status,
                ) from e
            raise ExternalCallError(
                f"YouTube {endpoint} failed with HTTP {status}",
                service="youtube",
                status_code=status,
            ) from e
        except httpx.HTTPError as e:
            raise ExternalCallError(
                f"YouTube {endpoint} transport error: {e}", service="youtube"
            ) from e
        except ValueError as e:
            raise ExternalCallError(
                f"YouTube {endpoint} returned invalid JSON", service="youtube"
            ) from e

        if not isinstance(data, dict):
            raise ExternalCallError(
                f"YouTube {endpoint} returned an unexpected payload", service="youtube"
            )
        return data

    async def search_page(
        self,
        query: str,
        order: str = "relevance",
        max_results: int = MAX_PAGE_SIZE,
        region_code: Optional[str] = None,
        published_after: Optional[str] = None,
        category_id: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> SearchPage:
        """Fetch a single page of search results."""
        if order not in SEARCH_ORDERS:
            raise ValueError(f"Unsupported search order: {order}")

        params = {
            "part": "snippet",
            "type": "video",
            "q": query,
            "order": order,
            "maxResults": max(1, min(max_results, MAX_PAGE_SIZE)),
        }
        if region_code:
            params["regionCode"] = region_code
        if published_after:
            params["publishedAfter"] = published_after
        if category_id:
            params["videoCategoryId"] = category_id
        if page_token:
            params["pageToken"] = page_token

        data = await self._get("search", params)

        hits = []
        for item in data.get("items", []):
            video_id = (item.get("id") or {}).get("videoId")
            if not video_id:
                continue
            snippet = item.get("snippet", {})
            hits.append(
                SearchHit(
                    video_id=video_id,
                    title=snippet.get("title", ""),
                    channel_id=snippet.get("channelId", ""),
                    channel_title=snippet.get("channelTitle", ""),
                    description=snippet.get("description", ""),
                    published_at=snippet.get("publishedAt", ""),
                    thumbnail_url=_pick_thumbnail(snippet),
                )
            )
        return SearchPage(hits=hits, next_page_token=data.get("nextPageToken"))

    async def fetch_video_details(
        self,
        video_ids: list[str],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> list[Candidate]:
        """Resolve full statistics for video ids, 50 per request.

        Results keep the order of ``video_ids``; ids the API no longer
        knows about are dropped.
        """
        if not video_ids:
            return []

        by_id: dict[str, Candidate] = {}
        total = len(video_ids)
        for start in range(0, total, MAX_DETAIL_BATCH):
            batch = video_ids[start:start + MAX_DETAIL_BATCH]
            data = await self._get(
                "videos",
                {"part": "snippet,statistics,contentDetails", "id": ",".join(batch)},
            )
            for item in data.get("items", []):
                candidate = self._to_candidate(item)
                if candidate is not None:
                    by_id[candidate.video_id] = candidate
            if on_progress:
                on_progress(min(start + len(batch), total), total)

        missing = total - len(by_id)
        if missing:
            logger.info("%d of %d videos had no details", missing, total)
        return [by_id[vid] for vid in video_ids if vid in by_id]

    @staticmethod
    def _to_candidate(item: dict) -> Optional[Candidate]:
        video_id = item.get("id")
        if not video_id:
            return None
        snippet = item.get("snippet", {})
        stats = item.get("statistics", {})
        content = item.get("contentDetails", {})
        return Candidate(
            video_id=video_id,
            title=snippet.get("title", ""),
            description=snippet.get("description", ""),
            tags=list(snippet.get("tags", []) or []),
            category_id=str(snippet.get("categoryId", "") or ""),
            channel_id=snippet.get("channelId", ""),
            channel_title=snippet.get("channelTitle", ""),
            thumbnail_url=_pick_thumbnail(snippet),
            views=_to_int(stats.get("viewCount")),
            likes=_to_int(stats.get("likeCount")),
            comments=_to_int(stats.get("commentCount")),
            duration_seconds=_parse_duration(content.get("duration", "")),
            published_at=snippet.get("publishedAt", ""),
        )
