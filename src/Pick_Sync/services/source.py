"""Content-source adapter: today's "pick of the day" thread and its comments.

``RedditThreadSource`` talks to a RapidAPI Reddit proxy.  It lists the
subreddit's hot posts for the day, picks the first one whose title looks like
a pick-of-the-day thread, fetches the whole comment tree, and flattens it
depth-first into ``RawItem`` objects in source order.  Incremental scans
ask for newest-first order, which forces the ``new`` comment sort.

Every failure that prevents producing a listing is raised as
``SourceFetchError``; a run cannot proceed without its source.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterator
from typing import Any, Final, Protocol

import httpx

from Pick_Sync.config import Settings
from Pick_Sync.models import RawItem, TopicListing
from Pick_Sync.services.rate_limiter import RateLimiter
from Pick_Sync.utils.exceptions import RateLimitExceededError, SourceFetchError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SOURCE_NAME: Final[str] = "reddit"
REDDIT_BASE_URL: Final[str] = "https://www.reddit.com"
NEWEST_SORT: Final[str] = "new"

POTD_TITLE_RE: re.Pattern[str] = re.compile(r"pick\s+of\s+the\s+day|potd", re.IGNORECASE)
# "Record: 12-4", "12-4-1", "12–4" (en dash)
RECORD_RE: re.Pattern[str] = re.compile(
    r"(?:record[:\s]*)?(\d+)[-–](\d+)(?:[-–](\d+))?", re.IGNORECASE
)


class SourceAdapter(Protocol):
    """Produces the full raw item listing for the current topic.

    With ``newest_first`` the items must come back newest first, which the
    incremental bookmark relies on.
    """

    async def fetch_topic_items(self, *, newest_first: bool = False) -> TopicListing: ...


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def extract_record(text: str) -> str | None:
    """Return a normalised ``W-L`` or ``W-L-P`` record found in *text*, or None.

    A zero push count is dropped (``"10-5-0"`` becomes ``"10-5"``).
    """
    match = RECORD_RE.search(text)
    if match is None:
        return None
    wins, losses, pushes = match.group(1), match.group(2), match.group(3)
    if pushes and int(pushes) > 0:
        return f"{int(wins)}-{int(losses)}-{int(pushes)}"
    return f"{int(wins)}-{int(losses)}"


def find_topic_post(posts: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Return the first post whose title matches the pick-of-the-day pattern."""
    for post in posts:
        data = post.get("data") if isinstance(post.get("data"), dict) else post
        title = data.get("title") or ""
        if POTD_TITLE_RE.search(title):
            return data
    return None


def flatten_comments(comments: list[dict[str, Any]]) -> Iterator[RawItem]:
    """Yield every comment and its nested replies depth-first, in order."""
    for comment in comments:
        text = comment.get("text") or comment.get("body") or ""
        yield RawItem(
            id=str(comment.get("id") or ""),
            author=comment.get("author") or "unknown",
            text=text,
            score=int(comment.get("score") or 0),
            record=extract_record(text),
        )
        replies = comment.get("replies")
        if isinstance(replies, list):
            yield from flatten_comments(replies)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class RedditThreadSource:
    """Fetch the current pick-of-the-day thread through the RapidAPI proxy.

    Usage::

        source = RedditThreadSource(api_key="...", subreddit="sportsbook")
        listing = await source.fetch_topic_items()
        await source.aclose()
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        api_host: str = "reddit34.p.rapidapi.com",
        subreddit: str = "sportsbook",
        comment_sort: str = "top",
        timeout: float = 30.0,
        rate_limiter: RateLimiter | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_host = api_host
        self._base_url = f"https://{api_host}"
        self._subreddit = subreddit
        self._comment_sort = comment_sort
        self._timeout = timeout
        self._rate_limiter = rate_limiter or RateLimiter()
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=timeout, write=10.0, pool=5.0),
            limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
        )

        logger.info(
            "RedditThreadSource initialized: r/%s sort=%s api_key=%s",
            subreddit,
            comment_sort,
            "configured" if api_key else "not configured",
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> RedditThreadSource:
        return cls(
            settings.source_api_key,
            api_host=settings.source_api_host,
            subreddit=settings.subreddit,
            comment_sort=settings.comment_sort,
            timeout=settings.source_timeout_seconds,
            rate_limiter=RateLimiter(
                requests_per_second=settings.source_requests_per_minute / 60.0
            ),
        )

    async def aclose(self) -> None:
        """Close the shared httpx client."""
        await self._client.aclose()

    async def fetch_topic_items(self, *, newest_first: bool = False) -> TopicListing:
        """Return today's thread title, URL, and flattened comments.

        Comments are requested with the configured sort, or with ``new`` when
        *newest_first* is set so that top-level comments arrive newest first.

        Raises:
            SourceFetchError: If the API fails, no matching thread exists, or
                the comment payload reports failure.
        """
        if not self._api_key:
            msg = "Source API key is not configured."
            raise SourceFetchError(msg, source=SOURCE_NAME)

        posts_payload = await self._get_json(
            "/getPostsBySubreddit",
            {"subreddit": self._subreddit, "sort": "hot", "time": "day"},
        )
        posts = (posts_payload.get("data") or {}).get("posts") or []
        logger.info("Fetched %d posts from r/%s", len(posts), self._subreddit)

        post = find_topic_post(posts)
        if post is None:
            msg = f"No pick-of-the-day thread found in r/{self._subreddit}."
            raise SourceFetchError(msg, source=SOURCE_NAME)

        title = post.get("title") or ""
        url = f"{REDDIT_BASE_URL}{post.get('permalink') or ''}"
        logger.info("Found thread: %r", title)

        comments_payload = await self._get_json(
            "/getPostCommentsWithSort",
            {"post_url": url, "sort": NEWEST_SORT if newest_first else self._comment_sort},
        )
        if not comments_payload.get("success", False):
            msg = "Comment endpoint reported failure."
            raise SourceFetchError(msg, source=SOURCE_NAME)

        comments = (comments_payload.get("data") or {}).get("comments") or []
        items = list(flatten_comments(comments))
        logger.info(
            "Flattened %d comments (%d with records)",
            len(items),
            sum(1 for item in items if item.record),
        )
        return TopicListing(title=title, url=url, items=items)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        """GET *path* through the rate limiter and decode a JSON object body."""
        headers = {
            "x-rapidapi-key": self._api_key or "",
            "x-rapidapi-host": self._api_host,
        }

        async def _request() -> httpx.Response:
            response = await asyncio.wait_for(
                self._client.get(f"{self._base_url}{path}", params=params, headers=headers),
                timeout=self._timeout,
            )
            if response.status_code == 429:  # noqa: PLR2004
                header = response.headers.get("Retry-After", "")
                msg = f"Source rate limit hit on {path}."
                raise RateLimitExceededError(
                    msg,
                    source=SOURCE_NAME,
                    retry_after=float(header) if header.isdigit() else None,
                )
            return response

        try:
            response = await self._rate_limiter.execute(_request, source=SOURCE_NAME)
        except TimeoutError as exc:
            msg = f"Source request {path} timed out."
            raise SourceFetchError(msg, source=SOURCE_NAME) from exc
        except httpx.HTTPError as exc:
            msg = f"Source request {path} failed: {exc}"
            raise SourceFetchError(msg, source=SOURCE_NAME) from exc

        if response.status_code != 200:  # noqa: PLR2004
            msg = f"Source returned HTTP {response.status_code} for {path}."
            raise SourceFetchError(msg, source=SOURCE_NAME, http_status=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"Source returned a non-JSON body for {path}."
            raise SourceFetchError(msg, source=SOURCE_NAME) from exc
        if not isinstance(payload, dict):
            msg = f"Unexpected payload shape from {path}."
            raise SourceFetchError(msg, source=SOURCE_NAME)
        return payload
