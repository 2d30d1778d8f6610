from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

from .errors import TransformError
from .normalize import normalize_post, page_items
from .pagination import CursorState, page_cursor
from .post import NormalizedPost, Platform, normalize_handle
from .run_log import RunLogger
from .upstream import UpstreamClient

SortOption = Literal["most-recent", "most-viewed", "most-liked", "most-commented"]
SORT_OPTIONS: tuple[SortOption, ...] = ("most-recent", "most-viewed", "most-liked", "most-commented")


def sort_posts(posts: Sequence[NormalizedPost], option: SortOption = "most-recent") -> list[NormalizedPost]:
    if option == "most-viewed":
        return sorted(posts, key=lambda p: p.metrics.views or 0, reverse=True)
    if option == "most-liked":
        return sorted(posts, key=lambda p: p.metrics.likes, reverse=True)
    if option == "most-commented":
        return sorted(posts, key=lambda p: p.metrics.comments, reverse=True)
    return sorted(posts, key=lambda p: p.date_posted, reverse=True)


@dataclass(frozen=True)
class PostPage:
    posts: tuple[NormalizedPost, ...]
    has_more: bool
    next_cursor: str | None
    cached: bool = False
    skipped: int = 0


def fetch_post_page(
    client: UpstreamClient,
    handle: str,
    platform: Platform,
    *,
    page_size: int,
    cursor: str | None = None,
    logger: RunLogger | None = None,
) -> PostPage:
    """
    Fetch and normalize one listing page.

    Items the normalizer rejects are skipped and counted; they never fail the page.
    """
    fetched = client.fetch_posts(handle, platform, page_size, cursor)
    posts: list[NormalizedPost] = []
    skipped = 0
    for item in page_items(fetched.data, platform):
        try:
            posts.append(normalize_post(item, platform, handle=handle))
        except TransformError as e:
            skipped += 1
            if logger is not None:
                logger.warning("listing_item_skipped", handle=handle, platform=platform, error=str(e))

    next_page = page_cursor(fetched.data, platform)
    return PostPage(
        posts=tuple(posts),
        has_more=next_page.can_continue,
        next_cursor=next_page.cursor if next_page.can_continue else None,
        cached=fetched.cached,
        skipped=skipped,
    )


class PostListing:
    """
    Accumulated posts of one profile plus where the listing left off.

    `load_more()` fetches the next page, or does nothing once the last page
    said there are no more results.
    """

    def __init__(
        self,
        client: UpstreamClient,
        handle: str,
        platform: Platform,
        *,
        page_size: int = 12,
        logger: RunLogger | None = None,
    ) -> None:
        self._client = client
        self._handle = normalize_handle(handle)
        self._platform = platform
        self._page_size = int(page_size)
        self._log = logger
        self._cursor = CursorState(platform)
        self._posts: list[NormalizedPost] = []
        self._seen: set[str] = set()

    @property
    def posts(self) -> tuple[NormalizedPost, ...]:
        return tuple(self._posts)

    @property
    def has_more(self) -> bool:
        return not self._cursor.started or self._cursor.can_load_more

    @property
    def next_cursor(self) -> str | None:
        return self._cursor.next_cursor

    def load_more(self) -> tuple[NormalizedPost, ...]:
        if not self.has_more:
            return self.posts

        fetched = self._client.fetch_posts(self._handle, self._platform, self._page_size, self._cursor.next_cursor)
        self._cursor.advance(fetched.data)

        for item in page_items(fetched.data, self._platform):
            try:
                post = normalize_post(item, self._platform, handle=self._handle)
            except TransformError as e:
                if self._log is not None:
                    self._log.warning("listing_item_skipped", handle=self._handle, error=str(e))
                continue
            if post.platform_post_id in self._seen:
                continue
            self._seen.add(post.platform_post_id)
            self._posts.append(post)

        return self.posts

    def sorted(self, option: SortOption = "most-recent") -> list[NormalizedPost]:
        return sort_posts(self._posts, option)
