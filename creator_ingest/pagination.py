from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .post import Platform


@dataclass(frozen=True)
class PageCursor:
    has_more: bool
    cursor: str | None

    @property
    def can_continue(self) -> bool:
        return self.has_more and self.cursor is not None


def _cursor_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(int(value))
    s = str(value).strip()
    return s or None


def instagram_page_cursor(page: Mapping[str, Any]) -> PageCursor:
    """`more_available` + `next_max_id`; the id is passed back verbatim."""
    body = page
    if "more_available" not in page and isinstance(page.get("data"), Mapping):
        body = page["data"]
    return PageCursor(
        has_more=body.get("more_available") is True,
        cursor=_cursor_text(body.get("next_max_id")),
    )


def tiktok_page_cursor(page: Mapping[str, Any]) -> PageCursor:
    """`has_more` (0|1) + numeric `max_cursor`, sent back as an opaque string."""
    flag = page.get("has_more")
    if flag is None:
        flag = page.get("hasMore")
    cursor = page.get("max_cursor")
    if cursor is None:
        cursor = page.get("cursor")
    return PageCursor(
        has_more=flag is True or (isinstance(flag, int) and not isinstance(flag, bool) and flag == 1),
        cursor=_cursor_text(cursor),
    )


def page_cursor(page: Any, platform: Platform) -> PageCursor:
    if not isinstance(page, Mapping):
        return PageCursor(has_more=False, cursor=None)
    if platform == "instagram":
        return instagram_page_cursor(page)
    return tiktok_page_cursor(page)


class CursorState:
    """
    Where one listing left off.

    Before the first page nothing is known and the first page may be fetched.
    After each page the state is replaced wholesale by that page's values.
    Once a page reports no more results, further loads are refused even if a
    stale cursor value came back with it.
    """

    def __init__(self, platform: Platform) -> None:
        self._platform = platform
        self._last: PageCursor | None = None

    @property
    def platform(self) -> Platform:
        return self._platform

    @property
    def started(self) -> bool:
        return self._last is not None

    @property
    def has_more(self) -> bool:
        return self._last is None or self._last.has_more

    @property
    def next_cursor(self) -> str | None:
        if self._last is None or not self._last.has_more:
            return None
        return self._last.cursor

    @property
    def can_load_more(self) -> bool:
        return self._last is not None and self._last.can_continue

    def advance(self, page: Any) -> PageCursor:
        self._last = page_cursor(page, self._platform)
        return self._last

    def reset(self) -> None:
        self._last = None
