from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol

import requests

from .cache import ResponseCache, cache_key
from .config_schema import CacheConfig, UpstreamConfig
from .dedupe import canonicalize_url
from .errors import FetchError
from .post import Platform, normalize_handle
from .run_log import RunLogger


@dataclass(frozen=True)
class FetchResult:
    """Parsed upstream JSON plus whether it was served from the cache."""

    data: Any
    cached: bool = False


class UpstreamClient(Protocol):
    def fetch_profile(self, handle: str, platform: Platform) -> FetchResult: ...

    def fetch_posts(
        self,
        handle: str,
        platform: Platform,
        page_size: int,
        cursor: str | None = None,
    ) -> FetchResult: ...

    def fetch_post(self, url: str, platform: Platform) -> FetchResult: ...

    def fetch_transcript(self, url: str, platform: Platform) -> FetchResult: ...

    def fetch_embed(self, url: str) -> FetchResult: ...


def _retry_after_seconds(response: requests.Response) -> float | None:
    raw = (response.headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class ScrapeCreatorsClient:
    """
    Thin HTTP client for the scraping provider with a cache-aside layer.

    Each call type routes to its own (possibly differently versioned) path.
    The client never retries; a non-2xx status or a non-JSON body raises
    FetchError and retry policy is left to the caller.
    """

    def __init__(
        self,
        api_key: str,
        *,
        upstream: UpstreamConfig | None = None,
        cache_cfg: CacheConfig | None = None,
        cache: ResponseCache | None = None,
        session: requests.Session | None = None,
        transcript_language: str = "en",
        logger: RunLogger | None = None,
    ) -> None:
        key = (api_key or "").strip()
        if not key:
            raise ValueError("api_key must be non-empty")

        self._api_key = key
        self._cfg = upstream or UpstreamConfig()
        self._ttl = cache_cfg or CacheConfig()
        self._cache = cache
        self._session = session or requests.Session()
        self._language = (transcript_language or "").strip() or "en"
        self._log = logger

    def _url(self, route: str) -> str:
        if route.startswith(("http://", "https://")):
            return route
        return f"{self._cfg.base_url}{route}"

    def _get(self, route: str, params: dict[str, Any], *, authenticated: bool = True) -> Any:
        url = self._url(route)
        headers = {"x-api-key": self._api_key} if authenticated else {}
        query = {k: v for k, v in params.items() if v is not None}

        try:
            response = self._session.get(
                url,
                params=query,
                headers=headers,
                timeout=self._cfg.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise FetchError(f"API request failed: {exc}") from exc

        if not (200 <= response.status_code < 300):
            reason = (response.reason or "").strip()
            raise FetchError(
                f"API request failed: {response.status_code} {reason}".rstrip(),
                status_code=int(response.status_code),
                status_text=reason or None,
                retry_after=_retry_after_seconds(response),
            )

        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(
                f"API returned a non-JSON body ({response.status_code})",
                status_code=int(response.status_code),
                status_text=(response.reason or "").strip() or None,
            ) from exc

    def _cached(self, key: str, ttl_seconds: int, load: Callable[[], Any]) -> FetchResult:
        if self._cache is not None:
            hit = self._cache.get(key)
            if hit is not None:
                if self._log is not None:
                    self._log.info("upstream_cache_hit", key=key)
                return FetchResult(data=hit, cached=True)

        data = load()

        if self._cache is not None:
            self._cache.set(key, data, ttl_seconds)
        return FetchResult(data=data, cached=False)

    def fetch_profile(self, handle: str, platform: Platform) -> FetchResult:
        h = normalize_handle(handle)
        if not h:
            raise ValueError("handle must be non-empty")

        routes = self._cfg.routes
        route = routes.instagram_profile if platform == "instagram" else routes.tiktok_profile
        return self._cached(
            cache_key(platform, "profile", h),
            self._ttl.profile_ttl_seconds,
            lambda: self._get(route, {"handle": h}),
        )

    def fetch_posts(
        self,
        handle: str,
        platform: Platform,
        page_size: int,
        cursor: str | None = None,
    ) -> FetchResult:
        h = normalize_handle(handle)
        if not h:
            raise ValueError("handle must be non-empty")

        c = (cursor or "").strip() or None
        routes = self._cfg.routes
        if platform == "instagram":
            route = routes.instagram_posts
            params: dict[str, Any] = {"handle": h, "count": int(page_size), "next_max_id": c}
        else:
            route = routes.tiktok_posts
            params = {"handle": h, "count": int(page_size), "max_cursor": c}

        return self._cached(
            cache_key(platform, "posts", h, c),
            self._ttl.posts_ttl_seconds,
            lambda: self._get(route, params),
        )

    def fetch_post(self, url: str, platform: Platform) -> FetchResult:
        u = (url or "").strip()
        if not u:
            raise ValueError("url must be non-empty")

        routes = self._cfg.routes
        route = routes.instagram_post if platform == "instagram" else routes.tiktok_post
        return self._cached(
            cache_key(platform, "post", canonicalize_url(u)),
            self._ttl.post_ttl_seconds,
            lambda: self._get(route, {"url": u}),
        )

    def fetch_transcript(self, url: str, platform: Platform) -> FetchResult:
        u = (url or "").strip()
        if not u:
            raise ValueError("url must be non-empty")

        routes = self._cfg.routes
        if platform == "instagram":
            route = routes.instagram_transcript
            params: dict[str, Any] = {"url": u}
        else:
            route = routes.tiktok_transcript
            params = {"url": u, "language": self._language}

        return self._cached(
            cache_key(platform, "transcript", canonicalize_url(u)),
            self._ttl.transcript_ttl_seconds,
            lambda: self._get(route, params),
        )

    def fetch_embed(self, url: str) -> FetchResult:
        """TikTok oEmbed; public endpoint, no API key, not cached."""
        u = (url or "").strip()
        if not u:
            raise ValueError("url must be non-empty")
        data = self._get(self._cfg.routes.tiktok_oembed, {"url": u}, authenticated=False)
        return FetchResult(data=data, cached=False)
