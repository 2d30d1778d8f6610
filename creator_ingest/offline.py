from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .dedupe import extract_shortcode, extract_tiktok_video_id
from .errors import FetchError
from .post import Platform, normalize_handle
from .upstream import FetchResult

_OFFLINE_TIMESTAMP = 1735689600  # 2025-01-01T00:00:00Z


def _instagram_media(shortcode: str, index: int) -> dict[str, Any]:
    return {
        "__typename": "XDTGraphVideo" if index % 2 else "XDTGraphImage",
        "id": f"31{index:017d}",
        "shortcode": shortcode,
        "display_url": f"https://cdn.example.com/ig/{shortcode}.jpg",
        "is_video": bool(index % 2),
        "video_url": f"https://cdn.example.com/ig/{shortcode}.mp4" if index % 2 else None,
        "video_view_count": 1000 + index if index % 2 else None,
        "edge_media_to_caption": {"edges": [{"node": {"text": f"Offline post {shortcode}"}}]},
        "edge_media_preview_like": {"count": 100 + index},
        "edge_media_to_parent_comment": {"count": 10 + index},
        "taken_at_timestamp": _OFFLINE_TIMESTAMP + index * 3600,
        "dimensions": {"width": 1080, "height": 1350},
        "owner": {
            "username": "offline.creator",
            "full_name": "Offline Creator",
            "is_verified": False,
            "profile_pic_url": "https://cdn.example.com/ig/avatar.jpg",
            "edge_followed_by": {"count": 4200},
        },
    }


def _tiktok_aweme(video_id: str, handle: str, index: int) -> dict[str, Any]:
    return {
        "aweme_id": video_id,
        "desc": f"Offline video {video_id}",
        "create_time": _OFFLINE_TIMESTAMP + index * 3600,
        "author": {"unique_id": handle, "nickname": "Offline Creator"},
        "statistics": {
            "play_count": 5000 + index,
            "digg_count": 400 + index,
            "comment_count": 30 + index,
            "share_count": 5 + index,
        },
        "video": {
            "play_addr": {"url_list": [f"https://cdn.example.com/tt/{video_id}.mp4"]},
            "cover": {"url_list": [f"https://cdn.example.com/tt/{video_id}.jpg"]},
            "width": 1080,
            "height": 1920,
        },
    }


@dataclass
class OfflineUpstreamClient:
    """
    Network-free upstream stub for `--offline` CLI runs and smoke checks.

    Serves deterministic profiles, two listing pages per profile and single
    posts synthesized from the requested URL. URLs containing "missing"
    answer with HTTP 404.
    """

    pages_per_profile: int = 2
    calls: list[tuple[str, str]] = field(default_factory=list)

    def fetch_profile(self, handle: str, platform: Platform) -> FetchResult:
        h = normalize_handle(handle)
        self.calls.append(("profile", h))
        if "missing" in h:
            raise FetchError("API request failed: 404 Not Found", status_code=404, status_text="Not Found")
        if platform == "instagram":
            data: dict[str, Any] = {
                "data": {
                    "user": {
                        "username": h,
                        "full_name": "Offline Creator",
                        "biography": "Offline fixture profile",
                        "edge_followed_by": {"count": 4200},
                        "profile_pic_url_hd": "https://cdn.example.com/ig/avatar.jpg",
                        "is_verified": False,
                    }
                }
            }
        else:
            data = {
                "user": {
                    "uniqueId": h,
                    "nickname": "Offline Creator",
                    "signature": "Offline fixture profile",
                    "avatarLarger": "https://cdn.example.com/tt/avatar.jpg",
                    "verified": False,
                },
                "stats": {"followerCount": "4200"},
            }
        return FetchResult(data=data)

    def fetch_posts(
        self,
        handle: str,
        platform: Platform,
        page_size: int,
        cursor: str | None = None,
    ) -> FetchResult:
        h = normalize_handle(handle)
        self.calls.append(("posts", f"{h}:{cursor or ''}"))
        page = int(cursor or 0)
        last = page + 1 >= self.pages_per_profile
        start = page * int(page_size)
        indexes = range(start, start + int(page_size))

        if platform == "instagram":
            return FetchResult(
                data={
                    "items": [
                        {**_instagram_media(f"OFF{i:04d}", i), "owner": {"username": h}} for i in indexes
                    ],
                    "more_available": not last,
                    "next_max_id": str(page + 1),
                }
            )
        return FetchResult(
            data={
                "aweme_list": [_tiktok_aweme(f"7{i:018d}", h, i) for i in indexes],
                "has_more": 0 if last else 1,
                "max_cursor": page + 1,
            }
        )

    def fetch_post(self, url: str, platform: Platform) -> FetchResult:
        self.calls.append(("post", url))
        if "missing" in url:
            raise FetchError("API request failed: 404 Not Found", status_code=404, status_text="Not Found")
        if platform == "instagram":
            shortcode = extract_shortcode(url)
            if not shortcode:
                return FetchResult(data={"data": {}})
            return FetchResult(data={"data": {"xdt_shortcode_media": _instagram_media(shortcode, len(shortcode))}})

        video_id = extract_tiktok_video_id(url)
        if not video_id:
            return FetchResult(data={})
        return FetchResult(data={"aweme_detail": _tiktok_aweme(video_id, "offline.creator", 1)})

    def fetch_transcript(self, url: str, platform: Platform) -> FetchResult:
        self.calls.append(("transcript", url))
        text = "WEBVTT\n\n1\n00:00:00.000 --> 00:00:02.000\nOffline transcript line one\n\n2\n00:00:02.000 --> 00:00:04.000\nline two\n"
        if platform == "instagram":
            return FetchResult(data={"transcripts": [{"transcript": text}]})
        return FetchResult(data={"transcript": text})

    def fetch_embed(self, url: str) -> FetchResult:
        self.calls.append(("embed", url))
        return FetchResult(data={"html": f'<blockquote class="tiktok-embed" cite="{url}"></blockquote>'})
