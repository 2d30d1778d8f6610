from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Sequence

Platform = Literal["instagram", "tiktok"]
PLATFORMS: tuple[Platform, ...] = ("instagram", "tiktok")


def normalize_platform(value: str) -> Platform:
    p = (value or "").strip().lower()
    if p == "instagram":
        return "instagram"
    if p == "tiktok":
        return "tiktok"
    raise ValueError(f"Unsupported platform: {value!r}")


def normalize_handle(value: str) -> str:
    """Handles are stored without a leading '@' and lower-cased."""
    return (value or "").strip().lstrip("@").strip().lower()


@dataclass(frozen=True)
class PostMetrics:
    likes: int = 0
    comments: int = 0
    views: int | None = None
    shares: int | None = None

    def as_dict(self) -> dict[str, int]:
        out = {"likes": int(self.likes), "comments": int(self.comments)}
        if self.views is not None:
            out["views"] = int(self.views)
        if self.shares is not None:
            out["shares"] = int(self.shares)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "PostMetrics":
        if not isinstance(data, dict):
            return cls()

        def _opt(key: str) -> int | None:
            v = data.get(key)
            return int(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else None

        return cls(
            likes=_opt("likes") or 0,
            comments=_opt("comments") or 0,
            views=_opt("views"),
            shares=_opt("shares"),
        )


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int


@dataclass(frozen=True)
class CarouselMedia:
    id: str
    type: Literal["image", "video"]
    url: str | None
    thumbnail: str | None
    is_video: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "url": self.url,
            "thumbnail": self.thumbnail,
            "isVideo": self.is_video,
        }


@dataclass(frozen=True)
class NormalizedProfile:
    """Creator fields as reported upstream; None means "not reported"."""

    handle: str
    platform: Platform
    display_name: str | None = None
    bio: str | None = None
    followers_count: int | None = None
    avatar_url: str | None = None
    verified: bool | None = None


@dataclass(frozen=True)
class NormalizedPost:
    """One post in the canonical shape shared by both platforms."""

    platform_post_id: str
    platform: Platform
    handle: str

    embed_url: str
    original_url: str
    caption: str
    metrics: PostMetrics
    date_posted: str

    thumbnail: str | None = None
    is_video: bool = False
    is_carousel: bool = False
    carousel_media: Sequence[CarouselMedia] = ()
    carousel_count: int | None = None
    video_url: str | None = None
    display_url: str | None = None
    shortcode: str | None = None
    dimensions: Dimensions | None = None

    transcript: str | None = None
    embed_html: str | None = None

    # True when date_posted is the ingestion time because upstream sent no timestamp.
    date_is_fallback: bool = field(default=False, compare=False)
    author: NormalizedProfile | None = field(default=None, compare=False)

    def with_post_id(self, platform_post_id: str) -> "NormalizedPost":
        return replace(self, platform_post_id=platform_post_id)

    def profile(self) -> NormalizedProfile:
        if self.author is not None:
            return self.author
        return NormalizedProfile(handle=self.handle, platform=self.platform)
