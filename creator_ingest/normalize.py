from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Sequence

from .dedupe import instagram_post_url
from .errors import TransformError
from .post import (
    CarouselMedia,
    Dimensions,
    NormalizedPost,
    NormalizedProfile,
    Platform,
    PostMetrics,
    normalize_handle,
)

FieldPath = tuple[Any, ...]

InstagramShape = Literal["api_item", "graph_node", "shortcode_media"]

_IG_CAROUSEL_MEDIA_TYPE = 8
_IG_VIDEO_MEDIA_TYPE = 2
_IG_SIDECAR_TYPENAMES = {"GraphSidecar", "XDTGraphSidecar"}


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return int(s)
    return None


def _dig(item: Any, path: FieldPath) -> Any:
    cur = item
    for part in path:
        if isinstance(part, int):
            if not isinstance(cur, Sequence) or isinstance(cur, str) or not -len(cur) <= part < len(cur):
                return None
            cur = cur[part]
        else:
            if not isinstance(cur, Mapping):
                return None
            cur = cur.get(part)
        if cur is None:
            return None
    return cur


def _first_str(item: Any, paths: Sequence[FieldPath]) -> str | None:
    for path in paths:
        value = _coerce_str(_dig(item, path))
        if value:
            return value
    return None


def _first_id(item: Any, paths: Sequence[FieldPath]) -> str | None:
    for path in paths:
        value = _coerce_id(_dig(item, path))
        if value:
            return value
    return None


def _first_int(item: Any, paths: Sequence[FieldPath]) -> int | None:
    for path in paths:
        value = _coerce_int(_dig(item, path))
        if value is not None:
            return value
    return None


def _first_mapping(item: Any, paths: Sequence[FieldPath]) -> Mapping[str, Any] | None:
    for path in paths:
        value = _dig(item, path)
        if isinstance(value, Mapping):
            return value
    return None


def _iso_from_unix_seconds(seconds: int) -> str | None:
    try:
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _resolve_timestamp(
    item: Any,
    paths: Sequence[FieldPath],
    now: datetime | None,
) -> tuple[str, bool]:
    seconds = _first_int(item, paths)
    if seconds is not None and seconds > 0:
        iso = _iso_from_unix_seconds(seconds)
        if iso is not None:
            return iso, False
    # Missing or out-of-range values fall back to now.
    current = now or datetime.now(timezone.utc)
    return current.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"), True


# Instagram ordered field resolvers. The first non-empty path wins.

_IG_POST_ID: tuple[FieldPath, ...] = (("code",), ("shortcode",), ("id",), ("pk",))
_IG_SHORTCODE: tuple[FieldPath, ...] = (("code",), ("shortcode",))
_IG_CAPTION: tuple[FieldPath, ...] = (
    ("caption", "text"),
    ("edge_media_to_caption", "edges", 0, "node", "text"),
    ("caption",),
)
_IG_VIDEO_URL: tuple[FieldPath, ...] = (("video_url",), ("video_versions", 0, "url"))
_IG_DISPLAY_URL: tuple[FieldPath, ...] = (
    ("display_url",),
    ("image_versions2", "candidates", 0, "url"),
)
_IG_MEDIA_URL: tuple[FieldPath, ...] = (
    ("video_url",),
    ("video_versions", 0, "url"),
    ("display_url",),
    ("image_versions2", "candidates", 0, "url"),
    ("carousel_media", 0, "image_versions2", "candidates", 0, "url"),
    ("edge_sidecar_to_children", "edges", 0, "node", "display_url"),
)
_IG_THUMBNAIL: tuple[FieldPath, ...] = (
    ("thumbnail_src",),
    ("display_url",),
    ("image_versions2", "candidates", 0, "url"),
    ("carousel_media", 0, "image_versions2", "candidates", 0, "url"),
    ("edge_sidecar_to_children", "edges", 0, "node", "display_url"),
)
_IG_LIKES: tuple[FieldPath, ...] = (
    ("like_count",),
    ("edge_liked_by", "count"),
    ("edge_media_preview_like", "count"),
)
_IG_COMMENTS: tuple[FieldPath, ...] = (
    ("comment_count",),
    ("edge_media_to_comment", "count"),
    ("edge_media_to_parent_comment", "count"),
)
_IG_VIEWS: tuple[FieldPath, ...] = (
    ("view_count",),
    ("play_count",),
    ("video_view_count",),
    ("ig_play_count",),
)
_IG_SHARES: tuple[FieldPath, ...] = (("share_count",), ("reshare_count",))
_IG_TIMESTAMP: tuple[FieldPath, ...] = (("taken_at",), ("taken_at_timestamp",))
_IG_WIDTH: tuple[FieldPath, ...] = (("original_width",), ("dimensions", "width"))
_IG_HEIGHT: tuple[FieldPath, ...] = (("original_height",), ("dimensions", "height"))
_IG_OWNER: tuple[FieldPath, ...] = (("user",), ("owner",))

_IG_PROFILE_USER: tuple[FieldPath, ...] = (("data", "user"), ("user",), ("data",))
_IG_FOLLOWERS: tuple[FieldPath, ...] = (("edge_followed_by", "count"), ("follower_count",))
_IG_AVATAR: tuple[FieldPath, ...] = (("profile_pic_url_hd",), ("profile_pic_url",))

# TikTok ordered field resolvers.

_TT_POST_ID: tuple[FieldPath, ...] = (("aweme_id",), ("id",), ("video_id",))
_TT_CAPTION: tuple[FieldPath, ...] = (("desc",), ("title",))
_TT_VIDEO_URL: tuple[FieldPath, ...] = (
    ("video", "play_addr", "url_list", 0),
    ("video", "download_addr", "url_list", 0),
    ("video", "playAddr"),
    ("video", "downloadAddr"),
)
_TT_THUMBNAIL: tuple[FieldPath, ...] = (
    ("video", "dynamic_cover", "url_list", 0),
    ("video", "origin_cover", "url_list", 0),
    ("video", "cover", "url_list", 0),
    ("video", "dynamicCover"),
    ("video", "originCover"),
    ("video", "cover"),
)
_TT_LIKES: tuple[FieldPath, ...] = (("statistics", "digg_count"), ("stats", "diggCount"), ("statsV2", "diggCount"))
_TT_COMMENTS: tuple[FieldPath, ...] = (
    ("statistics", "comment_count"),
    ("stats", "commentCount"),
    ("statsV2", "commentCount"),
)
_TT_VIEWS: tuple[FieldPath, ...] = (("statistics", "play_count"), ("stats", "playCount"), ("statsV2", "playCount"))
_TT_SHARES: tuple[FieldPath, ...] = (
    ("statistics", "share_count"),
    ("stats", "shareCount"),
    ("statsV2", "shareCount"),
)
_TT_TIMESTAMP: tuple[FieldPath, ...] = (("create_time",), ("createTime",))
_TT_WIDTH: tuple[FieldPath, ...] = (("video", "width"),)
_TT_HEIGHT: tuple[FieldPath, ...] = (("video", "height"),)
_TT_AUTHOR: tuple[FieldPath, ...] = (("author",),)
_TT_HANDLE: tuple[FieldPath, ...] = (("unique_id",), ("uniqueId",))
_TT_AUTHOR_AVATAR: tuple[FieldPath, ...] = (
    ("avatar_larger", "url_list", 0),
    ("avatar_medium", "url_list", 0),
    ("avatar_thumb", "url_list", 0),
    ("avatarLarger",),
    ("avatarMedium",),
    ("avatarThumb",),
)
_TT_PHOTO_IMAGES: tuple[FieldPath, ...] = (("image_post_info", "images"), ("imagePost", "images"))
_TT_PHOTO_URL: tuple[FieldPath, ...] = (
    ("display_image", "url_list", 0),
    ("imageURL", "urlList", 0),
)
_TT_PHOTO_THUMBNAIL: tuple[FieldPath, ...] = (
    ("thumbnail", "url_list", 0),
    ("display_image", "url_list", 0),
    ("imageURL", "urlList", 0),
)

_TT_PROFILE_USER: tuple[FieldPath, ...] = (("user",), ("data", "user"), ("userInfo", "user"))
_TT_PROFILE_STATS: tuple[FieldPath, ...] = (("stats",), ("statsV2",), ("data", "stats"), ("userInfo", "stats"))


def instagram_shape(item: Mapping[str, Any]) -> InstagramShape:
    typename = _coerce_str(item.get("__typename")) or ""
    if typename.startswith("XDT") or "edge_media_to_parent_comment" in item:
        return "shortcode_media"
    if "shortcode" in item or any(k.startswith("edge_") for k in item):
        return "graph_node"
    return "api_item"


def _ig_is_video(node: Mapping[str, Any]) -> bool:
    if _coerce_int(node.get("media_type")) == _IG_VIDEO_MEDIA_TYPE:
        return True
    if node.get("is_video") is True:
        return True
    return _first_str(node, _IG_VIDEO_URL) is not None


def _ig_children(item: Mapping[str, Any], shape: InstagramShape) -> list[Mapping[str, Any]]:
    if shape == "api_item":
        raw = item.get("carousel_media")
        return [c for c in raw if isinstance(c, Mapping)] if isinstance(raw, list) else []

    edges = _dig(item, ("edge_sidecar_to_children", "edges"))
    if not isinstance(edges, list):
        return []
    out: list[Mapping[str, Any]] = []
    for edge in edges:
        node = edge.get("node") if isinstance(edge, Mapping) else None
        if isinstance(node, Mapping):
            out.append(node)
    return out


def _ig_carousel_media(
    children: Sequence[Mapping[str, Any]],
    *,
    parent_id: str,
) -> tuple[CarouselMedia, ...]:
    out: list[CarouselMedia] = []
    for index, child in enumerate(children):
        is_video = _ig_is_video(child)
        out.append(
            CarouselMedia(
                id=_first_id(child, (("id",), ("pk",))) or f"{parent_id}_{index}",
                type="video" if is_video else "image",
                url=_first_str(child, _IG_MEDIA_URL),
                thumbnail=_first_str(child, _IG_THUMBNAIL),
                is_video=is_video,
            )
        )
    return tuple(out)


def _dimensions(item: Any, widths: Sequence[FieldPath], heights: Sequence[FieldPath]) -> Dimensions | None:
    w = _first_int(item, widths)
    h = _first_int(item, heights)
    if w is None or h is None:
        return None
    return Dimensions(width=w, height=h)


def _instagram_owner_profile(owner: Mapping[str, Any] | None, handle: str) -> NormalizedProfile:
    if owner is None:
        return NormalizedProfile(handle=handle, platform="instagram")
    verified = owner.get("is_verified")
    return NormalizedProfile(
        handle=handle,
        platform="instagram",
        display_name=_coerce_str(owner.get("full_name")),
        bio=_coerce_str(owner.get("biography")),
        followers_count=_first_int(owner, _IG_FOLLOWERS),
        avatar_url=_first_str(owner, _IG_AVATAR),
        verified=verified if isinstance(verified, bool) else None,
    )


def normalize_instagram_post(
    item: Mapping[str, Any],
    *,
    handle: str | None = None,
    now: datetime | None = None,
) -> NormalizedPost:
    """
    Convert one Instagram item (any known shape variant) into a NormalizedPost.

    Raises TransformError when the item has no post id or no creator handle.
    """
    if not isinstance(item, Mapping):
        raise TransformError("Instagram item must be a JSON object")

    shape = instagram_shape(item)

    post_id = _first_id(item, _IG_POST_ID)
    if not post_id:
        raise TransformError("Instagram item has no post id")

    owner = _first_mapping(item, _IG_OWNER)
    owner_handle = _coerce_str(owner.get("username")) if owner is not None else None
    creator = normalize_handle(owner_handle or handle or "")
    if not creator:
        raise TransformError(f"Instagram item {post_id} has no creator handle")

    shortcode = _first_str(item, _IG_SHORTCODE)
    media_url = _first_str(item, _IG_MEDIA_URL)
    permalink = instagram_post_url(shortcode) if shortcode else (media_url or "")

    children = _ig_children(item, shape)
    carousel = _ig_carousel_media(children, parent_id=post_id)
    is_carousel = (
        bool(carousel)
        or _coerce_int(item.get("media_type")) == _IG_CAROUSEL_MEDIA_TYPE
        or (_coerce_str(item.get("__typename")) or "") in _IG_SIDECAR_TYPENAMES
    )
    carousel_count = len(carousel) or _coerce_int(item.get("carousel_media_count"))

    date_posted, date_is_fallback = _resolve_timestamp(item, _IG_TIMESTAMP, now)

    return NormalizedPost(
        platform_post_id=post_id,
        platform="instagram",
        handle=creator,
        embed_url=permalink,
        original_url=permalink,
        caption=_first_str(item, _IG_CAPTION) or "",
        metrics=PostMetrics(
            likes=_first_int(item, _IG_LIKES) or 0,
            comments=_first_int(item, _IG_COMMENTS) or 0,
            views=_first_int(item, _IG_VIEWS),
            shares=_first_int(item, _IG_SHARES),
        ),
        date_posted=date_posted,
        thumbnail=_first_str(item, _IG_THUMBNAIL) or media_url,
        is_video=_ig_is_video(item),
        is_carousel=is_carousel,
        carousel_media=carousel,
        carousel_count=carousel_count if is_carousel else None,
        video_url=_first_str(item, _IG_VIDEO_URL),
        display_url=_first_str(item, _IG_DISPLAY_URL),
        shortcode=shortcode,
        dimensions=_dimensions(item, _IG_WIDTH, _IG_HEIGHT),
        date_is_fallback=date_is_fallback,
        author=_instagram_owner_profile(owner, creator),
    )


def _tiktok_photo_media(item: Mapping[str, Any], *, parent_id: str) -> tuple[CarouselMedia, ...]:
    images = None
    for path in _TT_PHOTO_IMAGES:
        value = _dig(item, path)
        if isinstance(value, list):
            images = value
            break
    if not images:
        return ()

    out: list[CarouselMedia] = []
    for index, image in enumerate(images):
        if not isinstance(image, Mapping):
            continue
        out.append(
            CarouselMedia(
                id=f"{parent_id}_{index}",
                type="image",
                url=_first_str(image, _TT_PHOTO_URL),
                thumbnail=_first_str(image, _TT_PHOTO_THUMBNAIL),
                is_video=False,
            )
        )
    return tuple(out)


def _tiktok_author_profile(author: Mapping[str, Any] | None, handle: str) -> NormalizedProfile:
    if author is None:
        return NormalizedProfile(handle=handle, platform="tiktok")
    verified = author.get("verified")
    return NormalizedProfile(
        handle=handle,
        platform="tiktok",
        display_name=_coerce_str(author.get("nickname")),
        bio=_coerce_str(author.get("signature")),
        followers_count=_first_int(author, (("follower_count",), ("followerCount",))),
        avatar_url=_first_str(author, _TT_AUTHOR_AVATAR),
        verified=verified if isinstance(verified, bool) else None,
    )


def tiktok_video_url(handle: str, video_id: str) -> str:
    return f"https://www.tiktok.com/@{handle}/video/{video_id}"


def normalize_tiktok_post(
    item: Mapping[str, Any],
    *,
    handle: str | None = None,
    now: datetime | None = None,
) -> NormalizedPost:
    """
    Convert one TikTok item (aweme or web shape) into a NormalizedPost.

    Photo posts become carousels of images. Views and shares stay None when
    the item does not report them.
    """
    if not isinstance(item, Mapping):
        raise TransformError("TikTok item must be a JSON object")

    post_id = _first_id(item, _TT_POST_ID)
    if not post_id:
        raise TransformError("TikTok item has no video id")

    author = _first_mapping(item, _TT_AUTHOR)
    author_handle = _first_str(author, _TT_HANDLE) if author is not None else None
    creator = normalize_handle(author_handle or handle or "")
    if not creator:
        raise TransformError(f"TikTok item {post_id} has no creator handle")

    url = tiktok_video_url(creator, post_id)
    photos = _tiktok_photo_media(item, parent_id=post_id)
    video_url = _first_str(item, _TT_VIDEO_URL) if not photos else None
    date_posted, date_is_fallback = _resolve_timestamp(item, _TT_TIMESTAMP, now)

    return NormalizedPost(
        platform_post_id=post_id,
        platform="tiktok",
        handle=creator,
        embed_url=url,
        original_url=url,
        caption=_first_str(item, _TT_CAPTION) or "",
        metrics=PostMetrics(
            likes=_first_int(item, _TT_LIKES) or 0,
            comments=_first_int(item, _TT_COMMENTS) or 0,
            views=_first_int(item, _TT_VIEWS),
            shares=_first_int(item, _TT_SHARES),
        ),
        date_posted=date_posted,
        thumbnail=_first_str(item, _TT_THUMBNAIL) or (photos[0].thumbnail if photos else None),
        is_video=not photos,
        is_carousel=bool(photos),
        carousel_media=photos,
        carousel_count=len(photos) if photos else None,
        video_url=video_url,
        display_url=photos[0].url if photos else None,
        dimensions=_dimensions(item, _TT_WIDTH, _TT_HEIGHT),
        date_is_fallback=date_is_fallback,
        author=_tiktok_author_profile(author, creator),
    )


def normalize_post(
    item: Mapping[str, Any],
    platform: Platform,
    *,
    handle: str | None = None,
    now: datetime | None = None,
) -> NormalizedPost:
    if platform == "instagram":
        return normalize_instagram_post(item, handle=handle, now=now)
    return normalize_tiktok_post(item, handle=handle, now=now)


def normalize_instagram_profile(payload: Mapping[str, Any]) -> NormalizedProfile:
    user = _first_mapping(payload, _IG_PROFILE_USER)
    handle = normalize_handle(_coerce_str(user.get("username")) or "") if user is not None else ""
    if user is None or not handle:
        raise TransformError("Instagram profile response has no username")
    return _instagram_owner_profile(user, handle)


def normalize_tiktok_profile(payload: Mapping[str, Any]) -> NormalizedProfile:
    user = _first_mapping(payload, _TT_PROFILE_USER)
    handle = normalize_handle(_first_str(user, _TT_HANDLE) or "") if user is not None else ""
    if user is None or not handle:
        raise TransformError("TikTok profile response has no uniqueId")

    stats = _first_mapping(payload, _TT_PROFILE_STATS) or {}
    verified = user.get("verified")
    return NormalizedProfile(
        handle=handle,
        platform="tiktok",
        display_name=_coerce_str(user.get("nickname")),
        bio=_coerce_str(user.get("signature")),
        followers_count=_first_int(stats, (("followerCount",), ("follower_count",))),
        avatar_url=_first_str(user, _TT_AUTHOR_AVATAR),
        verified=verified if isinstance(verified, bool) else None,
    )


def normalize_profile(payload: Mapping[str, Any], platform: Platform) -> NormalizedProfile:
    if not isinstance(payload, Mapping):
        raise TransformError("Profile response must be a JSON object")
    if platform == "instagram":
        return normalize_instagram_profile(payload)
    return normalize_tiktok_profile(payload)


def page_items(payload: Any, platform: Platform) -> list[Mapping[str, Any]]:
    """Pull the list of raw items out of one listing response, whatever its nesting."""
    if platform == "instagram":
        candidates: tuple[FieldPath, ...] = (("items",), ("data", "items"), ("posts",))
        edges_path: FieldPath = ("data", "user", "edge_owner_to_timeline_media", "edges")
    else:
        candidates = (("aweme_list",), ("videos",), ("data",), ("itemList",))
        edges_path = ()

    if isinstance(payload, list):
        return [i for i in payload if isinstance(i, Mapping)]

    for path in candidates:
        value = _dig(payload, path)
        if isinstance(value, list):
            return [i for i in value if isinstance(i, Mapping)]

    if edges_path:
        edges = _dig(payload, edges_path)
        if isinstance(edges, list):
            return [e["node"] for e in edges if isinstance(e, Mapping) and isinstance(e.get("node"), Mapping)]

    return []


def single_post_item(payload: Any, platform: Platform) -> Mapping[str, Any]:
    """Unwrap the item from a single-post response; raises TransformError if absent."""
    if platform == "instagram":
        paths: tuple[FieldPath, ...] = (
            ("data", "xdt_shortcode_media"),
            ("xdt_shortcode_media",),
            ("data", "shortcode_media"),
            ("graphql", "shortcode_media"),
            ("items", 0),
            ("data", "items", 0),
        )
    else:
        paths = (
            ("aweme_detail",),
            ("data", "aweme_detail"),
            ("itemInfo", "itemStruct"),
            ("data", "itemInfo", "itemStruct"),
        )

    found = _first_mapping(payload, paths)
    if found is not None:
        return found

    # Some routes return the bare item.
    id_paths = _IG_POST_ID if platform == "instagram" else _TT_POST_ID
    if isinstance(payload, Mapping) and _first_id(payload, id_paths):
        return payload

    raise TransformError(f"{platform} post response contains no post item")
