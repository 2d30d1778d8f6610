from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

from .post import Platform

# Shortcodes are short; anything this long or longer is assumed to be a numeric media id.
SHORTCODE_MAX_LENGTH = 20

_LEGACY_COMPOSITE_RE = re.compile(r"\d+_\d+")
_SHORTCODE_PATH_RE = re.compile(r"/(?:p|reel|reels|tv)/([A-Za-z0-9_-]+)")
_TIKTOK_VIDEO_PATH_RE = re.compile(r"/video/(\d+)")


def canonicalize_url(url: str) -> str:
    value = (url or "").strip()
    if not value:
        return ""

    parts = urlsplit(value)
    if not parts.scheme or not parts.netloc:
        return value.rstrip("/")

    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]

    path = (parts.path or "").rstrip("/")
    if not path:
        path = "/"

    return urlunsplit((scheme, netloc, path, "", ""))


def detect_platform(url: str) -> Platform | None:
    netloc = urlsplit((url or "").strip()).netloc.lower()
    if netloc == "instagram.com" or netloc.endswith(".instagram.com") or netloc == "instagr.am":
        return "instagram"
    if netloc == "tiktok.com" or netloc.endswith(".tiktok.com"):
        return "tiktok"
    return None


def is_legacy_composite_id(value: str) -> bool:
    return _LEGACY_COMPOSITE_RE.search((value or "").strip()) is not None


def looks_like_shortcode(value: str) -> bool:
    v = (value or "").strip()
    return bool(v) and not is_legacy_composite_id(v) and len(v) < SHORTCODE_MAX_LENGTH


def extract_shortcode(url: str) -> str | None:
    m = _SHORTCODE_PATH_RE.search(url or "")
    return m.group(1) if m else None


def extract_tiktok_video_id(url: str) -> str | None:
    m = _TIKTOK_VIDEO_PATH_RE.search(url or "")
    return m.group(1) if m else None


def instagram_post_url(shortcode: str) -> str:
    return f"https://www.instagram.com/p/{shortcode}/"


def reconcile_post_id(post_id: str, source_url: str | None = None) -> str:
    """
    Map an Instagram post id onto its canonical shortcode form.

    Short non-composite ids are already shortcodes. Otherwise the shortcode is
    read from the source URL; when that fails the id is returned unchanged.
    """
    pid = (post_id or "").strip()
    if looks_like_shortcode(pid):
        return pid

    shortcode = extract_shortcode(source_url or "")
    if shortcode:
        return shortcode
    return pid


def canonical_post_id(platform: Platform, post_id: str, source_url: str | None = None) -> str:
    if platform == "instagram":
        return reconcile_post_id(post_id, source_url)
    return (post_id or "").strip()

