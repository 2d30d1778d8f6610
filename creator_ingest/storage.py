from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Sequence

from .cache import ClockFn, SQLiteResponseCache
from .errors import DuplicateError, StorageError
from .post import (
    CarouselMedia,
    Dimensions,
    NormalizedPost,
    NormalizedProfile,
    Platform,
    PostMetrics,
    normalize_handle,
)
from .storage_schema import initialize_sqlite

# Columns a background enrichment task may write.
ENRICHABLE_FIELDS = ("transcript", "embed_html")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _non_empty(value: str | None) -> str | None:
    s = (value or "").strip()
    return s or None


@dataclass(frozen=True)
class ProfileRecord:
    id: int
    handle: str
    platform: Platform
    display_name: str
    bio: str
    followers_count: int
    avatar_url: str
    verified: bool
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PostRecord:
    id: int
    platform_post_id: str
    platform: Platform
    profile_id: int
    embed_url: str
    original_url: str
    caption: str
    transcript: str | None
    embed_html: str | None
    metrics: PostMetrics
    date_posted: str
    thumbnail: str | None
    is_video: bool
    is_carousel: bool
    carousel_media: tuple[CarouselMedia, ...]
    carousel_count: int | None
    video_url: str | None
    display_url: str | None
    shortcode: str | None
    dimensions: Dimensions | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class BoardRecord:
    id: int
    owner_id: str
    name: str
    created_at: str


@dataclass(frozen=True)
class BoardPostRecord:
    board_id: int
    post_id: int
    added_at: str


def _profile_from_row(row: sqlite3.Row) -> ProfileRecord:
    return ProfileRecord(
        id=int(row["id"]),
        handle=str(row["handle"]),
        platform=row["platform"],
        display_name=str(row["display_name"]),
        bio=str(row["bio"]),
        followers_count=int(row["followers_count"]),
        avatar_url=str(row["avatar_url"]),
        verified=bool(row["verified"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _carousel_from_json(raw: str | None) -> tuple[CarouselMedia, ...]:
    if not raw:
        return ()
    try:
        items = json.loads(raw)
    except ValueError as e:
        raise StorageError(f"Stored carousel_media_json could not be parsed: {e}") from e

    out: list[CarouselMedia] = []
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        is_video = bool(item.get("isVideo"))
        out.append(
            CarouselMedia(
                id=str(item.get("id") or ""),
                type="video" if is_video else "image",
                url=item.get("url"),
                thumbnail=item.get("thumbnail"),
                is_video=is_video,
            )
        )
    return tuple(out)


def _post_from_row(row: sqlite3.Row) -> PostRecord:
    try:
        metrics = PostMetrics.from_dict(json.loads(row["metrics_json"] or "{}"))
    except ValueError as e:
        raise StorageError(f"Stored metrics_json could not be parsed: {e}") from e

    dims = None
    if row["width"] is not None and row["height"] is not None:
        dims = Dimensions(width=int(row["width"]), height=int(row["height"]))

    return PostRecord(
        id=int(row["id"]),
        platform_post_id=str(row["platform_post_id"]),
        platform=row["platform"],
        profile_id=int(row["profile_id"]),
        embed_url=str(row["embed_url"]),
        original_url=str(row["original_url"]),
        caption=str(row["caption"]),
        transcript=row["transcript"],
        embed_html=row["embed_html"],
        metrics=metrics,
        date_posted=str(row["date_posted"]),
        thumbnail=row["thumbnail"],
        is_video=bool(row["is_video"]),
        is_carousel=bool(row["is_carousel"]),
        carousel_media=_carousel_from_json(row["carousel_media_json"]),
        carousel_count=int(row["carousel_count"]) if row["carousel_count"] is not None else None,
        video_url=row["video_url"],
        display_url=row["display_url"],
        shortcode=row["shortcode"],
        dimensions=dims,
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _board_from_row(row: sqlite3.Row) -> BoardRecord:
    return BoardRecord(
        id=int(row["id"]),
        owner_id=str(row["owner_id"]),
        name=str(row["name"]),
        created_at=str(row["created_at"]),
    )


def _merged_metrics(old: PostMetrics, new: PostMetrics) -> PostMetrics:
    # Unreported counts arrive as 0 (likes, comments) or None (views, shares); neither replaces a stored value.
    return PostMetrics(
        likes=new.likes or old.likes,
        comments=new.comments or old.comments,
        views=new.views if new.views is not None else old.views,
        shares=new.shares if new.shares is not None else old.shares,
    )


class SQLiteContentStore:
    """
    Persistence for profiles, posts and board membership.

    Uniqueness of (handle, platform), (platform_post_id, platform) and
    (board_id, post_id) is enforced by the schema; upserts insert first and
    merge on conflict. One connection is shared across threads, so every
    statement runs under a re-entrant lock.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row
        self._lock = RLock()

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteContentStore":
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path, check_same_thread=False)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SQLiteContentStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def response_cache(self, *, clock: ClockFn | None = None) -> SQLiteResponseCache:
        return SQLiteResponseCache(self._conn, lock=self._lock, clock=clock)

    # Profiles

    def upsert_profile(self, profile: NormalizedProfile) -> tuple[ProfileRecord, bool]:
        """
        Insert the profile or update its mutable fields.

        Fields the upstream did not report (None or blank) keep their stored value.
        Returns (record, created).
        """
        handle = normalize_handle(profile.handle)
        if not handle:
            raise ValueError("profile handle must be non-empty")

        display_name = _non_empty(profile.display_name)
        bio = _non_empty(profile.bio)
        avatar = _non_empty(profile.avatar_url)
        followers = int(profile.followers_count) if profile.followers_count is not None else None
        verified = None if profile.verified is None else int(bool(profile.verified))
        now = _utc_now_iso()

        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    """
                    INSERT INTO profiles(
                      handle, platform, display_name, bio, followers_count,
                      avatar_url, verified, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(handle, platform) DO NOTHING
                    """.strip(),
                    (
                        handle,
                        profile.platform,
                        display_name or handle,
                        bio or "",
                        followers or 0,
                        avatar or "",
                        verified or 0,
                        now,
                        now,
                    ),
                )
                created = cur.rowcount == 1

                if not created:
                    self._conn.execute(
                        """
                        UPDATE profiles SET
                          display_name = COALESCE(?, display_name),
                          bio = COALESCE(?, bio),
                          followers_count = COALESCE(?, followers_count),
                          avatar_url = COALESCE(?, avatar_url),
                          verified = COALESCE(?, verified),
                          updated_at = ?
                        WHERE handle = ? AND platform = ?
                        """.strip(),
                        (display_name, bio, followers, avatar, verified, now, handle, profile.platform),
                    )

                row = self._conn.execute(
                    "SELECT * FROM profiles WHERE handle = ? AND platform = ?",
                    (handle, profile.platform),
                ).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert profile: {e}") from e

        if row is None:
            raise StorageError("Failed to read profile record after upsert")
        return _profile_from_row(row), created

    def get_profile(self, handle: str, platform: Platform) -> ProfileRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM profiles WHERE handle = ? AND platform = ?",
                (normalize_handle(handle), platform),
            ).fetchone()
        return _profile_from_row(row) if row is not None else None

    # Posts

    def upsert_post(self, post: NormalizedPost, *, profile_id: int) -> tuple[PostRecord, bool]:
        """
        Insert the post or merge it into the stored row with the same dedup key.

        New non-empty values overwrite; absent values are preserved.
        Returns (record, created).
        """
        pid = (post.platform_post_id or "").strip()
        if not pid:
            raise ValueError("platform_post_id must be non-empty")

        carousel_json = (
            _json_dumps([m.as_dict() for m in post.carousel_media]) if post.carousel_media else None
        )
        width = post.dimensions.width if post.dimensions is not None else None
        height = post.dimensions.height if post.dimensions is not None else None
        now = _utc_now_iso()

        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    """
                    INSERT INTO posts(
                      platform_post_id, platform, profile_id, embed_url, original_url,
                      caption, transcript, embed_html, metrics_json, date_posted,
                      thumbnail, is_video, is_carousel, carousel_media_json, carousel_count,
                      video_url, display_url, shortcode, width, height, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(platform_post_id, platform) DO NOTHING
                    """.strip(),
                    (
                        pid,
                        post.platform,
                        int(profile_id),
                        post.embed_url,
                        post.original_url,
                        post.caption or "",
                        _non_empty(post.transcript),
                        _non_empty(post.embed_html),
                        _json_dumps(post.metrics.as_dict()),
                        post.date_posted,
                        _non_empty(post.thumbnail),
                        int(bool(post.is_video)),
                        int(bool(post.is_carousel)),
                        carousel_json,
                        post.carousel_count,
                        _non_empty(post.video_url),
                        _non_empty(post.display_url),
                        _non_empty(post.shortcode),
                        width,
                        height,
                        now,
                        now,
                    ),
                )
                created = cur.rowcount == 1

                if not created:
                    self._merge_post(post, pid=pid, carousel_json=carousel_json, now=now)

                row = self._conn.execute(
                    "SELECT * FROM posts WHERE platform_post_id = ? AND platform = ?",
                    (pid, post.platform),
                ).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert post: {e}") from e

        if row is None:
            raise StorageError("Failed to read post record after upsert")
        return _post_from_row(row), created

    def _merge_post(
        self,
        post: NormalizedPost,
        *,
        pid: str,
        carousel_json: str | None,
        now: str,
    ) -> None:
        existing = self._conn.execute(
            "SELECT metrics_json FROM posts WHERE platform_post_id = ? AND platform = ?",
            (pid, post.platform),
        ).fetchone()
        old_metrics = PostMetrics.from_dict(json.loads(existing["metrics_json"] or "{}"))
        metrics_json = _json_dumps(_merged_metrics(old_metrics, post.metrics).as_dict())

        self._conn.execute(
            """
            UPDATE posts SET
              embed_url = COALESCE(?, embed_url),
              original_url = COALESCE(?, original_url),
              caption = COALESCE(?, caption),
              transcript = COALESCE(?, transcript),
              embed_html = COALESCE(?, embed_html),
              metrics_json = ?,
              date_posted = COALESCE(?, date_posted),
              thumbnail = COALESCE(?, thumbnail),
              is_video = COALESCE(?, is_video),
              is_carousel = COALESCE(?, is_carousel),
              carousel_media_json = COALESCE(?, carousel_media_json),
              carousel_count = COALESCE(?, carousel_count),
              video_url = COALESCE(?, video_url),
              display_url = COALESCE(?, display_url),
              shortcode = COALESCE(?, shortcode),
              width = COALESCE(?, width),
              height = COALESCE(?, height),
              updated_at = ?
            WHERE platform_post_id = ? AND platform = ?
            """.strip(),
            (
                _non_empty(post.embed_url),
                _non_empty(post.original_url),
                _non_empty(post.caption),
                _non_empty(post.transcript),
                _non_empty(post.embed_html),
                metrics_json,
                None if post.date_is_fallback else _non_empty(post.date_posted),
                _non_empty(post.thumbnail),
                1 if post.is_video else None,
                1 if post.is_carousel else None,
                carousel_json,
                post.carousel_count,
                _non_empty(post.video_url),
                _non_empty(post.display_url),
                _non_empty(post.shortcode),
                post.dimensions.width if post.dimensions is not None else None,
                post.dimensions.height if post.dimensions is not None else None,
                now,
                pid,
                post.platform,
            ),
        )

    def get_post(self, post_id: int) -> PostRecord | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM posts WHERE id = ?", (int(post_id),)).fetchone()
        return _post_from_row(row) if row is not None else None

    def find_post(self, platform_post_id: str, platform: Platform) -> PostRecord | None:
        pid = (platform_post_id or "").strip()
        if not pid:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM posts WHERE platform_post_id = ? AND platform = ?",
                (pid, platform),
            ).fetchone()
        return _post_from_row(row) if row is not None else None

    def find_post_by_shortcode(self, shortcode: str) -> PostRecord | None:
        """Find an Instagram post whose stored shortcode matches, whatever its id form."""
        code = (shortcode or "").strip()
        if not code:
            return None
        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM posts
                WHERE platform = 'instagram' AND shortcode = ?
                ORDER BY id ASC
                LIMIT 1
                """.strip(),
                (code,),
            ).fetchone()
        return _post_from_row(row) if row is not None else None

    def update_post_fields(self, post_id: int, **fields: str | None) -> None:
        """Partial update used by enrichment; each task writes only its own columns."""
        unknown = sorted(set(fields) - set(ENRICHABLE_FIELDS))
        if unknown:
            raise ValueError(f"Fields cannot be updated here: {', '.join(unknown)}")
        if not fields:
            return

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params: list[Any] = list(fields.values())
        params.extend([_utc_now_iso(), int(post_id)])

        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"UPDATE posts SET {assignments}, updated_at = ? WHERE id = ?",
                    params,
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to update post fields: {e}") from e

    def post_count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(1) AS n FROM posts").fetchone()
        return int(row["n"]) if row is not None else 0

    def profile_count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(1) AS n FROM profiles").fetchone()
        return int(row["n"]) if row is not None else 0

    # Boards

    def create_board(self, owner_id: str, name: str) -> BoardRecord:
        owner = (owner_id or "").strip()
        title = (name or "").strip()
        if not owner or not title:
            raise ValueError("owner_id and name must be non-empty")

        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "INSERT INTO boards(owner_id, name, created_at) VALUES (?, ?, ?)",
                    (owner, title, _utc_now_iso()),
                )
                board_id = int(cur.lastrowid)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create board: {e}") from e

        board = self.get_board(board_id)
        if board is None:
            raise StorageError("Failed to read board record after insert")
        return board

    def get_board(self, board_id: int) -> BoardRecord | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM boards WHERE id = ?", (int(board_id),)).fetchone()
        return _board_from_row(row) if row is not None else None

    def add_post_to_board(self, board_id: int, post_id: int) -> BoardPostRecord:
        """
        Attach a post to a board.

        Raises DuplicateError when the pair already exists; no row is written.
        """
        added_at = _utc_now_iso()
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO board_posts(board_id, post_id, added_at) VALUES (?, ?, ?)",
                    (int(board_id), int(post_id), added_at),
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e).upper():
                raise DuplicateError("Post already exists in this board") from e
            raise StorageError(f"Failed to add post to board: {e}") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to add post to board: {e}") from e

        return BoardPostRecord(board_id=int(board_id), post_id=int(post_id), added_at=added_at)

    def remove_post_from_board(self, board_id: int, post_id: int) -> bool:
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "DELETE FROM board_posts WHERE board_id = ? AND post_id = ?",
                    (int(board_id), int(post_id)),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to remove post from board: {e}") from e
        return cur.rowcount > 0

    def board_contains(self, board_id: int, post_id: int) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM board_posts WHERE board_id = ? AND post_id = ?",
                (int(board_id), int(post_id)),
            ).fetchone()
        return row is not None

    def boards_containing_posts(
        self,
        post_ids: Sequence[int],
        *,
        owner_id: str | None = None,
    ) -> list[BoardRecord]:
        ids = sorted({int(p) for p in post_ids})
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        sql = f"""
        SELECT DISTINCT b.*
        FROM boards b
        JOIN board_posts bp ON bp.board_id = b.id
        WHERE bp.post_id IN ({placeholders})
        """.strip()
        params: list[Any] = list(ids)
        if owner_id is not None:
            sql += " AND b.owner_id = ?"
            params.append(owner_id)
        sql += " ORDER BY b.id ASC"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_board_from_row(r) for r in rows]

    def list_board_posts(
        self,
        board_id: int,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[PostRecord]:
        if limit is not None and limit <= 0:
            return []

        sql = """
        SELECT p.*
        FROM posts p
        JOIN board_posts bp ON bp.post_id = p.id
        WHERE bp.board_id = ?
        ORDER BY bp.added_at DESC, bp.id DESC
        """.strip()
        params: list[Any] = [int(board_id)]
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), max(0, int(offset))])

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_post_from_row(r) for r in rows]

    def board_post_count(self, board_id: int | None = None) -> int:
        with self._lock:
            if board_id is None:
                row = self._conn.execute("SELECT COUNT(1) AS n FROM board_posts").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(1) AS n FROM board_posts WHERE board_id = ?",
                    (int(board_id),),
                ).fetchone()
        return int(row["n"]) if row is not None else 0
