from __future__ import annotations

import re
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Any, Mapping

from .errors import EnrichmentError
from .post import Platform
from .run_log import RunLogger
from .storage import PostRecord, SQLiteContentStore
from .upstream import UpstreamClient

_SRT_TIMESTAMP_RE = re.compile(r"\d{1,2}:\d{2}(?::\d{2})?[.,]\d{1,3}\s*-->")
_CUE_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def clean_transcript(raw: str) -> str:
    """
    Reduce SRT or WebVTT captions to plain text on one line.

    Drops the WEBVTT header, cue numbers, timestamp lines and inline cue tags.
    """
    kept: list[str] = []
    for line in (raw or "").splitlines():
        s = line.strip()
        if not s:
            continue
        if s.upper().startswith("WEBVTT") or s.startswith(("NOTE", "Kind:", "Language:")):
            continue
        if s.isdigit():
            continue
        if _SRT_TIMESTAMP_RE.search(s):
            continue
        kept.append(_CUE_TAG_RE.sub("", s))
    return _WS_RE.sub(" ", " ".join(kept)).strip()


def transcript_from_payload(payload: Any, platform: Platform) -> str | None:
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, Mapping):
        return None

    if platform == "instagram":
        items = payload.get("transcripts")
        if isinstance(items, list) and items and isinstance(items[0], Mapping):
            text = items[0].get("transcript") or items[0].get("text")
            return text if isinstance(text, str) else None

    text = payload.get("transcript")
    return text if isinstance(text, str) else None


@dataclass(frozen=True)
class EnrichmentOutcome:
    post_id: int
    embed_html: bool = False
    transcript: bool = False
    failures: tuple[str, ...] = ()


class EnrichmentWorker:
    """
    Background worker that attaches embed HTML and transcripts to new posts.

    `submit()` never blocks on upstream calls. At most one task per post is
    in flight; a second submission while one runs is dropped. Each step
    writes only its own column, and any failure is logged and swallowed.
    """

    def __init__(
        self,
        client: UpstreamClient,
        store: SQLiteContentStore,
        *,
        max_workers: int = 2,
        fetch_embeds: bool = True,
        fetch_transcripts: bool = True,
        logger: RunLogger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._fetch_embeds = bool(fetch_embeds)
        self._fetch_transcripts = bool(fetch_transcripts)
        self._log = logger
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="enrichment",
        )
        self._lock = Lock()
        self._in_flight: dict[int, Future[EnrichmentOutcome]] = {}

    def __enter__(self) -> "EnrichmentWorker":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.shutdown(wait=True)

    def wants(self, post: PostRecord) -> bool:
        if self._fetch_embeds and post.platform == "tiktok" and not post.embed_html:
            return True
        return self._fetch_transcripts and post.is_video and not post.transcript

    def submit(self, post: PostRecord) -> Future[EnrichmentOutcome] | None:
        if not self.wants(post):
            return None

        with self._lock:
            if post.id in self._in_flight:
                return None
            future = self._executor.submit(self._run, post)
            self._in_flight[post.id] = future

        future.add_done_callback(lambda _f, pid=post.id: self._finished(pid))
        return future

    def in_flight(self, post_id: int) -> bool:
        with self._lock:
            return int(post_id) in self._in_flight

    def wait(self, timeout: float | None = None) -> None:
        """Block until every task submitted so far has finished."""
        with self._lock:
            pending = list(self._in_flight.values())
        for future in pending:
            future.exception(timeout=timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _finished(self, post_id: int) -> None:
        with self._lock:
            self._in_flight.pop(post_id, None)

    def _run(self, post: PostRecord) -> EnrichmentOutcome:
        embed = False
        transcript = False
        failures: list[str] = []

        if self._fetch_embeds and post.platform == "tiktok" and not post.embed_html:
            try:
                self._attach_embed(post)
                embed = True
            except Exception as e:
                failures.append("embed_html")
                self._failed(post, step="embed_html", exc=e)

        if self._fetch_transcripts and post.is_video and not post.transcript:
            try:
                transcript = self._attach_transcript(post)
            except Exception as e:
                failures.append("transcript")
                self._failed(post, step="transcript", exc=e)

        if self._log is not None:
            self._log.info(
                "enrichment_completed",
                url=post.original_url,
                post_id=post.id,
                embed_html=embed,
                transcript=transcript,
                failures=failures,
            )
        return EnrichmentOutcome(
            post_id=post.id,
            embed_html=embed,
            transcript=transcript,
            failures=tuple(failures),
        )

    def _attach_embed(self, post: PostRecord) -> None:
        payload = self._client.fetch_embed(post.original_url).data
        html = payload.get("html") if isinstance(payload, Mapping) else None
        if not isinstance(html, str) or not html.strip():
            raise EnrichmentError(f"oEmbed response for post {post.id} has no html")
        self._store.update_post_fields(post.id, embed_html=html.strip())

    def _attach_transcript(self, post: PostRecord) -> bool:
        payload = self._client.fetch_transcript(post.original_url, post.platform).data
        raw = transcript_from_payload(payload, post.platform)
        if raw is None:
            raise EnrichmentError(f"Transcript response for post {post.id} has no transcript")

        text = clean_transcript(raw)
        if not text:
            # Videos without speech come back empty; nothing to store.
            return False
        self._store.update_post_fields(post.id, transcript=text)
        return True

    def _failed(self, post: PostRecord, *, step: str, exc: BaseException) -> None:
        if self._log is not None:
            self._log.exception(
                "enrichment_failed",
                exc=exc,
                url=post.original_url,
                post_id=post.id,
                step=step,
            )
