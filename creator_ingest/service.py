from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .batch import BatchProcessor, BatchSummary, ItemCallback
from .config_schema import AppConfig
from .dedupe import reconcile_post_id
from .enrichment import EnrichmentWorker
from .errors import FetchError, StorageError, TransformError
from .fetch_retry import RetryConfig, SleepFn
from .ingest import IngestionOrchestrator, SaveResult
from .listing import PostListing, PostPage, fetch_post_page
from .normalize import normalize_post, normalize_profile
from .post import NormalizedPost, NormalizedProfile, Platform, normalize_handle
from .run_log import RunLogger
from .storage import BoardRecord, PostRecord, ProfileRecord, SQLiteContentStore
from .upstream import UpstreamClient


@dataclass(frozen=True)
class ProfileLookup:
    profile: NormalizedProfile
    cached: bool = False


@dataclass(frozen=True)
class RefreshResult:
    profile: ProfileRecord | None
    new_posts: int
    updated_posts: int
    errors: int


def _retry_config(config: AppConfig) -> RetryConfig:
    return RetryConfig(
        max_attempts=int(config.batch.fetch_max_attempts),
        base_delay_seconds=float(config.batch.retry_base_delay_seconds),
        max_delay_seconds=float(config.batch.retry_max_delay_seconds),
    )


class IngestionService:
    """
    The operations exposed to callers outside the engine.

    Store, client and enrichment worker are passed in so tests can
    substitute in-memory versions.
    """

    def __init__(
        self,
        client: UpstreamClient,
        store: SQLiteContentStore,
        *,
        config: AppConfig | None = None,
        enrichment: EnrichmentWorker | None = None,
        logger: RunLogger | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._config = config or AppConfig()
        self._log = logger
        self._sleep_fn = sleep_fn
        self._orchestrator = IngestionOrchestrator(store, enrichment=enrichment, logger=logger)

    @property
    def orchestrator(self) -> IngestionOrchestrator:
        return self._orchestrator

    def search_profile(self, handle: str, platform: Platform) -> ProfileLookup | None:
        """Returns None when the upstream has no such profile."""
        try:
            fetched = self._client.fetch_profile(handle, platform)
        except FetchError as e:
            if e.status_code == 404:
                return None
            raise

        try:
            profile = normalize_profile(fetched.data, platform)
        except TransformError:
            return None
        return ProfileLookup(profile=profile, cached=fetched.cached)

    def list_posts(
        self,
        handle: str,
        platform: Platform,
        cursor: str | None = None,
        *,
        page_size: int | None = None,
    ) -> PostPage:
        return fetch_post_page(
            self._client,
            normalize_handle(handle),
            platform,
            page_size=int(page_size or self._config.listing.page_size),
            cursor=cursor,
            logger=self._log,
        )

    def open_listing(self, handle: str, platform: Platform, *, page_size: int | None = None) -> PostListing:
        return PostListing(
            self._client,
            handle,
            platform,
            page_size=int(page_size or self._config.listing.page_size),
            logger=self._log,
        )

    def save_post(
        self,
        item: NormalizedPost | Mapping[str, Any],
        board_id: int,
        caller_id: str,
        *,
        platform: Platform | None = None,
        handle: str | None = None,
    ) -> SaveResult:
        """
        Save a raw upstream item or an already normalized post to a board.

        Returns saved, already_exists or failed with a reason.
        """
        if isinstance(item, NormalizedPost):
            post = item
        else:
            if platform is None:
                return SaveResult(status="failed", error="platform is required for raw items")
            try:
                post = normalize_post(item, platform, handle=handle)
            except TransformError as e:
                return SaveResult(status="failed", error=str(e))

        return self._orchestrator.save(post, board_id, caller_id)

    def find_post_in_any_format(
        self,
        platform_post_id: str,
        platform: Platform,
        source_url: str | None = None,
    ) -> PostRecord | None:
        """
        Look a post up by the given id, then by its reconciled form.

        Both id generations may be stored for Instagram, so a shortcode
        also matches legacy rows that recorded the same shortcode.
        """
        found = self._store.find_post(platform_post_id, platform)
        if found is not None or platform != "instagram":
            return found

        reconciled = reconcile_post_id(platform_post_id, source_url)
        if reconciled != (platform_post_id or "").strip():
            found = self._store.find_post(reconciled, platform)
            if found is not None:
                return found

        return self._store.find_post_by_shortcode(reconciled)

    def check_post_in_boards(
        self,
        platform_post_id: str,
        platform: Platform,
        caller_id: str,
        *,
        source_url: str | None = None,
    ) -> list[BoardRecord]:
        post = self.find_post_in_any_format(platform_post_id, platform, source_url)
        if post is None:
            return []
        return self._store.boards_containing_posts([post.id], owner_id=caller_id)

    def run_bulk_import(
        self,
        sources: Sequence[str],
        board_id: int,
        delay_ms: int | None = None,
        start_index: int = 0,
        *,
        on_item: ItemCallback | None = None,
    ) -> BatchSummary:
        processor = BatchProcessor(
            self._client,
            self._orchestrator,
            retry=_retry_config(self._config),
            sleep_fn=self._sleep_fn,
            logger=self._log,
            on_item=on_item,
        )
        delay = self._config.batch.delay_ms if delay_ms is None else int(delay_ms)
        return processor.run(sources, board_id, delay_ms=delay, start_index=start_index)

    def refresh_profile(self, handle: str, platform: Platform, *, limit: int | None = None) -> RefreshResult:
        """
        Store the newest posts of one profile without adding them to any board.
        """
        n = int(limit or self._config.listing.refresh_limit)
        page = self.list_posts(handle, platform, page_size=max(n, self._config.listing.page_size))

        profile: ProfileRecord | None = None
        new_posts = 0
        updated = 0
        errors = page.skipped
        for post in page.posts[:n]:
            try:
                result = self._orchestrator.ingest(post, None)
            except (StorageError, ValueError) as e:
                errors += 1
                if self._log is not None:
                    self._log.exception("refresh_post_failed", exc=e, url=post.original_url)
                continue
            if result.created:
                new_posts += 1
            else:
                updated += 1
            profile = result.profile

        # The profile route carries fuller creator data than post owner blocks.
        lookup = self.search_profile(handle, platform)
        if lookup is not None:
            profile, _ = self._store.upsert_profile(lookup.profile)

        if self._log is not None:
            self._log.info(
                "profile_refreshed",
                handle=normalize_handle(handle),
                platform=platform,
                new_posts=new_posts,
                updated_posts=updated,
                errors=errors,
            )
        return RefreshResult(profile=profile, new_posts=new_posts, updated_posts=updated, errors=errors)
