from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .dedupe import canonical_post_id
from .enrichment import EnrichmentWorker
from .errors import DuplicateError, StorageError
from .post import NormalizedPost
from .run_log import RunLogger
from .storage import BoardRecord, PostRecord, ProfileRecord, SQLiteContentStore

SaveStatus = Literal["saved", "already_exists", "failed"]


@dataclass(frozen=True)
class IngestResult:
    post: PostRecord
    profile: ProfileRecord
    created: bool
    already_in_board: bool = False


@dataclass(frozen=True)
class SaveResult:
    """Tri-state outcome of an interactive save."""

    status: SaveStatus
    post: PostRecord | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "saved"

    @property
    def already_exists(self) -> bool:
        return self.status == "already_exists"


class BoardNotFoundError(StorageError):
    """Raised when the target board is missing or not owned by the caller."""


class IngestionOrchestrator:
    """
    Idempotent create-or-update of profile, post and board membership.

    Idempotency comes from the store's uniqueness constraints. Enrichment
    for newly created posts is handed to the background worker and never
    awaited.
    """

    def __init__(
        self,
        store: SQLiteContentStore,
        *,
        enrichment: EnrichmentWorker | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._store = store
        self._enrichment = enrichment
        self._log = logger

    def _board_for(self, board_id: int, caller_id: str | None) -> BoardRecord:
        board = self._store.get_board(board_id)
        if board is None:
            raise BoardNotFoundError(f"Board not found: {board_id}")
        if caller_id is not None and board.owner_id != caller_id:
            raise BoardNotFoundError(f"Board not found: {board_id}")
        return board

    def ingest(
        self,
        post: NormalizedPost,
        board_id: int | None,
        caller_id: str | None = None,
    ) -> IngestResult:
        """
        Persist one normalized post and attach it to a board.

        caller_id None is the system context (bulk import): no ownership check.
        board_id None stores the post without board membership.
        """
        if board_id is not None:
            self._board_for(board_id, caller_id)

        canonical_id = canonical_post_id(post.platform, post.platform_post_id, post.original_url)
        if canonical_id != post.platform_post_id:
            if self._log is not None:
                self._log.info(
                    "post_id_reconciled",
                    url=post.original_url,
                    from_id=post.platform_post_id,
                    to_id=canonical_id,
                )
            post = post.with_post_id(canonical_id)

        profile, _ = self._store.upsert_profile(post.profile())
        record, created = self._store.upsert_post(post, profile_id=profile.id)

        if created and self._enrichment is not None:
            self._enrichment.submit(record)

        already = False
        if board_id is not None:
            try:
                self._store.add_post_to_board(board_id, record.id)
            except DuplicateError:
                already = True

        if self._log is not None:
            self._log.info(
                "post_ingested",
                url=record.original_url,
                post_id=record.id,
                platform=record.platform,
                platform_post_id=record.platform_post_id,
                created=created,
                board_id=board_id,
                already_in_board=already,
            )

        return IngestResult(post=record, profile=profile, created=created, already_in_board=already)

    def save(self, post: NormalizedPost, board_id: int, caller_id: str | None) -> SaveResult:
        try:
            result = self.ingest(post, board_id, caller_id)
        except (StorageError, ValueError) as e:
            # The store rejects blank handles and post ids with ValueError.
            return SaveResult(status="failed", error=str(e))

        if result.already_in_board:
            return SaveResult(
                status="already_exists",
                post=result.post,
                error="Post already exists in this board",
            )
        return SaveResult(status="saved", post=result.post)
