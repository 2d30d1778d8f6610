from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Literal, Sequence

from .dedupe import detect_platform
from .errors import TransformError
from .fetch_retry import RetryConfig, RetryEvent, SleepFn, fetch_with_retries, is_retryable_fetch_error
from .ingest import IngestionOrchestrator
from .normalize import normalize_post, single_post_item
from .run_log import RunLogger
from .upstream import UpstreamClient

Bucket = Literal["success", "skipped", "error"]


class ItemState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    FETCHED = "fetched"
    TRANSFORMING = "transforming"
    SAVING = "saving"
    SAVED = "saved"
    ALREADY_EXISTS = "already_exists"
    FETCH_FAILED = "fetch_failed"
    TRANSFORM_FAILED = "transform_failed"
    SAVE_FAILED = "save_failed"


_BUCKETS: dict[ItemState, Bucket] = {
    ItemState.SAVED: "success",
    ItemState.ALREADY_EXISTS: "skipped",
    ItemState.FETCH_FAILED: "error",
    ItemState.TRANSFORM_FAILED: "error",
    ItemState.SAVE_FAILED: "error",
}


@dataclass(frozen=True)
class ItemOutcome:
    index: int
    source: str
    states: tuple[ItemState, ...]
    error: str | None = None
    reason: str | None = None
    post_id: int | None = None
    cached: bool = False

    @property
    def state(self) -> ItemState:
        return self.states[-1]

    @property
    def bucket(self) -> Bucket:
        return _BUCKETS[self.state]


@dataclass(frozen=True)
class BatchSummary:
    success: int
    skipped: int
    errors: int
    total: int
    start_index: int = 0
    interrupted: bool = False
    outcomes: tuple[ItemOutcome, ...] = field(default=(), repr=False)

    @property
    def success_rate(self) -> float:
        if self.total <= 0:
            return 0.0
        return (self.success + self.skipped) / self.total

    @property
    def next_index(self) -> int:
        """Absolute index to pass as start_index to resume after this run."""
        return self.start_index + len(self.outcomes)

    def format_rate(self) -> str:
        return f"{self.success_rate * 100:.1f}%"


ItemCallback = Callable[[ItemOutcome, int, int], None]


def read_source_list(path: str | Path) -> list[str]:
    """One source URL per line; blank lines and '#' comments are ignored."""
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [s.strip() for s in lines if s.strip() and not s.strip().startswith("#")]


def summarize(outcomes: Sequence[ItemOutcome], *, start_index: int = 0, interrupted: bool = False) -> BatchSummary:
    buckets = [o.bucket for o in outcomes]
    return BatchSummary(
        success=buckets.count("success"),
        skipped=buckets.count("skipped"),
        errors=buckets.count("error"),
        total=len(outcomes),
        start_index=int(start_index),
        interrupted=interrupted,
        outcomes=tuple(outcomes),
    )


class BatchProcessor:
    """
    Sequential bulk import over a list of post URLs.

    Items run one at a time with a fixed delay between them (none after the
    last). Each item ends in exactly one bucket: success, skipped (already
    on the board) or error. Resuming is the caller's job via start_index.
    """

    def __init__(
        self,
        client: UpstreamClient,
        orchestrator: IngestionOrchestrator,
        *,
        retry: RetryConfig | None = None,
        sleep_fn: SleepFn | None = None,
        logger: RunLogger | None = None,
        on_item: ItemCallback | None = None,
    ) -> None:
        self._client = client
        self._orchestrator = orchestrator
        self._retry = retry or RetryConfig()
        self._sleep = sleep_fn or time.sleep
        self._log = logger
        self._on_item = on_item

    def run(
        self,
        sources: Sequence[str],
        board_id: int | None,
        *,
        delay_ms: int = 500,
        start_index: int = 0,
    ) -> BatchSummary:
        if start_index < 0:
            raise ValueError("start_index must be >= 0")
        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")

        pending = list(sources)[start_index:]
        outcomes: list[ItemOutcome] = []
        interrupted = False

        if self._log is not None:
            self._log.info(
                "batch_started",
                board_id=board_id,
                start_index=start_index,
                items=len(pending),
                delay_ms=delay_ms,
            )

        try:
            for position, source in enumerate(pending):
                outcome = self._process(start_index + position, source, board_id)
                outcomes.append(outcome)
                self._report(outcome, position, len(pending))

                if position < len(pending) - 1 and delay_ms > 0:
                    self._sleep(delay_ms / 1000.0)
        except KeyboardInterrupt:
            interrupted = True

        summary = summarize(outcomes, start_index=start_index, interrupted=interrupted)
        if self._log is not None:
            self._log.info(
                "batch_completed",
                success=summary.success,
                skipped=summary.skipped,
                errors=summary.errors,
                total=summary.total,
                success_rate=round(summary.success_rate, 4),
                interrupted=interrupted,
                next_index=summary.next_index,
            )
        return summary

    def _report(self, outcome: ItemOutcome, position: int, count: int) -> None:
        if self._log is not None:
            data = {
                "index": outcome.index,
                "state": outcome.state.value,
                "bucket": outcome.bucket,
                "post_id": outcome.post_id,
                "cached": outcome.cached,
            }
            if outcome.bucket == "error":
                self._log.error("batch_item", url=outcome.source, error=outcome.error, reason=outcome.reason, **data)
            else:
                self._log.info("batch_item", url=outcome.source, **data)
        if self._on_item is not None:
            self._on_item(outcome, position, count)

    def _on_retry(self, event: RetryEvent) -> None:
        if self._log is not None:
            self._log.warning(
                "fetch_retry",
                url=event.url,
                attempt=event.failure,
                next_attempt=event.failure + 1,
                max_attempts=event.max_attempts,
                delay_seconds=event.delay_seconds,
                reason=event.reason,
                error=event.error,
            )

    def _process(self, index: int, source: str, board_id: int | None) -> ItemOutcome:
        url = (source or "").strip()
        states = [ItemState.PENDING, ItemState.FETCHING]

        def _failed(state: ItemState, error: str, reason: str | None = None) -> ItemOutcome:
            return ItemOutcome(index=index, source=url, states=tuple(states + [state]), error=error, reason=reason)

        platform = detect_platform(url)
        if platform is None:
            return _failed(ItemState.FETCH_FAILED, "Unsupported source URL", "unsupported_source")

        try:
            fetched = fetch_with_retries(
                lambda: self._client.fetch_post(url, platform),
                url=url,
                cfg=self._retry,
                on_retry=self._on_retry,
                sleep_fn=self._sleep,
            )
        except Exception as e:
            _, _, reason = is_retryable_fetch_error(e)
            return _failed(ItemState.FETCH_FAILED, str(e) or type(e).__name__, reason)

        states += [ItemState.FETCHED, ItemState.TRANSFORMING]
        try:
            post = normalize_post(single_post_item(fetched.data, platform), platform)
        except TransformError as e:
            return _failed(ItemState.TRANSFORM_FAILED, str(e), "missing_field")
        except Exception as e:
            return _failed(ItemState.TRANSFORM_FAILED, str(e) or type(e).__name__, "unexpected_shape")

        states.append(ItemState.SAVING)
        try:
            result = self._orchestrator.ingest(post, board_id, None)
        except Exception as e:
            return _failed(ItemState.SAVE_FAILED, str(e) or type(e).__name__, type(e).__name__)

        final = ItemState.ALREADY_EXISTS if result.already_in_board else ItemState.SAVED
        return ItemOutcome(
            index=index,
            source=url,
            states=tuple(states + [final]),
            post_id=result.post.id,
            cached=fetched.cached,
        )
