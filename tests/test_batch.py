from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from typing import Any

from creator_ingest.batch import BatchProcessor, ItemState, read_source_list
from creator_ingest.errors import FetchError
from creator_ingest.ingest import IngestionOrchestrator
from creator_ingest.offline import OfflineUpstreamClient
from creator_ingest.fetch_retry import RetryConfig
from creator_ingest.storage import SQLiteContentStore
from creator_ingest.upstream import FetchResult


def _ig_url(i: int) -> str:
    return f"https://www.instagram.com/p/CODE{i:03d}/"


class _ScriptedClient:
    """fetch_post answers from a per-call script of exceptions or payloads."""

    def __init__(self, script: list[Any]) -> None:
        self._script = list(script)
        self.calls: list[str] = []

    def fetch_post(self, url: str, platform: Any) -> FetchResult:
        self.calls.append(url)
        nxt = self._script.pop(0)
        if isinstance(nxt, BaseException):
            raise nxt
        return FetchResult(data=nxt)


def _media(shortcode: str) -> dict[str, Any]:
    return {
        "data": {
            "xdt_shortcode_media": {
                "__typename": "XDTGraphImage",
                "shortcode": shortcode,
                "display_url": f"https://cdn/{shortcode}.jpg",
                "edge_media_preview_like": {"count": 1},
                "edge_media_to_parent_comment": {"count": 0},
                "taken_at_timestamp": 1735689600,
                "owner": {"username": "creator"},
            }
        }
    }


class TestBatchProcessor(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SQLiteContentStore.open(":memory:")
        self.board = self.store.create_board("user-1", "Imports")
        self.orch = IngestionOrchestrator(self.store)
        self.sleeps: list[float] = []

    def tearDown(self) -> None:
        self.store.close()

    def _processor(self, client: Any, **kw: Any) -> BatchProcessor:
        return BatchProcessor(client, self.orch, sleep_fn=self.sleeps.append, **kw)

    def test_resume_skips_already_processed_items(self) -> None:
        client = OfflineUpstreamClient()
        sources = [_ig_url(i) for i in range(10)]

        summary = self._processor(client).run(sources, self.board.id, delay_ms=500, start_index=5)

        self.assertEqual(len(client.calls), 5)
        self.assertEqual([c[1] for c in client.calls], sources[5:])
        self.assertEqual(summary.total, 5)
        self.assertEqual(summary.success, 5)
        self.assertEqual([o.index for o in summary.outcomes], [5, 6, 7, 8, 9])
        self.assertEqual(summary.next_index, 10)

    def test_delay_between_items_only(self) -> None:
        sources = [_ig_url(i) for i in range(4)]
        self._processor(OfflineUpstreamClient()).run(sources, self.board.id, delay_ms=250)
        self.assertEqual(self.sleeps, [0.25, 0.25, 0.25])

    def test_every_item_lands_in_exactly_one_bucket(self) -> None:
        sources = [
            _ig_url(1),
            _ig_url(1),
            "https://example.com/not-a-post",
            "https://www.instagram.com/p/missing01/",
            "https://www.instagram.com/creator/",
        ]
        summary = self._processor(OfflineUpstreamClient()).run(sources, self.board.id, delay_ms=0)

        self.assertEqual(
            [o.state for o in summary.outcomes],
            [
                ItemState.SAVED,
                ItemState.ALREADY_EXISTS,
                ItemState.FETCH_FAILED,
                ItemState.FETCH_FAILED,
                ItemState.TRANSFORM_FAILED,
            ],
        )
        self.assertEqual((summary.success, summary.skipped, summary.errors, summary.total), (1, 1, 3, 5))
        self.assertEqual(summary.format_rate(), "40.0%")
        self.assertEqual(summary.outcomes[2].reason, "unsupported_source")
        self.assertEqual(summary.outcomes[3].reason, "http_404")
        self.assertEqual(self.store.board_post_count(self.board.id), 1)

    def test_saved_item_walks_the_full_state_path(self) -> None:
        summary = self._processor(OfflineUpstreamClient()).run([_ig_url(1)], self.board.id, delay_ms=0)
        self.assertEqual(
            summary.outcomes[0].states,
            (
                ItemState.PENDING,
                ItemState.FETCHING,
                ItemState.FETCHED,
                ItemState.TRANSFORMING,
                ItemState.SAVING,
                ItemState.SAVED,
            ),
        )
        self.assertEqual(self.sleeps, [])

    def test_rate_limited_fetch_is_retried(self) -> None:
        client = _ScriptedClient(
            [
                FetchError("API request failed: 429 Too Many Requests", status_code=429, retry_after=3.0),
                _media("RETRY1"),
            ]
        )
        summary = self._processor(client, retry=RetryConfig(max_attempts=2, base_delay_seconds=1.0)).run(
            ["https://www.instagram.com/p/RETRY1/"], self.board.id, delay_ms=0
        )

        self.assertEqual(summary.success, 1)
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(self.sleeps, [3.0])

    def test_client_errors_are_not_retried(self) -> None:
        client = _ScriptedClient([FetchError("API request failed: 403 Forbidden", status_code=403)])
        summary = self._processor(client).run(["https://www.instagram.com/p/X1/"], self.board.id, delay_ms=0)

        self.assertEqual(summary.errors, 1)
        self.assertEqual(summary.outcomes[0].reason, "http_403")
        self.assertEqual(len(client.calls), 1)

    def test_retries_are_bounded(self) -> None:
        client = _ScriptedClient([FetchError("boom", status_code=503), FetchError("boom", status_code=503)])
        summary = self._processor(client, retry=RetryConfig(max_attempts=2, base_delay_seconds=0.5)).run(
            ["https://www.instagram.com/p/X1/"], self.board.id, delay_ms=0
        )

        self.assertEqual(summary.outcomes[0].state, ItemState.FETCH_FAILED)
        self.assertEqual(summary.outcomes[0].reason, "http_503")
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(self.sleeps, [0.5])

    def test_interrupt_returns_partial_summary(self) -> None:
        client = _ScriptedClient([_media("A1"), _media("A2"), KeyboardInterrupt()])
        sources = [f"https://www.instagram.com/p/A{i}/" for i in range(1, 5)]

        summary = self._processor(client).run(sources, self.board.id, delay_ms=0)

        self.assertTrue(summary.interrupted)
        self.assertEqual(summary.total, 2)
        self.assertEqual(summary.next_index, 2)

    def test_empty_source_list(self) -> None:
        summary = self._processor(OfflineUpstreamClient()).run([], self.board.id)
        self.assertEqual(summary.total, 0)
        self.assertEqual(summary.success_rate, 0.0)

    def test_rejects_negative_arguments(self) -> None:
        with self.assertRaises(ValueError):
            self._processor(OfflineUpstreamClient()).run([], self.board.id, start_index=-1)
        with self.assertRaises(ValueError):
            self._processor(OfflineUpstreamClient()).run([], self.board.id, delay_ms=-1)


class TestReadSourceList(unittest.TestCase):
    def test_skips_blanks_and_comments(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "sources.txt"
            path.write_text("# saved posts\n\n https://a \n#https://b\nhttps://c\n", encoding="utf-8")
            self.assertEqual(read_source_list(path), ["https://a", "https://c"])


if __name__ == "__main__":
    unittest.main()
