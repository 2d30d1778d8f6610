from __future__ import annotations

import unittest
from typing import Any

from creator_ingest.config_schema import AppConfig, BatchConfig, ListingConfig
from creator_ingest.errors import FetchError
from creator_ingest.offline import OfflineUpstreamClient
from creator_ingest.post import NormalizedPost, NormalizedProfile, PostMetrics
from creator_ingest.service import IngestionService
from creator_ingest.storage import SQLiteContentStore
from creator_ingest.upstream import FetchResult


class _FailingProfileClient:
    def __init__(self, status_code: int) -> None:
        self._status = status_code

    def fetch_profile(self, handle: str, platform: Any) -> FetchResult:
        raise FetchError(f"API request failed: {self._status}", status_code=self._status)


def _stored_post(store: SQLiteContentStore, platform_post_id: str, *, shortcode: str | None = "ABC123") -> int:
    profile, _ = store.upsert_profile(NormalizedProfile(handle="creator", platform="instagram"))
    record, _ = store.upsert_post(
        NormalizedPost(
            platform_post_id=platform_post_id,
            platform="instagram",
            handle="creator",
            embed_url="https://www.instagram.com/p/ABC123/",
            original_url="https://www.instagram.com/p/ABC123/",
            caption="",
            metrics=PostMetrics(),
            date_posted="2025-01-01T00:00:00.000Z",
            shortcode=shortcode,
        ),
        profile_id=profile.id,
    )
    return record.id


class TestSearchProfile(unittest.TestCase):
    def test_found(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            service = IngestionService(OfflineUpstreamClient(), store)
            lookup = service.search_profile("@Street.Workouts", "tiktok")

            assert lookup is not None
            self.assertEqual(lookup.profile.handle, "street.workouts")
            self.assertEqual(lookup.profile.followers_count, 4200)

    def test_not_found_returns_none(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            service = IngestionService(OfflineUpstreamClient(), store)
            self.assertIsNone(service.search_profile("missing.creator", "instagram"))

    def test_other_errors_propagate(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            service = IngestionService(_FailingProfileClient(500), store)  # type: ignore[arg-type]
            with self.assertRaises(FetchError):
                service.search_profile("x", "instagram")


class TestListPosts(unittest.TestCase):
    def test_pages_until_exhausted(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            service = IngestionService(OfflineUpstreamClient(pages_per_profile=2), store)

            first = service.list_posts("creator", "tiktok", page_size=3)
            self.assertEqual(len(first.posts), 3)
            self.assertTrue(first.has_more)
            self.assertEqual(first.next_cursor, "1")

            second = service.list_posts("creator", "tiktok", first.next_cursor, page_size=3)
            self.assertEqual(len(second.posts), 3)
            self.assertFalse(second.has_more)
            self.assertIsNone(second.next_cursor)
            self.assertNotEqual(first.posts[0].platform_post_id, second.posts[0].platform_post_id)

    def test_listing_load_more_stops_at_end(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            client = OfflineUpstreamClient(pages_per_profile=2)
            listing = IngestionService(client, store).open_listing("creator", "instagram", page_size=2)

            self.assertTrue(listing.has_more)
            listing.load_more()
            listing.load_more()
            self.assertFalse(listing.has_more)
            listing.load_more()

            self.assertEqual(len(listing.posts), 4)
            self.assertEqual(len(client.calls), 2)
            self.assertEqual(
                [p.platform_post_id for p in listing.sorted("most-recent")],
                ["OFF0003", "OFF0002", "OFF0001", "OFF0000"],
            )
            self.assertEqual(listing.sorted("most-liked")[0].metrics.likes, 103)

    def test_page_size_defaults_from_config(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            cfg = AppConfig(listing=ListingConfig(page_size=5))
            page = IngestionService(OfflineUpstreamClient(), store, config=cfg).list_posts("creator", "tiktok")
            self.assertEqual(len(page.posts), 5)


class TestSavePost(unittest.TestCase):
    def test_raw_item_is_normalized_and_saved(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            board = store.create_board("user-1", "Mine")
            client = OfflineUpstreamClient()
            service = IngestionService(client, store)
            item = client.fetch_post("https://www.tiktok.com/@mover/video/7301", "tiktok").data["aweme_detail"]

            first = service.save_post(item, board.id, "user-1", platform="tiktok")
            second = service.save_post(item, board.id, "user-1", platform="tiktok")

            self.assertEqual(first.status, "saved")
            assert first.post is not None
            self.assertEqual(first.post.platform_post_id, "7301")
            self.assertEqual(second.status, "already_exists")
            self.assertEqual(store.board_post_count(board.id), 1)

    def test_raw_item_needs_platform(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            board = store.create_board("user-1", "Mine")
            result = IngestionService(OfflineUpstreamClient(), store).save_post({"id": "1"}, board.id, "user-1")
            self.assertEqual(result.status, "failed")

    def test_untransformable_item_fails_without_writes(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            board = store.create_board("user-1", "Mine")
            service = IngestionService(OfflineUpstreamClient(), store)
            result = service.save_post({"desc": "no id"}, board.id, "user-1", platform="tiktok")

            self.assertEqual(result.status, "failed")
            self.assertEqual(store.post_count(), 0)

    def test_normalized_post_without_handle_fails_with_reason(self) -> None:
        post = NormalizedPost(
            platform_post_id="ABC",
            platform="instagram",
            handle="",
            embed_url="https://www.instagram.com/p/ABC/",
            original_url="https://www.instagram.com/p/ABC/",
            caption="",
            metrics=PostMetrics(),
            date_posted="2025-01-01T00:00:00.000Z",
        )
        with SQLiteContentStore.open(":memory:") as store:
            board = store.create_board("user-1", "Mine")
            result = IngestionService(OfflineUpstreamClient(), store).save_post(post, board.id, "user-1")

            self.assertEqual(result.status, "failed")
            self.assertIn("handle", result.error or "")
            self.assertEqual(store.post_count(), 0)


class TestCheckPostInBoards(unittest.TestCase):
    def test_legacy_lookup_id_finds_canonical_row(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            post_id = _stored_post(store, "ABC123")
            board = store.create_board("user-1", "Mine")
            store.add_post_to_board(board.id, post_id)
            service = IngestionService(OfflineUpstreamClient(), store)

            boards = service.check_post_in_boards(
                "123456_789", "instagram", "user-1", source_url="https://www.instagram.com/p/ABC123/"
            )
            self.assertEqual([b.id for b in boards], [board.id])

    def test_shortcode_finds_legacy_row(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            post_id = _stored_post(store, "123456_789")
            board = store.create_board("user-1", "Mine")
            store.add_post_to_board(board.id, post_id)
            service = IngestionService(OfflineUpstreamClient(), store)

            boards = service.check_post_in_boards("ABC123", "instagram", "user-1")
            self.assertEqual([b.id for b in boards], [board.id])

    def test_only_callers_boards_are_returned(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            post_id = _stored_post(store, "ABC123")
            theirs = store.create_board("user-2", "Theirs")
            store.add_post_to_board(theirs.id, post_id)
            service = IngestionService(OfflineUpstreamClient(), store)

            self.assertEqual(service.check_post_in_boards("ABC123", "instagram", "user-1"), [])

    def test_unknown_post(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            service = IngestionService(OfflineUpstreamClient(), store)
            self.assertEqual(service.check_post_in_boards("NOPE", "instagram", "user-1"), [])
            self.assertEqual(service.check_post_in_boards("1", "tiktok", "user-1"), [])


class TestBulkImportAndRefresh(unittest.TestCase):
    def test_run_bulk_import_uses_configured_delay(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            board = store.create_board("user-1", "Imports")
            sleeps: list[float] = []
            service = IngestionService(
                OfflineUpstreamClient(),
                store,
                config=AppConfig(batch=BatchConfig(delay_ms=100)),
                sleep_fn=sleeps.append,
            )
            seen: list[int] = []
            summary = service.run_bulk_import(
                ["https://www.instagram.com/p/AAA/", "https://www.tiktok.com/@mover/video/42"],
                board.id,
                on_item=lambda outcome, position, count: seen.append(outcome.index),
            )

            self.assertEqual(summary.success, 2)
            self.assertEqual(sleeps, [0.1])
            self.assertEqual(seen, [0, 1])

    def test_refresh_profile_stores_without_board(self) -> None:
        with SQLiteContentStore.open(":memory:") as store:
            service = IngestionService(OfflineUpstreamClient(), store)

            first = service.refresh_profile("creator", "instagram", limit=3)
            self.assertEqual((first.new_posts, first.updated_posts, first.errors), (3, 0, 0))
            assert first.profile is not None
            self.assertEqual(first.profile.handle, "creator")
            self.assertEqual(first.profile.followers_count, 4200)
            self.assertEqual(store.post_count(), 3)
            self.assertEqual(store.board_post_count(), 0)

            again = service.refresh_profile("creator", "instagram", limit=3)
            self.assertEqual((again.new_posts, again.updated_posts), (0, 3))
            self.assertEqual(store.post_count(), 3)


if __name__ == "__main__":
    unittest.main()
