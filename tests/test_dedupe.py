from __future__ import annotations

import unittest

from creator_ingest.dedupe import (
    canonical_post_id,
    canonicalize_url,
    detect_platform,
    extract_shortcode,
    extract_tiktok_video_id,
    is_legacy_composite_id,
    reconcile_post_id,
)


class TestDedupe(unittest.TestCase):
    def test_canonicalize_strips_query_and_frag(self) -> None:
        url = "https://www.instagram.com/p/AbC/?utm_source=x#frag"
        self.assertEqual(canonicalize_url(url), "https://instagram.com/p/AbC")

    def test_detect_platform(self) -> None:
        self.assertEqual(detect_platform("https://www.instagram.com/reel/XYZ/"), "instagram")
        self.assertEqual(detect_platform("https://vm.tiktok.com/ZM123/"), "tiktok")
        self.assertIsNone(detect_platform("https://example.com/p/ABC/"))
        self.assertIsNone(detect_platform("not a url"))

    def test_extract_ids_from_urls(self) -> None:
        self.assertEqual(extract_shortcode("https://www.instagram.com/p/ABC123/"), "ABC123")
        self.assertEqual(extract_shortcode("https://www.instagram.com/reel/C-x_9/?igsh=1"), "C-x_9")
        self.assertEqual(extract_shortcode("https://www.instagram.com/tv/TV1/"), "TV1")
        self.assertIsNone(extract_shortcode("https://www.instagram.com/creator/"))
        self.assertEqual(extract_tiktok_video_id("https://www.tiktok.com/@c/video/7301?lang=en"), "7301")

    def test_legacy_composite_detection(self) -> None:
        self.assertTrue(is_legacy_composite_id("123456_789"))
        self.assertFalse(is_legacy_composite_id("ABC_123"))
        self.assertFalse(is_legacy_composite_id("123456"))
        # Any digits_digits run marks the id, even inside a longer token.
        self.assertTrue(is_legacy_composite_id("Cx1_2y"))


class TestReconcilePostId(unittest.TestCase):
    def test_legacy_composite_maps_to_shortcode(self) -> None:
        self.assertEqual(reconcile_post_id("123456_789", "https://www.instagram.com/p/ABC123/"), "ABC123")

    def test_long_numeric_id_maps_to_shortcode(self) -> None:
        self.assertEqual(
            reconcile_post_id("33000000000000000421", "https://www.instagram.com/reel/ABC123/"),
            "ABC123",
        )

    def test_shortcode_is_already_canonical(self) -> None:
        self.assertEqual(reconcile_post_id("ABC123", "https://www.instagram.com/p/OTHER/"), "ABC123")

    def test_embedded_composite_run_is_resolved_from_url(self) -> None:
        self.assertEqual(reconcile_post_id("Cx1_2y", "https://www.instagram.com/p/DEF456/"), "DEF456")
        self.assertEqual(reconcile_post_id("Cx1_2y", None), "Cx1_2y")

    def test_unresolvable_id_is_returned_unchanged(self) -> None:
        self.assertEqual(reconcile_post_id("123456_789", None), "123456_789")
        self.assertEqual(reconcile_post_id("123456_789", "https://cdn.example.com/x.jpg"), "123456_789")

    def test_tiktok_ids_are_not_reconciled(self) -> None:
        self.assertEqual(
            canonical_post_id("tiktok", "123_456", "https://www.instagram.com/p/ABC123/"),
            "123_456",
        )
        self.assertEqual(
            canonical_post_id("instagram", "123_456", "https://www.instagram.com/p/ABC123/"),
            "ABC123",
        )


if __name__ == "__main__":
    unittest.main()
