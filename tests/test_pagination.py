from __future__ import annotations

import unittest

from creator_ingest.pagination import CursorState, instagram_page_cursor, page_cursor, tiktok_page_cursor


class TestPageCursors(unittest.TestCase):
    def test_instagram_cursor_passes_next_max_id_through(self) -> None:
        c = instagram_page_cursor({"items": [], "more_available": True, "next_max_id": "3211_99"})
        self.assertTrue(c.has_more)
        self.assertEqual(c.cursor, "3211_99")
        self.assertTrue(c.can_continue)

    def test_instagram_cursor_inside_data(self) -> None:
        c = instagram_page_cursor({"data": {"more_available": True, "next_max_id": "x"}})
        self.assertEqual(c.cursor, "x")

    def test_instagram_truthy_non_bool_is_not_more(self) -> None:
        c = instagram_page_cursor({"more_available": "true", "next_max_id": "x"})
        self.assertFalse(c.has_more)

    def test_tiktok_numeric_cursor_becomes_string(self) -> None:
        c = tiktok_page_cursor({"has_more": 1, "max_cursor": 1700000000000})
        self.assertTrue(c.has_more)
        self.assertEqual(c.cursor, "1700000000000")

    def test_tiktok_has_more_zero(self) -> None:
        c = tiktok_page_cursor({"has_more": 0, "max_cursor": 5})
        self.assertFalse(c.has_more)
        self.assertFalse(c.can_continue)

    def test_missing_cursor_cannot_continue(self) -> None:
        c = tiktok_page_cursor({"has_more": True})
        self.assertTrue(c.has_more)
        self.assertFalse(c.can_continue)

    def test_non_mapping_page_is_terminal(self) -> None:
        c = page_cursor([], "instagram")
        self.assertFalse(c.has_more)


class TestCursorState(unittest.TestCase):
    def test_initial_state_allows_first_page(self) -> None:
        state = CursorState("tiktok")
        self.assertFalse(state.started)
        self.assertTrue(state.has_more)
        self.assertIsNone(state.next_cursor)
        self.assertFalse(state.can_load_more)

    def test_state_is_replaced_by_each_page(self) -> None:
        state = CursorState("tiktok")
        state.advance({"has_more": 1, "max_cursor": 10})
        self.assertEqual(state.next_cursor, "10")
        self.assertTrue(state.can_load_more)

        state.advance({"has_more": 1, "max_cursor": 20})
        self.assertEqual(state.next_cursor, "20")

    def test_terminates_when_upstream_reports_no_more(self) -> None:
        state = CursorState("instagram")
        state.advance({"more_available": True, "next_max_id": "a"})
        state.advance({"more_available": False, "next_max_id": "stale"})

        self.assertFalse(state.has_more)
        self.assertFalse(state.can_load_more)
        self.assertIsNone(state.next_cursor)

    def test_reset(self) -> None:
        state = CursorState("instagram")
        state.advance({"more_available": False})
        state.reset()
        self.assertFalse(state.started)
        self.assertTrue(state.has_more)


if __name__ == "__main__":
    unittest.main()
