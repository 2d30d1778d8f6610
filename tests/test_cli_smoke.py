from __future__ import annotations

import os
import sqlite3
import subprocess
import sys
import tempfile
import unittest
from contextlib import closing
from pathlib import Path


def _run(repo_root: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = dict(os.environ)
    env.pop("SCRAPECREATORS_API_KEY", None)

    existing_pp = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)

    return subprocess.run(
        [sys.executable, "-m", "creator_ingest", *args],
        cwd=repo_root,
        env=env,
        capture_output=True,
        text=True,
    )


class TestCLISmoke(unittest.TestCase):
    def test_offline_bulk_import(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")
            db_path = Path(td) / "state" / "ingest.sqlite"

            sources = Path(td) / "sources.txt"
            sources.write_text(
                "\n".join(
                    [
                        "# saved posts",
                        "https://www.instagram.com/p/SMOKE1/",
                        "https://www.tiktok.com/@mover/video/7301",
                        "https://www.instagram.com/p/SMOKE1/",
                        "https://example.com/nope",
                    ]
                ),
                encoding="utf-8",
            )

            proc = _run(
                repo_root, "create-board", "--config", str(cfg_path), "--db", str(db_path), "--owner", "u1", "--name", "Imports"
            )
            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("board_id=1", proc.stdout)

            out_dir = Path(td) / "out"
            proc = _run(
                repo_root,
                "bulk-import",
                "--config",
                str(cfg_path),
                "--db",
                str(db_path),
                "--sources",
                str(sources),
                "--board",
                "1",
                "--out",
                str(out_dir),
                "--delay-ms",
                "0",
                "--offline",
            )

            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("success=2", proc.stdout)
            self.assertIn("skipped=1", proc.stdout)
            self.assertIn("errors=1", proc.stdout)
            self.assertIn("total=4", proc.stdout)
            self.assertIn("success_rate=75.0%", proc.stdout)
            self.assertTrue((out_dir / "run.log").exists())

            proc = _run(
                repo_root,
                "check",
                "--config",
                str(cfg_path),
                "--db",
                str(db_path),
                "--post-id",
                "SMOKE1",
                "--platform",
                "instagram",
                "--caller",
                "u1",
            )
            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("boards=1", proc.stdout)

    def test_offline_search_and_list(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")
            db_path = str(Path(td) / "ingest.sqlite")

            proc = _run(
                repo_root, "search", "--config", str(cfg_path), "--db", db_path, "--handle", "@Mover", "--platform", "tiktok", "--offline"
            )
            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("handle=mover", proc.stdout)
            self.assertIn("followers=4200", proc.stdout)

            proc = _run(
                repo_root,
                "search",
                "--config",
                str(cfg_path),
                "--db",
                db_path,
                "--handle",
                "missing.creator",
                "--platform",
                "instagram",
                "--offline",
            )
            self.assertEqual(proc.returncode, 4, msg=proc.stderr)
            self.assertIn("not_found", proc.stdout)

            proc = _run(
                repo_root,
                "list-posts",
                "--config",
                str(cfg_path),
                "--db",
                db_path,
                "--handle",
                "mover",
                "--platform",
                "tiktok",
                "--page-size",
                "3",
                "--sort",
                "most-viewed",
                "--offline",
            )
            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("has_more=True", proc.stdout)
            self.assertIn("next_cursor=1", proc.stdout)

    def test_refresh_honours_enrichment_flags(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        def enriched_rows(config_text: str, td: str, name: str) -> tuple[int, int]:
            cfg_path = Path(td) / f"{name}.yaml"
            cfg_path.write_text(config_text, encoding="utf-8")
            db_path = Path(td) / f"{name}.sqlite"
            proc = _run(
                repo_root,
                "refresh",
                "--config",
                str(cfg_path),
                "--db",
                str(db_path),
                "--handle",
                "mover",
                "--platform",
                "tiktok",
                "--limit",
                "2",
                "--offline",
            )
            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("new_posts=2", proc.stdout)

            with closing(sqlite3.connect(str(db_path))) as conn:
                embeds = conn.execute("SELECT COUNT(*) FROM posts WHERE embed_html IS NOT NULL").fetchone()[0]
                transcripts = conn.execute("SELECT COUNT(*) FROM posts WHERE transcript IS NOT NULL").fetchone()[0]
            return int(embeds), int(transcripts)

        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(enriched_rows("{}", td, "default"), (2, 2))
            self.assertEqual(
                enriched_rows("enrichment:\n  fetch_embeds: false\n  fetch_transcripts: false\n", td, "off"),
                (0, 0),
            )

    def test_missing_api_key_is_a_config_error(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")

            proc = _run(
                repo_root,
                "search",
                "--config",
                str(cfg_path),
                "--db",
                str(Path(td) / "ingest.sqlite"),
                "--handle",
                "mover",
                "--platform",
                "tiktok",
            )
            self.assertEqual(proc.returncode, 2)
            self.assertIn("SCRAPECREATORS_API_KEY", proc.stderr)


if __name__ == "__main__":
    unittest.main()
