from __future__ import annotations

import argparse
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import Sequence

from .batch import ItemOutcome, read_source_list
from .cache import MemoryResponseCache, ResponseCache
from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .enrichment import EnrichmentWorker
from .errors import ConfigError, FetchError, StorageError
from .listing import SORT_OPTIONS, sort_posts
from .post import PLATFORMS, normalize_platform
from .report import build_batch_report, format_batch_report
from .run_log import RunLogger
from .service import IngestionService
from .storage import SQLiteContentStore
from .upstream import ScrapeCreatorsClient, UpstreamClient

EXIT_NOT_FOUND = 4


def _add_common(p: argparse.ArgumentParser, *, offline: bool = True) -> None:
    p.add_argument("--config", required=True, help="Path to YAML config file.")
    p.add_argument("--db", default=None, help="SQLite database path (overrides storage.db_path).")
    if offline:
        p.add_argument(
            "--offline",
            action="store_true",
            help="Use a deterministic network-free upstream stub.",
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="creator_ingest")

    subparsers = parser.add_subparsers(dest="command", required=True)

    bulk = subparsers.add_parser(
        "bulk-import",
        help="Import a list of post URLs into a board, one at a time.",
    )
    _add_common(bulk)
    bulk.add_argument("--sources", required=True, help="Text file with one post URL per line.")
    bulk.add_argument("--board", required=True, type=int, help="Target board id.")
    bulk.add_argument("--out", required=True, help="Output directory for the run log.")
    bulk.add_argument("--delay-ms", type=int, default=None, help="Delay between items (default from config).")
    bulk.add_argument(
        "--start-index",
        type=int,
        default=0,
        help="Skip the first N sources (resume an interrupted run).",
    )
    bulk.set_defaults(_handler=_cmd_bulk_import)

    search = subparsers.add_parser("search", help="Look up a creator profile.")
    _add_common(search)
    search.add_argument("--handle", required=True)
    search.add_argument("--platform", required=True, choices=PLATFORMS)
    search.set_defaults(_handler=_cmd_search)

    posts = subparsers.add_parser("list-posts", help="List one page of a creator's posts.")
    _add_common(posts)
    posts.add_argument("--handle", required=True)
    posts.add_argument("--platform", required=True, choices=PLATFORMS)
    posts.add_argument("--cursor", default=None, help="Cursor printed by a previous page.")
    posts.add_argument("--page-size", type=int, default=None)
    posts.add_argument("--sort", choices=SORT_OPTIONS, default="most-recent")
    posts.set_defaults(_handler=_cmd_list_posts)

    refresh = subparsers.add_parser("refresh", help="Store the newest posts of a creator.")
    _add_common(refresh)
    refresh.add_argument("--handle", required=True)
    refresh.add_argument("--platform", required=True, choices=PLATFORMS)
    refresh.add_argument("--limit", type=int, default=None)
    refresh.set_defaults(_handler=_cmd_refresh)

    board = subparsers.add_parser("create-board", help="Create a board owned by a caller.")
    _add_common(board, offline=False)
    board.add_argument("--owner", required=True)
    board.add_argument("--name", required=True)
    board.set_defaults(_handler=_cmd_create_board)

    check = subparsers.add_parser("check", help="List the caller's boards containing a post.")
    _add_common(check, offline=False)
    check.add_argument("--post-id", required=True)
    check.add_argument("--platform", required=True, choices=PLATFORMS)
    check.add_argument("--caller", required=True)
    check.add_argument("--url", default=None, help="Post URL, used to reconcile legacy ids.")
    check.set_defaults(_handler=_cmd_check)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _open_store(cfg: AppConfig, args: argparse.Namespace) -> SQLiteContentStore:
    return SQLiteContentStore.open(args.db or cfg.storage.db_path)


def _build_cache(cfg: AppConfig, store: SQLiteContentStore) -> ResponseCache:
    if cfg.cache.backend == "sqlite":
        return store.response_cache()
    return MemoryResponseCache()


def _build_client(
    cfg: AppConfig,
    args: argparse.Namespace,
    store: SQLiteContentStore,
    logger: RunLogger | None = None,
) -> UpstreamClient:
    if bool(getattr(args, "offline", False)):
        from .offline import OfflineUpstreamClient

        return OfflineUpstreamClient()

    secrets = resolve_runtime_secrets(cfg)
    return ScrapeCreatorsClient(
        secrets.api_key,
        upstream=cfg.upstream,
        cache_cfg=cfg.cache,
        cache=_build_cache(cfg, store),
        transcript_language=cfg.enrichment.transcript_language,
        logger=logger,
    )


def _build_enrichment(
    cfg: AppConfig,
    client: UpstreamClient,
    store: SQLiteContentStore,
    logger: RunLogger | None = None,
) -> EnrichmentWorker | None:
    if not cfg.enrichment.enabled:
        return None
    return EnrichmentWorker(
        client,
        store,
        max_workers=cfg.enrichment.max_workers,
        fetch_embeds=cfg.enrichment.fetch_embeds,
        fetch_transcripts=cfg.enrichment.fetch_transcripts,
        logger=logger,
    )


def _print_item(outcome: ItemOutcome, position: int, count: int) -> None:
    line = f"[{position + 1}/{count}] index={outcome.index} {outcome.state.value} {outcome.source}"
    if outcome.error:
        line += f" ({outcome.error})"
    print(line, flush=True)


def _cmd_bulk_import(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    log_path = out_dir / "run.log"
    with RunLogger.open(log_path, overwrite=True) as log:
        log.info(
            "bulk_import_started",
            config_path=str(args.config),
            sources=str(args.sources),
            board_id=args.board,
            start_index=args.start_index,
        )

        try:
            cfg = load_config(args.config)
            sources = read_source_list(args.sources)
            log.info("config_loaded", config_sha256=config_sha256(cfg), sources=len(sources))

            with ExitStack() as stack:
                store = stack.enter_context(_open_store(cfg, args))
                if store.get_board(args.board) is None:
                    raise StorageError(f"Board not found: {args.board}")

                client = _build_client(cfg, args, store, log)
                enrichment = _build_enrichment(cfg, client, store, log)
                if enrichment is not None:
                    stack.enter_context(enrichment)

                service = IngestionService(client, store, config=cfg, enrichment=enrichment, logger=log)
                delay_ms = cfg.batch.delay_ms if args.delay_ms is None else int(args.delay_ms)
                summary = service.run_bulk_import(
                    sources,
                    args.board,
                    delay_ms,
                    args.start_index,
                    on_item=_print_item,
                )

            report = build_batch_report(summary, delay_ms=delay_ms)
            log.info("bulk_import_report", **report)

            print(f"success={summary.success}")
            print(f"skipped={summary.skipped}")
            print(f"errors={summary.errors}")
            print(f"total={summary.total}")
            print(f"success_rate={summary.format_rate()}")
            print(f"next_index={summary.next_index}")
            print(format_batch_report(report))
            print(f"run_log={log_path}")

            return 130 if summary.interrupted else 0
        except Exception as e:
            log.exception("bulk_import_failed", exc=e)
            raise


def _cmd_search(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    platform = normalize_platform(args.platform)

    with _open_store(cfg, args) as store:
        service = IngestionService(_build_client(cfg, args, store), store, config=cfg)
        lookup = service.search_profile(args.handle, platform)

    if lookup is None:
        print("not_found")
        return EXIT_NOT_FOUND

    p = lookup.profile
    print(f"handle={p.handle}")
    print(f"platform={p.platform}")
    print(f"display_name={p.display_name or ''}")
    print(f"followers={p.followers_count if p.followers_count is not None else ''}")
    print(f"verified={p.verified}")
    print(f"avatar_url={p.avatar_url or ''}")
    print(f"bio={p.bio or ''}")
    print(f"cached={lookup.cached}")
    return 0


def _cmd_list_posts(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    platform = normalize_platform(args.platform)

    with _open_store(cfg, args) as store:
        service = IngestionService(_build_client(cfg, args, store), store, config=cfg)
        page = service.list_posts(args.handle, platform, args.cursor, page_size=args.page_size)

    for post in sort_posts(page.posts, args.sort):
        m = post.metrics
        views = "" if m.views is None else m.views
        caption = post.caption.replace("\n", " ")[:60]
        print(
            f"{post.platform_post_id}\t{post.date_posted}\tlikes={m.likes}\tcomments={m.comments}"
            f"\tviews={views}\t{caption}"
        )
    print(f"has_more={page.has_more}")
    print(f"next_cursor={page.next_cursor or ''}")
    print(f"skipped={page.skipped}")
    return 0


def _cmd_refresh(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    platform = normalize_platform(args.platform)

    with _open_store(cfg, args) as store:
        client = _build_client(cfg, args, store)
        with ExitStack() as stack:
            enrichment = _build_enrichment(cfg, client, store)
            if enrichment is not None:
                stack.enter_context(enrichment)
            service = IngestionService(client, store, config=cfg, enrichment=enrichment)
            result = service.refresh_profile(args.handle, platform, limit=args.limit)

    print(f"handle={result.profile.handle if result.profile else ''}")
    print(f"new_posts={result.new_posts}")
    print(f"updated_posts={result.updated_posts}")
    print(f"errors={result.errors}")
    return 0


def _cmd_create_board(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    with _open_store(cfg, args) as store:
        board = store.create_board(args.owner, args.name)
    print(f"board_id={board.id}")
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    platform = normalize_platform(args.platform)

    with _open_store(cfg, args) as store:
        service = IngestionService(_OfflineOnlyClient(), store, config=cfg)
        boards = service.check_post_in_boards(args.post_id, platform, args.caller, source_url=args.url)

    for b in boards:
        print(f"{b.id}\t{b.name}")
    print(f"boards={len(boards)}")
    return 0


class _OfflineOnlyClient:
    """Placeholder for commands that only read the store."""

    def __getattr__(self, name: str) -> object:
        raise FetchError(f"Upstream access is not available for this command ({name})")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (FetchError, StorageError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
