"""CLI entry point for mempack."""

import argparse
import json
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path

from mempack.config import ResolvedConfig, load_config
from mempack.errors import FileNotFoundInStoreError, MempackError, PathError
from mempack.ingesters import get_ingester
from mempack.logging_config import configure_logging
from mempack.manager import MemorySearchManager
from mempack.models import MODE_AUTO, SEARCH_MODES, SearchOptions, Tenant
from mempack.storage import ContentStore

logger = logging.getLogger(__name__)


def resolve(args: argparse.Namespace) -> tuple[Tenant, ResolvedConfig]:
    """Tenant and config selected by the common options."""
    config = load_config(args.config, agent_id=args.agent)
    if args.store:
        config = replace(config, store=replace(config.store, path=args.store))
    return Tenant(args.bridge, args.login, args.agent), config


def open_content(config: ResolvedConfig) -> ContentStore:
    store = ContentStore(config.store_path)
    store.initialize()
    return store


def import_folder(args: argparse.Namespace) -> None:
    """Copy a folder of markdown notes into the content store.

    Args:
        args.folder: Folder to import
        args.prefix: Virtual directory for the imported notes
    """
    tenant, config = resolve(args)
    ingester = get_ingester(Path(args.folder), prefix=args.prefix)
    if ingester is None:
        logger.error(f"Cannot import: {args.folder}")
        logger.error("Supported inputs: folders of markdown files")
        sys.exit(1)

    store = open_content(config)
    store.ensure_default_memory_file(tenant)
    count = 0
    for doc in ingester.ingest(Path(args.folder)):
        store.write(tenant, doc.path, doc.content, updated_at=doc.updated_at)
        logger.info(f"  {doc.path}")
        count += 1

    logger.info("")
    logger.info(f"Imported {count} notes for {tenant.key} -> {config.store_path}")
    if args.sync:
        sync(args)


def write(args: argparse.Namespace) -> None:
    """Create or overwrite a note from a file or stdin."""
    tenant, config = resolve(args)
    content = Path(args.file).read_text(encoding="utf-8") if args.file else sys.stdin.read()
    stored = open_content(config).write(tenant, args.path, content)
    logger.info(f"Wrote {stored.path} ({stored.size_bytes} bytes)")


def append(args: argparse.Namespace) -> None:
    """Append a message to a session transcript."""
    tenant, config = resolve(args)
    rowid = open_content(config).append_message(tenant, args.session, args.role, args.text)
    logger.info(f"Appended message {rowid} to session {args.session}")


def _with_manager(args: argparse.Namespace, fn):
    tenant, config = resolve(args)
    manager = MemorySearchManager(tenant, config)
    try:
        return fn(manager)
    finally:
        manager.close()


def sync(args: argparse.Namespace) -> None:
    """Bring the index up to date with the content store."""

    def run(manager: MemorySearchManager) -> None:
        report = manager.sync(force=getattr(args, "force", False), reason="cli")
        logger.info(
            f"Synced generation {report.generation}: {report.notes_indexed} notes, "
            f"{report.sessions_indexed} sessions indexed; "
            f"{report.notes_deleted + report.sessions_deleted} removed"
        )
        for path in report.stale_notes + report.stale_sessions:
            logger.warning(f"  stale: {path}")

    _with_manager(args, run)


def search(args: argparse.Namespace) -> None:
    """Run a hybrid search and print the ranked snippets."""
    from mempack.server.mcp_server import format_search_response

    def run(manager: MemorySearchManager) -> None:
        opts = SearchOptions(
            max_results=args.max_results,
            min_score=args.min_score,
            sources=tuple(args.source or ()),
            mode=args.mode,
        )
        response = manager.search(args.query, opts)
        if args.json:
            print(
                json.dumps(
                    {
                        "results": [asdict(r) for r in response.results],
                        "vector_used": response.vector_used,
                        "keyword_used": response.keyword_used,
                        "keyword_scan": response.keyword_scan,
                        "unavailable_reason": response.unavailable_reason,
                        "warnings": response.warnings,
                    },
                    indent=2,
                )
            )
        else:
            print(format_search_response(args.query, response))

    _with_manager(args, run)


def read(args: argparse.Namespace) -> None:
    """Print part of a memory file."""

    def run(manager: MemorySearchManager) -> None:
        try:
            result = manager.read_file(args.path, from_line=args.from_line, lines=args.lines)
        except (PathError, FileNotFoundInStoreError) as e:
            logger.error(str(e))
            sys.exit(1)
        print(result["text"])

    _with_manager(args, run)


def status(args: argparse.Namespace) -> None:
    """Show index counts, engine availability and sync state."""
    from mempack.status import format_status

    def run(manager: MemorySearchManager) -> None:
        snapshot = manager.status()
        if args.json:
            print(json.dumps(snapshot.to_dict(), indent=2))
        else:
            print(format_status(snapshot))

    _with_manager(args, run)


def prune(args: argparse.Namespace) -> None:
    """Remove indexed sessions past the retention window."""

    def run(manager: MemorySearchManager) -> None:
        if manager.config.sync.sessions.retention_days <= 0:
            logger.info("Retention is unlimited (sync.sessions.retention_days = 0); nothing to prune")
            return
        count = manager.prune_expired_sessions()
        logger.info(f"Pruned {count} expired sessions")

    _with_manager(args, run)


def serve(args: argparse.Namespace) -> None:
    """Start an MCP server for one tenant's memory."""
    # Import here to avoid loading MCP unless needed
    from typing import Literal, cast

    from mempack.server import create_mcp_server

    tenant, config = resolve(args)
    manager = MemorySearchManager(tenant, config)
    logger.info(f"Serving memory for {tenant.key} via {args.transport}")
    try:
        mcp = create_mcp_server(manager)
        mcp.run(transport=cast(Literal["stdio", "sse", "streamable-http"], args.transport))
    finally:
        manager.close()


def deck(args: argparse.Namespace) -> None:
    """Launch the Flight Deck TUI."""
    from mempack.flight_deck import main as flight_deck_main

    tenant, config = resolve(args)
    flight_deck_main(tenant, config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mempack",
        description="mempack - hybrid memory search for chat bridges",
    )
    parser.add_argument("--config", help="Path to mempack.toml (default: $MEMPACK_CONFIG or ./mempack.toml)")
    parser.add_argument("--store", help="Override the SQLite store path")
    parser.add_argument("--bridge", default="local", help="Bridge id (default: local)")
    parser.add_argument("--login", default="default", help="Login id (default: default)")
    parser.add_argument("--agent", default="main", help="Agent id (default: main)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # import command
    import_parser = subparsers.add_parser("import", help="Import a folder of markdown notes")
    import_parser.add_argument("folder", help="Folder to import")
    import_parser.add_argument(
        "--prefix",
        default="memory/",
        help="Virtual directory for imported notes (default: memory/)",
    )
    import_parser.add_argument("--sync", action="store_true", help="Index right after importing")
    import_parser.set_defaults(func=import_folder, force=False)

    # write command
    write_parser = subparsers.add_parser("write", help="Create or overwrite a note")
    write_parser.add_argument("path", help="Virtual path, e.g. memory/people.md")
    write_parser.add_argument("-f", "--file", help="Read content from a file instead of stdin")
    write_parser.set_defaults(func=write)

    # append command
    append_parser = subparsers.add_parser("append", help="Append a message to a session transcript")
    append_parser.add_argument("session", help="Session key")
    append_parser.add_argument("role", choices=["user", "assistant"], help="Message author")
    append_parser.add_argument("text", help="Message text")
    append_parser.set_defaults(func=append)

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Index changed notes and sessions")
    sync_parser.add_argument("--force", action="store_true", help="Reindex everything")
    sync_parser.set_defaults(func=sync)

    # search command
    search_parser = subparsers.add_parser("search", help="Hybrid search")
    search_parser.add_argument("query", nargs="?", default="", help="Search text (optional with --mode list)")
    search_parser.add_argument("-n", "--max-results", type=int, default=None, help="Maximum results")
    search_parser.add_argument("--min-score", type=float, default=None, help="Minimum score (0-1)")
    search_parser.add_argument(
        "--source",
        action="append",
        choices=["notes", "sessions"],
        help="Restrict to a source (repeatable)",
    )
    search_parser.add_argument(
        "--mode",
        choices=list(SEARCH_MODES),
        default=MODE_AUTO,
        help="Engines to use; list shows recently updated files (default: auto)",
    )
    search_parser.add_argument("--json", action="store_true", help="Print JSON")
    search_parser.set_defaults(func=search)

    # read command
    read_parser = subparsers.add_parser("read", help="Print a memory file")
    read_parser.add_argument("path", help="Virtual path")
    read_parser.add_argument("--from", dest="from_line", type=int, default=None, help="First line (1-based)")
    read_parser.add_argument("--lines", type=int, default=None, help="Number of lines")
    read_parser.set_defaults(func=read)

    # status command
    status_parser = subparsers.add_parser("status", help="Show index status")
    status_parser.add_argument("--json", action="store_true", help="Print JSON")
    status_parser.set_defaults(func=status)

    # prune command
    prune_parser = subparsers.add_parser("prune", help="Prune sessions past retention")
    prune_parser.set_defaults(func=prune)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start MCP server")
    serve_parser.add_argument(
        "--transport",
        choices=["stdio", "sse"],
        default="stdio",
        help="Transport protocol (default: stdio)",
    )
    serve_parser.set_defaults(func=serve)

    # deck command
    deck_parser = subparsers.add_parser("deck", help="Launch Flight Deck TUI")
    deck_parser.set_defaults(func=deck)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        args.func(args)
    except MempackError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
