"""
Command-line interface for convo-memory.

Sub-commands
------------
capture – Replay a JSON transcript of turns through the session tracker.
search  – Rank stored sessions for a query (fingerprint or keyword).
list    – List the most recent sessions.
show    – Print one session.
stats   – Print storage statistics.
merge   – Merge two or more sessions into one.
delete  – Delete a session by its ID.
export  – Write every session to an .aime (or Markdown) file.
import  – Replace all sessions with the contents of an .aime file.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import Settings
from .errors import ConvoMemoryError
from .memory import MemoryManager
from .models import Session
from .tracker import FallbackCache, SessionTracker


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convo-memory",
        description="Local memory engine for streamed conversations.",
    )
    parser.add_argument(
        "--db",
        default=None,
        metavar="PATH",
        help="Path to the ChromaDB persistent store (default: $CONVO_MEMORY_DB_PATH).",
    )
    parser.add_argument(
        "--collection",
        default=None,
        metavar="PREFIX",
        help="Collection name prefix (default: $CONVO_MEMORY_COLLECTION or convo).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    sub = parser.add_subparsers(dest="command", required=True)

    # capture
    p_capture = sub.add_parser("capture", help="Replay a JSON list of turns.")
    p_capture.add_argument("file", help="JSON file of {role, content, timestamp} turns, or '-'.")
    p_capture.add_argument("--origin", default="", metavar="URL", help="Origin URL of the chat.")

    # search
    p_search = sub.add_parser("search", help="Search stored sessions.")
    p_search.add_argument("query", help="Search text.")
    p_search.add_argument(
        "-n",
        type=int,
        default=20,
        metavar="N",
        help="Number of results to return (default: 20).",
    )
    p_search.add_argument(
        "--keyword",
        action="store_true",
        help="Match substrings instead of ranking by fingerprint similarity.",
    )
    p_search.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # list
    p_list = sub.add_parser("list", help="List recent sessions.")
    p_list.add_argument(
        "--limit",
        type=int,
        default=10,
        metavar="N",
        help="Maximum number of sessions to show (default: 10).",
    )
    p_list.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # show
    p_show = sub.add_parser("show", help="Print one session.")
    p_show.add_argument("id", help="Session ID.")
    p_show.add_argument(
        "--format",
        choices=("narrative", "markup", "prompt", "json"),
        default="narrative",
        help="Rendering to print (default: narrative).",
    )

    # stats
    sub.add_parser("stats", help="Print storage statistics.")

    # merge
    p_merge = sub.add_parser("merge", help="Merge sessions.")
    p_merge.add_argument("ids", nargs="+", help="Two or more session IDs.")

    # delete
    p_delete = sub.add_parser("delete", help="Delete a session by ID.")
    p_delete.add_argument("id", help="Session ID to delete.")

    # export
    p_export = sub.add_parser("export", help="Export all sessions.")
    p_export.add_argument("path", help="Output file.")
    p_export.add_argument("--markdown", action="store_true", help="Write Markdown instead.")

    # import
    p_import = sub.add_parser("import", help="Replace all sessions from an export file.")
    p_import.add_argument("path", help="Input .aime file.")

    return parser


def _build_manager(settings: Settings) -> MemoryManager:
    return MemoryManager(
        db_path=settings.db_path,
        collection_prefix=settings.collection_prefix,
        max_sessions=settings.max_sessions,
        similarity_threshold=settings.similarity_threshold,
    )


def _session_line(session: Session) -> str:
    return (
        f"id={session.id} turns={len(session.turns)} "
        f"start={session.start_time} title={session.title or 'Untitled'}"
    )


def _session_brief(session: Session) -> dict:
    return {
        "id": session.id,
        "title": session.title,
        "start_time": session.start_time,
        "end_time": session.end_time,
        "turns": len(session.turns),
        "origin_key": session.origin_key,
        "linked": session.linked,
    }


def _read_turns(source: str) -> list[dict]:
    text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    turns = json.loads(text)
    if not isinstance(turns, list):
        raise ValueError("Transcript must be a JSON list of turns")
    for position, turn in enumerate(turns):
        if not isinstance(turn, dict):
            raise ValueError(f"Transcript entry {position} is not an object")
    return turns


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    settings = Settings.from_env()
    if args.db:
        settings.db_path = args.db
    if args.collection:
        settings.collection_prefix = args.collection

    manager = _build_manager(settings)
    try:
        with manager:
            return _dispatch(args, manager, settings)
    except (ConvoMemoryError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def _dispatch(args: argparse.Namespace, manager: MemoryManager, settings: Settings) -> int:
    if args.command == "capture":
        turns = _read_turns(args.file)
        closed: list[str] = []

        def sink(session: Session) -> None:
            manager.ingest(session)
            if session.id not in closed:
                closed.append(session.id)

        tracker = SessionTracker(
            sink=sink,
            inactivity_timeout_ms=settings.inactivity_timeout_ms,
            autosave_every=settings.autosave_every,
            fallback=FallbackCache(settings.fallback_path),
            origin_url=args.origin,
        )
        try:
            for turn in turns:
                tracker.add_turn(turn.get("role"), turn.get("content"), turn.get("timestamp"))
        finally:
            unsaved = tracker.shutdown()
        stored = [session_id for session_id in closed if session_id not in unsaved]
        print(f"Captured {len(turns)} turn(s) into {len(stored)} session(s): {', '.join(stored)}")
        if unsaved:
            print(
                f"Error: {len(unsaved)} session(s) could not be stored and were written "
                f"to {settings.fallback_path}: {', '.join(unsaved)}",
                file=sys.stderr,
            )
            return 1

    elif args.command == "search":
        if args.keyword:
            hits = [{"session": s, "similarity": None} for s in manager.search_keyword(args.query, args.n)]
        else:
            hits = manager.search(args.query, limit=args.n)
        if not hits:
            print("No sessions found.")
            return 0
        if args.as_json:
            print(json.dumps(
                [{**_session_brief(h["session"]), "similarity": h["similarity"]} for h in hits],
                indent=2,
            ))
        else:
            for i, hit in enumerate(hits, 1):
                score = "" if hit["similarity"] is None else f" (similarity={hit['similarity']:.3f})"
                print(f"[{i}]{score} {_session_line(hit['session'])}")

    elif args.command == "list":
        sessions = manager.get_recent(args.limit)
        if not sessions:
            print("No sessions stored.")
            return 0
        if args.as_json:
            print(json.dumps([_session_brief(s) for s in sessions], indent=2))
        else:
            for session in sessions:
                print(_session_line(session))

    elif args.command == "show":
        session = manager.get_session(args.id)
        if session is None:
            print(f"Session {args.id} not found.", file=sys.stderr)
            return 1
        if args.format == "json":
            print(json.dumps(session.to_dict(), indent=2, ensure_ascii=False))
        elif args.format == "markup":
            print(session.summary.markup)
        elif args.format == "prompt":
            print(session.summary.context_prompt)
        else:
            print(session.summary.narrative)

    elif args.command == "stats":
        print(json.dumps(manager.get_stats(), indent=2))

    elif args.command == "merge":
        merged = manager.merge_sessions(args.ids)
        print(f"Merged {len(args.ids)} sessions into {merged.id}.")

    elif args.command == "delete":
        manager.delete_session(args.id)
        print(f"Deleted session {args.id}.")

    elif args.command == "export":
        path = Path(args.path)
        if args.markdown:
            path.write_text(manager.export_markdown(), encoding="utf-8")
        else:
            path.write_text(json.dumps(manager.export_all(), indent=2), encoding="utf-8")
        print(f"Exported {manager.get_stats()['count']} session(s) to {path}.")

    elif args.command == "import":
        blob = json.loads(Path(args.path).read_text(encoding="utf-8"))
        count = manager.import_all(blob)
        print(f"Imported {count} session(s).")

    return 0


if __name__ == "__main__":
    sys.exit(main())
