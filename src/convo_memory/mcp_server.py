"""
MCP (Model Context Protocol) server for convo-memory.

Exposes the session tracker (ingress) and the MemoryManager (egress) as
tools, so an editor or browser host can stream turns in and pull context
back out over stdio.

Run as a stdio server:
    python -m convo_memory.mcp_server

Or via the installed entry-point:
    convo-memory-mcp

Configuration comes from the ``CONVO_MEMORY_*`` environment variables
documented in :mod:`convo_memory.config`.
"""

from __future__ import annotations

import json

from mcp.server.fastmcp import FastMCP

from .config import Settings
from .memory import MemoryManager
from .tracker import FallbackCache, SessionTracker

# Lazy-initialised singletons: one manager per store, one tracker per host.
_manager: MemoryManager | None = None
_tracker: SessionTracker | None = None


def _get_manager() -> MemoryManager:
    global _manager
    if _manager is None:
        settings = Settings.from_env()
        _manager = MemoryManager(
            db_path=settings.db_path,
            collection_prefix=settings.collection_prefix,
            max_sessions=settings.max_sessions,
            similarity_threshold=settings.similarity_threshold,
        ).open()
    return _manager


def _get_tracker() -> SessionTracker:
    global _tracker
    if _tracker is None:
        settings = Settings.from_env()
        _tracker = SessionTracker(
            sink=_get_manager().ingest,
            inactivity_timeout_ms=settings.inactivity_timeout_ms,
            autosave_every=settings.autosave_every,
            fallback=FallbackCache(settings.fallback_path),
        )
    return _tracker


def _brief(session) -> dict:
    return {
        "id": session.id,
        "title": session.title,
        "start_time": session.start_time,
        "end_time": session.end_time,
        "turns": len(session.turns),
        "topics": session.summary.semantic.topics if session.summary else [],
    }


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "convo-memory",
    instructions=(
        "Local conversation memory. "
        "Use `push_turn` for every user or assistant message as it arrives; "
        "turns are grouped into sessions automatically. "
        "Use `close_session` when a conversation ends. "
        "Use `search_sessions` to recall relevant past conversations, "
        "`get_session` to read one in full, and `recent_sessions` to browse. "
        "Use `memory_stats`, `merge_sessions` and `export_memory` to manage storage."
    ),
)


@mcp.tool()
def push_turn(role: str, content: str, timestamp_ms: int | None = None, origin_url: str = "") -> str:
    """
    Record one conversation turn.

    Args:
        role:         "user", "assistant" or "system".
        content:      The message text.
        timestamp_ms: Arrival time in epoch milliseconds (default: now).
        origin_url:   URL of the chat the turn belongs to; switching to a
                      different chat starts a new session.

    Returns:
        A confirmation naming the session the turn joined.
    """
    tracker = _get_tracker()
    if origin_url:
        tracker.set_origin(origin_url)
    session = tracker.add_turn(role, content, timestamp_ms)
    return f"Added {role} turn {len(session.turns) - 1} to session {session.id}."


@mcp.tool()
def close_session() -> str:
    """
    Close the open session and store it.

    Returns:
        A confirmation with the stored session ID, or a note that nothing
        was open.
    """
    session = _get_tracker().close()
    if session is None:
        return "No open session."
    return f"Closed session {session.id} with {len(session.turns)} turns."


@mcp.tool()
def search_sessions(query: str, limit: int = 20) -> str:
    """
    Find past sessions similar to *query*.

    Args:
        query: Natural-language topic or question.
        limit: Maximum number of sessions to return (default 20).

    Returns:
        JSON array of sessions with id, title, similarity and topics.
    """
    hits = _get_manager().search(query, limit=limit)
    if not hits:
        return "No sessions found."
    return json.dumps(
        [{**_brief(h["session"]), "similarity": round(h["similarity"], 4)} for h in hits],
        indent=2,
    )


@mcp.tool()
def get_session(session_id: str, format: str = "prompt") -> str:  # noqa: A002
    """
    Return one stored session.

    Args:
        session_id: ID as returned by search_sessions or recent_sessions.
        format:     "prompt" (ready-to-paste recap), "narrative", "markup"
                    or "json".

    Returns:
        The session rendered in the requested format.
    """
    session = _get_manager().get_session(session_id)
    if session is None:
        return f"Session {session_id} not found."
    if format == "json":
        return json.dumps(session.to_dict(), indent=2, ensure_ascii=False)
    if format == "narrative":
        return session.summary.narrative
    if format == "markup":
        return session.summary.markup
    return session.summary.context_prompt


@mcp.tool()
def recent_sessions(limit: int = 10) -> str:
    """
    List the most recently started sessions.

    Args:
        limit: Maximum number of sessions to return (default 10).

    Returns:
        JSON array of session summaries.
    """
    sessions = _get_manager().get_recent(limit)
    if not sessions:
        return "No sessions stored."
    return json.dumps([_brief(s) for s in sessions], indent=2)


@mcp.tool()
def memory_stats() -> str:
    """Return session count, serialized size and concept count as JSON."""
    return json.dumps(_get_manager().get_stats())


@mcp.tool()
def merge_sessions(session_ids: list[str]) -> str:
    """
    Merge two or more sessions into one, ordered by turn time.

    Args:
        session_ids: IDs of the sessions to merge.

    Returns:
        A confirmation with the merged session ID.
    """
    merged = _get_manager().merge_sessions(session_ids)
    return f"Merged {len(session_ids)} sessions into {merged.id}."


@mcp.tool()
def export_memory() -> str:
    """Return every stored session as an .aime JSON document."""
    return json.dumps(_get_manager().export_all())


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    try:
        mcp.run(transport="stdio")
    finally:
        if _tracker is not None:
            _tracker.shutdown()


if __name__ == "__main__":
    main()
