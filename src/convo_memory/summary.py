"""
Summary derivation and session enrichment.

Summaries are caches: :func:`build_summary` reads nothing but the session's
turns and header fields, so calling it twice yields equal results.
:func:`enrich` fills in everything a closed session must carry before it
is handed to the memory manager.
"""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from xml.sax.saxutils import escape

from .codec import compress_payload
from .fingerprint import fingerprint
from .intelligence import analyze
from .models import ROLES, SemanticSummary, Session, Summary

#: Topics are words longer than this many characters.
TOPIC_MIN_LENGTH: int = 4
MAX_TOPICS: int = 10
MAX_KEY_CONCEPTS: int = 15

#: Turns quoted in the context prompt, and the per-turn character cap.
PROMPT_TURNS: int = 5
PROMPT_EXCERPT: int = 200

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}
_SPEAKERS = {"user": "Human", "assistant": "Assistant", "system": "System"}


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def semantic_summary(session: Session) -> SemanticSummary:
    all_text = " ".join(turn.content for turn in session.turns)
    words = [
        w
        for w in "".join(c if c.isalnum() else " " for c in all_text.lower()).split()
        if len(w) > TOPIC_MIN_LENGTH
    ]
    ranked = sorted(Counter(words).items(), key=lambda item: item[1], reverse=True)
    turn_counts = {role: 0 for role in ROLES}
    for turn in session.turns:
        turn_counts[turn.role] += 1
    return SemanticSummary(
        topics=[word for word, _ in ranked[:MAX_TOPICS]],
        turn_counts=turn_counts,
        total_length=len(all_text),
    )


def _markup(session: Session) -> str:
    turns = "\n".join(
        f'  <turn index="{i}" role="{turn.role}">\n'
        f"    {escape(turn.content, _XML_ENTITIES)}\n"
        f"  </turn>"
        for i, turn in enumerate(session.turns)
    )
    return (
        "<conversation>\n"
        "<metadata>\n"
        f"  <platform>{escape(session.platform_tag)}</platform>\n"
        f"  <started>{_iso(session.start_time)}</started>\n"
        f"  <messages>{len(session.turns)}</messages>\n"
        "</metadata>\n"
        "<exchanges>\n"
        f"{turns}\n"
        "</exchanges>\n"
        "</conversation>"
    )


def _context_prompt(session: Session) -> str:
    lines = []
    for i, turn in enumerate(session.turns[:PROMPT_TURNS], 1):
        speaker = "User" if turn.role == "user" else _SPEAKERS[turn.role]
        excerpt = turn.content[:PROMPT_EXCERPT]
        if len(turn.content) > PROMPT_EXCERPT:
            excerpt += "..."
        lines.append(f"{i}. {speaker}: {excerpt}")

    remaining = len(session.turns) - PROMPT_TURNS
    more = f"\n[... and {remaining} more exchanges]\n" if remaining > 0 else "\n"
    return (
        "Here is the context from a previous conversation:\n\n"
        f"Title: {session.title or 'Untitled Conversation'}\n"
        f"Platform: {session.platform_tag}\n"
        f"Started: {_iso(session.start_time)}\n"
        f"Total messages: {len(session.turns)}\n\n"
        "Previous exchanges:\n" + "\n".join(lines) + "\n" + more + "\n"
        "You can now continue this conversation with full context."
    )


def _key_concepts(session: Session) -> list[str]:
    seen: dict[str, None] = {}
    for turn in session.turns:
        for concept in analyze(turn.content).concepts:
            seen.setdefault(concept)
    return list(seen)[:MAX_KEY_CONCEPTS]


def build_summary(session: Session) -> Summary:
    return Summary(
        narrative="\n\n".join(
            f"{_SPEAKERS[turn.role]}: {turn.content}" for turn in session.turns
        ),
        structured=[{"role": turn.role, "content": turn.content} for turn in session.turns],
        markup=_markup(session),
        semantic=semantic_summary(session),
        context_prompt=_context_prompt(session),
        key_concepts=_key_concepts(session),
    )


def payload_text(session: Session) -> str:
    """Compact JSON form of a session's turns, the input to compression."""
    return json.dumps(
        {
            "id": session.id,
            "title": session.title,
            "times": [session.start_time, session.end_time],
            "turns": [
                [turn.role, turn.content, turn.timestamp - session.start_time]
                for turn in session.turns
            ],
        },
        ensure_ascii=False,
        separators=(",", ":"),
    )


def enrich(session: Session) -> Session:
    """Recompute summary, fingerprint and compressed payload in place."""
    session.summary = build_summary(session)
    session.fingerprint = fingerprint(session.text())
    session.compressed = compress_payload(payload_text(session))
    return session


def render_markdown(sessions: list[Session]) -> str:
    """Human-readable export of *sessions*."""
    out = ["# Conversation Export", "", f"Total conversations: {len(sessions)}", ""]
    for session in sessions:
        out.append(f"## {session.title or 'Untitled Conversation'}")
        out.append("")
        out.append(f"- **Date:** {_iso(session.start_time)}")
        out.append(f"- **Platform:** {session.platform_tag}")
        out.append(f"- **Messages:** {len(session.turns)}")
        if session.linked:
            out.append(f"- **Merged from:** {', '.join(session.linked)}")
        out.append("")
        for turn in session.turns:
            out.append(f"**{_SPEAKERS[turn.role]}:** {turn.content}")
            out.append("")
        out.append("---")
        out.append("")
    return "\n".join(out)
