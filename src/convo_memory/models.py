"""
Data model: turns, sessions, summaries and concept records.

All timestamps are integer milliseconds since the epoch.  Every type has a
``to_dict``/``from_dict`` pair producing the JSON form that the store
persists and exports carry.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .codec import CompressedPayload
from .errors import ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ROLES: tuple[str, ...] = ("user", "assistant", "system")

#: Hard cap on a single turn's UTF-8 size.
MAX_CONTENT_BYTES: int = 5 * 1024 * 1024

#: Titles longer than this are cut to ``TITLE_LENGTH - 3`` chars plus "...".
TITLE_LENGTH: int = 60

CONCEPT_TYPES: tuple[str, ...] = ("concept", "decision", "code")

_CHAT_ID_PATTERNS = (
    re.compile(r"/c/([a-f0-9-]+)"),
    re.compile(r"/chat/([a-z0-9-]+)"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_id() -> str:
    """Return a new unique record ID."""
    return str(uuid.uuid4())


def make_title(content: str) -> str:
    cleaned = " ".join(content.split())
    if len(cleaned) <= TITLE_LENGTH:
        return cleaned
    return cleaned[: TITLE_LENGTH - 3] + "..."


def extract_chat_id(url: str | None) -> str | None:
    """Pull the chat identifier out of a ChatGPT (``/c/``) or Claude (``/chat/``) URL."""
    if not url:
        return None
    for pattern in _CHAT_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def detect_platform(url: str | None) -> str:
    if not url:
        return "unknown"
    if "openai.com" in url or "chatgpt.com" in url:
        return "chatgpt"
    if "claude.ai" in url:
        return "claude"
    return "unknown"


def validate_turn(role: Any, content: Any, timestamp: Any) -> None:
    """Raise :class:`ValidationError` unless the turn can be stored as-is."""
    if role not in ROLES:
        raise ValidationError(f"Unknown role {role!r}; expected one of {', '.join(ROLES)}")
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Turn content must be a non-empty string")
    if len(content.encode("utf-8", "surrogatepass")) > MAX_CONTENT_BYTES:
        raise ValidationError(f"Turn content exceeds {MAX_CONTENT_BYTES} bytes")
    if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp < 0:
        raise ValidationError(f"Turn timestamp must be a non-negative int, got {timestamp!r}")


# ---------------------------------------------------------------------------
# Turn
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Turn:
    role: str
    content: str
    timestamp: int
    index: int = 0

    @classmethod
    def create(cls, role: str, content: str, timestamp: int, index: int = 0) -> "Turn":
        validate_turn(role, content, timestamp)
        return cls(role=role, content=content, timestamp=timestamp, index=index)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "index": self.index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Turn":
        return cls.create(
            data["role"], data["content"], data["timestamp"], int(data.get("index", 0))
        )


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@dataclass
class SemanticSummary:
    topics: list[str] = field(default_factory=list)
    turn_counts: dict[str, int] = field(default_factory=dict)
    total_length: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "topics": list(self.topics),
            "turn_counts": dict(self.turn_counts),
            "total_length": self.total_length,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SemanticSummary":
        return cls(
            topics=list(data.get("topics", [])),
            turn_counts=dict(data.get("turn_counts", {})),
            total_length=int(data.get("total_length", 0)),
        )


@dataclass
class Summary:
    """
    Cached renderings of a session, always regenerable from its turns.

    ``structured`` follows the chat-completions message shape; ``markup``
    is an XML-style rendering; ``context_prompt`` is a ready-to-paste recap.
    """

    narrative: str
    structured: list[dict[str, str]]
    markup: str
    semantic: SemanticSummary
    context_prompt: str = ""
    key_concepts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "narrative": self.narrative,
            "structured": [dict(item) for item in self.structured],
            "markup": self.markup,
            "semantic": self.semantic.to_dict(),
            "context_prompt": self.context_prompt,
            "key_concepts": list(self.key_concepts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Summary":
        return cls(
            narrative=data.get("narrative", ""),
            structured=[dict(item) for item in data.get("structured", [])],
            markup=data.get("markup", ""),
            semantic=SemanticSummary.from_dict(data.get("semantic", {})),
            context_prompt=data.get("context_prompt", ""),
            key_concepts=list(data.get("key_concepts", [])),
        )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """
    A timeout-delimited group of turns treated as one conversation.

    A session is open until ``end_time`` is set; after that it is only ever
    replaced wholesale.
    """

    id: str
    start_time: int
    turns: list[Turn] = field(default_factory=list)
    title: str | None = None
    end_time: int | None = None
    origin_url: str = ""
    platform_tag: str = "unknown"
    origin_key: str | None = None
    summary: Summary | None = None
    fingerprint: list[float] = field(default_factory=list)
    compressed: CompressedPayload | None = None
    linked: list[str] = field(default_factory=list)

    @classmethod
    def open(
        cls,
        start_time: int,
        origin_url: str = "",
        platform_tag: str | None = None,
        origin_key: str | None = None,
    ) -> "Session":
        return cls(
            id=generate_id(),
            start_time=start_time,
            origin_url=origin_url,
            platform_tag=platform_tag or detect_platform(origin_url),
            origin_key=origin_key or extract_chat_id(origin_url),
        )

    @property
    def closed(self) -> bool:
        return self.end_time is not None

    @property
    def last_time(self) -> int:
        """Most recent activity: end time when closed, else last turn."""
        if self.end_time is not None:
            return self.end_time
        if self.turns:
            return self.turns[-1].timestamp
        return self.start_time

    def append(self, role: str, content: str, timestamp: int) -> Turn:
        if self.closed:
            raise ValidationError(f"Session {self.id} is closed")
        turn = Turn.create(role, content, timestamp, index=len(self.turns))
        self.turns.append(turn)
        if self.title is None and role == "user":
            self.title = make_title(content)
        return turn

    def text(self) -> str:
        return " ".join(turn.content for turn in self.turns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "turns": [turn.to_dict() for turn in self.turns],
            "start_time": self.start_time,
            "end_time": self.end_time,
            "origin_url": self.origin_url,
            "platform_tag": self.platform_tag,
            "origin_key": self.origin_key,
            "summary": self.summary.to_dict() if self.summary else None,
            "fingerprint": list(self.fingerprint),
            "compressed": self.compressed.to_dict() if self.compressed else None,
            "linked": list(self.linked),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        if not data.get("id"):
            raise ValidationError("Session record has no id")
        summary = data.get("summary")
        compressed = data.get("compressed")
        return cls(
            id=str(data["id"]),
            title=data.get("title"),
            turns=[Turn.from_dict(item) for item in data.get("turns", [])],
            start_time=int(data["start_time"]),
            end_time=None if data.get("end_time") is None else int(data["end_time"]),
            origin_url=data.get("origin_url") or "",
            platform_tag=data.get("platform_tag") or "unknown",
            origin_key=data.get("origin_key"),
            summary=Summary.from_dict(summary) if summary else None,
            fingerprint=[float(x) for x in data.get("fingerprint", [])],
            compressed=CompressedPayload.from_dict(compressed) if compressed else None,
            linked=[str(x) for x in data.get("linked", [])],
        )


# ---------------------------------------------------------------------------
# Concept record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConceptRecord:
    type: str
    content: str
    session_id: str
    turn_index: int
    timestamp: int

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "content": self.content,
            "session_id": self.session_id,
            "turn_index": self.turn_index,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConceptRecord":
        return cls(
            type=data["type"],
            content=data["content"],
            session_id=data["session_id"],
            turn_index=int(data.get("turn_index", 0)),
            timestamp=int(data.get("timestamp", 0)),
        )
