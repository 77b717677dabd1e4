"""
Runtime configuration resolved from environment variables.

Every host (CLI, MCP server) builds a :class:`Settings` through
:meth:`Settings.from_env` and lets explicit flags override it.

Environment variables:
    CONVO_MEMORY_DB_PATH         - path to the ChromaDB store (default: ~/.cache/convo-memory)
    CONVO_MEMORY_COLLECTION      - collection name prefix (default: convo)
    CONVO_MEMORY_MAX_SESSIONS    - session cap before eviction (default: 100)
    CONVO_MEMORY_TIMEOUT_MS      - inactivity gap that starts a new session (default: 300000)
    CONVO_MEMORY_AUTOSAVE_EVERY  - persist the open session every N turns (default: 3)
    CONVO_MEMORY_THRESHOLD       - minimum fingerprint similarity for search (default: 0.3)
    CONVO_MEMORY_FALLBACK_PATH   - JSON file receiving sessions that could not be stored
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_DEFAULT_DB_PATH = str(Path.home() / ".cache" / "convo-memory")
_DEFAULT_FALLBACK_PATH = str(Path.home() / ".cache" / "convo-memory-fallback.json")

DEFAULT_MAX_SESSIONS = 100
DEFAULT_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_AUTOSAVE_EVERY = 3
DEFAULT_SIMILARITY_THRESHOLD = 0.3


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass
class Settings:
    db_path: str = _DEFAULT_DB_PATH
    collection_prefix: str = "convo"
    max_sessions: int = DEFAULT_MAX_SESSIONS
    inactivity_timeout_ms: int = DEFAULT_TIMEOUT_MS
    autosave_every: int = DEFAULT_AUTOSAVE_EVERY
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    fallback_path: str = _DEFAULT_FALLBACK_PATH

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``CONVO_MEMORY_*`` variables, defaulting the rest."""
        return cls(
            db_path=os.environ.get("CONVO_MEMORY_DB_PATH", _DEFAULT_DB_PATH),
            collection_prefix=os.environ.get("CONVO_MEMORY_COLLECTION", "convo"),
            max_sessions=_env_int("CONVO_MEMORY_MAX_SESSIONS", DEFAULT_MAX_SESSIONS),
            inactivity_timeout_ms=_env_int("CONVO_MEMORY_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
            autosave_every=_env_int("CONVO_MEMORY_AUTOSAVE_EVERY", DEFAULT_AUTOSAVE_EVERY),
            similarity_threshold=_env_float(
                "CONVO_MEMORY_THRESHOLD", DEFAULT_SIMILARITY_THRESHOLD
            ),
            fallback_path=os.environ.get("CONVO_MEMORY_FALLBACK_PATH", _DEFAULT_FALLBACK_PATH),
        )
