"""
Shared pytest fixtures for convo-memory tests.

Uses ChromaDB in ephemeral (in-memory) mode; the fingerprint embedding
function is pure Python, so no model is ever downloaded.
"""

from __future__ import annotations

import uuid

import chromadb
import pytest

from convo_memory.memory import MemoryManager
from convo_memory.models import Session, generate_id
from convo_memory.store import Store
from convo_memory.summary import enrich

# A single shared EphemeralClient instance for the test session.
# Each fixture call creates uniquely named collections so tests are isolated.
_EPHEMERAL_CLIENT = chromadb.EphemeralClient()


def unique_name(prefix: str = "test") -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def build_session(
    turns: list[tuple[str, str, int]],
    origin_key: str | None = None,
    session_id: str | None = None,
) -> Session:
    """Closed, enriched session from ``(role, content, timestamp)`` triples."""
    session = Session(
        id=session_id or generate_id(),
        start_time=turns[0][2],
        origin_key=origin_key,
    )
    for role, content, ts in turns:
        session.append(role, content, ts)
    session.end_time = session.turns[-1].timestamp
    return enrich(session)


def build_manager(**kwargs) -> MemoryManager:
    prefix = unique_name("mem")
    return MemoryManager(
        _sessions_store=Store(
            collection_name=f"{prefix}_sessions",
            index_fields=("origin_key", "start_time"),
            _client=_EPHEMERAL_CLIENT,
        ),
        _concepts_store=Store(
            collection_name=f"{prefix}_concepts",
            index_fields=("type", "session_id"),
            _client=_EPHEMERAL_CLIENT,
        ),
        **kwargs,
    )


@pytest.fixture()
def ephemeral_store() -> Store:
    """In-memory Store indexed on ``origin_key`` and ``type``."""
    return Store(
        _client=_EPHEMERAL_CLIENT,
        collection_name=unique_name(),
        index_fields=("origin_key", "type"),
    )


@pytest.fixture()
def memory_manager() -> MemoryManager:
    """Open MemoryManager wired to ephemeral in-memory stores."""
    manager = build_manager().open()
    yield manager
    manager.close()
