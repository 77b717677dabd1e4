"""Tests for the MCP server tools."""

from __future__ import annotations

import json

import pytest

import convo_memory.mcp_server as mcp_module
from convo_memory.errors import ValidationError
from convo_memory.tracker import SessionTracker
from conftest import build_manager


@pytest.fixture(autouse=True)
def _isolated_manager(monkeypatch):
    """
    Replace the module-level singletons with a fresh in-memory manager and
    tracker for each test so tests don't share state.
    """
    manager = build_manager().open()
    tracker = SessionTracker(sink=manager.ingest, autosave_every=0)
    monkeypatch.setattr(mcp_module, "_manager", manager)
    monkeypatch.setattr(mcp_module, "_tracker", tracker)
    yield manager
    manager.close()


def _capture(turns):
    for role, content, ts in turns:
        mcp_module.push_turn(role, content, timestamp_ms=ts)
    return mcp_module.close_session()


class TestMCPTools:
    def test_push_turn_returns_confirmation(self):
        result = mcp_module.push_turn("user", "Hello there", timestamp_ms=0)
        assert result.startswith("Added user turn 0 to session ")
        result = mcp_module.push_turn("assistant", "Welcome back!", timestamp_ms=10)
        assert result.startswith("Added assistant turn 1 ")

    def test_push_turn_rejects_bad_role(self):
        with pytest.raises(ValidationError):
            mcp_module.push_turn("robot", "beep")

    def test_close_without_session(self):
        assert mcp_module.close_session() == "No open session."

    def test_close_session_stores_it(self, _isolated_manager):
        result = _capture([("user", "Store this conversation", 0), ("assistant", "Stored.", 5)])
        assert "with 2 turns" in result
        assert _isolated_manager.get_stats()["count"] == 1

    def test_origin_switch_starts_new_session(self, _isolated_manager):
        mcp_module.push_turn("user", "first chat", 0, origin_url="https://claude.ai/chat/aaa-1")
        mcp_module.push_turn("user", "second chat", 10, origin_url="https://claude.ai/chat/bbb-2")
        mcp_module.close_session()
        keys = {s.origin_key for s in _isolated_manager.get_recent()}
        assert keys == {"aaa-1", "bbb-2"}

    def test_search_sessions_empty(self):
        assert mcp_module.search_sessions("anything") == "No sessions found."

    def test_search_sessions_returns_json(self):
        _capture([
            ("user", "How should we configure Redis caching for user sessions?", 0),
            ("assistant", "Going with Redis makes sense because Redis handles session caching well.", 5),
        ])
        data = json.loads(mcp_module.search_sessions("redis caching"))
        assert len(data) == 1
        assert "similarity" in data[0]
        assert "redis" in data[0]["topics"]

    def test_get_session_formats(self):
        session_id = _capture([("user", "Explain LZW compression", 0)]).split()[2]
        assert mcp_module.get_session(session_id).startswith(
            "Here is the context from a previous conversation"
        )
        assert mcp_module.get_session(session_id, format="narrative") == (
            "Human: Explain LZW compression"
        )
        assert mcp_module.get_session(session_id, format="markup").startswith("<conversation>")
        assert json.loads(mcp_module.get_session(session_id, format="json"))["id"] == session_id

    def test_get_session_missing(self):
        assert mcp_module.get_session("nope") == "Session nope not found."

    def test_recent_sessions(self):
        assert mcp_module.recent_sessions() == "No sessions stored."
        _capture([("user", "Something to list", 0)])
        data = json.loads(mcp_module.recent_sessions())
        assert data[0]["title"] == "Something to list"

    def test_memory_stats(self):
        _capture([("user", "Count this one", 0)])
        stats = json.loads(mcp_module.memory_stats())
        assert stats["count"] == 1
        assert stats["turn_count"] == 1

    def test_merge_sessions(self, _isolated_manager):
        first = _capture([("user", "alpha topic", 0)]).split()[2]
        second = _capture([("user", "beta topic", 10)]).split()[2]
        result = mcp_module.merge_sessions([first, second])
        assert result.startswith("Merged 2 sessions into ")
        (merged,) = _isolated_manager.get_recent()
        assert merged.linked == [first, second]

    def test_export_memory(self):
        _capture([("user", "Export me", 0)])
        blob = json.loads(mcp_module.export_memory())
        assert blob["format"] == "aime"
        assert blob["index"]["messageCount"] == 1
