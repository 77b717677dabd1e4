"""Tests for the data model and turn validation."""

from __future__ import annotations

import pytest

from convo_memory.errors import ValidationError
from convo_memory.models import (
    MAX_CONTENT_BYTES,
    ConceptRecord,
    Session,
    Turn,
    detect_platform,
    extract_chat_id,
    generate_id,
    make_title,
)
from conftest import build_session


class TestTurnValidation:
    def test_valid_turn(self):
        turn = Turn.create("user", "hello", 10)
        assert turn.role == "user"
        assert turn.index == 0

    @pytest.mark.parametrize("role", ["bot", "", None, "USER"])
    def test_unknown_role(self, role):
        with pytest.raises(ValidationError):
            Turn.create(role, "hello", 10)

    @pytest.mark.parametrize("content", ["", "   \n", None, 5])
    def test_empty_content(self, content):
        with pytest.raises(ValidationError):
            Turn.create("user", content, 10)

    def test_oversized_content(self):
        with pytest.raises(ValidationError):
            Turn.create("user", "x" * (MAX_CONTENT_BYTES + 1), 10)

    @pytest.mark.parametrize("timestamp", [-1, 1.5, "10", None, True])
    def test_bad_timestamp(self, timestamp):
        with pytest.raises(ValidationError):
            Turn.create("user", "hello", timestamp)

    def test_turns_are_immutable(self):
        turn = Turn.create("user", "hello", 10)
        with pytest.raises(AttributeError):
            turn.content = "changed"  # type: ignore[misc]


class TestTitle:
    def test_short_content_is_kept(self):
        assert make_title("  How   do I\nstart?  ") == "How do I start?"

    def test_long_content_is_truncated_to_sixty(self):
        title = make_title("word " * 40)
        assert len(title) == 60
        assert title.endswith("...")


class TestOrigin:
    def test_chatgpt_url(self):
        assert extract_chat_id("https://chat.openai.com/c/abc-123-def") == "abc-123-def"

    def test_claude_url(self):
        assert extract_chat_id("https://claude.ai/chat/9f8e-77") == "9f8e-77"

    def test_url_without_chat_id(self):
        assert extract_chat_id("https://example.com/") is None
        assert extract_chat_id("") is None

    def test_platform(self):
        assert detect_platform("https://chat.openai.com/c/1") == "chatgpt"
        assert detect_platform("https://claude.ai/chat/1") == "claude"
        assert detect_platform("https://example.com") == "unknown"


class TestSession:
    def test_title_comes_from_first_user_turn(self):
        session = Session(id="s", start_time=0)
        session.append("system", "You are helpful.", 0)
        session.append("user", "Explain LZW please", 1)
        session.append("user", "And base64", 2)
        assert session.title == "Explain LZW please"

    def test_turns_are_indexed_in_arrival_order(self):
        session = Session(id="s", start_time=0)
        session.append("user", "one", 0)
        session.append("assistant", "two", 5)
        assert [t.index for t in session.turns] == [0, 1]

    def test_closed_session_rejects_turns(self):
        session = build_session([("user", "hello there", 0)])
        assert session.closed
        with pytest.raises(ValidationError):
            session.append("user", "more", 1)

    def test_open_derives_origin(self):
        session = Session.open(0, origin_url="https://claude.ai/chat/abc-1")
        assert session.origin_key == "abc-1"
        assert session.platform_tag == "claude"

    def test_dict_round_trip(self):
        session = build_session(
            [("user", "Use Redis?", 100), ("assistant", "Going with Redis.", 200)],
            origin_key="chat-1",
        )
        session.linked = ["a", "b"]
        restored = Session.from_dict(session.to_dict())
        assert restored == session

    def test_from_dict_requires_id(self):
        with pytest.raises(ValidationError):
            Session.from_dict({"start_time": 0})


class TestConceptRecord:
    def test_round_trip_and_key(self):
        record = ConceptRecord("concept", "Redis", generate_id(), 1, 100)
        assert ConceptRecord.from_dict(record.to_dict()) == record
        assert record.key == ("concept", "Redis")
