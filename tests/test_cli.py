"""Tests for the CLI entry point."""

from __future__ import annotations

import json

import pytest

import convo_memory.cli as cli_module
from convo_memory.cli import main
from convo_memory.errors import StorageUnavailableError
from convo_memory.memory import MemoryManager
from conftest import build_manager

TRANSCRIPT = [
    {"role": "user", "content": "How should we configure Redis caching for user sessions?", "timestamp": 1_000},
    {"role": "assistant", "content": "Going with Redis makes sense because Redis handles session caching well.", "timestamp": 2_000},
    {"role": "user", "content": "What is a good banana bread recipe?", "timestamp": 1_000_000},
    {"role": "assistant", "content": "Mash ripe bananas, add flour, sugar, butter and walnuts.", "timestamp": 1_001_000},
]


@pytest.fixture()
def patched_manager(monkeypatch, tmp_path) -> MemoryManager:
    """
    Make the CLI use an ephemeral in-memory manager instead of touching
    the filesystem.
    """
    manager = build_manager()
    monkeypatch.setattr(cli_module, "_build_manager", lambda settings: manager)
    monkeypatch.setenv("CONVO_MEMORY_FALLBACK_PATH", str(tmp_path / "fallback.json"))
    monkeypatch.setenv("CONVO_MEMORY_AUTOSAVE_EVERY", "0")
    return manager


@pytest.fixture()
def transcript_file(tmp_path):
    path = tmp_path / "transcript.json"
    path.write_text(json.dumps(TRANSCRIPT), encoding="utf-8")
    return path


def _session_ids(capsys) -> list[str]:
    main(["list", "--json"])
    return [s["id"] for s in json.loads(capsys.readouterr().out)]


class TestCLI:
    def test_list_empty(self, patched_manager, capsys):
        rc = main(["list"])
        assert rc == 0
        assert "No sessions stored." in capsys.readouterr().out

    def test_capture_splits_on_inactivity(self, patched_manager, transcript_file, capsys):
        rc = main(["capture", str(transcript_file)])
        assert rc == 0
        out = capsys.readouterr().out
        assert out.startswith("Captured 4 turn(s) into 2 session(s):")

        main(["list", "--json"])
        sessions = json.loads(capsys.readouterr().out)
        assert [s["turns"] for s in sessions] == [2, 2]
        assert sessions[0]["title"] == "What is a good banana bread recipe?"

    def test_capture_with_origin(self, patched_manager, transcript_file, capsys):
        main(["capture", str(transcript_file), "--origin", "https://claude.ai/chat/abc-1"])
        capsys.readouterr()
        main(["list", "--json"])
        sessions = json.loads(capsys.readouterr().out)
        # Both sessions share the chat, so the later one replaces the first.
        assert len(sessions) == 1
        assert sessions[0]["origin_key"] == "abc-1"
        assert sessions[0]["start_time"] == 1_000

    def test_capture_rejects_bad_turn(self, patched_manager, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps([{"role": "robot", "content": "beep", "timestamp": 0}]))
        rc = main(["capture", str(path)])
        assert rc == 1
        assert "Error:" in capsys.readouterr().err

    def test_capture_rejects_non_object_entry(self, patched_manager, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps(["just a string"]))
        rc = main(["capture", str(path)])
        assert rc == 1
        assert "Transcript entry 0 is not an object" in capsys.readouterr().err

    def test_capture_reports_unstored_sessions(
        self, patched_manager, transcript_file, tmp_path, monkeypatch, capsys
    ):
        def unavailable(session, trim=True):
            raise StorageUnavailableError("store down")

        monkeypatch.setattr(patched_manager, "ingest", unavailable)
        rc = main(["capture", str(transcript_file)])
        assert rc == 1
        captured = capsys.readouterr()
        assert "into 0 session(s)" in captured.out
        assert "Error: 2 session(s) could not be stored" in captured.err

        fallback = json.loads((tmp_path / "fallback.json").read_text())
        assert [len(entry["turns"]) for entry in fallback] == [2, 2]

    def test_search(self, patched_manager, transcript_file, capsys):
        main(["capture", str(transcript_file)])
        capsys.readouterr()

        rc = main(["search", "redis caching", "--json"])
        assert rc == 0
        hits = json.loads(capsys.readouterr().out)
        assert len(hits) == 1
        assert hits[0]["title"].startswith("How should we configure Redis")
        assert hits[0]["similarity"] > 0.3

    def test_search_no_results(self, patched_manager, capsys):
        rc = main(["search", "quantum physics notes"])
        assert rc == 0
        assert "No sessions found." in capsys.readouterr().out

    def test_keyword_search(self, patched_manager, transcript_file, capsys):
        main(["capture", str(transcript_file)])
        capsys.readouterr()
        main(["search", "walnuts", "--keyword"])
        out = capsys.readouterr().out
        assert "banana bread" in out
        assert "similarity" not in out

    def test_show_formats(self, patched_manager, transcript_file, capsys):
        main(["capture", str(transcript_file)])
        capsys.readouterr()
        session_id = _session_ids(capsys)[-1]

        main(["show", session_id])
        assert capsys.readouterr().out.startswith("Human: How should we configure Redis")

        main(["show", session_id, "--format", "markup"])
        assert capsys.readouterr().out.startswith("<conversation>")

        main(["show", session_id, "--format", "prompt"])
        assert "Total messages: 2" in capsys.readouterr().out

        main(["show", session_id, "--format", "json"])
        assert json.loads(capsys.readouterr().out)["id"] == session_id

    def test_show_missing(self, patched_manager, capsys):
        rc = main(["show", "nope"])
        assert rc == 1
        assert "Session nope not found." in capsys.readouterr().err

    def test_stats(self, patched_manager, transcript_file, capsys):
        main(["capture", str(transcript_file)])
        capsys.readouterr()
        rc = main(["stats"])
        assert rc == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["count"] == 2
        assert stats["turn_count"] == 4

    def test_merge(self, patched_manager, transcript_file, capsys):
        main(["capture", str(transcript_file)])
        capsys.readouterr()
        ids = _session_ids(capsys)

        rc = main(["merge", *ids])
        assert rc == 0
        assert capsys.readouterr().out.startswith("Merged 2 sessions into ")

        main(["list", "--json"])
        (merged,) = json.loads(capsys.readouterr().out)
        assert merged["turns"] == 4
        assert sorted(merged["linked"]) == sorted(ids)

    def test_merge_single_id_fails(self, patched_manager, capsys):
        rc = main(["merge", "only-one"])
        assert rc == 1
        assert "Error:" in capsys.readouterr().err

    def test_delete(self, patched_manager, transcript_file, capsys):
        main(["capture", str(transcript_file)])
        capsys.readouterr()
        session_id = _session_ids(capsys)[0]

        rc = main(["delete", session_id])
        assert rc == 0
        assert f"Deleted session {session_id}." in capsys.readouterr().out
        assert session_id not in _session_ids(capsys)

    def test_export_and_import(self, patched_manager, transcript_file, tmp_path, capsys):
        main(["capture", str(transcript_file)])
        capsys.readouterr()
        before = sorted(_session_ids(capsys))
        out_path = tmp_path / "memory.aime"

        rc = main(["export", str(out_path)])
        assert rc == 0
        assert "Exported 2 session(s)" in capsys.readouterr().out
        assert json.loads(out_path.read_text())["format"] == "aime"

        rc = main(["import", str(out_path)])
        assert rc == 0
        assert "Imported 2 session(s)." in capsys.readouterr().out
        assert sorted(_session_ids(capsys)) == before

    def test_export_markdown(self, patched_manager, transcript_file, tmp_path, capsys):
        main(["capture", str(transcript_file)])
        capsys.readouterr()
        out_path = tmp_path / "memory.md"
        main(["export", str(out_path), "--markdown"])
        assert out_path.read_text().startswith("# Conversation Export")

    def test_import_corrupt_file(self, patched_manager, tmp_path, capsys):
        path = tmp_path / "broken.aime"
        path.write_text(json.dumps({"format": "aime", "version": "9.0.0", "data": {}}))
        rc = main(["import", str(path)])
        assert rc == 1
        assert "Error:" in capsys.readouterr().err
