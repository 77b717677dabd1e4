"""Tests for the concept extractor."""

from __future__ import annotations

import pytest

from convo_memory.intelligence import (
    Analysis,
    analyze,
    concept_records,
    detect_decisions,
    extract_code,
    extract_concepts,
    extract_context,
)


# ---------------------------------------------------------------------------
# Concepts
# ---------------------------------------------------------------------------


class TestExtractConcepts:
    def test_capitalized_terms(self):
        concepts = extract_concepts("We deployed the Gateway behind Nginx yesterday.")
        assert "Gateway" in concepts
        assert "Nginx" in concepts

    def test_common_words_are_skipped(self):
        concepts = extract_concepts("The cache works. This is fine. When it fails, retry.")
        assert "The" not in concepts
        assert "This" not in concepts
        assert "When" not in concepts

    def test_known_technologies_are_case_insensitive(self):
        concepts = extract_concepts("we store sessions in redis and serve them with fastapi")
        assert "Redis" in concepts
        assert "FastAPI" in concepts

    def test_technology_names_need_word_boundaries(self):
        concepts = extract_concepts("the javascript bundle and the django app")
        assert "JavaScript" in concepts
        assert "Django" in concepts
        assert "Java" not in concepts
        assert "Go" not in concepts

    def test_quoted_terms(self):
        concepts = extract_concepts('Name the flag "dry run" and keep \'ok\' short.')
        assert "dry run" in concepts
        assert "ok" not in concepts

    def test_apostrophes_are_not_quotes(self):
        concepts = extract_concepts("let's ship it, it's ready")
        assert not any(" " in c for c in concepts)

    def test_technical_patterns(self):
        concepts = extract_concepts("Call the userAPI with a POST, then await the result.")
        assert "userAPI" in concepts
        assert "POST" in concepts
        assert "await" in concepts

    def test_deduplicated_in_first_seen_order(self):
        concepts = extract_concepts("Kafka feeds Spark. Kafka again, Spark again.")
        assert concepts.count("Kafka") == 1
        assert concepts.index("Kafka") < concepts.index("Spark")


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class TestDetectDecisions:
    @pytest.mark.parametrize(
        "text",
        [
            "We decided to use PostgreSQL for storage.",
            "I'm going with Svelte.",
            "Finally we switched to Poetry.",
            "Let's use Redis here.",
            "The team will use gRPC.",
        ],
    )
    def test_patterns_detect_a_decision(self, text):
        assert detect_decisions(text)

    def test_instead_of_captures_alternative(self):
        decisions = detect_decisions("We picked SQLite instead of MySQL.")
        alt = [d for d in decisions if d.alternative is not None]
        assert alt
        assert alt[0].alternative == "MySQL"
        assert "SQLite" in alt[0].choice

    def test_choice_is_the_captured_phrase(self):
        (decision,) = detect_decisions("We decided to use Kafka.")
        assert decision.choice == "Kafka"
        assert decision.content == "decided to use Kafka"
        assert decision.alternative is None

    def test_no_decision_in_plain_text(self):
        assert detect_decisions("The weather is nice today.") == []


# ---------------------------------------------------------------------------
# Code
# ---------------------------------------------------------------------------


class TestExtractCode:
    def test_fenced_block_with_language(self):
        blocks, _ = extract_code("Try this:\n```python\nprint('hi')\n```\nDone.")
        assert len(blocks) == 1
        assert blocks[0].language == "python"
        assert blocks[0].content == "print('hi')"
        assert blocks[0].size == len("print('hi')\n")

    def test_fenced_block_without_language(self):
        blocks, _ = extract_code("```\nls -la\n```")
        assert blocks[0].language == "unknown"

    def test_inline_spans(self):
        _, inline = extract_code("Run `make test` then `make lint`.")
        assert inline == ["make test", "make lint"]

    def test_long_inline_spans_are_ignored(self):
        _, inline = extract_code("`" + "x" * 150 + "`")
        assert inline == []

    def test_inline_scan_skips_fenced_blocks(self):
        _, inline = extract_code("```js\nconst a = `tpl`;\n```")
        assert inline == []


# ---------------------------------------------------------------------------
# analyze
# ---------------------------------------------------------------------------


class TestAnalyze:
    FIXTURE = (
        "We decided to use FastAPI instead of Flask.\n"
        "```python\napp = FastAPI()\n```\n"
        "Remember to set `PYTHONPATH`."
    )

    def test_finds_every_category(self):
        result = analyze(self.FIXTURE)
        assert "FastAPI" in result.concepts
        assert result.decisions
        assert result.code[0].language == "python"
        assert result.inline_code == ["PYTHONPATH"]
        assert result.has_code
        assert result.inline_code_count == 1

    def test_word_count(self):
        assert analyze("one two  three\nfour").word_count == 4

    def test_idempotent(self):
        assert analyze(self.FIXTURE) == analyze(self.FIXTURE)

    @pytest.mark.parametrize("bad", ["", "   ", None, 42, ["list"]])
    def test_malformed_input_gives_empty_analysis(self, bad):
        assert analyze(bad) == Analysis()


class TestExtractContext:
    def test_window_and_ellipses(self):
        text = "a" * 100 + "Redis" + "b" * 100
        context = extract_context(text, "redis", window=10)
        assert context == "..." + "a" * 10 + "Redis" + "b" * 10 + "..."

    def test_missing_term(self):
        assert extract_context("nothing here", "Kafka") == ""


class TestConceptRecords:
    def test_flattens_all_types(self):
        records = concept_records(analyze(TestAnalyze.FIXTURE), "s1", 2, 1000)
        types = {r.type for r in records}
        assert types == {"concept", "decision", "code"}
        assert all(r.session_id == "s1" and r.turn_index == 2 for r in records)
        assert any(r.type == "code" and r.content == "python" for r in records)
