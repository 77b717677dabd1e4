"""
Concept extraction: the heuristic signal layer.

``analyze`` scans one turn of text and pulls out:
  - Concepts: capitalized terms, known technology names, quoted phrases
  - Decisions: "going with X", "X instead of Y" and similar phrasings
  - Code: fenced blocks with their language tag, plus short inline spans

The output is a signal, not ground truth.  The function is pure: the same
text always produces the same :class:`Analysis`, and malformed input
produces an empty one rather than an exception.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .models import ConceptRecord

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

KNOWN_TECHNOLOGIES: tuple[str, ...] = (
    "React", "Vue", "Angular", "Svelte", "Next.js", "Nuxt", "Express",
    "Django", "Flask", "FastAPI", "Spring", "Laravel", "Rails",
    "TensorFlow", "PyTorch", "Keras", "Scikit-learn",
    "Docker", "Kubernetes", "AWS", "Azure", "GCP",
    "MongoDB", "PostgreSQL", "MySQL", "Redis", "Elasticsearch",
    "GraphQL", "REST", "gRPC", "WebSocket",
    "TypeScript", "JavaScript", "Python", "Java", "Go", "Rust", "C++", "C#",
)

COMMON_WORDS: frozenset[str] = frozenset({
    "The", "This", "That", "These", "Those", "Here", "There",
    "When", "Where", "What", "Which", "Who", "How", "Why",
    "Can", "Could", "Would", "Should", "May", "Might",
    "Yes", "No", "Not", "But", "And", "Or", "If", "Then",
    "Some", "Any", "All", "Each", "Every", "Many", "Much",
    "More", "Most", "Less", "Few", "Several", "Other",
})

#: Inline code spans at or above this length are ignored.
MAX_INLINE_CODE: int = 100

#: Characters of surrounding text kept by :func:`extract_context`.
CONTEXT_WINDOW: int = 50

_CAPITALIZED = re.compile(r"\b[A-Z][a-zA-Z0-9]+(?:[A-Z][a-z0-9]*)*\b")
_QUOTED = re.compile(r"\"([^\"\n]+)\"|(?<!\w)'([^'\n]+)'(?!\w)")
_TECHNICAL = (
    re.compile(r"\b[a-z]+(?:DB|SQL|API|SDK|CLI|UI|UX|IDE|OS)\b", re.IGNORECASE),
    re.compile(r"\b(?:async|await|promise|callback|function|class|interface)\b", re.IGNORECASE),
    re.compile(r"\b(?:GET|POST|PUT|DELETE|PATCH)\b"),
)
_TECHNOLOGY_PATTERNS = tuple(
    (name, re.compile(rf"(?<![\w.]){re.escape(name)}(?![\w+#])", re.IGNORECASE))
    for name in KNOWN_TECHNOLOGIES
)

# Order matters: matches are reported pattern by pattern.
DECISION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"let'?s use ([^.,\n]+)", re.IGNORECASE),
    re.compile(r"decided to use ([^.,\n]+)", re.IGNORECASE),
    re.compile(r"going with ([^.,\n]+)", re.IGNORECASE),
    re.compile(r"chose ([^.,\n]+)", re.IGNORECASE),
    re.compile(r"selected ([^.,\n]+)", re.IGNORECASE),
    re.compile(r"([^.,\n]+) instead of ([^.,\n]+)", re.IGNORECASE),
    re.compile(r"switched to ([^.,\n]+)", re.IGNORECASE),
    re.compile(r"will use ([^.,\n]+)", re.IGNORECASE),
    re.compile(r"using ([^.,\n]+) for", re.IGNORECASE),
)

_FENCED = re.compile(r"```(\w+)?\n([\s\S]*?)```")
_FENCED_ANY = re.compile(r"```[\s\S]*?```")
_INLINE = re.compile(r"`([^`\n]+)`")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Decision:
    content: str
    choice: str
    alternative: str | None = None


@dataclass(frozen=True)
class CodeBlock:
    language: str
    content: str
    size: int


@dataclass
class Analysis:
    concepts: list[str] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    code: list[CodeBlock] = field(default_factory=list)
    inline_code: list[str] = field(default_factory=list)
    word_count: int = 0

    @property
    def has_code(self) -> bool:
        return bool(self.code or self.inline_code)

    @property
    def inline_code_count(self) -> int:
        return len(self.inline_code)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_concepts(text: str) -> list[str]:
    """
    Return concept strings in order of first match.

    Sources, in scan order: capitalized terms outside :data:`COMMON_WORDS`,
    known technology names (case-insensitive, reported in canonical case),
    quoted substrings of three or more characters, and technical patterns.
    """
    found: dict[str, None] = {}

    for match in _CAPITALIZED.findall(text):
        if len(match) >= 2 and match not in COMMON_WORDS:
            found.setdefault(match)

    for name, pattern in _TECHNOLOGY_PATTERNS:
        if pattern.search(text):
            found.setdefault(name)

    for double, single in _QUOTED.findall(text):
        term = double or single
        if len(term) >= 3:
            found.setdefault(term)

    for pattern in _TECHNICAL:
        for match in pattern.findall(text):
            found.setdefault(match)

    return list(found)


def detect_decisions(text: str) -> list[Decision]:
    decisions: list[Decision] = []
    for pattern in DECISION_PATTERNS:
        for match in pattern.finditer(text):
            alternative = match.group(2) if pattern.groups > 1 else None
            decisions.append(
                Decision(
                    content=match.group(0).strip(),
                    choice=match.group(1).strip(),
                    alternative=alternative.strip() if alternative else None,
                )
            )
    return decisions


def extract_code(text: str) -> tuple[list[CodeBlock], list[str]]:
    """Return ``(fenced_blocks, inline_spans)``; inline spans are read outside fences."""
    blocks = [
        CodeBlock(language=lang or "unknown", content=body.strip(), size=len(body))
        for lang, body in _FENCED.findall(text)
    ]
    prose = _FENCED_ANY.sub(" ", text)
    inline = [span for span in _INLINE.findall(prose) if len(span) < MAX_INLINE_CODE]
    return blocks, inline


def analyze(text: str) -> Analysis:
    """Extract every signal from *text*.  Never raises."""
    if not isinstance(text, str) or not text.strip():
        return Analysis()

    blocks, inline = extract_code(text)
    return Analysis(
        concepts=extract_concepts(text),
        decisions=detect_decisions(text),
        code=blocks,
        inline_code=inline,
        word_count=len(text.split()),
    )


def extract_context(text: str, term: str, window: int = CONTEXT_WINDOW) -> str:
    """Return *term* with up to *window* characters of text on each side."""
    if not text or not term:
        return ""
    index = text.lower().find(term.lower())
    if index == -1:
        return ""
    start = max(0, index - window)
    end = min(len(text), index + len(term) + window)
    context = text[start:end]
    if start > 0:
        context = "..." + context
    if end < len(text):
        context += "..."
    return context


def concept_records(
    analysis: Analysis, session_id: str, turn_index: int, timestamp: int
) -> list[ConceptRecord]:
    """Flatten *analysis* into storable records; code blocks are keyed by language."""
    records = [
        ConceptRecord("concept", concept, session_id, turn_index, timestamp)
        for concept in analysis.concepts
    ]
    records.extend(
        ConceptRecord("decision", decision.content, session_id, turn_index, timestamp)
        for decision in analysis.decisions
    )
    records.extend(
        ConceptRecord("code", block.language, session_id, turn_index, timestamp)
        for block in analysis.code
    )
    return records
