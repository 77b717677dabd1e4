"""
MemoryManager: high-level API for storing and retrieving conversations.

This is the main entry-point for hosts that want to persist conversation
context locally and reconstruct it later.

Usage example::

    from convo_memory import MemoryManager, SessionTracker

    with MemoryManager(db_path="./my_memory") as memory:
        tracker = SessionTracker(sink=memory.ingest)
        tracker.add_turn("user", "Should we use Redis for the cache?")
        tracker.add_turn("assistant", "Going with Redis makes sense here.")
        tracker.close()

        for hit in memory.search("redis cache"):
            print(hit["session"].title, hit["similarity"])
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import chromadb

from .codec import compress_payload, compression_ratio, decompress_from_base64, to_base64
from .config import DEFAULT_MAX_SESSIONS, DEFAULT_SIMILARITY_THRESHOLD
from .errors import (
    CorruptDataError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from .fingerprint import fingerprint, is_zero, rank
from .intelligence import analyze, concept_records
from .models import ConceptRecord, Session, generate_id, now_ms
from .store import Store
from .summary import enrich, render_markdown

logger = logging.getLogger(__name__)

FORMAT_TAG = "aime"
FORMAT_VERSION = "1.0.0"

DEFAULT_SEARCH_LIMIT = 20


class MemoryManager:
    """
    Conversation memory backed by two local ChromaDB collections.

    Responsibilities
    ----------------
    * **Ingest** – Accepts closed sessions.  A session whose id *or* origin
      key matches a stored one replaces it, inheriting the original
      ``start_time``.  Concept records are written before the session
      record so a stored session never lacks its concepts.  The collection
      is then trimmed to the ``max_sessions`` most recent by start time.
    * **Retrieve** – Fingerprint search with a similarity threshold and
      recency tie-break, substring keyword search, concept lookups.
    * **Manage** – Merge, delete, export to and import from the portable
      ``.aime`` format.

    The manager keeps an in-memory cache of sessions and a concept index
    mirroring the store; only one manager should be open per store.  When
    the store is unreachable, reads are served from the cache.

    Parameters
    ----------
    db_path:
        Filesystem path for the ChromaDB persistent store.
    collection_prefix:
        Prefix for the ``<prefix>_sessions`` and ``<prefix>_concepts``
        collections.
    max_sessions:
        Session cap; the oldest sessions by start time are evicted first.
    similarity_threshold:
        Minimum fingerprint similarity for a search hit.
    """

    def __init__(
        self,
        db_path: str = "./chroma_db",
        collection_prefix: str = "convo",
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        _client: chromadb.ClientAPI | None = None,
        _sessions_store: Store | None = None,
        _concepts_store: Store | None = None,
    ) -> None:
        client = _client
        if client is None and (_sessions_store is None or _concepts_store is None):
            client = chromadb.PersistentClient(path=db_path)
        self._sessions = _sessions_store or Store(
            collection_name=f"{collection_prefix}_sessions",
            index_fields=("origin_key", "start_time"),
            _client=client,
        )
        self._concepts = _concepts_store or Store(
            collection_name=f"{collection_prefix}_concepts",
            index_fields=("type", "session_id"),
            _client=client,
        )
        self.max_sessions = max_sessions
        self.similarity_threshold = similarity_threshold

        self._cache: dict[str, Session] = {}
        self._concept_index: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self._stats: dict[str, int] = {}
        self._opened = False

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def open(self) -> "MemoryManager":
        """Load the session cache and concept index from the store."""
        self._cache = {s.id: s for s in (Session.from_dict(r) for r in self._sessions.get_all())}
        self._concept_index = {}
        for record in self._concepts.get_all():
            self._index_concept(ConceptRecord.from_dict(record))
        self._opened = True
        self._refresh_stats()
        logger.info(
            "Opened memory with %d sessions and %d concepts",
            len(self._cache), len(self._concept_index),
        )
        return self

    def close(self) -> None:
        self._cache = {}
        self._concept_index = {}
        self._opened = False

    def __enter__(self) -> "MemoryManager":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("MemoryManager is not open; call open() first")

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest(self, session: Session, trim: bool = True) -> str:
        """
        Store a closed session, replacing any stored session with the same
        id or origin key.

        With ``trim=False`` the session cap is not enforced; the caller
        must call :meth:`_trim` once its batch of writes is complete.
        Returns the id of the stored session.
        """
        self._require_open()
        if not session.closed:
            raise ValidationError(f"Session {session.id} must be closed before ingest")
        if not session.turns:
            raise ValidationError(f"Session {session.id} has no turns")

        match = self._find_match(session)
        if match is not None and match.start_time != session.start_time:
            session.start_time = match.start_time
            enrich(session)
        elif session.summary is None or not session.fingerprint or session.compressed is None:
            enrich(session)

        stale_ids = {session.id}
        if match is not None:
            stale_ids.add(match.id)
        for stale_id in stale_ids:
            self._concepts.delete_by_index("session_id", stale_id)

        records = self._derive_concepts(session)
        for record in records:
            self._concepts.add(record.to_dict(), embedding=fingerprint(record.content))

        if self._sessions.get(session.id) is None:
            self._sessions.add(session.to_dict(), embedding=session.fingerprint)
        else:
            self._sessions.update(session.to_dict(), embedding=session.fingerprint)
        if match is not None and match.id != session.id:
            self._sessions.delete(match.id)

        for stale_id in stale_ids:
            self._cache.pop(stale_id, None)
            self._unindex_session(stale_id)
        self._cache[session.id] = session
        for record in records:
            self._index_concept(record)

        logger.info(
            "%s session %s (%d turns, %d concepts)",
            "Replaced" if match is not None else "Stored",
            session.id, len(session.turns), len(records),
        )
        if trim:
            self._trim()
        self._refresh_stats()
        return session.id

    def _find_match(self, session: Session) -> Session | None:
        if session.id in self._cache:
            return self._cache[session.id]
        if session.origin_key:
            return self.find_by_origin(session.origin_key)
        return None

    @staticmethod
    def _derive_concepts(session: Session) -> list[ConceptRecord]:
        records: list[ConceptRecord] = []
        for turn in session.turns:
            records.extend(
                concept_records(analyze(turn.content), session.id, turn.index, turn.timestamp)
            )
        return records

    def _trim(self) -> None:
        if len(self._cache) <= self.max_sessions:
            return
        ordered = sorted(self._cache.values(), key=lambda s: s.start_time, reverse=True)
        for evicted in ordered[self.max_sessions :]:
            self._remove(evicted.id)
            logger.info("Evicted session %s (started %d)", evicted.id, evicted.start_time)

    def _remove(self, session_id: str) -> None:
        self._concepts.delete_by_index("session_id", session_id)
        self._sessions.delete(session_id)
        self._cache.pop(session_id, None)
        self._unindex_session(session_id)

    # ------------------------------------------------------------------
    # Concept index
    # ------------------------------------------------------------------

    def _index_concept(self, record: ConceptRecord) -> None:
        refs = self._concept_index.setdefault(record.key, [])
        refs.append({"session_id": record.session_id, "turn_index": record.turn_index})

    def _unindex_session(self, session_id: str) -> None:
        for key in list(self._concept_index):
            refs = [r for r in self._concept_index[key] if r["session_id"] != session_id]
            if refs:
                self._concept_index[key] = refs
            else:
                del self._concept_index[key]

    def concept_index(self) -> dict[str, list[dict[str, Any]]]:
        """
        Concepts grouped by type, each with its frequency and the sessions
        referencing it.
        """
        grouped: dict[str, list[dict[str, Any]]] = {}
        for (concept_type, content), refs in self._concept_index.items():
            grouped.setdefault(concept_type, []).append(
                {
                    "content": content,
                    "frequency": len(refs),
                    "sessionRefs": list(dict.fromkeys(r["session_id"] for r in refs)),
                }
            )
        return grouped

    def sessions_for_concept(self, concept_type: str, content: str) -> list[Session]:
        self._require_open()
        refs = self._concept_index.get((concept_type, content), [])
        ids = dict.fromkeys(r["session_id"] for r in refs)
        return [self._cache[i] for i in ids if i in self._cache]

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[dict[str, Any]]:
        """
        Rank stored sessions by fingerprint similarity to *query*.

        Blank queries and queries with no qualifying terms return ``[]``.
        Each hit is ``{"session": Session, "similarity": float}``.
        """
        self._require_open()
        if not query or not query.strip():
            return []
        query_vector = fingerprint(query)
        if is_zero(query_vector):
            return []

        try:
            # Over-fetch everything; the store's cosine order is only a hint.
            hits = self._sessions.query(
                query_embedding=query_vector, n_results=self._sessions.count()
            )
            sessions = [Session.from_dict(record) for record, _ in hits]
        except StorageUnavailableError:
            logger.warning("Store unavailable, searching cached sessions")
            sessions = list(self._cache.values())

        ranked = rank(
            query_vector,
            ((s, s.fingerprint, s.last_time) for s in sessions),
            threshold=self.similarity_threshold,
            limit=limit,
        )
        return [{"session": session, "similarity": score} for session, score in ranked]

    def search_keyword(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[Session]:
        """Sessions whose title or any turn contains *query*, most recent first."""
        self._require_open()
        needle = (query or "").strip().lower()
        if not needle:
            return []
        matches = [
            s
            for s in self._all_sessions()
            if needle in (s.title or "").lower()
            or any(needle in turn.content.lower() for turn in s.turns)
        ]
        matches.sort(key=lambda s: s.last_time, reverse=True)
        return matches[:limit]

    def get_session(self, session_id: str) -> Session | None:
        self._require_open()
        try:
            record = self._sessions.get(session_id)
        except StorageUnavailableError:
            return self._cache.get(session_id)
        return Session.from_dict(record) if record else None

    def find_by_origin(self, origin_key: str) -> Session | None:
        self._require_open()
        try:
            records = self._sessions.get_by_index("origin_key", origin_key)
        except StorageUnavailableError:
            cached = [s for s in self._cache.values() if s.origin_key == origin_key]
            return cached[0] if cached else None
        return Session.from_dict(records[0]) if records else None

    def get_recent(self, limit: int = 10) -> list[Session]:
        self._require_open()
        sessions = sorted(self._all_sessions(), key=lambda s: s.start_time, reverse=True)
        return sessions[:limit]

    def get_stats(self) -> dict[str, int]:
        self._require_open()
        return dict(self._stats)

    def build_context(self, query: str, max_chars: int = 8000, recent_turns: int = 10) -> str:
        """
        Assemble a prompt preamble: the latest turns plus any concepts in
        *query* that memory already knows about.
        """
        self._require_open()
        sessions = sorted(self._cache.values(), key=lambda s: s.last_time)
        turns = [turn for s in sessions for turn in s.turns][-recent_turns:]

        context = "## Recent Conversation:\n\n"
        for turn in turns:
            context += f"**{turn.role}**: {turn.content}\n\n"

        known = [c for c in analyze(query).concepts if ("concept", c) in self._concept_index]
        if known:
            context += "\n## Relevant Context:\n\n"
            context += "".join(f"- {c}\n" for c in known)

        if len(context) > max_chars:
            context = context[:max_chars] + "\n\n[Context truncated...]"
        return context

    def _all_sessions(self) -> list[Session]:
        try:
            return [Session.from_dict(r) for r in self._sessions.get_all()]
        except StorageUnavailableError:
            logger.warning("Store unavailable, serving cached sessions")
            return list(self._cache.values())

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def delete_session(self, session_id: str) -> None:
        self._require_open()
        self._remove(session_id)
        self._refresh_stats()

    def merge_sessions(self, session_ids: list[str]) -> Session:
        """
        Combine two or more stored sessions into a new one.

        Turns are re-sorted by timestamp and re-indexed; the summary and
        compressed payload are rebuilt.  The originals are removed and
        their ids recorded in ``linked``.
        """
        self._require_open()
        ids = list(dict.fromkeys(session_ids or []))
        if len(ids) < 2:
            raise ValidationError("Need at least 2 distinct sessions to merge")

        sources = []
        for session_id in ids:
            session = self.get_session(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found")
            sources.append(session)
        sources.sort(key=lambda s: s.start_time)

        turns = sorted((t for s in sources for t in s.turns), key=lambda t: t.timestamp)
        merged = Session(
            id=generate_id(),
            title="Merged: " + " + ".join(s.title or "Untitled" for s in sources),
            turns=[replace(turn, index=i) for i, turn in enumerate(turns)],
            start_time=min(s.start_time for s in sources),
            end_time=max(s.last_time for s in sources),
            origin_url=sources[0].origin_url,
            platform_tag=sources[0].platform_tag,
            linked=ids,
        )
        enrich(merged)

        # The merged session ties with its oldest source on start time, so
        # the sources must be gone before the cap is enforced.
        self.ingest(merged, trim=False)
        for session_id in ids:
            self._remove(session_id)
        self._trim()
        self._refresh_stats()
        logger.info("Merged %d sessions into %s", len(ids), merged.id)
        return merged

    def clear(self) -> None:
        self._require_open()
        self._concepts.clear()
        self._sessions.clear()
        self._cache = {}
        self._concept_index = {}
        self._refresh_stats()

    def _refresh_stats(self) -> None:
        sessions = list(self._cache.values())
        self._stats = {
            "count": len(sessions),
            "total_bytes": len(
                json.dumps([s.to_dict() for s in sessions], ensure_ascii=False).encode("utf-8")
            ),
            "turn_count": sum(len(s.turns) for s in sessions),
            "concept_count": len(self._concept_index),
        }

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_all(self) -> dict[str, Any]:
        """Return every session in the portable ``.aime`` structure."""
        self._require_open()
        sessions = sorted(self._all_sessions(), key=lambda s: s.start_time)
        text = json.dumps([s.to_dict() for s in sessions], ensure_ascii=False)
        payload = compress_payload(text)
        sizes = compression_ratio(text, payload)
        turns = [t for s in sessions for t in s.turns]
        now = now_ms()

        blob = {
            "version": FORMAT_VERSION,
            "format": FORMAT_TAG,
            "created": datetime.now(timezone.utc).isoformat(),
            "index": {
                "messageCount": len(turns),
                "sessionCount": len(sessions),
                "conceptCount": len(self._concept_index),
                "timeRange": {
                    "start": min((s.start_time for s in sessions), default=now),
                    "end": max((s.last_time for s in sessions), default=now),
                },
                "concepts": self.concept_index(),
            },
            "data": {
                "compressed": to_base64(payload.tokens),
                "originalSize": sizes["originalSize"],
                "compressedSize": sizes["compressedSize"],
                "compressionRatio": sizes["ratio"],
            },
        }
        logger.info(
            "Exported %d sessions (%d -> %d bytes)",
            len(sessions), sizes["originalSize"], sizes["compressedSize"],
        )
        return blob

    def export_markdown(self) -> str:
        self._require_open()
        return render_markdown(sorted(self._all_sessions(), key=lambda s: s.start_time))

    def import_all(self, blob: dict[str, Any]) -> int:
        """
        Replace all stored sessions with those in *blob*.

        The blob is fully decoded and validated before anything is touched,
        and a blob holding more than ``max_sessions`` sessions is rejected
        with :class:`ValidationError`.  If a write fails part-way the
        previous sessions are restored.  Returns the number of sessions
        stored.
        """
        self._require_open()
        sessions = parse_export(blob)
        if len(sessions) > self.max_sessions:
            raise ValidationError(
                f"Export holds {len(sessions)} sessions, more than the "
                f"limit of {self.max_sessions}"
            )

        previous = list(self._cache.values())
        try:
            self._replace_all(sessions)
        except StorageUnavailableError:
            logger.warning("Import failed, restoring %d previous sessions", len(previous))
            self._replace_all(previous)
            raise
        logger.info("Imported %d sessions", len(self._cache))
        return len(self._cache)

    def _replace_all(self, sessions: list[Session]) -> None:
        self._concepts.clear()
        self._sessions.clear()
        self._cache = {}
        self._concept_index = {}
        for session in sessions:
            self.ingest(session, trim=False)
        self._refresh_stats()


def parse_export(blob: Any) -> list[Session]:
    """
    Decode and validate an ``.aime`` export.

    Unknown fields are ignored.  Any version sharing the major component of
    :data:`FORMAT_VERSION` is accepted, since minor versions only add
    fields; ``"1.4.0"`` reads with ``"1.0.0"`` but ``"2.0.0"`` does not.
    A wrong format tag, another major version, an undecodable payload or
    two sessions sharing an id or origin key raise :class:`CorruptDataError`.
    """
    if not isinstance(blob, dict):
        raise CorruptDataError("Export must be a JSON object")
    if blob.get("format", FORMAT_TAG) != FORMAT_TAG:
        raise CorruptDataError(f"Unsupported export format {blob.get('format')!r}")
    version = blob.get("version")
    if not isinstance(version, str) or version.split(".")[0] != FORMAT_VERSION.split(".")[0]:
        raise CorruptDataError(f"Unsupported export version {version!r}")

    data = blob.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("compressed"), str):
        raise CorruptDataError("Export has no compressed data")

    try:
        records = json.loads(decompress_from_base64(data["compressed"]))
    except json.JSONDecodeError as exc:
        raise CorruptDataError("Export payload is not valid JSON") from exc
    if not isinstance(records, list):
        raise CorruptDataError("Export payload must be a list of sessions")

    sessions = []
    for record in records:
        try:
            session = Session.from_dict(record)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise CorruptDataError(f"Invalid session in export: {exc}") from exc
        if not session.closed or not session.turns:
            raise CorruptDataError(f"Session {session.id} in export is not closed or empty")
        sessions.append(session)

    if len({s.id for s in sessions}) != len(sessions):
        raise CorruptDataError("Export contains duplicate session ids")
    origin_keys = [s.origin_key for s in sessions if s.origin_key]
    if len(set(origin_keys)) != len(origin_keys):
        raise CorruptDataError("Export contains sessions sharing an origin key")
    return sessions
