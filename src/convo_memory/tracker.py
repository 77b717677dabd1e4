"""
Session tracker: turns a stream of turns into bounded sessions.

States::

    NO_SESSION --add_turn--> OPEN --(timeout | close())--> NO_SESSION

A session is closed when the gap since the previous turn exceeds the
inactivity timeout, when the origin switches to a different chat, or when
``close()`` is called.  Closing enriches the session and hands it to the
sink (normally :meth:`MemoryManager.ingest`).  Every ``autosave_every``
turns a closed snapshot of the open session is handed off as well, so at
most that many turns are ever at risk.

Hand-offs that fail with :class:`StorageUnavailableError` are queued and
retried before the next turn is processed; a session that keeps failing is
written to a :class:`FallbackCache` instead of being dropped.  Hosts call
``shutdown()`` before exiting so that nothing is left only in memory.

The tracker is not safe for concurrent ``add_turn`` calls: the host must
serialise calls per tracker instance.
"""

from __future__ import annotations

import copy
import enum
import json
import logging
from pathlib import Path
from typing import Any, Callable

from .config import DEFAULT_AUTOSAVE_EVERY, DEFAULT_TIMEOUT_MS
from .errors import StorageUnavailableError
from .models import Session, detect_platform, extract_chat_id, now_ms, validate_turn
from .summary import enrich

logger = logging.getLogger(__name__)

Sink = Callable[[Session], Any]

#: Sessions kept by the fallback cache; older entries are discarded first.
FALLBACK_CAPACITY: int = 10


class TrackerState(enum.Enum):
    NO_SESSION = "no_session"
    OPEN = "open"


class CloseReason(enum.Enum):
    EXPLICIT = "explicit"
    TIMED_OUT = "timed_out"
    ORIGIN_CHANGED = "origin_changed"


# ---------------------------------------------------------------------------
# Fallback cache
# ---------------------------------------------------------------------------


class FallbackCache:
    """Small JSON file holding the most recent sessions that could not be stored."""

    def __init__(self, path: str, capacity: int = FALLBACK_CAPACITY) -> None:
        self.path = Path(path)
        self.capacity = capacity

    def entries(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as exc:
            logger.warning("Fallback cache %s is unreadable, treating it as empty: %s", self.path, exc)
            return []
        if not isinstance(data, list):
            logger.warning("Fallback cache %s does not hold a list, treating it as empty", self.path)
            return []
        return [entry for entry in data if isinstance(entry, dict)]

    def put(self, session: Session) -> None:
        entries = [e for e in self.entries() if e.get("id") != session.id]
        entries.append(session.to_dict())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(entries[-self.capacity :], f, ensure_ascii=False)

    def drain(self, sink: Sink) -> int:
        """
        Re-deliver cached sessions to *sink*, keeping those that fail again.

        Returns the number delivered.
        """
        delivered = 0
        remaining = []
        for entry in self.entries():
            try:
                sink(Session.from_dict(entry))
                delivered += 1
            except StorageUnavailableError:
                remaining.append(entry)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(remaining, f, ensure_ascii=False)
        return delivered


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class SessionTracker:
    """
    Segment a turn stream into sessions and persist them through *sink*.

    Parameters
    ----------
    sink:
        Callable receiving each closed (or snapshotted) session.
    inactivity_timeout_ms:
        A gap strictly longer than this between turns starts a new session.
    autosave_every:
        Hand off a snapshot of the open session every N turns (0 disables).
    max_retries:
        Failed hand-offs retried this many times before the fallback cache
        takes the session.
    fallback:
        Where sessions go once retries are exhausted.  Without one, the
        session stays queued in memory and an error is logged.
    clock:
        Millisecond clock used when a turn arrives without a timestamp.
    """

    def __init__(
        self,
        sink: Sink,
        inactivity_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        autosave_every: int = DEFAULT_AUTOSAVE_EVERY,
        max_retries: int = 3,
        fallback: FallbackCache | None = None,
        origin_url: str = "",
        platform_tag: str | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.sink = sink
        self.inactivity_timeout_ms = inactivity_timeout_ms
        self.autosave_every = autosave_every
        self.max_retries = max_retries
        self.fallback = fallback
        self.origin_url = origin_url
        self.platform_tag = platform_tag
        self.clock = clock

        self.current: Session | None = None
        self.last_turn_time: int | None = None
        # session id -> (latest snapshot, failed attempts)
        self._pending: dict[str, tuple[Session, int]] = {}
        # ids written to the fallback cache and not stored since
        self._diverted: dict[str, None] = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        return TrackerState.OPEN if self.current is not None else TrackerState.NO_SESSION

    @property
    def pending(self) -> list[Session]:
        """Sessions whose hand-off failed and is awaiting retry."""
        return [session for session, _ in self._pending.values()]

    @property
    def unsaved(self) -> list[str]:
        """Ids of sessions that have not reached the sink: diverted or still queued."""
        return list(dict.fromkeys([*self._diverted, *self._pending]))

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    def add_turn(self, role: str, content: str, timestamp: int | None = None) -> Session:
        """
        Append a turn, opening or rotating the session as needed.

        Returns the session the turn was appended to.  Raises
        :class:`~convo_memory.errors.ValidationError` for a malformed turn
        before any state changes.
        """
        ts = self.clock() if timestamp is None else timestamp
        validate_turn(role, content, ts)

        self._retry_pending()

        if (
            self.current is not None
            and self.last_turn_time is not None
            and ts - self.last_turn_time > self.inactivity_timeout_ms
        ):
            logger.debug("Inactivity gap of %d ms, rotating session", ts - self.last_turn_time)
            self.close(CloseReason.TIMED_OUT)

        if self.current is None:
            self._open(ts)

        session = self.current
        session.append(role, content, ts)
        self.last_turn_time = ts

        if self.autosave_every and len(session.turns) % self.autosave_every == 0:
            self._hand_off(self._snapshot(session))
        return session

    push_turn = add_turn

    def set_origin(self, url: str) -> None:
        """
        Record navigation to *url*; switching to a different chat closes
        the open session.
        """
        old_id = extract_chat_id(self.origin_url)
        new_id = extract_chat_id(url)
        switched = new_id is not None and old_id != new_id
        if switched and self.current is not None:
            self.close(CloseReason.ORIGIN_CHANGED)
        self.origin_url = url

    def close(self, reason: CloseReason = CloseReason.EXPLICIT) -> Session | None:
        """
        Close the open session and hand it off.

        Returns the closed session, or ``None`` when nothing was open or
        the open session had no turns (such sessions are discarded).
        """
        self._retry_pending()
        session, self.current = self.current, None
        self.last_turn_time = None
        if session is None or not session.turns:
            return None

        session.end_time = session.turns[-1].timestamp
        enrich(session)
        logger.info(
            "Closed session %s (%s, %d turns)", session.id, reason.value, len(session.turns)
        )
        self._hand_off(session)
        return session

    def flush(self) -> int:
        """Retry queued hand-offs now.  Returns how many are still pending."""
        self._retry_pending()
        return len(self._pending)

    def shutdown(self) -> list[str]:
        """
        Close the open session and settle every queued hand-off.

        Sessions the sink still rejects are written to the fallback cache;
        without one they stay queued.  Returns the ids of sessions that did
        not reach the sink during this tracker's lifetime, so an empty list
        means nothing was lost.
        """
        self.close()
        for session in self.pending:
            if self.fallback is None:
                logger.error(
                    "Session %s could not be stored and no fallback cache is configured",
                    session.id,
                )
                continue
            logger.error(
                "Session %s could not be stored before shutdown, writing to fallback cache %s",
                session.id, self.fallback.path,
            )
            self._divert(session)
        return self.unsaved

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _open(self, ts: int) -> None:
        self.current = Session.open(
            start_time=ts,
            origin_url=self.origin_url,
            platform_tag=self.platform_tag or detect_platform(self.origin_url),
        )
        logger.info("Opened session %s", self.current.id)

    @staticmethod
    def _snapshot(session: Session) -> Session:
        snapshot = copy.deepcopy(session)
        snapshot.end_time = session.last_time
        return enrich(snapshot)

    def _hand_off(self, session: Session) -> None:
        attempts = self._pending.get(session.id, (session, 0))[1]
        try:
            self.sink(session)
        except StorageUnavailableError as exc:
            attempts += 1
            if attempts >= self.max_retries and self.fallback is not None:
                logger.error(
                    "Session %s could not be stored after %d attempts, "
                    "writing to fallback cache %s: %s",
                    session.id, attempts, self.fallback.path, exc,
                )
                self._divert(session)
                return
            if attempts >= self.max_retries:
                logger.error(
                    "Session %s could not be stored after %d attempts and no "
                    "fallback cache is configured; keeping it queued",
                    session.id, attempts,
                )
            else:
                logger.warning(
                    "Storing session %s failed (attempt %d), will retry: %s",
                    session.id, attempts, exc,
                )
            self._pending[session.id] = (session, attempts)
            return
        self._pending.pop(session.id, None)
        self._diverted.pop(session.id, None)

    def _divert(self, session: Session) -> None:
        self.fallback.put(session)
        self._pending.pop(session.id, None)
        self._diverted[session.id] = None

    def _retry_pending(self) -> None:
        for session, _ in list(self._pending.values()):
            self._hand_off(session)
