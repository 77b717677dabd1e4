"""
convo-memory: a local memory engine for streamed conversations.

Segments turns into sessions, extracts concepts, decisions and code,
compresses sessions with LZW and retrieves them by keyword or by hashed
bag-of-words fingerprint, all without a server or an ML model.
"""

from .codec import CompressedPayload, compress, decompress
from .errors import (
    ConvoMemoryError,
    CorruptDataError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from .fingerprint import fingerprint, similarity
from .intelligence import analyze
from .memory import MemoryManager
from .models import ConceptRecord, Session, Summary, Turn
from .store import Store
from .tracker import FallbackCache, SessionTracker

__all__ = [
    "CompressedPayload",
    "ConceptRecord",
    "ConvoMemoryError",
    "CorruptDataError",
    "FallbackCache",
    "MemoryManager",
    "NotFoundError",
    "Session",
    "SessionTracker",
    "StorageUnavailableError",
    "Store",
    "Summary",
    "Turn",
    "ValidationError",
    "analyze",
    "compress",
    "decompress",
    "fingerprint",
    "similarity",
]
