"""
Error taxonomy shared by every layer of convo-memory.

Extraction and fingerprinting never raise; only the codec, the store
boundary and the façade operations that require existing records do.
"""

from __future__ import annotations


class ConvoMemoryError(Exception):
    """Base class for all convo-memory errors."""


class ValidationError(ConvoMemoryError, ValueError):
    """A turn, session or request is malformed and was rejected unstored."""


class CorruptDataError(ConvoMemoryError, ValueError):
    """A token stream or export blob does not decode to valid data."""


class StorageUnavailableError(ConvoMemoryError, RuntimeError):
    """The persistent substrate could not be reached."""


class NotFoundError(ConvoMemoryError, LookupError):
    """An operation required a record that does not exist."""
