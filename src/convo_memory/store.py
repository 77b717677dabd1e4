"""
Generic persistent collection backed by ChromaDB.

Each record is a JSON-serialisable dict stored as a ChromaDB document.
Fields named in ``index_fields`` are mirrored into the document metadata so
they can be looked up with ``get_by_index``.  Every record also carries an
embedding; callers pass one explicitly, otherwise the collection's
embedding function derives it from the serialised record.
"""

from __future__ import annotations

import functools
import json
import logging
import time
from typing import Any, Callable, Sequence, TypeVar

import chromadb
from chromadb.errors import ChromaError

from .errors import NotFoundError, StorageUnavailableError
from .fingerprint import FingerprintEmbeddingFunction
from .models import generate_id

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_METADATA_TYPES = (str, int, float, bool)


def _guarded(method: F) -> F:
    """Translate substrate failures into :class:`StorageUnavailableError`."""

    @functools.wraps(method)
    def wrapper(self: "Store", *args: Any, **kwargs: Any) -> Any:
        try:
            return method(self, *args, **kwargs)
        except (ChromaError, OSError) as exc:
            logger.warning("Store %s: %s failed: %s", self.name, method.__name__, exc)
            raise StorageUnavailableError(
                f"{self.name}.{method.__name__} failed: {exc}"
            ) from exc

    return wrapper  # type: ignore[return-value]


class Store:
    """
    Persistent record collection with secondary-index lookup.

    Uses cosine space so that ``query`` distances are in ``[0, 2]``:
        distance = 1 - cosine_similarity
    """

    def __init__(
        self,
        path: str = "./chroma_db",
        collection_name: str = "records",
        index_fields: Sequence[str] = (),
        _client: chromadb.ClientAPI | None = None,
        _embedding_function: Any | None = None,
    ) -> None:
        self.name = collection_name
        self.index_fields = tuple(index_fields)
        try:
            self.client = _client or chromadb.PersistentClient(path=path)
            self.collection = self.client.get_or_create_collection(
                name=collection_name,
                embedding_function=_embedding_function or FingerprintEmbeddingFunction(),
                metadata={"hnsw:space": "cosine"},
            )
        except (ChromaError, OSError) as exc:
            raise StorageUnavailableError(f"Cannot open store {collection_name}: {exc}") from exc

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def _metadata(self, record: dict[str, Any]) -> dict[str, Any]:
        meta: dict[str, Any] = {"updated_at": time.time()}
        for key in self.index_fields:
            value = record.get(key)
            if isinstance(value, _METADATA_TYPES):
                meta[key] = value
        return meta

    @staticmethod
    def _decode(documents: Sequence[str | None]) -> list[dict[str, Any]]:
        return [json.loads(doc) for doc in documents if doc]

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    @_guarded
    def add(self, record: dict[str, Any], embedding: Sequence[float] | None = None) -> str:
        """Add *record*, assigning an ``id`` if it has none.  Returns the id."""
        if not record.get("id"):
            record = {**record, "id": generate_id()}
        self.collection.add(
            ids=[record["id"]],
            documents=[json.dumps(record, ensure_ascii=False)],
            metadatas=[self._metadata(record)],
            embeddings=[list(embedding)] if embedding is not None else None,
        )
        return record["id"]

    @_guarded
    def update(self, record: dict[str, Any], embedding: Sequence[float] | None = None) -> None:
        """Replace an existing record wholesale.  Raises :class:`NotFoundError` if absent."""
        record_id = record.get("id")
        if not record_id or not self.collection.get(ids=[record_id], include=[])["ids"]:
            raise NotFoundError(f"No record {record_id!r} in {self.name}")
        self.collection.update(
            ids=[record_id],
            documents=[json.dumps(record, ensure_ascii=False)],
            metadatas=[self._metadata(record)],
            embeddings=[list(embedding)] if embedding is not None else None,
        )

    @_guarded
    def delete(self, id: str) -> None:
        """Delete a record by ID; unknown IDs are ignored."""
        self.collection.delete(ids=[id])

    @_guarded
    def delete_by_index(self, field: str, value: Any) -> None:
        self._check_index(field)
        self.collection.delete(where={field: value})

    @_guarded
    def clear(self) -> None:
        ids = self.collection.get(include=[])["ids"]
        if ids:
            self.collection.delete(ids=ids)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    @_guarded
    def get(self, id: str) -> dict[str, Any] | None:
        """Fetch a single record by ID, or ``None``."""
        records = self._decode(self.collection.get(ids=[id], include=["documents"])["documents"])
        return records[0] if records else None

    @_guarded
    def get_all(self) -> list[dict[str, Any]]:
        """Return every record in the collection."""
        return self._decode(self.collection.get(include=["documents"])["documents"])

    @_guarded
    def get_by_index(self, field: str, value: Any) -> list[dict[str, Any]]:
        """Return every record whose indexed *field* equals *value*."""
        self._check_index(field)
        result = self.collection.get(where={field: value}, include=["documents"])
        return self._decode(result["documents"])

    @_guarded
    def query(
        self,
        query_text: str | None = None,
        n_results: int = 5,
        query_embedding: Sequence[float] | None = None,
    ) -> list[tuple[dict[str, Any], float]]:
        """
        Return up to *n_results* ``(record, similarity)`` pairs nearest to
        the query, where ``similarity = 1 - cosine_distance``.
        """
        n = min(n_results, self.collection.count())
        if n <= 0:
            return []
        if query_embedding is not None:
            result = self.collection.query(
                query_embeddings=[list(query_embedding)],
                n_results=n,
                include=["documents", "distances"],
            )
        else:
            result = self.collection.query(
                query_texts=[query_text or ""],
                n_results=n,
                include=["documents", "distances"],
            )
        docs = result["documents"][0] if result["documents"] else []
        distances = result["distances"][0] if result["distances"] else []
        return [
            (json.loads(doc), 1.0 - float(distance))
            for doc, distance in zip(docs, distances)
            if doc
        ]

    @_guarded
    def count(self) -> int:
        """Return the total number of stored records."""
        return self.collection.count()

    def _check_index(self, field: str) -> None:
        if field not in self.index_fields:
            raise ValueError(f"{field!r} is not an indexed field of {self.name}")
