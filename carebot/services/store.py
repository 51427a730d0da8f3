"""Document-store seam.

The hosted deployment keeps its records in a managed document database;
everything in the service talks to it through ``DocumentStore`` so the
backend can be swapped.  Collections are addressed by slash-separated paths
(``"contacts"``, ``"contacts/<id>/patients"``,
``"organizations/<tenant>/appointments"``) the way hierarchical document
databases address sub-collections.

``InMemoryDocumentStore`` is the default backend for local runs and tests.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class DocumentNotFoundError(KeyError):
    """Raised by ``update`` when the target document does not exist."""


@dataclass(frozen=True)
class Document:
    id: str
    data: dict[str, Any]


def _matches(data: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    # A ``None`` filter value matches documents where the field is missing
    return all(data.get(field) == expected for field, expected in filters.items())


class DocumentStore(ABC):
    """Minimal async document API used by every component."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None: ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Create or overwrite a document."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Merge *fields* into an existing document."""

    @abstractmethod
    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Insert with a generated id and return it."""

    @abstractmethod
    async def create_if_absent(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> tuple[Document, bool]:
        """Atomically create *doc_id* unless it exists.

        Returns the stored document and whether this call created it.
        """

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]: ...

    async def close(self) -> None:  # noqa: B027
        pass


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store.  Reads and writes copy, so callers never alias state."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, doc_id: str) -> Document | None:
        data = self._collection(collection).get(doc_id)
        if data is None:
            return None
        return Document(doc_id, copy.deepcopy(data))

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        async with self._lock:
            self._collection(collection)[doc_id] = copy.deepcopy(data)

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        async with self._lock:
            docs = self._collection(collection)
            if doc_id not in docs:
                raise DocumentNotFoundError(f"{collection}/{doc_id}")
            docs[doc_id].update(copy.deepcopy(fields))

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        async with self._lock:
            docs = self._collection(collection)
            doc_id = f"doc-{next(self._ids)}"
            while doc_id in docs:
                doc_id = f"doc-{next(self._ids)}"
            docs[doc_id] = copy.deepcopy(data)
        return doc_id

    async def create_if_absent(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> tuple[Document, bool]:
        async with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                return Document(doc_id, copy.deepcopy(docs[doc_id])), False
            docs[doc_id] = copy.deepcopy(data)
            return Document(doc_id, copy.deepcopy(data)), True

    async def query(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        filters = filters or {}
        found = [
            Document(doc_id, copy.deepcopy(data))
            for doc_id, data in self._collection(collection).items()
            if _matches(data, filters)
        ]
        if order_by is not None:
            found.sort(key=lambda d: d.data.get(order_by), reverse=descending)
        if limit is not None:
            found = found[:limit]
        return found


# ── Fixtures ─────────────────────────────────────────────────────────


async def load_fixtures(store: DocumentStore, source: Path | Mapping[str, Any]) -> int:
    """Seed *store* from a JSON file or mapping of ``{collection: [docs]}``.

    Each document may carry an ``id`` key; otherwise one is generated.
    Returns the number of documents written.
    """
    if isinstance(source, Path):
        source = json.loads(source.read_text(encoding="utf-8"))

    written = 0
    for collection, docs in source.items():
        for doc in docs:
            doc = dict(doc)
            doc_id = doc.pop("id", None)
            if doc_id:
                await store.set(collection, str(doc_id), doc)
            else:
                await store.add(collection, doc)
            written += 1
    logger.info("Loaded %d fixture documents", written)
    return written
