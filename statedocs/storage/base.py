"""
statedocs Storage Boundary — The document-store collaborator.

The core never talks to a driver directly. It is handed a DocumentDatabase
whose collections speak document-store semantics:

- filters and projections keyed by dotted paths ("states.draft.data.name")
- field-update operators ($set, $unset, $rename, $pull)
- single-document atomic find_one_and_update (with upsert)
- a recursive self-join (graph_lookup) used for ancestor traversal

Any adapter implementing these coroutines can back the core; the in-process
MemoryDatabase in statedocs.storage.memory is the reference implementation.
"""

from __future__ import annotations

import itertools
import random
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

ASCENDING = 1
DESCENDING = -1

SortSpec = Sequence[Tuple[str, int]]

_OBJECT_ID_RE = re.compile(r"^[0-9a-f]{24}$")
_id_counter = itertools.count(random.randint(0, 0xFFFFFFFF))
_id_lock = threading.Lock()


def new_object_id() -> str:
    """
    Generate a 24-hex-char primary key ordered by creation.

    Layout: 4-byte unix timestamp + 8-byte process-wide counter, so ids
    sort in insertion order within a process and roughly by time across
    processes.
    """
    with _id_lock:
        counter = next(_id_counter) & 0xFFFFFFFFFFFFFFFF
    return f"{int(time.time()) & 0xFFFFFFFF:08x}{counter:016x}"


def is_valid_object_id(value: Any) -> bool:
    """True if value is a well-formed 24-hex-char object id."""
    return isinstance(value, str) and bool(_OBJECT_ID_RE.match(value))


class ReturnDocument(Enum):
    BEFORE = "before"
    AFTER = "after"


class StorageError(Exception):
    """Base class for errors raised by a storage adapter."""


class DuplicateKeyError(StorageError):
    """A write would violate a unique key."""

    def __init__(self, message: str, key: Optional[str] = None, value: Any = None):
        self.key = key
        self.value = value
        super().__init__(message)


@dataclass
class InsertOneResult:
    inserted_id: Any


@dataclass
class UpdateResult:
    matched_count: int
    modified_count: int
    upserted_id: Any = None


@dataclass
class DeleteResult:
    deleted_count: int


class DocumentCollection(ABC):
    """Async document collection — the subset of a document-store API the core uses."""

    name: str

    @abstractmethod
    async def find_one(
        self,
        filter: Optional[Dict[str, Any]] = None,
        projection: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the first matching document or None."""

    @abstractmethod
    async def find(
        self,
        filter: Optional[Dict[str, Any]] = None,
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return all matching documents; limit=0 means no limit."""

    @abstractmethod
    async def count_documents(self, filter: Optional[Dict[str, Any]] = None) -> int:
        """Count matching documents."""

    @abstractmethod
    async def insert_one(self, document: Dict[str, Any]) -> InsertOneResult:
        """Insert a document, assigning _id when absent."""

    @abstractmethod
    async def update_one(
        self,
        filter: Dict[str, Any],
        update: Dict[str, Any],
        upsert: bool = False,
    ) -> UpdateResult:
        """Apply field-update operators to the first matching document."""

    @abstractmethod
    async def replace_one(self, filter: Dict[str, Any], replacement: Dict[str, Any]) -> UpdateResult:
        """Replace the first matching document, keeping its _id."""

    @abstractmethod
    async def find_one_and_update(
        self,
        filter: Dict[str, Any],
        update: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
        upsert: bool = False,
        return_document: ReturnDocument = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        """Atomically update the first matching document and return it."""

    @abstractmethod
    async def delete_one(self, filter: Dict[str, Any]) -> DeleteResult:
        """Delete the first matching document."""

    @abstractmethod
    async def delete_many(self, filter: Dict[str, Any]) -> DeleteResult:
        """Delete every matching document."""

    @abstractmethod
    async def graph_lookup(
        self,
        start_with: Any,
        connect_from_field: str,
        connect_to_field: str = "_id",
        max_depth: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Recursive self-join.

        Starting from the document whose connect_to_field equals start_with,
        follow connect_from_field transitively. Returns the chain nearest
        first. Each document is visited at most once, so a cyclic chain
        terminates.
        """

    @abstractmethod
    async def create_index(self, field: str, unique: bool = False) -> str:
        """Ensure an index on field exists. Idempotent."""


class DocumentDatabase(ABC):
    """A named set of collections."""

    @abstractmethod
    def collection(self, name: str) -> DocumentCollection:
        """Return the collection called name, creating it on first use."""
