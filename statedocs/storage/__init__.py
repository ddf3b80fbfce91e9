"""
statedocs Storage — Document-store boundary and in-process reference store.
"""

from statedocs.storage.base import (
    ASCENDING,
    DESCENDING,
    DeleteResult,
    DocumentCollection,
    DocumentDatabase,
    DuplicateKeyError,
    InsertOneResult,
    ReturnDocument,
    StorageError,
    UpdateResult,
    is_valid_object_id,
    new_object_id,
)
from statedocs.storage.memory import MemoryCollection, MemoryDatabase

__all__ = [
    "ASCENDING",
    "DESCENDING",
    "DeleteResult",
    "DocumentCollection",
    "DocumentDatabase",
    "DuplicateKeyError",
    "InsertOneResult",
    "ReturnDocument",
    "StorageError",
    "UpdateResult",
    "is_valid_object_id",
    "new_object_id",
    "MemoryCollection",
    "MemoryDatabase",
]
