"""
statedocs In-Memory Store — Reference implementation of the storage boundary.

Interprets the filter / update / projection dialect the core emits:

Filters:   equality (dotted paths, list membership, {} exact match),
           $exists, $in, $nin, $ne, $lt, $lte, $gt, $gte, $or, $and
Updates:   $set, $unset, $rename, $pull ({"$in": [...]} or a value)
Projection: inclusion ({"a.b": 1}) or exclusion ({"a": 0}); _id always kept
           unless excluded explicitly.

Each collection operation runs under an asyncio.Lock, which gives the same
single-document atomicity a real document store offers. Documents are
deep-copied on the way in and out so callers never alias stored state.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from statedocs.storage.base import (
    DeleteResult,
    DocumentCollection,
    DocumentDatabase,
    DuplicateKeyError,
    InsertOneResult,
    ReturnDocument,
    SortSpec,
    UpdateResult,
    new_object_id,
)

logger = logging.getLogger("statedocs.storage.memory")

_MISSING = object()


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

def get_path(doc: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path; returns _MISSING when any segment is absent."""
    current: Any = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def unset_path(doc: Dict[str, Any], path: str) -> Any:
    """Remove a dotted path; returns the removed value or _MISSING."""
    parts = path.split(".")
    current: Any = doc
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    if isinstance(current, dict) and parts[-1] in current:
        return current.pop(parts[-1])
    return _MISSING


# ---------------------------------------------------------------------------
# Filter evaluation
# ---------------------------------------------------------------------------

def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(k.startswith("$") for k in value)


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(value: Any, operand: Any, op: str) -> bool:
    if value is _MISSING or value is None or operand is None:
        return False
    try:
        if op == "$lt":
            return value < operand
        if op == "$lte":
            return value <= operand
        if op == "$gt":
            return value > operand
        return value >= operand
    except TypeError:
        return False


def _match_operators(value: Any, ops: Dict[str, Any]) -> bool:
    for op, operand in ops.items():
        if op == "$exists":
            if (value is not _MISSING) != bool(operand):
                return False
        elif op == "$in":
            if isinstance(value, list):
                if not any(v in operand for v in value):
                    return False
            elif value is _MISSING or value not in operand:
                return False
        elif op == "$nin":
            if isinstance(value, list):
                if any(v in operand for v in value):
                    return False
            elif value is not _MISSING and value in operand:
                return False
        elif op == "$ne":
            if _equals(value, operand):
                return False
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            if not _compare(value, operand, op):
                return False
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return True


def matches(doc: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """True if doc satisfies the filter."""
    if not filter:
        return True
    for key, condition in filter.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif _is_operator_dict(condition):
            if not _match_operators(get_path(doc, key), condition):
                return False
        elif not _equals(get_path(doc, key), condition):
            return False
    return True


# ---------------------------------------------------------------------------
# Updates and projections
# ---------------------------------------------------------------------------

def apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    """Apply field-update operators to doc in place."""
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                set_path(doc, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                unset_path(doc, path)
        elif op == "$rename":
            for source, target in fields.items():
                value = unset_path(doc, source)
                if value is not _MISSING:
                    set_path(doc, target, value)
        elif op == "$pull":
            for path, condition in fields.items():
                current = get_path(doc, path)
                if not isinstance(current, list):
                    continue
                if _is_operator_dict(condition):
                    kept = [v for v in current if not _match_operators(v, condition)]
                else:
                    kept = [v for v in current if v != condition]
                set_path(doc, path, kept)
        else:
            raise ValueError(f"Unsupported update operator: {op}")


def apply_projection(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not projection:
        return copy.deepcopy(doc)

    include_id = projection.get("_id", 1) not in (0, False)
    fields = {k: v for k, v in projection.items() if k != "_id"}

    if fields and all(v in (0, False) for v in fields.values()):
        result = copy.deepcopy(doc)
        for path in fields:
            unset_path(result, path)
        if not include_id:
            result.pop("_id", None)
        return result

    result: Dict[str, Any] = {}
    if include_id and "_id" in doc:
        result["_id"] = doc["_id"]
    for path, flag in fields.items():
        if flag in (0, False):
            continue
        value = get_path(doc, path)
        if value is not _MISSING:
            set_path(result, path, copy.deepcopy(value))
    return result


def _sort_key(value: Any) -> Tuple[int, Any]:
    # Missing / null sort before everything else, as in a document store
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


def sort_documents(docs: List[Dict[str, Any]], sort: Optional[SortSpec]) -> List[Dict[str, Any]]:
    ordered = list(docs)
    for path, direction in reversed(list(sort or [])):
        ordered.sort(key=lambda d: _sort_key(get_path(d, path)), reverse=direction < 0)
    return ordered


# ---------------------------------------------------------------------------
# Collection / Database
# ---------------------------------------------------------------------------

class MemoryCollection(DocumentCollection):
    """A collection held in a dict keyed by _id, in insertion order."""

    def __init__(self, name: str):
        self.name = name
        self._docs: Dict[Any, Dict[str, Any]] = {}
        self._unique_fields: Set[str] = set()
        self._lock = asyncio.Lock()

    # ── Helpers ──

    def _matching(self, filter: Optional[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
        return (d for d in self._docs.values() if matches(d, filter))

    def _first(self, filter: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return next(iter(self._matching(filter)), None)

    def _check_unique(self, candidate: Dict[str, Any], ignore_id: Any = _MISSING) -> None:
        for field in self._unique_fields:
            value = get_path(candidate, field)
            if value is _MISSING:
                continue
            for existing in self._docs.values():
                if existing.get("_id") == ignore_id:
                    continue
                if get_path(existing, field) == value:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key on {self.name}.{field}: {value!r}",
                        key=field,
                        value=value,
                    )

    def _insert(self, document: Dict[str, Any]) -> Any:
        doc = copy.deepcopy(document)
        if "_id" not in doc:
            doc["_id"] = new_object_id()
        if doc["_id"] in self._docs:
            raise DuplicateKeyError(
                f"E11000 duplicate key on {self.name}._id: {doc['_id']!r}",
                key="_id",
                value=doc["_id"],
            )
        self._check_unique(doc)
        self._docs[doc["_id"]] = doc
        return doc["_id"]

    def _upsert_seed(self, filter: Dict[str, Any]) -> Dict[str, Any]:
        seed: Dict[str, Any] = {}
        for key, condition in filter.items():
            if key.startswith("$") or _is_operator_dict(condition):
                continue
            set_path(seed, key, copy.deepcopy(condition))
        return seed

    def _update_in_place(self, doc: Dict[str, Any], update: Dict[str, Any]) -> bool:
        updated = copy.deepcopy(doc)
        apply_update(updated, update)
        if updated == doc:
            return False
        self._check_unique(updated, ignore_id=doc["_id"])
        doc.clear()
        doc.update(updated)
        return True

    def load(self, documents: Iterable[Dict[str, Any]]) -> List[Any]:
        """Synchronously insert documents (fixtures, bootstrapping)."""
        return [self._insert(d) for d in documents]

    def all(self) -> List[Dict[str, Any]]:
        """Synchronous snapshot of every stored document."""
        return [copy.deepcopy(d) for d in self._docs.values()]

    # ── DocumentCollection API ──

    async def find_one(self, filter=None, projection=None):
        async with self._lock:
            doc = self._first(filter)
            return None if doc is None else apply_projection(doc, projection)

    async def find(self, filter=None, projection=None, sort=None, skip=0, limit=0):
        async with self._lock:
            docs = sort_documents(list(self._matching(filter)), sort)
            if skip:
                docs = docs[skip:]
            if limit:
                docs = docs[:limit]
            return [apply_projection(d, projection) for d in docs]

    async def count_documents(self, filter=None):
        async with self._lock:
            return sum(1 for _ in self._matching(filter))

    async def insert_one(self, document):
        async with self._lock:
            return InsertOneResult(inserted_id=self._insert(document))

    async def update_one(self, filter, update, upsert=False):
        async with self._lock:
            doc = self._first(filter)
            if doc is None:
                if not upsert:
                    return UpdateResult(matched_count=0, modified_count=0)
                seed = self._upsert_seed(filter)
                apply_update(seed, update)
                return UpdateResult(matched_count=0, modified_count=0, upserted_id=self._insert(seed))
            modified = self._update_in_place(doc, update)
            return UpdateResult(matched_count=1, modified_count=int(modified))

    async def replace_one(self, filter, replacement):
        async with self._lock:
            doc = self._first(filter)
            if doc is None:
                return UpdateResult(matched_count=0, modified_count=0)
            new_doc = copy.deepcopy(replacement)
            new_doc["_id"] = doc["_id"]
            self._check_unique(new_doc, ignore_id=doc["_id"])
            modified = new_doc != doc
            doc.clear()
            doc.update(new_doc)
            return UpdateResult(matched_count=1, modified_count=int(modified))

    async def find_one_and_update(
        self,
        filter,
        update,
        projection=None,
        upsert=False,
        return_document=ReturnDocument.BEFORE,
    ):
        async with self._lock:
            doc = self._first(filter)
            if doc is None:
                if not upsert:
                    return None
                seed = self._upsert_seed(filter)
                apply_update(seed, update)
                new_id = self._insert(seed)
                if return_document is ReturnDocument.BEFORE:
                    return None
                return apply_projection(self._docs[new_id], projection)
            before = copy.deepcopy(doc)
            self._update_in_place(doc, update)
            target = doc if return_document is ReturnDocument.AFTER else before
            return apply_projection(target, projection)

    async def delete_one(self, filter):
        async with self._lock:
            doc = self._first(filter)
            if doc is None:
                return DeleteResult(deleted_count=0)
            del self._docs[doc["_id"]]
            return DeleteResult(deleted_count=1)

    async def delete_many(self, filter):
        async with self._lock:
            ids = [d["_id"] for d in self._matching(filter)]
            for doc_id in ids:
                del self._docs[doc_id]
            return DeleteResult(deleted_count=len(ids))

    async def graph_lookup(self, start_with, connect_from_field, connect_to_field="_id", max_depth=None):
        async with self._lock:
            chain: List[Dict[str, Any]] = []
            seen: Set[Any] = set()
            current = start_with
            while current is not None and current is not _MISSING:
                if max_depth is not None and len(chain) > max_depth:
                    break
                doc = self._first({connect_to_field: current})
                if doc is None or doc["_id"] in seen:
                    if doc is not None:
                        logger.warning(
                            f"Cycle detected in {self.name}.{connect_from_field} at {doc['_id']}"
                        )
                    break
                seen.add(doc["_id"])
                chain.append(copy.deepcopy(doc))
                current = get_path(doc, connect_from_field)
            return chain

    async def create_index(self, field, unique=False):
        async with self._lock:
            if unique:
                self._unique_fields.add(field)
            return f"{field}_1"

    def __len__(self) -> int:
        return len(self._docs)

    def __repr__(self) -> str:
        return f"<MemoryCollection '{self.name}' docs={len(self._docs)}>"


class MemoryDatabase(DocumentDatabase):
    """In-process database: a dict of MemoryCollections."""

    def __init__(self) -> None:
        self._collections: Dict[str, MemoryCollection] = {}

    def collection(self, name: str) -> MemoryCollection:
        if name not in self._collections:
            self._collections[name] = MemoryCollection(name)
        return self._collections[name]

    def collection_names(self) -> List[str]:
        return sorted(self._collections)

    def drop(self) -> None:
        self._collections.clear()
