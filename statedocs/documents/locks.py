"""
statedocs Edit Locks — Per-(document, state) exclusive claims with TTL.

Lock records live in a dedicated collection, one record per document:

    {"_id": "<lock id>", "document_id": "<doc id>",
     "draft":     {"user_id": "u1", "timeout": datetime},
     "published": {"user_id": "u2", "timeout": datetime}}

Acquisition is a single conditional write: find_one_and_update with upsert,
matching only when the state entry is absent, owned by the requester, or
expired. A unique index on document_id turns a lost race on the upsert into
a DuplicateKeyError, which is reported as "no lock obtained" instead of
producing two winners.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from statedocs.documents.models import Lock, User
from statedocs.engine.config import StateDocsConfig, get_config
from statedocs.engine.errors import (
    StateDocsBadRequestError,
    StateDocsNotFoundError,
    StateDocsUnauthorizedError,
)
from statedocs.engine.logging import log, log_lock_event, log_security_event
from statedocs.storage.base import (
    DocumentDatabase,
    DuplicateKeyError,
    ReturnDocument,
    is_valid_object_id,
)

logger = logging.getLogger("statedocs.documents.locks")

# Upsert attempts before a duplicate key is treated as a real conflict
_ACQUIRE_ATTEMPTS = 2


def _utc(value: datetime) -> datetime:
    """Stores may hand back naive UTC datetimes."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _state_entries(record: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {
        key: value for key, value in record.items()
        if isinstance(value, dict) and "user_id" in value
    }


class LockManager:
    """Acquire, inspect and release edit locks."""

    def __init__(self, database: DocumentDatabase, config: Optional[StateDocsConfig] = None):
        cfg = config or get_config()
        self._collection = database.collection(cfg.locks.collection_name)
        self._default_ttl = cfg.locks.timeout_seconds
        self._index_ready = False

    async def _ensure_index(self) -> None:
        if not self._index_ready:
            await self._collection.create_index("document_id", unique=True)
            self._index_ready = True

    # -------------------------------------------------------------------
    # Acquire
    # -------------------------------------------------------------------

    async def acquire(
        self,
        document_id: Any,
        state: str,
        user: User,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[Lock]:
        """
        Lock (document_id, state) for user.

        Creates the lock when unlocked; refreshes owner and expiry when the
        requester already holds it or the previous holder's lock expired.

        Returns:
            The held Lock, or None when another user holds a live lock.
        """
        if user is None or user.id is None:
            raise StateDocsUnauthorizedError(
                "An authenticated user is required to lock a document",
                document_id=document_id,
                required_permission="lock",
            )
        if ttl_seconds is None:
            ttl_seconds = self._default_ttl
        elif ttl_seconds <= 0:
            raise StateDocsBadRequestError(
                f"Lock TTL must be positive, got {ttl_seconds}",
                document_id=document_id,
            )
        await self._ensure_index()

        now = datetime.now(timezone.utc)
        timeout = now + timedelta(seconds=ttl_seconds)
        match = {
            "document_id": document_id,
            "$or": [
                {state: {"$exists": False}},
                {f"{state}.user_id": user.id},
                {f"{state}.timeout": {"$lt": now}},
            ],
        }
        update = {"$set": {f"{state}.user_id": user.id, f"{state}.timeout": timeout}}

        for attempt in range(_ACQUIRE_ATTEMPTS):
            try:
                record = await self._collection.find_one_and_update(
                    match,
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                break
            except DuplicateKeyError:
                # The record exists now (lost the upsert race, or it is held
                # by someone else); retry once as a plain conditional update.
                logger.debug(f"Lock upsert collided for {document_id}/{state} (attempt {attempt + 1})")
        else:
            logger.info(f"Lock conflict on {document_id}/{state} for user {user.id}")
            log(log_lock_event("lock_conflict", document_id, user.id, state=state))
            return None

        lock = Lock(
            id=record["_id"],
            document_id=document_id,
            state=state,
            user_id=user.id,
            timeout=timeout,
        )
        log(log_lock_event("lock_acquired", document_id, user.id, state=state, lock_id=lock.id, timeout=timeout))
        return lock

    # -------------------------------------------------------------------
    # Inspect
    # -------------------------------------------------------------------

    async def get_lock(self, document_id: Any, state: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Raw lock record for a document (optionally holding state), or None."""
        if not document_id:
            return None
        match: Dict[str, Any] = {"document_id": document_id}
        if state:
            match[state] = {"$exists": True}
        return await self._collection.find_one(match)

    async def is_locked_by_other_user(self, document_id: Any, state: str, user: Optional[User]) -> bool:
        """True iff a non-expired lock on (document_id, state) belongs to someone else."""
        record = await self.get_lock(document_id, state)
        if not record:
            return False
        entry = record.get(state)
        if not entry:
            return False

        expired = datetime.now(timezone.utc) > _utc(entry["timeout"])
        same_user = user is not None and user.id is not None and entry.get("user_id") == user.id
        return not same_user and not expired

    async def list(self, document_id: Any, user: Optional[User]) -> Optional[List[Dict[str, Any]]]:
        """All lock records for a document. Admin only."""
        if user is None or not user.is_admin:
            log(log_security_event(
                "lock_list_denied", "locks", getattr(user, "id", None),
                document_id=document_id, required_permission="admin",
            ))
            raise StateDocsUnauthorizedError(
                "Only administrators can list document locks",
                user_id=getattr(user, "id", None),
                document_id=document_id,
                required_permission="admin",
            )
        if not document_id:
            return None
        return await self._collection.find({"document_id": document_id})

    # -------------------------------------------------------------------
    # Release
    # -------------------------------------------------------------------

    async def release(
        self,
        lock_id: Any,
        user: User,
        surrogate_user_id: Optional[Any] = None,
    ) -> List[str]:
        """
        Release the lock entries owned by the requester.

        An admin may pass surrogate_user_id to release on behalf of another
        user; for everyone else the owner is the requester. The record is
        deleted once no state entry remains.

        Returns:
            The state names released.
        """
        if surrogate_user_id is not None and user is not None and user.is_admin:
            owner_id = surrogate_user_id
        else:
            owner_id = getattr(user, "id", None)

        if not is_valid_object_id(lock_id):
            raise StateDocsBadRequestError(f"Invalid lock id: {lock_id!r}", lock_id=lock_id)

        record = await self._collection.find_one({"_id": lock_id})
        if record is None:
            raise StateDocsNotFoundError(f"Lock {lock_id} not found", lock_id=lock_id)

        entries = _state_entries(record)
        if not entries:
            raise StateDocsNotFoundError(f"Lock {lock_id} holds no state", lock_id=lock_id)

        owned = [state for state, entry in entries.items() if entry.get("user_id") == owner_id]
        if not owned:
            log(log_security_event(
                "lock_release_denied", "locks", owner_id,
                document_id=record.get("document_id"), required_permission="lock_owner",
            ))
            raise StateDocsUnauthorizedError(
                f"Lock {lock_id} is not held by user {owner_id}",
                user_id=owner_id,
                document_id=record.get("document_id"),
                required_permission="lock_owner",
            )

        if len(owned) == len(entries):
            await self._collection.delete_one({"_id": lock_id})
        else:
            await self._collection.update_one({"_id": lock_id}, {"$unset": {s: "" for s in owned}})

        for state in owned:
            log(log_lock_event("lock_released", record.get("document_id"), owner_id, state=state, lock_id=lock_id))
        logger.info(f"Released lock {lock_id} states={owned} for user {owner_id}")
        return owned
