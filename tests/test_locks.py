"""Unit tests for statedocs.documents.locks — acquire, conflict, expiry, release."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from statedocs.documents.locks import LockManager
from statedocs.documents.models import User
from statedocs.engine.config import StateDocsConfig
from statedocs.engine.errors import (
    StateDocsBadRequestError,
    StateDocsNotFoundError,
    StateDocsUnauthorizedError,
)
from statedocs.storage.base import new_object_id


U1 = User(id="u1")
U2 = User(id="u2")
ADMIN = User(id="root", is_admin=True)


@pytest.fixture
def locks(db, config):
    return LockManager(db, config)


@pytest.fixture
def lock_records(db, config):
    return db.collection(config.locks.collection_name)


async def _expire(lock_records, document_id, state):
    past = datetime.now(timezone.utc) - timedelta(seconds=1)
    await lock_records.update_one({"document_id": document_id}, {"$set": {f"{state}.timeout": past}})


class TestAcquire:

    @pytest.mark.asyncio
    async def test_acquire_conflict_expiry_scenario(self, locks, lock_records):
        first = await locks.acquire("D1", "draft", U1, ttl_seconds=60)
        assert first is not None
        assert first.user_id == "u1"
        assert not first.expired

        assert await locks.acquire("D1", "draft", U2) is None

        await _expire(lock_records, "D1", "draft")
        second = await locks.acquire("D1", "draft", U2)
        assert second is not None
        assert second.user_id == "u2"
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_owner_refreshes(self, locks):
        first = await locks.acquire("D1", "draft", U1, ttl_seconds=60)
        again = await locks.acquire("D1", "draft", U1, ttl_seconds=600)
        assert again is not None
        assert again.timeout > first.timeout

    @pytest.mark.asyncio
    async def test_states_lock_independently(self, locks, lock_records):
        assert await locks.acquire("D1", "draft", U1) is not None
        assert await locks.acquire("D1", "published", U2) is not None
        records = lock_records.all()
        assert len(records) == 1
        assert records[0]["draft"]["user_id"] == "u1"
        assert records[0]["published"]["user_id"] == "u2"

    @pytest.mark.asyncio
    async def test_default_ttl_from_config(self, db):
        mgr = LockManager(db, StateDocsConfig(locks={"timeout_seconds": 120}))
        lock = await mgr.acquire("D1", "draft", U1)
        remaining = (lock.timeout - datetime.now(timezone.utc)).total_seconds()
        assert 100 < remaining <= 120

    @pytest.mark.asyncio
    async def test_non_positive_ttl_rejected(self, locks, lock_records):
        for ttl in (0, -5):
            with pytest.raises(StateDocsBadRequestError):
                await locks.acquire("D1", "draft", U1, ttl_seconds=ttl)
        assert len(lock_records) == 0

    @pytest.mark.asyncio
    async def test_anonymous_cannot_lock(self, locks):
        with pytest.raises(StateDocsUnauthorizedError):
            await locks.acquire("D1", "draft", None)

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_winner(self, locks):
        users = [User(id=f"u{i}") for i in range(8)]
        results = await asyncio.gather(*(locks.acquire("D1", "draft", u) for u in users))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_claims_on_different_states(self, locks):
        results = await asyncio.gather(
            locks.acquire("D2", "draft", U1),
            locks.acquire("D2", "published", U2),
        )
        assert all(r is not None for r in results)


class TestInspect:

    @pytest.mark.asyncio
    async def test_is_locked_by_other_user(self, locks, lock_records):
        await locks.acquire("D1", "draft", U1)
        assert await locks.is_locked_by_other_user("D1", "draft", U2)
        assert await locks.is_locked_by_other_user("D1", "draft", None)
        assert not await locks.is_locked_by_other_user("D1", "draft", U1)
        assert not await locks.is_locked_by_other_user("D1", "published", U2)
        await _expire(lock_records, "D1", "draft")
        assert not await locks.is_locked_by_other_user("D1", "draft", U2)

    @pytest.mark.asyncio
    async def test_naive_timeouts_are_utc(self, locks, lock_records):
        await locks.acquire("D1", "draft", U1)
        naive_future = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
        await lock_records.update_one({"document_id": "D1"}, {"$set": {"draft.timeout": naive_future}})
        assert await locks.is_locked_by_other_user("D1", "draft", U2)

    @pytest.mark.asyncio
    async def test_get_lock(self, locks):
        assert await locks.get_lock(None) is None
        assert await locks.get_lock("D1") is None
        await locks.acquire("D1", "draft", U1)
        assert (await locks.get_lock("D1"))["document_id"] == "D1"
        assert await locks.get_lock("D1", "published") is None

    @pytest.mark.asyncio
    async def test_list_admin_only(self, locks):
        await locks.acquire("D1", "draft", U1)
        with pytest.raises(StateDocsUnauthorizedError):
            await locks.list("D1", U1)
        assert await locks.list("", ADMIN) is None
        records = await locks.list("D1", ADMIN)
        assert len(records) == 1


class TestRelease:

    @pytest.mark.asyncio
    async def test_release_deletes_record_when_empty(self, locks, lock_records):
        lock = await locks.acquire("D1", "draft", U1)
        assert await locks.release(lock.id, U1) == ["draft"]
        assert len(lock_records) == 0

    @pytest.mark.asyncio
    async def test_release_keeps_other_owners(self, locks, lock_records):
        lock = await locks.acquire("D1", "draft", U1)
        await locks.acquire("D1", "published", U2)
        await locks.release(lock.id, U1)
        record = lock_records.all()[0]
        assert "draft" not in record
        assert record["published"]["user_id"] == "u2"

    @pytest.mark.asyncio
    async def test_malformed_id(self, locks):
        with pytest.raises(StateDocsBadRequestError):
            await locks.release("not-an-id", U1)

    @pytest.mark.asyncio
    async def test_unknown_id(self, locks):
        with pytest.raises(StateDocsNotFoundError):
            await locks.release(new_object_id(), U1)

    @pytest.mark.asyncio
    async def test_record_without_states(self, locks, lock_records):
        lock_id = new_object_id()
        lock_records.load([{"_id": lock_id, "document_id": "D1"}])
        with pytest.raises(StateDocsNotFoundError):
            await locks.release(lock_id, U1)

    @pytest.mark.asyncio
    async def test_not_owner(self, locks):
        lock = await locks.acquire("D1", "draft", U1)
        with pytest.raises(StateDocsUnauthorizedError):
            await locks.release(lock.id, U2)

    @pytest.mark.asyncio
    async def test_admin_surrogate(self, locks, lock_records):
        lock = await locks.acquire("D1", "draft", U1)
        assert await locks.release(lock.id, ADMIN, surrogate_user_id="u1") == ["draft"]
        assert len(lock_records) == 0

    @pytest.mark.asyncio
    async def test_surrogate_ignored_for_non_admin(self, locks):
        lock = await locks.acquire("D1", "draft", U1)
        with pytest.raises(StateDocsUnauthorizedError):
            await locks.release(lock.id, U2, surrogate_user_id="u1")
