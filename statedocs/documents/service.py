"""
statedocs Document Service — Orchestrates reads, writes, transitions, ACL
changes and edit locks over a document collection.

Composes:
    - query_builder        filters, projections, update specs
    - PermissionResolver   which states a requester may see or mutate
    - LockManager          per-(document, state) edit locks
    - EmbeddingResolver    opaque augmentation of response views

Every operation is a coroutine; only storage calls are awaited. Multi-step
sequences (ancestor merge, delete cascade, ACL dual-write) are not
transactional and may observe concurrent writes.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from statedocs.documents import query_builder as qb
from statedocs.documents.embedding import EmbeddingResolver, NullEmbeddingResolver
from statedocs.documents.locks import LockManager
from statedocs.documents.models import DocumentUser, HttpVerb, Lock, Resource, User
from statedocs.engine.config import StateDocsConfig, get_config
from statedocs.engine.errors import (
    StateDocsNotFoundError,
    StateDocsUnauthorizedError,
    StateDocsUndefinedStateError,
)
from statedocs.engine.logging import log, log_document_operation, log_security_event
from statedocs.security.permissions import PermissionResolver, permission_resolver
from statedocs.storage.base import ASCENDING, DESCENDING, DocumentCollection, DocumentDatabase, ReturnDocument
from statedocs.utilities.pagination import paginate, parse_sort

logger = logging.getLogger("statedocs.documents.service")

Filter = Dict[str, Any]
Resources = Optional[Mapping[str, Resource]]

_READ_PROJECTION = {"_id": 1, "states": 1, "users": 1, "groups": 1, "parent_id": 1}
_CREATOR_PROJECTION = {"_id": 1, "display_name": 1, "email": 1}
_FALSE_FLAGS = (None, "", "false", "0", False)


def _with(query: Optional[Mapping[str, Any]], name: str) -> bool:
    """True when query["with"] ("creator,parentId" or a list) names name."""
    requested = (query or {}).get("with")
    if not requested:
        return False
    if isinstance(requested, str):
        requested = [part.strip() for part in requested.split(",")]
    return name in requested


def _user_id(user: Optional[User]) -> Any:
    return user.id if user is not None else None


def _users_list(doc: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    if not doc:
        return []
    return list((doc.get("users") or {}).values())


def strip_virtual_properties(resource: Resource, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of data without keys that are computed on read."""
    return {k: v for k, v in (data or {}).items() if k not in resource.virtual_properties}


def add_virtual_properties(resource: Resource, data: Dict[str, Any]) -> Dict[str, Any]:
    """Compute every virtual property into data (in place) and return it."""
    for name, compute in resource.virtual_properties.items():
        data[name] = compute(data)
    return data


def merge_ancestor_data(
    own: Optional[Dict[str, Any]],
    ancestors: List[Dict[str, Any]],
    state: str,
) -> Dict[str, Any]:
    """
    Shallow-merge ancestor data for state, root first.

    ancestors is ordered nearest first (as graph_lookup returns it), so the
    nearest ancestor overrides farther ones and own data overrides all.
    """
    merged: Dict[str, Any] = {}
    for ancestor in reversed(ancestors):
        merged.update(((ancestor.get("states") or {}).get(state) or {}).get("data") or {})
    merged.update(own or {})
    return merged


class DocumentService:
    """Multi-state document operations on top of a document database."""

    def __init__(
        self,
        database: DocumentDatabase,
        config: Optional[StateDocsConfig] = None,
        embedder: Optional[EmbeddingResolver] = None,
        permissions: Optional[PermissionResolver] = None,
        lock_manager: Optional[LockManager] = None,
    ):
        self._db = database
        self._config = config or get_config()
        self._embedder = embedder or NullEmbeddingResolver()
        self._permissions = permissions or permission_resolver
        self._locks = lock_manager or LockManager(database, self._config)

    @property
    def locks(self) -> LockManager:
        return self._locks

    def collection(self, resource: Resource) -> DocumentCollection:
        return self._db.collection(resource.collection_name)

    @property
    def users_collection(self) -> DocumentCollection:
        return self._db.collection(self._config.users.collection_name)

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _require_state(self, resource: Resource, state_name: Optional[str]) -> str:
        name = state_name or resource.default_state
        if not resource.has_state(name):
            raise StateDocsUndefinedStateError(
                f"Undefined state: {name}",
                resource=resource.name,
                state_name=name,
            )
        return name

    async def _inherit(self, resource: Resource, doc: Dict[str, Any], state: str) -> None:
        """Replace doc's state data with the ancestor-merged data."""
        parent_id = doc.get("parent_id")
        if parent_id is None:
            return
        ancestors = await self.collection(resource).graph_lookup(parent_id, "parent_id", "_id")
        record = doc.setdefault("states", {}).setdefault(state, {})
        record["data"] = merge_ancestor_data(record.get("data"), ancestors, state)

    async def _creator(self, created_by: Any) -> Optional[Dict[str, Any]]:
        if created_by is None:
            return None
        return await self.users_collection.find_one({"_id": created_by}, projection=_CREATOR_PROJECTION)

    async def _missing_or_denied(self, resource: Resource, filter: Filter, user: Optional[User]) -> Exception:
        """
        A scoped write matched nothing: NotFound when the id does not exist,
        Unauthorized when the scoping filter excluded an existing document.
        """
        document_id = filter.get("_id")
        exists = document_id is not None and await self.collection(resource).find_one(
            {"_id": document_id}, projection={"_id": 1}
        )
        if not exists:
            return StateDocsNotFoundError("Not Found", resource=resource.name, document_id=document_id)
        log(log_security_event(
            "write_denied", "documents", _user_id(user),
            resource=resource.name, document_id=document_id,
            user_roles=list(self._permissions.get_roles_for_user(user)),
        ))
        return StateDocsUnauthorizedError(
            "Unauthorized",
            resource=resource.name,
            document_id=document_id,
            user_id=_user_id(user),
        )

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def get_documents(
        self,
        resource: Resource,
        filter: Optional[Filter],
        user: Optional[User],
        query: Optional[Mapping[str, Any]],
        state: Optional[str],
        sort: Union[None, str, List[Tuple[str, int]]] = None,
        pagination: Optional[Mapping[str, Any]] = None,
        other_resources: Resources = None,
    ) -> Dict[str, Any]:
        """
        One page of documents holding state.

        Returns:
            {count, label, page, per_page, nav, has_next, has_prev, docs}
            where each doc is {id, state, states, created_at, created_by,
            data[, parent_id][, creator]}.
        """
        query = query or {}
        state = qb.get_state(resource, state).name
        match: Filter = {f"states.{state}": {"$exists": True}}
        match.update(filter or {})
        match.update(qb.find(resource, query, state))

        collection = self.collection(resource)
        count = await collection.count_documents(match)
        info = paginate(
            count,
            pagination,
            default_per_page=resource.per_page or self._config.pagination.default_per_page,
            max_per_page=self._config.pagination.max_per_page,
        )
        rows = await collection.find(
            match,
            projection=_READ_PROJECTION,
            sort=parse_sort(sort, state),
            skip=info.skip,
            limit=info.limit,
        )

        requested = self._permissions.get_requested_states_from_query(resource, query)
        with_creator = _with(query, "creator")
        docs: List[Dict[str, Any]] = []
        for doc in rows:
            if resource.is_inheritable:
                await self._inherit(resource, doc, state)
            current = (doc.get("states") or {}).get(state) or {}
            allowed = self._permissions.allowed_states_for_user(user, resource, HttpVerb.GET, doc)
            view: Dict[str, Any] = {
                "id": doc["_id"],
                "state": state,
                "states": self._permissions.filter_document_states(doc, allowed, requested),
                "created_at": current.get("created_at"),
                "created_by": current.get("created_by"),
                "data": current.get("data") or {},
            }
            if resource.is_inheritable and _with(query, "parentId"):
                view["parent_id"] = doc.get("parent_id")
            if with_creator:
                view["creator"] = await self._creator(current.get("created_by"))
            add_virtual_properties(resource, view["data"])
            docs.append(view)

        resolved = await self._embedder.resolve_many(resource, query.get("embed"), user, docs, other_resources)
        logger.debug(f"{resource.name}/{state}: page {info.page}/{info.last_page}, {len(docs)} of {count}")
        return {
            "count": info.count,
            "label": resource.label,
            "page": info.page,
            "per_page": info.per_page,
            "nav": info.nav(),
            "has_next": info.has_next,
            "has_prev": info.has_prev,
            "docs": docs if resolved is None else resolved,
        }

    async def get_document(
        self,
        resource: Resource,
        filter: Filter,
        query: Optional[Mapping[str, Any]],
        user: Optional[User],
        state: Optional[str],
        other_resources: Resources = None,
    ) -> Dict[str, Any]:
        """Single document view for state; NotFound when absent or lacking state."""
        query = query or {}
        state = qb.get_state(resource, state).name
        match = dict(filter)
        match[f"states.{state}"] = {"$exists": True}

        doc = await self.collection(resource).find_one(match, projection=_READ_PROJECTION)
        if doc is None or state not in (doc.get("states") or {}):
            raise StateDocsNotFoundError(
                "Document Not Found", resource=resource.name, document_id=filter.get("_id")
            )
        if resource.is_inheritable:
            await self._inherit(resource, doc, state)

        current = doc["states"][state]
        allowed = self._permissions.allowed_states_for_user(user, resource, HttpVerb.GET, doc)
        requested = self._permissions.get_requested_states_from_query(resource, query)
        view: Dict[str, Any] = {
            "id": doc["_id"],
            "state": state,
            "created_at": current.get("created_at"),
            "created_by": current.get("created_by"),
            "modified_at": current.get("modified_at"),
            "modified_by": current.get("modified_by"),
            "data": add_virtual_properties(resource, current.get("data") or {}),
            "groups": doc.get("groups") or [],
            "states": self._permissions.filter_document_states(doc, allowed, requested),
        }
        if resource.is_inheritable and _with(query, "parentId"):
            view["parent_id"] = doc.get("parent_id")
        if _with(query, "creator"):
            view["creator"] = await self._creator(current.get("created_by"))

        resolved = await self._embedder.resolve_one(resource, query.get("embed"), user, view["data"], other_resources)
        if resolved is not None:
            view["data"] = resolved
        return view

    async def get_document_states(
        self,
        resource: Resource,
        filter: Filter,
        user: Optional[User],
    ) -> Dict[str, Any]:
        """{id, states} with audit fields only, for the states user may GET."""
        doc = await self.collection(resource).find_one(filter, projection=_READ_PROJECTION)
        if doc is None:
            raise StateDocsNotFoundError(
                "Document Not Found", resource=resource.name, document_id=filter.get("_id")
            )
        allowed = self._permissions.allowed_states_for_user(user, resource, HttpVerb.GET, doc)
        states = {
            name: {field: record.get(field) for field in qb.AUDIT_FIELDS if field in record}
            for name, record in (doc.get("states") or {}).items()
            if name in allowed
        }
        return {"id": doc["_id"], "states": states}

    async def get_document_links(
        self,
        resource: Resource,
        filter: Filter,
        query: Optional[Mapping[str, Any]],
        user: Optional[User],
        state: Optional[str],
        other_resources: Resources,
        headers: Optional[Mapping[str, Any]],
        result: Any,
    ) -> Dict[str, Any]:
        """
        Ids of the neighbouring documents by id order, within filter.

        Only computed when the "with-links" header or "withLinks" query flag
        is set and the resource is not inheritable. Not page-aware.
        """
        nav: Dict[str, Any] = {}
        wanted = (headers or {}).get("with-links") not in _FALSE_FLAGS or (query or {}).get("withLinks") not in _FALSE_FLAGS
        if not wanted or resource.is_inheritable:
            return {"nav": nav, "result": result}

        state = qb.get_state(resource, state).name
        document_id = filter.get("_id")
        collection = self.collection(resource)
        match = dict(filter)
        match[f"states.{state}"] = {"$exists": True}

        match["_id"] = {"$lt": document_id}
        before = await collection.find(match, projection={"_id": 1}, sort=[("_id", DESCENDING)], limit=1)
        match["_id"] = {"$gt": document_id}
        after = await collection.find(match, projection={"_id": 1}, sort=[("_id", ASCENDING)], limit=1)

        if before:
            nav["previous"] = before[0]["_id"]
        if after:
            nav["next"] = after[0]["_id"]
        return {"nav": nav, "result": result}

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------

    async def create_document(
        self,
        resource: Resource,
        data: Dict[str, Any],
        state: Optional[str],
        user: Optional[User],
        parent_id: Optional[Any] = None,
        groups: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Insert a new document holding one state.

        A child document starts with its parent's groups; explicit groups are
        added on top.

        Returns:
            {state, id, data, created_at, created_by}
        """
        state = self._require_state(resource, state)
        doc = qb.create(resource, strip_virtual_properties(resource, data), state, user, parent_id)

        if parent_id is not None:
            parent = await self.collection(resource).find_one({"_id": parent_id}, projection={"groups": 1})
            if parent:
                doc["groups"] = list(parent.get("groups") or [])
        for group in groups or []:
            if group not in doc["groups"]:
                doc["groups"].append(group)

        inserted = await self.collection(resource).insert_one(doc)
        log(log_document_operation(
            "create", resource.name, inserted.inserted_id, _user_id(user), state=state,
            fields_changed=list(doc["states"][state]["data"]),
        ))
        logger.info(f"Created {resource.name} {inserted.inserted_id} in state '{state}'")
        return {"state": state, "id": inserted.inserted_id, **doc["states"][state]}

    async def set_document(
        self,
        resource: Resource,
        filter: Filter,
        data: Dict[str, Any],
        state: Optional[str],
        user: Optional[User],
    ) -> Dict[str, Any]:
        """Replace the data of one state; returns {id, state, data}."""
        state = self._require_state(resource, state)
        data = strip_virtual_properties(resource, data)
        update = qb.update(resource, data, state, user)

        result = await self.collection(resource).update_one(filter, update)
        if result.matched_count == 0:
            raise await self._missing_or_denied(resource, filter, user)

        log(log_document_operation(
            "update", resource.name, filter.get("_id"), _user_id(user), state=state, fields_changed=list(data),
        ))
        return {"id": filter.get("_id"), "state": state, "data": data}

    async def patch_document(
        self,
        resource: Resource,
        filter: Filter,
        data: Dict[str, Any],
        state: Optional[str],
        user: Optional[User],
    ) -> Dict[str, Any]:
        """Merge the supplied fields into one state; returns the merged data."""
        state = self._require_state(resource, state)
        data = strip_virtual_properties(resource, data)
        update = qb.patch(resource, data, state, user)

        updated = await self.collection(resource).find_one_and_update(
            filter, update, return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise await self._missing_or_denied(resource, filter, user)

        log(log_document_operation(
            "patch", resource.name, filter.get("_id"), _user_id(user), state=state, fields_changed=list(data),
        ))
        return {"id": filter.get("_id"), "state": state, "data": updated["states"][state].get("data") or {}}

    async def set_document_state(
        self,
        resource: Resource,
        filter: Filter,
        from_state: str,
        to_state: str,
        user: Optional[User],
    ) -> Dict[str, Any]:
        """
        Move the from_state entry to to_state.

        Requires GET access to from_state and PUT access to to_state,
        evaluated against the loaded document's ACL. The moved data is
        validated against to_state's rule.

        Returns:
            {doc: <moved data>, state: {from, to}}
        """
        for name in (to_state, from_state):
            self._require_state(resource, name)

        collection = self.collection(resource)
        document = await collection.find_one(filter)
        if document is None or from_state not in (document.get("states") or {}):
            raise StateDocsNotFoundError("Not Found", resource=resource.name, document_id=filter.get("_id"))

        can_put = self._permissions.can(user, resource, HttpVerb.PUT, to_state, document)
        can_get = self._permissions.can(user, resource, HttpVerb.GET, from_state, document)
        if not (can_put and can_get):
            log(log_security_event(
                "transition_denied", "documents", _user_id(user),
                resource=resource.name, document_id=document["_id"],
                required_permission=f"GET:{from_state},PUT:{to_state}",
                user_roles=list(self._permissions.get_roles_for_user(user)),
            ))
            raise StateDocsUnauthorizedError(
                f"Not allowed to move '{from_state}' to '{to_state}'",
                resource=resource.name,
                document_id=document["_id"],
                user_id=_user_id(user),
                required_permission=f"PUT:{to_state}",
            )

        data = document["states"][from_state].get("data") or {}
        ops = qb.set_state(data, from_state, to_state, resource, user)
        result = await collection.update_one(filter, ops)
        if result.matched_count == 0:
            raise StateDocsNotFoundError("Not Found", resource=resource.name, document_id=filter.get("_id"))

        log(log_document_operation(
            "transition", resource.name, document["_id"], _user_id(user),
            state=to_state, from_state=from_state,
        ))
        logger.info(f"{resource.name} {document['_id']}: '{from_state}' -> '{to_state}'")
        return {"doc": data, "state": {"from": from_state, "to": to_state}}

    async def delete_document_state(
        self,
        resource: Resource,
        filter: Filter,
        state: str,
    ) -> Dict[str, Any]:
        """Remove one state; the document goes with its last state."""
        state = self._require_state(resource, state)
        collection = self.collection(resource)
        match = dict(filter)
        match[f"states.{state}"] = {"$exists": True}

        result = await collection.update_one(match, {"$unset": {f"states.{state}": ""}})
        if result.matched_count == 0:
            raise StateDocsNotFoundError("Not Found", resource=resource.name, document_id=filter.get("_id"))

        removed = await collection.delete_one(qb.delete_filter(filter.get("_id")))
        document_deleted = removed.deleted_count == 1
        log(log_document_operation(
            "delete_state", resource.name, filter.get("_id"), state=state, document_deleted=document_deleted,
        ))
        return {"id": filter.get("_id"), "state": state, "document_deleted": document_deleted}

    async def delete_document(self, resource: Resource, filter: Filter) -> Dict[str, Any]:
        """
        Delete a document.

        For inheritable resources the deleted document's state data is first
        merged into each child (the child's fields win) and the children are
        re-parented to the deleted document's parent.
        """
        collection = self.collection(resource)
        if not resource.is_inheritable:
            result = await collection.delete_one(filter)
            if result.deleted_count == 0:
                raise StateDocsNotFoundError("Not Found", resource=resource.name, document_id=filter.get("_id"))
            log(log_document_operation("delete", resource.name, filter.get("_id")))
            return {}

        doomed = await collection.find_one(filter)
        if doomed is None:
            raise StateDocsNotFoundError("Not Found", resource=resource.name, document_id=filter.get("_id"))

        children = await collection.find({"parent_id": doomed["_id"]})
        for child in children:
            child_states = child.setdefault("states", {})
            for state_name, record in (doomed.get("states") or {}).items():
                if state_name not in child_states:
                    child_states[state_name] = copy.deepcopy(record)
                else:
                    inherited = dict(record.get("data") or {})
                    inherited.update(child_states[state_name].get("data") or {})
                    child_states[state_name]["data"] = inherited
            child.pop("parent_id", None)
            if doomed.get("parent_id") is not None:
                child["parent_id"] = doomed["parent_id"]
            await collection.replace_one({"_id": child["_id"]}, child)

        await collection.delete_one({"_id": doomed["_id"]})
        log(log_document_operation(
            "delete", resource.name, doomed["_id"], reparented=[str(c["_id"]) for c in children] or None,
        ))
        if children:
            logger.info(f"Deleted {resource.name} {doomed['_id']}, re-parented {len(children)} children")
        return {}

    # -------------------------------------------------------------------
    # Document ACL
    # -------------------------------------------------------------------

    async def get_document_users(self, resource: Resource, filter: Filter) -> List[Dict[str, Any]]:
        doc = await self.collection(resource).find_one(filter, projection={"users": 1})
        return _users_list(doc)

    async def add_user_to_document(
        self,
        resource: Resource,
        filter: Filter,
        user_details: Union[DocumentUser, Mapping[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Grant roles on one document; returns the updated ACL list."""
        collection = self.collection(resource)
        if await collection.find_one(filter, projection={"_id": 1}) is None:
            raise StateDocsNotFoundError("Document is null", resource=resource.name, document_id=filter.get("_id"))

        if not isinstance(user_details, DocumentUser):
            user_details = DocumentUser.model_validate(dict(user_details))
        entry = user_details.model_dump()

        updated = await collection.find_one_and_update(
            filter,
            {"$set": {f"users.{user_details.user_id}": entry}},
            projection={"users": 1},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise StateDocsNotFoundError("Not Found", resource=resource.name, document_id=filter.get("_id"))

        log(log_document_operation(
            "acl_add", resource.name, filter.get("_id"), user_details.user_id, roles=entry["roles"],
        ))
        return _users_list(updated)

    async def remove_user_from_document(
        self,
        resource: Resource,
        filter: Filter,
        user_id: Any,
    ) -> List[Dict[str, Any]]:
        """
        Revoke a user's document ACL entry and pull "<label>_<document id>"
        from that user's global groups.

        The group pull is a second, independent write. If it fails the ACL
        change is not rolled back and the store error is raised.
        """
        updated = await self.collection(resource).find_one_and_update(
            filter,
            {"$unset": {f"users.{user_id}": ""}},
            projection={"users": 1},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise StateDocsNotFoundError("Not Found", resource=resource.name, document_id=filter.get("_id"))

        group = f"{resource.label}_{filter.get('_id')}"
        try:
            await self.users_collection.update_one(
                {"_id": user_id}, {"$pull": {"groups": {"$in": [group]}}}
            )
        except Exception as e:
            logger.error(f"Removed {user_id} from {resource.name} {filter.get('_id')} but group pull failed: {e}")
            raise

        log(log_document_operation("acl_remove", resource.name, filter.get("_id"), user_id, group=group))
        return _users_list(updated)

    async def anonymize_personal_data(
        self,
        user: Optional[User],
        collection: str,
        filter: Filter,
        update: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Admin only: apply update to a live (not soft-deleted) record and return it."""
        if user is None or not user.is_admin:
            log(log_security_event(
                "anonymize_denied", "users", _user_id(user), required_permission="admin",
            ))
            raise StateDocsUnauthorizedError(
                "Need to be admin to call this route",
                user_id=_user_id(user),
                required_permission="admin",
            )

        match = dict(filter)
        match["deleted_at"] = {"$exists": False}
        result = await self._db.collection(collection).find_one_and_update(
            match, update, return_document=ReturnDocument.AFTER
        )
        if result is None:
            raise StateDocsNotFoundError("resource not found or already soft deleted", collection=collection)

        log(log_document_operation("anonymize", collection, result.get("_id"), user.id))
        return result

    # -------------------------------------------------------------------
    # Edit locks
    # -------------------------------------------------------------------

    async def lock_document(
        self,
        resource: Resource,
        document_id: Any,
        state: str,
        user: User,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[Lock]:
        """Lock (document_id, state); None when someone else holds it."""
        state = self._require_state(resource, state)
        return await self._locks.acquire(document_id, state, user, ttl_seconds)

    async def is_document_locked_by_other_user(self, document_id: Any, state: str, user: Optional[User]) -> bool:
        return await self._locks.is_locked_by_other_user(document_id, state, user)

    async def release_lock(self, lock_id: Any, user: User, surrogate_user_id: Optional[Any] = None) -> List[str]:
        return await self._locks.release(lock_id, user, surrogate_user_id)

    async def get_locks(self, document_id: Any, user: Optional[User]) -> Optional[List[Dict[str, Any]]]:
        return await self._locks.list(document_id, user)
