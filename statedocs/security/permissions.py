"""
statedocs Permissions — Which states a requester may see or mutate.

Two grant sources are combined:

Source A (Resource table):
    resource.permissions[role][state] evaluated for the requester's global
    roles. Anonymous requesters hold the single role "public".

Source B (Document ACL):
    roles the requester holds on one specific document:
    - doc["users"][<user id>]["roles"]
    - doc["users"][<group>]["roles"] for every group the requester belongs
      to that is also listed in doc["groups"]
    These roles are evaluated against the same resource table.

Resolution: the union of A and B. Neither source can revoke a state the
other grants.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from statedocs.documents.models import PUBLIC_ROLE, Resource, User

logger = logging.getLogger("statedocs.security.permissions")


def allowed_states_for_roles(
    resource: Resource,
    roles: Iterable[str],
    method: Optional[Any] = None,
) -> Set[str]:
    """
    States granted to any of roles for method.

    A state is granted when permissions[role][state] is the all-verbs
    variant, or when method is in its verb set. With method=None any
    declared permission grants the state.
    """
    allowed: Set[str] = set()
    for role in roles:
        table = resource.permissions.get(role)
        if not table:
            continue
        for state in resource.states:
            permission = table.get(state)
            if permission is not None and permission.allows(method):
                allowed.add(state)
    return allowed


class PermissionResolver:
    """Stateless resolver; one shared instance is enough."""

    def get_roles_for_user(self, user: Optional[User]) -> Set[str]:
        """Global roles of the requester ({"public"} when anonymous or roleless)."""
        if user is None or not user.roles:
            return {PUBLIC_ROLE}
        return set(user.roles)

    def get_document_roles(self, user: Optional[User], doc: Optional[Mapping[str, Any]]) -> Set[str]:
        """Roles the requester holds through the document's own ACL."""
        if user is None or not doc:
            return set()

        users = doc.get("users") or {}
        roles: Set[str] = set()

        if user.id is not None:
            entry = users.get(str(user.id))
            if entry:
                roles.update(entry.get("roles") or [])

        shared_groups = set(user.groups) & set(doc.get("groups") or [])
        for group in shared_groups:
            entry = users.get(group)
            if entry:
                roles.update(entry.get("roles") or [])

        return roles

    def allowed_states_for_user(
        self,
        user: Optional[User],
        resource: Resource,
        method: Optional[Any] = None,
        doc: Optional[Mapping[str, Any]] = None,
    ) -> Set[str]:
        """
        States the requester may access with method.

        Args:
            user: Requester (None for anonymous)
            resource: Resource definition holding the permission table
            method: HttpVerb / verb string, or None for "any access"
            doc: Stored document whose ACL may grant extra states

        Returns:
            Set of state names (no ordering)
        """
        allowed = allowed_states_for_roles(resource, self.get_roles_for_user(user), method)
        if doc is not None:
            allowed |= allowed_states_for_roles(resource, self.get_document_roles(user, doc), method)
        return allowed

    def can(
        self,
        user: Optional[User],
        resource: Resource,
        method: Any,
        state: str,
        doc: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        return state in self.allowed_states_for_user(user, resource, method, doc)

    @staticmethod
    def filter_document_states(
        doc: Mapping[str, Any],
        allowed_states: Iterable[str],
        requested_states: Iterable[str],
    ) -> Dict[str, Any]:
        """States present on doc ∩ allowed ∩ requested."""
        allowed = set(allowed_states)
        requested = set(requested_states)
        return {
            name: record
            for name, record in (doc.get("states") or {}).items()
            if name in allowed and name in requested
        }

    @staticmethod
    def get_requested_states_from_query(
        resource: Resource,
        query: Optional[Mapping[str, Any]],
    ) -> List[str]:
        """
        States the caller asked for via query["states"].

        Accepts "draft,published" or a list. Missing or empty means every
        state of the resource.
        """
        raw = (query or {}).get("states")
        if isinstance(raw, str):
            requested = [s.strip() for s in raw.split(",") if s.strip()]
        elif isinstance(raw, (list, tuple, set)):
            requested = [str(s) for s in raw if s]
        else:
            requested = []
        return requested or list(resource.states)


# Global singleton
permission_resolver = PermissionResolver()
