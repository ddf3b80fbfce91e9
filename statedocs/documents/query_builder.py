"""
statedocs Query Builder — Pure translation of document requests into
store filters, projections and update specifications.

No I/O. Builders that validate raise StateDocsValidationError; the rest
return plain dicts the storage collaborator understands.

Paths follow the stored layout:
    states.<state>.data.<field>
    states.<state>.{created_at, created_by, modified_at, modified_by}
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from statedocs.documents.models import Resource, StateDefinition, User
from statedocs.engine.errors import StateDocsValidationError
from statedocs.security.permissions import allowed_states_for_roles, permission_resolver

logger = logging.getLogger("statedocs.documents.query_builder")

AUDIT_FIELDS = ("created_at", "created_by", "modified_at", "modified_by")
DATA_PREFIX = "data."


def join(*parts: str) -> str:
    return ".".join(parts)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _user_id(user: Optional[User]) -> Any:
    return user.id if user is not None else None


def get_state(resource: Resource, state_name: Optional[str] = None) -> StateDefinition:
    """
    Resolve a state definition, falling back to the resource default state.
    An undeclared name yields a non-validating definition carrying that name.
    """
    name = state_name or resource.default_state
    definition = resource.states.get(name)
    if definition is None:
        return StateDefinition(name=name, validate=False)
    return definition


def validate(resource: Resource, data: Dict[str, Any], state: StateDefinition, partial: bool = False) -> None:
    """Validate data when the state asks for it; raise with the field errors."""
    if not state.validate_data:
        return
    errors = resource.validate_document(data, partial=partial)
    if errors:
        logger.debug(f"{resource.name}/{state.name}: {len(errors)} validation errors")
        raise StateDocsValidationError(
            f"Document does not match the schema of '{resource.name}' in state '{state.name}'",
            resource=resource.name,
            state=state.name,
            validation_errors=errors,
        )


# ---------------------------------------------------------------------------
# Filters & projections
# ---------------------------------------------------------------------------

def find(resource: Resource, query: Optional[Mapping[str, Any]], state: Optional[str] = None) -> Dict[str, Any]:
    """Equality filter from every "data.<field>" query key; other keys are ignored."""
    state_name = get_state(resource, state).name
    filter: Dict[str, Any] = {}
    for key, value in (query or {}).items():
        if key.startswith(DATA_PREFIX):
            filter[join("states", state_name, key)] = value
    return filter


def _states_for_user(resource: Resource, user: Optional[User], method: Optional[Any]) -> set:
    return allowed_states_for_roles(resource, permission_resolver.get_roles_for_user(user), method)


def select(
    resource: Resource,
    user: Optional[User],
    method: Optional[Any] = None,
    state: Optional[str] = None,
) -> Dict[str, int]:
    """
    Projection exposing audit fields and declared data fields of every
    state the user may access.
    """
    fields: Dict[str, int] = {"_id": 1}
    model_fields = resource.field_names
    for state_name in _states_for_user(resource, user, method):
        for audit in AUDIT_FIELDS:
            fields[join("states", state_name, audit)] = 1
        for field in model_fields:
            fields[join("states", state_name, "data", field)] = 1
    return fields


def get_states(resource: Resource, user: Optional[User], method: Optional[Any] = None) -> Dict[str, int]:
    """Projection exposing only the audit fields of the accessible states."""
    fields: Dict[str, int] = {"_id": 1}
    for state_name in _states_for_user(resource, user, method):
        for audit in AUDIT_FIELDS:
            fields[join("states", state_name, audit)] = 1
    return fields


def delete_filter(document_id: Any) -> Dict[str, Any]:
    """Matches a document by id only when its states map is empty."""
    return {"_id": document_id, "states": {}}


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def create(
    resource: Resource,
    data: Dict[str, Any],
    state: Optional[str] = None,
    user: Optional[User] = None,
    parent_id: Optional[Any] = None,
) -> Dict[str, Any]:
    """Build a new stored document holding a single state entry."""
    state_def = get_state(resource, state)
    validate(resource, data, state_def)

    doc: Dict[str, Any] = {
        "states": {
            state_def.name: {
                "created_at": _now(),
                "created_by": _user_id(user),
                "data": data,
            }
        },
        "users": {},
        "groups": [],
    }
    if parent_id is not None:
        doc["parent_id"] = parent_id
    return doc


def update(
    resource: Resource,
    data: Dict[str, Any],
    state: Optional[str] = None,
    user: Optional[User] = None,
) -> Dict[str, Any]:
    """Replace the whole data object of one state."""
    state_def = get_state(resource, state)
    validate(resource, data, state_def)
    return {
        "$set": {
            join("states", state_def.name, "modified_at"): _now(),
            join("states", state_def.name, "modified_by"): _user_id(user),
            join("states", state_def.name, "data"): data,
        }
    }


def patch(
    resource: Resource,
    data: Dict[str, Any],
    state: Optional[str] = None,
    user: Optional[User] = None,
) -> Dict[str, Any]:
    """Set only the supplied data fields of one state; other fields are kept."""
    state_def = get_state(resource, state)
    validate(resource, data, state_def, partial=True)
    ops: Dict[str, Any] = {
        join("states", state_def.name, "modified_at"): _now(),
        join("states", state_def.name, "modified_by"): _user_id(user),
    }
    for field, value in data.items():
        ops[join("states", state_def.name, "data", field)] = value
    return {"$set": ops}


def set_state(
    doc_data: Dict[str, Any],
    from_state: str,
    to_state: str,
    resource: Resource,
    user: Optional[User] = None,
) -> Dict[str, Any]:
    """
    Move states.<from_state> to states.<to_state>.

    doc_data is the existing data of the source state; it is validated
    against the destination state's rule. The modification stamp goes on the
    document root: a store cannot $set inside a path it renames in the same
    update.
    """
    validate(resource, doc_data, get_state(resource, to_state))
    return {
        "$rename": {join("states", from_state): join("states", to_state)},
        "$set": {
            "modified_at": _now(),
            "modified_by": _user_id(user),
        },
    }
