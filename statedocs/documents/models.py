"""
statedocs Document Models — Pydantic definitions for resources, permissions,
requesters, ACL entries and edit locks.

Stored documents themselves stay plain dicts (document-store records):

    {
        "_id": "65f0c1...",
        "states": {
            "draft":     {"data": {...}, "created_at": ..., "created_by": ...,
                          "modified_at": ..., "modified_by": ...},
            "published": {...},
        },
        "users": {"<user_id>": DocumentUser},
        "groups": ["editors"],
        "parent_id": "65f0b9...",      # inheritable resources only
    }
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger("statedocs.documents.models")

DataValidator = Callable[[Dict[str, Any]], List[Dict[str, Any]]]
VirtualProperty = Callable[[Dict[str, Any]], Any]

PUBLIC_ROLE = "public"


class HttpVerb(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

class StatePermission(BaseModel):
    """
    What one role may do on one state.

    Either every verb (written "*" in resource configs) or an explicit verb
    set. The two variants are kept apart so a wildcard is never confused
    with a verb list that happens to contain "*".
    """

    model_config = ConfigDict(frozen=True)

    all_verbs: bool = False
    verbs: FrozenSet[HttpVerb] = frozenset()

    @model_validator(mode="before")
    @classmethod
    def parse_shorthand(cls, data: Any) -> Any:
        if data == "*":
            return {"all_verbs": True}
        if isinstance(data, str):
            return {"verbs": [data]}
        if isinstance(data, (list, tuple, set, frozenset)):
            return {"verbs": list(data)}
        return data

    @field_validator("verbs", mode="before")
    @classmethod
    def normalize_verbs(cls, v: Any) -> Any:
        return [x.upper() if isinstance(x, str) else x for x in v]

    def allows(self, method: Optional[Any] = None) -> bool:
        """True if method is granted; any non-empty permission grants method=None."""
        if self.all_verbs:
            return True
        if method is None:
            return bool(self.verbs)
        return HttpVerb(str(getattr(method, "value", method)).upper()) in self.verbs


ALL_VERBS = StatePermission(all_verbs=True)


# ---------------------------------------------------------------------------
# Resource definition
# ---------------------------------------------------------------------------

class StateDefinition(BaseModel):
    """One lifecycle state declared by a resource."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    label: Optional[str] = None
    validate_data: bool = Field(default=False, alias="validate")


class Resource(BaseModel):
    """
    Schema/configuration for one kind of document.

    Supplied by the caller; read-only to the core.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    name: str
    label: str = ""
    collection_name: str = ""
    states: Dict[str, StateDefinition]
    default_state: str = ""
    permissions: Dict[str, Dict[str, StatePermission]] = Field(default_factory=dict)
    schema_model: Optional[Type[BaseModel]] = None
    validator: Optional[DataValidator] = None
    virtual_properties: Dict[str, VirtualProperty] = Field(default_factory=dict)
    is_inheritable: bool = False
    per_page: Optional[int] = None

    @model_validator(mode="after")
    def fill_defaults(self) -> "Resource":
        if not self.states:
            raise ValueError(f"resource '{self.name}' must declare at least one state")
        for state_name, definition in self.states.items():
            if not definition.name:
                definition.name = state_name
        if not self.label:
            self.label = self.name
        if not self.collection_name:
            self.collection_name = self.name
        if not self.default_state:
            self.default_state = next(iter(self.states))
        elif self.default_state not in self.states:
            raise ValueError(
                f"default_state '{self.default_state}' is not a state of resource '{self.name}'"
            )
        for role, table in self.permissions.items():
            unknown = set(table) - set(self.states)
            if unknown:
                logger.warning(
                    f"Resource '{self.name}': role '{role}' references undeclared states {sorted(unknown)}"
                )
        return self

    @property
    def state_names(self) -> List[str]:
        return list(self.states)

    @property
    def field_names(self) -> List[str]:
        """Declared data fields (from the schema model)."""
        if self.schema_model is None:
            return []
        return list(self.schema_model.model_fields)

    def has_state(self, state_name: Optional[str]) -> bool:
        return state_name is not None and state_name in self.states

    def validate_document(self, data: Dict[str, Any], partial: bool = False) -> List[Dict[str, Any]]:
        """
        Run the configured validator against data.

        Returns the list of field errors (empty when valid). With partial=True,
        "missing" errors for fields absent from data are ignored (PATCH).
        """
        if self.validator is not None:
            return list(self.validator(data) or [])
        if self.schema_model is None:
            return []
        try:
            self.schema_model.model_validate(data)
        except ValidationError as e:
            errors = [
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ]
            if partial:
                errors = [
                    err for err in errors
                    if not (err["type"] == "missing" and err["loc"] and err["loc"][0] not in data)
                ]
            return errors
        return []


# ---------------------------------------------------------------------------
# Requester & ACL
# ---------------------------------------------------------------------------

class User(BaseModel):
    """The authenticated requester as seen by the core."""

    id: Any = None
    roles: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    is_admin: bool = False
    display_name: Optional[str] = None
    email: Optional[str] = None


class DocumentUser(BaseModel):
    """One entry of a document's users ACL map."""

    user_id: Any
    roles: List[str] = Field(default_factory=list)
    added_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    display_name: Optional[str] = None
    infos: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Edit locks
# ---------------------------------------------------------------------------

class Lock(BaseModel):
    """A held edit lock on one (document, state) pair."""

    id: Any
    document_id: Any
    state: str
    user_id: Any
    timeout: datetime

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc) > self.timeout
