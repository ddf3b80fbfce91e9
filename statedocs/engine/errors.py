"""
statedocs Error Hierarchy — Structured exceptions for the document core.

Every error carries a serializable context so the HTTP layer (outside this
package) can map it to a response without inspecting message strings.

Hierarchy:
    StateDocsError
    ├── StateDocsValidationError     — Schema validation failed (field errors)
    ├── StateDocsNotFoundError       — Document / lock / record absent
    ├── StateDocsUnauthorizedError   — Requester lacks the needed access
    ├── StateDocsBadRequestError     — Malformed identifier or parameter
    ├── StateDocsUndefinedStateError — Resource does not declare a state
    └── StateDocsConfigError         — Invalid statedocs.yaml / resource config
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class StateDocsError(Exception):
    """
    Base error for all statedocs failures.
    All context is serializable to JSON.
    """

    status_code: int = 500

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.resource: Optional[str] = context.get("resource")
        self.document_id: Optional[Any] = context.get("document_id")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging and responses."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "status_code": self.status_code,
            "resource": self.resource,
            "document_id": None if self.document_id is None else str(self.document_id),
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("resource", "document_id")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.resource:
            parts.append(f"resource={self.resource}")
        if self.document_id is not None:
            parts.append(f"document_id={self.document_id}")
        return " | ".join(parts)


class StateDocsValidationError(StateDocsError):
    """
    Document data failed schema validation.
    Includes the field-level error list produced by the validator.
    """

    status_code = 422

    def __init__(self, message: str, **context: Any):
        self.validation_errors: List[Dict[str, Any]] = list(context.get("validation_errors") or [])
        self.state: Optional[str] = context.get("state")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        d["state"] = self.state
        return d


class StateDocsNotFoundError(StateDocsError):
    """Document, lock or record not found."""

    status_code = 404


class StateDocsUnauthorizedError(StateDocsError):
    """
    Access denied.
    Includes the requester id and the verb/state that was refused when known.
    """

    status_code = 401

    def __init__(self, message: str, **context: Any):
        self.user_id: Optional[Any] = context.get("user_id")
        self.required_permission: Optional[str] = context.get("required_permission")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["user_id"] = None if self.user_id is None else str(self.user_id)
        d["required_permission"] = self.required_permission
        return d


class StateDocsBadRequestError(StateDocsError):
    """Malformed identifier or parameter."""

    status_code = 400


class StateDocsUndefinedStateError(StateDocsError):
    """The resource does not declare the referenced state."""

    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.state_name: Optional[str] = context.get("state_name")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["state_name"] = self.state_name
        return d


class StateDocsConfigError(StateDocsError):
    """Configuration error — invalid statedocs.yaml or resource definition."""
    pass
