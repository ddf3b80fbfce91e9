"""
statedocs — Multi-state document management core.

A document holds several named lifecycle snapshots ("states", e.g. draft and
published) at once, each with its own audit trail. Which states a requester
sees is computed per request from role permissions and the document's own
ACL. Edit locks are claimed per (document, state) with a TTL.

    from statedocs import DocumentService, Resource
    from statedocs.storage import MemoryDatabase

    service = DocumentService(MemoryDatabase())
"""

__version__ = "0.1.0"

from statedocs.documents import (  # noqa: E402
    DocumentService,
    DocumentUser,
    HttpVerb,
    Lock,
    LockManager,
    Resource,
    StateDefinition,
    StatePermission,
    User,
)
from statedocs.security import PermissionResolver, permission_resolver  # noqa: E402

__all__ = [
    "DocumentService",
    "DocumentUser",
    "HttpVerb",
    "Lock",
    "LockManager",
    "PermissionResolver",
    "Resource",
    "StateDefinition",
    "StatePermission",
    "User",
    "permission_resolver",
]
