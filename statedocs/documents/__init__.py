"""statedocs Documents — Resource models, query building, edit locks and the document service."""

from statedocs.documents.models import (  # noqa: F401  (models first: security imports them)
    ALL_VERBS,
    PUBLIC_ROLE,
    DocumentUser,
    HttpVerb,
    Lock,
    Resource,
    StateDefinition,
    StatePermission,
    User,
)
from statedocs.documents.embedding import EmbeddingResolver, NullEmbeddingResolver  # noqa: F401
from statedocs.documents.locks import LockManager  # noqa: F401
from statedocs.documents.service import DocumentService  # noqa: F401

__all__ = [
    "ALL_VERBS",
    "PUBLIC_ROLE",
    "DocumentUser",
    "HttpVerb",
    "Lock",
    "Resource",
    "StateDefinition",
    "StatePermission",
    "User",
    "EmbeddingResolver",
    "NullEmbeddingResolver",
    "LockManager",
    "DocumentService",
]
