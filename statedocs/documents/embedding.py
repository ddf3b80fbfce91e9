"""
statedocs Embedding — Boundary for resolving references to other documents.

The core treats embedding as opaque: after a read it hands the response
views to a resolver, which may augment them in place or return new views.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from statedocs.documents.models import Resource, User


class EmbeddingResolver(ABC):

    @abstractmethod
    async def resolve_many(
        self,
        resource: Resource,
        embed: Optional[Any],
        user: Optional[User],
        docs: List[Dict[str, Any]],
        other_resources: Optional[Mapping[str, Resource]] = None,
    ) -> Optional[List[Dict[str, Any]]]:
        """Augment a batch of document views. Returning None keeps docs as-is."""

    @abstractmethod
    async def resolve_one(
        self,
        resource: Resource,
        embed: Optional[Any],
        user: Optional[User],
        data: Dict[str, Any],
        other_resources: Optional[Mapping[str, Resource]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Augment one document's data. Returning None keeps data as-is."""


class NullEmbeddingResolver(EmbeddingResolver):
    """Default resolver: embeds nothing."""

    async def resolve_many(self, resource, embed, user, docs, other_resources=None):
        return docs

    async def resolve_one(self, resource, embed, user, data, other_resources=None):
        return data
