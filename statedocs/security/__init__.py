"""statedocs Security — Role and document-ACL state permissions."""

from statedocs.security.permissions import (
    PermissionResolver,
    allowed_states_for_roles,
    permission_resolver,
)

__all__ = ["PermissionResolver", "allowed_states_for_roles", "permission_resolver"]
