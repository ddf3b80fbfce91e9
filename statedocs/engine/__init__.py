"""statedocs Engine — Errors, configuration and audit logging."""

from statedocs.engine.config import StateDocsConfig, get_config, load_config  # noqa: F401
from statedocs.engine.errors import (  # noqa: F401
    StateDocsBadRequestError,
    StateDocsConfigError,
    StateDocsError,
    StateDocsNotFoundError,
    StateDocsUnauthorizedError,
    StateDocsUndefinedStateError,
    StateDocsValidationError,
)

__all__ = [
    "StateDocsConfig",
    "get_config",
    "load_config",
    "StateDocsError",
    "StateDocsValidationError",
    "StateDocsNotFoundError",
    "StateDocsUnauthorizedError",
    "StateDocsBadRequestError",
    "StateDocsUndefinedStateError",
    "StateDocsConfigError",
]
