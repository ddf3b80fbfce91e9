"""
statedocs Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v
"""

from __future__ import annotations

from typing import Optional

import pytest
from pydantic import BaseModel

from statedocs.documents.models import Resource, User
from statedocs.documents.service import DocumentService
from statedocs.engine.config import StateDocsConfig
from statedocs.storage.memory import MemoryDatabase


# ---------------------------------------------------------------------------
# Global singletons
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config():
    """Reset global singletons between tests."""
    import statedocs.engine.config as cfg_mod
    import statedocs.engine.logging as log_mod

    cfg_mod._config = None
    yield
    cfg_mod._config = None
    log_mod.shutdown_logging()


@pytest.fixture
def config():
    return StateDocsConfig()


@pytest.fixture
def db():
    return MemoryDatabase()


@pytest.fixture
def service(db, config):
    return DocumentService(db, config=config)


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

class Pizza(BaseModel):
    name: str
    price: float = 0.0
    toppings: list[str] = []


def _slug(data):
    return str(data.get("name", "")).lower().replace(" ", "-")


@pytest.fixture
def pizzas():
    """
    draft validates nothing, published validates against Pizza.

    public: GET published
    editor: everything on draft, GET/PUT on published
    reviewer: GET draft (granted per document through the ACL in tests)
    """
    return Resource.model_validate({
        "name": "pizzas",
        "label": "Pizzas",
        "states": {
            "draft": {"validate": False},
            "published": {"validate": True},
            "archived": {"validate": False},
        },
        "default_state": "draft",
        "permissions": {
            "public": {"published": ["GET"]},
            "editor": {"draft": "*", "published": ["GET", "PUT"], "archived": ["GET", "PUT"]},
            "reviewer": {"draft": ["GET"]},
        },
        "schema_model": Pizza,
        "virtual_properties": {"slug": _slug},
    })


@pytest.fixture
def open_pizzas():
    """Anyone (including anonymous requesters) may do anything."""
    return Resource.model_validate({
        "name": "open_pizzas",
        "states": {"draft": {}, "published": {"validate": True}},
        "permissions": {"public": {"draft": "*", "published": "*"}},
        "schema_model": Pizza,
        "virtual_properties": {"slug": _slug},
    })


@pytest.fixture
def pages():
    """Inheritable resource: child documents merge ancestor data."""
    return Resource.model_validate({
        "name": "pages",
        "label": "Pages",
        "states": {"draft": {}, "published": {}},
        "permissions": {"public": {"draft": "*", "published": "*"}},
        "is_inheritable": True,
    })


# ---------------------------------------------------------------------------
# Requesters
# ---------------------------------------------------------------------------

@pytest.fixture
def anonymous() -> Optional[User]:
    return None


@pytest.fixture
def editor():
    return User(id="u-editor", roles=["editor"], groups=["kitchen"], display_name="Ed")


@pytest.fixture
def other_editor():
    return User(id="u-editor-2", roles=["editor"], display_name="Edna")


@pytest.fixture
def viewer():
    return User(id="u-viewer", roles=["viewer"], groups=["tasters"])


@pytest.fixture
def admin():
    return User(id="u-admin", roles=["editor"], is_admin=True)
