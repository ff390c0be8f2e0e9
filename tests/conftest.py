"""
Root pytest configuration and shared fixtures.

Every test gets a fresh in-memory store wired into a full set of services;
tool tests install those services as the process-wide instance.
"""

from typing import Any, Callable, Dict, List

import pytest

from tracker_mcp.config import ServerConfig
from tracker_mcp.core.models import DocumentKind
from tracker_mcp.core.services import TrackerServices, set_services
from tracker_mcp.core.store import InMemoryDocumentStore


# =============================================================================
# Store and services
# =============================================================================


@pytest.fixture
def config() -> ServerConfig:
    """Default configuration (no env or TOML overrides)."""
    return ServerConfig()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def services(store, config) -> TrackerServices:
    return TrackerServices.create(store, config)


@pytest.fixture
def installed_services(services):
    """Install ``services`` as the global instance used by the tools."""
    set_services(services)
    yield services
    set_services(None)


# =============================================================================
# Seeded records
# =============================================================================


@pytest.fixture
def project(services) -> Dict[str, Any]:
    """An empty ENG project."""
    return services.projects.create_project("Engineering", "ENG")


@pytest.fixture
def issue_tree(services, project) -> Dict[str, str]:
    """ENG-1 with children ENG-2, ENG-3 and grandchild ENG-4 under ENG-2.

    Returns:
        Mapping of role name to issue identifier
    """
    issues = services.issues
    root = issues.create_issue("ENG", "Root")
    child_a = issues.create_subissue(root["identifier"], "Child A")
    child_b = issues.create_subissue(root["identifier"], "Child B")
    grandchild = issues.create_subissue(child_a["identifier"], "Grandchild")
    return {
        "root": root["identifier"],
        "child_a": child_a["identifier"],
        "child_b": child_b["identifier"],
        "grandchild": grandchild["identifier"],
    }


@pytest.fixture
def snapshot(store) -> Callable[[], Dict[str, List[Dict[str, Any]]]]:
    """Callable returning every document in the store, grouped by kind."""

    def take() -> Dict[str, List[Dict[str, Any]]]:
        return {
            kind.value: store.find_all(kind, {}, sort={"_id": 1})
            for kind in DocumentKind
        }

    return take
