"""Wiring of the store, counter and services used by the tools."""

import logging
from dataclasses import dataclass
from typing import Optional

from tracker_mcp.config import ServerConfig, get_config
from tracker_mcp.core.batch_operations import BatchOrchestrator
from tracker_mcp.core.cache import TTLCache
from tracker_mcp.core.deletion import CascadingDeleter
from tracker_mcp.core.errors import ValidationError
from tracker_mcp.core.impact import ImpactAnalyzer
from tracker_mcp.core.issues import IssueService
from tracker_mcp.core.projects import ProjectService
from tracker_mcp.core.sequence import SequenceCounter
from tracker_mcp.core.store import DocumentStore, HttpDocumentStore, InMemoryDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class TrackerServices:
    """Everything a tool handler needs, built around one store."""

    store: DocumentStore
    sequence: SequenceCounter
    orchestrator: BatchOrchestrator
    analyzer: ImpactAnalyzer
    deleter: CascadingDeleter
    issues: IssueService
    projects: ProjectService

    @classmethod
    def create(
        cls, store: DocumentStore, config: Optional[ServerConfig] = None
    ) -> "TrackerServices":
        config = config or ServerConfig()
        sequence = SequenceCounter(
            store, cache=TTLCache(config.sequence.cache_ttl_seconds)
        )
        orchestrator = BatchOrchestrator(
            default_batch_size=config.batch.default_batch_size,
            max_batch_size=config.batch.max_batch_size,
            chunk_delay=config.batch.chunk_delay_ms / 1000.0,
        )
        analyzer = ImpactAnalyzer(store)
        return cls(
            store=store,
            sequence=sequence,
            orchestrator=orchestrator,
            analyzer=analyzer,
            deleter=CascadingDeleter(
                store, analyzer=analyzer, sequence=sequence, orchestrator=orchestrator
            ),
            issues=IssueService(
                store,
                sequence,
                orchestrator=orchestrator,
                max_bulk_items=config.batch.max_items,
            ),
            projects=ProjectService(store),
        )


def build_store(config: ServerConfig) -> DocumentStore:
    """Create the document store selected by ``config.store.backend``."""
    if config.store.backend == "http":
        if not config.store.url:
            raise ValidationError(
                "The http store backend requires a URL",
                field="store.url",
                remediation="Set TRACKER_MCP_STORE_URL or [store].url",
            )
        logger.info(f"Using HTTP document store at {config.store.url}")
        return HttpDocumentStore(
            config.store.url,
            token=config.store.token,
            timeout=config.store.timeout,
        )
    logger.info("Using in-memory document store")
    return InMemoryDocumentStore()


# Global services instance
_services: Optional[TrackerServices] = None


def get_services(config: Optional[ServerConfig] = None) -> TrackerServices:
    """Get the global services, building them from ``config`` on first use."""
    global _services
    if _services is None:
        config = config or get_config()
        _services = TrackerServices.create(build_store(config), config)
    return _services


def set_services(services: Optional[TrackerServices]) -> None:
    """Replace (or with None, reset) the global services."""
    global _services
    _services = services
