"""Core issue tracking operations for tracker-mcp."""

from tracker_mcp.core.batch_operations import BatchOrchestrator, BatchReport
from tracker_mcp.core.deletion import CascadingDeleter, DeletionResult
from tracker_mcp.core.impact import ImpactAnalyzer
from tracker_mcp.core.issues import IssueService
from tracker_mcp.core.projects import ProjectService
from tracker_mcp.core.sequence import SequenceCounter
from tracker_mcp.core.store import (
    DocumentStore,
    HttpDocumentStore,
    InMemoryDocumentStore,
)

__all__ = [
    "BatchOrchestrator",
    "BatchReport",
    "CascadingDeleter",
    "DeletionResult",
    "DocumentStore",
    "HttpDocumentStore",
    "ImpactAnalyzer",
    "InMemoryDocumentStore",
    "IssueService",
    "ProjectService",
    "SequenceCounter",
]
