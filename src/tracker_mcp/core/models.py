"""Record vocabularies and identifier helpers.

Documents themselves are plain dicts as returned by the store. An issue
document looks like::

    {
        "_id": "iss_3f2a...",
        "space": "prj_91c0...",       # owning project _id
        "identifier": "PROJ-12",
        "number": 12,
        "title": "...",
        "description": "",
        "status": "backlog",
        "priority": "medium",
        "component": None,             # component _id or None
        "milestone": None,             # milestone _id or None
        "parent": None,                # parent issue _id or None
        "sub_issues": 0,               # live child count
        "relations": [],               # [{"type": "blocks", "issue": <_id>}]
        "created_on": "...",
        "modified_on": "...",
    }
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


class DocumentKind(str, Enum):
    PROJECT = "project"
    ISSUE = "issue"
    COMPONENT = "component"
    MILESTONE = "milestone"
    TEMPLATE = "template"


class Priority(str, Enum):
    NO_PRIORITY = "no_priority"
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueStatus(str, Enum):
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELED = "canceled"

    @property
    def is_active(self) -> bool:
        return self not in (IssueStatus.DONE, IssueStatus.CANCELED)


class MilestoneStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"


PROJECT_IDENTIFIER_RE = re.compile(r"^[A-Z][A-Z0-9]{0,4}$")
ISSUE_IDENTIFIER_RE = re.compile(r"^([A-Z][A-Z0-9]*)-(\d+)$")

# Relation type that blocks deletion of the source issue.
BLOCKS_RELATION = "blocks"


def format_identifier(prefix: str, number: int) -> str:
    return f"{prefix}-{number}"


def parse_identifier(identifier: str) -> Optional[Tuple[str, int]]:
    """Split ``"PROJ-12"`` into ``("PROJ", 12)``; None if malformed."""
    match = ISSUE_IDENTIFIER_RE.match(identifier.strip().upper())
    if not match:
        return None
    return match.group(1), int(match.group(2))


def normalize_choice(value: str) -> str:
    """Lowercase and join words with underscores (``"In Progress"`` -> ``in_progress``)."""
    return re.sub(r"[\s\-]+", "_", value.strip().lower())


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
