"""
Per-project issue number generation.

Every number handed out comes from a single server-side atomic increment of
the project's ``sequence`` field; the post-increment value is returned by
that same call. Nothing in this process coordinates concurrent callers,
so uniqueness rests entirely on the store primitive.

Before incrementing, the counter is healed: if the stored value is missing
or lower than the highest issue number present in the project, it is
raised to that maximum with the store's conditional ``set_if_greater``.
Raising is monotonic, so concurrent healers cannot lower the counter or
undo a reservation made in between.

A short TTL cache remembers projects whose counter was verified recently,
and only the healing scan is skipped for them. The increment itself always
goes to the store.
"""

import logging
from typing import Any, Dict, List, Optional

from tracker_mcp.core.cache import TTLCache
from tracker_mcp.core.errors import SequenceError, ValidationError
from tracker_mcp.core.models import DocumentKind
from tracker_mcp.core.store import Document, DocumentStore, resolve_project

logger = logging.getLogger(__name__)

SEQUENCE_FIELD = "sequence"
DEFAULT_CACHE_TTL = 10.0


class SequenceCounter:
    """Hands out strictly increasing issue numbers per project.

    Args:
        store: Backing document store
        cache: Verification cache; defaults to a 10 second TTL
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        cache: Optional[TTLCache[int]] = None,
    ):
        self._store = store
        self._verified = cache if cache is not None else TTLCache(DEFAULT_CACHE_TTL)

    def next(self, project_ref: str) -> int:
        """Return the next number for a project.

        Raises:
            NotFoundError: project does not exist
            SequenceError: the increment returned no usable value
        """
        return self._increment(project_ref, 1)

    def reserve_batch(self, project_ref: str, count: int) -> List[int]:
        """Reserve ``count`` contiguous numbers with one increment.

        Returns:
            The reserved numbers in ascending order
        """
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise ValidationError(
                f"count must be a positive integer, got {count!r}", field="count"
            )
        last = self._increment(project_ref, count)
        return list(range(last - count + 1, last + 1))

    def invalidate(self, project_id: str) -> None:
        """Forget that a project's counter was verified."""
        self._verified.invalidate(project_id)

    def cache_stats(self) -> Dict[str, Any]:
        return self._verified.get_stats()

    def _increment(self, project_ref: str, delta: int) -> int:
        project = resolve_project(self._store, project_ref)
        project_id = project["_id"]

        if self._verified.get(project_id) is None:
            self._heal(project)

        new_value = self._store.atomic_increment(
            DocumentKind.PROJECT, project_id, SEQUENCE_FIELD, delta
        )
        if not isinstance(new_value, int) or isinstance(new_value, bool) or new_value < delta:
            self._verified.invalidate(project_id)
            raise SequenceError(
                f"Counter increment for project {project['identifier']} "
                f"returned no usable value: {new_value!r}",
                details={"project": project["identifier"], "value": new_value},
            )

        self._verified.set(project_id, new_value)
        logger.debug(
            f"Sequence for {project['identifier']} advanced by {delta} to {new_value}"
        )
        return new_value

    def _heal(self, project: Document) -> None:
        stored = project.get(SEQUENCE_FIELD)
        highest = self._highest_issue_number(project["_id"])

        if isinstance(stored, int) and not isinstance(stored, bool) and stored >= highest:
            return

        raised = self._store.set_if_greater(
            DocumentKind.PROJECT, project["_id"], SEQUENCE_FIELD, highest
        )
        logger.warning(
            f"Healed sequence for project {project['identifier']}: "
            f"stored={stored!r}, highest issue number={highest}, now={raised}"
        )

    def _highest_issue_number(self, project_id: str) -> int:
        top = self._store.find_one(
            DocumentKind.ISSUE, {"space": project_id}, sort={"number": -1}
        )
        if top is None:
            return 0
        number = top.get("number")
        return number if isinstance(number, int) else 0
