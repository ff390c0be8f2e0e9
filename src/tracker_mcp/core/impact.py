"""
Deletion impact analysis.

Computes everything a deletion would touch without writing to the store:
the analyzer issues only ``find_one``/``find_all`` calls. A dry-run delete
is just a delete that stops after this step.

Subtrees are walked breadth-first with an explicit queue and a visited set
keyed on document id, so corrupted parent links that form a cycle end the
walk with a warning instead of looping.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from tracker_mcp.core.errors import NotFoundError
from tracker_mcp.core.models import BLOCKS_RELATION, DocumentKind, IssueStatus
from tracker_mcp.core.responses import ErrorCode
from tracker_mcp.core.store import (
    Document,
    DocumentStore,
    resolve_issue,
    resolve_project,
)

logger = logging.getLogger(__name__)

CHILD_COUNTER_FIELD = "sub_issues"


def issue_summary(doc: Document) -> Dict[str, Any]:
    return {
        "id": doc["_id"],
        "identifier": doc.get("identifier"),
        "title": doc.get("title"),
        "status": doc.get("status"),
    }


@dataclass
class SubtreeNode:
    """A descendant found during traversal, with its distance from the target."""

    doc: Document
    depth: int

    @property
    def identifier(self) -> str:
        return self.doc.get("identifier") or self.doc["_id"]


@dataclass
class IssueImpact:
    """What deleting one issue would remove.

    ``descendants`` is in breadth-first order: every node appears after its
    parent, so reversing the list yields a children-first removal order.
    """

    issue: Document
    descendants: List[SubtreeNode] = field(default_factory=list)
    blocked_issues: List[Document] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    direct_count: int = 1

    @property
    def cascade_count(self) -> int:
        return len(self.descendants)

    @property
    def can_delete(self) -> bool:
        return not self.blockers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": {"kind": DocumentKind.ISSUE.value, **issue_summary(self.issue)},
            "direct_count": self.direct_count,
            "cascade_count": self.cascade_count,
            "total_count": self.direct_count + self.cascade_count,
            "descendants": [
                {**issue_summary(node.doc), "depth": node.depth}
                for node in self.descendants
            ],
            "blocks": [issue_summary(doc) for doc in self.blocked_issues],
            "blockers": list(self.blockers),
            "warnings": list(self.warnings),
            "can_delete": self.can_delete,
        }


@dataclass
class ProjectImpact:
    """What deleting a project would remove."""

    project: Document
    issues: List[Document] = field(default_factory=list)
    components: List[Document] = field(default_factory=list)
    milestones: List[Document] = field(default_factory=list)
    templates: List[Document] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    direct_count: int = 1

    @property
    def cascade_count(self) -> int:
        return (
            len(self.issues)
            + len(self.components)
            + len(self.milestones)
            + len(self.templates)
        )

    @property
    def can_delete(self) -> bool:
        return not self.blockers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": {
                "kind": DocumentKind.PROJECT.value,
                "id": self.project["_id"],
                "identifier": self.project.get("identifier"),
                "name": self.project.get("name"),
            },
            "direct_count": self.direct_count,
            "cascade_count": self.cascade_count,
            "counts": {
                "issues": len(self.issues),
                "components": len(self.components),
                "milestones": len(self.milestones),
                "templates": len(self.templates),
            },
            "issues": [issue_summary(doc) for doc in self.issues],
            "components": [doc.get("label") for doc in self.components],
            "milestones": [doc.get("label") for doc in self.milestones],
            "templates": [doc.get("title") for doc in self.templates],
            "blockers": list(self.blockers),
            "warnings": list(self.warnings),
            "can_delete": self.can_delete,
        }


@dataclass
class ReferenceImpact:
    """What deleting a component or milestone would affect."""

    kind: DocumentKind
    target: Document
    project: Document
    affected_issues: List[Document] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    direct_count: int = 1

    @property
    def cascade_count(self) -> int:
        # Referencing issues are updated, not removed.
        return 0

    @property
    def can_delete(self) -> bool:
        return not self.blockers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": {
                "kind": self.kind.value,
                "id": self.target["_id"],
                "label": self.target.get("label"),
                "project": self.project.get("identifier"),
            },
            "direct_count": self.direct_count,
            "cascade_count": self.cascade_count,
            "affected_issue_count": len(self.affected_issues),
            "affected_issues": [issue_summary(doc) for doc in self.affected_issues],
            "blockers": list(self.blockers),
            "warnings": list(self.warnings),
            "can_delete": self.can_delete,
        }


_REFERENCE_FIELDS = {
    DocumentKind.COMPONENT: ("component", ErrorCode.COMPONENT_NOT_FOUND),
    DocumentKind.MILESTONE: ("milestone", ErrorCode.MILESTONE_NOT_FOUND),
}


class ImpactAnalyzer:
    """Read-only deletion previews.

    With ``force=True`` the same conditions are still detected but are
    reported as warnings, since a forced deletion will not stop for them.
    """

    def __init__(self, store: DocumentStore):
        self._store = store

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def analyze_issue_deletion(self, issue_ref: str, *, force: bool = False) -> IssueImpact:
        issue = resolve_issue(self._store, issue_ref)
        descendants, warnings = self.collect_subtree(issue)
        impact = IssueImpact(issue=issue, descendants=descendants, warnings=warnings)
        conditions: List[str] = []

        if descendants:
            conditions.append(
                f"Issue {issue['identifier']} has {len(descendants)} sub-issue(s); "
                "cascade or force required"
            )

        subtree_ids = {issue["_id"]} | {node.doc["_id"] for node in descendants}
        impact.blocked_issues = self._blocked_issues(issue, subtree_ids)
        for blocked in impact.blocked_issues:
            conditions.append(
                f"Issue {issue['identifier']} blocks {blocked.get('identifier')}"
            )

        self._file_conditions(impact, conditions, force)
        return impact

    def collect_subtree(
        self, root: Document
    ) -> Tuple[List[SubtreeNode], List[str]]:
        """Enumerate all descendants of ``root`` breadth-first.

        Returns:
            (descendants, warnings) where warnings note cycles and child
            counters that disagree with the children actually present
        """
        visited = {root["_id"]}
        queue: Deque[Tuple[Document, int]] = deque([(root, 0)])
        ordered: List[SubtreeNode] = []
        warnings: List[str] = []

        while queue:
            node, depth = queue.popleft()
            children = self._store.find_all(
                DocumentKind.ISSUE, {"parent": node["_id"]}, sort={"number": 1}
            )

            recorded = node.get(CHILD_COUNTER_FIELD) or 0
            if recorded != len(children):
                warnings.append(
                    f"Issue {node.get('identifier')} records {recorded} sub-issue(s) "
                    f"but {len(children)} exist"
                )

            for child in children:
                if child["_id"] in visited:
                    warnings.append(
                        f"Cycle detected: {child.get('identifier')} is already part "
                        f"of this subtree (reached again from {node.get('identifier')})"
                    )
                    logger.warning(
                        f"Parent cycle at {child.get('identifier')} under "
                        f"{root.get('identifier')}"
                    )
                    continue
                visited.add(child["_id"])
                ordered.append(SubtreeNode(doc=child, depth=depth + 1))
                queue.append((child, depth + 1))

        return ordered, warnings

    def _blocked_issues(self, issue: Document, exclude: set) -> List[Document]:
        blocked = []
        for relation in issue.get("relations") or []:
            if relation.get("type") != BLOCKS_RELATION:
                continue
            target_id = relation.get("issue")
            if not target_id or target_id in exclude:
                continue
            target = self._store.find_one(DocumentKind.ISSUE, {"_id": target_id})
            if target is not None:
                blocked.append(target)
        return blocked

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def analyze_project_deletion(
        self, project_ref: str, *, force: bool = False
    ) -> ProjectImpact:
        project = resolve_project(self._store, project_ref)
        scope = {"space": project["_id"]}

        impact = ProjectImpact(
            project=project,
            issues=self._store.find_all(DocumentKind.ISSUE, scope, sort={"number": 1}),
            components=self._store.find_all(DocumentKind.COMPONENT, scope),
            milestones=self._store.find_all(DocumentKind.MILESTONE, scope),
            templates=self._store.find_all(DocumentKind.TEMPLATE, scope),
        )

        conditions: List[str] = []
        active = [doc for doc in impact.issues if _is_active(doc)]
        if active:
            conditions.append(
                f"Project {project['identifier']} has {len(active)} active issue(s)"
            )
        if project.get("github_integration"):
            conditions.append(
                f"Project {project['identifier']} has GitHub integration enabled"
            )

        self._file_conditions(impact, conditions, force)
        return impact

    # ------------------------------------------------------------------
    # Components / milestones
    # ------------------------------------------------------------------

    def analyze_component_deletion(
        self, project_ref: str, label: str, *, force: bool = False
    ) -> ReferenceImpact:
        return self._analyze_reference(DocumentKind.COMPONENT, project_ref, label, force)

    def analyze_milestone_deletion(
        self, project_ref: str, label: str, *, force: bool = False
    ) -> ReferenceImpact:
        return self._analyze_reference(DocumentKind.MILESTONE, project_ref, label, force)

    def _analyze_reference(
        self, kind: DocumentKind, project_ref: str, label: str, force: bool
    ) -> ReferenceImpact:
        project = resolve_project(self._store, project_ref)
        target = find_labeled(self._store, kind, project["_id"], label)
        issue_field, _ = _REFERENCE_FIELDS[kind]

        impact = ReferenceImpact(
            kind=kind,
            target=target,
            project=project,
            affected_issues=self._store.find_all(
                DocumentKind.ISSUE,
                {"space": project["_id"], issue_field: target["_id"]},
                sort={"number": 1},
            ),
        )

        conditions: List[str] = []
        if impact.affected_issues:
            conditions.append(
                f"{kind.value.title()} '{target.get('label')}' is referenced by "
                f"{len(impact.affected_issues)} issue(s)"
            )
        self._file_conditions(impact, conditions, force)
        return impact

    @staticmethod
    def _file_conditions(impact: Any, conditions: List[str], force: bool) -> None:
        if force:
            impact.warnings.extend(f"Forced: {c}" for c in conditions)
        else:
            impact.blockers.extend(conditions)


def find_labeled(
    store: DocumentStore,
    kind: DocumentKind,
    project_id: str,
    label: str,
    *,
    required: bool = True,
) -> Optional[Document]:
    """Look up a component or milestone by label within a project."""
    doc = store.find_one(kind, {"space": project_id, "label": label})
    if doc is None and required:
        _, code = _REFERENCE_FIELDS[kind]
        raise NotFoundError(kind.value.title(), label, code=code)
    return doc


def _is_active(issue: Document) -> bool:
    try:
        return IssueStatus(issue.get("status")).is_active
    except ValueError:
        return True
