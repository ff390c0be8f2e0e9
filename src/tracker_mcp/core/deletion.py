"""
Cascading deletion of issues, projects and the records a project owns.

Every delete runs the impact analysis first. ``dry_run`` returns that
analysis untouched; otherwise the blocker policy is applied and the plan
is executed one store mutation per document.

Issue subtrees are removed children first (the reverse of the analyzer's
breadth-first order), so no node is removed while any of its children is
still present. A child is removed with ``remove_child``, which moves the
parent's ``sub_issues`` counter in the same mutation.

There is no rollback. If a removal fails after others succeeded, a
:class:`PartialDeletionError` lists what was removed, what failed and what
was never attempted.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, NoReturn, Optional, Sequence, Union

from tracker_mcp.core.batch_operations import (
    BatchOrchestrator,
    BatchReport,
    ItemContext,
    validate_batch_items,
)
from tracker_mcp.core.errors import (
    ConflictError,
    NotFoundError,
    PartialDeletionError,
    TrackerError,
)
from tracker_mcp.core.impact import (
    CHILD_COUNTER_FIELD,
    ImpactAnalyzer,
    IssueImpact,
    ProjectImpact,
    ReferenceImpact,
    issue_summary,
)
from tracker_mcp.core.models import DocumentKind, utc_now
from tracker_mcp.core.responses import ErrorCode
from tracker_mcp.core.sequence import SequenceCounter
from tracker_mcp.core.store import (
    Document,
    DocumentStore,
    resolve_project,
    resolve_template,
)

logger = logging.getLogger(__name__)


@dataclass
class DeletionResult:
    """Outcome of an executed (non dry-run) deletion."""

    kind: DocumentKind
    target: Dict[str, Any]
    deleted: List[str] = field(default_factory=list)
    already_removed: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleted": True,
            "kind": self.kind.value,
            "target": self.target,
            "deleted_count": len(self.deleted),
            "removed": list(self.deleted),
            "already_removed": list(self.already_removed),
            "updated_issues": list(self.updated),
            "counts": dict(self.counts),
            "warnings": list(self.warnings),
        }


class _RemovalLog:
    """Tracks progress through a removal plan for partial-failure reports."""

    def __init__(self, plan: Sequence[str]):
        self.plan = list(plan)
        self.deleted: List[str] = []
        self.already_removed: List[str] = []

    def done(self, name: str, removed: bool) -> None:
        (self.deleted if removed else self.already_removed).append(name)

    def absorb(self, result: DeletionResult) -> None:
        self.deleted.extend(result.deleted)
        self.already_removed.extend(result.already_removed)

    def raise_failure(self, name: str, exc: TrackerError, target: str) -> NoReturn:
        """Re-raise ``exc``, or wrap it when earlier removals already happened."""
        if isinstance(exc, PartialDeletionError):
            self.deleted.extend(exc.deleted)
            failed = list(exc.failed)
        else:
            failed = [{"name": name, "error": exc.message}]
        if not self.deleted:
            raise exc

        finished = set(self.deleted) | set(self.already_removed)
        failed_names = {entry["name"] for entry in failed}
        pending = [n for n in self.plan if n not in finished and n not in failed_names]
        logger.error(
            f"Deletion of {target} stopped after removing {len(self.deleted)} "
            f"document(s); failed at {name}"
        )
        raise PartialDeletionError(
            f"Deletion of {target} partially failed: removed {len(self.deleted)}, "
            f"failed at {name}",
            deleted=list(self.deleted),
            failed=failed,
            pending=pending,
        ) from exc


def _name(doc: Document) -> str:
    return doc.get("identifier") or doc.get("label") or doc.get("title") or doc["_id"]


class CascadingDeleter:
    """Executes deletion plans produced by :class:`ImpactAnalyzer`.

    Args:
        store: Backing document store
        analyzer: Impact analyzer (built from ``store`` if omitted)
        sequence: Counter whose cache is dropped when a project is deleted
        orchestrator: Batch driver for :meth:`bulk_delete_issues`
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        analyzer: Optional[ImpactAnalyzer] = None,
        sequence: Optional[SequenceCounter] = None,
        orchestrator: Optional[BatchOrchestrator] = None,
    ):
        self._store = store
        self.analyzer = analyzer or ImpactAnalyzer(store)
        self._sequence = sequence
        self._orchestrator = orchestrator or BatchOrchestrator()

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def delete_issue(
        self,
        issue_ref: str,
        *,
        cascade: bool = True,
        force: bool = False,
        dry_run: bool = False,
    ) -> Union[IssueImpact, DeletionResult]:
        """Delete an issue together with its subtree.

        Returns:
            The impact report on dry runs, else a :class:`DeletionResult`

        Raises:
            NotFoundError: issue does not exist, or was removed by another
                caller before its own removal ran
            ConflictError: sub-issues exist without cascade/force, or the
                issue blocks other issues and force is not set
            PartialDeletionError: the cascade stopped partway
        """
        impact = self.analyzer.analyze_issue_deletion(issue_ref, force=force)
        if dry_run:
            return impact

        issue = impact.issue
        identifier = issue["identifier"]
        if impact.descendants and not cascade and not force:
            raise ConflictError(
                f"Issue {identifier} has {impact.cascade_count} sub-issues; "
                "cascade or force required",
                code=ErrorCode.DELETION_BLOCKED,
                details={"cascade_count": impact.cascade_count, "blockers": impact.blockers},
                remediation="Pass cascade=true to delete sub-issues too, "
                "or preview with dry_run=true.",
            )
        if impact.blocked_issues and not force:
            raise ConflictError(
                f"Issue {identifier} blocks other issues: "
                + ", ".join(_name(doc) for doc in impact.blocked_issues),
                code=ErrorCode.DELETION_BLOCKED,
                details={"blockers": impact.blockers},
                remediation="Remove the blocking relations or pass force=true.",
            )

        plan = [node.doc for node in reversed(impact.descendants)] + [issue]
        log = _RemovalLog([_name(doc) for doc in plan])
        for doc in plan:
            try:
                removed = self._remove_issue(doc)
            except TrackerError as exc:
                log.raise_failure(_name(doc), exc, identifier)
            log.done(_name(doc), removed)
            if removed:
                continue
            if doc is issue:
                logger.info(f"Issue {identifier} was removed by another caller")
                raise NotFoundError(
                    "Issue",
                    identifier,
                    code=ErrorCode.ISSUE_NOT_FOUND,
                    message=f"Issue '{identifier}' was already deleted",
                )
            logger.info(f"Issue {_name(doc)} was already removed")

        logger.info(
            f"Deleted issue {identifier} with {impact.cascade_count} sub-issue(s)"
        )
        return DeletionResult(
            kind=DocumentKind.ISSUE,
            target=issue_summary(issue),
            deleted=log.deleted,
            already_removed=log.already_removed,
            counts={"issues": len(log.deleted)},
            warnings=list(impact.warnings),
        )

    def _remove_issue(self, doc: Document) -> bool:
        parent_id = doc.get("parent")
        if parent_id:
            return self._store.remove_child(
                DocumentKind.ISSUE, parent_id, doc["_id"], CHILD_COUNTER_FIELD
            )
        return self._store.remove(DocumentKind.ISSUE, doc["_id"])

    def bulk_delete_issues(
        self,
        identifiers: Sequence[str],
        *,
        cascade: bool = True,
        force: bool = False,
        dry_run: bool = False,
        batch_size: Optional[int] = None,
        continue_on_error: bool = True,
        raise_on_stop: bool = False,
    ) -> BatchReport:
        """Delete many issues, isolating per-item failures."""
        warnings = validate_batch_items(
            identifiers, key=lambda ref: str(ref).strip().upper()
        )

        def apply(identifier: str, context: ItemContext) -> Dict[str, Any]:
            outcome = self.delete_issue(
                identifier, cascade=cascade, force=force, dry_run=context.dry_run
            )
            return outcome.to_dict()

        report = self._orchestrator.run(
            list(identifiers),
            apply,
            batch_size=batch_size,
            continue_on_error=continue_on_error,
            dry_run=dry_run,
            raise_on_stop=raise_on_stop,
        )
        report.warnings.extend(warnings)
        return report

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def delete_project(
        self, project_ref: str, *, force: bool = False, dry_run: bool = False
    ) -> Union[ProjectImpact, DeletionResult]:
        """Delete a project with its templates, milestones, components and issues.

        The project document itself is removed last.
        """
        impact = self.analyzer.analyze_project_deletion(project_ref, force=force)
        if dry_run:
            return impact

        project = impact.project
        identifier = project["identifier"]
        if impact.blockers:
            raise ConflictError(
                f"Project {identifier} cannot be deleted: " + "; ".join(impact.blockers),
                code=ErrorCode.DELETION_BLOCKED,
                details={"blockers": impact.blockers},
                remediation="Resolve the blockers, archive the project instead, "
                "or pass force=true.",
            )

        plan_names = (
            [_name(d) for d in impact.templates]
            + [_name(d) for d in impact.milestones]
            + [_name(d) for d in impact.components]
            + [_name(d) for d in impact.issues]
            + [identifier]
        )
        log = _RemovalLog(plan_names)
        counts = {"templates": 0, "milestones": 0, "components": 0, "issues": 0}

        for kind, docs, key in (
            (DocumentKind.TEMPLATE, impact.templates, "templates"),
            (DocumentKind.MILESTONE, impact.milestones, "milestones"),
            (DocumentKind.COMPONENT, impact.components, "components"),
        ):
            for doc in docs:
                try:
                    removed = self._store.remove(kind, doc["_id"])
                except TrackerError as exc:
                    log.raise_failure(_name(doc), exc, identifier)
                log.done(_name(doc), removed)
                counts[key] += int(removed)

        counts["issues"] = self._delete_project_issues(project, impact.issues, log)

        try:
            removed = self._store.remove(DocumentKind.PROJECT, project["_id"])
        except TrackerError as exc:
            log.raise_failure(identifier, exc, identifier)
        log.done(identifier, removed)
        if self._sequence is not None:
            self._sequence.invalidate(project["_id"])

        logger.info(
            f"Deleted project {identifier}: "
            + ", ".join(f"{count} {key}" for key, count in counts.items())
        )
        return DeletionResult(
            kind=DocumentKind.PROJECT,
            target={"id": project["_id"], "identifier": identifier, "name": project.get("name")},
            deleted=log.deleted,
            already_removed=log.already_removed,
            counts=counts,
            warnings=list(impact.warnings),
        )

    def _delete_project_issues(
        self, project: Document, issues: List[Document], log: _RemovalLog
    ) -> int:
        ids = {doc["_id"] for doc in issues}
        roots = [doc for doc in issues if doc.get("parent") not in ids]
        before = len(log.deleted)

        for root in roots:
            self._delete_issue_tree(root, log, project["identifier"])

        # Issues only reachable through a parent cycle have no root.
        leftovers = self._store.find_all(
            DocumentKind.ISSUE, {"space": project["_id"]}, sort={"number": 1}
        )
        for doc in leftovers:
            self._delete_issue_tree(doc, log, project["identifier"])

        return len(log.deleted) - before

    def _delete_issue_tree(self, doc: Document, log: _RemovalLog, target: str) -> None:
        try:
            result = self.delete_issue(doc["_id"], cascade=True, force=True)
        except NotFoundError:
            log.done(_name(doc), False)
            return
        except TrackerError as exc:
            log.raise_failure(_name(doc), exc, target)
        log.absorb(result)

    def archive_project(self, project_ref: str) -> Dict[str, Any]:
        """Flag a project as archived; its contents are left untouched."""
        project = resolve_project(self._store, project_ref)
        if project.get("archived"):
            raise ConflictError(
                f"Project {project['identifier']} is already archived",
                code=ErrorCode.ALREADY_ARCHIVED,
                remediation="Use unarchive to restore the project first.",
            )
        self._store.update(
            DocumentKind.PROJECT,
            project["_id"],
            {"archived": True, "archived_on": utc_now()},
        )
        logger.info(f"Archived project {project['identifier']}")
        return {"identifier": project["identifier"], "archived": True}

    def unarchive_project(self, project_ref: str) -> Dict[str, Any]:
        project = resolve_project(self._store, project_ref)
        if not project.get("archived"):
            raise ConflictError(
                f"Project {project['identifier']} is not archived",
                code=ErrorCode.CONFLICT,
            )
        self._store.update(
            DocumentKind.PROJECT, project["_id"], {"archived": False, "archived_on": None}
        )
        logger.info(f"Unarchived project {project['identifier']}")
        return {"identifier": project["identifier"], "archived": False}

    # ------------------------------------------------------------------
    # Components / milestones
    # ------------------------------------------------------------------

    def delete_component(
        self, project_ref: str, label: str, *, force: bool = False, dry_run: bool = False
    ) -> Union[ReferenceImpact, DeletionResult]:
        impact = self.analyzer.analyze_component_deletion(project_ref, label, force=force)
        return self._delete_reference(impact, "component", dry_run)

    def delete_milestone(
        self, project_ref: str, label: str, *, force: bool = False, dry_run: bool = False
    ) -> Union[ReferenceImpact, DeletionResult]:
        impact = self.analyzer.analyze_milestone_deletion(project_ref, label, force=force)
        return self._delete_reference(impact, "milestone", dry_run)

    def delete_template(self, project_ref: str, template_ref: str) -> DeletionResult:
        """Remove an issue template; issues created from it are unaffected."""
        template = resolve_template(self._store, project_ref, template_ref)
        project = resolve_project(self._store, template["space"])
        title = template.get("title")
        if not self._store.remove(DocumentKind.TEMPLATE, template["_id"]):
            raise NotFoundError("Template", template_ref, code=ErrorCode.TEMPLATE_NOT_FOUND)
        logger.info(f"Deleted template '{title}' from {project['identifier']}")
        return DeletionResult(
            kind=DocumentKind.TEMPLATE,
            target={"id": template["_id"], "title": title, "project": project["identifier"]},
            deleted=[title],
            counts={"templates": 1},
        )

    def _delete_reference(
        self, impact: ReferenceImpact, issue_field: str, dry_run: bool
    ) -> Union[ReferenceImpact, DeletionResult]:
        if dry_run:
            return impact

        target = impact.target
        label = target.get("label")
        if impact.blockers:
            raise ConflictError(
                f"{impact.kind.value.title()} '{label}' is used by "
                f"{len(impact.affected_issues)} issue(s)",
                code=ErrorCode.DELETION_BLOCKED,
                details={
                    "blockers": impact.blockers,
                    "affected_issues": [_name(doc) for doc in impact.affected_issues],
                },
                remediation="Pass force=true to clear the reference on those issues.",
            )

        updated: List[str] = []
        for doc in impact.affected_issues:
            try:
                self._store.update(
                    DocumentKind.ISSUE,
                    doc["_id"],
                    {issue_field: None, "modified_on": utc_now()},
                )
            except NotFoundError:
                logger.info(f"Issue {_name(doc)} disappeared before its {issue_field} was cleared")
                continue
            updated.append(_name(doc))

        removed = self._store.remove(impact.kind, target["_id"])
        logger.info(
            f"Deleted {impact.kind.value} '{label}' from {impact.project['identifier']}; "
            f"cleared on {len(updated)} issue(s)"
        )
        return DeletionResult(
            kind=impact.kind,
            target={"id": target["_id"], "label": label, "project": impact.project["identifier"]},
            deleted=[label] if removed else [],
            already_removed=[] if removed else [label],
            updated=updated,
            counts={"issues_updated": len(updated)},
            warnings=list(impact.warnings),
        )
