"""
Issue creation, field updates and their bulk forms.

Numbers come from :class:`SequenceCounter`. A single create calls ``next``
once; a bulk create reserves one contiguous range per project for each
chunk through the orchestrator's ``prepare_chunk`` hook, so a chunk of
ten issues costs one counter round trip instead of ten.

Field updates dispatch through ``_FIELD_HANDLERS``, a table keyed by
:class:`IssueField`. Each handler validates its value and returns the exact
store mutation for that field.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from tracker_mcp.core.batch_operations import (
    BatchOrchestrator,
    BatchReport,
    ItemContext,
    validate_batch_items,
)
from tracker_mcp.core.errors import TrackerError, ValidationError
from tracker_mcp.core.impact import CHILD_COUNTER_FIELD, find_labeled
from tracker_mcp.core.models import (
    DocumentKind,
    IssueStatus,
    Priority,
    format_identifier,
    normalize_choice,
    utc_now,
)
from tracker_mcp.core.responses import ErrorCode
from tracker_mcp.core.sequence import SequenceCounter
from tracker_mcp.core.store import (
    Document,
    DocumentStore,
    resolve_issue,
    resolve_project,
    resolve_template,
)

logger = logging.getLogger(__name__)

MAX_BULK_ITEMS = 100
"""Largest number of items accepted by one bulk call."""

BULK_CREATE_KEYS = frozenset(
    {"title", "description", "priority", "status", "component", "milestone", "parent"}
)
TEXT_ITEM_KEYS = ("description", "component", "milestone", "parent")


class IssueField(str, Enum):
    """Fields that ``update_issue`` can change."""

    TITLE = "title"
    DESCRIPTION = "description"
    STATUS = "status"
    PRIORITY = "priority"
    COMPONENT = "component"
    MILESTONE = "milestone"


def parse_priority(value: Any) -> Priority:
    if isinstance(value, Priority):
        return value
    try:
        return Priority(normalize_choice(str(value)))
    except ValueError:
        raise ValidationError(
            f"Invalid priority '{value}'",
            field="priority",
            details={"allowed": [p.value for p in Priority]},
        ) from None


def parse_status(value: Any) -> IssueStatus:
    if isinstance(value, IssueStatus):
        return value
    try:
        return IssueStatus(normalize_choice(str(value)))
    except ValueError:
        raise ValidationError(
            f"Invalid status '{value}'",
            field="status",
            details={"allowed": [s.value for s in IssueStatus]},
        ) from None


def issue_view(doc: Document) -> Dict[str, Any]:
    return {
        "id": doc["_id"],
        "identifier": doc.get("identifier"),
        "number": doc.get("number"),
        "title": doc.get("title"),
        "description": doc.get("description", ""),
        "status": doc.get("status"),
        "priority": doc.get("priority"),
        "component": doc.get("component"),
        "milestone": doc.get("milestone"),
        "parent": doc.get("parent"),
        "sub_issues": doc.get(CHILD_COUNTER_FIELD, 0),
    }


@dataclass
class IssueDraft:
    """A validated issue that has not been numbered or stored yet."""

    project: Document
    parent: Optional[Document]
    fields: Dict[str, Any] = field(default_factory=dict)

    def preview(self) -> Dict[str, Any]:
        return {
            "project": self.project["identifier"],
            "identifier": None,
            "parent": self.parent["identifier"] if self.parent else None,
            **self.fields,
            "would_create": True,
        }


@dataclass
class FieldChange:
    """Store mutation produced by a field handler."""

    updates: Dict[str, Any]
    display: Any


FieldHandler = Callable[["IssueService", Document, Any], FieldChange]


def _set_title(service: "IssueService", issue: Document, value: Any) -> FieldChange:
    title = _require_title(value)
    return FieldChange({"title": title}, title)


def _set_description(service: "IssueService", issue: Document, value: Any) -> FieldChange:
    description = "" if value is None else str(value)
    return FieldChange({"description": description}, description)


def _set_status(service: "IssueService", issue: Document, value: Any) -> FieldChange:
    status = parse_status(value)
    return FieldChange({"status": status.value}, status.value)


def _set_priority(service: "IssueService", issue: Document, value: Any) -> FieldChange:
    priority = parse_priority(value)
    return FieldChange({"priority": priority.value}, priority.value)


def _set_component(service: "IssueService", issue: Document, value: Any) -> FieldChange:
    return service._reference_change(DocumentKind.COMPONENT, issue, value)


def _set_milestone(service: "IssueService", issue: Document, value: Any) -> FieldChange:
    return service._reference_change(DocumentKind.MILESTONE, issue, value)


_FIELD_HANDLERS: Dict[IssueField, FieldHandler] = {
    IssueField.TITLE: _set_title,
    IssueField.DESCRIPTION: _set_description,
    IssueField.STATUS: _set_status,
    IssueField.PRIORITY: _set_priority,
    IssueField.COMPONENT: _set_component,
    IssueField.MILESTONE: _set_milestone,
}


def _require_title(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Title must be a non-empty string", field="title")
    return value.strip()


class IssueService:
    """Create and update issues.

    Args:
        store: Backing document store
        sequence: Issue number source
        orchestrator: Batch driver for the bulk operations
        max_bulk_items: Upper bound on items per bulk call
    """

    def __init__(
        self,
        store: DocumentStore,
        sequence: SequenceCounter,
        *,
        orchestrator: Optional[BatchOrchestrator] = None,
        max_bulk_items: int = MAX_BULK_ITEMS,
    ):
        self._store = store
        self._sequence = sequence
        self._orchestrator = orchestrator or BatchOrchestrator()
        self.max_bulk_items = max_bulk_items

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def draft_issue(
        self,
        project_ref: Optional[str],
        title: Any,
        *,
        description: Optional[str] = None,
        priority: Any = None,
        status: Any = None,
        component: Optional[str] = None,
        milestone: Optional[str] = None,
        parent: Optional[str] = None,
    ) -> IssueDraft:
        """Validate issue input and resolve its references without writing."""
        title = _require_title(title)
        priority_value = parse_priority(priority) if priority else Priority.NO_PRIORITY
        status_value = parse_status(status) if status else IssueStatus.BACKLOG

        parent_doc = resolve_issue(self._store, parent) if parent else None
        if parent_doc is not None:
            project = resolve_project(self._store, parent_doc["space"])
            if project_ref and resolve_project(self._store, project_ref)["_id"] != project["_id"]:
                raise ValidationError(
                    f"Parent issue {parent_doc['identifier']} belongs to another project",
                    field="parent",
                    code=ErrorCode.INVALID_PARENT,
                )
        elif project_ref:
            project = resolve_project(self._store, project_ref)
        else:
            raise ValidationError("project is required", field="project", code=ErrorCode.MISSING_REQUIRED)

        component_id = self._reference_id(
            DocumentKind.COMPONENT, project, component, parent_doc
        )
        milestone_id = self._reference_id(
            DocumentKind.MILESTONE, project, milestone, parent_doc
        )

        return IssueDraft(
            project=project,
            parent=parent_doc,
            fields={
                "title": title,
                "description": description or "",
                "status": status_value.value,
                "priority": priority_value.value,
                "component": component_id,
                "milestone": milestone_id,
            },
        )

    def _reference_id(
        self,
        kind: DocumentKind,
        project: Document,
        label: Optional[str],
        parent: Optional[Document],
    ) -> Optional[str]:
        if label:
            return find_labeled(self._store, kind, project["_id"], label)["_id"]
        if parent is not None:
            # Sub-issues inherit the parent's component and milestone.
            return parent.get(kind.value)
        return None

    def create_issue(
        self,
        project_ref: Optional[str],
        title: Any,
        *,
        description: Optional[str] = None,
        priority: Any = None,
        status: Any = None,
        component: Optional[str] = None,
        milestone: Optional[str] = None,
        parent: Optional[str] = None,
        number: Optional[int] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Create an issue, or a sub-issue when ``parent`` is given.

        Args:
            number: Pre-reserved issue number; drawn from the counter if None
            dry_run: Validate only

        Raises:
            ValidationError: bad title, priority, status or parent
            NotFoundError: project, parent, component or milestone missing
            SequenceError: the counter increment failed
        """
        draft = self.draft_issue(
            project_ref,
            title,
            description=description,
            priority=priority,
            status=status,
            component=component,
            milestone=milestone,
            parent=parent,
        )
        if dry_run:
            return draft.preview()
        if number is None:
            number = self._sequence.next(draft.project["_id"])
        return self._insert(draft, number)

    def create_subissue(self, parent_ref: str, title: Any, **kwargs: Any) -> Dict[str, Any]:
        return self.create_issue(None, title, parent=parent_ref, **kwargs)

    def create_issue_from_template(
        self,
        project_ref: str,
        template_ref: str,
        *,
        title: Optional[str] = None,
        priority: Any = None,
        component: Optional[str] = None,
        milestone: Optional[str] = None,
        include_children: bool = True,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Instantiate a template as an issue plus one sub-issue per child.

        The whole set is numbered from a single ``reserve_batch`` call, so
        the parent and its children get consecutive numbers. Overrides
        apply to the parent issue only.

        Raises:
            NotFoundError: project, template, component or milestone missing
            ValidationError: bad override value
            SequenceError: the counter increment failed
        """
        template = resolve_template(self._store, project_ref, template_ref)
        project = resolve_project(self._store, template["space"])
        children = list(template.get("children") or []) if include_children else []

        draft = self.draft_issue(
            project["_id"],
            title if title is not None else template.get("title"),
            description=template.get("description"),
            priority=priority or template.get("priority"),
            component=component,
            milestone=milestone,
        )
        for kind, override in (
            (DocumentKind.COMPONENT, component),
            (DocumentKind.MILESTONE, milestone),
        ):
            if not override:
                draft.fields[kind.value] = template.get(kind.value)
        child_fields = [self._template_child_fields(child, draft) for child in children]

        summary = {"id": template["_id"], "title": template.get("title")}
        if dry_run:
            return {
                "template": summary,
                "issues": [draft.preview()]
                + [
                    IssueDraft(project=project, parent=None, fields=fields).preview()
                    for fields in child_fields
                ],
                "would_create": 1 + len(child_fields),
            }

        numbers = self._sequence.reserve_batch(project["_id"], 1 + len(child_fields))
        parent = self._insert(draft, numbers[0])
        parent_doc = {"_id": parent["id"], "identifier": parent["identifier"]}
        created = [parent]
        for fields, number in zip(child_fields, numbers[1:]):
            child = IssueDraft(project=project, parent=parent_doc, fields=fields)
            created.append(self._insert(child, number))
        logger.info(
            f"Created {len(created)} issue(s) from template '{template.get('title')}'"
        )
        return {
            "template": summary,
            "identifier": parent["identifier"],
            "created": created,
            "count": len(created),
        }

    @staticmethod
    def _template_child_fields(
        child: Mapping[str, Any], parent: IssueDraft
    ) -> Dict[str, Any]:
        priority = child.get("priority") or Priority.NO_PRIORITY
        return {
            "title": _require_title(child.get("title")),
            "description": child.get("description") or "",
            "status": IssueStatus.BACKLOG.value,
            "priority": parse_priority(priority).value,
            # Sub-issues inherit the parent's component and milestone.
            "component": child.get("component") or parent.fields["component"],
            "milestone": child.get("milestone") or parent.fields["milestone"],
        }

    def _insert(self, draft: IssueDraft, number: int) -> Dict[str, Any]:
        now = utc_now()
        doc: Document = {
            "space": draft.project["_id"],
            "identifier": format_identifier(draft.project["identifier"], number),
            "number": number,
            **draft.fields,
            "parent": None,
            CHILD_COUNTER_FIELD: 0,
            "relations": [],
            "created_on": now,
            "modified_on": now,
        }
        if draft.parent is not None:
            doc["_id"] = self._store.add_child(
                DocumentKind.ISSUE, draft.parent["_id"], doc, CHILD_COUNTER_FIELD
            )
            doc["parent"] = draft.parent["_id"]
        else:
            doc["_id"] = self._store.insert(DocumentKind.ISSUE, doc)

        logger.info(
            f"Created issue {doc['identifier']}"
            + (f" under {draft.parent['identifier']}" if draft.parent else "")
        )
        return issue_view(doc)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_issue(self, issue_ref: str) -> Dict[str, Any]:
        doc = resolve_issue(self._store, issue_ref)
        view = issue_view(doc)
        view["project"] = resolve_project(self._store, doc["space"])["identifier"]
        if doc.get("parent"):
            parent = self._store.find_one(DocumentKind.ISSUE, {"_id": doc["parent"]})
            view["parent"] = parent["identifier"] if parent else None
        for kind in (DocumentKind.COMPONENT, DocumentKind.MILESTONE):
            ref_id = doc.get(kind.value)
            if ref_id:
                ref = self._store.find_one(kind, {"_id": ref_id})
                view[kind.value] = ref.get("label") if ref else None
        return view

    def list_issues(
        self,
        project_ref: str,
        *,
        status: Any = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        project = resolve_project(self._store, project_ref)
        predicate: Dict[str, Any] = {"space": project["_id"]}
        if status:
            predicate["status"] = parse_status(status).value
        docs = self._store.find_all(
            DocumentKind.ISSUE, predicate, sort={"number": 1}, limit=limit
        )
        return [issue_view(doc) for doc in docs]

    def search_issues(
        self,
        query: Optional[str] = None,
        *,
        project_ref: Optional[str] = None,
        status: Any = None,
        priority: Any = None,
        component: Optional[str] = None,
        milestone: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Find issues by text and field filters.

        ``query`` matches title or description, case-insensitively.
        Component and milestone filters are labels and need ``project_ref``.
        """
        if query is not None and not isinstance(query, str):
            raise ValidationError(
                "query must be a string", field="query", code=ErrorCode.INVALID_FORMAT
            )
        predicate: Dict[str, Any] = {}
        project = resolve_project(self._store, project_ref) if project_ref else None
        if project is not None:
            predicate["space"] = project["_id"]
        if status:
            predicate["status"] = parse_status(status).value
        if priority:
            predicate["priority"] = parse_priority(priority).value
        for kind, label in (
            (DocumentKind.COMPONENT, component),
            (DocumentKind.MILESTONE, milestone),
        ):
            if not label:
                continue
            if project is None:
                raise ValidationError(
                    f"Filtering by {kind.value} requires a project",
                    field="project",
                    code=ErrorCode.MISSING_REQUIRED,
                )
            predicate[kind.value] = find_labeled(
                self._store, kind, project["_id"], label
            )["_id"]

        needle = (query or "").strip().lower()
        matches = []
        for doc in self._store.find_all(DocumentKind.ISSUE, predicate, sort={"number": 1}):
            text = f"{doc.get('title', '')}\n{doc.get('description', '')}".lower()
            if needle and needle not in text:
                continue
            matches.append(issue_view(doc))
            if limit is not None and len(matches) >= limit:
                break
        return matches

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update_issue(
        self, issue_ref: str, field_name: Any, value: Any, *, dry_run: bool = False
    ) -> Dict[str, Any]:
        """Change one field of an issue.

        An empty component or milestone value clears the reference.
        """
        try:
            issue_field = IssueField(normalize_choice(str(field_name)))
        except ValueError:
            raise ValidationError(
                f"Invalid field '{field_name}'",
                field="field",
                code=ErrorCode.INVALID_FIELD,
                details={"allowed": [f.value for f in IssueField]},
            ) from None

        issue = resolve_issue(self._store, issue_ref)
        change = _FIELD_HANDLERS[issue_field](self, issue, value)
        if not dry_run:
            self._store.update(
                DocumentKind.ISSUE,
                issue["_id"],
                {**change.updates, "modified_on": utc_now()},
            )
            logger.info(f"Updated {issue_field.value} on {issue['identifier']}")

        return {
            "identifier": issue["identifier"],
            "field": issue_field.value,
            "value": change.display,
            "updated": not dry_run,
        }

    def _reference_change(
        self, kind: DocumentKind, issue: Document, value: Any
    ) -> FieldChange:
        if value is None or (isinstance(value, str) and not value.strip()):
            return FieldChange({kind.value: None}, None)
        target = find_labeled(self._store, kind, issue["space"], str(value).strip())
        return FieldChange({kind.value: target["_id"]}, target.get("label"))

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def bulk_create_issues(
        self,
        project_ref: str,
        items: Sequence[Mapping[str, Any]],
        *,
        defaults: Optional[Mapping[str, Any]] = None,
        batch_size: Optional[int] = None,
        continue_on_error: bool = True,
        dry_run: bool = False,
        raise_on_stop: bool = False,
    ) -> BatchReport:
        """Create many issues in one project.

        ``defaults`` fill keys an item leaves out. Items may name an existing
        ``parent`` issue, which must exist before the item's chunk starts.
        """
        warnings = validate_batch_items(items, max_items=self.max_bulk_items)
        merged_defaults = dict(defaults or {})
        project = resolve_project(self._store, project_ref)

        def kwargs_for(item: Any) -> Dict[str, Any]:
            if not isinstance(item, Mapping):
                raise ValidationError("Each item must be an object", field="items")
            unknown = set(item) - BULK_CREATE_KEYS - {"parent_issue"}
            if unknown:
                raise ValidationError(
                    f"Unknown item keys: {', '.join(sorted(unknown))}",
                    field="items",
                    details={"allowed": sorted(BULK_CREATE_KEYS)},
                )
            merged = {**merged_defaults, **item}
            if "parent_issue" in merged:
                merged.setdefault("parent", merged.pop("parent_issue"))
            for key in TEXT_ITEM_KEYS:
                value = merged.get(key)
                if value is not None and not isinstance(value, str):
                    raise ValidationError(
                        f"'{key}' must be a string, got {type(value).__name__}",
                        field=key,
                        code=ErrorCode.INVALID_FORMAT,
                    )
            return {key: merged.get(key) for key in BULK_CREATE_KEYS}

        def prepare(chunk: Sequence[Any]) -> List[Any]:
            slots: List[Any] = [None] * len(chunk)
            drafts: Dict[int, IssueDraft] = {}
            groups: Dict[str, List[int]] = {}
            for pos, item in enumerate(chunk):
                try:
                    kwargs = kwargs_for(item)
                    drafts[pos] = self.draft_issue(
                        project["_id"], kwargs.pop("title"), **kwargs
                    )
                except TrackerError as exc:
                    slots[pos] = exc
                    continue
                except Exception as exc:
                    logger.exception(f"Unexpected error preparing bulk item {pos}")
                    slots[pos] = exc
                    continue
                groups.setdefault(drafts[pos].project["_id"], []).append(pos)

            for project_id, positions in groups.items():
                try:
                    numbers = self._sequence.reserve_batch(project_id, len(positions))
                except TrackerError as exc:
                    for pos in positions:
                        slots[pos] = exc
                    continue
                for pos, number in zip(positions, numbers):
                    slots[pos] = (drafts[pos], number)
            return slots

        def apply(item: Any, context: ItemContext) -> Dict[str, Any]:
            if context.dry_run:
                kwargs = kwargs_for(item)
                return self.create_issue(
                    project["_id"], kwargs.pop("title"), dry_run=True, **kwargs
                )
            draft, number = context.reserved
            return self._insert(draft, number)

        report = self._orchestrator.run(
            list(items),
            apply,
            batch_size=batch_size,
            continue_on_error=continue_on_error,
            dry_run=dry_run,
            prepare_chunk=prepare,
            raise_on_stop=raise_on_stop,
        )
        report.warnings.extend(warnings)
        return report

    def bulk_update_issues(
        self,
        updates: Sequence[Mapping[str, Any]],
        *,
        batch_size: Optional[int] = None,
        continue_on_error: bool = True,
        dry_run: bool = False,
        raise_on_stop: bool = False,
    ) -> BatchReport:
        """Apply many ``{"issue", "field", "value"}`` updates."""
        warnings = validate_batch_items(
            updates,
            key=_update_key,
            max_items=self.max_bulk_items,
        )

        def apply(item: Any, context: ItemContext) -> Dict[str, Any]:
            if not isinstance(item, Mapping) or not item.get("issue") or not item.get("field"):
                raise ValidationError(
                    "Each update needs 'issue' and 'field'", field="updates"
                )
            return self.update_issue(
                item["issue"], item["field"], item.get("value"), dry_run=context.dry_run
            )

        report = self._orchestrator.run(
            list(updates),
            apply,
            batch_size=batch_size,
            continue_on_error=continue_on_error,
            dry_run=dry_run,
            raise_on_stop=raise_on_stop,
        )
        report.warnings.extend(warnings)
        return report


def _update_key(item: Mapping[str, Any]) -> Tuple[str, str]:
    return (str(item["issue"]).upper(), normalize_choice(str(item["field"])))
