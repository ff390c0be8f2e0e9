"""Project, component, milestone and template records."""

import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

from tracker_mcp.core.errors import ConflictError, ValidationError
from tracker_mcp.core.impact import find_labeled
from tracker_mcp.core.issues import parse_priority
from tracker_mcp.core.models import (
    DocumentKind,
    MilestoneStatus,
    PROJECT_IDENTIFIER_RE,
    normalize_choice,
    utc_now,
)
from tracker_mcp.core.responses import ErrorCode
from tracker_mcp.core.store import Document, DocumentStore, resolve_project

logger = logging.getLogger(__name__)

CHILD_TEMPLATE_KEYS = frozenset(
    {"title", "description", "priority", "component", "milestone"}
)


def project_view(doc: Document) -> Dict[str, Any]:
    return {
        "id": doc["_id"],
        "identifier": doc["identifier"],
        "name": doc.get("name"),
        "description": doc.get("description", ""),
        "sequence": doc.get("sequence", 0),
        "archived": bool(doc.get("archived")),
        "github_integration": bool(doc.get("github_integration")),
    }


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string", field=field_name)
    return value.strip()


class ProjectService:
    """Create and look up projects and their owned records."""

    def __init__(self, store: DocumentStore):
        self._store = store

    def create_project(
        self,
        name: str,
        identifier: str,
        *,
        description: str = "",
        github_integration: bool = False,
    ) -> Dict[str, Any]:
        name = _require_text(name, "name")
        identifier = _require_text(identifier, "identifier").upper()
        if not PROJECT_IDENTIFIER_RE.match(identifier):
            raise ValidationError(
                f"Invalid project identifier '{identifier}'",
                field="identifier",
                code=ErrorCode.INVALID_FORMAT,
                remediation="Use 1-5 characters: an uppercase letter, then letters or digits.",
            )
        if self._store.find_one(DocumentKind.PROJECT, {"identifier": identifier}):
            raise ConflictError(
                f"Project identifier '{identifier}' is already in use",
                code=ErrorCode.DUPLICATE_ENTRY,
            )

        doc: Document = {
            "identifier": identifier,
            "name": name,
            "description": description or "",
            "sequence": 0,
            "archived": False,
            "github_integration": bool(github_integration),
            "created_on": utc_now(),
        }
        doc["_id"] = self._store.insert(DocumentKind.PROJECT, doc)
        logger.info(f"Created project {identifier}")
        return project_view(doc)

    def get_project(self, project_ref: str) -> Dict[str, Any]:
        project = resolve_project(self._store, project_ref)
        view = project_view(project)
        scope = {"space": project["_id"]}
        view["counts"] = {
            kind.value + "s": len(self._store.find_all(kind, scope))
            for kind in (
                DocumentKind.ISSUE,
                DocumentKind.COMPONENT,
                DocumentKind.MILESTONE,
                DocumentKind.TEMPLATE,
            )
        }
        return view

    def list_projects(self, *, include_archived: bool = False) -> List[Dict[str, Any]]:
        docs = self._store.find_all(DocumentKind.PROJECT, {}, sort={"identifier": 1})
        return [
            project_view(doc)
            for doc in docs
            if include_archived or not doc.get("archived")
        ]

    def create_component(
        self, project_ref: str, label: str, *, description: str = ""
    ) -> Dict[str, Any]:
        project = resolve_project(self._store, project_ref)
        label = self._unique_label(DocumentKind.COMPONENT, project, label)
        doc: Document = {
            "space": project["_id"],
            "label": label,
            "description": description or "",
        }
        doc["_id"] = self._store.insert(DocumentKind.COMPONENT, doc)
        logger.info(f"Created component '{label}' in {project['identifier']}")
        return {"id": doc["_id"], "label": label, "project": project["identifier"]}

    def create_milestone(
        self,
        project_ref: str,
        label: str,
        *,
        target_date: Optional[str] = None,
        status: str = MilestoneStatus.PLANNED.value,
        description: str = "",
    ) -> Dict[str, Any]:
        project = resolve_project(self._store, project_ref)
        label = self._unique_label(DocumentKind.MILESTONE, project, label)

        try:
            status_value = MilestoneStatus(normalize_choice(status or "planned"))
        except ValueError:
            raise ValidationError(
                f"Invalid milestone status '{status}'",
                field="status",
                details={"allowed": [s.value for s in MilestoneStatus]},
            ) from None

        if target_date:
            try:
                target_date = date.fromisoformat(target_date).isoformat()
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Invalid target date '{target_date}'",
                    field="target_date",
                    code=ErrorCode.INVALID_FORMAT,
                    remediation="Use YYYY-MM-DD.",
                ) from None

        doc: Document = {
            "space": project["_id"],
            "label": label,
            "status": status_value.value,
            "target_date": target_date or None,
            "description": description or "",
        }
        doc["_id"] = self._store.insert(DocumentKind.MILESTONE, doc)
        logger.info(f"Created milestone '{label}' in {project['identifier']}")
        return {
            "id": doc["_id"],
            "label": label,
            "status": status_value.value,
            "target_date": doc["target_date"],
            "project": project["identifier"],
        }

    def create_template(
        self,
        project_ref: str,
        title: str,
        *,
        description: str = "",
        priority: str = "",
        component: Optional[str] = None,
        milestone: Optional[str] = None,
        children: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Store an issue template, optionally with child templates.

        Component and milestone labels are resolved now and stored as ids;
        each child becomes a sub-issue when the template is instantiated.
        """
        project = resolve_project(self._store, project_ref)
        title = _require_text(title, "title")
        if self._store.find_one(
            DocumentKind.TEMPLATE, {"space": project["_id"], "title": title}
        ):
            raise ConflictError(
                f"Template '{title}' already exists in {project['identifier']}",
                code=ErrorCode.DUPLICATE_ENTRY,
            )
        if children is not None and not isinstance(children, (list, tuple)):
            raise ValidationError(
                "children must be a list of objects",
                field="children",
                code=ErrorCode.INVALID_FORMAT,
            )
        doc: Document = {
            "space": project["_id"],
            **self._template_fields(
                project, title, description, priority, component, milestone
            ),
            "children": [
                self._child_template(project, pos, child)
                for pos, child in enumerate(children or [])
            ],
            "modified_on": utc_now(),
        }
        doc["_id"] = self._store.insert(DocumentKind.TEMPLATE, doc)
        logger.info(f"Created template '{title}' in {project['identifier']}")
        return {
            "id": doc["_id"],
            "title": title,
            "project": project["identifier"],
            "children": len(doc["children"]),
        }

    def _template_fields(
        self,
        project: Document,
        title: str,
        description: Any,
        priority: Any,
        component: Any,
        milestone: Any,
    ) -> Dict[str, Any]:
        refs = {}
        for kind, label in (
            (DocumentKind.COMPONENT, component),
            (DocumentKind.MILESTONE, milestone),
        ):
            if label is not None and not isinstance(label, str):
                raise ValidationError(
                    f"{kind.value} must be a string",
                    field=kind.value,
                    code=ErrorCode.INVALID_FORMAT,
                )
            refs[kind.value] = (
                find_labeled(self._store, kind, project["_id"], label.strip())["_id"]
                if label and label.strip()
                else None
            )
        return {
            "title": title,
            "description": description or "",
            "priority": parse_priority(priority).value if priority else None,
            **refs,
        }

    def _child_template(self, project: Document, pos: int, child: Any) -> Dict[str, Any]:
        if not isinstance(child, Mapping):
            raise ValidationError(
                f"Child template {pos} must be an object",
                field="children",
                code=ErrorCode.INVALID_FORMAT,
            )
        unknown = set(child) - CHILD_TEMPLATE_KEYS
        if unknown:
            raise ValidationError(
                f"Unknown child template keys: {', '.join(sorted(unknown))}",
                field="children",
                details={"allowed": sorted(CHILD_TEMPLATE_KEYS)},
            )
        return self._template_fields(
            project,
            _require_text(child.get("title"), "children.title"),
            child.get("description"),
            child.get("priority"),
            child.get("component"),
            child.get("milestone"),
        )

    def list_templates(self, project_ref: str) -> List[Dict[str, Any]]:
        project = resolve_project(self._store, project_ref)
        docs = self._store.find_all(
            DocumentKind.TEMPLATE, {"space": project["_id"]}, sort={"title": 1}
        )
        return [self._template_view(doc) for doc in docs]

    def _template_view(self, doc: Document) -> Dict[str, Any]:
        labels = self._labels(doc["space"])

        def fields(entry: Mapping[str, Any]) -> Dict[str, Any]:
            return {
                "title": entry.get("title"),
                "description": entry.get("description", ""),
                "priority": entry.get("priority"),
                "component": labels.get(entry.get("component")),
                "milestone": labels.get(entry.get("milestone")),
            }

        return {
            "id": doc["_id"],
            **fields(doc),
            "children": [fields(child) for child in doc.get("children") or []],
        }

    def _labels(self, project_id: str) -> Dict[str, str]:
        scope = {"space": project_id}
        return {
            doc["_id"]: doc.get("label")
            for kind in (DocumentKind.COMPONENT, DocumentKind.MILESTONE)
            for doc in self._store.find_all(kind, scope)
        }

    def list_components(self, project_ref: str) -> List[Dict[str, Any]]:
        project = resolve_project(self._store, project_ref)
        return [
            {
                "id": doc["_id"],
                "label": doc.get("label"),
                "description": doc.get("description", ""),
                "issues": self._reference_count(DocumentKind.COMPONENT, project, doc),
            }
            for doc in self._store.find_all(
                DocumentKind.COMPONENT, {"space": project["_id"]}, sort={"label": 1}
            )
        ]

    def list_milestones(self, project_ref: str) -> List[Dict[str, Any]]:
        project = resolve_project(self._store, project_ref)
        return [
            {
                "id": doc["_id"],
                "label": doc.get("label"),
                "status": doc.get("status"),
                "target_date": doc.get("target_date"),
                "description": doc.get("description", ""),
                "issues": self._reference_count(DocumentKind.MILESTONE, project, doc),
            }
            for doc in self._store.find_all(
                DocumentKind.MILESTONE, {"space": project["_id"]}, sort={"label": 1}
            )
        ]

    def _reference_count(self, kind: DocumentKind, project: Document, doc: Document) -> int:
        return len(
            self._store.find_all(
                DocumentKind.ISSUE, {"space": project["_id"], kind.value: doc["_id"]}
            )
        )

    def _unique_label(self, kind: DocumentKind, project: Document, label: str) -> str:
        label = _require_text(label, "label")
        if find_labeled(self._store, kind, project["_id"], label, required=False):
            raise ConflictError(
                f"{kind.value.title()} '{label}' already exists in {project['identifier']}",
                code=ErrorCode.DUPLICATE_ENTRY,
            )
        return label
