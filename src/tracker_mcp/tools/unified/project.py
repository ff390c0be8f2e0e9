"""Unified project tool with action routing.

Covers projects and the records they own: components, milestones and
issue templates.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from tracker_mcp.config import ServerConfig
from tracker_mcp.core.naming import canonical_tool
from tracker_mcp.core.observability import audit_log
from tracker_mcp.core.responses import ErrorCode, ErrorType, error_response
from tracker_mcp.core.services import get_services
from tracker_mcp.tools.unified.common import (
    is_text,
    read_flags,
    request_id as _new_request_id,
    run_operation,
    validation_error,
)
from tracker_mcp.tools.unified.router import (
    ActionDefinition,
    ActionRouter,
    ActionRouterError,
)

logger = logging.getLogger(__name__)

_TOOL = "project"


def _request_id() -> str:
    return _new_request_id("project")


def _missing(field: str, action: str, message: str, request_id: str) -> dict:
    return validation_error(
        tool=_TOOL, field=field, action=action, message=message, request_id=request_id
    )


def _flags(payload: Dict[str, Any], names: tuple, action: str, request_id: str):
    return read_flags(payload, names, tool=_TOOL, action=action, request_id=request_id)


def _require_project(payload: Dict[str, Any], action: str, request_id: str) -> Optional[dict]:
    if not is_text(payload.get("project")):
        return _missing(
            "project", action, "Provide a project identifier such as 'ENG'", request_id
        )
    return None


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def _handle_create(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "create"
    name = payload.get("name")
    identifier = payload.get("identifier")

    if not is_text(name):
        return _missing("name", action, "Provide a project name", request_id)
    if not is_text(identifier):
        return _missing(
            "identifier", action, "Provide a short identifier such as 'ENG'", request_id
        )
    flags, error = _flags(payload, ("github_integration",), action, request_id)
    if error:
        return error

    projects = get_services(config).projects
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: projects.create_project(
            name,
            identifier,
            description=payload.get("description") or "",
            github_integration=flags["github_integration"],
        ),
    )
    if response["success"]:
        audit_log(
            "resource_created",
            resource_type="project",
            resource_id=response["data"].get("identifier"),
        )
    return response


def _handle_get(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    error = _require_project(payload, "get", request_id)
    if error:
        return error
    projects = get_services(config).projects
    return run_operation(
        tool=_TOOL,
        action="get",
        request_id=request_id,
        operation=lambda: projects.get_project(payload["project"]),
    )


def _handle_list(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    flags, error = _flags(payload, ("include_archived",), "list", request_id)
    if error:
        return error
    projects = get_services(config).projects
    return run_operation(
        tool=_TOOL,
        action="list",
        request_id=request_id,
        operation=lambda: projects.list_projects(
            include_archived=flags["include_archived"]
        ),
    )


def _handle_impact(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "impact"
    error = _require_project(payload, action, request_id)
    if error:
        return error
    flags, error = _flags(payload, ("force",), action, request_id)
    if error:
        return error

    analyzer = get_services(config).analyzer
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: analyzer.analyze_project_deletion(
            payload["project"], force=flags["force"]
        ),
    )


def _handle_archive(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    error = _require_project(payload, "archive", request_id)
    if error:
        return error
    deleter = get_services(config).deleter
    response = run_operation(
        tool=_TOOL,
        action="archive",
        request_id=request_id,
        operation=lambda: deleter.archive_project(payload["project"]),
    )
    if response["success"]:
        audit_log("project_archived", project=response["data"]["identifier"])
    return response


def _handle_unarchive(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    error = _require_project(payload, "unarchive", request_id)
    if error:
        return error
    deleter = get_services(config).deleter
    return run_operation(
        tool=_TOOL,
        action="unarchive",
        request_id=request_id,
        operation=lambda: deleter.unarchive_project(payload["project"]),
    )


def _handle_delete(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "delete"
    error = _require_project(payload, action, request_id)
    if error:
        return error
    flags, error = _flags(payload, ("force", "dry_run"), action, request_id)
    if error:
        return error

    deleter = get_services(config).deleter
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: deleter.delete_project(payload["project"], **flags),
    )
    if response["success"] and not flags["dry_run"]:
        audit_log(
            "resource_deleted",
            resource_type="project",
            resource_id=payload["project"].strip(),
            force=flags["force"],
            counts=response["data"].get("counts"),
        )
    return response


# ---------------------------------------------------------------------------
# Components / milestones / templates
# ---------------------------------------------------------------------------


def _label_args(
    payload: Dict[str, Any], action: str, request_id: str
) -> Optional[dict]:
    error = _require_project(payload, action, request_id)
    if error:
        return error
    if not is_text(payload.get("label")):
        return _missing("label", action, "Provide a non-empty label", request_id)
    return None


def _handle_create_component(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "create-component"
    error = _label_args(payload, action, request_id)
    if error:
        return error
    projects = get_services(config).projects
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: projects.create_component(
            payload["project"],
            payload["label"],
            description=payload.get("description") or "",
        ),
    )


def _handle_create_milestone(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "create-milestone"
    error = _label_args(payload, action, request_id)
    if error:
        return error
    projects = get_services(config).projects
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: projects.create_milestone(
            payload["project"],
            payload["label"],
            target_date=payload.get("target_date"),
            status=payload.get("status") or "planned",
            description=payload.get("description") or "",
        ),
    )


def _delete_labeled(kind: str, *, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = f"delete-{kind}"
    error = _label_args(payload, action, request_id)
    if error:
        return error
    flags, error = _flags(payload, ("force", "dry_run"), action, request_id)
    if error:
        return error

    deleter = get_services(config).deleter
    delete = deleter.delete_component if kind == "component" else deleter.delete_milestone
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: delete(payload["project"], payload["label"], **flags),
    )
    if response["success"] and not flags["dry_run"]:
        audit_log(
            "resource_deleted",
            resource_type=kind,
            resource_id=payload["label"],
            project=payload["project"],
            issues_updated=len(response["data"].get("updated_issues") or []),
        )
    return response


def _handle_delete_component(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    return _delete_labeled("component", config=config, payload=payload)


def _handle_delete_milestone(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    return _delete_labeled("milestone", config=config, payload=payload)


def _handle_create_template(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "create-template"
    error = _require_project(payload, action, request_id)
    if error:
        return error
    if not is_text(payload.get("title")):
        return _missing("title", action, "Provide a template title", request_id)

    projects = get_services(config).projects
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: projects.create_template(
            payload["project"],
            payload["title"],
            description=payload.get("description") or "",
            priority=payload.get("priority") or "",
            component=payload.get("component"),
            milestone=payload.get("milestone"),
            children=payload.get("children"),
        ),
    )


def _handle_list_templates(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    error = _require_project(payload, "list-templates", request_id)
    if error:
        return error
    projects = get_services(config).projects
    return run_operation(
        tool=_TOOL,
        action="list-templates",
        request_id=request_id,
        operation=lambda: projects.list_templates(payload["project"]),
    )


def _handle_delete_template(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "delete-template"
    error = _require_project(payload, action, request_id)
    if error:
        return error
    if not is_text(payload.get("template")):
        return _missing(
            "template", action, "Provide the template title or id", request_id
        )

    deleter = get_services(config).deleter
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: deleter.delete_template(payload["project"], payload["template"]),
    )
    if response["success"]:
        audit_log(
            "resource_deleted",
            resource_type="template",
            resource_id=response["data"]["target"]["id"],
            project=payload["project"],
        )
    return response


def _list_owned(kind: str, *, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = f"list-{kind}s"
    error = _require_project(payload, action, request_id)
    if error:
        return error
    projects = get_services(config).projects
    list_records = projects.list_components if kind == "component" else projects.list_milestones
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: list_records(payload["project"]),
    )


def _handle_list_components(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    return _list_owned("component", config=config, payload=payload)


def _handle_list_milestones(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    return _list_owned("milestone", config=config, payload=payload)


_ACTION_DEFINITIONS = [
    ActionDefinition(name="create", handler=_handle_create, summary="Create a project"),
    ActionDefinition(name="get", handler=_handle_get, summary="Fetch a project with counts"),
    ActionDefinition(name="list", handler=_handle_list, summary="List projects"),
    ActionDefinition(
        name="impact",
        handler=_handle_impact,
        summary="Preview what deleting a project would remove",
    ),
    ActionDefinition(name="archive", handler=_handle_archive, summary="Archive a project"),
    ActionDefinition(
        name="unarchive", handler=_handle_unarchive, summary="Restore an archived project"
    ),
    ActionDefinition(
        name="delete",
        handler=_handle_delete,
        summary="Delete a project and everything it owns",
    ),
    ActionDefinition(
        name="create-component",
        handler=_handle_create_component,
        summary="Add a component to a project",
    ),
    ActionDefinition(
        name="delete-component",
        handler=_handle_delete_component,
        summary="Delete a component and clear it on its issues",
    ),
    ActionDefinition(
        name="create-milestone",
        handler=_handle_create_milestone,
        summary="Add a milestone to a project",
    ),
    ActionDefinition(
        name="delete-milestone",
        handler=_handle_delete_milestone,
        summary="Delete a milestone and clear it on its issues",
    ),
    ActionDefinition(
        name="create-template",
        handler=_handle_create_template,
        summary="Add an issue template to a project",
    ),
    ActionDefinition(
        name="list-templates",
        handler=_handle_list_templates,
        summary="List a project's issue templates",
    ),
    ActionDefinition(
        name="delete-template",
        handler=_handle_delete_template,
        summary="Delete an issue template",
    ),
    ActionDefinition(
        name="list-components",
        handler=_handle_list_components,
        summary="List a project's components with issue counts",
    ),
    ActionDefinition(
        name="list-milestones",
        handler=_handle_list_milestones,
        summary="List a project's milestones with issue counts",
    ),
]

_PROJECT_ROUTER = ActionRouter(tool_name=_TOOL, actions=_ACTION_DEFINITIONS)


def _dispatch_project_action(
    *, action: str, payload: Dict[str, Any], config: ServerConfig
) -> dict:
    try:
        return _PROJECT_ROUTER.dispatch(action=action, config=config, payload=payload)
    except ActionRouterError as exc:
        request_id = _request_id()
        allowed = ", ".join(exc.allowed_actions)
        return asdict(
            error_response(
                f"Unsupported project action '{action}'. Allowed actions: {allowed}",
                error_code=ErrorCode.VALIDATION_ERROR,
                error_type=ErrorType.VALIDATION,
                remediation=f"Use one of: {allowed}",
                request_id=request_id,
            )
        )


def register_unified_project_tool(mcp: FastMCP, config: ServerConfig) -> None:
    """Register the consolidated project tool."""

    @canonical_tool(
        mcp,
        canonical_name="project",
    )
    def project(
        action: str,
        project: Optional[str] = None,
        name: Optional[str] = None,
        identifier: Optional[str] = None,
        description: Optional[str] = None,
        github_integration: bool = False,
        include_archived: bool = False,
        label: Optional[str] = None,
        title: Optional[str] = None,
        priority: Optional[str] = None,
        status: Optional[str] = None,
        target_date: Optional[str] = None,
        component: Optional[str] = None,
        milestone: Optional[str] = None,
        template: Optional[str] = None,
        children: Optional[List[Dict[str, Any]]] = None,
        force: bool = False,
        dry_run: bool = False,
    ) -> dict:
        payload = {
            "project": project,
            "name": name,
            "identifier": identifier,
            "description": description,
            "github_integration": github_integration,
            "include_archived": include_archived,
            "label": label,
            "title": title,
            "priority": priority,
            "status": status,
            "target_date": target_date,
            "component": component,
            "milestone": milestone,
            "template": template,
            "children": children,
            "force": force,
            "dry_run": dry_run,
        }
        return _dispatch_project_action(action=action, payload=payload, config=config)

    logger.debug("Registered unified project tool")


__all__ = [
    "register_unified_project_tool",
]
