"""Unified issue tool with action routing."""

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
    read_batch_size,
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

_TOOL = "issue"
_ISSUE_FIELDS = ("description", "priority", "status", "component", "milestone")


def _request_id() -> str:
    return _new_request_id("issue")


def _validation_error(**kwargs: Any) -> dict:
    return validation_error(tool=_TOOL, **kwargs)


def _flags(payload: Dict[str, Any], names: tuple, action: str, request_id: str, **kw: Any):
    return read_flags(payload, names, tool=_TOOL, action=action, request_id=request_id, **kw)


def _issue_kwargs(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {name: payload.get(name) for name in _ISSUE_FIELDS}


# ---------------------------------------------------------------------------
# Single-issue actions
# ---------------------------------------------------------------------------


def _handle_create(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "create"
    project = payload.get("project")
    parent = payload.get("parent")
    title = payload.get("title")

    if not is_text(project) and not is_text(parent):
        return _validation_error(
            field="project",
            action=action,
            message="Provide a project identifier (or a parent issue)",
            request_id=request_id,
        )
    if not is_text(title):
        return _validation_error(
            field="title",
            action=action,
            message="Provide a non-empty title",
            request_id=request_id,
        )
    flags, error = _flags(payload, ("dry_run",), action, request_id)
    if error:
        return error

    issues = get_services(config).issues
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: issues.create_issue(
            project,
            title,
            parent=parent or None,
            dry_run=flags["dry_run"],
            **_issue_kwargs(payload),
        ),
    )


def _handle_create_subissue(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "create-subissue"
    parent = payload.get("parent")
    title = payload.get("title")

    if not is_text(parent):
        return _validation_error(
            field="parent",
            action=action,
            message="Provide the parent issue identifier",
            request_id=request_id,
        )
    if not is_text(title):
        return _validation_error(
            field="title",
            action=action,
            message="Provide a non-empty title",
            request_id=request_id,
        )
    flags, error = _flags(payload, ("dry_run",), action, request_id)
    if error:
        return error

    issues = get_services(config).issues
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: issues.create_subissue(
            parent, title, dry_run=flags["dry_run"], **_issue_kwargs(payload)
        ),
    )


def _handle_create_from_template(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "create-from-template"
    project = payload.get("project")
    template = payload.get("template")

    if not is_text(project):
        return _validation_error(
            field="project",
            action=action,
            message="Provide the project that owns the template",
            request_id=request_id,
        )
    if not is_text(template):
        return _validation_error(
            field="template",
            action=action,
            message="Provide the template title or id",
            request_id=request_id,
        )
    flags, error = _flags(
        payload,
        ("include_children", "dry_run"),
        action,
        request_id,
        defaults={"include_children": True},
    )
    if error:
        return error

    issues = get_services(config).issues
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: issues.create_issue_from_template(
            project,
            template,
            title=payload.get("title") or None,
            priority=payload.get("priority"),
            component=payload.get("component"),
            milestone=payload.get("milestone"),
            **flags,
        ),
    )
    if response["success"] and not flags["dry_run"]:
        audit_log(
            "resource_created",
            resource_type="issue",
            resource_id=response["data"]["identifier"],
            template=template,
            count=response["data"]["count"],
        )
    return response


def _handle_get(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    issue = payload.get("issue")
    if not is_text(issue):
        return _validation_error(
            field="issue",
            action="get",
            message="Provide an issue identifier such as 'PROJ-12'",
            request_id=request_id,
        )
    issues = get_services(config).issues
    return run_operation(
        tool=_TOOL,
        action="get",
        request_id=request_id,
        operation=lambda: issues.get_issue(issue),
    )


def _check_limit(limit: Any, action: str, request_id: str) -> Optional[dict]:
    if limit is not None and (
        not isinstance(limit, int) or isinstance(limit, bool) or limit < 1
    ):
        return _validation_error(
            field="limit",
            action=action,
            message="limit must be a positive integer",
            request_id=request_id,
            code=ErrorCode.INVALID_FORMAT,
        )
    return None


def _handle_list(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "list"
    project = payload.get("project")
    limit = payload.get("limit")

    if not is_text(project):
        return _validation_error(
            field="project",
            action=action,
            message="Provide a project identifier",
            request_id=request_id,
        )
    error = _check_limit(limit, action, request_id)
    if error:
        return error

    issues = get_services(config).issues
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: issues.list_issues(
            project, status=payload.get("status"), limit=limit
        ),
    )


def _handle_search(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "search"
    query = payload.get("query")
    if query is not None and not isinstance(query, str):
        return _validation_error(
            field="query",
            action=action,
            message="query must be a string",
            request_id=request_id,
            code=ErrorCode.INVALID_FORMAT,
        )
    error = _check_limit(payload.get("limit"), action, request_id)
    if error:
        return error

    issues = get_services(config).issues
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: issues.search_issues(
            query,
            project_ref=payload.get("project") or None,
            status=payload.get("status"),
            priority=payload.get("priority"),
            component=payload.get("component"),
            milestone=payload.get("milestone"),
            limit=payload.get("limit"),
        ),
    )


def _handle_update(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "update"
    issue = payload.get("issue")
    field_name = payload.get("field")

    if not is_text(issue):
        return _validation_error(
            field="issue",
            action=action,
            message="Provide an issue identifier",
            request_id=request_id,
        )
    if not is_text(field_name):
        return _validation_error(
            field="field",
            action=action,
            message="Provide the name of the field to change",
            request_id=request_id,
        )
    flags, error = _flags(payload, ("dry_run",), action, request_id)
    if error:
        return error

    issues = get_services(config).issues
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: issues.update_issue(
            issue, field_name, payload.get("value"), dry_run=flags["dry_run"]
        ),
    )


# ---------------------------------------------------------------------------
# Impact / delete
# ---------------------------------------------------------------------------


def _handle_impact(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "impact"
    issue = payload.get("issue")
    if not is_text(issue):
        return _validation_error(
            field="issue",
            action=action,
            message="Provide an issue identifier",
            request_id=request_id,
        )
    flags, error = _flags(payload, ("force",), action, request_id)
    if error:
        return error

    analyzer = get_services(config).analyzer
    return run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        operation=lambda: analyzer.analyze_issue_deletion(issue, force=flags["force"]),
    )


def _handle_delete(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "delete"
    issue = payload.get("issue")
    if not is_text(issue):
        return _validation_error(
            field="issue",
            action=action,
            message="Provide an issue identifier",
            request_id=request_id,
        )
    flags, error = _flags(
        payload, ("cascade", "force", "dry_run"), action, request_id, defaults={"cascade": True}
    )
    if error:
        return error

    deleter = get_services(config).deleter
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: deleter.delete_issue(issue, **flags),
    )
    if response["success"] and not flags["dry_run"]:
        audit_log(
            "resource_deleted",
            resource_type="issue",
            resource_id=issue.strip(),
            cascade=flags["cascade"],
            force=flags["force"],
            deleted_count=response["data"].get("deleted_count"),
        )
    return response


# ---------------------------------------------------------------------------
# Bulk actions
# ---------------------------------------------------------------------------


def _require_list(
    payload: Dict[str, Any], name: str, action: str, request_id: str
) -> Optional[dict]:
    value = payload.get(name)
    if not isinstance(value, list) or not value:
        return _validation_error(
            field=name,
            action=action,
            message=f"{name} must be a non-empty list",
            request_id=request_id,
            code=ErrorCode.MISSING_REQUIRED if value is None else ErrorCode.INVALID_FORMAT,
        )
    return None


def _bulk_options(payload: Dict[str, Any], action: str, request_id: str, extra: tuple = ()):
    flags, error = _flags(
        payload,
        ("continue_on_error", "dry_run") + extra,
        action,
        request_id,
        defaults={"continue_on_error": True, "cascade": True},
    )
    if error:
        return None, None, error
    batch_size, error = read_batch_size(
        payload, tool=_TOOL, action=action, request_id=request_id
    )
    return flags, batch_size, error


def _audit_bulk(action: str, response: dict, dry_run: bool) -> None:
    if dry_run:
        return
    data = response.get("data") or {}
    audit_log(
        "bulk_operation",
        tool=_TOOL,
        action=action,
        succeeded=data.get("succeeded"),
        failed=data.get("failed"),
        skipped=data.get("skipped"),
    )


def _handle_bulk_create(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "bulk-create"
    project = payload.get("project")
    defaults = payload.get("defaults")

    if not is_text(project):
        return _validation_error(
            field="project",
            action=action,
            message="Provide a project identifier",
            request_id=request_id,
        )
    error = _require_list(payload, "items", action, request_id)
    if error:
        return error
    if defaults is not None and not isinstance(defaults, dict):
        return _validation_error(
            field="defaults",
            action=action,
            message="defaults must be an object",
            request_id=request_id,
            code=ErrorCode.INVALID_FORMAT,
        )
    flags, batch_size, error = _bulk_options(payload, action, request_id)
    if error:
        return error

    issues = get_services(config).issues
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: issues.bulk_create_issues(
            project,
            payload["items"],
            defaults=defaults,
            batch_size=batch_size,
            continue_on_error=flags["continue_on_error"],
            dry_run=flags["dry_run"],
        ),
    )
    _audit_bulk(action, response, flags["dry_run"])
    return response


def _handle_bulk_update(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "bulk-update"
    error = _require_list(payload, "updates", action, request_id)
    if error:
        return error
    flags, batch_size, error = _bulk_options(payload, action, request_id)
    if error:
        return error

    issues = get_services(config).issues
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: issues.bulk_update_issues(
            payload["updates"],
            batch_size=batch_size,
            continue_on_error=flags["continue_on_error"],
            dry_run=flags["dry_run"],
        ),
    )
    _audit_bulk(action, response, flags["dry_run"])
    return response


def _handle_bulk_delete(*, config: ServerConfig, payload: Dict[str, Any]) -> dict:
    request_id = _request_id()
    action = "bulk-delete"
    error = _require_list(payload, "issues", action, request_id)
    if error:
        return error
    identifiers = payload["issues"]
    if not all(is_text(ref) for ref in identifiers):
        return _validation_error(
            field="issues",
            action=action,
            message="Every entry must be a non-empty issue identifier",
            request_id=request_id,
            code=ErrorCode.INVALID_FORMAT,
        )
    flags, batch_size, error = _bulk_options(
        payload, action, request_id, extra=("cascade", "force")
    )
    if error:
        return error

    deleter = get_services(config).deleter
    response = run_operation(
        tool=_TOOL,
        action=action,
        request_id=request_id,
        dry_run=flags["dry_run"],
        operation=lambda: deleter.bulk_delete_issues(
            identifiers,
            cascade=flags["cascade"],
            force=flags["force"],
            dry_run=flags["dry_run"],
            batch_size=batch_size,
            continue_on_error=flags["continue_on_error"],
        ),
    )
    _audit_bulk(action, response, flags["dry_run"])
    return response


_ACTION_DEFINITIONS = [
    ActionDefinition(name="create", handler=_handle_create, summary="Create an issue"),
    ActionDefinition(
        name="create-subissue",
        handler=_handle_create_subissue,
        summary="Create an issue under a parent issue",
        aliases=("create_sub_issue",),
    ),
    ActionDefinition(
        name="create-from-template",
        handler=_handle_create_from_template,
        summary="Create an issue and its sub-issues from a project template",
    ),
    ActionDefinition(name="get", handler=_handle_get, summary="Fetch one issue"),
    ActionDefinition(name="list", handler=_handle_list, summary="List a project's issues"),
    ActionDefinition(
        name="search", handler=_handle_search, summary="Find issues by text and filters"
    ),
    ActionDefinition(name="update", handler=_handle_update, summary="Change one issue field"),
    ActionDefinition(
        name="impact",
        handler=_handle_impact,
        summary="Preview what deleting an issue would remove",
    ),
    ActionDefinition(
        name="delete",
        handler=_handle_delete,
        summary="Delete an issue, optionally with its sub-issues",
    ),
    ActionDefinition(
        name="bulk-create", handler=_handle_bulk_create, summary="Create many issues"
    ),
    ActionDefinition(
        name="bulk-update", handler=_handle_bulk_update, summary="Update many issues"
    ),
    ActionDefinition(
        name="bulk-delete", handler=_handle_bulk_delete, summary="Delete many issues"
    ),
]

_ISSUE_ROUTER = ActionRouter(tool_name=_TOOL, actions=_ACTION_DEFINITIONS)


def _dispatch_issue_action(
    *, action: str, payload: Dict[str, Any], config: ServerConfig
) -> dict:
    try:
        return _ISSUE_ROUTER.dispatch(action=action, config=config, payload=payload)
    except ActionRouterError as exc:
        request_id = _request_id()
        allowed = ", ".join(exc.allowed_actions)
        return asdict(
            error_response(
                f"Unsupported issue action '{action}'. Allowed actions: {allowed}",
                error_code=ErrorCode.VALIDATION_ERROR,
                error_type=ErrorType.VALIDATION,
                remediation=f"Use one of: {allowed}",
                request_id=request_id,
            )
        )


def register_unified_issue_tool(mcp: FastMCP, config: ServerConfig) -> None:
    """Register the consolidated issue tool."""

    @canonical_tool(
        mcp,
        canonical_name="issue",
    )
    def issue(
        action: str,
        project: Optional[str] = None,
        issue: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        priority: Optional[str] = None,
        status: Optional[str] = None,
        component: Optional[str] = None,
        milestone: Optional[str] = None,
        parent: Optional[str] = None,
        template: Optional[str] = None,
        query: Optional[str] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        limit: Optional[int] = None,
        cascade: bool = True,
        force: bool = False,
        dry_run: bool = False,
        include_children: bool = True,
        items: Optional[List[Dict[str, Any]]] = None,
        defaults: Optional[Dict[str, Any]] = None,
        updates: Optional[List[Dict[str, Any]]] = None,
        issues: Optional[List[str]] = None,
        batch_size: Optional[int] = None,
        continue_on_error: bool = True,
    ) -> dict:
        payload = {
            "project": project,
            "issue": issue,
            "title": title,
            "description": description,
            "priority": priority,
            "status": status,
            "component": component,
            "milestone": milestone,
            "parent": parent,
            "template": template,
            "query": query,
            "field": field,
            "value": value,
            "limit": limit,
            "cascade": cascade,
            "force": force,
            "dry_run": dry_run,
            "include_children": include_children,
            "items": items,
            "defaults": defaults,
            "updates": updates,
            "issues": issues,
            "batch_size": batch_size,
            "continue_on_error": continue_on_error,
        }
        return _dispatch_issue_action(action=action, payload=payload, config=config)

    logger.debug("Registered unified issue tool")


__all__ = [
    "register_unified_issue_tool",
]
