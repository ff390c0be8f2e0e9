"""Tests for tracker_mcp.core.deletion module."""

import pytest

from tracker_mcp.core.deletion import CascadingDeleter
from tracker_mcp.core.errors import (
    ConflictError,
    NotFoundError,
    OperationFailedError,
    PartialDeletionError,
)
from tracker_mcp.core.impact import CHILD_COUNTER_FIELD, IssueImpact, ProjectImpact
from tracker_mcp.core.models import BLOCKS_RELATION, DocumentKind
from tracker_mcp.core.responses import ErrorCode
from tracker_mcp.core.services import TrackerServices
from tracker_mcp.core.store import InMemoryDocumentStore, resolve_issue


class RecordingStore(InMemoryDocumentStore):
    """Records the kind of every removal, in order."""

    def __init__(self):
        super().__init__()
        self.removed_kinds = []

    def remove(self, kind, doc_id):
        removed = super().remove(kind, doc_id)
        if removed:
            self.removed_kinds.append(kind)
        return removed

    def remove_child(self, kind, parent_id, child_id, counter_field):
        removed = super().remove_child(kind, parent_id, child_id, counter_field)
        if removed:
            self.removed_kinds.append(kind)
        return removed


class FailingChildStore(InMemoryDocumentStore):
    """Fails the removal of one chosen child document."""

    fail_on = None

    def remove_child(self, kind, parent_id, child_id, counter_field):
        if child_id == self.fail_on:
            raise OperationFailedError("Document store returned HTTP 503")
        return super().remove_child(kind, parent_id, child_id, counter_field)


class ConcurrentRemovalStore(InMemoryDocumentStore):
    """Another caller deletes the chosen document just before our removal."""

    steal = None

    def remove(self, kind, doc_id):
        if doc_id == self.steal:
            super().remove(kind, doc_id)
        return super().remove(kind, doc_id)

    def remove_child(self, kind, parent_id, child_id, counter_field):
        if child_id == self.steal:
            super().remove_child(kind, parent_id, child_id, counter_field)
        return super().remove_child(kind, parent_id, child_id, counter_field)


def _seed_tree(services):
    issues = services.issues
    services.projects.create_project("Engineering", "ENG")
    root = issues.create_issue("ENG", "Root")
    child_a = issues.create_subissue(root["identifier"], "Child A")
    child_b = issues.create_subissue(root["identifier"], "Child B")
    issues.create_subissue(child_a["identifier"], "Grandchild")
    return root, child_a, child_b


def _issue(store, ref):
    return resolve_issue(store, ref)


def _block(store, source, target):
    src = _issue(store, source)
    relations = [{"type": BLOCKS_RELATION, "issue": _issue(store, target)["_id"]}]
    store.update(DocumentKind.ISSUE, src["_id"], {"relations": relations})


# =============================================================================
# Single issue deletion
# =============================================================================


class TestDeleteIssue:
    """Tests for CascadingDeleter.delete_issue."""

    def test_leaf_issue_is_deleted(self, services, store, issue_tree):
        result = services.deleter.delete_issue(issue_tree["child_b"])

        assert result.to_dict()["removed"] == [issue_tree["child_b"]]
        assert _issue(store, issue_tree["root"])[CHILD_COUNTER_FIELD] == 1
        with pytest.raises(NotFoundError):
            _issue(store, issue_tree["child_b"])

    def test_sub_issues_require_cascade(self, services, store, issue_tree, snapshot):
        before = snapshot()

        with pytest.raises(ConflictError) as exc_info:
            services.deleter.delete_issue(issue_tree["root"], cascade=False)

        assert exc_info.value.code == ErrorCode.DELETION_BLOCKED
        assert exc_info.value.details["cascade_count"] == 3
        assert snapshot() == before

    def test_plain_delete_cascades_by_default(self, services, store, issue_tree):
        data = services.deleter.delete_issue(issue_tree["root"]).to_dict()

        assert data["deleted_count"] == 4
        assert data["warnings"] == []
        assert store.find_all(DocumentKind.ISSUE, {}) == []

    def test_cascade_removes_subtree_children_first(self, services, store, issue_tree):
        data = services.deleter.delete_issue(issue_tree["root"], cascade=True).to_dict()

        assert data["deleted"] is True
        assert data["deleted_count"] == 4
        assert data["removed"] == [
            issue_tree["grandchild"],
            issue_tree["child_b"],
            issue_tree["child_a"],
            issue_tree["root"],
        ]
        assert store.find_all(DocumentKind.ISSUE, {}) == []

    def test_cascade_on_middle_node_fixes_parent_counter(self, services, store, issue_tree):
        services.deleter.delete_issue(issue_tree["child_a"], cascade=True)

        root = _issue(store, issue_tree["root"])
        assert root[CHILD_COUNTER_FIELD] == 1
        remaining = [d["identifier"] for d in store.find_all(DocumentKind.ISSUE, {}, sort={"number": 1})]
        assert remaining == [issue_tree["root"], issue_tree["child_b"]]

    def test_force_implies_cascade(self, services, store, issue_tree):
        data = services.deleter.delete_issue(
            issue_tree["root"], cascade=False, force=True
        ).to_dict()

        assert data["deleted_count"] == 4
        assert any(w.startswith("Forced:") for w in data["warnings"])

    def test_dry_run_writes_nothing(self, services, store, issue_tree, snapshot):
        before = snapshot()
        mutations = store.mutations

        impact = services.deleter.delete_issue(issue_tree["root"], cascade=True, dry_run=True)

        assert isinstance(impact, IssueImpact)
        assert impact.cascade_count == 3
        assert snapshot() == before
        assert store.mutations == mutations

    def test_blocks_relation_requires_force(self, services, store, issue_tree):
        other = services.issues.create_issue("ENG", "Downstream")
        _block(store, issue_tree["child_b"], other["identifier"])

        with pytest.raises(ConflictError) as exc_info:
            services.deleter.delete_issue(issue_tree["child_b"], cascade=True)
        assert other["identifier"] in exc_info.value.message

        result = services.deleter.delete_issue(issue_tree["child_b"], force=True)
        assert result.to_dict()["deleted_count"] == 1

    def test_missing_issue(self, services, project):
        with pytest.raises(NotFoundError) as exc_info:
            services.deleter.delete_issue("ENG-42")
        assert exc_info.value.code == ErrorCode.ISSUE_NOT_FOUND

    def test_partial_failure_reports_progress(self):
        store = FailingChildStore()
        services = TrackerServices.create(store)
        root, child_a, child_b = _seed_tree(services)
        store.fail_on = child_b["id"]

        with pytest.raises(PartialDeletionError) as exc_info:
            services.deleter.delete_issue(root["identifier"], cascade=True)

        error = exc_info.value
        assert error.code == ErrorCode.PARTIAL_FAILURE
        assert error.deleted == ["ENG-4"]
        assert [entry["name"] for entry in error.failed] == ["ENG-3"]
        assert error.pending == ["ENG-2", "ENG-1"]
        # No rollback: the grandchild stays gone, the rest stays.
        remaining = sorted(d["identifier"] for d in store.find_all(DocumentKind.ISSUE, {}))
        assert remaining == ["ENG-1", "ENG-2", "ENG-3"]

    def test_first_removal_failure_is_raised_unwrapped(self):
        store = FailingChildStore()
        services = TrackerServices.create(store)
        root, child_a, child_b = _seed_tree(services)
        store.fail_on = child_b["id"]

        with pytest.raises(OperationFailedError) as exc_info:
            services.deleter.delete_issue(child_b["identifier"])
        assert not isinstance(exc_info.value, PartialDeletionError)

    def test_target_removed_concurrently_is_not_found(self):
        store = ConcurrentRemovalStore()
        services = TrackerServices.create(store)
        root, child_a, child_b = _seed_tree(services)
        store.steal = root["id"]

        with pytest.raises(NotFoundError) as exc_info:
            services.deleter.delete_issue(root["identifier"])

        assert exc_info.value.code == ErrorCode.ISSUE_NOT_FOUND
        assert "already deleted" in exc_info.value.message

    def test_child_target_removed_concurrently_is_not_found(self):
        store = ConcurrentRemovalStore()
        services = TrackerServices.create(store)
        root, child_a, child_b = _seed_tree(services)
        store.steal = child_b["id"]

        with pytest.raises(NotFoundError):
            services.deleter.delete_issue(child_b["identifier"])
        assert _issue(store, root["identifier"])[CHILD_COUNTER_FIELD] == 1


# =============================================================================
# Projects
# =============================================================================


class TestDeleteProject:
    """Tests for project deletion and archiving."""

    def test_blocked_by_active_issues(self, services, issue_tree):
        with pytest.raises(ConflictError) as exc_info:
            services.deleter.delete_project("ENG")
        assert exc_info.value.code == ErrorCode.DELETION_BLOCKED

    def test_forced_delete_removes_everything_in_order(self):
        store = RecordingStore()
        services = TrackerServices.create(store)
        _seed_tree(services)
        services.projects.create_component("ENG", "API")
        services.projects.create_milestone("ENG", "v1")
        services.projects.create_template("ENG", "Bug report")

        data = services.deleter.delete_project("ENG", force=True).to_dict()

        assert data["counts"] == {
            "templates": 1,
            "milestones": 1,
            "components": 1,
            "issues": 4,
        }
        assert store.removed_kinds == [
            DocumentKind.TEMPLATE,
            DocumentKind.MILESTONE,
            DocumentKind.COMPONENT,
            DocumentKind.ISSUE,
            DocumentKind.ISSUE,
            DocumentKind.ISSUE,
            DocumentKind.ISSUE,
            DocumentKind.PROJECT,
        ]
        for kind in DocumentKind:
            assert store.find_all(kind, {}) == []

    def test_empty_project_deletes_without_force(self, services, store, project):
        result = services.deleter.delete_project("ENG")

        assert result.to_dict()["removed"] == ["ENG"]
        assert store.find_all(DocumentKind.PROJECT, {}) == []

    def test_delete_drops_cached_sequence(self, services, project):
        services.issues.create_issue("ENG", "Finished", status="done")
        assert services.sequence.cache_stats()["total_entries"] == 1

        services.deleter.delete_project("ENG")

        assert services.sequence.cache_stats()["total_entries"] == 0

    def test_recreated_project_starts_numbering_again(self, services, project):
        services.issues.create_issue("ENG", "Finished", status="done")
        services.deleter.delete_project("ENG")

        services.projects.create_project("Engineering", "ENG")
        assert services.issues.create_issue("ENG", "Fresh")["number"] == 1

    def test_dry_run(self, services, store, issue_tree, snapshot):
        before = snapshot()

        impact = services.deleter.delete_project("ENG", dry_run=True)

        assert isinstance(impact, ProjectImpact)
        assert not impact.can_delete
        assert snapshot() == before

    def test_archive_and_unarchive(self, services, store, project):
        assert services.deleter.archive_project("ENG") == {
            "identifier": "ENG",
            "archived": True,
        }
        with pytest.raises(ConflictError) as exc_info:
            services.deleter.archive_project("ENG")
        assert exc_info.value.code == ErrorCode.ALREADY_ARCHIVED

        assert services.deleter.unarchive_project("ENG")["archived"] is False
        with pytest.raises(ConflictError):
            services.deleter.unarchive_project("ENG")


# =============================================================================
# Components / milestones
# =============================================================================


class TestDeleteReferences:
    """Tests for component and milestone deletion."""

    def test_referenced_component_needs_force(self, services, store, project):
        services.projects.create_component("ENG", "API")
        issue = services.issues.create_issue("ENG", "Uses API", component="API")

        with pytest.raises(ConflictError) as exc_info:
            services.deleter.delete_component("ENG", "API")
        assert exc_info.value.details["affected_issues"] == [issue["identifier"]]

        data = services.deleter.delete_component("ENG", "API", force=True).to_dict()

        assert data["updated_issues"] == [issue["identifier"]]
        assert data["counts"] == {"issues_updated": 1}
        assert _issue(store, issue["identifier"])["component"] is None
        assert store.find_all(DocumentKind.COMPONENT, {}) == []

    def test_unused_milestone(self, services, store, project):
        services.projects.create_milestone("ENG", "v1")

        data = services.deleter.delete_milestone("ENG", "v1").to_dict()

        assert data["removed"] == ["v1"]
        assert data["updated_issues"] == []

    def test_dry_run_keeps_references(self, services, store, project, snapshot):
        services.projects.create_milestone("ENG", "v1")
        services.issues.create_issue("ENG", "Planned", milestone="v1")
        before = snapshot()

        impact = services.deleter.delete_milestone("ENG", "v1", force=True, dry_run=True)

        assert len(impact.affected_issues) == 1
        assert snapshot() == before

    def test_deleter_builds_default_collaborators(self, store):
        deleter = CascadingDeleter(store)
        assert deleter.analyzer is not None


class TestDeleteTemplate:
    def test_removes_template_only(self, services, store, project):
        services.projects.create_template("ENG", "Bug report", children=[{"title": "Repro"}])
        created = services.issues.create_issue_from_template("ENG", "Bug report")

        data = services.deleter.delete_template("ENG", "Bug report").to_dict()

        assert data["kind"] == "template"
        assert data["removed"] == ["Bug report"]
        assert data["counts"] == {"templates": 1}
        assert store.find_all(DocumentKind.TEMPLATE, {}) == []
        assert len(store.find_all(DocumentKind.ISSUE, {})) == created["count"]

    def test_by_document_id(self, services, store, project):
        template = services.projects.create_template("ENG", "Spike")

        services.deleter.delete_template("ENG", template["id"])

        assert store.find_all(DocumentKind.TEMPLATE, {}) == []

    def test_missing_template(self, services, project):
        with pytest.raises(NotFoundError) as exc_info:
            services.deleter.delete_template("ENG", "Nope")
        assert exc_info.value.code == ErrorCode.TEMPLATE_NOT_FOUND
