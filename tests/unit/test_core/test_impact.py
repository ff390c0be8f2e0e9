"""Tests for tracker_mcp.core.impact module."""

import pytest

from tracker_mcp.core.errors import NotFoundError
from tracker_mcp.core.impact import CHILD_COUNTER_FIELD, ImpactAnalyzer
from tracker_mcp.core.models import BLOCKS_RELATION, DocumentKind
from tracker_mcp.core.responses import ErrorCode
from tracker_mcp.core.store import resolve_issue


def _add_blocks(store, source, target):
    src = resolve_issue(store, source)
    dst = resolve_issue(store, target)
    relations = src.get("relations", []) + [{"type": BLOCKS_RELATION, "issue": dst["_id"]}]
    store.update(DocumentKind.ISSUE, src["_id"], {"relations": relations})


# =============================================================================
# Issue impact
# =============================================================================


class TestIssueImpact:
    """Tests for analyze_issue_deletion."""

    def test_leaf_issue_has_no_cascade(self, services, issue_tree):
        impact = services.analyzer.analyze_issue_deletion(issue_tree["child_b"])

        assert impact.direct_count == 1
        assert impact.cascade_count == 0
        assert impact.can_delete
        assert impact.blockers == []

    def test_subtree_counted_breadth_first(self, services, issue_tree):
        impact = services.analyzer.analyze_issue_deletion(issue_tree["root"])

        assert impact.cascade_count == 3
        assert [node.identifier for node in impact.descendants] == [
            issue_tree["child_a"],
            issue_tree["child_b"],
            issue_tree["grandchild"],
        ]
        assert [node.depth for node in impact.descendants] == [1, 1, 2]

    def test_sub_issues_block_without_force(self, services, issue_tree):
        impact = services.analyzer.analyze_issue_deletion(issue_tree["root"])

        assert not impact.can_delete
        assert "3 sub-issue(s)" in impact.blockers[0]

    def test_force_turns_blockers_into_warnings(self, services, issue_tree):
        impact = services.analyzer.analyze_issue_deletion(issue_tree["root"], force=True)

        assert impact.can_delete
        assert impact.blockers == []
        assert any(w.startswith("Forced:") for w in impact.warnings)

    def test_blocks_relation_is_reported(self, services, store, issue_tree):
        other = services.issues.create_issue("ENG", "Downstream")
        _add_blocks(store, issue_tree["child_b"], other["identifier"])

        impact = services.analyzer.analyze_issue_deletion(issue_tree["child_b"])

        assert [doc["identifier"] for doc in impact.blocked_issues] == [other["identifier"]]
        assert f"blocks {other['identifier']}" in impact.blockers[0]

    def test_blocks_within_subtree_are_ignored(self, services, store, issue_tree):
        _add_blocks(store, issue_tree["root"], issue_tree["child_a"])

        impact = services.analyzer.analyze_issue_deletion(issue_tree["root"], force=True)

        assert impact.blocked_issues == []

    def test_to_dict_shape(self, services, issue_tree):
        data = services.analyzer.analyze_issue_deletion(issue_tree["child_a"]).to_dict()

        assert data["target"]["identifier"] == issue_tree["child_a"]
        assert data["target"]["kind"] == "issue"
        assert data["direct_count"] == 1
        assert data["cascade_count"] == 1
        assert data["total_count"] == 2
        assert data["descendants"][0]["identifier"] == issue_tree["grandchild"]
        assert data["can_delete"] is False

    def test_missing_issue(self, services, project):
        with pytest.raises(NotFoundError) as exc_info:
            services.analyzer.analyze_issue_deletion("ENG-99")
        assert exc_info.value.code == ErrorCode.ISSUE_NOT_FOUND

    def test_analysis_does_not_write(self, services, store, issue_tree):
        before = store.mutations
        services.analyzer.analyze_issue_deletion(issue_tree["root"], force=True)
        assert store.mutations == before


class TestSubtreeTraversal:
    """Cycle and counter-drift handling in collect_subtree."""

    def test_cycle_terminates_with_warning(self, services, store, issue_tree):
        root = resolve_issue(store, issue_tree["root"])
        grandchild = resolve_issue(store, issue_tree["grandchild"])
        # Corrupt the tree: root becomes a child of its own grandchild.
        store.update(DocumentKind.ISSUE, root["_id"], {"parent": grandchild["_id"]})

        descendants, warnings = ImpactAnalyzer(store).collect_subtree(
            resolve_issue(store, issue_tree["root"])
        )

        assert len(descendants) == 3
        assert any("Cycle detected" in w for w in warnings)

    def test_counter_drift_is_warned(self, services, store, issue_tree):
        root = resolve_issue(store, issue_tree["root"])
        store.update(DocumentKind.ISSUE, root["_id"], {CHILD_COUNTER_FIELD: 5})

        _, warnings = ImpactAnalyzer(store).collect_subtree(
            resolve_issue(store, issue_tree["root"])
        )

        assert any("records 5 sub-issue(s) but 2 exist" in w for w in warnings)

    def test_consistent_tree_has_no_warnings(self, services, store, issue_tree):
        _, warnings = ImpactAnalyzer(store).collect_subtree(
            resolve_issue(store, issue_tree["root"])
        )
        assert warnings == []


# =============================================================================
# Project impact
# =============================================================================


class TestProjectImpact:
    """Tests for analyze_project_deletion."""

    def test_counts_everything_owned(self, services, issue_tree):
        services.projects.create_component("ENG", "API")
        services.projects.create_milestone("ENG", "v1")
        services.projects.create_template("ENG", "Bug report")

        data = services.analyzer.analyze_project_deletion("ENG", force=True).to_dict()

        assert data["counts"] == {
            "issues": 4,
            "components": 1,
            "milestones": 1,
            "templates": 1,
        }
        assert data["cascade_count"] == 7
        assert data["components"] == ["API"]

    def test_active_issues_block(self, services, issue_tree):
        impact = services.analyzer.analyze_project_deletion("ENG")

        assert not impact.can_delete
        assert "4 active issue(s)" in impact.blockers[0]

    def test_finished_issues_do_not_block(self, services, project):
        created = services.issues.create_issue("ENG", "Done already", status="done")
        services.issues.create_issue("ENG", "Dropped", status="canceled")

        impact = services.analyzer.analyze_project_deletion("ENG")

        assert impact.can_delete, created
        assert impact.blockers == []

    def test_github_integration_blocks(self, services):
        services.projects.create_project("Synced", "SYN", github_integration=True)

        impact = services.analyzer.analyze_project_deletion("SYN")

        assert any("GitHub integration" in b for b in impact.blockers)

    def test_missing_project(self, services):
        with pytest.raises(NotFoundError) as exc_info:
            services.analyzer.analyze_project_deletion("NONE")
        assert exc_info.value.code == ErrorCode.PROJECT_NOT_FOUND


# =============================================================================
# Component / milestone impact
# =============================================================================


class TestReferenceImpact:
    """Tests for component and milestone deletion previews."""

    def test_component_references(self, services, project):
        services.projects.create_component("ENG", "API")
        services.issues.create_issue("ENG", "Uses API", component="API")
        services.issues.create_issue("ENG", "No component")

        impact = services.analyzer.analyze_component_deletion("ENG", "API")

        assert [doc["title"] for doc in impact.affected_issues] == ["Uses API"]
        assert impact.cascade_count == 0
        assert not impact.can_delete

    def test_unused_milestone_can_be_deleted(self, services, project):
        services.projects.create_milestone("ENG", "v1")

        impact = services.analyzer.analyze_milestone_deletion("ENG", "v1")

        assert impact.can_delete
        assert impact.to_dict()["affected_issue_count"] == 0

    def test_missing_component(self, services, project):
        with pytest.raises(NotFoundError) as exc_info:
            services.analyzer.analyze_component_deletion("ENG", "Nope")
        assert exc_info.value.code == ErrorCode.COMPONENT_NOT_FOUND
