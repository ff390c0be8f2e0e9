"""Tests for tracker_mcp.core.projects module."""

import pytest

from tracker_mcp.core.errors import ConflictError, NotFoundError, ValidationError
from tracker_mcp.core.responses import ErrorCode


class TestCreateProject:
    def test_create(self, services):
        project = services.projects.create_project("Engineering", "eng", description="Core")

        assert project["identifier"] == "ENG"
        assert project["sequence"] == 0
        assert project["archived"] is False
        assert project["description"] == "Core"

    @pytest.mark.parametrize("identifier", ["1ABC", "TOOLONG", "A-B", ""])
    def test_bad_identifier(self, services, identifier):
        with pytest.raises(ValidationError) as exc_info:
            services.projects.create_project("Bad", identifier)
        assert exc_info.value.field == "identifier"

    def test_bad_identifier_code(self, services):
        with pytest.raises(ValidationError) as exc_info:
            services.projects.create_project("Bad", "A_B")
        assert exc_info.value.code == ErrorCode.INVALID_FORMAT

    def test_duplicate_identifier(self, services, project):
        with pytest.raises(ConflictError) as exc_info:
            services.projects.create_project("Again", "eng")
        assert exc_info.value.code == ErrorCode.DUPLICATE_ENTRY


class TestReadProjects:
    def test_get_counts(self, services, issue_tree):
        services.projects.create_component("ENG", "API")
        services.projects.create_template("ENG", "Bug")

        view = services.projects.get_project("ENG")

        assert view["counts"] == {
            "issues": 4,
            "components": 1,
            "milestones": 0,
            "templates": 1,
        }
        assert view["sequence"] == 4

    def test_get_missing(self, services):
        with pytest.raises(NotFoundError):
            services.projects.get_project("NOPE")

    def test_list_hides_archived(self, services, project):
        services.projects.create_project("Operations", "OPS")
        services.deleter.archive_project("OPS")

        visible = [p["identifier"] for p in services.projects.list_projects()]
        everything = [p["identifier"] for p in services.projects.list_projects(include_archived=True)]

        assert visible == ["ENG"]
        assert everything == ["ENG", "OPS"]


class TestOwnedRecords:
    """Components, milestones and templates."""

    def test_component_labels_unique_per_project(self, services, project):
        services.projects.create_project("Operations", "OPS")
        services.projects.create_component("ENG", "API")
        services.projects.create_component("OPS", "API")

        with pytest.raises(ConflictError):
            services.projects.create_component("ENG", "API")

    def test_milestone(self, services, project):
        milestone = services.projects.create_milestone(
            "ENG", "v1", target_date="2026-03-01", status="in progress"
        )

        assert milestone["status"] == "in_progress"
        assert milestone["target_date"] == "2026-03-01"
        assert milestone["project"] == "ENG"

    def test_milestone_bad_date(self, services, project):
        with pytest.raises(ValidationError) as exc_info:
            services.projects.create_milestone("ENG", "v1", target_date="next week")
        assert exc_info.value.field == "target_date"

    def test_milestone_bad_status(self, services, project):
        with pytest.raises(ValidationError):
            services.projects.create_milestone("ENG", "v1", status="someday")

    def test_template_duplicate(self, services, project):
        services.projects.create_template("ENG", "Bug report", priority="high")
        with pytest.raises(ConflictError):
            services.projects.create_template("ENG", "Bug report")

    def test_blank_label(self, services, project):
        with pytest.raises(ValidationError):
            services.projects.create_component("ENG", "  ")


class TestTemplatesAndListings:
    """Template children and per-project listings."""

    def test_template_with_children(self, services, project):
        services.projects.create_component("ENG", "API")
        services.projects.create_milestone("ENG", "v1")

        created = services.projects.create_template(
            "ENG",
            "Release",
            priority="high",
            component="API",
            children=[{"title": "Notes"}, {"title": "Tag", "milestone": "v1"}],
        )
        [view] = services.projects.list_templates("ENG")

        assert created["children"] == 2
        assert view["priority"] == "high"
        assert view["component"] == "API"
        assert view["milestone"] is None
        assert [c["title"] for c in view["children"]] == ["Notes", "Tag"]
        assert view["children"][1]["milestone"] == "v1"

    def test_templates_sorted_by_title(self, services, project):
        services.projects.create_template("ENG", "Spike")
        services.projects.create_template("ENG", "Bug report")

        titles = [t["title"] for t in services.projects.list_templates("ENG")]

        assert titles == ["Bug report", "Spike"]

    @pytest.mark.parametrize(
        "children",
        ["Notes", ["Notes"], [{"title": "Notes", "owner": "me"}], [{"title": " "}]],
    )
    def test_bad_children(self, services, project, children):
        with pytest.raises(ValidationError) as exc_info:
            services.projects.create_template("ENG", "Release", children=children)
        assert exc_info.value.field.startswith("children")

    def test_template_unknown_component(self, services, project):
        with pytest.raises(NotFoundError):
            services.projects.create_template("ENG", "Release", component="Nope")

    def test_component_and_milestone_issue_counts(self, services, project):
        services.projects.create_component("ENG", "Web")
        services.projects.create_component("ENG", "API")
        services.projects.create_milestone("ENG", "v1", target_date="2026-03-01")
        services.issues.create_issue("ENG", "One", component="API", milestone="v1")
        services.issues.create_issue("ENG", "Two", component="API")

        components = services.projects.list_components("ENG")
        milestones = services.projects.list_milestones("ENG")

        assert [(c["label"], c["issues"]) for c in components] == [("API", 2), ("Web", 0)]
        assert milestones[0]["label"] == "v1"
        assert milestones[0]["issues"] == 1
        assert milestones[0]["target_date"] == "2026-03-01"

    def test_listing_unknown_project(self, services):
        with pytest.raises(NotFoundError):
            services.projects.list_components("NOPE")
