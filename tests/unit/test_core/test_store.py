"""Tests for tracker_mcp.core.store module."""

import json

import httpx
import pytest

from tracker_mcp.core.errors import NotFoundError, OperationFailedError, ValidationError
from tracker_mcp.core.models import DocumentKind
from tracker_mcp.core.responses import ErrorCode
from tracker_mcp.core.store import (
    HttpDocumentStore,
    InMemoryDocumentStore,
    resolve_issue,
    resolve_project,
)


# =============================================================================
# In-memory store
# =============================================================================


class TestInMemoryStore:
    """Tests for InMemoryDocumentStore primitives."""

    def test_insert_assigns_prefixed_id(self, store):
        doc_id = store.insert(DocumentKind.ISSUE, {"title": "x"})
        assert doc_id.startswith("iss_")
        assert store.find_one(DocumentKind.ISSUE, {"_id": doc_id})["title"] == "x"

    def test_reads_are_copies(self, store):
        doc_id = store.insert(DocumentKind.PROJECT, {"identifier": "ENG", "tags": ["a"]})

        doc = store.find_one(DocumentKind.PROJECT, {"_id": doc_id})
        doc["tags"].append("b")

        assert store.find_one(DocumentKind.PROJECT, {"_id": doc_id})["tags"] == ["a"]

    def test_find_all_sort_and_limit(self, store):
        for number in (3, 1, 2):
            store.insert(DocumentKind.ISSUE, {"space": "p", "number": number})
        store.insert(DocumentKind.ISSUE, {"space": "q", "number": 9})

        ascending = store.find_all(DocumentKind.ISSUE, {"space": "p"}, sort={"number": 1})
        top = store.find_all(DocumentKind.ISSUE, {"space": "p"}, sort={"number": -1}, limit=1)

        assert [d["number"] for d in ascending] == [1, 2, 3]
        assert [d["number"] for d in top] == [3]

    def test_sort_puts_missing_values_last(self, store):
        store.insert(DocumentKind.ISSUE, {"number": None})
        store.insert(DocumentKind.ISSUE, {"number": 1})

        docs = store.find_all(DocumentKind.ISSUE, {}, sort={"number": -1})
        assert [d["number"] for d in docs] == [1, None]

    def test_update_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.update(DocumentKind.ISSUE, "iss_missing", {"title": "x"})

    def test_atomic_increment(self, store):
        doc_id = store.insert(DocumentKind.PROJECT, {"sequence": 4})

        assert store.atomic_increment(DocumentKind.PROJECT, doc_id, "sequence", 3) == 7
        assert store.atomic_increment(DocumentKind.PROJECT, "prj_missing", "sequence", 1) is None

    def test_atomic_increment_non_integer(self, store):
        doc_id = store.insert(DocumentKind.PROJECT, {"sequence": "x"})
        before = store.mutations

        assert store.atomic_increment(DocumentKind.PROJECT, doc_id, "sequence", 1) is None
        assert store.mutations == before

    def test_set_if_greater_only_raises(self, store):
        doc_id = store.insert(DocumentKind.PROJECT, {"sequence": 5})

        assert store.set_if_greater(DocumentKind.PROJECT, doc_id, "sequence", 3) == 5
        assert store.set_if_greater(DocumentKind.PROJECT, doc_id, "sequence", 8) == 8
        assert store.mutations == 2

    def test_set_if_greater_fills_missing_field(self, store):
        doc_id = store.insert(DocumentKind.PROJECT, {})
        assert store.set_if_greater(DocumentKind.PROJECT, doc_id, "sequence", 0) == 0

    def test_child_counter_moves_with_child(self, store):
        parent_id = store.insert(DocumentKind.ISSUE, {"title": "parent"})

        child_id = store.add_child(DocumentKind.ISSUE, parent_id, {"title": "child"}, "sub_issues")
        assert store.find_one(DocumentKind.ISSUE, {"_id": child_id})["parent"] == parent_id
        assert store.find_one(DocumentKind.ISSUE, {"_id": parent_id})["sub_issues"] == 1

        assert store.remove_child(DocumentKind.ISSUE, parent_id, child_id, "sub_issues")
        assert store.find_one(DocumentKind.ISSUE, {"_id": parent_id})["sub_issues"] == 0
        assert not store.remove_child(DocumentKind.ISSUE, parent_id, child_id, "sub_issues")

    def test_add_child_missing_parent(self, store):
        with pytest.raises(NotFoundError):
            store.add_child(DocumentKind.ISSUE, "iss_missing", {"title": "x"}, "sub_issues")
        assert store.find_all(DocumentKind.ISSUE, {}) == []

    def test_remove(self, store):
        doc_id = store.insert(DocumentKind.TEMPLATE, {"title": "t"})
        assert store.remove(DocumentKind.TEMPLATE, doc_id)
        assert not store.remove(DocumentKind.TEMPLATE, doc_id)


class TestResolvers:
    def test_resolve_project_by_identifier_or_id(self, store):
        doc_id = store.insert(DocumentKind.PROJECT, {"identifier": "ENG"})

        assert resolve_project(store, " eng ")["_id"] == doc_id
        assert resolve_project(store, doc_id)["identifier"] == "ENG"

    def test_resolve_project_missing(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            resolve_project(store, "")
        assert exc_info.value.code == ErrorCode.PROJECT_NOT_FOUND

    def test_resolve_issue(self, store):
        doc_id = store.insert(DocumentKind.ISSUE, {"identifier": "ENG-7"})

        assert resolve_issue(store, "eng-7")["_id"] == doc_id
        assert resolve_issue(store, doc_id)["identifier"] == "ENG-7"
        with pytest.raises(NotFoundError) as exc_info:
            resolve_issue(store, "ENG-8")
        assert exc_info.value.code == ErrorCode.ISSUE_NOT_FOUND

    @pytest.mark.parametrize("ref", [5, ["ENG"], {"id": "x"}])
    def test_non_string_refs_rejected(self, store, ref):
        with pytest.raises(ValidationError) as exc_info:
            resolve_issue(store, ref)
        assert exc_info.value.code == ErrorCode.INVALID_FORMAT
        with pytest.raises(ValidationError):
            resolve_project(store, ref)


# =============================================================================
# HTTP store
# =============================================================================


class FakeDocumentService:
    """Records requests and answers from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body, dict(request.url.params)))
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        status, payload = handler
        if isinstance(payload, str):
            return httpx.Response(status, text=payload)
        return httpx.Response(status, json=payload)


def _http_store(routes):
    service = FakeDocumentService(routes)
    client = httpx.Client(
        base_url="http://store.test", transport=httpx.MockTransport(service)
    )
    return HttpDocumentStore("http://store.test", client=client), service


class TestHttpStore:
    """Tests for HttpDocumentStore request mapping."""

    def test_find_one(self):
        store, service = _http_store(
            {("POST", "/documents/issue/find_one"): (200, {"document": {"_id": "iss_1"}})}
        )

        doc = store.find_one(DocumentKind.ISSUE, {"space": "p"}, sort={"number": -1})

        assert doc == {"_id": "iss_1"}
        assert service.requests[0][2] == {"predicate": {"space": "p"}, "sort": {"number": -1}}

    def test_find_one_missing(self):
        store, _ = _http_store({})
        assert store.find_one(DocumentKind.ISSUE, {"_id": "x"}) is None

    def test_find_all_with_limit(self):
        store, service = _http_store(
            {("POST", "/documents/project/find"): (200, {"documents": [{"_id": "a"}, {"_id": "b"}]})}
        )

        docs = store.find_all(DocumentKind.PROJECT, {}, limit=2)

        assert [d["_id"] for d in docs] == ["a", "b"]
        assert service.requests[0][2] == {"predicate": {}, "limit": 2}

    def test_insert_generates_id(self):
        store, service = _http_store({("POST", "/documents/template"): (201, {})})

        doc_id = store.insert(DocumentKind.TEMPLATE, {"title": "t"})

        assert doc_id.startswith("tem_")
        assert service.requests[0][2]["document"] == {"title": "t", "_id": doc_id}

    def test_update_missing_raises(self):
        store, _ = _http_store({})
        with pytest.raises(NotFoundError):
            store.update(DocumentKind.ISSUE, "iss_1", {"title": "x"})

    def test_atomic_increment(self):
        store, service = _http_store(
            {("POST", "/documents/project/prj_1/increment"): (200, {"new_value": 12})}
        )

        assert store.atomic_increment(DocumentKind.PROJECT, "prj_1", "sequence", 2) == 12
        assert service.requests[0][2] == {"field": "sequence", "delta": 2}

    @pytest.mark.parametrize("value", [None, "12", True])
    def test_atomic_increment_unusable_value(self, value):
        store, _ = _http_store(
            {("POST", "/documents/project/prj_1/increment"): (200, {"new_value": value})}
        )
        assert store.atomic_increment(DocumentKind.PROJECT, "prj_1", "sequence", 1) is None

    def test_set_if_greater(self):
        store, _ = _http_store(
            {("POST", "/documents/project/prj_1/raise"): (200, {"value": 9})}
        )
        assert store.set_if_greater(DocumentKind.PROJECT, "prj_1", "sequence", 4) == 9

    def test_remove(self):
        store, _ = _http_store({("DELETE", "/documents/issue/iss_1"): (204, None)})

        assert store.remove(DocumentKind.ISSUE, "iss_1")
        assert not store.remove(DocumentKind.ISSUE, "iss_2")

    def test_child_routes(self):
        store, service = _http_store(
            {
                ("POST", "/documents/issue/iss_p/children"): (201, {}),
                ("DELETE", "/documents/issue/iss_p/children/iss_c"): (204, None),
            }
        )

        child_id = store.add_child(
            DocumentKind.ISSUE, "iss_p", {"_id": "iss_c", "title": "c"}, "sub_issues"
        )
        removed = store.remove_child(DocumentKind.ISSUE, "iss_p", "iss_c", "sub_issues")

        assert child_id == "iss_c"
        assert removed
        assert service.requests[0][2]["document"]["parent"] == "iss_p"
        assert service.requests[0][2]["counter_field"] == "sub_issues"
        assert service.requests[1][3] == {"counter_field": "sub_issues"}

    def test_add_child_missing_parent(self):
        store, _ = _http_store({})
        with pytest.raises(NotFoundError):
            store.add_child(DocumentKind.ISSUE, "iss_p", {"title": "c"}, "sub_issues")

    def test_server_error_raises_operation_failed(self):
        store, _ = _http_store({("POST", "/documents/issue/find"): (503, {})})

        with pytest.raises(OperationFailedError) as exc_info:
            store.find_all(DocumentKind.ISSUE, {})
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.parametrize("body", ["<html>bad gateway</html>", '["not", "an", "object"]'])
    def test_unreadable_body_raises_operation_failed(self, body):
        store, _ = _http_store({("POST", "/documents/issue/find"): (200, body)})

        with pytest.raises(OperationFailedError) as exc_info:
            store.find_all(DocumentKind.ISSUE, {})
        assert exc_info.value.details["reason"] == "invalid_json"

    def test_set_if_greater_without_value(self):
        store, _ = _http_store({("POST", "/documents/project/prj_1/raise"): (200, {})})

        with pytest.raises(OperationFailedError):
            store.set_if_greater(DocumentKind.PROJECT, "prj_1", "sequence", 4)

    def test_transport_error_raises_operation_failed(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(base_url="http://store.test", transport=httpx.MockTransport(refuse))
        store = HttpDocumentStore("http://store.test", client=client)

        with pytest.raises(OperationFailedError) as exc_info:
            store.remove(DocumentKind.ISSUE, "iss_1")
        assert exc_info.value.details["reason"] == "ConnectError"

    def test_context_manager_closes_client(self):
        store, _ = _http_store({})
        with store:
            pass
        assert store._client.is_closed
