"""Document store adapters.

The tracker core needs only a handful of primitives from its backing store:
point lookup, predicate scan, an atomic server-side counter mutation and
document removal, plus plain insert/update for record creation. Everything
above this module talks to the :class:`DocumentStore` protocol.

Two implementations ship:

- :class:`InMemoryDocumentStore` keeps documents in process. Each primitive
  holds a lock for its whole duration, which gives it the same atomicity
  a real document service offers per call.
- :class:`HttpDocumentStore` forwards each primitive to a REST document
  service as exactly one HTTP request.
"""

import copy
import logging
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from tracker_mcp.core.errors import NotFoundError, OperationFailedError, ValidationError
from tracker_mcp.core.models import (
    DocumentKind,
    PROJECT_IDENTIFIER_RE,
    parse_identifier,
    format_identifier,
)
from tracker_mcp.core.responses import ErrorCode

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Predicate = Mapping[str, Any]
SortSpec = Mapping[str, int]


class DocumentStore(Protocol):
    """Primitive operations the tracker core requires from its store."""

    def find_one(
        self, kind: DocumentKind, predicate: Predicate, *, sort: Optional[SortSpec] = None
    ) -> Optional[Document]: ...

    def find_all(
        self,
        kind: DocumentKind,
        predicate: Predicate,
        *,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Document]: ...

    def insert(self, kind: DocumentKind, doc: Document) -> str: ...

    def update(self, kind: DocumentKind, doc_id: str, fields: Mapping[str, Any]) -> None: ...

    def atomic_increment(
        self, kind: DocumentKind, doc_id: str, field: str, delta: int
    ) -> Optional[int]: ...

    def set_if_greater(
        self, kind: DocumentKind, doc_id: str, field: str, value: int
    ) -> int: ...

    def remove(self, kind: DocumentKind, doc_id: str) -> bool: ...

    def add_child(
        self, kind: DocumentKind, parent_id: str, doc: Document, counter_field: str
    ) -> str: ...

    def remove_child(
        self, kind: DocumentKind, parent_id: str, child_id: str, counter_field: str
    ) -> bool: ...


def new_document_id(kind: DocumentKind) -> str:
    return f"{kind.value[:3]}_{uuid.uuid4().hex[:16]}"


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


def _matches(doc: Document, predicate: Predicate) -> bool:
    return all(doc.get(key) == value for key, value in predicate.items())


def _apply_sort(docs: List[Document], sort: SortSpec) -> List[Document]:
    # Stable sorts applied from the least significant key; None sorts last.
    for key, direction in reversed(list(sort.items())):
        if direction < 0:
            docs.sort(key=lambda d: (d.get(key) is not None, d.get(key)), reverse=True)
        else:
            docs.sort(key=lambda d: (d.get(key) is None, d.get(key)))
    return docs


class InMemoryDocumentStore:
    """Thread-safe in-process document store.

    Reads return deep copies so callers cannot mutate stored state.
    ``mutations`` counts every successful write primitive.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._docs: Dict[DocumentKind, Dict[str, Document]] = {
            kind: {} for kind in DocumentKind
        }
        self.mutations = 0

    def find_one(
        self, kind: DocumentKind, predicate: Predicate, *, sort: Optional[SortSpec] = None
    ) -> Optional[Document]:
        found = self.find_all(kind, predicate, sort=sort, limit=1)
        return found[0] if found else None

    def find_all(
        self,
        kind: DocumentKind,
        predicate: Predicate,
        *,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        with self._lock:
            docs = [
                copy.deepcopy(doc)
                for doc in self._docs[kind].values()
                if _matches(doc, predicate)
            ]
        if sort:
            docs = _apply_sort(docs, sort)
        if limit is not None:
            docs = docs[:limit]
        return docs

    def insert(self, kind: DocumentKind, doc: Document) -> str:
        stored = copy.deepcopy(doc)
        doc_id = stored.setdefault("_id", new_document_id(kind))
        with self._lock:
            self._docs[kind][doc_id] = stored
            self.mutations += 1
        return doc_id

    def update(self, kind: DocumentKind, doc_id: str, fields: Mapping[str, Any]) -> None:
        with self._lock:
            doc = self._docs[kind].get(doc_id)
            if doc is None:
                raise NotFoundError(kind.value.title(), doc_id)
            doc.update(copy.deepcopy(dict(fields)))
            self.mutations += 1

    def atomic_increment(
        self, kind: DocumentKind, doc_id: str, field: str, delta: int
    ) -> Optional[int]:
        with self._lock:
            doc = self._docs[kind].get(doc_id)
            if doc is None:
                return None
            current = doc.get(field) or 0
            if not isinstance(current, int):
                return None
            doc[field] = current + delta
            self.mutations += 1
            return doc[field]

    def set_if_greater(
        self, kind: DocumentKind, doc_id: str, field: str, value: int
    ) -> int:
        with self._lock:
            doc = self._docs[kind].get(doc_id)
            if doc is None:
                raise NotFoundError(kind.value.title(), doc_id)
            current = doc.get(field)
            if not isinstance(current, int) or value > current:
                doc[field] = value
                self.mutations += 1
            return doc[field]

    def remove(self, kind: DocumentKind, doc_id: str) -> bool:
        with self._lock:
            if self._docs[kind].pop(doc_id, None) is None:
                return False
            self.mutations += 1
            return True

    def add_child(
        self, kind: DocumentKind, parent_id: str, doc: Document, counter_field: str
    ) -> str:
        stored = copy.deepcopy(doc)
        doc_id = stored.setdefault("_id", new_document_id(kind))
        stored["parent"] = parent_id
        with self._lock:
            parent = self._docs[kind].get(parent_id)
            if parent is None:
                raise NotFoundError(kind.value.title(), parent_id)
            self._docs[kind][doc_id] = stored
            parent[counter_field] = (parent.get(counter_field) or 0) + 1
            self.mutations += 1
        return doc_id

    def remove_child(
        self, kind: DocumentKind, parent_id: str, child_id: str, counter_field: str
    ) -> bool:
        with self._lock:
            if self._docs[kind].pop(child_id, None) is None:
                return False
            parent = self._docs[kind].get(parent_id)
            if parent is not None:
                parent[counter_field] = (parent.get(counter_field) or 0) - 1
            self.mutations += 1
            return True


# ---------------------------------------------------------------------------
# HTTP store
# ---------------------------------------------------------------------------


class HttpDocumentStore:
    """Adapter for a REST document service.

    Each primitive is one request under ``{base_url}/documents/{kind}``.
    Transport failures and 5xx responses raise :class:`OperationFailedError`.

    Args:
        base_url: Service root URL
        token: Optional bearer token
        timeout: Per-request timeout in seconds
        client: Pre-built ``httpx.Client`` (tests pass one with a mock transport)
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpDocumentStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning(f"Document store request failed: {method} {path}: {exc}")
            raise OperationFailedError(
                f"Document store request failed: {method} {path}",
                details={"reason": type(exc).__name__},
            ) from exc

        if response.status_code == 404:
            return response
        if response.status_code >= 400:
            raise OperationFailedError(
                f"Document store returned HTTP {response.status_code} for {method} {path}",
                details={"status_code": response.status_code},
            )
        return response

    @staticmethod
    def _payload(response: httpx.Response) -> Dict[str, Any]:
        """Decode a JSON object body; anything else is a store failure."""
        request = response.request
        try:
            data = response.json()
        except ValueError as exc:
            raise OperationFailedError(
                f"Document store sent a non-JSON body for {request.method} {request.url.path}",
                details={"status_code": response.status_code, "reason": "invalid_json"},
            ) from exc
        if not isinstance(data, dict):
            raise OperationFailedError(
                f"Document store sent {type(data).__name__} instead of an object "
                f"for {request.method} {request.url.path}",
                details={"status_code": response.status_code, "reason": "invalid_json"},
            )
        return data

    def find_one(
        self, kind: DocumentKind, predicate: Predicate, *, sort: Optional[SortSpec] = None
    ) -> Optional[Document]:
        body: Dict[str, Any] = {"predicate": dict(predicate)}
        if sort:
            body["sort"] = dict(sort)
        response = self._request("POST", f"/documents/{kind.value}/find_one", json=body)
        if response.status_code == 404:
            return None
        return self._payload(response).get("document")

    def find_all(
        self,
        kind: DocumentKind,
        predicate: Predicate,
        *,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        body: Dict[str, Any] = {"predicate": dict(predicate)}
        if sort:
            body["sort"] = dict(sort)
        if limit is not None:
            body["limit"] = limit
        response = self._request("POST", f"/documents/{kind.value}/find", json=body)
        if response.status_code == 404:
            return []
        return list(self._payload(response).get("documents", []))

    def insert(self, kind: DocumentKind, doc: Document) -> str:
        payload = dict(doc)
        payload.setdefault("_id", new_document_id(kind))
        self._request("POST", f"/documents/{kind.value}", json={"document": payload})
        return payload["_id"]

    def update(self, kind: DocumentKind, doc_id: str, fields: Mapping[str, Any]) -> None:
        response = self._request(
            "PATCH", f"/documents/{kind.value}/{doc_id}", json={"fields": dict(fields)}
        )
        if response.status_code == 404:
            raise NotFoundError(kind.value.title(), doc_id)

    def atomic_increment(
        self, kind: DocumentKind, doc_id: str, field: str, delta: int
    ) -> Optional[int]:
        response = self._request(
            "POST",
            f"/documents/{kind.value}/{doc_id}/increment",
            json={"field": field, "delta": delta},
        )
        if response.status_code == 404:
            return None
        value = self._payload(response).get("new_value")
        return value if isinstance(value, int) and not isinstance(value, bool) else None

    def set_if_greater(
        self, kind: DocumentKind, doc_id: str, field: str, value: int
    ) -> int:
        response = self._request(
            "POST",
            f"/documents/{kind.value}/{doc_id}/raise",
            json={"field": field, "value": value},
        )
        if response.status_code == 404:
            raise NotFoundError(kind.value.title(), doc_id)
        stored = self._payload(response).get("value")
        if not isinstance(stored, int) or isinstance(stored, bool):
            raise OperationFailedError(
                f"Document store returned no usable value for {field} on {doc_id}",
                details={"value": stored},
            )
        return stored

    def remove(self, kind: DocumentKind, doc_id: str) -> bool:
        response = self._request("DELETE", f"/documents/{kind.value}/{doc_id}")
        return response.status_code != 404

    def add_child(
        self, kind: DocumentKind, parent_id: str, doc: Document, counter_field: str
    ) -> str:
        payload = dict(doc)
        payload.setdefault("_id", new_document_id(kind))
        payload["parent"] = parent_id
        response = self._request(
            "POST",
            f"/documents/{kind.value}/{parent_id}/children",
            json={"document": payload, "counter_field": counter_field},
        )
        if response.status_code == 404:
            raise NotFoundError(kind.value.title(), parent_id)
        return payload["_id"]

    def remove_child(
        self, kind: DocumentKind, parent_id: str, child_id: str, counter_field: str
    ) -> bool:
        response = self._request(
            "DELETE",
            f"/documents/{kind.value}/{parent_id}/children/{child_id}",
            params={"counter_field": counter_field},
        )
        return response.status_code != 404


# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------


def _text_ref(ref: Any, field: str) -> str:
    if ref is None:
        return ""
    if not isinstance(ref, str):
        raise ValidationError(
            f"{field} must be a string, got {type(ref).__name__}",
            field=field,
            code=ErrorCode.INVALID_FORMAT,
        )
    return ref.strip()


def resolve_project(store: DocumentStore, ref: str) -> Document:
    """Find a project by identifier (``"PROJ"``) or document id."""
    ref = _text_ref(ref, "project")
    project = None
    if PROJECT_IDENTIFIER_RE.match(ref.upper()):
        project = store.find_one(DocumentKind.PROJECT, {"identifier": ref.upper()})
    if project is None and ref:
        project = store.find_one(DocumentKind.PROJECT, {"_id": ref})
    if project is None:
        raise NotFoundError("Project", ref, code=ErrorCode.PROJECT_NOT_FOUND)
    return project


def resolve_issue(store: DocumentStore, ref: str) -> Document:
    """Find an issue by identifier (``"PROJ-12"``) or document id."""
    ref = _text_ref(ref, "issue")
    issue = None
    parsed = parse_identifier(ref) if ref else None
    if parsed is not None:
        issue = store.find_one(
            DocumentKind.ISSUE, {"identifier": format_identifier(*parsed)}
        )
    elif ref:
        issue = store.find_one(DocumentKind.ISSUE, {"_id": ref})
    if issue is None:
        raise NotFoundError("Issue", ref, code=ErrorCode.ISSUE_NOT_FOUND)
    return issue


def resolve_template(store: DocumentStore, project_ref: str, ref: str) -> Document:
    """Find a project's issue template by title or document id."""
    project = resolve_project(store, project_ref)
    ref = _text_ref(ref, "template")
    template = None
    if ref:
        template = store.find_one(
            DocumentKind.TEMPLATE, {"space": project["_id"], "title": ref}
        ) or store.find_one(DocumentKind.TEMPLATE, {"space": project["_id"], "_id": ref})
    if template is None:
        raise NotFoundError("Template", ref, code=ErrorCode.TEMPLATE_NOT_FOUND)
    return template
