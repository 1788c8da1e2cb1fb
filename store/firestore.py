import re
from urllib.parse import quote
from uuid import uuid4

import requests

from store.base import (
    SERVER_TIMESTAMP,
    Document,
    DocumentNotFound,
    DocumentStore,
    PreconditionFailed,
    StoreUnavailableError,
)
from store.codec import decode_fields, encode_fields, encode_value, parse_timestamp

FIRESTORE_API = "https://firestore.googleapis.com/v1"

_OPS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "in": "IN",
    "not-in": "NOT_IN",
    "array-contains": "ARRAY_CONTAINS",
    "array-contains-any": "ARRAY_CONTAINS_ANY",
}

_CONFLICT_STATUSES = {"ALREADY_EXISTS", "FAILED_PRECONDITION", "ABORTED"}

_SIMPLE_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _field_path(name: str) -> str:
    if _SIMPLE_FIELD_RE.match(name):
        return name
    return "`" + name.replace("\\", "\\\\").replace("`", "\\`") + "`"


class FirestoreRestStore(DocumentStore):
    """
    Cloud Firestore over its REST API.

    Writes go through `documents:commit` so a single call can carry a
    precondition (`exists` / `updateTime`) and REQUEST_TIME transforms for
    SERVER_TIMESTAMP fields. A document's version is its `updateTime`.
    `token` is a bearer token string or a callable returning one.
    """

    def __init__(self, project_id, database="(default)", token=None, session=None, timeout=10):
        if not project_id:
            raise ValueError("FIRESTORE_PROJECT_ID is required for the firestore backend")
        self._root = f"projects/{project_id}/databases/{database}/documents"
        self._base = f"{FIRESTORE_API}/{self._root}"
        self._token = token
        self._session = session or requests.Session()
        self._timeout = timeout

    # ---------- transport ----------
    def _headers(self):
        headers = {"Content-Type": "application/json"}
        token = self._token() if callable(self._token) else self._token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(self, method, url, **kwargs):
        try:
            return self._session.request(method, url, headers=self._headers(), timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise StoreUnavailableError(f"Firestore request failed: {exc}") from exc

    def _raise_for_error(self, resp):
        try:
            error = (resp.json() or {}).get("error", {})
        except ValueError:
            error = {}
        if isinstance(error, list):
            error = error[0] if error else {}
        status = error.get("status")
        message = error.get("message") or resp.text

        if status in _CONFLICT_STATUSES or resp.status_code in (409, 412):
            raise PreconditionFailed(message)
        if status == "NOT_FOUND" or resp.status_code == 404:
            raise DocumentNotFound(message)
        raise StoreUnavailableError(f"Firestore returned {resp.status_code}: {message}")

    # ---------- mapping ----------
    def _name(self, collection, doc_id):
        return f"{self._root}/{collection}/{doc_id}"

    def _url(self, path):
        # ids may hold URL-reserved characters (#, ?, %, space); the body keeps them raw
        return self._base + "/" + "/".join(quote(segment, safe="") for segment in path.split("/"))

    def _to_document(self, raw) -> Document:
        create_time = raw.get("createTime")
        update_time = raw.get("updateTime")
        return Document(
            id=raw["name"].rsplit("/", 1)[-1],
            data=decode_fields(raw.get("fields", {})),
            version=update_time,
            create_time=parse_timestamp(create_time) if create_time else None,
            update_time=parse_timestamp(update_time) if update_time else None,
        )

    @staticmethod
    def _current_document(precondition):
        if precondition is None:
            return None
        if precondition.version is not None:
            return {"updateTime": precondition.version}
        if precondition.exists is not None:
            return {"exists": precondition.exists}
        return None

    def _commit(self, collection, doc_id, fields, current_document, merge):
        transforms = [k for k, v in fields.items() if v is SERVER_TIMESTAMP]
        plain = {k: v for k, v in fields.items() if v is not SERVER_TIMESTAMP}

        write = {"update": {"name": self._name(collection, doc_id), "fields": encode_fields(plain)}}
        if merge:
            write["updateMask"] = {"fieldPaths": [_field_path(k) for k in plain]}
        if transforms:
            write["updateTransforms"] = [
                {"fieldPath": _field_path(k), "setToServerValue": "REQUEST_TIME"} for k in transforms
            ]
        if current_document:
            write["currentDocument"] = current_document

        resp = self._request("POST", f"{self._base}:commit", json={"writes": [write]})
        if not resp.ok:
            self._raise_for_error(resp)

        body = resp.json()
        results = body.get("writeResults") or [{}]
        return results[0].get("updateTime") or body.get("commitTime")

    # ---------- contract ----------
    def get(self, collection, doc_id):
        resp = self._request("GET", self._url(f"{collection}/{doc_id}"))
        if resp.status_code == 404:
            return None
        if not resp.ok:
            self._raise_for_error(resp)
        return self._to_document(resp.json())

    def set(self, collection, doc_id, fields, precondition=None):
        return self._commit(collection, doc_id, fields, self._current_document(precondition), merge=False)

    def update(self, collection, doc_id, fields, precondition=None):
        current = self._current_document(precondition)
        if current is None:
            # a masked write without a precondition would create the document
            try:
                return self._commit(collection, doc_id, fields, {"exists": True}, merge=True)
            except PreconditionFailed as exc:
                raise DocumentNotFound(f"{collection}/{doc_id}") from exc
        return self._commit(collection, doc_id, fields, current, merge=True)

    def add(self, collection, fields):
        doc_id = uuid4().hex
        self._commit(collection, doc_id, fields, {"exists": False}, merge=False)
        return doc_id

    def query(self, collection, where=(), order_by=(), limit=None):
        parent, _, collection_id = collection.rpartition("/")
        url = f"{self._url(parent)}:runQuery" if parent else f"{self._base}:runQuery"

        structured = {"from": [{"collectionId": collection_id}]}

        filters = [
            {
                "fieldFilter": {
                    "field": {"fieldPath": _field_path(f.field)},
                    "op": _OPS[f.op],
                    "value": encode_value(list(f.value) if isinstance(f.value, tuple) else f.value),
                }
            }
            for f in where
        ]
        if len(filters) == 1:
            structured["where"] = filters[0]
        elif filters:
            structured["where"] = {"compositeFilter": {"op": "AND", "filters": filters}}

        if order_by:
            structured["orderBy"] = [
                {
                    "field": {"fieldPath": _field_path(o.field)},
                    "direction": "DESCENDING" if o.descending else "ASCENDING",
                }
                for o in order_by
            ]
        if limit is not None:
            structured["limit"] = limit

        resp = self._request("POST", url, json={"structuredQuery": structured})
        if not resp.ok:
            self._raise_for_error(resp)
        return [self._to_document(r["document"]) for r in resp.json() if r.get("document")]
