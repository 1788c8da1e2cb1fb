import copy
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any, Dict, Optional
from uuid import uuid4

from store.base import (
    Document,
    DocumentNotFound,
    DocumentStore,
    check_precondition,
    resolve_server_timestamps,
)
from store.query import apply_query
from utils.timeutil import utcnow


@dataclass
class _Entry:
    data: Dict[str, Any]
    version: int
    create_time: datetime
    update_time: datetime


class MemoryDocumentStore(DocumentStore):
    """Process-local store. Every read-check-write runs under one lock."""

    def __init__(self, clock=utcnow):
        self._clock = clock
        self._lock = RLock()
        self._collections: Dict[str, Dict[str, _Entry]] = {}

    def _snapshot(self, doc_id: str, entry: _Entry) -> Document:
        return Document(
            id=doc_id,
            data=copy.deepcopy(entry.data),
            version=entry.version,
            create_time=entry.create_time,
            update_time=entry.update_time,
        )

    def get(self, collection, doc_id):
        with self._lock:
            entry = self._collections.get(collection, {}).get(doc_id)
            return self._snapshot(doc_id, entry) if entry else None

    def set(self, collection, doc_id, fields, precondition=None):
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            entry = docs.get(doc_id)
            check_precondition(precondition, entry.version if entry else None)

            now = self._clock()
            data = copy.deepcopy(resolve_server_timestamps(fields, now))
            if entry is None:
                docs[doc_id] = _Entry(data=data, version=1, create_time=now, update_time=now)
                return 1

            entry.data = data
            entry.version += 1
            entry.update_time = now
            return entry.version

    def update(self, collection, doc_id, fields, precondition=None):
        with self._lock:
            entry = self._collections.get(collection, {}).get(doc_id)
            if entry is None:
                raise DocumentNotFound(f"{collection}/{doc_id}")
            check_precondition(precondition, entry.version)

            now = self._clock()
            entry.data.update(copy.deepcopy(resolve_server_timestamps(fields, now)))
            entry.version += 1
            entry.update_time = now
            return entry.version

    def add(self, collection, fields):
        doc_id = uuid4().hex
        self.set(collection, doc_id, fields)
        return doc_id

    def query(self, collection, where=(), order_by=(), limit: Optional[int] = None):
        with self._lock:
            docs = [self._snapshot(doc_id, e) for doc_id, e in self._collections.get(collection, {}).items()]
        return apply_query(docs, where, order_by, limit)
