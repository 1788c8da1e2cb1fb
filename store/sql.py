from datetime import datetime
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models.document import StoredDocument
from store.base import (
    Document,
    DocumentNotFound,
    DocumentStore,
    PreconditionFailed,
    StoreUnavailableError,
    check_precondition,
    resolve_server_timestamps,
)
from store.codec import decode_fields, encode_fields
from store.query import apply_query
from utils.timeutil import utcnow

# Unconditional writes that keep losing the version race give up after this
MAX_WRITE_ATTEMPTS = 5


class SqlDocumentStore(DocumentStore):
    """
    Documents kept in the `documents` table through Flask-SQLAlchemy.

    Create-if-absent relies on the (collection, doc_id) unique constraint and
    compare-and-set on a version-guarded UPDATE, so both hold across processes
    sharing the database. Must be used inside an app context.
    """

    def __init__(self, db, clock=utcnow):
        self._db = db
        self._clock = clock

    # ---------- helpers ----------
    def _row(self, collection, doc_id):
        return StoredDocument.query.filter_by(collection=collection, doc_id=doc_id).first()

    def _to_document(self, row) -> Document:
        return Document(
            id=row.doc_id,
            data=decode_fields(row.data),
            version=row.version,
            create_time=row.created_at,
            update_time=row.updated_at,
        )

    def _insert(self, collection, doc_id, payload, now: datetime) -> int:
        row = StoredDocument(
            collection=collection,
            doc_id=doc_id,
            data=payload,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self._db.session.add(row)
        try:
            self._db.session.commit()
        except IntegrityError:
            self._db.session.rollback()
            raise PreconditionFailed("document already exists")
        return 1

    def _swap(self, collection, doc_id, expected_version, payload, now: datetime) -> bool:
        stmt = (
            update(StoredDocument)
            .where(
                StoredDocument.collection == collection,
                StoredDocument.doc_id == doc_id,
                StoredDocument.version == expected_version,
            )
            .values(data=payload, version=expected_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self._db.session.execute(stmt)
        self._db.session.commit()
        return result.rowcount == 1

    def _guard(self, fn, *args):
        try:
            return fn(*args)
        except (PreconditionFailed, DocumentNotFound):
            raise
        except SQLAlchemyError as exc:
            self._db.session.rollback()
            raise StoreUnavailableError(f"Document store error: {exc}") from exc

    # ---------- contract ----------
    def get(self, collection, doc_id):
        return self._guard(self._get, collection, doc_id)

    def _get(self, collection, doc_id):
        row = self._row(collection, doc_id)
        return self._to_document(row) if row else None

    def set(self, collection, doc_id, fields, precondition=None):
        return self._guard(self._set, collection, doc_id, fields, precondition)

    def _set(self, collection, doc_id, fields, precondition):
        now = self._clock()
        payload = encode_fields(resolve_server_timestamps(fields, now))

        if precondition is not None and precondition.exists is False:
            return self._insert(collection, doc_id, payload, now)

        for _ in range(MAX_WRITE_ATTEMPTS):
            row = self._row(collection, doc_id)
            current = row.version if row else None
            check_precondition(precondition, current)

            if row is None:
                try:
                    return self._insert(collection, doc_id, payload, now)
                except PreconditionFailed:
                    continue  # someone created it first; overwrite on next pass

            if self._swap(collection, doc_id, current, payload, now):
                return current + 1
            if precondition is not None and precondition.version is not None:
                raise PreconditionFailed("document was modified concurrently")
            self._db.session.expire_all()

        raise StoreUnavailableError(f"Too much write contention on {collection}/{doc_id}")

    def update(self, collection, doc_id, fields, precondition=None):
        return self._guard(self._update, collection, doc_id, fields, precondition)

    def _update(self, collection, doc_id, fields, precondition):
        now = self._clock()
        changes = encode_fields(resolve_server_timestamps(fields, now))

        for _ in range(MAX_WRITE_ATTEMPTS):
            row = self._row(collection, doc_id)
            if row is None:
                raise DocumentNotFound(f"{collection}/{doc_id}")
            check_precondition(precondition, row.version)

            payload = dict(row.data or {})
            payload.update(changes)
            if self._swap(collection, doc_id, row.version, payload, now):
                return row.version + 1
            if precondition is not None and precondition.version is not None:
                raise PreconditionFailed("document was modified concurrently")
            # the row changed under us; drop the stale identity-map copy
            self._db.session.expire_all()

        raise StoreUnavailableError(f"Too much write contention on {collection}/{doc_id}")

    def add(self, collection, fields):
        doc_id = uuid4().hex
        self.set(collection, doc_id, fields)
        return doc_id

    def query(self, collection, where=(), order_by=(), limit=None):
        return self._guard(self._query, collection, where, order_by, limit)

    def _query(self, collection, where, order_by, limit):
        # Field values live in JSON; filtering happens after the collection scan
        rows = StoredDocument.query.filter_by(collection=collection).all()
        return apply_query([self._to_document(r) for r in rows], where, order_by, limit)
