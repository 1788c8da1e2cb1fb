from .base import (
    SERVER_TIMESTAMP,
    Document,
    DocumentNotFound,
    DocumentStore,
    Filter,
    OrderBy,
    Precondition,
    PreconditionFailed,
    StoreError,
    StoreUnavailableError,
)
from .memory import MemoryDocumentStore


def create_store(config, db=None):
    """Build the document store selected by DOCUMENT_STORE."""
    backend = (config.get("DOCUMENT_STORE") or "sql").strip().lower()

    if backend == "memory":
        return MemoryDocumentStore()

    if backend == "sql":
        from .sql import SqlDocumentStore
        if db is None:
            raise ValueError("The sql document store needs the SQLAlchemy db")
        return SqlDocumentStore(db)

    if backend == "firestore":
        from .firestore import FirestoreRestStore
        return FirestoreRestStore(
            project_id=config.get("FIRESTORE_PROJECT_ID"),
            database=config.get("FIRESTORE_DATABASE", "(default)"),
            token=config.get("FIRESTORE_AUTH_TOKEN"),
            timeout=config.get("FIRESTORE_TIMEOUT_SECONDS", 10),
        )

    raise ValueError(f"Unknown DOCUMENT_STORE backend: {backend}")
