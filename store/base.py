"""
Document store contract.

The booking engine talks to a remote key/value-with-queries store through
this interface: documents live in named collections, are addressed by id and
hold a flat map of typed values (string, integer, double, boolean, null,
timestamp, list, map). Adapters live beside this module.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence


class StoreError(Exception):
    pass


class StoreUnavailableError(StoreError):
    """The backend could not be reached or refused the call (network, auth, quota)."""


class DocumentNotFound(StoreError):
    pass


class PreconditionFailed(StoreError):
    """A conditional write lost: the document exists, is missing, or has moved on."""


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


# Placeholder value replaced by the store's own clock at write time
SERVER_TIMESTAMP = _ServerTimestamp()


OPERATORS = frozenset({
    "==", "!=", "<", "<=", ">", ">=",
    "in", "not-in", "array-contains", "array-contains-any",
})


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")
        if self.op in ("in", "not-in", "array-contains-any") and not isinstance(self.value, (list, tuple)):
            raise ValueError(f"Operator {self.op} needs a list value")


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Precondition:
    exists: Optional[bool] = None
    version: Any = None

    @classmethod
    def absent(cls):
        return cls(exists=False)

    @classmethod
    def present(cls):
        return cls(exists=True)

    @classmethod
    def version_is(cls, version):
        return cls(exists=True, version=version)


@dataclass
class Document:
    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    # opaque token that changes on every write (int or update time string)
    version: Any = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None

    def get(self, key, default=None):
        return self.data.get(key, default)


def check_precondition(precondition: Optional[Precondition], current_version) -> None:
    """Raise PreconditionFailed unless a document at `current_version` satisfies it.

    `current_version` is None when the document does not exist.
    """
    if precondition is None:
        return
    if precondition.exists is False and current_version is not None:
        raise PreconditionFailed("document already exists")
    if precondition.exists is True and current_version is None:
        raise PreconditionFailed("document does not exist")
    if precondition.version is not None and precondition.version != current_version:
        raise PreconditionFailed("document was modified concurrently")


def resolve_server_timestamps(fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in fields.items()}


class DocumentStore(ABC):

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document or None when it does not exist."""

    @abstractmethod
    def set(self, collection: str, doc_id: str, fields: Dict[str, Any],
            precondition: Optional[Precondition] = None):
        """Create or fully overwrite a document. Returns the new version."""

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any],
               precondition: Optional[Precondition] = None):
        """Merge the named top-level fields into an existing document.

        Raises DocumentNotFound when it does not exist. Returns the new version.
        """

    @abstractmethod
    def add(self, collection: str, fields: Dict[str, Any]) -> str:
        """Create a document under a generated id and return the id."""

    @abstractmethod
    def query(self, collection: str, where: Sequence[Filter] = (),
              order_by: Sequence[OrderBy] = (), limit: Optional[int] = None) -> List[Document]:
        """Documents matching every filter, ordered, at most `limit` of them."""
