"""In-process evaluation of structured queries for the memory and SQL adapters.

Mirrors Firestore semantics where they matter to callers: a document missing
a filtered or ordered field never matches, and values of incomparable types
never satisfy a range filter.
"""
from typing import Iterable, List, Optional, Sequence

from store.base import Document, Filter, OrderBy

_MISSING = object()


def _compare(op: str, actual, expected) -> bool:
    try:
        if op == "<":
            return actual < expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        if op == ">=":
            return actual >= expected
    except TypeError:
        return False
    raise ValueError(op)


def matches(data: dict, flt: Filter) -> bool:
    actual = data.get(flt.field, _MISSING)
    if actual is _MISSING:
        return False

    op = flt.op
    if op == "==":
        return actual == flt.value
    if op == "!=":
        return actual is not None and actual != flt.value
    if op == "in":
        return actual in flt.value
    if op == "not-in":
        return actual is not None and actual not in flt.value
    if op == "array-contains":
        return isinstance(actual, list) and flt.value in actual
    if op == "array-contains-any":
        return isinstance(actual, list) and any(v in actual for v in flt.value)
    return _compare(op, actual, flt.value)


def apply_query(docs: Iterable[Document], where: Sequence[Filter] = (),
                order_by: Sequence[OrderBy] = (), limit: Optional[int] = None) -> List[Document]:
    results = [d for d in docs if all(matches(d.data, f) for f in where)]

    for order in order_by:
        results = [d for d in results if d.data.get(order.field, _MISSING) is not _MISSING]

    # Stable sorts applied last-key-first give a multi-key ordering
    for order in reversed(order_by):
        # nulls sort first, as in Firestore
        results.sort(key=lambda d: (d.data[order.field] is not None, d.data[order.field]),
                     reverse=order.descending)

    if not order_by:
        results.sort(key=lambda d: d.id)

    if limit is not None:
        results = results[:limit]
    return results
