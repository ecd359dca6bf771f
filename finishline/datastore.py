from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

# Persistence Gateway proxy.
# Services talk to this module (or an injected object with the same
# functions); every call delegates to datastore_pg so tests can swap the
# PostgreSQL implementation for an in-memory one.

from . import datastore_pg as _pg

EVENT_TYPES = _pg.EVENT_TYPES


def select(table: str, filters: Optional[Dict[str, Any]] = None, order=None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    return _pg.select(table, filters, order=order, limit=limit)


def insert(table: str, rows: Union[Dict[str, Any], List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return _pg.insert(table, rows)


def update(table: str, patch: Dict[str, Any], filters: Dict[str, Any]) -> None:
    _pg.update(table, patch, filters)


def delete(table: str, filters: Optional[Dict[str, Any]]) -> None:
    _pg.delete(table, filters)


def increment(table: str, column: str, filters: Dict[str, Any], amount: int = 1) -> Optional[int]:
    return _pg.increment(table, column, filters, amount=amount)


def subscribe(
    table: str,
    filters: Optional[Dict[str, Any]] = None,
    event_types: Iterable[str] = EVENT_TYPES,
    timeout: Optional[float] = None,
) -> Iterator[Dict[str, Any]]:
    return _pg.subscribe(table, filters, event_types=event_types, timeout=timeout)


@contextmanager
def atomic():
    with _pg.atomic():
        yield


def select_one(table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the first matching row or None."""
    rows = _pg.select(table, filters, order=None, limit=1)
    return rows[0] if rows else None
