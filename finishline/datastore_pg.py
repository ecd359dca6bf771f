import json
import os
import select as _select
import threading
from datetime import date, datetime
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from psycopg2.extras import RealDictCursor

from .errors import GatewayError, ValidationError


_POOL: Optional[pg_pool.AbstractConnectionPool] = None

# Connection bound by ``atomic()`` for the current thread
_TX = threading.local()

CHANGE_CHANNEL = "finishline_changes"
EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")

TABLES = {
    "race_events",
    "runners",
    "runner_races",
    "house_points",
    "admin_settings",
    "admin_logs",
    "platform_status",
}

Filters = Dict[str, Any]
Order = Union[str, Sequence[str], None]


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Connection kwargs shared by the pool and direct connections.

    ``connect_timeout`` defaults to 10 seconds (``DB_CONNECT_TIMEOUT``).
    TCP keepalives are on unless ``DB_KEEPALIVES`` is ``0``/``false``; the
    idle/interval/count tunables are only passed when set.
    """
    kwargs: Dict[str, Any] = {}
    timeout = _env_int("DB_CONNECT_TIMEOUT")
    kwargs["connect_timeout"] = timeout if timeout is not None else 10

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if str(ka_env).lower() in ("0", "false") else 1

    for env_name, key in (
        ("DB_KEEPALIVES_IDLE", "keepalives_idle"),
        ("DB_KEEPALIVES_INTERVAL", "keepalives_interval"),
        ("DB_KEEPALIVES_COUNT", "keepalives_count"),
    ):
        val = _env_int(env_name)
        if val is not None:
            kwargs[key] = val
    return kwargs


def _database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise GatewayError("DATABASE_URL not set; configure a PostgreSQL connection string")
    return url


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Create the global connection pool from ``DATABASE_URL``.

    Calling it again once a pool exists does nothing. Without a URL the pool
    stays unset and callers connect directly.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _ping(conn) -> bool:
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
        if not getattr(conn, "autocommit", False):
            conn.rollback()
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        return False
    return True


def _checkout():
    """Take a healthy connection from the pool, replacing one stale connection."""
    for _ in range(2):
        conn = _POOL.getconn()
        if _ping(conn):
            return conn
        _POOL.putconn(conn, close=True)
    raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")


@contextmanager
def _get_conn():
    """Yield a connection from the pool when one exists, else a direct one.

    On error the open transaction is rolled back before the exception
    propagates. Pooled connections go back to the pool idle.
    """
    url = _database_url()
    if _POOL is not None:
        conn = _checkout()
        try:
            try:
                yield conn
            except Exception:
                if not conn.closed:
                    conn.rollback()
                raise
        finally:
            # status 1 = active, 2 = in transaction, 3 = in error
            if getattr(conn, "closed", 0) == 0 and getattr(conn, "status", 0) in (1, 2, 3):
                conn.rollback()
            _POOL.putconn(conn)
    else:
        conn = psycopg2.connect(url, **_connect_kwargs())
        try:
            try:
                yield conn
            except Exception:
                if not conn.closed:
                    conn.rollback()
                raise
        finally:
            conn.close()


@contextmanager
def _conn_scope():
    """Yield ``(conn, owned)``; ``owned`` is False inside ``atomic()``."""
    bound = getattr(_TX, "conn", None)
    if bound is not None:
        yield bound, False
        return
    with _get_conn() as conn:
        yield conn, True


@contextmanager
def atomic():
    """Run the enclosed gateway calls on one connection and commit once.

    Nested ``atomic()`` blocks join the outer transaction.
    """
    if getattr(_TX, "conn", None) is not None:
        yield
        return
    try:
        with _get_conn() as conn:
            _TX.conn = conn
            try:
                yield
                conn.commit()
            finally:
                _TX.conn = None
    except psycopg2.Error as exc:
        raise GatewayError(f"transaction failed: {exc}") from exc


def _table(name: str) -> sql.Identifier:
    if name not in TABLES:
        raise ValidationError(f"Unknown table '{name}'")
    return sql.Identifier(name)


def _where(filters: Optional[Filters]) -> Tuple[sql.Composable, List[Any]]:
    """Build a WHERE clause: lists mean IN, None means IS NULL."""
    if not filters:
        return sql.SQL(""), []
    parts: List[sql.Composable] = []
    params: List[Any] = []
    for column, value in filters.items():
        ident = sql.Identifier(column)
        if value is None:
            parts.append(sql.SQL("{} IS NULL").format(ident))
        elif isinstance(value, (list, tuple, set)):
            parts.append(sql.SQL("{} = ANY(%s)").format(ident))
            params.append(list(value))
        else:
            parts.append(sql.SQL("{} = %s").format(ident))
            params.append(value)
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(parts), params


def _order_by(order: Order) -> sql.Composable:
    if not order:
        return sql.SQL("")
    columns = [order] if isinstance(order, str) else list(order)
    parts = []
    for col in columns:
        if col.startswith("-"):
            parts.append(sql.SQL("{} DESC").format(sql.Identifier(col[1:])))
        else:
            parts.append(sql.SQL("{} ASC").format(sql.Identifier(col)))
    return sql.SQL(" ORDER BY ") + sql.SQL(", ").join(parts)


def _to_str(val: Any) -> Any:
    # psycopg2 returns datetime/date objects; rows leave the gateway as ISO strings
    if isinstance(val, (datetime, date)):
        return val.isoformat()
    return val


def _execute(op: str, table: str, query: sql.Composable, params: Sequence[Any], fetch: bool) -> List[Dict[str, Any]]:
    try:
        with _conn_scope() as (conn, owned):
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = [{k: _to_str(v) for k, v in r.items()} for r in cur.fetchall()] if fetch else []
            if owned:
                conn.commit()
            return rows
    except psycopg2.Error as exc:
        raise GatewayError(f"{op} {table} failed: {exc}") from exc


def select(table: str, filters: Optional[Filters] = None, order: Order = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    where, params = _where(filters)
    query = sql.SQL("SELECT * FROM {}").format(_table(table)) + where + _order_by(order)
    if limit is not None:
        query = query + sql.SQL(" LIMIT %s")
        params.append(int(limit))
    return _execute("select", table, query, params, fetch=True)


def insert(table: str, rows: Union[Dict[str, Any], List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Insert one row or a list of rows in a single statement."""
    batch = [rows] if isinstance(rows, dict) else list(rows)
    if not batch:
        return []
    columns = sorted({key for row in batch for key in row})
    values_sql = sql.SQL(", ").join(
        sql.SQL("({})").format(sql.SQL(", ").join(sql.Placeholder() * len(columns)))
        for _ in batch
    )
    params: List[Any] = []
    for row in batch:
        params.extend(_adapt(row.get(col)) for col in columns)
    query = sql.SQL("INSERT INTO {} ({}) VALUES {} RETURNING *").format(
        _table(table),
        sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        values_sql,
    )
    return _execute("insert", table, query, params, fetch=True)


def update(table: str, patch: Dict[str, Any], filters: Filters) -> None:
    if not patch:
        raise ValidationError("update requires at least one column")
    if not filters:
        raise ValidationError("update requires a filter")
    assignments = sql.SQL(", ").join(
        sql.SQL("{} = %s").format(sql.Identifier(col)) for col in patch
    )
    where, where_params = _where(filters)
    query = sql.SQL("UPDATE {} SET ").format(_table(table)) + assignments + where
    _execute("update", table, query, [_adapt(v) for v in patch.values()] + where_params, fetch=False)


def delete(table: str, filters: Optional[Filters]) -> None:
    """Delete matching rows. ``filters={}`` deletes every row; ``None`` is refused."""
    if filters is None:
        raise ValidationError("delete requires a filter; pass {} to delete every row")
    where, params = _where(filters)
    query = sql.SQL("DELETE FROM {}").format(_table(table)) + where
    _execute("delete", table, query, params, fetch=False)


def increment(table: str, column: str, filters: Filters, amount: int = 1) -> Optional[int]:
    """Atomically add ``amount`` to ``column``; None when no row matched."""
    if not filters:
        raise ValidationError("increment requires a filter")
    col = sql.Identifier(column)
    where, params = _where(filters)
    query = (
        sql.SQL("UPDATE {} SET {} = {} + %s").format(_table(table), col, col)
        + where
        + sql.SQL(" RETURNING {}").format(col)
    )
    rows = _execute("increment", table, query, [int(amount)] + params, fetch=True)
    if not rows:
        return None
    return int(rows[0][column])


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _matches(record: Dict[str, Any], filters: Optional[Filters]) -> bool:
    for column, value in (filters or {}).items():
        actual = record.get(column)
        if isinstance(value, (list, tuple, set)):
            if actual not in value:
                return False
        elif actual != value:
            return False
    return True


def subscribe(
    table: str,
    filters: Optional[Filters] = None,
    event_types: Iterable[str] = EVENT_TYPES,
    timeout: Optional[float] = None,
) -> Iterator[Dict[str, Any]]:
    """Yield change events for ``table`` from the ``finishline_changes`` channel.

    The trigger installed by ``scripts/init_schema.py`` publishes
    ``{"table", "type", "record"}`` payloads. The generator ends when no
    notification arrives within ``timeout`` seconds (never, when None).
    """
    _table(table)
    wanted = {t.upper() for t in event_types}
    try:
        conn = psycopg2.connect(_database_url(), **_connect_kwargs())
    except psycopg2.Error as exc:
        raise GatewayError(f"subscribe {table} failed: {exc}") from exc
    try:
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        with conn.cursor() as cur:
            cur.execute(sql.SQL("LISTEN {}").format(sql.Identifier(CHANGE_CHANNEL)))
        while True:
            ready, _, _ = _select.select([conn], [], [], timeout)
            if not ready:
                return
            conn.poll()
            while conn.notifies:
                note = conn.notifies.pop(0)
                try:
                    event = json.loads(note.payload)
                except ValueError:
                    continue
                if event.get("table") != table or event.get("type") not in wanted:
                    continue
                if not _matches(event.get("record") or {}, filters):
                    continue
                yield event
    except psycopg2.Error as exc:
        raise GatewayError(f"subscribe {table} failed: {exc}") from exc
    finally:
        conn.close()
