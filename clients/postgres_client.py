"""
PostgreSQL client with connection pooling and a generic table gateway.

Uses psycopg2 with ThreadedConnectionPool. Two ways to talk to the database:

- Raw SQL: execute(), execute_single(), execute_scalar()
- Table gateway: fetch_rows(), insert_rows(), update_rows(), delete_rows()
  with filters from clients.filters

Calls on the client itself run on their own pooled connection and commit
immediately. Multi-step work goes through transaction(), which pins one
connection, commits when the block exits cleanly and rolls back otherwise:

    with db.transaction() as tx:
        invoice = tx.fetch_rows("invoices", [eq("id", invoice_id)], for_update=True)[0]
        tx.update_rows("invoices", {"paid_amount": new_paid}, [eq("id", invoice_id)])
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Sequence, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool
from psycopg2 import sql

from clients.filters import OPERATORS, Filter

logger = logging.getLogger(__name__)


def _convert_value(value: Any) -> Any:
    """Convert UUIDs to strings and dicts to JSON parameters."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return psycopg2.extras.Json(value)
    if isinstance(value, tuple):
        return tuple(_convert_value(v) for v in value)
    if isinstance(value, list):
        return [_convert_value(v) for v in value]
    return value


def _convert_params(params: Tuple | Dict | List | None) -> Tuple | Dict | None:
    if params is None:
        return None
    if isinstance(params, dict):
        return {k: _convert_value(v) for k, v in params.items()}
    return tuple(_convert_value(v) for v in params)


def _where_clause(filters: Iterable[Filter]) -> Tuple[sql.Composable, List[Any]]:
    """Compose a WHERE clause joining all filters with AND."""
    parts = []
    params: List[Any] = []

    for f in filters:
        column = sql.Identifier(f.column)
        if f.op == "in":
            if not f.value:
                # Empty IN list matches nothing
                parts.append(sql.SQL("FALSE"))
                continue
            parts.append(sql.SQL("{} IN %s").format(column))
            params.append(tuple(f.value))
        elif f.value is None and f.op in ("eq", "neq"):
            null_check = "IS NULL" if f.op == "eq" else "IS NOT NULL"
            parts.append(sql.SQL("{} " + null_check).format(column))
        else:
            parts.append(sql.SQL("{} {} %s").format(column, sql.SQL(OPERATORS[f.op])))
            params.append(f.value)

    if not parts:
        return sql.SQL(""), params

    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(parts), params


def _order_clause(order_by: Sequence[str] | None) -> sql.Composable:
    """Compose ORDER BY. A leading '-' on a column name means descending."""
    if not order_by:
        return sql.SQL("")

    parts = []
    for column in order_by:
        if column.startswith("-"):
            parts.append(sql.SQL("{} DESC").format(sql.Identifier(column[1:])))
        else:
            parts.append(sql.SQL("{} ASC").format(sql.Identifier(column)))

    return sql.SQL(" ORDER BY ") + sql.SQL(", ").join(parts)


class TableGateway:
    """
    Table-scoped select/insert/update/delete on top of a cursor runner.

    Subclasses provide _run(), which executes one statement and returns
    (rows, rowcount).
    """

    def _run(self, query: Any, params: Tuple | Dict | None) -> Tuple[List[Dict[str, Any]], int]:
        raise NotImplementedError

    def fetch_rows(
        self,
        table: str,
        filters: Iterable[Filter] = (),
        order_by: Sequence[str] | None = None,
        for_update: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Select rows matching all filters.

        Args:
            table: Table name
            filters: Conditions joined with AND
            order_by: Column names, '-column' for descending
            for_update: Lock the selected rows until the transaction ends

        Returns:
            List of row dicts. Empty list if nothing matches.
        """
        where, params = _where_clause(filters)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + where + _order_clause(order_by)
        if for_update:
            query += sql.SQL(" FOR UPDATE")

        rows, _ = self._run(query, tuple(params))
        return rows

    def insert_rows(self, table: str, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Insert rows and return them as stored.

        All rows must share the same columns.
        """
        if not rows:
            return []

        columns = list(rows[0].keys())
        for row in rows:
            if set(row.keys()) != set(columns):
                raise ValueError(f"Rows inserted into {table} must share the same columns")

        row_placeholder = sql.SQL("({})").format(
            sql.SQL(", ").join(sql.Placeholder() * len(columns))
        )
        query = sql.SQL("INSERT INTO {} ({}) VALUES {} RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(row_placeholder for _ in rows),
        )
        params = tuple(row[c] for row in rows for c in columns)

        inserted, _ = self._run(query, params)
        return inserted

    def update_rows(self, table: str, patch: Dict[str, Any], filters: Iterable[Filter]) -> int:
        """
        Apply patch to rows matching all filters.

        Returns:
            Number of rows updated.

        Raises:
            ValueError: If patch or filters are empty
        """
        filters = list(filters)
        if not patch:
            raise ValueError(f"Update on {table} requires at least one column")
        if not filters:
            raise ValueError(f"Refusing to update every row in {table}")

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in patch
        )
        where, where_params = _where_clause(filters)
        query = sql.SQL("UPDATE {} SET {}").format(sql.Identifier(table), assignments) + where

        _, rowcount = self._run(query, tuple(patch.values()) + tuple(where_params))
        return rowcount

    def delete_rows(self, table: str, filters: Iterable[Filter]) -> int:
        """
        Delete rows matching all filters.

        Returns:
            Number of rows deleted.

        Raises:
            ValueError: If filters are empty
        """
        filters = list(filters)
        if not filters:
            raise ValueError(f"Refusing to delete every row in {table}")

        where, params = _where_clause(filters)
        query = sql.SQL("DELETE FROM {}").format(sql.Identifier(table)) + where

        _, rowcount = self._run(query, tuple(params))
        return rowcount

    # Raw SQL

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        rows, _ = self._run(query, params)
        return rows

    def execute_single(self, query: str, params: Tuple | Dict | None = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Tuple | Dict | None = None) -> Any:
        """Execute query, return first value of first row or None."""
        row = self.execute_single(query, params)
        return next(iter(row.values())) if row else None


def _run_on_connection(conn, query: Any, params: Tuple | Dict | None) -> Tuple[List[Dict[str, Any]], int]:
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(query, _convert_params(params))
        rows = [dict(row) for row in cur.fetchall()] if cur.description else []
        return rows, cur.rowcount


class Transaction(TableGateway):
    """
    Gateway bound to one connection inside PostgresClient.transaction().

    Nothing is committed until the surrounding block exits.
    """

    def __init__(self, conn):
        self._conn = conn

    def _run(self, query: Any, params: Tuple | Dict | None) -> Tuple[List[Dict[str, Any]], int]:
        return _run_on_connection(self._conn, query, params)


class PostgresClient(TableGateway):
    """
    PostgreSQL client with pooled connections.

    Usage:
        db = PostgresClient(database_url)

        # Single statement, committed immediately
        customers = db.fetch_rows("customers", [eq("id", customer_id)])

        # Several statements, all or nothing
        with db.transaction() as tx:
            tx.update_rows(...)
            tx.insert_rows(...)
    """

    # Class-level connection pools shared across instances
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str):
        self._database_url = database_url
        self._ensure_connection_pool()

    def _ensure_connection_pool(self) -> None:
        """Create connection pool if it doesn't exist."""
        with self._pools_lock:
            if self._database_url not in self._connection_pools:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=2,
                    maxconn=20,
                    dsn=self._database_url,
                    connect_timeout=30,
                )
                psycopg2.extras.register_default_jsonb(globally=True)

                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")

    @contextmanager
    def get_connection(self):
        """Borrow a connection from the pool."""
        if self._database_url not in self._connection_pools:
            self._ensure_connection_pool()

        pool = self._connection_pools[self._database_url]
        conn = None

        try:
            conn = pool.getconn()
            if conn is None:
                raise RuntimeError("Could not get connection from pool")
            yield conn
        finally:
            if conn:
                pool.putconn(conn)

    def _run(self, query: Any, params: Tuple | Dict | None) -> Tuple[List[Dict[str, Any]], int]:
        with self.get_connection() as conn:
            try:
                result = _run_on_connection(conn, query, params)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Run a block of statements as one unit of work.

        Commits when the block exits normally. Any exception rolls back
        every statement issued through the yielded Transaction and is
        re-raised unchanged.
        """
        with self.get_connection() as conn:
            tx = Transaction(conn)
            try:
                yield tx
            except Exception:
                conn.rollback()
                raise
            else:
                conn.commit()

    def close(self) -> None:
        """Close connection pool."""
        with self._pools_lock:
            if self._database_url in self._connection_pools:
                self._connection_pools[self._database_url].closeall()
                del self._connection_pools[self._database_url]

    @classmethod
    def close_all_pools(cls) -> None:
        """Close all connection pools."""
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()
