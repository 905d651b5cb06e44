"""
Pooled SQL backend: the aggregation contract translated into DuckDB queries.

Every operation is a single statement sent over a connection leased from a
bounded pool. Filters go into the WHERE clause, bins are computed with
FLOOR((v - start) / step) and the database returns raw counts per bin; the
prefix sum of a cube is taken client-side. Results travel as an Arrow IPC
stream, zstd-compressed when compression is on.
"""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

import duckdb
import numpy as np
import pandas as pd
import pyarrow as pa

from brushcube.cube.engine import AggregationBackend, Cube
from brushcube.cube.filters import FilterContext, quote_identifier, sql_number
from brushcube.cube.schema import ConfigError, Dimension
from brushcube.cube.view import View, ViewKind

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    A bounded pool of database connections.

    At most `max_connections` leases are outstanding; further callers wait
    and are served in arrival order. Connections are opened lazily.
    """

    def __init__(self, connect: Callable[[], duckdb.DuckDBPyConnection],
                 max_connections: int = 4, lease_timeout: Optional[float] = 30.0):
        if max_connections <= 0:
            raise ConfigError(f"max_connections must be positive, got {max_connections}")
        self._connect = connect
        self.max_connections = max_connections
        self.lease_timeout = lease_timeout
        self._cond = threading.Condition()
        self._idle: List[duckdb.DuckDBPyConnection] = []
        self._waiting: deque = deque()
        self._in_use = 0
        self._closed = False
        self.opened = 0

    @property
    def in_use(self) -> int:
        with self._cond:
            return self._in_use

    def acquire(self, timeout: Optional[float] = None) -> duckdb.DuckDBPyConnection:
        timeout = self.lease_timeout if timeout is None else timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        ticket = object()
        with self._cond:
            if self._closed:
                raise ConnectionError("Connection pool is closed")
            self._waiting.append(ticket)
            while self._waiting[0] is not ticket or self._in_use >= self.max_connections:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    self._waiting.remove(ticket)
                    self._cond.notify_all()
                    raise TimeoutError(
                        f"No connection available within {timeout:.1f}s "
                        f"({self._in_use}/{self.max_connections} in use)"
                    )
                self._cond.wait(remaining)
            self._waiting.popleft()
            self._in_use += 1
            conn = self._idle.pop() if self._idle else None
            self._cond.notify_all()

        if conn is not None:
            return conn
        try:
            conn = self._connect()
        except duckdb.Error as e:
            self.release(None, broken=True)
            raise ConnectionError(f"Could not open connection: {e}") from e
        except BaseException:
            self.release(None, broken=True)
            raise
        with self._cond:
            self.opened += 1
        return conn

    def release(self, conn: Optional[duckdb.DuckDBPyConnection], broken: bool = False):
        with self._cond:
            self._in_use -= 1
            keep = conn is not None and not broken and not self._closed
            if keep:
                self._idle.append(conn)
            self._cond.notify_all()
        if conn is not None and not keep:
            conn.close()

    @contextmanager
    def lease(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = self.acquire()
        try:
            yield conn
        except BaseException:
            self.release(conn, broken=True)
            raise
        else:
            self.release(conn)

    def close(self):
        with self._cond:
            self._closed = True
            idle, self._idle = self._idle, []
            self._cond.notify_all()
        for conn in idle:
            conn.close()


class _Statement:
    """Accumulates bound parameters while SQL text is built left to right."""

    def __init__(self, prepared: bool):
        self.params: Optional[List] = [] if prepared else None

    def num(self, value: float) -> str:
        return sql_number(value, self.params)

    def doubles(self, values: np.ndarray) -> str:
        if self.params is not None:
            self.params.append([float(v) for v in values])
            return "?::DOUBLE[]"
        items = ", ".join(f"'{float(v)!r}'" for v in values)
        return f"CAST([{items}] AS DOUBLE[])"

    def where(self, filters: FilterContext) -> str:
        clauses = filters.to_sql(self.params)
        return f" WHERE {' AND '.join(clauses)}" if clauses else ""


class PooledSQLBackend(AggregationBackend):
    """
    Aggregation backend over a pooled DuckDB database.

    Args:
        connect: Factory returning a new connection to the dataset
        table: Table holding one row per record and one column per dimension
        dimensions: The configured dimensions
        max_connections: Pool size; requests beyond it queue in arrival order
        prepared_statements: Bind all values as parameters instead of inlining them
        compression: zstd-compress the Arrow result stream
        lease_timeout: Seconds to wait for a connection before TimeoutError
    """

    def __init__(self, connect: Callable[[], duckdb.DuckDBPyConnection], table: str,
                 dimensions: List[Dimension], max_connections: int = 4,
                 prepared_statements: bool = False, compression: bool = False,
                 lease_timeout: Optional[float] = 30.0):
        super().__init__(dimensions)
        self.table = table
        self.prepared_statements = prepared_statements
        self.compression = compression
        self.pool = ConnectionPool(connect, max_connections, lease_timeout)
        self._owned: Optional[duckdb.DuckDBPyConnection] = None

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, dimensions: List[Dimension],
                       table: str = "records", **kwargs) -> "PooledSQLBackend":
        """Load a DataFrame into an in-memory database shared by pooled cursors."""
        root = duckdb.connect(":memory:")
        root.register("_source", df)
        root.execute(f"CREATE TABLE {quote_identifier(table)} AS SELECT * FROM _source")
        root.unregister("_source")
        backend = cls(root.cursor, table, dimensions, **kwargs)
        backend._owned = root
        logger.info(f"Loaded {len(df):,} rows into in-memory table {table}")
        return backend

    @classmethod
    def from_path(cls, path: Union[str, Path], dimensions: List[Dimension],
                  table: str = "records", **kwargs) -> "PooledSQLBackend":
        """Open a DuckDB database file read-only."""
        try:
            root = duckdb.connect(str(path), read_only=True)
        except duckdb.Error as e:
            raise ConnectionError(f"Could not open database {path}: {e}") from e
        backend = cls(root.cursor, table, dimensions, **kwargs)
        backend._owned = root
        return backend

    # -- transport --------------------------------------------------------

    def _fetch(self, operation: str, sql: str, stmt: _Statement) -> pa.Table:
        logger.debug(f"{operation}: {sql} {stmt.params or ''}")
        with self.pool.lease() as conn:
            try:
                if stmt.params is None:
                    result = conn.execute(sql)
                else:
                    result = conn.execute(sql, stmt.params)
                table = result.fetch_arrow_table()
            except duckdb.Error as e:
                raise ConnectionError(f"{operation} request failed: {e}") from e
        return self._transfer(operation, table)

    def _transfer(self, operation: str, table: pa.Table) -> pa.Table:
        """Round-trip the result through the Arrow IPC wire encoding."""
        options = pa.ipc.IpcWriteOptions(compression="zstd" if self.compression else None)
        sink = pa.BufferOutputStream()
        with pa.ipc.new_stream(sink, table.schema, options=options) as writer:
            writer.write_table(table)
        payload = sink.getvalue()
        self.stats.record(operation, payload.size)
        return pa.ipc.open_stream(payload).read_all()

    @staticmethod
    def _ints(table: pa.Table, column: str) -> np.ndarray:
        return table.column(column).to_numpy().astype(np.int64)

    # -- SQL fragments ----------------------------------------------------

    @staticmethod
    def _bin_expr(dim: Dimension, stmt: _Statement) -> str:
        bins = dim.bin_config
        col = quote_identifier(dim.name)
        return f"FLOOR(({col} - {stmt.num(bins.start)}) / {stmt.num(bins.step)})"

    @staticmethod
    def _in_range(alias: str, dim: Dimension) -> str:
        return f"{alias} >= 0 AND {alias} < {dim.bin_config.count}"

    # -- contract -----------------------------------------------------------

    def count(self, filters: FilterContext) -> int:
        stmt = _Statement(self.prepared_statements)
        sql = f"SELECT COUNT(*) AS n FROM {quote_identifier(self.table)}{stmt.where(filters)}"
        result = self._fetch("count", sql, stmt)
        return int(self._ints(result, "n")[0])

    def histogram(self, dimension: Dimension, filters: FilterContext) -> np.ndarray:
        stmt = _Statement(self.prepared_statements)
        inner = (
            f"SELECT {self._bin_expr(dimension, stmt)} AS bx "
            f"FROM {quote_identifier(self.table)}{stmt.where(filters)}"
        )
        sql = (
            f"SELECT CAST(bx AS BIGINT) AS bx, COUNT(*) AS n FROM ({inner}) AS binned "
            f"WHERE {self._in_range('bx', dimension)} GROUP BY 1"
        )
        result = self._fetch("histogram", sql, stmt)
        hist = np.zeros(dimension.bin_config.count, dtype=np.int64)
        hist[self._ints(result, "bx")] = self._ints(result, "n")
        return hist

    def heatmap(self, dim_x: Dimension, dim_y: Dimension,
                filters: FilterContext) -> np.ndarray:
        stmt = _Statement(self.prepared_statements)
        inner = (
            f"SELECT {self._bin_expr(dim_x, stmt)} AS bx, {self._bin_expr(dim_y, stmt)} AS b_y "
            f"FROM {quote_identifier(self.table)}{stmt.where(filters)}"
        )
        sql = (
            f"SELECT CAST(bx AS BIGINT) AS bx, CAST(b_y AS BIGINT) AS b_y, COUNT(*) AS n "
            f"FROM ({inner}) AS binned "
            f"WHERE {self._in_range('bx', dim_x)} AND {self._in_range('b_y', dim_y)} GROUP BY 1, 2"
        )
        result = self._fetch("heatmap", sql, stmt)
        heat = np.zeros((dim_x.bin_config.count, dim_y.bin_config.count), dtype=np.int64)
        heat[self._ints(result, "bx"), self._ints(result, "b_y")] = self._ints(result, "n")
        return heat

    def cumulative_cube(self, active_dimension: Dimension, view: View,
                        filters: FilterContext, resolution: int) -> Cube:
        self._check_cube_request(active_dimension, filters, resolution)
        stmt = _Statement(self.prepared_statements)
        lo, hi = active_dimension.extent
        col = f"CAST({quote_identifier(active_dimension.name)} AS DOUBLE)"

        # floor estimate of the sweep index, corrected below against the
        # exact boundary values so that k <= i holds iff v < boundary(i)
        estimate = (
            f"CASE WHEN {col} IS NULL OR isnan({col}) THEN {resolution} "
            f"ELSE CAST(GREATEST(LEAST(FLOOR(({col} - {stmt.num(lo)}) / "
            f"{stmt.num((hi - lo) / resolution)}) + 1, {resolution}), 0) AS BIGINT) END"
        )
        passive = [(f"b{i}", dim) for i, dim in enumerate(view.dimensions)]
        bin_cols = "".join(f", {self._bin_expr(dim, stmt)} AS {alias}" for alias, dim in passive)
        rows = (
            f"SELECT {estimate} AS k0, {col} AS a{bin_cols} "
            f"FROM {quote_identifier(self.table)}{stmt.where(filters)}"
        )
        corrected = (
            f"CASE WHEN a IS NULL OR isnan(a) THEN {resolution} "
            f"WHEN k0 > 0 AND a < bounds[k0] THEN k0 - 1 "
            f"WHEN k0 < {resolution} AND a >= bounds[k0 + 1] THEN k0 + 1 "
            f"ELSE k0 END"
        )
        passive_cols = "".join(f", {alias}" for alias, _ in passive)
        swept = (
            f"SELECT {corrected} AS k{passive_cols} FROM ({rows}) AS rows_, "
            f"(SELECT {stmt.doubles(active_dimension.boundaries(resolution))} AS bounds) AS sweep"
        )
        cast_cols = "".join(f", CAST({alias} AS BIGINT) AS {alias}" for alias, _ in passive)
        where = " AND ".join(self._in_range(alias, dim) for alias, dim in passive)
        group = ", ".join(str(i + 1) for i in range(len(passive) + 1))
        sql = (
            f"SELECT k{cast_cols}, COUNT(*) AS n FROM ({swept}) AS swept"
            f"{' WHERE ' + where if where else ''} GROUP BY {group}"
        )

        result = self._fetch("cumulative_cube", sql, stmt)
        raw = np.zeros((resolution + 1,) + view.shape, dtype=np.int64)
        index = (self._ints(result, "k"),) + tuple(self._ints(result, alias) for alias, _ in passive)
        raw[index] = self._ints(result, "n")
        return Cube(view=view, active_dimension=active_dimension, resolution=resolution,
                    slices=np.cumsum(raw, axis=0))

    def close(self):
        self.pool.close()
        if self._owned is not None:
            self._owned.close()
            self._owned = None
