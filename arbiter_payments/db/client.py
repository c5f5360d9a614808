from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.pool import SimpleConnectionPool

logger = logging.getLogger(__name__)


class Database:
    """Lazily created psycopg2 connection pool.

    ``connection()`` yields a connection with ``search_path`` set to the
    configured schema, commits on success and rolls back on error.
    """

    def __init__(self, dsn: str, schema: str = "", minconn: int = 1, maxconn: int = 10) -> None:
        self.dsn = dsn.replace("postgresql+psycopg2://", "postgresql://")
        self.schema = schema
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: SimpleConnectionPool | None = None

    def init_pool(self) -> SimpleConnectionPool:
        if self._pool is None:
            self._pool = SimpleConnectionPool(self.minconn, self.maxconn, dsn=self.dsn)
        return self._pool

    @contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        pool = self.init_pool()
        conn: psycopg2.extensions.connection | None = None
        try:
            # Retry once when the pool hands back a closed connection
            for attempt in range(2):
                conn = pool.getconn()
                try:
                    if self.schema:
                        with conn.cursor() as cur:
                            cur.execute("SELECT set_config('search_path', %s, false)", (self.schema,))
                    break
                except (psycopg2.OperationalError, psycopg2.InterfaceError):
                    pool.putconn(conn, close=True)
                    conn = None
                    if attempt == 1:
                        raise
            assert conn is not None
            yield conn
            conn.commit()
        except Exception:
            if conn is not None and not conn.closed:
                conn.rollback()
            raise
        finally:
            if conn is not None:
                pool.putconn(conn)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
