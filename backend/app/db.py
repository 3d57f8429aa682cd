from contextlib import contextmanager

from psycopg.rows import dict_row
# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

# Opened from the app startup hook (see main.py); importing a router never dials the database.
_pool = ConnectionPool(
    conninfo=settings.db_url,
    min_size=settings.db_pool_min_size,
    max_size=settings.db_pool_max_size,
    kwargs={"row_factory": dict_row},
    open=False,
)


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` commits on success, rolls back on exception,
    # and hands the connection back to the pool.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_pool)


def open_pool() -> None:
    _pool.open()


def close_pool() -> None:
    _pool.close()


def pool_stats() -> dict:
    stats = _pool.get_stats()
    return {
        "size": stats.get("pool_size", 0),
        "available": stats.get("pool_available", 0),
        "waiting": stats.get("requests_waiting", 0),
    }
