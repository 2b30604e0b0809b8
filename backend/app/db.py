import threading
from contextlib import contextmanager

from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings, _env_int

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
# The cost sync fans out four reads per batch, so keep max >= 5.
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)

# Opened on first use so importing the app (or its tests) never dials the database.
# Note: we keep row_factory=dict_row to preserve existing handler expectations.
_pool = ConnectionPool(
    conninfo=settings.db_url,
    min_size=_POOL_MIN,
    max_size=_POOL_MAX,
    kwargs={"row_factory": dict_row},
    open=False,
)
_pool_lock = threading.Lock()
_pool_opened = False


def _get_pool() -> ConnectionPool:
    global _pool_opened
    if not _pool_opened:
        with _pool_lock:
            if not _pool_opened:
                _pool.open()
                _pool_opened = True
    return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` semantics (all provided by pool.connection()):
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    with pool.connection() as conn:
        yield conn


def get_conn():
    return _pooled_conn(_get_pool())


def close_pools() -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    global _pool_opened
    if not _pool_opened:
        return
    try:
        _pool.close()
    except Exception:
        pass
    _pool_opened = False
