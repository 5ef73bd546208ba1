# Overview: Row locking and retry helpers shared by every write path.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import SaleEngineError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def guarded_update(stmt, *, entity: str) -> None:
    """
    Execute a conditional UPDATE that must touch exactly one row.

    The WHERE clause carries the values read earlier in the transaction. Zero
    rows means another writer got there first; StaleDataError sends the whole
    unit of work back through run_with_retry.
    """
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        raise StaleDataError(f"{entity} changed concurrently")


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts, lost conditional updates). The session is
    rolled back before every retry, so func must re-read everything it uses.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_atomic(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    run_with_retry for a whole unit of work that ends in commit().

    A business error raised part-way rolls the session back before it
    propagates, so no partial write survives a rejected request.
    """
    try:
        return run_with_retry(func, attempts=attempts, backoff_base=backoff_base)
    except SaleEngineError:
        db.session.rollback()
        raise
