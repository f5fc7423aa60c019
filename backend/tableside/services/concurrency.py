# Overview: Conditional-update, reload and retry helpers shared by the lifecycle services.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def conditional_update(model, criteria, values: dict, *, bump_version: bool = True) -> int:
    """
    Single-statement guarded write: UPDATE model SET values WHERE criteria.

    The guard and the write are one atomic step, so a concurrent writer that
    already moved the row makes this match zero rows instead of overwriting
    it. Returns the number of rows changed.
    """
    if bump_version and hasattr(model, "version_id"):
        values = dict(values, version_id=model.version_id + 1)
    stmt = (
        update(model)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount


def reload(model, pk):
    """Fetch a row bypassing the identity map's cached attribute values."""
    return db.session.get(model, pk, populate_existing=True)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Anything else rolls back the partial
    transaction and propagates immediately.
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
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
