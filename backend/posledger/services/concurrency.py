# Overview: Transaction helpers: row locking, SQLite write locks and contention retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import CommitOutcomeUnknown


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Take the database write lock up front on SQLite.

    A deferred SQLite transaction that reads first and writes later can
    deadlock against another writer; BEGIN IMMEDIATE serializes writers at
    the start instead. Only issued when the connection has no open
    transaction; other backends rely on lock_for_update.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.driver_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def commit_write() -> None:
    """
    Flush, then commit the write transaction.

    Errors raised while flushing leave nothing written and propagate
    unchanged, so run_with_retry may re-run the operation. An error raised
    by the COMMIT itself leaves the outcome unknown; it becomes
    CommitOutcomeUnknown, which is never retried.
    """
    db.session.flush()
    try:
        db.session.commit()
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        current_app.logger.error("Commit failed, outcome unknown: %s", exc.__class__.__name__)
        raise CommitOutcomeUnknown(
            "The transaction could not be confirmed. Check whether it was recorded before retrying.",
            details={"cause": exc.__class__.__name__},
        ) from exc


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on lock contention.

    Retries on OperationalError (locked database, deadlock) and
    StaleDataError (optimistic version conflict) raised before the commit.
    The session is rolled back before every retry, so func always starts
    from committed state and re-runs its own validation. func must end with
    commit_write(); a failed COMMIT is never re-issued. Domain errors
    propagate after a rollback.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Retrying after concurrency conflict (attempt %s/%s): %s",
                attempt + 1,
                attempts,
                exc.__class__.__name__,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
