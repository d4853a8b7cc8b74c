# Overview: Service-layer operations for concurrency; the engine's atomic-transaction primitive.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..exceptions import TransactionConflictError
from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Optimistic version_id columns catch the races SQLite lets through.
    """
    return query.with_for_update()


def begin_write():
    """
    Take the write lock at the start of a unit of work on SQLite.

    BEGIN IMMEDIATE serializes writers, so a check-then-write sequence reads
    committed state. Must be the first statement of the transaction.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None, retry_on=()):
    """
    Execute one atomic unit of work.

    `func` performs all reads and writes and commits on success. Any
    exception rolls the whole session back, so nothing partial survives.
    OperationalError (locks, deadlocks) and StaleDataError (optimistic
    version conflicts), plus any extra `retry_on` types, are retried with
    exponential backoff; when the attempts run out the failure surfaces as
    TransactionConflictError.
    """
    config = current_app.config
    if attempts is None:
        attempts = config.get("TRANSACTION_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = config.get("TRANSACTION_RETRY_BACKOFF", 0.1)
    retryable = RETRYABLE_ERRORS + tuple(retry_on)

    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.warning(
                    "Transaction aborted after %d attempts: %s", attempts, exc.__class__.__name__
                )
                raise TransactionConflictError(
                    "The operation conflicted with a concurrent update; please retry",
                    attempts=attempts,
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    raise TransactionConflictError("The operation could not be attempted", attempts=attempts)
