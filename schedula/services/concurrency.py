# Overview: Service-layer operations for concurrency; transaction isolation, provider locks and retries.

from __future__ import annotations

import time

import sqlalchemy as sa
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import User


# Minimum isolation for the booking check-and-insert on engines that support it
BOOKING_ISOLATION_LEVEL = "REPEATABLE READ"


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def begin_isolated(level: str = BOOKING_ISOLATION_LEVEL) -> None:
    """
    Start a fresh transaction at the requested isolation level.

    SQLite serializes writers on its own (one RESERVED lock per database),
    so the level is only applied on server databases.
    """
    if db.engine.dialect.name == "sqlite":
        return
    if db.session.in_transaction():
        db.session.commit()
    db.session.connection(execution_options={"isolation_level": level})


def acquire_provider_lock(provider_id: int) -> None:
    """
    Take the per-provider booking write lock for the current transaction.

    Bumping users.booking_lock_version is a write, so a second transaction
    booking the same provider blocks (or fails with a serialization error
    and is retried) until the first commits. Its conflict check then sees
    the winner's appointment.
    """
    db.session.execute(
        sa.update(User)
        .where(User.id == provider_id)
        .values(booking_lock_version=User.booking_lock_version + 1)
    )


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks, serialization failures)
    and StaleDataError (optimistic locking conflicts).
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
