# Overview: Unit-of-work boundary and caller-side retry for optimistic locking.

from __future__ import annotations

import time

import structlog
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrentModificationError, IMSError, InternalError
from ..extensions import db

logger = structlog.get_logger(__name__)


def atomic(func, *, commit: bool = True, operation: str | None = None):
    """
    Run one core operation as a single unit of work.

    - commit=True: commit on success, roll back on any failure (outermost call)
    - commit=False: only flush; the caller owns the transaction. Business
      errors propagate without a rollback so the caller can decide.

    Failures are translated once here:
    - StaleDataError (version_id mismatch) -> ConcurrentModificationError
    - IMSError -> re-raised unchanged
    - any other SQLAlchemyError -> InternalError (opaque, chained)

    The core never retries; see run_with_retry() for the caller side.
    """
    op_name = operation or getattr(func, "__qualname__", "operation")
    try:
        result = func()
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return result
    except StaleDataError as exc:
        # A failed flush leaves the session unusable regardless of commit mode
        db.session.rollback()
        if commit:
            logger.warning("unit_of_work.concurrent_modification", operation=op_name, error=str(exc))
        raise ConcurrentModificationError(
            "Record was modified by another transaction; reload and retry",
            {"operation": op_name},
        ) from exc
    except IMSError as exc:
        if commit:
            db.session.rollback()
            logger.warning("unit_of_work.rejected", operation=op_name, code=exc.code, error=exc.message)
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("unit_of_work.internal_error", operation=op_name, error=str(exc), exc_info=True)
        raise InternalError("Internal storage failure", {"operation": op_name}) from exc


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Caller-side bounded retry for ConcurrentModificationError.

    func must be a complete unit of work (it re-reads state on every attempt).
    Every other error is raised immediately: business-rule failures are not
    transient and must not be retried without correcting the request.
    Defaults come from CONCURRENCY_RETRY_ATTEMPTS / CONCURRENCY_RETRY_BACKOFF.
    """
    if attempts is None:
        attempts = current_app.config.get("CONCURRENCY_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("CONCURRENCY_RETRY_BACKOFF", 0.05)

    for attempt in range(attempts):
        try:
            return func()
        except ConcurrentModificationError:
            if attempt >= attempts - 1:
                raise
            logger.info("retry.concurrent_modification", attempt=attempt + 1, attempts=attempts)
            db.session.rollback()
            time.sleep(backoff_base * (2 ** attempt))
