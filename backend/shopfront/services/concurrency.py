# Overview: Bounded retry for optimistic-lock (version_id) conflicts.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import TransientConflictError
from ..extensions import db


MAX_CAS_ATTEMPTS = 3


def run_with_retry(func, *, attempts: int = MAX_CAS_ATTEMPTS, backoff_base: float = 0.05, label: str = "operation"):
    """
    Execute a read-modify-write unit with retry on concurrency failures.

    `func` must re-read the rows it mutates on every call; a StaleDataError
    means another writer bumped version_id between our read and UPDATE.
    After `attempts` failures the caller gets TransientConflictError (409).
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            current_app.logger.warning(
                "Concurrent update conflict",
                extra={"label": label, "attempt": attempt + 1, "error": str(exc)},
            )
            if attempt >= attempts - 1:
                break
            time.sleep(backoff_base * (2 ** attempt))
    raise TransientConflictError("The record was modified concurrently, please retry")
