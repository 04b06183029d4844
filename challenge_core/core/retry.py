"""
Bounded retry with exponential backoff for store reads/writes.

Only TransientError is retried. Driver-level connectivity failures are
classified into TransientError and constraint violations into ConflictError
by ``classify_store_error``; everything else propagates unchanged on the
first attempt.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from challenge_core.core.config import settings
from challenge_core.core.errors import ConflictError, TransientError

logger = logging.getLogger("challenge")

T = TypeVar("T")


def compute_backoff(attempt: int, base_delay: Optional[float] = None, max_delay: Optional[float] = None) -> float:
    """Exponential backoff: base * 2**attempt, capped at max_delay."""
    base = settings.STORE_RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
    cap = settings.STORE_RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay
    return min(base * (2 ** attempt), cap)


def classify_store_error(exc: BaseException) -> BaseException:
    """Map driver errors to TransientError (store unavailable) or ConflictError (constraint violation)."""
    if isinstance(exc, (TransientError, ConflictError)):
        return exc
    if isinstance(exc, IntegrityError):
        return ConflictError(f"Conflicting write: {exc.orig}")
    if isinstance(exc, OperationalError):
        return TransientError(f"Store temporarily unavailable: {exc.orig}")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientError("Store connection was invalidated")
    return exc


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: Optional[int] = None,
    operation: str = "store",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``fn`` with bounded retries on transient failures.

    Raises the last TransientError once attempts are exhausted. Callers must
    only wrap idempotent work.
    """
    max_attempts = max(1, attempts if attempts is not None else settings.STORE_RETRY_ATTEMPTS)
    last_error: Optional[TransientError] = None

    for attempt in range(max_attempts):
        try:
            return fn()
        except Exception as exc:
            classified = classify_store_error(exc)
            if not isinstance(classified, TransientError):
                raise
            last_error = classified
            if attempt + 1 >= max_attempts:
                break
            delay = compute_backoff(attempt)
            logger.warning(
                f"{operation}.retry attempt={attempt + 1}/{max_attempts} delay={delay:.2f}s error={classified.message}"
            )
            sleep(delay)

    assert last_error is not None
    raise TransientError(f"{operation} failed after {max_attempts} attempts: {last_error.message}")
