"""Bounded retry for transient database faults.

Operations passed to ``run_with_store_retry`` must be safe to re-run from the
start: each attempt opens its own unit of work, and writes carry idempotency
keys so a retry after a lost commit acknowledgement is a no-op.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import exc as sa_exc

from interview_credits.core.config import settings
from interview_credits.core.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(err: BaseException) -> bool:
    if isinstance(err, StoreUnavailableError):
        return True
    if isinstance(err, sa_exc.DBAPIError) and err.connection_invalidated:
        return True
    # OperationalError covers lost connections, lock timeouts and "database is locked"
    return isinstance(err, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError))


async def run_with_store_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str = "store operation",
    attempts: int | None = None,
    delay: float | None = None,
) -> T:
    max_attempts = max(1, attempts if attempts is not None else settings.store_retry_attempts)
    retry_delay = delay if delay is not None else settings.store_retry_delay_sec

    last_err: StoreUnavailableError | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except (sa_exc.SQLAlchemyError, StoreUnavailableError) as e:
            if not is_transient(e):
                raise
            last_err = e if isinstance(e, StoreUnavailableError) else StoreUnavailableError(f"{label} failed: {e}")
            logger.warning("%s attempt %d/%d failed: %s", label, attempt, max_attempts, e)
            if attempt < max_attempts:
                await asyncio.sleep(retry_delay)
    assert last_err is not None
    raise last_err
